"""UDP control channel.

One plain-text command per datagram, e.g. ``play``, ``volume 0.8`` or
``tune groovesalad``. Parsed commands go onto the shared command queue;
malformed datagrams are reported and dropped.
"""

import logging
import math
import socket
import threading
from collections.abc import Callable

from .commands import CommandKind, CommandOrigin, ControlCommand
from .constants import UDP_MAX_DATAGRAM_BYTES
from .errors import ControlError, NetworkError
from .history import HistoryLog
from .models import MessageType

logger = logging.getLogger(__name__)

BROADCAST_ADDRESS = "255.255.255.255"

_SIMPLE_COMMANDS: dict[str, CommandKind] = {
    "play": CommandKind.PLAY,
    "stop": CommandKind.STOP,
    "pause": CommandKind.TOGGLE_PAUSE,
    "toggle": CommandKind.TOGGLE,
}

_DIRECTIONAL_COMMANDS: dict[tuple[str, str], CommandKind] = {
    ("volume", "up"): CommandKind.VOLUME_UP,
    ("volume", "down"): CommandKind.VOLUME_DOWN,
    ("tune", "next"): CommandKind.TUNE_NEXT,
    ("tune", "prev"): CommandKind.TUNE_PREV,
    ("select", "up"): CommandKind.SELECT_UP,
    ("select", "down"): CommandKind.SELECT_DOWN,
}


def parse_control_message(
    text: str, origin: CommandOrigin = CommandOrigin.NETWORK
) -> ControlCommand:
    """Parse one control datagram.

    Raises:
        ControlError: The message is empty or not a known command.
    """
    tokens = text.strip().split()
    if not tokens:
        msg = "Empty control message"
        raise ControlError(msg, raw=text)

    verb = tokens[0].lower()
    args = tokens[1:]

    if verb in _SIMPLE_COMMANDS and not args:
        return ControlCommand.simple(_SIMPLE_COMMANDS[verb], origin=origin)

    if len(args) != 1:
        msg = f"Unknown control message: {text.strip()!r}"
        raise ControlError(msg, raw=text)

    arg = args[0]
    kind = _DIRECTIONAL_COMMANDS.get((verb, arg.lower()))
    if kind is not None:
        return ControlCommand.simple(kind, origin=origin)

    if verb == "volume":
        try:
            value = float(arg)
        except ValueError as e:
            msg = f"Invalid volume: {arg!r}"
            raise ControlError(msg, raw=text) from e
        if not math.isfinite(value):
            msg = f"Invalid volume: {arg!r}"
            raise ControlError(msg, raw=text)
        return ControlCommand.set_volume(value, origin=origin)

    if verb == "tune":
        return ControlCommand.tune(arg, origin=origin)

    msg = f"Unknown control message: {text.strip()!r}"
    raise ControlError(msg, raw=text)


class UdpControlListener:
    """Receives control datagrams on a background thread."""

    def __init__(
        self,
        port: int,
        submit: Callable[[ControlCommand], None],
        history: HistoryLog,
        host: str = "0.0.0.0",
        poll_timeout: float = 0.5,
    ) -> None:
        self._port = port
        self._host = host
        self._submit = submit
        self._history = history
        self._poll_timeout = poll_timeout
        self._sock: socket.socket | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        """Bound port (resolved after start when 0 was requested)."""
        if self._sock is not None:
            return self._sock.getsockname()[1]
        return self._port

    def start(self) -> None:
        """Bind the socket and start listening.

        Raises:
            NetworkError: The port could not be bound.
        """
        if self._thread is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, self._port))
        except OSError as e:
            sock.close()
            msg = f"Cannot listen on UDP port {self._port}: {e}"
            raise NetworkError(msg) from e
        sock.settimeout(self._poll_timeout)
        self._sock = sock

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._listen_loop, name="udp-control", daemon=True
        )
        self._thread.start()
        self._history.emit(
            f"Listening for control messages on UDP port {self.port}",
            MessageType.SYSTEM,
        )

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._poll_timeout * 4)
        self._thread = None
        if self._sock is not None:
            self._sock.close()
        self._sock = None

    def handle_datagram(self, data: bytes, address: tuple[str, int]) -> None:
        """Decode and submit one datagram; malformed input is dropped."""
        try:
            text = data.decode("ascii")
            command = parse_control_message(text)
        except UnicodeDecodeError:
            self._history.emit(
                f"Dropped non-ASCII control message from {address[0]}",
                MessageType.ERROR,
            )
            return
        except ControlError as e:
            self._history.emit(f"{e} (from {address[0]})", MessageType.ERROR)
            return

        self._history.emit(
            f"Received {command.describe()} from {address[0]}",
            MessageType.BACKGROUND,
        )
        self._submit(command)

    def _listen_loop(self) -> None:
        sock = self._sock
        if sock is None:
            return
        while not self._stop.is_set():
            try:
                data, address = sock.recvfrom(UDP_MAX_DATAGRAM_BYTES)
            except TimeoutError:
                continue
            except OSError as e:
                if not self._stop.is_set():
                    logger.error("UDP control socket failed: %s", e)
                return
            self.handle_datagram(data, address)


def broadcast_command(message: str, port: int) -> None:
    """Send one control datagram to the local broadcast address.

    Raises:
        ControlError: The message is not a valid command.
        NetworkError: The datagram could not be sent.
    """
    parse_control_message(message)
    try:
        payload = message.strip().encode("ascii")
    except UnicodeEncodeError as e:
        msg = "Control messages must be ASCII"
        raise ControlError(msg, raw=message) from e
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.sendto(payload, (BROADCAST_ADDRESS, port))
    except OSError as e:
        msg = f"Failed to broadcast control message: {e}"
        raise NetworkError(msg) from e
    logger.info("Broadcast %r to port %d", message.strip(), port)
