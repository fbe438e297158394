"""somaplay - Main entry point.

A terminal internet radio player for the SomaFM station directory.
"""

import argparse
import logging
import queue
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Event
from types import FrameType

from .commands import ControlCommand
from .config import DEFAULT_CONFIG_PATH, load_config, save_state
from .control import UdpControlListener, broadcast_command
from .controller import RadioController
from .errors import AudioDeviceError, ControlError, NetworkError
from .history import HistoryLog
from .keyboard import KeyboardInput
from .monitor import UnderrunMonitor
from .router import CommandRouter
from .session import PlaybackSession
from .sink import MpvSink, SinkActor
from .stations import StationDirectory, StationResult, start_station_fetch
from .stream import StreamPipeline

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, log_file: Path | None = None) -> None:
    """Configure logging with optional rotating file handler.

    Args:
        verbose: Enable debug logging if True.
        log_file: Optional path for a rotating log file.
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file is not None:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="somaplay",
        description="Terminal internet radio player for SomaFM",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Path to rotating log file (5 MB × 3 backups)",
    )
    parser.add_argument(
        "--station",
        default=None,
        help="Station id to start playing (overrides last_station)",
    )
    parser.add_argument(
        "--udp",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable or disable the UDP control listener",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="UDP control port (overrides control.udp_port)",
    )
    parser.add_argument(
        "--broadcast",
        metavar="MESSAGE",
        default=None,
        help="Send a control message to players on the local network and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the somaplay application.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)
    setup_logging(args.verbose, log_file=args.log_file)

    # Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ValueError as e:
        logger.exception("Invalid configuration: %s", e)
        return 1

    udp_port = args.port if args.port is not None else config.control.udp_port
    udp_enabled = args.udp if args.udp is not None else config.control.udp_enabled

    if args.broadcast is not None:
        try:
            broadcast_command(args.broadcast, udp_port)
        except (ControlError, NetworkError) as e:
            logger.error("Broadcast failed: %s", e)
            return 1
        return 0

    logger.info("Starting somaplay")

    try:
        sink = MpvSink(config.audio)
    except AudioDeviceError as e:
        logger.critical("No usable audio output: %s", e)
        logger.critical("Ensure libmpv is installed and an audio device is available")
        return 1

    history = HistoryLog()
    actor = SinkActor(sink)
    actor.start()

    pipeline = StreamPipeline(config.stream, history)
    session = PlaybackSession(actor, pipeline, history, volume=config.volume)
    monitor = UnderrunMonitor(session, config.monitor, history)
    router = CommandRouter(session, history)

    commands: queue.Queue[ControlCommand] = queue.Queue()
    station_results: queue.Queue[StationResult] = queue.Queue(maxsize=1)
    radio_controller = RadioController(
        config=config,
        session=session,
        monitor=monitor,
        router=router,
        history=history,
        commands=commands,
        station_results=station_results,
        autoplay_station=args.station or config.last_station,
    )

    start_station_fetch(StationDirectory(config.directory_url), station_results)

    keyboard = KeyboardInput(radio_controller.submit)
    keyboard.start()

    listener: UdpControlListener | None = None
    if udp_enabled:
        listener = UdpControlListener(udp_port, radio_controller.submit, history)
        try:
            listener.start()
        except NetworkError as e:
            logger.error("UDP control disabled: %s", e)
            listener = None

    shutdown_event = Event()

    # Setup signal handlers for graceful shutdown
    def handle_signal(signum: int, _frame: FrameType | None) -> None:
        logger.info("Shutdown signal received (%s)", signal.Signals(signum).name)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info("somaplay is running. Press q or Ctrl+C to stop.")
    try:
        radio_controller.run(shutdown_event)
    finally:
        logger.info("Shutting down somaplay")
        keyboard.close()
        if listener is not None:
            listener.close()
        radio_controller.shutdown()
        actor.close()

    try:
        save_state(config.config_path, radio_controller.persisted_state())
    except (OSError, ValueError) as e:
        logger.error("Could not save player state: %s", e)

    logger.info("Goodbye!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
