"""Keyboard command source.

Puts the terminal in cbreak mode and turns key presses into ControlCommand
values on a background thread.
"""

from __future__ import annotations

import logging
import os
import select
import sys
import termios
import threading
import time
import tty
from collections.abc import Callable
from typing import IO, Any

from .commands import CommandKind, CommandOrigin, ControlCommand

logger = logging.getLogger(__name__)

type TermiosSettings = list[int | list[int | bytes]]

ESCAPE_SEQUENCE_TIMEOUT_SECONDS = 0.05

_KEY_BINDINGS: dict[str, CommandKind] = {
    "q": CommandKind.QUIT,
    "\n": CommandKind.PLAY,
    "\r": CommandKind.PLAY,
    " ": CommandKind.TOGGLE,
    "p": CommandKind.TOGGLE_PAUSE,
    "s": CommandKind.STOP,
    "n": CommandKind.TUNE_NEXT,
    "b": CommandKind.TUNE_PREV,
    "+": CommandKind.VOLUME_UP,
    "=": CommandKind.VOLUME_UP,
    "-": CommandKind.VOLUME_DOWN,
    "?": CommandKind.TOGGLE_HELP,
    "k": CommandKind.SCROLL_HISTORY_DOWN,
    "j": CommandKind.SCROLL_HISTORY_UP,
    "\x1b[A": CommandKind.SELECT_UP,
    "\x1b[B": CommandKind.SELECT_DOWN,
    "\x1bOA": CommandKind.SELECT_UP,
    "\x1bOB": CommandKind.SELECT_DOWN,
}

KEY_HELP = (
    "Enter play selected | space play/stop | p pause | s stop",
    "Up/Down select | n/b next/previous station",
    "+/- volume | j/k scroll history | ? help | q quit",
)


def decode_key(sequence: str) -> ControlCommand | None:
    """Map a key (or escape sequence) to a command, None if unbound."""
    kind = _KEY_BINDINGS.get(sequence)
    if kind is None and len(sequence) == 1:
        kind = _KEY_BINDINGS.get(sequence.lower())
    if kind is None:
        return None
    return ControlCommand.simple(kind, origin=CommandOrigin.KEYBOARD)


class KeyboardInput:
    """Reads keys from a TTY and submits decoded commands."""

    def __init__(
        self,
        submit: Callable[[ControlCommand], None],
        stdin: IO[Any] | None = None,
    ) -> None:
        self._submit = submit
        self._stdin = stdin
        self._running = False
        self._stdin_fd: int | None = None
        self._term_settings: TermiosSettings | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return

        stdin = self._stdin if self._stdin is not None else sys.stdin
        if stdin.isatty():
            self._stdin_fd = stdin.fileno()
            self._term_settings = termios.tcgetattr(self._stdin_fd)
            tty.setcbreak(self._stdin_fd)
        else:
            logger.warning("Keyboard control requires a TTY; keys are disabled")

        self._running = True
        self._thread = threading.Thread(
            target=self._keyboard_loop, name="keyboard", daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Stop reading and restore the terminal."""
        self._running = False
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None
        if self._stdin_fd is not None and self._term_settings is not None:
            termios.tcsetattr(self._stdin_fd, termios.TCSADRAIN, self._term_settings)
        self._stdin_fd = None
        self._term_settings = None

    def _keyboard_loop(self) -> None:
        while self._running:
            sequence = self._read_key(timeout=0.1)
            if sequence is None:
                continue

            command = decode_key(sequence)
            if command is None:
                logger.debug("Unbound key: %r", sequence)
                continue
            self._submit(command)

    def _read_key(self, timeout: float) -> str | None:
        ch = self._read_char(timeout)
        if ch != "\x1b":
            return ch

        sequence = ch
        for _ in range(2):
            nxt = self._read_char(ESCAPE_SEQUENCE_TIMEOUT_SECONDS)
            if nxt is None:
                break
            sequence += nxt
        return sequence

    def _read_char(self, timeout: float) -> str | None:
        if self._stdin_fd is None:
            time.sleep(timeout)
            return None

        ready, _, _ = select.select([self._stdin_fd], [], [], timeout)
        if not ready:
            return None
        data = os.read(self._stdin_fd, 1)
        if not data:
            return None
        return data.decode("latin-1")
