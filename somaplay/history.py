"""History log: an ordered, bounded channel of diagnostic entries.

Any thread may emit; only the tick loop drains. Drained entries are kept in
a bounded in-memory log and rendered to the console logger.
"""

from __future__ import annotations

import logging
import queue
from collections import deque
from collections.abc import Callable
from datetime import datetime

from .constants import HISTORY_MAX_ENTRIES, HISTORY_QUEUE_SIZE
from .models import HistoryMessage, MessageType

logger = logging.getLogger(__name__)
console = logging.getLogger("somaplay.console")

_CONSOLE_LEVELS = {
    MessageType.ERROR: logging.ERROR,
    MessageType.INFO: logging.INFO,
    MessageType.SYSTEM: logging.INFO,
    MessageType.BACKGROUND: logging.INFO,
    MessageType.PLAYBACK: logging.INFO,
}

_ALWAYS_VISIBLE = frozenset({MessageType.ERROR, MessageType.INFO, MessageType.PLAYBACK})


def is_visible(message: HistoryMessage, log_level: int) -> bool:
    """Whether an entry is shown at the given verbosity."""
    return log_level > 1 or message.message_type in _ALWAYS_VISIBLE


class HistoryLog:
    """Bounded FIFO of HistoryMessage with a single consumer."""

    def __init__(
        self,
        capacity: int = HISTORY_QUEUE_SIZE,
        max_entries: int = HISTORY_MAX_ENTRIES,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._queue: queue.Queue[HistoryMessage] = queue.Queue(maxsize=capacity)
        self._entries: deque[HistoryMessage] = deque(maxlen=max_entries)
        self._now = now
        self._dropped = 0

    def emit(self, message: str, message_type: MessageType) -> None:
        """Queue an entry without blocking the caller."""
        entry = HistoryMessage(
            message=message,
            message_type=message_type,
            timestamp=self._now().strftime("%H:%M:%S"),
        )
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self._dropped += 1
            logger.warning("History queue full, dropped entry: %s", message)

    def drain(self) -> list[HistoryMessage]:
        """Move queued entries into the in-memory log, in emission order."""
        drained: list[HistoryMessage] = []
        while True:
            try:
                entry = self._queue.get_nowait()
            except queue.Empty:
                break
            self._entries.append(entry)
            drained.append(entry)
        return drained

    @property
    def entries(self) -> tuple[HistoryMessage, ...]:
        return tuple(self._entries)

    @property
    def dropped(self) -> int:
        return self._dropped

    def visible(self, log_level: int) -> tuple[HistoryMessage, ...]:
        return tuple(e for e in self._entries if is_visible(e, log_level))


def render(entry: HistoryMessage) -> None:
    """Write a history entry to the console logger."""
    console.log(
        _CONSOLE_LEVELS[entry.message_type],
        "[%s] %s",
        entry.timestamp,
        entry.message,
    )
