"""Control commands shared by every command source.

Keyboard events, UDP datagrams and the startup auto-play directive are all
normalized into ControlCommand values before they reach the router.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto


class CommandKind(Enum):
    """Closed set of control intents."""

    PLAY = auto()
    STOP = auto()
    TOGGLE_PAUSE = auto()
    VOLUME_UP = auto()
    VOLUME_DOWN = auto()
    SET_VOLUME = auto()
    TUNE = auto()
    TUNE_NEXT = auto()
    TUNE_PREV = auto()
    SELECT_UP = auto()
    SELECT_DOWN = auto()
    TOGGLE = auto()
    TOGGLE_HELP = auto()
    SCROLL_HISTORY_UP = auto()
    SCROLL_HISTORY_DOWN = auto()
    QUIT = auto()


class CommandOrigin(Enum):
    """Where a command came from (diagnostics only)."""

    KEYBOARD = auto()
    NETWORK = auto()
    STARTUP = auto()
    INTERNAL = auto()


@dataclass(frozen=True)
class ControlCommand:
    """A single control intent.

    `volume` is set only for SET_VOLUME and `station_id` only for TUNE.
    """

    kind: CommandKind
    volume: float | None = None
    station_id: str | None = None
    origin: CommandOrigin = CommandOrigin.INTERNAL

    @classmethod
    def simple(
        cls, kind: CommandKind, origin: CommandOrigin = CommandOrigin.INTERNAL
    ) -> ControlCommand:
        """Build a command that carries no payload."""
        if kind in {CommandKind.SET_VOLUME, CommandKind.TUNE}:
            msg = f"{kind.name} requires a payload"
            raise ValueError(msg)
        return cls(kind=kind, origin=origin)

    @classmethod
    def set_volume(
        cls, value: float, origin: CommandOrigin = CommandOrigin.INTERNAL
    ) -> ControlCommand:
        return cls(kind=CommandKind.SET_VOLUME, volume=value, origin=origin)

    @classmethod
    def tune(
        cls, station_id: str, origin: CommandOrigin = CommandOrigin.INTERNAL
    ) -> ControlCommand:
        return cls(kind=CommandKind.TUNE, station_id=station_id, origin=origin)

    def describe(self) -> str:
        """Short human-readable form used in diagnostics."""
        name = self.kind.name.lower().replace("_", " ")
        if self.kind is CommandKind.SET_VOLUME:
            return f"{name} {self.volume:.2f}"
        if self.kind is CommandKind.TUNE:
            return f"{name} {self.station_id}"
        return name
