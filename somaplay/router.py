"""Command router.

Applies ControlCommand values, one at a time and in arrival order, to the
playback session and the view cursor. It does not care which source a
command came from.
"""

import logging
from collections.abc import Sequence

from .commands import CommandKind, ControlCommand
from .constants import VOLUME_STEP
from .history import HistoryLog
from .models import MessageType, PlaybackState, Station, ViewState
from .session import PlaybackSession

logger = logging.getLogger(__name__)


class CommandRouter:
    """Serial command application against a single session."""

    def __init__(
        self,
        session: PlaybackSession,
        history: HistoryLog,
        stations: Sequence[Station] = (),
    ) -> None:
        self._session = session
        self._history = history
        self._stations: tuple[Station, ...] = ()
        self._view = ViewState(selected_index=None, show_help=False, history_index=None)
        self._quit_requested = False
        if stations:
            self.set_stations(stations)

    @property
    def view(self) -> ViewState:
        return self._view

    @property
    def stations(self) -> tuple[Station, ...]:
        return self._stations

    @property
    def quit_requested(self) -> bool:
        return self._quit_requested

    @property
    def selected(self) -> Station | None:
        index = self._view.selected_index
        if index is None or not self._stations:
            return None
        return self._stations[index]

    def set_stations(self, stations: Sequence[Station]) -> None:
        """Install the station list, keeping the cursor in range."""
        self._stations = tuple(stations)
        if not self._stations:
            self._view = self._view.with_selection(None)
            return
        index = self._view.selected_index
        if index is None:
            index = 0
        self._view = self._view.with_selection(min(index, len(self._stations) - 1))

    def index_of(self, station_id: str) -> int | None:
        for index, station in enumerate(self._stations):
            if station.id == station_id:
                return index
        return None

    def apply(self, command: ControlCommand) -> None:
        """Apply one command to the session and view state."""
        logger.debug(
            "Applying %s (%s)", command.describe(), command.origin.name.lower()
        )

        match command.kind:
            case CommandKind.PLAY:
                self._play_selected()
            case CommandKind.STOP:
                self._session.stop(soft=False)
            case CommandKind.TOGGLE_PAUSE:
                self._session.pause()
            case CommandKind.TOGGLE:
                self._toggle()
            case CommandKind.VOLUME_UP:
                self._change_volume(self._session.volume + VOLUME_STEP)
            case CommandKind.VOLUME_DOWN:
                self._change_volume(self._session.volume - VOLUME_STEP)
            case CommandKind.SET_VOLUME:
                if command.volume is not None:
                    self._change_volume(command.volume)
            case CommandKind.TUNE:
                self._tune(command.station_id)
            case CommandKind.TUNE_NEXT:
                self._tune_relative(1)
            case CommandKind.TUNE_PREV:
                self._tune_relative(-1)
            case CommandKind.SELECT_UP:
                self._move_selection(-1)
            case CommandKind.SELECT_DOWN:
                self._move_selection(1)
            case CommandKind.TOGGLE_HELP:
                self._view = self._view.with_help(not self._view.show_help)
            case CommandKind.SCROLL_HISTORY_UP:
                self._scroll_history(-1)
            case CommandKind.SCROLL_HISTORY_DOWN:
                self._scroll_history(1)
            case CommandKind.QUIT:
                self._quit_requested = True

    def _play_selected(self) -> None:
        index = self._view.selected_index
        if not self._stations or index is None:
            self._history.emit("No station selected", MessageType.ERROR)
            return
        self._session.play(index, self._stations[index])

    def _toggle(self) -> None:
        match self._session.state:
            case PlaybackState.PLAYING:
                self._session.stop(soft=False)
            case PlaybackState.STOPPED:
                self._play_selected()
            case PlaybackState.PAUSED:
                pass

    def _change_volume(self, volume: float) -> None:
        applied = self._session.set_volume(volume)
        self._history.emit(f"Volume {applied:.1f}", MessageType.BACKGROUND)

    def _tune(self, station_id: str | None) -> None:
        index = self.index_of(station_id) if station_id else None
        if index is None:
            self._history.emit(f"Unknown station: {station_id}", MessageType.ERROR)
            return
        self._view = self._view.with_selection(index)
        self._play_selected()

    def _tune_relative(self, step: int) -> None:
        if not self._stations:
            self._history.emit("No stations loaded", MessageType.ERROR)
            return
        base = self._view.selected_index
        index = 0 if base is None else (base + step) % len(self._stations)
        self._view = self._view.with_selection(index)
        self._play_selected()

    def _move_selection(self, step: int) -> None:
        if not self._stations:
            return
        index = self._view.selected_index
        if index is None:
            index = 0
        else:
            index = max(0, min(len(self._stations) - 1, index + step))
        self._view = self._view.with_selection(index)

    def _scroll_history(self, step: int) -> None:
        size = len(self._history.entries)
        if size == 0:
            return
        index = self._view.history_index
        if index is None:
            index = 0
        else:
            index = max(0, min(size - 1, index + step))
        self._view = self._view.with_history_index(index)
