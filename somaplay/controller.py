"""Main application controller for somaplay.

Runs the cooperative tick loop. All session, router and monitor state is
touched only from here; every other thread talks to it through queues.
"""

import logging
import queue
from threading import Event

from .commands import CommandOrigin, ControlCommand
from .errors import StationError
from .history import HistoryLog, console, is_visible, render
from .keyboard import KEY_HELP
from .models import AppConfig, MessageType, PersistedState, PlaybackState
from .monitor import UnderrunMonitor
from .router import CommandRouter
from .session import PlaybackSession
from .stations import StationResult

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Format a duration as HH:MM:SS."""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{secs:02}"


class RadioController:
    """Tick loop driving the session from queued commands.

    Each tick drains the history queue, picks up the station list once it
    has arrived, applies pending commands in arrival order, applies finished
    connects and runs the underrun check.
    """

    def __init__(
        self,
        config: AppConfig,
        session: PlaybackSession,
        monitor: UnderrunMonitor,
        router: CommandRouter,
        history: HistoryLog,
        commands: queue.Queue[ControlCommand],
        station_results: queue.Queue[StationResult],
        autoplay_station: str | None = None,
    ) -> None:
        """Initialize radio controller.

        Args:
            config: Application configuration.
            session: Playback session owned by this loop.
            monitor: Underrun monitor attached to the session.
            router: Command router for the session.
            history: History log shared with background threads.
            commands: Queue every command source writes to.
            station_results: One-shot queue carrying the station list.
            autoplay_station: Station id to tune to once stations arrive.
        """
        self._config = config
        self._session = session
        self._monitor = monitor
        self._router = router
        self._history = history
        self._commands = commands
        self._station_results = station_results
        self._autoplay_station = autoplay_station
        self._stations_received = False
        self._last_status: str | None = None
        self._help_shown = False

    @property
    def stations_received(self) -> bool:
        return self._stations_received

    @property
    def quit_requested(self) -> bool:
        return self._router.quit_requested

    def submit(self, command: ControlCommand) -> None:
        """Queue a command from any thread."""
        self._commands.put(command)

    def tick(self) -> None:
        """Run one iteration of the loop."""
        self._render_history()
        self._receive_stations()
        self._apply_commands()
        self._session.poll()
        self._monitor.tick()
        self._render_status()

    def run(self, stop_event: Event) -> None:
        """Tick until quit is requested or `stop_event` is set."""
        interval = self._config.monitor.tick_interval_seconds
        logger.info("Tick loop started (interval %.2fs)", interval)
        while not stop_event.is_set() and not self._router.quit_requested:
            self.tick()
            stop_event.wait(interval)
        self._render_history()
        logger.info("Tick loop stopped")

    def elapsed_text(self) -> str:
        return format_duration(self._session.elapsed())

    def persisted_state(self) -> PersistedState:
        """Values to write back to the configuration file."""
        active = self._session.active
        return PersistedState(
            last_station=active.id if active is not None else self._config.last_station,
            volume=self._session.volume,
            log_level=self._config.log_level,
            udp_port=self._config.control.udp_port,
            udp_enabled=self._config.control.udp_enabled,
        )

    def shutdown(self) -> None:
        """Stop playback and flush remaining history."""
        logger.info("Shutting down radio controller")
        self._session.stop(soft=False)
        self._render_history()

    def _receive_stations(self) -> None:
        if self._stations_received:
            return
        try:
            result = self._station_results.get_nowait()
        except queue.Empty:
            return

        self._stations_received = True
        if isinstance(result, StationError):
            self._history.emit(f"Failed to load stations: {result}", MessageType.ERROR)
            return

        self._router.set_stations(result)
        self._history.emit(f"Loaded {len(result)} stations", MessageType.SYSTEM)

        if self._autoplay_station is not None:
            self._commands.put(
                ControlCommand.tune(self._autoplay_station, origin=CommandOrigin.STARTUP)
            )

    def _apply_commands(self) -> None:
        while True:
            try:
                command = self._commands.get_nowait()
            except queue.Empty:
                return
            self._router.apply(command)

    def _render_history(self) -> None:
        for entry in self._history.drain():
            if is_visible(entry, self._config.log_level):
                render(entry)

    def _render_status(self) -> None:
        view = self._router.view
        if view.show_help and not self._help_shown:
            for line in KEY_HELP:
                console.info(line)
        self._help_shown = view.show_help

        status = self._status_line()
        if status != self._last_status:
            console.info(status)
            self._last_status = status

    def _status_line(self) -> str:
        session = self._session
        state = session.state.name.lower()
        if session.loading:
            state = "loading"

        selected = self._router.selected
        active = session.active
        parts = [state]
        if active is not None and session.state is not PlaybackState.STOPPED:
            parts.append(active.title)
        elif selected is not None:
            parts.append(f"> {selected.title}")
        if session.now_playing and session.state is PlaybackState.PLAYING:
            parts.append(session.now_playing)
        parts.append(f"vol {session.volume:.1f}")
        return " | ".join(parts)
