"""Playback session: the state machine behind play, pause and stop.

All methods are called from the tick loop. Stream connects run on a
background thread and post their result back; `poll()` applies it. Each
play request gets a new generation so results from superseded connects are
discarded.
"""

import logging
import queue
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from threading import Event, Thread
from typing import Protocol

from .constants import DEFAULT_VOLUME, VOLUME_MAX, VOLUME_MIN
from .errors import StreamCancelled, StreamError
from .history import HistoryLog
from .models import MessageType, PlaybackState, SinkStatus, Station
from .sink import AudioSink
from .stream import DecodedSource, StreamConnector

logger = logging.getLogger(__name__)

type Spawner = Callable[[Callable[[], None]], None]


class SessionListener(Protocol):
    """Observer of station loading transitions."""

    def loading_started(self) -> None: ...

    def loading_finished(self, success: bool) -> None: ...


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a background connect attempt."""

    generation: int
    station_index: int
    source: DecodedSource | None
    error: StreamError | None


def spawn_thread(task: Callable[[], None]) -> None:
    """Run a connect task on a daemon thread."""
    Thread(target=task, name="stream-connect", daemon=True).start()


def clamp_volume(volume: float) -> float:
    """Clamp to the supported linear range, rounded to two decimals."""
    return round(max(VOLUME_MIN, min(VOLUME_MAX, volume)), 2)


class PlaybackSession:
    """Owns the sink binding and the playback state machine."""

    def __init__(
        self,
        sink: AudioSink,
        pipeline: StreamConnector,
        history: HistoryLog,
        volume: float = DEFAULT_VOLUME,
        clock: Callable[[], float] = time.monotonic,
        spawn: Spawner = spawn_thread,
    ) -> None:
        self._sink = sink
        self._pipeline = pipeline
        self._history = history
        self._clock = clock
        self._spawn = spawn

        self._state = PlaybackState.STOPPED
        self._volume = clamp_volume(volume)
        self._playback_start_time: float | None = None
        self._last_pause_time: float | None = None
        self._total_played = 0.0

        self._active_station: int | None = None
        self._active: Station | None = None
        self._source: DecodedSource | None = None
        self._now_playing: str | None = None

        self._generation = 0
        self._cancel: Event | None = None
        self._loading = False
        self._state_before_load = PlaybackState.STOPPED
        self._results: queue.Queue[ConnectResult] = queue.Queue()
        self._listeners: list[SessionListener] = []

    # --- Read-only state ---

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def active_station(self) -> int | None:
        """Index of the station bound (or being bound) to the sink."""
        return self._active_station

    @property
    def active(self) -> Station | None:
        return self._active

    @property
    def playback_start_time(self) -> float | None:
        return self._playback_start_time

    @property
    def last_pause_time(self) -> float | None:
        return self._last_pause_time

    @property
    def total_played(self) -> float:
        return self._total_played

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def now_playing(self) -> str | None:
        return self._now_playing

    @property
    def generation(self) -> int:
        return self._generation

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def sink_status(self) -> SinkStatus:
        return self._sink.status()

    def elapsed(self) -> float:
        """Accumulated listening time including the running interval."""
        if (
            self._state is PlaybackState.PLAYING
            and self._playback_start_time is not None
        ):
            return self._total_played + max(
                0.0, self._clock() - self._playback_start_time
            )
        return self._total_played

    # --- Transitions ---

    def play(self, index: int, station: Station) -> None:
        """Start connecting to a station, superseding any pending connect."""
        now = self._clock()
        self._cancel_pending(notify=False)

        self._sink.stop()
        self._drop_source()
        self._fold_running_interval(now)
        if index != self._active_station:
            self._total_played = 0.0

        self._state_before_load = (
            PlaybackState.PLAYING
            if self._state is PlaybackState.PLAYING
            else PlaybackState.STOPPED
        )
        self._state = self._state_before_load
        self._active_station = index
        self._active = station
        self._now_playing = None
        self._playback_start_time = now
        self._last_pause_time = None

        self._generation += 1
        generation = self._generation
        cancel = Event()
        self._cancel = cancel
        self._loading = True

        self._history.emit(f"Tuning to {station.title}", MessageType.SYSTEM)
        for listener in self._listeners:
            listener.loading_started()

        self._spawn(partial(self._connect, generation, index, station, cancel))

    def restart(self) -> None:
        """Replay the active station (used for underrun recovery)."""
        if self._active_station is None or self._active is None:
            logger.debug("Restart requested with no active station")
            return
        self.play(self._active_station, self._active)

    def stop(self, soft: bool = False) -> None:
        """Stop playback; with `soft`, a stopped session resumes instead."""
        now = self._clock()
        self._cancel_pending(notify=True)

        match self._state:
            case PlaybackState.PLAYING:
                self._sink.stop()
                self._drop_source()
                self._fold_running_interval(now)
                self._playback_start_time = None
                self._last_pause_time = now
                self._state = PlaybackState.STOPPED
                self._history.emit("Playback stopped", MessageType.SYSTEM)
            case PlaybackState.STOPPED if soft:
                self._sink.resume()
                self._playback_start_time = now
                self._state = PlaybackState.PLAYING
            case _:
                pass

    def pause(self) -> None:
        """Toggle between Playing and Paused."""
        now = self._clock()
        match self._state:
            case PlaybackState.PLAYING:
                self._sink.pause()
                self._fold_running_interval(now)
                self._playback_start_time = None
                self._last_pause_time = now
                self._state = PlaybackState.PAUSED
                self._history.emit("Paused", MessageType.SYSTEM)
            case PlaybackState.PAUSED:
                self._sink.resume()
                self._playback_start_time = now
                self._state = PlaybackState.PLAYING
                self._history.emit("Resumed", MessageType.SYSTEM)
            case PlaybackState.STOPPED:
                pass

    def set_volume(self, volume: float) -> float:
        """Set the clamped volume on the sink and return the applied value."""
        self._volume = clamp_volume(volume)
        self._sink.set_volume(self._volume)
        return self._volume

    def poll(self) -> None:
        """Apply finished connects and collect new track titles."""
        while True:
            try:
                result = self._results.get_nowait()
            except queue.Empty:
                break
            self._apply_result(result)
        self._collect_titles()

    # --- Internals ---

    def _connect(
        self, generation: int, index: int, station: Station, cancel: Event
    ) -> None:
        try:
            source = self._pipeline.connect(station.url, cancel)
        except StreamError as e:
            self._results.put(ConnectResult(generation, index, None, e))
            return
        except Exception as e:
            logger.exception("Unexpected error connecting to %s", station.url)
            self._results.put(ConnectResult(generation, index, None, StreamError(str(e))))
            return
        self._results.put(ConnectResult(generation, index, source, None))

    def _apply_result(self, result: ConnectResult) -> None:
        if result.generation != self._generation:
            logger.debug("Discarding stale connect result #%d", result.generation)
            if result.source is not None:
                result.source.close()
            return

        self._loading = False
        self._cancel = None

        if result.error is not None or result.source is None:
            if not isinstance(result.error, StreamCancelled):
                self._history.emit(
                    f"Failed to start playback: {result.error}", MessageType.ERROR
                )
            if self._state_before_load is not PlaybackState.PLAYING:
                self._state = PlaybackState.STOPPED
                self._playback_start_time = None
            self._notify_finished(success=False)
            return

        self._sink.bind(result.source, self._volume)
        self._source = result.source
        if self._state is PlaybackState.PAUSED:
            self._sink.pause()
            self._notify_finished(success=True)
            return
        if self._state is not PlaybackState.PLAYING:
            self._playback_start_time = self._clock()
        self._state = PlaybackState.PLAYING
        title = self._active.title if self._active is not None else "station"
        self._history.emit(f"Playing {title}", MessageType.INFO)
        self._notify_finished(success=True)

    def _collect_titles(self) -> None:
        if self._source is None:
            return
        station = self._active.title if self._active is not None else ""
        for title in self._source.titles():
            self._now_playing = title
            self._history.emit(f"{station} :: {title}", MessageType.PLAYBACK)

    def _cancel_pending(self, notify: bool) -> None:
        if not self._loading:
            return
        if self._cancel is not None:
            self._cancel.set()
        self._cancel = None
        self._loading = False
        self._generation += 1
        if self._state_before_load is not PlaybackState.PLAYING:
            self._state = PlaybackState.STOPPED
            self._playback_start_time = None
        if notify:
            self._notify_finished(success=False)

    def _notify_finished(self, success: bool) -> None:
        for listener in self._listeners:
            listener.loading_finished(success)

    def _fold_running_interval(self, now: float) -> None:
        if (
            self._state is PlaybackState.PLAYING
            and self._playback_start_time is not None
        ):
            self._total_played += max(0.0, now - self._playback_start_time)

    def _drop_source(self) -> None:
        if self._source is not None:
            self._source.close()
            self._source = None
