"""Shared test fixtures and fakes for somaplay tests."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from somaplay.errors import StreamError
from somaplay.history import HistoryLog
from somaplay.models import (
    AppConfig,
    AudioConfig,
    ControlConfig,
    MessageType,
    MonitorConfig,
    SinkStatus,
    Station,
    StreamBufferConfig,
    StreamConfig,
)
from somaplay.session import PlaybackSession

# ---------------------------------------------------------------------------
# Fake clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fake sink and sources
# ---------------------------------------------------------------------------


class FakeSource:
    """Stand-in for DecodedSource with scripted title updates."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.closed = False
        self.pending_titles: list[str] = []

    def titles(self) -> list[str]:
        pending = self.pending_titles
        self.pending_titles = []
        return pending

    def chunks(self) -> Iterator[bytes]:
        yield b"\x00" * 16

    def close(self) -> None:
        self.closed = True


class FakeSink:
    """In-memory AudioSink recording every call.

    Once bound, the sink reports one queued item and a position that only
    moves when a test calls `advance`.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.source: FakeSource | None = None
        self.volume: float | None = None
        self.paused = False
        self.position = 0.0
        self.starved = False
        self.closed = False

    def bind(self, source: FakeSource, volume: float) -> None:
        self.calls.append("bind")
        self.source = source
        self.volume = volume
        self.paused = False
        self.position = 0.0
        self.starved = False

    def stop(self) -> None:
        self.calls.append("stop")
        self.source = None
        self.position = 0.0

    def pause(self) -> None:
        self.calls.append("pause")
        self.paused = True

    def resume(self) -> None:
        self.calls.append("resume")
        self.paused = False

    def set_volume(self, volume: float) -> None:
        self.calls.append("set_volume")
        self.volume = volume

    def status(self) -> SinkStatus:
        if self.source is None or self.starved:
            return SinkStatus(
                queue_len=0, is_empty=True, is_paused=self.paused, position=self.position
            )
        return SinkStatus(
            queue_len=1, is_empty=False, is_paused=self.paused, position=self.position
        )

    def close(self) -> None:
        self.closed = True

    # --- Test helpers ---

    def advance(self, seconds: float) -> None:
        """Simulate audible playback progressing."""
        if self.source is not None and not self.paused and not self.starved:
            self.position += seconds


class FakePipeline:
    """StreamConnector returning FakeSource values or scripted errors."""

    def __init__(self) -> None:
        self.connects: list[str] = []
        self.cancels: list[threading.Event] = []
        self.sources: list[FakeSource] = []
        self.errors: list[StreamError | None] = []

    def fail_next(self, error: StreamError) -> None:
        self.errors.append(error)

    def connect(self, url: str, cancel: threading.Event) -> FakeSource:
        self.connects.append(url)
        self.cancels.append(cancel)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        source = FakeSource(url)
        self.sources.append(source)
        return source


class DeferredSpawner:
    """Collects connect tasks so tests decide when they run."""

    def __init__(self) -> None:
        self.pending: list[Callable[[], None]] = []

    def __call__(self, task: Callable[[], None]) -> None:
        self.pending.append(task)

    def run_next(self) -> None:
        self.pending.pop(0)()

    def run_all(self) -> None:
        while self.pending:
            self.run_next()


def run_now(task: Callable[[], None]) -> None:
    task()


# ---------------------------------------------------------------------------
# Fake MPV player
# ---------------------------------------------------------------------------


class FakeMpvPlayer:
    """Mock of mpv.MPV with controllable properties."""

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs
        self.volume: float = 100.0
        self.pause = False
        self.idle_active = True
        self.playback_time: float | None = None
        self.played: list[str] = []
        self.streams: dict[str, Callable[[], Iterator[bytes]]] = {}
        self.unregistered: list[str] = []
        self.stopped = 0
        self.terminated = False

    def python_stream(
        self, name: str
    ) -> Callable[[Callable[[], Iterator[bytes]]], Callable[[], Iterator[bytes]]]:
        """Decorator registering a python:// stream generator."""

        def register(
            func: Callable[[], Iterator[bytes]],
        ) -> Callable[[], Iterator[bytes]]:
            if name in self.streams:
                raise KeyError(name)
            self.streams[name] = func

            def unregister() -> None:
                self.streams.pop(name)
                self.unregistered.append(name)

            func.unregister = unregister  # type: ignore[attr-defined]
            return func

        return register

    def play(self, url: str) -> None:
        if self.terminated:
            raise RuntimeError("Player terminated")
        self.played.append(url)
        self.idle_active = False
        self.playback_time = 0.0

    def stop(self) -> None:
        self.stopped += 1
        self.idle_active = True
        self.playback_time = None

    def terminate(self) -> None:
        self.terminated = True


# ---------------------------------------------------------------------------
# Config and station factories
# ---------------------------------------------------------------------------


def make_stream_buffer_config() -> StreamBufferConfig:
    return StreamBufferConfig(
        enabled=True,
        cache_seconds=8.0,
        demuxer_max_bytes="32MiB",
    )


def make_audio_config(backend: str = "auto", device: str = "default") -> AudioConfig:
    return AudioConfig(
        backend=backend,
        device=device,
        buffer=make_stream_buffer_config(),
    )


def make_stream_config(
    prefetch_seconds: int = 5,
    buffer_bytes: int = 1024 * 1024,
) -> StreamConfig:
    return StreamConfig(
        prefetch_seconds=prefetch_seconds,
        buffer_bytes=buffer_bytes,
        connect_timeout_seconds=1.0,
        read_timeout_seconds=1.0,
    )


def make_monitor_config(
    grace_period_seconds: float = 5.0,
    stall_seconds: float = 5.0,
) -> MonitorConfig:
    return MonitorConfig(
        tick_interval_seconds=0.25,
        grace_period_seconds=grace_period_seconds,
        stall_seconds=stall_seconds,
        backoff_base_seconds=0.5,
        backoff_max_seconds=30.0,
    )


def make_control_config(udp_enabled: bool = False) -> ControlConfig:
    return ControlConfig(udp_enabled=udp_enabled, udp_port=8069)


def make_app_config(
    config_path: Path,
    last_station: str | None = None,
    log_level: int = 1,
) -> AppConfig:
    return AppConfig(
        audio=make_audio_config(),
        stream=make_stream_config(),
        monitor=make_monitor_config(),
        control=make_control_config(),
        directory_url="http://directory.example.com/channels.json",
        volume=1.0,
        last_station=last_station,
        log_level=log_level,
        config_path=config_path,
    )


def make_station(station_id: str, title: str | None = None) -> Station:
    return Station(
        id=station_id,
        title=title or station_id.title(),
        description=f"{station_id} description",
        dj="DJ Test",
        genre="ambient",
        url=f"http://stream.example.com/{station_id}.mp3",
        image=f"http://img.example.com/{station_id}.png",
        last_playing="Artist - Track",
    )


def make_stations() -> tuple[Station, ...]:
    return (
        make_station("groovesalad", "Groove Salad"),
        make_station("dronezone", "Drone Zone"),
        make_station("lush", "Lush"),
    )


def messages_of(history: HistoryLog, message_type: MessageType) -> list[str]:
    """Drain history and return the texts of entries of one type."""
    history.drain()
    return [e.message for e in history.entries if e.message_type is message_type]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def history() -> HistoryLog:
    return HistoryLog()


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def pipeline() -> FakePipeline:
    return FakePipeline()


@pytest.fixture
def spawner() -> DeferredSpawner:
    return DeferredSpawner()


@pytest.fixture
def session(
    sink: FakeSink,
    pipeline: FakePipeline,
    history: HistoryLog,
    clock: FakeClock,
) -> PlaybackSession:
    """Session whose connects complete synchronously."""
    return PlaybackSession(sink, pipeline, history, clock=clock, spawn=run_now)
