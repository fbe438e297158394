"""Domain models for somaplay.

Immutable data structures representing configuration and application state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path


class PlaybackState(Enum):
    """Playback state of the session."""

    PLAYING = auto()
    PAUSED = auto()
    STOPPED = auto()


class MessageType(Enum):
    """Severity tag of a history entry."""

    ERROR = auto()
    INFO = auto()
    SYSTEM = auto()
    BACKGROUND = auto()
    PLAYBACK = auto()


@dataclass(frozen=True)
class Station:
    """A radio station from the directory."""

    id: str
    title: str
    description: str
    dj: str
    genre: str
    url: str
    image: str
    last_playing: str


@dataclass(frozen=True)
class HistoryMessage:
    """A single entry of the in-memory history log."""

    message: str
    message_type: MessageType
    timestamp: str


@dataclass(frozen=True)
class SinkStatus:
    """Snapshot of the audio sink health."""

    queue_len: int
    is_empty: bool
    is_paused: bool
    position: float


IDLE_SINK_STATUS = SinkStatus(queue_len=0, is_empty=True, is_paused=False, position=0.0)


@dataclass(frozen=True)
class StreamBufferConfig:
    """Demuxer cache configuration for MPV."""

    enabled: bool
    cache_seconds: float
    demuxer_max_bytes: str


@dataclass(frozen=True)
class AudioConfig:
    """Audio output configuration."""

    backend: str
    device: str
    buffer: StreamBufferConfig


@dataclass(frozen=True)
class StreamConfig:
    """HTTP stream and prefetch configuration."""

    prefetch_seconds: int
    buffer_bytes: int
    connect_timeout_seconds: float
    read_timeout_seconds: float


@dataclass(frozen=True)
class MonitorConfig:
    """Underrun monitor configuration."""

    tick_interval_seconds: float
    grace_period_seconds: float
    stall_seconds: float
    backoff_base_seconds: float
    backoff_max_seconds: float


@dataclass(frozen=True)
class ControlConfig:
    """UDP control channel configuration."""

    udp_enabled: bool
    udp_port: int


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""

    audio: AudioConfig
    stream: StreamConfig
    monitor: MonitorConfig
    control: ControlConfig
    directory_url: str
    volume: float
    last_station: str | None
    log_level: int
    config_path: Path


@dataclass(frozen=True)
class PersistedState:
    """Values written back to the config file on exit."""

    last_station: str | None
    volume: float
    log_level: int
    udp_port: int
    udp_enabled: bool


@dataclass(frozen=True)
class ViewState:
    """Cursor and panel state owned by the command router."""

    selected_index: int | None
    show_help: bool
    history_index: int | None

    def with_selection(self, index: int | None) -> ViewState:
        """Return new state with updated station cursor."""
        return ViewState(
            selected_index=index,
            show_help=self.show_help,
            history_index=self.history_index,
        )

    def with_help(self, show_help: bool) -> ViewState:
        """Return new state with updated help visibility."""
        return ViewState(
            selected_index=self.selected_index,
            show_help=show_help,
            history_index=self.history_index,
        )

    def with_history_index(self, index: int | None) -> ViewState:
        """Return new state with updated history cursor."""
        return ViewState(
            selected_index=self.selected_index,
            show_help=self.show_help,
            history_index=index,
        )
