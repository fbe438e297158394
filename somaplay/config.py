"""Configuration loader for somaplay.

Loads and validates the YAML configuration file using Pydantic, and writes
the persisted player state back into it on exit.
"""

import logging
import re
from pathlib import Path
from typing import Any, Literal, Self

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    DEFAULT_DIRECTORY_URL,
    DEFAULT_UDP_PORT,
    DEFAULT_VOLUME,
    GRACE_PERIOD_SECONDS,
    PREFETCH_SECONDS,
    RING_BUFFER_BYTES,
    STALL_SECONDS,
    TICK_INTERVAL_SECONDS,
    VOLUME_MAX,
    VOLUME_MIN,
)
from .models import (
    AppConfig,
    AudioConfig,
    ControlConfig,
    MonitorConfig,
    PersistedState,
    StreamBufferConfig,
    StreamConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/somaplay/config.yaml").expanduser()

MIN_BUFFER_BYTES = 512 * 1024
MAX_BUFFER_BYTES = 4 * 1024 * 1024


class BufferSchema(BaseModel):
    """Schema for the mpv demuxer cache."""

    enabled: bool = True
    cache_seconds: float = Field(default=8.0, ge=1.0)
    demuxer_max_bytes: str = "32MiB"

    @field_validator("demuxer_max_bytes")
    @classmethod
    def validate_demuxer_max_bytes(cls, v: str) -> str:
        cleaned = v.strip()
        if not re.fullmatch(
            r"\d+(B|KB|KiB|MB|MiB|GB|GiB)",
            cleaned,
            re.IGNORECASE,
        ):
            msg = "demuxer_max_bytes must be like '32MiB' or '64KB'"
            raise ValueError(msg)
        return cleaned


class AudioSchema(BaseModel):
    """Schema for audio output configuration."""

    backend: Literal["auto", "alsa", "pipewire", "pulse", "coreaudio"] = "auto"
    device: str = "default"
    buffer: BufferSchema = Field(default_factory=BufferSchema)


class StreamSchema(BaseModel):
    """Schema for HTTP stream and prefetch configuration."""

    prefetch_seconds: int = Field(default=PREFETCH_SECONDS, ge=5, le=10)
    buffer_bytes: int = Field(
        default=RING_BUFFER_BYTES, ge=MIN_BUFFER_BYTES, le=MAX_BUFFER_BYTES
    )
    connect_timeout_seconds: float = Field(default=10.0, gt=0.0)
    read_timeout_seconds: float = Field(default=15.0, gt=0.0)


class MonitorSchema(BaseModel):
    """Schema for underrun monitor configuration."""

    tick_interval_seconds: float = Field(default=TICK_INTERVAL_SECONDS, gt=0.0, le=5.0)
    grace_period_seconds: float = Field(default=GRACE_PERIOD_SECONDS, ge=0.0)
    stall_seconds: float = Field(default=STALL_SECONDS, gt=0.0)
    backoff_base_seconds: float = Field(default=BACKOFF_BASE_SECONDS, gt=0.0)
    backoff_max_seconds: float = Field(default=BACKOFF_MAX_SECONDS, gt=0.0)

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> Self:
        """Ensure the backoff cap is not below the base delay."""
        if self.backoff_max_seconds < self.backoff_base_seconds:
            msg = (
                f"backoff_max_seconds {self.backoff_max_seconds} is below "
                f"backoff_base_seconds {self.backoff_base_seconds}"
            )
            raise ValueError(msg)
        return self


class ControlSchema(BaseModel):
    """Schema for the UDP control channel."""

    udp_enabled: bool = False
    udp_port: int = Field(default=DEFAULT_UDP_PORT, ge=1, le=65535)


class ConfigSchema(BaseModel):
    """Schema for complete configuration."""

    audio: AudioSchema = Field(default_factory=AudioSchema)
    stream: StreamSchema = Field(default_factory=StreamSchema)
    monitor: MonitorSchema = Field(default_factory=MonitorSchema)
    control: ControlSchema = Field(default_factory=ControlSchema)
    directory_url: str = DEFAULT_DIRECTORY_URL
    volume: float = Field(default=DEFAULT_VOLUME, ge=VOLUME_MIN, le=VOLUME_MAX)
    last_station: str | None = None
    log_level: int = Field(default=1, ge=0, le=3)

    @field_validator("last_station")
    @classmethod
    def validate_last_station(cls, v: str | None) -> str | None:
        if v is None:
            return None
        cleaned = v.strip()
        return cleaned or None


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    """Load and validate configuration from a YAML file.

    A missing file yields the defaults.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If the file is not valid YAML or the configuration is invalid.
    """
    raw_config = _read_yaml(config_path)
    schema = ConfigSchema.model_validate(raw_config)

    return AppConfig(
        audio=AudioConfig(
            backend=schema.audio.backend,
            device=schema.audio.device,
            buffer=StreamBufferConfig(
                enabled=schema.audio.buffer.enabled,
                cache_seconds=schema.audio.buffer.cache_seconds,
                demuxer_max_bytes=schema.audio.buffer.demuxer_max_bytes,
            ),
        ),
        stream=StreamConfig(
            prefetch_seconds=schema.stream.prefetch_seconds,
            buffer_bytes=schema.stream.buffer_bytes,
            connect_timeout_seconds=schema.stream.connect_timeout_seconds,
            read_timeout_seconds=schema.stream.read_timeout_seconds,
        ),
        monitor=MonitorConfig(
            tick_interval_seconds=schema.monitor.tick_interval_seconds,
            grace_period_seconds=schema.monitor.grace_period_seconds,
            stall_seconds=schema.monitor.stall_seconds,
            backoff_base_seconds=schema.monitor.backoff_base_seconds,
            backoff_max_seconds=schema.monitor.backoff_max_seconds,
        ),
        control=ControlConfig(
            udp_enabled=schema.control.udp_enabled,
            udp_port=schema.control.udp_port,
        ),
        directory_url=schema.directory_url,
        volume=schema.volume,
        last_station=schema.last_station,
        log_level=schema.log_level,
        config_path=config_path,
    )


def save_state(config_path: Path, state: PersistedState) -> None:
    """Merge persisted player state into the YAML configuration file.

    Unrelated keys already in the file are kept.

    Raises:
        OSError: If the file cannot be written.
        ValueError: If the existing file is not valid YAML.
    """
    document = _read_yaml(config_path)
    document["volume"] = round(state.volume, 2)
    document["last_station"] = state.last_station
    document["log_level"] = state.log_level

    control = document.get("control")
    if not isinstance(control, dict):
        control = {}
    control["udp_port"] = state.udp_port
    control["udp_enabled"] = state.udp_enabled
    document["control"] = control

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(document, f, sort_keys=False)
    logger.info("Saved player state to %s", config_path)


def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        logger.info("No configuration file at %s, using defaults", config_path)
        return {}

    try:
        with config_path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in {config_path}: {e}"
        raise ValueError(msg) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        msg = f"Configuration root must be a mapping: {config_path}"
        raise ValueError(msg)
    return raw
