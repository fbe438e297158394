"""Audio sink for somaplay.

MpvSink decodes a bound DecodedSource through libmpv. SinkActor owns a sink
on a dedicated thread so callers never touch the device directly.
"""

import contextlib
import importlib
import logging
import queue
from collections.abc import Callable, Iterator
from functools import partial
from threading import Event, Thread
from typing import Any, Protocol

from .errors import AudioDeviceError
from .models import IDLE_SINK_STATUS, AudioConfig, SinkStatus
from .stream import DecodedSource

logger = logging.getLogger(__name__)

SINK_POLL_INTERVAL_SECONDS = 0.1


class AudioSink(Protocol):
    """Protocol for the audio output device."""

    def bind(self, source: DecodedSource, volume: float) -> None:
        """Start playing a decoded source at the given volume."""
        ...

    def stop(self) -> None:
        """Stop playback and empty the sink."""
        ...

    def pause(self) -> None:
        """Pause output, keeping the bound source."""
        ...

    def resume(self) -> None:
        """Resume output."""
        ...

    def set_volume(self, volume: float) -> None:
        """Set linear volume (1.0 is unity gain)."""
        ...

    def status(self) -> SinkStatus:
        """Report queue and position health."""
        ...

    def close(self) -> None:
        """Release the output device."""
        ...


def _load_mpv_factory() -> Callable[..., Any]:
    mpv = importlib.import_module("mpv")
    return mpv.MPV


class MpvSink:
    """libmpv-backed sink reading audio from a python:// stream."""

    def __init__(
        self,
        config: AudioConfig,
        player_factory: Callable[..., Any] | None = None,
    ) -> None:
        """Open the output device.

        Args:
            config: Audio output configuration.
            player_factory: Constructor for the player (defaults to mpv.MPV).

        Raises:
            AudioDeviceError: libmpv is missing or the device cannot be opened.
        """
        self._config = config
        self._source: DecodedSource | None = None
        self._stream: Any = None
        self._serial = 0
        self._player = self._create_player(player_factory)

    def _create_player(self, player_factory: Callable[..., Any] | None) -> Any:
        kwargs: dict[str, str | bool | int | float] = {
            "video": False,
            "terminal": False,
            "input_default_bindings": False,
            "input_vo_keyboard": False,
            "volume_max": 200,
        }

        if self._config.backend != "auto":
            kwargs["ao"] = self._config.backend

        # Only set explicit audio device if not "default"
        if self._config.device != "default":
            kwargs["audio_device"] = f"{self._config.backend}/{self._config.device}"

        buffer_config = self._config.buffer
        if buffer_config.enabled:
            kwargs["cache"] = "yes"
            kwargs["cache_secs"] = buffer_config.cache_seconds
            kwargs["demuxer_max_bytes"] = buffer_config.demuxer_max_bytes

        try:
            factory = player_factory or _load_mpv_factory()
            player = factory(**kwargs)
        except (ImportError, OSError, AttributeError) as e:
            msg = f"libmpv is not available: {e}"
            raise AudioDeviceError(msg) from e
        except Exception as e:
            msg = f"Failed to open audio output: {e}"
            raise AudioDeviceError(msg) from e

        logger.info(
            "Audio output ready (backend=%s, device=%s)",
            self._config.backend,
            self._config.device,
        )
        return player

    def bind(self, source: DecodedSource, volume: float) -> None:
        self._release_source()
        self._serial += 1
        name = f"somaplay-{self._serial}"

        @self._player.python_stream(name)
        def reader() -> Iterator[bytes]:
            yield from source.chunks()

        self._stream = reader
        self._source = source
        self._player.volume = _to_mpv_volume(volume)
        self._player.pause = False
        self._player.play(f"python://{name}")
        logger.debug("Bound %s to python://%s", source.url, name)

    def stop(self) -> None:
        self._player.stop()
        self._release_source()

    def pause(self) -> None:
        self._player.pause = True

    def resume(self) -> None:
        self._player.pause = False

    def set_volume(self, volume: float) -> None:
        self._player.volume = _to_mpv_volume(volume)

    def status(self) -> SinkStatus:
        paused = bool(self._read_property("pause"))
        if self._source is None:
            return SinkStatus(
                queue_len=0,
                is_empty=True,
                is_paused=paused,
                position=IDLE_SINK_STATUS.position,
            )

        idle = bool(self._read_property("idle_active"))
        position = self._read_property("playback_time")
        return SinkStatus(
            queue_len=0 if idle else 1,
            is_empty=idle,
            is_paused=paused,
            position=float(position) if position is not None else 0.0,
        )

    def close(self) -> None:
        self._release_source()
        with contextlib.suppress(Exception):
            self._player.terminate()

    def _read_property(self, name: str) -> Any:
        try:
            return getattr(self._player, name)
        except Exception as e:
            logger.debug("Could not read mpv property %s: %s", name, e)
            return None

    def _release_source(self) -> None:
        if self._stream is not None:
            with contextlib.suppress(KeyError):
                self._stream.unregister()
            self._stream = None
        if self._source is not None:
            self._source.close()
            self._source = None


def _to_mpv_volume(volume: float) -> float:
    return round(volume * 100, 1)


class SinkActor:
    """Runs a sink on its own thread behind an operation queue.

    Operations are applied in submission order. A status snapshot is
    refreshed after every operation and on each poll interval, so status()
    never blocks on the device.
    """

    def __init__(
        self,
        sink: AudioSink,
        poll_interval: float = SINK_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._sink = sink
        self._poll_interval = poll_interval
        self._ops: queue.Queue[Callable[[], None] | None] = queue.Queue()
        self._status = IDLE_SINK_STATUS
        self._thread: Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = Thread(target=self._run, name="sink-actor", daemon=True)
        self._thread.start()

    def bind(self, source: DecodedSource, volume: float) -> None:
        self._submit(partial(self._sink.bind, source, volume))

    def stop(self) -> None:
        self._submit(self._sink.stop)

    def pause(self) -> None:
        self._submit(self._sink.pause)

    def resume(self) -> None:
        self._submit(self._sink.resume)

    def set_volume(self, volume: float) -> None:
        self._submit(partial(self._sink.set_volume, volume))

    def status(self) -> SinkStatus:
        return self._status

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every operation submitted so far has been applied."""
        done = Event()
        self._submit(done.set)
        return done.wait(timeout)

    def close(self, timeout: float = 2.0) -> None:
        """Stop the actor thread and release the device."""
        if self._thread is None:
            self._sink.close()
            return
        self._ops.put(None)
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Sink actor did not stop within %.1fs", timeout)
        self._thread = None

    def _submit(self, op: Callable[[], None]) -> None:
        self._ops.put(op)

    def _run(self) -> None:
        while True:
            try:
                op = self._ops.get(timeout=self._poll_interval)
            except queue.Empty:
                self._refresh()
                continue

            if op is None:
                break

            try:
                op()
            except Exception:
                logger.exception("Sink operation failed")
            self._refresh()

        self._sink.close()
        logger.debug("Sink actor stopped")

    def _refresh(self) -> None:
        try:
            self._status = self._sink.status()
        except Exception as e:
            logger.debug("Sink status unavailable: %s", e)
