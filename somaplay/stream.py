"""Stream pipeline: opens a live ICY/HTTP stream and prefetches it.

The HTTP body is read on a producer thread, ICY metadata blocks are stripped
out and the remaining audio bytes go into a bounded ring buffer. The sink
decodes from that buffer on its own threads.
"""

from __future__ import annotations

import logging
import queue
import re
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Protocol

import requests

from .constants import (
    FALLBACK_BITRATE_KBPS,
    METADATA_QUEUE_SIZE,
    READ_CHUNK_BYTES,
    USER_AGENT,
)
from .errors import ConnectError, PrefetchError, StreamCancelled
from .history import HistoryLog
from .models import MessageType, StreamConfig

logger = logging.getLogger(__name__)

_STREAM_TITLE_RE = re.compile(r"StreamTitle='(.*?)';(?=\w+=|$)", re.DOTALL)

_WAIT_SLICE_SECONDS = 0.1


@dataclass(frozen=True)
class IcyHeaders:
    """ICY response headers relevant to playback."""

    bitrate: int | None
    metaint: int | None
    name: str | None
    genre: str | None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> IcyHeaders:
        lowered = {key.lower(): value for key, value in headers.items()}
        return cls(
            bitrate=_parse_bitrate(lowered.get("icy-br")),
            metaint=_to_positive_int(lowered.get("icy-metaint")),
            name=(lowered.get("icy-name") or "").strip() or None,
            genre=(lowered.get("icy-genre") or "").strip() or None,
        )


def prefetch_bytes(bitrate_kbps: int, seconds: int) -> int:
    """Bytes to buffer before playback: kbit/s / 8 * 1024 * seconds."""
    return bitrate_kbps // 8 * 1024 * seconds


def parse_stream_title(metadata_text: str) -> str | None:
    """Extract the StreamTitle value from an ICY metadata block."""
    match = _STREAM_TITLE_RE.search(metadata_text)
    if match is None:
        return None
    title = match.group(1).strip()
    return title or None


def _parse_bitrate(value: str | None) -> int | None:
    if value is None:
        return None
    # Some servers send "128,128" for multi-bitrate streams.
    return _to_positive_int(value.split(",")[0])


def _to_positive_int(value: str | None) -> int | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned.isdigit():
        return None
    number = int(cleaned)
    return number if number > 0 else None


class IcyMetadataReader:
    """Splits an ICY byte stream into audio bytes and title updates.

    With `metaint` set, the server interleaves one length byte (in 16-byte
    units) and a metadata block after every `metaint` audio bytes.
    """

    def __init__(self, metaint: int | None, on_title: Callable[[str], None]) -> None:
        self._metaint = metaint
        self._on_title = on_title
        self._until_meta = metaint or 0
        self._meta_remaining: int | None = None
        self._meta = bytearray()
        self._last_title: str | None = None

    def feed(self, chunk: bytes) -> bytes:
        """Consume raw bytes and return only the audio portion."""
        if not self._metaint:
            return chunk

        audio = bytearray()
        pos = 0
        size = len(chunk)
        while pos < size:
            if self._meta_remaining is not None:
                take = min(self._meta_remaining, size - pos)
                self._meta += chunk[pos : pos + take]
                pos += take
                self._meta_remaining -= take
                if self._meta_remaining == 0:
                    self._finish_block()
            elif self._until_meta == 0:
                block_length = chunk[pos] * 16
                pos += 1
                if block_length == 0:
                    self._until_meta = self._metaint
                else:
                    self._meta_remaining = block_length
            else:
                take = min(self._until_meta, size - pos)
                audio += chunk[pos : pos + take]
                pos += take
                self._until_meta -= take
        return bytes(audio)

    def _finish_block(self) -> None:
        text = (
            bytes(self._meta)
            .rstrip(b"\x00")
            .decode("utf-8", errors="replace")
            .strip()
        )
        self._meta.clear()
        self._meta_remaining = None
        self._until_meta = self._metaint or 0

        title = parse_stream_title(text)
        if title is None or title == self._last_title:
            return
        self._last_title = title
        self._on_title(title)


class RingBuffer:
    """Bounded byte buffer between the network producer and the decoder.

    Writers block while the buffer is full; memory never grows past
    `capacity`.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            msg = "capacity must be positive"
            raise ValueError(msg)
        self._capacity = capacity
        self._data = bytearray()
        self._cond = threading.Condition()
        self._closed = False
        self._error: BaseException | None = None
        self._written = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def fill_level(self) -> int:
        with self._cond:
            return len(self._data)

    @property
    def written(self) -> int:
        with self._cond:
            return self._written

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def error(self) -> BaseException | None:
        with self._cond:
            return self._error

    def write(self, data: bytes, cancel: threading.Event | None = None) -> bool:
        """Append data, blocking while full.

        Returns:
            False if the buffer was closed or the write was cancelled.
        """
        view = memoryview(data)
        offset = 0
        while offset < len(view):
            with self._cond:
                while len(self._data) >= self._capacity and not self._closed:
                    if cancel is not None and cancel.is_set():
                        return False
                    self._cond.wait(timeout=_WAIT_SLICE_SECONDS)
                if self._closed:
                    return False
                space = self._capacity - len(self._data)
                piece = view[offset : offset + space]
                self._data += piece
                offset += len(piece)
                self._written += len(piece)
                self._cond.notify_all()
        return True

    def read(self, size: int) -> bytes:
        """Remove up to `size` bytes, blocking until data arrives.

        Returns:
            b"" once the buffer is closed and drained.
        """
        with self._cond:
            while not self._data and not self._closed:
                self._cond.wait(timeout=_WAIT_SLICE_SECONDS)
            if not self._data:
                return b""
            chunk = bytes(self._data[:size])
            del self._data[:size]
            self._cond.notify_all()
            return chunk

    def wait_for_level(self, level: int, cancel: threading.Event) -> bool:
        """Block until `level` bytes are buffered, the buffer closes or cancel."""
        with self._cond:
            while len(self._data) < level and not self._closed:
                if cancel.is_set():
                    return False
                self._cond.wait(timeout=_WAIT_SLICE_SECONDS)
            return len(self._data) >= level and not cancel.is_set()

    def close(self, error: BaseException | None = None) -> None:
        with self._cond:
            if not self._closed:
                self._closed = True
                self._error = error
            self._cond.notify_all()


class DecodedSource:
    """A prefetched live stream, ready to be bound to the sink."""

    def __init__(
        self,
        url: str,
        headers: IcyHeaders,
        buffer: RingBuffer,
        titles: queue.Queue[str],
        cancel: threading.Event,
    ) -> None:
        self.url = url
        self.headers = headers
        self._buffer = buffer
        self._titles = titles
        self._cancel = cancel

    @property
    def buffered_bytes(self) -> int:
        return self._buffer.fill_level

    @property
    def closed(self) -> bool:
        return self._cancel.is_set()

    def chunks(self, size: int = READ_CHUNK_BYTES) -> Iterator[bytes]:
        """Yield audio bytes until the stream ends or the source is closed."""
        while not self._cancel.is_set():
            data = self._buffer.read(size)
            if not data:
                return
            yield data

    def titles(self) -> list[str]:
        """Drain pending "now playing" title updates."""
        pending: list[str] = []
        while True:
            try:
                pending.append(self._titles.get_nowait())
            except queue.Empty:
                return pending

    def close(self) -> None:
        """Stop the producer and release the buffer."""
        self._cancel.set()
        self._buffer.close()


class StreamConnector(Protocol):
    """Protocol for opening a station stream (allows testing without HTTP)."""

    def connect(self, url: str, cancel: threading.Event) -> DecodedSource:
        """Open and prefetch a stream."""
        ...


class StreamPipeline:
    """HTTP stream pipeline with ICY metadata extraction and prefetch."""

    def __init__(
        self,
        config: StreamConfig,
        history: HistoryLog,
        http: requests.Session | None = None,
    ) -> None:
        self._config = config
        self._history = history
        self._http = http or requests.Session()
        self._http.headers.update({"User-Agent": USER_AGENT, "Icy-MetaData": "1"})

    def connect(self, url: str, cancel: threading.Event) -> DecodedSource:
        """Open `url`, start buffering and wait for the prefetch target.

        Raises:
            ConnectError: The HTTP request failed.
            PrefetchError: The stream ended before enough audio was buffered.
            StreamCancelled: `cancel` was set while connecting.
        """
        self._history.emit(f"Streaming from {url}", MessageType.SYSTEM)

        try:
            response = self._http.get(
                url,
                stream=True,
                timeout=(
                    self._config.connect_timeout_seconds,
                    self._config.read_timeout_seconds,
                ),
            )
            response.raise_for_status()
        except requests.RequestException as e:
            self._history.emit(f"Connection failed: {e}", MessageType.ERROR)
            msg = f"Failed to open stream {url}: {e}"
            raise ConnectError(msg, url=url) from e

        if cancel.is_set():
            response.close()
            msg = f"Connect to {url} superseded"
            raise StreamCancelled(msg)

        self._history.emit("Got response", MessageType.BACKGROUND)

        headers = IcyHeaders.from_headers(response.headers)
        bitrate = headers.bitrate
        if bitrate is None:
            self._history.emit(
                f"No bit rate header, assuming {FALLBACK_BITRATE_KBPS} kbps",
                MessageType.BACKGROUND,
            )
            bitrate = FALLBACK_BITRATE_KBPS
        self._history.emit(f"Bit rate: {bitrate} kbps", MessageType.SYSTEM)

        buffer = RingBuffer(self._config.buffer_bytes)
        target = min(
            prefetch_bytes(bitrate, self._config.prefetch_seconds),
            buffer.capacity,
        )
        titles: queue.Queue[str] = queue.Queue(maxsize=METADATA_QUEUE_SIZE)
        reader = IcyMetadataReader(headers.metaint, lambda t: _offer(titles, t))

        producer = threading.Thread(
            target=_pump,
            args=(response, reader, buffer, cancel),
            name="stream-producer",
            daemon=True,
        )
        producer.start()

        logger.debug("Prefetching %d bytes from %s", target, url)
        if not buffer.wait_for_level(target, cancel):
            buffer.close()
            if cancel.is_set():
                msg = f"Connect to {url} superseded"
                raise StreamCancelled(msg)
            cause = buffer.error
            reason = str(cause) if cause is not None else "stream ended"
            self._history.emit(f"Prefetch failed: {reason}", MessageType.ERROR)
            msg = f"Prefetch failed for {url}: {reason}"
            raise PrefetchError(msg) from cause

        self._history.emit("Decoder ready", MessageType.BACKGROUND)
        return DecodedSource(url, headers, buffer, titles, cancel)


def _offer(titles: queue.Queue[str], title: str) -> None:
    try:
        titles.put_nowait(title)
    except queue.Full:
        logger.debug("Metadata queue full, dropping title: %s", title)


def _pump(
    response: requests.Response,
    reader: IcyMetadataReader,
    buffer: RingBuffer,
    cancel: threading.Event,
) -> None:
    """Producer thread: copy the HTTP body into the ring buffer."""
    error: Exception | None = None
    try:
        for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
            if cancel.is_set():
                break
            if not chunk:
                continue
            audio = reader.feed(chunk)
            if audio and not buffer.write(audio, cancel):
                break
    except Exception as e:
        logger.warning("Stream producer stopped: %s", e)
        error = e
    finally:
        response.close()
        buffer.close(error=error)
