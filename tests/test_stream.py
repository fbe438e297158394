"""Tests for the HTTP stream pipeline, ICY parsing and the ring buffer."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest
import requests

from somaplay.errors import ConnectError, PrefetchError, StreamCancelled
from somaplay.history import HistoryLog
from somaplay.models import MessageType
from somaplay.stream import (
    IcyHeaders,
    IcyMetadataReader,
    RingBuffer,
    StreamPipeline,
    parse_stream_title,
    prefetch_bytes,
)
from tests.conftest import make_stream_config, messages_of


def icy_block(text: str) -> bytes:
    """Encode a metadata block with its length byte."""
    raw = text.encode("utf-8")
    blocks = (len(raw) + 15) // 16
    return bytes([blocks]) + raw.ljust(blocks * 16, b"\x00")


class FakeResponse:
    """Minimal streaming requests.Response."""

    def __init__(
        self,
        headers: dict[str, str],
        chunks: list[bytes],
        error: Exception | None = None,
        block: threading.Event | None = None,
    ) -> None:
        self.headers = headers
        self._chunks = chunks
        self._error = error
        self._block = block
        self.closed = False

    def raise_for_status(self) -> None:
        pass

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        yield from self._chunks
        if self._block is not None:
            self._block.wait(timeout=2.0)
        if self._error is not None:
            raise self._error

    def close(self) -> None:
        self.closed = True


def make_pipeline(
    response: FakeResponse | Exception, history: HistoryLog, **config: int
) -> tuple[StreamPipeline, MagicMock]:
    http = MagicMock()
    http.headers = {}
    if isinstance(response, Exception):
        http.get.side_effect = response
    else:
        http.get.return_value = response
    return StreamPipeline(make_stream_config(**config), history, http=http), http


class TestIcyHeaders:
    def test_parses_known_headers(self) -> None:
        headers = IcyHeaders.from_headers(
            {
                "icy-br": "128",
                "icy-metaint": "16000",
                "icy-name": "Groove Salad",
                "icy-genre": "ambient",
            }
        )
        assert headers == IcyHeaders(128, 16000, "Groove Salad", "ambient")

    def test_header_names_are_case_insensitive(self) -> None:
        headers = IcyHeaders.from_headers({"ICY-BR": "64", "Icy-MetaInt": "8192"})
        assert headers.bitrate == 64
        assert headers.metaint == 8192

    def test_multi_bitrate_uses_first_value(self) -> None:
        assert IcyHeaders.from_headers({"icy-br": "128,128"}).bitrate == 128

    @pytest.mark.parametrize("value", ["", "abc", "0", "-5"])
    def test_invalid_bitrate_is_missing(self, value: str) -> None:
        assert IcyHeaders.from_headers({"icy-br": value}).bitrate is None

    def test_missing_headers(self) -> None:
        assert IcyHeaders.from_headers({}) == IcyHeaders(None, None, None, None)


class TestPrefetchBytes:
    def test_default_target(self) -> None:
        assert prefetch_bytes(128, 5) == 81920

    def test_scales_with_seconds(self) -> None:
        assert prefetch_bytes(256, 10) == 32 * 1024 * 10


class TestParseStreamTitle:
    def test_simple_title(self) -> None:
        assert parse_stream_title("StreamTitle='Artist - Song';") == "Artist - Song"

    def test_title_with_apostrophe(self) -> None:
        text = "StreamTitle='Don't Stop';StreamUrl='http://x';"
        assert parse_stream_title(text) == "Don't Stop"

    def test_empty_title(self) -> None:
        assert parse_stream_title("StreamTitle='';") is None

    def test_no_title(self) -> None:
        assert parse_stream_title("StreamUrl='http://x';") is None


class TestIcyMetadataReader:
    def test_passthrough_without_metaint(self) -> None:
        titles: list[str] = []
        reader = IcyMetadataReader(None, titles.append)

        assert reader.feed(b"abcdef") == b"abcdef"
        assert titles == []

    def test_strips_metadata_block(self) -> None:
        titles: list[str] = []
        reader = IcyMetadataReader(4, titles.append)
        data = b"AAAA" + icy_block("StreamTitle='One';") + b"BBBB" + b"\x00" + b"CC"

        assert reader.feed(data) == b"AAAABBBBCC"
        assert titles == ["One"]

    def test_block_split_across_chunks(self) -> None:
        titles: list[str] = []
        reader = IcyMetadataReader(4, titles.append)
        data = b"AAAA" + icy_block("StreamTitle='Split Title';") + b"BBBB"

        audio = b"".join(reader.feed(data[i : i + 3]) for i in range(0, len(data), 3))

        assert audio == b"AAAABBBB"
        assert titles == ["Split Title"]

    def test_repeated_title_reported_once(self) -> None:
        titles: list[str] = []
        reader = IcyMetadataReader(2, titles.append)
        block = icy_block("StreamTitle='Same';")

        reader.feed(b"AA" + block + b"BB" + block + b"CC" + icy_block("StreamTitle='New';"))

        assert titles == ["Same", "New"]

    def test_invalid_utf8_is_replaced(self) -> None:
        titles: list[str] = []
        reader = IcyMetadataReader(1, titles.append)
        raw = b"StreamTitle='Caf\xe9';"
        block = bytes([2]) + raw.ljust(32, b"\x00")

        reader.feed(b"A" + block)

        assert titles == ["Caf\ufffd"]


class TestRingBuffer:
    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            RingBuffer(0)

    def test_read_returns_written_bytes(self) -> None:
        buffer = RingBuffer(16)
        buffer.write(b"hello")

        assert buffer.read(3) == b"hel"
        assert buffer.read(10) == b"lo"

    def test_writer_blocks_while_full(self) -> None:
        buffer = RingBuffer(4)
        done = threading.Event()

        def writer() -> None:
            buffer.write(b"12345678")
            done.set()

        thread = threading.Thread(target=writer, daemon=True)
        thread.start()

        assert not done.wait(timeout=0.3)
        assert buffer.fill_level == 4

        assert buffer.read(4) == b"1234"
        assert done.wait(timeout=2.0)
        assert buffer.read(4) == b"5678"
        thread.join(timeout=1.0)

    def test_cancel_unblocks_writer(self) -> None:
        buffer = RingBuffer(2)
        cancel = threading.Event()
        cancel.set()

        assert buffer.write(b"abcd", cancel) is False
        assert buffer.fill_level == 2

    def test_close_drains_then_ends(self) -> None:
        buffer = RingBuffer(8)
        buffer.write(b"abc")
        buffer.close()

        assert buffer.read(8) == b"abc"
        assert buffer.read(8) == b""
        assert buffer.write(b"x") is False

    def test_wait_for_level(self) -> None:
        buffer = RingBuffer(8)
        cancel = threading.Event()
        buffer.write(b"abcd")

        assert buffer.wait_for_level(4, cancel) is True

    def test_wait_for_level_fails_when_closed_early(self) -> None:
        buffer = RingBuffer(8)
        buffer.write(b"ab")
        buffer.close()

        assert buffer.wait_for_level(4, threading.Event()) is False


class TestStreamPipeline:
    def test_connect_prefetches_and_returns_source(self, history: HistoryLog) -> None:
        response = FakeResponse(
            {"icy-br": "8"}, [b"x" * 2048, b"y" * 2048, b"z" * 2048]
        )
        pipeline, http = make_pipeline(response, history)

        source = pipeline.connect("http://radio/stream", threading.Event())

        assert source.headers.bitrate == 8
        assert source.url == "http://radio/stream"
        chunks = list(source.chunks())
        assert b"".join(chunks) == b"x" * 2048 + b"y" * 2048 + b"z" * 2048
        http.get.assert_called_once()
        assert http.get.call_args.kwargs["stream"] is True
        assert http.headers["Icy-MetaData"] == "1"
        system = messages_of(history, MessageType.SYSTEM)
        assert "Streaming from http://radio/stream" in system
        assert "Bit rate: 8 kbps" in system

    def test_metadata_titles_are_queued(self, history: HistoryLog) -> None:
        audio = b"a" * 5120
        body = audio + icy_block("StreamTitle='Artist - Song';") + audio
        response = FakeResponse({"icy-br": "8", "icy-metaint": "5120"}, [body])
        pipeline, _ = make_pipeline(response, history)

        source = pipeline.connect("http://radio/stream", threading.Event())
        list(source.chunks())

        assert source.titles() == ["Artist - Song"]
        assert source.titles() == []

    def test_missing_bitrate_uses_fallback(self, history: HistoryLog) -> None:
        response = FakeResponse({}, [b"x" * (16 * 1024 * 5)])
        pipeline, _ = make_pipeline(response, history)

        pipeline.connect("http://radio/stream", threading.Event())

        assert any(
            "assuming 128 kbps" in m for m in messages_of(history, MessageType.BACKGROUND)
        )

    def test_http_failure_raises_connect_error(self, history: HistoryLog) -> None:
        pipeline, _ = make_pipeline(requests.ConnectionError("refused"), history)

        with pytest.raises(ConnectError) as exc_info:
            pipeline.connect("http://radio/stream", threading.Event())

        assert exc_info.value.url == "http://radio/stream"
        assert messages_of(history, MessageType.ERROR)

    def test_short_stream_raises_prefetch_error(self, history: HistoryLog) -> None:
        response = FakeResponse({"icy-br": "128"}, [b"x" * 100])
        pipeline, _ = make_pipeline(response, history)

        with pytest.raises(PrefetchError):
            pipeline.connect("http://radio/stream", threading.Event())

        assert response.closed is True

    def test_read_error_raises_prefetch_error(self, history: HistoryLog) -> None:
        response = FakeResponse(
            {"icy-br": "128"},
            [b"x" * 100],
            error=requests.exceptions.ChunkedEncodingError("reset"),
        )
        pipeline, _ = make_pipeline(response, history)

        with pytest.raises(PrefetchError, match="reset"):
            pipeline.connect("http://radio/stream", threading.Event())

    def test_unexpected_read_error_closes_buffer(self, history: HistoryLog) -> None:
        response = FakeResponse(
            {"icy-br": "128"}, [b"x" * 100], error=ValueError("bad gzip stream")
        )
        pipeline, _ = make_pipeline(response, history)

        with pytest.raises(PrefetchError, match="bad gzip stream"):
            pipeline.connect("http://radio/stream", threading.Event())

        assert response.closed is True

    def test_cancel_during_prefetch(self, history: HistoryLog) -> None:
        block = threading.Event()
        response = FakeResponse({"icy-br": "128"}, [b"x" * 100], block=block)
        pipeline, _ = make_pipeline(response, history)
        cancel = threading.Event()
        timer = threading.Timer(0.2, cancel.set)
        timer.start()

        try:
            with pytest.raises(StreamCancelled):
                pipeline.connect("http://radio/stream", cancel)
        finally:
            block.set()
            timer.cancel()

    def test_prefetch_target_capped_at_buffer(self, history: HistoryLog) -> None:
        # 640 kbps * 10 s exceeds a 512 KiB buffer; a full buffer is enough.
        body = [b"x" * 65536 for _ in range(8)]
        block = threading.Event()
        response = FakeResponse({"icy-br": "640"}, body, block=block)
        pipeline, _ = make_pipeline(
            response, history, prefetch_seconds=10, buffer_bytes=512 * 1024
        )

        source = pipeline.connect("http://radio/stream", threading.Event())
        try:
            assert source.buffered_bytes == 512 * 1024
        finally:
            source.close()
            block.set()
