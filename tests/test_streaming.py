"""
Streaming primitive tests.

✔ partial lines are carried across reads, including split UTF-8 sequences
✔ malformed NDJSON lines are skipped; the optional limit aborts on consecutive ones
✔ a stream that ends without a terminal chunk gets one synthesized
✔ exactly one terminal chunk, then the stream ends
✔ the source is closed on early exit and on errors
✔ source errors surface classified
"""

import httpx
import pytest

from planchat.core.cancellation import CancellationToken, RequestCancelled
from planchat.core.errors import ErrorKind, NetworkError
from planchat.providers.base import StreamChunk
from planchat.providers.streaming import (
    ChatStream,
    LineBuffer,
    MalformedStreamError,
    cancellable,
    iter_json_lines,
)


async def byte_chunks(*pieces):
    for piece in pieces:
        yield piece


class Source:
    """Async generator wrapper that records whether it was closed."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error
        self.closed = False
        self.pulled = 0

    async def gen(self):
        try:
            for chunk in self.chunks:
                self.pulled += 1
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


# ─────────────────────────────────────────────────────────────
# LineBuffer / iter_json_lines
# ─────────────────────────────────────────────────────────────


class TestLineBuffer:
    def test_carries_partial_line(self):
        buffer = LineBuffer()
        assert buffer.feed(b'{"a": 1}\n{"b"') == ['{"a": 1}']
        assert buffer.feed(b': 2}\n') == ['{"b": 2}']
        assert buffer.flush() == []

    def test_split_multibyte_character(self):
        buffer = LineBuffer()
        encoded = '"café"\n'.encode("utf-8")
        assert buffer.feed(encoded[:5]) == []
        assert buffer.feed(encoded[5:]) == ['"café"']

    def test_flush_returns_unterminated_tail(self):
        buffer = LineBuffer()
        assert buffer.feed(b'{"done": true}') == []
        assert buffer.flush() == ['{"done": true}']

    def test_strips_carriage_returns(self):
        assert LineBuffer().feed(b"one\r\ntwo\r\n") == ["one", "two"]


class TestIterJsonLines:
    @pytest.mark.asyncio
    async def test_skips_malformed_and_blank_lines(self):
        chunks = byte_chunks(b'{"n": 1}\nnot json\n\n[1, 2]\n', b'{"n": 2}\n')
        records = [r async for r in iter_json_lines(chunks)]
        assert records == [{"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_parses_record_split_across_reads(self):
        chunks = byte_chunks(b'{"message": {"con', b'tent": "Hi"}}\n{"done"', b": true}")
        records = [r async for r in iter_json_lines(chunks)]
        assert records == [{"message": {"content": "Hi"}}, {"done": True}]

    @pytest.mark.asyncio
    async def test_consecutive_malformed_limit(self):
        chunks = byte_chunks(b'{"n": 1}\nbad\nworse\n{"n": 2}\n')
        with pytest.raises(MalformedStreamError):
            [r async for r in iter_json_lines(chunks, max_malformed_lines=2)]

    @pytest.mark.asyncio
    async def test_limit_counts_only_consecutive_lines(self):
        chunks = byte_chunks(b'bad\n{"n": 1}\nbad\n{"n": 2}\n')
        records = [r async for r in iter_json_lines(chunks, max_malformed_lines=2)]
        assert records == [{"n": 1}, {"n": 2}]


class TestCancellable:
    @pytest.mark.asyncio
    async def test_passes_items_through(self):
        items = [i async for i in cancellable(byte_chunks(b"a", b"b"), CancellationToken())]
        assert items == [b"a", b"b"]

    @pytest.mark.asyncio
    async def test_stops_on_cancel(self):
        token = CancellationToken()
        received = []
        with pytest.raises(RequestCancelled):
            async for item in cancellable(byte_chunks(b"a", b"b", b"c"), token):
                received.append(item)
                token.cancel()
        assert received == [b"a"]


# ─────────────────────────────────────────────────────────────
# ChatStream
# ─────────────────────────────────────────────────────────────


class TestChatStream:
    @pytest.mark.asyncio
    async def test_synthesizes_terminal_chunk(self):
        source = Source([StreamChunk("Hel", False, model="m"), StreamChunk("lo", False)])
        chunks = [c async for c in ChatStream(source.gen(), "ollama")]
        assert [c.delta for c in chunks] == ["Hel", "lo", ""]
        assert [c.done for c in chunks] == [False, False, True]
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].model == "m"

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_chunk(self):
        source = Source(
            [
                StreamChunk("Hi", False),
                StreamChunk("", True, finish_reason="length"),
                StreamChunk("ignored", False),
            ]
        )
        stream = ChatStream(source.gen(), "ollama")
        chunks = [c async for c in stream]
        assert sum(1 for c in chunks if c.done) == 1
        assert chunks[-1].finish_reason == "length"
        assert stream.content == "Hi"
        assert source.closed
        assert source.pulled == 2

    @pytest.mark.asyncio
    async def test_iteration_after_end_stops(self):
        stream = ChatStream(Source([StreamChunk("", True)]).gen(), "ollama")
        await stream.collect()
        assert stream.finished
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_early_exit_closes_source(self):
        source = Source([StreamChunk("a", False), StreamChunk("b", False)])
        async with ChatStream(source.gen(), "ollama") as stream:
            first = await stream.__anext__()
        assert first.delta == "a"
        assert source.closed

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        stream = ChatStream(Source([]).gen(), "ollama")
        await stream.aclose()
        await stream.aclose()
        assert stream.finished

    @pytest.mark.asyncio
    async def test_source_error_is_classified(self):
        source = Source([StreamChunk("par", False)], error=httpx.ReadError("reset"))
        stream = ChatStream(source.gen(), "ollama", context="Ollama streaming request failed")
        with pytest.raises(NetworkError) as excinfo:
            await stream.collect()
        assert excinfo.value.kind is ErrorKind.NETWORK_ERROR
        assert excinfo.value.message.startswith("Ollama streaming request failed")
        assert isinstance(excinfo.value.__cause__, httpx.ReadError)
        assert stream.content == "par"
        assert source.closed

    @pytest.mark.asyncio
    async def test_collect_returns_full_text(self):
        source = Source([StreamChunk("Phase ", False), StreamChunk("1", False)])
        assert await ChatStream(source.gen(), "ollama").collect() == "Phase 1"
