"""
Streaming primitives shared by the adapters.

- `LineBuffer` splits raw bytes into complete lines, carrying an
  incomplete trailing line over to the next read.
- `iter_json_lines` parses newline-delimited JSON, skipping malformed
  lines.
- `cancellable` makes every read of an async iterator observe a
  cancellation token.
- `ChatStream` is the pull-based stream handed to callers. It
  guarantees exactly one terminal chunk and releases the underlying
  connection on every exit path.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, TypeVar

from planchat.core.cancellation import CancellationToken, guarded
from planchat.core.errors import classify_error
from planchat.providers.base import StreamChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LineBuffer:
    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> List[str]:
        """Return the lines completed by `data`."""
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        """Return whatever is left once the transport has ended."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.rstrip("\r")
        return [tail] if tail.strip() else []


class MalformedStreamError(ValueError):
    """Raised when too many consecutive stream lines fail to parse."""


async def iter_json_lines(
    chunks: AsyncIterator[bytes],
    max_malformed_lines: Optional[int] = None,
) -> AsyncIterator[Dict[str, Any]]:
    """
    Yield one JSON object per complete line of `chunks`.

    Blank lines are ignored. Lines that are not a JSON object are
    skipped; when `max_malformed_lines` is set, that many consecutive
    bad lines abort the stream with `MalformedStreamError`.
    """
    buffer = LineBuffer()
    malformed = 0

    def parse(line: str) -> Optional[Dict[str, Any]]:
        nonlocal malformed
        if not line.strip():
            return None
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            record = None
        if not isinstance(record, dict):
            malformed += 1
            logger.debug("Skipping malformed stream line: %r", line[:200])
            if max_malformed_lines is not None and malformed >= max_malformed_lines:
                raise MalformedStreamError(
                    f"Aborting stream after {malformed} consecutive malformed lines"
                )
            return None
        malformed = 0
        return record

    async for data in chunks:
        for line in buffer.feed(data):
            record = parse(line)
            if record is not None:
                yield record
    for line in buffer.flush():
        record = parse(line)
        if record is not None:
            yield record


async def cancellable(
    source: AsyncIterator[T],
    token: Optional[CancellationToken],
) -> AsyncIterator[T]:
    """Re-yield `source`, aborting any pending read when `token` fires."""
    if token is None:
        async for item in source:
            yield item
        return
    iterator = source.__aiter__()
    while True:
        try:
            item = await guarded(iterator.__anext__(), token)
        except StopAsyncIteration:
            return
        yield item


class ChatStream:
    """
    Lazy, finite, non-restartable sequence of `StreamChunk`.

    Iterate with `async for`, ideally inside `async with` so the
    connection is released even if the consumer stops early:

        async with provider.stream_chat(request) as stream:
            async for chunk in stream:
                ...

    The stream ends after the first chunk with `done=True`. If the
    source ends without one, a terminal chunk with an empty delta is
    synthesized. Errors from the source are raised classified.
    """

    def __init__(
        self,
        source: AsyncIterator[StreamChunk],
        provider_id: str,
        context: str = "Streaming request failed",
    ) -> None:
        self._source = source
        self.provider_id = provider_id
        self._context = context
        self._parts: List[str] = []
        self._finished = False
        self._closed = False
        self.model: Optional[str] = None
        self.finish_reason: Optional[str] = None

    @property
    def content(self) -> str:
        """Text accumulated so far."""
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "ChatStream":
        return self

    async def __anext__(self) -> StreamChunk:
        if self._finished:
            raise StopAsyncIteration
        try:
            chunk = await self._source.__anext__()
        except StopAsyncIteration:
            chunk = StreamChunk(
                delta="",
                done=True,
                finish_reason=self.finish_reason or "stop",
                model=self.model,
            )
        except Exception as exc:  # noqa: BLE001
            self._finished = True
            await self.aclose()
            error = classify_error(exc, self.provider_id, self._context)
            if error is exc:
                raise
            raise error from exc

        if chunk.model:
            self.model = chunk.model
        if chunk.finish_reason:
            self.finish_reason = chunk.finish_reason
        self._parts.append(chunk.delta)
        if chunk.done:
            self._finished = True
            await self.aclose()
        return chunk

    async def aclose(self) -> None:
        """Release the underlying connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._finished = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def collect(self) -> str:
        """Drain the stream and return the full text."""
        async for _ in self:
            pass
        return self.content
