"""
CLI provider implementation.

Drives a command-line assistant (the Gemini CLI by default) as a
subprocess: the conversation is passed as a single prompt argument and
the answer is read from stdout. Streaming yields stdout as it arrives
while stderr is drained in the background. The child and anything it
spawned are killed on every exit path that leaves them running.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
from typing import AsyncIterator, List, Optional, Sequence
from uuid import uuid4

from planchat.core.cancellation import guarded
from planchat.core.errors import APIError
from planchat.core.retry import RetryPolicy
from planchat.providers.base import (
    PROBE_TIMEOUT,
    BaseProvider,
    ChatRequest,
    ChatResponse,
    ProviderConfig,
    StreamChunk,
    Usage,
)
from planchat.providers.streaming import ChatStream, cancellable

logger = logging.getLogger(__name__)

READ_SIZE = 4096
# Bytes of stderr kept for error messages and logs.
STDERR_TAIL = 4096


async def _read_chunks(reader: asyncio.StreamReader) -> AsyncIterator[bytes]:
    while True:
        data = await reader.read(READ_SIZE)
        if not data:
            return
        yield data


async def _drain(reader: asyncio.StreamReader) -> bytes:
    """Read a pipe to EOF so the child never blocks on it; keep the tail."""
    tail = b""
    async for data in _read_chunks(reader):
        tail = (tail + data)[-STDERR_TAIL:]
    return tail


def _kill(process: asyncio.subprocess.Process) -> None:
    # Children are spawned in their own session so helpers they start
    # (shell pipelines, node wrappers) die with them and release the pipes.
    if hasattr(os, "killpg"):
        with contextlib.suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
            return
    process.kill()


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        _kill(process)
        await process.wait()


def _tail_text(data: bytes) -> str:
    text = data[-STDERR_TAIL:].decode("utf-8", errors="replace").strip()
    return "..." + text if len(data) > STDERR_TAIL else text


class _StrippedText:
    """
    Incrementally emits text with leading and trailing whitespace removed,
    so streamed deltas concatenate to the same text `chat` returns.
    """

    def __init__(self) -> None:
        self._started = False
        self._pending = ""

    def feed(self, text: str) -> str:
        if not self._started:
            text = text.lstrip()
            if not text:
                return ""
            self._started = True
        body = text.rstrip()
        if not body:
            self._pending += text
            return ""
        out = self._pending + body
        self._pending = text[len(body):]
        return out


class CLIProvider(BaseProvider):
    """
    CLIProvider runs a local assistant CLI such as `gemini "<prompt>"`.

    The CLI has no model enumeration; `list_models` reports the single
    configured pseudo-model.
    """

    supports_model_listing = False

    def __init__(
        self,
        config: ProviderConfig,
        retry_policy: Optional[RetryPolicy] = None,
        command: Sequence[str] = ("gemini",),
    ) -> None:
        super().__init__(config, retry_policy)
        self.command = list(command)

    def _prompt(self, request: ChatRequest) -> str:
        if len(request.messages) == 1:
            return request.messages[0].content
        return "\n\n".join(f"{m.role.upper()}: {m.content}" for m in request.messages)

    async def _spawn(self, prompt: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *self.command,
            prompt,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

    def _exit_error(self, returncode: Optional[int], stderr: bytes) -> APIError:
        detail = _tail_text(stderr)
        message = f"{self.name} exited with status {returncode}"
        if detail:
            message += f": {detail}"
        return APIError(message, self.id)

    def _log_stderr(self, stderr: bytes) -> None:
        if stderr:
            logger.debug("%s stderr: %s", self.name, _tail_text(stderr))

    async def chat(self, request: ChatRequest) -> ChatResponse:
        prompt = self._prompt(request)

        async def run() -> str:
            process = await self._spawn(prompt)
            try:
                stdout, stderr = await process.communicate()
            finally:
                await _terminate(process)
            if process.returncode != 0:
                raise self._exit_error(process.returncode, stderr)
            self._log_stderr(stderr)
            return stdout.decode("utf-8", errors="replace")

        content = await self.run_with_retry(run, request, f"{self.name} request failed")
        return ChatResponse(
            id=f"{self.id}-{uuid4().hex}",
            content=content.strip(),
            model=self.config.model,
            finish_reason="stop",
            usage=Usage(),
        )

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        return ChatStream(
            self._stream_chunks(request),
            provider_id=self.id,
            context=f"{self.name} streaming request failed",
        )

    async def _stream_chunks(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        prompt = self._prompt(request)
        process = await self.run_with_retry(
            lambda: self._spawn(prompt), request, f"{self.name} streaming request failed"
        )
        if process.stdout is None or process.stderr is None:
            await _terminate(process)
            raise APIError(f"{self.name} was started without output pipes", self.id)

        # stderr is drained alongside stdout; a full stderr pipe would
        # otherwise block the child before it closes stdout.
        stderr_task = asyncio.ensure_future(_drain(process.stderr))
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = _StrippedText()
        try:
            async for data in cancellable(_read_chunks(process.stdout), request.cancellation):
                delta = text.feed(decoder.decode(data))
                if delta:
                    yield StreamChunk(delta=delta, done=False, model=self.config.model)
            delta = text.feed(decoder.decode(b"", final=True))
            if delta:
                yield StreamChunk(delta=delta, done=False, model=self.config.model)

            returncode = await guarded(process.wait(), request.cancellation)
            stderr = await guarded(stderr_task, request.cancellation)
            if returncode != 0:
                raise self._exit_error(returncode, stderr)
            self._log_stderr(stderr)
            yield StreamChunk(delta="", done=True, finish_reason="stop", model=self.config.model)
        finally:
            await _terminate(process)
            stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)

    async def is_available(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.debug("%s probe failed: %s", self.name, exc)
            return False
        try:
            return await guarded(process.wait(), timeout=PROBE_TIMEOUT) == 0
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s probe failed: %s", self.name, exc)
            return False
        finally:
            await _terminate(process)

    async def list_models(self) -> List[str]:
        return [self.config.model] if self.config.model else []
