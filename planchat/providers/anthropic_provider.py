"""
Anthropic provider implementation.

This provider wraps the Claude Messages API via the official `anthropic`
SDK's async client. It folds system messages into the `system`
parameter expected by Claude and collects streamed text deltas into
canonical chunks.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import uuid4

from anthropic import AsyncAnthropic

from planchat.core.errors import InvalidRequestError
from planchat.core.retry import RetryPolicy
from planchat.providers.base import (
    LISTING_TIMEOUT,
    PROBE_TIMEOUT,
    BaseProvider,
    ChatRequest,
    ChatResponse,
    ProviderConfig,
    StreamChunk,
    Usage,
    map_finish_reason,
)
from planchat.providers.streaming import ChatStream, cancellable

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 2048


class AnthropicProvider(BaseProvider):
    """
    AnthropicProvider wraps the Claude messages API via the official anthropic SDK.
    """

    def __init__(
        self,
        config: ProviderConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        super().__init__(config, retry_policy)

    def _require_api_key(self) -> None:
        if not self.config.api_key:
            raise InvalidRequestError(f"{self.name} API key is required", self.id)

    def _client(self, timeout: Optional[float] = None) -> AsyncAnthropic:
        kwargs: Dict[str, Any] = {"api_key": self.config.api_key, "max_retries": 0, "timeout": timeout}
        if self.config.base_url:
            kwargs["base_url"] = self.config.base_url
        return AsyncAnthropic(**kwargs)

    def _convert_messages(self, request: ChatRequest) -> Tuple[str, List[Dict[str, str]]]:
        # Claude takes system text separately; the rest keeps its order.
        system_parts: List[str] = []
        converted: List[Dict[str, str]] = []
        for msg in request.messages:
            if msg.role == "system":
                system_parts.append(msg.content)
            else:
                converted.append({"role": msg.role, "content": msg.content})
        return "\n".join(system_parts), converted

    def _create_kwargs(self, request: ChatRequest, model: str) -> Dict[str, Any]:
        system_prompt, messages = self._convert_messages(request)
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        return kwargs

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self._require_api_key()
        model = await self.resolve_model(request)
        kwargs = self._create_kwargs(request, model)
        client = self._client()
        try:

            async def send() -> Any:
                return await client.messages.create(stream=False, **kwargs)

            resp = await self.run_with_retry(send, request, "Anthropic chat request failed")
        finally:
            await client.close()

        parts = [block.text for block in resp.content if getattr(block, "type", "") == "text"]
        usage = resp.usage
        return ChatResponse(
            id=resp.id or f"{self.id}-{uuid4().hex}",
            content="".join(parts),
            model=resp.model or model,
            finish_reason=map_finish_reason(resp.stop_reason),
            usage=Usage.from_counts(
                getattr(usage, "input_tokens", None),
                getattr(usage, "output_tokens", None),
            ),
        )

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        return ChatStream(
            self._stream_chunks(request),
            provider_id=self.id,
            context="Anthropic streaming request failed",
        )

    async def _stream_chunks(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        self._require_api_key()
        model = await self.resolve_model(request)
        kwargs = self._create_kwargs(request, model)
        client = self._client()
        try:

            async def connect() -> Any:
                return await client.messages.create(stream=True, **kwargs)

            stream = await self.run_with_retry(
                connect, request, "Anthropic streaming request failed"
            )
            try:
                last_model = model
                stop_reason: Optional[str] = None
                async for event in cancellable(stream, request.cancellation):
                    event_type = getattr(event, "type", "")
                    if event_type == "message_start":
                        last_model = getattr(event.message, "model", None) or last_model
                    elif event_type == "content_block_delta":
                        text = getattr(event.delta, "text", None) or ""
                        if text:
                            yield StreamChunk(delta=text, done=False, model=last_model)
                    elif event_type == "message_delta":
                        stop_reason = getattr(event.delta, "stop_reason", None) or stop_reason
                    elif event_type == "message_stop":
                        yield StreamChunk(
                            delta="",
                            done=True,
                            finish_reason=map_finish_reason(stop_reason),
                            model=last_model,
                        )
                        return
            finally:
                await stream.close()
        finally:
            await client.close()

    async def is_available(self) -> bool:
        if not self.config.api_key:
            return False
        client = self._client(timeout=PROBE_TIMEOUT)
        try:
            await client.models.list()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.debug("Anthropic probe failed: %s", exc)
            return False
        finally:
            await client.close()

    async def list_models(self) -> List[str]:
        if not self.config.api_key:
            return []
        client = self._client(timeout=LISTING_TIMEOUT)
        try:
            page = await client.models.list()
            return [m.id for m in page.data if isinstance(getattr(m, "id", None), str)]
        except Exception as exc:  # noqa: BLE001
            logger.debug("Anthropic model listing failed: %s", exc)
            return []
        finally:
            await client.close()
