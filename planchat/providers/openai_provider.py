"""
OpenAI-compatible provider implementation.

Wraps any Chat Completions compatible endpoint via the official `openai`
SDK's async client: OpenAI itself, Google Gemini's OpenAI-compatible
endpoint, OpenRouter, or a self-hosted server. The SDK's own retries are
disabled; retries, timeouts and cancellation are handled by
`BaseProvider.run_with_retry`.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from openai import AsyncOpenAI

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


class OpenAIProvider(BaseProvider):
    """
    OpenAIProvider wraps an OpenAI-compatible Chat Completions API.

    When `requires_api_key` is set and no key is configured, chat calls
    fail with INVALID_REQUEST and probes/listing report nothing.
    """

    def __init__(
        self,
        config: ProviderConfig,
        retry_policy: Optional[RetryPolicy] = None,
        requires_api_key: bool = True,
    ) -> None:
        super().__init__(config, retry_policy)
        self.requires_api_key = requires_api_key

    def _has_credentials(self) -> bool:
        return bool(self.config.api_key) or not self.requires_api_key

    def _require_api_key(self) -> None:
        if not self._has_credentials():
            raise InvalidRequestError(f"{self.name} API key is required", self.id)

    def _client(self, timeout: Optional[float] = None) -> AsyncOpenAI:
        # Self-hosted servers often accept any key, but the SDK insists on one.
        return AsyncOpenAI(
            api_key=self.config.api_key or "not-needed",
            base_url=self.config.base_url or None,
            max_retries=0,
            timeout=timeout,
        )

    def _completion_kwargs(self, request: ChatRequest, model: str) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"model": model, "messages": request.message_dicts()}
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        return kwargs

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self._require_api_key()
        model = await self.resolve_model(request)
        kwargs = self._completion_kwargs(request, model)
        client = self._client()
        try:

            async def send() -> Any:
                return await client.chat.completions.create(stream=False, **kwargs)

            resp = await self.run_with_retry(send, request, f"{self.name} chat request failed")
        finally:
            await client.close()

        choice = resp.choices[0] if resp.choices else None
        content = ""
        if choice is not None and choice.message is not None:
            content = choice.message.content or ""
        usage = resp.usage
        return ChatResponse(
            id=resp.id or f"{self.id}-{uuid4().hex}",
            content=content,
            model=resp.model or model,
            finish_reason=map_finish_reason(choice.finish_reason if choice else None),
            usage=Usage.from_counts(
                getattr(usage, "prompt_tokens", None),
                getattr(usage, "completion_tokens", None),
                getattr(usage, "total_tokens", None),
            ),
        )

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        return ChatStream(
            self._stream_chunks(request),
            provider_id=self.id,
            context=f"{self.name} streaming request failed",
        )

    async def _stream_chunks(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        self._require_api_key()
        model = await self.resolve_model(request)
        kwargs = self._completion_kwargs(request, model)
        client = self._client()
        try:

            async def connect() -> Any:
                return await client.chat.completions.create(stream=True, **kwargs)

            stream = await self.run_with_retry(
                connect, request, f"{self.name} streaming request failed"
            )
            try:
                last_model = model
                async for event in cancellable(stream, request.cancellation):
                    if getattr(event, "model", None):
                        last_model = event.model
                    if not event.choices:
                        continue
                    choice = event.choices[0]
                    delta = (choice.delta.content if choice.delta else None) or ""
                    if delta:
                        yield StreamChunk(delta=delta, done=False, model=last_model)
                    if choice.finish_reason:
                        yield StreamChunk(
                            delta="",
                            done=True,
                            finish_reason=map_finish_reason(choice.finish_reason),
                            model=last_model,
                        )
                        return
            finally:
                await stream.close()
        finally:
            await client.close()

    async def is_available(self) -> bool:
        if not self._has_credentials():
            return False
        client = self._client(timeout=PROBE_TIMEOUT)
        try:
            await client.models.list()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s probe failed: %s", self.name, exc)
            return False
        finally:
            await client.close()

    async def list_models(self) -> List[str]:
        if not self._has_credentials():
            return []
        client = self._client(timeout=LISTING_TIMEOUT)
        try:
            page = await client.models.list()
            return [m.id for m in page.data if isinstance(getattr(m, "id", None), str)]
        except Exception as exc:  # noqa: BLE001
            logger.debug("%s model listing failed: %s", self.name, exc)
            return []
        finally:
            await client.close()
