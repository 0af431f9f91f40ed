"""
Ollama provider implementation.

Talks to a local Ollama server over its HTTP API with `httpx`:

- POST /api/chat   chat, streamed as newline-delimited JSON
- GET  /api/tags   downloaded models (also the reachability probe)
- GET  /api/ps     models currently loaded in memory
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

import httpx

from planchat.core.errors import ProviderRequestError, error_from_status
from planchat.core.retry import RetryPolicy
from planchat.providers.base import (
    LISTING_TIMEOUT,
    PROBE_TIMEOUT,
    BaseProvider,
    ChatRequest,
    ChatResponse,
    ModelInfo,
    ProviderConfig,
    StreamChunk,
    Usage,
    map_finish_reason,
)
from planchat.providers.streaming import ChatStream, cancellable, iter_json_lines

logger = logging.getLogger(__name__)


class OllamaProvider(BaseProvider):
    """
    OllamaProvider wraps a local Ollama server's chat and model APIs.

    A transport can be injected (e.g. `httpx.MockTransport`) to run the
    adapter without a server.
    """

    def __init__(
        self,
        config: ProviderConfig,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_malformed_lines: Optional[int] = None,
    ) -> None:
        super().__init__(config, retry_policy)
        self.transport = transport
        self.max_malformed_lines = max_malformed_lines

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=self.transport,
        )

    def _payload(self, request: ChatRequest, model: str, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": request.message_dicts(),
            "stream": stream,
        }
        if request.temperature is not None:
            payload["options"] = {"temperature": request.temperature}
        return payload

    async def _error_from_response(self, response: httpx.Response) -> ProviderRequestError:
        message = f"HTTP {response.status_code}: {response.reason_phrase}"
        try:
            await response.aread()
            detail = response.json().get("error")
        except (ValueError, AttributeError, httpx.HTTPError):
            detail = None
        if detail:
            message += f" - {detail}"
        return error_from_status(response.status_code, message, self.id)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        model = await self.resolve_model(request)
        payload = self._payload(request, model, stream=False)

        async def send() -> Dict[str, Any]:
            async with self._client() as client:
                response = await client.post("/api/chat", json=payload)
                if response.is_error:
                    raise await self._error_from_response(response)
                return response.json()

        data = await self.run_with_retry(send, request, "Ollama chat request failed")
        message = data.get("message") or {}
        return ChatResponse(
            id=f"ollama-{uuid4().hex}",
            content=message.get("content", ""),
            model=data.get("model") or model,
            finish_reason=map_finish_reason(data.get("done_reason")),
            usage=Usage.from_counts(data.get("prompt_eval_count"), data.get("eval_count")),
        )

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        return ChatStream(
            self._stream_chunks(request),
            provider_id=self.id,
            context="Ollama streaming request failed",
        )

    async def _stream_chunks(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        model = await self.resolve_model(request)
        payload = self._payload(request, model, stream=True)

        async with self._client() as client:

            async def connect() -> httpx.Response:
                response = await client.send(
                    client.build_request("POST", "/api/chat", json=payload),
                    stream=True,
                )
                if response.is_error:
                    try:
                        raise await self._error_from_response(response)
                    finally:
                        await response.aclose()
                return response

            response = await self.run_with_retry(
                connect, request, "Ollama streaming request failed"
            )
            try:
                records = iter_json_lines(
                    cancellable(response.aiter_bytes(), request.cancellation),
                    max_malformed_lines=self.max_malformed_lines,
                )
                async for record in records:
                    delta = (record.get("message") or {}).get("content") or ""
                    record_model = record.get("model") or model
                    if record.get("done"):
                        if delta:
                            yield StreamChunk(delta=delta, done=False, model=record_model)
                        yield StreamChunk(
                            delta="",
                            done=True,
                            finish_reason=map_finish_reason(record.get("done_reason")),
                            model=record_model,
                        )
                        return
                    if delta:
                        yield StreamChunk(delta=delta, done=False, model=record_model)
            finally:
                await response.aclose()

    async def is_available(self) -> bool:
        try:
            async with self._client(timeout=PROBE_TIMEOUT) as client:
                response = await client.get("/api/tags")
            return response.is_success
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ollama probe failed: %s", exc)
            return False

    async def _get_models(self, path: str, timeout: float) -> List[Dict[str, Any]]:
        try:
            async with self._client(timeout=timeout) as client:
                response = await client.get(path)
            if not response.is_success:
                return []
            models = response.json().get("models") or []
            return [m for m in models if isinstance(m, dict) and m.get("name")]
        except Exception as exc:  # noqa: BLE001
            logger.debug("Ollama %s failed: %s", path, exc)
            return []

    async def list_models(self) -> List[str]:
        return [m["name"] for m in await self._get_models("/api/tags", LISTING_TIMEOUT)]

    async def list_models_with_details(self) -> List[ModelInfo]:
        models = await self._get_models("/api/tags", LISTING_TIMEOUT)
        if not models:
            return []
        running = {m.name for m in await self.list_running_models()}
        result: List[ModelInfo] = []
        for m in models:
            details = m.get("details") or {}
            result.append(
                ModelInfo(
                    name=m["name"],
                    size=int(m.get("size") or 0),
                    digest=m.get("digest", ""),
                    modified_at=m.get("modified_at", ""),
                    family=details.get("family"),
                    parameter_size=details.get("parameter_size"),
                    quantization_level=details.get("quantization_level"),
                    is_running=m["name"] in running,
                )
            )
        return result

    async def list_running_models(self) -> List[ModelInfo]:
        return [
            ModelInfo(
                name=m["name"],
                size=int(m.get("size") or 0),
                digest=m.get("digest", ""),
                is_running=True,
            )
            for m in await self._get_models("/api/ps", PROBE_TIMEOUT)
        ]
