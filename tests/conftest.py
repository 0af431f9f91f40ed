"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Optional, Sequence

import pytest

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from planchat.core.retry import RetryPolicy  # noqa: E402
from planchat.providers.base import (  # noqa: E402
    BaseProvider,
    ChatRequest,
    ChatResponse,
    ModelInfo,
    ProviderConfig,
    StreamChunk,
    Usage,
)
from planchat.providers.registry import ProviderRegistry  # noqa: E402
from planchat.providers.streaming import ChatStream  # noqa: E402

# No waiting between retries in tests.
NO_DELAY = RetryPolicy(initial_delay=0.0, jitter=False)


class FakeProvider(BaseProvider):
    """
    Scripted in-memory provider.

    `availability` is consumed one value per probe; the last value
    repeats once the script runs out.
    """

    def __init__(
        self,
        provider_id: str = "fake",
        name: Optional[str] = None,
        availability: Sequence[bool] = (True,),
        models: Iterable[str] = ("fake-model",),
        reply: str = "Phase 1: Discovery",
        pieces: Sequence[str] = ("Phase 1", ": ", "Discovery"),
        error: Optional[BaseException] = None,
        supports_model_listing: bool = True,
    ) -> None:
        super().__init__(
            ProviderConfig(
                id=provider_id,
                name=name or provider_id.title(),
                model="fake-model",
                timeout=0.0,
                max_retries=0,
            ),
            NO_DELAY,
        )
        self.availability: List[bool] = list(availability)
        self.models = list(models)
        self.reply = reply
        self.pieces = list(pieces)
        self.error = error
        self.supports_model_listing = supports_model_listing
        self.probe_count = 0
        self.requests: List[ChatRequest] = []
        self.stream_closed = False

    async def is_available(self) -> bool:
        self.probe_count += 1
        if len(self.availability) > 1:
            return self.availability.pop(0)
        return self.availability[0]

    async def list_models(self) -> List[str]:
        return list(self.models)

    async def list_models_with_details(self) -> List[ModelInfo]:
        return [ModelInfo(name=name) for name in self.models]

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return ChatResponse(
            id=f"{self.id}-1",
            content=self.reply,
            model="fake-model",
            usage=Usage.from_counts(3, 4),
        )

    def stream_chat(self, request: ChatRequest) -> ChatStream:
        self.requests.append(request)
        return ChatStream(self._chunks(), provider_id=self.id)

    async def _chunks(self) -> AsyncIterator[StreamChunk]:
        try:
            for piece in self.pieces:
                yield StreamChunk(delta=piece, done=False, model="fake-model")
            if self.error is not None:
                raise self.error
            yield StreamChunk(delta="", done=True, finish_reason="stop", model="fake-model")
        finally:
            self.stream_closed = True


@pytest.fixture
def no_delay() -> RetryPolicy:
    return NO_DELAY


@pytest.fixture
def registry() -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(FakeProvider("ollama", name="Ollama"))
    reg.register(FakeProvider("openai", name="OpenAI"))
    return reg
