"""
Planning chat session.

A PlanningSession keeps the ordered conversation for one planning chat
and sends each user turn through the ChatRouter, either as a single
response or as a stream of chunks. A failed turn is rolled back out of
the history and surfaced as a `TurnFailedError` carrying the
`ErrorReport` (kind, retryable flag and ranked recovery actions) built
by the ErrorClassifier.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional

from planchat.core.cancellation import CancellationToken
from planchat.core.errors import (
    ErrorClassifier,
    ErrorReport,
    ProviderError,
    ProviderRequestError,
)
from planchat.core.prompts import PromptManager
from planchat.core.router import ChatRouter
from planchat.providers.base import ChatMessage, ChatRequest, ChatResponse, StreamChunk

logger = logging.getLogger(__name__)


class TurnFailedError(ProviderError):
    """A user turn failed; `report` says why and what the user can do next."""

    def __init__(self, report: ErrorReport, text: str) -> None:
        super().__init__(report.message)
        self.report = report
        self.text = text


class PlanningSession:
    """
    Multi-turn planning conversation over the active (or a pinned) provider.

    The system prompt is prepended to every request and is not part of
    `history`. The session never switches providers on its own; a
    `switchProvider` suggestion is for the caller to act on.
    """

    def __init__(
        self,
        router: ChatRouter,
        prompts: PromptManager,
        classifier: ErrorClassifier,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.router = router
        self.prompts = prompts
        self.classifier = classifier
        self.provider_id = provider_id
        self.model = model
        self.temperature = temperature
        self._history: List[ChatMessage] = []

    @property
    def history(self) -> List[ChatMessage]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()

    def _request(self, stream: bool, cancellation: Optional[CancellationToken]) -> ChatRequest:
        messages = [ChatMessage("system", self.prompts.get_planning_system_prompt())]
        messages.extend(self._history)
        return ChatRequest(
            messages=messages,
            model=self.model,
            temperature=self.temperature,
            stream=stream,
            cancellation=cancellation,
        )

    async def _fail(self, exc: ProviderError, text: str) -> TurnFailedError:
        # The user turn is dropped so that a retry resends it cleanly.
        self._history.pop()
        provider_id = exc.provider_id if isinstance(exc, ProviderRequestError) else None
        report = await self.classifier.report(exc, provider_id)
        logger.info("Turn failed (%s): %s", report.kind.value, report.message)
        return TurnFailedError(report, text)

    async def send(
        self, text: str, cancellation: Optional[CancellationToken] = None
    ) -> ChatResponse:
        """
        Send one user turn and wait for the whole reply.

        Raises:
            TurnFailedError: If the provider call fails after retries.
        """
        self._history.append(ChatMessage("user", text))
        try:
            response = await self.router.chat(
                self._request(stream=False, cancellation=cancellation), self.provider_id
            )
        except ProviderError as exc:
            raise await self._fail(exc, text) from exc
        self._history.append(ChatMessage("assistant", response.content))
        return response

    async def stream(
        self, text: str, cancellation: Optional[CancellationToken] = None
    ) -> AsyncIterator[StreamChunk]:
        """
        Send one user turn and yield the reply as it arrives.

        The assistant message is recorded once the terminal chunk has been
        received. Leaving the loop early closes the underlying stream and
        drops the turn from the history.
        """
        self._history.append(ChatMessage("user", text))
        try:
            async with self.router.stream_chat(
                self._request(stream=True, cancellation=cancellation), self.provider_id
            ) as chat_stream:
                async for chunk in chat_stream:
                    yield chunk
                content = chat_stream.content
        except ProviderError as exc:
            raise await self._fail(exc, text) from exc
        except BaseException:
            self._history.pop()
            raise
        self._history.append(ChatMessage("assistant", content))
