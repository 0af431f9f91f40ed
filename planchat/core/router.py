"""
Chat routing logic.

The router resolves which provider adapter should handle a chat request
and forwards the call. It reads the registry's active provider unless an
explicit provider id is given, and never changes the active provider
itself: switching after a failure is always the caller's decision.
"""

from __future__ import annotations

from typing import Optional

from planchat.core.errors import UnknownProviderError
from planchat.providers.base import BaseProvider, ChatRequest, ChatResponse
from planchat.providers.registry import ProviderRegistry
from planchat.providers.streaming import ChatStream


class ChatRouter:
    """
    ChatRouter dispatches chat requests to a provider adapter from the
    registry. It abstracts away which backend is in use from the
    planning session.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    def resolve(self, provider_id: Optional[str] = None) -> BaseProvider:
        """
        Return the adapter for `provider_id`, or the active adapter.

        Raises:
            UnknownProviderError: If the id is not registered, or no
                provider is active.
        """
        provider = self.registry.get_provider(provider_id)
        if provider is None:
            if provider_id is None:
                raise UnknownProviderError("No active provider configured.")
            raise UnknownProviderError(f"Provider '{provider_id}' not registered.")
        return provider

    async def chat(self, request: ChatRequest, provider_id: Optional[str] = None) -> ChatResponse:
        """
        Forward a non-streaming chat request.

        Raises:
            ProviderError: If the provider cannot be resolved or the call
                fails after retries.
        """
        return await self.resolve(provider_id).chat(request)

    def stream_chat(self, request: ChatRequest, provider_id: Optional[str] = None) -> ChatStream:
        """Open a streaming chat; nothing is sent until the stream is iterated."""
        return self.resolve(provider_id).stream_chat(request)
