"""
Provider registry.

Holds the registered adapters in registration order and the single
active-provider pointer. The pointer changes only through explicit
calls (`register` of the first provider, `unregister` of the active
one, `set_active_provider`); nothing else in the system writes it.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from planchat.core.errors import UnknownProviderError
from planchat.providers.base import BaseProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    ProviderRegistry keeps track of provider adapters by id.
    """

    def __init__(self) -> None:
        self._providers: Dict[str, BaseProvider] = {}
        self._active_id: Optional[str] = None

    def register(self, provider: BaseProvider) -> None:
        """Add (or replace) an adapter. The first one becomes active."""
        self._providers[provider.id] = provider
        if self._active_id is None:
            self._active_id = provider.id

    def unregister(self, provider_id: str) -> bool:
        removed = self._providers.pop(provider_id, None) is not None
        if removed and self._active_id == provider_id:
            self._active_id = next(iter(self._providers), None)
        return removed

    def get_provider(self, provider_id: Optional[str] = None) -> Optional[BaseProvider]:
        """Return the adapter for `provider_id`, or the active one when omitted."""
        if provider_id is not None:
            return self._providers.get(provider_id)
        return self.get_active_provider()

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def list_providers(self) -> List[str]:
        return list(self._providers)

    @property
    def active_provider_id(self) -> Optional[str]:
        return self._active_id

    def set_active_provider(self, provider_id: str) -> None:
        if provider_id not in self._providers:
            raise UnknownProviderError(f"Provider '{provider_id}' not registered.")
        if provider_id != self._active_id:
            logger.info("Active provider changed: %s -> %s", self._active_id, provider_id)
        self._active_id = provider_id

    def get_active_provider(self) -> Optional[BaseProvider]:
        if self._active_id is None:
            return None
        return self._providers.get(self._active_id)

    def get_next_available_provider(
        self, exclude_ids: Iterable[str] = ()
    ) -> Optional[BaseProvider]:
        """
        First registered adapter not in `exclude_ids`, in registration order.

        Used to suggest a fallback after an error; it does not probe and
        does not change the active provider.
        """
        excluded = set(exclude_ids)
        for provider_id, provider in self._providers.items():
            if provider_id not in excluded:
                return provider
        return None

    def clear(self) -> None:
        self._providers.clear()
        self._active_id = None

    async def check_provider_health(self, provider_id: str) -> bool:
        provider = self._providers.get(provider_id)
        if provider is None:
            return False
        try:
            return await provider.is_available()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Health check for '%s' failed: %s", provider_id, exc)
            return False
