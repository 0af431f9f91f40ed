"""
Cached provider health checks.

`ProviderHealthService` probes registered providers and keeps each
result for `cache_ttl` seconds, so repeated lookups (a provider listing,
a fallback suggestion) do not hit the backends every time. The selection
helpers are advisory: they return provider ids and never change the
registry's active provider.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from planchat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 30.0


@dataclass(frozen=True)
class ProviderStatus:
    provider_id: str
    available: bool
    checked_at: float
    response_time: Optional[float] = None
    error: Optional[str] = None


class ProviderHealthService:
    """
    Probe providers with a per-provider freshness window.

    Providers are considered in `priority` order when given, otherwise
    in registration order. Ids in `priority` that are not registered
    are reported as unavailable.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        priority: Optional[Sequence[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if cache_ttl < 0:
            raise ValueError("cache_ttl must be 0 or greater.")
        self.registry = registry
        self.cache_ttl = cache_ttl
        self.priority = list(priority) if priority is not None else None
        self._clock = clock
        self._cache: Dict[str, ProviderStatus] = {}

    def priority_order(self) -> List[str]:
        if self.priority is None:
            return self.registry.list_providers()
        return list(self.priority)

    async def check_provider_health(self, provider_id: str) -> ProviderStatus:
        """Probe now, bypassing the cache. Never raises."""
        started = self._clock()
        provider = self.registry.get_provider(provider_id)
        if provider is None:
            return ProviderStatus(provider_id, False, started, error="Provider not registered")

        error: Optional[str] = None
        try:
            available = bool(await provider.is_available())
        except Exception as exc:  # noqa: BLE001
            logger.debug("Health check for '%s' failed: %s", provider_id, exc)
            available = False
            error = str(exc) or exc.__class__.__name__
        return ProviderStatus(
            provider_id,
            available,
            started,
            response_time=self._clock() - started,
            error=error,
        )

    async def get_provider_status(self, provider_id: str) -> ProviderStatus:
        """Cached status if it is younger than `cache_ttl`, else a fresh probe."""
        cached = self._cache.get(provider_id)
        if cached is not None and self._clock() - cached.checked_at < self.cache_ttl:
            return cached
        status = await self.check_provider_health(provider_id)
        self._cache[provider_id] = status
        return status

    async def detect_available_providers(self) -> List[ProviderStatus]:
        return [await self.get_provider_status(pid) for pid in self.priority_order()]

    async def get_best_available_provider(self) -> Optional[str]:
        """First reachable provider in priority order; stops probing there."""
        for provider_id in self.priority_order():
            if (await self.get_provider_status(provider_id)).available:
                return provider_id
        return None

    async def get_available_providers(self) -> List[str]:
        statuses = await self.detect_available_providers()
        return [status.provider_id for status in statuses if status.available]

    def clear_cache(self) -> None:
        self._cache.clear()
