"""
Adaptive availability polling.

`AvailabilityPoller` watches the registry's active provider. It checks
once on `start()`; if the provider is down it keeps probing every
`base_interval * backoff_multiplier` seconds, warns once after
`early_warning_threshold` failed probes, stretches the interval by
`backoff_factor` at `backoff_threshold`, and gives up for good after
`max_attempts` (until `recheck()` is called).

All state lives in one `AvailabilityState` per provider and is mutated
only by the poller's control task. The poller never writes the
registry; it only reads the active provider id.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from planchat.core.events import (
    AvailabilityChangedEvent,
    BackoffEvent,
    EarlyWarningEvent,
    EventListener,
    ExhaustedEvent,
    ModelsRefreshedCallback,
    PollerEvent,
    ProviderStatusEvent,
    notify,
)
from planchat.providers.base import BaseProvider
from planchat.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PollerPhase(str, Enum):
    INIT = "init"
    CHECKING = "checking"
    AVAILABLE = "available"
    UNAVAILABLE_WAITING = "unavailable_waiting"
    EXHAUSTED = "exhausted"
    STOPPED = "stopped"


_IN_PROGRESS = (PollerPhase.CHECKING, PollerPhase.UNAVAILABLE_WAITING)


@dataclass
class AvailabilityState:
    available: bool = False
    attempt_count: int = 0
    backoff_multiplier: int = 1
    warned: bool = False
    phase: PollerPhase = PollerPhase.INIT

    def mark_available(self) -> None:
        # Counters go back to baseline in the same step as the flip.
        self.available = True
        self.attempt_count = 0
        self.backoff_multiplier = 1
        self.warned = False
        self.phase = PollerPhase.AVAILABLE


@dataclass(frozen=True)
class PollingPolicy:
    """
    Polling knobs. Intervals are in seconds.

    `healthy_interval` is only used when `keep_polling_when_available`
    is set; it defaults to `base_interval`.
    """

    base_interval: float = 10.0
    early_warning_threshold: int = 3
    backoff_threshold: int = 10
    backoff_factor: int = 3
    max_attempts: int = 30
    keep_polling_when_available: bool = False
    healthy_interval: Optional[float] = None

    def __post_init__(self) -> None:
        if self.base_interval <= 0:
            raise ValueError("base_interval must be greater than 0.")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be 1 or greater.")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be 1 or greater.")

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "PollingPolicy":
        cfg = cfg or {}
        defaults = cls()
        healthy = cfg.get("healthy_interval")
        return cls(
            base_interval=float(cfg.get("base_interval", defaults.base_interval)),
            early_warning_threshold=int(
                cfg.get("early_warning_threshold", defaults.early_warning_threshold)
            ),
            backoff_threshold=int(cfg.get("backoff_threshold", defaults.backoff_threshold)),
            backoff_factor=int(cfg.get("backoff_factor", defaults.backoff_factor)),
            max_attempts=int(cfg.get("max_attempts", defaults.max_attempts)),
            keep_polling_when_available=bool(
                cfg.get("keep_polling_when_available", defaults.keep_polling_when_available)
            ),
            healthy_interval=float(healthy) if healthy is not None else None,
        )


class AvailabilityPoller:
    """
    Per-provider availability state machine driven by one control task.

        INIT -> CHECKING -> AVAILABLE
                         -> UNAVAILABLE_WAITING -> ... -> EXHAUSTED

    A provider that is left behind (stop, or the active provider changed)
    is STOPPED. Checking an EXHAUSTED or STOPPED provider again starts
    from a fresh state.

    Events are delivered to listeners registered with `add_listener`.
    `sleep` is injectable so tests can run the schedule without waiting.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        policy: Optional[PollingPolicy] = None,
        on_models_refreshed: Optional[ModelsRefreshedCallback] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.policy = policy or PollingPolicy()
        self.on_models_refreshed = on_models_refreshed
        self._sleep = sleep
        self._states: Dict[str, AvailabilityState] = {}
        self._listeners: List[EventListener] = []
        self._probing: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._tracked_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Subscribe to poller events. Returns a function that unsubscribes."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def state_for(self, provider_id: str) -> AvailabilityState:
        """Snapshot of a provider's state (a copy; mutating it has no effect)."""
        return replace(self._states.get(provider_id) or AvailabilityState())

    @property
    def tracked_provider_id(self) -> Optional[str]:
        return self._tracked_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> Optional[AvailabilityState]:
        """
        Check the active provider once and keep polling if it is down.

        Returns the state after the initial check, or None when no
        provider is active.
        """
        if self.running:
            return self.state_for(self._tracked_id) if self._tracked_id else None
        provider = self.registry.get_active_provider()
        if provider is None:
            logger.info("No active provider; availability polling not started.")
            return None
        self._tracked_id = provider.id
        checked = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(provider, checked))
        await checked
        return self.state_for(provider.id)

    async def recheck(self) -> Optional[AvailabilityState]:
        """Restart from a fresh baseline, e.g. after exhaustion."""
        await self.stop()
        provider = self.registry.get_active_provider()
        if provider is not None:
            self._states.pop(provider.id, None)
        return await self.start()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            state = self._states.get(self._tracked_id or "")
            if state is not None and state.phase in _IN_PROGRESS:
                state.phase = PollerPhase.STOPPED

    async def wait_stopped(self) -> None:
        """Wait until the control task ends on its own (exhaustion or recovery)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Control task
    # ------------------------------------------------------------------

    async def _run(self, provider: BaseProvider, checked: "asyncio.Future[None]") -> None:
        try:
            keep_polling = await self._initial_check(provider)
        finally:
            if not checked.done():
                checked.set_result(None)
        if keep_polling:
            await self._loop()

    async def _loop(self) -> None:
        while True:
            state = self._states[self._tracked_id]
            await self._sleep(self._interval(state))

            provider = self.registry.get_active_provider()
            if provider is None:
                continue
            if provider.id != self._tracked_id:
                logger.info("Active provider is now '%s'; following it.", provider.id)
                if state.phase in _IN_PROGRESS:
                    state.phase = PollerPhase.STOPPED
                self._tracked_id = provider.id
                if not await self._initial_check(provider):
                    return
                continue
            if not await self._tick(provider, state):
                return

    def _state(self, provider_id: str) -> AvailabilityState:
        state = self._states.get(provider_id)
        if state is None:
            state = self._states[provider_id] = AvailabilityState()
        return state

    def _interval(self, state: AvailabilityState) -> float:
        if state.available:
            return self.policy.healthy_interval or self.policy.base_interval
        return self.policy.base_interval * state.backoff_multiplier

    async def _initial_check(self, provider: BaseProvider) -> bool:
        """One check outside the attempt budget. Returns whether to keep polling."""
        state = self._state(provider.id)
        if state.phase in (PollerPhase.EXHAUSTED, PollerPhase.STOPPED):
            # A provider picked up again starts a fresh run.
            state = self._states[provider.id] = AvailabilityState()
        state.phase = PollerPhase.CHECKING
        available = await self._probe(provider)
        if available:
            await self._became_available(provider, state)
            return self.policy.keep_polling_when_available
        state.available = False
        state.phase = PollerPhase.UNAVAILABLE_WAITING
        await self._emit(ProviderStatusEvent(provider.id, False, state.attempt_count))
        return True

    async def _tick(self, provider: BaseProvider, state: AvailabilityState) -> bool:
        """One scheduled probe. Returns whether to keep polling."""
        available = await self._probe(provider)
        if available is None:
            return True

        if available:
            if state.available:
                state.mark_available()
                await self._emit(ProviderStatusEvent(provider.id, True, 0))
            else:
                await self._became_available(provider, state)
            return self.policy.keep_polling_when_available

        was_available = state.available
        state.available = False
        state.phase = PollerPhase.UNAVAILABLE_WAITING
        state.attempt_count += 1
        attempt = state.attempt_count
        await self._emit(ProviderStatusEvent(provider.id, False, attempt))
        if was_available:
            await self._emit(AvailabilityChangedEvent(provider.id, False, attempt))

        if attempt >= self.policy.max_attempts:
            state.phase = PollerPhase.EXHAUSTED
            await self._emit(
                ExhaustedEvent(
                    provider.id,
                    attempt,
                    message=(
                        f"{provider.name} is still unreachable after {attempt} checks. "
                        "Start it or choose another provider in settings, then re-check."
                    ),
                )
            )
            return False

        if attempt == self.policy.early_warning_threshold and not state.warned:
            state.warned = True
            await self._emit(
                EarlyWarningEvent(
                    provider.id,
                    attempt,
                    message=(
                        f"{provider.name} is not reachable yet. "
                        "Configure a provider now, or keep waiting?"
                    ),
                )
            )

        if attempt == self.policy.backoff_threshold:
            state.backoff_multiplier *= self.policy.backoff_factor
            await self._emit(BackoffEvent(provider.id, attempt, interval=self._interval(state)))
        return True

    async def _became_available(self, provider: BaseProvider, state: AvailabilityState) -> None:
        state.mark_available()
        await self._emit(ProviderStatusEvent(provider.id, True, 0))
        await self._emit(AvailabilityChangedEvent(provider.id, True, 0))
        if provider.supports_model_listing:
            models = await provider.list_models_with_details()
            try:
                await notify(self.on_models_refreshed, provider.id, models)
            except Exception:  # noqa: BLE001
                logger.exception("Model refresh callback failed for '%s'", provider.id)

    async def _probe(self, provider: BaseProvider) -> Optional[bool]:
        """Probe once. None means a probe for this provider is already in flight."""
        if provider.id in self._probing:
            logger.debug("Probe for '%s' already in flight; skipping.", provider.id)
            return None
        self._probing.add(provider.id)
        try:
            return bool(await provider.is_available())
        except Exception as exc:  # noqa: BLE001
            logger.debug("Probe for '%s' failed: %s", provider.id, exc)
            return False
        finally:
            self._probing.discard(provider.id)

    async def _emit(self, event: PollerEvent) -> None:
        for listener in list(self._listeners):
            try:
                await notify(listener, event)
            except Exception:  # noqa: BLE001
                logger.exception("Poller listener failed on %s", type(event).__name__)
