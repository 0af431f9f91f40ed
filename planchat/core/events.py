"""
Availability events published by the poller.

The set of event types is closed: every event is one of the frozen
dataclasses in `PollerEvent`. Consumers dispatch on the concrete type
at a single boundary and must treat an unknown type as a programming
error.
"""

from __future__ import annotations

import inspect
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from planchat.providers.base import ModelInfo


@dataclass(frozen=True)
class ProviderStatusEvent:
    """Result of one probe."""

    provider_id: str
    available: bool
    attempt_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "providerStatus", **asdict(self)}


@dataclass(frozen=True)
class AvailabilityChangedEvent:
    """The provider flipped between available and unavailable."""

    provider_id: str
    available: bool
    attempt_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "availabilityChanged", **asdict(self)}


@dataclass(frozen=True)
class EarlyWarningEvent:
    """Advisory offered once per unavailable streak: configure now or later."""

    provider_id: str
    attempt_count: int
    message: str
    actions: Tuple[str, ...] = ("configure", "later")
    available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["actions"] = list(self.actions)
        return {"type": "earlyWarning", **data}


@dataclass(frozen=True)
class BackoffEvent:
    """The poll interval was stretched after too many failed probes."""

    provider_id: str
    attempt_count: int
    interval: float
    available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "backoff", **asdict(self)}


@dataclass(frozen=True)
class ExhaustedEvent:
    """Polling gave up; only an explicit re-check resumes it."""

    provider_id: str
    attempt_count: int
    message: str
    available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "exhausted", **asdict(self)}


PollerEvent = Union[
    ProviderStatusEvent,
    AvailabilityChangedEvent,
    EarlyWarningEvent,
    BackoffEvent,
    ExhaustedEvent,
]

EVENT_TYPES = (
    ProviderStatusEvent,
    AvailabilityChangedEvent,
    EarlyWarningEvent,
    BackoffEvent,
    ExhaustedEvent,
)

EventListener = Callable[[PollerEvent], Optional[Awaitable[None]]]
ModelsRefreshedCallback = Callable[[str, List["ModelInfo"]], Optional[Awaitable[None]]]


async def notify(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a sync or async callback, ignoring a missing one."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
