"""
Error taxonomy and classification.

Every failure that leaves a provider adapter is a `ProviderRequestError`
subclass carrying a kind from the closed `ErrorKind` taxonomy, a
retryable flag and the originating provider id. `classify_error` maps
raw transport and SDK exceptions into that taxonomy, and
`ErrorClassifier` turns a classified error into an `ErrorReport` with a
ranked list of suggested remedial actions for the presentation layer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import anthropic
import httpx
import openai

from planchat.core.cancellation import RequestCancelled
from planchat.core.events import ModelsRefreshedCallback, notify

if TYPE_CHECKING:
    from planchat.providers.base import ModelInfo
    from planchat.providers.registry import ProviderRegistry


class ErrorKind(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    INVALID_REQUEST = "INVALID_REQUEST"
    API_ERROR = "API_ERROR"
    MODEL_NOT_FOUND = "MODEL_NOT_FOUND"
    CANCELLED = "CANCELLED"


class ProviderError(Exception):
    """Raised when a provider fails to execute a request."""


class UnknownProviderError(ProviderError):
    """Raised when a provider id is not registered."""


class ProviderRequestError(ProviderError):
    """
    A provider failure mapped into the error taxonomy.

    Subclasses fix `kind` and the default `retryable` flag. The original
    exception, when there is one, is kept in `cause`.
    """

    kind: ErrorKind = ErrorKind.API_ERROR
    retryable: bool = True

    def __init__(
        self,
        message: str,
        provider_id: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.status_code = status_code
        self.cause = cause


class NetworkError(ProviderRequestError):
    kind = ErrorKind.NETWORK_ERROR


class RequestTimeoutError(ProviderRequestError):
    kind = ErrorKind.TIMEOUT


class RateLimitError(ProviderRequestError):
    kind = ErrorKind.RATE_LIMIT


class InvalidRequestError(ProviderRequestError):
    kind = ErrorKind.INVALID_REQUEST
    retryable = False


class APIError(ProviderRequestError):
    kind = ErrorKind.API_ERROR


class ModelNotFoundError(ProviderRequestError):
    kind = ErrorKind.MODEL_NOT_FOUND
    retryable = False


class CancelledRequestError(ProviderRequestError):
    kind = ErrorKind.CANCELLED
    retryable = False


# APITimeoutError subclasses APIConnectionError in both SDKs, so timeouts
# must be checked first.
_TIMEOUT_TYPES = (
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    openai.APITimeoutError,
    anthropic.APITimeoutError,
)

_NETWORK_TYPES = (
    httpx.TransportError,
    openai.APIConnectionError,
    anthropic.APIConnectionError,
    ConnectionError,
    OSError,
)

# A missing or non-executable CLI binary is a setup problem, not a network one.
_SETUP_TYPES = (FileNotFoundError, PermissionError)


def _looks_like_missing_model(text: str) -> bool:
    # Backends do not report this with a structured code.
    lowered = text.lower()
    return "model" in lowered or "not found" in lowered


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def error_from_status(
    status_code: int,
    message: str,
    provider_id: str,
    cause: Optional[BaseException] = None,
) -> ProviderRequestError:
    """
    Build the classified error for a non-success HTTP status.

    429 is a rate limit, other 4xx codes are invalid requests, 5xx codes
    are API errors. Either of the last two becomes a missing model when
    the text says so.
    """
    if status_code == 429:
        return RateLimitError(message, provider_id, status_code, cause)
    if _looks_like_missing_model(message):
        return ModelNotFoundError(message, provider_id, status_code, cause)
    if 400 <= status_code < 500:
        return InvalidRequestError(message, provider_id, status_code, cause)
    return APIError(message, provider_id, status_code, cause)


def classify_error(
    exc: BaseException,
    provider_id: str,
    context: Optional[str] = None,
) -> ProviderRequestError:
    """
    Map any exception into the error taxonomy.

    Args:
        exc: The raw failure.
        provider_id: Provider the failure originated from.
        context: Optional operation description prefixed to the message.

    Returns:
        `exc` itself if it is already classified, otherwise a new
        `ProviderRequestError` subclass wrapping it.
    """
    if isinstance(exc, ProviderRequestError):
        return exc

    detail = str(exc) or exc.__class__.__name__
    message = f"{context}: {detail}" if context else detail

    if isinstance(exc, (RequestCancelled, asyncio.CancelledError)):
        return CancelledRequestError(message, provider_id, cause=exc)
    if isinstance(exc, _TIMEOUT_TYPES):
        return RequestTimeoutError(message, provider_id, cause=exc)
    if isinstance(exc, _SETUP_TYPES):
        return InvalidRequestError(message, provider_id, cause=exc)
    if isinstance(exc, _NETWORK_TYPES):
        return NetworkError(message, provider_id, cause=exc)

    status_code = _status_code(exc)
    if status_code is not None:
        return error_from_status(status_code, message, provider_id, cause=exc)

    if _looks_like_missing_model(detail):
        return ModelNotFoundError(message, provider_id, cause=exc)
    return APIError(message, provider_id, cause=exc)


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether a raw or classified failure is worth another attempt.

    Unclassified exceptions are only retried when they are transport
    level (network or timeout) failures.
    """
    if isinstance(exc, ProviderRequestError):
        return exc.retryable
    if isinstance(exc, (RequestCancelled,) + _SETUP_TYPES):
        return False
    return isinstance(exc, _TIMEOUT_TYPES + _NETWORK_TYPES)


@dataclass(frozen=True)
class SuggestedAction:
    action: str
    label: str
    provider_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action": self.action, "label": self.label}
        if self.provider_id is not None:
            data["provider_id"] = self.provider_id
        return data


@dataclass
class ErrorReport:
    """
    Classified error as handed to the presentation layer.

    `suggested_actions` is ranked; the UI should render exactly these
    affordances.
    """

    kind: ErrorKind
    message: str
    retryable: bool
    provider_id: Optional[str]
    suggested_actions: List[SuggestedAction] = field(default_factory=list)
    cause: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "provider_id": self.provider_id,
            "suggested_actions": [a.to_dict() for a in self.suggested_actions],
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class ErrorClassifier:
    """
    Turns failures into `ErrorReport`s.

    Suggested actions, in rank order:
      - retry:          the error is retryable
      - switchProvider: the registry has another provider to fall back to
      - refreshModels:  the model was not found (a refresh is also
                        triggered automatically by `report`)
      - openSettings:   nothing provider-specific is known
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        on_models_refreshed: Optional[ModelsRefreshedCallback] = None,
    ) -> None:
        self.registry = registry
        self.on_models_refreshed = on_models_refreshed

    def classify(
        self,
        error: BaseException,
        provider_id: Optional[str] = None,
    ) -> ErrorReport:
        if isinstance(error, ProviderRequestError):
            classified = error
        elif provider_id is not None:
            classified = classify_error(error, provider_id)
        else:
            return ErrorReport(
                kind=ErrorKind.API_ERROR,
                message=str(error) or error.__class__.__name__,
                retryable=False,
                provider_id=None,
                suggested_actions=[SuggestedAction("openSettings", "Open Settings")],
                cause=error,
            )

        failing_id = classified.provider_id or provider_id
        actions: List[SuggestedAction] = []
        if classified.kind is not ErrorKind.CANCELLED:
            if classified.retryable:
                actions.append(SuggestedAction("retry", "Retry"))
            fallback = self.registry.get_next_available_provider(
                [failing_id] if failing_id else []
            )
            if fallback is not None:
                actions.append(
                    SuggestedAction(
                        "switchProvider",
                        f"Switch to {fallback.name}",
                        provider_id=fallback.id,
                    )
                )
            if classified.kind is ErrorKind.MODEL_NOT_FOUND:
                actions.append(
                    SuggestedAction("refreshModels", "Refresh Models", provider_id=failing_id)
                )
            if not actions:
                actions.append(SuggestedAction("openSettings", "Open Settings"))

        return ErrorReport(
            kind=classified.kind,
            message=classified.message,
            retryable=classified.retryable,
            provider_id=failing_id,
            suggested_actions=actions,
            cause=classified.cause if classified.cause is not None else classified,
        )

    async def report(
        self,
        error: BaseException,
        provider_id: Optional[str] = None,
    ) -> ErrorReport:
        """Classify `error` and refresh the model list when the model is missing."""
        report = self.classify(error, provider_id)
        if report.kind is ErrorKind.MODEL_NOT_FOUND and report.provider_id:
            await self.refresh_models(report.provider_id)
        return report

    async def refresh_models(self, provider_id: str) -> List["ModelInfo"]:
        provider = self.registry.get_provider(provider_id)
        if provider is None or not provider.supports_model_listing:
            return []
        models = await provider.list_models_with_details()
        await notify(self.on_models_refreshed, provider_id, models)
        return models
