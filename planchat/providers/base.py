"""
Base types for backend providers.

Defines the canonical request/response types every provider speaks,
the model metadata type, and `BaseProvider`, which owns the behaviour
shared by all adapters: effective-model resolution, running a transport
call under the retry executor with a per-call timeout, and re-raising
final failures as classified errors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from planchat.core.cancellation import CancellationToken, guarded
from planchat.core.errors import classify_error
from planchat.core.retry import RetryExecutor, RetryPolicy

if TYPE_CHECKING:
    from planchat.providers.streaming import ChatStream

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLES = ("user", "assistant", "system")
FINISH_REASONS = ("stop", "length", "error", "cancelled")

PROBE_TIMEOUT = 5.0
LISTING_TIMEOUT = 10.0


@dataclass(frozen=True)
class ProviderConfig:
    """
    Settings for one adapter instance.

    Immutable: when settings change, a new adapter is built. `timeout`
    is the per-call bound in seconds (0 disables it).
    """

    id: str
    name: str
    base_url: str = ""
    api_key: Optional[str] = None
    model: str = ""
    timeout: float = 30.0
    max_retries: int = 3


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Unsupported message role: {self.role!r}")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """
    A chat completion request.

    `messages` is in conversation order and is sent in that order.
    """

    messages: List[ChatMessage]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    cancellation: Optional[CancellationToken] = None

    @classmethod
    def from_dicts(cls, messages: Sequence[Dict[str, Any]], **kwargs: Any) -> "ChatRequest":
        return cls(
            messages=[ChatMessage(role=m["role"], content=m.get("content", "")) for m in messages],
            **kwargs,
        )

    def message_dicts(self) -> List[Dict[str, str]]:
        return [m.to_dict() for m in self.messages]


@dataclass(frozen=True)
class Usage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None

    @classmethod
    def from_counts(
        cls,
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
        total_tokens: Optional[int] = None,
    ) -> "Usage":
        """Absent counters stay absent; the total is only derived from two known parts."""
        if total_tokens is None and prompt_tokens is not None and completion_tokens is not None:
            total_tokens = prompt_tokens + completion_tokens
        return cls(prompt_tokens, completion_tokens, total_tokens)


@dataclass
class ChatResponse:
    """
    Normalized chat response returned by providers.

    `content` is the full response text, `model` the model the backend
    actually used.
    """

    id: str
    content: str
    model: str
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class StreamChunk:
    delta: str
    done: bool
    finish_reason: Optional[str] = None
    model: Optional[str] = None


@dataclass
class ModelInfo:
    """
    Metadata about a model known to a backend.

    `is_running` is derived by cross-referencing the currently loaded set.
    """

    name: str
    size: int = 0
    digest: str = ""
    modified_at: str = ""
    family: Optional[str] = None
    parameter_size: Optional[str] = None
    quantization_level: Optional[str] = None
    is_running: bool = False


def map_finish_reason(reason: Optional[str]) -> str:
    """Normalize backend finish/stop reasons onto the canonical set."""
    normalized = reason.lower() if isinstance(reason, str) else reason
    if normalized in (None, "", "stop", "end_turn", "stop_sequence", "tool_calls", "tool_use", "function_call"):
        return "stop"
    if normalized in ("length", "max_tokens"):
        return "length"
    if normalized in ("cancelled", "canceled", "user_cancelled"):
        return "cancelled"
    return "error"


class BaseProvider:
    """
    Abstract base class for all providers.

    Providers must implement `chat`, `stream_chat`, `is_available` and
    `list_models`. `from_config` builds an instance from a
    `ProviderConfig`. Probing and listing must never raise.
    """

    supports_model_listing: bool = True

    def __init__(
        self,
        config: ProviderConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config
        self.retry_executor = RetryExecutor(retry_policy)

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @classmethod
    def from_config(cls, config: ProviderConfig, **kwargs: Any) -> "BaseProvider":
        return cls(config, **kwargs)

    async def chat(self, request: ChatRequest) -> ChatResponse:
        raise NotImplementedError

    def stream_chat(self, request: ChatRequest) -> "ChatStream":
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def list_models(self) -> List[str]:
        raise NotImplementedError

    async def list_models_with_details(self) -> List[ModelInfo]:
        return [ModelInfo(name=name) for name in await self.list_models()]

    async def list_running_models(self) -> List[ModelInfo]:
        return []

    async def resolve_model(self, request: ChatRequest) -> str:
        """
        Pick the model for a request.

        The request override or configured model is kept if the backend
        lists it (or lists nothing). Otherwise the first listed model is
        used and a warning is logged.
        """
        wanted = request.model or self.config.model
        if not self.supports_model_listing:
            return wanted
        models = await self.list_models()
        # Gemini lists ids as "models/<name>".
        known = set(models) | {m[len("models/"):] for m in models if m.startswith("models/")}
        if models and wanted not in known:
            logger.warning(
                "Configured model '%s' not found on provider '%s'. Using '%s' instead.",
                wanted,
                self.id,
                models[0],
            )
            return models[0]
        return wanted

    async def run_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        request: ChatRequest,
        context: str,
    ) -> T:
        """
        Run one transport call under the retry executor.

        Every attempt is bounded by the external cancellation token and
        the configured per-call timeout, whichever fires first. Failures
        that survive the retries are raised classified, with `context`.
        """

        async def attempt() -> T:
            return await guarded(operation(), request.cancellation, self.config.timeout)

        try:
            return await self.retry_executor.execute(
                attempt,
                max_retries=self.config.max_retries,
                cancellation=request.cancellation,
            )
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc, self.id, context)
            if error is exc:
                raise
            raise error from exc

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id!r}, model={self.config.model!r})"
