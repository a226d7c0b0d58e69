"""Data model for provider configuration, requests and per-call estimates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from socratic_gateway.core.constants import DEFAULT_MAX_CONTEXT_TOKENS
from socratic_gateway.core.errors import ErrorCode

if TYPE_CHECKING:
    from socratic_gateway.core.config import ProviderSettings

VALID_ROLES = frozenset({"system", "user", "assistant"})


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ProviderStatus(str, Enum):
    """Live health status of a provider as tracked by the registry."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass
class ProviderConfig:
    """A configured upstream provider and its mutable health state.

    Only ProviderRegistry mutates ``status``, ``consecutive_failures``,
    ``needs_probe`` and ``last_health_check``.

    Attributes:
        id: Unique provider identifier (e.g. 'deepseek')
        endpoint: Base URL of the OpenAI-compatible API, without trailing slash
        model: Model name sent upstream
        credential: Bearer token, or None for unauthenticated endpoints
        priority: Lower values are preferred
        max_context_tokens: Context window used for token budgeting
        enabled: Disabled providers are never selected or probed
        health_check_url: Optional URL probed instead of ``{endpoint}/models``
    """

    id: str
    endpoint: str
    model: str
    credential: str | None = None
    priority: int = 1
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    enabled: bool = True
    health_check_url: str | None = None
    status: ProviderStatus = ProviderStatus.HEALTHY
    last_health_check: datetime | None = None
    consecutive_failures: int = 0
    needs_probe: bool = False

    @property
    def is_usable(self) -> bool:
        return self.enabled and self.status is not ProviderStatus.DOWN

    @classmethod
    def from_settings(cls, entry: ProviderSettings) -> ProviderConfig:
        """Build a ProviderConfig from one ``Settings.providers`` entry."""
        return cls(
            id=entry.id,
            endpoint=entry.endpoint,
            model=entry.model,
            credential=entry.api_key.get_secret_value() if entry.api_key else None,
            priority=entry.priority,
            max_context_tokens=entry.max_context_tokens,
            enabled=entry.enabled,
            health_check_url=entry.health_check_url,
        )


@dataclass(frozen=True, slots=True)
class Message:
    """One turn of dialogue history."""

    role: str
    content: str

    def to_wire(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class RequestContext:
    """An immutable generation request.

    Attributes:
        session_id: Identifier of the dialogue session
        messages: Ordered message history (oldest first)
        topic: Optional discussion topic
        case_context: Optional case background
        cost_ceiling: Maximum estimated cost in USD; None uses the global default
        max_context_tokens: Context window override; None uses the provider's
        temperature: Sampling temperature; None uses the global default
        allow_rule_based_fallback: Per-request override of the stub fallback
    """

    session_id: str
    messages: tuple[Message, ...]
    topic: str | None = None
    case_context: str | None = None
    cost_ceiling: float | None = None
    max_context_tokens: int | None = None
    temperature: float | None = None
    allow_rule_based_fallback: bool | None = None

    @classmethod
    def from_dicts(
        cls, session_id: str, messages: list[dict[str, str]], **kwargs: Any
    ) -> RequestContext:
        """Build a context from ``[{"role": ..., "content": ...}]`` dicts."""
        return cls(
            session_id=session_id,
            messages=tuple(Message(m.get("role", ""), m.get("content", "")) for m in messages),
            **kwargs,
        )

    def background(self) -> str | None:
        """System text carrying the topic and case background, if any."""
        parts = []
        if self.topic:
            parts.append(f"Discussion topic: {self.topic}")
        if self.case_context:
            parts.append(f"Case background: {self.case_context}")
        return "\n".join(parts) or None

    def wire_messages(self) -> list[dict[str, str]]:
        """Messages as sent upstream; the background leads as a system message."""
        messages = [m.to_wire() for m in self.messages]
        background = self.background()
        if background:
            messages.insert(0, {"role": "system", "content": background})
        return messages

    def serialize(self) -> str:
        """Flatten the upstream messages into the text used for token counting."""
        return "\n".join(f"{m['role']}: {m['content']}" for m in self.wire_messages())


@dataclass(frozen=True, slots=True)
class TokenEstimate:
    """Token budget for one call against one provider."""

    input_tokens: int
    max_output_tokens: int
    is_optimal: bool
    suggestion: str | None = None


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Input/output token counts as reported by (or estimated for) a call."""

    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass(frozen=True, slots=True)
class ProviderResponse:
    """Parsed result of a single successful provider call."""

    content: str
    tokens_used: TokenUsage
    cost: float
    latency_ms: float
    provider: str
    model: str


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """One terminal attempt as recorded by the performance monitor.

    Attributes:
        timestamp: When the attempt finished (UTC)
        provider: Provider id, or the rule-engine name for stub responses
        latency_ms: Wall time of the attempt in milliseconds
        tokens: Input/output token counts
        cost: Cost in USD
        success: Whether the attempt produced a response
        error_type: Failure classification (e.g. 'timeout'), None on success
        error_message: Human-readable failure detail, None on success
        fallback: Whether the attempt ran after the primary was abandoned
    """

    timestamp: datetime
    provider: str
    latency_ms: float
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    success: bool = True
    error_type: str | None = None
    error_message: str | None = None
    fallback: bool = False


@dataclass(frozen=True, slots=True)
class ResponseMetadata:
    provider: str
    model: str
    fallback: bool
    cost: float
    tokens_used: TokenUsage
    latency_ms: float
    suggestion: str | None = None


@dataclass(frozen=True, slots=True)
class GenerationResponse:
    """Caller-facing payload of a successful generation."""

    content: str
    session_id: str
    timestamp: datetime
    metadata: ResponseMetadata


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Caller-facing description of a failed generation."""

    code: ErrorCode
    message: str


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """The ``{success, data | error}`` envelope returned by ``generate``."""

    success: bool
    data: GenerationResponse | None = None
    error: ErrorInfo | None = None

    @classmethod
    def ok(cls, data: GenerationResponse) -> GenerationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> GenerationResult:
        return cls(success=False, error=ErrorInfo(code=code, message=message))
