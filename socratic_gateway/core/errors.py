"""Exception hierarchy for the Socratic gateway."""

from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar


class ErrorCode(str, Enum):
    """Stable error codes exposed to callers of the orchestrator."""

    INVALID_INPUT = "InvalidInput"
    BUDGET_EXCEEDED = "BudgetExceeded"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    TIMEOUT = "Timeout"
    RATE_LIMITED = "RateLimited"
    AUTH_ERROR = "AuthError"
    NETWORK_ERROR = "NetworkError"
    UNKNOWN_PROVIDER_ERROR = "UnknownProviderError"
    ALL_PROVIDERS_EXHAUSTED = "AllProvidersExhausted"


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    code: ErrorCode = ErrorCode.UNKNOWN_PROVIDER_ERROR


@dataclass
class InvalidInputError(GatewayError):
    """Exception raised when a request context is malformed."""

    message: str
    code = ErrorCode.INVALID_INPUT

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"Invalid Input: {self.message}"


@dataclass
class BudgetExceededError(GatewayError):
    """Exception raised when the pre-flight cost estimate exceeds the ceiling."""

    provider: str
    model: str
    estimated_cost: float
    ceiling: float
    code = ErrorCode.BUDGET_EXCEEDED

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        return (
            f"Budget Exceeded [{self.provider}/{self.model}]: estimated "
            f"${self.estimated_cost:.4f} exceeds ceiling ${self.ceiling:.4f}"
        )


@dataclass
class ProviderError(GatewayError, ABC):
    """Abstract base exception for failures against a single provider."""

    provider: str
    model: str
    message: str
    kind: ClassVar[str] = "unknown"

    def __post_init__(self) -> None:
        """Initialize the Exception base class with the message."""
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"Provider Error [{self.provider}/{self.model}]: {self.message}"


@dataclass
class ProviderTimeoutError(ProviderError):
    """Exception raised when a provider call exceeds its timeout.

    Note: Named ProviderTimeoutError to avoid shadowing Python's built-in TimeoutError.
    """

    timeout: float = 0.0
    code = ErrorCode.TIMEOUT
    kind = "timeout"

    def __str__(self) -> str:
        return f"Timeout Error [{self.provider}/{self.model}]: {self.message} (timeout: {self.timeout}s)"


@dataclass
class RateLimitError(ProviderError):
    """Exception raised when the provider answers 429."""

    retry_after: float | None = None
    code = ErrorCode.RATE_LIMITED
    kind = "rate_limited"

    def __str__(self) -> str:
        base = f"Rate Limit Error [{self.provider}/{self.model}]: {self.message}"
        if self.retry_after is not None:
            base += f" (retry after {self.retry_after}s)"
        return base


@dataclass
class AuthenticationError(ProviderError):
    """Exception raised when the credential is missing or rejected."""

    code = ErrorCode.AUTH_ERROR
    kind = "auth"

    def __str__(self) -> str:
        return f"Authentication Error [{self.provider}/{self.model}]: {self.message}"


@dataclass
class ServerError(ProviderError):
    """Exception raised when the provider answers with a 5xx status."""

    status_code: int = 500
    code = ErrorCode.UNKNOWN_PROVIDER_ERROR
    kind = "server_error"

    def __str__(self) -> str:
        return f"Server Error [{self.provider}/{self.model}] HTTP {self.status_code}: {self.message}"


@dataclass
class NetworkError(ProviderError):
    """Exception raised when the provider cannot be reached at all."""

    code = ErrorCode.NETWORK_ERROR
    kind = "network_error"

    def __str__(self) -> str:
        return f"Network Error [{self.provider}/{self.model}]: {self.message}"


@dataclass
class UnknownProviderError(ProviderError):
    """Exception raised for unclassified failures and malformed responses."""

    code = ErrorCode.UNKNOWN_PROVIDER_ERROR

    def __str__(self) -> str:
        return f"Unknown Provider Error [{self.provider}/{self.model}]: {self.message}"


@dataclass
class ProviderUnavailableError(GatewayError):
    """Exception raised when no usable provider can be selected."""

    message: str = "No healthy provider is configured"
    code = ErrorCode.PROVIDER_UNAVAILABLE

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"Provider Unavailable: {self.message}"


@dataclass
class AllProvidersExhaustedError(GatewayError):
    """Exception raised when every stage of the fallback chain failed.

    Attributes:
        attempts: Errors collected from each attempted stage, in order
    """

    attempts: list[GatewayError] = field(default_factory=list)
    code = ErrorCode.ALL_PROVIDERS_EXHAUSTED

    def __post_init__(self) -> None:
        super().__init__(str(self))

    def __str__(self) -> str:
        if not self.attempts:
            return "All providers exhausted: no provider was attempted"
        detail = "; ".join(str(err) for err in self.attempts)
        return f"All providers exhausted: {detail}"
