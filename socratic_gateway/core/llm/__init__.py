"""Provider clients, budgeting and orchestration for OpenAI-compatible LLM APIs."""

from .client import ProviderClient, ProviderStream
from .costs import PRICING, CostEstimate, CostGuard, ModelPricing
from .models import (
    GenerationResponse,
    GenerationResult,
    Message,
    ProviderConfig,
    ProviderResponse,
    ProviderStatus,
    RequestContext,
    ResponseMetadata,
    TokenEstimate,
    TokenUsage,
    UsageRecord,
)
from .orchestrator import GatewayStream, Orchestrator, StreamResult, create_orchestrator
from .registry import ProviderRegistry
from .sse import SSEDecoder, ServerSentEvent
from .stub import RuleBasedResponder
from .tokenizers import TokenBudgetEstimator, TokenCounter

__all__ = [
    # Orchestration
    "Orchestrator",
    "create_orchestrator",
    "GatewayStream",
    "StreamResult",
    # Providers
    "ProviderClient",
    "ProviderStream",
    "ProviderRegistry",
    "RuleBasedResponder",
    # Budgeting
    "TokenBudgetEstimator",
    "TokenCounter",
    "CostGuard",
    "CostEstimate",
    "ModelPricing",
    "PRICING",
    # Streaming
    "SSEDecoder",
    "ServerSentEvent",
    # Data model
    "Message",
    "RequestContext",
    "ProviderConfig",
    "ProviderStatus",
    "ProviderResponse",
    "TokenEstimate",
    "TokenUsage",
    "UsageRecord",
    "GenerationResponse",
    "GenerationResult",
    "ResponseMetadata",
]
