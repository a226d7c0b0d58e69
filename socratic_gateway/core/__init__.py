"""Core configuration, logging, error handling and orchestration for the gateway.

This module provides:
- Settings: Central configuration using Pydantic Settings
- GatewayLogger: Unified logging with Rich console and JSON file output
- get_logger: Factory function for creating loggers
- Exception hierarchy with stable ErrorCode values
- Orchestrator / create_orchestrator: the public generation entry point
- PerformanceMonitor: metrics, provider health and alerts
"""

from socratic_gateway.core.config import ProviderSettings, Settings
from socratic_gateway.core.errors import (
    AllProvidersExhaustedError,
    AuthenticationError,
    BudgetExceededError,
    ErrorCode,
    GatewayError,
    InvalidInputError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
    ServerError,
    UnknownProviderError,
)
from socratic_gateway.core.llm.orchestrator import Orchestrator, create_orchestrator
from socratic_gateway.core.logging import GatewayLogger, get_logger
from socratic_gateway.core.monitoring import PerformanceMonitor

__all__ = [
    "Settings",
    "ProviderSettings",
    "GatewayLogger",
    "get_logger",
    "Orchestrator",
    "create_orchestrator",
    "PerformanceMonitor",
    "ErrorCode",
    "GatewayError",
    "InvalidInputError",
    "BudgetExceededError",
    "ProviderError",
    "ProviderTimeoutError",
    "RateLimitError",
    "AuthenticationError",
    "ServerError",
    "NetworkError",
    "UnknownProviderError",
    "ProviderUnavailableError",
    "AllProvidersExhaustedError",
]
