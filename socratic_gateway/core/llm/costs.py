"""LLM cost estimation and per-request budget enforcement.

All prices are USD per 1 million tokens.

Usage:
    from socratic_gateway.core.llm.costs import CostGuard

    guard = CostGuard()
    estimate = guard.estimate_cost(1_000, 500, "deepseek-chat")
    if not guard.check_budget(estimate, ceiling=0.50):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from socratic_gateway.core.logging import LoggerProtocol, default_logger


@dataclass(frozen=True, slots=True)
class ModelPricing:
    """Pricing information for an LLM model.

    Attributes:
        input_per_million: Cost in USD per 1 million input/prompt tokens.
        output_per_million: Cost in USD per 1 million output/completion tokens.
    """

    input_per_million: float
    output_per_million: float


@dataclass(frozen=True, slots=True)
class CostEstimate:
    """Pre-flight cost estimate for a single call."""

    input_cost: float
    output_cost: float
    total_cost: float
    within_budget: bool = True


# Prices are current as of early 2026
PRICING: dict[str, ModelPricing] = {
    # DeepSeek
    "deepseek-chat": ModelPricing(input_per_million=0.27, output_per_million=1.10),
    "deepseek-reasoner": ModelPricing(input_per_million=0.55, output_per_million=2.19),
    # OpenAI GPT models
    "gpt-4o": ModelPricing(input_per_million=2.50, output_per_million=10.00),
    "gpt-4o-mini": ModelPricing(input_per_million=0.15, output_per_million=0.60),
    "gpt-4.1": ModelPricing(input_per_million=2.00, output_per_million=8.00),
    "gpt-4.1-mini": ModelPricing(input_per_million=0.40, output_per_million=1.60),
    "gpt-4.1-nano": ModelPricing(input_per_million=0.10, output_per_million=0.40),
    "gpt-4-turbo": ModelPricing(input_per_million=10.00, output_per_million=30.00),
    "gpt-4": ModelPricing(input_per_million=30.00, output_per_million=60.00),
    "gpt-3.5-turbo": ModelPricing(input_per_million=0.50, output_per_million=1.50),
    # Anthropic models served through OpenAI-compatible endpoints
    "claude-3-5-haiku-20241022": ModelPricing(input_per_million=0.80, output_per_million=4.00),
    "claude-3-haiku-20240307": ModelPricing(input_per_million=0.25, output_per_million=1.25),
    "claude-sonnet-4-20250514": ModelPricing(input_per_million=3.00, output_per_million=15.00),
    # Qwen (DashScope compatible mode)
    "qwen-turbo": ModelPricing(input_per_million=0.05, output_per_million=0.20),
    "qwen-plus": ModelPricing(input_per_million=0.40, output_per_million=1.20),
}


class CostGuard:
    """Estimates call cost and enforces the per-request cost ceiling.

    Cost tracking is best-effort: an unknown model yields a zero-cost
    estimate (and a warning) instead of blocking the call.

    Args:
        custom_pricing: Per-model overrides, either ModelPricing instances or
            ``{"input_per_million": ..., "output_per_million": ...}`` dicts.
            Overrides take precedence over the built-in PRICING table.
        logger: Optional logger for unknown-model warnings
    """

    def __init__(
        self,
        custom_pricing: Mapping[str, ModelPricing | Mapping[str, float]] | None = None,
        logger: LoggerProtocol | None = None,
    ) -> None:
        self._pricing: dict[str, ModelPricing] = dict(PRICING)
        for model, pricing in (custom_pricing or {}).items():
            if not isinstance(pricing, ModelPricing):
                pricing = ModelPricing(
                    input_per_million=float(pricing.get("input_per_million", 0.0)),
                    output_per_million=float(pricing.get("output_per_million", 0.0)),
                )
            self._pricing[model] = pricing
        self._logger = logger or default_logger(__name__)
        self._warned: set[str] = set()

    def get_pricing(self, model: str) -> ModelPricing | None:
        return self._pricing.get(model)

    def estimate_cost(self, input_tokens: int, output_tokens: int, model: str) -> CostEstimate:
        """Estimate the cost of a call.

        Args:
            input_tokens: Number of input/prompt tokens
            output_tokens: Number of output/completion tokens (or the allowance)
            model: Model identifier used for the pricing lookup

        Returns:
            CostEstimate in USD; all zeros for unknown models.

        Example:
            >>> CostGuard().estimate_cost(1_000_000, 500_000, "gpt-4o-mini").total_cost
            0.45
        """
        pricing = self._pricing.get(model)
        if pricing is None:
            if model not in self._warned:
                self._warned.add(model)
                self._logger.warning(
                    f"Unknown model '{model}' - cost tracking disabled for it",
                    model=model,
                )
            return CostEstimate(input_cost=0.0, output_cost=0.0, total_cost=0.0)

        input_cost = (input_tokens / 1_000_000) * pricing.input_per_million
        output_cost = (output_tokens / 1_000_000) * pricing.output_per_million
        return CostEstimate(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
        )

    @staticmethod
    def check_budget(estimate: CostEstimate, ceiling: float) -> bool:
        """Return True when the estimate's total cost does not exceed ``ceiling``."""
        return estimate.total_cost <= ceiling

    def guard(
        self, input_tokens: int, output_tokens: int, model: str, ceiling: float
    ) -> CostEstimate:
        """Estimate and check in one step; ``within_budget`` carries the verdict."""
        estimate = self.estimate_cost(input_tokens, output_tokens, model)
        return CostEstimate(
            input_cost=estimate.input_cost,
            output_cost=estimate.output_cost,
            total_cost=estimate.total_cost,
            within_budget=self.check_budget(estimate, ceiling),
        )
