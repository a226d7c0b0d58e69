"""Token counting and per-call token budgeting."""

from __future__ import annotations

from typing import Protocol

import tiktoken

from socratic_gateway.core.constants import (
    CHARS_PER_TOKEN,
    DEFAULT_RESERVE_TOKENS,
    MAX_OUTPUT_TOKENS,
    MIN_OUTPUT_TOKENS,
    OPTIMAL_OUTPUT_FLOOR,
)
from socratic_gateway.core.llm.models import ProviderConfig, RequestContext, TokenEstimate
from socratic_gateway.core.logging import LoggerProtocol, default_logger

# Encoding used for models tiktoken does not know (DeepSeek, Qwen, local models).
FALLBACK_ENCODING = "cl100k_base"

# Models outside the OpenAI family tokenize differently; pad their counts.
UNKNOWN_MODEL_BUFFER = 1.1


class Counter(Protocol):
    def count(self, text: str, model: str) -> int: ...


class TokenCounter:
    """Model-aware token counter backed by tiktoken.

    Encodings are loaded lazily and cached per encoding name, since loading
    one can hit the network on first use.
    """

    def __init__(self) -> None:
        self._encodings: dict[str, tiktoken.Encoding] = {}

    def count(self, text: str, model: str) -> int:
        """
        Count tokens for given text and model.

        Known OpenAI models use their own encoding. Everything else is
        counted with cl100k_base plus a 10% buffer.

        Args:
            text: Text to count tokens for
            model: Model name (e.g., 'gpt-4o-mini', 'deepseek-chat')

        Returns:
            Number of tokens
        """
        encoding_name = self._encoding_name_for(model)
        if encoding_name is None:
            base = len(self._encoding(FALLBACK_ENCODING).encode(text))
            return int(base * UNKNOWN_MODEL_BUFFER)
        return len(self._encoding(encoding_name).encode(text))

    @staticmethod
    def _encoding_name_for(model: str) -> str | None:
        try:
            return tiktoken.encoding_name_for_model(model)
        except KeyError:
            return None

    def _encoding(self, name: str) -> tiktoken.Encoding:
        if name not in self._encodings:
            self._encodings[name] = tiktoken.get_encoding(name)
        return self._encodings[name]


class TokenBudgetEstimator:
    """Computes the input/output token budget of a request for one provider.

    ``estimate`` never raises: when counting fails it falls back to a
    character-based approximation and marks the estimate as not optimal.

    Attributes:
        counter: Object with a ``count(text, model)`` method
        reserve_tokens: Tokens kept free of both input and output
    """

    def __init__(
        self,
        counter: Counter | None = None,
        reserve_tokens: int = DEFAULT_RESERVE_TOKENS,
        min_output_tokens: int = MIN_OUTPUT_TOKENS,
        max_output_tokens: int = MAX_OUTPUT_TOKENS,
        optimal_floor: int = OPTIMAL_OUTPUT_FLOOR,
        logger: LoggerProtocol | None = None,
    ) -> None:
        self.counter = counter if counter is not None else TokenCounter()
        self.reserve_tokens = reserve_tokens
        self.min_output_tokens = min_output_tokens
        self.max_output_tokens = max_output_tokens
        self.optimal_floor = optimal_floor
        self._logger = logger or default_logger(__name__)

    def estimate(self, context: RequestContext, provider: ProviderConfig) -> TokenEstimate:
        """
        Estimate the token budget of ``context`` against ``provider``.

        Args:
            context: The request being budgeted
            provider: Target provider; its window is used unless the request
                declares its own ``max_context_tokens``

        Returns:
            TokenEstimate with the clamped output allowance
        """
        text = context.serialize()
        window = context.max_context_tokens or provider.max_context_tokens

        try:
            input_tokens = self.counter.count(text, provider.model)
        except Exception as e:
            self._logger.warning(
                f"Token counting failed for {provider.model}, using character estimate: {e}",
                provider=provider.id,
                model=provider.model,
            )
            input_tokens = len(text) // CHARS_PER_TOKEN
            return TokenEstimate(
                input_tokens=input_tokens,
                max_output_tokens=self._clamp(window - input_tokens - self.reserve_tokens),
                is_optimal=False,
                suggestion="Token count is approximate; exact counting was unavailable",
            )

        available = window - input_tokens - self.reserve_tokens
        is_optimal = available >= self.optimal_floor
        return TokenEstimate(
            input_tokens=input_tokens,
            max_output_tokens=self._clamp(available),
            is_optimal=is_optimal,
            suggestion=None
            if is_optimal
            else "Context is close to the model window; consider shortening the dialogue history",
        )

    def count(self, text: str, model: str) -> int:
        """Count tokens in ``text``, approximating by characters when counting fails."""
        try:
            return self.counter.count(text, model)
        except Exception as e:
            self._logger.debug(f"Token counting failed for {model}: {e}", model=model)
            return len(text) // CHARS_PER_TOKEN

    def _clamp(self, available: int) -> int:
        return max(self.min_output_tokens, min(self.max_output_tokens, available))
