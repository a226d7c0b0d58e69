"""Tests for token counting and budget estimation."""

import pytest

from socratic_gateway.core.llm import tokenizers
from socratic_gateway.core.llm.tokenizers import TokenBudgetEstimator, TokenCounter


class ExplodingCounter:
    def count(self, text, model):
        raise RuntimeError("encoding unavailable")


class FixedCounter:
    def __init__(self, tokens):
        self.tokens = tokens

    def count(self, text, model):
        return self.tokens


class FakeEncoding:
    def encode(self, text):
        return text.split()


class TestTokenBudgetEstimator:
    def test_roomy_context_gets_max_output(self, make_context, make_provider, counter, logger):
        estimator = TokenBudgetEstimator(counter=counter, logger=logger)

        estimate = estimator.estimate(make_context("one two three"), make_provider())

        # "user: one two three" is four words
        assert estimate.input_tokens == 4
        assert estimate.max_output_tokens == 1000
        assert estimate.is_optimal is True
        assert estimate.suggestion is None

    def test_output_is_window_minus_input_minus_reserve(self, make_context, make_provider, logger):
        estimator = TokenBudgetEstimator(counter=FixedCounter(7_400), logger=logger)

        estimate = estimator.estimate(make_context(), make_provider(max_context_tokens=8_000))

        assert estimate.max_output_tokens == 500
        assert estimate.is_optimal is True

    def test_tight_context_is_not_optimal(self, make_context, make_provider, logger):
        estimator = TokenBudgetEstimator(counter=FixedCounter(7_700), logger=logger)

        estimate = estimator.estimate(make_context(), make_provider(max_context_tokens=8_000))

        assert estimate.max_output_tokens == 200
        assert estimate.is_optimal is False
        assert "shortening" in estimate.suggestion

    def test_output_never_below_minimum(self, make_context, make_provider, logger):
        estimator = TokenBudgetEstimator(counter=FixedCounter(9_000), logger=logger)

        estimate = estimator.estimate(make_context(), make_provider(max_context_tokens=8_000))

        assert estimate.max_output_tokens == 100
        assert estimate.is_optimal is False

    def test_request_window_overrides_provider(self, make_context, make_provider, logger):
        estimator = TokenBudgetEstimator(counter=FixedCounter(1_000), logger=logger)

        estimate = estimator.estimate(
            make_context(max_context_tokens=1_400), make_provider(max_context_tokens=16_000)
        )

        assert estimate.max_output_tokens == 300

    def test_counting_failure_falls_back_to_characters(self, make_context, make_provider, logger):
        estimator = TokenBudgetEstimator(counter=ExplodingCounter(), logger=logger)
        context = make_context("x" * 396)

        estimate = estimator.estimate(context, make_provider())

        assert estimate.input_tokens == len(context.serialize()) // 4
        assert estimate.is_optimal is False
        assert estimate.suggestion is not None
        assert logger.messages("warning")

    def test_count_never_raises(self, logger):
        estimator = TokenBudgetEstimator(counter=ExplodingCounter(), logger=logger)

        assert estimator.count("abcdefgh", "deepseek-chat") == 2


class TestTokenCounter:
    @pytest.fixture(autouse=True)
    def fake_encodings(self, monkeypatch):
        monkeypatch.setattr(tokenizers.tiktoken, "get_encoding", lambda name: FakeEncoding())

    def test_known_openai_model_uses_its_encoding(self, monkeypatch):
        monkeypatch.setattr(
            tokenizers.tiktoken, "encoding_name_for_model", lambda model: "o200k_base"
        )

        assert TokenCounter().count("a b c d e f g h i j", "gpt-4o-mini") == 10

    def test_unknown_model_gets_buffer(self, monkeypatch):
        def unknown(model):
            raise KeyError(model)

        monkeypatch.setattr(tokenizers.tiktoken, "encoding_name_for_model", unknown)

        assert TokenCounter().count("a b c d e f g h i j", "deepseek-chat") == 11
