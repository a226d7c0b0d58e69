"""Public entry point: budgeted, monitored, fault-tolerant generation.

A request runs through an ordered list of attempt stages::

    primary provider -> fallback provider -> rule-based responder

Each stage returns ``Ok``, ``Err`` or None (skipped). The first ``Ok`` wins.
Only invalid input, a primary over budget, or exhaustion with the rule-based
responder disabled are reported to the caller as failures.

Usage:
    from socratic_gateway import RequestContext, create_orchestrator

    async with create_orchestrator() as orchestrator:
        result = await orchestrator.generate(
            RequestContext.from_dicts("session-1", [{"role": "user", "content": "..."}])
        )
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

import httpx

from socratic_gateway.core.config import Settings
from socratic_gateway.core.constants import (
    DEFAULT_COST_CEILING,
    DEFAULT_HEALTH_CHECK_INTERVAL,
    RULE_ENGINE_PROVIDER,
)
from socratic_gateway.core.errors import (
    AllProvidersExhaustedError,
    BudgetExceededError,
    GatewayError,
    InvalidInputError,
    ProviderError,
    ProviderUnavailableError,
)
from socratic_gateway.core.llm.client import ProviderClient, ProviderStream
from socratic_gateway.core.llm.costs import CostGuard
from socratic_gateway.core.llm.models import (
    VALID_ROLES,
    ErrorInfo,
    GenerationResponse,
    GenerationResult,
    Message,
    ProviderConfig,
    ProviderStatus,
    RequestContext,
    ResponseMetadata,
    TokenEstimate,
    TokenUsage,
    UsageRecord,
    utcnow,
)
from socratic_gateway.core.llm.registry import ProviderRegistry
from socratic_gateway.core.llm.stub import RuleBasedResponder
from socratic_gateway.core.llm.tokenizers import Counter, TokenBudgetEstimator
from socratic_gateway.core.logging import LoggerProtocol, default_logger, get_logger
from socratic_gateway.core.monitoring import AlertConfig, PerformanceMonitor

# Provider name recorded when the chain is exhausted without any upstream attempt.
GATEWAY_PROVIDER = "gateway"


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


@dataclass(frozen=True)
class Ok:
    value: Any


@dataclass(frozen=True)
class Err:
    error: GatewayError


StageOutcome = Union[Ok, Err, None]


@dataclass
class _Attempt:
    """Mutable bookkeeping for one request as it moves through the stages."""

    context: RequestContext
    ceiling: float
    streaming: bool = False
    attempted: list[str] = field(default_factory=list)
    errors: list[GatewayError] = field(default_factory=list)


class GatewayStream:
    """Token stream handed to callers of ``generate_stream``.

    Iterating yields text tokens. A provider failure after the first token
    ends the stream early and is exposed through ``error`` rather than
    raised. The usage record is written exactly once, when the stream ends,
    fails, is closed or is cancelled.

    Consume it with ``async with``. A bare ``break`` out of ``async for``
    leaves the upstream connection open and the usage unrecorded until the
    stream is closed or garbage collected::

        async with result.stream as stream:
            async for token in stream:
                ...

    Attributes:
        provider: Provider id serving the stream (or the rule engine)
        model: Model name
        fallback: Whether the primary provider was bypassed
        content: Text yielded so far
        error: Set if the provider failed mid-stream
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        provider: str,
        model: str,
        fallback: bool,
        on_finish: Callable[[GatewayStream, ProviderError | None], None],
    ) -> None:
        self._source = source
        self.provider = provider
        self.model = model
        self.fallback = fallback
        self._on_finish = on_finish
        self._iterator: AsyncIterator[str] | None = None
        self._finished = False
        self.content = ""
        self.error: ErrorInfo | None = None

    def __aiter__(self) -> AsyncIterator[str]:
        if self._iterator is None:
            self._iterator = self._tokens()
        return self._iterator

    async def _tokens(self) -> AsyncIterator[str]:
        failure: ProviderError | None = None
        try:
            async for token in self._source:
                self.content += token
                yield token
        except ProviderError as e:
            failure = e
            self.error = ErrorInfo(code=e.code, message=str(e))
        finally:
            await self._source.aclose()
            self._finish(failure)

    @property
    def closed(self) -> bool:
        """True once the stream has ended and its usage was recorded."""
        return self._finished

    def _finish(self, failure: ProviderError | None) -> None:
        if self._finished:
            return
        self._finished = True
        self._on_finish(self, failure)

    async def aclose(self) -> None:
        """Stop the stream, release the connection and record usage. Idempotent."""
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._source.aclose()
        self._finish(None)

    async def __aenter__(self) -> GatewayStream:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False


@dataclass(frozen=True)
class StreamResult:
    """The ``{success, stream | error}`` envelope returned by ``generate_stream``."""

    success: bool
    stream: GatewayStream | None = None
    error: ErrorInfo | None = None


async def _single_token(text: str) -> AsyncIterator[str]:
    yield text


class Orchestrator:
    """Sequences budgeting, provider calls, fallbacks and monitoring.

    Args:
        registry: Provider selection and health state
        client: Executes calls against a single provider
        estimator: Token budget per provider
        cost_guard: Pre-flight cost check
        monitor: Receives one UsageRecord per attempt
        responder: Last-resort rule-based responder
        cost_ceiling: Default per-request ceiling in USD
        enable_rule_based_fallback: Default for the last-resort stage
        health_check_interval: Seconds between probes of providers flagged
            by a failure
        clock: Source of UTC timestamps for records and responses
        logger: Optional logger
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        client: ProviderClient,
        estimator: TokenBudgetEstimator,
        cost_guard: CostGuard,
        monitor: PerformanceMonitor,
        responder: RuleBasedResponder | None = None,
        cost_ceiling: float = DEFAULT_COST_CEILING,
        enable_rule_based_fallback: bool = True,
        health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
        logger: LoggerProtocol | None = None,
    ) -> None:
        self.registry = registry
        self.client = client
        self.estimator = estimator
        self.cost_guard = cost_guard
        self.monitor = monitor
        self.responder = responder or RuleBasedResponder()
        self.cost_ceiling = cost_ceiling
        self.enable_rule_based_fallback = enable_rule_based_fallback
        self._clock = clock
        self.health_check_interval = health_check_interval
        self._last_probe_at = clock()
        self._health_task: asyncio.Task[None] | None = None
        self._logger = logger or default_logger(__name__)
        self._stages: tuple[Callable[[_Attempt], Awaitable[StageOutcome]], ...] = (
            self._primary_stage,
            self._fallback_stage,
            self._rule_based_stage,
        )

    async def generate(self, context: RequestContext) -> GenerationResult:
        """
        Produce one response for ``context``.

        Args:
            context: The request

        Returns:
            GenerationResult; ``success`` is False only for InvalidInput,
            BudgetExceeded and AllProvidersExhausted
        """
        outcome = await self._run(context, streaming=False)
        if isinstance(outcome, Ok):
            return GenerationResult.ok(outcome.value)
        return GenerationResult.fail(outcome.error.code, str(outcome.error))

    async def generate_stream(self, context: RequestContext) -> StreamResult:
        """
        Open a token stream for ``context``.

        Selection and budgeting match ``generate``. The connection is opened
        inside each stage, so a provider that fails to connect falls over to
        the next stage; once a stream is returned it is committed.

        The returned stream must be consumed inside ``async with`` (or closed
        with ``aclose()``) so the connection is released and usage is recorded
        even when the caller stops reading early.

        Returns:
            StreamResult with a GatewayStream on success
        """
        outcome = await self._run(context, streaming=True)
        if isinstance(outcome, Ok):
            return StreamResult(success=True, stream=outcome.value)
        return StreamResult(
            success=False, error=ErrorInfo(code=outcome.error.code, message=str(outcome.error))
        )

    async def _run(self, context: RequestContext, streaming: bool) -> Ok | Err:
        try:
            self.validate(context)
        except InvalidInputError as e:
            self._logger.warning(str(e), session_id=getattr(context, "session_id", None))
            return Err(e)

        await self.recover_providers()

        ceiling = context.cost_ceiling if context.cost_ceiling is not None else self.cost_ceiling
        attempt = _Attempt(context=context, ceiling=ceiling, streaming=streaming)

        for stage in self._stages:
            try:
                outcome = await stage(attempt)
            except BudgetExceededError as e:
                self._logger.warning(str(e), session_id=context.session_id, provider=e.provider)
                return Err(e)
            if isinstance(outcome, Ok):
                return outcome
            if isinstance(outcome, Err):
                attempt.errors.append(outcome.error)

        exhausted = AllProvidersExhaustedError(attempts=list(attempt.errors))
        if not attempt.attempted:
            self._record(
                provider=GATEWAY_PROVIDER,
                latency_ms=0.0,
                success=False,
                error_type="all_providers_exhausted",
                error_message=str(exhausted),
            )
        self._logger.error(str(exhausted), session_id=context.session_id)
        return Err(exhausted)

    @staticmethod
    def validate(context: RequestContext) -> None:
        """
        Reject malformed requests before any work is done.

        Raises:
            InvalidInputError: If the context is malformed
        """
        if not isinstance(context, RequestContext):
            raise InvalidInputError(f"Expected RequestContext, got {type(context).__name__}")
        if not isinstance(context.session_id, str) or not context.session_id.strip():
            raise InvalidInputError("session_id must be a non-empty string")
        if not isinstance(context.messages, (list, tuple)):
            raise InvalidInputError(
                f"messages must be a sequence of Message, got {type(context.messages).__name__}"
            )
        if not context.messages:
            raise InvalidInputError("Message history must not be empty")
        for index, message in enumerate(context.messages):
            if not isinstance(message, Message):
                raise InvalidInputError(
                    f"Message {index} must be a Message, got {type(message).__name__}"
                )
            if message.role not in VALID_ROLES:
                raise InvalidInputError(
                    f"Message {index} has invalid role '{message.role}'. "
                    f"Must be one of: {', '.join(sorted(VALID_ROLES))}"
                )
            if not isinstance(message.content, str):
                raise InvalidInputError(
                    f"Message {index} content must be a string, got {type(message.content).__name__}"
                )
        for name in ("topic", "case_context"):
            value = getattr(context, name)
            if value is not None and not isinstance(value, str):
                raise InvalidInputError(f"{name} must be a string, got {type(value).__name__}")
        for name in ("cost_ceiling", "max_context_tokens", "temperature"):
            value = getattr(context, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise InvalidInputError(f"{name} must be a number, got {type(value).__name__}")
        if context.cost_ceiling is not None and context.cost_ceiling < 0:
            raise InvalidInputError("cost_ceiling must not be negative")
        if context.max_context_tokens is not None and context.max_context_tokens <= 0:
            raise InvalidInputError("max_context_tokens must be positive")
        if context.temperature is not None and not 0.0 <= context.temperature <= 2.0:
            raise InvalidInputError("temperature must be between 0.0 and 2.0")

    async def _primary_stage(self, attempt: _Attempt) -> StageOutcome:
        provider = self.registry.select_primary()
        if provider is None:
            self._logger.warning("No usable provider, skipping to rule-based response")
            return Err(ProviderUnavailableError())
        return await self._attempt_provider(attempt, provider, fallback=False)

    async def _fallback_stage(self, attempt: _Attempt) -> StageOutcome:
        if not attempt.attempted:
            return None
        provider = self.registry.select_fallback(excluding=attempt.attempted)
        if provider is None:
            return None
        self._logger.info(
            f"Trying fallback provider {provider.id}",
            session_id=attempt.context.session_id,
            provider=provider.id,
        )
        try:
            return await self._attempt_provider(attempt, provider, fallback=True)
        except BudgetExceededError as e:
            self._logger.warning(f"Skipping fallback: {e}", provider=provider.id)
            return Err(e)

    async def _rule_based_stage(self, attempt: _Attempt) -> StageOutcome:
        context = attempt.context
        allowed = (
            context.allow_rule_based_fallback
            if context.allow_rule_based_fallback is not None
            else self.enable_rule_based_fallback
        )
        if not allowed:
            return None

        content = self.responder.respond(context)
        self._logger.warning(
            "All providers unavailable, answering with rule-based question",
            session_id=context.session_id,
        )

        if attempt.streaming:

            def finish(stream: GatewayStream, failure: ProviderError | None) -> None:
                self._record(provider=RULE_ENGINE_PROVIDER, latency_ms=0.0, fallback=True)

            return Ok(
                GatewayStream(
                    _single_token(content),
                    provider=RULE_ENGINE_PROVIDER,
                    model=RULE_ENGINE_PROVIDER,
                    fallback=True,
                    on_finish=finish,
                )
            )

        self._record(provider=RULE_ENGINE_PROVIDER, latency_ms=0.0, fallback=True)
        return Ok(
            GenerationResponse(
                content=content,
                session_id=context.session_id,
                timestamp=self._clock(),
                metadata=ResponseMetadata(
                    provider=RULE_ENGINE_PROVIDER,
                    model=RULE_ENGINE_PROVIDER,
                    fallback=True,
                    cost=0.0,
                    tokens_used=TokenUsage(),
                    latency_ms=0.0,
                ),
            )
        )

    def _budget(self, attempt: _Attempt, provider: ProviderConfig) -> TokenEstimate:
        """
        Estimate tokens and cost for ``provider`` and enforce the ceiling.

        Raises:
            BudgetExceededError: If the estimate exceeds the request's ceiling
        """
        budget = self.estimator.estimate(attempt.context, provider)
        estimate = self.cost_guard.guard(
            budget.input_tokens, budget.max_output_tokens, provider.model, attempt.ceiling
        )
        if not estimate.within_budget:
            raise BudgetExceededError(
                provider=provider.id,
                model=provider.model,
                estimated_cost=estimate.total_cost,
                ceiling=attempt.ceiling,
            )
        return budget

    async def _attempt_provider(
        self, attempt: _Attempt, provider: ProviderConfig, fallback: bool
    ) -> StageOutcome:
        budget = self._budget(attempt, provider)
        attempt.attempted.append(provider.id)
        if attempt.streaming:
            return await self._open_stream(attempt, provider, budget, fallback)
        return await self._call(attempt, provider, budget, fallback)

    async def _call(
        self,
        attempt: _Attempt,
        provider: ProviderConfig,
        budget: TokenEstimate,
        fallback: bool,
    ) -> StageOutcome:
        context = attempt.context
        start = time.perf_counter()
        try:
            response = await self.client.call(provider, context, budget)
        except ProviderError as e:
            self._provider_failed(provider, e, _elapsed_ms(start), fallback)
            return Err(e)

        self.registry.mark_succeeded(provider.id)
        self._record(
            provider=provider.id,
            latency_ms=response.latency_ms,
            tokens=response.tokens_used,
            cost=response.cost,
            fallback=fallback,
        )
        self._logger.success(
            f"Generated response via {provider.id}{' (fallback)' if fallback else ''} "
            f"in {response.latency_ms:.0f} ms",
            session_id=context.session_id,
            provider=provider.id,
            cost=response.cost,
        )
        return Ok(
            GenerationResponse(
                content=response.content,
                session_id=context.session_id,
                timestamp=self._clock(),
                metadata=ResponseMetadata(
                    provider=provider.id,
                    model=provider.model,
                    fallback=fallback,
                    cost=response.cost,
                    tokens_used=response.tokens_used,
                    latency_ms=response.latency_ms,
                    suggestion=budget.suggestion,
                ),
            )
        )

    async def _open_stream(
        self,
        attempt: _Attempt,
        provider: ProviderConfig,
        budget: TokenEstimate,
        fallback: bool,
    ) -> StageOutcome:
        start = time.perf_counter()
        try:
            source = await self.client.open_stream(provider, attempt.context, budget)
        except ProviderError as e:
            self._provider_failed(provider, e, _elapsed_ms(start), fallback)
            return Err(e)

        def finish(stream: GatewayStream, failure: ProviderError | None) -> None:
            self._stream_finished(provider, budget, source, stream, failure, start, fallback)

        return Ok(
            GatewayStream(
                source, provider=provider.id, model=provider.model, fallback=fallback, on_finish=finish
            )
        )

    def _stream_finished(
        self,
        provider: ProviderConfig,
        budget: TokenEstimate,
        source: ProviderStream,
        stream: GatewayStream,
        failure: ProviderError | None,
        start: float,
        fallback: bool,
    ) -> None:
        if source.usage is not None:
            usage = source.usage
        else:
            usage = TokenUsage(
                input=budget.input_tokens,
                output=self.estimator.count(stream.content, provider.model),
            )
        cost = self.cost_guard.estimate_cost(usage.input, usage.output, provider.model).total_cost
        latency = _elapsed_ms(start)

        if failure is not None:
            self.registry.mark_failed(provider.id)
            self._logger.error(
                f"Stream from {provider.id} failed after {len(stream.content)} chars: {failure}",
                provider=provider.id,
                error_type=failure.kind,
            )
        else:
            self.registry.mark_succeeded(provider.id)

        self._record(
            provider=provider.id,
            latency_ms=latency,
            tokens=usage,
            cost=cost,
            success=failure is None,
            error_type=failure.kind if failure else None,
            error_message=str(failure) if failure else None,
            fallback=fallback,
        )

    def _provider_failed(
        self, provider: ProviderConfig, error: ProviderError, latency_ms: float, fallback: bool
    ) -> None:
        self.registry.mark_failed(provider.id)
        self._record(
            provider=provider.id,
            latency_ms=latency_ms,
            success=False,
            error_type=error.kind,
            error_message=str(error),
            fallback=fallback,
        )
        self._logger.warning(
            f"Provider {provider.id} failed: {error}",
            provider=provider.id,
            error_type=error.kind,
        )

    def _record(
        self,
        provider: str,
        latency_ms: float,
        tokens: TokenUsage | None = None,
        cost: float = 0.0,
        success: bool = True,
        error_type: str | None = None,
        error_message: str | None = None,
        fallback: bool = False,
    ) -> None:
        self.monitor.record(
            UsageRecord(
                timestamp=self._clock(),
                provider=provider,
                latency_ms=latency_ms,
                tokens=tokens or TokenUsage(),
                cost=cost,
                success=success,
                error_type=error_type,
                error_message=error_message,
                fallback=fallback,
            )
        )

    async def health_check(self) -> list[dict[str, Any]]:
        """Probe all enabled providers and return the registry snapshot."""
        await self.registry.perform_health_check()
        return self.registry.status_snapshot()

    async def recover_providers(self, force: bool = False) -> dict[str, ProviderStatus]:
        """
        Probe providers flagged by a failure, at most once per interval.

        Runs at the start of every request and from the background loop, so
        a ``down`` provider returns to rotation once its probe succeeds.

        Args:
            force: Probe now regardless of when the last probe ran

        Returns:
            Status of each probed provider; empty when nothing was due
        """
        if not self.registry.can_probe:
            return {}
        now = self._clock()
        if not force and (now - self._last_probe_at).total_seconds() < self.health_check_interval:
            return {}
        self._last_probe_at = now
        if not self.registry.pending_probes():
            return {}
        statuses = await self.registry.probe_pending()
        self._logger.debug(
            "Probed flagged providers: "
            + ", ".join(f"{pid}={status.value}" for pid, status in statuses.items())
        )
        return statuses

    @property
    def health_checks_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def start_health_checks(self) -> None:
        """Start the background loop probing flagged providers. Idempotent."""
        if not self.health_checks_running:
            self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.recover_providers(force=True)
            except Exception as e:
                self._logger.error(f"Background health check failed: {e}")

    async def aclose(self) -> None:
        """Stop the background health checks and release the HTTP client."""
        if self._health_task is not None:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        await self.client.aclose()

    async def __aenter__(self) -> Orchestrator:
        self.start_health_checks()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False


def create_orchestrator(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    counter: Counter | None = None,
    clock: Callable[[], datetime] = utcnow,
    logger: LoggerProtocol | None = None,
) -> Orchestrator:
    """
    Build an Orchestrator and its collaborators from settings.

    Every call returns an independent object graph; nothing is cached at
    module level.

    Args:
        settings: Gateway settings (loaded from the environment if omitted)
        http_client: Optional shared httpx.AsyncClient
        counter: Optional token counter replacing tiktoken
        clock: Source of UTC timestamps shared by monitor and orchestrator
        logger: Optional logger (a GatewayLogger is built from settings if omitted)

    Returns:
        Configured Orchestrator
    """
    settings = settings or Settings()
    logger = logger or get_logger(settings)

    cost_guard = CostGuard(custom_pricing=settings.custom_pricing, logger=logger)
    client = ProviderClient(
        cost_guard=cost_guard,
        request_timeout=settings.request_timeout,
        stream_timeout=settings.stream_timeout,
        health_check_timeout=settings.health_check_timeout,
        temperature=settings.temperature,
        http_client=http_client,
        logger=logger,
    )
    registry = ProviderRegistry(
        (ProviderConfig.from_settings(entry) for entry in settings.providers),
        failure_threshold=settings.failure_threshold,
        probe=client.probe,
        logger=logger,
    )
    estimator = TokenBudgetEstimator(
        counter=counter, reserve_tokens=settings.reserve_tokens, logger=logger
    )
    monitor = PerformanceMonitor(AlertConfig.from_settings(settings), clock=clock, logger=logger)

    if not len(registry):
        logger.warning("No providers configured; every request will use the rule-based responder")

    return Orchestrator(
        registry=registry,
        client=client,
        estimator=estimator,
        cost_guard=cost_guard,
        monitor=monitor,
        cost_ceiling=settings.cost_ceiling,
        enable_rule_based_fallback=settings.enable_rule_based_fallback,
        health_check_interval=settings.health_check_interval,
        clock=clock,
        logger=logger,
    )
