"""Tests for Orchestrator.generate_stream."""

import asyncio

import httpx
import pytest

from socratic_gateway.core.errors import ErrorCode
from socratic_gateway.core.llm.models import ProviderStatus
from socratic_gateway.core.llm.orchestrator import create_orchestrator
from socratic_gateway.core.llm.stub import SOCRATIC_QUESTIONS
from tests.conftest import WordCounter, sse_body


def streaming(tokens, done=True, tail=b""):
    return lambda request: httpx.Response(
        200,
        content=sse_body(tokens, done=done) + tail,
        headers={"content-type": "text/event-stream"},
    )


@pytest.fixture
def orchestrator(settings, upstream, clock, logger):
    return create_orchestrator(
        settings, http_client=upstream.client(), counter=WordCounter(), clock=clock, logger=logger
    )


async def collect(stream):
    return [token async for token in stream]


async def test_streams_tokens_from_primary(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming(["Who ", "owes ", "the ", "duty?"]))

    result = await orchestrator.generate_stream(make_context())
    tokens = await collect(result.stream)

    assert result.success is True
    assert tokens == ["Who ", "owes ", "the ", "duty?"]
    assert result.stream.provider == "primary"
    assert result.stream.fallback is False
    assert result.stream.error is None

    metrics = orchestrator.monitor.get_metrics()
    assert metrics.total_requests == 1
    assert metrics.successful_requests == 1
    assert metrics.output_tokens == 4


async def test_record_is_written_when_stream_ends(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming(["a ", "b"]))

    result = await orchestrator.generate_stream(make_context())
    assert orchestrator.monitor.get_metrics().total_requests == 0

    await collect(result.stream)
    await result.stream.aclose()

    assert orchestrator.monitor.get_metrics().total_requests == 1


async def test_connect_failure_falls_over_to_next_stage(orchestrator, upstream, make_context):
    upstream.route("primary.test", lambda r: httpx.Response(401, json={"error": "bad key"}))
    upstream.route("secondary.test", streaming(["fallback ", "answer"]))

    result = await orchestrator.generate_stream(make_context())
    tokens = await collect(result.stream)

    assert tokens == ["fallback ", "answer"]
    assert result.stream.provider == "secondary"
    assert result.stream.fallback is True

    metrics = orchestrator.monitor.get_metrics()
    assert metrics.errors_by_type == {"auth": 1}
    assert metrics.fallback_count == 1


async def test_mid_stream_failure_ends_stream_with_error(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming(["partial "], done=False, tail=b"data: {broken\n\n"))
    upstream.route("secondary.test", streaming(["never"]))

    result = await orchestrator.generate_stream(make_context())
    tokens = await collect(result.stream)

    assert tokens == ["partial "]
    assert result.stream.error.code is ErrorCode.UNKNOWN_PROVIDER_ERROR
    assert upstream.calls_to("secondary.test") == 0
    assert orchestrator.registry.get_provider("primary").status is ProviderStatus.DEGRADED

    metrics = orchestrator.monitor.get_metrics()
    assert metrics.total_requests == 1
    assert metrics.failed_requests == 1


async def test_closing_early_records_once(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming([f"t{i} " for i in range(100)]))

    result = await orchestrator.generate_stream(make_context())
    async for token in result.stream:
        break

    # Leaving the loop alone does not release the connection
    assert result.stream.closed is False
    assert orchestrator.monitor.get_metrics().total_requests == 0

    await result.stream.aclose()
    assert result.stream.closed is True
    await result.stream.aclose()

    assert result.stream.content == "t0 "
    assert orchestrator.monitor.get_metrics().total_requests == 1


async def test_break_inside_async_with_releases_connection(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming([f"t{i} " for i in range(100)]))

    result = await orchestrator.generate_stream(make_context())
    async with result.stream as stream:
        async for token in stream:
            break

    assert stream.closed is True
    assert stream.content == "t0 "
    assert orchestrator.monitor.get_metrics().total_requests == 1


async def test_cancelled_consumer_releases_stream(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming([f"t{i} " for i in range(100)]))
    result = await orchestrator.generate_stream(make_context())
    started = asyncio.Event()

    async def consume():
        async with result.stream as stream:
            async for token in stream:
                started.set()
                await asyncio.sleep(3600)

    task = asyncio.create_task(consume())
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.monitor.get_metrics().total_requests == 1
    assert result.stream.content == "t0 "


async def test_unused_stream_closed_without_iterating(orchestrator, upstream, make_context):
    upstream.route("primary.test", streaming(["x"]))

    result = await orchestrator.generate_stream(make_context())
    async with result.stream:
        pass

    assert orchestrator.monitor.get_metrics().total_requests == 1


async def test_all_providers_failing_streams_rule_based_question(
    orchestrator, upstream, make_context
):
    upstream.route("primary.test", lambda r: httpx.Response(500))
    upstream.route("secondary.test", lambda r: httpx.Response(503))

    result = await orchestrator.generate_stream(make_context())
    tokens = await collect(result.stream)

    assert result.success is True
    assert result.stream.provider == "rule-engine"
    assert result.stream.fallback is True
    assert len(tokens) == 1
    assert tokens[0] in SOCRATIC_QUESTIONS
    assert orchestrator.monitor.get_metrics().fallback_count == 1


async def test_stream_budget_exceeded(orchestrator, upstream, make_context):
    result = await orchestrator.generate_stream(make_context(cost_ceiling=0.0))

    assert result.success is False
    assert result.error.code is ErrorCode.BUDGET_EXCEEDED
    assert len(upstream.requests) == 0


async def test_stream_exhausted_when_stub_disabled(orchestrator, make_context):
    orchestrator.enable_rule_based_fallback = False

    # No routes are registered, so both providers fail to connect
    result = await orchestrator.generate_stream(make_context())

    assert result.success is False
    assert result.error.code is ErrorCode.ALL_PROVIDERS_EXHAUSTED
