"""Shared fixtures: fake clocks, fake token counting and mocked upstreams."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from socratic_gateway.core.config import Settings
from socratic_gateway.core.llm.costs import CostGuard
from socratic_gateway.core.llm.models import ProviderConfig, RequestContext


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class WordCounter:
    """Counts whitespace-separated words; avoids loading tiktoken encodings."""

    def count(self, text: str, model: str) -> int:
        return len(text.split())


class SilentLogger:
    """Logger that keeps messages in memory for assertions."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def _log(self, level: str, msg: str, **kwargs: Any) -> None:
        self.records.append((level, msg, kwargs))

    def debug(self, msg: str, **kwargs: Any) -> None:
        self._log("debug", msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        self._log("info", msg, **kwargs)

    def success(self, msg: str, **kwargs: Any) -> None:
        self._log("success", msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log("warning", msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log("error", msg, **kwargs)

    def messages(self, level: str) -> list[str]:
        return [msg for lvl, msg, _ in self.records if lvl == level]


def completion_body(content: str, prompt_tokens: int = 100, completion_tokens: int = 50) -> dict:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "model": "test",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def sse_body(tokens: list[str], done: bool = True) -> bytes:
    frames = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": t}}]}) + "\n\n"
        for t in tokens
    ]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


class Upstream:
    """Routes requests to per-host handlers and records every request seen."""

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, host: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handlers[host] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.host)
        if handler is None:
            raise httpx.ConnectError("no route to host", request=request)
        return handler(request)

    def calls_to(self, host: str) -> int:
        return sum(1 for r in self.requests if r.url.host == host)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def logger() -> SilentLogger:
    return SilentLogger()


@pytest.fixture
def cost_guard(logger) -> CostGuard:
    return CostGuard(logger=logger)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def make_provider() -> Callable[..., ProviderConfig]:
    def factory(provider_id: str = "primary", **kwargs: Any) -> ProviderConfig:
        defaults = {
            "endpoint": f"https://{provider_id}.test/v1",
            "model": "deepseek-chat",
            "credential": f"sk-{provider_id}",
            "priority": 1,
        }
        defaults.update(kwargs)
        return ProviderConfig(id=provider_id, **defaults)

    return factory


@pytest.fixture
def make_context() -> Callable[..., RequestContext]:
    def factory(text: str = "What is consideration in contract law?", **kwargs: Any):
        session_id = kwargs.pop("session_id", "session-1")
        return RequestContext.from_dicts(
            session_id, [{"role": "user", "content": text}], **kwargs
        )

    return factory


@pytest.fixture
def settings(monkeypatch, tmp_path) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    monkeypatch.chdir(tmp_path)
    for key in ("SOCRATIC_DEEPSEEK_API_KEY", "SOCRATIC_OPENAI_API_KEY", "SOCRATIC_PROVIDERS"):
        monkeypatch.delenv(key, raising=False)
    return Settings(
        providers=[
            {
                "id": "primary",
                "endpoint": "https://primary.test/v1",
                "model": "deepseek-chat",
                "api_key": "sk-primary",
                "priority": 1,
            },
            {
                "id": "secondary",
                "endpoint": "https://secondary.test/v1",
                "model": "gpt-4o-mini",
                "api_key": "sk-secondary",
                "priority": 2,
            },
        ],
        log_level="ERROR",
    )
