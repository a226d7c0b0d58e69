"""Tests for the click command line interface."""

import json

import pytest
from click.testing import CliRunner

from socratic_gateway.cli.main import cli
from socratic_gateway.core.config import Settings
from socratic_gateway.core.llm.stub import SOCRATIC_QUESTIONS


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def obj(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SOCRATIC_DEEPSEEK_API_KEY", raising=False)
    monkeypatch.delenv("SOCRATIC_OPENAI_API_KEY", raising=False)
    return {"settings": Settings(providers=[], log_level="ERROR")}


def test_ask_without_providers_answers_with_question(runner, obj):
    result = runner.invoke(cli, ["ask", "Is this contract valid?", "-s", "s1"], obj=obj)

    assert result.exit_code == 0, result.output
    # Rich wraps long lines at the console width
    output = " ".join(result.output.split())
    assert any(question in output for question in SOCRATIC_QUESTIONS)
    assert "rule-engine" in result.output


def test_ask_no_fallback_fails(runner, obj):
    result = runner.invoke(cli, ["ask", "Hello", "--no-fallback"], obj=obj)

    assert result.exit_code == 1
    assert "AllProvidersExhausted" in result.output


def test_stream_without_providers(runner, obj):
    result = runner.invoke(cli, ["stream", "Hello", "--session", "abc"], obj=obj)

    assert result.exit_code == 0, result.output
    assert any(question in result.output for question in SOCRATIC_QUESTIONS)


def test_health_without_providers(runner, obj):
    result = runner.invoke(cli, ["health"], obj=obj)

    assert result.exit_code == 0
    assert "No providers configured" in result.output


def test_metrics_after_one_request(runner, obj):
    result = runner.invoke(cli, ["metrics", "--ask", "Why?"], obj=obj)

    assert result.exit_code == 0, result.output
    snapshot = json.loads(result.stdout)
    assert snapshot["total_requests"] == 1
    assert snapshot["fallback_count"] == 1


def test_metrics_report(runner, obj):
    result = runner.invoke(cli, ["metrics", "--report", "day"], obj=obj)

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["time_range"] == "day"


def test_log_level_override(runner, obj):
    result = runner.invoke(cli, ["--log-level", "debug", "health"], obj=obj)

    assert result.exit_code == 0
    assert obj["settings"].log_level == "DEBUG"
