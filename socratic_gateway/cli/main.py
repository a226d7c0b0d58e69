"""
Command line interface for the Socratic gateway.

Commands:
    ask      Generate one response and print it with its metadata
    stream   Stream a response token by token
    health   Probe every configured provider and print their status
    metrics  Print the performance monitor snapshot as JSON

Configuration is read from SOCRATIC_* environment variables and ``.env``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from socratic_gateway.core.config import Settings
from socratic_gateway.core.llm.models import GenerationResult, RequestContext
from socratic_gateway.core.llm.orchestrator import Orchestrator, create_orchestrator

STATUS_STYLES = {"healthy": "green", "degraded": "yellow", "down": "red"}


def _build_context(
    text: str,
    session: str | None,
    system: str | None,
    ceiling: float | None,
    no_fallback: bool,
) -> RequestContext:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": text})
    return RequestContext.from_dicts(
        session or f"cli-{uuid.uuid4().hex[:8]}",
        messages,
        cost_ceiling=ceiling,
        allow_rule_based_fallback=False if no_fallback else None,
    )


def _orchestrator(ctx: click.Context) -> Orchestrator:
    return create_orchestrator(ctx.obj["settings"], http_client=ctx.obj.get("http_client"))


def _print_result(console: Console, result: GenerationResult) -> None:
    if not result.success:
        console.print(f"[red]✗ {result.error.code.value}:[/red] {result.error.message}")
        return

    data = result.data
    console.print(data.content)
    meta = data.metadata
    table = Table(show_header=False, box=None)
    table.add_column(style="dim")
    table.add_column()
    table.add_row("provider", f"{meta.provider} ({meta.model})")
    table.add_row("fallback", "yes" if meta.fallback else "no")
    table.add_row("tokens", f"{meta.tokens_used.input} in / {meta.tokens_used.output} out")
    table.add_row("cost", f"${meta.cost:.6f}")
    table.add_row("latency", f"{meta.latency_ms:.0f} ms")
    if meta.suggestion:
        table.add_row("note", meta.suggestion)
    console.print(table)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override SOCRATIC_LOG_LEVEL.",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Socratic gateway: budgeted, fault-tolerant LLM generation."""
    ctx.ensure_object(dict)
    if "settings" not in ctx.obj:
        ctx.obj["settings"] = Settings()
    if log_level:
        ctx.obj["settings"] = ctx.obj["settings"].model_copy(update={"log_level": log_level.upper()})


_request_options = [
    click.option("--session", "-s", default=None, help="Session id (random if omitted)."),
    click.option("--system", default=None, help="Optional system message."),
    click.option("--ceiling", type=float, default=None, help="Cost ceiling in USD."),
    click.option(
        "--no-fallback", is_flag=True, help="Fail instead of answering with a rule-based question."
    ),
]


def request_options(func):
    for option in reversed(_request_options):
        func = option(func)
    return func


@cli.command()
@click.argument("text")
@request_options
@click.pass_context
def ask(
    ctx: click.Context,
    text: str,
    session: str | None,
    system: str | None,
    ceiling: float | None,
    no_fallback: bool,
) -> None:
    """Generate one response for TEXT."""
    context = _build_context(text, session, system, ceiling, no_fallback)

    async def run() -> GenerationResult:
        async with _orchestrator(ctx) as orchestrator:
            return await orchestrator.generate(context)

    result = asyncio.run(run())
    _print_result(Console(), result)
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.argument("text")
@request_options
@click.pass_context
def stream(
    ctx: click.Context,
    text: str,
    session: str | None,
    system: str | None,
    ceiling: float | None,
    no_fallback: bool,
) -> None:
    """Stream a response for TEXT, printing tokens as they arrive."""
    context = _build_context(text, session, system, ceiling, no_fallback)

    async def run() -> str | None:
        async with _orchestrator(ctx) as orchestrator:
            result = await orchestrator.generate_stream(context)
            if not result.success:
                return f"{result.error.code.value}: {result.error.message}"
            async with result.stream as tokens:
                async for token in tokens:
                    click.echo(token, nl=False)
            click.echo()
            if tokens.error is not None:
                return f"{tokens.error.code.value}: {tokens.error.message}"
            return None

    error = asyncio.run(run())
    if error:
        click.secho(f"✗ {error}", fg="red", err=True)
        ctx.exit(1)


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Probe every enabled provider and show the registry state."""

    async def run() -> list[dict[str, Any]]:
        async with _orchestrator(ctx) as orchestrator:
            return await orchestrator.health_check()

    snapshot = asyncio.run(run())
    console = Console()
    if not snapshot:
        console.print("[yellow]⚠[/yellow] No providers configured")
        return

    table = Table(title="Provider health")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    for entry in snapshot:
        style = STATUS_STYLES.get(entry["status"], "white")
        status = entry["status"] if entry["enabled"] else f"{entry['status']} (disabled)"
        table.add_row(
            entry["id"],
            entry["model"],
            str(entry["priority"]),
            f"[{style}]{status}[/{style}]",
            str(entry["consecutive_failures"]),
        )
    console.print(table)


@cli.command()
@click.option("--ask", "ask_text", default=None, help="Run one generation before printing.")
@click.option(
    "--report",
    "time_range",
    type=click.Choice(["hour", "day", "week"]),
    default=None,
    help="Print a windowed report instead of the running totals.",
)
@click.pass_context
def metrics(ctx: click.Context, ask_text: str | None, time_range: str | None) -> None:
    """Print the performance monitor snapshot as JSON."""

    async def run() -> dict[str, Any]:
        async with _orchestrator(ctx) as orchestrator:
            if ask_text:
                await orchestrator.generate(_build_context(ask_text, None, None, None, False))
            if time_range:
                return orchestrator.monitor.report(time_range)
            return orchestrator.monitor.get_metrics().to_dict()

    click.echo(json.dumps(asyncio.run(run()), indent=2, default=str))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
