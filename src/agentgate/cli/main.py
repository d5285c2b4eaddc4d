"""Click CLI group: serve, chat, ask, heartbeat, and config commands."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click

from agentgate.channels.cli import CliAdapter
from agentgate.cli.chat import format_outcome, pin_local, reset_local, send_local
from agentgate.config import Settings, get_settings, validate_settings_for_env
from agentgate.events.sink import MemoryEventSink
from agentgate.logging import configure_logging
from agentgate.orchestrator.dispatch import DispatchOutcome, DispatchState
from agentgate.runtime import Runtime, build_runtime

_SECRET_MARKERS = ("SECRET", "API_KEY", "TOKEN")


def _load_settings() -> Settings:
    settings = get_settings()
    try:
        validate_settings_for_env(settings)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(settings.log_level, app_env=settings.app_env)
    return settings


def _local_runtime(settings: Settings, *, quiet: bool, sink: Any = None) -> Runtime:
    runtime = build_runtime(settings, sink=sink)
    runtime.channels.register(CliAdapter(quiet=quiet))
    return runtime


def _print_trace(sink: MemoryEventSink) -> None:
    for event in sink.events:
        click.echo(json.dumps(event, sort_keys=True, default=str), err=True)


def _report(outcome: DispatchOutcome, *, json_output: bool) -> None:
    if json_output:
        click.echo(format_outcome(outcome, json_output=True))
    elif outcome.state is not DispatchState.REPLIED and not outcome.delivered:
        click.echo(format_outcome(outcome, json_output=False), err=True)


@click.group()
def cli() -> None:
    """agentgate control-plane CLI."""


@cli.command()
@click.option("--host", type=str, default=None, help="Override BIND_HOST.")
@click.option("--port", type=int, default=None, help="Override BIND_PORT.")
def serve(host: str | None, port: int | None) -> None:
    """Run the HTTP server (webhooks, health checks, heartbeat)."""
    import uvicorn

    settings = _load_settings()
    uvicorn.run(
        "agentgate.main:app",
        host=host or settings.bind_host,
        port=port or settings.bind_port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.argument("message")
@click.option("--json", "json_output", is_flag=True, help="Print the dispatch outcome as JSON.")
@click.option("--trace", is_flag=True, help="Print emitted events to stderr.")
def ask(message: str, json_output: bool, trace: bool) -> None:
    """Send one message as the local operator and print the reply."""
    settings = _load_settings()
    sink = MemoryEventSink() if trace else None
    runtime = _local_runtime(settings, quiet=json_output, sink=sink)

    async def _run() -> DispatchOutcome:
        await runtime.startup(start_heartbeat=False)
        try:
            return await send_local(runtime, message)
        finally:
            await runtime.shutdown()

    outcome = asyncio.run(_run())
    _report(outcome, json_output=json_output)
    if sink is not None:
        _print_trace(sink)
    if outcome.state is not DispatchState.REPLIED:
        raise SystemExit(1)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Print each outcome as JSON.")
def chat(json_output: bool) -> None:
    """Interactive chat loop. /reset clears the session, /pin <text> keeps a note."""
    settings = _load_settings()
    runtime = _local_runtime(settings, quiet=json_output)
    click.echo("local session (type /quit to exit)")
    with asyncio.Runner() as runner:
        runner.run(runtime.startup(start_heartbeat=False))
        try:
            while True:
                try:
                    message = click.prompt("you", prompt_suffix=" > ").strip()
                except (EOFError, KeyboardInterrupt, click.Abort):
                    click.echo()
                    break
                if not message:
                    continue
                command = message.lower()
                if command in {"/quit", "/exit"}:
                    break
                if command == "/reset":
                    reset_local(runtime)
                    click.echo("session cleared")
                    continue
                if command.startswith("/pin "):
                    pin_local(runtime, message[5:].strip())
                    click.echo("pinned")
                    continue
                outcome = runner.run(send_local(runtime, message))
                _report(outcome, json_output=json_output)
        finally:
            runner.run(runtime.shutdown())


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Print the dispatch outcome as JSON.")
def heartbeat(json_output: bool) -> None:
    """Run a single heartbeat cycle now."""
    settings = _load_settings()
    runtime = _local_runtime(settings, quiet=True)

    async def _run() -> DispatchOutcome | None:
        await runtime.startup(start_heartbeat=False)
        try:
            return await runtime.dispatcher.dispatch_heartbeat()
        finally:
            await runtime.shutdown()

    outcome = asyncio.run(_run())
    if outcome is None:
        raise click.ClickException("a heartbeat cycle is already running")
    if json_output:
        click.echo(format_outcome(outcome, json_output=True))
    elif outcome.state is DispatchState.REPLIED:
        click.echo(outcome.reply or "")
    else:
        click.echo(format_outcome(outcome, json_output=False), err=True)
        raise SystemExit(1)


@cli.command("config")
@click.option("--json", "json_output", is_flag=True, help="Print settings as JSON.")
def show_config(json_output: bool) -> None:
    """Print effective settings with secrets redacted."""
    settings = _load_settings()
    values: dict[str, Any] = {}
    for key, value in sorted(settings.model_dump(by_alias=True).items()):
        if value and any(marker in key for marker in _SECRET_MARKERS):
            value = "[REDACTED]"
        values[key] = value
    if json_output:
        click.echo(json.dumps(values, indent=2, sort_keys=True))
        return
    for key, value in values.items():
        click.echo(f"{key}={value}")
