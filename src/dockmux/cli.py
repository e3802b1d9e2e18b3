"""Command line interface for dockmux."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from dockmux.config import Settings, get_settings, load_endpoints
from dockmux.errors import DockmuxError
from dockmux.executor import ExecutionStep
from dockmux.logging_utils import configure_logging
from dockmux.orchestrator import Orchestrator

T = TypeVar("T")

app = typer.Typer(name="dockmux", help="Multiplex JSON-RPC backends running in containers", add_completion=False)
console = Console()

ConfigOption = typer.Option(None, "--config", "-c", help="Endpoint definition file (JSON or YAML)")


def _settings(config: Path | None) -> Settings:
    settings = get_settings(config_path=config)
    configure_logging(profile="cli", level=settings.log_level)
    return settings


def _run(settings: Settings, action: Callable[[Orchestrator], Awaitable[T]], *, monitor: bool = False) -> T:
    async def _main() -> T:
        orchestrator = Orchestrator.from_settings(settings)
        await orchestrator.start(monitor=monitor)
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.stop()

    try:
        return asyncio.run(_main())
    except DockmuxError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


@app.command("endpoints")
def endpoints(config: Path | None = ConfigOption) -> None:
    """List configured endpoints without connecting."""
    settings = _settings(config)
    try:
        configs = load_endpoints(settings.config_path)
    except DockmuxError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(1) from exc
    for endpoint in configs:
        capabilities = ", ".join(sorted(endpoint.capabilities)) or "-"
        typer.echo(f"{endpoint.name}: container={endpoint.container.name} capabilities={capabilities}")


@app.command("status")
def status(
    config: Path | None = ConfigOption,
    tools: bool = typer.Option(False, "--tools", help="Include the tools of each endpoint"),
) -> None:
    """Connect to every endpoint and show its state."""
    entries = _run(_settings(config), lambda orchestrator: orchestrator.list_connections(include_tools=tools))
    table = Table(title="dockmux endpoints")
    table.add_column("name")
    table.add_column("state")
    table.add_column("container")
    table.add_column("capabilities")
    table.add_column("last error")
    if tools:
        table.add_column("tools")
    for entry in entries:
        row = [
            entry["name"],
            entry["state"],
            entry["container"],
            ", ".join(entry["capabilities"]),
            entry["last_error"] or "",
        ]
        if tools:
            row.append(", ".join(str(tool.get("name", "?")) for tool in entry["tools"]))
        table.add_row(*row)
    console.print(table)


@app.command("health")
def health(
    name: str | None = typer.Argument(None, help="Endpoint to probe; all when omitted"),
    config: Path | None = ConfigOption,
) -> None:
    """Probe one or all endpoints with ping."""
    reports = _run(_settings(config), lambda orchestrator: orchestrator.check_health(name))
    _echo_json([report.to_dict() for report in reports])
    if any(report.status != "healthy" for report in reports):
        raise typer.Exit(1)


@app.command("execute")
def execute(
    steps_file: Path = typer.Argument(..., help="JSON list of {endpoint, tool, arguments} steps"),
    config: Path | None = ConfigOption,
    sequential: bool = typer.Option(False, "--sequential", help="Run steps one at a time"),
) -> None:
    """Run a batch of tool calls across endpoints."""
    try:
        raw_steps = json.loads(steps_file.read_text(encoding="utf-8"))
        steps = [ExecutionStep.from_dict(item) for item in raw_steps]
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        typer.echo(f"error: invalid steps file {steps_file}: {exc}", err=True)
        raise typer.Exit(1) from exc
    report = _run(_settings(config), lambda orchestrator: orchestrator.execute(steps, parallel=not sequential))
    _echo_json(report)


@app.command("call")
def call(
    endpoint: str = typer.Argument(..., help="Endpoint name"),
    method: str = typer.Argument(..., help="JSON-RPC method, e.g. tools/list"),
    params: str = typer.Option("{}", "--params", "-p", help="JSON object with the request params"),
    config: Path | None = ConfigOption,
) -> None:
    """Send one raw JSON-RPC request."""
    try:
        parsed = json.loads(params)
    except ValueError as exc:
        typer.echo(f"error: --params is not valid JSON: {exc}", err=True)
        raise typer.Exit(1) from exc
    if not isinstance(parsed, dict):
        typer.echo("error: --params must be a JSON object", err=True)
        raise typer.Exit(1)
    result = _run(_settings(config), lambda orchestrator: orchestrator.call(endpoint, method, parsed))
    _echo_json(result)


def main() -> None:
    app()
