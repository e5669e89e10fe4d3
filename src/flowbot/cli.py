"""CLI entry points for flowbot.

Commands:
    flowbot validate SPEC        — Load a spec and check every action list
    flowbot info SPEC            — Summarize commands, events, flows, pipes and jobs
    flowbot command SPEC NAME    — Dry-run a command against a recording platform
    flowbot emit SPEC EVENT      — Dry-run an event through its handlers
    flowbot flow SPEC NAME       — Call a flow directly and print its return value
    flowbot job SPEC NAME        — Fire a cron job once
    flowbot run SPEC             — Connect pipes, start jobs and serve webhooks
    flowbot config show / init   — Inspect or create the config file
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

import flowbot
from flowbot.errors import FlowbotError, SpecValidationError

console = Console()
app = typer.Typer(
    name="flowbot",
    help="Run declarative bot specifications.",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Inspect or create the config file.")
app.add_typer(config_app, name="config")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False, config: Any = None) -> None:
    """Configure root logging for CLI output."""
    from flowbot.config import configure_logging

    if config is None:
        level = "DEBUG" if verbose else "WARNING"
        configure_logging(level=level)
        return
    level = "DEBUG" if verbose else config.logging.level
    configure_logging(
        level=level, format=config.logging.format, sanitize_logs=config.logging.sanitize
    )


def _parse_pairs(pairs: list[str] | None) -> dict[str, Any]:
    """``key=value`` pairs; values are read as JSON when they parse, else as strings."""
    parsed: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'")
        try:
            parsed[key] = json.loads(raw)
        except json.JSONDecodeError:
            parsed[key] = raw
    return parsed


def _build_runtime(spec_path: Path, persistent: bool = False):
    """Load *spec_path* into a runtime backed by a recording platform."""
    from flowbot.config import ConfigManager
    from flowbot.platform import RecordingPlatform
    from flowbot.runtime import FlowbotRuntime
    from flowbot.spec import load_spec

    config = ConfigManager().load()
    if not persistent:
        config.storage.backend = "memory"
    try:
        spec = load_spec(spec_path)
        return FlowbotRuntime(spec, config=config, platform=RecordingPlatform())
    except SpecValidationError as exc:
        _print_problems(exc)
        raise typer.Exit(1) from None


def _print_problems(exc: SpecValidationError) -> None:
    console.print(f"[red]{exc.message}[/red]")
    for problem in exc.problems:
        console.print(f"  [red]-[/red] {problem}")


def _results_table(title: str, results: list[Any]) -> Table:
    table = Table(title=title, border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Action", style="bold")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for index, result in enumerate(results, start=1):
        status = "[green]OK[/green]" if result.success else "[red]FAILED[/red]"
        if result.success:
            detail = "" if result.data is None else json.dumps(result.data, default=str)[:80]
        else:
            detail = result.error.message if result.error else ""
        table.add_row(str(index), result.action or "?", status, detail)
    return table


def _print_platform_calls(runtime: Any) -> None:
    calls = runtime.platform.calls
    if not calls:
        console.print("[dim]No platform calls.[/dim]")
        return
    table = Table(title="Platform Calls", border_style="magenta")
    table.add_column("Kind", style="bold")
    table.add_column("Payload")
    for call in calls:
        table.add_row(call.kind, json.dumps(call.payload, default=str))
    console.print(table)


# ------------------------------------------------------------------
# flowbot validate / info
# ------------------------------------------------------------------


@app.command()
def validate(
    spec: Path = typer.Argument(help="Path to the spec YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Load a spec and check every action list."""
    _setup_logging(verbose)
    runtime = _build_runtime(spec)
    loaded = runtime.spec
    console.print(
        f"[green]OK[/green] {loaded.name} v{loaded.version}: "
        f"{len(loaded.commands)} command(s), {len(loaded.events)} event handler(s), "
        f"{len(loaded.flows)} flow(s), {len(loaded.pipes)} pipe(s), {len(loaded.jobs)} job(s)"
    )


@app.command()
def info(spec: Path = typer.Argument(help="Path to the spec YAML file")) -> None:
    """Summarize a spec's triggers, flows, pipes and jobs."""
    _setup_logging()
    runtime = _build_runtime(spec)
    loaded = runtime.spec

    table = Table(title=f"{loaded.name} v{loaded.version}", border_style="cyan")
    table.add_column("Kind", style="bold")
    table.add_column("Name")
    table.add_column("Details", style="dim")
    for cmd in loaded.commands:
        subs = ", ".join(sub.name for sub in cmd.subcommands)
        table.add_row("command", cmd.name, subs or cmd.description)
    for handler in loaded.events:
        flags = [name for name in ("once", "debounce", "throttle") if getattr(handler, name)]
        table.add_row("event", handler.event, ", ".join(flags))
    for definition in loaded.flows:
        params = ", ".join(param.name for param in definition.parameters)
        table.add_row("flow", definition.name, f"({params})")
    for pipe in loaded.pipes:
        auto = "auto-connect" if pipe.auto_connect else "manual"
        table.add_row("pipe", pipe.name, f"{pipe.type}, {auto}, {len(pipe.handlers)} handler(s)")
    for cron_job in loaded.jobs:
        schedule = cron_job.cron if cron_job.enabled else f"{cron_job.cron} (disabled)"
        table.add_row("job", cron_job.name, schedule)

    console.print()
    console.print(table)
    console.print()


# ------------------------------------------------------------------
# flowbot command / emit / flow / job
# ------------------------------------------------------------------


@app.command()
def command(
    spec: Path = typer.Argument(help="Path to the spec YAML file"),
    name: str = typer.Argument(help="Command name"),
    option: list[str] = typer.Option(None, "--option", "-o", help="Command option as key=value"),
    subcommand: str = typer.Option(None, "--sub", help="Subcommand name"),
    user: str = typer.Option("1", "--user", help="Invoking user id"),
    guild: str = typer.Option("1", "--guild", help="Guild id"),
    channel: str = typer.Option("1", "--channel", help="Channel id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Dry-run a command; platform calls are printed instead of sent."""
    _setup_logging(verbose)
    runtime = _build_runtime(spec)
    trigger = {
        "user": {"id": user, "name": f"user{user}"},
        "guild": {"id": guild},
        "channel": {"id": channel},
    }

    async def _run() -> list[Any]:
        try:
            return await runtime.dispatcher.invoke_command(
                name, _parse_pairs(option), trigger, subcommand=subcommand
            )
        finally:
            await runtime.state.close()

    results = asyncio.run(_run())
    console.print(_results_table(f"/{name}", results))
    _print_platform_calls(runtime)
    if any(not result.success for result in results):
        raise typer.Exit(1)


@app.command()
def emit(
    spec: Path = typer.Argument(help="Path to the spec YAML file"),
    event: str = typer.Argument(help="Event name"),
    data: str = typer.Option("{}", "--data", "-d", help="Event payload as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Dry-run an event through every matching handler."""
    _setup_logging(verbose)
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--data is not valid JSON: {exc}") from None
    if not isinstance(payload, dict):
        raise typer.BadParameter("--data must be a JSON object")
    runtime = _build_runtime(spec)

    async def _run() -> list[Any]:
        try:
            outcomes = await runtime.dispatcher.emit(event, payload)
            await runtime.dispatcher.drain()
            return outcomes
        finally:
            await runtime.state.close()

    outcomes = asyncio.run(_run())
    if not outcomes:
        console.print(f"[yellow]No handlers ran for '{event}'.[/yellow]")
    for outcome in outcomes:
        if outcome.skipped:
            console.print(f"[dim]{outcome.handler}: skipped[/dim]")
        elif outcome.deferred:
            console.print(f"[dim]{outcome.handler}: debounced[/dim]")
        elif outcome.error is not None:
            console.print(f"[red]{outcome.handler}: {outcome.error.message}[/red]")
        else:
            console.print(_results_table(outcome.handler, outcome.results))
    _print_platform_calls(runtime)


@app.command()
def flow(
    spec: Path = typer.Argument(help="Path to the spec YAML file"),
    name: str = typer.Argument(help="Flow name"),
    arg: list[str] = typer.Option(None, "--arg", "-a", help="Flow argument as key=value"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Call a flow directly and print its return value."""
    _setup_logging(verbose)
    runtime = _build_runtime(spec)

    async def _run():
        try:
            return await runtime.dispatcher.call_flow(name, _parse_pairs(arg))
        finally:
            await runtime.state.close()

    result = asyncio.run(_run())
    console.print(_results_table(f"flow {name}", result.results))
    if not result.success:
        message = result.error.message if result.error else "aborted"
        console.print(f"[red]Flow failed: {message}[/red]")
        raise typer.Exit(1)
    console.print(f"Returned: [cyan]{json.dumps(result.value, default=str)}[/cyan]")


@app.command()
def job(
    spec: Path = typer.Argument(help="Path to the spec YAML file"),
    name: str = typer.Argument(help="Job name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Fire a cron job once, ignoring its schedule."""
    _setup_logging(verbose)
    runtime = _build_runtime(spec)

    async def _run() -> list[Any]:
        try:
            return await runtime.dispatcher.fire_job(name)
        finally:
            await runtime.state.close()

    results = asyncio.run(_run())
    console.print(_results_table(f"job {name}", results))
    _print_platform_calls(runtime)
    if any(not result.success for result in results):
        raise typer.Exit(1)


# ------------------------------------------------------------------
# flowbot run
# ------------------------------------------------------------------


@app.command()
def run(
    spec: Path = typer.Argument(help="Path to the spec YAML file"),
    host: str = typer.Option(None, "--host", help="Webhook server host"),
    port: int = typer.Option(None, "--port", help="Webhook server port"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Connect pipes, start cron jobs and serve webhook routes until interrupted."""
    import uvicorn

    runtime = _build_runtime(spec, persistent=True)
    _setup_logging(verbose, runtime.config)
    webhooks = runtime.config.webhooks

    async def _serve() -> None:
        await runtime.start()
        try:
            server = uvicorn.Server(
                uvicorn.Config(
                    runtime.create_app(),
                    host=host or webhooks.host,
                    port=port or webhooks.port,
                    log_level="warning",
                )
            )
            console.print(
                f"[bold green]{runtime.spec.name} running[/bold green] "
                f"(webhooks on http://{server.config.host}:{server.config.port})"
            )
            await server.serve()
        finally:
            await runtime.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")
    except FlowbotError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1) from None


# ------------------------------------------------------------------
# flowbot config show / init
# ------------------------------------------------------------------


@config_app.command("show")
def config_show() -> None:
    """Print the effective configuration."""
    from flowbot.config import ConfigManager

    manager = ConfigManager()
    config = manager.load()
    table = Table(title="flowbot Config", border_style="cyan")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for section, values in config.model_dump().items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", str(value))
    console.print(table)
    source = manager.get_config_path() if manager.exists() else "defaults"
    console.print(f"[dim]Source: {source}[/dim]")


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config file"),
) -> None:
    """Write a config file populated with defaults."""
    from flowbot.config import ConfigManager, FlowbotConfig

    manager = ConfigManager()
    if manager.exists() and not force:
        console.print(f"[yellow]Config already exists at {manager.get_config_path()}[/yellow]")
        raise typer.Exit(1)
    manager.save(FlowbotConfig())
    console.print(f"[green]Config written to {manager.get_config_path()}[/green]")


@app.command()
def version() -> None:
    """Print the flowbot version."""
    console.print(f"flowbot {flowbot.__version__}")
