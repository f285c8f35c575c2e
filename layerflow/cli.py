"""CLI entry point for layerflow.

Commands:
- layerflow init: Create .layerflow/ with a default config and database
- layerflow validate: Check a definition file without storing it
- layerflow deploy: Store a definition file (optionally activating it)
- layerflow status: Move a definition through its lifecycle
- layerflow emit: Send a trigger event
- layerflow worker: Execute pending steps
- layerflow inspect / cancel: Look at or stop a run
- layerflow credits: Manage an org's credit ledger
- layerflow serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from layerflow import __version__
from layerflow.core.config import CONFIG_DIR, DEFAULT_CONFIG_YAML, load_config
from layerflow.core.engine import WorkflowEngine
from layerflow.core.errors import GraphValidationError, LayerflowError
from layerflow.core.graph_schema import DefinitionStatus, WorkflowGraph
from layerflow.core.validator import Violation

console = Console()

STATE_COLORS = {
    "completed": "green",
    "done": "green",
    "running": "cyan",
    "executing": "cyan",
    "pending": "white",
    "waiting": "yellow",
    "scheduled": "yellow",
    "failed": "red",
    "cancelled": "dim",
}


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _engine(ctx: click.Context) -> WorkflowEngine:
    if "engine" not in ctx.obj:
        ctx.obj["engine"] = WorkflowEngine.from_config(load_config(ctx.obj.get("config_path")))
    return ctx.obj["engine"]


def _load_definition_file(path: str) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError("Definition file must contain a mapping")
    return data


def _graph_from(data: dict[str, Any]) -> WorkflowGraph:
    body = data.get("graph", data)
    return WorkflowGraph.model_validate(
        {k: body[k] for k in ("nodes", "edges", "triggers") if k in body}
    )


def _print_violations(violations: list[Violation]) -> None:
    table = Table(title="Violations")
    table.add_column("Code", style="red")
    table.add_column("Node")
    table.add_column("Message")
    for v in violations:
        table.add_row(v.code, escape(v.node_id or v.edge_id or "-"), escape(v.message))
    console.print(table)


def _colored(value: str) -> str:
    color = STATE_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Layerflow - event-driven workflow execution engine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init() -> None:
    """Initialize a layerflow project in the current directory."""
    layerflow_dir = get_repo_path() / CONFIG_DIR

    if (layerflow_dir / "config.yaml").exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    layerflow_dir.mkdir(parents=True, exist_ok=True)
    (layerflow_dir / "config.yaml").write_text(DEFAULT_CONFIG_YAML)
    WorkflowEngine.from_config(load_config(layerflow_dir / "config.yaml"))

    console.print(
        Panel(
            f"[green]Initialized layerflow in {layerflow_dir}[/green]\n\n"
            "Next steps:\n"
            "  layerflow deploy workflow.yaml --activate\n"
            "  layerflow worker",
            title="Layerflow",
        )
    )


@main.command()
@click.argument("definition_file", type=click.Path(exists=True))
@click.pass_context
def validate(ctx: click.Context, definition_file: str) -> None:
    """Validate a definition file without storing it."""
    try:
        graph = _graph_from(_load_definition_file(definition_file))
    except yaml.YAMLError as e:
        console.print(f"[red]Invalid YAML:[/] {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Schema validation failed:[/]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  [red]• {escape(loc)}: {escape(err['msg'])}[/]")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Invalid definition:[/] {escape(str(e))}")
        sys.exit(1)

    violations = _engine(ctx).definitions.validator.validate(graph).violations

    console.print(f"[bold]Nodes:[/] {len(graph.nodes)}")
    console.print(f"[bold]Edges:[/] {len(graph.edges)}")
    console.print(
        f"[bold]Triggers:[/] {', '.join(escape(t.event_kind) for t in graph.triggers) or '-'}"
    )
    if violations:
        _print_violations(violations)
        sys.exit(1)
    console.print("\n[green]✓ Definition is valid[/]")


@main.command()
@click.argument("definition_file", type=click.Path(exists=True))
@click.option("--activate", is_flag=True, help="Activate after storing")
@click.option("--org", "org_id", help="Owning org (overrides the file)")
@click.option("--id", "definition_id", help="Replace the graph of an existing definition")
@click.pass_context
def deploy(
    ctx: click.Context,
    definition_file: str,
    activate: bool,
    org_id: str | None,
    definition_id: str | None,
) -> None:
    """Store a definition file."""
    engine = _engine(ctx)
    try:
        data = _load_definition_file(definition_file)
        graph = _graph_from(data)
        if definition_id:
            definition = engine.definitions.save(definition_id, graph)
        else:
            owner = org_id or data.get("org_id")
            if not owner:
                console.print("[red]Error:[/red] No org_id in file; pass --org")
                sys.exit(1)
            definition = engine.definitions.create(
                data.get("name") or Path(definition_file).stem,
                owner,
                data.get("description"),
                graph,
            )
        if activate:
            definition = engine.definitions.set_status(definition.id, DefinitionStatus.ACTIVE)
    except GraphValidationError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        if e.violations:
            _print_violations(e.violations)
        sys.exit(1)
    except (LayerflowError, pydantic.ValidationError, yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    console.print(
        f"[green]Deployed[/green] {escape(definition.name)} "
        f"[dim]{definition.id}[/dim] (v{definition.version}, {definition.status.value})"
    )


@main.command()
@click.argument("definition_id")
@click.argument("new_status", type=click.Choice([s.value for s in DefinitionStatus]))
@click.pass_context
def status(ctx: click.Context, definition_id: str, new_status: str) -> None:
    """Change a definition's lifecycle status."""
    try:
        definition = _engine(ctx).definitions.set_status(
            definition_id, DefinitionStatus(new_status)
        )
    except GraphValidationError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        _print_violations(e.violations)
        sys.exit(1)
    except LayerflowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"{escape(definition.name)}: {_colored(definition.status.value)}")


@main.command()
@click.argument("event_kind")
@click.option("--payload", "-p", default="{}", help="Event payload as JSON")
@click.option("--key", "-k", help="Idempotency key")
@click.pass_context
def emit(ctx: click.Context, event_kind: str, payload: str, key: str | None) -> None:
    """Send a trigger event."""
    try:
        body = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON payload:[/] {escape(str(e))}")
        sys.exit(1)
    if not isinstance(body, dict):
        console.print("[red]Payload must be a JSON object[/]")
        sys.exit(1)

    result = _engine(ctx).emit(event_kind, body, key)
    if not result.matched:
        console.print(f"[yellow]No active definition listens for '{escape(event_kind)}'[/yellow]")
        return
    for run_id in result.created:
        console.print(f"[green]Started run[/green] {run_id}")
    for run_id in result.deduplicated:
        console.print(f"[dim]Duplicate event, existing run[/dim] {run_id}")


@main.command()
@click.option("--once", is_flag=True, help="Execute until idle, then exit")
@click.pass_context
def worker(ctx: click.Context, once: bool) -> None:
    """Execute pending steps."""
    engine = _engine(ctx)
    if once:
        executed = asyncio.run(engine.worker.run_until_idle())
        console.print(f"Executed {executed} step(s)")
        return

    console.print(f"[bold]Worker polling[/bold] {engine.config.database_path}")
    try:
        asyncio.run(engine.worker.start_daemon())
    except KeyboardInterrupt:
        engine.worker.stop()
        console.print("[yellow]Worker stopped[/yellow]")


@main.command()
@click.argument("run_id")
@click.option("--events", "show_events", is_flag=True, help="Show the event log")
@click.pass_context
def inspect(ctx: click.Context, run_id: str, show_events: bool) -> None:
    """Show a run's status and steps."""
    try:
        run, steps, events = _engine(ctx).inspect_run(run_id)
    except LayerflowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    console.print(
        Panel(
            f"Status: {_colored(run.status.value)}\n"
            f"Event: {escape(run.event_kind)} via {escape(run.trigger_node_id)}\n"
            f"Started: {run.created_at.isoformat()}"
            + (f"\nError: [red]{escape(run.error)}[/red]" if run.error else ""),
            title=f"Run {run.id}",
        )
    )

    table = Table(title="Steps")
    table.add_column("Node", style="cyan")
    table.add_column("Scope")
    table.add_column("State")
    table.add_column("Outcome")
    table.add_column("Attempt", justify="right")
    table.add_column("Due")
    table.add_column("Error")
    for step in steps:
        table.add_row(
            escape(step.node_id),
            escape(step.scope or "-"),
            _colored(step.state.value),
            step.outcome.value if step.outcome else "-",
            str(step.attempt),
            step.due_at.isoformat() if step.due_at else "-",
            escape(step.error or ""),
        )
    console.print(table)

    if show_events:
        log = Table(title="Events")
        log.add_column("Time")
        log.add_column("Type")
        log.add_column("Node")
        log.add_column("Payload")
        for event in events:
            log.add_row(
                event.timestamp.isoformat(),
                event.event_type.value,
                escape(event.node_id or "-"),
                escape(json.dumps(event.payload, default=str)),
            )
        console.print(log)


@main.command()
@click.argument("run_id")
@click.option("--reason", default="Cancelled by user", help="Recorded on the run")
@click.pass_context
def cancel(ctx: click.Context, run_id: str, reason: str) -> None:
    """Cancel a run."""
    try:
        run = _engine(ctx).cancel_run(run_id, reason)
    except LayerflowError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"Run {run.id}: {_colored(run.status.value)}")


@main.group()
def credits() -> None:
    """Manage org credit ledgers."""
    pass


@credits.command("grant")
@click.argument("org_id")
@click.option("--daily", type=int, help="Daily allowance")
@click.option("--monthly", type=int, help="Monthly allowance (-1 for unlimited)")
@click.option("--purchase", type=int, help="Add purchased credits")
@click.pass_context
def credits_grant(
    ctx: click.Context,
    org_id: str,
    daily: int | None,
    monthly: int | None,
    purchase: int | None,
) -> None:
    """Set allowances or add purchased credits for an org."""
    if daily is None and monthly is None and purchase is None:
        console.print("[yellow]Nothing to grant: pass --daily, --monthly or --purchase[/yellow]")
        sys.exit(1)
    ledger = _engine(ctx).ledger
    try:
        if daily is not None or monthly is not None:
            ledger.set_plan(org_id, daily=daily, monthly=monthly)
        if purchase is not None:
            ledger.add_purchased(org_id, purchase)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_balance(ctx, org_id)


@credits.command("show")
@click.argument("org_id")
@click.pass_context
def credits_show(ctx: click.Context, org_id: str) -> None:
    """Show an org's balance and recent transactions."""
    _print_balance(ctx, org_id)
    transactions = _engine(ctx).ledger.transactions(org_id, limit=10)
    if transactions:
        table = Table(title="Recent transactions")
        table.add_column("Time")
        table.add_column("Kind")
        table.add_column("Amount", justify="right")
        table.add_column("Reference")
        for tx in transactions:
            table.add_row(
                tx["created_at"], tx["kind"], str(tx["amount"]), escape(tx["reference"] or "-")
            )
        console.print(table)


def _print_balance(ctx: click.Context, org_id: str) -> None:
    balance = _engine(ctx).ledger.balance(org_id)
    table = Table(title=f"Credits for {escape(org_id)}")
    table.add_column("Pool")
    table.add_column("Remaining", justify="right")
    table.add_column("Total", justify="right")
    table.add_row("daily", str(balance.daily_remaining), str(balance.daily_total))
    table.add_row(
        "monthly",
        "unlimited" if balance.unlimited else str(balance.monthly_remaining),
        "unlimited" if balance.unlimited else str(balance.monthly_total),
    )
    table.add_row("purchased", str(balance.purchased), "-")
    console.print(table)
    available = "unlimited" if balance.unlimited else str(balance.available)
    console.print(f"[bold]Available:[/bold] {available}")


@main.command()
@click.option("--host", help="Bind address (default from config)")
@click.option("--port", type=int, help="Port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API."""
    import uvicorn

    from layerflow.api.server import app, set_engine

    engine = _engine(ctx)
    set_engine(engine)
    host = host or engine.config.server.host
    port = port or engine.config.server.port
    console.print(f"[bold]Layerflow API[/bold] on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
