"""loopwork CLI entry point."""
import os
import json
import signal
import asyncio
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from core.config import Settings, load_settings
from core.errors import DefinitionError, ValidationFailure
from core.log_setup import configure_logging

app = typer.Typer(name="loopwork", help="Workflow orchestration for coding agents")
console = Console()

EXIT_DEFINITION_ERROR = 2


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """loopwork: sequences, parallel joins, convergence loops and approval gates."""
    if ctx.invoked_subcommand is None:
        console.print(Panel(
            "[bold green]loopwork v0.1.0[/]\n\n"
            "Commands:\n"
            "  [cyan]loopwork run[/]        — Run a workflow to completion\n"
            "  [cyan]loopwork approve[/]    — Seed an approval gate's value\n"
            "  [cyan]loopwork outputs[/]    — Inspect stored node outputs\n"
            "  [cyan]loopwork validate[/]   — Check a workflow definition\n"
            "  [cyan]loopwork traces[/]     — Show recorded run traces\n",
            title="Welcome",
            border_style="green"
        ))


# ── helpers ────────────────────────────────────────────────────────
def _parse_json_arg(raw: Optional[str], what: str) -> Any:
    """JSON literal, or @path to a JSON file."""
    if raw is None:
        return None
    if raw.startswith("@"):
        try:
            with open(raw[1:], "r", encoding="utf-8") as f:
                raw = f.read()
        except OSError as e:
            raise typer.BadParameter(f"Cannot read {what} file: {e}")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"{what} is not valid JSON: {e}")


def _settings(config: Optional[str], **overrides: Any) -> Settings:
    try:
        settings = load_settings(config).merge(overrides)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]✗ {e}[/]")
        raise typer.Exit(code=EXIT_DEFINITION_ERROR)
    configure_logging(settings.log_level)
    # Executors and the tracer read these at construction time
    os.environ.setdefault("LOOPWORK_TRACE_DB", settings.trace_db)
    os.environ.setdefault("LOOPWORK_CLAUDE_CLI", settings.claude_cli)
    os.environ.setdefault("LOOPWORK_CODEX_CLI", settings.codex_cli)
    return settings


def _load(target: str):
    from workflows.loader import load_definition
    try:
        return load_definition(target)
    except DefinitionError as e:
        console.print(f"[red]✗ {e}[/]")
        raise typer.Exit(code=EXIT_DEFINITION_ERROR)


def _preview(payload: Any, width: int = 80) -> str:
    text = json.dumps(payload, default=str)
    return text if len(text) <= width else text[:width - 3] + "..."


class InteractiveApprover:
    """Observer that asks on the terminal for each requested approval."""

    def __init__(self):
        self.run = None

    async def __call__(self, event) -> None:
        from workflows.events import ApprovalRequested
        if not isinstance(event, ApprovalRequested) or self.run is None:
            return
        while True:
            raw = await asyncio.to_thread(
                Prompt.ask, f"[yellow]Value for {event.node_id} (iteration {event.iteration}) as JSON[/]"
            )
            try:
                self.run.approve(event.node_id, json.loads(raw), event.iteration)
                return
            except json.JSONDecodeError as e:
                console.print(f"[red]Not JSON: {e}[/]")
            except ValidationFailure as e:
                console.print(f"[red]Rejected: {e}[/]")


def _print_result(result) -> None:
    from workflows.engine import RunStatus
    style = {RunStatus.COMPLETED: "green", RunStatus.EXHAUSTED: "yellow", RunStatus.FAILED: "red"}[result.status]
    lines = [
        f"[yellow]Run:[/] {result.run_id}",
        f"[yellow]Workflow:[/] {result.workflow}",
        f"[yellow]Status:[/] [{style}]{result.status.value}[/]",
    ]
    if result.exhausted:
        lines.append(f"[yellow]Exhausted loops:[/] {', '.join(result.exhausted)}")
    if result.tolerated:
        lines.append(f"[yellow]Tolerated failures:[/] {len(result.tolerated)}")
    console.print(Panel("\n".join(lines), title="Result", border_style=style))

    if result.failures:
        table = Table(title="Failures")
        table.add_column("Node", style="cyan")
        table.add_column("Iteration", justify="right")
        table.add_column("Kind", style="red")
        table.add_column("Message")
        for f in result.failures:
            table.add_row(f.node_id, str(f.iteration), f.kind, f.message)
        console.print(table)
    elif result.output is not None:
        console.print_json(json.dumps(result.output, default=str))


# ── commands ───────────────────────────────────────────────────────
@app.command()
def run(
    target: str = typer.Argument(..., help="Workflow as module:attr or path/to/file.py[:attr]"),
    input: Optional[str] = typer.Option(None, "--input", "-i", help="Run input as JSON or @file.json"),
    db: Optional[str] = typer.Option(None, help="SQLite output store (default: in-memory)"),
    config: Optional[str] = typer.Option(None, help="Settings file (default: ./loopwork.yaml)"),
    timeout: Optional[float] = typer.Option(None, help="Default per-task timeout in seconds"),
    log_level: Optional[str] = typer.Option(None, help="DEBUG/INFO/WARNING/ERROR"),
    interactive: bool = typer.Option(False, "--interactive", help="Prompt for approval gate values"),
    json_output: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No progress lines"),
):
    """Run a workflow. Exit code: 0 converged, 3 exhausted (return-last), 1 failed."""
    from workflows.engine import WorkflowEngine
    from workflows.observers import ConsoleObserver
    from workflows.sqlite_store import SqliteOutputStore
    from workflows.store import MemoryOutputStore

    settings = _settings(config, output_db=db, task_timeout=timeout, log_level=log_level)
    definition = _load(target)
    run_input = _parse_json_arg(input, "input") or {}
    if not isinstance(run_input, dict):
        raise typer.BadParameter("input must be a JSON object")

    observers = [] if quiet else [ConsoleObserver(Console(stderr=True))]
    approver = InteractiveApprover() if interactive else None
    if approver:
        observers.append(approver)

    store = SqliteOutputStore(settings.output_db) if settings.output_db else MemoryOutputStore()
    engine = WorkflowEngine(observers=observers, task_timeout=settings.task_timeout)

    async def _run():
        handle = engine.start(definition, run_input, store=store)
        if approver:
            approver.run = handle
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, handle.cancel, "interrupted")
        except (NotImplementedError, RuntimeError):
            pass
        try:
            return await handle
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    try:
        result = asyncio.run(_run())
    except DefinitionError as e:
        console.print(f"[red]✗ {e}[/]")
        raise typer.Exit(code=EXIT_DEFINITION_ERROR)
    finally:
        store.close()

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_result(result)
    raise typer.Exit(code=result.exit_code)


@app.command()
def approve(
    node_id: str = typer.Argument(..., help="Approval gate id"),
    value: str = typer.Argument(..., help="Gate value as JSON or @file.json"),
    db: str = typer.Option(..., help="SQLite output store the run will use"),
    iteration: int = typer.Option(0, help="Loop iteration the value is for"),
    workflow: Optional[str] = typer.Option(None, help="Workflow to validate the value against"),
    force: bool = typer.Option(False, help="Replace an existing value"),
    config: Optional[str] = typer.Option(None, help="Settings file"),
):
    """Seed an approval gate's value so a run with this store passes straight through it."""
    from workflows.models import ApprovalGate
    from workflows.schema import validate_output
    from workflows.sqlite_store import SqliteOutputStore

    _settings(config)
    payload = _parse_json_arg(value, "value")

    if workflow:
        gate = _load(workflow).get_node(node_id)
        if not isinstance(gate, ApprovalGate):
            console.print(f"[red]✗ '{node_id}' is not an approval gate in {workflow}[/]")
            raise typer.Exit(code=EXIT_DEFINITION_ERROR)
        try:
            payload = validate_output(gate.output, payload, node_id, iteration)
        except ValidationFailure as e:
            console.print(f"[red]✗ {e}[/]")
            raise typer.Exit(code=1)
    elif not isinstance(payload, dict):
        raise typer.BadParameter("value must be a JSON object")

    store = SqliteOutputStore(db)
    try:
        if store.contains(node_id, iteration) and not force:
            console.print(f"[red]✗ {node_id}@{iteration} already has a value (use --force to replace)[/]")
            raise typer.Exit(code=1)
        store.write(node_id, iteration, payload)
    finally:
        store.close()
    console.print(f"[green]✓ Approval stored for {node_id}@{iteration}[/]")


@app.command()
def outputs(
    db: str = typer.Option(..., help="SQLite output store"),
    node: Optional[str] = typer.Option(None, help="Only this node's history"),
    json_output: bool = typer.Option(False, "--json", help="Print records as JSON"),
):
    """Show stored node outputs."""
    from workflows.sqlite_store import SqliteOutputStore

    if not os.path.exists(db):
        console.print(f"[red]✗ No output store at {db}[/]")
        raise typer.Exit(code=1)

    store = SqliteOutputStore(db)
    try:
        node_ids = [node] if node else store.node_ids()
        records = [r for n in node_ids for r in store.read_history(n)]
    finally:
        store.close()

    if json_output:
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2, default=str))
        return

    table = Table(title=f"Outputs ({db})")
    table.add_column("Node", style="cyan")
    table.add_column("Iteration", justify="right")
    table.add_column("Produced", style="dim")
    table.add_column("Payload")
    for r in records:
        table.add_row(r.node_id, str(r.iteration), r.produced_at.strftime("%Y-%m-%d %H:%M:%S"), _preview(r.payload))
    console.print(table)
    if not records:
        console.print("[yellow]No outputs stored[/]")


@app.command()
def validate(target: str = typer.Argument(..., help="Workflow as module:attr or path/to/file.py[:attr]")):
    """Check a workflow definition without running it."""
    definition = _load(target)
    problems = definition.validate()
    if problems:
        console.print(f"[red]✗ {definition.name}: {len(problems)} problem(s)[/]")
        for p in problems:
            console.print(f"  • {p}")
        raise typer.Exit(code=EXIT_DEFINITION_ERROR)

    counts: dict[str, int] = {}
    for n in definition.nodes():
        counts[n.node_type.value] = counts.get(n.node_type.value, 0) + 1
    summary = ", ".join(f"{v} {k}" for k, v in sorted(counts.items()))
    console.print(f"[green]✓ {definition.name} is valid[/] ({summary})")


@app.command()
def traces(
    trace_id: Optional[str] = typer.Argument(None, help="Show every span of one trace"),
    limit: int = typer.Option(10, help="How many recent traces to list"),
    errors: bool = typer.Option(False, "--errors", help="List failed spans instead"),
    node: Optional[str] = typer.Option(None, "--node", help="Steps of one node by iteration (within TRACE_ID if given)"),
    llm: bool = typer.Option(False, "--llm", help="Model calls, tokens and cost per model"),
    days: int = typer.Option(7, help="Window for --llm, in days"),
    config: Optional[str] = typer.Option(None, help="Settings file"),
):
    """Show recorded run traces."""
    from tracing.store import TraceStore

    settings = _settings(config)
    store = TraceStore(settings.trace_db)

    if node:
        steps = store.get_node_steps(node, trace_id)
        if not steps:
            console.print(f"[red]✗ No recorded steps for node: {node}[/]")
            raise typer.Exit(code=1)
        table = Table(title=f"Steps of {node}")
        table.add_column("Run", style="cyan")
        table.add_column("Iteration", justify="right")
        table.add_column("Status")
        table.add_column("ms", justify="right")
        table.add_column("Error", style="red")
        for s in steps:
            status = "[red]error[/]" if s["status"] == "error" else s["status"]
            table.add_row(
                s["trace_id"], "" if s["iteration"] is None else str(s["iteration"]), status,
                f"{s.get('duration_ms') or 0:.0f}", (s.get("error") or "")[:80],
            )
        console.print(table)
        return

    if llm:
        summary = store.get_llm_summary(days)
        table = Table(title=f"Model calls, last {days} days")
        table.add_column("Model", style="cyan")
        table.add_column("Calls", justify="right")
        table.add_column("Tokens in/out", justify="right")
        table.add_column("Avg ms", justify="right")
        table.add_column("Errors", justify="right")
        table.add_column("Cost $", justify="right")
        for m in summary["by_model"]:
            table.add_row(
                m["model"] or "?", str(m["calls"]), f"{m['input_tokens'] or 0}/{m['output_tokens'] or 0}",
                f"{m['avg_latency_ms'] or 0:.0f}", str(m["errors"]), f"{m['cost']:.4f}",
            )
        console.print(table)
        console.print(f"[bold]{summary['total_calls']}[/] calls, [bold]${summary['total_cost']:.4f}[/] total")
        return

    if trace_id:
        spans = store.get_trace(trace_id)
        if not spans:
            console.print(f"[red]✗ Trace not found: {trace_id}[/]")
            raise typer.Exit(code=1)
        table = Table(title=f"Trace {trace_id}")
        table.add_column("Type", style="magenta")
        table.add_column("Name", style="cyan")
        table.add_column("Iteration", justify="right")
        table.add_column("Status")
        table.add_column("ms", justify="right")
        for s in spans:
            status = "[red]error[/]" if s["status"] == "error" else s["status"]
            it = "" if s.get("iteration") is None else str(s["iteration"])
            table.add_row(s["span_type"], s["name"], it, status, f"{s.get('duration_ms') or 0:.0f}")
        console.print(table)
        return

    if errors:
        table = Table(title="Failed spans")
        table.add_column("Started", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Error", style="red")
        for s in store.get_errors(limit):
            table.add_row(s["started_at"][:19], s["name"], (s.get("error") or "")[:120])
        console.print(table)
        return

    table = Table(title="Recent traces")
    table.add_column("Run", style="cyan")
    table.add_column("Workflow")
    table.add_column("Started", style="dim")
    table.add_column("Spans", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Cost $", justify="right")
    for t in store.get_recent_traces(limit):
        table.add_row(
            t["trace_id"], (t["workflow"] or "").removeprefix("workflow:"),
            (t["started_at"] or "")[:19], str(t["span_count"]), str(t["error_count"]), f"{t['total_cost'] or 0:.4f}",
        )
    console.print(table)


if __name__ == "__main__":
    app()
