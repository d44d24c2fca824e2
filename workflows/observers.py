"""Ready-made observers for run progress."""
import json
import logging

from rich.console import Console

from workflows.events import (
    ApprovalRequested, LoopIterationStarted, NodeFailed, NodeFinished, NodeSkipped,
    NodeStarted, RunFinished, WorkflowEvent,
)

logger = logging.getLogger(__name__)

STATUS_STYLES = {"completed": "bold green", "exhausted": "bold yellow", "failed": "bold red"}


class ConsoleObserver:
    """Prints one line per lifecycle event: >> started, << finished, !! failed."""

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console(stderr=True)
        self.verbose = verbose

    def __call__(self, event: WorkflowEvent) -> None:
        ts = event.timestamp.astimezone().strftime("%H:%M:%S")
        prefix = f"[dim]\\[{ts}][/]"

        if isinstance(event, NodeStarted):
            if event.node_type == "task" or self.verbose:
                self.console.print(f"{prefix} [cyan]>>[/] {event.node_id} (iteration {event.iteration})")
        elif isinstance(event, NodeFinished):
            if event.node_type == "task" or self.verbose:
                self.console.print(f"{prefix} [green]<<[/] {event.node_id} done")
        elif isinstance(event, NodeFailed):
            self.console.print(f"{prefix} [red]!![/] {event.node_id} failed: {event.error}")
        elif isinstance(event, NodeSkipped):
            if self.verbose:
                self.console.print(f"{prefix} [dim]--[/] {event.node_id} skipped")
        elif isinstance(event, LoopIterationStarted):
            self.console.print(
                f"{prefix} [magenta]~~[/] {event.node_id} iteration {event.iteration + 1}/{event.max_iterations}"
            )
        elif isinstance(event, ApprovalRequested):
            self.console.print(f"{prefix} [yellow]??[/] {event.node_id} awaiting approval (iteration {event.iteration})")
            if event.request:
                self.console.print_json(json.dumps(event.request, default=str))
        elif isinstance(event, RunFinished):
            style = STATUS_STYLES.get(event.status, "bold")
            self.console.print(f"{prefix} [{style}]run {event.run_id} {event.status}[/]")


class LoggingObserver:
    """Forwards events to a logger; failures at WARNING, the rest at INFO/DEBUG."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def __call__(self, event: WorkflowEvent) -> None:
        if isinstance(event, NodeFailed):
            self.log.warning(f"{event.type} {event.node_id}@{event.iteration}: {event.error}")
        elif isinstance(event, (RunFinished, ApprovalRequested, LoopIterationStarted)):
            self.log.info(f"{event.type} {event.node_id}@{event.iteration}")
        else:
            self.log.debug(f"{event.type} {event.node_id}@{event.iteration}")
