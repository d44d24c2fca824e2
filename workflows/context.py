"""Run-scoped state and the read-only query API handed to user callables."""
import asyncio
from dataclasses import dataclass, field
from typing import Any

from core.errors import NodeFailure
from workflows.approvals import ApprovalChannel
from workflows.events import Observer, WorkflowEvent
from workflows.models import NodeIdentity
from workflows.store import OutputHistory, OutputStore


@dataclass
class RunState:
    """Everything one run owns. Created at start, dropped when the run ends."""
    run_id: str
    input: dict[str, Any]
    store: OutputStore
    observers: list[Observer] = field(default_factory=list)
    events: list[WorkflowEvent] = field(default_factory=list)
    approvals: ApprovalChannel = field(default_factory=ApprovalChannel)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_reason: str | None = None
    written: set[NodeIdentity] = field(default_factory=set)
    exhausted: list[str] = field(default_factory=list)
    tolerated: list[NodeFailure] = field(default_factory=list)


class RunContext:
    """
    A node's view of the run at its position in the tree.

    Carries the loop cursor stack (outermost first). Nested loops get a
    derived context; store, events and cancellation stay shared.
    """

    def __init__(self, state: RunState, cursors: tuple[tuple[str, int], ...] = ()):
        self._state = state
        self._cursors = cursors

    # ── position ───────────────────────────────────────────────────
    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def input(self) -> dict[str, Any]:
        return self._state.input

    @property
    def store(self) -> OutputStore:
        return self._state.store

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cursors(self) -> tuple[tuple[str, int], ...]:
        return self._cursors

    @property
    def iteration(self) -> int:
        return self._cursors[-1][1] if self._cursors else 0

    @property
    def cancelled(self) -> bool:
        return self._state.cancel_event.is_set()

    def identity(self, node_id: str) -> NodeIdentity:
        return NodeIdentity(node_id, self.iteration)

    def enter_loop(self, loop_id: str, iteration: int) -> "RunContext":
        return RunContext(self._state, self._cursors + ((loop_id, iteration),))

    # ── queries ────────────────────────────────────────────────────
    def output(self, node_id: str, iteration: int | None = None) -> dict[str, Any] | None:
        """Payload at `iteration` (default: the current one), or None."""
        record = self._state.store.read(node_id, self.iteration if iteration is None else iteration)
        return record.payload if record else None

    def latest(self, node_id: str) -> dict[str, Any] | None:
        record = self._state.store.read_latest(node_id)
        return record.payload if record else None

    def history(self, node_id: str) -> OutputHistory:
        return self._state.store.read_history(node_id)

    def __repr__(self) -> str:
        return f"RunContext(run_id={self.run_id!r}, cursors={self._cursors!r})"
