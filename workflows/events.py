"""Lifecycle events emitted during a run."""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable


@dataclass(frozen=True, kw_only=True)
class WorkflowEvent:
    run_id: str
    node_id: str
    iteration: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass(frozen=True, kw_only=True)
class NodeStarted(WorkflowEvent):
    node_type: str = ""


@dataclass(frozen=True, kw_only=True)
class NodeFinished(WorkflowEvent):
    node_type: str = ""


@dataclass(frozen=True, kw_only=True)
class NodeFailed(WorkflowEvent):
    error: str = ""
    kind: str = ""


@dataclass(frozen=True, kw_only=True)
class NodeSkipped(WorkflowEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class LoopIterationStarted(WorkflowEvent):
    """iteration is the pass about to run, not the loop's own identity."""
    max_iterations: int = 0


@dataclass(frozen=True, kw_only=True)
class ApprovalRequested(WorkflowEvent):
    request: dict[str, Any] | None = None


@dataclass(frozen=True, kw_only=True)
class RunFinished(WorkflowEvent):
    status: str = ""


Observer = Callable[[WorkflowEvent], None | Awaitable[None]]
