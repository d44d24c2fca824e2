"""
Span records for workflow runs.

One run produces one tree of spans sharing the run id as trace id:

    workflow_run
      workflow_step   one per node execution, keyed by (node_id, iteration)
        task_call     executor invocation
          llm_call    tokens and cost, when the executor talks to a model
      approval_wait   time a gate spent suspended
"""
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SpanType(str, Enum):
    WORKFLOW_RUN = "workflow_run"
    WORKFLOW_STEP = "workflow_step"
    TASK_CALL = "task_call"
    LLM_CALL = "llm_call"
    APPROVAL_WAIT = "approval_wait"


class SpanStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


def new_span_id() -> str:
    return uuid.uuid4().hex[:16]


# Column order shared by TraceSpan.as_row() and the spans table
SPAN_COLUMNS = (
    "id", "trace_id", "parent_id", "span_type", "name", "node_id", "iteration",
    "status", "error", "started_at", "ended_at", "duration_ms",
    "input_data", "output_data", "model", "provider",
    "input_tokens", "output_tokens", "cost_usd",
)


@dataclass
class TraceSpan:
    span_type: SpanType = SpanType.WORKFLOW_STEP
    name: str = ""
    id: str = field(default_factory=new_span_id)
    trace_id: str | None = None
    parent_id: str | None = None

    node_id: str | None = None
    iteration: int | None = None

    status: SpanStatus = SpanStatus.PENDING
    error: str | None = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    ended_at: str | None = None
    duration_ms: float = 0.0

    input_data: dict = field(default_factory=dict)
    output_data: dict = field(default_factory=dict)

    model: str | None = None
    provider: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def finished(self) -> bool:
        return self.ended_at is not None

    def finish(self, status: SpanStatus, error: str | None = None) -> None:
        """Stamp the end time and elapsed milliseconds."""
        ended = datetime.now()
        self.ended_at = ended.isoformat()
        self.duration_ms = (ended - datetime.fromisoformat(self.started_at)).total_seconds() * 1000
        self.status = status
        if error is not None:
            self.error = error

    def record_usage(self, input_tokens: int = 0, output_tokens: int = 0, cost_usd: float = 0.0) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost_usd

    def as_row(self) -> tuple:
        values = {
            **self.__dict__,
            "span_type": self.span_type.value,
            "status": self.status.value,
            "input_data": json.dumps(self.input_data, default=str),
            "output_data": json.dumps(self.output_data, default=str),
        }
        return tuple(values[c] for c in SPAN_COLUMNS)
