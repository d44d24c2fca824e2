"""Workflow engine: sequences, parallel joins, convergence loops and approval gates."""

from workflows.models import (
    WorkflowDefinition, Node, Task, Sequence, Parallel, Loop, ApprovalGate,
    NodeType, NodeIdentity, OutputRecord, OverflowPolicy,
)
from workflows.store import OutputStore, MemoryOutputStore, OutputHistory
from workflows.sqlite_store import SqliteOutputStore
from workflows.context import RunContext
from workflows.engine import WorkflowEngine, WorkflowRun, WorkflowResult, RunStatus
from workflows.observers import ConsoleObserver, LoggingObserver
from workflows.loader import load_definition

__all__ = [
    "WorkflowDefinition", "Node", "Task", "Sequence", "Parallel", "Loop", "ApprovalGate",
    "NodeType", "NodeIdentity", "OutputRecord", "OverflowPolicy",
    "OutputStore", "MemoryOutputStore", "OutputHistory", "SqliteOutputStore",
    "RunContext",
    "WorkflowEngine", "WorkflowRun", "WorkflowResult", "RunStatus",
    "ConsoleObserver", "LoggingObserver",
    "load_definition",
]
