"""Workflow data models.

A workflow is a tree of node specs. Leaves are Task and ApprovalGate;
Sequence, Parallel and Loop compose other nodes. Specs are declarative:
the engine never stores runtime state on them, every result goes to the
output store keyed by (node id, iteration).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator

from pydantic import BaseModel

if TYPE_CHECKING:
    from agents.base import TaskExecutor
    from workflows.context import RunContext


class NodeType(Enum):
    """Type of workflow node."""
    TASK = "task"
    SEQUENCE = "sequence"
    PARALLEL = "parallel"
    LOOP = "loop"
    APPROVAL = "approval"


class OverflowPolicy(str, Enum):
    """What a loop does when max_iterations passes did not converge."""
    RETURN_LAST = "return-last"
    FAIL = "fail"


@dataclass(frozen=True)
class NodeIdentity:
    """One execution of a node: its id plus the innermost loop iteration."""
    node_id: str
    iteration: int = 0

    def __post_init__(self):
        if self.iteration < 0:
            raise ValueError(f"iteration must be non-negative, got {self.iteration}")

    def __str__(self) -> str:
        return f"{self.node_id}@{self.iteration}"


@dataclass(frozen=True)
class OutputRecord:
    """A validated node result."""
    node_id: str
    iteration: int
    payload: dict[str, Any]
    produced_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def identity(self) -> NodeIdentity:
        return NodeIdentity(self.node_id, self.iteration)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "iteration": self.iteration,
            "payload": self.payload,
            "produced_at": self.produced_at.isoformat(),
        }


SkipPredicate = Callable[["RunContext"], bool]


@dataclass(kw_only=True)
class Node:
    """Base node."""
    id: str | None = None
    skip_if: SkipPredicate | None = None

    node_type = NodeType.TASK

    def children(self) -> list[Node]:
        return []


@dataclass(kw_only=True)
class Task(Node):
    """Leaf unit of work handed to an executor.

    Exactly one of `executor` or `value` must be set. With `value` the
    payload is produced locally (a constant or `value(ctx)`) and still
    goes through schema validation.
    """
    id: str
    executor: TaskExecutor | None = None
    output: type[BaseModel] | None = None
    instructions: str | Callable[[RunContext], str] = ""
    input: dict[str, Any] | Callable[[RunContext], dict[str, Any]] | None = None
    value: dict[str, Any] | Callable[[RunContext], Any] | None = None
    timeout: float | None = None

    node_type = NodeType.TASK


@dataclass
class Sequence(Node):
    """Runs steps strictly in order, failing fast."""
    steps: list[Node] = field(default_factory=list)

    node_type = NodeType.SEQUENCE

    def children(self) -> list[Node]:
        return list(self.steps)


@dataclass
class Parallel(Node):
    """Runs branches concurrently and joins on all of them."""
    branches: list[Node] = field(default_factory=list)

    node_type = NodeType.PARALLEL

    def children(self) -> list[Node]:
        return list(self.branches)


@dataclass(kw_only=True)
class Loop(Node):
    """Convergence loop: re-run `body` until `until(latest output)` holds."""
    id: str
    body: Node
    until: Callable[[dict[str, Any] | None], bool]
    output: str
    max_iterations: int
    on_max_reached: OverflowPolicy | str = OverflowPolicy.FAIL
    continue_on_fail: bool = False

    node_type = NodeType.LOOP

    def children(self) -> list[Node]:
        return [self.body]


@dataclass(kw_only=True)
class ApprovalGate(Node):
    """Node whose output is supplied out-of-band (a human or external system)."""
    id: str
    output: type[BaseModel] | None = None
    request: dict[str, Any] | Callable[[RunContext], dict[str, Any]] | None = None

    node_type = NodeType.APPROVAL


@dataclass
class WorkflowDefinition:
    """Complete workflow definition: a named tree of node specs."""
    name: str
    root: Node
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self._assign_ids()

    def _assign_ids(self) -> None:
        """Give anonymous composites stable ids in definition order."""
        counters: dict[str, int] = {}
        for node, _ in self.walk():
            if isinstance(node, Node) and node.id is None:
                prefix = node.node_type.value
                counters[prefix] = counters.get(prefix, 0) + 1
                node.id = f"{prefix}-{counters[prefix]}"

    def walk(self) -> Iterator[tuple[Node, Node | None]]:
        """Depth-first (node, parent) pairs, parents before children.

        A child that is also one of its own ancestors is not descended into.
        """
        for node, parent, _ in self._walk_paths():
            yield node, parent

    def _walk_paths(self) -> Iterator[tuple[Any, Node | None, frozenset[int]]]:
        stack: list[tuple[Any, Node | None, frozenset[int]]] = [(self.root, None, frozenset())]
        while stack:
            node, parent, ancestors = stack.pop()
            yield node, parent, ancestors
            if isinstance(node, Node):
                path = ancestors | {id(node)}
                for child in reversed(node.children()):
                    if id(child) not in path:
                        stack.append((child, node, path))

    def _cycles(self) -> list[str]:
        errors = []
        for node, _, ancestors in self._walk_paths():
            if isinstance(node, Node):
                path = ancestors | {id(node)}
                for child in node.children():
                    if id(child) in path:
                        errors.append(f"Node '{node.id}' contains a cycle through '{getattr(child, 'id', child)}'")
        return errors

    def nodes(self) -> list[Node]:
        return [n for n, _ in self.walk() if isinstance(n, Node)]

    def get_node(self, node_id: str) -> Node | None:
        """Get node by ID."""
        for node in self.nodes():
            if node.id == node_id:
                return node
        return None

    def validate(self) -> list[str]:
        """Validate workflow definition. Returns list of errors."""
        errors = []

        if not isinstance(self.root, Node):
            return [f"Workflow root must be a Node, got {type(self.root).__name__}"]

        cycles = self._cycles()
        if cycles:
            return cycles

        seen: set[str] = set()
        for node, parent in self.walk():
            where = f"child of '{parent.id}'" if parent is not None else "root"
            if not isinstance(node, Node):
                errors.append(f"{where} is not a Node: {node!r}")
                continue
            if not node.id:
                errors.append(f"{type(node).__name__} ({where}) has no id")
            elif node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            else:
                seen.add(node.id)
            if node.skip_if is not None and not callable(node.skip_if):
                errors.append(f"Node '{node.id}': skip_if must be callable")

            if isinstance(node, Task):
                errors.extend(self._validate_task(node))
            elif isinstance(node, Loop):
                errors.extend(self._validate_loop(node))
            elif isinstance(node, ApprovalGate):
                if not _is_schema(node.output):
                    errors.append(f"Approval gate '{node.id}': output must be a pydantic model class")

        return errors

    @staticmethod
    def _validate_task(task: Task) -> list[str]:
        errors = []
        if (task.executor is None) == (task.value is None):
            errors.append(f"Task '{task.id}' needs exactly one of executor or value")
        if task.executor is not None and not callable(getattr(task.executor, "run", None)):
            errors.append(f"Task '{task.id}': executor has no run() method")
        if not _is_schema(task.output):
            errors.append(f"Task '{task.id}': output must be a pydantic model class")
        if task.timeout is not None and task.timeout <= 0:
            errors.append(f"Task '{task.id}': timeout must be positive")
        return errors

    @staticmethod
    def _validate_loop(loop: Loop) -> list[str]:
        errors = []
        if not isinstance(loop.max_iterations, int) or loop.max_iterations < 1:
            errors.append(f"Loop '{loop.id}': max_iterations must be an integer >= 1")
        try:
            OverflowPolicy(loop.on_max_reached)
        except ValueError:
            errors.append(f"Loop '{loop.id}': unknown on_max_reached policy {loop.on_max_reached!r}")
        if not callable(loop.until):
            errors.append(f"Loop '{loop.id}': until must be callable")
        if not isinstance(loop.body, Node):
            errors.append(f"Loop '{loop.id}': body must be a Node")
            return errors
        if loop.output not in _loop_owned_ids(loop.body):
            if loop.output in _subtree_ids(loop.body):
                errors.append(
                    f"Loop '{loop.id}' output node '{loop.output}' sits inside a nested loop; "
                    f"designate a node the loop runs directly"
                )
            else:
                errors.append(f"Loop '{loop.id}' references output node '{loop.output}' which is not in its body")
        return errors


def _loop_owned_ids(node: Node) -> set[str | None]:
    """Ids written once per pass of the enclosing loop (nested loops excluded)."""
    if isinstance(node, Loop):
        return set()
    ids = {node.id}
    for child in node.children():
        if isinstance(child, Node):
            ids |= _loop_owned_ids(child)
    return ids


def _subtree_ids(node: Node) -> set[str | None]:
    ids = {node.id}
    for child in node.children():
        if isinstance(child, Node):
            ids |= _subtree_ids(child)
    return ids


def _is_schema(output: Any) -> bool:
    return output is None or (isinstance(output, type) and issubclass(output, BaseModel))
