"""Task executor boundary: given a request, produce a raw result or raise."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any


@dataclass
class TaskRequest:
    """What a task node hands to its executor."""
    node_id: str
    iteration: int
    input: dict[str, Any] = field(default_factory=dict)
    instructions: str = ""
    output_schema: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TaskExecutor(ABC):
    """
    Abstract base; every executor backend implements run().

    run() returns a raw result: a dict, a pydantic model, or JSON text.
    The engine validates it against the node schema; executors never
    need to. Any exception raised is reported as an ExecutorFailure.
    """

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def run(self, request: TaskRequest) -> Any:
        ...
