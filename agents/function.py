"""In-process executor wrapping a plain callable."""
import asyncio
from typing import Any, Callable

from agents.base import TaskExecutor, TaskRequest


class FunctionExecutor(TaskExecutor):
    """Runs `fn(request)`; sync callables run in a worker thread."""

    def __init__(self, fn: Callable[[TaskRequest], Any], name: str | None = None):
        self._fn = fn
        self._name = name or getattr(fn, "__name__", "function")

    @property
    def name(self) -> str:
        return self._name

    async def run(self, request: TaskRequest) -> Any:
        if asyncio.iscoroutinefunction(self._fn):
            return await self._fn(request)
        return await asyncio.to_thread(self._fn, request)
