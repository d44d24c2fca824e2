"""Tests for external cancellation of a run."""

import asyncio

import pytest
from pydantic import BaseModel

from agents.base import TaskExecutor
from core.errors import Cancelled, ParallelFailure
from workflows.engine import RunStatus
from workflows.events import NodeStarted
from workflows.models import ApprovalGate, Loop, Parallel, Sequence, Task, WorkflowDefinition


class Decision(BaseModel):
    approved: bool


class Hang(TaskExecutor):
    """Never finishes on its own; records whether it was cancelled."""

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def run(self, request):
        self.started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return {"late": True}


class TestCancellation:

    @pytest.mark.asyncio
    async def test_in_flight_task_abandoned_without_write(self, engine):
        hang = Hang()
        wf = WorkflowDefinition("t", Sequence([
            Task(id="slow", executor=hang),
            Task(id="never", value={"x": 1}),
        ]))
        run = engine.start(wf)
        await asyncio.wait_for(hang.started.wait(), 1)

        run.cancel("operator stop")
        result = await asyncio.wait_for(run.wait(), 1)

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, Cancelled)
        assert result.error.node_id == "slow"
        assert result.error.reason == "operator stop"
        assert not result.store.contains("slow")
        assert not result.store.contains("never")
        assert not any(isinstance(e, NodeStarted) and e.node_id == "never" for e in result.events)

        for _ in range(50):
            if hang.cancelled:
                break
            await asyncio.sleep(0.01)
        assert hang.cancelled

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, engine):
        run = engine.start(WorkflowDefinition("t", Task(id="a", value={})))
        run.cancel()
        result = await run
        assert isinstance(result.error, Cancelled)
        assert not result.store.contains("a")

    @pytest.mark.asyncio
    async def test_parallel_branches_all_cancelled(self, engine):
        a, b = Hang(), Hang()
        run = engine.start(WorkflowDefinition("t", Parallel([
            Task(id="a", executor=a),
            Task(id="b", executor=b),
        ])))
        await asyncio.wait_for(asyncio.gather(a.started.wait(), b.started.wait()), 1)

        run.cancel()
        result = await asyncio.wait_for(run.wait(), 1)

        assert isinstance(result.error, ParallelFailure)
        assert sorted(f.node_id for f in result.failures) == ["a", "b"]
        assert all(isinstance(f, Cancelled) for f in result.failures)

    @pytest.mark.asyncio
    async def test_cancel_waiting_gate(self, engine):
        run = engine.start(WorkflowDefinition("t", ApprovalGate(id="gate", output=Decision)))
        for _ in range(100):
            if run.pending_approvals():
                break
            await asyncio.sleep(0.01)

        run.cancel("no reviewer")
        result = await asyncio.wait_for(run.wait(), 1)

        assert isinstance(result.error, Cancelled)
        assert not result.store.contains("gate")

    @pytest.mark.asyncio
    async def test_cancellation_never_tolerated_by_loop(self, engine):
        hang = Hang()
        loop = Loop(
            id="ralph",
            body=Task(id="work", executor=hang),
            until=lambda out: False,
            output="work",
            max_iterations=5,
            continue_on_fail=True,
            on_max_reached="return-last",
        )
        run = engine.start(WorkflowDefinition("t", loop))
        await asyncio.wait_for(hang.started.wait(), 1)

        run.cancel()
        result = await asyncio.wait_for(run.wait(), 1)

        assert result.status == RunStatus.FAILED
        assert isinstance(result.error, Cancelled)
        assert result.tolerated == []

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, engine):
        run = engine.start(WorkflowDefinition("t", Task(id="a", value={})))
        run.cancel("first")
        run.cancel("second")
        result = await run
        assert result.error.reason == "first"
