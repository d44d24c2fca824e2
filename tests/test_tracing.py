"""Tests for span nesting and the trace store queries."""

import asyncio

import pytest

from agents.base import TaskExecutor
from tracing.models import SpanStatus, SpanType
from tracing.store import TraceStore
from tracing.tracer import Tracer
from workflows.models import Parallel, Sequence, Task, WorkflowDefinition


class Quick(TaskExecutor):
    async def run(self, request):
        await asyncio.sleep(0.01)
        return {"node": request.node_id}


class TestTracer:

    def test_nesting_and_persistence(self, tmp_path):
        tracer = Tracer(TraceStore(str(tmp_path / "t.db")))
        with tracer.span(SpanType.WORKFLOW_RUN, "run") as outer:
            with tracer.span(SpanType.WORKFLOW_STEP, "step", node_id="a", iteration=2) as inner:
                inner.output_data = {"ok": True}

        spans = {s["name"]: s for s in tracer.store.get_trace(outer.trace_id)}
        assert spans["step"]["parent_id"] == outer.id
        assert spans["step"]["iteration"] == 2
        assert spans["step"]["output_data"] == {"ok": True}
        assert spans["run"]["status"] == SpanStatus.SUCCESS.value

    def test_error_span(self, tmp_path):
        tracer = Tracer(TraceStore(str(tmp_path / "t.db")))
        with pytest.raises(ValueError):
            with tracer.span(SpanType.TASK_CALL, "call"):
                raise ValueError("bad input")
        errors = tracer.store.get_errors()
        assert errors[0]["error"] == "bad input"

    def test_sequential_roots_get_separate_traces(self, tmp_path):
        tracer = Tracer(TraceStore(str(tmp_path / "t.db")))
        with tracer.span(SpanType.WORKFLOW_RUN, "one") as a:
            pass
        with tracer.span(SpanType.WORKFLOW_RUN, "two") as b:
            pass
        assert a.trace_id != b.trace_id

    def test_explicit_trace_id_applies_to_root_only(self, tmp_path):
        tracer = Tracer(TraceStore(str(tmp_path / "t.db")))
        with tracer.span(SpanType.WORKFLOW_RUN, "run", trace_id="run-42") as outer:
            with tracer.span(SpanType.WORKFLOW_STEP, "step", trace_id="ignored") as inner:
                pass
        assert outer.trace_id == inner.trace_id == "run-42"
        assert inner.duration_ms >= 0
        assert inner.finished

    def test_disabled_tracer_has_no_store(self):
        tracer = Tracer(enabled=False)
        assert tracer.store is None
        with tracer.span(SpanType.WORKFLOW_RUN, "quiet") as span:
            pass
        assert span.status == SpanStatus.SUCCESS

    def test_instance_respects_env(self, monkeypatch):
        monkeypatch.setenv("LOOPWORK_TRACING", "0")
        Tracer.reset()
        assert Tracer.instance().enabled is False


class TestWorkflowTraces:

    @pytest.mark.asyncio
    async def test_run_produces_span_tree(self, engine):
        wf = WorkflowDefinition("traced", Sequence([
            Task(id="a", executor=Quick()),
            Parallel([Task(id="b", executor=Quick()), Task(id="c", executor=Quick())], id="fan"),
        ], id="root"))

        result = await engine.run(wf)

        store = Tracer.instance().store
        recent = store.get_recent_traces()
        assert len(recent) == 1
        assert recent[0]["trace_id"] == result.run_id
        assert recent[0]["workflow"] == "workflow:traced"
        assert recent[0]["error_count"] == 0
        spans = store.get_trace(result.run_id)
        by_name = {s["name"]: s for s in spans}

        run_span = by_name["workflow:traced"]
        assert run_span["input_data"]["run_id"] == result.run_id
        assert by_name["sequence:root"]["parent_id"] == run_span["id"]
        assert by_name["parallel:fan"]["parent_id"] == by_name["sequence:root"]["id"]
        assert by_name["task:b"]["parent_id"] == by_name["parallel:fan"]["id"]
        assert by_name["task:c"]["parent_id"] == by_name["parallel:fan"]["id"]

        calls = [s for s in spans if s["span_type"] == SpanType.TASK_CALL.value]
        assert len(calls) == 3
        assert {c["node_id"] for c in calls} == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_node_steps_by_iteration(self, engine):
        wf = WorkflowDefinition("t", Task(id="only", executor=Quick()))
        await engine.run(wf)
        steps = Tracer.instance().store.get_node_steps("only")
        assert [s["iteration"] for s in steps] == [0]
