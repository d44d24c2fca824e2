"""Workflow engine: walks a node tree, runs it to completion, reports the outcome."""

import asyncio
import copy
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from agents.base import TaskRequest
from core.errors import (
    ApprovalError, CallbackError, Cancelled, DefinitionError, ExecutorFailure,
    LoopExhausted, NodeFailure, ParallelFailure,
)
from tracing.models import SpanType, SpanStatus
from tracing.tracer import Tracer
from workflows.approvals import PendingApproval
from workflows.context import RunContext, RunState
from workflows.events import (
    ApprovalRequested, LoopIterationStarted, NodeFailed, NodeFinished, NodeSkipped,
    NodeStarted, Observer, RunFinished, WorkflowEvent,
)
from workflows.models import (
    ApprovalGate, Loop, Node, OverflowPolicy, Parallel, Sequence, Task, WorkflowDefinition,
)
from workflows.schema import json_schema, validate_output
from workflows.store import MemoryOutputStore, OutputStore

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    COMPLETED = "completed"   # every loop converged (or there were none)
    EXHAUSTED = "exhausted"   # a loop hit its ceiling under return-last
    FAILED = "failed"


EXIT_CODES = {RunStatus.COMPLETED: 0, RunStatus.FAILED: 1, RunStatus.EXHAUSTED: 3}


@dataclass
class WorkflowResult:
    """Terminal outcome of one run."""
    run_id: str
    workflow: str
    status: RunStatus
    output: Any = None
    error: NodeFailure | None = None
    failures: list[NodeFailure] = field(default_factory=list)
    tolerated: list[NodeFailure] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)
    events: list[WorkflowEvent] = field(default_factory=list)
    store: OutputStore | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "output": self.output,
            "failures": [f.to_dict() for f in self.failures],
            "tolerated": [f.to_dict() for f in self.tolerated],
            "exhausted": list(self.exhausted),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "event_count": len(self.events),
        }


class WorkflowRun:
    """Handle on an in-flight run: approve gates, cancel, await the result."""

    def __init__(self, definition: WorkflowDefinition, state: RunState, task: asyncio.Task):
        self.definition = definition
        self._state = state
        self._task = task

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def events(self) -> list[WorkflowEvent]:
        return list(self._state.events)

    def approve(self, node_id: str, value: Any, iteration: int | None = None) -> None:
        """Supply an approval gate's value. Raises ValidationFailure if it doesn't fit the schema."""
        gate = self.definition.get_node(node_id)
        if not isinstance(gate, ApprovalGate):
            raise ApprovalError(f"'{node_id}' is not an approval gate in workflow '{self.definition.name}'")
        payload = validate_output(gate.output, value, node_id, iteration or 0)
        self._state.approvals.supply(node_id, payload, iteration)

    def pending_approvals(self) -> list[PendingApproval]:
        return self._state.approvals.pending()

    def cancel(self, reason: str | None = None) -> None:
        """Stop starting new nodes and abandon in-flight executor calls."""
        if not self._state.cancel_event.is_set():
            logger.info(f"Cancellation requested for run {self.run_id}: {reason or 'no reason given'}")
            self._state.cancel_reason = reason
            self._state.cancel_event.set()

    async def wait(self) -> WorkflowResult:
        return await self._task

    def __await__(self):
        return self.wait().__await__()


class WorkflowEngine:
    """Executes workflow trees with tracing and lifecycle events."""

    _instance: "WorkflowEngine | None" = None

    def __init__(
        self,
        observers: list[Observer] | None = None,
        tracer: Tracer | None = None,
        task_timeout: float | None = None,
    ):
        self._observers: list[Observer] = list(observers or [])
        self._tracer = tracer
        self.task_timeout = task_timeout
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._runs: dict[str, WorkflowRun] = {}

    @classmethod
    def instance(cls) -> "WorkflowEngine":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton for testing."""
        cls._instance = None

    @property
    def tracer(self) -> Tracer:
        return self._tracer or Tracer.instance()

    # ── registry ───────────────────────────────────────────────────
    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    def register(self, workflow: WorkflowDefinition) -> None:
        """Register a workflow definition."""
        errors = workflow.validate()
        if errors:
            raise DefinitionError(errors)
        self._workflows[workflow.name] = workflow

    def get(self, name: str) -> WorkflowDefinition | None:
        return self._workflows.get(name)

    def list_workflows(self) -> list[str]:
        return list(self._workflows.keys())

    def get_run(self, run_id: str) -> WorkflowRun | None:
        return self._runs.get(run_id)

    def approve(self, run_id: str, node_id: str, value: Any, iteration: int | None = None) -> None:
        """Out-of-band approval for a run started by this engine."""
        run = self._runs.get(run_id)
        if run is None:
            raise ApprovalError(f"Run not found: {run_id}")
        run.approve(node_id, value, iteration)

    # ── entry points ───────────────────────────────────────────────
    def start(
        self,
        workflow: WorkflowDefinition | str,
        input: dict[str, Any] | None = None,
        *,
        store: OutputStore | None = None,
        run_id: str | None = None,
        observers: list[Observer] | None = None,
    ) -> WorkflowRun:
        """Validate and schedule a run on the running event loop."""
        definition = self._workflows.get(workflow) if isinstance(workflow, str) else workflow
        if definition is None:
            raise DefinitionError(f"Workflow not found: {workflow}")
        errors = definition.validate()
        if errors:
            raise DefinitionError(errors)

        state = RunState(
            run_id=run_id or str(uuid.uuid4())[:8],
            input=copy.deepcopy(input or {}),
            store=store if store is not None else MemoryOutputStore(),
            observers=self._observers + list(observers or []),
        )
        task = asyncio.get_running_loop().create_task(self._drive(definition, state))
        run = WorkflowRun(definition, state, task)
        self._runs[state.run_id] = run
        task.add_done_callback(lambda _: self._runs.pop(state.run_id, None))
        return run

    async def run(
        self,
        workflow: WorkflowDefinition | str,
        input: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> WorkflowResult:
        return await self.start(workflow, input, **kwargs)

    async def _drive(self, definition: WorkflowDefinition, state: RunState) -> WorkflowResult:
        tracer = self.tracer
        started_at = datetime.now(timezone.utc)
        span = tracer.start_span(
            SpanType.WORKFLOW_RUN,
            name=f"workflow:{definition.name}",
            trace_id=state.run_id,
            input_data={"run_id": state.run_id, "input": state.input},
        )
        logger.info(f"Run {state.run_id} of '{definition.name}' started")

        output, error = None, None
        try:
            output = await self._execute(definition.root, RunContext(state))
        except NodeFailure as e:
            error = e
        except BaseException as e:
            tracer.end_span(span, status=SpanStatus.ERROR, error=str(e) or type(e).__name__)
            raise

        failures = (error.leaves() if isinstance(error, ParallelFailure) else [error]) if error else []
        if failures:
            status = RunStatus.FAILED
        elif state.exhausted:
            status = RunStatus.EXHAUSTED
        else:
            status = RunStatus.COMPLETED

        if error:
            tracer.end_span(span, status=SpanStatus.ERROR, error=str(error))
            logger.error(f"Run {state.run_id} failed: {error}")
        else:
            tracer.end_span(span, output_data={"status": status.value, "output": output})
            logger.info(f"Run {state.run_id} finished: {status.value}")

        await self._emit(state, RunFinished(
            run_id=state.run_id, node_id=definition.root.id, status=status.value,
        ))
        return WorkflowResult(
            run_id=state.run_id,
            workflow=definition.name,
            status=status,
            output=output,
            error=error,
            failures=failures,
            tolerated=list(state.tolerated),
            exhausted=list(state.exhausted),
            events=list(state.events),
            store=state.store,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    # ── dispatch ───────────────────────────────────────────────────
    async def _execute(self, node: Node, ctx: RunContext) -> Any:
        """Run one node to a terminal state. Returns its result, None if skipped."""
        state, iteration = ctx.state, ctx.iteration

        if ctx.cancelled:
            raise Cancelled(node.id, iteration, state.cancel_reason)

        if node.skip_if is not None:
            try:
                skip = bool(node.skip_if(ctx))
            except Exception as e:
                failure = CallbackError(node.id, iteration, "skip_if", e)
                await self._emit_failed(state, node.id, iteration, failure)
                raise failure from e
            if skip:
                logger.debug(f"Skipping {node.id}@{iteration}")
                await self._emit(state, NodeSkipped(run_id=state.run_id, node_id=node.id, iteration=iteration))
                return None

        node_type = node.node_type.value
        await self._emit(state, NodeStarted(
            run_id=state.run_id, node_id=node.id, iteration=iteration, node_type=node_type,
        ))
        span = self.tracer.start_span(
            SpanType.WORKFLOW_STEP,
            name=f"{node_type}:{node.id}",
            node_id=node.id,
            iteration=iteration,
        )

        try:
            if isinstance(node, Task):
                result = await self._run_task(node, ctx)
            elif isinstance(node, Sequence):
                result = await self._run_sequence(node, ctx)
            elif isinstance(node, Parallel):
                result = await self._run_parallel(node, ctx)
            elif isinstance(node, Loop):
                result = await self._run_loop(node, ctx)
            elif isinstance(node, ApprovalGate):
                result = await self._run_approval(node, ctx)
            else:
                raise DefinitionError(f"Unsupported node type: {type(node).__name__}")
        except NodeFailure as e:
            self.tracer.end_span(span, status=SpanStatus.ERROR, error=str(e))
            await self._emit_failed(state, node.id, iteration, e)
            raise
        except BaseException as e:
            self.tracer.end_span(span, status=SpanStatus.ERROR, error=str(e) or type(e).__name__)
            raise

        self.tracer.end_span(span, output_data={"has_output": result is not None})
        await self._emit(state, NodeFinished(
            run_id=state.run_id, node_id=node.id, iteration=iteration, node_type=node_type,
        ))
        return result

    # ── leaves ─────────────────────────────────────────────────────
    async def _run_task(self, task: Task, ctx: RunContext) -> dict[str, Any]:
        iteration = ctx.iteration

        if task.value is not None:
            raw = self._callback(task.value, ctx, task.id, "value") if callable(task.value) else copy.deepcopy(task.value)
        else:
            request = TaskRequest(
                node_id=task.id,
                iteration=iteration,
                input=self._build_input(task, ctx),
                instructions=self._build_instructions(task, ctx),
                output_schema=json_schema(task.output),
            )
            raw = await self._call_executor(task, request, ctx)

        payload = validate_output(task.output, raw, task.id, iteration)
        self._write(ctx, task.id, payload)
        return payload

    def _build_input(self, task: Task, ctx: RunContext) -> dict[str, Any]:
        if task.input is None:
            return copy.deepcopy(ctx.input)
        if callable(task.input):
            return self._callback(task.input, ctx, task.id, "input")
        return copy.deepcopy(task.input)

    def _build_instructions(self, task: Task, ctx: RunContext) -> str:
        if callable(task.instructions):
            return str(self._callback(task.instructions, ctx, task.id, "instructions"))
        return task.instructions

    @staticmethod
    def _callback(fn, ctx: RunContext, node_id: str, label: str) -> Any:
        try:
            return fn(ctx)
        except Exception as e:
            raise CallbackError(node_id, ctx.iteration, label, e) from e

    async def _call_executor(self, task: Task, request: TaskRequest, ctx: RunContext) -> Any:
        """Invoke the executor, racing it against cancellation and the timeout."""
        executor = task.executor
        timeout = task.timeout if task.timeout is not None else self.task_timeout
        name = getattr(executor, "name", type(executor).__name__)

        with self.tracer.span(
            SpanType.TASK_CALL,
            name=f"executor:{name}",
            input_data={"node_id": task.id, "iteration": request.iteration, "input": request.input},
            node_id=task.id,
            iteration=request.iteration,
        ) as span:
            call = asyncio.ensure_future(asyncio.wait_for(executor.run(request), timeout))
            raw = await self._race_cancel(call, ctx, task.id)
            span.output_data = {"result_preview": str(raw)[:500]}
            return raw

    async def _race_cancel(self, work: asyncio.Future, ctx: RunContext, node_id: str) -> Any:
        state = ctx.state
        cancel_wait = asyncio.ensure_future(state.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not work.done():
                work.cancel()
                # Abandoned: consume its outcome so nothing is logged as unretrieved
                work.add_done_callback(lambda f: f.cancelled() or f.exception())

        if work not in done:
            logger.warning(f"Abandoned in-flight {node_id}@{ctx.iteration} after cancellation")
            raise Cancelled(node_id, ctx.iteration, state.cancel_reason)

        try:
            return work.result()
        except NodeFailure:
            raise
        except asyncio.TimeoutError as e:
            raise ExecutorFailure(node_id, ctx.iteration, "executor timed out", e) from e
        except asyncio.CancelledError as e:
            raise ExecutorFailure(node_id, ctx.iteration, "executor call was cancelled", e) from e
        except Exception as e:
            raise ExecutorFailure(node_id, ctx.iteration, f"{type(e).__name__}: {e}", e) from e

    async def _run_approval(self, gate: ApprovalGate, ctx: RunContext) -> dict[str, Any]:
        state, iteration = ctx.state, ctx.iteration

        seeded = state.store.read(gate.id, iteration)
        if seeded is not None:
            logger.info(f"Approval gate {gate.id}@{iteration} pre-seeded, passing through")
            return seeded.payload

        request = self._callback(gate.request, ctx, gate.id, "request") if callable(gate.request) else gate.request
        await self._emit(state, ApprovalRequested(
            run_id=state.run_id, node_id=gate.id, iteration=iteration, request=request,
        ))
        logger.info(f"Run {state.run_id} waiting for approval of {gate.id}@{iteration}")

        with self.tracer.span(SpanType.APPROVAL_WAIT, name=f"approval:{gate.id}", node_id=gate.id, iteration=iteration):
            waiter = asyncio.ensure_future(state.approvals.wait(ctx.identity(gate.id), request))
            payload = await self._race_cancel(waiter, ctx, gate.id)

        self._write(ctx, gate.id, payload)
        return payload

    def _write(self, ctx: RunContext, node_id: str, payload: dict[str, Any]) -> None:
        identity = ctx.identity(node_id)
        if identity in ctx.state.written:
            logger.info(f"Overwriting output {identity} written earlier in this run")
        ctx.state.store.write(identity.node_id, identity.iteration, payload)
        ctx.state.written.add(identity)

    # ── composites ─────────────────────────────────────────────────
    async def _run_sequence(self, seq: Sequence, ctx: RunContext) -> Any:
        last = None
        for child in seq.steps:
            result = await self._execute(child, ctx)
            if result is not None:
                last = result
        return last

    async def _run_parallel(self, par: Parallel, ctx: RunContext) -> dict[str, Any]:
        if not par.branches:
            return {}

        results = await asyncio.gather(
            *(self._execute(child, ctx) for child in par.branches),
            return_exceptions=True,
        )

        failures: list[NodeFailure] = []
        for child, result in zip(par.branches, results):
            if isinstance(result, NodeFailure):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
        if failures:
            raise ParallelFailure(par.id, ctx.iteration, failures)
        return {child.id: result for child, result in zip(par.branches, results)}

    async def _run_loop(self, loop: Loop, ctx: RunContext) -> Any:
        state = ctx.state
        policy = OverflowPolicy(loop.on_max_reached)
        payload = None

        for k in range(loop.max_iterations):
            await self._emit(state, LoopIterationStarted(
                run_id=state.run_id, node_id=loop.id, iteration=k, max_iterations=loop.max_iterations,
            ))
            try:
                await self._execute(loop.body, ctx.enter_loop(loop.id, k))
            except NodeFailure as failure:
                if not loop.continue_on_fail or _is_cancellation(failure):
                    raise
                logger.warning(f"Loop {loop.id} tolerating failed pass {k}: {failure}")
                state.tolerated.append(failure)

            latest = state.store.read_latest(loop.output, at_most=k)
            payload = latest.payload if latest else None
            try:
                converged = bool(loop.until(payload))
            except Exception as e:
                raise CallbackError(loop.id, k, "until", e) from e

            if converged:
                logger.info(f"Loop {loop.id} converged at iteration {k}")
                return payload

        if policy is OverflowPolicy.FAIL:
            raise LoopExhausted(loop.id, ctx.iteration, loop.max_iterations, payload)

        logger.warning(f"Loop {loop.id} reached {loop.max_iterations} iterations, returning last output")
        state.exhausted.append(loop.id)
        return payload

    # ── events ─────────────────────────────────────────────────────
    async def _emit_failed(self, state: RunState, node_id: str, iteration: int, failure: NodeFailure) -> None:
        # Emitted at every enclosing level; `kind` keeps the originating failure's class
        await self._emit(state, NodeFailed(
            run_id=state.run_id,
            node_id=node_id,
            iteration=iteration,
            error=str(failure),
            kind=failure.kind,
        ))

    async def _emit(self, state: RunState, event: WorkflowEvent) -> None:
        state.events.append(event)
        for observer in state.observers:
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Observer {observer!r} failed on {event.type}: {e}")


def _is_cancellation(failure: NodeFailure) -> bool:
    if isinstance(failure, Cancelled):
        return True
    if isinstance(failure, ParallelFailure):
        return any(isinstance(f, Cancelled) for f in failure.leaves())
    return False
