"""
Process-wide tracer.

Spans nest along the running asyncio task: the open-span path lives in a
context variable, and each task created for a parallel branch starts from
a copy of its parent's path.

    with Tracer.instance().span(SpanType.TASK_CALL, "claude", node_id="build") as span:
        span.output_data = {...}

Use ``start_span``/``end_span`` when the span closes on a different code path.
"""
import os
import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar

from tracing.models import TraceSpan, SpanType, SpanStatus, new_span_id
from tracing.store import TraceStore

logger = logging.getLogger(__name__)

# (trace id, ids of open spans from root to innermost)
_open_path: ContextVar[tuple[str | None, tuple[str, ...]]] = ContextVar("loopwork_open_spans", default=(None, ()))


class Tracer:
    _instance: "Tracer | None" = None
    _lock = threading.Lock()

    def __init__(self, store: TraceStore | None = None, enabled: bool = True):
        self.enabled = enabled
        self._store = store if store is not None or not enabled else TraceStore()

    @classmethod
    def instance(cls) -> "Tracer":
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls(enabled=os.environ.get("LOOPWORK_TRACING", "1") != "0")
            return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    @property
    def store(self) -> TraceStore | None:
        return self._store

    def start_span(self, span_type: SpanType, name: str, *, trace_id: str | None = None, **fields) -> TraceSpan:
        """Open a span under the innermost open span of this context.

        ``trace_id`` only applies to a root span; children inherit their root's.
        """
        current_trace, path = _open_path.get()
        if not path:
            current_trace = trace_id or new_span_id()
        fields["input_data"] = fields.get("input_data") or {}
        span = TraceSpan(
            span_type=span_type,
            name=name,
            trace_id=current_trace,
            parent_id=path[-1] if path else None,
            **fields,
        )
        _open_path.set((current_trace, path + (span.id,)))
        return span

    def end_span(
        self,
        span: TraceSpan,
        *,
        status: SpanStatus = SpanStatus.SUCCESS,
        error: str | None = None,
        output_data: dict | None = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: float = 0.0,
    ) -> None:
        """Close ``span`` and anything still open inside it, then persist it."""
        if output_data is not None:
            span.output_data = output_data
        span.record_usage(input_tokens, output_tokens, cost_usd)
        span.finish(status, error)

        trace_id, path = _open_path.get()
        if span.id in path:
            path = path[:path.index(span.id)]
            _open_path.set((trace_id if path else None, path))

        if self.enabled and self._store is not None:
            try:
                self._store.save(span)
            except Exception as e:
                logger.warning(f"Could not record span {span.name}: {e}")

    @contextmanager
    def span(self, span_type: SpanType, name: str, **fields):
        """Yield an open span; it ends as SUCCESS, or ERROR if the block raises."""
        opened = self.start_span(span_type, name, **fields)
        try:
            yield opened
        except BaseException as exc:
            self.end_span(opened, status=SpanStatus.ERROR, error=str(exc) or type(exc).__name__)
            raise
        self.end_span(opened)
