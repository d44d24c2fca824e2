"""Span tracing for workflow runs."""

from tracing.models import TraceSpan, SpanType, SpanStatus
from tracing.store import TraceStore
from tracing.tracer import Tracer

__all__ = ["TraceSpan", "SpanType", "SpanStatus", "TraceStore", "Tracer"]
