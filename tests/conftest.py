"""Shared fixtures: isolated trace database and fresh singletons."""

import pytest

from tracing.tracer import Tracer
from workflows.engine import WorkflowEngine
from workflows.store import MemoryOutputStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Every test gets its own trace DB and no leftover singletons."""
    monkeypatch.setenv("LOOPWORK_TRACE_DB", str(tmp_path / "traces.db"))
    monkeypatch.setenv("LOOPWORK_CLAUDE_CLI", "claude")
    monkeypatch.setenv("LOOPWORK_CODEX_CLI", "codex")
    monkeypatch.delenv("LOOPWORK_TRACING", raising=False)
    Tracer.reset()
    WorkflowEngine.reset()
    yield
    Tracer.reset()
    WorkflowEngine.reset()


@pytest.fixture
def engine():
    return WorkflowEngine()


@pytest.fixture
def store():
    return MemoryOutputStore()
