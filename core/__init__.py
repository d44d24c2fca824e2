"""Shared plumbing: errors, settings, logging setup and the CLI."""

from core.errors import (
    OrchestratorError, DefinitionError, ApprovalError, NodeFailure, ExecutorFailure,
    ValidationFailure, LoopExhausted, Cancelled, CallbackError, ParallelFailure,
)
from core.config import Settings, load_settings

__all__ = [
    "OrchestratorError",
    "DefinitionError",
    "ApprovalError",
    "NodeFailure",
    "ExecutorFailure",
    "ValidationFailure",
    "LoopExhausted",
    "Cancelled",
    "CallbackError",
    "ParallelFailure",
    "Settings",
    "load_settings",
]
