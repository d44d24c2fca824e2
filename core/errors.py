"""Orchestrator-wide exception hierarchy."""
from typing import Any


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""
    pass


class DefinitionError(OrchestratorError):
    """Malformed workflow tree (duplicate ids, dangling loop outputs, ...)."""
    def __init__(self, problems: list[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__(f"Invalid workflow: {'; '.join(self.problems)}")


class ApprovalError(OrchestratorError):
    """Misuse of the approval supply channel."""
    pass


class NodeFailure(OrchestratorError):
    """A node did not complete. Always attributable to (node_id, iteration)."""
    kind = "NodeFailure"

    def __init__(self, node_id: str, iteration: int, message: str):
        self.node_id = node_id
        self.iteration = iteration
        self.message = message
        super().__init__(f"[{self.kind}] node '{node_id}' (iteration {iteration}): {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "iteration": self.iteration,
            "kind": self.kind,
            "message": self.message,
        }


class ExecutorFailure(NodeFailure):
    """The external task backend errored or timed out."""
    kind = "ExecutorFailure"

    def __init__(self, node_id: str, iteration: int, message: str, original_error: BaseException | None = None):
        self.original_error = original_error
        super().__init__(node_id, iteration, message)


class ValidationFailure(NodeFailure):
    """Executor output does not conform to the node's declared schema."""
    kind = "ValidationFailure"

    def __init__(self, node_id: str, iteration: int, message: str, raw_output: Any = None, errors: list | None = None):
        self.raw_output = raw_output
        self.errors = errors or []
        super().__init__(node_id, iteration, message)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["raw_output"] = self.raw_output if isinstance(self.raw_output, (dict, list, str, int, float, bool)) else repr(self.raw_output)
        d["errors"] = [str(e) for e in self.errors]
        return d


class LoopExhausted(NodeFailure):
    """Convergence predicate never held within the iteration cap (fail policy)."""
    kind = "LoopExhausted"

    def __init__(self, node_id: str, iteration: int, max_iterations: int, last_output: Any = None):
        self.max_iterations = max_iterations
        self.last_output = last_output
        super().__init__(node_id, iteration, f"not converged after {max_iterations} iterations")

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["max_iterations"] = self.max_iterations
        return d


class Cancelled(NodeFailure):
    """External cancellation request honored."""
    kind = "Cancelled"

    def __init__(self, node_id: str, iteration: int, reason: str | None = None):
        self.reason = reason
        super().__init__(node_id, iteration, f"cancelled: {reason}" if reason else "cancelled")


class CallbackError(NodeFailure):
    """A user-supplied callable (skip predicate, input builder, loop predicate) raised."""
    kind = "CallbackError"

    def __init__(self, node_id: str, iteration: int, callback: str, original_error: BaseException):
        self.callback = callback
        self.original_error = original_error
        super().__init__(node_id, iteration, f"{callback} raised {type(original_error).__name__}: {original_error}")


class ParallelFailure(NodeFailure):
    """One or more branches of a parallel composite failed."""
    kind = "ParallelFailure"

    def __init__(self, node_id: str, iteration: int, failures: list[NodeFailure]):
        self.failures = list(failures)
        ids = ", ".join(f.node_id for f in self.failures)
        super().__init__(node_id, iteration, f"{len(self.failures)} branch(es) failed: {ids}")

    def leaves(self) -> list[NodeFailure]:
        """Flatten nested aggregates down to the original failures."""
        out: list[NodeFailure] = []
        for f in self.failures:
            if isinstance(f, ParallelFailure):
                out.extend(f.leaves())
            else:
                out.append(f)
        return out

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["failures"] = [f.to_dict() for f in self.failures]
        return d
