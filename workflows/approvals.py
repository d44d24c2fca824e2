"""Out-of-band supply channel for approval gates."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from core.errors import ApprovalError
from workflows.models import NodeIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingApproval:
    node_id: str
    iteration: int
    request: dict[str, Any] | None = None


class ApprovalChannel:
    """
    Per-run rendezvous between gates waiting for a value and callers supplying one.

    A value supplied before its gate is reached is held until the gate asks.
    Supplying without an iteration targets whichever iteration of that gate
    is (or next becomes) pending.
    """

    def __init__(self):
        self._waiting: dict[NodeIdentity, asyncio.Future] = {}
        self._requests: dict[NodeIdentity, dict[str, Any] | None] = {}
        self._held: dict[tuple[str, int | None], Any] = {}

    def supply(self, node_id: str, value: Any, iteration: int | None = None) -> None:
        if iteration is None:
            waiting = [i for i, f in self._waiting.items() if i.node_id == node_id and not f.done()]
            if len(waiting) > 1:
                raise ApprovalError(
                    f"Gate '{node_id}' is pending at iterations "
                    f"{sorted(i.iteration for i in waiting)}; pass an iteration"
                )
            if waiting:
                iteration = waiting[0].iteration

        if iteration is not None:
            future = self._waiting.get(NodeIdentity(node_id, iteration))
            if future is not None:
                if future.done():
                    raise ApprovalError(f"Gate '{node_id}' iteration {iteration} already received a value")
                future.set_result(value)
                logger.info(f"Approval supplied for {node_id}@{iteration}")
                return

        key = (node_id, iteration)
        if key in self._held:
            raise ApprovalError(f"An approval for gate '{node_id}' is already held")
        self._held[key] = value
        logger.info(f"Approval held for {node_id} until the gate is reached")

    async def wait(self, identity: NodeIdentity, request: dict[str, Any] | None = None) -> Any:
        for key in ((identity.node_id, identity.iteration), (identity.node_id, None)):
            if key in self._held:
                return self._held.pop(key)

        future = asyncio.get_running_loop().create_future()
        self._waiting[identity] = future
        self._requests[identity] = request
        try:
            return await future
        finally:
            self._waiting.pop(identity, None)
            self._requests.pop(identity, None)

    def pending(self) -> list[PendingApproval]:
        return [
            PendingApproval(i.node_id, i.iteration, self._requests.get(i))
            for i, f in self._waiting.items()
            if not f.done()
        ]
