"""
Output Store: versioned record of every node result.

Keyed by (node_id, iteration). Writing an existing key replaces it; reads
never raise for missing data, they return None ("not produced yet").
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterator

from workflows.models import NodeIdentity, OutputRecord

logger = logging.getLogger(__name__)


class OutputHistory:
    """Lazy, restartable view over one node's records.

    Iterating yields every stored record in ascending iteration order.
    until_absent() walks 0, 1, 2, ... and stops at the first gap.
    Each iteration re-reads the store, so later writes are observed.
    """

    def __init__(self, store: "OutputStore", node_id: str):
        self._store = store
        self._node_id = node_id

    @property
    def node_id(self) -> str:
        return self._node_id

    def __iter__(self) -> Iterator[OutputRecord]:
        for iteration in self._store.iterations(self._node_id):
            record = self._store.read(self._node_id, iteration)
            if record is not None:
                yield record

    def until_absent(self) -> Iterator[OutputRecord]:
        iteration = 0
        while True:
            record = self._store.read(self._node_id, iteration)
            if record is None:
                return
            yield record
            iteration += 1

    def payloads(self) -> list[dict[str, Any]]:
        return [r.payload for r in self]

    def __repr__(self) -> str:
        return f"OutputHistory(node_id={self._node_id!r})"


class OutputStore(ABC):
    """Base store. Backends implement the four primitives below."""

    @abstractmethod
    def _put(self, record: OutputRecord) -> None:
        ...

    @abstractmethod
    def _get(self, node_id: str, iteration: int) -> OutputRecord | None:
        ...

    @abstractmethod
    def iterations(self, node_id: str) -> list[int]:
        """Iterations with a stored record for node_id, ascending."""
        ...

    @abstractmethod
    def node_ids(self) -> list[str]:
        ...

    # ── contract ───────────────────────────────────────────────────
    def write(self, node_id: str, iteration: int, payload: dict[str, Any]) -> OutputRecord:
        """Store (or replace) the record for this exact (node_id, iteration)."""
        identity = NodeIdentity(node_id, iteration)
        record = OutputRecord(
            node_id=identity.node_id,
            iteration=identity.iteration,
            payload=copy.deepcopy(payload),
        )
        self._put(record)
        logger.debug(f"Stored output {identity}")
        return record

    def read(self, node_id: str, iteration: int = 0) -> OutputRecord | None:
        if iteration < 0:
            return None
        return self._get(node_id, iteration)

    def read_latest(self, node_id: str, at_most: int | None = None) -> OutputRecord | None:
        """Record with the highest iteration (optionally capped at at_most)."""
        for iteration in reversed(self.iterations(node_id)):
            if at_most is not None and iteration > at_most:
                continue
            return self._get(node_id, iteration)
        return None

    def read_history(self, node_id: str) -> OutputHistory:
        return OutputHistory(self, node_id)

    def contains(self, node_id: str, iteration: int = 0) -> bool:
        return self.read(node_id, iteration) is not None

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """Every record, grouped by node, JSON-ready."""
        return {
            node_id: [r.to_dict() for r in self.read_history(node_id)]
            for node_id in self.node_ids()
        }

    def close(self) -> None:
        pass


class MemoryOutputStore(OutputStore):
    """Plain in-process map. The default store for a run."""

    def __init__(self):
        self._records: dict[NodeIdentity, OutputRecord] = {}
        self._index: dict[str, set[int]] = {}

    def _put(self, record: OutputRecord) -> None:
        self._records[record.identity] = record
        self._index.setdefault(record.node_id, set()).add(record.iteration)

    def _get(self, node_id: str, iteration: int) -> OutputRecord | None:
        return self._records.get(NodeIdentity(node_id, iteration))

    def iterations(self, node_id: str) -> list[int]:
        return sorted(self._index.get(node_id, ()))

    def node_ids(self) -> list[str]:
        return sorted(self._index)

    def __len__(self) -> int:
        return len(self._records)
