"""Vector store for codex retrieval.

The retrieval layer only talks to the VectorStore protocol, so the in-memory
implementation below can be swapped for a persistent index without touching
the retrieval algorithm. Records are keyed by codex entry id; upserting an
existing id overwrites it.
"""

from __future__ import annotations

from typing import Any, Protocol

import numpy as np
from pydantic import BaseModel, Field


class VectorRecord(BaseModel):
    id: str
    vector: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorStore(Protocol):
    def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None: ...

    def get(self, id: str) -> VectorRecord | None: ...

    def query(self, vector: list[float], k: int) -> list[tuple[VectorRecord, float]]: ...

    def clear(self) -> None: ...


def _unit(vector: list[float]) -> np.ndarray:
    """L2-normalise; a zero vector stays zero so it scores 0 against anything."""
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors. 0.0 for zero-length or mismatched inputs."""
    if not len(a) or not len(b) or len(a) != len(b):
        return 0.0
    return float(np.dot(_unit(a), _unit(b)))


class InMemoryVectorStore:
    """Process-lifetime store. No locking: writers are keyed upserts.

    Vectors are normalised once on upsert, so a query is a dot product per record.
    """

    def __init__(self) -> None:
        self._records: dict[str, VectorRecord] = {}
        self._units: dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._records)

    def upsert(self, id: str, vector: list[float], metadata: dict[str, Any]) -> None:
        self._records[id] = VectorRecord(id=id, vector=list(vector), metadata=dict(metadata))
        self._units[id] = _unit(vector)

    def get(self, id: str) -> VectorRecord | None:
        return self._records.get(id)

    def query(self, vector: list[float], k: int) -> list[tuple[VectorRecord, float]]:
        """Return the k most similar records, best first. No score threshold."""
        if not self._records or not len(vector):
            return []
        query_unit = _unit(vector)
        scored: list[tuple[VectorRecord, float]] = []
        for id, record in self._records.items():
            unit = self._units[id]
            # Mismatched dimensions never match
            score = float(np.dot(query_unit, unit)) if unit.shape == query_unit.shape else 0.0
            scored.append((record, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]

    def clear(self) -> None:
        self._records.clear()
        self._units.clear()
