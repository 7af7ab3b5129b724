# storage/ann.py
"""
Approximate-nearest-neighbor capability.

NumpyAnnIndex is an exact cosine index kept in process memory. It stands in
for a volatile compute backend: its contents vanish on reset() and its
identity token changes, which is what the vector store watches for.
"""

import json
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np
from loguru import logger


@dataclass
class AnnMatch:
    id: str
    score: float


class AnnBackend(Protocol):
    """Semantic index operations consumed by the vector store."""

    name: str

    async def add(self, id: str, vector: list[float], title: str, url: str) -> None:
        """Add or replace a vector."""

    async def remove(self, id: str) -> bool:
        """Drop a vector; False if the id is unknown."""

    async def search(self, vector: list[float], limit: int) -> list[AnnMatch]:
        """Return up to limit nearest neighbors, best first."""

    async def serialize(self) -> bytes:
        """Serialize the whole index."""

    async def load(self, data: bytes) -> None:
        """Replace in-memory state with a serialized index."""

    def identity_token(self) -> str:
        """Opaque value that changes whenever the backend is recreated."""

    def size(self) -> int:
        """Number of indexed vectors."""


class NumpyAnnIndex:
    """
    Cosine-similarity index over a dense numpy matrix.

    Rows are stored L2-normalized so a search is one matrix-vector product.
    Re-adding an existing id replaces its row.
    """

    name = "numpy-cosine"

    def __init__(self):
        self._token = uuid.uuid4().hex
        self._ids: list[str] = []
        self._positions: dict[str, int] = {}
        self._labels: dict[str, tuple[str, str]] = {}  # id -> (title, url)
        self._matrix: Optional[np.ndarray] = None

    @staticmethod
    def _normalize(vector: list[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        norm = np.linalg.norm(arr)
        if norm == 0.0:
            return arr
        return arr / norm

    @property
    def dimension(self) -> Optional[int]:
        return None if self._matrix is None else int(self._matrix.shape[1])

    async def add(self, id: str, vector: list[float], title: str = "", url: str = "") -> None:
        row = self._normalize(vector)
        if row.ndim != 1 or row.size == 0:
            raise ValueError(f"Vector for {id} must be a non-empty 1-D sequence")
        if self._matrix is not None and row.shape[0] != self._matrix.shape[1]:
            raise ValueError(
                f"Vector for {id} has dimension {row.shape[0]}, index expects {self._matrix.shape[1]}"
            )

        self._labels[id] = (title, url)
        position = self._positions.get(id)
        if position is not None:
            self._matrix[position] = row
            return

        if self._matrix is None:
            self._matrix = row.reshape(1, -1)
        else:
            self._matrix = np.vstack([self._matrix, row])
        self._positions[id] = len(self._ids)
        self._ids.append(id)

    async def remove(self, id: str) -> bool:
        position = self._positions.pop(id, None)
        if position is None:
            return False

        self._labels.pop(id, None)
        del self._ids[position]
        if self._ids:
            self._matrix = np.delete(self._matrix, position, axis=0)
        else:
            self._matrix = None
        self._positions = {id_: i for i, id_ in enumerate(self._ids)}
        return True

    async def search(self, vector: list[float], limit: int) -> list[AnnMatch]:
        if self._matrix is None or limit <= 0:
            return []
        query = self._normalize(vector)
        if query.shape[0] != self._matrix.shape[1]:
            raise ValueError(
                f"Query has dimension {query.shape[0]}, index expects {self._matrix.shape[1]}"
            )

        scores = self._matrix @ query
        top = np.argsort(-scores, kind="stable")[:limit]
        return [AnnMatch(id=self._ids[i], score=float(scores[i])) for i in top]

    async def serialize(self) -> bytes:
        payload = {
            "ids": self._ids,
            "labels": {k: list(v) for k, v in self._labels.items()},
            "vectors": [] if self._matrix is None else self._matrix.tolist(),
        }
        return json.dumps(payload).encode("utf-8")

    async def load(self, data: bytes) -> None:
        payload = json.loads(data.decode("utf-8"))
        ids = list(payload.get("ids", []))
        vectors = payload.get("vectors", [])
        if len(ids) != len(vectors):
            raise ValueError(f"Snapshot has {len(ids)} ids but {len(vectors)} vectors")

        self._ids = ids
        self._positions = {id_: i for i, id_ in enumerate(ids)}
        self._labels = {k: (v[0], v[1]) for k, v in payload.get("labels", {}).items()}
        self._matrix = np.asarray(vectors, dtype=np.float32) if vectors else None
        logger.debug(f"ANN index loaded with {len(ids)} vectors")

    def identity_token(self) -> str:
        return self._token

    def size(self) -> int:
        return len(self._ids)

    def reset(self) -> None:
        """Drop all vectors and take a new identity, as a recreated backend would."""
        self._token = uuid.uuid4().hex
        self._ids = []
        self._positions = {}
        self._labels = {}
        self._matrix = None
        logger.info("ANN backend reset")
