"""In-memory per-session vector index with cosine top-K search."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from patchwarden.core.types import CodeChunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredChunk:
    chunk: CodeChunk
    score: float


def _unit(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 when either is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.size} != {vb.size}")
    return float(np.dot(_unit(va), _unit(vb)))


@dataclass
class _SessionIndex:
    """Unit-length rows and their chunks, kept in insertion order."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    rows: list[np.ndarray] = field(default_factory=list)
    chunks: list[CodeChunk] = field(default_factory=list)
    dimension: int = 0
    _matrix: np.ndarray | None = None

    def matrix(self) -> np.ndarray:
        if self._matrix is None:
            self._matrix = np.vstack(self.rows)
        return self._matrix

    def keep(self, predicate) -> int:
        kept = [(r, c) for r, c in zip(self.rows, self.chunks) if predicate(c)]
        removed = len(self.chunks) - len(kept)
        if removed:
            self.rows = [r for r, _ in kept]
            self.chunks = [c for _, c in kept]
            self._matrix = None
        return removed


class InMemoryVectorStore:
    """Holds ``(vector, chunk)`` pairs keyed by session id.

    Each session has its own lock. The registry lock is only taken to
    create or drop a session, never while scoring.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, _SessionIndex] = {}
        self._registry_lock = threading.Lock()
        self._sequence = itertools.count(1)

    def _ensure(self, session_id: str) -> _SessionIndex:
        index = self._sessions.get(session_id)
        if index is None:
            with self._registry_lock:
                index = self._sessions.setdefault(session_id, _SessionIndex())
        return index

    def _check(self, session_id: str, chunk: CodeChunk) -> None:
        if chunk.session_id != session_id:
            raise ValueError(
                f"Chunk belongs to session {chunk.session_id!r}, not {session_id!r}"
            )

    def _append(self, index: _SessionIndex, vector: Sequence[float], chunk: CodeChunk) -> CodeChunk:
        # Caller holds index.lock.
        raw = np.asarray(vector, dtype=np.float64).ravel()
        if index.dimension and raw.size != index.dimension:
            raise ValueError(
                f"Vector dimension {raw.size} != index dimension {index.dimension}"
            )
        index.dimension = index.dimension or raw.size
        stamped = chunk.model_copy(
            update={"embedding": tuple(raw.tolist()), "inserted_at": next(self._sequence)}
        )
        index.rows.append(_unit(raw))
        index.chunks.append(stamped)
        index._matrix = None
        return stamped

    def add(self, session_id: str, vector: Sequence[float], chunk: CodeChunk) -> CodeChunk:
        """Index ``chunk`` under ``session_id``; returns the stamped chunk."""
        if not session_id:
            raise ValueError("session_id is required")
        self._check(session_id, chunk)
        index = self._ensure(session_id)
        with index.lock:
            return self._append(index, vector, chunk)

    def replace_file(
        self,
        session_id: str,
        file_path: str,
        entries: Iterable[tuple[Sequence[float], CodeChunk]],
    ) -> list[CodeChunk]:
        """Swap every chunk of ``file_path`` for ``entries`` in one step.

        Searches see either the old chunks or the new ones, never both.
        """
        if not session_id:
            raise ValueError("session_id is required")
        entries = list(entries)
        for _, chunk in entries:
            self._check(session_id, chunk)
            if chunk.file_path != file_path:
                raise ValueError(f"Chunk for {chunk.file_path!r} passed as {file_path!r}")
        index = self._ensure(session_id)
        with index.lock:
            rows, chunks, dimension = list(index.rows), list(index.chunks), index.dimension
            index.keep(lambda c: c.file_path != file_path)
            try:
                return [self._append(index, vector, chunk) for vector, chunk in entries]
            except ValueError:
                index.rows, index.chunks, index.dimension = rows, chunks, dimension
                index._matrix = None
                raise

    def search(
        self,
        session_id: str,
        query: Sequence[float],
        k: int,
        min_score: float = 0.0,
    ) -> list[ScoredChunk]:
        """Top-``k`` chunks of one session by cosine similarity.

        Ties are broken by the most recent insertion. A missing or empty
        session, or ``k <= 0``, gives ``[]``.
        """
        index = self._sessions.get(session_id)
        if index is None or k <= 0:
            return []
        with index.lock:
            if not index.chunks:
                return []
            matrix = index.matrix()
            chunks = list(index.chunks)
        q = np.asarray(query, dtype=np.float64).ravel()
        if q.size != matrix.shape[1]:
            logger.warning(
                "Query dimension %d does not match session index dimension %d",
                q.size, matrix.shape[1], extra={"session_id": session_id},
            )
            return []

        scores = matrix @ _unit(q)
        inserted = np.fromiter((c.inserted_at for c in chunks), dtype=np.int64, count=len(chunks))
        order = np.lexsort((-inserted, -scores))
        results: list[ScoredChunk] = []
        for i in order:
            if scores[i] < min_score:
                continue
            results.append(ScoredChunk(chunks[i], float(scores[i])))
            if len(results) == k:
                break
        return results

    def remove_file(self, session_id: str, file_path: str) -> int:
        """Drop every chunk of ``file_path``; returns how many were removed."""
        index = self._sessions.get(session_id)
        if index is None:
            return 0
        with index.lock:
            return index.keep(lambda c: c.file_path != file_path)

    def drop_session(self, session_id: str) -> None:
        with self._registry_lock:
            self._sessions.pop(session_id, None)

    def clear(self) -> None:
        with self._registry_lock:
            self._sessions.clear()

    def size(self, session_id: str) -> int:
        index = self._sessions.get(session_id)
        if index is None:
            return 0
        with index.lock:
            return len(index.chunks)

    def chunks_for_file(self, session_id: str, file_path: str) -> list[CodeChunk]:
        """Chunks of one file in sequence order."""
        index = self._sessions.get(session_id)
        if index is None:
            return []
        with index.lock:
            chunks = [c for c in index.chunks if c.file_path == file_path]
        return sorted(chunks, key=lambda c: c.sequence_index)
