"""Session context store: per-run tracked files, chunks and retrieval."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from patchwarden.context.chunker import chunk_spans, measure, validate_sizes
from patchwarden.context.embeddings import Embedder
from patchwarden.context.vector_store import InMemoryVectorStore
from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import TransientServiceError
from patchwarden.core.types import CodeChunk, RelevantContext, detect_language

logger = logging.getLogger(__name__)

# Eviction trims a session back to this share of the budget.
_EVICTION_TARGET = 0.8


@dataclass(frozen=True)
class TrackedFile:
    path: str
    file_type: str
    checksum: str
    size: int
    chunk_count: int
    embedded_chunks: int
    added_at: int


@dataclass
class SessionContext:
    """Everything one run has registered. Owned by :class:`SessionContextStore`."""

    session_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tracked_files: dict[str, TrackedFile] = field(default_factory=dict)
    total_size: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    path_locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)


def _require(name: str, value: Any) -> None:
    if value is None or (isinstance(value, str) and not value):
        raise ValueError(f"{name} is required")


class SessionContextStore:
    """Owns session contexts and feeds their chunks into the vector store.

    Usage::

        store = SessionContextStore(HashingEmbedder())
        await store.add_file("run-1", "app/db.py", source)
        hits = await store.relevant_context("run-1", "cursor.execute", 5)
    """

    def __init__(
        self,
        embedder: Embedder,
        vector_store: InMemoryVectorStore | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        validate_sizes(settings.chunk_max_size, settings.chunk_overlap)
        self.embedder = embedder
        self.vector_store = vector_store or InMemoryVectorStore()
        self.max_chunk_size = settings.chunk_max_size
        self.chunk_overlap = settings.chunk_overlap
        self.max_context_size = settings.max_context_size
        self._sessions: dict[str, SessionContext] = {}
        self._registry_lock = threading.Lock()
        self._added_counter = itertools.count(1)

    # ── Sessions ─────────────────────────────────────────────────────────

    def get_or_create_session(self, session_id: str) -> SessionContext:
        _require("session_id", session_id)
        with self._registry_lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = SessionContext(session_id=session_id)
                self._sessions[session_id] = session
                logger.debug("Created session context", extra={"session_id": session_id})
            return session

    def clear_session(self, session_id: str) -> None:
        _require("session_id", session_id)
        with self._registry_lock:
            self._sessions.pop(session_id, None)
        self.vector_store.drop_session(session_id)
        logger.info("Cleared session context", extra={"session_id": session_id})

    def clear_all_sessions(self) -> None:
        with self._registry_lock:
            count = len(self._sessions)
            self._sessions.clear()
        self.vector_store.clear()
        logger.info("Cleared %d session contexts", count)

    # ── Files ────────────────────────────────────────────────────────────

    def _path_lock(self, session: SessionContext, path: str) -> asyncio.Lock:
        with session.lock:
            return session.path_locks.setdefault(path, asyncio.Lock())

    async def add_file(
        self,
        session_id: str,
        path: str,
        content: str,
        file_type: str | None = None,
    ) -> TrackedFile:
        """Chunk, embed and index ``content`` for ``path``.

        Chunks whose embedding fails are skipped; the file is tracked
        either way. Re-adding identical content is a no-op. Writes to one
        path are serialized, and the new chunks replace the old ones in a
        single swap.
        """
        _require("session_id", session_id)
        _require("path", path)
        if content is None:
            raise ValueError("content is required")
        session = self.get_or_create_session(session_id)
        async with self._path_lock(session, path):
            return await self._index_file(session, path, content, file_type, supersede=False)

    async def update_file_content(self, session_id: str, path: str, content: str) -> TrackedFile:
        """Supersede every chunk of ``path`` with chunks of ``content``."""
        _require("session_id", session_id)
        _require("path", path)
        if content is None:
            raise ValueError("content is required")
        session = self.get_or_create_session(session_id)
        async with self._path_lock(session, path):
            return await self._index_file(session, path, content, None, supersede=True)

    async def _index_file(
        self,
        session: SessionContext,
        path: str,
        content: str,
        file_type: str | None,
        supersede: bool,
    ) -> TrackedFile:
        session_id = session.session_id
        checksum = hashlib.sha256(content.encode("utf-8", errors="surrogatepass")).hexdigest()
        with session.lock:
            existing = session.tracked_files.get(path)
        if existing is not None and existing.checksum == checksum and not supersede:
            return existing

        file_type = file_type or (existing.file_type if existing else None) or detect_language(path)
        entries: list[tuple[list[float], CodeChunk]] = []
        chunk_count = 0
        for sequence, span in enumerate(
            chunk_spans(content, self.max_chunk_size, self.chunk_overlap)
        ):
            chunk_count += 1
            try:
                vector = await self.embedder.embed(span.text)
            except TransientServiceError as e:
                logger.warning(
                    "Skipping chunk %d of %s: %s", sequence, path, e,
                    extra={"session_id": session_id, "file_path": path},
                )
                continue
            entries.append((vector, CodeChunk(
                session_id=session_id,
                file_path=path,
                start_offset=span.start,
                end_offset=span.end,
                start_line=span.start_line,
                end_line=span.end_line,
                text=span.text,
                sequence_index=sequence,
                file_type=file_type,
            )))

        self.vector_store.replace_file(session_id, path, entries)
        tracked = TrackedFile(
            path=path,
            file_type=file_type,
            checksum=checksum,
            size=measure(content),
            chunk_count=chunk_count,
            embedded_chunks=len(entries),
            added_at=next(self._added_counter),
        )
        with session.lock:
            previous = session.tracked_files.get(path)
            if previous is not None:
                session.total_size -= previous.size
            session.tracked_files[path] = tracked
            session.total_size += tracked.size

        logger.debug(
            "Indexed %s (%d/%d chunks embedded)", path, len(entries), chunk_count,
            extra={"session_id": session_id, "file_path": path},
        )
        return tracked

    def _forget_file(self, session: SessionContext, path: str) -> None:
        self.vector_store.remove_file(session.session_id, path)
        with session.lock:
            previous = session.tracked_files.pop(path, None)
            if previous is not None:
                session.total_size -= previous.size

    # ── Retrieval ────────────────────────────────────────────────────────

    async def relevant_context(
        self,
        session_id: str,
        query: str,
        max_results: int,
        min_score: float = 0.0,
    ) -> list[RelevantContext]:
        """Chunks most similar to ``query``, best first.

        ``max_results <= 0`` and an embedding failure both give ``[]``.
        """
        _require("session_id", session_id)
        if query is None:
            raise ValueError("query is required")
        if max_results <= 0:
            return []
        try:
            vector = await self.embedder.embed(query)
        except TransientServiceError as e:
            logger.warning("Context query embedding failed: %s", e, extra={"session_id": session_id})
            return []

        hits = self.vector_store.search(session_id, vector, max_results, min_score)
        return [
            RelevantContext(
                file_path=hit.chunk.file_path,
                content=hit.chunk.text,
                start_line=hit.chunk.start_line,
                end_line=hit.chunk.end_line,
                file_type=hit.chunk.file_type,
                relevance_score=hit.score,
            )
            for hit in hits
        ]

    # ── Accessors ────────────────────────────────────────────────────────

    def tracked_files(self, session_id: str) -> list[str]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        with session.lock:
            return sorted(session.tracked_files)

    def total_context_size(self, session_id: str) -> int:
        session = self._sessions.get(session_id)
        if session is None:
            return 0
        with session.lock:
            return session.total_size

    def session_summary(self, session_id: str) -> dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            return {"session_id": session_id, "total_files": 0, "total_size": 0, "files": []}
        with session.lock:
            files = [
                {
                    "path": f.path,
                    "file_type": f.file_type,
                    "size": f.size,
                    "chunks": f.chunk_count,
                    "embedded_chunks": f.embedded_chunks,
                }
                for f in sorted(session.tracked_files.values(), key=lambda f: f.path)
            ]
            return {
                "session_id": session_id,
                "created_at": session.created_at.isoformat(),
                "total_files": len(files),
                "total_size": session.total_size,
                "files": files,
            }

    # ── Eviction ─────────────────────────────────────────────────────────

    def evict_if_over_budget(self, session_id: str) -> list[str]:
        """Drop the oldest files once the session outgrows ``max_context_size``.

        Only runs when called; adding files never evicts, so a scan always
        leaves every analyzed file tracked. Returns the evicted paths
        (empty when the session fits).
        """
        session = self._sessions.get(session_id)
        if session is None or session.total_size <= self.max_context_size:
            return []
        target = int(self.max_context_size * _EVICTION_TARGET)
        with session.lock:
            oldest_first = sorted(session.tracked_files.values(), key=lambda f: f.added_at)
        evicted: list[str] = []
        for tracked in oldest_first:
            if session.total_size <= target:
                break
            self._forget_file(session, tracked.path)
            evicted.append(tracked.path)
        if evicted:
            logger.info(
                "Evicted %d files from session (size now %d)", len(evicted), session.total_size,
                extra={"session_id": session_id},
            )
        return evicted
