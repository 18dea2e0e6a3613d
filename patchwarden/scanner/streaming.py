"""Repository streaming scanner: walks a tree and feeds the context store.

Files are sorted, split into fixed-size batches and the batches run
concurrently on the shared :class:`WorkerPool`. Inside a batch files are
handled one at a time so a file is always fully chunked before the next
one starts.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from patchwarden.context.session_store import SessionContextStore
from patchwarden.core.concurrency import WorkerPool
from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import FatalIOError, FileReadError, PatchWardenError
from patchwarden.core.events import EventSink, emit
from patchwarden.core.types import MatchType, ProgressEvent, VulnerabilityMatch, detect_language
from patchwarden.scanner.dependencies import extract_dependencies
from patchwarden.scanner.patterns import PATTERNS_BY_CATEGORY, PatternHit, scan_text

logger = logging.getLogger(__name__)


class CancelSignal(Protocol):
    """``asyncio.Event`` and ``threading.Event`` both qualify."""

    def is_set(self) -> bool: ...


# ── Results ──────────────────────────────────────────────────────────────────


class FileAnalysisResult(BaseModel):
    file_path: str
    file_type: str
    line_count: int = 0
    dependencies: list[str] = Field(default_factory=list)
    hits: list[PatternHit] = Field(default_factory=list)


class ScanSummary(BaseModel):
    """Aggregate outcome of one ``scan_repository`` call."""

    root_path: str
    session_id: str
    total_files: int = 0
    analyzed_files: int = 0
    failed_files: list[str] = Field(default_factory=list)
    skipped_files: int = 0
    category_counts: dict[str, int] = Field(default_factory=dict)
    file_results: list[FileAnalysisResult] = Field(default_factory=list)
    success: bool = True
    error_message: str = ""
    cancelled: bool = False
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    duration_ms: int = 0

    def hits_for(self, category: str) -> list[tuple[str, PatternHit]]:
        """``(file_path, hit)`` pairs for one category, in path/line order."""
        return [
            (result.file_path, hit)
            for result in self.file_results
            for hit in result.hits
            if hit.category == category
        ]

    def to_matches(self, include_debug: bool = False) -> list[VulnerabilityMatch]:
        """Turn pattern hits into ``CODE_PATTERN`` matches for the fix generator."""
        matches: list[VulnerabilityMatch] = []
        for result in self.file_results:
            for hit in result.hits:
                if hit.category == "DEBUG_CODE" and not include_debug:
                    continue
                pattern = PATTERNS_BY_CATEGORY[hit.category]
                matches.append(VulnerabilityMatch(
                    id=hit.category,
                    title=pattern.description,
                    severity=pattern.severity,
                    file_path=result.file_path,
                    line_number=hit.line_number,
                    affected_code=hit.snippet,
                    match_type=MatchType.CODE_PATTERN,
                    confidence=hit.confidence,
                    language=result.file_type,
                    indicators=[hit.pattern],
                ))
        return matches


@dataclass
class _BatchResult:
    analyzed: list[FileAnalysisResult] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    categories: Counter = field(default_factory=Counter)
    skipped: int = 0


@dataclass
class _Progress:
    total: int
    processed: int = 0


# ── Scanner ──────────────────────────────────────────────────────────────────


class RepositoryScanner:
    """Scan a repository tree for heuristic findings and index its content."""

    def __init__(
        self,
        context_store: SessionContextStore,
        settings: Settings | None = None,
        pool: WorkerPool | None = None,
        event_sink: EventSink | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.context_store = context_store
        self.pool = pool or WorkerPool(self.settings.worker_pool_size)
        self.event_sink = event_sink
        self.batch_size = max(1, self.settings.scan_batch_size)
        self.max_file_bytes = self.settings.scan_max_file_size_mb * 1024 * 1024
        self.extensions = {e.lower() for e in self.settings.scan_extensions}
        self.ignored_dirs = set(self.settings.scan_ignored_dirs)

    # ── File collection ──────────────────────────────────────────────────

    def collect_files(self, root: Path) -> list[Path]:
        """Regular files under ``root`` that pass the extension and size filters."""
        files: list[Path] = []
        for path in root.rglob("*"):
            rel_parts = path.relative_to(root).parts
            if any(part in self.ignored_dirs for part in rel_parts[:-1]):
                continue
            if not path.is_file() or path.suffix.lower() not in self.extensions:
                continue
            try:
                if path.stat().st_size > self.max_file_bytes:
                    logger.info("Skipping oversized file %s", path)
                    continue
            except OSError as e:
                logger.warning("Cannot stat %s: %s", path, e)
                continue
            files.append(path)
        return sorted(files)

    # ── Scan ─────────────────────────────────────────────────────────────

    async def scan_repository(
        self,
        root_path: str | Path,
        session_id: str,
        cancel_event: CancelSignal | None = None,
    ) -> ScanSummary:
        """Scan every eligible file under ``root_path`` into ``session_id``.

        Raises:
            FatalIOError: the root does not exist or cannot be listed.
        """
        if not session_id:
            raise ValueError("session_id is required")
        root = Path(root_path)
        if not root.is_dir():
            raise FatalIOError(f"Repository root is not accessible: {root}", details={"path": str(root)})
        try:
            files = await asyncio.to_thread(self.collect_files, root)
        except OSError as e:
            raise FatalIOError(f"Cannot list repository root {root}: {e}") from e

        started = time.monotonic()
        summary = ScanSummary(root_path=str(root), session_id=session_id, total_files=len(files))
        self.context_store.get_or_create_session(session_id)
        self._emit(session_id, "scan.started", f"Scanning {len(files)} files", progress=0.0, total=len(files))
        logger.info(
            "Starting analysis of %d files in repository: %s", len(files), root,
            extra={"session_id": session_id},
        )

        batches = [files[i:i + self.batch_size] for i in range(0, len(files), self.batch_size)]
        progress = _Progress(total=len(files))
        process = functools.partial(
            self._process_batch,
            root=root,
            session_id=session_id,
            progress=progress,
            cancel_event=cancel_event,
        )
        batch_results: list[_BatchResult] = await self.pool.map(process, batches)

        categories: Counter = Counter()
        for batch in batch_results:
            summary.file_results.extend(batch.analyzed)
            summary.failed_files.extend(batch.failed)
            summary.skipped_files += batch.skipped
            categories += batch.categories

        summary.file_results.sort(key=lambda r: r.file_path)
        summary.failed_files.sort()
        summary.analyzed_files = len(summary.file_results)
        summary.category_counts = dict(sorted(categories.items()))
        summary.cancelled = bool(cancel_event is not None and cancel_event.is_set())
        summary.finished_at = datetime.now(timezone.utc)
        summary.duration_ms = int((time.monotonic() - started) * 1000)

        problems: list[str] = []
        if summary.failed_files:
            problems.append(f"{len(summary.failed_files)} file(s) could not be analyzed")
        if summary.skipped_files:
            problems.append(f"{summary.skipped_files} file(s) skipped after cancellation")
        summary.success = not problems
        summary.error_message = "; ".join(problems)

        self._emit(
            session_id, "scan.completed",
            f"Analyzed {summary.analyzed_files}/{summary.total_files} files",
            progress=1.0, file_index=summary.analyzed_files, total=summary.total_files,
        )
        logger.info(
            "Repository analysis completed: %d/%d files in %d ms", summary.analyzed_files,
            summary.total_files, summary.duration_ms,
            extra={"session_id": session_id, "duration_ms": summary.duration_ms},
        )
        return summary

    async def _process_batch(
        self,
        batch: list[Path],
        *,
        root: Path,
        session_id: str,
        progress: _Progress,
        cancel_event: CancelSignal | None,
    ) -> _BatchResult:
        result = _BatchResult()
        if cancel_event is not None and cancel_event.is_set():
            result.skipped = len(batch)
            return result

        for path in batch:
            rel_path = path.relative_to(root).as_posix()
            try:
                analysis = await self._analyze_file(path, rel_path, session_id)
            except PatchWardenError as e:
                logger.warning(
                    "Error analyzing file %s: %s", rel_path, e,
                    extra={"session_id": session_id, "file_path": rel_path},
                )
                result.failed.append(rel_path)
            else:
                result.analyzed.append(analysis)
                result.categories.update(hit.category for hit in analysis.hits)

            progress.processed += 1
            interval = self.settings.scan_progress_interval
            if interval > 0 and progress.processed % interval == 0:
                self._emit(
                    session_id, "scan.progress",
                    f"Progress: {progress.processed}/{progress.total} files analyzed",
                    progress=progress.processed / progress.total,
                    file_index=progress.processed,
                    total=progress.total,
                )
        return result

    async def _analyze_file(self, path: Path, rel_path: str, session_id: str) -> FileAnalysisResult:
        content = await asyncio.to_thread(read_source_file, path)
        file_type = detect_language(rel_path)
        analysis = FileAnalysisResult(
            file_path=rel_path,
            file_type=file_type,
            line_count=len(content.splitlines()),
            dependencies=extract_dependencies(content, file_type),
            hits=scan_text(content),
        )
        await self.context_store.add_file(session_id, rel_path, content, file_type)
        return analysis

    def _emit(self, session_id: str, phase: str, message: str, **fields) -> None:
        emit(self.event_sink, ProgressEvent(phase=phase, message=message, session_id=session_id, **fields))


def read_source_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="strict")
    except UnicodeDecodeError as e:
        raise FileReadError(f"{path} is not valid UTF-8: {e.reason}", details={"path": str(path)}) from e
    except OSError as e:
        raise FileReadError(f"Cannot read {path}: {e}", details={"path": str(path)}) from e
