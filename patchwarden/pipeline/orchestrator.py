"""Remediation pipeline: scan → generate fix → review."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from patchwarden.context.embeddings import EmbeddingGateway, HashingEmbedder
from patchwarden.context.session_store import SessionContextStore
from patchwarden.core.concurrency import WorkerPool
from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import FileReadError
from patchwarden.core.events import EventSink
from patchwarden.core.llm_client import CompletionGateway, LLMGateway
from patchwarden.core.types import FixResult, VulnerabilityMatch
from patchwarden.remediator.fix_generator import CandidateFixGenerator
from patchwarden.remediator.languages import LanguageRegistry
from patchwarden.review.expert import ExpertReviewer
from patchwarden.review.models import WorkflowState
from patchwarden.review.peer import PeerReviewer
from patchwarden.review.workflow import ReviewWorkflow
from patchwarden.scanner.streaming import CancelSignal, RepositoryScanner, ScanSummary, read_source_file

logger = logging.getLogger(__name__)


class RemediationPipeline:
    """Wires the context store, scanner, fix generator and review workflow.

    Flow for one repository:
    1. SCANNING: walk the tree, index chunks, collect heuristic findings
    2. GENERATING: template or multi-strategy LLM fix per finding
    3. REVIEWING: peer then expert review, with bounded regeneration

    All components share one :class:`WorkerPool` and one context store.
    Pass explicit gateways to run against fakes; otherwise the LLM and
    embedding gateways are built from settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        code_llm: CompletionGateway | None = None,
        review_llm: CompletionGateway | None = None,
        context_store: SessionContextStore | None = None,
        use_embeddings: bool = True,
        event_sink: EventSink | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._pool = WorkerPool(self._settings.worker_pool_size)
        self._embedding_gateway: EmbeddingGateway | None = None
        if context_store is None:
            if use_embeddings:
                self._embedding_gateway = EmbeddingGateway(self._settings)
                embedder = self._embedding_gateway
            else:
                embedder = HashingEmbedder()
            context_store = SessionContextStore(embedder, settings=self._settings)
        self.context_store = context_store
        self.event_sink = event_sink

        self._code_llm = code_llm or LLMGateway.for_generation(self._settings)
        self._review_llm = review_llm or LLMGateway.for_review(self._settings)
        self._registry = LanguageRegistry.default()

        self.scanner = RepositoryScanner(
            self.context_store, settings=self._settings, pool=self._pool, event_sink=event_sink,
        )
        self.generator = CandidateFixGenerator(
            self.context_store,
            self._code_llm,
            self._review_llm,
            registry=self._registry,
            settings=self._settings,
            pool=self._pool,
        )
        self.workflow = ReviewWorkflow(
            PeerReviewer(self._review_llm, registry=self._registry, settings=self._settings),
            ExpertReviewer(self._review_llm, settings=self._settings),
            generator=self.generator,
            settings=self._settings,
            event_sink=event_sink,
        )
        self._roots: dict[str, Path] = {}

    async def aclose(self) -> None:
        if self._embedding_gateway is not None:
            await self._embedding_gateway.aclose()

    async def __aenter__(self) -> "RemediationPipeline":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    # ── Operations ───────────────────────────────────────────────────────

    async def scan_repository(
        self,
        root_path: str | Path,
        session_id: str,
        cancel_event: CancelSignal | None = None,
    ) -> ScanSummary:
        summary = await self.scanner.scan_repository(root_path, session_id, cancel_event=cancel_event)
        self._roots[session_id] = Path(root_path)
        return summary

    async def generate_fix(
        self,
        match: VulnerabilityMatch,
        session_id: str,
        file_content: str,
    ) -> FixResult:
        return await self.generator.generate_fix(match, session_id, file_content)

    async def run_review_workflow(
        self,
        fix: FixResult,
        match: VulnerabilityMatch,
        session_id: str,
        file_content: str | None = None,
    ) -> WorkflowState:
        if file_content is None:
            file_content = await self._load_file_content(match, session_id)
        return await self.workflow.run(fix, match, session_id, file_content)

    async def remediate(
        self,
        match: VulnerabilityMatch,
        session_id: str,
        file_content: str,
    ) -> WorkflowState:
        """Generate a fix for ``match`` and drive it through review."""
        fix = await self.generate_fix(match, session_id, file_content)
        logger.info(
            "Fix for %s generated (success=%s, strategy=%s)", match.id, fix.success,
            fix.strategy.value if fix.strategy else None,
            extra={"session_id": session_id, "file_path": match.file_path},
        )
        return await self.run_review_workflow(fix, match, session_id, file_content)

    async def _load_file_content(self, match: VulnerabilityMatch, session_id: str) -> str | None:
        """Re-read the finding's file from the last scanned root of ``session_id``, if any."""
        root = self._roots.get(session_id)
        if root is None:
            return None
        try:
            return await asyncio.to_thread(read_source_file, root / match.file_path)
        except FileReadError as e:
            logger.warning("Cannot reload %s for regeneration: %s", match.file_path, e)
            return None
