"""Review workflow: GENERATED → PEER_REVIEWED → EXPERT_REVIEWED → APPROVED.

A rejection at either review stage routes the fix back to GENERATED and
asks the fix generator for a new version carrying the accumulated
required changes. After ``review_max_retries`` regenerations, or when a
regeneration fails outright, the workflow ends in REJECTED.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import WorkflowRejection
from patchwarden.core.events import EventSink, emit
from patchwarden.core.types import FixResult, ProgressEvent, VulnerabilityMatch
from patchwarden.review.expert import ExpertReviewer
from patchwarden.review.models import ReviewRecord, ReviewStage, WorkflowState
from patchwarden.review.peer import PeerReviewer

logger = logging.getLogger(__name__)


class FixRegenerator(Protocol):
    async def generate_fix(
        self,
        match: VulnerabilityMatch,
        session_id: str,
        file_content: str,
        required_changes: list[str] | None = None,
    ) -> FixResult: ...


def engineer_output(fix: FixResult) -> dict[str, Any]:
    return {
        "success": fix.success,
        "code": fix.fixed_code,
        "explanation": fix.explanation,
        "confidence": fix.confidence,
        "strategy": fix.strategy.value if fix.strategy else None,
        "warnings": list(fix.warnings),
        "auto_corrected": fix.auto_corrected,
    }


def review_output(record: ReviewRecord) -> dict[str, Any]:
    return {
        "approved": record.approved,
        "assessment": record.assessment,
        "scores": dict(record.scores),
        "issues": [i.render() for i in record.issues],
        "suggestions": list(record.suggestions),
        "required_changes": list(record.required_changes),
        "positives": list(record.positives),
        "attempt": record.attempt,
        **record.details,
    }


class ReviewWorkflow:
    """Drives one fix through peer and expert review.

    Args:
        peer: Peer (code quality) reviewer.
        expert: Expert (security) reviewer.
        generator: Used to regenerate the fix after a rejection. Without
            it, or without the file content, a rejection is final.
        settings: Supplies ``review_max_retries``.
        event_sink: Receives one progress event per stage transition.
    """

    def __init__(
        self,
        peer: PeerReviewer,
        expert: ExpertReviewer,
        generator: FixRegenerator | None = None,
        settings: Settings | None = None,
        event_sink: EventSink | None = None,
    ) -> None:
        self.peer = peer
        self.expert = expert
        self.generator = generator
        self.settings = settings or get_settings()
        self.event_sink = event_sink

    async def run(
        self,
        fix: FixResult,
        match: VulnerabilityMatch,
        session_id: str,
        file_content: str | None = None,
    ) -> WorkflowState:
        state = WorkflowState(session_id=session_id, fix=fix)
        state.shared_memory["engineer_output"] = engineer_output(fix)
        log_extra = {"session_id": session_id, "task_id": state.task_id}
        self._emit(state, "review.started", f"Reviewing fix for {match.id}")

        if not fix.success:
            state.shared_memory["rejection_reason"] = "Fix generation failed"
            self._transition(state, ReviewStage.REJECTED, "Fix generation failed")
            return state

        current = fix
        while True:
            try:
                await self._peer_stage(state, current, match)
                await self._expert_stage(state, current, match)
            except WorkflowRejection as rejection:
                logger.info(
                    "Review rejected %s at attempt %d: %s", match.id, state.attempts, rejection.message,
                    extra=log_extra,
                )
                regenerated = await self._regenerate(state, match, file_content, rejection)
                if regenerated is None:
                    return state
                current = regenerated
                continue

            self._transition(state, ReviewStage.APPROVED, f"Fix for {match.id} approved")
            return state

    # ── Stages ───────────────────────────────────────────────────────────

    async def _peer_stage(self, state: WorkflowState, fix: FixResult, match: VulnerabilityMatch) -> None:
        record = await self.peer.review(fix, match, attempt=state.attempts)
        state.record(record)
        state.shared_memory["peer_output"] = review_output(record)
        if not record.approved:
            raise WorkflowRejection(f"Peer review: {record.assessment}", list(record.required_changes))
        self._transition(state, ReviewStage.PEER_REVIEWED, f"Peer review: {record.assessment}")

    async def _expert_stage(self, state: WorkflowState, fix: FixResult, match: VulnerabilityMatch) -> None:
        record = await self.expert.review(
            fix, match, attempt=state.attempts, peer_output=state.shared_memory.get("peer_output"),
        )
        state.record(record)
        state.shared_memory["expert_output"] = review_output(record)
        if not record.approved:
            raise WorkflowRejection(f"Expert review: {record.assessment}", list(record.required_changes))
        self._transition(state, ReviewStage.EXPERT_REVIEWED, "Expert review: APPROVED")

    async def _regenerate(
        self,
        state: WorkflowState,
        match: VulnerabilityMatch,
        file_content: str | None,
        rejection: WorkflowRejection,
    ) -> FixResult | None:
        """Route back to GENERATED with a fresh fix; None once the run is REJECTED."""
        if state.attempts >= self.settings.review_max_retries or self.generator is None or file_content is None:
            state.shared_memory["rejection_reason"] = rejection.message
            self._transition(state, ReviewStage.REJECTED, rejection.message)
            return None

        state.attempts += 1
        self._transition(state, ReviewStage.GENERATED, f"Regenerating fix (attempt {state.attempts})")
        fix = await self.generator.generate_fix(
            match, state.session_id, file_content, required_changes=state.required_changes,
        )
        state.fix = fix
        state.shared_memory["engineer_output"] = engineer_output(fix)
        if not fix.success:
            state.shared_memory["rejection_reason"] = f"Regeneration failed: {fix.explanation}"
            self._transition(state, ReviewStage.REJECTED, "Regenerated fix failed")
            return None
        return fix

    # ── Events ───────────────────────────────────────────────────────────

    def _transition(self, state: WorkflowState, to: ReviewStage, message: str) -> None:
        source = state.current_stage
        state.advance(to)
        logger.debug(
            "Workflow %s: %s -> %s", state.task_id, source.value, to.value,
            extra={"session_id": state.session_id, "task_id": state.task_id, "stage": to.value},
        )
        self._emit(state, f"review.{to.value}", message)

    def _emit(self, state: WorkflowState, phase: str, message: str) -> None:
        emit(self.event_sink, ProgressEvent(
            phase=phase,
            message=message,
            session_id=state.session_id,
            task_id=state.task_id,
        ))
