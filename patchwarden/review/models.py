"""Review workflow data model: stages, transition table, records and run state."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from patchwarden.core.errors import InvalidTransitionError
from patchwarden.core.types import FixResult, Severity


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReviewStage(str, enum.Enum):
    GENERATED = "generated"
    PEER_REVIEWED = "peer_reviewed"
    EXPERT_REVIEWED = "expert_reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_STAGES = frozenset({ReviewStage.APPROVED, ReviewStage.REJECTED})

TRANSITIONS: dict[ReviewStage, frozenset[ReviewStage]] = {
    ReviewStage.GENERATED: frozenset({
        ReviewStage.PEER_REVIEWED,  # peer approve
        ReviewStage.GENERATED,      # peer reject, regenerate
        ReviewStage.REJECTED,       # peer reject, retries exhausted
    }),
    ReviewStage.PEER_REVIEWED: frozenset({
        ReviewStage.EXPERT_REVIEWED,
        ReviewStage.GENERATED,
        ReviewStage.REJECTED,
    }),
    ReviewStage.EXPERT_REVIEWED: frozenset({ReviewStage.APPROVED}),
    ReviewStage.APPROVED: frozenset(),
    ReviewStage.REJECTED: frozenset(),
}


class PeerVerdict(str, enum.Enum):
    APPROVED = "APPROVED"
    APPROVED_WITH_SUGGESTIONS = "APPROVED_WITH_SUGGESTIONS"
    NEEDS_CHANGES = "NEEDS_CHANGES"


class ReviewIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Severity
    message: str
    source: str = "llm"  # llm | heuristic

    def render(self) -> str:
        return f"{self.severity.value.upper()}: {self.message}"


class ReviewRecord(BaseModel):
    """Immutable outcome of one review pass."""

    model_config = ConfigDict(frozen=True)

    stage: ReviewStage
    reviewer: str
    approved: bool
    assessment: str = ""
    scores: dict[str, int] = Field(default_factory=dict)
    issues: tuple[ReviewIssue, ...] = ()
    suggestions: tuple[str, ...] = ()
    required_changes: tuple[str, ...] = ()
    positives: tuple[str, ...] = ()
    attempt: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def average_score(self) -> float:
        if not self.scores:
            return 0.0
        return sum(self.scores.values()) / len(self.scores)

    @property
    def critical_issues(self) -> list[ReviewIssue]:
        return [i for i in self.issues if i.severity == Severity.CRITICAL]


class WorkflowState(BaseModel):
    """State of one review run. Owned by exactly one :class:`ReviewWorkflow` call."""

    task_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_id: str = ""
    current_stage: ReviewStage = ReviewStage.GENERATED
    shared_memory: dict[str, Any] = Field(default_factory=dict)
    history: tuple[ReviewRecord, ...] = ()
    transitions: tuple[tuple[ReviewStage, ReviewStage], ...] = ()
    attempts: int = 0
    fix: FixResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.current_stage in TERMINAL_STAGES

    @property
    def approved(self) -> bool:
        return self.current_stage == ReviewStage.APPROVED

    @property
    def required_changes(self) -> list[str]:
        """Required changes accumulated across every review so far, in order."""
        seen: list[str] = []
        for record in self.history:
            for change in record.required_changes:
                if change not in seen:
                    seen.append(change)
        return seen

    def advance(self, to: ReviewStage) -> None:
        """Move to ``to``; raises :class:`InvalidTransitionError` if the table forbids it."""
        source = self.current_stage
        if to not in TRANSITIONS[source]:
            raise InvalidTransitionError(
                f"Cannot move from {source.value} to {to.value}",
                details={"task_id": self.task_id, "from": source.value, "to": to.value},
            )
        self.current_stage = to
        self.transitions = self.transitions + ((source, to),)

    def record(self, review: ReviewRecord) -> None:
        self.history = self.history + (review,)
