"""Peer and expert review of generated fixes, driven by a stage state machine."""

from patchwarden.review.expert import ExpertReviewer
from patchwarden.review.models import ReviewRecord, ReviewStage, WorkflowState
from patchwarden.review.peer import PeerReviewer
from patchwarden.review.workflow import ReviewWorkflow

__all__ = [
    "ExpertReviewer",
    "PeerReviewer",
    "ReviewRecord",
    "ReviewStage",
    "ReviewWorkflow",
    "WorkflowState",
]
