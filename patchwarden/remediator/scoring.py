"""Candidate scoring and selection.

``score = base × size_penalty × syntax_factor × strategy_bonus × functionality_bonus``

Every factor comes from :class:`Settings`; the defaults are a starting
calibration rather than a tuned policy.
"""

from __future__ import annotations

import re

from patchwarden.core.config import Settings
from patchwarden.core.types import FixCandidate, FixStrategy

STRATEGY_ORDER: tuple[FixStrategy, ...] = (
    FixStrategy.MINIMAL,
    FixStrategy.BEST_PRACTICE,
    FixStrategy.DEFENSIVE,
)
_BONUS_STRATEGIES = {FixStrategy.BEST_PRACTICE, FixStrategy.DEFENSIVE}
_BACKWARD_COMPATIBLE_RE = re.compile(r"backwards?[\s-]+compatib", re.IGNORECASE)


def lines_changed(original: str, candidate: str) -> int:
    """Size of the symmetric difference between the two line sets."""
    return len(set(original.splitlines()) ^ set(candidate.splitlines()))


def size_penalty(changed: int, settings: Settings) -> float:
    return 1.0 - min(changed / settings.score_size_divisor, settings.score_max_size_penalty)


def claims_backward_compatibility(notes: str) -> bool:
    return bool(_BACKWARD_COMPATIBLE_RE.search(notes or ""))


def score_candidate(
    candidate: FixCandidate,
    original: str,
    syntax_ok: bool,
    settings: Settings,
) -> float:
    """Score one candidate in isolation; pure in its inputs."""
    score = candidate.confidence
    score *= size_penalty(lines_changed(original, candidate.code), settings)
    score *= settings.score_syntax_pass if syntax_ok else settings.score_syntax_fail
    if candidate.strategy in _BONUS_STRATEGIES:
        score *= settings.score_strategy_bonus
    if claims_backward_compatibility(candidate.functionality_notes):
        score *= settings.score_functionality_bonus
    return score


def select_best(candidates: list[FixCandidate]) -> FixCandidate | None:
    """Highest score wins; ties go to the earlier strategy in :data:`STRATEGY_ORDER`."""
    if not candidates:
        return None
    rank = {strategy: i for i, strategy in enumerate(STRATEGY_ORDER)}
    ordered = sorted(candidates, key=lambda c: rank.get(c.strategy, len(rank)))
    return max(ordered, key=lambda c: c.score)
