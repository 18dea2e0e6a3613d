"""Peer (security lead) review: code quality, architecture and maintainability."""

from __future__ import annotations

import logging
import re

from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import TransientServiceError
from patchwarden.core.llm_client import CompletionGateway
from patchwarden.core.types import FixResult, Severity, VulnerabilityMatch
from patchwarden.remediator.languages import LanguageRegistry
from patchwarden.remediator.parsing import parse_bullets, parse_score, split_sections
from patchwarden.review.heuristics import code_quality_issues
from patchwarden.review.models import PeerVerdict, ReviewIssue, ReviewRecord, ReviewStage

logger = logging.getLogger(__name__)

PEER_SECTIONS = (
    "OVERALL_ASSESSMENT",
    "CODE_QUALITY_SCORE",
    "ARCHITECTURE_SCORE",
    "MAINTAINABILITY_SCORE",
    "ISSUES",
    "SUGGESTIONS",
    "POSITIVE_ASPECTS",
)
SCORE_FIELDS = {
    "code_quality": "CODE_QUALITY_SCORE",
    "architecture": "ARCHITECTURE_SCORE",
    "maintainability": "MAINTAINABILITY_SCORE",
}
BLOCKING_SEVERITIES = frozenset({Severity.CRITICAL, Severity.HIGH})

_ISSUE_RE = re.compile(r"^\[?(CRITICAL|HIGH|MEDIUM|LOW)\]?\s*[:\-]\s*(.+)$", re.IGNORECASE)


def parse_issues(text: str) -> list[ReviewIssue]:
    """``- SEVERITY: description`` lines; lines without a severity are MEDIUM."""
    issues: list[ReviewIssue] = []
    for item in parse_bullets(text):
        if m := _ISSUE_RE.match(item):
            issues.append(ReviewIssue(severity=Severity(m.group(1).lower()), message=m.group(2).strip()))
        else:
            issues.append(ReviewIssue(severity=Severity.MEDIUM, message=item))
    return issues


def build_peer_prompt(fix: FixResult, match: VulnerabilityMatch, language_name: str, related_files: list[str]) -> str:
    parts = [
        "You are a security lead reviewing a security patch. "
        "Evaluate the code for quality, maintainability, and architectural fit.",
        "",
        "## Patch Details",
        f"Vulnerability: {match.title} ({match.severity.value}) in {match.file_path}:{match.line_number}",
        f"Language: {language_name}",
        "### Code:",
        "```",
        fix.fixed_code,
        "```",
        "",
        "### Security Rationale:",
        fix.explanation or "(none provided)",
        "",
        "### Identified Risks:",
        *(f"- {w}" for w in fix.warnings),
    ]
    if not fix.warnings:
        parts.append("- none")
    if related_files:
        parts += ["", "## Architectural Context", *(f"- {p}" for p in related_files)]
    parts += [
        "",
        "## Review Criteria",
        "1. **Code Quality**: Clean, readable, follows coding standards",
        "2. **Architecture**: Fits with existing patterns and design",
        "3. **Maintainability**: Easy to understand and modify",
        "4. **Performance**: No unnecessary overhead or bottlenecks",
        "5. **Testing**: Testable design, includes test guidance",
        "6. **Documentation**: Well-commented and documented",
        "7. **Best Practices**: Follows industry best practices",
        "",
        "## Required Output Format",
        "OVERALL_ASSESSMENT: [APPROVED/NEEDS_CHANGES/REJECTED]",
        "CODE_QUALITY_SCORE: [1-10]",
        "ARCHITECTURE_SCORE: [1-10]",
        "MAINTAINABILITY_SCORE: [1-10]",
        "ISSUES:",
        "- [CRITICAL/HIGH/MEDIUM/LOW]: Description",
        "SUGGESTIONS:",
        "- Description of improvement",
        "POSITIVE_ASPECTS:",
        "- What was done well",
    ]
    return "\n".join(parts)


class PeerReviewer:
    """LLM rubric plus deterministic code-quality heuristics."""

    def __init__(
        self,
        review_llm: CompletionGateway,
        registry: LanguageRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.review_llm = review_llm
        self.registry = registry or LanguageRegistry.default()
        self.settings = settings or get_settings()

    async def review(self, fix: FixResult, match: VulnerabilityMatch, attempt: int = 0) -> ReviewRecord:
        language = self.registry.for_match(match)
        related = list(fix.metadata.get("related_files", []))
        prompt = build_peer_prompt(fix, match, language.display_name, related)

        scores: dict[str, int] = {}
        issues: list[ReviewIssue] = []
        suggestions: list[str] = []
        positives: list[str] = []
        llm_assessment = ""
        try:
            response = await self.review_llm.complete(prompt, temperature=self.settings.review_temperature)
        except TransientServiceError as e:
            logger.warning("Peer review call failed: %s", e)
            issues.append(ReviewIssue(severity=Severity.CRITICAL, message=f"Peer review unavailable: {e.message}"))
        else:
            sections = split_sections(response, PEER_SECTIONS)
            llm_assessment = sections.get("OVERALL_ASSESSMENT", "").split("\n", 1)[0].strip()
            scores = {key: parse_score(sections.get(name, "")) for key, name in SCORE_FIELDS.items()}
            issues.extend(parse_issues(sections.get("ISSUES", "")))
            suggestions = parse_bullets(sections.get("SUGGESTIONS", ""))
            positives = parse_bullets(sections.get("POSITIVE_ASPECTS", ""))

        heuristic_issues = code_quality_issues(fix.fixed_code, language)
        issues.extend(heuristic_issues)

        verdict = self.decide(scores, issues)
        record = ReviewRecord(
            stage=ReviewStage.PEER_REVIEWED,
            reviewer="peer",
            approved=verdict != PeerVerdict.NEEDS_CHANGES,
            assessment=verdict.value,
            scores=scores,
            issues=tuple(issues),
            suggestions=tuple(suggestions),
            required_changes=tuple(i.render() for i in issues if i.severity in BLOCKING_SEVERITIES),
            positives=tuple(positives),
            attempt=attempt,
            details={"llm_assessment": llm_assessment, "heuristic_issues": len(heuristic_issues)},
        )
        logger.info(
            "Peer review of %s: %s (avg %.1f, %d issues)",
            match.id, verdict.value, record.average_score, len(issues),
            extra={"stage": ReviewStage.PEER_REVIEWED.value},
        )
        return record

    def decide(self, scores: dict[str, int], issues: list[ReviewIssue]) -> PeerVerdict:
        average = sum(scores.values()) / len(scores) if scores else 0.0
        if any(i.severity == Severity.CRITICAL for i in issues) or average < self.settings.peer_reject_below:
            return PeerVerdict.NEEDS_CHANGES
        if average >= self.settings.peer_clean_approve_at and len(issues) < self.settings.peer_clean_max_issues:
            return PeerVerdict.APPROVED
        return PeerVerdict.APPROVED_WITH_SUGGESTIONS
