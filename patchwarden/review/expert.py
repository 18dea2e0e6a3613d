"""Expert (security) review: mitigation completeness and new vulnerabilities."""

from __future__ import annotations

import logging

from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import TransientServiceError
from patchwarden.core.llm_client import CompletionGateway
from patchwarden.core.types import FixResult, Severity, VulnerabilityMatch
from patchwarden.remediator.parsing import parse_bullets, parse_score, split_sections
from patchwarden.review.heuristics import (
    OWASP_TOP10_2021,
    best_practice_checks,
    compliance_checks,
    dangerous_api_hits,
    owasp_checks,
)
from patchwarden.review.models import ReviewIssue, ReviewRecord, ReviewStage

logger = logging.getLogger(__name__)

EXPERT_SECTIONS = (
    "SECURITY_ASSESSMENT",
    "SECURITY_SCORE",
    "VULNERABILITY_MITIGATION",
    "NEW_VULNERABILITIES",
    "CRITICAL_ISSUES",
    "SECURITY_IMPROVEMENTS",
    "COMPLIANCE_NOTES",
)
MITIGATION_LEVELS = ("COMPLETE", "PARTIAL", "INSUFFICIENT")


def build_expert_prompt(fix: FixResult, match: VulnerabilityMatch, peer_output: dict | None) -> str:
    parts = [
        "You are a senior application security expert performing the final security review of a patch.",
        "",
        "## Original Vulnerability",
        f"Type: {match.title}",
        f"Severity: {match.severity.value}",
        f"Location: {match.file_path}:{match.line_number}",
        "Vulnerable code:",
        "```",
        match.affected_code,
        "```",
        "",
        "## Proposed Fix",
        "```",
        fix.fixed_code,
        "```",
        "",
        "## Engineer Explanation",
        fix.explanation or "(none provided)",
    ]
    if peer_output:
        parts += ["", "## Peer Review Outcome", f"Assessment: {peer_output.get('assessment', '')}"]
        parts += [f"- {s}" for s in peer_output.get("suggestions", [])]
    parts += [
        "",
        "## Review Focus",
        "1. Is the original vulnerability completely mitigated?",
        "2. Does the fix introduce any new vulnerabilities?",
        "3. Is the fix consistent with OWASP Top 10 guidance?",
        "4. Are there residual risks or bypasses?",
        "",
        "## Required Output Format",
        "SECURITY_ASSESSMENT: [Summary]",
        "SECURITY_SCORE: [1-10]",
        "VULNERABILITY_MITIGATION: [COMPLETE/PARTIAL/INSUFFICIENT]",
        "NEW_VULNERABILITIES: [NONE/FOUND: description]",
        "CRITICAL_ISSUES:",
        "- Issue description",
        "SECURITY_IMPROVEMENTS:",
        "- Improvement suggestion",
        "COMPLIANCE_NOTES:",
        "- Compliance observation",
    ]
    return "\n".join(parts)


def parse_mitigation(value: str) -> str:
    head = (value or "").strip().upper()
    for level in MITIGATION_LEVELS:
        if head.startswith(level):
            return level
    return "UNKNOWN"


class ExpertReviewer:
    """LLM security rubric plus dangerous-API, OWASP, best-practice and compliance tables."""

    def __init__(self, review_llm: CompletionGateway, settings: Settings | None = None) -> None:
        self.review_llm = review_llm
        self.settings = settings or get_settings()

    async def review(
        self,
        fix: FixResult,
        match: VulnerabilityMatch,
        attempt: int = 0,
        peer_output: dict | None = None,
    ) -> ReviewRecord:
        code = fix.fixed_code
        critical: list[ReviewIssue] = []
        improvements: list[str] = []
        notes: list[str] = []
        score = 0
        mitigation = "UNKNOWN"
        summary = ""

        prompt = build_expert_prompt(fix, match, peer_output)
        try:
            response = await self.review_llm.complete(prompt, temperature=self.settings.review_temperature)
        except TransientServiceError as e:
            logger.warning("Expert review call failed: %s", e)
            critical.append(ReviewIssue(severity=Severity.CRITICAL, message=f"Security review unavailable: {e.message}"))
        else:
            sections = split_sections(response, EXPERT_SECTIONS)
            summary = sections.get("SECURITY_ASSESSMENT", "")
            score = parse_score(sections.get("SECURITY_SCORE", ""))
            mitigation = parse_mitigation(sections.get("VULNERABILITY_MITIGATION", ""))
            new_vulns = sections.get("NEW_VULNERABILITIES", "").strip()
            if new_vulns.upper().startswith("FOUND"):
                detail = new_vulns[len("FOUND"):].lstrip(" :-")
                critical.append(ReviewIssue(
                    severity=Severity.CRITICAL,
                    message=f"New vulnerabilities introduced: {detail or 'unspecified'}",
                ))
            critical.extend(
                ReviewIssue(severity=Severity.CRITICAL, message=item)
                for item in parse_bullets(sections.get("CRITICAL_ISSUES", ""))
            )
            improvements.extend(parse_bullets(sections.get("SECURITY_IMPROVEMENTS", "")))
            notes.extend(parse_bullets(sections.get("COMPLIANCE_NOTES", "")))

        if hits := dangerous_api_hits(code):
            critical.append(ReviewIssue(
                severity=Severity.CRITICAL,
                message=f"Potentially dangerous patterns found: {', '.join(hits)}",
                source="heuristic",
            ))

        practices = best_practice_checks(code)
        improvements.extend(f"Consider implementing: {name}" for name, ok in practices.items() if not ok)
        owasp = owasp_checks(code)
        compliance = compliance_checks(code)

        required = [i.render() for i in critical]
        if score < self.settings.expert_min_security_score:
            required.append(
                f"Security score {score}/10 is below the required {self.settings.expert_min_security_score}"
            )
        if mitigation != "COMPLETE":
            required.append(f"Vulnerability mitigation is {mitigation}; {match.title} must be fully remediated")
        approved = not required

        record = ReviewRecord(
            stage=ReviewStage.EXPERT_REVIEWED,
            reviewer="expert",
            approved=approved,
            assessment="APPROVED" if approved else "REJECTED",
            scores={"security": score} if score else {},
            issues=tuple(critical),
            suggestions=tuple(improvements),
            required_changes=tuple(required),
            attempt=attempt,
            details={
                "summary": summary,
                "vulnerability_mitigation": mitigation,
                "owasp": {f"{k} {OWASP_TOP10_2021[k][0]}": v for k, v in owasp.items()},
                "best_practices": practices,
                "compliance": {
                    name: {"compliant": status.compliant, "requirements": status.requirements}
                    for name, status in compliance.items()
                },
                "compliance_notes": notes,
            },
        )
        logger.info(
            "Expert review of %s: %s (score %d, mitigation %s, %d critical)",
            match.id, record.assessment, score, mitigation, len(critical),
            extra={"stage": ReviewStage.EXPERT_REVIEWED.value},
        )
        return record
