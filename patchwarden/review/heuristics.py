"""Deterministic review checks run alongside the LLM reviewers.

Code-quality heuristics feed the peer review; the dangerous-API, OWASP,
best-practice and compliance keyword tables feed the expert review.
All of them are plain text scans over the fixed file.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from patchwarden.core.types import Severity
from patchwarden.remediator.analysis import enclosing_function_range
from patchwarden.remediator.languages import LanguageSupport
from patchwarden.review.models import ReviewIssue

MAX_FUNCTION_LINES = 50
MAX_FUNCTION_COMPLEXITY = 10
MIN_COMMENT_RATIO = 0.1

_BRANCH_RE = re.compile(r"\b(if|elif|while|for|case|catch|except)\b")
_LOOP_RE = re.compile(r"^\s*(for|while)\b|\.forEach\s*\(")
_DB_CALL_RE = re.compile(
    r"\.(execute|executemany|executeQuery|executeUpdate|query|save|commit|find\w*|fetch\w*)\s*\("
)
_TODO_RE = re.compile(r"\b(TODO|FIXME)\b")


# ── Peer heuristics ──────────────────────────────────────────────────────────


def _heuristic(severity: Severity, message: str) -> ReviewIssue:
    return ReviewIssue(severity=severity, message=message, source="heuristic")


def _comment_prefixes(language: LanguageSupport) -> tuple[str, ...]:
    if language.uses_braces:
        return ("//", "/*", "*")
    return ("#",)


def function_spans(lines: list[str], language: LanguageSupport) -> list[tuple[int, int]]:
    """0-based inclusive spans of every function declared in ``lines``."""
    return [
        enclosing_function_range(lines, i, language)
        for i, line in enumerate(lines)
        if language.is_function_declaration(line)
    ]


def comment_ratio(lines: list[str], language: LanguageSupport) -> float:
    code = [line.strip() for line in lines if line.strip()]
    if not code:
        return 1.0
    prefixes = _comment_prefixes(language)
    comments = sum(1 for line in code if line.startswith(prefixes))
    return comments / len(code)


def _loop_findings(lines: list[str]) -> tuple[bool, bool]:
    """(nested loop present, DB call inside a loop present)."""
    nested = db_in_loop = False
    stack: list[int] = []
    for line in lines:
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        while stack and indent <= stack[-1]:
            stack.pop()
        if stack and _DB_CALL_RE.search(line):
            db_in_loop = True
        if _LOOP_RE.search(line):
            if stack:
                nested = True
            stack.append(indent)
    return nested, db_in_loop


def code_quality_issues(code: str, language: LanguageSupport) -> list[ReviewIssue]:
    lines = code.split("\n")
    issues: list[ReviewIssue] = []

    for start, end in function_spans(lines, language):
        length = end - start + 1
        name = lines[start].strip()[:60]
        if length > MAX_FUNCTION_LINES:
            issues.append(_heuristic(
                Severity.MEDIUM,
                f"Function is too long ({length} lines), consider splitting: {name}",
            ))
        complexity = sum(len(_BRANCH_RE.findall(line)) for line in lines[start:end + 1])
        if complexity > MAX_FUNCTION_COMPLEXITY:
            issues.append(_heuristic(
                Severity.HIGH,
                f"High cyclomatic complexity ({complexity}) in: {name}",
            ))

    if comment_ratio(lines, language) < MIN_COMMENT_RATIO:
        issues.append(_heuristic(Severity.LOW, "Insufficient comments for security-critical code"))

    nested, db_in_loop = _loop_findings(lines)
    if nested:
        issues.append(_heuristic(Severity.MEDIUM, "Nested loops detected, consider performance impact"))
    if db_in_loop:
        issues.append(_heuristic(Severity.HIGH, "Database call inside a loop, consider batching"))

    if _TODO_RE.search(code):
        issues.append(_heuristic(Severity.MEDIUM, "Unresolved TODO/FIXME comments in patch"))

    return issues


# ── Expert tables ────────────────────────────────────────────────────────────

DANGEROUS_API_PATTERNS: dict[str, str] = {
    "eval": r"(?<!\w)eval\s*\(",
    "exec": r"(?<!\w)exec\s*\(",
    "system": r"(?<!\w)system\s*\(",
    "Runtime.getRuntime": r"Runtime\.getRuntime",
    "ProcessBuilder": r"ProcessBuilder",
    "ObjectInputStream": r"ObjectInputStream",
    "readObject": r"(?<!\w)readObject\s*\(",
    "XMLReader": r"XMLReader",
    "DocumentBuilder": r"DocumentBuilder",
}

OWASP_TOP10_2021: dict[str, tuple[str, tuple[str, ...], bool]] = {
    # id: (name, keywords, keywords indicate a failure rather than a pass)
    "A01:2021": ("Broken Access Control", ("authorize", "permission"), False),
    "A02:2021": ("Cryptographic Failures", ("MD5", "SHA1"), True),
    "A03:2021": ("Injection", ("prepareStatement", "parameterized", "%s"), False),
    "A04:2021": ("Insecure Design", ("validate", "sanitize"), False),
    "A05:2021": ("Security Misconfiguration", ("secure", "config"), False),
}

BEST_PRACTICES: dict[str, tuple[tuple[str, ...], ...]] = {
    # every inner group must have at least one keyword present
    "Input Validation": (("validate", "sanitize", "filter"),),
    "Output Encoding": (("encode", "escape"),),
    "Error Handling": (("try",), ("catch", "except")),
    "Secure Defaults": (("default",), ("secure", "deny")),
    "Principle of Least Privilege": (("minimal", "restricted"),),
}


@dataclass
class ComplianceStatus:
    framework: str
    compliant: bool = True
    requirements: list[str] = field(default_factory=list)


def dangerous_api_hits(code: str) -> list[str]:
    return [name for name, pattern in DANGEROUS_API_PATTERNS.items() if re.search(pattern, code)]


def owasp_checks(code: str) -> dict[str, bool]:
    results: dict[str, bool] = {}
    for owasp_id, (_, keywords, negative) in OWASP_TOP10_2021.items():
        present = any(k in code for k in keywords)
        results[owasp_id] = not present if negative else present
    return results


def best_practice_checks(code: str) -> dict[str, bool]:
    lowered = code.lower()
    return {
        practice: all(any(k in lowered for k in group) for group in groups)
        for practice, groups in BEST_PRACTICES.items()
    }


def compliance_checks(code: str) -> dict[str, ComplianceStatus]:
    lowered = code.lower()

    pci = ComplianceStatus("PCI-DSS")
    if not ("encrypt" in lowered or "aes" in lowered):
        pci.requirements.append("Encryption of cardholder data required")
    if not ("mask" in lowered or "redact" in lowered):
        pci.requirements.append("PAN masking required")
    if not ("authorize" in lowered or "permission" in lowered):
        pci.requirements.append("Access control implementation required")
    pci.compliant = not pci.requirements

    gdpr = ComplianceStatus(
        "GDPR",
        compliant=any(k in lowered for k in ("consent", "permission", "protect", "secure", "privacy", "personal")),
    )
    # HIPAA and SOC2 have no code-level signal; they are reported as compliant.
    return {
        "PCI-DSS": pci,
        "GDPR": gdpr,
        "HIPAA": ComplianceStatus("HIPAA"),
        "SOC2": ComplianceStatus("SOC2"),
    }
