"""Context analysis around a vulnerable line, ahead of fix generation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from patchwarden.context.session_store import SessionContextStore
from patchwarden.core.types import RelevantContext, VulnerabilityMatch
from patchwarden.remediator.languages import LanguageSupport

logger = logging.getLogger(__name__)

_ASSIGNMENT_RE = re.compile(r"\b([A-Za-z_]\w*)\s*=(?!=)")

SECURITY_MEASURES: dict[str, str] = {
    r"validate|sanitize|escape": "Input validation",
    r"authenticate|authorize": "Authentication/Authorization",
    r"encrypt|decrypt|hash": "Cryptography",
    r"parameterized|prepared": "Parameterized queries",
    r"whitelist|allowlist": "Allowlisting",
}
_MEASURE_RES = {
    re.compile(rf"\b\w*(?:{pattern})\w*\b", re.IGNORECASE): label
    for pattern, label in SECURITY_MEASURES.items()
}


@dataclass
class FixAnalysis:
    """What the generator knows about the code around a finding."""

    method_context: str = ""
    method_start_line: int = 0
    method_end_line: int = 0
    data_flow: dict[str, str] = field(default_factory=dict)
    security_measures: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    related_context: list[RelevantContext] = field(default_factory=list)


def enclosing_function_range(
    lines: list[str],
    vuln_index: int,
    language: LanguageSupport,
) -> tuple[int, int]:
    """0-based inclusive ``(start, end)`` of the function around ``vuln_index``."""
    if not lines:
        return (0, 0)
    vuln_index = min(max(vuln_index, 0), len(lines) - 1)
    if language.uses_braces:
        return _brace_scan(lines, vuln_index, language)
    return _indent_scan(lines, vuln_index, language)


def _brace_scan(lines: list[str], vuln_index: int, language: LanguageSupport) -> tuple[int, int]:
    start = vuln_index
    balance = 0
    for i in range(vuln_index, -1, -1):
        line = lines[i]
        balance += line.count("}") - line.count("{")
        if balance < 0 or language.is_function_declaration(line):
            start = i
            break

    end = start
    depth = 0
    opened = False
    for i in range(start, len(lines)):
        depth += lines[i].count("{") - lines[i].count("}")
        opened = opened or "{" in lines[i]
        if opened and depth <= 0:
            end = i
            break
    else:
        end = len(lines) - 1
    return (start, max(end, vuln_index))


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _indent_scan(lines: list[str], vuln_index: int, language: LanguageSupport) -> tuple[int, int]:
    vuln_indent = _indent(lines[vuln_index])
    start = None
    for i in range(vuln_index, -1, -1):
        line = lines[i]
        if not line.strip():
            continue
        if language.is_function_declaration(line) and (_indent(line) < vuln_indent or i == vuln_index):
            start = i
            break
    if start is None:
        return (vuln_index, vuln_index)

    def_indent = _indent(lines[start])
    end = start
    for i in range(start + 1, len(lines)):
        line = lines[i]
        if not line.strip():
            continue
        if _indent(line) <= def_indent:
            break
        end = i
    return (start, max(end, vuln_index))


def analyze_data_flow(lines: list[str], vuln_index: int, snippet: str) -> dict[str, str]:
    """Map each name assigned in ``snippet`` to its most recent prior assignment."""
    flow: dict[str, str] = {}
    for name in _ASSIGNMENT_RE.findall(snippet):
        flow[name] = find_variable_source(lines, vuln_index, name)
    return flow


def find_variable_source(lines: list[str], vuln_index: int, name: str) -> str:
    pattern = re.compile(rf"\b{re.escape(name)}\s*=(?!=)")
    for i in range(min(vuln_index, len(lines)) - 1, -1, -1):
        if pattern.search(lines[i]):
            return lines[i].strip()
    return "unknown"


def detect_security_measures(lines: list[str], vuln_index: int, window: int) -> list[str]:
    """Defensive code already present within ``window`` lines of the finding."""
    measures: list[str] = []
    lo = max(0, vuln_index - window)
    hi = min(len(lines), vuln_index + window + 1)
    for line in lines[lo:hi]:
        for regex, label in _MEASURE_RES.items():
            if regex.search(line):
                measures.append(f"{label}: {line.strip()}")
    return measures


async def analyze_fix_context(
    match: VulnerabilityMatch,
    file_content: str,
    language: LanguageSupport,
    context_store: SessionContextStore | None,
    session_id: str,
    context_window: int = 20,
    related_limit: int = 10,
) -> FixAnalysis:
    """Gather method context, data flow, defenses, dependencies and related chunks."""
    lines = file_content.split("\n")
    vuln_index = max(match.line_number - 1, 0)
    start, end = enclosing_function_range(lines, vuln_index, language)

    analysis = FixAnalysis(
        method_context="\n".join(lines[start:end + 1]),
        method_start_line=start + 1,
        method_end_line=end + 1,
        data_flow=analyze_data_flow(lines, vuln_index, match.affected_code),
        security_measures=detect_security_measures(lines, vuln_index, context_window),
        dependencies=language.extract_dependencies(file_content),
    )

    if context_store is not None and related_limit > 0:
        query = "\n".join(part for part in (match.title, match.affected_code) if part)
        related = await context_store.relevant_context(session_id, query or match.id, related_limit)
        # Skip the chunk holding the finding itself.
        analysis.related_context = [
            ctx for ctx in related
            if not (ctx.file_path == match.file_path and ctx.start_line <= match.line_number <= ctx.end_line)
        ]
    logger.debug(
        "Context for %s: method lines %d-%d, %d related chunks",
        match.id, analysis.method_start_line, analysis.method_end_line, len(analysis.related_context),
        extra={"session_id": session_id, "file_path": match.file_path},
    )
    return analysis
