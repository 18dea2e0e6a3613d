"""Line-oriented heuristic patterns used as a first-pass vulnerability signal.

These are deliberately coarse: one regex per category, applied to each
line in isolation. Hits feed the fix generator as ``CODE_PATTERN`` matches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from pydantic import BaseModel

from patchwarden.core.types import Severity

BASE_CONFIDENCE = 0.7


@dataclass(frozen=True)
class HeuristicPattern:
    category: str
    regex: re.Pattern[str]
    severity: Severity
    description: str


PATTERNS: tuple[HeuristicPattern, ...] = (
    HeuristicPattern(
        "HARDCODED_SECRET",
        re.compile(r"(?i)(password|passwd|api_key|apikey|secret|token)\s*=\s*[\"'][^\"']+[\"']"),
        Severity.HIGH,
        "Credential literal assigned in source",
    ),
    HeuristicPattern(
        "SQL_INJECTION",
        re.compile(
            r"(?i)(execute|query|executeQuery)\s*\(.*(\+|[\"']\s*%\s*[\w(]|\.format\(|\bf[\"'])"
            r"|(execute|query).*\+.*(request|param|input)"
        ),
        Severity.HIGH,
        "Query built by string concatenation or interpolation",
    ),
    HeuristicPattern(
        "WEAK_CRYPTO",
        re.compile(r"(?i)\b(md5|sha1)\s*\(|MessageDigest\.getInstance\(\s*\"(MD5|SHA-?1)\""),
        Severity.MEDIUM,
        "Weak hash algorithm",
    ),
    HeuristicPattern(
        "INSECURE_RANDOM",
        re.compile(r"(?i)math\.random\(\)|\bnew\s+Random\(|\brandom\.(random|randint|choice)\("),
        Severity.MEDIUM,
        "Non-cryptographic random source",
    ),
    HeuristicPattern(
        "COMMAND_INJECTION",
        re.compile(
            r"os\.system\s*\(.*(\+|%|\.format\(|\bf[\"'])"
            r"|Runtime\.getRuntime\(\)\.exec\s*\(.*\+"
            r"|subprocess\.\w+\(.*shell\s*=\s*True"
            r"|child_process\.exec\s*\(.*\+"
        ),
        Severity.CRITICAL,
        "Shell command built from variable input",
    ),
    HeuristicPattern(
        "UNSAFE_DESERIALIZATION",
        re.compile(
            r"\bpickle\.loads?\s*\(|\byaml\.load\s*\((?!.*Loader\s*=\s*yaml\.SafeLoader)"
            r"|new\s+ObjectInputStream\s*\(|\.readObject\s*\("
        ),
        Severity.HIGH,
        "Deserialization of untrusted data",
    ),
    HeuristicPattern(
        "DEBUG_CODE",
        re.compile(r"(?i)(console\.log|\bprint\s*\(|\bdebug\b|\btodo\b)"),
        Severity.INFORMATIONAL,
        "Debug output or leftover marker",
    ),
)

PATTERNS_BY_CATEGORY = {p.category: p for p in PATTERNS}


class PatternHit(BaseModel):
    category: str
    line_number: int
    snippet: str
    pattern: str
    confidence: float = BASE_CONFIDENCE


def scan_line(line: str, line_number: int) -> list[PatternHit]:
    """Every pattern that matches ``line`` (1-based ``line_number``)."""
    hits: list[PatternHit] = []
    for pattern in PATTERNS:
        if pattern.regex.search(line):
            hits.append(PatternHit(
                category=pattern.category,
                line_number=line_number,
                snippet=line.strip(),
                pattern=pattern.regex.pattern,
            ))
    return hits


def scan_text(text: str) -> list[PatternHit]:
    hits: list[PatternHit] = []
    for i, line in enumerate(text.splitlines(), start=1):
        hits.extend(scan_line(line, i))
    return hits
