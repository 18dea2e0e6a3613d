"""Parsing of structured LLM responses.

Nothing here raises on malformed model output: callers get either the
parsed value or a :class:`ParseError` instance and decide what to do.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from patchwarden.core.errors import ParseError

SECTION_NAMES = (
    "FIXED_CODE",
    "CHANGES_MADE",
    "FUNCTIONALITY_PRESERVED",
    "NEW_IMPORTS",
    "TESTING_NOTES",
)

_FENCE_RE = re.compile(r"```[ \t]*([\w+#.-]*)[ \t]*\n(.*?)```", re.DOTALL)
_EMPTY_VALUES = {"", "none", "n/a", "na", "no", "-", "[]"}


@dataclass(frozen=True)
class ParsedSections:
    code: str
    changes: str = ""
    functionality: str = ""
    new_imports: list[str] = field(default_factory=list)
    testing_notes: str = ""


def extract_code_block(text: str, preferred: str = "") -> str | None:
    """Body of the first fenced block, preferring one tagged ``preferred``."""
    if not text:
        return None
    blocks = _FENCE_RE.findall(text)
    if not blocks:
        return None
    if preferred:
        for tag, body in blocks:
            if tag.lower() == preferred.lower() and body.strip():
                return body.rstrip("\n")
    for _, body in blocks:
        if body.strip():
            return body.rstrip("\n")
    return None


def split_sections(text: str, names: tuple[str, ...]) -> dict[str, str]:
    """Map each ``NAME:`` header present in ``text`` to the text up to the next header."""
    header_re = re.compile(rf"^[ \t#*]*({'|'.join(map(re.escape, names))})[ \t*]*:", re.MULTILINE)
    headers = list(header_re.finditer(text))
    sections: dict[str, str] = {}
    for i, m in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        sections.setdefault(m.group(1), text[m.end():end].strip())
    return sections


def parse_list(value: str) -> list[str]:
    """Comma- or newline-separated items, bullets stripped, empty markers dropped."""
    items: list[str] = []
    for raw in re.split(r"[,\n]", value or ""):
        item = raw.strip().lstrip("-*• ").strip().strip("`").strip()
        if item.lower() not in _EMPTY_VALUES and item not in items:
            items.append(item)
    return items


def parse_bullets(value: str) -> list[str]:
    """One item per non-empty line, bullets stripped. Commas inside an item are kept."""
    items: list[str] = []
    for raw in (value or "").splitlines():
        item = raw.strip().lstrip("-*• ").strip()
        if item.lower() not in _EMPTY_VALUES:
            items.append(item)
    return items


def parse_fix_response(text: str, fence: str = "") -> ParsedSections | ParseError:
    """Parse a ``FIXED_CODE / CHANGES_MADE / ...`` response."""
    if not text or not text.strip():
        return ParseError("Empty response")

    sections = split_sections(text, SECTION_NAMES)
    code_source = sections.get("FIXED_CODE", text)
    code = extract_code_block(code_source, fence) or extract_code_block(text, fence)
    if code is None:
        return ParseError(
            "Response has no FIXED_CODE block",
            details={"sections": sorted(sections)},
        )

    return ParsedSections(
        code=code,
        changes=_strip_fences(sections.get("CHANGES_MADE", "")),
        functionality=_strip_fences(sections.get("FUNCTIONALITY_PRESERVED", "")),
        new_imports=parse_list(_strip_fences(sections.get("NEW_IMPORTS", ""))),
        testing_notes=_strip_fences(sections.get("TESTING_NOTES", "")),
    )


def _strip_fences(value: str) -> str:
    return _FENCE_RE.sub(lambda m: m.group(2), value).strip()


def parse_functionality_verdict(text: str) -> tuple[bool | None, str]:
    """Read ``PRESERVES_FUNCTIONALITY: YES/NO`` and the rationale after it.

    Returns ``(None, text)`` when the verdict line is missing.
    """
    m = re.search(r"PRESERVES_FUNCTIONALITY\s*:\s*\**\s*(YES|NO)\b", text or "", re.IGNORECASE)
    if m is None:
        return None, (text or "").strip()
    return m.group(1).upper() == "YES", text[m.end():].strip()


def parse_score(value: str, default: int = 5, low: int = 1, high: int = 10) -> int:
    """First integer in ``value`` clamped to ``[low, high]``; ``default`` when absent."""
    m = re.search(r"-?\d+", value or "")
    if m is None:
        return default
    return max(low, min(high, int(m.group(0))))
