"""Coarse per-language import / require extraction."""

from __future__ import annotations

import re
from typing import Callable

_PY_IMPORT_RE = re.compile(r"^\s*import\s+([\w.]+(?:\s*,\s*[\w.]+)*)")
_PY_FROM_RE = re.compile(r"^\s*from\s+([\w.]+)\s+import\b")
_JAVA_IMPORT_RE = re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+(?:\.\*)?)\s*;")
_JS_REQUIRE_RE = re.compile(r"""require\(\s*['"]([^'"]+)['"]\s*\)""")
_JS_IMPORT_RE = re.compile(r"""^\s*import\s+(?:[^'"]*?\s+from\s+)?['"]([^'"]+)['"]""")
_GO_SINGLE_RE = re.compile(r'^\s*import\s+(?:\w+\s+)?"([^"]+)"')
_GO_BLOCK_LINE_RE = re.compile(r'^\s*(?:[\w.]+\s+)?"([^"]+)"')
_RUBY_REQUIRE_RE = re.compile(r"""^\s*(?:require|require_relative|load)\s*\(?\s*['"]([^'"]+)['"]""")
_PHP_USE_RE = re.compile(r"^\s*use\s+([\w\\]+)")
_PHP_INCLUDE_RE = re.compile(
    r"""^\s*(?:require|require_once|include|include_once)\s*\(?\s*['"]([^'"]+)['"]"""
)


def _python(content: str) -> list[str]:
    deps: list[str] = []
    for line in content.splitlines():
        m = _PY_FROM_RE.match(line)
        if m:
            deps.append(m.group(1))
            continue
        m = _PY_IMPORT_RE.match(line)
        if m:
            deps.extend(name.strip() for name in m.group(1).split(","))
    return deps


def _java(content: str) -> list[str]:
    return [m.group(1) for line in content.splitlines() if (m := _JAVA_IMPORT_RE.match(line))]


def _javascript(content: str) -> list[str]:
    deps: list[str] = []
    for line in content.splitlines():
        m = _JS_IMPORT_RE.match(line)
        if m:
            deps.append(m.group(1))
        deps.extend(_JS_REQUIRE_RE.findall(line))
    return deps


def _go(content: str) -> list[str]:
    deps: list[str] = []
    in_block = False
    for line in content.splitlines():
        stripped = line.strip()
        if in_block:
            if stripped.startswith(")"):
                in_block = False
                continue
            m = _GO_BLOCK_LINE_RE.match(line)
            if m:
                deps.append(m.group(1))
        elif stripped.startswith("import ("):
            in_block = True
        else:
            m = _GO_SINGLE_RE.match(line)
            if m:
                deps.append(m.group(1))
    return deps


def _ruby(content: str) -> list[str]:
    return [m.group(1) for line in content.splitlines() if (m := _RUBY_REQUIRE_RE.match(line))]


def _php(content: str) -> list[str]:
    deps: list[str] = []
    for line in content.splitlines():
        m = _PHP_USE_RE.match(line) or _PHP_INCLUDE_RE.match(line)
        if m:
            deps.append(m.group(1))
    return deps


EXTRACTORS: dict[str, Callable[[str], list[str]]] = {
    "python": _python,
    "java": _java,
    "kotlin": _java,
    "javascript": _javascript,
    "typescript": _javascript,
    "go": _go,
    "ruby": _ruby,
    "php": _php,
}


def extract_dependencies(content: str, language: str) -> list[str]:
    """Distinct dependency references in first-seen order; ``[]`` for unknown languages."""
    extractor = EXTRACTORS.get(language)
    if extractor is None:
        return []
    return list(dict.fromkeys(extractor(content)))
