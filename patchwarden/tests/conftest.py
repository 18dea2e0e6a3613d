"""Shared fixtures for the PatchWarden test suite."""

from __future__ import annotations

import textwrap
from types import SimpleNamespace
from typing import Any

import pytest

from patchwarden.context.embeddings import HashingEmbedder
from patchwarden.context.session_store import SessionContextStore
from patchwarden.core.concurrency import WorkerPool
from patchwarden.core.config import Settings
from patchwarden.core.events import CollectingSink
from patchwarden.core.types import FixResult, FixStrategy, MatchType, Severity, VulnerabilityMatch


# ── Fake LLM gateway ─────────────────────────────────────────────────────────


class ScriptedLLM:
    """Completion gateway that answers from a list of ``(marker, reply)`` rules.

    The first rule whose marker occurs in the prompt wins. A reply may be a
    string, an exception instance (raised), or a list consumed one item per
    call (the last item repeats).
    """

    def __init__(self, rules: list[tuple[str, Any]] | None = None, default: str = "") -> None:
        self.rules = list(rules or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        prompt: str,
        system_prompt: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "temperature": temperature})
        for marker, reply in self.rules:
            if marker in prompt:
                if isinstance(reply, list):
                    reply = reply.pop(0) if len(reply) > 1 else reply[0]
                if isinstance(reply, BaseException):
                    raise reply
                return reply
        return self.default

    def calls_containing(self, marker: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if marker in c["prompt"]]


# ── Canned replies ───────────────────────────────────────────────────────────


def fix_reply(
    code: str,
    changes: str = "- Parameterized the query",
    functionality: str = "Fully backward compatible, same behavior for valid input.",
    imports: str = "None",
    fence: str = "python",
) -> str:
    return (
        f"FIXED_CODE:\n```{fence}\n{code}\n```\n"
        f"CHANGES_MADE:\n{changes}\n"
        f"FUNCTIONALITY_PRESERVED:\n{functionality}\n"
        f"NEW_IMPORTS:\n{imports}\n"
        "TESTING_NOTES:\nRun the unit tests.\n"
    )


def peer_reply(scores: tuple[int, int, int] = (9, 9, 9), issues: list[str] | None = None) -> str:
    issue_lines = "\n".join(f"- {i}" for i in issues) if issues else "- None"
    return (
        "OVERALL_ASSESSMENT: APPROVED\n"
        f"CODE_QUALITY_SCORE: {scores[0]}\n"
        f"ARCHITECTURE_SCORE: {scores[1]}\n"
        f"MAINTAINABILITY_SCORE: {scores[2]}\n"
        f"ISSUES:\n{issue_lines}\n"
        "SUGGESTIONS:\n- Add a regression test\n"
        "POSITIVE_ASPECTS:\n- Minimal, focused change\n"
    )


def expert_reply(
    score: int = 9,
    mitigation: str = "COMPLETE",
    new_vulns: str = "NONE",
    critical: list[str] | None = None,
) -> str:
    critical_lines = "\n".join(f"- {c}" for c in critical) if critical else "- None"
    return (
        "SECURITY_ASSESSMENT: The injection is fully mitigated.\n"
        f"SECURITY_SCORE: {score}\n"
        f"VULNERABILITY_MITIGATION: {mitigation}\n"
        f"NEW_VULNERABILITIES: {new_vulns}\n"
        f"CRITICAL_ISSUES:\n{critical_lines}\n"
        "SECURITY_IMPROVEMENTS:\n- Validate the id type\n"
        "COMPLIANCE_NOTES:\n- OWASP A03 addressed\n"
    )


PRESERVES_YES = "PRESERVES_FUNCTIONALITY: YES\nAll signatures unchanged."
PRESERVES_NO = "PRESERVES_FUNCTIONALITY: NO\nThe return type changed from list to dict."


# ── Sample sources ───────────────────────────────────────────────────────────

VULNERABLE_PY = textwrap.dedent('''\
    """User repository."""
    import sqlite3


    def find_user(cursor, user_id):
        # look up a single user
        cursor.execute("SELECT * FROM users WHERE id = " + user_id)
        return cursor.fetchone()
''')

FIXED_PY = textwrap.dedent('''\
    """User repository."""
    import sqlite3


    def find_user(cursor, user_id):
        # look up a single user with a bound parameter
        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        return cursor.fetchone()
''')


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, sized for small test inputs."""
    return Settings(
        _env_file=None,
        chunk_max_size=200,
        chunk_overlap=40,
        max_context_size=10_000,
        worker_pool_size=4,
        scan_batch_size=2,
        scan_progress_interval=1,
        llm_max_retries=1,
        llm_retry_base_delay=0.0,
    )


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder(dimension=64)


@pytest.fixture
def context_store(embedder: HashingEmbedder, settings: Settings) -> SessionContextStore:
    return SessionContextStore(embedder, settings=settings)


@pytest.fixture
def pool() -> WorkerPool:
    return WorkerPool(4)


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def replies() -> SimpleNamespace:
    """Canned LLM replies and sample sources."""
    return SimpleNamespace(
        fix=fix_reply,
        peer=peer_reply,
        expert=expert_reply,
        preserves_yes=PRESERVES_YES,
        preserves_no=PRESERVES_NO,
        vulnerable_py=VULNERABLE_PY,
        fixed_py=FIXED_PY,
    )


@pytest.fixture
def make_llm():
    return ScriptedLLM


@pytest.fixture
def sql_match() -> VulnerabilityMatch:
    return VulnerabilityMatch(
        id="SQL_INJECTION",
        title="SQL Injection",
        severity=Severity.HIGH,
        file_path="app/users.py",
        line_number=7,
        affected_code='cursor.execute("SELECT * FROM users WHERE id = " + user_id)',
        match_type=MatchType.CODE_PATTERN,
        language="python",
    )


@pytest.fixture
def semantic_match(sql_match: VulnerabilityMatch) -> VulnerabilityMatch:
    """Same finding, but located semantically so no template applies."""
    return sql_match.model_copy(update={"id": "CVE-2024-0001", "match_type": MatchType.SEMANTIC_ANALYSIS})


@pytest.fixture
def good_fix() -> FixResult:
    return FixResult(
        success=True,
        fixed_code=FIXED_PY,
        explanation="Fixed SQL Injection using minimal approach.",
        confidence=0.95,
        strategy=FixStrategy.MINIMAL,
    )
