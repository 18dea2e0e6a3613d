"""Deterministic remediation templates for common vulnerability patterns.

Each language module owns an explicit ``dict[vulnerability_id, FixTemplate]``.
A template is a regex plus a replacement (string or callable) and the
imports the replacement needs. Applying a template is all-or-nothing: no
match means the caller falls through to LLM generation.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Callable, Union

Replacement = Union[str, Callable[["re.Match[str]"], str]]


@dataclass(frozen=True)
class FixTemplate:
    """A single remediation template for a vulnerability pattern."""

    id: str
    language: str
    title: str
    explanation: str
    pattern: str
    replacement: Replacement
    required_imports: tuple[str, ...] = ()
    references: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()

    @property
    def regex(self) -> re.Pattern[str]:
        return re.compile(self.pattern, re.MULTILINE)


@dataclass
class TemplateApplication:
    """Outcome of a template that matched."""

    template: FixTemplate
    fixed_code: str
    replacements: list[tuple[int, str, str]] = field(default_factory=list)  # (line, before, after)


def apply_template(
    template: FixTemplate,
    source: str,
    inject_imports: Callable[[str, list[str]], str] | None = None,
) -> TemplateApplication | None:
    """Substitute every match of ``template`` in ``source``.

    Returns ``None`` when the pattern does not occur.
    """
    regex = template.regex
    replacements: list[tuple[int, str, str]] = []

    def _substitute(m: re.Match[str]) -> str:
        after = template.replacement(m) if callable(template.replacement) else m.expand(template.replacement)
        line = source.count("\n", 0, m.start()) + 1
        replacements.append((line, m.group(0), after))
        return after

    fixed, count = regex.subn(_substitute, source)
    if count == 0:
        return None
    if template.required_imports and inject_imports is not None:
        fixed = inject_imports(fixed, list(template.required_imports))
    return TemplateApplication(template=template, fixed_code=fixed, replacements=replacements)


# ── Replacement builders ─────────────────────────────────────────────────────


def _python_parameterized_query(m: re.Match[str]) -> str:
    quote, sql = m.group("q"), m.group("sql")
    if m.group("op") == "%":
        sql = re.sub(r"'?%[sd]'?", "%s", sql)
    else:
        sql = sql.rstrip("'") + "%s"
    return f"{m.group('target')}.execute({quote}{sql}{quote}, ({m.group('arg')},))"


def _python_subprocess_run(m: re.Match[str]) -> str:
    literal = m.group("cmd")[1:-1]
    parts = [repr(p) for p in shlex.split(literal)]
    parts.append(m.group("arg"))
    return f"subprocess.run([{', '.join(parts)}], check=True)"


def _java_prepared_statement(m: re.Match[str]) -> str:
    indent = m.group("indent")
    sql = m.group("sql").rstrip("'")
    target = f"{m.group('decl') or ''}{m.group('rs')} = " if m.group("rs") else ""
    return (
        f'{indent}PreparedStatement pstmt = {m.group("stmt")}.getConnection()'
        f'.prepareStatement("{sql}?");\n'
        f"{indent}pstmt.setString(1, {m.group('arg')});\n"
        f"{indent}{target}pstmt.executeQuery();"
    )


# ── Python ───────────────────────────────────────────────────────────────────

PYTHON_TEMPLATES: dict[str, FixTemplate] = {
    "SQL_INJECTION": FixTemplate(
        id="SQL_INJECTION",
        language="python",
        title="Parameterized query",
        explanation="Use parameterized queries to prevent SQL injection",
        pattern=(
            r"(?P<target>[\w.]+)\.execute\(\s*(?P<q>[\"'])(?P<sql>(?:(?!(?P=q))[^\n])*)(?P=q)\s*"
            r"(?P<op>[+%])\s*\(?\s*(?P<arg>[\w.]+)\s*,?\s*\)?\s*\)"
        ),
        replacement=_python_parameterized_query,
        references=("CWE-89",),
        tags=("sql", "db-api"),
    ),
    "COMMAND_INJECTION": FixTemplate(
        id="COMMAND_INJECTION",
        language="python",
        title="subprocess with argument list",
        explanation="Use subprocess with list arguments to prevent command injection",
        pattern=r"(?<![\w.])os\.system\(\s*(?P<cmd>\"[^\"\n]*\"|'[^'\n]*')\s*\+\s*(?P<arg>[\w.]+)\s*\)",
        replacement=_python_subprocess_run,
        required_imports=("subprocess",),
        references=("CWE-78",),
    ),
    "WEAK_CRYPTO": FixTemplate(
        id="WEAK_CRYPTO",
        language="python",
        title="SHA-256 digest",
        explanation="Use strong cryptographic algorithms",
        pattern=r"(?<![\w.])hashlib\.(?:md5|sha1)\(",
        replacement="hashlib.sha256(",
        references=("CWE-327", "CWE-328"),
    ),
    "INSECURE_RANDOM": FixTemplate(
        id="INSECURE_RANDOM",
        language="python",
        title="OS-backed random source",
        explanation="Draw security-sensitive randomness from the operating system CSPRNG",
        pattern=r"(?<![\w.])random\.(?P<fn>random|randint|choice|uniform|shuffle|sample|randrange)\(",
        replacement=r"secrets.SystemRandom().\g<fn>(",
        required_imports=("secrets",),
        references=("CWE-338",),
    ),
    "UNSAFE_DESERIALIZATION": FixTemplate(
        id="UNSAFE_DESERIALIZATION",
        language="python",
        title="JSON instead of pickle",
        explanation="Use JSON instead of pickle for untrusted data",
        pattern=r"(?<![\w.])pickle\.(?P<fn>loads?)\(",
        replacement=r"json.\g<fn>(",
        required_imports=("json",),
        references=("CWE-502",),
    ),
}

# ── Java ─────────────────────────────────────────────────────────────────────

JAVA_TEMPLATES: dict[str, FixTemplate] = {
    "SQL_INJECTION": FixTemplate(
        id="SQL_INJECTION",
        language="java",
        title="PreparedStatement",
        explanation="Use PreparedStatement to prevent SQL injection",
        pattern=(
            r"^(?P<indent>[ \t]*)(?:(?P<decl>ResultSet\s+)?(?P<rs>\w+)\s*=\s*)?"
            r"(?P<stmt>\w+)\.executeQuery\(\s*\"(?P<sql>[^\"\n]*)\"\s*\+\s*(?P<arg>[\w.]+(?:\(\))?)\s*\);"
        ),
        replacement=_java_prepared_statement,
        required_imports=("java.sql.PreparedStatement",),
        references=("CWE-89",),
    ),
    "XSS": FixTemplate(
        id="XSS",
        language="java",
        title="HTML-escape reflected parameter",
        explanation="Escape HTML to prevent XSS attacks",
        pattern=r"response\.getWriter\(\)\.write\((?P<arg>[^;\n]*request\.getParameter\([^)]*\)[^;\n]*)\);",
        replacement=r"response.getWriter().write(StringEscapeUtils.escapeHtml4(\g<arg>));",
        required_imports=("org.apache.commons.text.StringEscapeUtils",),
        references=("CWE-79",),
    ),
    "WEAK_CRYPTO": FixTemplate(
        id="WEAK_CRYPTO",
        language="java",
        title="SHA-256 MessageDigest",
        explanation="Use strong cryptographic algorithms",
        pattern=r"MessageDigest\.getInstance\(\s*\"(?:MD5|SHA-?1)\"\s*\)",
        replacement='MessageDigest.getInstance("SHA-256")',
        references=("CWE-327",),
    ),
    "INSECURE_RANDOM": FixTemplate(
        id="INSECURE_RANDOM",
        language="java",
        title="SecureRandom",
        explanation="Use SecureRandom for security-sensitive values",
        pattern=r"\bnew\s+Random\(\s*\)",
        replacement="new SecureRandom()",
        required_imports=("java.security.SecureRandom",),
        references=("CWE-338",),
    ),
}

# ── JavaScript / TypeScript ──────────────────────────────────────────────────

JAVASCRIPT_TEMPLATES: dict[str, FixTemplate] = {
    "WEAK_CRYPTO": FixTemplate(
        id="WEAK_CRYPTO",
        language="javascript",
        title="SHA-256 hash",
        explanation="Use strong cryptographic algorithms",
        pattern=r"createHash\(\s*(?P<q>['\"])(?:md5|sha1)(?P=q)\s*\)",
        replacement=r"createHash(\g<q>sha256\g<q>)",
        references=("CWE-327",),
    ),
    "INSECURE_RANDOM": FixTemplate(
        id="INSECURE_RANDOM",
        language="javascript",
        title="crypto.randomInt",
        explanation="Use the crypto module instead of Math.random()",
        pattern=r"(?<![\w.])Math\.random\(\)",
        replacement="(crypto.randomInt(0, 2 ** 32) / 2 ** 32)",
        required_imports=("crypto",),
        references=("CWE-338",),
    ),
}
