"""Per-language capability sets used by the fix generator.

Each :class:`LanguageSupport` bundles what the generator needs to know
about one language: templates, prompt guidelines, a lightweight syntax
check, the missing-import table, the dangerous-construct table and an
import injector. :class:`LanguageRegistry` picks one by language name or
file extension and falls back to a generic brace language.
"""

from __future__ import annotations

import ast
import logging
import re

from patchwarden.core.types import VulnerabilityMatch, detect_language
from patchwarden.remediator.templates import (
    JAVA_TEMPLATES,
    JAVASCRIPT_TEMPLATES,
    PYTHON_TEMPLATES,
    FixTemplate,
)
from patchwarden.scanner.dependencies import extract_dependencies

logger = logging.getLogger(__name__)

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}


def balanced_delimiters(code: str, line_comment: str = "//") -> bool:
    """True when (), [] and {} nest correctly outside strings and comments."""
    stack: list[str] = []
    i, n = 0, len(code)
    while i < n:
        ch = code[i]
        if code.startswith(line_comment, i):
            nl = code.find("\n", i)
            i = n if nl < 0 else nl
            continue
        if code.startswith("/*", i):
            close = code.find("*/", i + 2)
            if close < 0:
                return False
            i = close + 2
            continue
        if ch in "\"'`":
            j = i + 1
            while j < n and code[j] != ch:
                if code[j] == "\\":
                    j += 1
                elif code[j] == "\n" and ch != "`":
                    break
                j += 1
            i = j + 1
            continue
        if ch in _OPENERS:
            stack.append(ch)
        elif ch in _CLOSERS:
            if not stack or stack.pop() != _CLOSERS[ch]:
                return False
        i += 1
    return not stack


class LanguageSupport:
    """Generic brace language with no templates. Subclasses specialize it."""

    name = "generic"
    fence = ""
    extensions: tuple[str, ...] = ()
    uses_braces = True
    templates: dict[str, FixTemplate] = {}
    security_guidelines: tuple[str, ...] = (
        "Validate and sanitize all external input",
        "Use parameterized queries for database access",
        "Prefer well-reviewed security libraries over hand-written crypto",
        "Do not leak internal details in error messages",
    )
    # regex → module / import that provides it
    dependency_table: dict[str, str] = {}
    # (regex, label) of constructs that should not appear in a fix
    dangerous_patterns: tuple[tuple[str, str], ...] = (
        (r"\beval\s*\(", "dynamic code evaluation (eval)"),
        (r"\bexec\s*\(", "dynamic code execution (exec)"),
        (r"\bsystem\s*\(", "raw process execution (system)"),
    )
    _FUNCTION_RE = re.compile(
        r"^\s*(?:[\w<>\[\],]+\s+)+\w+\s*\([^;]*\)\s*(?:throws\s+[\w.,\s]+)?\s*\{?\s*$"
    )

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    def check_syntax(self, code: str) -> bool:
        return balanced_delimiters(code)

    def detect_missing_dependencies(self, code: str) -> list[str]:
        """Modules referenced by ``code`` that it never imports."""
        missing: list[str] = []
        for usage, module in self.dependency_table.items():
            if re.search(usage, code) and not self.has_import(code, module):
                missing.append(module)
        return missing

    def has_import(self, code: str, module: str) -> bool:
        return module in code

    def extract_dependencies(self, content: str) -> list[str]:
        return extract_dependencies(content, self.name)

    def inject_imports(self, code: str, imports: list[str]) -> str:
        return code

    def is_function_declaration(self, line: str) -> bool:
        stripped = line.strip()
        if stripped.startswith(("if", "for", "while", "switch", "catch", "return", "else")):
            return False
        return bool(self._FUNCTION_RE.match(line))

    def dangerous_constructs(self, code: str) -> list[str]:
        """Labels of dangerous constructs present in ``code``."""
        return [label for pattern, label in self.dangerous_patterns if re.search(pattern, code)]


class PythonSupport(LanguageSupport):
    name = "python"
    fence = "python"
    extensions = (".py",)
    uses_braces = False
    templates = PYTHON_TEMPLATES
    security_guidelines = (
        "Use parameterized queries (DB-API placeholders), never string formatting",
        "Use subprocess with argument lists and shell=False",
        "Use secrets or os.urandom for security-sensitive randomness",
        "Use hashlib.sha256 or stronger; bcrypt/argon2 for passwords",
        "Never unpickle untrusted data; prefer json",
        "Catch specific exceptions, not bare except",
    )
    dependency_table = {
        r"\bsubprocess\.": "subprocess",
        r"\bhashlib\.": "hashlib",
        r"\bsecrets\.": "secrets",
        r"\bos\.path\b": "os",
        r"\bjson\.": "json",
        r"\bre\.(?:compile|match|search|sub|findall)\(": "re",
        r"\bshlex\.": "shlex",
        r"\bhmac\.": "hmac",
    }
    dangerous_patterns = (
        (r"\beval\s*\(", "dynamic code evaluation (eval)"),
        (r"\bexec\s*\(", "dynamic code execution (exec)"),
        (r"\bos\.system\s*\(", "raw shell execution (os.system)"),
        (r"\b__import__\s*\(", "dynamic import (__import__)"),
        (r"\bpickle\.loads?\s*\(", "unsafe deserialization (pickle)"),
        (r"\byaml\.load\s*\((?![^)]*Loader\s*=)", "unsafe deserialization (yaml.load)"),
        (r"\bhashlib\.(?:md5|sha1)\s*\(", "weak hash (md5/sha1)"),
        (r"(?<![\w.])random\.random\s*\(", "insecure randomness (random.random)"),
        (r"shell\s*=\s*True", "shell=True process execution"),
    )
    _DEF_RE = re.compile(r"^\s*(?:async\s+)?def\s+\w+\s*\(")

    def check_syntax(self, code: str) -> bool:
        try:
            ast.parse(code)
        except SyntaxError:
            return False
        return True

    def has_import(self, code: str, module: str) -> bool:
        return bool(re.search(
            rf"^\s*(?:import\s+[\w.,\s]*\b{re.escape(module)}\b|from\s+{re.escape(module)}(?:\.\w+)*\s+import\b)",
            code,
            re.MULTILINE,
        ))

    def inject_imports(self, code: str, imports: list[str]) -> str:
        """Add ``import x`` lines after the existing top-level imports."""
        statements = []
        for imp in imports:
            imp = imp.strip()
            if not imp:
                continue
            statement = imp if imp.startswith(("import ", "from ")) else f"import {imp}"
            module = re.sub(r"^(?:from|import)\s+([\w.]+).*$", r"\1", statement)
            if not self.has_import(code, module) and statement not in statements:
                statements.append(statement)
        if not statements:
            return code

        lines = code.split("\n")
        insert_at = self._import_insertion_point(lines)
        return "\n".join(lines[:insert_at] + statements + lines[insert_at:])

    @staticmethod
    def _import_insertion_point(lines: list[str]) -> int:
        """Line index just past the last top-level import, else past the module header."""
        header_end = 0
        i = 0
        # Leading comments, blank lines and the module docstring.
        while i < len(lines):
            stripped = lines[i].strip()
            if not stripped or stripped.startswith("#"):
                i += 1
                continue
            if stripped.startswith(('"""', "'''")):
                quote = stripped[:3]
                if len(stripped) >= 6 and stripped.endswith(quote):
                    i += 1
                else:
                    i += 1
                    while i < len(lines) and quote not in lines[i]:
                        i += 1
                    i += 1
                header_end = i
            break

        last_import = None
        while i < len(lines):
            line = lines[i]
            if line.startswith(("import ", "from ")):
                if "(" in line and ")" not in line:
                    while i < len(lines) and ")" not in lines[i]:
                        i += 1
                last_import = i + 1
            elif line.strip() and not line.startswith("#") and not line[0].isspace():
                if last_import is not None or not line.startswith(("try:", "if ")):
                    break
            i += 1
        return last_import if last_import is not None else header_end

    def is_function_declaration(self, line: str) -> bool:
        return bool(self._DEF_RE.match(line))


class JavaSupport(LanguageSupport):
    name = "java"
    fence = "java"
    extensions = (".java",)
    templates = JAVA_TEMPLATES
    security_guidelines = (
        "Use parameterized queries for database operations",
        "Validate and sanitize all user inputs",
        "Use strong encryption algorithms (AES-256, RSA-2048+)",
        "Follow OWASP Java security guidelines",
        "Use security libraries from Spring Security or Apache Shiro when appropriate",
        "Implement proper exception handling without information leakage",
    )
    dependency_table = {
        r"\bPreparedStatement\b": "java.sql.PreparedStatement",
        r"\bStringEscapeUtils\b": "org.apache.commons.text.StringEscapeUtils",
        r"\bPaths\.": "java.nio.file.Paths",
        r"\bSecureRandom\b": "java.security.SecureRandom",
        r"\bMessageDigest\b": "java.security.MessageDigest",
    }
    dangerous_patterns = (
        (r"Statement.*executeQuery\s*\(.*\+", "string-built SQL query"),
        (r"Runtime\.getRuntime\(\)\.exec", "raw process execution (Runtime.exec)"),
        (r"new\s+File\(\s*request\.getParameter", "path built from request parameter"),
        (r"MessageDigest\.getInstance\(\s*\"(?:MD5|SHA-?1)\"\s*\)", "weak hash (MD5/SHA1)"),
        (r"new\s+ObjectInputStream\s*\(", "unsafe deserialization (ObjectInputStream)"),
    )

    def has_import(self, code: str, module: str) -> bool:
        package = module.rsplit(".", 1)[0]
        return bool(re.search(
            rf"^\s*import\s+(?:{re.escape(module)}|{re.escape(package)}\.\*)\s*;", code, re.MULTILINE,
        ))

    def inject_imports(self, code: str, imports: list[str]) -> str:
        """Insert ``import x;`` after the package clause or last import."""
        statements = [
            f"import {imp.strip().removeprefix('import ').rstrip(';')};"
            for imp in imports
            if imp.strip() and not self.has_import(code, imp.strip().removeprefix("import ").rstrip(";"))
        ]
        statements = list(dict.fromkeys(statements))
        if not statements:
            return code
        lines = code.split("\n")
        insert_at = 0
        for i, line in enumerate(lines):
            stripped = line.strip()
            if stripped.startswith("package ") or stripped.startswith("import "):
                insert_at = i + 1
        block = statements if insert_at else statements + [""]
        if insert_at and lines[insert_at - 1].strip().startswith("package "):
            block = [""] + statements
        return "\n".join(lines[:insert_at] + block + lines[insert_at:])


class JavaScriptSupport(LanguageSupport):
    name = "javascript"
    fence = "javascript"
    extensions = (".js", ".jsx", ".mjs", ".cjs")
    templates = JAVASCRIPT_TEMPLATES
    security_guidelines = (
        "Never pass user input to eval, Function or child_process.exec",
        "Use parameterized queries or an ORM query builder",
        "Encode output for the HTML context it lands in",
        "Use the crypto module for randomness and hashing",
        "Validate request bodies against a schema",
    )
    dependency_table = {
        r"\bcrypto\.": "crypto",
        r"\bpath\.(?:join|resolve|basename)\(": "path",
        r"\bchildProcess\.|\bexecFile\(": "child_process",
    }
    dangerous_patterns = (
        (r"\beval\s*\(", "dynamic code evaluation (eval)"),
        (r"\bnew\s+Function\s*\(", "dynamic code evaluation (Function)"),
        (r"child_process\.exec\s*\(|\bexec\s*\(", "raw shell execution (exec)"),
        (r"\.innerHTML\s*=", "unescaped HTML sink (innerHTML)"),
        (r"Math\.random\s*\(", "insecure randomness (Math.random)"),
        (r"createHash\(\s*['\"](?:md5|sha1)['\"]", "weak hash (md5/sha1)"),
    )
    _FUNCTION_JS_RE = re.compile(
        r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?"
        r"(?:function\b|(?:const|let|var)\s+\w+\s*=\s*(?:async\s*)?(?:function\b|\([^)]*\)\s*=>)"
        r"|\w+\s*\([^)]*\)\s*\{)"
    )

    def has_import(self, code: str, module: str) -> bool:
        quoted = rf"['\"]{re.escape(module)}['\"]"
        return bool(re.search(rf"require\(\s*{quoted}\s*\)|from\s+{quoted}|import\s+{quoted}", code))

    def inject_imports(self, code: str, imports: list[str]) -> str:
        """Add ``require`` (or ES ``import``) lines for missing modules."""
        uses_esm = bool(re.search(r"^\s*import\s.+from\s+['\"]", code, re.MULTILINE))
        statements = []
        for module in imports:
            module = module.strip()
            if not module or self.has_import(code, module):
                continue
            binding = re.sub(r"\W", "_", module.rsplit("/", 1)[-1])
            if uses_esm:
                statements.append(f"import * as {binding} from '{module}';")
            else:
                statements.append(f"const {binding} = require('{module}');")
        if not statements:
            return code
        lines = code.split("\n")
        insert_at = 0
        for i, line in enumerate(lines):
            stripped = line.strip()
            if stripped.startswith(("'use strict'", '"use strict"')) or (
                stripped.startswith(("import ", "const ", "let ", "var ")) and "require(" in stripped
            ) or re.match(r"import\s.+from\s+['\"]", stripped):
                insert_at = i + 1
        return "\n".join(lines[:insert_at] + statements + lines[insert_at:])

    def is_function_declaration(self, line: str) -> bool:
        stripped = line.strip()
        if stripped.startswith(("if", "for", "while", "switch", "catch", "return")):
            return False
        return bool(self._FUNCTION_JS_RE.match(line))


class TypeScriptSupport(JavaScriptSupport):
    name = "typescript"
    fence = "typescript"
    extensions = (".ts", ".tsx")


# ── Registry ─────────────────────────────────────────────────────────────────


class LanguageRegistry:
    """Selects a :class:`LanguageSupport` by language name or file extension."""

    def __init__(self, languages: list[LanguageSupport] | None = None) -> None:
        self._by_name: dict[str, LanguageSupport] = {}
        self._by_extension: dict[str, LanguageSupport] = {}
        self.fallback = LanguageSupport()
        for language in languages or []:
            self.register(language)

    @classmethod
    def default(cls) -> "LanguageRegistry":
        return cls([PythonSupport(), JavaSupport(), JavaScriptSupport(), TypeScriptSupport()])

    def register(self, language: LanguageSupport) -> None:
        self._by_name[language.name] = language
        for ext in language.extensions:
            self._by_extension.setdefault(ext, language)

    def for_language(self, name: str) -> LanguageSupport | None:
        return self._by_name.get((name or "").lower())

    def for_path(self, file_path: str) -> LanguageSupport:
        dot = file_path.rfind(".")
        if dot >= 0:
            language = self._by_extension.get(file_path[dot:].lower())
            if language is not None:
                return language
        return self.for_language(detect_language(file_path)) or self.fallback

    def for_match(self, match: VulnerabilityMatch) -> LanguageSupport:
        language = self.for_language(match.language)
        if language is not None:
            return language
        language = self.for_path(match.file_path)
        if language is self.fallback:
            logger.debug("No language module for %s, using generic support", match.file_path)
        return language

    @property
    def names(self) -> list[str]:
        return sorted(self._by_name)
