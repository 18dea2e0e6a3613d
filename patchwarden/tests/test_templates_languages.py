"""Tests for remediation templates and per-language support."""

from __future__ import annotations

import pytest

from patchwarden.core.types import VulnerabilityMatch
from patchwarden.remediator.languages import (
    JavaScriptSupport,
    JavaSupport,
    LanguageRegistry,
    LanguageSupport,
    PythonSupport,
    balanced_delimiters,
)
from patchwarden.remediator.templates import (
    JAVA_TEMPLATES,
    JAVASCRIPT_TEMPLATES,
    PYTHON_TEMPLATES,
    apply_template,
)

python = PythonSupport()
java = JavaSupport()
javascript = JavaScriptSupport()


# ── Templates ────────────────────────────────────────────────────────────────


class TestPythonTemplates:
    def test_sql_concatenation_becomes_placeholder(self, replies):
        applied = apply_template(PYTHON_TEMPLATES["SQL_INJECTION"], replies.vulnerable_py, python.inject_imports)
        assert applied is not None
        assert 'cursor.execute("SELECT * FROM users WHERE id = %s", (user_id,))' in applied.fixed_code
        assert " + user_id" not in applied.fixed_code
        [(line, before, after)] = applied.replacements
        assert line == 7
        assert before.endswith("+ user_id)")

    def test_sql_percent_formatting(self):
        src = "cursor.execute(\"SELECT * FROM t WHERE name = '%s'\" % name)\n"
        applied = apply_template(PYTHON_TEMPLATES["SQL_INJECTION"], src)
        assert applied.fixed_code == 'cursor.execute("SELECT * FROM t WHERE name = %s", (name,))\n'

    def test_command_injection_uses_argument_list(self):
        src = "import os\n\n\ndef ping(host):\n    os.system(\"ping -c 1 \" + host)\n"
        applied = apply_template(PYTHON_TEMPLATES["COMMAND_INJECTION"], src, python.inject_imports)
        assert "subprocess.run(['ping', '-c', '1', host], check=True)" in applied.fixed_code
        assert "import os\nimport subprocess\n" in applied.fixed_code

    def test_insecure_random(self):
        applied = apply_template(PYTHON_TEMPLATES["INSECURE_RANDOM"], "n = random.randint(1, 6)\n", python.inject_imports)
        assert "secrets.SystemRandom().randint(1, 6)" in applied.fixed_code
        assert applied.fixed_code.startswith("import secrets\n")

    @pytest.mark.parametrize(
        "template_id, src",
        [
            ("INSECURE_RANDOM", "import numpy as np\nx = np.random.randint(0, 10)\n"),
            ("INSECURE_RANDOM", "jitter = self.random.uniform(0, 1)\n"),
            ("UNSAFE_DESERIALIZATION", "model = joblib.pickle.load(fh)\n"),
            ("WEAK_CRYPTO", "digest = my_hashlib.md5(data)\n"),
        ],
    )
    def test_attribute_lookalikes_are_left_alone(self, template_id, src):
        assert apply_template(PYTHON_TEMPLATES[template_id], src, python.inject_imports) is None

    def test_no_match_returns_none(self):
        assert apply_template(PYTHON_TEMPLATES["WEAK_CRYPTO"], "digest = hashlib.sha256(b'x')\n") is None


class TestJavaTemplates:
    def test_prepared_statement(self):
        src = "        ResultSet rs = stmt.executeQuery(\"SELECT * FROM users WHERE name = '\" + name);\n"
        applied = apply_template(JAVA_TEMPLATES["SQL_INJECTION"], src)
        assert applied.fixed_code == (
            "        PreparedStatement pstmt = stmt.getConnection()"
            ".prepareStatement(\"SELECT * FROM users WHERE name = ?\");\n"
            "        pstmt.setString(1, name);\n"
            "        ResultSet rs = pstmt.executeQuery();\n"
        )

    def test_weak_digest(self):
        applied = apply_template(JAVA_TEMPLATES["WEAK_CRYPTO"], 'MessageDigest.getInstance("MD5");')
        assert applied.fixed_code == 'MessageDigest.getInstance("SHA-256");'


class TestJavaScriptTemplates:
    def test_weak_hash_keeps_quote_style(self):
        applied = apply_template(JAVASCRIPT_TEMPLATES["WEAK_CRYPTO"], "crypto.createHash('md5')")
        assert applied.fixed_code == "crypto.createHash('sha256')"


# ── Language support ─────────────────────────────────────────────────────────


class TestSyntax:
    def test_python_uses_parser(self, replies):
        assert python.check_syntax(replies.vulnerable_py)
        assert not python.check_syntax("def f(:\n    pass\n")

    @pytest.mark.parametrize("code, ok", [
        ("class A { void f() { int[] a = new int[2]; } }", True),
        ("class A { void f() { }", False),
        ('String s = "{";', True),
        ("// {\nint x = 1;", True),
        ("/* ( */ int y = (1);", True),
        ("int z = (1];", False),
    ])
    def test_balanced_delimiters(self, code, ok):
        assert balanced_delimiters(code) is ok
        assert java.check_syntax(code) is ok


class TestImports:
    def test_python_inject_after_existing_imports(self, replies):
        fixed = python.inject_imports(replies.vulnerable_py, ["subprocess", "sqlite3"])
        assert "import sqlite3\nimport subprocess\n" in fixed
        assert fixed.count("import sqlite3") == 1

    def test_python_from_import_counts(self):
        code = "from hashlib import sha256\n\nx = 1\n"
        assert python.has_import(code, "hashlib")
        assert python.inject_imports(code, ["hashlib"]) == code

    def test_java_inject_after_last_import(self):
        code = "package com.acme;\n\nimport java.util.List;\n\nclass A {}\n"
        fixed = java.inject_imports(code, ["java.sql.PreparedStatement"])
        assert "import java.util.List;\nimport java.sql.PreparedStatement;\n" in fixed

    def test_java_wildcard_import_satisfies(self):
        code = "import java.sql.*;\nclass A {}\n"
        assert java.inject_imports(code, ["java.sql.PreparedStatement"]) == code

    def test_javascript_require_style(self):
        code = "const fs = require('fs');\n\nfunction f() {}\n"
        fixed = javascript.inject_imports(code, ["crypto"])
        assert fixed.startswith("const fs = require('fs');\nconst crypto = require('crypto');\n")

    def test_javascript_esm_style(self):
        code = "import fs from 'fs';\nexport const x = 1;\n"
        assert "import * as crypto from 'crypto';" in javascript.inject_imports(code, ["crypto"])

    def test_missing_dependencies(self):
        assert python.detect_missing_dependencies("subprocess.run(['ls'], check=True)") == ["subprocess"]
        assert python.detect_missing_dependencies("import subprocess\nsubprocess.run(['ls'])") == []
        assert java.detect_missing_dependencies("SecureRandom r = new SecureRandom();") == [
            "java.security.SecureRandom",
        ]


class TestDeclarationsAndDanger:
    @pytest.mark.parametrize("support, line, expected", [
        (python, "    async def handler(request):", True),
        (python, "    result = handler(request)", False),
        (java, "    public static void main(String[] args) {", True),
        (java, "    if (x > 0) {", False),
        (javascript, "export async function load(id) {", True),
        (javascript, "const handler = (req, res) => {", True),
        (javascript, "  return render(el);", False),
    ])
    def test_is_function_declaration(self, support, line, expected):
        assert support.is_function_declaration(line) is expected

    def test_dangerous_constructs(self):
        labels = python.dangerous_constructs("data = pickle.loads(blob)\nsubprocess.run(cmd, shell=True)")
        assert "unsafe deserialization (pickle)" in labels
        assert "shell=True process execution" in labels
        assert javascript.dangerous_constructs("el.innerHTML = html") == ["unescaped HTML sink (innerHTML)"]


class TestRegistry:
    def test_default_names(self):
        assert LanguageRegistry.default().names == ["java", "javascript", "python", "typescript"]

    def test_lookup_by_name_and_extension(self):
        registry = LanguageRegistry.default()
        assert registry.for_language("Python").name == "python"
        assert registry.for_path("web/app.tsx").name == "typescript"
        assert registry.for_path("web/app.js").name == "javascript"
        assert registry.for_path("Main.java").name == "java"

    def test_unknown_falls_back_to_generic(self):
        registry = LanguageRegistry.default()
        support = registry.for_path("lib/thing.rb")
        assert support is registry.fallback
        assert type(support) is LanguageSupport
        assert support.templates == {}

    def test_for_match_prefers_declared_language(self):
        registry = LanguageRegistry.default()
        match = VulnerabilityMatch(id="X", title="x", file_path="script.txt", line_number=1, language="java")
        assert registry.for_match(match).name == "java"
        undeclared = match.model_copy(update={"language": "", "file_path": "src/App.java"})
        assert registry.for_match(undeclared).name == "java"
