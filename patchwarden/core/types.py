"""Shared enums and types used across the engine."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, enum.Enum):
    """Vulnerability severity level."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFORMATIONAL = "informational"


class MatchType(str, enum.Enum):
    """How a vulnerability match was located."""

    DEPENDENCY_VERSION = "dependency_version"
    CODE_PATTERN = "code_pattern"
    SEMANTIC_ANALYSIS = "semantic_analysis"
    MANUAL_REVIEW = "manual_review"


class FixStrategy(str, enum.Enum):
    """Named fix-generation approach."""

    TEMPLATE = "template"
    MINIMAL = "minimal"
    BEST_PRACTICE = "best_practice"
    DEFENSIVE = "defensive"


class IssueSeverity(str, enum.Enum):
    """Severity of a validation issue on a generated fix."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueType(str, enum.Enum):
    SYNTAX_ERROR = "syntax_error"
    MISSING_DEPENDENCY = "missing_dependency"
    SECURITY_CONCERN = "security_concern"
    LOGIC_ERROR = "logic_error"


# ── Languages ────────────────────────────────────────────────────────────────

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".py": "python",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rb": "ruby",
    ".php": "php",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".swift": "swift",
    ".sql": "sql",
}


def detect_language(file_path: str) -> str:
    """Map a path to a language name, or the bare extension when unknown."""
    dot = file_path.rfind(".")
    if dot < 0 or "/" in file_path[dot:]:
        return ""
    ext = file_path[dot:].lower()
    return LANGUAGE_BY_EXTENSION.get(ext, ext.lstrip("."))


# ── Context ──────────────────────────────────────────────────────────────────


class CodeChunk(BaseModel):
    """Bounded window of a file, the unit of semantic indexing."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    file_path: str
    start_offset: int
    end_offset: int
    start_line: int
    end_line: int
    text: str
    embedding: tuple[float, ...] = ()
    sequence_index: int = 0
    file_type: str = ""
    inserted_at: int = 0


class RelevantContext(BaseModel):
    """A chunk returned by semantic retrieval, mapped for prompt building."""

    file_path: str
    content: str
    start_line: int
    end_line: int
    file_type: str = ""
    relevance_score: float = 0.0

    @property
    def line_range(self) -> tuple[int, int]:
        return (self.start_line, self.end_line)


# ── Findings ─────────────────────────────────────────────────────────────────


class VulnerabilityMatch(BaseModel):
    """A located, typed security finding awaiting remediation."""

    id: str
    title: str
    severity: Severity = Severity.MEDIUM
    file_path: str
    line_number: int
    affected_code: str = ""
    match_type: MatchType = MatchType.CODE_PATTERN
    confidence: float = 0.7
    language: str = ""
    description: str = ""
    indicators: list[str] = Field(default_factory=list)


# ── Fix synthesis ────────────────────────────────────────────────────────────


class FixCandidate(BaseModel):
    """One proposed patch from one generation strategy, pre-selection."""

    strategy: FixStrategy
    code: str
    confidence: float = 0.8
    score: float = 0.0
    changes_description: str = ""
    functionality_notes: str = ""
    new_dependencies: list[str] = Field(default_factory=list)


class CodeChange(BaseModel):
    """A single changed line inside the reported diff window."""

    start_line: int
    end_line: int
    original_code: str = ""
    fixed_code: str = ""
    change_type: str = "MODIFY"  # ADD, REMOVE, MODIFY
    reason: str = ""


class ValidationIssue(BaseModel):
    type: IssueType
    severity: IssueSeverity
    message: str
    line: int | None = None


class FixResult(BaseModel):
    """Final artifact of one ``generate_fix`` call."""

    success: bool
    fixed_code: str = ""
    explanation: str = ""
    changes: list[CodeChange] = Field(default_factory=list)
    confidence: float = 0.0
    warnings: list[str] = Field(default_factory=list)
    strategy: FixStrategy | None = None
    auto_corrected: bool = False
    validation_issues: list[ValidationIssue] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Progress events ──────────────────────────────────────────────────────────


class ProgressEvent(BaseModel):
    """Progress notification emitted during scanning and review transitions."""

    phase: str
    message: str = ""
    progress: float | None = None
    file_index: int | None = None
    total: int | None = None
    session_id: str = ""
    task_id: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
