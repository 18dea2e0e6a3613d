"""Error taxonomy for the remediation pipeline.

Only :class:`ConfigurationError` and :class:`FatalIOError` are meant to
cross component boundaries. Everything else is caught where it happens and
turned into structured metadata (skipped chunks, discarded candidates,
validation issues, review records).
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes attached to every pipeline error."""

    # Configuration
    CONFIG_INVALID = "CONFIG_INVALID"

    # Repository / file access
    REPO_NOT_FOUND = "REPO_NOT_FOUND"
    FILE_UNREADABLE = "FILE_UNREADABLE"

    # External services
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    EXTERNAL_SERVICE_TIMEOUT = "EXTERNAL_SERVICE_TIMEOUT"

    # Fix synthesis
    PARSE_FAILED = "PARSE_FAILED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FIX_GENERATION_FAILED = "FIX_GENERATION_FAILED"

    # Review workflow
    REVIEW_REJECTED = "REVIEW_REJECTED"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class PatchWardenError(Exception):
    """Base class for all pipeline errors."""

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


class ConfigurationError(PatchWardenError):
    """Invalid construction-time configuration (e.g. chunk sizes)."""

    default_code = ErrorCode.CONFIG_INVALID


class TransientServiceError(PatchWardenError):
    """Embedding / LLM timeout or server-side failure."""

    default_code = ErrorCode.EXTERNAL_SERVICE_ERROR


class ParseError(PatchWardenError):
    """An LLM response is missing a required section."""

    default_code = ErrorCode.PARSE_FAILED


class ValidationError(PatchWardenError):
    """A generated fix failed syntax, security or functionality checks."""

    default_code = ErrorCode.VALIDATION_FAILED


class WorkflowRejection(PatchWardenError):
    """A review stage disapproved the fix under evaluation."""

    default_code = ErrorCode.REVIEW_REJECTED

    def __init__(self, message: str, required_changes: list[str] | None = None) -> None:
        super().__init__(message, details={"required_changes": list(required_changes or [])})
        self.required_changes = list(required_changes or [])


class InvalidTransitionError(PatchWardenError):
    """A transition was requested that the stage table does not allow."""

    default_code = ErrorCode.INVALID_TRANSITION


class FileReadError(PatchWardenError):
    """A single file could not be read or decoded."""

    default_code = ErrorCode.FILE_UNREADABLE


class FatalIOError(PatchWardenError):
    """The scan root itself is inaccessible."""

    default_code = ErrorCode.REPO_NOT_FOUND
