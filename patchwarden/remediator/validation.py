"""Heuristic validation of a generated fix.

Four checks, in order:
  1. Lightweight syntax check from the language module (ERROR)
  2. Missing-import table (WARNING)
  3. Dangerous constructs that the original file did not contain (ERROR)
  4. LLM functionality-preservation verdict (NO → ERROR, call failure → WARNING)

A fix is valid iff no ERROR remains.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import TransientServiceError, ValidationError
from patchwarden.core.llm_client import CompletionGateway
from patchwarden.core.types import IssueSeverity, IssueType, ValidationIssue
from patchwarden.remediator.languages import LanguageSupport
from patchwarden.remediator.parsing import parse_functionality_verdict

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity != IssueSeverity.ERROR]

    def raise_if_invalid(self) -> None:
        """For strict callers that prefer an exception over issue data."""
        if not self.valid:
            raise ValidationError(
                "; ".join(i.message for i in self.errors),
                details={"issues": [i.model_dump(mode="json") for i in self.errors]},
            )


def new_dangerous_constructs(original: str, fixed: str, language: LanguageSupport) -> list[str]:
    """Dangerous constructs in ``fixed`` that ``original`` did not already contain."""
    before = set(language.dangerous_constructs(original))
    return [label for label in language.dangerous_constructs(fixed) if label not in before]


def build_functionality_prompt(original: str, fixed: str, language: LanguageSupport) -> str:
    return (
        f"Analyze if this {language.display_name} security fix preserves the original functionality:\n\n"
        f"ORIGINAL CODE:\n```{language.fence}\n{original}\n```\n\n"
        f"FIXED CODE:\n```{language.fence}\n{fixed}\n```\n\n"
        "Check if:\n"
        "1. All original method signatures are preserved\n"
        "2. Return values remain the same for valid inputs\n"
        "3. Side effects are maintained\n"
        "4. API contracts are not broken\n\n"
        "Respond with: PRESERVES_FUNCTIONALITY: YES/NO\n"
        "If NO, explain what functionality is broken."
    )


class FixValidator:
    """Runs the validation checks against one fixed file."""

    def __init__(self, review_llm: CompletionGateway | None, settings: Settings | None = None) -> None:
        self.review_llm = review_llm
        self.settings = settings or get_settings()

    async def validate(
        self,
        fixed_code: str,
        original_code: str,
        language: LanguageSupport,
    ) -> ValidationReport:
        issues: list[ValidationIssue] = []

        if not language.check_syntax(fixed_code):
            issues.append(ValidationIssue(
                type=IssueType.SYNTAX_ERROR,
                severity=IssueSeverity.ERROR,
                message=f"{language.display_name} syntax error in generated fix",
            ))

        for module in language.detect_missing_dependencies(fixed_code):
            issues.append(ValidationIssue(
                type=IssueType.MISSING_DEPENDENCY,
                severity=IssueSeverity.WARNING,
                message=f"Potentially missing dependency: {module}",
            ))

        for label in new_dangerous_constructs(original_code, fixed_code, language):
            issues.append(ValidationIssue(
                type=IssueType.SECURITY_CONCERN,
                severity=IssueSeverity.ERROR,
                message=f"Fix introduces a new security concern: {label}",
            ))

        functionality = await self.check_functionality(original_code, fixed_code, language)
        if functionality is not None:
            issues.append(functionality)

        return ValidationReport(issues=issues)

    async def check_functionality(
        self,
        original_code: str,
        fixed_code: str,
        language: LanguageSupport,
    ) -> ValidationIssue | None:
        if self.review_llm is None:
            return None
        prompt = build_functionality_prompt(original_code, fixed_code, language)
        try:
            response = await self.review_llm.complete(
                prompt, temperature=self.settings.analysis_temperature,
            )
        except TransientServiceError as e:
            logger.warning("Failed to validate functionality with LLM: %s", e)
            return ValidationIssue(
                type=IssueType.LOGIC_ERROR,
                severity=IssueSeverity.WARNING,
                message="Functionality check unavailable: review model call failed",
            )

        preserved, rationale = parse_functionality_verdict(response)
        if preserved is False:
            return ValidationIssue(
                type=IssueType.LOGIC_ERROR,
                severity=IssueSeverity.ERROR,
                message=f"Fix may break existing functionality: {rationale[:500]}".rstrip(": "),
            )
        return None
