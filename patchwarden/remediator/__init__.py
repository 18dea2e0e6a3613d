"""Fix synthesis for located vulnerabilities.

Template-based fixes for known patterns, multi-strategy LLM generation
with scoring and selection, and heuristic validation of the result.
"""

from patchwarden.remediator.fix_generator import CandidateFixGenerator
from patchwarden.remediator.languages import LanguageRegistry, LanguageSupport
from patchwarden.remediator.validation import FixValidator, ValidationReport

__all__ = [
    "CandidateFixGenerator",
    "FixValidator",
    "LanguageRegistry",
    "LanguageSupport",
    "ValidationReport",
]
