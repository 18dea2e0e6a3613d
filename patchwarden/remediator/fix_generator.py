"""Candidate fix generator: template first, then multi-strategy LLM synthesis.

Pipeline for one finding:
  1. Context analysis (enclosing function, data flow, nearby defenses,
     dependencies, related chunks from the session store)
  2. Template short-circuit for registered ``CODE_PATTERN`` ids
  3. MINIMAL / BEST_PRACTICE / DEFENSIVE candidates generated concurrently
  4. Scoring and selection
  5. Import injection + one polish pass on the review model
  6. Validation, then at most one auto-correction round
"""

from __future__ import annotations

import difflib
import functools
import logging
import time

from patchwarden.context.session_store import SessionContextStore
from patchwarden.core.concurrency import WorkerPool
from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import ParseError, TransientServiceError
from patchwarden.core.llm_client import CompletionGateway
from patchwarden.core.types import (
    CodeChange,
    FixCandidate,
    FixResult,
    FixStrategy,
    MatchType,
    ValidationIssue,
    VulnerabilityMatch,
)
from patchwarden.remediator.analysis import FixAnalysis, analyze_fix_context
from patchwarden.remediator.languages import LanguageRegistry, LanguageSupport
from patchwarden.remediator.parsing import extract_code_block, parse_fix_response
from patchwarden.remediator.scoring import STRATEGY_ORDER, score_candidate, select_best
from patchwarden.remediator.templates import apply_template
from patchwarden.remediator.validation import FixValidator, ValidationReport

logger = logging.getLogger(__name__)

AUTO_CORRECTED_WARNING = "Auto-corrected validation issues"

# ── Prompts ──────────────────────────────────────────────────────────────────

STRATEGY_RUBRICS: dict[FixStrategy, tuple[str, list[str], str, list[str]]] = {
    FixStrategy.MINIMAL: (
        "Generate a MINIMAL fix that:",
        [
            "Fixes the security vulnerability with the least code changes",
            "Preserves ALL existing functionality",
            "Maintains the current code style and patterns",
            "Does not introduce new dependencies unless absolutely necessary",
        ],
        "Critical Requirements",
        [
            "The fix MUST be backward compatible",
            "Do NOT change method signatures",
            "Do NOT modify unrelated code",
            "Preserve all existing behavior except the security issue",
        ],
    ),
    FixStrategy.BEST_PRACTICE: (
        "Generate a fix following BEST PRACTICES that:",
        [
            "Implements the most secure solution using industry standards",
            "Uses well-tested security libraries when appropriate",
            "Follows the language's security guidelines",
            "Includes proper error handling and logging",
        ],
        "Best Practice Requirements",
        [
            "Use established security libraries",
            "Implement defense in depth",
            "Add appropriate security headers/configurations",
            "Include security-focused comments",
        ],
    ),
    FixStrategy.DEFENSIVE: (
        "Generate a DEFENSIVE fix that:",
        [
            "Assumes all inputs are malicious",
            "Implements multiple layers of validation",
            "Fails securely with proper error handling",
            "Includes comprehensive logging for security events",
        ],
        "Defensive Programming Requirements",
        [
            "Validate ALL inputs at multiple levels",
            "Prefer allowlisting over denylisting",
            "Use principle of least privilege",
            "Add security event logging",
            "Handle all error cases explicitly",
        ],
    ),
}


def build_generation_prompt(
    strategy: FixStrategy,
    match: VulnerabilityMatch,
    analysis: FixAnalysis,
    file_content: str,
    language: LanguageSupport,
    required_changes: list[str] | None = None,
) -> str:
    """Prompt for one strategy: rubric, finding, context and output format."""
    intro, goals, req_title, requirements = STRATEGY_RUBRICS[strategy]
    fence = language.fence
    parts: list[str] = [
        f"You are an expert {language.display_name} security engineer.",
        intro,
        *(f"{i}. {goal}" for i, goal in enumerate(goals, 1)),
        "",
        f"## {req_title}",
        *(f"- {r}" for r in requirements),
        "",
        "## Vulnerability Details",
        f"ID: {match.id}",
        f"Type: {match.title}",
        f"Severity: {match.severity.value}",
        f"File: {match.file_path}",
        f"Line: {match.line_number}",
    ]
    if match.description:
        parts.append(f"Description: {match.description}")
    parts += ["Affected Code:", f"```{fence}", match.affected_code, "```"]

    if analysis.method_context:
        parts += [
            "",
            f"## Method Context (lines {analysis.method_start_line}-{analysis.method_end_line})",
            f"```{fence}",
            analysis.method_context,
            "```",
        ]
    if analysis.data_flow:
        parts += ["", "## Data Flow"]
        parts += [f"- {name} <- {source}" for name, source in analysis.data_flow.items()]
    if analysis.security_measures:
        parts += ["", "## Existing Security Measures"]
        parts += [f"- {m}" for m in analysis.security_measures]

    parts += ["", "## Full File Context", f"```{fence}", file_content, "```"]

    if analysis.related_context:
        parts += ["", "## Related Code Usage"]
        for ctx in analysis.related_context:
            parts += [
                f"File: {ctx.file_path} (lines {ctx.start_line}-{ctx.end_line})",
                f"```{fence}",
                ctx.content,
                "```",
            ]

    parts += ["", "## Security Guidelines", *(f"- {g}" for g in language.security_guidelines)]

    if required_changes:
        parts += ["", "## Required Changes From Previous Review"]
        parts += [f"- {c}" for c in required_changes]

    parts += [
        "",
        "## Output Format",
        "FIXED_CODE:",
        f"```{fence}",
        "[Complete fixed file content]",
        "```",
        "CHANGES_MADE:",
        "[List each change and why]",
        "FUNCTIONALITY_PRESERVED:",
        "[Explain how existing functionality is maintained]",
        "NEW_IMPORTS:",
        "[Any new imports needed, comma-separated]",
        "TESTING_NOTES:",
        "[How to test the fix]",
    ]
    return "\n".join(parts)


def build_polish_prompt(code: str, language: LanguageSupport) -> str:
    return (
        f"Review and polish this {language.display_name} security fix:\n\n"
        f"```{language.fence}\n{code}\n```\n\n"
        "Ensure:\n"
        f"1. Code follows {language.display_name} best practices and idioms\n"
        "2. Variable names are clear and consistent\n"
        "3. Comments explain security decisions\n"
        "4. No unnecessary changes\n"
        "5. Maintains existing code style\n\n"
        "Do NOT change behavior. Return ONLY the polished code in a fenced code block."
    )


def build_correction_prompt(code: str, issues: list[ValidationIssue], language: LanguageSupport) -> str:
    lines = [
        f"The following {language.display_name} security fix has validation issues:",
        "",
        f"```{language.fence}",
        code,
        "```",
        "",
        "Validation Issues:",
    ]
    lines += [f"- {i.severity.value.upper()}: {i.message}" for i in issues]
    lines += [
        "",
        "Please fix these issues while maintaining the security fix.",
        "Return ONLY the corrected code in a fenced code block.",
    ]
    return "\n".join(lines)


SYSTEM_PROMPT = (
    "You are a senior application security engineer. You write precise, "
    "compilable patches and always answer in the requested section format."
)


# ── Diff helpers ─────────────────────────────────────────────────────────────


def build_changes(
    original: str,
    fixed: str,
    line_number: int,
    margin: int,
    reason: str = "",
) -> list[CodeChange]:
    """Changed hunks that touch ``line_number ± margin`` in the original file."""
    before = original.split("\n")
    after = fixed.split("\n")
    lo = max(line_number - 1 - margin, 0)
    hi = line_number - 1 + margin
    kinds = {"replace": "MODIFY", "delete": "REMOVE", "insert": "ADD"}

    changes: list[CodeChange] = []
    matcher = difflib.SequenceMatcher(a=before, b=after, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        if i1 > hi or max(i2, i1 + 1) <= lo:
            continue
        changes.append(CodeChange(
            start_line=i1 + 1,
            end_line=max(i2, i1 + 1),
            original_code="\n".join(before[i1:i2]),
            fixed_code="\n".join(after[j1:j2]),
            change_type=kinds[tag],
            reason=reason,
        ))
    return changes


def unified_diff(original: str, fixed: str, file_path: str) -> str:
    return "".join(difflib.unified_diff(
        original.splitlines(keepends=True),
        fixed.splitlines(keepends=True),
        fromfile=f"a/{file_path}",
        tofile=f"b/{file_path}",
    ))


# ── Generator ────────────────────────────────────────────────────────────────


class CandidateFixGenerator:
    """Generate, score, refine and validate a fix for one finding.

    Parameters
    ----------
    context_store : SessionContextStore | None
        Source of related chunks. ``None`` skips related-context retrieval.
    code_llm : CompletionGateway
        Gateway bound to the code-generation model.
    review_llm : CompletionGateway
        Gateway bound to the review model (polish and functionality check).
    registry : LanguageRegistry | None
        Language modules; defaults to :meth:`LanguageRegistry.default`.
    settings : Settings | None
        Scoring weights and limits.
    pool : WorkerPool | None
        Shared pool for the per-strategy generation calls.
    """

    def __init__(
        self,
        context_store: SessionContextStore | None,
        code_llm: CompletionGateway,
        review_llm: CompletionGateway,
        registry: LanguageRegistry | None = None,
        settings: Settings | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.context_store = context_store
        self.code_llm = code_llm
        self.review_llm = review_llm
        self.registry = registry or LanguageRegistry.default()
        self.pool = pool or WorkerPool(self.settings.worker_pool_size)
        self.validator = FixValidator(review_llm, self.settings)

    # ── Public API ───────────────────────────────────────────────────────

    async def generate_fix(
        self,
        match: VulnerabilityMatch,
        session_id: str,
        file_content: str,
        required_changes: list[str] | None = None,
    ) -> FixResult:
        """Produce a :class:`FixResult` for ``match``. Never raises for gateway failures."""
        started = time.monotonic()
        language = self.registry.for_match(match)
        log_extra = {"session_id": session_id, "file_path": match.file_path}

        analysis = await analyze_fix_context(
            match,
            file_content,
            language,
            self.context_store,
            session_id,
            context_window=self.settings.fix_context_window,
            related_limit=self.settings.related_context_limit,
        )

        template_result = self._try_template(match, file_content, language)
        if template_result is not None:
            logger.info("Template fix applied for %s", match.id, extra={**log_extra, "strategy": "template"})
            return template_result

        candidates, discarded = await self._generate_candidates(
            match, analysis, file_content, language, required_changes,
        )
        scored = [
            c.model_copy(update={
                "score": score_candidate(c, file_content, language.check_syntax(c.code), self.settings),
            })
            for c in candidates
        ]
        best = select_best(scored)
        if best is None:
            logger.warning("All fix strategies failed for %s", match.id, extra=log_extra)
            return FixResult(
                success=False,
                explanation=f"Failed to generate a fix for {match.title}: every strategy failed",
                metadata={"discarded": discarded, "language": language.name},
            )
        logger.info(
            "Selected %s candidate for %s (score %.3f)", best.strategy.value, match.id, best.score,
            extra={**log_extra, "strategy": best.strategy.value},
        )

        refined = await self._refine(best, language)
        fix = FixResult(
            success=True,
            fixed_code=refined,
            explanation=self._build_explanation(best, match),
            changes=build_changes(
                file_content, refined, match.line_number, self.settings.fix_diff_margin,
                reason=best.changes_description[:200],
            ),
            confidence=best.score,
            strategy=best.strategy,
            metadata={
                "language": language.name,
                "strategy_scores": {c.strategy.value: round(c.score, 4) for c in scored},
                "discarded": discarded,
                "new_dependencies": best.new_dependencies,
                "method_lines": [analysis.method_start_line, analysis.method_end_line],
                "security_measures": analysis.security_measures,
                "related_files": sorted({c.file_path for c in analysis.related_context}),
            },
        )

        report = await self.validator.validate(fix.fixed_code, file_content, language)
        if not report.valid:
            fix = await self._auto_correct(fix, report, file_content, language, match.line_number)
        else:
            self._apply_report(fix, report)

        fix.metadata["diff"] = unified_diff(file_content, fix.fixed_code, match.file_path)
        fix.metadata["duration_ms"] = int((time.monotonic() - started) * 1000)
        return fix

    # ── Template path ────────────────────────────────────────────────────

    def _try_template(
        self,
        match: VulnerabilityMatch,
        file_content: str,
        language: LanguageSupport,
    ) -> FixResult | None:
        if match.match_type != MatchType.CODE_PATTERN:
            return None
        template = language.templates.get(match.id)
        if template is None:
            return None
        applied = apply_template(template, file_content, language.inject_imports)
        if applied is None:
            logger.debug("Template %s/%s did not match, falling back to LLM", language.name, match.id)
            return None
        if not language.check_syntax(applied.fixed_code) and language.check_syntax(file_content):
            logger.warning(
                "Template %s/%s produced invalid %s, falling back to LLM",
                language.name, match.id, language.name,
            )
            return None
        return FixResult(
            success=True,
            fixed_code=applied.fixed_code,
            explanation=template.explanation,
            changes=[
                CodeChange(
                    start_line=line,
                    end_line=line + before.count("\n"),
                    original_code=before,
                    fixed_code=after,
                    change_type="MODIFY",
                    reason=template.explanation,
                )
                for line, before, after in applied.replacements
            ],
            confidence=self.settings.template_confidence,
            strategy=FixStrategy.TEMPLATE,
            metadata={
                "language": language.name,
                "template_id": f"{template.language}:{template.id}",
                "references": list(template.references),
                "diff": unified_diff(file_content, applied.fixed_code, match.file_path),
            },
        )

    # ── LLM candidates ───────────────────────────────────────────────────

    async def _generate_candidates(
        self,
        match: VulnerabilityMatch,
        analysis: FixAnalysis,
        file_content: str,
        language: LanguageSupport,
        required_changes: list[str] | None,
    ) -> tuple[list[FixCandidate], dict[str, str]]:
        generate = functools.partial(
            self._generate_candidate,
            match=match,
            analysis=analysis,
            file_content=file_content,
            language=language,
            required_changes=required_changes,
        )
        outcomes = await self.pool.map(generate, list(STRATEGY_ORDER))

        candidates: list[FixCandidate] = []
        discarded: dict[str, str] = {}
        for strategy, outcome in zip(STRATEGY_ORDER, outcomes):
            if isinstance(outcome, FixCandidate):
                candidates.append(outcome)
            else:
                discarded[strategy.value] = outcome
        return candidates, discarded

    async def _generate_candidate(
        self,
        strategy: FixStrategy,
        *,
        match: VulnerabilityMatch,
        analysis: FixAnalysis,
        file_content: str,
        language: LanguageSupport,
        required_changes: list[str] | None,
    ) -> FixCandidate | str:
        """One strategy's candidate, or the reason it was discarded."""
        prompt = build_generation_prompt(strategy, match, analysis, file_content, language, required_changes)
        try:
            response = await self.code_llm.complete(
                prompt,
                system_prompt=SYSTEM_PROMPT,
                temperature=self.settings.generation_temperature,
            )
        except TransientServiceError as e:
            logger.warning("%s generation failed: %s", strategy.value, e, extra={"strategy": strategy.value})
            return f"gateway error: {e.message}"

        parsed = parse_fix_response(response, language.fence)
        if isinstance(parsed, ParseError):
            logger.warning("Discarding %s candidate: %s", strategy.value, parsed.message, extra={"strategy": strategy.value})
            return f"parse error: {parsed.message}"

        return FixCandidate(
            strategy=strategy,
            code=parsed.code,
            confidence=self.settings.llm_candidate_confidence,
            changes_description=parsed.changes,
            functionality_notes=parsed.functionality,
            new_dependencies=parsed.new_imports,
        )

    # ── Refinement ───────────────────────────────────────────────────────

    async def _refine(self, candidate: FixCandidate, language: LanguageSupport) -> str:
        code = candidate.code
        if candidate.new_dependencies:
            code = language.inject_imports(code, candidate.new_dependencies)
        try:
            response = await self.review_llm.complete(
                build_polish_prompt(code, language),
                temperature=self.settings.review_temperature,
            )
        except TransientServiceError as e:
            logger.warning("Failed to polish fix: %s", e)
            return code
        polished = extract_code_block(response, language.fence)
        return polished if polished else code

    @staticmethod
    def _build_explanation(candidate: FixCandidate, match: VulnerabilityMatch) -> str:
        parts = [f"Fixed {match.title} using {candidate.strategy.value.replace('_', ' ')} approach."]
        if candidate.changes_description:
            parts.append(f"Changes made:\n{candidate.changes_description}")
        if candidate.functionality_notes:
            parts.append(f"Functionality preservation:\n{candidate.functionality_notes}")
        return "\n\n".join(parts)

    # ── Validation / auto-correction ─────────────────────────────────────

    @staticmethod
    def _apply_report(fix: FixResult, report: ValidationReport) -> None:
        fix.validation_issues = list(report.issues)
        fix.warnings.extend(i.message for i in report.warnings)
        if not report.valid:
            fix.success = False
            fix.warnings.extend(f"Unresolved {i.type.value}: {i.message}" for i in report.errors)

    async def _auto_correct(
        self,
        fix: FixResult,
        report: ValidationReport,
        original: str,
        language: LanguageSupport,
        line_number: int,
    ) -> FixResult:
        """Exactly one corrective call, then one re-validation."""
        prompt = build_correction_prompt(fix.fixed_code, report.issues, language)
        corrected: str | None = None
        try:
            response = await self.code_llm.complete(
                prompt,
                system_prompt=SYSTEM_PROMPT,
                temperature=self.settings.generation_temperature,
            )
            corrected = extract_code_block(response, language.fence)
        except TransientServiceError as e:
            logger.warning("Failed to auto-correct fix: %s", e)

        if not corrected:
            fix.warnings.append("Validation issues detected but auto-correction failed")
            self._apply_report(fix, report)
            return fix

        fix.fixed_code = corrected
        fix.auto_corrected = True
        fix.warnings.append(AUTO_CORRECTED_WARNING)
        fix.changes = build_changes(
            original, corrected, line_number, self.settings.fix_diff_margin, reason="auto-correction",
        )
        second = await self.validator.validate(corrected, original, language)
        self._apply_report(fix, second)
        if not second.valid:
            logger.warning("Fix still invalid after auto-correction (%d errors)", len(second.errors))
        return fix
