"""Tests for peer/expert review and the review workflow state machine."""

from __future__ import annotations

import pytest

from patchwarden.core.errors import InvalidTransitionError, TransientServiceError
from patchwarden.core.types import FixResult, Severity
from patchwarden.remediator.languages import JavaSupport, PythonSupport
from patchwarden.review import ExpertReviewer, PeerReviewer, ReviewWorkflow
from patchwarden.review.heuristics import (
    best_practice_checks,
    code_quality_issues,
    comment_ratio,
    compliance_checks,
    dangerous_api_hits,
    owasp_checks,
)
from patchwarden.review.models import PeerVerdict, ReviewRecord, ReviewStage, WorkflowState
from patchwarden.review.peer import parse_issues

PEER = "You are a security lead"
EXPERT = "senior application security expert"


class RecordingGenerator:
    """Regenerator double that hands out prepared fixes in order."""

    def __init__(self, *fixes: FixResult) -> None:
        self.fixes = list(fixes)
        self.calls: list[list[str] | None] = []

    async def generate_fix(self, match, session_id, file_content, required_changes=None):
        self.calls.append(required_changes)
        return self.fixes.pop(0) if len(self.fixes) > 1 else self.fixes[0]


def _fix_with(code: str) -> FixResult:
    return FixResult(success=True, fixed_code=code, explanation="patched", confidence=0.9)


# ── Heuristics ───────────────────────────────────────────────────────────────


class TestCodeQualityHeuristics:
    def test_clean_fix_has_no_issues(self, replies):
        assert code_quality_issues(replies.fixed_py, PythonSupport()) == []

    def test_long_function(self):
        body = "".join(f"    # step {i}\n    x{i} = {i}\n" for i in range(30))
        issues = code_quality_issues(f"def long_one():\n{body}", PythonSupport())
        assert [(i.severity, i.source) for i in issues] == [(Severity.MEDIUM, "heuristic")]
        assert issues[0].message.startswith("Function is too long (61 lines)")

    def test_complexity_is_per_function(self):
        branches = "".join(f"    # branch {i}\n    if x == {i}:\n        return {i}\n" for i in range(11))
        issues = code_quality_issues(f"def dispatch(x):\n{branches}", PythonSupport())
        assert [i.severity for i in issues] == [Severity.HIGH]
        assert "complexity (11)" in issues[0].message

    def test_low_comment_ratio(self):
        issues = code_quality_issues("def f(a):\n    return a + 1\n", PythonSupport())
        assert [i.message for i in issues] == ["Insufficient comments for security-critical code"]

    def test_nested_loops_and_db_in_loop(self):
        code = (
            "def sync(cursor, ids):\n"
            "    # push every pair\n"
            "    for i in ids:\n"
            "        for j in ids:\n"
            "            cursor.execute('INSERT INTO p VALUES (?, ?)', (i, j))\n"
        )
        messages = [i.message for i in code_quality_issues(code, PythonSupport())]
        assert "Nested loops detected, consider performance impact" in messages
        assert "Database call inside a loop, consider batching" in messages

    def test_todo_marker(self, replies):
        issues = code_quality_issues(replies.fixed_py + "# TODO: tighten\n", PythonSupport())
        assert [i.message for i in issues] == ["Unresolved TODO/FIXME comments in patch"]

    def test_comment_ratio_brace_language(self):
        lines = ["// check input", "int a = 1;", "/* block */", "int b = 2;"]
        assert comment_ratio(lines, JavaSupport()) == 0.5


class TestExpertTables:
    def test_dangerous_api_hits(self, replies):
        assert dangerous_api_hits(replies.fixed_py) == []
        assert dangerous_api_hits("Runtime.getRuntime().exec(cmd)") == ["exec", "Runtime.getRuntime"]
        assert dangerous_api_hits("os.system(cmd)") == ["system"]

    @pytest.mark.parametrize(
        "code",
        [
            "value = ast.literal_eval(raw)",
            "proc = await asyncio.create_subprocess_exec(*argv)",
            "monitor.subsystem(name)",
            "cursor.execute(query, params)",
        ],
    )
    def test_lookalike_calls_are_not_dangerous(self, code):
        assert dangerous_api_hits(code) == []

    def test_owasp(self):
        results = owasp_checks('cursor.execute("SELECT 1 WHERE a = %s", (a,))')
        assert results["A03:2021"] is True
        assert results["A02:2021"] is True
        assert owasp_checks("digest = MD5(data)")["A02:2021"] is False

    def test_best_practices(self):
        checks = best_practice_checks("try:\n    validate(x)\nexcept ValueError:\n    pass\n")
        assert checks["Input Validation"] is True
        assert checks["Error Handling"] is True
        assert checks["Output Encoding"] is False

    def test_compliance(self):
        status = compliance_checks("encrypt(card); mask(pan); authorize(user); # privacy")
        assert status["PCI-DSS"].compliant
        assert status["GDPR"].compliant
        empty = compliance_checks("x = 1")
        assert not empty["PCI-DSS"].compliant
        assert len(empty["PCI-DSS"].requirements) == 3
        assert not empty["GDPR"].compliant
        assert empty["HIPAA"].compliant and empty["SOC2"].compliant


# ── Peer review ──────────────────────────────────────────────────────────────


class TestPeerReviewer:
    @pytest.mark.asyncio
    async def test_clean_fix_approved(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.peer((9, 9, 9)))
        record = await PeerReviewer(llm, settings=settings).review(good_fix, sql_match)
        assert record.approved
        assert record.assessment == PeerVerdict.APPROVED.value
        assert record.scores == {"code_quality": 9, "architecture": 9, "maintainability": 9}
        assert record.issues == ()
        assert record.suggestions == ("Add a regression test",)
        assert record.positives == ("Minimal, focused change",)
        assert llm.calls[0]["temperature"] == settings.review_temperature

    @pytest.mark.asyncio
    async def test_single_critical_issue_blocks(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.peer((9, 9, 9), issues=["CRITICAL: Query still concatenated on retry path"]))
        record = await PeerReviewer(llm, settings=settings).review(good_fix, sql_match)
        assert not record.approved
        assert record.assessment == PeerVerdict.NEEDS_CHANGES.value
        assert len(record.critical_issues) == 1
        assert record.required_changes == ("CRITICAL: Query still concatenated on retry path",)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("scores, issues, verdict", [
        ((7, 7, 7), None, PeerVerdict.APPROVED_WITH_SUGGESTIONS),
        ((9, 9, 9), ["LOW: a", "LOW: b", "MEDIUM: c"], PeerVerdict.APPROVED_WITH_SUGGESTIONS),
        ((5, 6, 6), None, PeerVerdict.NEEDS_CHANGES),
        ((8, 8, 8), ["HIGH: unchecked cast"], PeerVerdict.APPROVED),
    ])
    async def test_thresholds(self, make_llm, replies, good_fix, sql_match, settings, scores, issues, verdict):
        llm = make_llm(default=replies.peer(scores, issues=issues))
        record = await PeerReviewer(llm, settings=settings).review(good_fix, sql_match)
        assert record.assessment == verdict.value
        assert record.approved is (verdict != PeerVerdict.NEEDS_CHANGES)

    @pytest.mark.asyncio
    async def test_high_issue_becomes_required_change(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.peer((8, 8, 8), issues=["HIGH: unchecked cast", "naming could improve"]))
        record = await PeerReviewer(llm, settings=settings).review(good_fix, sql_match)
        assert record.required_changes == ("HIGH: unchecked cast",)
        assert [i.severity for i in record.issues] == [Severity.HIGH, Severity.MEDIUM]

    @pytest.mark.asyncio
    async def test_heuristics_added_to_llm_issues(self, make_llm, replies, good_fix, sql_match, settings):
        fix = good_fix.model_copy(update={"fixed_code": good_fix.fixed_code + "# FIXME: cast\n"})
        record = await PeerReviewer(make_llm(default=replies.peer()), settings=settings).review(fix, sql_match)
        assert [i.source for i in record.issues] == ["heuristic"]
        assert record.details["heuristic_issues"] == 1

    @pytest.mark.asyncio
    async def test_gateway_failure_needs_changes(self, make_llm, good_fix, sql_match, settings):
        llm = make_llm(rules=[(PEER, TransientServiceError("down"))])
        record = await PeerReviewer(llm, settings=settings).review(good_fix, sql_match)
        assert not record.approved
        assert record.scores == {}
        assert record.issues[0].message == "Peer review unavailable: down"

    def test_parse_issues(self):
        issues = parse_issues("- [HIGH]: missing bound check\n- low - style nit\n- just a note\n- None")
        assert [(i.severity, i.message) for i in issues] == [
            (Severity.HIGH, "missing bound check"),
            (Severity.LOW, "style nit"),
            (Severity.MEDIUM, "just a note"),
        ]


# ── Expert review ────────────────────────────────────────────────────────────


class TestExpertReviewer:
    @pytest.mark.asyncio
    async def test_complete_mitigation_approved(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.expert(9))
        record = await ExpertReviewer(llm, settings).review(good_fix, sql_match)
        assert record.approved
        assert record.assessment == "APPROVED"
        assert record.scores == {"security": 9}
        assert record.details["vulnerability_mitigation"] == "COMPLETE"
        assert record.details["summary"] == "The injection is fully mitigated."
        assert record.details["compliance_notes"] == ["OWASP A03 addressed"]
        assert set(record.details["compliance"]) == {"PCI-DSS", "GDPR", "HIPAA", "SOC2"}
        assert "A03:2021 Injection" in record.details["owasp"]
        assert "Validate the id type" in record.suggestions
        assert "Consider implementing: Input Validation" in record.suggestions

    @pytest.mark.asyncio
    async def test_new_vulnerability_is_critical(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.expert(9, new_vulns="FOUND: id leaks into error page"))
        record = await ExpertReviewer(llm, settings).review(good_fix, sql_match)
        assert not record.approved
        assert record.required_changes == ("CRITICAL: New vulnerabilities introduced: id leaks into error page",)

    @pytest.mark.asyncio
    async def test_low_score_and_partial_mitigation(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.expert(5, mitigation="PARTIAL"))
        record = await ExpertReviewer(llm, settings).review(good_fix, sql_match)
        assert record.assessment == "REJECTED"
        assert record.required_changes == (
            "Security score 5/10 is below the required 7",
            "Vulnerability mitigation is PARTIAL; SQL Injection must be fully remediated",
        )

    @pytest.mark.asyncio
    async def test_critical_bullets_and_dangerous_apis(self, make_llm, replies, good_fix, sql_match, settings):
        fix = good_fix.model_copy(update={"fixed_code": good_fix.fixed_code + "value = eval(raw)\n"})
        llm = make_llm(default=replies.expert(9, critical=["Input is still trusted, for example"]))
        record = await ExpertReviewer(llm, settings).review(fix, sql_match)
        assert [i.message for i in record.critical_issues] == [
            "Input is still trusted, for example",
            "Potentially dangerous patterns found: eval",
        ]
        assert record.critical_issues[1].source == "heuristic"
        assert not record.approved

    @pytest.mark.asyncio
    async def test_gateway_failure_rejects(self, make_llm, good_fix, sql_match, settings):
        llm = make_llm(rules=[(EXPERT, TransientServiceError("down"))])
        record = await ExpertReviewer(llm, settings).review(good_fix, sql_match)
        assert not record.approved
        assert record.scores == {}
        assert record.details["vulnerability_mitigation"] == "UNKNOWN"
        assert record.required_changes[0] == "CRITICAL: Security review unavailable: down"

    @pytest.mark.asyncio
    async def test_peer_outcome_in_prompt(self, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(default=replies.expert())
        await ExpertReviewer(llm, settings).review(
            good_fix, sql_match, peer_output={"assessment": "APPROVED", "suggestions": ["Add a test"]},
        )
        prompt = llm.calls[0]["prompt"]
        assert "## Peer Review Outcome\nAssessment: APPROVED\n- Add a test" in prompt


# ── Workflow state ───────────────────────────────────────────────────────────


class TestWorkflowState:
    def test_terminal_stages_reject_transitions(self):
        state = WorkflowState(current_stage=ReviewStage.APPROVED)
        with pytest.raises(InvalidTransitionError):
            state.advance(ReviewStage.GENERATED)
        rejected = WorkflowState(current_stage=ReviewStage.REJECTED)
        with pytest.raises(InvalidTransitionError):
            rejected.advance(ReviewStage.PEER_REVIEWED)

    def test_cannot_skip_expert(self):
        state = WorkflowState()
        with pytest.raises(InvalidTransitionError):
            state.advance(ReviewStage.APPROVED)
        state.advance(ReviewStage.PEER_REVIEWED)
        with pytest.raises(InvalidTransitionError):
            state.advance(ReviewStage.APPROVED)

    def test_transitions_recorded(self):
        state = WorkflowState()
        state.advance(ReviewStage.PEER_REVIEWED)
        state.advance(ReviewStage.EXPERT_REVIEWED)
        state.advance(ReviewStage.APPROVED)
        assert state.is_terminal and state.approved
        assert state.transitions[-1] == (ReviewStage.EXPERT_REVIEWED, ReviewStage.APPROVED)

    def test_required_changes_accumulate_without_duplicates(self):
        state = WorkflowState()
        state.record(ReviewRecord(stage=ReviewStage.PEER_REVIEWED, reviewer="peer", approved=False,
                                  required_changes=("HIGH: a", "HIGH: b")))
        state.record(ReviewRecord(stage=ReviewStage.EXPERT_REVIEWED, reviewer="expert", approved=False,
                                  required_changes=("HIGH: b", "CRITICAL: c")))
        assert state.required_changes == ["HIGH: a", "HIGH: b", "CRITICAL: c"]


# ── Workflow ─────────────────────────────────────────────────────────────────


@pytest.fixture
def workflow_for(settings, sink):
    def build(llm, generator=None):
        return ReviewWorkflow(
            PeerReviewer(llm, settings=settings),
            ExpertReviewer(llm, settings),
            generator=generator,
            settings=settings,
            event_sink=sink,
        )
    return build


class TestReviewWorkflow:
    @pytest.mark.asyncio
    async def test_approves_clean_fix(self, workflow_for, make_llm, replies, good_fix, sql_match, sink):
        llm = make_llm(rules=[(PEER, replies.peer()), (EXPERT, replies.expert())])
        state = await workflow_for(llm).run(good_fix, sql_match, "run-1", replies.vulnerable_py)

        assert state.current_stage == ReviewStage.APPROVED
        assert state.attempts == 0
        assert [r.reviewer for r in state.history] == ["peer", "expert"]
        assert sink.phases() == [
            "review.started", "review.peer_reviewed", "review.expert_reviewed", "review.approved",
        ]
        assert all(e.task_id == state.task_id for e in sink.events)
        assert set(state.shared_memory) == {"engineer_output", "peer_output", "expert_output"}
        assert state.shared_memory["peer_output"]["assessment"] == "APPROVED"

    @pytest.mark.asyncio
    async def test_peer_rejection_regenerates_with_required_changes(
        self, workflow_for, make_llm, replies, good_fix, sql_match, sink,
    ):
        llm = make_llm(rules=[
            (PEER, [replies.peer(issues=["CRITICAL: user_id is never validated"]), replies.peer()]),
            (EXPERT, replies.expert()),
        ])
        regenerated = good_fix.model_copy(update={"explanation": "second attempt"})
        generator = RecordingGenerator(regenerated)
        state = await workflow_for(llm, generator).run(good_fix, sql_match, "run-1", replies.vulnerable_py)

        assert state.approved
        assert state.attempts == 1
        assert generator.calls == [["CRITICAL: user_id is never validated"]]
        assert state.fix is regenerated
        assert [r.reviewer for r in state.history] == ["peer", "peer", "expert"]
        assert "review.generated" in sink.phases()

    @pytest.mark.asyncio
    async def test_expert_rejection_goes_back_through_peer(
        self, workflow_for, make_llm, replies, good_fix, sql_match,
    ):
        llm = make_llm(rules=[
            (PEER, replies.peer()),
            (EXPERT, [replies.expert(mitigation="PARTIAL"), replies.expert()]),
        ])
        state = await workflow_for(llm, RecordingGenerator(good_fix)).run(
            good_fix, sql_match, "run-1", replies.vulnerable_py,
        )
        assert state.approved
        assert [r.reviewer for r in state.history] == ["peer", "expert", "peer", "expert"]
        assert (ReviewStage.PEER_REVIEWED, ReviewStage.GENERATED) in state.transitions

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, workflow_for, make_llm, replies, good_fix, sql_match, settings):
        llm = make_llm(rules=[(PEER, replies.peer(issues=["CRITICAL: still injectable"])), (EXPERT, replies.expert())])
        generator = RecordingGenerator(good_fix)
        state = await workflow_for(llm, generator).run(good_fix, sql_match, "run-1", replies.vulnerable_py)

        assert state.current_stage == ReviewStage.REJECTED
        assert state.attempts == settings.review_max_retries == 2
        assert len(generator.calls) == 2
        assert len(state.history) == 3
        assert state.shared_memory["rejection_reason"] == "Peer review: NEEDS_CHANGES"
        assert llm.calls_containing(EXPERT) == []

    @pytest.mark.asyncio
    async def test_failed_regeneration_rejects(self, workflow_for, make_llm, replies, good_fix, sql_match):
        llm = make_llm(rules=[(PEER, replies.peer(scores=(3, 3, 3))), (EXPERT, replies.expert())])
        failed = FixResult(success=False, explanation="every strategy failed")
        state = await workflow_for(llm, RecordingGenerator(failed)).run(
            good_fix, sql_match, "run-1", replies.vulnerable_py,
        )
        assert state.current_stage == ReviewStage.REJECTED
        assert state.attempts == 1
        assert state.shared_memory["rejection_reason"] == "Regeneration failed: every strategy failed"
        assert state.shared_memory["engineer_output"]["success"] is False

    @pytest.mark.asyncio
    async def test_without_generator_rejection_is_final(self, workflow_for, make_llm, replies, good_fix, sql_match):
        llm = make_llm(rules=[(PEER, replies.peer(scores=(3, 3, 3)))])
        state = await workflow_for(llm).run(good_fix, sql_match, "run-1", replies.vulnerable_py)
        assert state.current_stage == ReviewStage.REJECTED
        assert state.attempts == 0

    @pytest.mark.asyncio
    async def test_failed_fix_rejected_without_review(self, workflow_for, make_llm, sql_match, sink):
        llm = make_llm()
        state = await workflow_for(llm).run(FixResult(success=False), sql_match, "run-1")
        assert state.current_stage == ReviewStage.REJECTED
        assert llm.calls == []
        assert sink.phases() == ["review.started", "review.rejected"]

    @pytest.mark.asyncio
    async def test_terminal_state_cannot_move(self, workflow_for, make_llm, replies, good_fix, sql_match):
        llm = make_llm(rules=[(PEER, replies.peer()), (EXPERT, replies.expert())])
        state = await workflow_for(llm).run(good_fix, sql_match, "run-1")
        with pytest.raises(InvalidTransitionError):
            state.advance(ReviewStage.GENERATED)
