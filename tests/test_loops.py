import asyncio

import pytest

from feature_workflow.loops import (
    LoopOutcome,
    LoopPolicy,
    LoopSteps,
    ReviewLoop,
    ReviewRound,
    merge_review_rounds,
)
from feature_workflow.models import ReviewOutcome, SessionResult, Verdict


class ScriptedSteps:
    """Records every hook call; review verdicts come from a fixed script."""

    def __init__(self, verdicts: list, *, generate_ok: bool = True, incorporate_ok: bool = True) -> None:
        self.verdicts = list(verdicts)
        self.generate_ok = generate_ok
        self.incorporate_ok = incorporate_ok
        self.calls: list[tuple] = []
        self.history: list[tuple[str, str]] = []
        self.cancel_after_review = False
        self.cancelled = False

    async def generate(self) -> SessionResult:
        self.calls.append(("generate",))
        return SessionResult(session_id="s", succeeded=self.generate_ok, error=None if self.generate_ok else "spawn")

    async def review(self, iteration: int) -> ReviewRound:
        self.calls.append(("review", iteration))
        step = self.verdicts.pop(0)
        if self.cancel_after_review:
            self.cancelled = True
        if isinstance(step, ReviewRound):
            return step
        return ReviewRound(verdict=step, feedback=f"feedback {iteration}")

    async def incorporate(self, feedback: str, iteration: int) -> SessionResult:
        self.calls.append(("incorporate", feedback, iteration))
        return SessionResult(session_id="s", succeeded=self.incorporate_ok, error=None if self.incorporate_ok else "crash")

    def record(self, source: str, message: str) -> None:
        self.history.append((source, message))

    def steps(self, subject: str = "Spec") -> LoopSteps:
        return LoopSteps(
            subject=subject,
            generate=self.generate,
            review=self.review,
            incorporate=self.incorporate,
            record=self.record,
            cancelled=lambda: self.cancelled,
        )


def _run(script: ScriptedSteps, policy: LoopPolicy, subject: str = "Spec"):
    return asyncio.run(ReviewLoop(script.steps(subject), policy).run())


def test_immediate_approval() -> None:
    script = ScriptedSteps([Verdict.NONE])
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.APPROVED
    assert result.review_calls == 1
    assert result.remediations == 0
    assert ("system", "Spec approved after 1 iteration(s)") in script.history


def test_persistent_major_stops_at_max_iterations() -> None:
    script = ScriptedSteps([Verdict.MAJOR, Verdict.MAJOR, Verdict.MAJOR])
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.MAX_ITERATIONS
    assert result.advances_status
    assert result.review_calls == 3
    assert result.remediations == 2
    assert [call[0] for call in script.calls] == [
        "generate", "review", "incorporate", "review", "incorporate", "review",
    ]
    assert script.calls[2] == ("incorporate", "feedback 1", 1)
    assert script.history[-1] == ("system", "Max iterations (3) reached for Spec with issues remaining")


def test_minor_ends_document_loop_without_remediation() -> None:
    script = ScriptedSteps([Verdict.MINOR])
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.APPROVED_WITH_MINOR
    assert result.remediations == 0
    assert "minor issues logged for human review" in script.history[-1][1]


def test_build_loop_gets_one_minor_remediation() -> None:
    script = ScriptedSteps([Verdict.MINOR, Verdict.NONE])
    result = _run(script, LoopPolicy(max_iterations=5, minor_budget=1), subject="Phase 1")
    assert result.outcome is LoopOutcome.APPROVED
    assert result.review_calls == 2
    assert result.remediations == 1
    assert ("system", "Minor issues only - one iteration to address (iteration 1)") in script.history
    assert script.history[-1] == ("system", "Phase 1 approved after 2 iteration(s)")


def test_second_minor_in_build_loop_is_accepted() -> None:
    script = ScriptedSteps([Verdict.MINOR, Verdict.MINOR])
    result = _run(script, LoopPolicy(max_iterations=5, minor_budget=1), subject="Phase 1")
    assert result.outcome is LoopOutcome.APPROVED_WITH_MINOR
    assert result.remediations == 1


def test_generation_failure_skips_review() -> None:
    script = ScriptedSteps([], generate_ok=False)
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.GENERATION_FAILED
    assert not result.advances_status
    assert result.review_calls == 0
    assert script.history == [("system", "Spec generation failed: spawn")]


def test_review_failure_does_not_advance() -> None:
    failed = ReviewRound(verdict=Verdict.MAJOR, failed=True, error="timeout")
    script = ScriptedSteps([failed])
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.REVIEW_FAILED
    assert not result.advances_status
    assert result.error == "timeout"
    assert script.history[-1] == ("system", "Review failed for Spec: timeout")


def test_incorporation_failure_stops_loop() -> None:
    script = ScriptedSteps([Verdict.MAJOR], incorporate_ok=False)
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.INCORPORATION_FAILED
    assert result.review_calls == 1
    assert result.remediations == 0


def test_no_changes_skips_review() -> None:
    script = ScriptedSteps([ReviewRound.no_changes()])
    result = _run(script, LoopPolicy(max_iterations=3), subject="Phase 2")
    assert result.outcome is LoopOutcome.NO_CHANGES
    assert result.advances_status
    assert script.history == [("system", "No changes detected for Phase 2, skipping review")]


def test_cancel_during_review_ends_loop_without_advancing() -> None:
    script = ScriptedSteps([Verdict.NONE])
    script.cancel_after_review = True
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.CANCELLED
    assert not result.advances_status
    assert script.history == [("system", "Spec cancelled by user")]


def test_cancelled_generation_is_not_a_failure() -> None:
    script = ScriptedSteps([Verdict.NONE])

    async def cancelled_generate() -> SessionResult:
        return SessionResult(session_id="s", succeeded=False, error="Cancelled by user", cancelled=True)

    script.generate = cancelled_generate
    result = _run(script, LoopPolicy(max_iterations=3))
    assert result.outcome is LoopOutcome.CANCELLED
    assert result.review_calls == 0
    assert script.history == [("system", "Spec cancelled by user")]


def test_single_iteration_never_remediates() -> None:
    script = ScriptedSteps([Verdict.MAJOR])
    result = _run(script, LoopPolicy(max_iterations=1))
    assert result.outcome is LoopOutcome.MAX_ITERATIONS
    assert result.remediations == 0


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        LoopPolicy(max_iterations=0)
    with pytest.raises(ValueError):
        LoopPolicy(max_iterations=1, minor_budget=-1)


def test_merge_review_rounds() -> None:
    primary = ReviewOutcome(classification=Verdict.MINOR, summary_text="nit", provider="openai")
    secondary = ReviewOutcome(classification=Verdict.MAJOR, summary_text="broken", provider="claude-reviewer")
    merged = merge_review_rounds(primary, secondary)
    assert merged.verdict is Verdict.MAJOR
    assert merged.feedback == "## Reviewer Feedback\n\nnit\n\n## Architect Review\n\nbroken"


def test_merge_with_one_failed_reviewer_blocks() -> None:
    primary = ReviewOutcome(classification=Verdict.NONE, summary_text="fine", provider="openai")
    secondary = ReviewOutcome.failure("timed out", provider="claude-reviewer")
    merged = merge_review_rounds(primary, secondary)
    assert not merged.failed
    assert merged.verdict is Verdict.MAJOR
    assert "Review failed: timed out" in merged.feedback


def test_merge_with_every_reviewer_failed() -> None:
    merged = merge_review_rounds(ReviewOutcome.failure("a", provider="openai"), None)
    assert merged.failed
    assert merged.error == "openai: a"
    with pytest.raises(ValueError):
        merge_review_rounds(None, None)
