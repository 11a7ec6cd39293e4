from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .models import ReviewOutcome, SessionResult, Verdict
from .verdict import merge_verdicts

logger = logging.getLogger(__name__)

PRIMARY_FEEDBACK_HEADING = "## Reviewer Feedback"
SECONDARY_FEEDBACK_HEADING = "## Architect Review"


class LoopOutcome(str, Enum):
    APPROVED = "approved"
    APPROVED_WITH_MINOR = "approved-with-minor"
    MAX_ITERATIONS = "max-iterations"
    NO_CHANGES = "no-changes"
    GENERATION_FAILED = "generation-failed"
    REVIEW_FAILED = "review-failed"
    INCORPORATION_FAILED = "incorporation-failed"
    CANCELLED = "cancelled"

    @property
    def advances_status(self) -> bool:
        return self in _ADVANCING_OUTCOMES


_ADVANCING_OUTCOMES = frozenset({
    LoopOutcome.APPROVED,
    LoopOutcome.APPROVED_WITH_MINOR,
    LoopOutcome.MAX_ITERATIONS,
    LoopOutcome.NO_CHANGES,
})


@dataclass
class ReviewRound:
    """What one review iteration concluded, across one or two reviewers."""

    verdict: Verdict
    feedback: str = ""
    outcomes: list[ReviewOutcome] = field(default_factory=list)
    failed: bool = False
    skipped: bool = False
    error: str | None = None

    @classmethod
    def from_outcome(cls, outcome: ReviewOutcome) -> "ReviewRound":
        return cls(
            verdict=outcome.effective_verdict,
            feedback=outcome.summary_text,
            outcomes=[outcome],
            failed=not outcome.succeeded,
            error=outcome.error_detail,
        )

    @classmethod
    def no_changes(cls) -> "ReviewRound":
        return cls(verdict=Verdict.NONE, skipped=True)


def merge_review_rounds(primary: ReviewOutcome | None, secondary: ReviewOutcome | None) -> ReviewRound:
    """Combine the primary and secondary build reviews into one round.

    A reviewer that failed counts as MAJOR as long as the other one produced a
    review; when every reviewer failed the round itself is a failure.
    """
    outcomes = [outcome for outcome in (primary, secondary) if outcome is not None]
    if not outcomes:
        raise ValueError("At least one review outcome is required")
    errors = [f"{outcome.provider or 'reviewer'}: {outcome.error_detail}" for outcome in outcomes if not outcome.succeeded]
    if not any(outcome.succeeded for outcome in outcomes):
        return ReviewRound(verdict=Verdict.MAJOR, outcomes=outcomes, failed=True, error="; ".join(errors))

    parts: list[str] = []
    for heading, outcome in ((PRIMARY_FEEDBACK_HEADING, primary), (SECONDARY_FEEDBACK_HEADING, secondary)):
        if outcome is None:
            continue
        body = outcome.summary_text if outcome.succeeded else f"Review failed: {outcome.error_detail}"
        parts.append(f"{heading}\n\n{body.strip()}")
    return ReviewRound(
        verdict=merge_verdicts(*(outcome.effective_verdict for outcome in outcomes)),
        feedback="\n\n".join(parts),
        outcomes=outcomes,
        error="; ".join(errors) or None,
    )


@dataclass
class LoopSteps:
    """The three call sites' hooks into the shared loop.

    ``generate`` and ``incorporate`` run (or resume) the generating session;
    ``review`` runs one review round for the given iteration; ``record``
    appends a history entry for the feature. ``cancelled`` reports whether
    the user asked to stop; the loop checks it between steps.
    """

    subject: str
    generate: Callable[[], Awaitable[SessionResult]]
    review: Callable[[int], Awaitable[ReviewRound]]
    incorporate: Callable[[str, int], Awaitable[SessionResult]]
    record: Callable[[str, str], None]
    cancelled: Callable[[], bool] | None = None

    def cancel_requested(self) -> bool:
        return self.cancelled is not None and self.cancelled()


@dataclass(frozen=True)
class LoopPolicy:
    max_iterations: int
    minor_budget: int = 0
    recursion_limit: int = 200

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got: {self.max_iterations}")
        if self.minor_budget < 0:
            raise ValueError(f"minor_budget must be >= 0, got: {self.minor_budget}")


@dataclass
class LoopResult:
    outcome: LoopOutcome
    review_calls: int
    remediations: int
    last_round: ReviewRound | None = None
    error: str | None = None

    @property
    def advances_status(self) -> bool:
        return self.outcome.advances_status


class LoopState(TypedDict, total=False):
    iteration: int
    max_iterations: int
    minor_budget: int
    minor_used: int
    review_calls: int
    remediations: int
    last_round: ReviewRound
    outcome: LoopOutcome
    error: str


class ReviewLoop:
    """Generate once, then review and refine: generate -> review -> route -> incorporate/finalize."""

    def __init__(self, steps: LoopSteps, policy: LoopPolicy) -> None:
        self.steps = steps
        self.policy = policy
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(LoopState)
        graph.add_node("generate_step", self._generate)
        graph.add_node("review_step", self._review)
        graph.add_node("route_step", self._route)
        graph.add_node("incorporate_step", self._incorporate)
        graph.add_node("finalize_step", self._finalize)

        graph.add_edge(START, "generate_step")
        graph.add_edge("review_step", "route_step")
        graph.add_edge("finalize_step", END)
        return graph

    def _cancel(self) -> Command[Literal["finalize_step"]]:
        self.steps.record("system", f"{self.steps.subject} cancelled by user")
        return Command(goto="finalize_step", update={"outcome": LoopOutcome.CANCELLED})

    async def _generate(self, state: LoopState) -> Command[Literal["review_step", "finalize_step"]]:
        result = await self.steps.generate()
        if result.cancelled or self.steps.cancel_requested():
            return self._cancel()
        if not result.succeeded:
            error = result.error or "Unknown error"
            self.steps.record("system", f"{self.steps.subject} generation failed: {error}")
            return Command(goto="finalize_step", update={"outcome": LoopOutcome.GENERATION_FAILED, "error": error})
        return Command(goto="review_step")

    async def _review(self, state: LoopState) -> dict[str, Any]:
        iteration = int(state.get("iteration", 1))
        logger.info("%s review iteration %d/%d", self.steps.subject, iteration, state["max_iterations"])
        review_round = await self.steps.review(iteration)
        return {"last_round": review_round, "review_calls": int(state.get("review_calls", 0)) + 1}

    def _route(self, state: LoopState) -> Command[Literal["incorporate_step", "finalize_step"]]:
        review_round = state["last_round"]
        iteration = int(state.get("iteration", 1))
        max_iterations = int(state["max_iterations"])
        subject = self.steps.subject

        if self.steps.cancel_requested():
            return self._cancel()

        if review_round.skipped:
            self.steps.record("system", f"No changes detected for {subject}, skipping review")
            return Command(goto="finalize_step", update={"outcome": LoopOutcome.NO_CHANGES})

        if review_round.failed:
            error = review_round.error or "Unknown error"
            logger.warning("%s review failed, stopping loop: %s", subject, error)
            self.steps.record("system", f"Review failed for {subject}: {error}")
            return Command(goto="finalize_step", update={"outcome": LoopOutcome.REVIEW_FAILED, "error": error})

        if review_round.verdict is Verdict.NONE:
            self.steps.record("system", f"{subject} approved after {iteration} iteration(s)")
            return Command(goto="finalize_step", update={"outcome": LoopOutcome.APPROVED})

        update: dict[str, Any] = {}
        if review_round.verdict is Verdict.MINOR:
            minor_used = int(state.get("minor_used", 0))
            if minor_used >= int(state.get("minor_budget", 0)):
                self.steps.record(
                    "system",
                    f"{subject} approved after {iteration} iteration(s) (minor issues logged for human review)",
                )
                return Command(goto="finalize_step", update={"outcome": LoopOutcome.APPROVED_WITH_MINOR})
            update["minor_used"] = minor_used + 1
            self.steps.record("system", f"Minor issues only - one iteration to address (iteration {iteration})")

        if iteration >= max_iterations:
            logger.warning("%s reached max iterations (%d) with issues remaining", subject, max_iterations)
            self.steps.record(
                "system",
                f"Max iterations ({max_iterations}) reached for {subject} with issues remaining",
            )
            update["outcome"] = LoopOutcome.MAX_ITERATIONS
            return Command(goto="finalize_step", update=update)
        return Command(goto="incorporate_step", update=update)

    async def _incorporate(self, state: LoopState) -> Command[Literal["review_step", "finalize_step"]]:
        iteration = int(state.get("iteration", 1))
        result = await self.steps.incorporate(state["last_round"].feedback, iteration)
        if result.cancelled or self.steps.cancel_requested():
            return self._cancel()
        if not result.succeeded:
            error = result.error or "Unknown error"
            self.steps.record("system", f"Failed to incorporate feedback for {self.steps.subject}: {error}")
            return Command(goto="finalize_step", update={"outcome": LoopOutcome.INCORPORATION_FAILED, "error": error})
        return Command(
            goto="review_step",
            update={"iteration": iteration + 1, "remediations": int(state.get("remediations", 0)) + 1},
        )

    def _finalize(self, state: LoopState) -> dict[str, Any]:
        logger.info(
            "%s loop finished: outcome=%s reviews=%d remediations=%d",
            self.steps.subject,
            state["outcome"].value,
            int(state.get("review_calls", 0)),
            int(state.get("remediations", 0)),
        )
        return {"outcome": state["outcome"]}

    async def run(self) -> LoopResult:
        result = await self.graph.ainvoke(
            {
                "iteration": 1,
                "max_iterations": self.policy.max_iterations,
                "minor_budget": self.policy.minor_budget,
                "minor_used": 0,
                "review_calls": 0,
                "remediations": 0,
            },
            config={"recursion_limit": max(self.policy.recursion_limit, 4 * self.policy.max_iterations + 10)},
        )
        return LoopResult(
            outcome=result["outcome"],
            review_calls=int(result.get("review_calls", 0)),
            remediations=int(result.get("remediations", 0)),
            last_round=result.get("last_round"),
            error=result.get("error"),
        )
