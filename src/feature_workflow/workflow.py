from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from functools import partial
from pathlib import Path

from .diffs import DiffSource, GitDiffSource
from .errors import InvalidTransition, NoPhasesFound
from .loops import LoopOutcome, LoopPolicy, LoopResult, LoopSteps, ReviewLoop, ReviewRound, merge_review_rounds
from .models import ArtifactKind, Feature, FeatureStatus, Persona, Phase, ReviewOutcome, SessionResult, Verdict
from .phases import read_plan_phases
from .prompts import PromptCatalog
from .review import AgentReviewProvider, ApiReviewProvider, ReviewProvider, ReviewRequest
from .session import AgentSession, ProgressCallback, SessionManager, SessionRunner, new_session
from .settings import RuntimeSettings
from .state_store import FeatureStore
from .status import can_transition

logger = logging.getLogger(__name__)

_FEATURE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_VERDICT_LABELS = {
    Verdict.NONE: "approved",
    Verdict.MINOR: "minor issues only",
    Verdict.MAJOR: "major issues found",
}


@dataclass
class BuildResult:
    phases: list[Phase]
    phase_results: list[LoopResult] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return len(self.phase_results) == len(self.phases) and all(
            result.advances_status for result in self.phase_results
        )


@dataclass
class _DocumentTarget:
    kind: ArtifactKind
    label: str
    source_path: Path
    artifact_path: Path
    target_status: FeatureStatus


def _log_progress(message: str) -> None:
    logger.info("progress: %s", message)


class WorkflowEngine:
    """Lifecycle actions for features: generation loops, builds and manual gates.

    Collaborators (agent sessions, reviewers, diff source) are injectable; by
    default they are built from ``RuntimeSettings``.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        store: FeatureStore | None = None,
        prompts: PromptCatalog | None = None,
        sessions: SessionRunner | None = None,
        reviewer: ReviewProvider | None = None,
        architect: ReviewProvider | None = None,
        diff_source: DiffSource | None = None,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        root = self.settings.workspace_root_path
        self.store = store if store is not None else FeatureStore(self.settings.features_path(root))
        self.prompts = prompts if prompts is not None else PromptCatalog.from_file(self.settings.prompt_overrides_path(root))
        self.cancel_event = cancel_event
        self.on_progress = on_progress if on_progress is not None else _log_progress
        self.sessions = sessions if sessions is not None else SessionManager.from_settings(self.settings)
        self.reviewer = reviewer if reviewer is not None else self._default_reviewer(root)
        self.architect = architect if architect is not None else AgentReviewProvider(
            sessions=self.sessions,
            prompts=self.prompts,
            store=self.store,
            tag="claude-architect",
            code_prompt="builder-check",
            strict_verdicts=self.settings.strict_verdicts,
            cancel_event=cancel_event,
        )
        self.diff_source = diff_source if diff_source is not None else GitDiffSource(root)

    def _default_reviewer(self, root: Path) -> ReviewProvider:
        if self.settings.reviewer_provider == "claude":
            return AgentReviewProvider(
                sessions=self.sessions,
                prompts=self.prompts,
                store=self.store,
                strict_verdicts=self.settings.strict_verdicts,
                cancel_event=self.cancel_event,
            )
        return ApiReviewProvider(
            model_name=self.settings.openai_model,
            prompts=self.prompts,
            store=self.store,
            repo_root=root,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record(self, feature_id: str, source: str, message: str) -> None:
        self.store.record(feature_id, source, message)

    def _require_action_target(self, feature: Feature, target: FeatureStatus) -> None:
        """An action may run if it can move to ``target`` or is already there (a rerun)."""
        if feature.status is target or can_transition(feature.status, target):
            return
        raise InvalidTransition(feature.status.value, target.value)

    def _cancel_requested(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _advance(self, feature_id: str, target: FeatureStatus, message: str) -> Feature:
        feature = self.store.load(feature_id)
        if self._cancel_requested():
            self._record(feature_id, "system", f"Cancelled before moving to {target.value}; status left at {feature.status.value}")
            return feature
        if feature.status is target:
            self._record(feature_id, "system", f"{message} (status already {target.value})")
            return self.store.load(feature_id)
        return self.store.transition(feature_id, target, source="system", message=message)

    async def _run_session(self, prompt: str, session: AgentSession, *, resume: bool) -> SessionResult:
        return await self.sessions.run(
            prompt,
            session=session,
            resume=resume,
            on_progress=self.on_progress,
            cancel_event=self.cancel_event,
        )

    async def _run_loop(self, feature_id: str, steps: LoopSteps, policy: LoopPolicy) -> LoopResult:
        try:
            return await ReviewLoop(steps, policy).run()
        except Exception as exc:
            self._record(feature_id, "system", f"{steps.subject} aborted: {exc}")
            raise

    def _record_review(self, feature_id: str, label: str, iteration: int, outcome: ReviewOutcome) -> None:
        if outcome.succeeded:
            status = _VERDICT_LABELS[outcome.classification]
            self._record(feature_id, outcome.provider or "reviewer", f"{label} (iteration {iteration}): {status}")
        else:
            self._record(feature_id, outcome.provider or "reviewer", f"{label} failed: {outcome.error_detail}")

    # ------------------------------------------------------------------
    # Feature creation and manual gates
    # ------------------------------------------------------------------

    def create_feature(self, feature_id: str, name: str | None = None, *, owner: str | None = None) -> Feature:
        if not _FEATURE_ID.match(feature_id):
            raise ValueError(f"Feature id must be a slug of letters, digits, '.', '_' or '-': {feature_id!r}")
        display_name = name.strip() if name and name.strip() else re.sub(r"[-_]", " ", feature_id).title()
        return self.store.create_feature(feature_id, display_name, owner=owner)

    def _manual_transition(self, feature_id: str, target: FeatureStatus, message: str, *, source: str = "user") -> Feature:
        with self.store.run_lock(feature_id):
            return self.store.transition(feature_id, target, source=source, message=message)

    def mark_spec_approved(self, feature_id: str) -> Feature:
        return self._manual_transition(feature_id, FeatureStatus.SPEC_REVIEWED, "Spec approved")

    def mark_plan_approved(self, feature_id: str) -> Feature:
        return self._manual_transition(feature_id, FeatureStatus.PLAN_REVIEWED, "Plan approved")

    def mark_ready_for_build(self, feature_id: str) -> Feature:
        return self._manual_transition(feature_id, FeatureStatus.READY_FOR_BUILD, "Marked ready for build")

    def mark_code_review(self, feature_id: str) -> Feature:
        return self._manual_transition(feature_id, FeatureStatus.CODE_REVIEW, "Moved to code review")

    def start_testing(self, feature_id: str) -> Feature:
        return self._manual_transition(feature_id, FeatureStatus.TESTING, "Started testing", source="system")

    def approve_build(self, feature_id: str) -> Feature:
        return self._manual_transition(feature_id, FeatureStatus.IMPLEMENTED, "Build approved - feature implemented")

    def reject_build(self, feature_id: str, reason: str | None = None) -> Feature:
        message = f"Build rejected: {reason}" if reason else "Build rejected - returning to building"
        return self._manual_transition(feature_id, FeatureStatus.BUILDING, message)

    # ------------------------------------------------------------------
    # Spec and plan generation
    # ------------------------------------------------------------------

    async def generate_spec(self, feature_id: str) -> LoopResult:
        target = _DocumentTarget(
            kind=ArtifactKind.SPEC,
            label="spec",
            source_path=self.store.request_path(feature_id),
            artifact_path=self.store.spec_path(feature_id),
            target_status=FeatureStatus.DRAFT,
        )
        return await self._generate_document(feature_id, target)

    async def generate_plan(self, feature_id: str) -> LoopResult:
        target = _DocumentTarget(
            kind=ArtifactKind.PLAN,
            label="plan",
            source_path=self.store.spec_path(feature_id),
            artifact_path=self.store.plan_path(feature_id),
            target_status=FeatureStatus.PLAN_CREATED,
        )
        return await self._generate_document(feature_id, target)

    def _generation_prompt(self, feature_id: str, target: _DocumentTarget) -> str:
        if target.kind is ArtifactKind.SPEC:
            return self.prompts.render(
                "spec_generation_user",
                feature_id=feature_id,
                request_path=target.source_path,
                spec_path=target.artifact_path,
            )
        return self.prompts.render(
            "plan_generation_user",
            feature_id=feature_id,
            spec_path=target.source_path,
            plan_path=target.artifact_path,
        )

    async def _generate_document(self, feature_id: str, target: _DocumentTarget) -> LoopResult:
        with self.store.run_lock(feature_id):
            feature = self.store.load(feature_id)
            self._require_action_target(feature, target.target_status)
            self.sessions.ensure_available()
            self.reviewer.ensure_available()
            if not target.source_path.is_file():
                raise FileNotFoundError(f"Cannot generate {target.label}: {target.source_path} does not exist")

            self._record(feature_id, "system", f"Starting {target.label} generation")
            session = new_session(Persona.ARCHITECT)
            label = target.label.capitalize()

            async def generate() -> SessionResult:
                result = await self._run_session(self._generation_prompt(feature_id, target), session, resume=False)
                if result.succeeded:
                    self._record(feature_id, "claude", f"Generated initial {target.label} (iteration 1)")
                return result

            async def review(iteration: int) -> ReviewRound:
                outcome = await self.reviewer.review(
                    ReviewRequest(
                        feature_id=feature_id,
                        kind=target.kind,
                        artifact_path=target.artifact_path,
                        report_path=self.store.review_path(feature_id, target.kind),
                    )
                )
                self._record_review(feature_id, f"{label} review", iteration, outcome)
                return ReviewRound.from_outcome(outcome)

            async def incorporate(feedback: str, iteration: int) -> SessionResult:
                prompt = self.prompts.render(
                    "review_incorporation",
                    feature_id=feature_id,
                    artifact_type=target.label,
                    artifact_path=target.artifact_path,
                    review_content=feedback,
                )
                result = await self._run_session(prompt, session, resume=True)
                if result.succeeded:
                    self._record(feature_id, "claude", f"Addressed review feedback (iteration {iteration + 1})")
                return result

            steps = LoopSteps(
                subject=label,
                generate=generate,
                review=review,
                incorporate=incorporate,
                record=partial(self._record, feature_id),
                cancelled=self._cancel_requested,
            )
            policy = LoopPolicy(
                max_iterations=self.settings.max_review_iterations,
                minor_budget=0,
                recursion_limit=self.settings.recursion_limit,
            )
            result = await self._run_loop(feature_id, steps, policy)

            if result.advances_status:
                suffix = " (max iterations reached, issues remain)" if result.outcome is LoopOutcome.MAX_ITERATIONS else ""
                self._advance(feature_id, target.target_status, f"{label} generation complete{suffix}")
            else:
                logger.warning("%s generation for %s stopped: %s", label, feature_id, result.outcome.value)
            return result

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def _ensure_build_reviewers(self) -> None:
        mode = self.settings.build_review_mode
        if mode != "architect-only":
            self.reviewer.ensure_available()
        if mode != "primary-only":
            self.architect.ensure_available()

    async def start_build(self, feature_id: str) -> BuildResult:
        with self.store.run_lock(feature_id):
            feature = self.store.load(feature_id)
            self._require_action_target(feature, FeatureStatus.BUILDING)
            self.sessions.ensure_available()
            self._ensure_build_reviewers()
            self.diff_source.ensure_available()

            plan_path = self.store.plan_path(feature_id)
            phases = read_plan_phases(plan_path)
            if not phases:
                raise NoPhasesFound(
                    f"No phases found in {plan_path}. The plan needs '## Phase N: Description' headers."
                )

            self._advance(feature_id, FeatureStatus.BUILDING, f"Starting build with {len(phases)} phase(s)")
            build = BuildResult(phases=phases)
            if self._cancel_requested():
                return build
            builder = new_session(Persona.BUILDER)
            for index, phase in enumerate(phases):
                self._record(feature_id, "system", f"Starting Phase {phase.number}: {phase.description}")
                steps = self._phase_steps(feature_id, phase, builder, first_phase=index == 0)
                policy = LoopPolicy(
                    max_iterations=self.settings.max_build_iterations,
                    minor_budget=1,
                    recursion_limit=self.settings.recursion_limit,
                )
                result = await self._run_loop(feature_id, steps, policy)
                build.phase_results.append(result)
                if not result.advances_status or self._cancel_requested():
                    self._record(
                        feature_id,
                        "system",
                        f"Build stopped at Phase {phase.number} ({result.outcome.value}); status left at building",
                    )
                    return build

            self._advance(feature_id, FeatureStatus.CODE_REVIEW, f"Build complete: {len(phases)} phase(s) implemented")
            return build

    def _phase_steps(self, feature_id: str, phase: Phase, builder: AgentSession, *, first_phase: bool) -> LoopSteps:
        mode = self.settings.build_review_mode
        spec_path = self.store.spec_path(feature_id)
        plan_path = self.store.plan_path(feature_id)
        intent = {"summary": ""}

        async def generate() -> SessionResult:
            prompt = self.prompts.render(
                "build_phase_user",
                feature_id=feature_id,
                plan_path=plan_path,
                phase_number=phase.number,
                phase_description=phase.description,
            )
            system = self.prompts.render("build_phase_system").strip()
            if first_phase and system:
                prompt = f"{system}\n\n---\n\n{prompt}"
            result = await self._run_session(prompt, builder, resume=not first_phase)
            if result.succeeded:
                intent["summary"] = result.output
                self._record(feature_id, "claude", f"BUILDER completed Phase {phase.number} initial implementation")
            return result

        async def review(iteration: int) -> ReviewRound:
            try:
                snapshot = await self.diff_source.snapshot()
            except RuntimeError as exc:
                return ReviewRound(verdict=Verdict.MAJOR, failed=True, error=f"Diff capture failed: {exc}")
            if not snapshot.has_changes:
                return ReviewRound.no_changes()

            request = ReviewRequest(
                feature_id=feature_id,
                kind=ArtifactKind.CODE,
                artifact_path=plan_path,
                report_path=self.store.review_path(feature_id, ArtifactKind.CODE, phase=phase.number, iteration=iteration),
                spec_path=spec_path,
                plan_path=plan_path,
                diff=snapshot.diff,
                intent_summary=intent["summary"],
                phase_number=phase.number,
            )
            primary: ReviewOutcome | None = None
            secondary: ReviewOutcome | None = None
            if mode != "architect-only":
                primary = await self.reviewer.review(request)
                self._record_review(feature_id, "Code review", iteration, primary)
            if mode != "primary-only":
                architect_request = replace(
                    request,
                    report_path=self.store.review_path(
                        feature_id, ArtifactKind.CODE, phase=phase.number, iteration=iteration, reviewer="architect"
                    ),
                )
                secondary = await self.architect.review(architect_request)
                self._record_review(feature_id, "Code review", iteration, secondary)
            return merge_review_rounds(primary, secondary)

        async def incorporate(feedback: str, iteration: int) -> SessionResult:
            prompt = self.prompts.render(
                "build_review_incorporation",
                phase_number=phase.number,
                review_content=feedback,
            )
            result = await self._run_session(prompt, builder, resume=True)
            if result.succeeded:
                intent["summary"] = result.output
                self._record(feature_id, "claude", f"BUILDER addressed feedback (iteration {iteration + 1})")
            return result

        return LoopSteps(
            subject=f"Phase {phase.number}",
            generate=generate,
            review=review,
            incorporate=incorporate,
            record=partial(self._record, feature_id),
            cancelled=self._cancel_requested,
        )
