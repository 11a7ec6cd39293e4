"""Review providers: one contract, two backends.

``ApiReviewProvider`` makes a single structured-output call and derives the
verdict from the validated report. ``AgentReviewProvider`` runs a fresh
reviewer session and recovers the verdict from the ``## VERDICT`` block in
its final text. Both write the report to ``request.report_path`` before
returning. Failures inside a provider raise ``ReviewProviderFailure``, which
``review`` turns into ``succeeded=False`` so the loop can decide what a
failed review means.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Protocol

from .errors import ReviewProviderFailure
from .llm import StructuredOutputAdapter, ensure_openai_api_key, get_structured_chat_model
from .models import (
    REVIEW_REPORT_SCHEMAS,
    ArtifactKind,
    CodeReviewReport,
    Persona,
    PlanReviewReport,
    ReviewOutcome,
    ReviewReport,
    SpecReviewReport,
    Verdict,
)
from .prompts import PromptCatalog
from .session import SessionRunner, new_session
from .state_store import FeatureStore
from .verdict import classify_verdict, has_verdict_marker

logger = logging.getLogger(__name__)

NO_CHANGES_ERROR = "No code changes to review"
NO_SUMMARY = "(No summary provided)"

CodePromptStyle = Literal["full", "builder-check"]
AdapterFactory = Callable[..., StructuredOutputAdapter]


@dataclass(frozen=True)
class ReviewRequest:
    feature_id: str
    kind: ArtifactKind
    artifact_path: Path
    report_path: Path
    spec_path: Path | None = None
    plan_path: Path | None = None
    diff: str = ""
    intent_summary: str = ""
    phase_number: int | None = None


class ReviewProvider(Protocol):
    tag: str

    def ensure_available(self) -> None:
        ...

    async def review(self, request: ReviewRequest) -> ReviewOutcome:
        ...


def _read(path: Path | None, label: str) -> str:
    if path is None:
        raise ValueError(f"{label} path is required for this review")
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    return path.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# Report rendering
# ---------------------------------------------------------------------------


def _bullets(title: str, items: list[str]) -> list[str]:
    if not items:
        return []
    return [f"## {title}\n", *[f"- {item}" for item in items], ""]


def render_review_markdown(report: ReviewReport, *, phase_number: int | None = None) -> str:
    """Render a validated review report into the canonical markdown layout."""
    if isinstance(report, CodeReviewReport):
        title = f"# Code Review - Phase {phase_number}" if phase_number is not None else "# Code Review"
    elif isinstance(report, PlanReviewReport):
        title = "# Plan Review"
    else:
        title = "# Spec Review"

    lines = [f"{title}\n", f"## Summary\n\n{report.summary}\n"]
    lines.append("**Status: Major Issues Found**\n" if report.has_major_issues else "**Status: No Major Issues**\n")
    if not report.has_major_issues and report.minor_issues:
        lines.append("**Status: Minor Issues Only**\n")
    lines.extend(_bullets("Major Issues", report.major_issues))
    lines.extend(_bullets("Minor Issues", report.minor_issues))

    if isinstance(report, SpecReviewReport):
        lines.extend(_bullets("Questions", report.questions))
        lines.extend(_bullets("Missing Requirements", report.missing_requirements))
        lines.extend(_bullets("Security Risks", report.security_risks))
    elif isinstance(report, PlanReviewReport):
        lines.extend(_bullets("Missing Steps", report.missing_steps))
        if report.risk_assessment.strip():
            lines.append(f"## Risk Assessment\n\n{report.risk_assessment}\n")
        lines.extend(_bullets("Testability Concerns", report.testability_concerns))
    elif isinstance(report, CodeReviewReport):
        lines.extend(_bullets("Security Concerns", report.security_concerns))
        lines.extend(_bullets("Missing From Plan", report.missing_from_plan))
        lines.extend(_bullets("Testing Suggestions", report.testing_suggestions))
    return "\n".join(lines)


def classify_report(report: ReviewReport) -> Verdict:
    if report.has_major_issues:
        return Verdict.MAJOR
    if report.minor_issues:
        return Verdict.MINOR
    return Verdict.NONE


class _ReviewProviderBase:
    """Providers raise ``ReviewProviderFailure`` from ``_run_review``; ``review`` reports it."""

    tag: str

    async def review(self, request: ReviewRequest) -> ReviewOutcome:
        try:
            return await self._run_review(request)
        except ReviewProviderFailure as exc:
            logger.warning("%s %s review of %s failed: %s", self.tag, request.kind.value, request.feature_id, exc)
            return ReviewOutcome.failure(str(exc), provider=self.tag, raw=exc.raw)

    async def _run_review(self, request: ReviewRequest) -> ReviewOutcome:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Implementation A: structured API call
# ---------------------------------------------------------------------------


class ApiReviewProvider(_ReviewProviderBase):
    tag = "openai"

    def __init__(
        self,
        *,
        model_name: str,
        prompts: PromptCatalog,
        store: FeatureStore,
        repo_root: Path | None = None,
        adapter_factory: AdapterFactory = get_structured_chat_model,
    ) -> None:
        self.model_name = model_name
        self.prompts = prompts
        self.store = store
        self.repo_root = repo_root
        self._adapter_factory = adapter_factory
        self._adapters: dict[ArtifactKind, StructuredOutputAdapter] = {}

    def ensure_available(self) -> None:
        ensure_openai_api_key(repo_root=self.repo_root)

    def _adapter(self, kind: ArtifactKind) -> StructuredOutputAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            adapter = self._adapter_factory(
                model_name=self.model_name,
                schema=REVIEW_REPORT_SCHEMAS[kind],
                temperature=0.0,
                strict=True,
                repo_root=self.repo_root,
            )
            self._adapters[kind] = adapter
        return adapter

    def _prompts_for(self, request: ReviewRequest) -> tuple[str, str]:
        if request.kind is ArtifactKind.SPEC:
            content = _read(request.artifact_path, "Spec")
            return (
                self.prompts.render("spec_review_system"),
                self.prompts.render("spec_review_user", artifact_content=content),
            )
        if request.kind is ArtifactKind.PLAN:
            content = _read(request.artifact_path, "Plan")
            return (
                self.prompts.render("plan_review_system"),
                self.prompts.render("plan_review_user", artifact_content=content),
            )
        return (
            self.prompts.render("code_review_system"),
            self.prompts.render(
                "code_review_user",
                spec_content=_read(request.spec_path, "Spec"),
                plan_content=_read(request.plan_path, "Plan"),
                phase_number=request.phase_number,
                git_diff=request.diff,
                intent_summary=request.intent_summary or NO_SUMMARY,
            ),
        )

    async def _run_review(self, request: ReviewRequest) -> ReviewOutcome:
        if request.kind is ArtifactKind.CODE and not request.diff.strip():
            raise ReviewProviderFailure(NO_CHANGES_ERROR)
        try:
            system_prompt, user_prompt = self._prompts_for(request)
            report = await self._adapter(request.kind).ainvoke(system_prompt=system_prompt, user_prompt=user_prompt)
        except Exception as exc:  # noqa: BLE001 - every provider error is reported as a failed review.
            raise ReviewProviderFailure(str(exc)) from exc

        markdown = render_review_markdown(report, phase_number=request.phase_number)
        self.store.write_review(request.report_path, markdown)
        return ReviewOutcome(
            classification=classify_report(report),
            summary_text=markdown,
            raw=report.model_dump_json(by_alias=True),
            provider=self.tag,
            report_path=request.report_path,
        )


# ---------------------------------------------------------------------------
# Implementation B: reviewer agent session
# ---------------------------------------------------------------------------


class AgentReviewProvider(_ReviewProviderBase):
    """Reviews through a fresh agent session per call.

    ``code_prompt="builder-check"`` selects the short plan-plus-diff prompt
    used by the secondary reviewer during builds.
    """

    def __init__(
        self,
        *,
        sessions: SessionRunner,
        prompts: PromptCatalog,
        store: FeatureStore,
        tag: str = "claude-reviewer",
        code_prompt: CodePromptStyle = "full",
        strict_verdicts: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.sessions = sessions
        self.prompts = prompts
        self.store = store
        self.tag = tag
        self.code_prompt = code_prompt
        self.strict_verdicts = strict_verdicts
        self.cancel_event = cancel_event

    def ensure_available(self) -> None:
        self.sessions.ensure_available()

    def _prompt_for(self, request: ReviewRequest) -> str:
        if request.kind is ArtifactKind.SPEC:
            return self.prompts.render_agent(
                "agent_spec_review_system", "agent_spec_review_user", spec_path=request.artifact_path
            )
        if request.kind is ArtifactKind.PLAN:
            return self.prompts.render_agent(
                "agent_plan_review_system", "agent_plan_review_user", plan_path=request.artifact_path
            )
        if self.code_prompt == "builder-check":
            return self.prompts.render(
                "agent_builder_review_user",
                plan_path=request.plan_path,
                phase_number=request.phase_number,
                diff_summary=request.diff,
            )
        return self.prompts.render_agent(
            "agent_code_review_system",
            "agent_code_review_user",
            spec_content=_read(request.spec_path, "Spec"),
            plan_content=_read(request.plan_path, "Plan"),
            phase_number=request.phase_number,
            git_diff=request.diff,
            intent_summary=request.intent_summary or NO_SUMMARY,
        )

    async def _run_review(self, request: ReviewRequest) -> ReviewOutcome:
        if request.kind is ArtifactKind.CODE and not request.diff.strip():
            raise ReviewProviderFailure(NO_CHANGES_ERROR)
        try:
            prompt = self._prompt_for(request)
        except (OSError, ValueError) as exc:
            raise ReviewProviderFailure(str(exc)) from exc

        session = new_session(Persona.REVIEWER)
        result = await self.sessions.run(prompt, session=session, resume=False, cancel_event=self.cancel_event)
        if not result.succeeded:
            raise ReviewProviderFailure(result.error or "Reviewer session failed", raw=result.output)

        text = result.output.strip()
        if not text:
            raise ReviewProviderFailure("Reviewer session produced no review text")

        if not has_verdict_marker(text):
            logger.warning(
                "%s review of %s has no verdict block; treating as %s",
                request.kind.value,
                request.feature_id,
                "MAJOR" if self.strict_verdicts else "NONE",
            )
        classification = classify_verdict(text, fallback=Verdict.MAJOR if self.strict_verdicts else Verdict.NONE)
        self.store.write_review(request.report_path, text + "\n")
        return ReviewOutcome(
            classification=classification,
            summary_text=text,
            raw=text,
            provider=self.tag,
            report_path=request.report_path,
        )
