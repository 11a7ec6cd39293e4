from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import ProcessNonZeroExit, ProcessSpawnFailure, SessionCancelled, SessionError, SessionTimeout

_LINE_BREAKS = re.compile(r"\s*(?:\r\n|\r|\n)\s*")


def utc_now() -> datetime:
    return datetime.now(UTC)


class FeatureStatus(str, Enum):
    REQUESTED = "requested"
    DRAFT = "draft"
    SPEC_REVIEWED = "spec-reviewed"
    PLAN_CREATED = "plan-created"
    PLAN_REVIEWED = "plan-reviewed"
    READY_FOR_BUILD = "ready-for-build"
    BUILDING = "building"
    CODE_REVIEW = "code-review"
    TESTING = "testing"
    IMPLEMENTED = "implemented"


FEATURE_STATUS_TRANSITIONS: dict[FeatureStatus, frozenset[FeatureStatus]] = {
    FeatureStatus.REQUESTED: frozenset({FeatureStatus.DRAFT}),
    FeatureStatus.DRAFT: frozenset({FeatureStatus.SPEC_REVIEWED}),
    FeatureStatus.SPEC_REVIEWED: frozenset({FeatureStatus.PLAN_CREATED}),
    FeatureStatus.PLAN_CREATED: frozenset({FeatureStatus.PLAN_REVIEWED}),
    FeatureStatus.PLAN_REVIEWED: frozenset({FeatureStatus.READY_FOR_BUILD}),
    FeatureStatus.READY_FOR_BUILD: frozenset({FeatureStatus.BUILDING}),
    FeatureStatus.BUILDING: frozenset({FeatureStatus.CODE_REVIEW}),
    FeatureStatus.CODE_REVIEW: frozenset({FeatureStatus.TESTING, FeatureStatus.BUILDING}),
    FeatureStatus.TESTING: frozenset({FeatureStatus.IMPLEMENTED, FeatureStatus.BUILDING}),
    FeatureStatus.IMPLEMENTED: frozenset(),
}


class Verdict(str, Enum):
    NONE = "NONE"
    MINOR = "MINOR"
    MAJOR = "MAJOR"


VERDICT_SEVERITY: dict[Verdict, int] = {Verdict.NONE: 0, Verdict.MINOR: 1, Verdict.MAJOR: 2}


class Persona(str, Enum):
    ARCHITECT = "architect"
    BUILDER = "builder"
    REVIEWER = "reviewer"


class ArtifactKind(str, Enum):
    SPEC = "spec"
    PLAN = "plan"
    CODE = "code"


# ---------------------------------------------------------------------------
# Feature records
# ---------------------------------------------------------------------------


class HistoryEntry(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    source: str
    message: str

    @field_validator("message")
    @classmethod
    def _single_line(cls, value: str) -> str:
        # One history entry per line in the status document.
        return _LINE_BREAKS.sub(" | ", value.strip())

    def render(self) -> str:
        stamp = self.timestamp.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return f"{stamp}  [{self.source}]  {self.message}"


class Feature(BaseModel):
    """A unit of work moving through the status lifecycle.

    ``history`` is stored chronologically (oldest first); the status document
    renders it newest first.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    status: FeatureStatus = FeatureStatus.REQUESTED
    owner: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    history: list[HistoryEntry] = Field(default_factory=list)
    extra_meta: dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class Phase:
    number: int
    description: str
    content: str


# ---------------------------------------------------------------------------
# Session and review results
# ---------------------------------------------------------------------------


@dataclass
class SessionResult:
    """Outcome of one agent session call: full prompt in, full output out."""

    session_id: str
    succeeded: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    cancelled: bool = False
    timed_out: bool = False
    spawn_failed: bool = False

    def raise_for_status(self) -> None:
        if self.succeeded:
            return
        detail = self.error or "Session failed"
        if self.spawn_failed:
            raise ProcessSpawnFailure(detail)
        if self.cancelled:
            raise SessionCancelled(detail)
        if self.timed_out:
            raise SessionTimeout(detail)
        if self.exit_code is not None:
            raise ProcessNonZeroExit(detail, exit_code=self.exit_code)
        raise SessionError(detail)


@dataclass
class ReviewOutcome:
    classification: Verdict
    summary_text: str = ""
    raw: str = ""
    succeeded: bool = True
    error_detail: str | None = None
    provider: str = ""
    report_path: Path | None = None

    @property
    def effective_verdict(self) -> Verdict:
        """Failed reviews block: callers see MAJOR, never a clean pass."""
        if not self.succeeded:
            return Verdict.MAJOR
        return self.classification

    @classmethod
    def failure(cls, error_detail: str, *, provider: str = "", raw: str = "") -> "ReviewOutcome":
        return cls(
            classification=Verdict.MAJOR,
            raw=raw,
            succeeded=False,
            error_detail=error_detail,
            provider=provider,
        )


# ---------------------------------------------------------------------------
# Structured review responses (API provider)
# ---------------------------------------------------------------------------


class ReviewReport(BaseModel):
    """Fields shared by every review response. All keys are required on the wire."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    has_major_issues: bool
    summary: str
    major_issues: list[str]
    minor_issues: list[str]


class SpecReviewReport(ReviewReport):
    questions: list[str]
    missing_requirements: list[str]
    security_risks: list[str]


class PlanReviewReport(ReviewReport):
    missing_steps: list[str]
    risk_assessment: str
    testability_concerns: list[str]


class CodeReviewReport(ReviewReport):
    security_concerns: list[str]
    missing_from_plan: list[str]
    testing_suggestions: list[str]


REVIEW_REPORT_SCHEMAS: dict[ArtifactKind, type[ReviewReport]] = {
    ArtifactKind.SPEC: SpecReviewReport,
    ArtifactKind.PLAN: PlanReviewReport,
    ArtifactKind.CODE: CodeReviewReport,
}


@dataclass
class DiffSnapshot:
    diff: str
    files: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.diff.strip())
