from importlib.metadata import version

from .diffs import DiffSource, GitDiffSource
from .errors import (
    FeatureBusy,
    InvalidTransition,
    NoPhasesFound,
    ProcessNonZeroExit,
    ProcessSpawnFailure,
    ProviderUnavailable,
    ReviewProviderFailure,
    SessionCancelled,
    SessionError,
    SessionTimeout,
    WorkflowError,
)
from .events import EventKind, EventStreamDecoder, StreamEvent, classify_record
from .loops import LoopOutcome, LoopPolicy, LoopResult, LoopSteps, ReviewLoop, ReviewRound, merge_review_rounds
from .models import (
    ArtifactKind,
    CodeReviewReport,
    DiffSnapshot,
    Feature,
    FeatureStatus,
    HistoryEntry,
    Persona,
    Phase,
    PlanReviewReport,
    ReviewOutcome,
    SessionResult,
    SpecReviewReport,
    Verdict,
)
from .phases import extract_phases, read_plan_phases
from .prompts import DEFAULT_PROMPTS, PromptCatalog
from .review import AgentReviewProvider, ApiReviewProvider, ReviewProvider, ReviewRequest
from .session import AgentSession, SessionManager, new_session
from .settings import RuntimeSettings
from .state_store import FeatureStore
from .status import can_transition
from .verdict import classify_verdict, merge_verdicts
from .workflow import BuildResult, WorkflowEngine


def get_version() -> str:
    try:
        return version("feature-workflow")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentReviewProvider",
    "AgentSession",
    "ApiReviewProvider",
    "ArtifactKind",
    "BuildResult",
    "CodeReviewReport",
    "DEFAULT_PROMPTS",
    "DiffSnapshot",
    "DiffSource",
    "EventKind",
    "EventStreamDecoder",
    "Feature",
    "FeatureBusy",
    "FeatureStatus",
    "FeatureStore",
    "GitDiffSource",
    "HistoryEntry",
    "InvalidTransition",
    "LoopOutcome",
    "LoopPolicy",
    "LoopResult",
    "LoopSteps",
    "NoPhasesFound",
    "Persona",
    "Phase",
    "PlanReviewReport",
    "ProcessNonZeroExit",
    "ProcessSpawnFailure",
    "PromptCatalog",
    "ProviderUnavailable",
    "ReviewLoop",
    "ReviewOutcome",
    "ReviewProvider",
    "ReviewProviderFailure",
    "ReviewRequest",
    "ReviewRound",
    "RuntimeSettings",
    "SessionCancelled",
    "SessionError",
    "SessionManager",
    "SessionResult",
    "SessionTimeout",
    "SpecReviewReport",
    "StreamEvent",
    "Verdict",
    "WorkflowEngine",
    "WorkflowError",
    "can_transition",
    "classify_record",
    "classify_verdict",
    "extract_phases",
    "merge_verdicts",
    "new_session",
    "read_plan_phases",
]
