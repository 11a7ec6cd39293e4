from __future__ import annotations


class WorkflowError(Exception):
    """Base class for feature workflow failures."""


class InvalidTransition(WorkflowError, ValueError):
    """A status move that is not in the transition table."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal feature status transition: {current} -> {target}")
        self.current = current
        self.target = target


class SessionError(WorkflowError, RuntimeError):
    """A generation or reviewer session did not complete successfully."""


class ProcessSpawnFailure(SessionError):
    pass


class ProcessNonZeroExit(SessionError):
    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class SessionCancelled(SessionError):
    pass


class SessionTimeout(SessionError):
    pass


class ProviderUnavailable(WorkflowError, RuntimeError):
    """A required credential or executable is missing. Raised before any generation call."""


class ReviewProviderFailure(WorkflowError, RuntimeError):
    """A reviewer could not produce a review. Providers report it as a failed outcome."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class NoPhasesFound(WorkflowError, ValueError):
    pass


class FeatureBusy(WorkflowError, RuntimeError):
    """Another lifecycle action already holds the feature's run lock."""
