from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

REVIEWER_PROVIDERS = ("openai", "claude")
BUILD_REVIEW_MODES = ("primary-only", "architect-only", "both")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    max_review_iterations: int = 3
    max_build_iterations: int = 5
    session_timeout_minutes: int = 10
    reviewer_provider: str = "openai"
    build_review_mode: str = "both"
    openai_model: str = "gpt-4o"
    agent_executable: str = "claude"
    features_dir: str = "docs/features"
    prompt_overrides_file: str = ""
    workspace_root: str = ""
    strict_verdicts: bool = False
    progress_preview_chars: int = 100
    recursion_limit: int = 200

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            max_review_iterations=_get_env_int("FEATURE_WORKFLOW_MAX_REVIEW_ITERATIONS", default=3, minimum=1, maximum=50),
            max_build_iterations=_get_env_int("FEATURE_WORKFLOW_MAX_BUILD_ITERATIONS", default=5, minimum=1, maximum=50),
            session_timeout_minutes=_get_env_int("FEATURE_WORKFLOW_SESSION_TIMEOUT_MINUTES", default=10, minimum=1, maximum=24 * 60),
            reviewer_provider=os.getenv("FEATURE_WORKFLOW_REVIEWER_PROVIDER", "openai"),
            build_review_mode=os.getenv("FEATURE_WORKFLOW_BUILD_REVIEW_MODE", "both"),
            openai_model=os.getenv("FEATURE_WORKFLOW_OPENAI_MODEL", "gpt-4o"),
            agent_executable=os.getenv("FEATURE_WORKFLOW_AGENT_EXECUTABLE", "claude"),
            features_dir=os.getenv("FEATURE_WORKFLOW_FEATURES_DIR", "docs/features"),
            prompt_overrides_file=os.getenv("FEATURE_WORKFLOW_PROMPT_OVERRIDES_FILE", ""),
            workspace_root=os.getenv("FEATURE_WORKFLOW_WORKSPACE_ROOT", ""),
            strict_verdicts=_get_env_bool("FEATURE_WORKFLOW_STRICT_VERDICTS", default=False),
            progress_preview_chars=_get_env_int("FEATURE_WORKFLOW_PROGRESS_PREVIEW_CHARS", default=100, minimum=10, maximum=10_000),
            recursion_limit=_get_env_int("FEATURE_WORKFLOW_RECURSION_LIMIT", default=200, minimum=25, maximum=100_000),
        ).normalized()

    @property
    def workspace_root_path(self) -> Path:
        """Return the workspace root as a Path, defaulting to cwd if unset."""
        return Path(self.workspace_root) if self.workspace_root else Path.cwd()

    @property
    def session_timeout_seconds(self) -> float:
        return float(self.session_timeout_minutes * 60)

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        reviewer_provider = self.reviewer_provider.strip().lower()
        if reviewer_provider not in REVIEWER_PROVIDERS:
            raise ValueError("FEATURE_WORKFLOW_REVIEWER_PROVIDER must be one of: openai, claude")

        # "openai-only" is the historical name of the primary-only mode
        build_review_mode = self.build_review_mode.strip().lower()
        if build_review_mode == "openai-only":
            build_review_mode = "primary-only"
        if build_review_mode not in BUILD_REVIEW_MODES:
            raise ValueError(
                "FEATURE_WORKFLOW_BUILD_REVIEW_MODE must be one of: primary-only, architect-only, both"
            )

        openai_model = self.openai_model.strip()
        if not openai_model:
            raise ValueError("FEATURE_WORKFLOW_OPENAI_MODEL must be non-empty")
        agent_executable = self.agent_executable.strip()
        if not agent_executable:
            raise ValueError("FEATURE_WORKFLOW_AGENT_EXECUTABLE must be non-empty")
        features_dir = self.features_dir.strip()
        if not features_dir:
            raise ValueError("FEATURE_WORKFLOW_FEATURES_DIR must be non-empty")

        return RuntimeSettings(
            max_review_iterations=self.max_review_iterations,
            max_build_iterations=self.max_build_iterations,
            session_timeout_minutes=self.session_timeout_minutes,
            reviewer_provider=reviewer_provider,
            build_review_mode=build_review_mode,
            openai_model=openai_model,
            agent_executable=agent_executable,
            features_dir=features_dir,
            prompt_overrides_file=self.prompt_overrides_file.strip(),
            workspace_root=self.workspace_root,
            strict_verdicts=self.strict_verdicts,
            progress_preview_chars=self.progress_preview_chars,
            recursion_limit=self.recursion_limit,
        )

    def features_path(self, repo_root: Path) -> Path:
        path = Path(self.features_dir)
        return path if path.is_absolute() else repo_root / path

    def prompt_overrides_path(self, repo_root: Path) -> Path | None:
        if not self.prompt_overrides_file:
            return None
        path = Path(self.prompt_overrides_file)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")
