from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import FeatureBusy
from .models import ArtifactKind, Feature, FeatureStatus, HistoryEntry
from .status import append_history, apply_transition, parse_status_document, render_status_document

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_STATUS_SUFFIX = ".status.md"

REQUEST_TEMPLATE = """# {name}

## Problem

Describe the problem this feature solves.

## Goals

-

## Non-goals

-

## Notes

"""


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    """Read a text file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# FeatureStore
# ---------------------------------------------------------------------------


class FeatureStore:
    """Status documents and artifacts for every feature under one directory.

    Status and history updates are read-modify-write under an exclusive
    ``fcntl`` lock and land through an atomic rename, so two writers on the
    same feature cannot lose each other's entries. ``run_lock`` additionally
    keeps a second lifecycle action off a feature while one is in flight.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    # -- paths ---------------------------------------------------------------

    def status_path(self, feature_id: str) -> Path:
        return self.root / f"{feature_id}{_STATUS_SUFFIX}"

    def request_path(self, feature_id: str) -> Path:
        return self.root / f"{feature_id}.request.md"

    def spec_path(self, feature_id: str) -> Path:
        return self.root / f"{feature_id}.spec.md"

    def plan_path(self, feature_id: str) -> Path:
        return self.root / f"{feature_id}.plan.md"

    def review_path(
        self,
        feature_id: str,
        kind: ArtifactKind,
        *,
        phase: int | None = None,
        iteration: int | None = None,
        reviewer: str | None = None,
    ) -> Path:
        if kind is not ArtifactKind.CODE:
            return self.root / f"{feature_id}.{kind.value}.review.md"
        if phase is None or iteration is None:
            raise ValueError("Code review paths require phase and iteration")
        suffix = f".{reviewer}" if reviewer else ""
        return self.root / f"{feature_id}.code.review.p{phase}.i{iteration}{suffix}.md"

    # -- reads ---------------------------------------------------------------

    def exists(self, feature_id: str) -> bool:
        return self.status_path(feature_id).is_file()

    def load(self, feature_id: str) -> Feature:
        path = self.status_path(feature_id)
        text = _safe_read_text(path, "feature status")
        return parse_status_document(text, fallback_id=feature_id)

    def list_features(self) -> list[Feature]:
        features: list[Feature] = []
        for path in sorted(self.root.glob(f"*{_STATUS_SUFFIX}")):
            feature_id = path.name[: -len(_STATUS_SUFFIX)]
            try:
                features.append(self.load(feature_id))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable status file %s: %s", path, exc)
        return features

    # -- writes --------------------------------------------------------------

    def create_feature(self, feature_id: str, name: str, *, owner: str | None = None) -> Feature:
        path = self.status_path(feature_id)
        with _locked_file(path):
            if path.exists():
                raise FileExistsError(f"Feature already exists: {feature_id}")
            feature = Feature(id=feature_id, name=name, owner=owner)
            append_history(feature, actor="system", message="Feature request created")
            _atomic_write_text(path, render_status_document(feature))
        request = self.request_path(feature_id)
        if not request.exists():
            _atomic_write_text(request, REQUEST_TEMPLATE.format(name=name))
        logger.info("Created feature %s at %s", feature_id, path)
        return feature

    def record(self, feature_id: str, source: str, message: str) -> HistoryEntry:
        """Append a history entry without changing status."""
        path = self.status_path(feature_id)
        with _locked_file(path):
            feature = self.load(feature_id)
            entry = append_history(feature, actor=source, message=message)
            _atomic_write_text(path, render_status_document(feature))
        logger.info("[%s] [%s] %s", feature_id, source, message)
        return entry

    def transition(self, feature_id: str, target: FeatureStatus, *, source: str, message: str) -> Feature:
        """Apply a status transition under the feature's file lock.

        Raises:
            InvalidTransition: If the move is not allowed from the stored status.
        """
        path = self.status_path(feature_id)
        with _locked_file(path):
            feature = self.load(feature_id)
            previous = feature.status
            apply_transition(feature, target, actor=source, message=message)
            _atomic_write_text(path, render_status_document(feature))
        logger.info("Feature %s status %s -> %s", feature_id, previous.value, feature.status.value)
        return feature

    def write_review(self, path: Path, content: str) -> Path:
        _atomic_write_text(path, content)
        return path

    @contextmanager
    def run_lock(self, feature_id: str) -> Iterator[None]:
        """Hold the feature's run lock, failing fast if another action owns it.

        Raises:
            FeatureBusy: If the lock is already held.
        """
        lock_path = self.root / f".{feature_id}.run{_LOCK_SUFFIX}"
        with lock_path.open("a+", encoding="utf-8") as lock_handle:
            try:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise FeatureBusy(f"Another workflow action is already running for {feature_id}") from exc
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
