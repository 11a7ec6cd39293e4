"""Feature status lifecycle and the status document format.

Every status change, whether a manual approval or the completion of a
generation loop, goes through ``apply_transition`` so the allowed moves are
decided in exactly one place.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime

from pydantic import ValidationError

from .errors import InvalidTransition
from .models import FEATURE_STATUS_TRANSITIONS, Feature, FeatureStatus, HistoryEntry, utc_now

logger = logging.getLogger(__name__)

_FRONT_MATTER_DELIMITER = "---"
_KNOWN_KEYS = ("id", "name", "status", "owner", "created_at")
_HISTORY_LINE = re.compile(r"^(?P<timestamp>\S+)\s{2}\[(?P<source>[^\]]+)\]\s{2}(?P<message>.*)$")


def can_transition(current: FeatureStatus | str, target: FeatureStatus | str) -> bool:
    try:
        current_status = FeatureStatus(current)
        target_status = FeatureStatus(target)
    except ValueError:
        return False
    return target_status in FEATURE_STATUS_TRANSITIONS[current_status]


def apply_transition(feature: Feature, target: FeatureStatus | str, *, actor: str, message: str) -> HistoryEntry:
    """Move ``feature`` to ``target`` and append exactly one history entry.

    Raises:
        InvalidTransition: If the move is not in the transition table. The
            feature is left untouched.
    """
    if not can_transition(feature.status, target):
        raise InvalidTransition(str(FeatureStatus(feature.status).value), str(target))
    entry = HistoryEntry(source=actor, message=message)
    feature.status = FeatureStatus(target)
    feature.history.append(entry)
    return entry


def append_history(feature: Feature, *, actor: str, message: str) -> HistoryEntry:
    entry = HistoryEntry(source=actor, message=message)
    feature.history.append(entry)
    return entry


# ---------------------------------------------------------------------------
# Status document codec
# ---------------------------------------------------------------------------


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def render_status_document(feature: Feature) -> str:
    """Render the metadata block followed by newest-first history lines."""
    meta: dict[str, str] = {
        "id": feature.id,
        "name": feature.name,
        "status": FeatureStatus(feature.status).value,
    }
    if feature.owner:
        meta["owner"] = feature.owner
    meta["created_at"] = _format_timestamp(feature.created_at)
    for key, value in feature.extra_meta.items():
        if key not in meta:
            meta[key] = value

    header = "\n".join(f"{key}: {value}" for key, value in meta.items())
    body = "\n".join(entry.render() for entry in reversed(feature.history))
    document = f"{_FRONT_MATTER_DELIMITER}\n{header}\n{_FRONT_MATTER_DELIMITER}\n\n"
    if body:
        document += body + "\n"
    return document


def _split_front_matter(text: str) -> tuple[dict[str, str], str]:
    if not text.startswith(_FRONT_MATTER_DELIMITER):
        return {}, text
    end = text.find(f"\n{_FRONT_MATTER_DELIMITER}", len(_FRONT_MATTER_DELIMITER))
    if end == -1:
        return {}, text
    raw = text[len(_FRONT_MATTER_DELIMITER):end].strip()
    body = text[end + len(_FRONT_MATTER_DELIMITER) + 1:]
    meta: dict[str, str] = {}
    for line in raw.splitlines():
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        meta[key.strip()] = value.strip()
    return meta, body


def _default_name(feature_id: str) -> str:
    return re.sub(r"[-_]", " ", feature_id).title()


def parse_status_document(text: str, *, fallback_id: str) -> Feature:
    """Parse a status document back into a ``Feature``.

    Missing ``id``/``name`` fall back to the file stem; a missing status is
    read as ``draft``. Unknown metadata keys are preserved in ``extra_meta``.

    Raises:
        ValueError: If the status or a timestamp is not valid.
    """
    meta, body = _split_front_matter(text)
    feature_id = meta.get("id") or fallback_id
    raw_status = meta.get("status") or FeatureStatus.DRAFT.value
    try:
        status = FeatureStatus(raw_status)
    except ValueError as exc:
        raise ValueError(f"Unknown feature status {raw_status!r} for feature {feature_id}") from exc

    created_raw = meta.get("created_at")
    created_at = datetime.fromisoformat(created_raw) if created_raw else utc_now()

    history: list[HistoryEntry] = []
    for line in body.splitlines():
        if not line.strip():
            continue
        match = _HISTORY_LINE.match(line)
        if match is None:
            logger.warning("Skipping unrecognised history line for %s: %r", feature_id, line[:200])
            continue
        history.append(
            HistoryEntry(
                timestamp=datetime.fromisoformat(match.group("timestamp")),
                source=match.group("source"),
                message=match.group("message"),
            )
        )
    history.reverse()

    try:
        return Feature(
            id=feature_id,
            name=meta.get("name") or _default_name(feature_id),
            status=status,
            owner=meta.get("owner") or None,
            created_at=created_at,
            history=history,
            extra_meta={key: value for key, value in meta.items() if key not in _KNOWN_KEYS},
        )
    except ValidationError as exc:
        raise ValueError(f"Status document for {feature_id} failed validation: {exc}") from exc
