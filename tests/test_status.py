from datetime import UTC, datetime

import pytest

from feature_workflow.errors import InvalidTransition
from feature_workflow.models import FEATURE_STATUS_TRANSITIONS, Feature, FeatureStatus, HistoryEntry
from feature_workflow.status import (
    apply_transition,
    can_transition,
    parse_status_document,
    render_status_document,
)


ALLOWED = {
    ("requested", "draft"),
    ("draft", "spec-reviewed"),
    ("spec-reviewed", "plan-created"),
    ("plan-created", "plan-reviewed"),
    ("plan-reviewed", "ready-for-build"),
    ("ready-for-build", "building"),
    ("building", "code-review"),
    ("code-review", "testing"),
    ("code-review", "building"),
    ("testing", "implemented"),
    ("testing", "building"),
}


def test_transition_table_matches_lifecycle() -> None:
    for current in FeatureStatus:
        for target in FeatureStatus:
            expected = (current.value, target.value) in ALLOWED
            assert can_transition(current, target) is expected, (current, target)


def test_implemented_is_terminal() -> None:
    assert FEATURE_STATUS_TRANSITIONS[FeatureStatus.IMPLEMENTED] == frozenset()


def test_unknown_status_values_are_rejected() -> None:
    assert not can_transition("requested", "shipped")
    assert not can_transition("nonsense", "draft")


def test_apply_transition_appends_one_entry() -> None:
    feature = Feature(id="login", name="Login", status=FeatureStatus.CODE_REVIEW)
    entry = apply_transition(feature, FeatureStatus.BUILDING, actor="user", message="Build rejected: flaky")
    assert feature.status is FeatureStatus.BUILDING
    assert feature.history == [entry]
    assert entry.source == "user"


def test_invalid_transition_leaves_feature_untouched() -> None:
    feature = Feature(id="login", name="Login", status=FeatureStatus.DRAFT)
    with pytest.raises(InvalidTransition) as excinfo:
        apply_transition(feature, FeatureStatus.IMPLEMENTED, actor="user", message="skip ahead")
    assert "draft -> implemented" in str(excinfo.value)
    assert feature.status is FeatureStatus.DRAFT
    assert feature.history == []


def test_status_document_round_trip_preserves_history_and_extra_keys() -> None:
    first = HistoryEntry(timestamp=datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=UTC), source="system", message="one")
    second = HistoryEntry(timestamp=datetime(2025, 1, 2, 3, 5, 0, tzinfo=UTC), source="claude", message="two")
    feature = Feature(
        id="billing-export",
        name="Billing Export",
        status=FeatureStatus.PLAN_CREATED,
        owner="dana",
        created_at=datetime(2025, 1, 1, tzinfo=UTC),
        history=[first, second],
        extra_meta={"priority": "high"},
    )

    document = render_status_document(feature)
    assert document.startswith("---\nid: billing-export\n")
    assert "priority: high" in document
    # Newest first on disk.
    assert document.index("[claude]  two") < document.index("[system]  one")
    assert "2025-01-02T03:04:05.678Z  [system]  one" in document

    parsed = parse_status_document(document, fallback_id="ignored")
    assert parsed.id == "billing-export"
    assert parsed.status is FeatureStatus.PLAN_CREATED
    assert parsed.owner == "dana"
    assert parsed.extra_meta == {"priority": "high"}
    assert [entry.message for entry in parsed.history] == ["one", "two"]


def test_parse_defaults_missing_fields() -> None:
    parsed = parse_status_document("---\n---\n\n", fallback_id="dark-mode")
    assert parsed.id == "dark-mode"
    assert parsed.name == "Dark Mode"
    assert parsed.status is FeatureStatus.DRAFT


def test_parse_skips_malformed_history_lines() -> None:
    text = "---\nid: a\nstatus: draft\n---\n\nnot a history line\n2025-01-02T03:04:05.000Z  [user]  kept\n"
    parsed = parse_status_document(text, fallback_id="a")
    assert [entry.message for entry in parsed.history] == ["kept"]


def test_parse_rejects_unknown_status() -> None:
    with pytest.raises(ValueError):
        parse_status_document("---\nid: a\nstatus: shipped\n---\n", fallback_id="a")
