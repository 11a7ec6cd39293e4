from feature_workflow.models import Verdict
from feature_workflow.verdict import classify_verdict, has_verdict_marker, merge_verdicts


def test_action_required_major_beats_approving_language() -> None:
    text = "Looks approved overall, great work.\n\n## VERDICT\n**Action Required**: MAJOR\n"
    assert classify_verdict(text) is Verdict.MAJOR


def test_action_required_is_case_insensitive() -> None:
    assert classify_verdict("**action required**: minor") is Verdict.MINOR
    assert classify_verdict("**Action Required**:NONE") is Verdict.NONE


def test_echoed_template_line_is_not_a_verdict() -> None:
    text = "**Action Required**: [NONE | MINOR | MAJOR]"
    assert classify_verdict(text, fallback=Verdict.MAJOR) is Verdict.MAJOR
    assert not has_verdict_marker(text)


def test_builder_must_fix_no_is_none() -> None:
    assert classify_verdict("**Builder Must Fix**: NO", fallback=Verdict.MAJOR) is Verdict.NONE


def test_builder_must_fix_yes_falls_through_to_other_markers() -> None:
    text = "**Builder Must Fix**: YES\n**Status: Major Issues Found**"
    assert classify_verdict(text) is Verdict.MAJOR


def test_status_markers() -> None:
    assert classify_verdict("**Status: Major Issues Found**") is Verdict.MAJOR
    assert classify_verdict("**Status: No Major Issues**") is Verdict.NONE
    assert classify_verdict("**Status: No Major Issues**\n**Status: Minor Issues Only**") is Verdict.MINOR


def test_missing_marker_uses_fallback() -> None:
    assert classify_verdict("I reviewed it and it is fine.") is Verdict.NONE
    assert classify_verdict("I reviewed it and it is fine.", fallback=Verdict.MAJOR) is Verdict.MAJOR
    assert not has_verdict_marker("I reviewed it and it is fine.")


def test_merge_takes_most_severe() -> None:
    assert merge_verdicts() is Verdict.NONE
    assert merge_verdicts(Verdict.NONE, Verdict.MINOR) is Verdict.MINOR
    assert merge_verdicts(Verdict.MINOR, Verdict.MAJOR, Verdict.NONE) is Verdict.MAJOR
