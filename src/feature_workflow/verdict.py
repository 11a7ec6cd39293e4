"""Severity classification of free-form review text.

Patterns are tried in order and the first match wins:

1. ``**Action Required**: NONE|MINOR|MAJOR``
2. ``**Builder Must Fix**: NO`` (read as NONE)
3. ``**Status: Major Issues Found**`` / ``**Status: No Major Issues**``
   (with ``**Status: Minor Issues Only**`` read as MINOR)
4. ``fallback``, which is NONE unless the caller asks to fail closed.
"""

from __future__ import annotations

import re

from .models import VERDICT_SEVERITY, Verdict

_ACTION_REQUIRED = re.compile(r"\*\*Action Required\*\*:\s*(NONE|MINOR|MAJOR)\b", re.IGNORECASE)
_BUILDER_MUST_FIX = re.compile(r"\*\*Builder Must Fix\*\*:\s*(YES|NO)\b", re.IGNORECASE)
_STATUS_MAJOR = re.compile(r"\*\*Status:\s*Major Issues Found\*\*", re.IGNORECASE)
_STATUS_NO_MAJOR = re.compile(r"\*\*Status:\s*No Major Issues\*\*", re.IGNORECASE)
_STATUS_MINOR_ONLY = re.compile(r"\*\*Status:\s*Minor Issues Only\*\*", re.IGNORECASE)


def classify_verdict(text: str, *, fallback: Verdict = Verdict.NONE) -> Verdict:
    action = _ACTION_REQUIRED.search(text)
    if action is not None:
        return Verdict(action.group(1).upper())

    must_fix = _BUILDER_MUST_FIX.search(text)
    if must_fix is not None and must_fix.group(1).upper() == "NO":
        return Verdict.NONE

    if _STATUS_MAJOR.search(text):
        return Verdict.MAJOR
    if _STATUS_NO_MAJOR.search(text):
        return Verdict.MINOR if _STATUS_MINOR_ONLY.search(text) else Verdict.NONE

    return fallback


def has_verdict_marker(text: str) -> bool:
    return any(
        pattern.search(text)
        for pattern in (_ACTION_REQUIRED, _BUILDER_MUST_FIX, _STATUS_MAJOR, _STATUS_NO_MAJOR)
    )


def merge_verdicts(*verdicts: Verdict) -> Verdict:
    """MAJOR if any reviewer says MAJOR, else MINOR if any says MINOR, else NONE."""
    merged = Verdict.NONE
    for verdict in verdicts:
        if VERDICT_SEVERITY[verdict] > VERDICT_SEVERITY[merged]:
            merged = verdict
    return merged
