from __future__ import annotations

import re
from pathlib import Path

from .models import Phase

PHASE_HEADER = re.compile(r"^##\s*Phase\s+(\d+)\s*[:.\-–—]\s*(.+)$", re.IGNORECASE)


def extract_phases(text: str) -> list[Phase]:
    """Split plan text into phases keyed by ``## Phase N: description`` headers.

    Text before the first header is dropped. Each phase's content runs from
    its header line to the line before the next header. The result is sorted
    by number; duplicate numbers are all kept in document order.
    """
    phases: list[Phase] = []
    number: int | None = None
    description = ""
    lines: list[str] = []

    def close_current() -> None:
        if number is not None:
            phases.append(Phase(number=number, description=description, content="\n".join(lines).strip()))

    for line in text.splitlines():
        match = PHASE_HEADER.match(line.strip())
        if match is None:
            if number is not None:
                lines.append(line)
            continue
        close_current()
        number = int(match.group(1))
        description = match.group(2).strip()
        lines = [line]
    close_current()

    return sorted(phases, key=lambda phase: phase.number)


def read_plan_phases(plan_path: Path) -> list[Phase]:
    if not plan_path.is_file():
        raise FileNotFoundError(f"Plan not found: {plan_path}")
    return extract_phases(plan_path.read_text(encoding="utf-8"))
