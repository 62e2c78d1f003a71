"""
Plan file checklist parsing.

A canonical plan step looks like:

    - [ ] [P0][S][T12] Wire the store into the CLI
    - [x] [P2][L][T3] Write integration tests

i.e. a checkbox (" " or "x"), a priority tag P0-P3, a complexity tag S/M/L
and a step id T<n> with no leading zeros. Any other non-empty checkbox line
is collected as an "other" checklist line.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from metagent.utils.fs import read_file

_CHECKLIST_RE = re.compile(r"^\s*- \[([ x])\] (.*)$")
_CANONICAL_RE = re.compile(r"^\[(P[0-3])\]\[([SML])\]\[T(0|[1-9][0-9]*)\] (.*)$")


@dataclass
class ChecklistStep:
    line: int
    done: bool
    title: str


@dataclass
class CanonicalStep(ChecklistStep):
    priority: str = "P2"
    complexity: str = "M"
    step_id: int = 0


@dataclass
class PlanSummary:
    """Parsed checklist of a plan file."""
    path: Path
    canonical: list[CanonicalStep] = field(default_factory=list)
    other: list[ChecklistStep] = field(default_factory=list)

    @property
    def steps(self) -> list[ChecklistStep]:
        return [*self.canonical, *self.other]

    @property
    def is_empty(self) -> bool:
        return not self.canonical and not self.other

    @property
    def done(self) -> int:
        return sum(1 for step in self.steps if step.done)

    @property
    def open(self) -> int:
        return len(self.steps) - self.done

    def duplicate_ids(self) -> list[tuple[int, list[int]]]:
        """Step ids used on more than one line, as (id, sorted lines), by id."""
        lines_by_id: dict[int, list[int]] = defaultdict(list)
        for step in self.canonical:
            lines_by_id[step.step_id].append(step.line)
        return sorted(
            (step_id, sorted(lines))
            for step_id, lines in lines_by_id.items()
            if len(lines) > 1
        )

    def warnings(self) -> list[str]:
        return [
            f"duplicate T{step_id} at lines {', '.join(str(n) for n in lines)}"
            for step_id, lines in self.duplicate_ids()
        ]


def parse_plan_line(line: str, line_number: int) -> Optional[ChecklistStep]:
    """Parse one line; returns a CanonicalStep, a ChecklistStep or None."""
    match = _CHECKLIST_RE.match(line)
    if not match:
        return None
    done = match.group(1) == "x"
    rest = match.group(2)

    canonical = _CANONICAL_RE.match(rest)
    if canonical and canonical.group(4).strip():
        return CanonicalStep(
            line=line_number,
            done=done,
            title=canonical.group(4).strip(),
            priority=canonical.group(1),
            complexity=canonical.group(2),
            step_id=int(canonical.group(3)),
        )

    title = rest.strip()
    if not title:
        return None
    return ChecklistStep(line=line_number, done=done, title=title)


def parse_plan(content: str, path: Path) -> PlanSummary:
    summary = PlanSummary(path=path)
    for index, line in enumerate(content.splitlines(), start=1):
        step = parse_plan_line(line, index)
        if isinstance(step, CanonicalStep):
            summary.canonical.append(step)
        elif step is not None:
            summary.other.append(step)
    return summary


def load_plan(path: Path) -> PlanSummary:
    return parse_plan(read_file(path), path)
