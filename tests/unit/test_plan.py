"""Tests for plan checklist parsing."""

from pathlib import Path

import pytest

from metagent.plan import CanonicalStep, ChecklistStep, load_plan, parse_plan, parse_plan_line

PLAN = """\
# Implementation Plan - auth

- [ ] [P0][S][T1] Add login route
- [x] [P2][L][T2] Write session store
  - [ ] [P1][M][T1] Nested duplicate id
- [ ] (tasks will be added during planning phase)
- [x] Loose done item
- [ ]
* [ ] not a checklist bullet
"""


class TestParsePlanLine:
    def test_canonical(self):
        step = parse_plan_line("- [x] [P1][M][T12] Wire it up", 3)

        assert isinstance(step, CanonicalStep)
        assert step.done
        assert (step.priority, step.complexity, step.step_id) == ("P1", "M", 12)
        assert step.title == "Wire it up"
        assert step.line == 3

    @pytest.mark.parametrize(
        "line",
        [
            "- [ ] [P4][S][T1] Bad priority",
            "- [ ] [P1][XL][T1] Bad complexity",
            "- [ ] [P1][S][T01] Leading zero",
            "- [ ] [P1][S][T1]",
        ],
    )
    def test_non_canonical_tags_fall_back_to_plain_steps(self, line):
        step = parse_plan_line(line, 1)
        assert type(step) is ChecklistStep

    @pytest.mark.parametrize("line", ["", "text", "- [ ]", "-[ ] x", "- [X] upper"])
    def test_not_steps(self, line):
        assert parse_plan_line(line, 1) is None


class TestParsePlan:
    """Tests for parse_plan() summaries."""

    def test_summary(self):
        summary = parse_plan(PLAN, Path("plan.md"))

        assert [s.step_id for s in summary.canonical] == [1, 2, 1]
        assert [s.title for s in summary.other] == [
            "(tasks will be added during planning phase)",
            "Loose done item",
        ]
        assert summary.done == 2
        assert summary.open == 3
        assert not summary.is_empty

    def test_duplicate_warnings(self):
        summary = parse_plan(PLAN, Path("plan.md"))

        assert summary.duplicate_ids() == [(1, [3, 5])]
        assert summary.warnings() == ["duplicate T1 at lines 3, 5"]

    def test_empty_plan(self):
        summary = parse_plan("# Nothing yet\n", Path("plan.md"))
        assert summary.is_empty
        assert summary.warnings() == []

    def test_load_plan(self, tmp_path):
        path = tmp_path / "plan.md"
        path.write_text(PLAN)

        summary = load_plan(path)

        assert summary.path == path
        assert len(summary.steps) == 5
