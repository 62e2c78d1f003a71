"""
Stage model for metagent agent kinds.

Each agent kind is a small, fixed pipeline of named stages. AgentKind is
the strategy interface the rest of the system asks about stage order,
queue eligibility, finish targets, labels and default models; CodeAgent
and WriterAgent are its two implementations.

Code pipeline:
    spec -> planning -> build -> review -> completed
    (spec-review and spec-review-issues feed back into planning;
    review may send work back to build or spec-review-issues)

Writer pipeline:
    init -> plan -> write -> edit -> completed
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from metagent.models import Model, today_date
from metagent.utils.fs import atomic_write, ensure_dir
from metagent.validation import require_choice

TERMINAL_STAGE = "completed"
TASK_FINISH_STAGE = "task"
BUILD_STAGE = "build"
REVIEW_STAGE = "review"


class AgentKind(ABC):
    """Static description of one agent kind's stage graph."""

    name: str = ""
    supports_issues: bool = False
    plan_file_name: str = "plan.md"

    _STAGES: tuple[str, ...] = ()
    _TRANSITIONS: dict[str, str] = {}
    _QUEUE_STAGES: tuple[str, ...] = ()
    _ORCHESTRATED_STAGES: tuple[str, ...] = ()
    _PROMPTS: dict[str, str] = {}
    debug_prompt_file: Optional[str] = None

    def stages(self) -> list[str]:
        return list(self._STAGES)

    def initial_stage(self) -> str:
        return self._STAGES[0]

    def next_stage(self, stage: str) -> Optional[str]:
        """Default successor of `stage`, or None for the terminal/unknown stage."""
        return self._TRANSITIONS.get(stage)

    def handoff_stage(self) -> Optional[str]:
        """Stage at which interview mode stops and hands over to the queue."""
        return None

    def queue_stages(self) -> list[str]:
        """Stages the queue runner may pick from, highest priority first."""
        return list(self._QUEUE_STAGES)

    def orchestrated_stages(self) -> list[str]:
        return list(self._ORCHESTRATED_STAGES)

    def valid_finish_stages(self) -> list[str]:
        return [s for s in self._STAGES if s != TERMINAL_STAGE]

    def is_stage(self, stage: str) -> bool:
        return stage in self._STAGES

    def validate_stage(self, stage: str) -> str:
        """Return `stage` if it belongs to this agent kind, else raise InvalidInputError."""
        return require_choice(stage, self._STAGES, "stage")

    def stage_label(self, stage: str) -> str:
        """Human label, e.g. 'spec-review-issues' -> 'Spec Review Issues'."""
        if stage not in self._STAGES:
            return stage
        return " ".join(part.capitalize() for part in stage.split("-"))

    def model_for_stage(self, stage: str) -> Optional[Model]:
        return None

    def prompt_file_for_stage(self, stage: str, task: Optional[str] = None) -> Optional[str]:
        return self._PROMPTS.get(stage)

    def issue_default_stage(self, issue_type: str) -> Optional[str]:
        """Stage a completed task returns to when an issue of `issue_type` lands on it."""
        return None

    @abstractmethod
    def create_task_files(self, task_dir: Path, task: str) -> None:
        """Scaffold the working files for a new task."""


class CodeAgent(AgentKind):
    """Software pipeline: specify, plan, build and review."""

    name = "code"
    supports_issues = True
    plan_file_name = "plan.md"
    debug_prompt_file = "DEBUG_PROMPT.md"

    _STAGES = (
        "spec",
        "spec-review",
        "spec-review-issues",
        "planning",
        "build",
        "review",
        "completed",
    )
    _TRANSITIONS = {
        "spec": "planning",
        "spec-review": "planning",
        "spec-review-issues": "planning",
        "planning": "build",
        "build": "review",
        "review": "completed",
        TASK_FINISH_STAGE: "completed",
    }
    _QUEUE_STAGES = ("spec-review-issues", "build", "review")
    _ORCHESTRATED_STAGES = ("spec", "planning")
    _PROMPTS = {
        "spec": "SPEC_PROMPT.md",
        "spec-review": "SPEC_REVIEW_PROMPT.md",
        "spec-review-issues": "SPEC_REVIEW_ISSUES_PROMPT.md",
        "planning": "PLANNING_PROMPT.md",
        "build": "BUILD_PROMPT.md",
        "review": "REVIEW_PROMPT.md",
    }

    def handoff_stage(self) -> Optional[str]:
        return BUILD_STAGE

    def valid_finish_stages(self) -> list[str]:
        return super().valid_finish_stages() + [TASK_FINISH_STAGE]

    def model_for_stage(self, stage: str) -> Optional[Model]:
        if stage in self._STAGES and stage != TERMINAL_STAGE:
            return Model.CODEX
        return None

    def prompt_file_for_stage(self, stage: str, task: Optional[str] = None) -> Optional[str]:
        if stage == "spec" and task:
            return "SPEC_EXISTING_TASK_PROMPT.md"
        return super().prompt_file_for_stage(stage, task)

    def issue_default_stage(self, issue_type: str) -> Optional[str]:
        if issue_type == "spec":
            return "spec-review-issues"
        return BUILD_STAGE

    def create_task_files(self, task_dir: Path, task: str) -> None:
        spec_dir = ensure_dir(task_dir / "spec")
        for file_name, title in (
            ("overview.md", "Overview"),
            ("types.md", "Types"),
            ("modules.md", "Modules"),
            ("errors.md", "Errors"),
        ):
            path = spec_dir / file_name
            if not path.exists():
                atomic_write(path, f"# {title}\n\n")

        plan = (
            f"# Implementation Plan - {task}\n\n"
            f"> Generated: {today_date()}\n"
            "> Status: PENDING_SPEC\n\n"
            "- [ ] (tasks will be added during planning phase)\n"
        )
        atomic_write(task_dir / self.plan_file_name, plan)


class WriterAgent(AgentKind):
    """Writing pipeline: set up, outline, draft and edit."""

    name = "writer"
    plan_file_name = "editorial_plan.md"

    _STAGES = ("init", "plan", "write", "edit", "completed")
    _TRANSITIONS = {
        "init": "plan",
        "plan": "write",
        "write": "edit",
        "edit": "completed",
    }
    _QUEUE_STAGES = ("write", "edit")
    _ORCHESTRATED_STAGES = ("init", "plan", "write", "edit")
    _PROMPTS = {
        "init": "INIT_PROMPT.md",
        "plan": "PLANNING_PROMPT.md",
        "write": "PROMPT.md",
        "edit": "EDITOR_PROMPT.md",
    }

    def create_task_files(self, task_dir: Path, task: str) -> None:
        for sub in ("content", "outline", "style", "research"):
            ensure_dir(task_dir / sub)

        editorial = (
            f"# Editorial Plan - {task}\n\n"
            f"> Generated: {today_date()}\n"
            "> Status: Awaiting project setup\n\n"
            "## Current Task\n\n"
            "Run /writer-init to set up the project.\n\n"
            "## Section Status\n\n"
            "| Section | Status | Progress | Notes |\n"
            "|---------|--------|----------|-------|\n"
            "| (sections added after init) | - | - | - |\n\n"
            "## Issues & Blockers\n\n"
            "(none yet)\n"
        )
        atomic_write(task_dir / self.plan_file_name, editorial)


_AGENT_KINDS: dict[str, AgentKind] = {
    CodeAgent.name: CodeAgent(),
    WriterAgent.name: WriterAgent(),
}


def agent_kind_names() -> list[str]:
    return list(_AGENT_KINDS)


def get_agent_kind(name: str) -> AgentKind:
    """
    Look up an agent kind by name.

    Raises:
        InvalidInputError: If the name is not a known agent kind.
    """
    key = require_choice(name.strip().lower(), _AGENT_KINDS, "agent")
    return _AGENT_KINDS[key]
