"""
Prompt loading and rendering.

Stage prompts are markdown templates under the prompt root
(~/.metagent/<agent>/ by default). Placeholders are substituted with plain
string replacement so templates may contain arbitrary braces.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from metagent.errors import InvalidStateError, NotFoundError
from metagent.models import Model, TaskStatus
from metagent.stages import REVIEW_STAGE, AgentKind
from metagent.utils.fs import read_file

FALLBACK_PROMPT = (
    "Perform the {stage} stage{task_clause}. When the stage is complete, run "
    "`metagent --agent {agent} finish {stage}` from {{repo}}."
)

FOCUS_TEMPLATE = (
    "## FOCUS AREA\n\n"
    "The user has requested special attention to:\n"
    "> {text}\n\n"
    "Prioritize investigating this area first, then continue with full review."
)

ISSUES_HEADER_TEMPLATE = (
    "0d. Check @.agents/code/tasks/{task}/issues.md - Open issues from review MUST be "
    "addressed first\n\n"
    "1. **PRIORITY: Review Issues** - If issues.md exists with open issues, address those "
    "FIRST. These are requirements clarifications or architectural decisions needed. "
    "Update issue status to \"resolved\" when addressed."
)

ISSUES_MODE_TEMPLATE = (
    "99999999999999. **REVIEW ISSUES:** This task returned from review with issues. All "
    "issues in @.agents/code/tasks/{task}/issues.md must be resolved before finishing "
    "this phase."
)

PARALLELISM_TEXT = (
    "## Parallelism\n"
    "- Use subagents liberally for research before implementing\n"
    "- Codebase search: up to 100 subagents\n"
    "- File reading: up to 100 subagents\n"
    "- File writing: up to 10 subagents (independent files only)\n"
    "- Build/test: 1 subagent only\n"
    "- plan.md updates: 1 subagent"
)

MANUAL_REVIEW_FINISH = (
    "7. Manual review: do not run `metagent finish`. End after the report."
)

DEBUG_FALLBACK_PROMPT = (
    "Investigate the reported bug in {repo}. Reproduce it and fix the root cause."
)


class ReviewFinishMode(Enum):
    """How a review stage is told to signal its result."""
    QUEUE = "queue"
    MANUAL = "manual"


@dataclass
class PromptContext:
    """Values substituted into a prompt template."""
    repo_root: str
    task: Optional[str] = None
    session: Optional[str] = None
    issues_header: str = ""
    issues_mode: str = ""
    parallelism_mode: str = ""
    focus_section: str = ""
    review_finish_instructions: str = ""


def render_prompt(template: str, context: PromptContext) -> str:
    """
    Fill placeholders in `template`.

    {task} and {taskname} are left untouched when no task is known; every
    other placeholder is always replaced (empty when unset).
    """
    output = template
    if context.task is not None:
        output = output.replace("{task}", context.task)
        output = output.replace("{taskname}", context.task)
    replacements = {
        "{session}": context.session or "",
        "{repo}": context.repo_root,
        "{issues_header}": context.issues_header,
        "{issues_mode}": context.issues_mode,
        "{parallelism_mode}": context.parallelism_mode,
        "{focus_section}": context.focus_section,
        "{review_finish_instructions}": context.review_finish_instructions,
    }
    for placeholder, value in replacements.items():
        output = output.replace(placeholder, value)
    return output


def fallback_prompt(agent_kind: AgentKind, stage: str, task: Optional[str]) -> str:
    task_clause = f" for task {task}" if task else ""
    return FALLBACK_PROMPT.format(stage=stage, task_clause=task_clause, agent=agent_kind.name)


def load_stage_prompt(
    prompt_root: Path,
    agent_kind: AgentKind,
    stage: str,
    task: Optional[str] = None,
) -> str:
    """
    Read the prompt template for `stage`.

    A missing file under the prompt root falls back to a one-line built-in
    prompt.

    Raises:
        NotFoundError: If the stage has no prompt.
    """
    name = agent_kind.prompt_file_for_stage(stage, task)
    if name is None:
        raise NotFoundError(f"No prompt for stage: {stage}")

    prompt_file = Path(prompt_root) / name
    if prompt_file.exists():
        return read_file(prompt_file)
    return fallback_prompt(agent_kind, stage, task)


def issues_text(
    agent_kind: AgentKind,
    status: Optional[TaskStatus],
    task: Optional[str],
) -> tuple[str, str]:
    """Return (issues_header, issues_mode) for a task in ISSUES status."""
    if not agent_kind.supports_issues or status is not TaskStatus.ISSUES or not task:
        return "", ""
    return (
        ISSUES_HEADER_TEMPLATE.format(task=task),
        ISSUES_MODE_TEMPLATE.format(task=task),
    )


def parallelism_text(model: Model) -> str:
    return PARALLELISM_TEXT if model is Model.CLAUDE else ""


def focus_section_text(focus: Optional[str]) -> str:
    if not focus or not focus.strip():
        return ""
    return FOCUS_TEMPLATE.format(text=focus.strip())


def review_finish_instructions(
    mode: ReviewFinishMode,
    repo_root: str,
    task: Optional[str],
    session_id: str,
) -> str:
    """Tell a review stage how to report its verdict."""
    if mode is ReviewFinishMode.MANUAL:
        return MANUAL_REVIEW_FINISH
    if not task:
        return ""
    finish = (
        f'`cd "{repo_root}" && METAGENT_TASK="{task}" metagent --agent code '
        f'finish {REVIEW_STAGE} --session "{session_id}"'
    )
    return (
        "7. Signal next stage:\n"
        f"- Spec issues exist (any open) or spec needs revision: {finish} --next spec-review-issues`\n"
        f"- Only build issues (no spec issues): {finish} --next build`\n"
        f"- Pass (no issues): {finish}`"
    )


def debug_prompt(prompt_root: Path, agent_kind: AgentKind, repo_root: str, bug_text: str) -> str:
    """
    Render the debug prompt with the bug report placed ahead of it.

    Raises:
        InvalidStateError: If the agent kind has no debug prompt.
    """
    if agent_kind.debug_prompt_file is None:
        raise InvalidStateError(
            f"Debug is only supported for the code agent (current: {agent_kind.name})"
        )
    prompt_file = Path(prompt_root) / agent_kind.debug_prompt_file
    template = read_file(prompt_file) if prompt_file.exists() else DEBUG_FALLBACK_PROMPT
    context = PromptContext(repo_root=repo_root, parallelism_mode=parallelism_text(Model.CODEX))
    rendered = render_prompt(template, context)
    if bug_text.strip():
        return f"## Bug Report & Logs\n{bug_text.strip()}\n\n{rendered}"
    return rendered
