"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for task statuses, the queue listing,
issue lists and plan summaries.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from rich.console import Console
from rich.text import Text

from metagent.issues import Issue, IssueCounts, StatusFilter
from metagent.models import TaskState, TaskStatus
from metagent.stages import TERMINAL_STAGE, AgentKind

if TYPE_CHECKING:
    from metagent.plan import PlanSummary
    from metagent.scheduler import QueueView

# Status symbol styles
STATUS_STYLE: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "dim",
    TaskStatus.RUNNING: "yellow bold",
    TaskStatus.INCOMPLETE: "yellow",
    TaskStatus.FAILED: "red bold",
    TaskStatus.COMPLETED: "green",
    TaskStatus.ISSUES: "magenta bold",
}

COMPLETED_SHOWN = 10


def format_status(status: TaskStatus) -> Text:
    """Format a task status as its colored symbol."""
    return Text(status.symbol, style=STATUS_STYLE.get(status, "white"))


def format_task_line(
    task: TaskState,
    counts: IssueCounts,
    dim_name: bool = False,
    stage_label: Optional[str] = None,
) -> Text:
    line = Text("  ")
    line.append_text(format_status(task.status))
    line.append(" ")
    line.append(task.task, style="dim" if dim_name else "")
    issue_count = counts.for_task(task.task)
    if issue_count:
        line.append(f" [issues: {issue_count}]")
    if stage_label:
        line.append(f" (stage: {stage_label})")
    return line


def print_task_list(
    console: Console,
    label: str,
    tasks: Iterable[TaskState],
    counts: IssueCounts,
) -> None:
    console.print(f"{label}:", highlight=False)
    for task in tasks:
        console.print(format_task_line(task, counts))


def print_queue(
    console: Console,
    agent_kind: AgentKind,
    view: QueueView,
    counts: IssueCounts,
) -> None:
    """Print tasks grouped by stage, then completed work, then the backlog."""
    if counts.unassigned:
        console.print(
            f"Unassigned issues: {counts.unassigned} (run 'metagent issues --unassigned')",
            highlight=False,
        )

    console.print("[bold]Tasks:[/bold]")
    for stage, tasks in view.stages:
        print_task_list(console, agent_kind.stage_label(stage), tasks, counts)
        console.print()

    if view.completed:
        console.print(f"[dim]{agent_kind.stage_label(TERMINAL_STAGE)}:[/dim]")
        for task in view.completed[:COMPLETED_SHOWN]:
            console.print(format_task_line(task, counts, dim_name=True))
        hidden = len(view.completed) - COMPLETED_SHOWN
        if hidden > 0:
            console.print(f"  ... and {hidden} more", highlight=False)

    if view.backlog:
        console.print("\nBacklog:")
        for task in view.backlog:
            console.print(
                format_task_line(task, counts, stage_label=agent_kind.stage_label(task.stage))
            )


def print_task_details(console: Console, task: TaskState, history: str, directory: str) -> None:
    console.print(f"  Stage: {task.stage}", highlight=False)
    if task.held:
        console.print("  Status: held (backlog)")
    console.print(f"  Description: {task.description or '(none)'}", markup=False, highlight=False)
    console.print(f"  History: {history or '(none yet)'}", highlight=False)
    console.print(f"  Directory: {directory}", highlight=False)


def print_issues(console: Console, issues: list[Issue], status_filter: StatusFilter) -> None:
    if not issues:
        console.print("[dim]No issues[/dim]")
        return

    heading = {
        StatusFilter.OPEN: "Open issues",
        StatusFilter.RESOLVED: "Resolved issues",
        StatusFilter.ALL: "Issues",
    }[status_filter]
    console.print(f"{heading}:")
    for index, issue in enumerate(issues):
        console.print(f"  id: {issue.id}", highlight=False)
        console.print(
            f"  [{issue.priority.value}] {issue.task or 'unassigned'}: {issue.title}",
            markup=False,
            highlight=False,
        )
        if status_filter is StatusFilter.ALL:
            console.print(f"      status: {issue.status.value}", highlight=False)
        if index + 1 < len(issues):
            console.print()


def print_plan(console: Console, task: str, summary: PlanSummary) -> None:
    if summary.is_empty:
        console.print(f"[dim]No checklist steps found in {summary.path}[/dim]")
        return

    console.print(f"Plan '{task}': {summary.path}", highlight=False)
    if summary.canonical:
        console.print("Canonical steps:")
        for step in summary.canonical:
            marker = "x" if step.done else " "
            console.print(
                f"  L{step.line} - [{marker}] [{step.priority}][{step.complexity}]"
                f"[T{step.step_id}] {step.title}",
                markup=False,
                highlight=False,
            )
    if summary.other:
        console.print("Other checklist lines:")
        for step in summary.other:
            marker = "x" if step.done else " "
            console.print(f"  L{step.line} - [{marker}] {step.title}", markup=False, highlight=False)

    console.print()
    console.print(
        f"Summary: {len(summary.steps)} total ({summary.open} open, {summary.done} done)",
        highlight=False,
    )

    warnings = summary.warnings()
    if warnings:
        console.print()
        console.print("[yellow]Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  {warning}", highlight=False)
