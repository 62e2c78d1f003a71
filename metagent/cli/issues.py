"""Issue tracking commands.

Registered as `metagent issue ...`, with `metagent issues` as a shortcut
for `metagent issue list`. Only the code agent tracks issues.
"""
from __future__ import annotations

import sys
from typing import Optional

import typer

from metagent.cli.common import command_errors, get_console, get_orchestrator
from metagent.cli.display import print_issues
from metagent.issues import (
    IssueFilter,
    IssuePriority,
    IssueSource,
    IssueType,
    StatusFilter,
    filter_issues,
    sort_issues,
)
from metagent.validation import InvalidInputError, ValidationError, validate_task_name

app = typer.Typer(
    name="issue",
    help="Track review issues against tasks",
    no_args_is_help=True,
)

console = get_console()


@app.command("list")
def list_issues(
    task: Optional[str] = typer.Option(None, "--task", help="Only issues for this task"),
    unassigned: bool = typer.Option(False, "--unassigned", help="Only issues with no task"),
    status: Optional[str] = typer.Option(
        None, "--status", help="open (default), resolved or all"
    ),
    priority: Optional[str] = typer.Option(None, "--priority", help="P0, P1, P2 or P3"),
    issue_type: Optional[str] = typer.Option(
        None, "--type", help="spec, build, bug, test, perf or other"
    ),
    source: Optional[str] = typer.Option(
        None, "--source", help="review, debug, submit or manual"
    ),
) -> None:
    """List issues, open ones by default."""
    with command_errors():
        orchestrator = get_orchestrator()
        orchestrator.tracker.ensure_supported()
        if task is not None:
            validate_task_name(task)
        issue_filter = IssueFilter(
            status=StatusFilter.parse(status),
            task=task,
            unassigned=unassigned,
            issue_type=IssueType.parse(issue_type) if issue_type else None,
            priority=IssuePriority.parse(priority) if priority else None,
            source=IssueSource.parse(source) if source else None,
        )
        issues = sort_issues(filter_issues(orchestrator.tracker.issues.list(), issue_filter))
    print_issues(console, issues, issue_filter.status)


@app.command("add")
def add_issue(
    title: str = typer.Option(..., "--title", help="One-line summary"),
    task: Optional[str] = typer.Option(None, "--task", help="Task the issue belongs to"),
    priority: Optional[str] = typer.Option(None, "--priority", help="P0-P3 (default P2)"),
    issue_type: Optional[str] = typer.Option(None, "--type", help="Issue type (default build)"),
    source: Optional[str] = typer.Option(None, "--source", help="Issue source (default manual)"),
    file: Optional[str] = typer.Option(None, "--file", help="File the issue refers to"),
    stage: Optional[str] = typer.Option(None, "--stage", help="Stage to send the task back to"),
    body: Optional[str] = typer.Option(None, "--body", help="Issue details"),
    stdin_body: bool = typer.Option(False, "--stdin-body", help="Read issue details from stdin"),
) -> None:
    """Open a new issue, optionally against a task."""
    with command_errors():
        if stdin_body and body is not None:
            raise InvalidInputError(ValidationError(
                code="CONFLICTING_OPTIONS",
                message="Use --body or --stdin-body, not both",
                expected="at most one of --body / --stdin-body",
                got="both",
            ))
        if stdin_body:
            body = sys.stdin.read()

        orchestrator = get_orchestrator()
        issue = orchestrator.tracker.add_issue(
            title=title,
            task=task,
            priority=IssuePriority.parse(priority) if priority else IssuePriority.P2,
            issue_type=IssueType.parse(issue_type) if issue_type else IssueType.BUILD,
            source=IssueSource.parse(source) if source else IssueSource.MANUAL,
            file=file,
            body=body,
            stage=stage,
        )
    console.print(f"Created issue {issue.id}")


@app.command("resolve")
def resolve_issue(
    issue_id: str = typer.Argument(..., help="Issue ID (use `metagent issues` to list IDs)"),
    resolution: Optional[str] = typer.Option(
        None, "--resolution", help="How the issue was resolved"
    ),
) -> None:
    """Mark an issue resolved."""
    with command_errors():
        get_orchestrator().tracker.resolve_issue(issue_id, resolution)
    console.print(f"Resolved issue {issue_id}")


@app.command("assign")
def assign_issue(
    issue_id: str = typer.Argument(..., help="Issue ID (use `metagent issues` to list IDs)"),
    task: str = typer.Option(..., "--task", help="Task to assign the issue to"),
    stage: Optional[str] = typer.Option(None, "--stage", help="Stage to send the task back to"),
) -> None:
    """Assign an issue to a task."""
    with command_errors():
        issue = get_orchestrator().tracker.assign_issue(issue_id, task, stage)
    if issue.is_open:
        console.print(f"Assigned issue {issue_id} to {task}")
    else:
        console.print(f"Assigned resolved issue {issue_id} to {task}")


@app.command("show")
def show_issue(
    issue_id: str = typer.Argument(..., help="Issue ID (use `metagent issues` to list IDs)"),
) -> None:
    """Print an issue file."""
    with command_errors():
        orchestrator = get_orchestrator()
        orchestrator.tracker.ensure_supported()
        content = orchestrator.tracker.issues.read_raw(issue_id)
    console.print(content, markup=False, highlight=False)
