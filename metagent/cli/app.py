"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback, task and
run commands are defined here; issue commands live in cli/issues.py.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import List, Optional

import typer

from metagent import __version__
from metagent.cli.common import (
    command_errors,
    get_agent_option,
    get_console,
    get_orchestrator,
    print_error,
    set_global_options,
)
from metagent.cli.display import print_plan, print_queue, print_task_details, print_task_list
from metagent.config import ENV_AGENT
from metagent.models import TaskStatus
from metagent.orchestrator import init_repo
from metagent.stages import BUILD_STAGE, get_agent_kind
from metagent.supervisor import StageOutcome, install_signal_handlers
from metagent.utils.fs import read_file
from metagent.validation import InvalidInputError, ValidationError

# Create Typer app
app = typer.Typer(
    name="metagent",
    help="Agent workflow manager - drive coding and writing agents through staged tasks",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"metagent version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    agent: Optional[str] = typer.Option(
        None,
        "--agent",
        help="Agent kind: code or writer (default: $METAGENT_AGENT or code)",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        help="Model to run stages with: claude or codex (default: $METAGENT_MODEL)",
    ),
    force_model: bool = typer.Option(
        False,
        "--force-model",
        help="Use --model even for tasks with open issues",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    metagent - stage-based orchestration for autonomous agents.

    Tasks move through a fixed pipeline of stages; each stage is one run of
    an external agent that reports back with `metagent finish`.
    """
    set_global_options(agent, model, force_model)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Setup
# =========================================================================


@app.command()
def init(
    path: Optional[Path] = typer.Argument(
        None,
        help="Repository to initialize (default: current directory)",
    ),
) -> None:
    """Create the .agents/<agent>/ directory in a repository."""
    with command_errors():
        target = path or Path.cwd()
        if not target.is_dir():
            print_error(f"Directory not found: {target}")
            raise typer.Exit(1)
        agent_kind = get_agent_kind(get_agent_option() or os.environ.get(ENV_AGENT) or "code")
        result = init_repo(target, agent_kind)

    if not result.is_git_repo:
        console.print("[yellow]Warning: Target is not a git repository.[/yellow]")
    if not result.created:
        console.print(f"[dim].agents/{agent_kind.name}/ already exists; directories checked.[/dim]")
    console.print(f"Initialized {agent_kind.name} agent in {target.absolute()}")


# =========================================================================
# Task Management
# =========================================================================


@app.command()
def task(
    name: str = typer.Argument(..., help="Task name (lowercase letters, digits, hyphens)"),
    hold: bool = typer.Option(False, "--hold", help="Create the task in the backlog"),
    description: Optional[str] = typer.Option(
        None, "--description", "-d", help="Short description of the task"
    ),
) -> None:
    """Create a task, or show an existing one."""
    with command_errors():
        orchestrator = get_orchestrator()
        state, created = orchestrator.create_task(name, hold=hold, description=description)
        directory = str(orchestrator.tasks.dir(name))
        history = "" if created else orchestrator.task_history(name)

    if created:
        console.print(f"Created task: {name}")
        console.print(f"  Directory: {directory}", highlight=False)
        console.print(f"  Stage: {state.stage}")
        if state.held:
            console.print("  Status: held (backlog)")
        if state.description:
            console.print(f"  Description: {state.description}", markup=False)
        return

    console.print(f"Task '{name}' already exists")
    print_task_details(console, state, history, directory)


@app.command()
def hold(name: str = typer.Argument(..., help="Task to move to the backlog")) -> None:
    """Move a task to the backlog."""
    with command_errors():
        get_orchestrator().hold(name)
    console.print(f"Held '{name}'")


@app.command()
def activate(name: str = typer.Argument(..., help="Task to bring back from the backlog")) -> None:
    """Bring a held task back into the queue."""
    with command_errors():
        get_orchestrator().activate(name)
    console.print(f"Activated '{name}'")


@app.command()
def delete(
    name: str = typer.Argument(..., help="Task to delete"),
    force: bool = typer.Option(
        False, "--force", "-f", help="Delete even with open issues (they become unassigned)"
    ),
) -> None:
    """Delete a task directory."""
    with command_errors():
        removed = get_orchestrator().delete_task(name, force=force)
    if removed:
        console.print(f"Removed '{name}'")
    else:
        console.print(f"Task '{name}' not found")


@app.command("set-stage")
def set_stage(
    name: str = typer.Argument(..., help="Task name"),
    stage: str = typer.Argument(..., help="Stage to move the task to"),
    status: Optional[str] = typer.Option(None, "--status", help="Status to set"),
) -> None:
    """Move a task to any stage."""
    with command_errors():
        parsed = TaskStatus.parse(status) if status else None
        state = get_orchestrator().set_stage(name, stage, parsed)
    console.print(f"Set '{name}' to stage '{state.stage}' (status: {state.status.value})")


@app.command()
def queue(
    name: Optional[str] = typer.Argument(
        None, help="Existing task directory to queue (omit to list the queue)"
    ),
) -> None:
    """Show the queue, or queue a task directory that has no state yet."""
    with command_errors():
        orchestrator = get_orchestrator()
        if name is not None:
            state, created = orchestrator.queue_existing(name)
        else:
            view, counts = orchestrator.queue_view()

    if name is not None:
        if created:
            console.print(f"Queued '{name}' (stage: {state.stage})")
        else:
            console.print(f"Task '{name}' already exists")
            console.print(f"  Stage: {state.stage}")
            if state.held:
                console.print("  Status: held (backlog)")
        return

    if not (view.stages or view.completed or view.backlog):
        console.print("[dim]No tasks[/dim]")
        return
    print_queue(console, orchestrator.kind, view, counts)


@app.command()
def reorder(
    name: str = typer.Argument(..., help="Build-stage task to move"),
    position: int = typer.Argument(..., help="New 1-based position in the build queue"),
) -> None:
    """Change a task's position in the build queue."""
    with command_errors():
        orchestrator = get_orchestrator()
        new_position = orchestrator.reorder(name, position)
        build_tasks = orchestrator.build_queue()
        counts = orchestrator.tracker.open_counts()

    console.print(f"Reordered '{name}' to position {new_position} in build queue.")
    print_task_list(console, orchestrator.kind.stage_label(BUILD_STAGE), build_tasks, counts)


@app.command()
def plan(name: str = typer.Argument(..., help="Task whose plan to summarize")) -> None:
    """List the checklist steps in a task's plan file."""
    with command_errors():
        summary = get_orchestrator().plan_summary(name)
    print_plan(console, name, summary)


# =========================================================================
# Agent Callback
# =========================================================================


@app.command()
def finish(
    stage: Optional[str] = typer.Argument(
        None, help="Stage that was completed (default: task)"
    ),
    next_stage: Optional[str] = typer.Option(
        None, "--next", help="Override the next stage"
    ),
    session: Optional[str] = typer.Option(
        None, "--session", help="Session id (default: $METAGENT_SESSION)"
    ),
    task_name: Optional[str] = typer.Option(
        None, "--task", help="Task name (default: $METAGENT_TASK or the session's task)"
    ),
) -> None:
    """Report that the current stage is done. Called by agents."""
    with command_errors():
        result = get_orchestrator().finish(
            stage=stage, next_stage=next_stage, session_id=session, task=task_name
        )
    console.print(f"Advanced stage to {result.next_stage}")


# =========================================================================
# Running Stages
# =========================================================================


def _report(message: Optional[str]) -> None:
    if message:
        console.print(message, highlight=False)


@app.command()
def start() -> None:
    """Interview mode: create and specify a new task with the agent."""
    install_signal_handlers()
    with command_errors():
        orchestrator = get_orchestrator()
        summary = orchestrator.start()
    _report(summary.message)


@app.command()
def run(name: str = typer.Argument(..., help="Task to run to completion")) -> None:
    """Run a task stage by stage until it completes or stops."""
    install_signal_handlers()
    with command_errors():
        orchestrator = get_orchestrator()
        summary = orchestrator.run_task(name)
    _report(summary.message)
    if summary.outcome is StageOutcome.INTERRUPTED:
        console.print("[yellow]Interrupted.[/yellow]")


@app.command("run-next")
def run_next(
    name: Optional[str] = typer.Argument(None, help="Task to run (default: next eligible)"),
) -> None:
    """Run one stage of a task."""
    install_signal_handlers()
    with command_errors():
        orchestrator = get_orchestrator()
        summary = orchestrator.run_next(name)
    _report(summary.message)
    if summary.outcome is StageOutcome.NO_FINISH:
        console.print(f"[red]Task '{summary.task}' exited without finishing its stage.[/red]")


@app.command("run-queue")
def run_queue(
    loop_limit: Optional[int] = typer.Option(
        None,
        "--loop-limit",
        help="Review/build round trips before a task is moved to the backlog (0 = 100)",
    ),
) -> None:
    """Work through the queue until it is empty or a stage fails."""
    install_signal_handlers()
    with command_errors():
        orchestrator = get_orchestrator()
        summary = orchestrator.run_queue(loop_limit)
    _report(summary.message)
    if summary.outcome is StageOutcome.NO_FINISH and summary.stages_run:
        failed_task, failed_stage = summary.stages_run[-1]
        console.print(
            f"[red]Task '{failed_task}' exited without completing stage {failed_stage}.[/red]"
        )


@app.command()
def review(
    name: str = typer.Argument(..., help="Task to review"),
    focus: Optional[str] = typer.Argument(None, help="Area to focus the review on"),
) -> None:
    """Run a manual review of a task."""
    install_signal_handlers()
    with command_errors():
        get_orchestrator().review(name, focus)


@app.command("spec-review")
def spec_review(name: str = typer.Argument(..., help="Task whose spec to review")) -> None:
    """Run a spec review of a task."""
    install_signal_handlers()
    with command_errors():
        get_orchestrator().spec_review(name)


@app.command()
def debug(
    bug: Optional[List[str]] = typer.Argument(None, help="Bug description"),
    file: Optional[Path] = typer.Option(None, "--file", help="Read the bug report from a file"),
    stdin: bool = typer.Option(False, "--stdin", help="Read the bug report from stdin"),
) -> None:
    """Start a one-off debugging session for a bug report or logs."""
    install_signal_handlers()
    with command_errors():
        if file is not None and stdin:
            raise InvalidInputError(ValidationError(
                code="CONFLICTING_OPTIONS",
                message="Use --file or --stdin, not both",
                expected="at most one of --file / --stdin",
                got="both",
            ))
        if stdin:
            bug_text = sys.stdin.read()
        elif file is not None:
            bug_text = read_file(file)
        else:
            bug_text = " ".join(bug or [])

        if get_orchestrator().debug(bug_text) is None:
            console.print("[yellow]Debug session interrupted.[/yellow]")


# Short aliases
app.command("rn", hidden=True)(run_next)
app.command("q", hidden=True)(queue)
app.command("rq", hidden=True)(run_queue)


# =========================================================================
# Sub-App Registration
# =========================================================================

# Import and register issue commands
from metagent.cli.issues import app as issue_app, list_issues  # noqa: E402

app.add_typer(issue_app, name="issue")
app.command("issues")(list_issues)


# =========================================================================
# Entry Point
# =========================================================================


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
