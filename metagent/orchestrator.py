"""
Task orchestration for metagent.

This module orchestrates:
1. Task lifecycle commands:
   - create / queue / hold / activate / delete / set-stage
   - The `finish` callback agents use to advance their task
2. Stage execution:
   - Single stages (run-next, review, spec-review)
   - A task driven to completion (run)
   - The whole queue (run-queue) with review/build loop protection
   - Interview mode (start), from the initial stage to the handoff stage

The orchestrator never interprets agent work; it only moves tasks between
stages based on what agents report through `finish`.
"""

from __future__ import annotations

import os
import socket
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from metagent.claims import ClaimGuard, FileLeaseBackend
from metagent.config import ENV_TASK, MetagentConfig
from metagent.errors import (
    ConflictError,
    ExternalProcessError,
    InvalidStateError,
    NotFoundError,
)
from metagent.issue_tracker import IssueTracker
from metagent.issues import IssueCounts, IssueStore
from metagent.models import Model, ModelChoice, TaskState, TaskStatus
from metagent.plan import PlanSummary, load_plan
from metagent.prompts import (
    PromptContext,
    ReviewFinishMode,
    debug_prompt,
    focus_section_text,
    issues_text,
    load_stage_prompt,
    parallelism_text,
    render_prompt,
    review_finish_instructions,
)
from metagent.scheduler import LoopGuard, QueueScheduler, QueueView
from metagent.stages import (
    BUILD_STAGE,
    REVIEW_STAGE,
    TASK_FINISH_STAGE,
    TERMINAL_STAGE,
    AgentKind,
    get_agent_kind,
)
from metagent.state_store import SessionStore, TaskStore
from metagent.supervisor import (
    INTERRUPTED,
    ProcessSupervisor,
    StageOutcome,
    StageResult,
    resolve_model,
)
from metagent.utils.fs import ensure_dir
from metagent.validation import require_choice, validate_task_name

if TYPE_CHECKING:
    from metagent.logger import EventLogger
    from metagent.models import SessionState

FIND_TASK_STATUSES = (
    TaskStatus.RUNNING,
    TaskStatus.PENDING,
    TaskStatus.INCOMPLETE,
    TaskStatus.ISSUES,
)


# ============================================================================
# Context
# ============================================================================


@dataclass
class CommandContext:
    """Everything a command needs, wired for one repository and agent kind."""

    config: MetagentConfig
    agent_kind: AgentKind
    model_choice: ModelChoice
    host: str
    tasks: TaskStore
    sessions: SessionStore
    issues: IssueStore
    leases: FileLeaseBackend
    tracker: IssueTracker
    scheduler: QueueScheduler
    supervisor: ProcessSupervisor
    logger: Optional[EventLogger] = None
    interrupted: threading.Event = INTERRUPTED

    @classmethod
    def from_config(
        cls,
        config: MetagentConfig,
        model_choice: Optional[ModelChoice] = None,
        logger: Optional[EventLogger] = None,
        host: Optional[str] = None,
        interrupted: threading.Event = INTERRUPTED,
        require_agent_root: bool = True,
    ) -> CommandContext:
        """
        Build a context from configuration.

        Raises:
            NotFoundError: If the agent root does not exist and is required.
            InvalidInputError: If the configured agent kind is unknown.
        """
        agent_kind = get_agent_kind(config.agent)
        agent_root = config.agent_path
        if require_agent_root and not agent_root.is_dir():
            raise NotFoundError(
                f"Agent directory not found: {agent_root}",
                hint=f"Run 'metagent --agent {agent_kind.name} init' first.",
            )

        host = host or socket.gethostname()
        lock_timeout = config.store.lock_timeout_seconds
        tasks = TaskStore(agent_root, lock_timeout=lock_timeout, logger=logger)
        sessions = SessionStore(agent_root, lock_timeout=lock_timeout, logger=logger)
        issues = IssueStore(agent_root, lock_timeout=lock_timeout, logger=logger)
        return cls(
            config=config,
            agent_kind=agent_kind,
            model_choice=model_choice or ModelChoice(),
            host=host,
            tasks=tasks,
            sessions=sessions,
            issues=issues,
            leases=FileLeaseBackend(agent_root, host, agent=agent_kind.name, logger=logger),
            tracker=IssueTracker(agent_kind, issues, tasks, logger=logger),
            scheduler=QueueScheduler(agent_kind),
            supervisor=ProcessSupervisor(config, agent_kind, sessions, host, logger=logger),
            logger=logger,
            interrupted=interrupted,
        )

    @property
    def repo_root(self) -> Path:
        return Path(self.config.repo_root)

    @property
    def agent_root(self) -> Path:
        return self.config.agent_path

    @property
    def prompt_root(self) -> Path:
        return self.config.prompt_path


# ============================================================================
# Results
# ============================================================================


@dataclass
class FinishResult:
    """Outcome of a `finish` callback."""
    session_id: str
    stage: str
    next_stage: str
    task: Optional[str] = None
    status: Optional[TaskStatus] = None


@dataclass
class RunSummary:
    """
    Result of run / run-next / start.

    `message` carries the operator-facing explanation when nothing ran or
    when the run stopped early.
    """
    task: Optional[str] = None
    stages_run: list[str] = field(default_factory=list)
    outcome: Optional[StageOutcome] = None
    completed: bool = False
    message: Optional[str] = None


@dataclass
class QueueRunSummary:
    """Result of run-queue."""
    stages_run: list[tuple[str, str]] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    skipped_claimed: list[str] = field(default_factory=list)
    outcome: Optional[StageOutcome] = None
    message: Optional[str] = None

    @property
    def tasks_run(self) -> list[str]:
        seen: list[str] = []
        for task, _ in self.stages_run:
            if task not in seen:
                seen.append(task)
        return seen


@dataclass
class InitResult:
    agent_path: Path
    created: bool
    is_git_repo: bool


# ============================================================================
# Pure helpers
# ============================================================================


def determine_next_status(
    stage: str,
    override_next: bool,
    next_stage: str,
    has_open_issues: bool,
) -> TaskStatus:
    """
    Status a task gets after finishing `stage`.

    A review that explicitly sends work back means it found problems,
    except when it routes to spec-review-issues, which starts fresh.
    """
    if has_open_issues:
        return TaskStatus.ISSUES
    if next_stage == TERMINAL_STAGE:
        return TaskStatus.COMPLETED
    if stage == REVIEW_STAGE and override_next:
        if next_stage == "spec-review-issues":
            return TaskStatus.PENDING
        return TaskStatus.ISSUES
    return TaskStatus.PENDING


def init_repo(target: Path, agent_kind: AgentKind) -> InitResult:
    """Create .agents/<agent>/ with its tasks (and issues) directories."""
    target = Path(target).absolute()
    agent_path = target / ".agents" / agent_kind.name
    created = not agent_path.exists()
    ensure_dir(agent_path / "tasks")
    if agent_kind.supports_issues:
        ensure_dir(agent_path / "issues")
    return InitResult(
        agent_path=agent_path,
        created=created,
        is_git_repo=(target / ".git").is_dir(),
    )


# ============================================================================
# Orchestrator
# ============================================================================


class Orchestrator:
    """Implements every task-level command on top of a CommandContext."""

    def __init__(
        self,
        context: CommandContext,
        on_message: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.ctx = context
        self.kind = context.agent_kind
        self.tasks = context.tasks
        self.sessions = context.sessions
        self.tracker = context.tracker
        self.scheduler = context.scheduler
        self._on_message = on_message
        self._logger = context.logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "orchestrator"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _notify(self, message: str) -> None:
        if self._on_message:
            self._on_message(message)

    def _require_task(self, name: str) -> TaskState:
        validate_task_name(name)
        return self.tasks.load(name)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def create_task(
        self,
        name: str,
        hold: bool = False,
        description: Optional[str] = None,
    ) -> tuple[TaskState, bool]:
        """
        Create a task, or return the existing one.

        An existing task is only modified when a description is given.

        Returns:
            (state, created)
        """
        validate_task_name(name)
        if self.tasks.exists(name):
            if description is not None:
                def describe(state: TaskState) -> None:
                    state.description = description

                return self.tasks.update(name, describe), False
            return self.tasks.load(name), False

        task_dir = ensure_dir(self.tasks.dir(name))
        self.kind.create_task_files(task_dir, name)
        state = self.tasks.create(
            self.kind.name, name, self.kind.initial_stage(), hold=hold, description=description
        )
        return state, True

    def queue_existing(self, name: str) -> tuple[TaskState, bool]:
        """Create state for a task directory that has none."""
        validate_task_name(name)
        if self.tasks.exists(name):
            return self.tasks.load(name), False
        if not self.tasks.dir(name).is_dir():
            raise NotFoundError(
                f"Task '{name}' not found. Create it with 'metagent task {name}'"
            )
        state = self.tasks.create(self.kind.name, name, self.kind.initial_stage())
        return state, True

    def hold(self, name: str) -> TaskState:
        validate_task_name(name)

        def mutate(state: TaskState) -> None:
            if state.status is TaskStatus.RUNNING:
                raise InvalidStateError(f"Task '{name}' is running. Finish it before holding.")
            state.held = True

        return self.tasks.update(name, mutate)

    def activate(self, name: str) -> TaskState:
        validate_task_name(name)

        def mutate(state: TaskState) -> None:
            state.held = False

        self.tasks.update(name, mutate)
        return self.tracker.sync_task_status(name)

    def delete_task(self, name: str, force: bool = False) -> bool:
        """
        Remove a task directory.

        Returns:
            False if there was nothing to delete.

        Raises:
            InvalidStateError: The task has open issues and force is False.
        """
        validate_task_name(name)
        if not self.tasks.dir(name).exists():
            return False

        open_issues = self.tracker.open_issues_for(name) if self.kind.supports_issues else []
        if open_issues and not force:
            raise InvalidStateError(
                f"Task '{name}' has open issues ({len(open_issues)}). "
                "Re-run with --force to delete and unassign them."
            )
        if open_issues:
            self.tracker.unassign_task_issues(name)
        return self.tasks.delete(name)

    def set_stage(self, name: str, stage: str, status: Optional[TaskStatus] = None) -> TaskState:
        """Force a task into `stage`; status defaults from open issues and the stage."""
        validate_task_name(name)
        self.kind.validate_stage(stage)
        if not self.tasks.exists(name):
            raise NotFoundError(f"Task '{name}' not found")

        if status is None:
            if self.tracker.task_has_open_issues(name):
                status = TaskStatus.ISSUES
            elif stage == TERMINAL_STAGE:
                status = TaskStatus.COMPLETED
            else:
                status = TaskStatus.PENDING

        def mutate(state: TaskState) -> None:
            state.stage = stage
            state.status = status

        return self.tasks.update(name, mutate)

    def reorder(self, name: str, position: int) -> int:
        validate_task_name(name)
        return self.scheduler.reorder(name, position, self.tasks)

    def queue_view(self) -> tuple[QueueView, IssueCounts]:
        return self.scheduler.queue_view(self.tasks.list()), self.tracker.open_counts()

    def build_queue(self) -> list[TaskState]:
        return self.scheduler.build_queue(self.tasks.list())

    def task_history(self, name: str) -> str:
        return self.sessions.task_history(name)

    def plan_summary(self, name: str) -> PlanSummary:
        validate_task_name(name)
        file_name = self.kind.plan_file_name
        path = self.tasks.dir(name) / file_name
        if not path.exists():
            raise NotFoundError(f"{file_name} not found for task '{name}': {path}")
        return load_plan(path)

    # ------------------------------------------------------------------
    # Finish callback
    # ------------------------------------------------------------------

    def find_unique_task(self, stage: str) -> Optional[str]:
        """The only task sitting in `stage` in an active status, if exactly one."""
        matches = [
            t.task for t in self.tasks.list()
            if t.stage == stage and t.status in FIND_TASK_STATUSES
        ]
        return matches[0] if len(matches) == 1 else None

    def finish(
        self,
        stage: Optional[str] = None,
        next_stage: Optional[str] = None,
        session_id: Optional[str] = None,
        task: Optional[str] = None,
    ) -> FinishResult:
        """
        Record that the agent finished `stage` and advance its task.

        Raises:
            InvalidInputError: Unknown stage or next stage.
            NotFoundError: No session, or no task could be determined.
            InvalidStateError: The session already finished or failed.
        """
        stage = stage or TASK_FINISH_STAGE
        require_choice(stage, self.kind.valid_finish_stages(), "stage")
        if next_stage is not None:
            require_choice(next_stage, self.kind.stages(), "next stage")

        session_id = self.sessions.resolve_session_id(session_id)
        session = self.sessions.load(session_id)

        task = task or os.environ.get(ENV_TASK) or session.task
        if not task and stage != TASK_FINISH_STAGE:
            task = self.find_unique_task(stage)
            if not task:
                raise NotFoundError(
                    f"METAGENT_TASK not set and no unique task found for stage '{stage}'"
                )
        if task:
            validate_task_name(task)
            if not self.tasks.exists(task):
                raise NotFoundError(f"Task '{task}' not found")

        if next_stage is not None:
            resolved = next_stage
        elif stage == TASK_FINISH_STAGE:
            resolved = TERMINAL_STAGE
        else:
            resolved = self.kind.next_stage(stage)
            if resolved is None:
                raise InvalidStateError(f"No next stage for {stage}")

        has_open = bool(task) and self.tracker.task_has_open_issues(task)
        if has_open and resolved == TERMINAL_STAGE:
            resolved = BUILD_STAGE

        def mark(state: SessionState) -> None:
            state.mark_finished(resolved, task or None)

        self.sessions.update(session_id, mark)
        result = FinishResult(session_id=session_id, stage=stage, next_stage=resolved, task=task or None)

        if task:
            status = determine_next_status(stage, next_stage is not None, resolved, has_open)

            def advance(state: TaskState) -> None:
                state.stage = resolved
                state.status = status
                state.last_session = session_id

            self.tasks.update(task, advance)
            result.status = status

        self._log("stage_finish_recorded", {
            "session_id": session_id,
            "stage": stage,
            "next_stage": resolved,
            "task": task,
        })
        return result

    # ------------------------------------------------------------------
    # Running stages
    # ------------------------------------------------------------------

    def reconcile_running_tasks(self) -> list[str]:
        """
        Mark RUNNING tasks INCOMPLETE when nothing is actually running them.

        A task is left alone if it holds a live claim or has a running
        session.
        """
        reconciled = []
        for state in self.tasks.list():
            if state.status is not TaskStatus.RUNNING or state.stage == TERMINAL_STAGE:
                continue
            if self.ctx.leases.is_active(state.task) or self.sessions.has_active_session(state.task):
                continue
            self.tasks.set_status(state.task, TaskStatus.INCOMPLETE)
            reconciled.append(state.task)

        if reconciled:
            self._log("running_tasks_reconciled", {"tasks": reconciled})
        return reconciled

    def run_stage(
        self,
        task: Optional[str],
        stage: str,
        focus: Optional[str] = None,
        review_mode: ReviewFinishMode = ReviewFinishMode.QUEUE,
    ) -> StageResult:
        """Render the stage prompt and run it under the supervisor."""
        status = None
        if task and self.tasks.exists(task):
            status = self.tasks.load(task).status
        if task and self.tracker.task_has_open_issues(task):
            status = TaskStatus.ISSUES

        model = resolve_model(self.ctx.model_choice, self.kind, stage, status)
        template = load_stage_prompt(self.ctx.prompt_root, self.kind, stage, task)
        issues_header, issues_mode = issues_text(
            self.kind, None if stage == REVIEW_STAGE else status, task
        )
        repo = self.ctx.config.repo_root

        def build_prompt(session: SessionState) -> str:
            finish_text = ""
            if stage == REVIEW_STAGE:
                finish_text = review_finish_instructions(review_mode, repo, task, session.session_id)
            context = PromptContext(
                repo_root=repo,
                task=task,
                session=session.session_id,
                issues_header=issues_header,
                issues_mode=issues_mode,
                parallelism_mode=parallelism_text(model),
                focus_section=focus_section_text(focus),
                review_finish_instructions=finish_text,
            )
            rendered = render_prompt(template, context)
            return f"Task: {task}\n\n{rendered}" if task else rendered

        return self.ctx.supervisor.run_stage(
            task, stage, model, build_prompt, interrupted=self.ctx.interrupted
        )

    def _claim(self, name: str) -> Optional[ClaimGuard]:
        return self.ctx.leases.acquire(name, self.ctx.config.claims.ttl_seconds)

    def _activate_if_held(self, state: TaskState) -> None:
        if not state.held:
            return

        def unhold(s: TaskState) -> None:
            s.held = False

        self.tasks.update(state.task, unhold)
        self._notify(f"Activating held task '{state.task}'")

    def _promote_stranded(self, candidate: TaskState) -> None:
        """Persist a stage rewritten by the scheduler's safety net."""
        stored = self.tasks.load(candidate.task)
        if stored.stage == candidate.stage:
            return

        def move(s: TaskState) -> None:
            s.stage = candidate.stage

        self.tasks.update(candidate.task, move)
        self._log("stranded_task_promoted", {"task": candidate.task, "stage": candidate.stage})

    def run_task(self, name: str) -> RunSummary:
        """
        Drive one task stage by stage until it completes or stops.

        Raises:
            NotFoundError: Unknown task.
            ConflictError: Another process holds the task's claim.
        """
        validate_task_name(name)
        if not self.tasks.exists(name):
            raise NotFoundError(
                f"Task '{name}' not found. Run 'metagent queue {name}' to add it first."
            )
        self.reconcile_running_tasks()

        guard = self._claim(name)
        if guard is None:
            raise ConflictError(f"Task '{name}' is already claimed.")

        summary = RunSummary(task=name)
        with guard:
            while True:
                state = self.tasks.load(name)
                if state.stage == TERMINAL_STAGE:
                    summary.completed = True
                    summary.message = f"Task '{name}' completed."
                    return summary
                if self.ctx.interrupted.is_set():
                    summary.outcome = StageOutcome.INTERRUPTED
                    return summary

                self._activate_if_held(state)
                self.tasks.mark_running(name)
                result = self.run_stage(name, state.stage)
                summary.stages_run.append(state.stage)
                summary.outcome = result.outcome

                if result.outcome is StageOutcome.FINISHED:
                    continue

                self.tasks.set_status(name, TaskStatus.INCOMPLETE)
                if result.outcome is StageOutcome.NO_FINISH:
                    summary.message = f"Session ended. Run 'metagent run {name}' to continue."
                return summary

    def _run_single_stage(self, state: TaskState, summary: RunSummary) -> RunSummary:
        self.tasks.mark_running(state.task)
        result = self.run_stage(state.task, state.stage)
        summary.stages_run.append(state.stage)
        summary.outcome = result.outcome
        if result.outcome is StageOutcome.INTERRUPTED:
            self.tasks.set_status(state.task, TaskStatus.INCOMPLETE)
        elif result.outcome is StageOutcome.NO_FINISH:
            self.tasks.set_status(state.task, TaskStatus.FAILED)
        return summary

    def run_next(self, name: Optional[str] = None) -> RunSummary:
        """
        Run exactly one stage of the named task, or of the next eligible one.

        Raises:
            NotFoundError: Unknown named task.
            InvalidStateError: The named task is already running.
            ConflictError: The named task is claimed elsewhere.
        """
        if not self.tasks.list():
            return RunSummary(message="No tasks")
        self.reconcile_running_tasks()

        if name is not None:
            state = self._require_task(name)
            if state.stage == TERMINAL_STAGE:
                return RunSummary(task=name, completed=True, message=f"Task '{name}' completed.")
            if state.status is TaskStatus.RUNNING:
                raise InvalidStateError(f"Task '{name}' is currently running")
            guard = self._claim(name)
            if guard is None:
                raise ConflictError(f"Task '{name}' is already claimed.")
            with guard:
                self._activate_if_held(state)
                return self._run_single_stage(state, RunSummary(task=name))

        candidate = self.scheduler.next_eligible(self.tasks.list())
        if candidate is None:
            return RunSummary(message="No eligible tasks.")

        guard = self._claim(candidate.task)
        if guard is None:
            return RunSummary(
                task=candidate.task, message=f"Task '{candidate.task}' is already claimed."
            )
        with guard:
            self._promote_stranded(candidate)
            return self._run_single_stage(candidate, RunSummary(task=candidate.task))

    def run_queue(self, loop_limit: Optional[int] = None) -> QueueRunSummary:
        """
        Keep running eligible tasks until the queue is drained or a stage fails.

        A task stays current (and claimed) until it leaves the queue, is
        held or completes. A task that bounces review -> build too often is
        moved to the backlog.
        """
        summary = QueueRunSummary()
        if not self.tasks.list():
            summary.message = "No tasks"
            return summary
        self.reconcile_running_tasks()

        if loop_limit is None:
            loop_limit = self.ctx.config.queue.loop_limit
        loop_guard = LoopGuard(loop_limit)
        skipped: set[str] = set()
        current: Optional[str] = None
        guard: Optional[ClaimGuard] = None

        def drop_current() -> None:
            nonlocal current, guard
            if guard is not None:
                guard.release()
            current, guard = None, None

        try:
            while True:
                if self.ctx.interrupted.is_set():
                    summary.outcome = StageOutcome.INTERRUPTED
                    return summary

                if current is None:
                    pool = [t for t in self.tasks.list() if t.task not in skipped]
                    candidate = self.scheduler.next_eligible(pool)
                    if candidate is None:
                        summary.message = "Queue processing complete."
                        return summary
                    guard = self._claim(candidate.task)
                    if guard is None:
                        skipped.add(candidate.task)
                        summary.skipped_claimed.append(candidate.task)
                        self._notify(f"Task '{candidate.task}' is already claimed.")
                        continue
                    self._promote_stranded(candidate)
                    current = candidate.task
                    loop_guard.track(current)

                if not self.tasks.exists(current):
                    drop_current()
                    continue
                state = self.tasks.load(current)
                if state.held or state.stage == TERMINAL_STAGE:
                    drop_current()
                    continue
                if state.stage not in self.kind.queue_stages():
                    summary.message = (
                        f"Task '{state.task}' moved to stage '{state.stage}' "
                        "(not handled by run-queue)."
                    )
                    return summary

                self.tasks.mark_running(current)
                result = self.run_stage(current, state.stage)
                summary.stages_run.append((current, state.stage))
                summary.outcome = result.outcome

                if result.outcome is StageOutcome.INTERRUPTED:
                    self.tasks.set_status(current, TaskStatus.INCOMPLETE)
                    return summary
                if result.outcome is StageOutcome.NO_FINISH:
                    self.tasks.set_status(current, TaskStatus.FAILED)
                    return summary

                after = self.tasks.load(current)
                if loop_guard.record_stage_result(state.stage, after.stage):
                    def shelve(s: TaskState) -> None:
                        s.held = True

                    self.tasks.update(current, shelve)
                    summary.held.append(current)
                    self._notify(
                        f"Task '{current}' exceeded review/build loop limit "
                        f"({loop_guard.limit}); moving to backlog."
                    )
                    self._log("task_loop_limit_reached", {"task": current, "limit": loop_guard.limit}, level="warn")
                    drop_current()
                    loop_guard.reset()
        finally:
            if guard is not None:
                guard.release()

    def start(self) -> RunSummary:
        """
        Interview mode: run from the initial stage with no task until the
        agent hands the new task over to the queue.

        Raises:
            ExternalProcessError: A stage ended without `finish`.
            InvalidStateError: A finished stage had no next stage.
        """
        summary = RunSummary()
        stage = self.kind.initial_stage()
        handoff = self.kind.handoff_stage()

        while True:
            task = summary.task
            if task and self.tasks.exists(task):
                self.tasks.mark_running(task)

            result = self.run_stage(task, stage)
            summary.stages_run.append(stage)
            summary.outcome = result.outcome

            if result.outcome is StageOutcome.FINISHED:
                if task is None and result.session.task:
                    summary.task = result.session.task
                next_stage = result.session.next_stage or self.kind.next_stage(stage)
                if next_stage is None:
                    raise InvalidStateError("No next stage provided.")
                if handoff is not None and next_stage == handoff:
                    if summary.task:
                        summary.message = (
                            f"Task '{summary.task}' is ready. Run 'metagent run {summary.task}' "
                            "or 'metagent run-queue' to start."
                        )
                    return summary
                if next_stage == TERMINAL_STAGE:
                    summary.completed = True
                    summary.message = "Task completed."
                    return summary
                stage = next_stage
                continue

            task = summary.task
            exists = bool(task) and self.tasks.exists(task)
            if result.outcome is StageOutcome.INTERRUPTED:
                if exists:
                    self.tasks.set_status(task, TaskStatus.INCOMPLETE)
                return summary

            if exists:
                self.tasks.set_status(task, TaskStatus.FAILED)
            if task:
                raise ExternalProcessError(
                    f"Task '{task}' exited without completing stage {stage}",
                    task=task,
                    stage=stage,
                )
            raise ExternalProcessError("Interview ended without creating a task", stage=stage)

    def review(self, name: str, focus: Optional[str] = None) -> StageResult:
        """Manual review; the agent reports but does not call finish."""
        self.kind.validate_stage(REVIEW_STAGE)
        self._require_task(name)
        return self.run_stage(name, REVIEW_STAGE, focus=focus, review_mode=ReviewFinishMode.MANUAL)

    def spec_review(self, name: str) -> StageResult:
        self.kind.validate_stage("spec-review")
        self._require_task(name)
        return self.run_stage(name, "spec-review", review_mode=ReviewFinishMode.QUEUE)

    def debug(self, bug_text: str = "") -> Optional[int]:
        """
        Run a one-shot debugging session on codex.

        No session or task is involved; the agent works on the repository
        directly and exits when done.

        Returns:
            The agent's exit code, or None if interrupted.

        Raises:
            InvalidStateError: The agent kind has no debug prompt.
            ExternalProcessError: The agent failed to start or exited non-zero.
        """
        prompt = debug_prompt(self.ctx.prompt_root, self.kind, self.ctx.config.repo_root, bug_text)
        self._log("debug_started", {"has_report": bool(bug_text.strip())})
        code = self.ctx.supervisor.run_attached(
            Model.CODEX, prompt, interrupted=self.ctx.interrupted
        )
        if code:
            raise ExternalProcessError(f"Debug command failed (exit code {code})")
        return code
