"""
Issue operations with task side effects.

Adding or assigning an open issue to a task forces the task into ISSUES
status and pulls a completed task back to an in-progress stage, so issues
can never sit unseen on a finished task. Resolving issues re-syncs the
task status.

Issue and task files are updated separately, each atomically; there is
no cross-record transaction. sync_task_status() reconciles a task with the
current set of open issues.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from metagent.errors import InvalidStateError, NotFoundError
from metagent.issues import (
    Issue,
    IssueCounts,
    IssuePriority,
    IssueSource,
    IssueStatus,
    IssueStore,
    IssueType,
    append_resolution,
    count_open_issues,
)
from metagent.models import TaskState, TaskStatus
from metagent.stages import TERMINAL_STAGE, AgentKind
from metagent.validation import InvalidInputError, ValidationError, validate_task_name

if TYPE_CHECKING:
    from metagent.logger import EventLogger
    from metagent.state_store import TaskStore


class IssueTracker:
    """Issue workflow for one agent root."""

    def __init__(
        self,
        agent_kind: AgentKind,
        issue_store: IssueStore,
        task_store: TaskStore,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.agent_kind = agent_kind
        self.issues = issue_store
        self.tasks = task_store
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "issue_tracker"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def ensure_supported(self) -> None:
        if not self.agent_kind.supports_issues:
            raise InvalidStateError(
                f"Issue tracking is only supported for the code agent (current: {self.agent_kind.name})"
            )

    def validate_issue_stage(self, stage: str) -> str:
        """Stage overrides must be real, non-terminal stages."""
        self.agent_kind.validate_stage(stage)
        if stage == TERMINAL_STAGE:
            raise InvalidStateError("Issues cannot target the completed stage")
        return stage

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def open_issues_for(self, task: str) -> list[Issue]:
        return [i for i in self.issues.list() if i.is_open and i.task == task]

    def task_has_open_issues(self, task: str) -> bool:
        if not self.agent_kind.supports_issues:
            return False
        return bool(self.open_issues_for(task))

    def open_counts(self) -> IssueCounts:
        if not self.agent_kind.supports_issues:
            return IssueCounts()
        return count_open_issues(self.issues.list())

    # ------------------------------------------------------------------
    # Task side effects
    # ------------------------------------------------------------------

    def force_issues_status(
        self,
        task: str,
        stage_override: Optional[str] = None,
        default_stage: Optional[str] = None,
    ) -> TaskState:
        """Put `task` into ISSUES status, moving it off the terminal stage if needed."""

        def mutate(state: TaskState) -> None:
            if stage_override:
                state.stage = stage_override
            elif state.stage == TERMINAL_STAGE and default_stage:
                state.stage = default_stage
            state.status = TaskStatus.ISSUES

        state = self.tasks.update(task, mutate)
        self._log("task_flagged_for_issues", {"task": task, "stage": state.stage})
        return state

    def sync_task_status(self, task: str) -> TaskState:
        """
        Reconcile a task's status with its open issues.

        open issues -> ISSUES; else terminal stage -> COMPLETED;
        else a task still marked ISSUES goes back to PENDING.
        """
        has_open = self.task_has_open_issues(task)

        def mutate(state: TaskState) -> None:
            if has_open:
                state.status = TaskStatus.ISSUES
            elif state.stage == TERMINAL_STAGE:
                state.status = TaskStatus.COMPLETED
            elif state.status is TaskStatus.ISSUES:
                state.status = TaskStatus.PENDING

        return self.tasks.update(task, mutate)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def add_issue(
        self,
        title: str,
        task: Optional[str] = None,
        priority: IssuePriority = IssuePriority.P2,
        issue_type: IssueType = IssueType.BUILD,
        source: IssueSource = IssueSource.MANUAL,
        file: Optional[str] = None,
        body: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> Issue:
        """
        Create an open issue, optionally bound to a task.

        Raises:
            InvalidInputError: Empty or multi-line title, or bad task name.
            InvalidStateError: Stage override targets the terminal stage.
            NotFoundError: The task does not exist.
        """
        self.ensure_supported()
        if not title or not title.strip():
            raise InvalidInputError(ValidationError(
                code="EMPTY_TITLE",
                message="Issue title cannot be empty",
                expected="non-empty title",
                got=repr(title),
            ))
        if "\n" in title.strip() or "\r" in title.strip():
            raise InvalidInputError(ValidationError(
                code="MULTILINE_TITLE",
                message="Issue title must be a single line",
                expected="title without line breaks",
                got=repr(title),
                hint="Put details in the issue body",
            ))
        if task is not None:
            validate_task_name(task)
            if stage:
                self.validate_issue_stage(stage)
            if not self.tasks.exists(task):
                raise NotFoundError(f"Task '{task}' not found")

        issue = Issue.new(
            title=title.strip(),
            priority=priority,
            task=task,
            issue_type=issue_type,
            source=source,
            file=file,
            body=body,
        )
        self.issues.save(issue)
        self._log("issue_added", {"issue_id": issue.id, "task": task})

        if task is not None:
            self.force_issues_status(
                task, stage, self.agent_kind.issue_default_stage(issue_type.value)
            )
        return issue

    def assign_issue(self, issue_id: str, task: str, stage: Optional[str] = None) -> Issue:
        """
        Bind an issue to a task.

        Assigning a resolved issue records the binding only; it has no
        effect on the task.
        """
        self.ensure_supported()
        validate_task_name(task)
        if stage:
            self.validate_issue_stage(stage)
        previous: list[Optional[str]] = []

        def bind(issue: Issue) -> None:
            if issue.is_open and not self.tasks.exists(task):
                raise NotFoundError(f"Task '{task}' not found")
            previous.append(issue.task)
            issue.task = task

        issue = self.issues.update(issue_id, bind)
        previous_task = previous[0]
        self._log("issue_assigned", {"issue_id": issue_id, "task": task, "from": previous_task})

        if not issue.is_open:
            return issue

        self.force_issues_status(
            task, stage, self.agent_kind.issue_default_stage(issue.issue_type.value)
        )
        if previous_task and previous_task != task and self.tasks.exists(previous_task):
            self.sync_task_status(previous_task)
        return issue

    def resolve_issue(self, issue_id: str, resolution: Optional[str] = None) -> Issue:
        """Mark an issue resolved and re-sync its task."""
        self.ensure_supported()

        def resolve(issue: Issue) -> None:
            issue.status = IssueStatus.RESOLVED
            if resolution:
                issue.body = append_resolution(issue.body, resolution)

        issue = self.issues.update(issue_id, resolve)
        self._log("issue_resolved", {"issue_id": issue_id, "task": issue.task})

        if issue.task and self.tasks.exists(issue.task):
            self.sync_task_status(issue.task)
        return issue

    def unassign_task_issues(self, task: str) -> list[Issue]:
        """Detach every open issue from `task`. Issues are never deleted."""

        def detach(issue: Issue) -> None:
            if issue.task == task:
                issue.task = None

        detached = [self.issues.update(issue.id, detach) for issue in self.open_issues_for(task)]
        if detached:
            self._log("issues_unassigned", {"task": task, "count": len(detached)})
        return detached
