"""
Queue scheduling for metagent.

Picks the next task to run, orders each stage's queue, supports manual
reordering of the build queue, and guards the queue runner against a task
bouncing between review and build forever.

Selection rules:
- Queue stages are scanned in priority order; the first stage holding a
  non-held task in PENDING / INCOMPLETE / ISSUES wins.
- The build stage is ordered by queue_rank (unranked last), then added_at.
  Every other stage is FIFO by added_at.
- Safety net: a non-held task parked at the terminal stage but still in
  ISSUES is returned with its stage rewritten to the build stage.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional

from metagent.errors import InvalidStateError
from metagent.models import RUNNABLE_STATUSES, TaskState, TaskStatus
from metagent.stages import BUILD_STAGE, REVIEW_STAGE, TERMINAL_STAGE, AgentKind
from metagent.validation import require_positive

if TYPE_CHECKING:
    from metagent.state_store import TaskStore

DEFAULT_LOOP_LIMIT = 100


def _rank_key(task: TaskState) -> tuple[float, str]:
    rank = task.queue_rank if task.queue_rank is not None else float("inf")
    return (rank, task.added_at)


@dataclass
class QueueView:
    """Tasks grouped the way the queue listing shows them."""
    stages: list[tuple[str, list[TaskState]]] = field(default_factory=list)
    completed: list[TaskState] = field(default_factory=list)
    backlog: list[TaskState] = field(default_factory=list)


class QueueScheduler:
    """Stateless selection and ordering over a list of tasks."""

    def __init__(self, agent_kind: AgentKind) -> None:
        self.agent_kind = agent_kind

    def order_stage_tasks(self, stage: str, tasks: Iterable[TaskState]) -> list[TaskState]:
        if stage == BUILD_STAGE:
            return sorted(tasks, key=_rank_key)
        return sorted(tasks, key=lambda t: t.added_at)

    def next_eligible(self, tasks: Iterable[TaskState]) -> Optional[TaskState]:
        """
        Return the task the queue should run next, or None.

        The returned TaskState may be a copy with a rewritten stage (safety
        net); callers persist that stage before running it.
        """
        tasks = list(tasks)
        for stage in self.agent_kind.queue_stages():
            candidates = [
                t for t in tasks
                if not t.held and t.stage == stage and t.status in RUNNABLE_STATUSES
            ]
            if candidates:
                return self.order_stage_tasks(stage, candidates)[0]

        stranded = [
            t for t in tasks
            if not t.held and t.stage == TERMINAL_STAGE and t.status is TaskStatus.ISSUES
        ]
        if stranded:
            oldest = min(stranded, key=lambda t: t.added_at)
            return dataclasses.replace(oldest, stage=BUILD_STAGE)
        return None

    def queue_view(self, tasks: Iterable[TaskState]) -> QueueView:
        tasks = list(tasks)
        view = QueueView()
        for stage in self.agent_kind.stages():
            if stage == TERMINAL_STAGE:
                continue
            stage_tasks = [t for t in tasks if not t.held and t.stage == stage]
            if stage_tasks:
                view.stages.append((stage, self.order_stage_tasks(stage, stage_tasks)))

        view.completed = sorted(
            (t for t in tasks if not t.held and t.stage == TERMINAL_STAGE),
            key=lambda t: t.updated_at,
            reverse=True,
        )
        view.backlog = sorted((t for t in tasks if t.held), key=lambda t: t.added_at)
        return view

    def build_queue(self, tasks: Iterable[TaskState]) -> list[TaskState]:
        return self.order_stage_tasks(
            BUILD_STAGE, (t for t in tasks if not t.held and t.stage == BUILD_STAGE)
        )

    def reorder(self, task: str, position: int, task_store: TaskStore) -> int:
        """
        Move `task` to a 1-based `position` in the build queue.

        Ranks are rewritten 1..n in the new order; only tasks whose rank
        actually changed are persisted.

        Returns:
            The position the task ended up at (clamped to the queue length).

        Raises:
            InvalidInputError: position < 1.
            NotFoundError: Unknown task.
            InvalidStateError: Task held or not in the build stage, or no
                build queue to reorder.
        """
        require_positive(position, "Position")
        target = task_store.load(task)
        if target.stage != BUILD_STAGE:
            raise InvalidStateError("Reorder is only supported for build stage tasks")
        if target.held:
            raise InvalidStateError(f"Task '{task}' is held. Activate it before reordering.")

        queue = self.build_queue(task_store.list())
        if not queue:
            raise InvalidStateError("No build tasks to reorder")

        remaining = [t for t in queue if t.task != task]
        if len(remaining) == len(queue):
            raise InvalidStateError(f"Task '{task}' is not in the build queue")

        insert_index = min(position - 1, len(remaining))
        remaining.insert(insert_index, target)

        for index, item in enumerate(remaining):
            new_rank = index + 1
            if item.queue_rank == new_rank:
                continue

            def assign(state: TaskState, rank: int = new_rank) -> None:
                state.queue_rank = rank

            task_store.update(item.task, assign)

        return insert_index + 1


class LoopGuard:
    """
    Counts review -> build round trips for the task the queue runner is on.

    The counter resets whenever a different task becomes current. A limit
    of 0 means DEFAULT_LOOP_LIMIT, never "unlimited".
    """

    def __init__(self, limit: int = 0) -> None:
        self.limit = limit if limit > 0 else DEFAULT_LOOP_LIMIT
        self.current: Optional[str] = None
        self.count = 0

    def track(self, task: str) -> None:
        if task != self.current:
            self.current = task
            self.count = 0

    def reset(self) -> None:
        self.current = None
        self.count = 0

    def record_stage_result(self, previous_stage: str, new_stage: str) -> bool:
        """
        Record a finished stage. Returns True when the task should be held.
        """
        if previous_stage == REVIEW_STAGE and new_stage == BUILD_STAGE:
            self.count += 1
            return self.count >= self.limit
        return False
