"""
Task and session persistence for metagent.

Storage structure (under .agents/<agent>/):
    tasks/<name>/
    ├── task.json          # TaskState (source of truth)
    ├── task.json.lock     # Mutation lock
    └── ...                # Agent working files (spec/, plan.md, content/ ...)
    sessions/<id>/
    └── session.json       # SessionState, append-only history
"""

from __future__ import annotations

import itertools
import os
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from metagent.config import ENV_SESSION
from metagent.errors import NotFoundError
from metagent.models import SessionState, SessionStatus, TaskState, TaskStatus, now_iso
from metagent.record_store import RecordStore
from metagent.utils.fs import list_dirs, remove_dir

if TYPE_CHECKING:
    from metagent.logger import EventLogger

TASK_FILE = "task.json"
SESSION_FILE = "session.json"

_session_counter = itertools.count()
_session_counter_lock = threading.Lock()


def new_session_id() -> str:
    """Session id from wall-clock seconds, pid and an in-process counter."""
    with _session_counter_lock:
        n = next(_session_counter)
    return f"{int(time.time())}-{os.getpid()}-{n}"


class TaskStore:
    """Durable TaskState records for one agent root."""

    def __init__(
        self,
        agent_root: Path,
        lock_timeout: float = -1,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.agent_root = Path(agent_root)
        self.records: RecordStore[TaskState] = RecordStore(
            TaskState, "task", lock_timeout=lock_timeout, logger=logger
        )
        self._logger = logger

    @property
    def tasks_dir(self) -> Path:
        return self.agent_root / "tasks"

    def dir(self, task: str) -> Path:
        return self.tasks_dir / task

    def path(self, task: str) -> Path:
        return self.dir(task) / TASK_FILE

    def exists(self, task: str) -> bool:
        return self.path(task).exists()

    def load(self, task: str) -> TaskState:
        """
        Load a task.

        Raises:
            NotFoundError: If the task has no task.json.
            CorruptionError: If task.json is malformed.
        """
        if not self.exists(task):
            raise NotFoundError(f"Task '{task}' not found")
        return self.records.load(self.path(task))

    def update(self, task: str, mutator: Callable[[TaskState], None]) -> TaskState:
        """Locked read-modify-write of a task; updated_at is refreshed."""
        if not self.exists(task):
            raise NotFoundError(f"Task '{task}' not found")

        def apply(state: TaskState) -> None:
            mutator(state)
            state.touch()

        return self.records.update(self.path(task), apply)

    def set_status(self, task: str, status: TaskStatus) -> TaskState:
        def mutate(state: TaskState) -> None:
            state.status = status

        return self.update(task, mutate)

    def mark_running(self, task: str) -> TaskState:
        """Mark a task running, keeping ISSUES so the prompt still injects them."""
        def mutate(state: TaskState) -> None:
            if state.status is not TaskStatus.ISSUES:
                state.status = TaskStatus.RUNNING

        return self.update(task, mutate)

    def create(
        self,
        agent: str,
        task: str,
        stage: str,
        hold: bool = False,
        description: Optional[str] = None,
    ) -> TaskState:
        """Write the initial state for a new task (status pending)."""
        timestamp = now_iso()
        state = TaskState(
            task=task,
            agent=agent,
            stage=stage,
            status=TaskStatus.PENDING,
            added_at=timestamp,
            updated_at=timestamp,
            held=hold,
            description=description,
        )
        self.records.save(self.path(task), state)
        if self._logger:
            self._logger.info("task_created", {"task": task, "stage": stage, "held": hold})
        return state

    def list(self) -> list[TaskState]:
        """
        All tasks with a task.json, sorted by name.

        Directories without task.json are skipped; a malformed task.json
        raises CorruptionError.
        """
        tasks = []
        for task_dir in list_dirs(self.tasks_dir):
            path = task_dir / TASK_FILE
            if path.exists():
                tasks.append(self.records.load(path))
        return tasks

    def delete(self, task: str) -> bool:
        """Remove the task directory and everything in it."""
        removed = remove_dir(self.dir(task))
        if removed and self._logger:
            self._logger.info("task_deleted", {"task": task})
        return removed


class SessionStore:
    """Durable SessionState records for one agent root. Sessions are never deleted."""

    def __init__(
        self,
        agent_root: Path,
        lock_timeout: float = -1,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.agent_root = Path(agent_root)
        self.records: RecordStore[SessionState] = RecordStore(
            SessionState, "session", lock_timeout=lock_timeout, logger=logger
        )

    @property
    def sessions_dir(self) -> Path:
        return self.agent_root / "sessions"

    def path(self, session_id: str) -> Path:
        return self.sessions_dir / session_id / SESSION_FILE

    def create(
        self,
        agent: str,
        stage: str,
        task: Optional[str],
        repo_root: Path,
        host: str,
        session_id: Optional[str] = None,
    ) -> SessionState:
        """Persist a new running session owned by this process."""
        session = SessionState(
            session_id=session_id or new_session_id(),
            agent=agent,
            stage=stage,
            task=task,
            status=SessionStatus.RUNNING,
            started_at=now_iso(),
            pid=os.getpid(),
            host=host,
            repo_root=str(repo_root),
        )
        self.records.save(self.path(session.session_id), session)
        return session

    def load(self, session_id: str) -> SessionState:
        path = self.path(session_id)
        if not path.exists():
            raise NotFoundError(f"Session not found: {session_id}")
        return self.records.load(path)

    def update(self, session_id: str, mutator: Callable[[SessionState], None]) -> SessionState:
        path = self.path(session_id)
        if not path.exists():
            raise NotFoundError(f"Session not found: {session_id}")
        return self.records.update(path, mutator)

    def list(self) -> list[SessionState]:
        sessions = []
        for session_dir in list_dirs(self.sessions_dir):
            path = session_dir / SESSION_FILE
            if path.exists():
                sessions.append(self.records.load(path))
        return sessions

    def list_for_task(self, task: str) -> list[SessionState]:
        """Sessions for `task`, oldest first."""
        sessions = [s for s in self.list() if s.task == task]
        sessions.sort(key=lambda s: (s.started_at, s.session_id))
        return sessions

    def has_active_session(self, task: str) -> bool:
        return any(s.status is SessionStatus.RUNNING for s in self.list_for_task(task))

    def resolve_session_id(self, explicit: Optional[str] = None) -> str:
        """
        Work out which session a finish call refers to.

        Order: explicit id, METAGENT_SESSION, the only running session.

        Raises:
            NotFoundError: If none of those yields exactly one session.
        """
        if explicit:
            return explicit

        env_session = os.environ.get(ENV_SESSION)
        if env_session:
            return env_session

        running = [s.session_id for s in self.list() if s.status is SessionStatus.RUNNING]
        if len(running) == 1:
            return running[0]

        raise NotFoundError("METAGENT_SESSION not set and no unique active session found")

    def task_history(self, task: str) -> str:
        """
        Compressed stage history, e.g. "spec->planning->build(2x)->review".

        Consecutive sessions in the same stage collapse into one entry.
        """
        parts: list[str] = []
        for stage, group in itertools.groupby(s.stage for s in self.list_for_task(task)):
            count = sum(1 for _ in group)
            parts.append(f"{stage}({count}x)" if count > 1 else stage)
        return "->".join(parts)
