"""
Core data models for metagent.

This module defines the persisted records and their enums:
- TaskState: durable state of one unit of work
- SessionState: one external-agent invocation
- ClaimState: contents of an execution lease file
- Model: external agent binaries and their fixed arguments
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from metagent.errors import InvalidStateError
from metagent.validation import InvalidInputError, ValidationError

if TYPE_CHECKING:
    from metagent.config import ModelConfig


def now_iso() -> str:
    """Current UTC time as an RFC 3339 string with second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def today_date() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by now_iso()."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TaskStatus(Enum):
    """Execution status of a task, independent of its stage."""
    PENDING = "pending"
    RUNNING = "running"
    INCOMPLETE = "incomplete"
    FAILED = "failed"
    COMPLETED = "completed"
    ISSUES = "issues"

    @classmethod
    def parse(cls, value: str) -> TaskStatus:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidInputError(ValidationError(
                code="INVALID_STATUS",
                message=f"Invalid status: {value}",
                expected=", ".join(s.value for s in cls),
                got=repr(value),
            ))

    @property
    def symbol(self) -> str:
        return _STATUS_SYMBOLS[self]


_STATUS_SYMBOLS = {
    TaskStatus.PENDING: "○",
    TaskStatus.RUNNING: "●",
    TaskStatus.INCOMPLETE: "◐",
    TaskStatus.FAILED: "✗",
    TaskStatus.COMPLETED: "✓",
    TaskStatus.ISSUES: "!",
}

# Statuses that make a task eligible for scheduling
RUNNABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.INCOMPLETE, TaskStatus.ISSUES)


class SessionStatus(Enum):
    """Session lifecycle. FINISHED and FAILED are terminal."""
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"


class Model(Enum):
    """External agent programs that can run a stage."""
    CLAUDE = "claude"
    CODEX = "codex"

    @classmethod
    def parse(cls, value: str) -> Model:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidInputError(ValidationError(
                code="UNKNOWN_MODEL",
                message=f"Unknown model: {value}",
                expected="claude or codex",
                got=repr(value),
            ))

    def command(self, config: Optional[ModelConfig] = None) -> tuple[str, list[str]]:
        """Return the binary and fixed arguments for this model."""
        if self is Model.CLAUDE:
            binary = config.claude_binary if config else "claude"
            return binary, ["--dangerously-skip-permissions"]
        binary = config.codex_binary if config else "codex"
        return binary, ["--dangerously-bypass-approvals-and-sandbox"]


@dataclass
class ModelChoice:
    """
    Model selected by the operator.

    `explicit` is True when the model came from --model or METAGENT_MODEL;
    `force_model` lets an explicit choice override the issues-mode model.
    """
    model: Model = Model.CLAUDE
    explicit: bool = False
    force_model: bool = False


@dataclass
class TaskState:
    """
    Durable state of one task (tasks/<name>/task.json).

    `stage` is always a member of the agent kind's stage list. `queue_rank`
    only matters while the task is in the build stage.
    """
    task: str
    agent: str
    stage: str
    status: TaskStatus = TaskStatus.PENDING
    added_at: str = ""
    updated_at: str = ""
    last_session: Optional[str] = None
    last_error: Optional[str] = None
    held: bool = False
    queue_rank: Optional[int] = None
    description: Optional[str] = None

    def touch(self) -> None:
        self.updated_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskState:
        """Create from dictionary."""
        rank = data.get("queue_rank")
        return cls(
            task=data["task"],
            agent=data["agent"],
            stage=data["stage"],
            status=TaskStatus(data["status"]),
            added_at=data["added_at"],
            updated_at=data["updated_at"],
            last_session=data.get("last_session"),
            last_error=data.get("last_error"),
            held=bool(data.get("held", False)),
            queue_rank=int(rank) if rank is not None else None,
            description=data.get("description"),
        )


@dataclass
class SessionState:
    """
    One invocation of the external agent (sessions/<id>/session.json).

    Status is monotonic: once FINISHED or FAILED it never changes again.
    """
    session_id: str
    agent: str
    stage: str
    task: Optional[str] = None
    status: SessionStatus = SessionStatus.RUNNING
    started_at: str = ""
    finished_at: Optional[str] = None
    next_stage: Optional[str] = None
    pid: int = 0
    host: str = ""
    repo_root: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status is not SessionStatus.RUNNING

    def _require_running(self, target: SessionStatus) -> None:
        if self.is_terminal:
            raise InvalidStateError(
                f"Session {self.session_id} is already {self.status.value}; "
                f"cannot mark it {target.value}"
            )

    def mark_finished(self, next_stage: str, task: Optional[str] = None) -> None:
        self._require_running(SessionStatus.FINISHED)
        self.status = SessionStatus.FINISHED
        self.finished_at = now_iso()
        self.next_stage = next_stage
        if task:
            self.task = task

    def mark_failed(self) -> None:
        self._require_running(SessionStatus.FAILED)
        self.status = SessionStatus.FAILED
        self.finished_at = now_iso()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        """Create from dictionary."""
        return cls(
            session_id=data["session_id"],
            agent=data["agent"],
            stage=data["stage"],
            task=data.get("task"),
            status=SessionStatus(data["status"]),
            started_at=data["started_at"],
            finished_at=data.get("finished_at"),
            next_stage=data.get("next_stage"),
            pid=int(data.get("pid", 0)),
            host=data.get("host", ""),
            repo_root=data.get("repo_root", ""),
        )


@dataclass
class ClaimState:
    """Contents of a claims/<task>.lock lease file."""
    task: str
    agent: str
    pid: int
    host: str
    started_at: str
    ttl_seconds: int

    @classmethod
    def for_current_process(cls, task: str, agent: str, host: str, ttl_seconds: int) -> ClaimState:
        return cls(
            task=task,
            agent=agent,
            pid=os.getpid(),
            host=host,
            started_at=now_iso(),
            ttl_seconds=ttl_seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimState:
        """Create from dictionary."""
        return cls(
            task=data["task"],
            agent=data.get("agent", ""),
            pid=int(data["pid"]),
            host=data["host"],
            started_at=data["started_at"],
            ttl_seconds=int(data["ttl_seconds"]),
        )
