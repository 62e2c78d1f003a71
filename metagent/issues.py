"""
Issue records for metagent.

Issues live in .agents/code/issues/<id>.md as markdown with a key: value
frontmatter block:

    ---
    id: 1700000000-4242-0
    title: Parser drops trailing newline
    status: open
    priority: P1
    task: my-task
    type: bug
    source: review
    created_at: 2024-01-01T00:00:00Z
    updated_at: 2024-01-01T00:00:00Z
    file: src/parser.py
    ---

    Free-text body. A resolution is appended under "## Resolution".

`task` and `file` are written as "-" when unset. Corrupt issue files are
logged and skipped by IssueStore.list(); they never stop a listing.
"""

from __future__ import annotations

import itertools
import logging
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from filelock import FileLock, Timeout

from metagent.errors import CorruptionError, LockTimeoutError, NotFoundError
from metagent.models import now_iso
from metagent.record_store import lock_path_for
from metagent.utils.fs import FileSystemError, atomic_write, read_file
from metagent.validation import InvalidInputError, ValidationError

if TYPE_CHECKING:
    from metagent.logger import EventLogger

logger = logging.getLogger(__name__)

UNSET = "-"
FRONTMATTER_DELIMITER = "---"
RESOLUTION_HEADING = "## Resolution"
FRONTMATTER_KEYS = (
    "id",
    "title",
    "status",
    "priority",
    "task",
    "type",
    "source",
    "created_at",
    "updated_at",
    "file",
)


def _invalid(kind: str, value: str, allowed: Iterable[str]) -> InvalidInputError:
    return InvalidInputError(ValidationError(
        code=f"INVALID_{kind.upper().replace(' ', '_')}",
        message=f"Invalid {kind}: {value}",
        expected=", ".join(allowed),
        got=repr(value),
    ))


class IssueStatus(Enum):
    OPEN = "open"
    RESOLVED = "resolved"

    @classmethod
    def parse(cls, value: str) -> IssueStatus:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise _invalid("issue status", value, (s.value for s in cls))


class IssuePriority(Enum):
    """P0 is the most urgent."""
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def weight(self) -> int:
        return int(self.value[1])

    @classmethod
    def parse(cls, value: str) -> IssuePriority:
        """Accepts "P1", "p1" or "1"."""
        token = value.strip().lower()
        token = token[1:] if token.startswith("p") else token
        try:
            return cls(f"P{token}")
        except ValueError:
            raise _invalid("priority", value, (p.value for p in cls))


class IssueType(Enum):
    SPEC = "spec"
    BUILD = "build"
    BUG = "bug"
    TEST = "test"
    PERF = "perf"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> IssueType:
        token = value.strip().lower()
        if token == "performance":
            token = "perf"
        try:
            return cls(token)
        except ValueError:
            raise _invalid("issue type", value, (t.value for t in cls))


class IssueSource(Enum):
    REVIEW = "review"
    DEBUG = "debug"
    SUBMIT = "submit"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str) -> IssueSource:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise _invalid("issue source", value, (s.value for s in cls))


_issue_counter = itertools.count()
_issue_counter_lock = threading.Lock()


def new_issue_id() -> str:
    """Unique id from wall-clock seconds, pid and an in-process counter."""
    with _issue_counter_lock:
        n = next(_issue_counter)
    return f"{int(time.time())}-{os.getpid()}-{n}"


@dataclass
class Issue:
    """A tracked defect or clarification, optionally bound to a task."""
    id: str
    title: str
    status: IssueStatus = IssueStatus.OPEN
    priority: IssuePriority = IssuePriority.P2
    task: Optional[str] = None
    issue_type: IssueType = IssueType.BUILD
    source: IssueSource = IssueSource.MANUAL
    created_at: str = ""
    updated_at: str = ""
    file: Optional[str] = None
    body: Optional[str] = None

    @classmethod
    def new(
        cls,
        title: str,
        status: IssueStatus = IssueStatus.OPEN,
        priority: IssuePriority = IssuePriority.P2,
        task: Optional[str] = None,
        issue_type: IssueType = IssueType.BUILD,
        source: IssueSource = IssueSource.MANUAL,
        file: Optional[str] = None,
        body: Optional[str] = None,
    ) -> Issue:
        timestamp = now_iso()
        return cls(
            id=new_issue_id(),
            title=title,
            status=status,
            priority=priority,
            task=task,
            issue_type=issue_type,
            source=source,
            created_at=timestamp,
            updated_at=timestamp,
            file=file,
            body=_clean_body(body),
        )

    @property
    def is_open(self) -> bool:
        return self.status is IssueStatus.OPEN


def _clean_body(body: Optional[str]) -> Optional[str]:
    if body is None or not body.strip():
        return None
    return body.strip()


def _optional(value: str) -> Optional[str]:
    value = value.strip()
    if not value or value == UNSET:
        return None
    return value


def render_issue(issue: Issue) -> str:
    """Serialize an issue to frontmatter markdown."""
    lines = [
        FRONTMATTER_DELIMITER,
        f"id: {issue.id}",
        f"title: {issue.title}",
        f"status: {issue.status.value}",
        f"priority: {issue.priority.value}",
        f"task: {issue.task or UNSET}",
        f"type: {issue.issue_type.value}",
        f"source: {issue.source.value}",
        f"created_at: {issue.created_at}",
        f"updated_at: {issue.updated_at}",
        f"file: {issue.file or UNSET}",
        FRONTMATTER_DELIMITER,
    ]
    body = _clean_body(issue.body)
    if body:
        lines.extend(["", body])
    return "\n".join(lines) + "\n"


def _split_frontmatter(content: str) -> tuple[dict[str, str], str]:
    lines = content.splitlines()
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        raise CorruptionError("Missing frontmatter")

    fields: dict[str, str] = {}
    for index, line in enumerate(lines[1:], start=1):
        if line.strip() == FRONTMATTER_DELIMITER:
            return fields, "\n".join(lines[index + 1:])
        if not line.strip():
            continue
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()

    raise CorruptionError("Unterminated frontmatter")


def parse_issue(content: str) -> Issue:
    """
    Parse frontmatter markdown into an Issue.

    Raises:
        CorruptionError: If the frontmatter is missing, a key is missing,
            or an enum value is invalid.
    """
    fields, body = _split_frontmatter(content)
    for key in FRONTMATTER_KEYS:
        if key not in fields:
            raise CorruptionError(f"Missing {key}")

    try:
        return Issue(
            id=fields["id"],
            title=fields["title"],
            status=IssueStatus.parse(fields["status"]),
            priority=IssuePriority.parse(fields["priority"]),
            task=_optional(fields["task"]),
            issue_type=IssueType.parse(fields["type"]),
            source=IssueSource.parse(fields["source"]),
            created_at=fields["created_at"],
            updated_at=fields["updated_at"],
            file=_optional(fields["file"]),
            body=_clean_body(body),
        )
    except InvalidInputError as e:
        raise CorruptionError(str(e))


def append_resolution(body: Optional[str], resolution: str) -> Optional[str]:
    """Append a "## Resolution" section; blank resolutions leave the body unchanged."""
    resolution = resolution.strip()
    if not resolution:
        return body
    result = body or ""
    if result:
        result += "\n\n"
    result += f"{RESOLUTION_HEADING}\n{resolution}"
    return result.strip()


class IssueStore:
    """
    Issue files under <agent_root>/issues.

    Writes hold `<id>.md.lock`, the same mutation lock task and session
    records use.
    """

    def __init__(
        self,
        agent_root: Path,
        lock_timeout: float = -1,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.agent_root = Path(agent_root)
        self.lock_timeout = lock_timeout
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "issue_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    @property
    def issues_dir(self) -> Path:
        return self.agent_root / "issues"

    def path(self, issue_id: str) -> Path:
        return self.issues_dir / f"{issue_id}.md"

    def exists(self, issue_id: str) -> bool:
        return self.path(issue_id).exists()

    def load(self, issue_id: str) -> Issue:
        path = self.path(issue_id)
        if not path.exists():
            raise NotFoundError(
                f"Issue '{issue_id}' not found (run `metagent issues` to list IDs)"
            )
        return self._load_path(path)

    def read_raw(self, issue_id: str) -> str:
        self.load(issue_id)
        return read_file(self.path(issue_id))

    def _load_path(self, path: Path) -> Issue:
        try:
            return parse_issue(read_file(path))
        except FileSystemError as e:
            raise CorruptionError(f"Failed to read issue {path}: {e}", path=str(path))
        except CorruptionError as e:
            raise CorruptionError(f"Failed to parse issue {path}: {e}", path=str(path))

    def _lock(self, path: Path) -> FileLock:
        path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(lock_path_for(path)), timeout=self.lock_timeout)

    def save(self, issue: Issue) -> None:
        path = self.path(issue.id)
        try:
            with self._lock(path):
                atomic_write(path, render_issue(issue))
        except Timeout:
            self._log("issue_lock_timeout", {"issue_id": issue.id}, level="error")
            raise LockTimeoutError(f"Timeout acquiring lock for issue {path}")
        self._log("issue_saved", {"issue_id": issue.id, "status": issue.status.value})

    def update(self, issue_id: str, mutator: Callable[[Issue], None]) -> Issue:
        """
        Locked read-modify-write of one issue; updated_at is refreshed.

        Raises:
            NotFoundError: Unknown issue.
            CorruptionError: The issue file does not parse.
            LockTimeoutError: The lock could not be acquired in time.
        """
        path = self.path(issue_id)
        try:
            with self._lock(path):
                issue = self.load(issue_id)
                mutator(issue)
                issue.updated_at = now_iso()
                atomic_write(path, render_issue(issue))
        except Timeout:
            self._log("issue_lock_timeout", {"issue_id": issue_id}, level="error")
            raise LockTimeoutError(f"Timeout acquiring lock for issue {path}")
        self._log("issue_updated", {"issue_id": issue_id, "status": issue.status.value})
        return issue

    def list(self) -> list[Issue]:
        """All readable issues. Corrupt files are skipped with a warning."""
        if not self.issues_dir.is_dir():
            return []

        issues = []
        for path in sorted(self.issues_dir.glob("*.md")):
            try:
                issues.append(self._load_path(path))
            except CorruptionError as e:
                logger.warning("%s (skipping)", e)
                self._log("issue_corrupted", {"path": str(path), "error": str(e)}, level="warn")
        return issues


class StatusFilter(Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    ALL = "all"

    @classmethod
    def parse(cls, value: Optional[str]) -> StatusFilter:
        if value is None:
            return cls.OPEN
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise _invalid("status filter", value, (s.value for s in cls))


@dataclass
class IssueFilter:
    """
    Composable issue predicate.

    `task` and `unassigned` are mutually exclusive.
    """
    status: StatusFilter = StatusFilter.OPEN
    task: Optional[str] = None
    unassigned: bool = False
    issue_type: Optional[IssueType] = None
    priority: Optional[IssuePriority] = None
    source: Optional[IssueSource] = None

    def __post_init__(self) -> None:
        if self.unassigned and self.task:
            raise InvalidInputError(ValidationError(
                code="CONFLICTING_FILTERS",
                message="Use --task or --unassigned, not both",
                expected="at most one of --task / --unassigned",
                got=f"task={self.task!r}, unassigned=True",
            ))

    def matches(self, issue: Issue) -> bool:
        if self.unassigned and issue.task is not None:
            return False
        if self.task is not None and issue.task != self.task:
            return False
        if self.issue_type is not None and issue.issue_type is not self.issue_type:
            return False
        if self.priority is not None and issue.priority is not self.priority:
            return False
        if self.source is not None and issue.source is not self.source:
            return False
        if self.status is StatusFilter.OPEN:
            return issue.status is IssueStatus.OPEN
        if self.status is StatusFilter.RESOLVED:
            return issue.status is IssueStatus.RESOLVED
        return True


def filter_issues(issues: Iterable[Issue], issue_filter: IssueFilter) -> list[Issue]:
    return [issue for issue in issues if issue_filter.matches(issue)]


def sort_issues(issues: Iterable[Issue]) -> list[Issue]:
    """Open before resolved, then P0..P3, then created_at, then id."""
    return sorted(
        issues,
        key=lambda i: (
            0 if i.is_open else 1,
            i.priority.weight,
            i.created_at,
            i.id,
        ),
    )


@dataclass
class IssueCounts:
    """Open issue totals per task, plus open issues with no task."""
    per_task: dict[str, int] = field(default_factory=dict)
    unassigned: int = 0

    def for_task(self, task: str) -> int:
        return self.per_task.get(task, 0)


def count_open_issues(issues: Iterable[Issue]) -> IssueCounts:
    counts: Counter[str] = Counter()
    unassigned = 0
    for issue in issues:
        if not issue.is_open:
            continue
        if issue.task:
            counts[issue.task] += 1
        else:
            unassigned += 1
    return IssueCounts(per_task=dict(counts), unassigned=unassigned)
