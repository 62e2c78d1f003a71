"""
Locked, atomic persistence for JSON records.

This module handles:
- Typed load of a record file (missing -> NotFoundError, malformed -> CorruptionError)
- Atomic save through a `<file>.tmp` sibling and rename
- Read-modify-write under an exclusive `<file>.lock` FileLock

update() is the only way persisted task/session records are mutated.
Corrupt records are never repaired or skipped here.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, Protocol, TypeVar

from filelock import FileLock, Timeout

from metagent.errors import CorruptionError, LockTimeoutError, NotFoundError
from metagent.utils.fs import FileSystemError, atomic_write, read_file

if TYPE_CHECKING:
    from metagent.logger import EventLogger


class Record(Protocol):
    def to_dict(self) -> dict[str, Any]: ...

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any: ...


R = TypeVar("R", bound=Record)


def lock_path_for(path: Path) -> Path:
    return path.with_name(f"{path.name}.lock")


class RecordStore(Generic[R]):
    """
    Persistence primitive for one record type.

    Args:
        record_type: Class with to_dict()/from_dict().
        kind: Label used in error messages ("task", "session").
        lock_timeout: Seconds to wait for the mutation lock; -1 blocks.
        logger: Optional logger for recording operations.
    """

    def __init__(
        self,
        record_type: type[R],
        kind: str,
        lock_timeout: float = -1,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.record_type = record_type
        self.kind = kind
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
            log_data = {"component": "record_store", "kind": self.kind}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def load(self, path: Path) -> R:
        """
        Load a record from disk.

        Raises:
            NotFoundError: If the file does not exist.
            CorruptionError: If the file is not a valid record.
        """
        if not path.exists():
            raise NotFoundError(f"{self.kind.capitalize()} file not found: {path}")

        try:
            data = json.loads(read_file(path))
            return self.record_type.from_dict(data)
        except FileSystemError as e:
            raise CorruptionError(f"Failed to read {self.kind} {path}: {e}", path=str(path))
        except json.JSONDecodeError as e:
            self._log(f"{self.kind}_corrupted", {"path": str(path), "error": str(e)}, level="error")
            raise CorruptionError(f"Corrupted {self.kind} file {path}: {e}", path=str(path))
        except (KeyError, ValueError, TypeError) as e:
            self._log(f"{self.kind}_invalid", {"path": str(path), "error": str(e)}, level="error")
            raise CorruptionError(f"Invalid {self.kind} file {path}: {e}", path=str(path))

    def _write(self, path: Path, record: R) -> None:
        atomic_write(path, json.dumps(record.to_dict(), indent=2) + "\n")

    def _lock(self, path: Path) -> FileLock:
        path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(lock_path_for(path)), timeout=self.lock_timeout)

    def save(self, path: Path, record: R) -> None:
        """Write a record atomically while holding its lock."""
        try:
            with self._lock(path):
                self._write(path, record)
        except Timeout:
            self._log(f"{self.kind}_lock_timeout", {"path": str(path)}, level="error")
            raise LockTimeoutError(f"Timeout acquiring lock for {self.kind} {path}")
        self._log(f"{self.kind}_saved", {"path": str(path)}, level="debug")

    def update(self, path: Path, mutator: Callable[[R], None]) -> R:
        """
        Locked read-modify-write.

        Loads the current record, applies `mutator` in place, and writes the
        result atomically. If the mutator raises, nothing is written and the
        exception propagates.

        Returns:
            The record as written.

        Raises:
            NotFoundError, CorruptionError: From load().
            LockTimeoutError: If the lock cannot be acquired in time.
        """
        if not path.exists():
            raise NotFoundError(f"{self.kind.capitalize()} file not found: {path}")

        try:
            with self._lock(path):
                record = self.load(path)
                mutator(record)
                self._write(path, record)
        except Timeout:
            self._log(f"{self.kind}_lock_timeout", {"path": str(path)}, level="error")
            raise LockTimeoutError(f"Timeout acquiring lock for {self.kind} {path}")
        self._log(f"{self.kind}_updated", {"path": str(path)}, level="debug")
        return record
