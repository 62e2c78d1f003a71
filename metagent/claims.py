"""
Execution leases for metagent tasks.

A claim proves that one orchestrator process owns the right to run a
task. The file backend creates claims/<task>.lock exclusively; an existing
claim is honored unless it is stale:

    stale = elapsed >= ttl_seconds
            OR (claim.host == our host AND claim.pid is not alive)

A stale claim is removed and creation is retried exactly once. Staleness by
TTL applies even when the owner is alive on another host; there is no
renewal.
"""

from __future__ import annotations

import json
import os
import weakref
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from metagent.models import ClaimState, parse_iso
from metagent.utils.fs import ensure_dir, remove_file
from metagent.utils.process import pid_alive

if TYPE_CHECKING:
    from metagent.logger import EventLogger


def is_claim_stale(claim: ClaimState, host: str, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    try:
        elapsed = (now - parse_iso(claim.started_at)).total_seconds()
    except ValueError:
        elapsed = None
    if elapsed is not None and elapsed >= claim.ttl_seconds:
        return True
    if claim.host == host:
        return not pid_alive(claim.pid)
    return False


def _release_file(path: str) -> None:
    remove_file(path)


class ClaimGuard:
    """
    Handle for an acquired claim.

    The claim file is deleted by release(), on leaving a `with` block, or
    when the guard is garbage collected / the interpreter exits, whichever
    happens first. Release is idempotent.
    """

    def __init__(self, path: Path, claim: ClaimState) -> None:
        self.path = path
        self.claim = claim
        self._finalizer = weakref.finalize(self, _release_file, str(path))

    @property
    def released(self) -> bool:
        return not self._finalizer.alive

    def release(self) -> None:
        self._finalizer()

    def __enter__(self) -> ClaimGuard:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class Lease(Protocol):
    """Mutual exclusion over task execution."""

    def acquire(self, key: str, ttl_seconds: int) -> Optional[ClaimGuard]: ...

    def is_active(self, key: str) -> bool: ...


class FileLeaseBackend:
    """
    Lease implementation backed by exclusive file creation.

    Works across processes on one host and across hosts sharing the
    repository filesystem.
    """

    def __init__(
        self,
        agent_root: Path,
        host: str,
        agent: str = "",
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.agent_root = Path(agent_root)
        self.host = host
        self.agent = agent or self.agent_root.name
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "claims"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    @property
    def claims_dir(self) -> Path:
        return self.agent_root / "claims"

    def path(self, task: str) -> Path:
        return self.claims_dir / f"{task}.lock"

    def _try_create(self, task: str, ttl_seconds: int) -> Optional[ClaimGuard]:
        path = self.path(task)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return None

        claim = ClaimState.for_current_process(task, self.agent, self.host, ttl_seconds)
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(claim.to_dict(), indent=2))
        return ClaimGuard(path, claim)

    def read(self, task: str) -> Optional[ClaimState]:
        """Current claim for `task`, or None if absent or unreadable."""
        try:
            data = json.loads(self.path(task).read_text())
            return ClaimState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def acquire(self, task: str, ttl_seconds: int) -> Optional[ClaimGuard]:
        """
        Try to claim `task`.

        Returns:
            A ClaimGuard on success, or None if a live claim exists.
        """
        ensure_dir(self.claims_dir)

        guard = self._try_create(task, ttl_seconds)
        if guard is not None:
            self._log("claim_acquired", {"task": task, "pid": guard.claim.pid})
            return guard

        existing = self.read(task)
        if existing is None or not is_claim_stale(existing, self.host):
            return None

        remove_file(self.path(task))
        guard = self._try_create(task, ttl_seconds)
        if guard is not None:
            self._log("stale_claim_reclaimed", {
                "task": task,
                "previous_pid": existing.pid,
                "previous_host": existing.host,
                "previous_started_at": existing.started_at,
            })
        return guard

    claim = acquire

    def is_active(self, task: str) -> bool:
        """True if a non-stale claim exists for `task`."""
        if not self.path(task).exists():
            return False
        existing = self.read(task)
        if existing is None:
            return True
        return not is_claim_stale(existing, self.host)
