"""
Error taxonomy for metagent.

Every error raised by the core derives from MetagentError so the CLI can
report it uniformly and exit non-zero. Recoverable conditions (corrupt
issue files, stale claims) are handled locally and never raised.
"""

from __future__ import annotations

from typing import Optional


class MetagentError(Exception):
    """Base exception for all metagent errors."""

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        return self.message


class NotFoundError(MetagentError):
    """A referenced task, session, issue or prompt does not exist."""
    pass


class ConflictError(MetagentError):
    """The resource is owned by someone else (e.g. task already claimed)."""
    pass


class InvalidStateError(MetagentError):
    """The operation is not valid for the current stage or status."""
    pass


class CorruptionError(MetagentError):
    """A persisted record could not be parsed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class LockTimeoutError(MetagentError):
    """The mutation lock for a record could not be acquired."""
    pass


class ExternalProcessError(MetagentError):
    """The external agent failed to start or exited without finishing."""

    def __init__(
        self,
        message: str,
        task: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.task = task
        self.stage = stage
