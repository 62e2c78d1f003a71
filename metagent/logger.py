"""
Structured JSONL logging for metagent.

This module provides:
- JSONL event logging for debugging and audit trails
- Log files organized by scope and date under <agent_root>/logs
- Log levels (debug, info, warn, error)
- Context manager for session-scoped logging
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from metagent.config import MetagentConfig, get_config


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventLogger:
    """
    JSONL event logger for metagent.

    Writes structured log entries to .agents/<agent>/logs/<scope>-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - scope: Logger scope (usually "metagent" or a task name)
    - data: Additional event data (dict)
    """

    def __init__(self, scope: str, config: Optional[MetagentConfig] = None) -> None:
        """
        Initialize logger for a scope.

        Args:
            scope: Name used to organize log files.
            config: Optional config to use. If not provided, loads the cached one.
        """
        self.scope = scope
        self._config = config
        self._current_session_id: Optional[str] = None

    @property
    def config(self) -> MetagentConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config()
        return self._config

    def _log_path(self, date: Optional[str] = None) -> Path:
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"{self.scope}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Append a log entry to today's JSONL file."""
        log_path = self._log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "task_saved", "claim_acquired").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "scope": self.scope,
            "data": data or {},
        }

        if self._current_session_id:
            entry["session_id"] = self._current_session_id

        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[EventLogger]:
        """
        Context manager for session-scoped logging.

        All logs within this context will include the session_id.

        Example:
            with logger.session_context("1700000000-123-0") as log:
                log.info("stage_spawned", {"stage": "build"})
        """
        old_session_id = self._current_session_id
        self._current_session_id = session_id
        try:
            yield self
        finally:
            self._current_session_id = old_session_id


# Module-level logger cache
_logger_cache: dict[str, EventLogger] = {}


def get_logger(scope: str, config: Optional[MetagentConfig] = None) -> EventLogger:
    """
    Get or create a logger for a scope.

    Loggers are cached per (agent root, scope) so two configs pointing at
    different repositories never share a log file.
    """
    root = str(config.agent_path) if config is not None else ""
    key = f"{root}:{scope}"
    if key not in _logger_cache:
        _logger_cache[key] = EventLogger(scope, config)
    return _logger_cache[key]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
