"""Centralized input validation for user-supplied identifiers.

Provides validators for:
- Task names (format, length, path traversal)
- Loop limits and queue positions
- Choice values (stages, statuses, filters)
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from metagent.errors import MetagentError

MAX_TASK_NAME_LENGTH = 100


@dataclass
class ValidationError:
    """Structured validation error for consistent CLI output."""
    code: str           # e.g., "EMPTY_NAME", "PATH_TRAVERSAL", "INVALID_CHARS"
    message: str        # Human-readable description
    expected: str       # What format was expected
    got: str            # What was actually received
    hint: Optional[str] = None  # How to fix


class InvalidInputError(MetagentError):
    """Raised when user input fails validation."""

    def __init__(self, error: ValidationError) -> None:
        super().__init__(error.message, hint=error.hint)
        self.error = error


class InputValidator:
    """Validates user-facing inputs."""

    TASK_NAME_PATTERN = re.compile(r'^[a-z0-9-]+$')

    @classmethod
    def validate_task_name(cls, value: str) -> Union[str, ValidationError]:
        """Validate a task name.

        Rules:
        - Non-empty
        - At most 100 characters
        - No leading dot and no ".."
        - Only lowercase letters, digits and hyphens

        Args:
            value: The task name to validate

        Returns:
            The validated name if valid, or ValidationError if invalid
        """
        if not value or value.strip() == "":
            return ValidationError(
                code="EMPTY_NAME",
                message="Task name cannot be empty",
                expected="non-empty lowercase alphanumeric string with hyphens",
                got=repr(value),
                hint="Use a name like 'my-task' or 'auth-v2'",
            )

        if len(value) > MAX_TASK_NAME_LENGTH:
            return ValidationError(
                code="NAME_TOO_LONG",
                message=f"Task name too long ({len(value)} chars)",
                expected=f"maximum {MAX_TASK_NAME_LENGTH} characters",
                got=f"{len(value)} characters",
                hint="Use a shorter, descriptive name",
            )

        if ".." in value or value.startswith("."):
            return ValidationError(
                code="PATH_TRAVERSAL",
                message="Task name cannot contain '..' or start with '.'",
                expected="a plain directory name",
                got=repr(value),
            )

        if not cls.TASK_NAME_PATTERN.match(value):
            return ValidationError(
                code="INVALID_CHARS",
                message=f"Invalid task name '{value}'",
                expected="lowercase letters, digits and hyphens only",
                got=repr(value),
                hint=f"Try '{re.sub(r'[^a-z0-9-]+', '-', value.lower()).strip('-') or 'my-task'}'",
            )

        return value

    @classmethod
    def validate_positive_int(cls, value: int, name: str) -> Union[int, ValidationError]:
        """Validate that an integer is 1 or greater."""
        if value < 1:
            return ValidationError(
                code="NOT_POSITIVE",
                message=f"{name} must be 1 or greater",
                expected="integer >= 1",
                got=str(value),
            )
        return value

    @classmethod
    def validate_choice(
        cls, value: str, choices: Iterable[str], name: str
    ) -> Union[str, ValidationError]:
        """Validate that a value is one of an allowed set."""
        allowed = list(choices)
        if value not in allowed:
            return ValidationError(
                code="INVALID_CHOICE",
                message=f"Unknown {name}: {value}",
                expected=", ".join(allowed),
                got=repr(value),
            )
        return value


def _unwrap(result):
    if isinstance(result, ValidationError):
        raise InvalidInputError(result)
    return result


def validate_task_name(name: str) -> str:
    """Return `name` if it is a valid task name, otherwise raise InvalidInputError."""
    return _unwrap(InputValidator.validate_task_name(name))


def require_positive(value: int, name: str) -> int:
    """Return `value` if >= 1, otherwise raise InvalidInputError."""
    return _unwrap(InputValidator.validate_positive_int(value, name))


def require_choice(value: str, choices: Iterable[str], name: str) -> str:
    """Return `value` if it is in `choices`, otherwise raise InvalidInputError."""
    return _unwrap(InputValidator.validate_choice(value, choices, name))
