"""Common utilities and global state for the CLI.

Contains global option handling, context construction and error reporting.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Optional

import typer
from rich.console import Console

from metagent.config import ENV_MODEL, ConfigError, load_config
from metagent.errors import MetagentError
from metagent.logger import get_logger
from metagent.models import Model, ModelChoice
from metagent.orchestrator import CommandContext, Orchestrator
from metagent.utils.fs import FileSystemError

# ============================================================================
# Global State
# ============================================================================

# Global agent kind override (set via --agent)
_agent: Optional[str] = None

# Global model flags (set via --model / --force-model)
_model_flag: Optional[str] = None
_force_model: bool = False

# Console singleton
_console: Optional[Console] = None


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_global_options(
    agent: Optional[str],
    model: Optional[str],
    force_model: bool,
) -> None:
    """Record the root-level options for the command about to run."""
    global _agent, _model_flag, _force_model
    _agent = agent
    _model_flag = model
    _force_model = force_model


def get_agent_option() -> Optional[str]:
    return _agent


def resolve_model_choice(flag: Optional[str] = None, force_model: bool = False) -> ModelChoice:
    """
    Model choice from --model, then METAGENT_MODEL, then the default.

    Either source makes the choice explicit.
    """
    if flag:
        return ModelChoice(model=Model.parse(flag), explicit=True, force_model=force_model)
    env_model = os.environ.get(ENV_MODEL)
    if env_model:
        return ModelChoice(model=Model.parse(env_model), explicit=True, force_model=force_model)
    return ModelChoice(force_model=force_model)


# ============================================================================
# Context Helpers
# ============================================================================


def build_context(require_agent_root: bool = True) -> CommandContext:
    """Load config for the current repository and wire a CommandContext."""
    config = load_config(agent=_agent)
    choice = resolve_model_choice(_model_flag, _force_model)
    if not _model_flag and not os.environ.get(ENV_MODEL):
        choice.model = Model.parse(config.models.default)
    logger = get_logger("metagent", config)
    return CommandContext.from_config(
        config,
        model_choice=choice,
        logger=logger,
        require_agent_root=require_agent_root,
    )


def get_orchestrator() -> Orchestrator:
    console = get_console()
    return Orchestrator(build_context(), on_message=console.print)


# ============================================================================
# Error Reporting
# ============================================================================


def print_error(message: str, hint: Optional[str] = None) -> None:
    console = get_console()
    console.print(f"[red]Error:[/red] {message}", highlight=False)
    if hint:
        console.print(f"[dim]Hint: {hint}[/dim]")


@contextmanager
def command_errors() -> Iterator[None]:
    """Report metagent/config/filesystem errors and exit with status 1."""
    try:
        yield
    except MetagentError as e:
        print_error(e.message, e.hint)
        raise typer.Exit(1)
    except (ConfigError, FileSystemError) as e:
        print_error(str(e))
        raise typer.Exit(1)
