"""Shared fixtures for metagent tests.

Provides:
- An isolated environment (no METAGENT_* variables, fresh caches)
- A repository with an initialized .agents/code/ directory
- Config / context / orchestrator factories with fast supervisor timings
- ScriptedSupervisor: stands in for the process supervisor so queue and
  run logic can be tested without spawning agents
- Executable fake agent scripts for the tests that do spawn processes
"""

import os
import signal
import sys
import textwrap
import threading
from pathlib import Path
from typing import Optional

import pytest
from typer.testing import CliRunner

from metagent.cli import common
from metagent.config import (
    ClaimConfig,
    MetagentConfig,
    ModelConfig,
    QueueConfig,
    SupervisorConfig,
    clear_config_cache,
)
from metagent.logger import clear_logger_cache
from metagent.models import SessionState
from metagent.orchestrator import CommandContext, Orchestrator, init_repo
from metagent.stages import get_agent_kind
from metagent.supervisor import INTERRUPTED, StageOutcome, StageResult

PROJECT_ROOT = Path(__file__).resolve().parents[1]

METAGENT_ENV_VARS = (
    "METAGENT_AGENT",
    "METAGENT_MODEL",
    "METAGENT_REPO_ROOT",
    "METAGENT_SESSION",
    "METAGENT_TASK",
)


def fast_supervisor_config() -> SupervisorConfig:
    return SupervisorConfig(
        poll_interval_seconds=0.05,
        interrupt_attempts=3,
        interrupt_wait_seconds=0.2,
        terminate_wait_seconds=0.5,
        kill_wait_seconds=0.5,
        tree_poll_seconds=0.02,
    )


# =============================================================================
# ENVIRONMENT
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Strip METAGENT_* variables and reset module-level state around each test."""
    for var in METAGENT_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    old_sigint = signal.getsignal(signal.SIGINT)
    old_sigterm = signal.getsignal(signal.SIGTERM)
    clear_config_cache()
    clear_logger_cache()
    common.set_global_options(None, None, False)
    INTERRUPTED.clear()

    yield

    INTERRUPTED.clear()
    common.set_global_options(None, None, False)
    clear_config_cache()
    clear_logger_cache()
    signal.signal(signal.SIGINT, old_sigint)
    signal.signal(signal.SIGTERM, old_sigterm)


# =============================================================================
# REPOSITORY AND CONFIG
# =============================================================================


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """A git-looking repository with .agents/code/ initialized."""
    root = tmp_path / "repo"
    root.mkdir()
    (root / ".git").mkdir()
    init_repo(root, get_agent_kind("code"))
    return root


@pytest.fixture
def make_config(tmp_path: Path):
    """Factory for MetagentConfig objects pointing at a test repository."""

    def make(
        repo_root: Path,
        agent: str = "code",
        binary: Optional[str] = None,
        loop_limit: int = 0,
        ttl_seconds: int = 3600,
    ) -> MetagentConfig:
        models = ModelConfig()
        if binary:
            models = ModelConfig(claude_binary=binary, codex_binary=binary)
        return MetagentConfig(
            repo_root=str(repo_root),
            agent=agent,
            prompt_dir=str(tmp_path / "prompts"),
            claims=ClaimConfig(ttl_seconds=ttl_seconds),
            supervisor=fast_supervisor_config(),
            queue=QueueConfig(loop_limit=loop_limit),
            models=models,
        )

    return make


@pytest.fixture
def config(repo_root: Path, make_config) -> MetagentConfig:
    return make_config(repo_root)


@pytest.fixture
def interrupt_flag() -> threading.Event:
    return threading.Event()


@pytest.fixture
def context(config: MetagentConfig, interrupt_flag: threading.Event) -> CommandContext:
    return CommandContext.from_config(config, host="test-host", interrupted=interrupt_flag)


@pytest.fixture
def orchestrator(context: CommandContext) -> Orchestrator:
    return Orchestrator(context)


# =============================================================================
# SCRIPTED SUPERVISOR
# =============================================================================


class ScriptedSupervisor:
    """
    Replaces ProcessSupervisor with canned stage outcomes.

    Each run_stage() call consumes the next queued action; with nothing
    queued the stage finishes with its default next stage, the way a
    well-behaved agent would.
    """

    def __init__(self, context: CommandContext, orchestrator: Orchestrator) -> None:
        self.context = context
        self.orchestrator = orchestrator
        self.actions: list[dict] = []
        self.calls: list[tuple[Optional[str], str, object]] = []
        self.prompts: list[str] = []
        self.attached_exit_code: Optional[int] = 0

    def will_finish(self, next_stage: Optional[str] = None, task: Optional[str] = None,
                    create_task: Optional[str] = None) -> "ScriptedSupervisor":
        self.actions.append(
            {"outcome": "finish", "next": next_stage, "task": task, "create": create_task}
        )
        return self

    def will_exit(self) -> "ScriptedSupervisor":
        self.actions.append({"outcome": "exit"})
        return self

    def will_interrupt(self) -> "ScriptedSupervisor":
        self.actions.append({"outcome": "interrupt"})
        return self

    def run_stage(self, task, stage, model, build_prompt, interrupted=None) -> StageResult:
        sessions = self.context.sessions
        session = sessions.create(
            agent=self.context.agent_kind.name,
            stage=stage,
            task=task,
            repo_root=self.context.repo_root,
            host=self.context.host,
        )
        self.calls.append((task, stage, model))
        self.prompts.append(build_prompt(session))
        action = self.actions.pop(0) if self.actions else {"outcome": "finish", "next": None,
                                                         "task": None, "create": None}

        if action["outcome"] == "interrupt":
            return StageResult(StageOutcome.INTERRUPTED, session)

        if action["outcome"] == "exit":
            def fail(state: SessionState) -> None:
                state.mark_failed()

            return StageResult(StageOutcome.NO_FINISH, sessions.update(session.session_id, fail))

        if action["create"]:
            self.orchestrator.create_task(action["create"])
        self.orchestrator.finish(
            stage=stage,
            next_stage=action["next"],
            session_id=session.session_id,
            task=action["task"] or task,
        )
        return StageResult(StageOutcome.FINISHED, sessions.load(session.session_id))

    def run_attached(self, model, prompt, interrupted=None):
        self.calls.append((None, "attached", model))
        self.prompts.append(prompt)
        return self.attached_exit_code


@pytest.fixture
def make_scripted():
    """Factory installing a ScriptedSupervisor into a context."""

    def make(context: CommandContext, orchestrator: Orchestrator) -> ScriptedSupervisor:
        supervisor = ScriptedSupervisor(context, orchestrator)
        context.supervisor = supervisor
        return supervisor

    return make


@pytest.fixture
def scripted(context: CommandContext, orchestrator: Orchestrator, make_scripted) -> ScriptedSupervisor:
    return make_scripted(context, orchestrator)


# =============================================================================
# FAKE AGENT PROCESSES
# =============================================================================


@pytest.fixture
def agent_script(tmp_path: Path, monkeypatch):
    """Factory writing an executable Python script that can import metagent."""
    existing = os.environ.get("PYTHONPATH")
    pythonpath = str(PROJECT_ROOT) + (os.pathsep + existing if existing else "")
    monkeypatch.setenv("PYTHONPATH", pythonpath)

    def make(body: str, name: str = "agent") -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return path

    return make


FAKE_AGENT = """
import os
import sys
import time
from pathlib import Path

mode = os.environ.get("FAKE_AGENT_MODE", "finish")
log_dir = os.environ.get("FAKE_AGENT_LOG")
if log_dir:
    Path(log_dir, os.environ["METAGENT_SESSION"] + ".prompt").write_text(sys.argv[-1])

if mode == "exit":
    sys.exit(3)
if mode == "hang":
    time.sleep(60)
    sys.exit(0)

from metagent.config import load_config
from metagent.orchestrator import CommandContext, Orchestrator

context = CommandContext.from_config(load_config())
session = context.sessions.load(os.environ["METAGENT_SESSION"])
Orchestrator(context).finish(stage=session.stage, session_id=session.session_id)

if mode == "finish-then-hang":
    time.sleep(60)
"""


@pytest.fixture
def fake_agent(agent_script) -> Path:
    """
    An agent binary driven by FAKE_AGENT_MODE:
    finish (default), exit, hang or finish-then-hang.
    """
    return agent_script(FAKE_AGENT, name="fake-agent")


# =============================================================================
# CLI
# =============================================================================


@pytest.fixture
def runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_env(repo_root: Path, tmp_path: Path, monkeypatch) -> Path:
    """Point the CLI at the test repository and widen the console."""
    monkeypatch.setenv("METAGENT_REPO_ROOT", str(repo_root))
    config_file = repo_root / ".agents" / "config.yaml"
    config_file.write_text(f"prompt_dir: {tmp_path / 'prompts'}\n")
    monkeypatch.setattr(common.get_console(), "width", 200)
    return repo_root
