"""
Process supervision for agent stages.

This module handles:
- Spawning the external agent for one stage with the session environment
- Polling for the finish callback, process exit and operator interrupts
- Tearing down the agent's whole process tree with escalating signals
- Picking the model that runs a stage
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, ContextManager, Optional

from metagent.config import (
    ENV_AGENT,
    ENV_REPO_ROOT,
    ENV_SESSION,
    ENV_TASK,
    SupervisorConfig,
)
from metagent.errors import ExternalProcessError
from metagent.models import Model, ModelChoice, SessionState, SessionStatus, TaskStatus
from metagent.utils.process import descendant_pids, pid_alive

if TYPE_CHECKING:
    from metagent.config import MetagentConfig
    from metagent.logger import EventLogger
    from metagent.stages import AgentKind
    from metagent.state_store import SessionStore


# ============================================================================
# Interrupt flag
# ============================================================================

INTERRUPTED = threading.Event()


def _on_signal(signum, frame) -> None:
    INTERRUPTED.set()


def install_signal_handlers() -> None:
    """Route SIGINT and SIGTERM to the process-wide interrupt flag."""
    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)


def clear_interrupt() -> None:
    INTERRUPTED.clear()


# ============================================================================
# Results
# ============================================================================


class StageOutcome(Enum):
    FINISHED = "finished"
    INTERRUPTED = "interrupted"
    NO_FINISH = "no_finish"


class ShutdownPhase(Enum):
    """Escalation steps of a process-tree shutdown, in order."""
    INTERRUPT = "interrupt"
    TERMINATE = "terminate"
    KILL = "kill"
    CONFIRMED_DEAD = "confirmed_dead"


@dataclass
class ShutdownReport:
    """What a shutdown had to do to bring the tree down."""
    phase_reached: ShutdownPhase = ShutdownPhase.INTERRUPT
    signals_sent: list[str] = field(default_factory=list)
    survivors: list[int] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.survivors


@dataclass
class StageResult:
    outcome: StageOutcome
    session: SessionState
    shutdown: Optional[ShutdownReport] = None


# ============================================================================
# Process tree termination
# ============================================================================


class ProcessTreeTerminator:
    """
    Stops an agent process and every process it spawned.

    State machine:
        INTERRUPT (up to interrupt_attempts rounds of SIGINT)
          -> TERMINATE (SIGTERM)
          -> KILL (SIGKILL, then Popen.kill() + wait())
          -> CONFIRMED_DEAD

    Each phase ends early in CONFIRMED_DEAD once the root has exited and
    every descendant seen so far is gone. Descendants are rediscovered
    before each signal round so grandchildren spawned mid-shutdown are
    still caught.
    """

    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        logger: Optional[EventLogger] = None,
    ) -> None:
        self.config = config or SupervisorConfig()
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "supervisor"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _discover(self, popen: subprocess.Popen, known: set[int]) -> None:
        known.update(descendant_pids([popen.pid, *known]))
        known.discard(popen.pid)

    def _signal_tree(
        self,
        popen: subprocess.Popen,
        sig: signal.Signals,
        known: set[int],
        report: ShutdownReport,
    ) -> None:
        self._discover(popen, known)
        for pid in sorted((p for p in known if pid_alive(p)), reverse=True):
            try:
                os.kill(pid, sig)
            except (ProcessLookupError, PermissionError):
                continue
        if popen.poll() is None:
            try:
                popen.send_signal(sig)
            except ProcessLookupError:
                pass
        report.signals_sent.append(sig.name)

    def _wait_for_exit(self, popen: subprocess.Popen, known: set[int], timeout: float) -> bool:
        """Wait up to `timeout` for the root and all known descendants to go away."""
        deadline = time.monotonic() + timeout
        while True:
            root_exited = popen.poll() is not None
            known.difference_update([p for p in known if not pid_alive(p)])
            if root_exited and not known:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.config.tree_poll_seconds)

    def shutdown(self, popen: subprocess.Popen) -> ShutdownReport:
        """
        Bring down `popen` and its descendants.

        Never returns while the root process is still alive.
        """
        report = ShutdownReport()
        known: set[int] = set()
        phase = ShutdownPhase.INTERRUPT
        interrupt_rounds = 0

        while phase is not ShutdownPhase.CONFIRMED_DEAD:
            report.phase_reached = phase

            if phase is ShutdownPhase.INTERRUPT:
                if interrupt_rounds >= self.config.interrupt_attempts:
                    phase = ShutdownPhase.TERMINATE
                    continue
                interrupt_rounds += 1
                self._signal_tree(popen, signal.SIGINT, known, report)
                if self._wait_for_exit(popen, known, self.config.interrupt_wait_seconds):
                    phase = ShutdownPhase.CONFIRMED_DEAD

            elif phase is ShutdownPhase.TERMINATE:
                self._signal_tree(popen, signal.SIGTERM, known, report)
                if self._wait_for_exit(popen, known, self.config.terminate_wait_seconds):
                    phase = ShutdownPhase.CONFIRMED_DEAD
                else:
                    phase = ShutdownPhase.KILL

            else:
                self._signal_tree(popen, signal.SIGKILL, known, report)
                self._wait_for_exit(popen, known, self.config.kill_wait_seconds)
                if popen.poll() is None:
                    popen.kill()
                popen.wait()
                phase = ShutdownPhase.CONFIRMED_DEAD

        report.survivors = sorted(p for p in known if pid_alive(p))
        if report.phase_reached is ShutdownPhase.KILL:
            self._log("process_tree_killed", {
                "pid": popen.pid,
                "signals": report.signals_sent,
                "survivors": report.survivors,
            }, level="warn")
        else:
            self._log("process_tree_stopped", {
                "pid": popen.pid,
                "phase": report.phase_reached.value,
                "signals": report.signals_sent,
            })
        return report


# ============================================================================
# Model selection
# ============================================================================


def resolve_model(
    choice: ModelChoice,
    agent_kind: AgentKind,
    stage: str,
    effective_status: Optional[TaskStatus] = None,
) -> Model:
    """
    Pick the model for a stage.

    Issues mode runs on codex unless the operator both chose a model
    explicitly and passed --force-model. Otherwise an explicit choice wins,
    then the stage default, then the chosen (default) model.
    """
    if effective_status is TaskStatus.ISSUES and not (choice.explicit and choice.force_model):
        return Model.CODEX
    if choice.explicit:
        return choice.model
    return agent_kind.model_for_stage(stage) or choice.model


# ============================================================================
# Supervisor
# ============================================================================


class ProcessSupervisor:
    """Runs one stage of the external agent and reports how it ended."""

    def __init__(
        self,
        config: MetagentConfig,
        agent_kind: AgentKind,
        session_store: SessionStore,
        host: str,
        logger: Optional[EventLogger] = None,
        terminator: Optional[ProcessTreeTerminator] = None,
    ) -> None:
        self.config = config
        self.agent_kind = agent_kind
        self.sessions = session_store
        self.host = host
        self._logger = logger
        self.terminator = terminator or ProcessTreeTerminator(config.supervisor, logger)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "supervisor"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def build_env(self, session: Optional[SessionState] = None) -> dict[str, str]:
        """Environment for the agent; without a session no finish callback is possible."""
        env = dict(os.environ)
        env[ENV_AGENT] = self.agent_kind.name
        env[ENV_REPO_ROOT] = self.config.repo_root
        if session is not None:
            env[ENV_SESSION] = session.session_id
        else:
            env.pop(ENV_SESSION, None)
        if session is not None and session.task:
            env[ENV_TASK] = session.task
        else:
            env.pop(ENV_TASK, None)
        return env

    def _mark_failed(self, session_id: str) -> SessionState:
        def fail(state: SessionState) -> None:
            if not state.is_terminal:
                state.mark_failed()

        return self.sessions.update(session_id, fail)

    def run_stage(
        self,
        task: Optional[str],
        stage: str,
        model: Model,
        build_prompt: Callable[[SessionState], str],
        interrupted: threading.Event = INTERRUPTED,
    ) -> StageResult:
        """
        Run `stage` for `task` to completion.

        The session record is created before the agent starts so the
        agent can call `metagent finish` against it.

        Args:
            task: Task name, or None for the interview stage.
            stage: Stage to run.
            model: External agent to spawn.
            build_prompt: Renders the prompt for the new session.
            interrupted: Flag checked on every poll.

        Returns:
            StageResult with FINISHED, INTERRUPTED or NO_FINISH.

        Raises:
            ExternalProcessError: If the agent could not be spawned.
        """
        session = self.sessions.create(
            agent=self.agent_kind.name,
            stage=stage,
            task=task,
            repo_root=self.config.repo_root,
            host=self.host,
        )
        with self._session_scope(session.session_id):
            return self._supervise(session, model, build_prompt, interrupted)

    def _session_scope(self, session_id: str) -> ContextManager:
        """Tag every event logged while the stage runs with its session id."""
        if self._logger:
            return self._logger.session_context(session_id)
        return nullcontext()

    def _supervise(
        self,
        session: SessionState,
        model: Model,
        build_prompt: Callable[[SessionState], str],
        interrupted: threading.Event,
    ) -> StageResult:
        session_id, task, stage = session.session_id, session.task, session.stage
        binary, args = model.command(self.config.models)

        try:
            prompt = build_prompt(session)
            popen = subprocess.Popen(
                [binary, *args, prompt],
                cwd=self.config.repo_root,
                env=self.build_env(session),
            )
        except (OSError, ValueError) as e:
            self._mark_failed(session_id)
            self._log("stage_spawn_failed", {
                "session_id": session_id, "stage": stage, "task": task, "error": str(e),
            }, level="error")
            raise ExternalProcessError(
                f"Failed to start {binary}: {e}", task=task, stage=stage
            ) from e

        self._log("stage_spawned", {
            "session_id": session_id,
            "stage": stage,
            "task": task,
            "model": model.value,
            "pid": popen.pid,
        })

        try:
            while True:
                if interrupted.is_set():
                    report = self.terminator.shutdown(popen)
                    self._log("stage_interrupted", {"session_id": session_id, "stage": stage})
                    return StageResult(StageOutcome.INTERRUPTED, self.sessions.load(session_id), report)

                current = self.sessions.load(session_id)
                if current.status is SessionStatus.FINISHED:
                    report = self.terminator.shutdown(popen)
                    self._log("stage_finished", {
                        "session_id": session_id, "stage": stage, "next_stage": current.next_stage,
                    })
                    return StageResult(StageOutcome.FINISHED, current, report)

                if popen.poll() is not None:
                    break

                interrupted.wait(self.config.supervisor.poll_interval_seconds)
        except BaseException:
            if popen.poll() is None:
                self.terminator.shutdown(popen)
            raise

        # The agent may have called finish just before exiting
        final = self._mark_failed(session_id)
        if final.status is SessionStatus.FINISHED:
            self._log("stage_finished", {
                "session_id": session_id, "stage": stage, "next_stage": final.next_stage,
            })
            return StageResult(StageOutcome.FINISHED, final)

        self._log("session_failed", {
            "session_id": session_id,
            "stage": stage,
            "task": task,
            "exit_code": popen.returncode,
        }, level="warn")
        return StageResult(StageOutcome.NO_FINISH, final)

    def run_attached(
        self,
        model: Model,
        prompt: str,
        interrupted: threading.Event = INTERRUPTED,
    ) -> Optional[int]:
        """
        Run the agent once with no session and wait for it to exit.

        Used for one-shot commands such as `metagent debug` that never call
        finish. The agent inherits the terminal.

        Returns:
            The agent's exit code, or None if it was interrupted.

        Raises:
            ExternalProcessError: If the agent could not be spawned.
        """
        binary, args = model.command(self.config.models)
        try:
            popen = subprocess.Popen(
                [binary, *args, prompt],
                cwd=self.config.repo_root,
                env=self.build_env(),
            )
        except (OSError, ValueError) as e:
            self._log("attached_spawn_failed", {"error": str(e)}, level="error")
            raise ExternalProcessError(f"Failed to start {binary}: {e}") from e

        self._log("attached_spawned", {"model": model.value, "pid": popen.pid})
        try:
            while popen.poll() is None:
                if interrupted.is_set():
                    self.terminator.shutdown(popen)
                    self._log("attached_interrupted", {"pid": popen.pid})
                    return None
                interrupted.wait(self.config.supervisor.poll_interval_seconds)
        except BaseException:
            if popen.poll() is None:
                self.terminator.shutdown(popen)
            raise

        self._log("attached_exited", {"pid": popen.pid, "exit_code": popen.returncode})
        return popen.returncode
