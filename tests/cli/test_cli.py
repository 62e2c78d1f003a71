"""Integration tests for the metagent CLI.

Commands run through Typer's CliRunner against a temporary repository
(METAGENT_REPO_ROOT points at it; see the cli_env fixture).
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from metagent import __version__
from metagent.cli import app
from metagent.state_store import SessionStore, TaskStore


def _invoke(runner, *args, input=None):
    return runner.invoke(app, list(args), input=input)


def _created_issue_id(output: str) -> str:
    line = next(l for l in output.splitlines() if l.startswith("Created issue "))
    return line.split()[-1]


@pytest.fixture
def tasks(cli_env: Path) -> TaskStore:
    return TaskStore(cli_env / ".agents" / "code")


# =============================================================================
# Root options
# =============================================================================


class TestRoot:
    def test_version(self, runner):
        result = _invoke(runner, "--version")

        assert result.exit_code == 0
        assert f"metagent version {__version__}" in result.output

    def test_no_command_shows_help(self, runner, cli_env):
        result = _invoke(runner)

        assert result.exit_code == 0
        assert "Usage" in result.output
        assert "run-queue" in result.output

    def test_errors_exit_with_status_1(self, runner, cli_env):
        result = _invoke(runner, "task", "Bad_Name")

        assert result.exit_code == 1
        assert "Error:" in result.output


# =============================================================================
# init
# =============================================================================


class TestInit:
    def test_creates_agent_directory(self, runner, tmp_path):
        target = tmp_path / "project"
        target.mkdir()

        result = _invoke(runner, "init", str(target))

        assert result.exit_code == 0
        assert (target / ".agents" / "code" / "tasks").is_dir()
        assert (target / ".agents" / "code" / "issues").is_dir()
        assert "Warning: Target is not a git repository." in result.output
        assert "Initialized code agent" in result.output

    def test_writer_has_no_issue_directory(self, runner, tmp_path):
        target = tmp_path / "book"
        target.mkdir()
        (target / ".git").mkdir()

        result = _invoke(runner, "--agent", "writer", "init", str(target))

        assert result.exit_code == 0
        assert (target / ".agents" / "writer" / "tasks").is_dir()
        assert not (target / ".agents" / "writer" / "issues").exists()
        assert "Warning" not in result.output

    def test_second_init_is_harmless(self, runner, cli_env):
        result = _invoke(runner, "init", str(cli_env))

        assert result.exit_code == 0
        assert "already exists" in result.output

    def test_missing_directory(self, runner, tmp_path):
        result = _invoke(runner, "init", str(tmp_path / "nope"))

        assert result.exit_code == 1
        assert "Directory not found" in result.output


# =============================================================================
# Task management
# =============================================================================


class TestTaskCommands:
    def test_create_then_show(self, runner, cli_env):
        created = _invoke(runner, "task", "auth", "-d", "Login flow")

        assert created.exit_code == 0
        assert "Created task: auth" in created.output
        assert "Stage: spec" in created.output
        assert "Description: Login flow" in created.output
        assert (cli_env / ".agents" / "code" / "tasks" / "auth" / "plan.md").exists()

        shown = _invoke(runner, "task", "auth")

        assert shown.exit_code == 0
        assert "Task 'auth' already exists" in shown.output
        assert "History: (none yet)" in shown.output

    def test_create_held(self, runner, tasks):
        result = _invoke(runner, "task", "later", "--hold")

        assert "Status: held (backlog)" in result.output
        assert tasks.load("later").held

    def test_hold_and_activate(self, runner, tasks):
        _invoke(runner, "task", "auth")

        held = _invoke(runner, "hold", "auth")
        listing = _invoke(runner, "queue")

        assert held.exit_code == 0
        assert "Held 'auth'" in held.output
        assert "Backlog:" in listing.output
        assert "auth (stage: Spec)" in listing.output

        activated = _invoke(runner, "activate", "auth")

        assert "Activated 'auth'" in activated.output
        assert not tasks.load("auth").held

    def test_hold_unknown_task(self, runner, cli_env):
        result = _invoke(runner, "hold", "ghost")

        assert result.exit_code == 1
        assert "Task 'ghost' not found" in result.output

    def test_set_stage(self, runner, tasks):
        _invoke(runner, "task", "auth")

        result = _invoke(runner, "set-stage", "auth", "build")
        failed = _invoke(runner, "set-stage", "auth", "review", "--status", "failed")

        assert "Set 'auth' to stage 'build' (status: pending)" in result.output
        assert "Set 'auth' to stage 'review' (status: failed)" in failed.output
        assert tasks.load("auth").stage == "review"

    def test_set_stage_rejects_unknown_stage(self, runner, cli_env):
        _invoke(runner, "task", "auth")

        result = _invoke(runner, "set-stage", "auth", "deploy")

        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_delete(self, runner, cli_env):
        _invoke(runner, "task", "auth")

        removed = _invoke(runner, "delete", "auth")
        missing = _invoke(runner, "delete", "auth")

        assert "Removed 'auth'" in removed.output
        assert not (cli_env / ".agents" / "code" / "tasks" / "auth").exists()
        assert "Task 'auth' not found" in missing.output
        assert missing.exit_code == 0

    def test_delete_with_open_issues_needs_force(self, runner, cli_env):
        _invoke(runner, "task", "auth")
        _invoke(runner, "issue", "add", "--title", "Crash", "--task", "auth")

        refused = _invoke(runner, "delete", "auth")
        forced = _invoke(runner, "delete", "auth", "--force")
        issues = _invoke(runner, "issues", "--unassigned")

        assert refused.exit_code == 1
        assert "--force" in refused.output
        assert "Removed 'auth'" in forced.output
        assert "unassigned: Crash" in issues.output

    def test_plan(self, runner, cli_env):
        _invoke(runner, "task", "auth")

        result = _invoke(runner, "plan", "auth")

        assert result.exit_code == 0
        assert "Other checklist lines:" in result.output
        assert "(tasks will be added during planning phase)" in result.output
        assert "Summary: 1 total (1 open, 0 done)" in result.output


# =============================================================================
# Queue
# =============================================================================


class TestQueueCommands:
    def test_empty_queue(self, runner, cli_env):
        result = _invoke(runner, "queue")

        assert result.exit_code == 0
        assert "No tasks" in result.output

    def test_listing_groups_by_stage(self, runner, cli_env):
        _invoke(runner, "task", "auth")
        _invoke(runner, "task", "billing")
        _invoke(runner, "set-stage", "billing", "build")

        result = _invoke(runner, "q")

        assert "Tasks:" in result.output
        assert "Spec:" in result.output
        assert "Build:" in result.output
        assert result.output.index("auth") < result.output.index("Build:")

    def test_queue_existing_directory(self, runner, cli_env, tasks):
        (cli_env / ".agents" / "code" / "tasks" / "legacy").mkdir()

        result = _invoke(runner, "queue", "legacy")

        assert "Queued 'legacy' (stage: spec)" in result.output
        assert tasks.exists("legacy")

    def test_queue_missing_directory(self, runner, cli_env):
        result = _invoke(runner, "queue", "ghost")

        assert result.exit_code == 1
        assert "metagent task ghost" in result.output

    def test_reorder(self, runner, cli_env):
        for name in ("auth", "billing"):
            _invoke(runner, "task", name)
            _invoke(runner, "set-stage", name, "build")

        result = _invoke(runner, "reorder", "billing", "1")

        assert result.exit_code == 0
        assert "Reordered 'billing' to position 1 in build queue." in result.output
        listing = result.output.split("Build:", 1)[1]
        assert listing.index("billing") < listing.index("auth")

    def test_reorder_outside_build(self, runner, cli_env):
        _invoke(runner, "task", "auth")

        result = _invoke(runner, "reorder", "auth", "1")

        assert result.exit_code == 1
        assert "only supported for build stage tasks" in result.output


# =============================================================================
# Issues
# =============================================================================


class TestIssueCommands:
    def test_add_list_resolve(self, runner, cli_env, tasks):
        _invoke(runner, "task", "auth")

        added = _invoke(runner, "issue", "add", "--title", "Crash on login",
                        "--task", "auth", "--priority", "P1")
        issue_id = _created_issue_id(added.output)
        listing = _invoke(runner, "issues")

        assert added.exit_code == 0
        assert "Open issues:" in listing.output
        assert f"id: {issue_id}" in listing.output
        assert "[P1] auth: Crash on login" in listing.output
        assert tasks.load("auth").status.value == "issues"

        resolved = _invoke(runner, "issue", "resolve", issue_id, "--resolution", "Fixed it")

        assert f"Resolved issue {issue_id}" in resolved.output
        assert "No issues" in _invoke(runner, "issues").output
        everything = _invoke(runner, "issue", "list", "--status", "all")
        assert "status: resolved" in everything.output
        assert tasks.load("auth").status.value == "pending"

    def test_filters(self, runner, cli_env):
        _invoke(runner, "task", "auth")
        _invoke(runner, "issue", "add", "--title", "Slow query", "--task", "auth", "--type", "perf")
        _invoke(runner, "issue", "add", "--title", "Typo", "--source", "review")

        perf = _invoke(runner, "issues", "--type", "performance")
        review = _invoke(runner, "issues", "--source", "review")
        unassigned = _invoke(runner, "issues", "--unassigned")

        assert "Slow query" in perf.output and "Typo" not in perf.output
        assert "Typo" in review.output and "Slow query" not in review.output
        assert "unassigned: Typo" in unassigned.output

    def test_assign_unassigned_issue(self, runner, cli_env, tasks):
        _invoke(runner, "task", "auth")
        issue_id = _created_issue_id(_invoke(runner, "issue", "add", "--title", "Flaky").output)

        listing = _invoke(runner, "queue")
        assigned = _invoke(runner, "issue", "assign", issue_id, "--task", "auth")

        assert "Unassigned issues: 1" in listing.output
        assert f"Assigned issue {issue_id} to auth" in assigned.output
        assert tasks.load("auth").status.value == "issues"

    def test_show_with_stdin_body(self, runner, cli_env):
        added = _invoke(runner, "issue", "add", "--title", "Needs docs", "--stdin-body",
                        input="Document the retry policy.\n")
        issue_id = _created_issue_id(added.output)

        shown = _invoke(runner, "issue", "show", issue_id)

        assert shown.exit_code == 0
        assert "title: Needs docs" in shown.output
        assert "Document the retry policy." in shown.output

    def test_body_options_conflict(self, runner, cli_env):
        result = _invoke(runner, "issue", "add", "--title", "X", "--body", "b", "--stdin-body",
                         input="also b")

        assert result.exit_code == 1
        assert "Use --body or --stdin-body, not both" in result.output

    def test_unknown_issue(self, runner, cli_env):
        result = _invoke(runner, "issue", "resolve", "123-4-5")

        assert result.exit_code == 1
        assert "Issue '123-4-5' not found" in result.output

    def test_writer_agent_has_no_issues(self, runner, cli_env):
        _invoke(runner, "--agent", "writer", "init", str(cli_env))

        result = _invoke(runner, "--agent", "writer", "issues")

        assert result.exit_code == 1
        assert "only supported for the code agent" in result.output


# =============================================================================
# finish
# =============================================================================


class TestFinish:
    def test_finish_with_session_option(self, runner, cli_env, tasks):
        _invoke(runner, "task", "auth")
        sessions = SessionStore(cli_env / ".agents" / "code")
        session = sessions.create("code", "spec", "auth", cli_env, "test-host")

        result = _invoke(runner, "finish", "spec", "--session", session.session_id)

        assert result.exit_code == 0
        assert "Advanced stage to planning" in result.output
        assert tasks.load("auth").stage == "planning"
        assert sessions.load(session.session_id).next_stage == "planning"

    def test_finish_without_session(self, runner, cli_env):
        _invoke(runner, "task", "auth")

        result = _invoke(runner, "finish", "spec")

        assert result.exit_code == 1
        assert "METAGENT_SESSION not set" in result.output

    def test_run_next_with_nothing_eligible(self, runner, cli_env):
        _invoke(runner, "task", "auth")

        result = _invoke(runner, "run-next")

        assert result.exit_code == 0
        assert "No eligible tasks." in result.output


# =============================================================================
# debug
# =============================================================================


class TestDebug:
    @pytest.fixture
    def seen(self, cli_env, agent_script, tmp_path) -> Path:
        """Install a codex stand-in that records its prompt and environment."""
        out = tmp_path / "debug.json"
        script = agent_script(f"""
            import json, os, sys
            with open({str(out)!r}, "w") as f:
                json.dump({{"prompt": sys.argv[-1], "session": os.environ.get("METAGENT_SESSION")}}, f)
            sys.exit(int(os.environ.get("FAKE_DEBUG_EXIT", "0")))
        """)
        config_file = cli_env / ".agents" / "config.yaml"
        config_file.write_text(config_file.read_text() + f"models:\n  codex_binary: {script}\n")
        prompts = tmp_path / "prompts" / "code"
        prompts.mkdir(parents=True, exist_ok=True)
        (prompts / "DEBUG_PROMPT.md").write_text("Debug {repo}")
        return out

    def test_bug_words_become_report(self, runner, cli_env, seen):
        result = _invoke(runner, "debug", "login", "returns", "500")

        assert result.exit_code == 0
        data = json.loads(seen.read_text())
        assert data["prompt"] == f"## Bug Report & Logs\nlogin returns 500\n\nDebug {cli_env}"
        assert data["session"] is None

    def test_report_from_stdin(self, runner, cli_env, seen):
        result = _invoke(runner, "debug", "--stdin", input="Traceback (most recent call last)\n")

        assert result.exit_code == 0
        assert json.loads(seen.read_text())["prompt"].startswith(
            "## Bug Report & Logs\nTraceback (most recent call last)\n\n"
        )

    def test_report_from_file(self, runner, cli_env, seen, tmp_path):
        log = tmp_path / "server.log"
        log.write_text("ERROR worker crashed\n")

        result = _invoke(runner, "debug", "--file", str(log))

        assert result.exit_code == 0
        assert "ERROR worker crashed" in json.loads(seen.read_text())["prompt"]

    def test_failing_agent_exits_1(self, runner, cli_env, seen, monkeypatch):
        monkeypatch.setenv("FAKE_DEBUG_EXIT", "3")

        result = _invoke(runner, "debug", "crash")

        assert result.exit_code == 1
        assert "Debug command failed" in result.output

    def test_file_and_stdin_conflict(self, runner, cli_env, tmp_path):
        result = _invoke(runner, "debug", "--file", str(tmp_path / "x.log"), "--stdin", input="x")

        assert result.exit_code == 1
        assert "Use --file or --stdin, not both" in result.output

    def test_missing_file(self, runner, cli_env, tmp_path):
        result = _invoke(runner, "debug", "--file", str(tmp_path / "missing.log"))

        assert result.exit_code == 1
        assert "Error:" in result.output
