"""Tests for prompt loading and placeholder rendering."""

import pytest

from metagent.errors import NotFoundError
from metagent.models import Model, TaskStatus
from metagent.prompts import (
    MANUAL_REVIEW_FINISH,
    PARALLELISM_TEXT,
    PromptContext,
    ReviewFinishMode,
    fallback_prompt,
    focus_section_text,
    issues_text,
    load_stage_prompt,
    parallelism_text,
    render_prompt,
    review_finish_instructions,
)
from metagent.stages import get_agent_kind


@pytest.fixture
def code():
    return get_agent_kind("code")


class TestRenderPrompt:
    """Tests for render_prompt()."""

    def test_replaces_every_placeholder(self):
        template = (
            "{task}|{taskname}|{session}|{repo}|{issues_header}|{issues_mode}|"
            "{parallelism_mode}|{focus_section}|{review_finish_instructions}"
        )
        context = PromptContext(
            repo_root="/repo",
            task="auth",
            session="1-2-3",
            issues_header="H",
            issues_mode="M",
            parallelism_mode="P",
            focus_section="F",
            review_finish_instructions="R",
        )

        assert render_prompt(template, context) == "auth|auth|1-2-3|/repo|H|M|P|F|R"

    def test_task_placeholders_kept_without_task(self):
        rendered = render_prompt("{task} {taskname} {session} {focus_section}.",
                                 PromptContext(repo_root="/repo"))
        assert rendered == "{task} {taskname}  ."

    def test_other_braces_untouched(self):
        template = 'json: {"key": 1} in {repo}'
        assert render_prompt(template, PromptContext(repo_root="/r")) == 'json: {"key": 1} in /r'


class TestLoadStagePrompt:
    def test_reads_prompt_file(self, code, tmp_path):
        (tmp_path / "BUILD_PROMPT.md").write_text("Build {task}")
        assert load_stage_prompt(tmp_path, code, "build", "auth") == "Build {task}"

    def test_existing_task_spec_prompt(self, code, tmp_path):
        (tmp_path / "SPEC_PROMPT.md").write_text("interview")
        (tmp_path / "SPEC_EXISTING_TASK_PROMPT.md").write_text("existing")

        assert load_stage_prompt(tmp_path, code, "spec") == "interview"
        assert load_stage_prompt(tmp_path, code, "spec", "auth") == "existing"

    def test_missing_file_falls_back(self, code, tmp_path):
        prompt = load_stage_prompt(tmp_path, code, "review", "auth")

        assert prompt == fallback_prompt(code, "review", "auth")
        assert "Perform the review stage for task auth" in prompt
        assert "`metagent --agent code finish review` from {repo}" in prompt

    def test_fallback_without_task(self, code):
        assert fallback_prompt(code, "spec", None).startswith("Perform the spec stage. ")

    def test_stage_without_prompt(self, code, tmp_path):
        with pytest.raises(NotFoundError, match="No prompt for stage: completed"):
            load_stage_prompt(tmp_path, code, "completed")


class TestPromptSections:
    def test_issues_text_only_in_issues_mode(self, code):
        header, mode = issues_text(code, TaskStatus.ISSUES, "auth")
        assert ".agents/code/tasks/auth/issues.md" in header
        assert "must be resolved before finishing" in mode

        assert issues_text(code, TaskStatus.PENDING, "auth") == ("", "")
        assert issues_text(code, TaskStatus.ISSUES, None) == ("", "")
        assert issues_text(get_agent_kind("writer"), TaskStatus.ISSUES, "essay") == ("", "")

    def test_parallelism_only_for_claude(self):
        assert parallelism_text(Model.CLAUDE) == PARALLELISM_TEXT
        assert parallelism_text(Model.CODEX) == ""

    def test_focus_section(self):
        assert focus_section_text(None) == ""
        assert focus_section_text("   ") == ""
        assert "> error handling\n" in focus_section_text("  error handling ")

    def test_review_finish_queue_mode(self):
        text = review_finish_instructions(ReviewFinishMode.QUEUE, "/repo", "auth", "1-2-3")

        assert text.startswith("7. Signal next stage:")
        assert '`cd "/repo" && METAGENT_TASK="auth" metagent --agent code finish review' in text
        assert '--session "1-2-3" --next spec-review-issues`' in text
        assert '--session "1-2-3" --next build`' in text
        assert text.endswith('--session "1-2-3"`')

    def test_review_finish_manual_mode(self):
        assert review_finish_instructions(
            ReviewFinishMode.MANUAL, "/repo", "auth", "1-2-3"
        ) == MANUAL_REVIEW_FINISH

    def test_review_finish_without_task(self):
        assert review_finish_instructions(ReviewFinishMode.QUEUE, "/repo", None, "1") == ""
