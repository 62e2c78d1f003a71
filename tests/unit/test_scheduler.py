"""Tests for queue selection, ordering, reordering and the loop guard."""

import pytest

from metagent.errors import InvalidStateError, NotFoundError
from metagent.models import TaskState, TaskStatus
from metagent.scheduler import DEFAULT_LOOP_LIMIT, LoopGuard, QueueScheduler
from metagent.stages import get_agent_kind
from metagent.state_store import TaskStore
from metagent.validation import InvalidInputError


def _task(name, stage, added, status=TaskStatus.PENDING, held=False, rank=None, updated=None):
    return TaskState(
        task=name,
        agent="code",
        stage=stage,
        status=status,
        added_at=f"2024-01-0{added}T00:00:00Z",
        updated_at=updated or f"2024-01-0{added}T00:00:00Z",
        held=held,
        queue_rank=rank,
    )


@pytest.fixture
def scheduler():
    return QueueScheduler(get_agent_kind("code"))


class TestNextEligible:
    """Tests for QueueScheduler.next_eligible()."""

    def test_empty(self, scheduler):
        assert scheduler.next_eligible([]) is None

    def test_stage_priority(self, scheduler):
        tasks = [
            _task("reviewing", "review", 1),
            _task("building", "build", 2),
            _task("clarifying", "spec-review-issues", 3),
        ]
        assert scheduler.next_eligible(tasks).task == "clarifying"

    def test_skips_held_running_and_failed(self, scheduler):
        tasks = [
            _task("held", "build", 1, held=True),
            _task("running", "build", 2, status=TaskStatus.RUNNING),
            _task("failed", "build", 3, status=TaskStatus.FAILED),
            _task("ready", "review", 4, status=TaskStatus.INCOMPLETE),
        ]
        assert scheduler.next_eligible(tasks).task == "ready"

    def test_non_queue_stages_are_ignored(self, scheduler):
        assert scheduler.next_eligible([_task("speccing", "spec", 1)]) is None

    def test_build_queue_uses_rank_then_age(self, scheduler):
        tasks = [
            _task("oldest", "build", 1),
            _task("ranked-2", "build", 3, rank=2),
            _task("ranked-1", "build", 4, rank=1),
        ]
        assert [t.task for t in scheduler.build_queue(tasks)] == ["ranked-1", "ranked-2", "oldest"]
        assert scheduler.next_eligible(tasks).task == "ranked-1"

    def test_review_queue_is_fifo(self, scheduler):
        tasks = [_task("newer", "review", 2, rank=1), _task("older", "review", 1)]
        assert scheduler.next_eligible(tasks).task == "older"

    def test_safety_net_for_stranded_issues(self, scheduler):
        stranded = _task("stranded", "completed", 1, status=TaskStatus.ISSUES)

        candidate = scheduler.next_eligible([stranded, _task("done", "completed", 2,
                                                             status=TaskStatus.COMPLETED)])

        assert candidate.task == "stranded"
        assert candidate.stage == "build"
        assert stranded.stage == "completed"


class TestQueueView:
    def test_grouping(self, scheduler):
        tasks = [
            _task("a", "spec", 1),
            _task("b", "build", 2),
            _task("c", "completed", 3, updated="2024-02-01T00:00:00Z"),
            _task("d", "completed", 4, updated="2024-03-01T00:00:00Z"),
            _task("e", "review", 5, held=True),
        ]

        view = scheduler.queue_view(tasks)

        assert [(stage, [t.task for t in group]) for stage, group in view.stages] == [
            ("spec", ["a"]),
            ("build", ["b"]),
        ]
        assert [t.task for t in view.completed] == ["d", "c"]
        assert [t.task for t in view.backlog] == ["e"]


class TestReorder:
    """Tests for QueueScheduler.reorder() against a real TaskStore."""

    @pytest.fixture
    def store(self, tmp_path):
        store = TaskStore(tmp_path)
        for name in ("first", "second", "third"):
            store.create("code", name, "build")
        return store

    def _order(self, scheduler, store):
        return [t.task for t in scheduler.build_queue(store.list())]

    def test_move_to_front(self, scheduler, store):
        position = scheduler.reorder("third", 1, store)

        assert position == 1
        assert self._order(scheduler, store)[0] == "third"
        assert [store.load(n).queue_rank for n in self._order(scheduler, store)] == [1, 2, 3]

    def test_position_is_clamped(self, scheduler, store):
        scheduler.reorder("third", 1, store)

        assert scheduler.reorder("third", 99, store) == 3
        assert self._order(scheduler, store)[-1] == "third"

    def test_unchanged_ranks_are_not_rewritten(self, scheduler, store):
        scheduler.reorder("first", 1, store)
        before = store.load("third").updated_at
        store_path = store.path("third")
        mtime = store_path.stat().st_mtime_ns

        scheduler.reorder("first", 1, store)

        assert store.load("third").updated_at == before
        assert store_path.stat().st_mtime_ns == mtime

    def test_rejects_non_build_task(self, scheduler, store):
        store.create("code", "speccing", "spec")
        with pytest.raises(InvalidStateError, match="only supported for build stage"):
            scheduler.reorder("speccing", 1, store)

    def test_rejects_held_task(self, scheduler, store):
        def hold(state):
            state.held = True

        store.update("second", hold)
        with pytest.raises(InvalidStateError, match="is held"):
            scheduler.reorder("second", 1, store)

    def test_rejects_bad_position_and_unknown_task(self, scheduler, store):
        with pytest.raises(InvalidInputError):
            scheduler.reorder("first", 0, store)
        with pytest.raises(NotFoundError):
            scheduler.reorder("ghost", 1, store)


class TestLoopGuard:
    def test_zero_means_default(self):
        assert LoopGuard(0).limit == DEFAULT_LOOP_LIMIT

    def test_counts_review_to_build_bounces(self):
        guard = LoopGuard(2)
        guard.track("auth")

        assert guard.record_stage_result("build", "review") is False
        assert guard.record_stage_result("review", "build") is False
        assert guard.record_stage_result("review", "build") is True

    def test_switching_tasks_resets(self):
        guard = LoopGuard(2)
        guard.track("auth")
        guard.record_stage_result("review", "build")
        guard.track("billing")

        assert guard.count == 0
        assert guard.record_stage_result("review", "build") is False
