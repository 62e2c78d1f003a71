"""Tests for locked, atomic record persistence."""

import json
import multiprocessing
from pathlib import Path

import pytest
from filelock import FileLock

from metagent.errors import CorruptionError, LockTimeoutError, NotFoundError
from metagent.models import TaskState, TaskStatus
from metagent.record_store import RecordStore, lock_path_for
from metagent.utils.fs import atomic_write, tmp_path_for


def _task(name: str = "auth") -> TaskState:
    return TaskState(
        task=name,
        agent="code",
        stage="spec",
        added_at="2024-01-01T00:00:00Z",
        updated_at="2024-01-01T00:00:00Z",
    )


@pytest.fixture
def store():
    return RecordStore(TaskState, "task", lock_timeout=0.2)


class TestRecordStore:
    """Tests for RecordStore load/save/update."""

    def test_save_and_load(self, store, tmp_path):
        path = tmp_path / "auth" / "task.json"
        store.save(path, _task())

        loaded = store.load(path)

        assert loaded == _task()
        assert not tmp_path_for(path).exists()

    def test_saved_file_is_pretty_json(self, store, tmp_path):
        path = tmp_path / "task.json"
        store.save(path, _task())

        data = json.loads(path.read_text())
        assert data["status"] == "pending"
        assert path.read_text().endswith("\n")

    def test_load_missing(self, store, tmp_path):
        with pytest.raises(NotFoundError):
            store.load(tmp_path / "missing.json")

    def test_load_malformed_json(self, store, tmp_path):
        path = tmp_path / "task.json"
        path.write_text("{not json")

        with pytest.raises(CorruptionError) as exc_info:
            store.load(path)
        assert exc_info.value.path == str(path)

    def test_load_missing_field(self, store, tmp_path):
        path = tmp_path / "task.json"
        path.write_text(json.dumps({"task": "auth"}))

        with pytest.raises(CorruptionError, match="Invalid task file"):
            store.load(path)

    def test_load_bad_enum(self, store, tmp_path):
        path = tmp_path / "task.json"
        data = _task().to_dict()
        data["status"] = "sleeping"
        path.write_text(json.dumps(data))

        with pytest.raises(CorruptionError):
            store.load(path)

    def test_update_applies_mutator(self, store, tmp_path):
        path = tmp_path / "task.json"
        store.save(path, _task())

        def mutate(state):
            state.status = TaskStatus.RUNNING

        result = store.update(path, mutate)

        assert result.status is TaskStatus.RUNNING
        assert store.load(path).status is TaskStatus.RUNNING

    def test_update_missing_does_not_create(self, store, tmp_path):
        path = tmp_path / "task.json"
        with pytest.raises(NotFoundError):
            store.update(path, lambda state: None)
        assert not path.exists()

    def test_failed_mutator_writes_nothing(self, store, tmp_path):
        path = tmp_path / "task.json"
        store.save(path, _task())
        before = path.read_text()

        def explode(state):
            state.stage = "build"
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update(path, explode)
        assert path.read_text() == before

    def test_update_of_corrupt_record_is_not_repaired(self, store, tmp_path):
        path = tmp_path / "task.json"
        path.write_text("garbage")

        with pytest.raises(CorruptionError):
            store.update(path, lambda state: None)
        assert path.read_text() == "garbage"

    def test_lock_timeout(self, store, tmp_path):
        path = tmp_path / "task.json"
        store.save(path, _task())

        with FileLock(str(lock_path_for(path))):
            with pytest.raises(LockTimeoutError):
                store.update(path, lambda state: None)


class TestAtomicWrite:
    def test_replaces_content(self, tmp_path):
        path = tmp_path / "nested" / "file.txt"
        atomic_write(path, "one")
        atomic_write(path, "two")

        assert path.read_text() == "two"
        assert not tmp_path_for(path).exists()


# =============================================================================
# Cross-process updates
# =============================================================================


def _bump_rank(state: TaskState) -> None:
    state.queue_rank = (state.queue_rank or 0) + 1


def _increment_rank(path: str, start, count: int) -> None:
    store = RecordStore(TaskState, "task")
    start.wait(timeout=10)
    for _ in range(count):
        store.update(Path(path), _bump_rank)


@pytest.mark.skipif("fork" not in multiprocessing.get_all_start_methods(),
                    reason="requires the fork start method")
def test_updates_from_many_processes_are_serialized(tmp_path):
    workers, per_worker = 8, 5
    path = tmp_path / "task.json"
    RecordStore(TaskState, "task").save(path, _task())

    context = multiprocessing.get_context("fork")
    start = context.Event()
    processes = [
        context.Process(target=_increment_rank, args=(str(path), start, per_worker))
        for _ in range(workers)
    ]
    for process in processes:
        process.start()
    start.set()
    for process in processes:
        process.join(timeout=60)

    assert [p.exitcode for p in processes] == [0] * workers
    assert RecordStore(TaskState, "task").load(path).queue_rank == workers * per_worker
