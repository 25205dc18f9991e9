import pytest

from book_creation.db.task_store import TaskStateStore
from book_creation.errors import ConcurrencyConflict, NotFound, StateError
from book_creation.task_model import (
    Lifecycle,
    StageRecord,
    StageStatus,
    StageType,
    Task,
    TaskOutcome,
)


def _store(session_factory) -> TaskStateStore:
    return TaskStateStore(session_factory)


def test_create_and_load_task(session_factory) -> None:
    store = _store(session_factory)
    task = store.create_task(Task(user_id=1, model_id="m"))

    loaded = store.load_task(task.id)
    assert loaded.user_id == 1
    assert loaded.version == 0
    assert loaded.status.value == "idea_generating"

    with pytest.raises(NotFound):
        store.load_task(9999)


def test_save_task_detects_stale_version(session_factory) -> None:
    store = _store(session_factory)
    task = store.create_task(Task(user_id=1))

    first = store.load_task(task.id)
    second = store.load_task(task.id)

    first.lifecycle = Lifecycle.PAUSED
    store.save_task(first)
    assert first.version == 1

    second.lifecycle = Lifecycle.TERMINAL
    second.outcome = TaskOutcome.CANCELLED
    with pytest.raises(ConcurrencyConflict):
        store.save_task(second)

    assert store.load_task(task.id).lifecycle == Lifecycle.PAUSED


def test_completed_stage_records_are_immutable(session_factory) -> None:
    store = _store(session_factory)
    task = store.create_task(Task(user_id=1))
    record = store.append_stage_record(StageRecord(task_id=task.id, stage_type=StageType.IDEA))

    record.status = StageStatus.COMPLETED
    record.output_data = {"text": "done"}
    record = store.update_stage_record(record)
    assert record.completed_at is not None

    record.output_data = {"text": "changed"}
    with pytest.raises(StateError):
        store.update_stage_record(record)


def test_failed_attempts_reset_after_completion_and_ignore_optimize(session_factory) -> None:
    store = _store(session_factory)
    task = store.create_task(Task(user_id=1))

    for status, mode in [
        (StageStatus.FAILED, "execute"),
        (StageStatus.COMPLETED, "execute"),
        (StageStatus.FAILED, "optimize"),
        (StageStatus.FAILED, "execute"),
    ]:
        store.append_stage_record(
            StageRecord(task_id=task.id, stage_type=StageType.IDEA, status=status, input_data={"mode": mode})
        )

    assert store.count_failed_attempts(task.id, StageType.IDEA) == 1
    assert store.completed_stages(task.id) == {StageType.IDEA}


def test_skip_stale_records(session_factory) -> None:
    store = _store(session_factory)
    task = store.create_task(Task(user_id=1))
    store.append_stage_record(
        StageRecord(task_id=task.id, stage_type=StageType.IDEA, status=StageStatus.PROCESSING)
    )

    assert store.skip_stale_records(task.id) == 1
    records = store.list_stage_records(task.id)
    assert records[0].status == StageStatus.SKIPPED
    assert store.skip_stale_records(task.id) == 0


def test_list_tasks_filters_and_paginates(session_factory) -> None:
    store = _store(session_factory)
    for _ in range(3):
        store.create_task(Task(user_id=1))
    other = store.create_task(Task(user_id=2))

    done = store.load_task(other.id)
    done.lifecycle = Lifecycle.TERMINAL
    done.outcome = TaskOutcome.COMPLETED
    store.save_task(done)

    page = store.list_tasks(1, page=1, limit=2)
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["items"]) == 2

    assert store.list_tasks(2, status="completed")["total"] == 1
    assert store.count_active_tasks(1) == 3
    assert store.count_active_tasks(2) == 0
