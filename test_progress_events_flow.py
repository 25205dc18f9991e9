import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from book_creation.message_bus import ProgressPublisher
from src.protocol import (
    EventEnvelope,
    ProgressEventKind,
    ProtocolValidationError,
    ProtocolValidator,
    build_envelope,
)


def test_events_are_appended_to_jsonl(tmp_path: Path) -> None:
    """
    Published events should land in progress_events.jsonl in publish order.
    """
    publisher = ProgressPublisher(events_dir=tmp_path / "events")
    publisher.publish(5, ProgressEventKind.STAGE_STARTED, stage="stage_1_idea", data={"message": "started"})
    publisher.publish(
        5,
        "stage_progress",
        stage="stage_4_content",
        data={"current": 1, "total": 4, "percentage": 25.0},
    )

    log_path = tmp_path / "events" / "task-5" / "progress_events.jsonl"
    lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]

    assert [line["event"] for line in lines] == ["stage_started", "stage_progress"]
    assert lines[0]["timestamp"].endswith("Z")
    assert lines[1]["data"]["percentage"] == 25.0
    assert publisher.events_since(5) == lines


def test_invalid_payload_is_rejected(tmp_path: Path) -> None:
    publisher = ProgressPublisher(events_dir=tmp_path / "events")

    with pytest.raises(ProtocolValidationError):
        publisher.publish(1, ProgressEventKind.STAGE_PROGRESS, data={"current": 1})
    with pytest.raises(ProtocolValidationError):
        publisher.publish(1, ProgressEventKind.STAGE_COMPLETED, data={})
    assert publisher.events_since(1) == []


def test_subscribers_fan_out_and_unsubscribe(tmp_path: Path) -> None:
    publisher = ProgressPublisher(events_dir=tmp_path / "events")
    first, second, other = [], [], []

    unsubscribe = publisher.subscribe(3, first.append)
    publisher.subscribe(3, second.append)
    publisher.subscribe(4, other.append)

    publisher.publish(3, ProgressEventKind.TASK_CREATED, data={"message": "Task created"})
    unsubscribe()
    publisher.publish(3, ProgressEventKind.TASK_PAUSED, data={})

    assert [e["event"] for e in first] == ["task_created"]
    assert [e["event"] for e in second] == ["task_created", "task_paused"]
    assert other == []
    assert publisher.subscriber_count(3) == 1


def test_failing_subscriber_does_not_block_others(tmp_path: Path) -> None:
    publisher = ProgressPublisher(events_dir=tmp_path / "events")
    received = []

    def _broken(event):
        raise RuntimeError("socket closed")

    publisher.subscribe(2, _broken)
    publisher.subscribe(2, received.append)
    publisher.publish(2, ProgressEventKind.ERROR, data={"error": "boom"})

    assert len(received) == 1


def test_events_since_filters_by_timestamp(tmp_path: Path) -> None:
    publisher = ProgressPublisher(events_dir=tmp_path / "events")
    publisher.publish(9, ProgressEventKind.TASK_CREATED, data={})
    cutoff = datetime.now(timezone.utc)
    publisher.publish(9, ProgressEventKind.TASK_CANCELLED, data={})

    later = publisher.events_since(9, cutoff - timedelta(microseconds=1))
    assert later[-1]["event"] == "task_cancelled"
    assert publisher.events_since(9, datetime.now(timezone.utc) + timedelta(seconds=5)) == []
    assert publisher.events_since(404) == []


def test_truncated_trailing_line_is_ignored(tmp_path: Path) -> None:
    publisher = ProgressPublisher(events_dir=tmp_path / "events")
    publisher.publish(6, ProgressEventKind.TASK_CREATED, data={})
    log_path = tmp_path / "events" / "task-6" / "progress_events.jsonl"
    with log_path.open("a", encoding="utf-8") as f:
        f.write('{"task_id": 6, "event": "sta')

    assert [e["event"] for e in publisher.events_since(6)] == ["task_created"]


def test_envelope_round_trip_and_naive_timestamps() -> None:
    validator = ProtocolValidator()
    envelope = build_envelope(
        task_id=1,
        event=ProgressEventKind.TITLE_SELECTED,
        stage="stage_2_title",
        data={"result": {"selected_title": "时间的回声"}},
        timestamp=datetime(2024, 1, 1, 12, 0, 0),
        validator=validator,
    )
    payload = envelope.to_dict()
    assert payload["timestamp"] == "2024-01-01T12:00:00Z"
    assert EventEnvelope.from_dict(payload, validator=validator) == envelope

    with pytest.raises(ProtocolValidationError):
        EventEnvelope.from_dict({**payload, "event": "unknown_event"}, validator=validator)


def test_orchestrator_publishes_lifecycle_events(orchestrator, publisher) -> None:
    seen = []
    task = orchestrator.create_task(1, prompt_group_id=1)
    unsubscribe = orchestrator.subscribe(task.id, seen.append)

    orchestrator.execute_stage(task.id)
    unsubscribe()

    assert [e["event"] for e in seen] == ["stage_started", "stage_completed"]
    completed = seen[-1]
    assert completed["stage"] == "stage_1_idea"
    assert completed["data"]["status"] == "waiting_next_stage"
    assert completed["data"]["characters_consumed"] > 0
    assert [e["event"] for e in orchestrator.events_since(task.id)] == [
        "task_created",
        "stage_started",
        "stage_completed",
    ]
