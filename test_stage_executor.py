import threading

import pytest

from book_creation.errors import MalformedOutput, OperationCancelled, StreamCancelled
from book_creation.llm_service import Completion
from book_creation.prompt_registry import PromptTemplate, build_messages, trim_history
from book_creation.stage_executor import StageExecutor, consume_stream, parse_json_payload
from book_creation.task_model import (
    PromptConfig,
    StageRecord,
    StageStatus,
    StageType,
    Task,
    TaskConfig,
    TitleOutput,
)


def test_parse_json_payload_handles_fences_and_chatter() -> None:
    assert parse_json_payload('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_payload('好的，结果如下：{"titles": ["x"]} 希望有帮助') == {"titles": ["x"]}
    assert parse_json_payload("[1, 2]") == [1, 2]
    with pytest.raises(MalformedOutput):
        parse_json_payload("完全不是 JSON")


def test_trim_history_keeps_most_recent_messages() -> None:
    history = [{"role": "user", "content": str(i)} for i in range(6)]
    assert [m["content"] for m in trim_history(history, 2)] == ["4", "5"]
    assert len(trim_history(history, 0)) == 6


def test_build_messages_places_history_between_system_and_user() -> None:
    template = PromptTemplate(id=1, name="t", system_prompt="sys", user_template="写一个{genre}故事{missing}")
    history = [{"role": "user", "content": "旧请求"}, {"role": "assistant", "content": "旧回复"}]
    messages = build_messages(template, {"genre": "悬疑"}, history=history, history_limit=1)

    assert messages[0] == {"role": "system", "content": "sys"}
    assert messages[1]["content"] == "旧回复"
    assert messages[-1] == {"role": "user", "content": "写一个悬疑故事"}


def test_history_from_records_uses_completed_records_only() -> None:
    records = [
        StageRecord(
            task_id=1,
            stage_type=StageType.IDEA,
            status=StageStatus.COMPLETED,
            input_data={"request": "请求一"},
            output_data={"text": "回复一"},
        ),
        StageRecord(
            task_id=1,
            stage_type=StageType.TITLE,
            status=StageStatus.FAILED,
            input_data={"request": "请求二"},
        ),
    ]
    history = StageExecutor.history_from_records(records, limit=10)
    assert history == [
        {"role": "user", "content": "请求一"},
        {"role": "assistant", "content": "回复一"},
    ]


def test_title_output_requires_titles_and_synopsis() -> None:
    executor = StageExecutor(llm=None)
    output = executor.to_output(
        StageType.TITLE, '{"titles": [{"title": "甲"}, "乙", ""], "synopsis": "简介"}'
    )
    assert output == TitleOutput(titles=["甲", "乙"], synopsis="简介")

    with pytest.raises(MalformedOutput):
        executor.to_output(StageType.TITLE, '{"titles": [], "synopsis": "简介"}')
    with pytest.raises(MalformedOutput):
        executor.to_output(StageType.IDEA, "   ")


def _stream(parts, closed):
    try:
        for part in parts:
            yield part
        yield Completion(text="".join(parts), input_chars=3, output_chars=len("".join(parts)), model_id="m")
    finally:
        closed.append(True)


def test_consume_stream_forwards_chunks_and_returns_completion() -> None:
    closed, seen = [], []
    completion = consume_stream(_stream(["a", "b"], closed), on_chunk=seen.append)
    assert seen == ["a", "b"]
    assert completion.text == "ab"
    assert completion.characters_consumed == 5
    assert closed == [True]


def test_consume_stream_stops_on_cancel_and_observer_disconnect() -> None:
    closed = []
    cancel = threading.Event()

    def _cancel_after_first(chunk):
        cancel.set()

    with pytest.raises(OperationCancelled):
        consume_stream(_stream(["a", "b", "c"], closed), on_chunk=_cancel_after_first, cancel_event=cancel)
    assert closed == [True]

    def _disconnect(chunk):
        raise StreamCancelled()

    with pytest.raises(StreamCancelled):
        consume_stream(_stream(["a", "b"], closed), on_chunk=_disconnect)
    assert closed == [True, True]


def test_execute_passes_task_settings_to_the_model(llm) -> None:
    task = Task(
        user_id=1,
        id=1,
        model_id="custom-model",
        prompt_config=PromptConfig(idea_prompt_id=1),
        task_config=TaskConfig(temperature=0.3, history_message_limit=2),
    )
    executor = StageExecutor(llm)
    history = [{"role": "user", "content": str(i)} for i in range(5)]

    output, completion = executor.execute(task, StageType.IDEA, 1, {"parameters": "悬疑"}, history=history)

    call = llm.calls[-1]
    assert call["model_id"] == "custom-model"
    assert call["temperature"] == 0.3
    assert len(call["history"]) == 2
    assert output.brainstorm == completion.text
