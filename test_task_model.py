import pytest

from book_creation.errors import InvalidConfig
from book_creation.task_model import (
    IdeaOutput,
    Lifecycle,
    ProcessedData,
    PromptConfig,
    StageType,
    Task,
    TaskConfig,
    TaskOutcome,
    TaskStatus,
    TitleOutput,
    merge_stage_output,
)


def test_status_is_derived_from_lifecycle_and_stage() -> None:
    task = Task(user_id=1, current_stage=StageType.OUTLINE)
    assert task.status == TaskStatus.OUTLINE_GENERATING

    task.lifecycle = Lifecycle.WAITING_FOR_CONTINUE
    assert task.status == TaskStatus.WAITING_NEXT_STAGE

    task.lifecycle = Lifecycle.PAUSED
    assert task.status == TaskStatus.PAUSED

    task.lifecycle = Lifecycle.TERMINAL
    task.outcome = TaskOutcome.CANCELLED
    assert task.status == TaskStatus.CANCELLED
    assert task.is_terminal


def test_stage_sequence_navigation() -> None:
    assert StageType.IDEA.next() == StageType.TITLE
    assert StageType.REVIEW.next() is None
    assert StageType.CONTENT.position == 3


def test_merge_stage_output_never_clears_other_stages() -> None:
    data = ProcessedData(user_parameters={"genre": "悬疑"})
    data = merge_stage_output(data, IdeaOutput(brainstorm="创意"))
    data = merge_stage_output(data, TitleOutput(titles=["书名"], synopsis="简介"))

    assert data.brainstorm == "创意"
    assert data.titles == ["书名"]
    assert data.user_parameters == {"genre": "悬疑"}

    # optimize 只替换本阶段的字段
    data = merge_stage_output(data, IdeaOutput(brainstorm="新创意"))
    assert data.brainstorm == "新创意"
    assert data.synopsis == "简介"


def test_task_config_merges_over_defaults() -> None:
    cfg = TaskConfig.merged({"concurrency_limit": 2})
    assert cfg.concurrency_limit == 2
    assert cfg.enable_review is True
    assert cfg.temperature == 0.7
    assert cfg.history_message_limit == 10


@pytest.mark.parametrize(
    "overrides",
    [
        {"concurrency_limit": 0},
        {"temperature": 3},
        {"history_message_limit": -1},
        {"unknown": 1},
        {"concurrency_limit": "many"},
    ],
)
def test_task_config_rejects_invalid_values(overrides) -> None:
    with pytest.raises(InvalidConfig):
        TaskConfig.merged(overrides)


def test_prompt_config_validation_and_update() -> None:
    with pytest.raises(InvalidConfig):
        PromptConfig.from_dict({"idea_prompt": 1})
    with pytest.raises(InvalidConfig):
        PromptConfig.from_dict({"idea_prompt_id": "abc"})

    config = PromptConfig.from_dict({"idea_prompt_id": "3"})
    assert config.idea_prompt_id == 3
    updated = config.updated({"title_prompt_id": 4})
    assert updated.idea_prompt_id == 3
    assert updated.title_prompt_id == 4


def test_task_dict_round_trip_keeps_state_fields() -> None:
    task = Task(
        user_id=5,
        id=9,
        current_stage=StageType.TITLE,
        lifecycle=Lifecycle.PAUSED,
        paused_from=Lifecycle.WAITING_FOR_CONTINUE,
        awaiting_title_selection=True,
        processed_data=ProcessedData(brainstorm="b", titles=["t"], synopsis="s"),
        total_characters_consumed=42,
    )
    restored = Task.from_dict(task.to_dict())
    assert restored.status == TaskStatus.PAUSED
    assert restored.paused_from == Lifecycle.WAITING_FOR_CONTINUE
    assert restored.processed_data.titles == ["t"]
    assert restored.total_characters_consumed == 42
