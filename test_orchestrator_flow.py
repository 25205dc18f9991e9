import json
import threading

import pytest

from book_creation.errors import (
    ConcurrencyConflict,
    InvalidConfig,
    InvalidTransition,
    PromptNotConfigured,
    StageMismatch,
    StageNotCompleted,
    TaskLimitExceeded,
    TaskTerminated,
    TitleNotSelected,
    UpstreamError,
    ValidationError,
)
from book_creation.task_model import StageStatus, StageType, TaskStatus

from conftest import CHAPTERS, CONTENT, IDEA, VOLUME, advance_to_content, wait_until


def test_auto_execute_runs_the_idea_stage(orchestrator, llm) -> None:
    task = orchestrator.create_task(
        1,
        prompt_group_id=7,
        user_parameters={"genre": "悬疑", "style": "冷峻"},
        auto_execute=True,
    )

    assert task.status == TaskStatus.WAITING_NEXT_STAGE
    assert task.current_stage == StageType.IDEA
    assert task.processed_data.brainstorm.startswith("核心设定")
    assert task.total_characters_consumed > 0
    assert llm.calls_for(IDEA)[0]["context"]["genre"] == "悬疑"

    records = orchestrator.list_stage_records(task.id)
    assert [r.status for r in records] == [StageStatus.COMPLETED]
    assert records[0].characters_consumed == task.total_characters_consumed


def test_background_auto_execute(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True, background=True)
    assert wait_until(lambda: orchestrator.get_task(task.id).status == TaskStatus.WAITING_NEXT_STAGE)


def test_create_task_validation(orchestrator) -> None:
    with pytest.raises(InvalidConfig):
        orchestrator.create_task(1)
    with pytest.raises(InvalidConfig):
        orchestrator.create_task(1, prompt_group_id=1, prompt_config={"idea_prompt_id": 1})
    with pytest.raises(InvalidConfig):
        orchestrator.create_task(1, prompt_group_id=99)
    with pytest.raises(InvalidConfig):
        orchestrator.create_task(1, prompt_config={"idea_prompt_id": 999})
    with pytest.raises(InvalidConfig):
        orchestrator.create_task(1, prompt_group_id=1, task_config={"concurrency_limit": 50})


def test_active_task_limit_per_user(orchestrator) -> None:
    tasks = [orchestrator.create_task(1, prompt_group_id=1) for _ in range(3)]
    with pytest.raises(TaskLimitExceeded):
        orchestrator.create_task(1, prompt_group_id=1)

    # 其他用户不受影响；取消一个之后又可以新建
    orchestrator.create_task(2, prompt_group_id=1)
    orchestrator.cancel_task(tasks[0].id)
    orchestrator.create_task(1, prompt_group_id=1)


def test_missing_prompt_is_rejected_before_any_change(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_config={"title_prompt_id": 3})

    with pytest.raises(PromptNotConfigured) as exc_info:
        orchestrator.execute_stage(task.id)

    assert exc_info.value.to_dict()["field"] == "idea_prompt_id"
    assert orchestrator.list_stage_records(task.id) == []
    assert orchestrator.get_task(task.id).version == task.version


def test_optimize_replaces_output_without_moving_the_task(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True)

    with pytest.raises(StageNotCompleted):
        orchestrator.optimize_stage(task.id, "stage_2_title", "换个风格")
    with pytest.raises(ValidationError):
        orchestrator.optimize_stage(task.id, "stage_1_idea", "   ")

    result = orchestrator.optimize_stage(task.id, "stage_1_idea", "更温情一点")
    reloaded = orchestrator.get_task(task.id)

    assert result.output["brainstorm"].startswith("优化后的创意")
    assert reloaded.processed_data.brainstorm == result.output["brainstorm"]
    assert reloaded.status == TaskStatus.WAITING_NEXT_STAGE
    assert reloaded.total_characters_consumed == task.total_characters_consumed + result.characters_consumed
    assert result.record.input_data["mode"] == "optimize"
    assert result.record.input_data["feedback"] == "更温情一点"


def test_optimize_failure_leaves_the_task_unchanged(orchestrator, llm) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True)
    llm.script(2, UpstreamError("provider down"))

    with pytest.raises(UpstreamError):
        orchestrator.optimize_stage(task.id, StageType.IDEA, "再改改")

    reloaded = orchestrator.get_task(task.id)
    assert reloaded.processed_data.brainstorm == task.processed_data.brainstorm
    assert reloaded.status == TaskStatus.WAITING_NEXT_STAGE
    assert orchestrator.store.count_failed_attempts(task.id, StageType.IDEA) == 0


def test_title_must_be_selected_before_outline(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True)
    orchestrator.execute_stage(task.id)

    waiting = orchestrator.get_task(task.id)
    assert waiting.current_stage == StageType.TITLE
    assert waiting.awaiting_title_selection
    assert waiting.novel_id is not None

    with pytest.raises(TitleNotSelected):
        orchestrator.execute_stage(task.id)

    selected = orchestrator.select_title(task.id, "旧城来信", synopsis="改写后的简介")
    assert selected.processed_data.selected_title == "旧城来信"
    assert selected.processed_data.synopsis == "改写后的简介"
    assert orchestrator.content.get_novel(selected.novel_id)["name"] == "旧城来信"

    result = orchestrator.execute_stage(task.id)
    assert result.stage == StageType.OUTLINE
    assert result.task.status == TaskStatus.CONTENT_GENERATING
    assert len(orchestrator.list_chapters(task.id)) == 3


def test_title_optimize_requires_a_new_selection(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True)
    orchestrator.execute_stage(task.id)
    orchestrator.select_title(task.id, "时间的回声")

    result = orchestrator.optimize_stage(task.id, StageType.TITLE, "更有悬念")
    assert result.output["titles"] == ["回声之城", "逆时寻父"]
    with pytest.raises(TitleNotSelected):
        orchestrator.execute_stage(task.id)


def test_stage_mismatch_when_waiting(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True)

    with pytest.raises(StageMismatch):
        orchestrator.execute_stage(task.id, "stage_1_idea")
    with pytest.raises(StageMismatch):
        orchestrator.execute_stage(task.id, "stage_3_outline")
    with pytest.raises(ValidationError):
        orchestrator.execute_stage(task.id, "stage_9")

    result = orchestrator.execute_stage(task.id, "stage_2_title")
    assert result.stage == StageType.TITLE


def test_retries_then_failed(orchestrator, llm, publisher) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1)
    llm.script(IDEA, UpstreamError("e1"), UpstreamError("e2"), UpstreamError("e3"))

    for attempt in (1, 2):
        with pytest.raises(UpstreamError):
            orchestrator.execute_stage(task.id)
        current = orchestrator.get_task(task.id)
        assert current.status == TaskStatus.IDEA_GENERATING
        assert current.error_message == f"e{attempt}"

    with pytest.raises(UpstreamError):
        orchestrator.execute_stage(task.id)

    failed = orchestrator.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    records = orchestrator.list_stage_records(task.id)
    assert [r.retry_count for r in records] == [1, 2, 3]
    assert all(r.status == StageStatus.FAILED for r in records)
    assert "task_failed" in [e["event"] for e in publisher.events_since(task.id)]

    with pytest.raises(TaskTerminated):
        orchestrator.execute_stage(task.id)


def test_retry_after_a_failure_succeeds(orchestrator, llm) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1)
    llm.script(IDEA, UpstreamError("flaky"))

    with pytest.raises(UpstreamError):
        orchestrator.execute_stage(task.id)
    result = orchestrator.execute_stage(task.id)

    assert result.record.retry_count == 1
    assert result.task.status == TaskStatus.WAITING_NEXT_STAGE
    assert result.task.error_message is None


def test_pause_and_resume(orchestrator) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1)

    paused = orchestrator.pause_task(task.id)
    assert paused.status == TaskStatus.PAUSED
    with pytest.raises(InvalidTransition):
        orchestrator.execute_stage(task.id)
    with pytest.raises(InvalidTransition):
        orchestrator.pause_task(task.id)

    resumed = orchestrator.resume_task(task.id)
    assert resumed.status == TaskStatus.IDEA_GENERATING
    with pytest.raises(InvalidTransition):
        orchestrator.resume_task(task.id)

    orchestrator.execute_stage(task.id)
    # 等待 continue 的任务不能暂停
    with pytest.raises(InvalidTransition):
        orchestrator.pause_task(task.id)


def test_pause_while_stage_runs_keeps_the_result(orchestrator, llm) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1)
    llm.gate = threading.Event()
    results = {}

    worker = threading.Thread(
        target=lambda: results.setdefault("result", orchestrator.execute_stage_stream(task.id))
    )
    worker.start()
    assert llm.first_chunk_sent.wait(timeout=5)

    orchestrator.pause_task(task.id)
    llm.gate.set()
    worker.join(timeout=5)

    paused = orchestrator.get_task(task.id)
    assert paused.status == TaskStatus.PAUSED
    assert paused.processed_data.brainstorm

    resumed = orchestrator.resume_task(task.id)
    assert resumed.status == TaskStatus.WAITING_NEXT_STAGE


def test_second_operation_is_rejected_while_one_is_running(orchestrator, llm) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1)
    llm.gate = threading.Event()
    worker = threading.Thread(target=lambda: orchestrator.execute_stage_stream(task.id))
    worker.start()
    assert llm.first_chunk_sent.wait(timeout=5)

    with pytest.raises(ConcurrencyConflict):
        orchestrator.execute_stage(task.id)
    assert orchestrator.get_task_progress(task.id)["busy"] is True

    llm.gate.set()
    worker.join(timeout=5)
    records = orchestrator.list_stage_records(task.id)
    assert [r.status for r in records] == [StageStatus.COMPLETED]


def test_full_pipeline_to_completed(orchestrator, publisher) -> None:
    task = advance_to_content(orchestrator)

    content = orchestrator.execute_stage(task.id)
    assert content.stage == StageType.CONTENT
    assert content.output["generation_summary"]["total_generated"] == 3
    assert content.task.status == TaskStatus.REVIEW_OPTIMIZING

    review = orchestrator.execute_stage(task.id)
    assert review.output["review_summary"]["reviewed"] == 3
    assert review.task.status == TaskStatus.COMPLETED
    assert review.task.completed_at is not None

    completed = orchestrator.get_task(task.id)
    records = orchestrator.list_stage_records(task.id)
    assert completed.total_characters_consumed == sum(r.characters_consumed for r in records)
    assert orchestrator.get_task_progress(task.id)["overall_progress"] == 100

    # 每个字段只由自己的阶段写入，之前的产出都还在
    data = completed.processed_data
    assert data.brainstorm and data.titles and data.main_outline and data.generation_summary

    events = [e["event"] for e in publisher.events_since(task.id)]
    assert events.count("stage_completed") == 5
    assert events[-1] == "task_completed"
    assert "stage_progress" in events

    with pytest.raises(TaskTerminated):
        orchestrator.pause_task(task.id)


def test_review_disabled_completes_after_content(orchestrator) -> None:
    task = advance_to_content(orchestrator, task_config={"enable_review": False})
    result = orchestrator.execute_stage(task.id)

    assert result.task.status == TaskStatus.COMPLETED
    progress = orchestrator.get_task_progress(task.id)
    assert progress["stages"][-1]["status"] == "disabled"
    assert progress["completed_stages"] == [
        "stage_1_idea",
        "stage_2_title",
        "stage_3_outline",
        "stage_4_content",
    ]
    assert progress["overall_progress"] == 100


def test_content_stage_fails_when_every_chapter_fails(orchestrator, llm) -> None:
    task = advance_to_content(orchestrator)
    llm.replies[CONTENT] = UpstreamError("provider down")

    with pytest.raises(UpstreamError):
        orchestrator.execute_stage(task.id)

    current = orchestrator.get_task(task.id)
    assert current.status == TaskStatus.CONTENT_GENERATING
    assert "3 chapters" in current.error_message


def test_partial_chapter_failures_are_reported(orchestrator, llm) -> None:
    task = advance_to_content(orchestrator)

    def _reply(ctx):
        if ctx["chapter_order"] == 2:
            raise UpstreamError("only chapter 2")
        return "正文"

    llm.replies[CONTENT] = _reply
    result = orchestrator.execute_stage(task.id)

    summary = result.output["generation_summary"]
    assert summary["total_generated"] == 2
    assert summary["total_failed"] == 1
    assert summary["failed_chapters"][0]["order"] == 2


def test_cancel_is_terminal(orchestrator, publisher) -> None:
    task = orchestrator.create_task(1, prompt_group_id=1, auto_execute=True)
    cancelled = orchestrator.cancel_task(task.id)

    assert cancelled.status == TaskStatus.CANCELLED
    for call in (
        lambda: orchestrator.execute_stage(task.id),
        lambda: orchestrator.optimize_stage(task.id, StageType.IDEA, "再改"),
        lambda: orchestrator.resume_task(task.id),
        lambda: orchestrator.cancel_task(task.id),
    ):
        with pytest.raises(TaskTerminated):
            call()
    assert "task_cancelled" in [e["event"] for e in publisher.events_since(task.id)]


def test_update_prompt_config_rules(orchestrator) -> None:
    grouped = orchestrator.create_task(1, prompt_group_id=1)
    with pytest.raises(ValidationError):
        orchestrator.update_prompt_config(grouped.id, {"idea_prompt_id": 2})

    custom = orchestrator.create_task(1, prompt_config={"idea_prompt_id": 1})
    updated = orchestrator.update_prompt_config(custom.id, {"title_prompt_id": 3})
    assert updated.prompt_config.title_prompt_id == 3

    orchestrator.execute_stage(custom.id)
    with pytest.raises(ValidationError):
        orchestrator.update_prompt_config(custom.id, {"idea_prompt_id": 2})
    with pytest.raises(InvalidConfig):
        orchestrator.update_prompt_config(custom.id, {"main_outline_prompt_id": 404})


def test_other_users_cannot_see_a_task(orchestrator) -> None:
    from book_creation.errors import NotFound

    task = orchestrator.create_task(1, prompt_group_id=1)
    with pytest.raises(NotFound):
        orchestrator.get_task(task.id, user_id=2)
    with pytest.raises(NotFound):
        orchestrator.execute_stage(task.id, user_id=2)


def test_outline_edit_and_sync(orchestrator) -> None:
    task = advance_to_content(orchestrator)
    outline = orchestrator.get_outline(task.id)

    volume_node = outline[0]["children"][0]
    chapter_node = volume_node["children"][0]
    edited = orchestrator.update_outline_node(task.id, chapter_node["id"], title="钟楼（修订）")
    assert edited["status"] == "optimized"

    counts = orchestrator.sync_outline_to_novel(task.id)
    assert counts["chapters_updated"] == 3
    assert counts["chapters_created"] == 0
    assert orchestrator.list_chapters(task.id)[0]["title"] == "钟楼（修订）"


def test_outline_extracts_characters_and_world_settings(orchestrator, llm) -> None:
    llm.script(
        VOLUME,
        json.dumps({"volumes": [{"title": "旧城"}, {"title": "裂隙"}]}, ensure_ascii=False),
    )
    llm.script(
        CHAPTERS,
        json.dumps(
            {
                "chapters": [
                    {
                        "title": "钟楼",
                        "summary": "少年在钟楼听见异响",
                        "characters": [
                            "主角：林渊",
                            {"name": "老钟表匠", "category": "配角", "fields": {"身份": "钟楼看守"}},
                        ],
                        "worldviews": [{"name": "时间裂隙", "category": "设定", "fields": {"规则": "只在午夜出现"}}],
                    }
                ]
            },
            ensure_ascii=False,
        ),
        json.dumps(
            {
                "chapters": [
                    {
                        "title": "来信",
                        "summary": "收到父亲的信",
                        "characters": ["林渊", {"name": "苏晚", "category": "配角"}, {"category": "无名"}],
                        "worldviews": [{"name": "时间裂隙"}, {"name": "旧城区", "category": "地点"}],
                    }
                ]
            },
            ensure_ascii=False,
        ),
    )
    task = orchestrator.create_task(1, prompt_group_id=1)
    orchestrator.execute_stage(task.id)
    orchestrator.execute_stage(task.id)
    orchestrator.select_title(task.id, "时间的回声")
    novel_id = orchestrator.get_task(task.id).novel_id
    orchestrator.content.add_characters(novel_id, [{"name": "老钟表匠", "category": "配角", "fields": {}}])

    orchestrator.execute_stage(task.id)

    record = [r for r in orchestrator.list_stage_records(task.id) if r.stage_type == StageType.OUTLINE][-1]
    assert record.output_data["characters_created"] == 2
    assert record.output_data["world_settings_created"] == 2

    characters = {c["name"]: c for c in orchestrator.content.list_characters(novel_id)}
    assert sorted(characters) == ["林渊", "老钟表匠", "苏晚"]
    assert characters["林渊"]["category"] == "未分类"
    assert characters["老钟表匠"]["fields"] == {}
    settings = {s["name"]: s for s in orchestrator.content.list_world_settings(novel_id)}
    assert sorted(settings) == ["旧城区", "时间裂隙"]
    assert settings["时间裂隙"]["fields"] == {"规则": "只在午夜出现"}


def test_chapter_operations(orchestrator, llm) -> None:
    task = advance_to_content(orchestrator)
    chapters = orchestrator.list_chapters(task.id)
    first = chapters[0]["id"]

    summary = orchestrator.generate_chapters(task.id, [first])
    assert summary.total_generated == 1

    report = orchestrator.review_chapter(task.id, first)
    assert report.score == 86

    optimized = orchestrator.optimize_chapter(task.id, first, feedback="加强悬念")
    assert optimized["content"] == "优化后的正文：钟声更急促了。"

    edited = orchestrator.update_chapter(task.id, first, title="新标题")
    assert edited["title"] == "新标题"

    regenerated = orchestrator.regenerate_chapter(task.id, first)
    assert regenerated["content"].startswith("第1章")

    with pytest.raises(ValidationError):
        orchestrator.review_chapter(task.id, chapters[1]["id"])
    assert orchestrator.get_task(task.id).total_characters_consumed > task.total_characters_consumed
