from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

from .chapter_model import ChapterUnit, ReviewReport
from .errors import MalformedOutput, PromptNotConfigured
from .llm_service import Completion
from .stage_executor import consume_stream
from .task_model import Task

# 生成正文时带上前面多少章的摘要
PREVIOUS_SUMMARY_WINDOW = 3


def require_prompt(task: Task, field_name: str) -> int:
    prompt_id = getattr(task.prompt_config, field_name)
    if prompt_id is None:
        raise PromptNotConfigured(field_name, task_id=task.id)
    return prompt_id


def previous_summaries(chapters: List[Dict[str, Any]], order: int, window: int = PREVIOUS_SUMMARY_WINDOW) -> str:
    """前 window 章的摘要（没有摘要时退回章节大纲），按章节顺序拼接。"""
    earlier = [c for c in chapters if c["order"] < order]
    lines = []
    for chapter in earlier[-window:]:
        text = chapter.get("summary") or chapter.get("outline") or ""
        if text:
            lines.append(f"第{chapter['order']}章《{chapter['title']}》：{text}")
    return "\n".join(lines)


class ChapterWriter:
    """
    单章的正文生成 / 摘要 / 按审核报告优化。

    只调用模型并返回结果，不写 content store；写回由调用方负责，
    这样批量生成的并发单元之间没有共享的可变章节状态。
    """

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    def _kwargs(self, task: Task) -> Dict[str, Any]:
        return {
            "model_id": task.model_id,
            "temperature": task.task_config.temperature,
            "history_limit": task.task_config.history_message_limit,
        }

    def build_context(self, task: Task, chapter: Dict[str, Any], chapters: List[Dict[str, Any]]) -> Dict[str, Any]:
        data = task.processed_data
        return {
            "novel_title": data.selected_title or "",
            "synopsis": data.synopsis or "",
            "brainstorm": data.brainstorm or "",
            "chapter_order": chapter["order"],
            "chapter_title": chapter["title"],
            "chapter_outline": chapter.get("outline") or "",
            "previous_summaries": previous_summaries(chapters, chapter["order"]),
        }

    def write(
        self,
        task: Task,
        chapter: Dict[str, Any],
        chapters: List[Dict[str, Any]],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ChapterUnit:
        prompt_id = require_prompt(task, "content_prompt_id")
        context = self.build_context(task, chapter, chapters)
        completion = consume_stream(
            self.llm.stream(prompt_id, context, **self._kwargs(task)),
            cancel_event=cancel_event,
        )
        content = completion.text.strip()
        if not content:
            raise MalformedOutput(
                f"Model returned empty content for chapter {chapter['order']}"
            ).with_consumption(completion.characters_consumed)
        return ChapterUnit(
            chapter_id=chapter["id"],
            order=chapter["order"],
            title=chapter["title"],
            content=content,
            characters_consumed=completion.characters_consumed,
        )

    def summarize(
        self,
        task: Task,
        chapter_title: str,
        content: str,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> Completion:
        prompt_id = require_prompt(task, "summary_prompt_id")
        completion = consume_stream(
            self.llm.stream(
                prompt_id,
                {"chapter_title": chapter_title, "content": content},
                **self._kwargs(task),
            ),
            cancel_event=cancel_event,
        )
        if not completion.text.strip():
            raise MalformedOutput(
                f"Model returned an empty summary for '{chapter_title}'"
            ).with_consumption(completion.characters_consumed)
        return completion

    def optimize(
        self,
        task: Task,
        chapter: Dict[str, Any],
        *,
        report: Optional[ReviewReport] = None,
        feedback: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Completion:
        """按审核报告和/或用户意见重写整章，返回新正文。"""
        prompt_id = require_prompt(task, "chapter_optimize_prompt_id")
        notes = []
        if report is not None:
            notes.append(report.as_feedback())
        if feedback:
            notes.append(f"用户意见：{feedback}")
        context = {
            "novel_title": task.processed_data.selected_title or "",
            "chapter_title": chapter["title"],
            "chapter_outline": chapter.get("outline") or "",
            "content": chapter.get("content") or "",
            "feedback": "\n\n".join(notes),
        }
        completion = consume_stream(
            self.llm.stream(prompt_id, context, **self._kwargs(task)),
            cancel_event=cancel_event,
        )
        if not completion.text.strip():
            raise MalformedOutput(
                f"Model returned empty optimized content for '{chapter['title']}'"
            ).with_consumption(completion.characters_consumed)
        return completion
