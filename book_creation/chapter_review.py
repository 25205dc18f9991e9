from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Tuple

from .chapter_model import ReviewIssue, ReviewReport
from .chapter_writer import require_prompt
from .errors import MalformedOutput
from .llm_service import Completion
from .stage_executor import consume_stream, parse_json_payload
from .task_model import Task


def parse_review(chapter_id: int, text: str) -> ReviewReport:
    """
    模型返回 JSON：{score, issues:[{type, severity, description, location}], suggestions, strengths}
    """
    payload = parse_json_payload(text)
    if not isinstance(payload, dict):
        raise MalformedOutput(f"Review of chapter {chapter_id} is not a JSON object")
    try:
        score = float(payload.get("score"))
    except (TypeError, ValueError) as exc:
        raise MalformedOutput(f"Review of chapter {chapter_id} has no numeric score") from exc
    return ReviewReport(
        chapter_id=chapter_id,
        score=score,
        issues=[ReviewIssue.from_raw(item) for item in payload.get("issues") or []],
        suggestions=[str(s) for s in payload.get("suggestions") or []],
        strengths=[str(s) for s in payload.get("strengths") or []],
    )


class ChapterReviewer:
    """Review collaborator: review(chapter) -> ReviewReport."""

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    def review(
        self,
        task: Task,
        chapter: Dict[str, Any],
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[ReviewReport, Completion]:
        prompt_id = require_prompt(task, "review_prompt_id")
        context = {
            "novel_title": task.processed_data.selected_title or "",
            "chapter_title": chapter["title"],
            "chapter_outline": chapter.get("outline") or "",
            "content": chapter.get("content") or "",
        }
        completion = consume_stream(
            self.llm.stream(
                prompt_id,
                context,
                model_id=task.model_id,
                # 审核用低温度，结果更稳定
                temperature=min(task.task_config.temperature, 0.3),
                history_limit=task.task_config.history_message_limit,
            ),
            cancel_event=cancel_event,
        )
        try:
            return parse_review(chapter["id"], completion.text), completion
        except MalformedOutput as exc:
            raise exc.with_consumption(completion.characters_consumed)
