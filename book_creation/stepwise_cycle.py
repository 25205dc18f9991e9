from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .chapter_model import ReviewReport
from .chapter_review import ChapterReviewer
from .chapter_writer import ChapterWriter
from .db.content_store import ContentStore
from .errors import BookCreationError, InvalidTransition, ValidationError
from .task_model import OutlineNodeStatus, Task


def next_order_after(chapters: List[Dict[str, Any]], order: int) -> Optional[int]:
    """order 之后实际存在的下一章（章节序号之间可能有空缺）。"""
    later = [c["order"] for c in chapters if c["order"] > order]
    return min(later) if later else None


@dataclass
class CycleResult:
    chapter: Dict[str, Any]
    review_report: ReviewReport
    next_chapter_order: Optional[int]
    characters_consumed: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter": self.chapter,
            "review_report": self.review_report.to_dict(),
            "next_chapter_order": self.next_chapter_order,
            "characters_consumed": self.characters_consumed,
        }


class StepwiseChapterCycle:
    """
    逐章循环：生成一章 -> 生成摘要 -> AI 审核 -> 停下等用户决定。

    同一个 order 重复生成会覆盖该章正文，不会产生重复章节。
    """

    def __init__(self, writer: ChapterWriter, reviewer: ChapterReviewer, content: ContentStore) -> None:
        self.writer = writer
        self.reviewer = reviewer
        self.content = content

    def resolve_order(self, task: Task, chapter_order: Optional[int] = None, *, continuing: bool = False) -> int:
        chapters = self._chapters(task)
        orders = [c["order"] for c in chapters]
        if continuing:
            last = task.processed_data.last_cycle_chapter_order
            if last is None:
                raise InvalidTransition(
                    "No chapter has been produced by the stepwise cycle yet; generate one first",
                    task_id=task.id,
                )
            target = next_order_after(chapters, last)
            if target is None:
                raise ValidationError(f"Chapter {last} was the last chapter; nothing to continue", task_id=task.id)
            return target
        if chapter_order is not None:
            if chapter_order not in orders:
                raise ValidationError(f"Chapter order {chapter_order} does not exist", task_id=task.id)
            return chapter_order
        for chapter in chapters:
            if not chapter["content"]:
                return chapter["order"]
        raise ValidationError("Every chapter already has content", task_id=task.id)

    def _chapters(self, task: Task) -> List[Dict[str, Any]]:
        if task.novel_id is None:
            raise ValidationError("Task has no novel yet; run the title stage first", task_id=task.id)
        chapters = self.content.list_chapters(task.novel_id)
        if not chapters:
            raise ValidationError("Novel has no chapters; run the outline stage first", task_id=task.id)
        return chapters

    def run(self, task: Task, order: int, *, cancel_event: Optional[threading.Event] = None) -> CycleResult:
        chapters = self._chapters(task)
        chapter = next(c for c in chapters if c["order"] == order)
        consumed = 0
        try:
            unit = self.writer.write(task, chapter, chapters, cancel_event=cancel_event)
            consumed += unit.characters_consumed
            self.content.update_chapter(chapter["id"], content=unit.content)
            print(f"[CYCLE] task={task.id} chapter {order} written ({unit.word_count} 字)")

            summary = self.writer.summarize(task, chapter["title"], unit.content, cancel_event=cancel_event)
            consumed += summary.characters_consumed
            updated = self.content.update_chapter(chapter["id"], summary=summary.text.strip())

            report, review = self.reviewer.review(task, updated, cancel_event=cancel_event)
            consumed += review.characters_consumed
        except BookCreationError as exc:
            # 正文和摘要已经落库，失败前消耗的字符数跟着异常带出去
            raise exc.with_consumption(consumed)
        self.content.mark_chapter_node(task.id, chapter["id"], OutlineNodeStatus.GENERATED)
        print(f"[CYCLE] task={task.id} chapter {order} reviewed, score={report.score:g}")

        return CycleResult(
            chapter=updated,
            review_report=report,
            next_chapter_order=next_order_after(chapters, order),
            characters_consumed=consumed,
        )
