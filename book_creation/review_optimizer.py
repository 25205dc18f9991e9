from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .chapter_review import ChapterReviewer
from .chapter_writer import ChapterWriter
from .db.content_store import ContentStore
from .errors import BookCreationError, OperationCancelled
from .task_model import OutlineNodeStatus, Task


class ReviewOptimizer:
    """
    Stage 5：逐章审核，存在 high / medium 问题的章节按报告自动优化。
    单章失败只计数，不中断整个阶段。
    """

    def __init__(self, writer: ChapterWriter, reviewer: ChapterReviewer, content: ContentStore) -> None:
        self.writer = writer
        self.reviewer = reviewer
        self.content = content

    def review_all(
        self,
        task: Task,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Tuple[Dict[str, Any], int]:
        chapters = [c for c in self.content.list_chapters(task.novel_id) if c["content"]]
        total = len(chapters)
        reviewed = optimized = 0
        consumed = 0
        scores: List[float] = []
        reports: List[Dict[str, Any]] = []
        failures: List[Dict[str, Any]] = []

        for idx, chapter in enumerate(chapters, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(task_id=task.id)
            try:
                if not chapter["summary"]:
                    summary = self.writer.summarize(task, chapter["title"], chapter["content"], cancel_event=cancel_event)
                    consumed += summary.characters_consumed
                    chapter = self.content.update_chapter(chapter["id"], summary=summary.text.strip())

                report, review = self.reviewer.review(task, chapter, cancel_event=cancel_event)
                consumed += review.characters_consumed
                reviewed += 1
                scores.append(report.score)

                was_optimized = False
                if report.needs_optimization:
                    improved = self.writer.optimize(task, chapter, report=report, cancel_event=cancel_event)
                    consumed += improved.characters_consumed
                    self.content.update_chapter(chapter["id"], content=improved.text.strip())
                    self.content.mark_chapter_node(task.id, chapter["id"], OutlineNodeStatus.OPTIMIZED)
                    optimized += 1
                    was_optimized = True
                reports.append({**report.to_dict(), "optimized": was_optimized})
            except OperationCancelled:
                raise
            except BookCreationError as exc:
                print(f"[STAGE] task={task.id} review of chapter {chapter['order']} failed: {exc.message}")
                consumed += exc.characters_consumed
                failures.append({"chapter_id": chapter["id"], "order": chapter["order"], "error": exc.message})
            if on_progress is not None:
                on_progress(idx, total)

        summary = {
            "total_chapters": total,
            "reviewed": reviewed,
            "optimized": optimized,
            "failed": len(failures),
            "average_score": round(sum(scores) / len(scores), 2) if scores else 0,
            "reports": reports,
            "failures": failures,
        }
        return summary, consumed
