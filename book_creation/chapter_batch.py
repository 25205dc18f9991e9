from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .chapter_model import ChapterUnit, GenerationSummary
from .chapter_writer import ChapterWriter
from .db.content_store import ContentStore
from .errors import BookCreationError, NotFound, OperationCancelled, ValidationError
from .task_model import OutlineNodeStatus, Task

ProgressCallback = Callable[[int, int], None]


class ChapterBatchRunner:
    """
    有界并发的批量章节生成：最多 concurrency_limit 个生成调用同时进行。

    每一章独立成功或失败，一章失败不会中断整批；
    failed_chapters 按输入顺序排列，和完成顺序无关。
    """

    def __init__(self, writer: ChapterWriter, content: ContentStore) -> None:
        self.writer = writer
        self.content = content

    def select_targets(
        self,
        novel_id: int,
        *,
        chapter_ids: Optional[Sequence[int]] = None,
        generate_all: bool = False,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """返回 (要生成的章节, 全书章节)。generate_all 只挑还没有正文的章节。"""
        chapters = self.content.list_chapters(novel_id)
        if chapter_ids:
            by_id = {c["id"]: c for c in chapters}
            targets = []
            for chapter_id in chapter_ids:
                chapter = by_id.get(chapter_id)
                if chapter is None:
                    raise NotFound(f"Chapter {chapter_id} does not belong to novel {novel_id}")
                targets.append(chapter)
            return targets, chapters
        if generate_all:
            return [c for c in chapters if not c["content"]], chapters
        raise ValidationError("Either chapter_ids or generate_all must be provided")

    def _write_unit(
        self,
        task: Task,
        chapter: Dict[str, Any],
        chapters: List[Dict[str, Any]],
        cancel_event: Optional[threading.Event],
    ) -> ChapterUnit:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled()
        return self.writer.write(task, chapter, chapters, cancel_event=cancel_event)

    def generate_chapters(
        self,
        task: Task,
        *,
        chapter_ids: Optional[Sequence[int]] = None,
        generate_all: bool = False,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationSummary:
        if task.novel_id is None:
            raise ValidationError("Task has no novel yet; run the title stage first", task_id=task.id)
        targets, chapters = self.select_targets(
            task.novel_id, chapter_ids=chapter_ids, generate_all=generate_all
        )
        summary = GenerationSummary()
        total = len(targets)
        if total == 0:
            print(f"[BATCH] task={task.id} nothing to generate")
            return summary

        limit = max(1, task.task_config.concurrency_limit)
        errors: Dict[int, str] = {}
        done = 0
        print(f"[BATCH] task={task.id} generating {total} chapters (concurrency={limit})")

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix=f"batch-{task.id}") as pool:
            future_to_idx = {
                pool.submit(self._write_unit, task, chapter, chapters, cancel_event): idx
                for idx, chapter in enumerate(targets)
            }
            for future in as_completed(future_to_idx):
                idx = future_to_idx[future]
                chapter = targets[idx]
                try:
                    unit = future.result()
                    # 写回在主线程完成，并发单元之间不共享可变状态
                    self.content.update_chapter(unit.chapter_id, content=unit.content)
                    self.content.mark_chapter_node(task.id, unit.chapter_id, OutlineNodeStatus.GENERATED)
                    summary.total_generated += 1
                    summary.characters_consumed += unit.characters_consumed
                except OperationCancelled:
                    errors[idx] = "cancelled"
                except BookCreationError as exc:
                    errors[idx] = exc.message
                    summary.characters_consumed += exc.characters_consumed
                    print(f"[BATCH] task={task.id} chapter {chapter['order']} failed: {exc.message}")
                except Exception as exc:
                    errors[idx] = str(exc)
                    print(f"[ERROR] task={task.id} chapter {chapter['order']} crashed: {exc!r}")
                done += 1
                if on_progress is not None:
                    on_progress(done, total)

        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(task_id=task.id)

        for idx, chapter in enumerate(targets):
            if idx in errors:
                summary.failed_chapters.append(
                    {"chapter_id": chapter["id"], "order": chapter["order"], "error": errors[idx]}
                )
        summary.total_failed = len(summary.failed_chapters)
        print(
            f"[BATCH] task={task.id} done: generated={summary.total_generated} "
            f"failed={summary.total_failed} chars={summary.characters_consumed}"
        )
        return summary
