# book_creation/db/task_store.py

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import func, update
from sqlalchemy.orm import sessionmaker

from .db import SessionLocal, DbTask, DbStageRecord
from ..errors import ConcurrencyConflict, NotFound, StateError
from ..task_model import (
    Lifecycle,
    PromptConfig,
    ProcessedData,
    StageRecord,
    StageStatus,
    StageType,
    Task,
    TaskConfig,
    TaskOutcome,
    TaskStatus,
)

TERMINAL_STATUSES = [
    TaskStatus.COMPLETED.value,
    TaskStatus.FAILED.value,
    TaskStatus.CANCELLED.value,
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _task_values(task: Task) -> Dict[str, Any]:
    return {
        "user_id": task.user_id,
        "status": task.status.value,
        "current_stage": task.current_stage.value,
        "lifecycle": task.lifecycle.value,
        "outcome": task.outcome.value if task.outcome else None,
        "paused_from": task.paused_from.value if task.paused_from else None,
        "awaiting_title_selection": task.awaiting_title_selection,
        "active_operation": task.active_operation,
        "novel_id": task.novel_id,
        "model_id": task.model_id,
        "prompt_group_id": task.prompt_group_id,
        "prompt_config": task.prompt_config.to_dict(),
        "task_config": task.task_config.to_dict(),
        "processed_data": task.processed_data.to_dict(),
        "total_characters_consumed": task.total_characters_consumed,
        "error_message": task.error_message,
        "completed_at": task.completed_at,
    }


def _row_to_task(row: DbTask) -> Task:
    return Task(
        id=row.id,
        user_id=row.user_id,
        current_stage=StageType(row.current_stage),
        lifecycle=Lifecycle(row.lifecycle),
        outcome=TaskOutcome(row.outcome) if row.outcome else None,
        paused_from=Lifecycle(row.paused_from) if row.paused_from else None,
        awaiting_title_selection=bool(row.awaiting_title_selection),
        active_operation=row.active_operation,
        novel_id=row.novel_id,
        model_id=row.model_id,
        prompt_group_id=row.prompt_group_id,
        prompt_config=PromptConfig.from_dict(row.prompt_config),
        task_config=TaskConfig.merged(row.task_config),
        processed_data=ProcessedData.from_dict(row.processed_data),
        total_characters_consumed=row.total_characters_consumed or 0,
        error_message=row.error_message,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _row_to_record(row: DbStageRecord) -> StageRecord:
    return StageRecord(
        id=row.id,
        task_id=row.task_id,
        stage_type=StageType(row.stage_type),
        status=StageStatus(row.status),
        input_data=row.input_data or {},
        output_data=row.output_data,
        prompt_id=row.prompt_id,
        characters_consumed=row.characters_consumed or 0,
        retry_count=row.retry_count or 0,
        error_message=row.error_message,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def _apply_record(row: DbStageRecord, record: StageRecord, now: datetime) -> None:
    row.status = record.status.value
    row.input_data = record.input_data or {}
    row.output_data = record.output_data
    row.prompt_id = record.prompt_id
    row.characters_consumed = record.characters_consumed
    row.retry_count = record.retry_count
    row.error_message = record.error_message
    if record.status in (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED):
        row.completed_at = record.completed_at or now


class TaskStateStore:
    """
    Task + Stage 记录的持久化层，任务恢复时唯一可信的数据来源。

    - save_task 使用 version 做乐观并发控制：写入时版本不匹配就抛 ConcurrencyConflict。
    - Stage 记录只追加；completed 的记录不可再修改。
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    # ---------- Task ----------

    def create_task(self, task: Task) -> Task:
        now = _utcnow()
        with self._session_factory() as db:
            row = DbTask(**_task_values(task), version=0, created_at=now, updated_at=now)
            db.add(row)
            db.commit()
            db.refresh(row)
            return _row_to_task(row)

    def load_task(self, task_id: int) -> Task:
        with self._session_factory() as db:
            row = db.get(DbTask, task_id)
            if row is None:
                raise NotFound(f"Task {task_id} not found", task_id=task_id)
            return _row_to_task(row)

    def _cas_update(self, db, task: Task, now: datetime) -> None:
        """按 (id, version) 条件更新；没有命中说明别人先写了。"""
        if task.id is None:
            raise ValueError("task must be created before it can be saved")
        result = db.execute(
            update(DbTask)
            .where(DbTask.id == task.id, DbTask.version == task.version)
            .values(**_task_values(task), version=task.version + 1, updated_at=now)
        )
        if result.rowcount == 0:
            db.rollback()
            if db.get(DbTask, task.id) is None:
                raise NotFound(f"Task {task.id} not found", task_id=task.id)
            raise ConcurrencyConflict(
                f"Task {task.id} was modified concurrently (expected version {task.version})",
                task_id=task.id,
            )

    def save_task(self, task: Task) -> Task:
        now = _utcnow()
        with self._session_factory() as db:
            self._cas_update(db, task, now)
            db.commit()
        task.version += 1
        task.updated_at = now
        return task

    def commit_stage(self, task: Task, record: StageRecord) -> StageRecord:
        """Task 状态和 stage 记录在同一个事务里落库。"""
        now = _utcnow()
        with self._session_factory() as db:
            self._cas_update(db, task, now)
            row = self._writable_record(db, record)
            _apply_record(row, record, now)
            db.commit()
            db.refresh(row)
            saved = _row_to_record(row)
        task.version += 1
        task.updated_at = now
        return saved

    def list_tasks(
        self,
        user_id: int,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        with self._session_factory() as db:
            query = db.query(DbTask).filter(DbTask.user_id == user_id)
            if status:
                query = query.filter(DbTask.status == status)
            total = query.count()
            rows = (
                query.order_by(DbTask.created_at.desc(), DbTask.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            items = [_row_to_task(row) for row in rows]
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def count_active_tasks(self, user_id: int) -> int:
        with self._session_factory() as db:
            return (
                db.query(func.count(DbTask.id))
                .filter(DbTask.user_id == user_id, DbTask.status.notin_(TERMINAL_STATUSES))
                .scalar()
                or 0
            )

    # ---------- Stage records ----------

    def append_stage_record(self, record: StageRecord) -> StageRecord:
        now = _utcnow()
        with self._session_factory() as db:
            row = DbStageRecord(
                task_id=record.task_id,
                stage_type=record.stage_type.value,
                status=record.status.value,
                input_data=record.input_data or {},
                output_data=record.output_data,
                prompt_id=record.prompt_id,
                characters_consumed=record.characters_consumed,
                retry_count=record.retry_count,
                error_message=record.error_message,
                created_at=record.created_at or now,
                completed_at=record.completed_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _row_to_record(row)

    @staticmethod
    def _writable_record(db, record: StageRecord) -> DbStageRecord:
        row = db.get(DbStageRecord, record.id) if record.id is not None else None
        if row is None:
            db.rollback()
            raise NotFound(f"Stage record {record.id} not found", task_id=record.task_id)
        if row.status == StageStatus.COMPLETED.value:
            db.rollback()
            raise StateError(
                f"Stage record {record.id} is completed and can no longer change",
                task_id=record.task_id,
                stage=row.stage_type,
            )
        return row

    def update_stage_record(self, record: StageRecord) -> StageRecord:
        with self._session_factory() as db:
            row = self._writable_record(db, record)
            _apply_record(row, record, _utcnow())
            db.commit()
            db.refresh(row)
            return _row_to_record(row)

    def list_stage_records(self, task_id: int, stage_type: Optional[StageType] = None) -> List[StageRecord]:
        with self._session_factory() as db:
            query = db.query(DbStageRecord).filter(DbStageRecord.task_id == task_id)
            if stage_type is not None:
                query = query.filter(DbStageRecord.stage_type == stage_type.value)
            rows = query.order_by(DbStageRecord.id.asc()).all()
            return [_row_to_record(row) for row in rows]

    def count_failed_attempts(self, task_id: int, stage_type: StageType) -> int:
        """Failed attempts of ``stage_type`` since its last completion (optimize attempts excluded)."""
        failed = 0
        for record in self.list_stage_records(task_id, stage_type):
            if record.input_data.get("mode") == "optimize":
                continue
            if record.status == StageStatus.COMPLETED:
                failed = 0
            elif record.status == StageStatus.FAILED:
                failed += 1
        return failed

    def completed_stages(self, task_id: int) -> Set[StageType]:
        return {
            record.stage_type
            for record in self.list_stage_records(task_id)
            if record.status == StageStatus.COMPLETED and record.input_data.get("mode") != "optimize"
        }

    def skip_stale_records(self, task_id: int, reason: str = "interrupted before completion") -> int:
        """
        把崩溃后遗留的 processing 记录标记为 skipped，返回处理的条数。
        只在确认没有进行中的操作时调用。
        """
        with self._session_factory() as db:
            rows = (
                db.query(DbStageRecord)
                .filter(
                    DbStageRecord.task_id == task_id,
                    DbStageRecord.status.in_([StageStatus.PROCESSING.value, StageStatus.PENDING.value]),
                )
                .all()
            )
            for row in rows:
                row.status = StageStatus.SKIPPED.value
                row.error_message = reason
                row.completed_at = _utcnow()
            db.commit()
            return len(rows)
