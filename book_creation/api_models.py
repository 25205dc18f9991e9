from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class CreateTaskRequest(BaseModel):
    prompt_group_id: Optional[int] = None
    prompt_config: Optional[Dict[str, Any]] = None
    task_config: Optional[Dict[str, Any]] = None
    user_parameters: Dict[str, Any] = Field(default_factory=dict)
    model_id: Optional[str] = None
    auto_execute: bool = False


class ExecuteStageRequest(BaseModel):
    stage_type: Optional[str] = Field(
        default=None,
        description="可选；省略时执行当前阶段（等待 continue 时执行下一阶段）",
    )


class OptimizeStageRequest(BaseModel):
    user_feedback: str


class SelectTitleRequest(BaseModel):
    title: str
    synopsis: Optional[str] = None


class GenerateChaptersRequest(BaseModel):
    chapter_ids: Optional[List[int]] = None
    generate_all: bool = False


class GenerateNextChapterRequest(BaseModel):
    chapter_order: Optional[int] = None


class OptimizeChapterRequest(BaseModel):
    review_report: Optional[Dict[str, Any]] = None
    feedback: Optional[str] = None


class UpdateChapterRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    summary: Optional[str] = None


class UpdateOutlineNodeRequest(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


class TaskModel(BaseModel):
    id: int
    user_id: int
    status: str
    current_stage: str
    lifecycle: str
    outcome: Optional[str] = None
    paused_from: Optional[str] = None
    awaiting_title_selection: bool = False
    active_operation: Optional[str] = None
    novel_id: Optional[int] = None
    model_id: Optional[str] = None
    prompt_group_id: Optional[int] = None
    prompt_config: Dict[str, Any]
    task_config: Dict[str, Any]
    processed_data: Dict[str, Any]
    total_characters_consumed: int = 0
    error_message: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TaskListModel(BaseModel):
    items: List[TaskModel]
    total: int
    page: int
    limit: int
    total_pages: int


class StageRecordModel(BaseModel):
    id: int
    task_id: int
    stage_type: str
    status: Literal["pending", "processing", "completed", "failed", "skipped"]
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    prompt_id: Optional[int] = None
    characters_consumed: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class StageResultModel(BaseModel):
    task: TaskModel
    stage: str
    output: Dict[str, Any]
    characters_consumed: int
    stage_record: StageRecordModel


class EventsResponseModel(BaseModel):
    task_id: int
    events: List[Dict[str, Any]]
