"""
Task / Stage data model for the book-creation engine.

Task 的状态用两个正交字段表示：
    * lifecycle：running / waiting_for_continue / paused / terminal
    * current_stage：五个固定阶段之一
展示用的 status 字符串由两者推导，不单独存储语义。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from .errors import InvalidConfig


class StageType(str, Enum):
    IDEA = "stage_1_idea"
    TITLE = "stage_2_title"
    OUTLINE = "stage_3_outline"
    CONTENT = "stage_4_content"
    REVIEW = "stage_5_review"

    @property
    def position(self) -> int:
        return STAGE_SEQUENCE.index(self)

    def next(self) -> Optional["StageType"]:
        idx = self.position + 1
        return STAGE_SEQUENCE[idx] if idx < len(STAGE_SEQUENCE) else None


STAGE_SEQUENCE: List[StageType] = [
    StageType.IDEA,
    StageType.TITLE,
    StageType.OUTLINE,
    StageType.CONTENT,
    StageType.REVIEW,
]


class TaskStatus(str, Enum):
    IDEA_GENERATING = "idea_generating"
    TITLE_GENERATING = "title_generating"
    OUTLINE_GENERATING = "outline_generating"
    CONTENT_GENERATING = "content_generating"
    REVIEW_OPTIMIZING = "review_optimizing"
    WAITING_NEXT_STAGE = "waiting_next_stage"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


GENERATING_STATUS: Dict[StageType, TaskStatus] = {
    StageType.IDEA: TaskStatus.IDEA_GENERATING,
    StageType.TITLE: TaskStatus.TITLE_GENERATING,
    StageType.OUTLINE: TaskStatus.OUTLINE_GENERATING,
    StageType.CONTENT: TaskStatus.CONTENT_GENERATING,
    StageType.REVIEW: TaskStatus.REVIEW_OPTIMIZING,
}

# 这两个阶段完成后需要用户显式 continue
STAGES_REQUIRING_CONTINUE = {StageType.IDEA, StageType.TITLE}

# 支持 token 流式输出 / optimize 的阶段
STREAMABLE_STAGES = {StageType.IDEA, StageType.TITLE}


class Lifecycle(str, Enum):
    RUNNING = "running"
    WAITING_FOR_CONTINUE = "waiting_for_continue"
    PAUSED = "paused"
    TERMINAL = "terminal"


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutlineNodeStatus(str, Enum):
    DRAFT = "draft"
    OPTIMIZED = "optimized"
    GENERATED = "generated"


class OutlineLevel(int, Enum):
    MAIN = 1
    VOLUME = 2
    CHAPTER = 3


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ---------- Prompt / Task 配置 ----------


@dataclass
class PromptConfig:
    idea_prompt_id: Optional[int] = None
    idea_optimize_prompt_id: Optional[int] = None
    title_prompt_id: Optional[int] = None
    title_optimize_prompt_id: Optional[int] = None
    main_outline_prompt_id: Optional[int] = None
    volume_outline_prompt_id: Optional[int] = None
    chapter_outline_prompt_id: Optional[int] = None
    content_prompt_id: Optional[int] = None
    summary_prompt_id: Optional[int] = None
    review_prompt_id: Optional[int] = None
    chapter_optimize_prompt_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PromptConfig":
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidConfig(f"Unknown prompt config fields: {', '.join(sorted(unknown))}")
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            try:
                values[key] = int(value)
            except (TypeError, ValueError) as exc:
                raise InvalidConfig(f"Prompt config field '{key}' must be an integer id") from exc
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def updated(self, changes: Dict[str, Any]) -> "PromptConfig":
        merged = {**self.to_dict(), **PromptConfig.from_dict(changes).non_empty()}
        return PromptConfig(**merged)

    def non_empty(self) -> Dict[str, int]:
        return {k: v for k, v in self.to_dict().items() if v is not None}


STAGE_PROMPT_FIELDS: Dict[StageType, List[str]] = {
    StageType.IDEA: ["idea_prompt_id"],
    StageType.TITLE: ["title_prompt_id"],
    StageType.OUTLINE: [
        "main_outline_prompt_id",
        "volume_outline_prompt_id",
        "chapter_outline_prompt_id",
    ],
    StageType.CONTENT: ["content_prompt_id"],
    StageType.REVIEW: ["review_prompt_id", "summary_prompt_id", "chapter_optimize_prompt_id"],
}

OPTIMIZE_PROMPT_FIELDS: Dict[StageType, str] = {
    StageType.IDEA: "idea_optimize_prompt_id",
    StageType.TITLE: "title_optimize_prompt_id",
}

# 逐章循环：生成 -> 摘要 -> 审核
CYCLE_PROMPT_FIELDS: List[str] = ["content_prompt_id", "summary_prompt_id", "review_prompt_id"]


@dataclass
class TaskConfig:
    enable_review: bool = True
    concurrency_limit: int = 5
    temperature: float = 0.7
    history_message_limit: int = 10

    @classmethod
    def merged(cls, overrides: Optional[Dict[str, Any]] = None, base: Optional["TaskConfig"] = None) -> "TaskConfig":
        """Merge user-supplied values key by key over the defaults (or over ``base``)."""
        current = (base or cls()).to_dict()
        for key, value in (overrides or {}).items():
            if key not in current:
                raise InvalidConfig(f"Unknown task config field: {key}")
            if value is not None:
                current[key] = value
        try:
            cfg = cls(
                enable_review=bool(current["enable_review"]),
                concurrency_limit=int(current["concurrency_limit"]),
                temperature=float(current["temperature"]),
                history_message_limit=int(current["history_message_limit"]),
            )
        except (TypeError, ValueError) as exc:
            raise InvalidConfig(f"Invalid task config: {exc}") from exc
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not 1 <= self.concurrency_limit <= 20:
            raise InvalidConfig("concurrency_limit must be between 1 and 20")
        if not 0.0 <= self.temperature <= 2.0:
            raise InvalidConfig("temperature must be between 0 and 2")
        if self.history_message_limit < 0:
            raise InvalidConfig("history_message_limit must be >= 0 (0 means unlimited)")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------- 每个阶段的产出（tagged union）----------


@dataclass(frozen=True)
class IdeaOutput:
    stage: ClassVar[StageType] = StageType.IDEA
    brainstorm: str


@dataclass(frozen=True)
class TitleOutput:
    stage: ClassVar[StageType] = StageType.TITLE
    titles: List[str]
    synopsis: str


@dataclass(frozen=True)
class OutlineOutput:
    stage: ClassVar[StageType] = StageType.OUTLINE
    main_outline: List[Dict[str, Any]]
    volume_outlines: List[Dict[str, Any]]
    chapter_outlines: List[Dict[str, Any]]


@dataclass(frozen=True)
class ContentOutput:
    stage: ClassVar[StageType] = StageType.CONTENT
    generation_summary: Dict[str, Any]


@dataclass(frozen=True)
class ReviewOutput:
    stage: ClassVar[StageType] = StageType.REVIEW
    review_summary: Dict[str, Any]


StageOutput = Union[IdeaOutput, TitleOutput, OutlineOutput, ContentOutput, ReviewOutput]

# 每个阶段“拥有”的 processed_data 字段
STAGE_DATA_FIELDS: Dict[StageType, List[str]] = {
    StageType.IDEA: ["brainstorm"],
    StageType.TITLE: ["titles", "synopsis"],
    StageType.OUTLINE: ["main_outline", "volume_outlines", "chapter_outlines"],
    StageType.CONTENT: ["generation_summary"],
    StageType.REVIEW: ["review_summary"],
}


@dataclass
class ProcessedData:
    """
    累积的阶段产出。每个字段只属于一个阶段，后面的阶段不能清空前面的字段。
    """

    user_parameters: Dict[str, Any] = field(default_factory=dict)
    brainstorm: Optional[str] = None
    titles: Optional[List[str]] = None
    synopsis: Optional[str] = None
    selected_title: Optional[str] = None
    main_outline: Optional[List[Dict[str, Any]]] = None
    volume_outlines: Optional[List[Dict[str, Any]]] = None
    chapter_outlines: Optional[List[Dict[str, Any]]] = None
    generation_summary: Optional[Dict[str, Any]] = None
    review_summary: Optional[Dict[str, Any]] = None
    last_cycle_chapter_order: Optional[int] = None

    def has_output(self, stage: StageType) -> bool:
        return all(getattr(self, name) not in (None, "", []) for name in STAGE_DATA_FIELDS[stage])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProcessedData":
        data = data or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def merge_stage_output(data: ProcessedData, output: StageOutput) -> ProcessedData:
    """
    Return a copy of ``data`` with the fields owned by ``output.stage`` set.

    Only the stage's own fields are written and ``None`` never overwrites a value, so a
    stage can replace its own output (optimize) but can never clear another stage's.
    """
    changes: Dict[str, Any] = {}
    for name in STAGE_DATA_FIELDS[output.stage]:
        value = getattr(output, name)
        if value is not None:
            changes[name] = value
    return replace(data, **changes)


# ---------- Task / StageRecord ----------


@dataclass
class Task:
    user_id: int
    id: Optional[int] = None
    current_stage: StageType = StageType.IDEA
    lifecycle: Lifecycle = Lifecycle.RUNNING
    outcome: Optional[TaskOutcome] = None
    paused_from: Optional[Lifecycle] = None
    awaiting_title_selection: bool = False
    active_operation: Optional[str] = None
    novel_id: Optional[int] = None
    model_id: Optional[str] = None
    prompt_group_id: Optional[int] = None
    prompt_config: PromptConfig = field(default_factory=PromptConfig)
    task_config: TaskConfig = field(default_factory=TaskConfig)
    processed_data: ProcessedData = field(default_factory=ProcessedData)
    total_characters_consumed: int = 0
    error_message: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def status(self) -> TaskStatus:
        if self.lifecycle == Lifecycle.TERMINAL:
            return TaskStatus(self.outcome.value if self.outcome else TaskOutcome.FAILED.value)
        if self.lifecycle == Lifecycle.PAUSED:
            return TaskStatus.PAUSED
        if self.lifecycle == Lifecycle.WAITING_FOR_CONTINUE:
            return TaskStatus.WAITING_NEXT_STAGE
        return GENERATING_STATUS[self.current_stage]

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle == Lifecycle.TERMINAL

    def add_consumption(self, characters: int) -> None:
        if characters < 0:
            raise ValueError("characters consumed cannot be negative")
        self.total_characters_consumed += characters

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "current_stage": self.current_stage.value,
            "lifecycle": self.lifecycle.value,
            "outcome": self.outcome.value if self.outcome else None,
            "paused_from": self.paused_from.value if self.paused_from else None,
            "awaiting_title_selection": self.awaiting_title_selection,
            "active_operation": self.active_operation,
            "novel_id": self.novel_id,
            "model_id": self.model_id,
            "prompt_group_id": self.prompt_group_id,
            "prompt_config": self.prompt_config.to_dict(),
            "task_config": self.task_config.to_dict(),
            "processed_data": self.processed_data.to_dict(),
            "total_characters_consumed": self.total_characters_consumed,
            "error_message": self.error_message,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            current_stage=StageType(data.get("current_stage") or StageType.IDEA.value),
            lifecycle=Lifecycle(data.get("lifecycle") or Lifecycle.RUNNING.value),
            outcome=TaskOutcome(data["outcome"]) if data.get("outcome") else None,
            paused_from=Lifecycle(data["paused_from"]) if data.get("paused_from") else None,
            awaiting_title_selection=bool(data.get("awaiting_title_selection", False)),
            active_operation=data.get("active_operation"),
            novel_id=data.get("novel_id"),
            model_id=data.get("model_id"),
            prompt_group_id=data.get("prompt_group_id"),
            prompt_config=PromptConfig.from_dict(data.get("prompt_config")),
            task_config=TaskConfig.merged(data.get("task_config")),
            processed_data=ProcessedData.from_dict(data.get("processed_data")),
            total_characters_consumed=int(data.get("total_characters_consumed") or 0),
            error_message=data.get("error_message"),
            version=int(data.get("version") or 0),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class StageRecord:
    task_id: int
    stage_type: StageType
    id: Optional[int] = None
    status: StageStatus = StageStatus.PENDING
    input_data: Dict[str, Any] = field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    prompt_id: Optional[int] = None
    characters_consumed: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "stage_type": self.stage_type.value,
            "status": self.status.value,
            "input_data": self.input_data,
            "output_data": self.output_data,
            "prompt_id": self.prompt_id,
            "characters_consumed": self.characters_consumed,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class OutlineNode:
    task_id: int
    level: OutlineLevel
    title: str
    id: Optional[int] = None
    parent_id: Optional[int] = None
    order: int = 0
    content: str = ""
    status: OutlineNodeStatus = OutlineNodeStatus.DRAFT
    volume_id: Optional[int] = None
    chapter_id: Optional[int] = None
    children: List["OutlineNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "parent_id": self.parent_id,
            "level": int(self.level),
            "order": self.order,
            "title": self.title,
            "content": self.content,
            "status": self.status.value,
            "volume_id": self.volume_id,
            "chapter_id": self.chapter_id,
            "children": [child.to_dict() for child in self.children],
        }
