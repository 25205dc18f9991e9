"""
StageOrchestrator：五阶段创作流程的状态机。

一个任务同一时间只允许一个进行中的操作（阶段执行 / optimize / 章节操作），
第二个请求直接返回 ConcurrencyConflict，不排队。
状态变更只在很短的临界区里做（每个任务一把锁）；模型调用在锁外进行，
这样 pause / cancel 可以在阶段运行时立即生效。
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from src.protocol import ProgressEventKind

from .chapter_batch import ChapterBatchRunner
from .chapter_model import GenerationSummary, ReviewReport
from .chapter_review import ChapterReviewer
from .chapter_writer import ChapterWriter, require_prompt
from .config import OrchestratorConfig
from .db.content_store import ContentStore
from .db.task_store import TaskStateStore
from .errors import (
    BookCreationError,
    ConcurrencyConflict,
    InvalidConfig,
    InvalidTransition,
    NotFound,
    OperationCancelled,
    StageMismatch,
    StageNotCompleted,
    StreamCancelled,
    StreamingNotSupported,
    TaskLimitExceeded,
    TaskTerminated,
    TitleNotSelected,
    UpstreamError,
    ValidationError,
)
from .llm_service import LLMService
from .message_bus import ProgressPublisher
from .outline_builder import OutlineBuilder
from .prompt_registry import PromptRegistry
from .review_optimizer import ReviewOptimizer
from .stage_executor import StageExecutor
from .stepwise_cycle import CycleResult, StepwiseChapterCycle
from .task_model import (
    CYCLE_PROMPT_FIELDS,
    ContentOutput,
    Lifecycle,
    OPTIMIZE_PROMPT_FIELDS,
    OutlineNodeStatus,
    ProcessedData,
    PromptConfig,
    ReviewOutput,
    STAGE_PROMPT_FIELDS,
    STAGE_SEQUENCE,
    STAGES_REQUIRING_CONTINUE,
    STREAMABLE_STAGES,
    StageOutput,
    StageRecord,
    StageStatus,
    StageType,
    Task,
    TaskConfig,
    TaskOutcome,
    merge_stage_output,
)

StreamObserver = Callable[[Dict[str, Any]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_stage(value: Union[StageType, str, None]) -> Optional[StageType]:
    if value is None or isinstance(value, StageType):
        return value
    try:
        return StageType(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown stage type: {value}") from exc


def _chunk_forwarder(on_chunk: Optional[StreamObserver]) -> Optional[Callable[[str], None]]:
    if on_chunk is None:
        return None

    def _forward(text: str) -> None:
        on_chunk({"type": "chunk", "content": text})

    return _forward


@dataclass
class _Operation:
    kind: str
    cancel_event: threading.Event = field(default_factory=threading.Event)


@dataclass
class _StageWork:
    output: StageOutput
    characters: int
    text: Optional[str] = None
    on_commit: Optional[Callable[[Task], Dict[str, Any]]] = None


@dataclass
class StageResult:
    task: Task
    stage: StageType
    output: Dict[str, Any]
    characters_consumed: int
    record: StageRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task.to_dict(),
            "stage": self.stage.value,
            "output": self.output,
            "characters_consumed": self.characters_consumed,
            "stage_record": self.record.to_dict(),
        }


class StageOrchestrator:
    def __init__(
        self,
        store: Optional[TaskStateStore] = None,
        content: Optional[ContentStore] = None,
        llm: Any = None,
        publisher: Optional[ProgressPublisher] = None,
        prompts: Optional[PromptRegistry] = None,
        cfg: Optional[OrchestratorConfig] = None,
    ) -> None:
        self.cfg = cfg or OrchestratorConfig()
        self.store = store or TaskStateStore()
        self.content = content or ContentStore()
        self.prompts = prompts or PromptRegistry.from_directory()
        self.llm = llm or LLMService(self.prompts, default_model=self.cfg.model_id)
        self.publisher = publisher or ProgressPublisher(events_dir=self.cfg.events_dir)

        self.executor = StageExecutor(self.llm)
        self.writer = ChapterWriter(self.llm)
        self.reviewer = ChapterReviewer(self.llm)
        self.outline_builder = OutlineBuilder(self.executor, self.content)
        self.batch = ChapterBatchRunner(self.writer, self.content)
        self.cycle = StepwiseChapterCycle(self.writer, self.reviewer, self.content)
        self.review_optimizer = ReviewOptimizer(self.writer, self.reviewer, self.content)

        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        # task_id -> 进行中的操作（只在本进程内有效）
        self._inflight: Dict[int, _Operation] = {}

    # ---------- 锁 / 进行中操作 ----------

    def _task_lock(self, task_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = self._locks[task_id] = threading.RLock()
            return lock

    def _claim(self, task_id: int, kind: str) -> _Operation:
        """调用方必须持有任务锁。"""
        current = self._inflight.get(task_id)
        if current is not None:
            raise ConcurrencyConflict(
                f"Task {task_id} already has an operation in progress ({current.kind})",
                task_id=task_id,
            )
        op = _Operation(kind=kind)
        self._inflight[task_id] = op
        return op

    def _release(self, task_id: int, op: _Operation) -> None:
        with self._task_lock(task_id):
            if self._inflight.get(task_id) is op:
                del self._inflight[task_id]

    def _ensure_idle(self, task_id: int) -> None:
        current = self._inflight.get(task_id)
        if current is not None:
            raise ConcurrencyConflict(
                f"Task {task_id} already has an operation in progress ({current.kind})",
                task_id=task_id,
            )

    def is_busy(self, task_id: int) -> bool:
        return task_id in self._inflight

    # ---------- 通用校验 ----------

    def _load_owned(self, task_id: int, user_id: Optional[int] = None) -> Task:
        task = self.store.load_task(task_id)
        if user_id is not None and task.user_id != user_id:
            # 不暴露别人的任务是否存在
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return task

    @staticmethod
    def _ensure_not_terminal(task: Task) -> None:
        if task.is_terminal:
            raise TaskTerminated(
                f"Task {task.id} is {task.status.value}; no further changes are accepted",
                task_id=task.id,
            )

    def _ensure_active(self, task: Task) -> None:
        self._ensure_not_terminal(task)
        if task.lifecycle == Lifecycle.PAUSED:
            raise InvalidTransition(f"Task {task.id} is paused; resume it first", task_id=task.id)

    def _ensure_outline_ready(self, task: Task) -> None:
        if task.current_stage.position < StageType.CONTENT.position or task.novel_id is None:
            raise InvalidTransition(
                "Chapters are available once the outline stage has completed",
                task_id=task.id,
                stage=task.current_stage.value,
            )

    def _validate_prompt_ids(self, config: PromptConfig) -> None:
        for name, prompt_id in config.non_empty().items():
            if not self.prompts.has(prompt_id):
                raise InvalidConfig(f"Prompt {prompt_id} referenced by '{name}' does not exist")

    def _chapter_for_task(self, task: Task, chapter_id: int) -> Dict[str, Any]:
        chapter = self.content.get_chapter(chapter_id)
        if task.novel_id is None or chapter["novel_id"] != task.novel_id:
            raise NotFound(f"Chapter {chapter_id} does not belong to task {task.id}", task_id=task.id)
        return chapter

    # ---------- 事件 ----------

    def _publish(
        self,
        task_id: int,
        event: ProgressEventKind,
        *,
        stage: Optional[StageType] = None,
        **data: Any,
    ) -> None:
        self.publisher.publish(task_id, event, stage=stage.value if stage else None, data=data)

    def _progress_callback(self, task_id: int, stage: Optional[StageType]) -> Callable[[int, int], None]:
        def _on_progress(current: int, total: int) -> None:
            percentage = round(current * 100.0 / total, 2) if total else 100.0
            self._publish(
                task_id,
                ProgressEventKind.STAGE_PROGRESS,
                stage=stage,
                current=current,
                total=total,
                percentage=percentage,
            )

        return _on_progress

    def subscribe(self, task_id: int, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        return self.publisher.subscribe(task_id, callback)

    def events_since(self, task_id: int, since: Optional[datetime] = None, *, user_id: Optional[int] = None):
        self._load_owned(task_id, user_id)
        return self.publisher.events_since(task_id, since)

    # ---------- 后台执行 ----------

    def _start_background_task(self, task_id: int, label: str, target: Callable[[], Any]) -> threading.Thread:
        """Run ``target`` on a daemon thread; failures are logged and reported as error events."""

        def _wrapper() -> None:
            try:
                target()
            except BookCreationError as exc:
                # 阶段失败已经记录在 stage 记录和 error 事件里
                print(f"[BACKGROUND] task={task_id} {label} stopped: {exc.code}: {exc.message}")
            except Exception as exc:
                self._mark_background_error(task_id, label, exc)

        thread = threading.Thread(target=_wrapper, name=f"book-{label}-{task_id}", daemon=True)
        thread.start()
        return thread

    def _mark_background_error(self, task_id: int, label: str, exc: Exception) -> None:
        print(f"[ERROR] task={task_id} background {label} crashed: {exc!r}")
        self._publish(
            task_id,
            ProgressEventKind.ERROR,
            error=f"Background {label} failed: {exc}",
            code="internal_error",
        )

    # ---------- 任务 CRUD ----------

    def create_task(
        self,
        user_id: int,
        *,
        prompt_group_id: Optional[int] = None,
        prompt_config: Optional[Dict[str, Any]] = None,
        task_config: Optional[Dict[str, Any]] = None,
        user_parameters: Optional[Dict[str, Any]] = None,
        model_id: Optional[str] = None,
        auto_execute: bool = False,
        background: bool = False,
    ) -> Task:
        """
        创建任务。prompt_group_id 和 prompt_config 二选一。

        auto_execute 时立刻执行 stage_1_idea：background=True 在后台线程里跑，
        否则同步执行，阶段失败会记录在任务上，但任务本身仍然创建成功。
        """
        if prompt_group_id is None and prompt_config is None:
            raise InvalidConfig("Either prompt_group_id or prompt_config is required")
        if prompt_group_id is not None and prompt_config is not None:
            raise InvalidConfig("Provide prompt_group_id or prompt_config, not both")
        if prompt_group_id is not None:
            config = self.prompts.group(prompt_group_id)
        else:
            config = PromptConfig.from_dict(prompt_config)
        self._validate_prompt_ids(config)
        cfg = TaskConfig.merged(task_config)
        if user_parameters is not None and not isinstance(user_parameters, dict):
            raise ValidationError("user_parameters must be an object")

        active = self.store.count_active_tasks(user_id)
        if active >= self.cfg.max_active_tasks:
            raise TaskLimitExceeded(
                f"User {user_id} already has {active} active tasks (limit {self.cfg.max_active_tasks})"
            )

        task = self.store.create_task(
            Task(
                user_id=user_id,
                model_id=model_id or self.cfg.model_id,
                prompt_group_id=prompt_group_id,
                prompt_config=config,
                task_config=cfg,
                processed_data=ProcessedData(user_parameters=dict(user_parameters or {})),
            )
        )
        print(f"[TASK] created task={task.id} user={user_id} group={prompt_group_id} auto_execute={auto_execute}")
        self._publish(task.id, ProgressEventKind.TASK_CREATED, message="Task created")

        if auto_execute:
            task_id = task.id
            if background:
                self._start_background_task(task_id, "auto-execute", lambda: self.execute_stage(task_id))
            else:
                try:
                    self.execute_stage(task_id)
                except BookCreationError as exc:
                    print(f"[TASK] task={task_id} auto-execute failed: {exc.code}: {exc.message}")
            return self.store.load_task(task_id)
        return task

    def get_task(self, task_id: int, *, user_id: Optional[int] = None) -> Task:
        return self._load_owned(task_id, user_id)

    def list_tasks(
        self,
        user_id: int,
        *,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        return self.store.list_tasks(user_id, status=status, page=page, limit=limit)

    def list_stage_records(
        self,
        task_id: int,
        stage_type: Union[StageType, str, None] = None,
        *,
        user_id: Optional[int] = None,
    ) -> List[StageRecord]:
        self._load_owned(task_id, user_id)
        return self.store.list_stage_records(task_id, _coerce_stage(stage_type))

    def get_task_progress(self, task_id: int, *, user_id: Optional[int] = None) -> Dict[str, Any]:
        task = self._load_owned(task_id, user_id)
        completed = self.store.completed_stages(task_id)
        stages = []
        for stage in STAGE_SEQUENCE:
            if stage in completed:
                state = "completed"
            elif stage == task.current_stage and task.lifecycle == Lifecycle.RUNNING:
                state = "in_progress"
            elif stage == StageType.REVIEW and not task.task_config.enable_review:
                state = "disabled"
            else:
                state = "pending"
            stages.append({"stage": stage.value, "status": state})

        chapters = {"total": 0, "generated": 0}
        if task.novel_id is not None:
            rows = self.content.list_chapters(task.novel_id)
            chapters = {"total": len(rows), "generated": sum(1 for c in rows if c["content"])}

        overall = 100 if task.outcome == TaskOutcome.COMPLETED else 20 * len(completed)
        return {
            "task_id": task.id,
            "status": task.status.value,
            "current_stage": task.current_stage.value,
            "overall_progress": overall,
            "completed_stages": [s.value for s in STAGE_SEQUENCE if s in completed],
            "stages": stages,
            "chapters": chapters,
            "busy": self.is_busy(task_id),
            "total_characters_consumed": task.total_characters_consumed,
        }

    # ---------- 阶段执行 ----------

    def _resolve_stage(self, task: Task, requested: Optional[StageType]) -> StageType:
        self._ensure_active(task)
        if task.lifecycle == Lifecycle.WAITING_FOR_CONTINUE:
            if requested == task.current_stage:
                raise StageMismatch(
                    f"{requested.value} is already completed; use optimize to revise it",
                    task_id=task.id,
                    stage=requested.value,
                )
            target = task.current_stage.next()
            if target is None:
                raise InvalidTransition("No stage left to execute", task_id=task.id)
            if requested is not None and requested != target:
                raise StageMismatch(
                    f"Next stage is {target.value}, not {requested.value}",
                    task_id=task.id,
                    stage=requested.value,
                )
            if task.current_stage == StageType.TITLE and (
                task.awaiting_title_selection or not task.processed_data.selected_title
            ):
                raise TitleNotSelected(
                    "Select a title before continuing to the outline stage",
                    task_id=task.id,
                    stage=StageType.TITLE.value,
                )
            return target
        if requested is not None and requested != task.current_stage:
            raise StageMismatch(
                f"Task is at {task.current_stage.value}, not {requested.value}",
                task_id=task.id,
                stage=requested.value,
            )
        return task.current_stage

    def _check_preconditions(self, task: Task, stage: StageType) -> None:
        data = task.processed_data
        if stage == StageType.TITLE and not data.brainstorm:
            raise ValidationError("Title stage needs the idea stage output", task_id=task.id, stage=stage.value)
        if stage == StageType.OUTLINE and not (data.selected_title and task.novel_id):
            raise ValidationError("Outline stage needs a selected title", task_id=task.id, stage=stage.value)
        if stage in (StageType.CONTENT, StageType.REVIEW):
            if task.novel_id is None or not self.content.list_chapters(task.novel_id):
                raise ValidationError("Novel has no chapters yet", task_id=task.id, stage=stage.value)

    @staticmethod
    def _transition_after(task: Task, stage: StageType):
        if stage in STAGES_REQUIRING_CONTINUE:
            return Lifecycle.WAITING_FOR_CONTINUE, stage
        target = stage.next()
        if stage == StageType.CONTENT and not task.task_config.enable_review:
            target = None
        if target is None:
            return Lifecycle.TERMINAL, stage
        return Lifecycle.RUNNING, target

    def execute_stage(
        self,
        task_id: int,
        stage_type: Union[StageType, str, None] = None,
        *,
        user_id: Optional[int] = None,
    ) -> StageResult:
        """
        执行当前阶段；任务处于 waiting_next_stage 时执行下一阶段（即 continue）。
        """
        return self._run_stage(task_id, _coerce_stage(stage_type), user_id=user_id, streamed=False)

    def execute_stage_stream(
        self,
        task_id: int,
        stage_type: Union[StageType, str, None] = None,
        on_chunk: Optional[StreamObserver] = None,
        *,
        user_id: Optional[int] = None,
    ) -> StageResult:
        """
        流式执行（仅 stage_1 / stage_2）。on_chunk 依次收到
        {"type": "chunk", "content": ...} 和最后一条 {"type": "metadata", ...}；
        on_chunk 抛 StreamCancelled 表示观察者已断开，本次输出丢弃，任务保持原阶段。
        """
        return self._run_stage(
            task_id, _coerce_stage(stage_type), user_id=user_id, streamed=True, on_chunk=on_chunk
        )

    def _run_stage(
        self,
        task_id: int,
        requested: Optional[StageType],
        *,
        user_id: Optional[int],
        streamed: bool,
        on_chunk: Optional[StreamObserver] = None,
    ) -> StageResult:
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            stage = self._resolve_stage(task, requested)
            if streamed and stage not in STREAMABLE_STAGES:
                raise StreamingNotSupported(f"{stage.value} does not support streaming", task_id=task_id)
            prompt_ids = [require_prompt(task, name) for name in STAGE_PROMPT_FIELDS[stage]]
            self._check_preconditions(task, stage)
            op = self._claim(task_id, f"stage:{stage.value}")
            try:
                stale = self.store.skip_stale_records(task_id)
                if stale:
                    print(f"[STAGE] task={task_id} skipped {stale} stale stage records")
                if task.lifecycle == Lifecycle.WAITING_FOR_CONTINUE:
                    task.current_stage = stage
                    task.lifecycle = Lifecycle.RUNNING
                task.active_operation = stage.value
                task.error_message = None
                self.store.save_task(task)

                context: Dict[str, Any] = {}
                history: List[Dict[str, str]] = []
                if stage in STREAMABLE_STAGES:
                    context = self.executor.build_context(task, stage)
                    history = self.executor.history_from_records(
                        self.store.list_stage_records(task_id), task.task_config.history_message_limit
                    )
                retries = self.store.count_failed_attempts(task_id, stage)
                record = self.store.append_stage_record(
                    StageRecord(
                        task_id=task_id,
                        stage_type=stage,
                        input_data={
                            "mode": "execute",
                            "streamed": streamed,
                            "request": self.executor.describe_request(stage, context),
                            "user_parameters": task.processed_data.user_parameters,
                        },
                        prompt_id=prompt_ids[0],
                        retry_count=retries,
                    )
                )
            except Exception:
                self._release(task_id, op)
                raise

        try:
            record.status = StageStatus.PROCESSING
            record = self.store.update_stage_record(record)
            self._publish(
                task_id,
                ProgressEventKind.STAGE_STARTED,
                stage=stage,
                message=f"{stage.value} started",
                retry_count=retries,
                streamed=streamed,
            )
            print(f"[STAGE] task={task_id} {stage.value} started (retry={retries}, streamed={streamed})")
            try:
                work = self._perform_stage(
                    task, stage, prompt_ids[0], context, history, op, streamed=streamed, on_chunk=on_chunk
                )
            except OperationCancelled as exc:
                self._abandon_record(task_id, record, "cancelled: task was cancelled while the stage was running")
                raise TaskTerminated(
                    f"Task {task_id} was cancelled while {stage.value} was running",
                    task_id=task_id,
                    stage=stage.value,
                ) from exc
            except StreamCancelled:
                self._abandon_record(task_id, record, "stream interrupted by the client")
                print(f"[STAGE] task={task_id} {stage.value} stream interrupted; output discarded")
                raise
            except Exception as exc:
                self._fail_stage(task_id, stage, record, exc)
                if isinstance(exc, BookCreationError):
                    raise exc.with_context(task_id=task_id, stage=stage.value)
                raise
            return self._commit_stage(task_id, stage, record, work)
        finally:
            self._release(task_id, op)

    def _perform_stage(
        self,
        task: Task,
        stage: StageType,
        prompt_id: int,
        context: Dict[str, Any],
        history: List[Dict[str, str]],
        op: _Operation,
        *,
        streamed: bool,
        on_chunk: Optional[StreamObserver],
    ) -> _StageWork:
        if stage in STREAMABLE_STAGES:
            output, completion = self.executor.execute(
                task,
                stage,
                prompt_id,
                context,
                history=history,
                streamed=streamed,
                on_chunk=_chunk_forwarder(on_chunk),
                cancel_event=op.cancel_event,
            )
            if streamed and on_chunk is not None:
                on_chunk({"type": "metadata", **completion.metadata()})
            on_commit = self._attach_novel if stage == StageType.TITLE else None
            return _StageWork(
                output=output,
                characters=completion.characters_consumed,
                text=completion.text,
                on_commit=on_commit,
            )

        if stage == StageType.OUTLINE:
            draft = self.outline_builder.build(task, cancel_event=op.cancel_event)
            return _StageWork(
                output=draft.to_output(),
                characters=draft.characters_consumed,
                on_commit=lambda t: self.outline_builder.materialize(t, draft),
            )

        if stage == StageType.CONTENT:
            summary = self.batch.generate_chapters(
                task,
                generate_all=True,
                cancel_event=op.cancel_event,
                on_progress=self._progress_callback(task.id, stage),
            )
            if summary.total_requested and not summary.total_generated:
                first = summary.failed_chapters[0]["error"] if summary.failed_chapters else "unknown error"
                raise UpstreamError(
                    f"All {summary.total_requested} chapters failed to generate: {first}",
                    task_id=task.id,
                    stage=stage.value,
                )
            return _StageWork(
                output=ContentOutput(generation_summary=summary.to_dict()),
                characters=summary.characters_consumed,
            )

        review_summary, consumed = self.review_optimizer.review_all(
            task,
            cancel_event=op.cancel_event,
            on_progress=self._progress_callback(task.id, stage),
        )
        return _StageWork(output=ReviewOutput(review_summary=review_summary), characters=consumed)

    def _attach_novel(self, task: Task) -> Dict[str, Any]:
        """标题阶段完成时建立（或更新）小说记录，名字先用第一个候选标题。"""
        data = task.processed_data
        titles = data.titles or []
        name = data.selected_title or (titles[0] if titles else "未命名")
        if task.novel_id is None:
            novel = self.content.create_novel(task.user_id, name=name, description=data.synopsis or "")
            task.novel_id = novel["id"]
        else:
            self.content.update_novel(task.novel_id, description=data.synopsis or "")
        return {"novel_id": task.novel_id}

    def _commit_stage(self, task_id: int, stage: StageType, record: StageRecord, work: _StageWork) -> StageResult:
        with self._task_lock(task_id):
            task = self.store.load_task(task_id)
            if task.is_terminal:
                self._skip_record(record, "discarded: task was cancelled while the stage was running")
                raise TaskTerminated(
                    f"Task {task_id} was cancelled while {stage.value} was running",
                    task_id=task_id,
                    stage=stage.value,
                )
            task.processed_data = merge_stage_output(task.processed_data, work.output)
            extra = work.on_commit(task) if work.on_commit is not None else {}
            task.add_consumption(work.characters)
            task.active_operation = None
            task.error_message = None

            lifecycle, next_stage = self._transition_after(task, stage)
            task.current_stage = next_stage
            if lifecycle == Lifecycle.TERMINAL:
                task.lifecycle = Lifecycle.TERMINAL
                task.outcome = TaskOutcome.COMPLETED
                task.paused_from = None
                task.completed_at = _utcnow()
            elif task.lifecycle == Lifecycle.PAUSED:
                # 运行中被暂停：结果照常提交，恢复后落到阶段完成后的状态
                task.paused_from = lifecycle
            else:
                task.lifecycle = lifecycle
            if stage == StageType.TITLE:
                task.awaiting_title_selection = True

            output = asdict(work.output)
            record.status = StageStatus.COMPLETED
            record.output_data = {"text": work.text, "result": output, **extra}
            record.characters_consumed = work.characters
            record = self.store.commit_stage(task, record)

        print(
            f"[STAGE] task={task_id} {stage.value} completed chars={work.characters} "
            f"-> {task.status.value}"
        )
        self._publish(
            task_id,
            ProgressEventKind.STAGE_COMPLETED,
            stage=stage,
            result=output,
            characters_consumed=work.characters,
            status=task.status.value,
        )
        if task.outcome == TaskOutcome.COMPLETED:
            self._publish(
                task_id,
                ProgressEventKind.TASK_COMPLETED,
                message="Task completed",
                total_characters_consumed=task.total_characters_consumed,
            )
        return StageResult(
            task=task,
            stage=stage,
            output=output,
            characters_consumed=work.characters,
            record=record,
        )

    def _fail_stage(self, task_id: int, stage: StageType, record: StageRecord, exc: Exception) -> None:
        message = exc.message if isinstance(exc, BookCreationError) else f"{type(exc).__name__}: {exc}"
        code = exc.code if isinstance(exc, BookCreationError) else "internal_error"
        task_failed = False
        with self._task_lock(task_id):
            task = self.store.load_task(task_id)
            record.status = StageStatus.FAILED
            record.error_message = message
            record.retry_count += 1
            if task.is_terminal:
                self.store.update_stage_record(record)
            else:
                task.active_operation = None
                task.error_message = message
                if isinstance(exc, UpstreamError) and record.retry_count >= self.cfg.max_retries:
                    task.lifecycle = Lifecycle.TERMINAL
                    task.outcome = TaskOutcome.FAILED
                    task.paused_from = None
                    task.completed_at = _utcnow()
                    task_failed = True
                self.store.commit_stage(task, record)

        print(f"[STAGE] task={task_id} {stage.value} failed (attempt {record.retry_count}): {message}")
        self._publish(
            task_id,
            ProgressEventKind.ERROR,
            stage=stage,
            error=message,
            code=code,
            retry_count=record.retry_count,
        )
        if task_failed:
            self._publish(
                task_id,
                ProgressEventKind.TASK_FAILED,
                stage=stage,
                error=message,
                retry_count=record.retry_count,
            )

    def _skip_record(self, record: StageRecord, reason: str) -> None:
        record.status = StageStatus.SKIPPED
        record.error_message = reason
        self.store.update_stage_record(record)

    def _abandon_record(self, task_id: int, record: StageRecord, reason: str) -> None:
        """放弃本次调用：记录标记为 skipped，任务停在原阶段，不计入重试次数。"""
        with self._task_lock(task_id):
            self._skip_record(record, reason)
            task = self.store.load_task(task_id)
            if not task.is_terminal and task.active_operation is not None:
                task.active_operation = None
                self.store.save_task(task)

    # ---------- optimize ----------

    def optimize_stage(
        self,
        task_id: int,
        stage_type: Union[StageType, str],
        user_feedback: str,
        *,
        user_id: Optional[int] = None,
    ) -> StageResult:
        """按用户意见重新生成一个已完成阶段（stage_1 / stage_2）的产出，任务状态不变。"""
        return self._run_optimize(task_id, stage_type, user_feedback, user_id=user_id, streamed=False)

    def optimize_stage_stream(
        self,
        task_id: int,
        stage_type: Union[StageType, str],
        user_feedback: str,
        on_chunk: Optional[StreamObserver] = None,
        *,
        user_id: Optional[int] = None,
    ) -> StageResult:
        return self._run_optimize(
            task_id, stage_type, user_feedback, user_id=user_id, streamed=True, on_chunk=on_chunk
        )

    def _run_optimize(
        self,
        task_id: int,
        stage_type: Union[StageType, str],
        user_feedback: str,
        *,
        user_id: Optional[int],
        streamed: bool,
        on_chunk: Optional[StreamObserver] = None,
    ) -> StageResult:
        stage = _coerce_stage(stage_type)
        if stage is None:
            raise ValidationError("stage_type is required for optimize")
        feedback = (user_feedback or "").strip()
        if not feedback:
            raise ValidationError("user_feedback must not be empty", task_id=task_id, stage=stage.value)
        if stage not in OPTIMIZE_PROMPT_FIELDS:
            raise ValidationError(f"{stage.value} does not support optimize", task_id=task_id, stage=stage.value)

        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            if stage not in self.store.completed_stages(task_id) or not task.processed_data.has_output(stage):
                raise StageNotCompleted(
                    f"{stage.value} has not completed yet; nothing to optimize",
                    task_id=task_id,
                    stage=stage.value,
                )
            prompt_id = require_prompt(task, OPTIMIZE_PROMPT_FIELDS[stage])
            op = self._claim(task_id, f"optimize:{stage.value}")
            try:
                context = self.executor.build_optimize_context(task, stage, feedback)
                history = self.executor.history_from_records(
                    self.store.list_stage_records(task_id), task.task_config.history_message_limit
                )
                record = self.store.append_stage_record(
                    StageRecord(
                        task_id=task_id,
                        stage_type=stage,
                        status=StageStatus.PROCESSING,
                        input_data={
                            "mode": "optimize",
                            "streamed": streamed,
                            "feedback": feedback,
                            "request": self.executor.describe_request(stage, context),
                        },
                        prompt_id=prompt_id,
                    )
                )
            except Exception:
                self._release(task_id, op)
                raise

        try:
            print(f"[OPTIMIZE] task={task_id} {stage.value} started (streamed={streamed})")
            try:
                output, completion = self.executor.execute(
                    task,
                    stage,
                    prompt_id,
                    context,
                    history=history,
                    streamed=streamed,
                    on_chunk=_chunk_forwarder(on_chunk),
                    cancel_event=op.cancel_event,
                )
                if streamed and on_chunk is not None:
                    on_chunk({"type": "metadata", **completion.metadata()})
            except OperationCancelled as exc:
                self._abandon_record(task_id, record, "cancelled: task was cancelled during optimize")
                raise TaskTerminated(
                    f"Task {task_id} was cancelled during optimize", task_id=task_id, stage=stage.value
                ) from exc
            except StreamCancelled:
                self._abandon_record(task_id, record, "stream interrupted by the client")
                raise
            except Exception as exc:
                message = exc.message if isinstance(exc, BookCreationError) else str(exc)
                record.status = StageStatus.FAILED
                record.error_message = message
                self.store.update_stage_record(record)
                print(f"[OPTIMIZE] task={task_id} {stage.value} failed: {message}")
                self._publish(task_id, ProgressEventKind.ERROR, stage=stage, error=message, mode="optimize")
                if isinstance(exc, BookCreationError):
                    raise exc.with_context(task_id=task_id, stage=stage.value)
                raise

            with self._task_lock(task_id):
                task = self.store.load_task(task_id)
                if task.is_terminal:
                    self._skip_record(record, "discarded: task was cancelled during optimize")
                    raise TaskTerminated(f"Task {task_id} was cancelled during optimize", task_id=task_id)
                task.processed_data = merge_stage_output(task.processed_data, output)
                task.add_consumption(completion.characters_consumed)
                if stage == StageType.TITLE and task.current_stage == StageType.TITLE:
                    # 候选标题换了一批，需要重新选
                    task.processed_data = replace(task.processed_data, selected_title=None)
                    task.awaiting_title_selection = True
                result = asdict(output)
                record.status = StageStatus.COMPLETED
                record.output_data = {"text": completion.text, "result": result}
                record.characters_consumed = completion.characters_consumed
                record = self.store.commit_stage(task, record)

            print(f"[OPTIMIZE] task={task_id} {stage.value} done chars={completion.characters_consumed}")
            self._publish(
                task_id,
                ProgressEventKind.OPTIMIZE_COMPLETED,
                stage=stage,
                result=result,
                characters_consumed=completion.characters_consumed,
            )
            return StageResult(
                task=task,
                stage=stage,
                output=result,
                characters_consumed=completion.characters_consumed,
                record=record,
            )
        finally:
            self._release(task_id, op)

    # ---------- pause / resume / cancel ----------

    def pause_task(self, task_id: int, *, user_id: Optional[int] = None) -> Task:
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            if task.lifecycle != Lifecycle.RUNNING:
                raise InvalidTransition(
                    f"Only a generating task can be paused (task is {task.status.value})", task_id=task_id
                )
            task.paused_from = task.lifecycle
            task.lifecycle = Lifecycle.PAUSED
            self.store.save_task(task)
        print(f"[TASK] task={task_id} paused at {task.current_stage.value}")
        self._publish(task_id, ProgressEventKind.TASK_PAUSED, stage=task.current_stage, message="Task paused")
        return task

    def resume_task(self, task_id: int, *, user_id: Optional[int] = None) -> Task:
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            if task.lifecycle != Lifecycle.PAUSED:
                raise InvalidTransition(f"Task {task_id} is not paused", task_id=task_id)
            task.lifecycle = task.paused_from or Lifecycle.RUNNING
            task.paused_from = None
            self.store.save_task(task)
        print(f"[TASK] task={task_id} resumed -> {task.status.value}")
        self._publish(task_id, ProgressEventKind.TASK_RESUMED, stage=task.current_stage, message="Task resumed")
        return task

    def cancel_task(self, task_id: int, *, user_id: Optional[int] = None) -> Task:
        """
        取消任务（终态）。进行中的操作会收到取消信号，它的产出被丢弃。
        """
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            task.lifecycle = Lifecycle.TERMINAL
            task.outcome = TaskOutcome.CANCELLED
            task.paused_from = None
            task.active_operation = None
            task.completed_at = _utcnow()
            self.store.save_task(task)
            op = self._inflight.get(task_id)
            if op is not None:
                op.cancel_event.set()
        print(f"[TASK] task={task_id} cancelled (in-flight={op.kind if op else None})")
        self._publish(task_id, ProgressEventKind.TASK_CANCELLED, stage=task.current_stage, message="Task cancelled")
        return task

    # ---------- 标题 / 配置 ----------

    def select_title(
        self,
        task_id: int,
        title: str,
        *,
        synopsis: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Task:
        title = (title or "").strip()
        if not title:
            raise ValidationError("title must not be empty", task_id=task_id)
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            self._ensure_idle(task_id)
            if not task.processed_data.has_output(StageType.TITLE):
                raise StageNotCompleted(
                    "Title stage has not completed yet", task_id=task_id, stage=StageType.TITLE.value
                )
            if task.current_stage != StageType.TITLE:
                raise InvalidTransition(
                    "The title can only be chosen before the outline stage starts",
                    task_id=task_id,
                    stage=task.current_stage.value,
                )
            changes: Dict[str, Any] = {"selected_title": title}
            if synopsis is not None and synopsis.strip():
                changes["synopsis"] = synopsis.strip()
            task.processed_data = replace(task.processed_data, **changes)
            task.awaiting_title_selection = False
            if task.novel_id is not None:
                self.content.update_novel(
                    task.novel_id, name=title, description=task.processed_data.synopsis or ""
                )
            self.store.save_task(task)
        print(f"[TASK] task={task_id} selected title {title!r}")
        self._publish(
            task_id,
            ProgressEventKind.TITLE_SELECTED,
            stage=StageType.TITLE,
            result={"selected_title": title, "novel_id": task.novel_id},
        )
        return task

    def update_prompt_config(
        self,
        task_id: int,
        changes: Dict[str, Any],
        *,
        user_id: Optional[int] = None,
    ) -> Task:
        """
        修改自定义 prompt。使用 prompt 组的任务不能改；已经跑过的阶段的 prompt 也不能改。
        """
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            self._ensure_idle(task_id)
            if task.prompt_group_id is not None:
                raise ValidationError(
                    f"Task uses prompt group {task.prompt_group_id}; its prompts cannot be edited",
                    task_id=task_id,
                )
            requested = PromptConfig.from_dict(changes).non_empty()
            if not requested:
                raise ValidationError("No prompt changes given", task_id=task_id)
            completed = self.store.completed_stages(task_id)
            for stage, names in STAGE_PROMPT_FIELDS.items():
                locked = [name for name in names if name in requested]
                if locked and stage in completed:
                    raise ValidationError(
                        f"{stage.value} has already completed; cannot change {', '.join(locked)}",
                        task_id=task_id,
                        stage=stage.value,
                    )
            updated = task.prompt_config.updated(requested)
            self._validate_prompt_ids(updated)
            task.prompt_config = updated
            self.store.save_task(task)
        print(f"[TASK] task={task_id} prompt config updated: {sorted(requested)}")
        return task

    # ---------- 章节 ----------

    def _side_operation(
        self,
        task_id: int,
        kind: str,
        work: Callable[[Task, _Operation], Any],
        *,
        user_id: Optional[int] = None,
        commit: Optional[Callable[[Task, Any], None]] = None,
        consumed: Callable[[Any], int] = lambda result: 0,
    ) -> Any:
        """
        章节级操作的公共流程：校验 -> 占用任务 -> 锁外调用模型 -> 锁内累计字符数。
        """
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_active(task)
            self._ensure_outline_ready(task)
            op = self._claim(task_id, kind)
        try:
            try:
                result = work(task, op)
            except OperationCancelled as exc:
                raise TaskTerminated(
                    f"Task {task_id} was cancelled during {kind}", task_id=task_id
                ) from exc
            except BookCreationError as exc:
                self._record_partial_consumption(task_id, exc.characters_consumed)
                raise
            with self._task_lock(task_id):
                task = self.store.load_task(task_id)
                if task.is_terminal:
                    raise TaskTerminated(f"Task {task_id} was cancelled during {kind}", task_id=task_id)
                task.add_consumption(consumed(result))
                if commit is not None:
                    commit(task, result)
                self.store.save_task(task)
            return result
        finally:
            self._release(task_id, op)

    def _record_partial_consumption(self, task_id: int, characters: int) -> None:
        """失败的章节操作：已经落库的调用仍然要计入字符数。"""
        if characters <= 0:
            return
        with self._task_lock(task_id):
            task = self.store.load_task(task_id)
            if task.is_terminal:
                return
            task.add_consumption(characters)
            self.store.save_task(task)
        print(f"[CHAPTER] task={task_id} kept {characters} chars consumed before the failure")

    def _run_cycle(
        self,
        task_id: int,
        chapter_order: Optional[int],
        *,
        continuing: bool,
        user_id: Optional[int],
    ) -> CycleResult:
        def _work(task: Task, op: _Operation) -> CycleResult:
            for name in CYCLE_PROMPT_FIELDS:
                require_prompt(task, name)
            order = self.cycle.resolve_order(task, chapter_order, continuing=continuing)
            try:
                return self.cycle.run(task, order, cancel_event=op.cancel_event)
            except OperationCancelled:
                raise
            except BookCreationError as exc:
                self._publish(
                    task_id,
                    ProgressEventKind.CHAPTER_GENERATION_FAILED,
                    stage=StageType.CONTENT,
                    error=exc.message,
                    chapter_order=order,
                )
                raise

        def _commit(task: Task, result: CycleResult) -> None:
            task.processed_data = replace(
                task.processed_data, last_cycle_chapter_order=result.chapter["order"]
            )

        result = self._side_operation(
            task_id,
            "chapter_cycle",
            _work,
            user_id=user_id,
            commit=_commit,
            consumed=lambda r: r.characters_consumed,
        )
        self._publish(
            task_id,
            ProgressEventKind.CHAPTER_GENERATION_COMPLETED,
            stage=StageType.CONTENT,
            result=result.to_dict(),
        )
        return result

    def generate_next_chapter(
        self,
        task_id: int,
        chapter_order: Optional[int] = None,
        *,
        user_id: Optional[int] = None,
    ) -> CycleResult:
        """逐章循环：生成指定章节（默认第一个还没有正文的章节）-> 摘要 -> 审核。"""
        return self._run_cycle(task_id, chapter_order, continuing=False, user_id=user_id)

    def continue_next_chapter(self, task_id: int, *, user_id: Optional[int] = None) -> CycleResult:
        return self._run_cycle(task_id, None, continuing=True, user_id=user_id)

    def generate_chapters(
        self,
        task_id: int,
        chapter_ids: Optional[List[int]] = None,
        *,
        generate_all: bool = False,
        user_id: Optional[int] = None,
    ) -> GenerationSummary:
        if not chapter_ids and not generate_all:
            raise ValidationError("Either chapter_ids or generate_all must be provided", task_id=task_id)

        def _work(task: Task, op: _Operation) -> GenerationSummary:
            require_prompt(task, "content_prompt_id")
            return self.batch.generate_chapters(
                task,
                chapter_ids=chapter_ids,
                generate_all=generate_all,
                cancel_event=op.cancel_event,
                on_progress=self._progress_callback(task_id, StageType.CONTENT),
            )

        summary = self._side_operation(
            task_id,
            "generate_chapters",
            _work,
            user_id=user_id,
            consumed=lambda s: s.characters_consumed,
        )
        self._publish(
            task_id,
            ProgressEventKind.CHAPTER_GENERATION_COMPLETED,
            stage=StageType.CONTENT,
            result=summary.to_dict(),
        )
        return summary

    def regenerate_chapter(self, task_id: int, chapter_id: int, *, user_id: Optional[int] = None) -> Dict[str, Any]:
        summary = self.generate_chapters(task_id, [chapter_id], user_id=user_id)
        if summary.failed_chapters:
            error = summary.failed_chapters[0]["error"]
            raise UpstreamError(f"Chapter {chapter_id} failed to regenerate: {error}", task_id=task_id)
        return self.content.get_chapter(chapter_id)

    def review_chapter(self, task_id: int, chapter_id: int, *, user_id: Optional[int] = None) -> ReviewReport:
        def _work(task: Task, op: _Operation):
            chapter = self._chapter_for_task(task, chapter_id)
            if not chapter["content"]:
                raise ValidationError(f"Chapter {chapter_id} has no content to review", task_id=task_id)
            return self.reviewer.review(task, chapter, cancel_event=op.cancel_event)

        report, completion = self._side_operation(
            task_id,
            "review_chapter",
            _work,
            user_id=user_id,
            consumed=lambda r: r[1].characters_consumed,
        )
        print(f"[CHAPTER] task={task_id} chapter={chapter_id} reviewed score={report.score:g}")
        return report

    def optimize_chapter(
        self,
        task_id: int,
        chapter_id: int,
        *,
        review_report: Optional[Dict[str, Any]] = None,
        feedback: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """按审核报告和/或用户意见重写一章，覆盖正文。"""
        if not review_report and not (feedback or "").strip():
            raise ValidationError("Either review_report or feedback is required", task_id=task_id)
        report = ReviewReport.from_dict({**review_report, "chapter_id": chapter_id}) if review_report else None

        def _work(task: Task, op: _Operation):
            chapter = self._chapter_for_task(task, chapter_id)
            if not chapter["content"]:
                raise ValidationError(f"Chapter {chapter_id} has no content to optimize", task_id=task_id)
            completion = self.writer.optimize(
                task, chapter, report=report, feedback=feedback, cancel_event=op.cancel_event
            )
            updated = self.content.update_chapter(chapter_id, content=completion.text.strip())
            self.content.mark_chapter_node(task.id, chapter_id, OutlineNodeStatus.OPTIMIZED)
            return updated, completion.characters_consumed

        chapter, _ = self._side_operation(
            task_id,
            "optimize_chapter",
            _work,
            user_id=user_id,
            consumed=lambda r: r[1],
        )
        print(f"[CHAPTER] task={task_id} chapter={chapter_id} optimized ({chapter['word_count']} 字)")
        return chapter

    def update_chapter(
        self,
        task_id: int,
        chapter_id: int,
        *,
        title: Optional[str] = None,
        content: Optional[str] = None,
        summary: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        if title is None and content is None and summary is None:
            raise ValidationError("Nothing to update", task_id=task_id)
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            self._ensure_idle(task_id)
            self._chapter_for_task(task, chapter_id)
            return self.content.update_chapter(chapter_id, title=title, content=content, summary=summary)

    def list_chapters(self, task_id: int, *, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        task = self._load_owned(task_id, user_id)
        if task.novel_id is None:
            return []
        return self.content.list_chapters(task.novel_id)

    # ---------- 大纲 ----------

    def get_outline(self, task_id: int, *, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        self._load_owned(task_id, user_id)
        return [node.to_dict() for node in self.content.get_outline_tree(task_id)]

    def update_outline_node(
        self,
        task_id: int,
        node_id: int,
        *,
        title: Optional[str] = None,
        content: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        if title is None and content is None:
            raise ValidationError("Nothing to update", task_id=task_id)
        if title is not None and not title.strip():
            raise ValidationError("title must not be empty", task_id=task_id)
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            self._ensure_idle(task_id)
            node = self.content.update_outline_node(
                task_id, node_id, title=title, content=content, status=OutlineNodeStatus.OPTIMIZED
            )
        return node.to_dict()

    def sync_outline_to_novel(self, task_id: int, *, user_id: Optional[int] = None) -> Dict[str, int]:
        """
        把（用户编辑过的）大纲同步到小说结构：已关联的卷 / 章节更新标题和简介，
        没有关联的节点新建卷 / 章节（新章节追加在全书末尾）。
        """
        counts = {"volumes_updated": 0, "volumes_created": 0, "chapters_updated": 0, "chapters_created": 0}
        with self._task_lock(task_id):
            task = self._load_owned(task_id, user_id)
            self._ensure_not_terminal(task)
            self._ensure_idle(task_id)
            if task.novel_id is None:
                raise InvalidTransition("Task has no novel yet", task_id=task_id)
            for main in self.content.get_outline_tree(task_id):
                for volume_node in main.children:
                    if volume_node.volume_id is not None:
                        self.content.update_volume(
                            volume_node.volume_id, name=volume_node.title, description=volume_node.content
                        )
                        counts["volumes_updated"] += 1
                    else:
                        volume = self.content.create_volume(
                            task.novel_id, volume_node.title, volume_node.content
                        )
                        self.content.update_outline_node(task_id, volume_node.id, volume_id=volume["id"])
                        volume_node.volume_id = volume["id"]
                        counts["volumes_created"] += 1
                    for chapter_node in volume_node.children:
                        if chapter_node.chapter_id is not None:
                            self.content.update_chapter(
                                chapter_node.chapter_id, title=chapter_node.title, outline=chapter_node.content
                            )
                            counts["chapters_updated"] += 1
                        else:
                            chapter = self.content.create_chapter(
                                task.novel_id,
                                chapter_node.title,
                                volume_id=volume_node.volume_id,
                                outline=chapter_node.content,
                            )
                            self.content.update_outline_node(task_id, chapter_node.id, chapter_id=chapter["id"])
                            counts["chapters_created"] += 1
        print(f"[OUTLINE] task={task_id} synced to novel {task.novel_id}: {counts}")
        return counts
