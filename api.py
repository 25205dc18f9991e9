#!/usr/bin/env python3
"""
FastAPI server for the book-creation engine.

Exposes task creation, stage execution (buffered and SSE-streamed), optimize,
pause / resume / cancel, chapter and outline operations, and a WebSocket that
pushes every progress event of a task.
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from book_creation.api_models import (
    CreateTaskRequest,
    EventsResponseModel,
    ExecuteStageRequest,
    GenerateChaptersRequest,
    GenerateNextChapterRequest,
    OptimizeChapterRequest,
    OptimizeStageRequest,
    SelectTitleRequest,
    StageRecordModel,
    StageResultModel,
    TaskListModel,
    TaskModel,
    UpdateChapterRequest,
    UpdateOutlineNodeRequest,
)
from book_creation.db.db import init_db
from book_creation.errors import (
    BookCreationError,
    ConcurrencyConflict,
    NotFound,
    QuotaExceeded,
    StateError,
    StreamCancelled,
    UpstreamError,
    UpstreamTimeout,
    ValidationError,
)
from book_creation.orchestrator import StageOrchestrator, StageResult


app = FastAPI(
    title="Book Creation API",
    description="Stage orchestration for multi-stage novel creation",
    version="1.0.0",
)

origins = [
    "http://localhost:5173",                # Local frontend development
    "http://localhost:5174",                # Local frontend development (alternate port)
]
extra_origins = os.getenv("BOOK_CREATION_CORS_ORIGINS", "")
origins.extend(o.strip() for o in extra_origins.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize database
init_db()

# Initialize orchestrator (singleton)
orch = StageOrchestrator()

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

# 顺序有意义：子类在前
_STATUS_BY_ERROR = [
    (NotFound, 404),
    (ValidationError, 400),
    (StateError, 409),
    (ConcurrencyConflict, 409),
    (UpstreamTimeout, 504),
    (QuotaExceeded, 429),
    (UpstreamError, 502),
]


def get_orchestrator() -> StageOrchestrator:
    return orch


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> int:
    """
    调用方身份来自 X-User-Id 头（认证由上游网关负责）。
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="X-User-Id must be an integer")


def _http_error(exc: BookCreationError) -> HTTPException:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=exc.to_dict())
    return HTTPException(status_code=500, detail=exc.to_dict())


@app.exception_handler(BookCreationError)
async def book_creation_error_handler(request: Request, exc: BookCreationError):
    http_exc = _http_error(exc)
    print(f"[API] {request.method} {request.url.path} -> {http_exc.status_code} {exc.code}: {exc.message}")
    return await http_exception_handler(request, http_exc)


def _parse_since(ts_val: Optional[str]) -> Optional[datetime]:
    if not ts_val:
        return None
    try:
        parsed = datetime.fromisoformat(ts_val.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid 'since' timestamp: {ts_val}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _task_model(task) -> TaskModel:
    return TaskModel(**task.to_dict())


def _stage_result_model(result: StageResult) -> StageResultModel:
    return StageResultModel(**result.to_dict())


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _stream_response(run: Callable[[Callable[[Dict[str, Any]], None]], StageResult]) -> StreamingResponse:
    """
    在后台线程里执行流式阶段调用，通过 asyncio.Queue 把 chunk 转成 SSE。

    客户端断开后，下一次 on_chunk 抛 StreamCancelled，只中断这一次调用。
    """

    async def event_stream():
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        disconnected = threading.Event()

        def _put(item) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(queue.put_nowait, item)

        def on_chunk(item: Dict[str, Any]) -> None:
            if disconnected.is_set():
                raise StreamCancelled()
            payload = {k: v for k, v in item.items() if k != "type"}
            _put((item["type"], payload))

        def worker() -> None:
            try:
                result = run(on_chunk)
                _put(("done", result.to_dict()))
            except StreamCancelled:
                print("[SSE] client disconnected; stream call abandoned")
            except BookCreationError as exc:
                _put(("error", exc.to_dict()))
            except Exception as exc:
                print(f"[ERROR] stream worker crashed: {exc!r}")
                _put(("error", {"code": "internal_error", "message": str(exc)}))
            finally:
                _put(None)

        thread = threading.Thread(target=worker, name="book-sse", daemon=True)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                event, payload = item
                yield _sse(event, payload)
        finally:
            disconnected.set()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/")
def read_root() -> Dict[str, str]:
    return {"message": "Book Creation API is running"}


# ===== Tasks =====

@app.post("/book-creation/tasks", response_model=TaskModel)
def create_task(
    request: CreateTaskRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    """创建任务；auto_execute=True 时 stage_1_idea 在后台开始执行。"""
    task = orchestrator.create_task(
        user_id,
        prompt_group_id=request.prompt_group_id,
        prompt_config=request.prompt_config,
        task_config=request.task_config,
        user_parameters=request.user_parameters,
        model_id=request.model_id,
        auto_execute=request.auto_execute,
        background=True,
    )
    return _task_model(task)


@app.get("/book-creation/tasks", response_model=TaskListModel)
def list_tasks(
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskListModel:
    result = orchestrator.list_tasks(user_id, status=status, page=page, limit=limit)
    return TaskListModel(**{**result, "items": [_task_model(t) for t in result["items"]]})


@app.get("/book-creation/tasks/{task_id}", response_model=TaskModel)
def get_task(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    return _task_model(orchestrator.get_task(task_id, user_id=user_id))


@app.delete("/book-creation/tasks/{task_id}", response_model=TaskModel)
def cancel_task(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    return _task_model(orchestrator.cancel_task(task_id, user_id=user_id))


@app.get("/book-creation/tasks/{task_id}/progress")
def get_task_progress(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.get_task_progress(task_id, user_id=user_id)


@app.get("/book-creation/tasks/{task_id}/stages", response_model=List[StageRecordModel])
def list_stage_records(
    task_id: int,
    stage_type: Optional[str] = None,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> List[StageRecordModel]:
    records = orchestrator.list_stage_records(task_id, stage_type, user_id=user_id)
    return [StageRecordModel(**record.to_dict()) for record in records]


@app.get("/book-creation/tasks/{task_id}/events", response_model=EventsResponseModel)
def get_task_events(
    task_id: int,
    since: Optional[str] = None,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> EventsResponseModel:
    """断线重连后按时间补拉进度事件。"""
    events = orchestrator.events_since(task_id, _parse_since(since), user_id=user_id)
    return EventsResponseModel(task_id=task_id, events=events)


@app.patch("/book-creation/tasks/{task_id}/prompt-config", response_model=TaskModel)
def update_prompt_config(
    task_id: int,
    changes: Dict[str, Any],
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    return _task_model(orchestrator.update_prompt_config(task_id, changes, user_id=user_id))


@app.patch("/book-creation/tasks/{task_id}/title-synopsis", response_model=TaskModel)
def select_title(
    task_id: int,
    request: SelectTitleRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    task = orchestrator.select_title(task_id, request.title, synopsis=request.synopsis, user_id=user_id)
    return _task_model(task)


# ===== Stage execution =====

@app.post("/book-creation/tasks/{task_id}/execute-stage", response_model=StageResultModel)
def execute_stage(
    task_id: int,
    request: Optional[ExecuteStageRequest] = None,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> StageResultModel:
    stage_type = request.stage_type if request else None
    return _stage_result_model(orchestrator.execute_stage(task_id, stage_type, user_id=user_id))


@app.post("/book-creation/tasks/{task_id}/execute-stage/stream")
def execute_stage_stream(
    task_id: int,
    request: Optional[ExecuteStageRequest] = None,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    orchestrator.get_task(task_id, user_id=user_id)
    stage_type = request.stage_type if request else None
    return _stream_response(
        lambda on_chunk: orchestrator.execute_stage_stream(task_id, stage_type, on_chunk, user_id=user_id)
    )


@app.post("/book-creation/tasks/{task_id}/pause", response_model=TaskModel)
def pause_task(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    return _task_model(orchestrator.pause_task(task_id, user_id=user_id))


@app.post("/book-creation/tasks/{task_id}/resume", response_model=TaskModel)
def resume_task(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> TaskModel:
    return _task_model(orchestrator.resume_task(task_id, user_id=user_id))


@app.post("/book-creation/tasks/{task_id}/stages/{stage_type}/optimize", response_model=StageResultModel)
def optimize_stage(
    task_id: int,
    stage_type: str,
    request: OptimizeStageRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> StageResultModel:
    result = orchestrator.optimize_stage(task_id, stage_type, request.user_feedback, user_id=user_id)
    return _stage_result_model(result)


@app.post("/book-creation/tasks/{task_id}/stages/{stage_type}/optimize/stream")
def optimize_stage_stream(
    task_id: int,
    stage_type: str,
    request: OptimizeStageRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    orchestrator.get_task(task_id, user_id=user_id)
    return _stream_response(
        lambda on_chunk: orchestrator.optimize_stage_stream(
            task_id, stage_type, request.user_feedback, on_chunk, user_id=user_id
        )
    )


# ===== Outline =====

@app.get("/book-creation/tasks/{task_id}/outline")
def get_outline(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return orchestrator.get_outline(task_id, user_id=user_id)


@app.patch("/book-creation/tasks/{task_id}/outline-nodes/{node_id}")
def update_outline_node(
    task_id: int,
    node_id: int,
    request: UpdateOutlineNodeRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.update_outline_node(
        task_id, node_id, title=request.title, content=request.content, user_id=user_id
    )


@app.post("/book-creation/tasks/{task_id}/outline/sync-to-novel")
def sync_outline_to_novel(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, int]:
    return orchestrator.sync_outline_to_novel(task_id, user_id=user_id)


# ===== Chapters =====

@app.get("/book-creation/tasks/{task_id}/chapters")
def list_chapters(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> List[Dict[str, Any]]:
    return orchestrator.list_chapters(task_id, user_id=user_id)


@app.post("/book-creation/tasks/{task_id}/generate-chapters")
def generate_chapters(
    task_id: int,
    request: GenerateChaptersRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    summary = orchestrator.generate_chapters(
        task_id, request.chapter_ids, generate_all=request.generate_all, user_id=user_id
    )
    return summary.to_dict()


@app.post("/book-creation/tasks/{task_id}/generate-next-chapter")
def generate_next_chapter(
    task_id: int,
    request: Optional[GenerateNextChapterRequest] = None,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    chapter_order = request.chapter_order if request else None
    return orchestrator.generate_next_chapter(task_id, chapter_order, user_id=user_id).to_dict()


@app.post("/book-creation/tasks/{task_id}/continue-next-chapter")
def continue_next_chapter(
    task_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.continue_next_chapter(task_id, user_id=user_id).to_dict()


@app.post("/book-creation/tasks/{task_id}/chapters/{chapter_id}/regenerate")
def regenerate_chapter(
    task_id: int,
    chapter_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.regenerate_chapter(task_id, chapter_id, user_id=user_id)


@app.post("/book-creation/tasks/{task_id}/chapters/{chapter_id}/review")
def review_chapter(
    task_id: int,
    chapter_id: int,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.review_chapter(task_id, chapter_id, user_id=user_id).to_dict()


@app.post("/book-creation/tasks/{task_id}/chapters/{chapter_id}/optimize")
def optimize_chapter(
    task_id: int,
    chapter_id: int,
    request: OptimizeChapterRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.optimize_chapter(
        task_id,
        chapter_id,
        review_report=request.review_report,
        feedback=request.feedback,
        user_id=user_id,
    )


@app.patch("/book-creation/tasks/{task_id}/chapters/{chapter_id}")
def update_chapter(
    task_id: int,
    chapter_id: int,
    request: UpdateChapterRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orchestrator.update_chapter(
        task_id,
        chapter_id,
        title=request.title,
        content=request.content,
        summary=request.summary,
        user_id=user_id,
    )


# ===== Progress channel =====

async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@app.websocket("/ws/book-creation/{task_id}")
async def task_progress_ws(
    websocket: WebSocket,
    task_id: int,
    orchestrator: StageOrchestrator = Depends(get_orchestrator),
) -> None:
    """推送该任务的所有进度事件；事件同时落在 progress_events.jsonl，可用 /events 补拉。"""
    try:
        orchestrator.get_task(task_id)
    except NotFound:
        await websocket.close(code=4404)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _forward(record: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, record)

    unsubscribe = orchestrator.subscribe(task_id, _forward)
    print(f"[WS] task={task_id} subscriber connected")
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        while True:
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            await websocket.send_json(getter.result())
    finally:
        unsubscribe()
        receiver.cancel()
        print(f"[WS] task={task_id} subscriber disconnected")


# ===== Run Server =====

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
