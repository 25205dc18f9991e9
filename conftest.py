import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

# api.py 在 import 时就会建库；测试期间指向临时目录，不碰仓库里的 local_dev.db
_TMP_ROOT = Path(tempfile.mkdtemp(prefix="book-creation-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_ROOT / 'api.db'}")
os.environ.setdefault("BOOK_CREATION_EVENTS_DIR", str(_TMP_ROOT / "events"))

import pytest

from book_creation.config import OrchestratorConfig
from book_creation.db.content_store import ContentStore
from book_creation.db.db import make_session_factory
from book_creation.db.task_store import TaskStateStore
from book_creation.llm_service import Completion
from book_creation.message_bus import ProgressPublisher
from book_creation.orchestrator import StageOrchestrator
from book_creation.prompt_registry import PromptRegistry

REPO_ROOT = Path(__file__).resolve().parent

# prompts/library.json 里 group 1 的 prompt id
IDEA, IDEA_OPT, TITLE, TITLE_OPT, MAIN, VOLUME, CHAPTERS, CONTENT, SUMMARY, REVIEW, CHAPTER_OPT = range(1, 12)

DEFAULT_REPLIES: Dict[int, Any] = {
    IDEA: "核心设定：一个能听见时间声音的少年，在旧城区寻找失踪的父亲。",
    IDEA_OPT: "优化后的创意：少年与父亲在两条时间线上互相寻找。",
    TITLE: json.dumps({"titles": ["时间的回声", "旧城来信"], "synopsis": "少年循着时间的声音寻找父亲。"}, ensure_ascii=False),
    TITLE_OPT: json.dumps({"titles": ["回声之城", "逆时寻父"], "synopsis": "两条时间线上的互相寻找。"}, ensure_ascii=False),
    MAIN: json.dumps({"outline": [{"title": "寻父", "content": "少年踏上寻父之路"}]}, ensure_ascii=False),
    VOLUME: json.dumps({"volumes": [{"title": "第一卷 旧城", "description": "旧城区的线索"}]}, ensure_ascii=False),
    CHAPTERS: json.dumps(
        {
            "chapters": [
                {"title": "钟楼", "summary": "少年在钟楼听见异响"},
                {"title": "来信", "summary": "收到父亲多年前寄出的信"},
                {"title": "裂隙", "summary": "时间裂隙第一次出现"},
            ]
        },
        ensure_ascii=False,
    ),
    CONTENT: lambda ctx: f"第{ctx['chapter_order']}章《{ctx['chapter_title']}》正文。钟声在旧城上空回荡。",
    SUMMARY: lambda ctx: f"{ctx['chapter_title']}的摘要",
    REVIEW: json.dumps({"score": 86, "issues": [], "suggestions": ["节奏可以更紧凑"], "strengths": ["氛围好"]}, ensure_ascii=False),
    CHAPTER_OPT: "优化后的正文：钟声更急促了。",
}


class ScriptedLLM:
    """
    测试用的模型服务：和 LLMService 一样的 complete / stream 接口，回复按 prompt id 预先写好。

    - script(prompt_id, *replies) 追加一次性回复（字符串 / 异常 / callable(context)）
    - gate：设置后流式输出在第一个 chunk 之后阻塞，直到 gate 被 set
    - max_active 记录同时进行中的调用数峰值
    """

    def __init__(self) -> None:
        self.replies: Dict[int, Any] = dict(DEFAULT_REPLIES)
        self.queued: Dict[int, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0
        self.delay = 0.0
        self.gate: Optional[threading.Event] = None
        self.first_chunk_sent = threading.Event()
        self.closed_streams = 0
        self._lock = threading.Lock()

    def script(self, prompt_id: int, *replies: Any) -> None:
        self.queued.setdefault(prompt_id, []).extend(replies)

    def calls_for(self, prompt_id: int) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["prompt_id"] == prompt_id]

    def _reply(self, prompt_id: int, context: Dict[str, Any], kwargs: Dict[str, Any]) -> str:
        with self._lock:
            self.calls.append({"prompt_id": prompt_id, "context": dict(context), **kwargs})
            queue = self.queued.get(prompt_id)
            item = queue.pop(0) if queue else self.replies[prompt_id]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(context)
        return item

    def _enter(self) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def _completion(self, text: str, context: Dict[str, Any], model_id: Optional[str]) -> Completion:
        return Completion(
            text=text,
            input_chars=len(json.dumps(context, ensure_ascii=False)),
            output_chars=len(text),
            model_id=model_id or "stub-model",
        )

    def complete(self, prompt_id: int, context: Dict[str, Any], *, model_id=None, **kwargs) -> Completion:
        self._enter()
        try:
            if self.delay:
                time.sleep(self.delay)
            text = self._reply(prompt_id, context, {"model_id": model_id, **kwargs})
            return self._completion(text, context, model_id)
        finally:
            self._leave()

    def stream(self, prompt_id: int, context: Dict[str, Any], *, model_id=None, **kwargs):
        self._enter()
        try:
            if self.delay:
                time.sleep(self.delay)
            text = self._reply(prompt_id, context, {"model_id": model_id, **kwargs})
            step = max(1, len(text) // 3)
            for start in range(0, len(text), step):
                yield text[start : start + step]
                if start == 0:
                    self.first_chunk_sent.set()
                    if self.gate is not None:
                        self.gate.wait(timeout=5)
            yield self._completion(text, context, model_id)
        finally:
            with self._lock:
                self.closed_streams += 1
            self._leave()


@pytest.fixture
def prompts() -> PromptRegistry:
    registry = PromptRegistry.from_directory(REPO_ROOT / "prompts")
    mapping = registry.group(1).to_dict()
    registry.register_group(7, mapping)
    return registry


@pytest.fixture
def session_factory(tmp_path: Path):
    return make_session_factory(f"sqlite:///{tmp_path / 'test.db'}")


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def publisher(tmp_path: Path) -> ProgressPublisher:
    return ProgressPublisher(events_dir=tmp_path / "events")


@pytest.fixture
def orchestrator(session_factory, llm, publisher, prompts, tmp_path: Path) -> StageOrchestrator:
    cfg = OrchestratorConfig(model_id="stub-model", max_retries=3, max_active_tasks=3, events_dir=tmp_path / "events")
    return StageOrchestrator(
        store=TaskStateStore(session_factory),
        content=ContentStore(session_factory),
        llm=llm,
        publisher=publisher,
        prompts=prompts,
        cfg=cfg,
    )


def advance_to_content(orchestrator: StageOrchestrator, user_id: int = 1, **create_kwargs):
    """idea -> title -> 选标题 -> outline，返回停在 stage_4_content 的任务。"""
    task = orchestrator.create_task(user_id, prompt_group_id=1, **create_kwargs)
    orchestrator.execute_stage(task.id)
    orchestrator.execute_stage(task.id)
    orchestrator.select_title(task.id, "时间的回声")
    orchestrator.execute_stage(task.id)
    return orchestrator.get_task(task.id)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
