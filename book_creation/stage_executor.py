from __future__ import annotations

import json
import re
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import MalformedOutput, OperationCancelled, UpstreamError
from .llm_service import Completion, StreamItem
from .prompt_registry import Message, trim_history
from .task_model import (
    IdeaOutput,
    OPTIMIZE_PROMPT_FIELDS,
    STAGE_PROMPT_FIELDS,
    StageOutput,
    StageRecord,
    StageStatus,
    StageType,
    Task,
    TitleOutput,
)

ChunkCallback = Callable[[str], None]

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_payload(text: str) -> Any:
    """
    解析模型返回的 JSON，兼容 ```json ... ``` 包裹和前后的说明文字。
    """
    cleaned = _FENCE.sub("", (text or "").strip()).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # 退一步：截取第一个 { / [ 到最后一个 } / ]
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start, end = cleaned.find(open_ch), cleaned.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                continue
    raise MalformedOutput(f"Model output is not valid JSON: {cleaned[:120]}")


def _format_parameters(parameters: Dict[str, Any]) -> str:
    lines = []
    for key, value in parameters.items():
        if value in (None, "", [], {}):
            continue
        if isinstance(value, (list, tuple)):
            value = "、".join(str(v) for v in value)
        lines.append(f"{key}：{value}")
    return "\n".join(lines)


def consume_stream(
    items: Iterable[StreamItem],
    *,
    on_chunk: Optional[ChunkCallback] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Completion:
    """
    消费 LLMService.stream 的输出：转发文本块，返回最后的 Completion。

    cancel_event 被置位时终止上游并抛 OperationCancelled；on_chunk 抛出的异常
    （例如客户端断线的 StreamCancelled）同样会关闭上游。部分输出不会返回给调用方。
    """
    completion: Optional[Completion] = None
    iterator = iter(items)
    try:
        for item in iterator:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled()
            if isinstance(item, Completion):
                completion = item
                continue
            if on_chunk is not None:
                on_chunk(item)
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled()
    if completion is None:
        raise UpstreamError("Model stream ended without a completion record")
    return completion


class StageExecutor:
    """
    把 (阶段, prompt, processed_data 上下文) 映射成一次 AI 调用，
    再把结果翻译成 (阶段产出, 消耗字符数)。

    只负责 stage_1_idea / stage_2_title 这类单次调用的阶段以及它们的 optimize；
    重试策略由编排器决定，这里不做任何重试。
    """

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    # ---------- 上下文 / 历史 ----------

    def build_context(self, task: Task, stage: StageType) -> Dict[str, Any]:
        data = task.processed_data
        params = dict(data.user_parameters or {})
        context: Dict[str, Any] = {**params, "parameters": _format_parameters(params)}
        if stage == StageType.TITLE:
            context["brainstorm"] = data.brainstorm or ""
        return context

    def build_optimize_context(self, task: Task, stage: StageType, feedback: str) -> Dict[str, Any]:
        data = task.processed_data
        context = self.build_context(task, stage)
        context["feedback"] = feedback
        if stage == StageType.IDEA:
            context["original"] = data.brainstorm or ""
        elif stage == StageType.TITLE:
            context["brainstorm"] = data.brainstorm or ""
            context["original"] = json.dumps(
                {"titles": data.titles or [], "synopsis": data.synopsis or ""},
                ensure_ascii=False,
            )
        return context

    @staticmethod
    def describe_request(stage: StageType, context: Dict[str, Any]) -> str:
        shown = {k: v for k, v in context.items() if k != "parameters" and v not in (None, "")}
        return f"[{stage.value}] " + json.dumps(shown, ensure_ascii=False)

    @staticmethod
    def history_from_records(records: List[StageRecord], limit: int) -> List[Message]:
        """
        已完成阶段的对话历史（user 请求 + assistant 产出），按 history_message_limit 截断。
        """
        history: List[Message] = []
        for record in records:
            if record.status != StageStatus.COMPLETED or not record.output_data:
                continue
            request = record.input_data.get("request")
            text = record.output_data.get("text")
            if not request or not text:
                continue
            history.append({"role": "user", "content": request})
            history.append({"role": "assistant", "content": text})
        return trim_history(history, limit)

    # ---------- 调用 ----------

    @staticmethod
    def prompt_field(stage: StageType, *, optimize: bool = False) -> str:
        if optimize:
            return OPTIMIZE_PROMPT_FIELDS[stage]
        return STAGE_PROMPT_FIELDS[stage][0]

    def call(
        self,
        task: Task,
        prompt_id: int,
        context: Dict[str, Any],
        *,
        history: Optional[List[Message]] = None,
        streamed: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Completion:
        cfg = task.task_config
        history = trim_history(history, cfg.history_message_limit)
        kwargs = dict(
            model_id=task.model_id,
            temperature=cfg.temperature,
            history_limit=cfg.history_message_limit,
            history=history,
        )
        if streamed:
            return consume_stream(
                self.llm.stream(prompt_id, context, **kwargs),
                on_chunk=on_chunk,
                cancel_event=cancel_event,
            )
        completion = self.llm.complete(prompt_id, context, **kwargs)
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled()
        return completion

    def to_output(self, stage: StageType, text: str) -> StageOutput:
        if not text or not text.strip():
            raise MalformedOutput("Model returned an empty response", stage=stage.value)
        if stage == StageType.IDEA:
            return IdeaOutput(brainstorm=text.strip())
        if stage == StageType.TITLE:
            payload = parse_json_payload(text)
            if not isinstance(payload, dict):
                raise MalformedOutput("Title stage output must be a JSON object", stage=stage.value)
            titles: List[str] = []
            for item in payload.get("titles") or []:
                title = item.get("title") if isinstance(item, dict) else item
                if title and str(title).strip():
                    titles.append(str(title).strip())
            synopsis = str(payload.get("synopsis") or "").strip()
            if not titles or not synopsis:
                raise MalformedOutput("Title stage output needs non-empty 'titles' and 'synopsis'", stage=stage.value)
            return TitleOutput(titles=titles, synopsis=synopsis)
        raise ValueError(f"{stage.value} is not a single-call stage")

    def execute(
        self,
        task: Task,
        stage: StageType,
        prompt_id: int,
        context: Dict[str, Any],
        *,
        history: Optional[List[Message]] = None,
        streamed: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[StageOutput, Completion]:
        """一次阶段调用（buffered 或 streamed），返回解析后的产出和 Completion。"""
        completion = self.call(
            task,
            prompt_id,
            context,
            history=history,
            streamed=streamed,
            on_chunk=on_chunk,
            cancel_event=cancel_event,
        )
        output = self.to_output(stage, completion.text)
        print(
            f"[STAGE] task={task.id} {stage.value} prompt={prompt_id} "
            f"chars={completion.characters_consumed} streamed={streamed}"
        )
        return output, completion
