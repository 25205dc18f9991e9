from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union

from openai import APIConnectionError, APITimeoutError, OpenAI, OpenAIError, RateLimitError

from .config import DEFAULT_MODEL
from .errors import QuotaExceeded, UpstreamError, UpstreamTimeout
from .prompt_registry import Message, PromptRegistry, build_messages

# 单次调用的超时时间（秒）
LLM_TIMEOUT = float(os.getenv("BOOK_CREATION_LLM_TIMEOUT", "120"))


@dataclass
class Completion:
    text: str
    input_chars: int
    output_chars: int
    model_id: str

    @property
    def characters_consumed(self) -> int:
        return self.input_chars + self.output_chars

    def metadata(self) -> Dict[str, Any]:
        return {
            "input_chars": self.input_chars,
            "output_chars": self.output_chars,
            "model_id": self.model_id,
        }


StreamItem = Union[str, Completion]


def _count_input_chars(messages: List[Message]) -> int:
    return sum(len(m.get("content") or "") for m in messages)


def map_openai_error(exc: Exception) -> UpstreamError:
    """
    把 OpenAI SDK 的异常映射到本服务的上游错误类型，保留 provider 的原始信息。
    """
    if isinstance(exc, APITimeoutError):
        return UpstreamTimeout(f"Model call timed out: {exc}")
    code = getattr(exc, "code", None)
    if isinstance(exc, RateLimitError) or getattr(exc, "status_code", None) == 429:
        if code == "insufficient_quota" or "quota" in str(exc).lower():
            return QuotaExceeded(f"Model provider quota exceeded: {exc}")
        return UpstreamError(f"Model provider rate limit: {exc}")
    if isinstance(exc, APIConnectionError):
        return UpstreamError(f"Could not reach model provider: {exc}")
    return UpstreamError(f"Model provider error: {exc}")


class LLMService:
    """
    AI 调用服务：按 prompt id 解析模板 + 调用 OpenAI chat completions。

    - complete(...) 一次性返回 Completion(text, input_chars, output_chars, model_id)
    - stream(...) 逐块 yield 文本，最后 yield 一个形状相同的 Completion
    没有 OPENAI_API_KEY 时直接报错，不回退到模拟输出。
    """

    def __init__(self, prompts: PromptRegistry, default_model: str = DEFAULT_MODEL) -> None:
        self.prompts = prompts
        self.default_model = default_model

    def _client(self) -> OpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise UpstreamError("OPENAI_API_KEY is missing; cannot call the model provider")
        base_url = os.getenv("OPENAI_BASE_URL")
        if base_url:
            return OpenAI(api_key=api_key, base_url=base_url, timeout=LLM_TIMEOUT)
        return OpenAI(api_key=api_key, timeout=LLM_TIMEOUT)

    def _messages(
        self,
        prompt_id: int,
        context: Dict[str, Any],
        history: Optional[List[Message]],
        history_limit: int,
    ) -> List[Message]:
        template = self.prompts.get(prompt_id)
        return build_messages(template, context, history=history, history_limit=history_limit)

    def complete(
        self,
        prompt_id: int,
        context: Dict[str, Any],
        *,
        model_id: Optional[str] = None,
        temperature: float = 0.7,
        history_limit: int = 0,
        history: Optional[List[Message]] = None,
    ) -> Completion:
        messages = self._messages(prompt_id, context, history, history_limit)
        model = model_id or self.default_model
        client = self._client()
        try:
            response = client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
            )
        except OpenAIError as exc:
            raise map_openai_error(exc) from exc

        text = (response.choices[0].message.content or "").strip()
        return Completion(
            text=text,
            input_chars=_count_input_chars(messages),
            output_chars=len(text),
            model_id=getattr(response, "model", None) or model,
        )

    def stream(
        self,
        prompt_id: int,
        context: Dict[str, Any],
        *,
        model_id: Optional[str] = None,
        temperature: float = 0.7,
        history_limit: int = 0,
        history: Optional[List[Message]] = None,
    ) -> Iterator[StreamItem]:
        messages = self._messages(prompt_id, context, history, history_limit)
        model = model_id or self.default_model
        client = self._client()
        try:
            upstream = client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                stream=True,
            )
        except OpenAIError as exc:
            raise map_openai_error(exc) from exc

        parts: List[str] = []
        try:
            for chunk in upstream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if not delta:
                    continue
                parts.append(delta)
                yield delta
        except OpenAIError as exc:
            raise map_openai_error(exc) from exc
        finally:
            # 调用方提前关闭生成器（取消 / 断线）时也要终止上游连接
            upstream.close()

        text = "".join(parts)
        yield Completion(
            text=text,
            input_chars=_count_input_chars(messages),
            output_chars=len(text),
            model_id=model,
        )
