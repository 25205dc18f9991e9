"""
Error taxonomy for the book-creation engine.

每个异常都带一个机器可读的 code 和一条可以直接展示给用户的 message。
api.py 根据异常类型映射 HTTP 状态码。
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BookCreationError(Exception):
    code = "book_creation_error"
    # 出错前已经消耗的字符数，编排器重新抛出前会计入任务
    characters_consumed = 0

    def __init__(
        self,
        message: str,
        *,
        task_id: Optional[int] = None,
        stage: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.stage = stage

    def with_context(self, *, task_id: Optional[int] = None, stage: Optional[str] = None) -> "BookCreationError":
        """Attach task/stage context without changing the error type or message."""
        if self.task_id is None:
            self.task_id = task_id
        if self.stage is None:
            self.stage = stage
        return self

    def with_consumption(self, characters: int) -> "BookCreationError":
        self.characters_consumed = self.characters_consumed + characters
        return self

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.task_id is not None:
            payload["task_id"] = self.task_id
        if self.stage is not None:
            payload["stage"] = self.stage
        return payload


# ---------- 输入校验：在任何状态变更之前拒绝 ----------


class ValidationError(BookCreationError):
    code = "validation_error"


class InvalidConfig(ValidationError):
    code = "invalid_config"


class PromptNotConfigured(ValidationError):
    code = "prompt_not_configured"

    def __init__(self, field_name: str, **kwargs: Any) -> None:
        super().__init__(f"Prompt '{field_name}' is not configured for this task", **kwargs)
        self.field_name = field_name

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["field"] = self.field_name
        return payload


class StreamingNotSupported(ValidationError):
    code = "streaming_not_supported"


class TaskLimitExceeded(ValidationError):
    code = "task_limit_exceeded"


class NotFound(BookCreationError):
    code = "not_found"


# ---------- 状态机 ----------


class StateError(BookCreationError):
    code = "state_error"


class InvalidTransition(StateError):
    code = "invalid_transition"


class StageMismatch(StateError):
    code = "stage_mismatch"


class StageNotCompleted(StateError):
    code = "stage_not_completed"


class TaskTerminated(StateError):
    code = "task_terminated"


class TitleNotSelected(StateError):
    code = "title_not_selected"


# ---------- 上游模型调用 ----------


class UpstreamError(BookCreationError):
    code = "upstream_error"


class UpstreamTimeout(UpstreamError):
    code = "upstream_timeout"


class QuotaExceeded(UpstreamError):
    code = "quota_exceeded"


class MalformedOutput(UpstreamError):
    code = "malformed_output"


# ---------- 并发 / 取消 ----------


class ConcurrencyConflict(BookCreationError):
    code = "concurrency_conflict"
    retryable = True


class StreamCancelled(BookCreationError):
    code = "stream_cancelled"

    def __init__(self, message: str = "Stream cancelled by the observer", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class OperationCancelled(BookCreationError):
    """Raised inside an in-flight operation once the task itself has been cancelled."""

    code = "operation_cancelled"

    def __init__(self, message: str = "Task was cancelled while the operation was running", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
