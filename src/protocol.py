"""
Progress event protocol for the book-creation engine.

每个任务的生命周期事件都封装成同一个 envelope：

    {task_id, event, stage, data, timestamp, version}

envelope 和各事件的 data 都用 JSON Schema（Draft 2020-12）校验，
WebSocket 推送和 progress_events.jsonl 里存的是同一份 dict。
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import ValidationError as JSONSchemaValidationError

PROTOCOL_VERSION = "1.0"


class ProgressEventKind(str, Enum):
    STAGE_STARTED = "stage_started"
    STAGE_PROGRESS = "stage_progress"
    STAGE_COMPLETED = "stage_completed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    CHAPTER_GENERATION_COMPLETED = "chapter_generation_completed"
    CHAPTER_GENERATION_FAILED = "chapter_generation_failed"
    OPTIMIZE_COMPLETED = "optimize_completed"
    ERROR = "error"
    TASK_CREATED = "task_created"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"
    TASK_CANCELLED = "task_cancelled"
    TITLE_SELECTED = "title_selected"


def format_timestamp(value: datetime) -> str:
    """UTC ISO8601，以 'Z' 结尾；naive datetime 视为 UTC。"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def parse_timestamp(text: str) -> datetime:
    """format_timestamp 的逆操作；没有时区的字符串直接拒绝。"""
    try:
        parsed = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError as exc:
        raise ValueError(f"Invalid event timestamp: {text}") from exc
    if parsed.tzinfo is None:
        raise ValueError(f"Event timestamp has no timezone: {text}")
    return parsed.astimezone(timezone.utc)


ENVELOPE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["task_id", "event", "data", "timestamp", "version"],
    "properties": {
        "task_id": {"type": "integer", "minimum": 1},
        "event": {"enum": [kind.value for kind in ProgressEventKind]},
        "stage": {"type": ["string", "null"]},
        "data": {"type": "object"},
        "timestamp": {"type": "string", "format": "date-time"},
        "version": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

# data 里的公共字段；各事件只是必填项不同
_DATA_PROPERTIES: Dict[str, Any] = {
    "current": {"type": "integer", "minimum": 0},
    "total": {"type": "integer", "minimum": 0},
    "percentage": {"type": "number", "minimum": 0, "maximum": 100},
    "message": {"type": "string"},
    "result": {},
    "error": {"type": ["string", "object"]},
}

_REQUIRED_DATA: Dict[ProgressEventKind, List[str]] = {
    ProgressEventKind.STAGE_STARTED: ["message"],
    ProgressEventKind.STAGE_PROGRESS: ["current", "total", "percentage"],
    ProgressEventKind.STAGE_COMPLETED: ["result"],
    ProgressEventKind.TASK_FAILED: ["error"],
    ProgressEventKind.CHAPTER_GENERATION_COMPLETED: ["result"],
    ProgressEventKind.CHAPTER_GENERATION_FAILED: ["error"],
    ProgressEventKind.OPTIMIZE_COMPLETED: ["result"],
    ProgressEventKind.ERROR: ["error"],
    ProgressEventKind.TITLE_SELECTED: ["result"],
}

PAYLOAD_SCHEMAS: Dict[str, Dict[str, Any]] = {
    kind.value: {
        "type": "object",
        "required": _REQUIRED_DATA.get(kind, []),
        "properties": _DATA_PROPERTIES,
    }
    for kind in ProgressEventKind
}


class ProtocolValidationError(ValueError):
    def __init__(self, message: str, errors: Optional[str] = None) -> None:
        super().__init__(message)
        self.errors = errors


class ProtocolValidator:
    """Validates an envelope and then the ``data`` payload of its event kind."""

    def __init__(self) -> None:
        checker = FormatChecker()
        self._envelope = Draft202012Validator(ENVELOPE_SCHEMA, format_checker=checker)
        self._payloads = {
            event: Draft202012Validator(schema, format_checker=checker)
            for event, schema in PAYLOAD_SCHEMAS.items()
        }

    def validate_envelope(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        self._check(self._envelope, document, "envelope")
        self.validate_payload(document["event"], document["data"])
        return dict(document)

    def validate_payload(self, event: str, data: Mapping[str, Any]) -> None:
        validator = self._payloads.get(event)
        if validator is None:
            raise ProtocolValidationError(f"Unknown event kind: {event}")
        self._check(validator, data, f"{event} payload")

    @staticmethod
    def _check(validator: Draft202012Validator, document: Any, label: str) -> None:
        try:
            validator.validate(document)
        except JSONSchemaValidationError as exc:
            raise ProtocolValidationError(f"Invalid {label}: {exc.message}", errors=str(exc)) from exc


@dataclass(frozen=True)
class EventEnvelope:
    task_id: int
    event: ProgressEventKind
    data: Mapping[str, Any]
    timestamp: datetime
    stage: Optional[str] = None
    version: str = PROTOCOL_VERSION

    @classmethod
    def from_dict(cls, document: Mapping[str, Any], validator: Optional[ProtocolValidator] = None) -> "EventEnvelope":
        checked = (validator or ProtocolValidator()).validate_envelope(document)
        return cls(
            task_id=checked["task_id"],
            event=ProgressEventKind(checked["event"]),
            data=checked["data"],
            timestamp=parse_timestamp(checked["timestamp"]),
            stage=checked.get("stage"),
            version=checked["version"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "event": self.event.value,
            "stage": self.stage,
            "data": dict(self.data),
            "timestamp": format_timestamp(self.timestamp),
            "version": self.version,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


def build_envelope(
    *,
    task_id: int,
    event: ProgressEventKind,
    data: Mapping[str, Any],
    stage: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    validator: Optional[ProtocolValidator] = None,
) -> EventEnvelope:
    """Build and validate an envelope; ``timestamp`` defaults to now (UTC)."""
    document = {
        "task_id": task_id,
        "event": event.value,
        "stage": stage,
        "data": dict(data),
        "timestamp": format_timestamp(timestamp or datetime.now(timezone.utc)),
        "version": PROTOCOL_VERSION,
    }
    return EventEnvelope.from_dict(document, validator=validator)
