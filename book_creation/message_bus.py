from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from src import protocol
from src.protocol import ProgressEventKind, ProtocolValidator

from .config import OrchestratorConfig

Subscriber = Callable[[Dict[str, Any]], None]


@dataclass
class ProgressPublisher:
    """
    按 task_id 分发编排器的生命周期事件（WebSocket 客户端订阅）。

    投递是 at-least-once 的尽力而为：事件同时追加到
    <events_dir>/task-<id>/progress_events.jsonl，客户端断线后可以按时间补拉，
    任务状态本身永远以 TaskStateStore 为准。
    """

    events_dir: Path = field(default_factory=lambda: OrchestratorConfig().events_dir)
    validator: ProtocolValidator = field(default_factory=ProtocolValidator)
    _subscribers: Dict[int, List[Subscriber]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _log_file(self, task_id: int) -> Path:
        return Path(self.events_dir) / f"task-{task_id}" / "progress_events.jsonl"

    def publish(
        self,
        task_id: int,
        event: Union[ProgressEventKind, str],
        *,
        stage: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        构造事件 envelope（JSON Schema 校验），写入 jsonl，再分发给订阅者。
        """
        kind = event if isinstance(event, ProgressEventKind) else ProgressEventKind(event)
        envelope = protocol.build_envelope(
            task_id=task_id,
            event=kind,
            stage=stage,
            data=data or {},
            validator=self.validator,
        )
        record = envelope.to_dict()
        self._append(task_id, record)

        with self._lock:
            subscribers = list(self._subscribers.get(task_id, []))
        for callback in subscribers:
            try:
                callback(record)
            except Exception as exc:
                # 单个订阅者失败不影响其他订阅者，也不影响编排流程
                print(f"[EVENTS] subscriber failed for task {task_id} ({kind.value}): {exc}")
        return record

    def _append(self, task_id: int, record: Dict[str, Any]) -> None:
        log_path = self._log_file(task_id)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False))
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            # Logging is best-effort; do not block orchestration.
            print(f"[WARN] failed to append progress event for task {task_id}: {exc}")

    def subscribe(self, task_id: int, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for events of ``task_id``; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.setdefault(task_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(task_id)
                if not callbacks:
                    return
                try:
                    callbacks.remove(callback)
                except ValueError:
                    return
                if not callbacks:
                    self._subscribers.pop(task_id, None)

        return _unsubscribe

    def subscriber_count(self, task_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(task_id, []))

    def events_since(self, task_id: int, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """读取 jsonl 中时间戳晚于 since 的事件；文件不存在时返回空列表。"""
        log_path = self._log_file(task_id)
        if not log_path.exists():
            return []
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        events: List[Dict[str, Any]] = []
        with log_path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    # 进程崩溃可能留下半行
                    continue
                if since is not None:
                    ts = protocol.parse_timestamp(record["timestamp"])
                    if ts <= since:
                        continue
                events.append(record)
        return events
