from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# 默认模型；线上通过环境变量覆盖
DEFAULT_MODEL = os.getenv("BOOK_CREATION_MODEL", "gpt-4.1-mini")

# 每个任务的事件日志根目录 = 仓库根目录下的 task_events/
_EVENTS_ROOT = Path(os.getenv("BOOK_CREATION_EVENTS_DIR", "")) if os.getenv("BOOK_CREATION_EVENTS_DIR") else (
    Path(__file__).resolve().parent.parent / "task_events"
)

PROMPTS_DIR = Path(os.getenv("BOOK_CREATION_PROMPTS_DIR", "")) if os.getenv("BOOK_CREATION_PROMPTS_DIR") else (
    Path(__file__).resolve().parent.parent / "prompts"
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[WARN] {name}={raw!r} is not an integer; using {default}")
        return default


@dataclass
class OrchestratorConfig:
    model_id: str = DEFAULT_MODEL
    # 同一阶段最多失败多少次后任务变为 failed
    max_retries: int = field(default_factory=lambda: _env_int("BOOK_CREATION_MAX_RETRIES", 3))
    # 每个用户同时进行中的任务上限
    max_active_tasks: int = field(default_factory=lambda: _env_int("BOOK_CREATION_MAX_ACTIVE_TASKS", 3))
    events_dir: Path = _EVENTS_ROOT
