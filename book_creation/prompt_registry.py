from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import PROMPTS_DIR
from .errors import InvalidConfig
from .task_model import PromptConfig

Message = Dict[str, str]


class _SafeDict(dict):
    """format_map 用：缺失的占位符渲染为空字符串。"""

    def __missing__(self, key: str) -> str:
        return ""


@dataclass(frozen=True)
class PromptTemplate:
    id: int
    name: str
    system_prompt: str
    user_template: str

    def render(self, context: Dict[str, Any]) -> str:
        values = _SafeDict({k: ("" if v is None else v) for k, v in context.items()})
        return self.user_template.format_map(values).strip()


def trim_history(history: Optional[List[Message]], limit: int) -> List[Message]:
    """
    只保留最近 ``limit`` 条历史消息；limit = 0 表示不限制。
    用户改了指令之后，旧的示例不应该继续影响下一阶段的输出。
    """
    items = list(history or [])
    if limit and limit > 0 and len(items) > limit:
        return items[-limit:]
    return items


def build_messages(
    template: PromptTemplate,
    context: Dict[str, Any],
    *,
    history: Optional[List[Message]] = None,
    history_limit: int = 0,
) -> List[Message]:
    messages: List[Message] = [{"role": "system", "content": template.system_prompt}]
    messages.extend(trim_history(history, history_limit))
    messages.append({"role": "user", "content": template.render(context)})
    return messages


class PromptRegistry:
    """
    Prompt 模板与 prompt group 的只读目录。

    模板内容的管理不在本服务范围内；这里只负责按 id 解析，
    数据来自 prompts/library.json（或测试里手动 register）。
    """

    def __init__(self) -> None:
        self._templates: Dict[int, PromptTemplate] = {}
        self._groups: Dict[int, PromptConfig] = {}

    def register(self, template: PromptTemplate) -> None:
        self._templates[template.id] = template

    def register_group(self, group_id: int, mapping: Dict[str, Any]) -> None:
        self._groups[group_id] = PromptConfig.from_dict(mapping)

    def get(self, prompt_id: int) -> PromptTemplate:
        template = self._templates.get(prompt_id)
        if template is None:
            raise InvalidConfig(f"Prompt {prompt_id} does not exist")
        return template

    def has(self, prompt_id: int) -> bool:
        return prompt_id in self._templates

    def group(self, group_id: int) -> PromptConfig:
        config = self._groups.get(group_id)
        if config is None:
            raise InvalidConfig(f"Prompt group {group_id} does not exist")
        return config

    @classmethod
    def from_directory(cls, directory: Optional[Path] = None) -> "PromptRegistry":
        registry = cls()
        path = Path(directory or PROMPTS_DIR) / "library.json"
        if not path.exists():
            print(f"[WARN] prompt library not found at {path}; registry is empty")
            return registry
        payload = json.loads(path.read_text(encoding="utf-8"))
        for raw in payload.get("prompts", []):
            registry.register(
                PromptTemplate(
                    id=int(raw["id"]),
                    name=raw.get("name") or f"prompt-{raw['id']}",
                    system_prompt=raw.get("system", "").strip(),
                    user_template=raw.get("user", "").strip(),
                )
            )
        for group_id, mapping in (payload.get("groups") or {}).items():
            registry.register_group(int(group_id), mapping)
        print(f"[PROMPTS] loaded {len(registry._templates)} prompts, {len(registry._groups)} groups from {path}")
        return registry
