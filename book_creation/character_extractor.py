"""
从章节大纲里提取人物卡和世界观，写入作品。

章节大纲的 characters 支持两种写法：
  - 旧格式：字符串 "主角：林渊" 或 "林渊"
  - 新格式：{"name": "林渊", "category": "主角", "fields": {...}}
worldviews / world_settings 只认新格式。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from .db.content_store import ContentStore
from .task_model import Task

DEFAULT_CATEGORY = "未分类"


def _object_entry(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("name") or "").strip()
    if not name:
        return None
    fields = raw.get("fields")
    return {
        "name": name,
        "category": str(raw.get("category") or DEFAULT_CATEGORY),
        "fields": dict(fields) if isinstance(fields, dict) else {},
    }


def _character_entry(raw: Any) -> Optional[Dict[str, Any]]:
    if isinstance(raw, str):
        name = raw.split("：", 1)[1] if "：" in raw else raw
        name = name.strip()
        if not name:
            return None
        return {"name": name, "category": DEFAULT_CATEGORY, "fields": {"来源": "从大纲自动提取"}}
    return _object_entry(raw)


def _as_items(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def collect_entities(main_nodes: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """按大纲顺序收集人物和世界观，同名只保留第一次出现的那条。"""
    characters: Dict[str, Dict[str, Any]] = {}
    settings: Dict[str, Dict[str, Any]] = {}
    for main in main_nodes:
        for volume in main.get("volumes") or []:
            for chapter in volume.get("chapters") or []:
                for raw in _as_items(chapter.get("characters")):
                    entry = _character_entry(raw)
                    if entry is not None:
                        characters.setdefault(entry["name"], entry)
                for raw in _as_items(chapter.get("world_settings")):
                    entry = _object_entry(raw)
                    if entry is not None:
                        settings.setdefault(entry["name"], entry)
    return list(characters.values()), list(settings.values())


class CharacterWorldExtractor:
    def __init__(self, content: ContentStore) -> None:
        self.content = content

    def extract(self, task: Task, main_nodes: List[Dict[str, Any]]) -> Dict[str, int]:
        characters, settings = collect_entities(main_nodes)
        result = {
            "characters_created": self.content.add_characters(task.novel_id, characters),
            "world_settings_created": self.content.add_world_settings(task.novel_id, settings),
        }
        print(
            f"[OUTLINE] task={task.id} extracted {len(characters)} characters / {len(settings)} world settings, "
            f"created {result['characters_created']} / {result['world_settings_created']}"
        )
        return result
