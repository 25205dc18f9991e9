from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .chapter_writer import require_prompt
from .character_extractor import CharacterWorldExtractor
from .db.content_store import ContentStore
from .errors import MalformedOutput
from .stage_executor import StageExecutor, parse_json_payload
from .task_model import OutlineOutput, StageType, Task


def _as_list(payload: Any, *keys: str) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        for key in keys:
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        raise MalformedOutput(f"Expected a JSON list (or an object with one of {keys})")
    items = []
    for raw in payload:
        if isinstance(raw, str):
            raw = {"title": raw}
        if isinstance(raw, dict) and str(raw.get("title") or "").strip():
            items.append(raw)
    if not items:
        raise MalformedOutput("Model returned an empty outline list")
    return items


@dataclass
class OutlineDraft:
    """三级大纲（尚未写入 content store）。"""

    main_nodes: List[Dict[str, Any]] = field(default_factory=list)
    characters_consumed: int = 0

    def to_output(self) -> OutlineOutput:
        main_outline, volume_outlines, chapter_outlines = [], [], []
        for main_idx, main in enumerate(self.main_nodes):
            main_outline.append({"title": main["title"], "content": main.get("content", "")})
            for volume in main["volumes"]:
                volume_outlines.append(
                    {
                        "main_index": main_idx,
                        "title": volume["title"],
                        "description": volume.get("description", ""),
                    }
                )
                for chapter in volume["chapters"]:
                    chapter_outlines.append(
                        {
                            "volume_index": len(volume_outlines) - 1,
                            "title": chapter["title"],
                            "summary": chapter.get("summary", ""),
                        }
                    )
        return OutlineOutput(
            main_outline=main_outline,
            volume_outlines=volume_outlines,
            chapter_outlines=chapter_outlines,
        )


class OutlineBuilder:
    """
    Stage 3：主线大纲 -> 每条主线的分卷大纲 -> 每卷的章节大纲。

    所有模型调用完成后才一次性写入 content store，中途失败不会留下半棵树。
    """

    def __init__(self, executor: StageExecutor, content: ContentStore) -> None:
        self.executor = executor
        self.content = content
        self.extractor = CharacterWorldExtractor(content)

    def _call_list(
        self,
        task: Task,
        field_name: str,
        context: Dict[str, Any],
        keys: tuple,
        draft: OutlineDraft,
        cancel_event: Optional[threading.Event],
    ) -> List[Dict[str, Any]]:
        prompt_id = require_prompt(task, field_name)
        completion = self.executor.call(task, prompt_id, context, cancel_event=cancel_event)
        draft.characters_consumed += completion.characters_consumed
        return _as_list(parse_json_payload(completion.text), *keys)

    def build(self, task: Task, *, cancel_event: Optional[threading.Event] = None) -> OutlineDraft:
        data = task.processed_data
        base = {
            "novel_title": data.selected_title or "",
            "synopsis": data.synopsis or "",
            "brainstorm": data.brainstorm or "",
        }
        draft = OutlineDraft()
        mains = self._call_list(
            task, "main_outline_prompt_id", dict(base), ("outline", "main_outline", "items"), draft, cancel_event
        )
        for main in mains:
            volumes = self._call_list(
                task,
                "volume_outline_prompt_id",
                {**base, "main_title": main["title"], "main_content": main.get("content", "")},
                ("volumes", "items"),
                draft,
                cancel_event,
            )
            main_node = {"title": main["title"], "content": str(main.get("content") or ""), "volumes": []}
            for volume in volumes:
                chapters = self._call_list(
                    task,
                    "chapter_outline_prompt_id",
                    {
                        **base,
                        "main_title": main["title"],
                        "volume_title": volume["title"],
                        "volume_description": volume.get("description", ""),
                    },
                    ("chapters", "items"),
                    draft,
                    cancel_event,
                )
                main_node["volumes"].append(
                    {
                        "title": volume["title"],
                        "description": str(volume.get("description") or ""),
                        "chapters": [
                            {
                                "title": c["title"],
                                "summary": str(c.get("summary") or c.get("content") or ""),
                                "characters": c.get("characters") or [],
                                "world_settings": c.get("worldviews") or c.get("world_settings") or [],
                            }
                            for c in chapters
                        ],
                    }
                )
            draft.main_nodes.append(main_node)
        print(
            f"[STAGE] task={task.id} {StageType.OUTLINE.value} built "
            f"{len(draft.main_nodes)} main nodes, chars={draft.characters_consumed}"
        )
        return draft

    def materialize(self, task: Task, draft: OutlineDraft) -> Dict[str, Any]:
        if task.novel_id is None:
            raise ValueError("outline can only be materialized once the novel exists")
        counts = self.content.materialize_outline(task.id, task.novel_id, draft.main_nodes)
        # 人物卡 / 世界观提取失败不影响大纲本身
        try:
            counts.update(self.extractor.extract(task, draft.main_nodes))
        except SQLAlchemyError as exc:
            print(f"[ERROR] task={task.id} character/world setting extraction failed: {exc!r}")
            counts.update(characters_created=0, world_settings_created=0)
        return counts
