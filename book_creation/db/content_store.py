# book_creation/db/content_store.py

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from .db import SessionLocal, DbNovel, DbVolume, DbChapter, DbOutlineNode, DbCharacter, DbWorldSetting
from ..chapter_model import count_words
from ..errors import NotFound
from ..task_model import OutlineLevel, OutlineNode, OutlineNodeStatus


def _chapter_to_dict(row: DbChapter) -> Dict[str, Any]:
    return {
        "id": row.id,
        "novel_id": row.novel_id,
        "volume_id": row.volume_id,
        "order": row.order,
        "title": row.title,
        "outline": row.outline or "",
        "summary": row.summary or "",
        "content": row.content or "",
        "word_count": row.word_count or 0,
    }


def _volume_to_dict(row: DbVolume) -> Dict[str, Any]:
    return {
        "id": row.id,
        "novel_id": row.novel_id,
        "name": row.name,
        "description": row.description or "",
        "order": row.order,
    }


def _node_from_row(row: DbOutlineNode) -> OutlineNode:
    return OutlineNode(
        id=row.id,
        task_id=row.task_id,
        parent_id=row.parent_id,
        level=OutlineLevel(row.level),
        order=row.order,
        title=row.title,
        content=row.content or "",
        status=OutlineNodeStatus(row.status),
        volume_id=row.volume_id,
        chapter_id=row.chapter_id,
    )


class ContentStore:
    """
    小说 / 卷 / 章节 / 大纲节点的读写。

    章节的 order 是全书范围内的序号（从 1 开始），逐章循环和批量生成都按它定位章节。
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    # ---------- Novel ----------

    def create_novel(self, user_id: int, name: str, description: str = "") -> Dict[str, Any]:
        with self._session_factory() as db:
            row = DbNovel(user_id=user_id, name=name, description=description or "")
            db.add(row)
            db.commit()
            db.refresh(row)
            return {"id": row.id, "user_id": row.user_id, "name": row.name, "description": row.description}

    def get_novel(self, novel_id: int) -> Dict[str, Any]:
        with self._session_factory() as db:
            row = db.get(DbNovel, novel_id)
            if row is None:
                raise NotFound(f"Novel {novel_id} not found")
            return {"id": row.id, "user_id": row.user_id, "name": row.name, "description": row.description}

    def update_novel(self, novel_id: int, *, name: Optional[str] = None, description: Optional[str] = None) -> None:
        with self._session_factory() as db:
            row = db.get(DbNovel, novel_id)
            if row is None:
                raise NotFound(f"Novel {novel_id} not found")
            if name is not None:
                row.name = name
            if description is not None:
                row.description = description
            db.commit()

    # ---------- Volume / Chapter ----------

    def list_volumes(self, novel_id: int) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.query(DbVolume).filter(DbVolume.novel_id == novel_id).order_by(DbVolume.order.asc()).all()
            return [_volume_to_dict(row) for row in rows]

    def create_volume(self, novel_id: int, name: str, description: str = "", order: Optional[int] = None) -> Dict[str, Any]:
        with self._session_factory() as db:
            if order is None:
                current = db.query(func.max(DbVolume.order)).filter(DbVolume.novel_id == novel_id).scalar()
                order = (current or 0) + 1
            row = DbVolume(novel_id=novel_id, name=name, description=description or "", order=order)
            db.add(row)
            db.commit()
            db.refresh(row)
            return _volume_to_dict(row)

    def update_volume(self, volume_id: int, *, name: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
        with self._session_factory() as db:
            row = db.get(DbVolume, volume_id)
            if row is None:
                raise NotFound(f"Volume {volume_id} not found")
            if name is not None:
                row.name = name
            if description is not None:
                row.description = description
            db.commit()
            db.refresh(row)
            return _volume_to_dict(row)

    def create_chapter(
        self,
        novel_id: int,
        title: str,
        *,
        volume_id: Optional[int] = None,
        outline: str = "",
        order: Optional[int] = None,
    ) -> Dict[str, Any]:
        with self._session_factory() as db:
            if order is None:
                current = db.query(func.max(DbChapter.order)).filter(DbChapter.novel_id == novel_id).scalar()
                order = (current or 0) + 1
            row = DbChapter(
                novel_id=novel_id,
                volume_id=volume_id,
                order=order,
                title=title,
                outline=outline or "",
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _chapter_to_dict(row)

    def list_chapters(self, novel_id: int) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.query(DbChapter).filter(DbChapter.novel_id == novel_id).order_by(DbChapter.order.asc()).all()
            return [_chapter_to_dict(row) for row in rows]

    def get_chapter(self, chapter_id: int) -> Dict[str, Any]:
        with self._session_factory() as db:
            row = db.get(DbChapter, chapter_id)
            if row is None:
                raise NotFound(f"Chapter {chapter_id} not found")
            return _chapter_to_dict(row)

    def get_chapter_by_order(self, novel_id: int, order: int) -> Optional[Dict[str, Any]]:
        with self._session_factory() as db:
            row = (
                db.query(DbChapter)
                .filter(DbChapter.novel_id == novel_id, DbChapter.order == order)
                .first()
            )
            return _chapter_to_dict(row) if row else None

    def update_chapter(
        self,
        chapter_id: int,
        *,
        title: Optional[str] = None,
        outline: Optional[str] = None,
        summary: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        覆盖写章节字段；content 变化时同步更新 word_count。
        """
        with self._session_factory() as db:
            row = db.get(DbChapter, chapter_id)
            if row is None:
                raise NotFound(f"Chapter {chapter_id} not found")
            if title is not None:
                row.title = title
            if outline is not None:
                row.outline = outline
            if summary is not None:
                row.summary = summary
            if content is not None:
                row.content = content
                row.word_count = count_words(content)
            row.updated_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(row)
            return _chapter_to_dict(row)

    # ---------- Outline nodes ----------

    def materialize_outline(self, task_id: int, novel_id: int, main_nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        把内存中构建好的三级大纲一次性写入：
        主线节点 -> 卷（Volume + 节点）-> 章（Chapter + 节点）。

        main_nodes 形如 [{title, content, volumes: [{title, description, chapters: [{title, summary}]}]}]。
        整个过程在一个事务里完成，失败时不会留下半棵树。
        """
        volume_count = 0
        chapter_count = 0
        with self._session_factory() as db:
            volume_order = (
                db.query(func.max(DbVolume.order)).filter(DbVolume.novel_id == novel_id).scalar() or 0
            )
            chapter_order = (
                db.query(func.max(DbChapter.order)).filter(DbChapter.novel_id == novel_id).scalar() or 0
            )
            for main_idx, main in enumerate(main_nodes, start=1):
                main_row = DbOutlineNode(
                    task_id=task_id,
                    level=OutlineLevel.MAIN.value,
                    order=main_idx,
                    title=main.get("title") or f"主线 {main_idx}",
                    content=main.get("content") or "",
                    status=OutlineNodeStatus.DRAFT.value,
                )
                db.add(main_row)
                db.flush()
                for vol_idx, volume in enumerate(main.get("volumes") or [], start=1):
                    volume_order += 1
                    volume_row = DbVolume(
                        novel_id=novel_id,
                        name=volume.get("title") or f"第{volume_order}卷",
                        description=volume.get("description") or "",
                        order=volume_order,
                    )
                    db.add(volume_row)
                    db.flush()
                    volume_node = DbOutlineNode(
                        task_id=task_id,
                        parent_id=main_row.id,
                        level=OutlineLevel.VOLUME.value,
                        order=vol_idx,
                        title=volume_row.name,
                        content=volume_row.description,
                        status=OutlineNodeStatus.DRAFT.value,
                        volume_id=volume_row.id,
                    )
                    db.add(volume_node)
                    db.flush()
                    volume_count += 1
                    for ch_idx, chapter in enumerate(volume.get("chapters") or [], start=1):
                        chapter_order += 1
                        chapter_row = DbChapter(
                            novel_id=novel_id,
                            volume_id=volume_row.id,
                            order=chapter_order,
                            title=chapter.get("title") or f"第{chapter_order}章",
                            outline=chapter.get("summary") or "",
                        )
                        db.add(chapter_row)
                        db.flush()
                        db.add(
                            DbOutlineNode(
                                task_id=task_id,
                                parent_id=volume_node.id,
                                level=OutlineLevel.CHAPTER.value,
                                order=ch_idx,
                                title=chapter_row.title,
                                content=chapter_row.outline,
                                status=OutlineNodeStatus.DRAFT.value,
                                volume_id=volume_row.id,
                                chapter_id=chapter_row.id,
                            )
                        )
                        chapter_count += 1
            db.commit()
        return {"volumes": volume_count, "chapters": chapter_count}

    def list_outline_nodes(self, task_id: int) -> List[OutlineNode]:
        with self._session_factory() as db:
            rows = (
                db.query(DbOutlineNode)
                .filter(DbOutlineNode.task_id == task_id)
                .order_by(DbOutlineNode.level.asc(), DbOutlineNode.order.asc(), DbOutlineNode.id.asc())
                .all()
            )
            return [_node_from_row(row) for row in rows]

    def get_outline_tree(self, task_id: int) -> List[OutlineNode]:
        """按 level、order 排序后组装成树，返回所有根节点。"""
        nodes = self.list_outline_nodes(task_id)
        by_id = {node.id: node for node in nodes}
        roots: List[OutlineNode] = []
        for node in nodes:
            parent = by_id.get(node.parent_id) if node.parent_id is not None else None
            if parent is None:
                roots.append(node)
            else:
                parent.children.append(node)
        return roots

    def get_outline_node(self, task_id: int, node_id: int) -> OutlineNode:
        with self._session_factory() as db:
            row = db.get(DbOutlineNode, node_id)
            if row is None or row.task_id != task_id:
                raise NotFound(f"Outline node {node_id} not found", task_id=task_id)
            return _node_from_row(row)

    def update_outline_node(
        self,
        task_id: int,
        node_id: int,
        *,
        title: Optional[str] = None,
        content: Optional[str] = None,
        status: Optional[OutlineNodeStatus] = None,
        volume_id: Optional[int] = None,
        chapter_id: Optional[int] = None,
    ) -> OutlineNode:
        with self._session_factory() as db:
            row = db.get(DbOutlineNode, node_id)
            if row is None or row.task_id != task_id:
                raise NotFound(f"Outline node {node_id} not found", task_id=task_id)
            if title is not None:
                row.title = title
            if content is not None:
                row.content = content
            if status is not None:
                row.status = status.value
            if volume_id is not None:
                row.volume_id = volume_id
            if chapter_id is not None:
                row.chapter_id = chapter_id
            db.commit()
            db.refresh(row)
            return _node_from_row(row)

    def mark_chapter_node(self, task_id: int, chapter_id: int, status: OutlineNodeStatus) -> None:
        with self._session_factory() as db:
            rows = (
                db.query(DbOutlineNode)
                .filter(DbOutlineNode.task_id == task_id, DbOutlineNode.chapter_id == chapter_id)
                .all()
            )
            for row in rows:
                row.status = status.value
            db.commit()

    # ---------- Characters / World settings ----------

    @staticmethod
    def _named_to_dict(row) -> Dict[str, Any]:
        return {
            "id": row.id,
            "novel_id": row.novel_id,
            "name": row.name,
            "category": row.category,
            "fields": dict(row.fields or {}),
            "order": row.order,
        }

    def _add_named(self, model, novel_id: int, items: List[Dict[str, Any]]) -> int:
        """
        items 形如 [{name, category, fields}]，已经按 name 去重；
        作品里已有同名条目的跳过。返回新建的条数。
        """
        created = 0
        with self._session_factory() as db:
            existing = {
                name for (name,) in db.query(model.name).filter(model.novel_id == novel_id).all()
            }
            order = db.query(func.max(model.order)).filter(model.novel_id == novel_id).scalar() or 0
            for item in items:
                if item["name"] in existing:
                    continue
                order += 1
                db.add(
                    model(
                        novel_id=novel_id,
                        name=item["name"],
                        category=item.get("category") or "未分类",
                        fields=dict(item.get("fields") or {}),
                        order=order,
                    )
                )
                existing.add(item["name"])
                created += 1
            db.commit()
        return created

    def _list_named(self, model, novel_id: int) -> List[Dict[str, Any]]:
        with self._session_factory() as db:
            rows = db.query(model).filter(model.novel_id == novel_id).order_by(model.order.asc()).all()
            return [self._named_to_dict(row) for row in rows]

    def add_characters(self, novel_id: int, items: List[Dict[str, Any]]) -> int:
        return self._add_named(DbCharacter, novel_id, items)

    def list_characters(self, novel_id: int) -> List[Dict[str, Any]]:
        return self._list_named(DbCharacter, novel_id)

    def add_world_settings(self, novel_id: int, items: List[Dict[str, Any]]) -> int:
        return self._add_named(DbWorldSetting, novel_id, items)

    def list_world_settings(self, novel_id: int) -> List[Dict[str, Any]]:
        return self._list_named(DbWorldSetting, novel_id)
