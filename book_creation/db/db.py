# book_creation/db/db.py
import os

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Boolean,
    ForeignKey,
    func,
    JSON,
)
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.dialects.postgresql import JSONB

# 1) 读取环境变量中的 DATABASE_URL（线上会提供）
DATABASE_URL = os.getenv("DATABASE_URL", "")

# 本地开发如果没配 DATABASE_URL，就退回到 sqlite
if not DATABASE_URL:
    DATABASE_URL = "sqlite:///./local_dev.db"


def create_db_engine(url: str):
    # 后台线程 / SSE 线程共用同一个 sqlite 文件
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, future=True, connect_args=connect_args)


# 2) 创建引擎 & 会话工厂
engine = create_db_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

# 3) 声明基类
Base = declarative_base()

# 4) JSON 列：PostgreSQL 用 JSONB，其它（SQLite）用 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


# 5) 任务表：version 列用于乐观并发控制
class DbTask(Base):
    __tablename__ = "book_creation_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, index=True, nullable=False)

    # 展示用 status（由 lifecycle + current_stage 推导），方便按状态筛选
    status = Column(String(32), index=True, nullable=False)
    current_stage = Column(String(32), nullable=False)
    lifecycle = Column(String(32), nullable=False)
    outcome = Column(String(16), nullable=True)
    paused_from = Column(String(32), nullable=True)
    awaiting_title_selection = Column(Boolean, nullable=False, default=False)
    active_operation = Column(String(64), nullable=True)

    novel_id = Column(Integer, nullable=True)
    model_id = Column(String(128), nullable=True)
    prompt_group_id = Column(Integer, nullable=True)
    prompt_config = Column(JSONType, nullable=False)
    task_config = Column(JSONType, nullable=False)
    processed_data = Column(JSONType, nullable=False)

    total_characters_consumed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)


class DbStageRecord(Base):
    """
    每次阶段执行尝试一条记录（只追加，completed 之后不再修改）。
    """
    __tablename__ = "book_creation_stages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("book_creation_tasks.id"), index=True, nullable=False)
    stage_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)
    input_data = Column(JSONType, nullable=False)
    output_data = Column(JSONType, nullable=True)
    prompt_id = Column(Integer, nullable=True)
    characters_consumed = Column(Integer, nullable=False, default=0)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)


class DbOutlineNode(Base):
    __tablename__ = "book_creation_outline_nodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("book_creation_tasks.id"), index=True, nullable=False)
    parent_id = Column(Integer, ForeignKey("book_creation_outline_nodes.id"), nullable=True)
    level = Column(Integer, nullable=False)          # 1 主线 / 2 卷 / 3 章
    order = Column("sort_order", Integer, nullable=False, default=0)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")
    status = Column(String(16), nullable=False, default="draft")
    volume_id = Column(Integer, nullable=True)
    chapter_id = Column(Integer, nullable=True)


# 6) 内容表：小说 / 卷 / 章
class DbNovel(Base):
    __tablename__ = "novels"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DbVolume(Base):
    __tablename__ = "volumes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    novel_id = Column(Integer, ForeignKey("novels.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    order = Column("sort_order", Integer, nullable=False, default=0)


class DbChapter(Base):
    __tablename__ = "chapters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    novel_id = Column(Integer, ForeignKey("novels.id"), index=True, nullable=False)
    volume_id = Column(Integer, ForeignKey("volumes.id"), nullable=True)
    order = Column("sort_order", Integer, nullable=False)   # 全书范围内的章节序号，从 1 开始
    title = Column(String(255), nullable=False)
    outline = Column(Text, nullable=False, default="")
    summary = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    word_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


# 人物卡 / 世界观：大纲阶段从章节大纲里提取，同一作品内按 name 去重
class DbCharacter(Base):
    __tablename__ = "characters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    novel_id = Column(Integer, ForeignKey("novels.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=False, default="未分类")
    fields = Column(JSONType, nullable=False)
    order = Column("sort_order", Integer, nullable=False, default=0)


class DbWorldSetting(Base):
    __tablename__ = "world_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    novel_id = Column(Integer, ForeignKey("novels.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=False, default="未分类")
    fields = Column(JSONType, nullable=False)
    order = Column("sort_order", Integer, nullable=False, default=0)


# 7) 初始化数据库（建表）
def init_db(bind=None) -> None:
    Base.metadata.create_all(bind=bind or engine)


def make_session_factory(url: str) -> sessionmaker:
    """
    为指定数据库建表并返回独立的会话工厂（测试里用 tmp_path 下的 sqlite）。
    """
    local_engine = create_db_engine(url)
    init_db(local_engine)
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=local_engine,
        future=True,
    )
