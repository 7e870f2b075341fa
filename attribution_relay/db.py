import os
from typing import Dict
from sqlalchemy import inspect
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

from .utils.logger import info

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

Base = declarative_base()

# 进程级异步引擎与会话（避免跨进程共享连接）
_engines: Dict[int, AsyncEngine] = {}
_session_factories: Dict[int, async_sessionmaker[AsyncSession]] = {}


def _database_url() -> str:
    """优先 DATABASE_URL；否则由 MYSQL_* 环境变量拼出 asyncmy DSN"""
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("MYSQL_HOST")
    port = int(os.getenv("MYSQL_PORT", "3306"))
    user = os.getenv("MYSQL_USER")
    password = os.getenv("MYSQL_PASSWORD")
    db = os.getenv("MYSQL_DB")

    missing_vars = [name for name, val in (
        ("MYSQL_HOST", host),
        ("MYSQL_USER", user),
        ("MYSQL_PASSWORD", password),
        ("MYSQL_DB", db),
    ) if not val]
    if missing_vars:
        raise ValueError(
            f"Missing required database environment variables: {', '.join(missing_vars)}\n"
            "Set DATABASE_URL, or MYSQL_HOST / MYSQL_USER / MYSQL_PASSWORD / MYSQL_DB "
            "(a .env file in the project root is loaded automatically)."
        )
    return f"mysql+asyncmy://{user}:{password}@{host}:{port}/{db}?charset=utf8mb4"


def _add_missing_columns(sync_conn: Connection) -> None:
    """只增不删：给老表补齐后续版本新增的列"""
    inspector = inspect(sync_conn)
    existing_tables = set(inspector.get_table_names())
    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        existing_cols = {c["name"] for c in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing_cols:
                continue
            col_type = column.type.compile(dialect=sync_conn.dialect)
            sync_conn.exec_driver_sql(
                f"ALTER TABLE {table.name} ADD COLUMN {column.name} {col_type}"
            )
            info(f"Schema: added column {table.name}.{column.name}")


def _ensure_schema(sync_conn: Connection) -> None:
    from . import models  # noqa: F401  注册全部表
    Base.metadata.create_all(sync_conn)
    _add_missing_columns(sync_conn)


async def _prepare_engine() -> AsyncEngine:
    """创建进程级异步引擎并初始化表结构"""
    url = _database_url()
    kwargs = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_recycle=1800, pool_size=10, max_overflow=20)
    engine = create_async_engine(url, **kwargs)
    async with engine.begin() as conn:
        await conn.run_sync(_ensure_schema)
    return engine


async def get_session() -> AsyncSession:
    """获取进程级会话（异步）"""
    pid = os.getpid()

    if pid not in _engines:
        _engines[pid] = await _prepare_engine()
        _session_factories[pid] = async_sessionmaker(_engines[pid], expire_on_commit=False)

    return _session_factories[pid]()


async def cleanup_old_engines():
    """释放当前进程的数据库连接"""
    pid = os.getpid()

    if pid in _engines:
        await _engines[pid].dispose()
        del _engines[pid]
        del _session_factories[pid]
