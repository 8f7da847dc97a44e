# careplan/adapters/sql_store.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, LargeBinary, MetaData, String, Table, delete, func, select
from sqlalchemy.dialects.mysql import LONGBLOB
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from careplan.core.logging_utils import kv

metadata = MetaData()

kv_store = Table(
    "kv_store",
    metadata,
    Column("store_key", String(191), primary_key=True),  # 191 * 4 bytes fits the utf8mb4 index limit
    Column("payload", LargeBinary().with_variant(LONGBLOB(), "mysql"), nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


def make_engine(db: Dict[str, Any]) -> AsyncEngine:
    """
    AsyncEngine over the aiomysql driver ('mysql+aiomysql').
    Forces utf8mb4 so patient and item names round-trip unchanged.
    """
    dsn = (
        f"mysql+aiomysql://{db['user']}:{db['password']}"
        f"@{db['host']}:{db['port']}/{db['db']}"
        f"?charset=utf8mb4"
    )
    return create_async_engine(
        dsn,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=0,
        echo=False,
    )


# -- statements (kept separate so they can be compiled and inspected without a server) --
def upsert_stmt(key: str, value: bytes):
    stmt = mysql_insert(kv_store).values(store_key=key, payload=value, updated_at=func.utc_timestamp())
    return stmt.on_duplicate_key_update(
        payload=stmt.inserted.payload,
        updated_at=stmt.inserted.updated_at,
    )


def select_stmt(key: str):
    return select(kv_store.c.payload).where(kv_store.c.store_key == key).limit(1)


def delete_stmt(key: str):
    return delete(kv_store).where(kv_store.c.store_key == key)


def keys_stmt(prefix: str):
    return (
        select(kv_store.c.store_key)
        .where(kv_store.c.store_key.startswith(prefix, autoescape=True))
        .order_by(kv_store.c.store_key)
    )


class SqlStore:
    """KeyValueStore on a single MySQL table. Driver errors propagate unchanged."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.log = logging.getLogger("careplan.store.sql")

    @classmethod
    def from_config(cls, db: Dict[str, Any]) -> "SqlStore":
        return cls(make_engine(db))

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        self.log.info("sql.schema.ready " + kv(table=kv_store.name))

    async def get(self, key: str) -> Optional[bytes]:
        async with self.engine.begin() as conn:
            row = (await conn.execute(select_stmt(key))).first()
        return bytes(row[0]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(upsert_stmt(key, value))

    async def delete(self, key: str) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(delete_stmt(key))

    async def keys(self, prefix: str) -> List[str]:
        async with self.engine.begin() as conn:
            rows = (await conn.execute(keys_stmt(prefix))).all()
        return [r[0] for r in rows]

    async def dispose(self) -> None:
        await self.engine.dispose()
