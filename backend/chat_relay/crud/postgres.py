"""PostgreSQL 后端（asyncpg）"""
from __future__ import annotations

from typing import Optional

from sqlalchemy import Float, case, cast, func
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateIndex, CreateTable

from chat_relay.crud.sql_store import SQLChatStore, messages_table, sessions_table

NUMERIC_PATTERN = r"^\s*-?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$"

# 非法 JSON 返回 NULL，避免单行脏数据让整个聚合查询失败
USAGE_JSONB_DDL = """
CREATE OR REPLACE FUNCTION chat_usage_jsonb(raw text) RETURNS jsonb
LANGUAGE plpgsql IMMUTABLE AS $body$
BEGIN
    RETURN raw::jsonb;
EXCEPTION WHEN others THEN
    RETURN NULL;
END;
$body$
"""


class PostgresChatStore(SQLChatStore):
    dialect_label = "postgres"

    def __init__(self, url: str | URL, ssl: bool = True, echo: bool = False) -> None:
        # 与托管 Postgres 的常见配置一致：加密但不校验证书
        connect_args = {"ssl": "require"} if ssl else {}
        super().__init__(
            url,
            engine_kwargs={
                "connect_args": connect_args,
                "pool_pre_ping": True,
                "echo": echo,
            },
        )

    def _session_upsert(self, client_id: str, email: Optional[str], now):
        stmt = pg_insert(sessions_table).values(
            client_id=client_id,
            email=email,
            created_at=now,
            updated_at=now,
        )
        return stmt.on_conflict_do_update(
            index_elements=[sessions_table.c.client_id],
            set_={"email": stmt.excluded.email, "updated_at": stmt.excluded.updated_at},
        )

    def _usage_number(self, usage, field: str):
        raw = func.chat_usage_jsonb(usage, type_=JSONB)[field].astext
        # 非对象（数组、标量）取键得到 NULL；只有数字文本才转换
        return case((raw.regexp_match(NUMERIC_PATTERN), cast(raw, Float)), else_=None)

    async def _create_schema(self, conn: AsyncConnection) -> None:
        for table in (sessions_table, messages_table):
            await conn.execute(CreateTable(table, if_not_exists=True))
            for index in sorted(table.indexes, key=lambda idx: idx.name):
                await conn.execute(CreateIndex(index, if_not_exists=True))
        await conn.exec_driver_sql(USAGE_JSONB_DDL)
