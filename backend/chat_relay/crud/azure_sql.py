"""Azure SQL / SQL Server 后端（aioodbc）

Review note:
- SQL Server 没有 INSERT ... ON CONFLICT，会话 upsert 用 MERGE。
- usage 数值提取用 TRY_CAST(JSON_VALUE(...))，非 JSON 文本先用 ISJSON 排除。
- 建表建索引合成一个批次，每条都带 IF NOT EXISTS 判断；多进程同时启动也不会报“对象已存在”。
"""
from __future__ import annotations

from typing import List, Optional

from sqlalchemy import Float, Unicode, bindparam, case, func, text, try_cast
from sqlalchemy.engine import URL, Dialect
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateIndex, CreateTable

from chat_relay.crud.sql_store import SQLChatStore, messages_table, sessions_table
from chat_relay.models.base import Timestamp

MERGE_SESSION_SQL = """
MERGE chat_sessions AS t
USING (SELECT :client_id AS client_id, :email AS email, :now AS now) AS s
ON t.client_id = s.client_id
WHEN MATCHED THEN UPDATE SET email = s.email, updated_at = s.now
WHEN NOT MATCHED THEN INSERT (client_id, email, created_at, updated_at)
    VALUES (s.client_id, s.email, s.now, s.now);
"""


def schema_batch(dialect: Dialect) -> str:
    """两张表及其索引的建表批次（T-SQL），按表名/索引名判断是否已存在"""
    statements: List[str] = []
    for table in (sessions_table, messages_table):
        ddl = str(CreateTable(table).compile(dialect=dialect)).strip()
        statements.append(f"IF OBJECT_ID(N'{table.name}', N'U') IS NULL\nBEGIN\n{ddl}\nEND;")
        for index in sorted(table.indexes, key=lambda idx: idx.name):
            ddl = str(CreateIndex(index).compile(dialect=dialect)).strip()
            statements.append(
                f"IF NOT EXISTS (SELECT 1 FROM sys.indexes WHERE name = N'{index.name}' "
                f"AND object_id = OBJECT_ID(N'{table.name}'))\nBEGIN\n{ddl}\nEND;"
            )
    return "\n".join(statements)


class AzureSQLChatStore(SQLChatStore):
    dialect_label = "azure"

    def __init__(self, url: str | URL, echo: bool = False) -> None:
        super().__init__(url, engine_kwargs={"pool_pre_ping": True, "echo": echo})

    def _session_upsert(self, client_id: str, email: Optional[str], now):
        return text(MERGE_SESSION_SQL).bindparams(
            bindparam("client_id", client_id, type_=Unicode(256)),
            bindparam("email", email, type_=Unicode(320)),
            bindparam("now", now, type_=Timestamp),
        )

    def _usage_number(self, usage, field: str):
        return case(
            (func.isjson(usage) == 1, try_cast(func.json_value(usage, f"$.{field}"), Float)),
            else_=None,
        )

    async def _create_schema(self, conn: AsyncConnection) -> None:
        await conn.exec_driver_sql(schema_batch(conn.dialect))
