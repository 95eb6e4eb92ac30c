"""SQL 后端通用实现

Review note:
- 查询统一用 SQLAlchemy Core 构建，分页（LIMIT / TOP）由方言自动渲染。
- 方言差异只留三个钩子：会话 upsert 语句、usage JSON 数值字段提取、建表 DDL。
- 连接池（AsyncEngine）在首次使用时创建，双重检查加锁，进程内只会有一个。
"""
from __future__ import annotations

from abc import abstractmethod
from typing import Any, Dict, List, Optional, Sequence
import asyncio
import threading

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.sql import ColumnElement, Executable

from chat_relay.crud.chat_store import (
    DEFAULT_ADMIN_LIMIT,
    ChatStore,
    clamp_admin_limit,
    normalize_filter,
)
from chat_relay.models import Base, ChatMessage, ChatSession
from chat_relay.models.base import utcnow
from chat_relay.utils.usage_cost import COST_FIELDS, extract_cost, parse_usage, serialize_usage

sessions_table = ChatSession.__table__
messages_table = ChatMessage.__table__


class SQLChatStore(ChatStore):
    """基于 SQLAlchemy 异步引擎的 ChatStore"""

    dialect_label = "sql"

    def __init__(self, url: str | URL, engine_kwargs: Optional[Dict[str, Any]] = None) -> None:
        self._url = url
        self._engine_kwargs = dict(engine_kwargs or {})
        self._engine: Optional[AsyncEngine] = None
        self._engine_lock = threading.Lock()
        self._schema_lock = asyncio.Lock()
        self._schema_ready = False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            with self._engine_lock:
                if self._engine is None:
                    self._engine = create_async_engine(self._url, **self._engine_kwargs)
        return self._engine

    # ---- 方言钩子 ----

    @abstractmethod
    def _session_upsert(self, client_id: str, email: Optional[str], now) -> Executable:
        """按 client_id 插入或更新会话（更新 email 与 updated_at）"""

    @abstractmethod
    def _usage_number(self, usage: ColumnElement, field: str) -> ColumnElement:
        """从 usage JSON 文本中取出数值字段；缺失或无法解析时为 NULL"""

    async def _create_schema(self, conn: AsyncConnection) -> None:
        await conn.run_sync(Base.metadata.create_all, tables=[sessions_table, messages_table])

    # ---- 公共表达式 ----

    @staticmethod
    def _same_conversation(inner, outer) -> ColumnElement:
        return and_(
            inner.c.client_id == outer.c.client_id,
            inner.c.conversation_id == outer.c.conversation_id,
        )

    def _first_user_content(self, outer) -> ColumnElement:
        m2 = messages_table.alias("m2")
        return (
            select(m2.c.content)
            .where(self._same_conversation(m2, outer), m2.c.role == "user")
            .order_by(m2.c.created_at.asc(), m2.c.id.asc())
            .limit(1)
            .correlate(outer)
            .scalar_subquery()
        )

    def _latest_model(self, outer) -> ColumnElement:
        m3 = messages_table.alias("m3")
        return (
            select(m3.c.model)
            .where(
                self._same_conversation(m3, outer),
                m3.c.role == "assistant",
                m3.c.model.isnot(None),
                m3.c.model != "",
            )
            .order_by(m3.c.created_at.desc(), m3.c.id.desc())
            .limit(1)
            .correlate(outer)
            .scalar_subquery()
        )

    def _latest_email(self, outer) -> ColumnElement:
        m4 = messages_table.alias("m4")
        return (
            select(m4.c.email)
            .where(self._same_conversation(m4, outer), m4.c.email.isnot(None), m4.c.email != "")
            .order_by(m4.c.created_at.desc(), m4.c.id.desc())
            .limit(1)
            .correlate(outer)
            .scalar_subquery()
        )

    def _usage_cost(self, usage: ColumnElement) -> ColumnElement:
        """按 COST_FIELDS 顺序取第一个非空数值"""
        return func.coalesce(*[self._usage_number(usage, field) for field in COST_FIELDS])

    def _total_cost(self, outer) -> ColumnElement:
        m5 = messages_table.alias("m5")
        return (
            select(func.sum(self._usage_cost(m5.c.usage)))
            .where(
                self._same_conversation(m5, outer),
                m5.c.role == "assistant",
                m5.c.usage.isnot(None),
            )
            .correlate(outer)
            .scalar_subquery()
        )

    # ---- ChatStore ----

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if self._schema_ready:
                return
            async with self.engine.begin() as conn:
                await self._create_schema(conn)
            self._schema_ready = True

    async def upsert_session(self, client_id: str, email: Optional[str]) -> None:
        stmt = self._session_upsert(client_id, email or None, utcnow())
        async with self.engine.begin() as conn:
            await conn.execute(stmt)

    async def append_messages(
        self,
        client_id: str,
        conversation_id: str,
        chat_mode: str,
        messages: Sequence[Dict[str, Any]],
        email: Optional[str] = None,
    ) -> None:
        if not messages:
            return
        async with self.engine.begin() as conn:
            # 逐条插入，保证 id 与 created_at 顺序和传入顺序一致
            for msg in messages:
                await conn.execute(
                    insert(messages_table).values(
                        client_id=client_id,
                        conversation_id=conversation_id,
                        chat_mode=chat_mode,
                        role=msg.get("role"),
                        content=msg.get("content") or "",
                        model=msg.get("model") or None,
                        usage=serialize_usage(msg.get("usage")),
                        email=email or None,
                    )
                )

    async def backfill_email(self, client_id: str, email: str) -> int:
        m = messages_table
        stmt = (
            update(m)
            .where(m.c.client_id == client_id, or_(m.c.email.is_(None), m.c.email == ""))
            .values(email=email)
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount or 0

    def _email_scoped_listing(self, email: str, chat_mode: Optional[str], with_preview: bool):
        """
        按 email 列出会话：同一 email 可能对应多个 client_id，
        创建时间取整个会话（不仅是带 email 的消息）的最早时间
        """
        m = messages_table.alias("m")
        all_rows = messages_table.alias("conv_rows")
        conv = (
            select(
                all_rows.c.client_id,
                all_rows.c.conversation_id,
                func.min(all_rows.c.created_at).label("created_at"),
            )
            .group_by(all_rows.c.client_id, all_rows.c.conversation_id)
            .subquery("conv")
        )
        columns = [m.c.client_id, m.c.conversation_id, m.c.chat_mode, conv.c.created_at]
        if with_preview:
            columns.append(self._first_user_content(m).label("question_preview"))
        stmt = (
            select(*columns)
            .select_from(m.join(conv, self._same_conversation(conv, m)))
            .where(m.c.email == email)
        )
        if chat_mode:
            stmt = stmt.where(m.c.chat_mode == chat_mode)
        return (
            stmt.group_by(m.c.client_id, m.c.conversation_id, m.c.chat_mode, conv.c.created_at)
            .order_by(conv.c.created_at.desc())
        )

    def _client_scoped_listing(self, client_id: str, chat_mode: Optional[str], with_preview: bool):
        m = messages_table.alias("m")
        created = func.min(m.c.created_at)
        columns = [m.c.client_id, m.c.conversation_id, m.c.chat_mode, created.label("created_at")]
        if with_preview:
            columns.append(self._first_user_content(m).label("question_preview"))
        stmt = select(*columns).where(m.c.client_id == client_id)
        if chat_mode:
            stmt = stmt.where(m.c.chat_mode == chat_mode)
        return stmt.group_by(m.c.client_id, m.c.conversation_id, m.c.chat_mode).order_by(created.desc())

    async def _list(
        self,
        client_id: Optional[str],
        email: Optional[str],
        chat_mode: Optional[str],
        with_preview: bool,
    ) -> List[Dict[str, Any]]:
        mode = normalize_filter(chat_mode)
        email = normalize_filter(email)
        if email:
            stmt = self._email_scoped_listing(email, mode, with_preview)
        elif client_id:
            stmt = self._client_scoped_listing(client_id, mode, with_preview)
        else:
            return []

        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]

        if not email:
            return rows
        # 同一 (client_id, conversation_id) 只保留一条（最新的在前）
        seen = set()
        unique_rows = []
        for row in rows:
            key = (row["client_id"], row["conversation_id"])
            if key in seen:
                continue
            seen.add(key)
            unique_rows.append(row)
        return unique_rows

    async def list_conversations(self, client_id, email=None, chat_mode=None):
        return await self._list(client_id, email, chat_mode, with_preview=False)

    async def list_conversations_with_preview(self, client_id, email=None, chat_mode=None):
        return await self._list(client_id, email, chat_mode, with_preview=True)

    async def list_conversations_for_admin(
        self,
        client_id: Optional[str] = None,
        email: Optional[str] = None,
        chat_mode: Optional[str] = None,
        limit: Any = DEFAULT_ADMIN_LIMIT,
    ) -> List[Dict[str, Any]]:
        stmt = self._admin_listing(
            normalize_filter(client_id, 256),
            normalize_filter(email, 320),
            normalize_filter(chat_mode, 64),
            clamp_admin_limit(limit),
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

    def _admin_listing(
        self,
        client_id: Optional[str],
        email: Optional[str],
        chat_mode: Optional[str],
        cap: int,
    ):
        m = messages_table.alias("m")
        created = func.min(m.c.created_at)
        stmt = select(
            m.c.client_id,
            self._latest_email(m).label("email"),
            m.c.conversation_id,
            m.c.chat_mode,
            created.label("created_at"),
            self._first_user_content(m).label("question_preview"),
            self._latest_model(m).label("model"),
            self._total_cost(m).label("total_cost"),
        )
        if client_id:
            stmt = stmt.where(m.c.client_id == client_id)
        if email:
            # 后台按子串匹配 email（用户侧是精确匹配）
            stmt = stmt.where(m.c.email.contains(email, autoescape=True))
        if chat_mode:
            stmt = stmt.where(m.c.chat_mode == chat_mode)
        return (
            stmt.group_by(m.c.client_id, m.c.conversation_id, m.c.chat_mode)
            .order_by(created.desc())
            .limit(cap)
        )

    async def get_messages(self, client_id: str, conversation_id: str) -> List[Dict[str, Any]]:
        m = messages_table
        stmt = (
            select(m.c.role, m.c.content, m.c.model, m.c.usage, m.c.created_at)
            .where(m.c.client_id == client_id, m.c.conversation_id == conversation_id)
            .order_by(m.c.created_at.asc(), m.c.id.asc())
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            rows = result.mappings().all()

        messages = []
        for row in rows:
            item: Dict[str, Any] = {"role": row["role"], "content": row["content"]}
            if row["model"]:
                item["model"] = row["model"]
            usage = parse_usage(row["usage"])
            if usage is not None:
                item["usage"] = usage
                cost = extract_cost(usage)
                if cost is not None:
                    item["cost"] = cost
            item["created_at"] = row["created_at"]
            messages.append(item)
        return messages

    async def delete_conversation(self, client_id: str, conversation_id: str) -> int:
        m = messages_table
        stmt = delete(m).where(m.c.client_id == client_id, m.c.conversation_id == conversation_id)
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount or 0

    async def get_client_id_by_email(self, email: str) -> Optional[str]:
        s = sessions_table
        stmt = (
            select(s.c.client_id)
            .where(s.c.email == email)
            .order_by(s.c.updated_at.desc())
            .limit(1)
        )
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return result.scalar()

    async def get_session_email(self, client_id: str) -> Optional[str]:
        s = sessions_table
        stmt = select(s.c.email).where(s.c.client_id == client_id)
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return result.scalar()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
