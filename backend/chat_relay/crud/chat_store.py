"""对话持久化接口

Review note:
- 编排层与 API 层只依赖 ChatStore；两种 SQL 后端（Postgres / Azure SQL）实现同一组操作，
  返回字段一致的 dict。
- 未配置连接参数时使用 DisabledChatStore：所有操作返回空值，不抛错，系统照常可用。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

DEFAULT_ADMIN_LIMIT = 200
MAX_ADMIN_LIMIT = 500


def clamp_admin_limit(limit: Any) -> int:
    """后台列表条数限制：非法值取默认 200，范围 [1, 500]"""
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = 0
    if value == 0:
        value = DEFAULT_ADMIN_LIMIT
    return min(max(value, 1), MAX_ADMIN_LIMIT)


def normalize_filter(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if max_length is not None:
        value = value[:max_length]
    return value or None


class ChatStore(ABC):
    """会话/消息存储的统一接口"""

    is_configured: bool = True

    @abstractmethod
    async def ensure_schema(self) -> None:
        """幂等建表建索引，可在每次写入前重复调用"""

    @abstractmethod
    async def upsert_session(self, client_id: str, email: Optional[str]) -> None:
        ...

    @abstractmethod
    async def append_messages(
        self,
        client_id: str,
        conversation_id: str,
        chat_mode: str,
        messages: Sequence[Dict[str, Any]],
        email: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def backfill_email(self, client_id: str, email: str) -> int:
        """给该 client 下 email 为空的消息补写 email，返回更新条数"""

    @abstractmethod
    async def list_conversations(
        self,
        client_id: Optional[str],
        email: Optional[str] = None,
        chat_mode: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_conversations_with_preview(
        self,
        client_id: Optional[str],
        email: Optional[str] = None,
        chat_mode: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_conversations_for_admin(
        self,
        client_id: Optional[str] = None,
        email: Optional[str] = None,
        chat_mode: Optional[str] = None,
        limit: Any = DEFAULT_ADMIN_LIMIT,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_messages(self, client_id: str, conversation_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def delete_conversation(self, client_id: str, conversation_id: str) -> int:
        ...

    @abstractmethod
    async def get_client_id_by_email(self, email: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_session_email(self, client_id: str) -> Optional[str]:
        ...

    async def close(self) -> None:
        """释放连接池"""


class DisabledChatStore(ChatStore):
    """未配置持久化时的空实现"""

    is_configured = False

    async def ensure_schema(self) -> None:
        return None

    async def upsert_session(self, client_id, email) -> None:
        return None

    async def append_messages(self, client_id, conversation_id, chat_mode, messages, email=None) -> None:
        return None

    async def backfill_email(self, client_id, email) -> int:
        return 0

    async def list_conversations(self, client_id, email=None, chat_mode=None):
        return []

    async def list_conversations_with_preview(self, client_id, email=None, chat_mode=None):
        return []

    async def list_conversations_for_admin(self, client_id=None, email=None, chat_mode=None, limit=DEFAULT_ADMIN_LIMIT):
        return []

    async def get_messages(self, client_id, conversation_id):
        return []

    async def delete_conversation(self, client_id, conversation_id) -> int:
        return 0

    async def get_client_id_by_email(self, email):
        return None

    async def get_session_email(self, client_id):
        return None
