"""对话持久化（两种 SQL 后端 + 未配置时的空实现）"""
from chat_relay.crud.chat_store import ChatStore, DisabledChatStore
from chat_relay.crud.sql_store import SQLChatStore
from chat_relay.crud.postgres import PostgresChatStore
from chat_relay.crud.azure_sql import AzureSQLChatStore

__all__ = [
    "ChatStore",
    "DisabledChatStore",
    "SQLChatStore",
    "PostgresChatStore",
    "AzureSQLChatStore",
]
