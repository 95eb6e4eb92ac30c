"""持久化后端选择与生命周期

Review note:
- CONNECTION_TYPE 在 AZURE / POSTGRES 中二选一；所选后端缺少连接参数时返回 DisabledChatStore。
- 存储实例进程内单例，首次使用时创建；连接池同样延迟到第一次查询。
"""
from typing import Optional
import logging
import threading

from chat_relay.config import Settings, settings
from chat_relay.crud import AzureSQLChatStore, ChatStore, DisabledChatStore, PostgresChatStore

logger = logging.getLogger("uvicorn.error")

_chat_store: Optional[ChatStore] = None
_chat_store_lock = threading.Lock()


def build_chat_store(config: Settings) -> ChatStore:
    """根据配置构建存储实例"""
    if config.CONNECTION_TYPE == "POSTGRES":
        url = config.postgres_url
        if url is None:
            logger.info("db-disabled connection_type=POSTGRES reason=missing-connection-string")
            return DisabledChatStore()
        return PostgresChatStore(url, ssl=config.POSTGRES_SSL, echo=config.DEBUG)

    url = config.azure_sql_url
    if url is None:
        logger.info("db-disabled connection_type=AZURE reason=missing-connection-parameters")
        return DisabledChatStore()
    return AzureSQLChatStore(url, echo=config.DEBUG)


def get_chat_store() -> ChatStore:
    """获取进程内唯一的存储实例（FastAPI 依赖注入）"""
    global _chat_store
    if _chat_store is None:
        with _chat_store_lock:
            if _chat_store is None:
                _chat_store = build_chat_store(settings)
    return _chat_store


async def init_db() -> None:
    """启动时建表；失败只记录日志，不阻止服务启动"""
    store = get_chat_store()
    if not store.is_configured:
        return
    try:
        await store.ensure_schema()
        logger.info("[db] Tables ensured at startup")
    except Exception as exc:
        logger.error("[db] ensure_schema at startup failed: %s", exc)


async def close_db() -> None:
    global _chat_store
    with _chat_store_lock:
        store, _chat_store = _chat_store, None
    if store is not None:
        await store.close()
