"""对话历史API

Review note:
- 持久化未配置时所有接口返回 503；存储异常返回 500。
- 用户侧按 email 精确匹配；后台列表按 email 子串匹配。
"""
from fastapi import APIRouter, Depends, HTTPException, Request
from typing import Optional
import logging

from chat_relay.crud.chat_store import DEFAULT_ADMIN_LIMIT, ChatStore
from chat_relay.database import get_chat_store
from chat_relay.schemas.chat import error_responses
from chat_relay.schemas.history import (
    AdminConversationListResponse,
    ConversationListResponse,
    DeleteConversationResponse,
    MessageListResponse,
)
from chat_relay.services.chat_service import MAX_CONVERSATION_ID_LENGTH
from chat_relay.utils.client_identity import MAX_CLIENT_ID_LENGTH, derive_client_id

router = APIRouter(responses=error_responses(500, 503))
logger = logging.getLogger("uvicorn.error")

NOT_CONFIGURED = "Persistence not configured"


def require_store(store: ChatStore = Depends(get_chat_store)) -> ChatStore:
    if not store.is_configured:
        raise HTTPException(status_code=503, detail=NOT_CONFIGURED)
    return store


def _trimmed(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if max_length is not None:
        value = value[:max_length]
    return value or None


@router.get("/chat-history", response_model=ConversationListResponse, response_model_exclude_unset=True)
async def list_history(
    request: Request,
    email: Optional[str] = None,
    chat_mode: Optional[str] = None,
    store: ChatStore = Depends(require_store),
):
    """当前访客（或指定 email）的会话列表；带 chat_mode 时附带首条提问预览"""
    email = _trimmed(email)
    chat_mode = _trimmed(chat_mode)
    try:
        client_id = await store.get_client_id_by_email(email) if email else derive_client_id(request)
        if not client_id and not email:
            return {"conversations": []}
        if chat_mode:
            conversations = await store.list_conversations_with_preview(client_id or "", email, chat_mode)
        else:
            conversations = await store.list_conversations(client_id, email, chat_mode)
    except Exception:
        logger.exception("chat-history-failed")
        raise HTTPException(status_code=500, detail="Failed to list history")
    return {"conversations": conversations}


@router.get("/chat-history/admin", response_model=AdminConversationListResponse)
async def list_history_admin(
    client_id: Optional[str] = None,
    email: Optional[str] = None,
    chat_mode: Optional[str] = None,
    limit: Optional[str] = None,
    store: ChatStore = Depends(require_store),
):
    """后台：跨访客列出会话，可按 client_id / email（子串）/ chat_mode 过滤"""
    try:
        conversations = await store.list_conversations_for_admin(
            client_id=_trimmed(client_id),
            email=_trimmed(email),
            chat_mode=_trimmed(chat_mode),
            limit=limit if limit is not None else DEFAULT_ADMIN_LIMIT,
        )
    except Exception:
        logger.exception("chat-history-admin-failed")
        raise HTTPException(status_code=500, detail="Failed to list history")
    return {"conversations": conversations}


@router.get(
    "/chat-history/messages",
    response_model=MessageListResponse,
    response_model_exclude_unset=True,
    responses=error_responses(400),
)
async def get_history_messages(
    client_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    store: ChatStore = Depends(get_chat_store),
):
    """读取单个会话的全部消息（按时间正序）"""
    client_id = _trimmed(client_id, MAX_CLIENT_ID_LENGTH)
    conversation_id = _trimmed(conversation_id, MAX_CONVERSATION_ID_LENGTH)
    if not client_id or not conversation_id:
        raise HTTPException(status_code=400, detail="client_id and conversation_id required")
    store = require_store(store)
    try:
        messages = await store.get_messages(client_id, conversation_id)
    except Exception:
        logger.exception("chat-history-messages-failed")
        raise HTTPException(status_code=500, detail="Failed to load messages")
    return {"messages": messages}


@router.delete("/chat-history/conversation", response_model=DeleteConversationResponse, responses=error_responses(400))
async def delete_own_conversation(
    request: Request,
    conversation_id: Optional[str] = None,
    store: ChatStore = Depends(get_chat_store),
):
    """删除当前访客的某个会话"""
    conversation_id = _trimmed(conversation_id, MAX_CONVERSATION_ID_LENGTH)
    if not conversation_id:
        raise HTTPException(status_code=400, detail="conversation_id required")
    store = require_store(store)
    try:
        await store.ensure_schema()
        deleted = await store.delete_conversation(derive_client_id(request), conversation_id)
    except Exception:
        logger.exception("chat-history-delete-failed")
        raise HTTPException(status_code=500, detail="Failed to delete conversation")
    return {"ok": True, "deleted": deleted}


@router.delete("/chat-history/admin/conversation", response_model=DeleteConversationResponse, responses=error_responses(400))
async def delete_conversation_admin(
    client_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    store: ChatStore = Depends(get_chat_store),
):
    """后台：删除任意访客的某个会话"""
    client_id = _trimmed(client_id, MAX_CLIENT_ID_LENGTH)
    conversation_id = _trimmed(conversation_id, MAX_CONVERSATION_ID_LENGTH)
    if not client_id or not conversation_id:
        raise HTTPException(status_code=400, detail="client_id and conversation_id required")
    store = require_store(store)
    try:
        await store.ensure_schema()
        deleted = await store.delete_conversation(client_id, conversation_id)
    except Exception:
        logger.exception("chat-history-admin-delete-failed")
        raise HTTPException(status_code=500, detail="Failed to delete conversation")
    return {"ok": True, "deleted": deleted}
