"""访客会话API（绑定 email）"""
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from typing import Any, Dict, Optional
import logging
import re

from chat_relay.crud.chat_store import ChatStore
from chat_relay.database import get_chat_store
from chat_relay.schemas.chat import error_responses
from chat_relay.schemas.history import EmailLinkResponse
from chat_relay.services.chat_service import clean_email
from chat_relay.utils.client_identity import derive_client_id

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")


@router.post("/sessions/email", response_model=EmailLinkResponse, responses=error_responses(400, 500, 503))
async def link_email(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    store: ChatStore = Depends(get_chat_store),
):
    """把 email 绑定到当前 client_id，并回填该访客之前的匿名消息"""
    body = body or {}
    email = clean_email(body.get("email"))
    if not email or not EMAIL_PATTERN.match(email):
        raise HTTPException(status_code=400, detail="Valid email required")
    if not store.is_configured:
        raise HTTPException(status_code=503, detail="Persistence not configured")

    client_id = derive_client_id(request, body)
    try:
        await store.ensure_schema()
        await store.upsert_session(client_id, email)
        backfilled = await store.backfill_email(client_id, email)
    except Exception:
        logger.exception("sessions-email-failed client_id=%s", client_id)
        raise HTTPException(status_code=500, detail="Failed to link email")

    logger.info("sessions-email-linked client_id=%s backfilled=%d", client_id, backfilled)
    return {"ok": True, "backfilled": backfilled}
