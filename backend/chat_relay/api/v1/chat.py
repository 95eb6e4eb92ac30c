"""聊天API（模式列表、规则查看、发送一轮对话）"""
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from typing import Any, Dict, Optional
import logging

from chat_relay.api.deps import get_chat_service, get_template_store
from chat_relay.exceptions import GatewayError, RelayError
from chat_relay.schemas.chat import ChatModesResponse, ChatResponse, error_responses
from chat_relay.services.chat_service import ChatService
from chat_relay.utils.client_identity import derive_client_id
from chat_relay.utils.rules import TemplateStore

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


@router.get("/chat-modes", response_model=ChatModesResponse, responses=error_responses(500))
async def list_chat_modes(templates: TemplateStore = Depends(get_template_store)):
    """获取可用聊天模式（id, displayName, promptInfo）"""
    try:
        return {"chat_modes": templates.list_modes()}
    except OSError as exc:
        logger.error("chat-modes-failed error=%s", exc)
        raise HTTPException(status_code=500, detail="Failed to list chat modes")


@router.get("/rules/{chat_mode}", response_class=PlainTextResponse, responses=error_responses(404))
async def get_rules(chat_mode: str, templates: TemplateStore = Depends(get_template_store)):
    """查看某个模式的规则正文（纯文本）"""
    template = templates.load(chat_mode)
    if template is None:
        raise HTTPException(status_code=404, detail="Unknown chat mode")
    return PlainTextResponse(template.meta.rules_only)


@router.post(
    "/chat",
    response_model=ChatResponse,
    response_model_exclude_unset=True,
    responses=error_responses(400, 404, 502, 504),
)
async def chat(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    service: ChatService = Depends(get_chat_service),
):
    """发送一轮对话"""
    body = body or {}
    history = body.get("conversation_history")
    logger.info(
        "chat-request chat_mode=%s history_length=%s",
        body.get("chat_mode"),
        len(history) if isinstance(history, list) else 0,
    )

    try:
        return await service.handle_turn(body, derive_client_id(request, body))
    except GatewayError as exc:
        logger.error("chat-gateway-error kind=%s code=%s status=%s message=%s",
                     exc.kind.value, exc.code or "(none)", exc.status_code, exc)
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    except RelayError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    except Exception:
        logger.exception("chat-failed")
        raise HTTPException(status_code=502, detail="Gateway request failed")
