"""聊天请求编排

Review note:
- 一次对话轮次是顺序流水线：加载模板 -> 组装消息 -> 调用网关 -> 落库。
- 落库失败只记录日志，不影响返回给调用方的网关结果。
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional
import logging
import uuid

from chat_relay.crud.chat_store import ChatStore
from chat_relay.exceptions import ChatRequestError, UnknownChatModeError
from chat_relay.utils.gateway import GatewayClient, GatewayResult
from chat_relay.utils.prompt import build_messages
from chat_relay.utils.rules import TemplateStore

logger = logging.getLogger("uvicorn.error")

MAX_CONVERSATION_ID_LENGTH = 64
MAX_EMAIL_LENGTH = 320
MAX_MODEL_LENGTH = 128
UNKNOWN_MODEL = "unknown"


def clean_email(value: Any) -> Optional[str]:
    """非空且不超过 320 字符的 email，否则 None"""
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or len(value) > MAX_EMAIL_LENGTH:
        return None
    return value


def clean_conversation_id(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()[:MAX_CONVERSATION_ID_LENGTH]
    return None


class ChatService:
    """一次聊天请求的完整处理"""

    def __init__(
        self,
        templates: TemplateStore,
        gateway: GatewayClient,
        store: ChatStore,
        default_model: Optional[str],
    ) -> None:
        self.templates = templates
        self.gateway = gateway
        self.store = store
        self.default_model = (default_model or "").strip() or None

    @staticmethod
    def validate(body: Mapping[str, Any]) -> None:
        if not body.get("chat_mode") or not isinstance(body.get("chat_mode"), str):
            raise ChatRequestError("chat_mode is required")
        if not isinstance(body.get("conversation_history"), list):
            raise ChatRequestError("conversation_history must be an array")
        if not isinstance(body.get("user_message"), str):
            raise ChatRequestError("user_message is required")

    def resolve_model(self, result: GatewayResult) -> Optional[str]:
        """优先使用网关返回的模型名，否则回退到配置的默认模型"""
        if isinstance(result.model, str) and result.model.strip():
            return result.model.strip()[:MAX_MODEL_LENGTH]
        return self.default_model

    async def handle_turn(self, body: Mapping[str, Any], client_id: str) -> Dict[str, Any]:
        """
        处理一次聊天轮次

        Raises:
            ChatRequestError: 参数缺失或格式错误（未发起任何网关/存储调用）
            UnknownChatModeError: chat_mode 没有对应模板
            GatewayError: 网关调用失败
        """
        if not isinstance(body, Mapping):
            raise ChatRequestError("chat_mode is required")
        self.validate(body)

        chat_mode = body["chat_mode"]
        history = body["conversation_history"]
        user_message = body["user_message"]

        template = self.templates.load(chat_mode)
        if template is None:
            logger.info("chat-unknown-mode chat_mode=%s", chat_mode)
            raise UnknownChatModeError(chat_mode)

        messages = build_messages(
            template.meta.rules_only,
            history,
            user_message,
            body.get("optional_context"),
        )

        logger.info("chat-gateway-call chat_mode=%s history_length=%d", chat_mode, len(history))
        result = await self.gateway.execute(self.default_model or "", messages)

        model = self.resolve_model(result)
        logger.info(
            "chat-gateway-replied content_length=%d usage=%s model=%s",
            len(result.content or ""),
            "present" if result.usage is not None else "missing",
            model or "none",
        )

        payload: Dict[str, Any] = {"content": result.content, "model": model}
        if result.usage is not None:
            payload["usage"] = result.usage

        if self.store.is_configured:
            try:
                payload["conversation_id"] = await self.persist_turn(
                    client_id=client_id,
                    chat_mode=chat_mode,
                    user_message=user_message,
                    result=result,
                    model=model,
                    conversation_id=clean_conversation_id(body.get("conversation_id")),
                    email=clean_email(body.get("email")),
                )
            except Exception:
                logger.exception("chat-persist-failed client_id=%s chat_mode=%s", client_id, chat_mode)

        return payload

    async def persist_turn(
        self,
        client_id: str,
        chat_mode: str,
        user_message: str,
        result: GatewayResult,
        model: Optional[str],
        conversation_id: Optional[str],
        email: Optional[str],
    ) -> str:
        """写入本轮的 user + assistant 两条消息，返回 conversation_id"""
        await self.store.ensure_schema()
        conversation_id = conversation_id or str(uuid.uuid4())

        if email:
            await self.store.upsert_session(client_id, email)
            await self.store.backfill_email(client_id, email)
            email_for_messages = email
        else:
            email_for_messages = await self.store.get_session_email(client_id)

        await self.store.append_messages(
            client_id,
            conversation_id,
            chat_mode,
            [
                {"role": "user", "content": user_message},
                {
                    "role": "assistant",
                    "content": result.content or "",
                    "model": model or UNKNOWN_MODEL,
                    "usage": result.usage,
                },
            ],
            email_for_messages,
        )
        return conversation_id
