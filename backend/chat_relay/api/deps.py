"""API 依赖注入"""
from functools import lru_cache

from fastapi import Depends

from chat_relay.config import settings
from chat_relay.crud.chat_store import ChatStore
from chat_relay.database import get_chat_store
from chat_relay.services.chat_service import ChatService
from chat_relay.utils.gateway import GatewayClient
from chat_relay.utils.rules import TemplateStore


@lru_cache(maxsize=1)
def get_template_store() -> TemplateStore:
    return TemplateStore(settings.RULES_DIR)


@lru_cache(maxsize=1)
def get_gateway_client() -> GatewayClient:
    return GatewayClient(
        settings.GATEWAY_BASE_URL,
        settings.GATEWAY_API_KEY,
        timeout_ms=settings.GATEWAY_TIMEOUT_MS,
    )


def get_chat_service(
    templates: TemplateStore = Depends(get_template_store),
    gateway: GatewayClient = Depends(get_gateway_client),
    store: ChatStore = Depends(get_chat_store),
) -> ChatService:
    return ChatService(templates, gateway, store, settings.default_model)
