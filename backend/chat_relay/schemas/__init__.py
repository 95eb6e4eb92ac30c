"""Schemas包初始化"""
from chat_relay.schemas.chat import (
    ChatModeInfo,
    ChatModesResponse,
    ChatResponse,
    ErrorResponse,
    error_responses,
)
from chat_relay.schemas.history import (
    ConversationSummary,
    AdminConversationSummary,
    ConversationListResponse,
    AdminConversationListResponse,
    StoredMessage,
    MessageListResponse,
    EmailLinkResponse,
    DeleteConversationResponse,
)

__all__ = [
    "ChatModeInfo",
    "ChatModesResponse",
    "ChatResponse",
    "ErrorResponse",
    "error_responses",
    "ConversationSummary",
    "AdminConversationSummary",
    "ConversationListResponse",
    "AdminConversationListResponse",
    "StoredMessage",
    "MessageListResponse",
    "EmailLinkResponse",
    "DeleteConversationResponse",
]
