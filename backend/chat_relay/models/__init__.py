"""模型包初始化"""
from chat_relay.models.base import Base
from chat_relay.models.session import ChatSession
from chat_relay.models.message import ChatMessage

__all__ = [
    "Base",
    "ChatSession",
    "ChatMessage",
]
