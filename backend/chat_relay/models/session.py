"""访客会话模型"""
from sqlalchemy import Column, Unicode

from chat_relay.models.base import Base, Timestamp, utcnow


class ChatSession(Base):
    """访客会话表（client_id 唯一，email 可重复）"""
    __tablename__ = "chat_sessions"

    client_id = Column(Unicode(256), primary_key=True)
    email = Column(Unicode(320), nullable=True)
    created_at = Column(Timestamp, default=utcnow, nullable=False)
    updated_at = Column(Timestamp, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<ChatSession {self.client_id}>"
