"""消息模型

Review note:
- 只追加不修改；唯一的更新是 email 回填。
- usage 以 JSON 文本保存，费用字段在查询时按 COST_FIELDS 顺序提取。
"""
from sqlalchemy import BigInteger, Column, Index, Integer, Unicode, UnicodeText

from chat_relay.models.base import Base, Timestamp, utcnow


class ChatMessage(Base):
    """对话消息表"""
    __tablename__ = "chat_messages"

    # sqlite 只有 INTEGER PRIMARY KEY 才会自增
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    client_id = Column(Unicode(256), nullable=False)
    conversation_id = Column(Unicode(64), nullable=False)
    chat_mode = Column(Unicode(64), nullable=False)
    role = Column(Unicode(32), nullable=False)  # user, assistant
    content = Column(UnicodeText, nullable=False)
    model = Column(Unicode(128), nullable=True)
    usage = Column(UnicodeText, nullable=True)  # JSON string
    email = Column(Unicode(320), nullable=True)
    created_at = Column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_chat_messages_client_conversation", "client_id", "conversation_id", "created_at"),
        Index(
            "ix_chat_messages_email",
            "email",
            "created_at",
            postgresql_where=email.isnot(None),
            mssql_where=email.isnot(None),
            sqlite_where=email.isnot(None),
        ),
    )

    def __repr__(self):
        return f"<ChatMessage {self.role}: {self.content[:50]}...>"
