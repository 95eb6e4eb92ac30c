"""对话历史相关的Pydantic schemas

Review note:
- 列表接口按 exclude_unset 输出：非预览列表不带 question_preview 字段。
"""
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from datetime import datetime


class ConversationSummary(BaseModel):
    """会话摘要"""
    client_id: str
    conversation_id: str
    chat_mode: str
    created_at: datetime
    question_preview: Optional[str] = Field(None, description="第一条用户消息")


class AdminConversationSummary(ConversationSummary):
    """后台会话摘要"""
    email: Optional[str] = None
    model: Optional[str] = Field(None, description="最近一次 assistant 使用的模型")
    total_cost: Optional[float] = Field(None, description="assistant 消息费用合计")


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class AdminConversationListResponse(BaseModel):
    conversations: List[AdminConversationSummary]


class StoredMessage(BaseModel):
    """已保存的消息"""
    role: str
    content: str
    model: Optional[str] = None
    usage: Optional[Any] = None
    cost: Optional[float] = Field(None, description="按 usage 计费字段提取的费用")
    created_at: datetime


class MessageListResponse(BaseModel):
    messages: List[StoredMessage]


class EmailLinkResponse(BaseModel):
    ok: bool = True
    backfilled: int = 0


class DeleteConversationResponse(BaseModel):
    ok: bool = True
    deleted: int = 0
