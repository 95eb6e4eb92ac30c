"""聊天相关的Pydantic schemas"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ChatModeInfo(BaseModel):
    """聊天模式（来自规则模板的元数据）"""
    id: str
    displayName: str
    promptInfo: str = ""


class ChatModesResponse(BaseModel):
    chat_modes: List[ChatModeInfo]


class ChatResponse(BaseModel):
    """聊天响应；conversation_id 仅在落库成功时返回"""
    content: str
    model: Optional[str] = Field(None, description="实际使用的模型")
    usage: Optional[Any] = Field(None, description="网关返回的用量/计费信息")
    conversation_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """所有错误响应的统一结构"""
    error: str


def error_responses(*status_codes: int) -> Dict[int, Dict[str, Any]]:
    """路由文档里的错误响应声明"""
    return {code: {"model": ErrorResponse} for code in status_codes}
