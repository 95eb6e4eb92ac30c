"""错误类型

Review note:
- 编排层以下抛出的错误都带 HTTP 状态码，路由统一渲染成 `{"error": message}`。
- GatewayError.kind 区分网关失败类型；code 只记录传输层异常名，供日志排障，不返回给调用方。
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RelayError(RuntimeError):
    """带返回状态码的基础错误"""

    status_code: int = 502

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code

    @property
    def message(self) -> str:
        return str(self)


class ChatRequestError(RelayError):
    """聊天请求参数缺失或格式错误"""

    status_code = 400


class UnknownChatModeError(RelayError):
    """chat_mode 没有对应模板"""

    status_code = 404

    def __init__(self, chat_mode: str) -> None:
        super().__init__("Unknown chat mode")
        self.chat_mode = chat_mode


class GatewayErrorKind(str, Enum):
    CONNECTION = "connection"
    PROXY_TIMEOUT = "proxy_timeout"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    HTTP = "http"
    APPLICATION = "application"


class GatewayError(RelayError):
    """网关调用失败"""

    def __init__(
        self,
        message: str,
        status_code: int,
        kind: GatewayErrorKind,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, status_code)
        self.kind = kind
        self.code = code
