"""访客身份推导

优先使用调用方显式传入的 session id（header > body > query）；
否则对调用方网络地址做 sha256，得到固定长度的伪身份。
同一出口地址（NAT/代理）后的所有调用方会共享同一个身份。
"""
from typing import Any, Mapping, Optional
import hashlib

from fastapi import Request

SESSION_HEADER = "x-session-id"
SESSION_FIELD = "session_id"
MAX_CLIENT_ID_LENGTH = 256


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()[:MAX_CLIENT_ID_LENGTH]
    return None


def hash_address(address: Optional[str]) -> str:
    return hashlib.sha256((address or "unknown").encode("utf-8")).hexdigest()


def derive_client_id(request: Request, body: Optional[Mapping[str, Any]] = None) -> str:
    candidates = [request.headers.get(SESSION_HEADER)]
    if isinstance(body, Mapping):
        candidates.append(body.get(SESSION_FIELD))
    candidates.append(request.query_params.get(SESSION_FIELD))

    for candidate in candidates:
        cleaned = _clean(candidate)
        if cleaned:
            return cleaned

    address = request.client.host if request.client else None
    return hash_address(address)
