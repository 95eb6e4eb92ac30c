"""UsageFlows 网关调用（POST /api/execute, OpenRouter text-completion）

Review note:
- 请求与非 200 响应全部完整记录日志，便于排障；API Key 只记录是否存在和长度。
- 失败分类：连接失败 / 反向代理超时 / 上游超时 / 其他 HTTP 错误 / 200 但 body.status=error。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import asyncio
import json
import logging
import time

import httpx

from chat_relay.exceptions import GatewayError, GatewayErrorKind

logger = logging.getLogger("uvicorn.error")

DEFAULT_TIMEOUT_MS = 120000
API_KEY_HEADER = "X-Internal-API-Key"
PROVIDER = "openrouter"
JOB_TYPE = "text-completion"

UNREACHABLE_MESSAGE = "Gateway unreachable"
PROXY_TIMEOUT_MESSAGE = (
    "The gateway server (nginx) timed out waiting for the AI. The gateway admin needs to "
    "increase nginx proxy_read_timeout for /api/execute (e.g. 120s)."
)
UPSTREAM_TIMEOUT_MESSAGE = "The AI gateway timed out. Try a shorter message or try again in a moment."


@dataclass
class GatewayResult:
    content: str
    usage: Optional[Any] = None
    model: Optional[str] = None


def _preview(text: str, limit: int = 120) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _log_request(url: str, body: Dict[str, Any], api_key: str, timeout_ms: int) -> None:
    messages = body.get("payload", {}).get("messages") or []
    key_state = f"present ({len(api_key)} chars)" if api_key else "MISSING"
    logger.info("[gateway] ---- REQUEST ----")
    logger.info("[gateway] URL: %s", url)
    logger.info("[gateway] Method: POST")
    logger.info("[gateway] Headers: Content-Type=application/json, %s=%s", API_KEY_HEADER, key_state)
    logger.info("[gateway] Timeout: %s ms", timeout_ms)
    logger.info(
        "[gateway] Body: provider=%s job_type=%s dry_run=%s payload.model=%s",
        body.get("provider"), body.get("job_type"), body.get("dry_run"), body.get("payload", {}).get("model"),
    )
    logger.info("[gateway] Body.payload.messages: count=%d", len(messages))
    for i, msg in enumerate(messages):
        content = msg.get("content") if isinstance(msg, dict) else None
        content = content if isinstance(content, str) else str(content or "")
        role = msg.get("role", "?") if isinstance(msg, dict) else "?"
        logger.info(
            "[gateway]   [%d] role=%s contentLength=%d preview=%s",
            i, role, len(content), json.dumps(_preview(content), ensure_ascii=False),
        )
    if messages:
        logger.info("[gateway] ---- FULL PROMPT SENT TO API ----")
        for i, msg in enumerate(messages):
            role = msg.get("role", "?") if isinstance(msg, dict) else "?"
            content = msg.get("content") if isinstance(msg, dict) else None
            logger.info("[gateway] --- Message %d role=%s ---\n%s", i, role, "" if content is None else content)
        logger.info("[gateway] ---- END FULL PROMPT ----")
    logger.info("[gateway] ---- END REQUEST ----")


def _log_response(response: httpx.Response, body: Any, elapsed_ms: int) -> None:
    headers = dict(response.headers)
    for key in list(headers):
        if key.lower() == API_KEY_HEADER.lower():
            headers[key] = "[REDACTED]"
    logger.info("[gateway] ---- RESPONSE ----")
    logger.info("[gateway] Status: %s Elapsed: %d ms", response.status_code, elapsed_ms)
    logger.info("[gateway] Response headers: %s", json.dumps(headers, indent=2))
    dumped = body if isinstance(body, str) else json.dumps(body, indent=2, ensure_ascii=False)
    logger.info("[gateway] Response body: %s", dumped)
    logger.info("[gateway] ---- END RESPONSE ----")


def _decode_body(response: httpx.Response) -> Any:
    """JSON 优先，解析失败时返回原始文本"""
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_proxy_timeout(content_type: str, body_text: str) -> bool:
    lowered = body_text.lower()
    is_html = "text/html" in content_type.lower() or "<html" in lowered
    return is_html and "504" in body_text


def _classify_http_error(response: httpx.Response, body: Any, elapsed_ms: int) -> GatewayError:
    status = response.status_code
    content_type = response.headers.get("content-type", "")
    body_text = body if isinstance(body, str) else json.dumps(body, ensure_ascii=False)

    logger.error("[gateway] Non-200 response:")
    if status == 504 and _is_proxy_timeout(content_type, body_text):
        logger.error(
            "[gateway] 504 from nginx (HTML). Nginx in front of the gateway timed out waiting for "
            "the upstream (OpenRouter). Elapsed: %d ms",
            elapsed_ms,
        )
        logger.error(
            "[gateway] Fix: on the gateway server, increase nginx proxy timeouts for /api/execute, "
            "e.g. proxy_read_timeout 120s;"
        )
        return GatewayError(PROXY_TIMEOUT_MESSAGE, status, GatewayErrorKind.PROXY_TIMEOUT)

    _log_response(response, body, elapsed_ms)
    if status == 504:
        return GatewayError(UPSTREAM_TIMEOUT_MESSAGE, status, GatewayErrorKind.UPSTREAM_TIMEOUT)

    if isinstance(body, dict) and body.get("message"):
        message = str(body["message"])
    else:
        message = response.reason_phrase or "Gateway error"
    return GatewayError(message, status, GatewayErrorKind.HTTP)


def _pick_model(body: Dict[str, Any], result: Any) -> Optional[str]:
    candidates = [body.get("model")]
    if isinstance(result, dict):
        candidates.append(result.get("model"))
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _pick_content(result: Any) -> str:
    if not isinstance(result, dict):
        return ""
    choices = result.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    first = choices[0]
    message = first.get("message")
    if isinstance(message, dict) and message.get("content") is not None:
        return str(message["content"])
    if first.get("text") is not None:
        return str(first["text"])
    return ""


async def execute_chat(
    base_url: str,
    api_key: str,
    model: str,
    messages: List[Dict],
    timeout_ms: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> GatewayResult:
    """
    调用网关执行一次文本补全

    Raises:
        GatewayError: 连接失败、非 200 响应或 body.status=error
    """
    url = (base_url or "").rstrip("/") + "/api/execute"
    body = {
        "provider": PROVIDER,
        "job_type": JOB_TYPE,
        "payload": {"model": model, "messages": messages},
        "dry_run": False,
    }
    timeout = timeout_ms or DEFAULT_TIMEOUT_MS
    headers = {
        API_KEY_HEADER: api_key,
        "Content-Type": "application/json",
    }

    _log_request(url, body, api_key, timeout)
    start = time.monotonic()

    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout / 1000), transport=transport) as client:
            # httpx 的超时只约束单次读写；整体耗时另设上限
            response = await asyncio.wait_for(client.post(url, json=body, headers=headers), timeout / 1000)
    except (httpx.TransportError, asyncio.TimeoutError) as exc:
        elapsed = int((time.monotonic() - start) * 1000)
        code = type(exc).__name__
        logger.error("[gateway] ---- REQUEST FAILED (no HTTP response) ----")
        logger.error("[gateway] Error code: %s", code)
        logger.error("[gateway] Error message: %s", exc)
        logger.error("[gateway] Elapsed before failure: %d ms", elapsed)
        logger.error("[gateway] URL: %s", url)
        logger.error("[gateway] ---- END FAILURE ----")
        raise GatewayError(UNREACHABLE_MESSAGE, 502, GatewayErrorKind.CONNECTION, code=code) from exc

    elapsed = int((time.monotonic() - start) * 1000)
    data = _decode_body(response)

    if response.status_code != 200:
        raise _classify_http_error(response, data, elapsed)

    if isinstance(data, dict) and data.get("status") == "error":
        logger.error("[gateway] Gateway body.status=error:")
        _log_response(response, data, elapsed)
        raise GatewayError(
            str(data.get("message") or "Gateway returned error"),
            502,
            GatewayErrorKind.APPLICATION,
        )

    if not isinstance(data, dict):
        data = {}
    result = data.get("result")
    content = _pick_content(result)
    usage = data.get("usage")
    model_from_response = _pick_model(data, result)

    logger.info(
        "[gateway] Success: status=200 elapsed=%d ms contentLength=%d usage=%s model=%s",
        elapsed,
        len(content),
        json.dumps(usage, ensure_ascii=False) if usage is not None else "none",
        model_from_response or "none",
    )
    return GatewayResult(content=content, usage=usage, model=model_from_response)


class GatewayClient:
    """带固定配置的网关客户端，供编排层调用"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout_ms = int(timeout_ms or DEFAULT_TIMEOUT_MS)
        self.transport = transport

    async def execute(self, model: str, messages: List[Dict]) -> GatewayResult:
        return await execute_chat(
            self.base_url,
            self.api_key,
            model,
            messages,
            timeout_ms=self.timeout_ms,
            transport=self.transport,
        )
