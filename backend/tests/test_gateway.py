import asyncio
import json
import logging
import time

import httpx
import pytest

from chat_relay.exceptions import GatewayError, GatewayErrorKind
from chat_relay.utils.gateway import (
    PROXY_TIMEOUT_MESSAGE,
    UNREACHABLE_MESSAGE,
    UPSTREAM_TIMEOUT_MESSAGE,
    GatewayClient,
)

from conftest import RecordingGateway, gateway_reply

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


async def test_success_with_message_content():
    gateway = RecordingGateway(
        lambda request: httpx.Response(
            200,
            json=gateway_reply("Hello!", usage={"total_cost": 0.25}, model="openai/gpt-actual"),
        )
    )
    result = await gateway.client().execute("openai/gpt-test", MESSAGES)

    assert result.content == "Hello!"
    assert result.usage == {"total_cost": 0.25}
    assert result.model == "openai/gpt-actual"


async def test_success_with_text_choice_and_result_model():
    gateway = RecordingGateway(
        lambda request: httpx.Response(
            200,
            json={"result": {"model": "m-from-result", "choices": [{"text": "plain text"}]}},
        )
    )
    result = await gateway.client().execute("openai/gpt-test", MESSAGES)

    assert result.content == "plain text"
    assert result.model == "m-from-result"
    assert result.usage is None


async def test_success_without_choices_gives_empty_content():
    gateway = RecordingGateway(lambda request: httpx.Response(200, json={"result": {}}))
    result = await gateway.client().execute("openai/gpt-test", MESSAGES)
    assert result.content == ""
    assert result.model is None


async def test_request_shape():
    gateway = RecordingGateway()
    await gateway.client().execute("openai/gpt-test", MESSAGES)

    assert gateway.call_count == 1
    request = gateway.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://gateway.test/api/execute"
    assert request.headers["x-internal-api-key"] == "test-gateway-key"
    assert json.loads(request.content) == {
        "provider": "openrouter",
        "job_type": "text-completion",
        "payload": {"model": "openai/gpt-test", "messages": MESSAGES},
        "dry_run": False,
    }


@pytest.mark.parametrize("exc_type", [httpx.ConnectError, httpx.ReadTimeout])
async def test_transport_failure_is_connection_error(exc_type):
    def fail(request):
        raise exc_type("boom", request=request)

    with pytest.raises(GatewayError) as info:
        await RecordingGateway(fail).client().execute("m", MESSAGES)

    err = info.value
    assert err.kind == GatewayErrorKind.CONNECTION
    assert err.status_code == 502
    assert err.message == UNREACHABLE_MESSAGE
    assert err.code == exc_type.__name__


async def test_html_504_is_proxy_timeout():
    html = "<html><head><title>504 Gateway Time-out</title></head><body>nginx</body></html>"
    gateway = RecordingGateway(
        lambda request: httpx.Response(504, text=html, headers={"content-type": "text/html"})
    )
    with pytest.raises(GatewayError) as info:
        await gateway.client().execute("m", MESSAGES)

    assert info.value.kind == GatewayErrorKind.PROXY_TIMEOUT
    assert info.value.status_code == 504
    assert info.value.message == PROXY_TIMEOUT_MESSAGE
    assert "nginx" in info.value.message


async def test_json_504_is_upstream_timeout():
    gateway = RecordingGateway(lambda request: httpx.Response(504, json={"message": "upstream slow"}))
    with pytest.raises(GatewayError) as info:
        await gateway.client().execute("m", MESSAGES)

    assert info.value.kind == GatewayErrorKind.UPSTREAM_TIMEOUT
    assert info.value.status_code == 504
    assert info.value.message == UPSTREAM_TIMEOUT_MESSAGE


async def test_other_status_uses_body_message():
    gateway = RecordingGateway(lambda request: httpx.Response(500, json={"message": "quota exceeded"}))
    with pytest.raises(GatewayError) as info:
        await gateway.client().execute("m", MESSAGES)

    assert info.value.kind == GatewayErrorKind.HTTP
    assert info.value.status_code == 500
    assert info.value.message == "quota exceeded"


async def test_other_status_without_message_uses_reason():
    gateway = RecordingGateway(lambda request: httpx.Response(401, text="nope"))
    with pytest.raises(GatewayError) as info:
        await gateway.client().execute("m", MESSAGES)

    assert info.value.status_code == 401
    assert info.value.message == "Unauthorized"


async def test_ok_status_with_error_body():
    gateway = RecordingGateway(
        lambda request: httpx.Response(200, json={"status": "error", "message": "model not allowed"})
    )
    with pytest.raises(GatewayError) as info:
        await gateway.client().execute("m", MESSAGES)

    assert info.value.kind == GatewayErrorKind.APPLICATION
    assert info.value.status_code == 502
    assert info.value.message == "model not allowed"


async def test_api_key_never_logged(caplog):
    caplog.set_level(logging.INFO, logger="uvicorn.error")
    gateway = RecordingGateway(
        lambda request: httpx.Response(
            500,
            json={"message": "bad"},
            headers={"X-Internal-API-Key": "test-gateway-key"},
        )
    )
    with pytest.raises(GatewayError):
        await gateway.client().execute("m", MESSAGES)

    assert "test-gateway-key" not in caplog.text
    assert "present (16 chars)" in caplog.text
    assert "[REDACTED]" in caplog.text


async def test_slow_body_hits_overall_deadline():
    # 每 50ms 才发一个字节：单次读超时不会触发，只能靠整体时限
    handlers = []

    async def trickle(reader, writer):
        handlers.append(asyncio.current_task())
        await reader.readuntil(b"\r\n\r\n")
        payload = json.dumps(gateway_reply("x" * 40)).encode()
        writer.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(payload)}\r\n\r\n".encode()
        )
        for i in range(len(payload)):
            writer.write(payload[i:i + 1])
            await writer.drain()
            await asyncio.sleep(0.05)
        writer.close()

    server = await asyncio.start_server(trickle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    client = GatewayClient(f"http://127.0.0.1:{port}", "test-gateway-key", timeout_ms=300)
    start = time.monotonic()
    try:
        with pytest.raises(GatewayError) as info:
            await client.execute("m", MESSAGES)
    finally:
        for task in handlers:
            task.cancel()
        server.close()

    assert time.monotonic() - start < 2
    assert info.value.kind == GatewayErrorKind.CONNECTION
    assert info.value.status_code == 502
    assert info.value.message == UNREACHABLE_MESSAGE
    assert info.value.code == "TimeoutError"
