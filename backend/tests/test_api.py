import json

import httpx
import pytest

from chat_relay.api.deps import get_gateway_client, get_template_store
from chat_relay.crud import DisabledChatStore
from chat_relay.database import get_chat_store
from chat_relay.main import app
from chat_relay.utils.rules import TemplateStore

from conftest import RecordingGateway, gateway_reply

SESSION = {"X-Session-Id": "visitor-1"}


def chat_body(**overrides):
    body = {"chat_mode": "general", "conversation_history": [], "user_message": "Hello"}
    body.update(overrides)
    return body


@pytest.fixture
def gateway():
    return RecordingGateway(
        lambda request: httpx.Response(
            200, json=gateway_reply("Hi there", usage={"total_cost": 0.01}, model="openai/gpt-actual")
        )
    )


@pytest.fixture
def wire(rules_dir, gateway):
    """注入模板目录、网关替身与存储，返回 ASGI 客户端工厂"""
    app.dependency_overrides[get_template_store] = lambda: TemplateStore(rules_dir)
    app.dependency_overrides[get_gateway_client] = gateway.client

    def make_client(chat_store=None):
        chat_store = chat_store or DisabledChatStore()
        app.dependency_overrides[get_chat_store] = lambda: chat_store
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://relay.test")

    yield make_client
    app.dependency_overrides.clear()


async def test_health(wire):
    async with wire() as client:
        resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


async def test_chat_modes(wire):
    async with wire() as client:
        resp = await client.get("/api/chat-modes")
    assert resp.status_code == 200
    assert resp.json() == {
        "chat_modes": [
            {"id": "general", "displayName": "General assistant", "promptInfo": "Ask anything about the product."},
            {"id": "plain", "displayName": "Plain", "promptInfo": ""},
        ]
    }


async def test_rules_text(wire):
    async with wire() as client:
        resp = await client.get("/api/rules/general")
        missing = await client.get("/api/rules/nope")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "- Be brief.\n- Be kind."
    assert missing.status_code == 404
    assert missing.json() == {"error": "Unknown chat mode"}


async def test_chat_without_persistence(wire, gateway):
    async with wire() as client:
        resp = await client.post("/api/chat", json=chat_body(), headers=SESSION)

    assert resp.status_code == 200
    assert resp.json() == {"content": "Hi there", "model": "openai/gpt-actual", "usage": {"total_cost": 0.01}}

    sent = json.loads(gateway.requests[0].content)["payload"]
    assert sent["model"] == "openai/gpt-test"
    assert sent["messages"][0]["role"] == "system"
    assert "- Be brief." in sent["messages"][0]["content"]
    assert sent["messages"][-1] == {"role": "user", "content": "Hello"}


async def test_chat_unknown_mode_skips_gateway(wire, gateway):
    async with wire() as client:
        resp = await client.post("/api/chat", json=chat_body(chat_mode="missing"))
    assert resp.status_code == 404
    assert resp.json() == {"error": "Unknown chat mode"}
    assert gateway.call_count == 0


@pytest.mark.parametrize(
    "body, message",
    [
        ({}, "chat_mode is required"),
        (chat_body(chat_mode=""), "chat_mode is required"),
        (chat_body(conversation_history="nope"), "conversation_history must be an array"),
        (chat_body(user_message=None), "user_message is required"),
    ],
)
async def test_chat_validation(wire, gateway, body, message):
    async with wire() as client:
        resp = await client.post("/api/chat", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": message}
    assert gateway.call_count == 0


async def test_chat_proxy_timeout(wire, gateway):
    html = "<html><body><center><h1>504 Gateway Time-out</h1></center></body></html>"
    gateway._responder = lambda request: httpx.Response(504, text=html, headers={"content-type": "text/html"})

    async with wire() as client:
        resp = await client.post("/api/chat", json=chat_body())

    assert resp.status_code == 504
    assert "nginx" in resp.json()["error"]


async def test_chat_gateway_unreachable(wire, gateway):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    gateway._responder = refuse
    async with wire() as client:
        resp = await client.post("/api/chat", json=chat_body())

    assert resp.status_code == 502
    assert resp.json() == {"error": "Gateway unreachable"}


async def test_chat_persists_turn(wire, store, gateway):
    async with wire(store) as client:
        first = await client.post("/api/chat", json=chat_body(email="a@example.com"), headers=SESSION)
        conversation_id = first.json()["conversation_id"]
        second = await client.post(
            "/api/chat",
            json=chat_body(
                user_message="More",
                conversation_id=conversation_id,
                conversation_history=[
                    {"role": "user", "content": "Hello"},
                    {"role": "assistant", "content": "Hi there"},
                ],
            ),
            headers=SESSION,
        )
        history = await client.get("/api/chat-history", headers=SESSION)
        by_email = await client.get("/api/chat-history", params={"email": "a@example.com", "chat_mode": "general"})
        messages = await client.get(
            "/api/chat-history/messages",
            params={"client_id": "visitor-1", "conversation_id": conversation_id},
        )
        admin = await client.get("/api/chat-history/admin")

    assert first.status_code == 200
    assert second.json()["conversation_id"] == conversation_id
    assert len(json.loads(gateway.requests[1].content)["payload"]["messages"]) == 4

    assert [c["conversation_id"] for c in history.json()["conversations"]] == [conversation_id]
    assert "question_preview" not in history.json()["conversations"][0]
    assert by_email.json()["conversations"][0]["question_preview"] == "Hello"

    stored = messages.json()["messages"]
    assert [m["role"] for m in stored] == ["user", "assistant", "user", "assistant"]
    assert stored[1]["model"] == "openai/gpt-actual"
    assert stored[1]["cost"] == 0.01
    assert "model" not in stored[0]

    row = admin.json()["conversations"][0]
    assert row["email"] == "a@example.com"
    assert row["total_cost"] == pytest.approx(0.02)


async def test_chat_survives_persistence_failure(wire, store, gateway):
    async def broken(*args, **kwargs):
        raise RuntimeError("database offline")

    store.append_messages = broken
    async with wire(store) as client:
        resp = await client.post("/api/chat", json=chat_body(), headers=SESSION)

    assert resp.status_code == 200
    assert resp.json()["content"] == "Hi there"
    assert "conversation_id" not in resp.json()


async def test_link_email_backfills(wire, store):
    async with wire(store) as client:
        await client.post("/api/chat", json=chat_body(), headers=SESSION)
        linked = await client.post("/api/sessions/email", json={"email": "  a@example.com "}, headers=SESSION)
        again = await client.post("/api/sessions/email", json={"email": "a@example.com"}, headers=SESSION)

    assert linked.json() == {"ok": True, "backfilled": 2}
    assert again.json() == {"ok": True, "backfilled": 0}
    assert await store.get_client_id_by_email("a@example.com") == "visitor-1"


@pytest.mark.parametrize("email", [None, "", "no-at-sign", "a@b c", "x" * 330 + "@example.com"])
async def test_link_email_rejects_invalid(wire, store, email):
    async with wire(store) as client:
        resp = await client.post("/api/sessions/email", json={"email": email})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Valid email required"}


async def test_delete_own_conversation(wire, store):
    async with wire(store) as client:
        chat = await client.post("/api/chat", json=chat_body(), headers=SESSION)
        conversation_id = chat.json()["conversation_id"]
        other = await client.delete(
            "/api/chat-history/conversation",
            params={"conversation_id": conversation_id},
            headers={"X-Session-Id": "someone-else"},
        )
        own = await client.delete(
            "/api/chat-history/conversation", params={"conversation_id": conversation_id}, headers=SESSION
        )
        missing = await client.delete("/api/chat-history/conversation", headers=SESSION)

    assert other.json() == {"ok": True, "deleted": 0}
    assert own.json() == {"ok": True, "deleted": 2}
    assert missing.status_code == 400
    assert missing.json() == {"error": "conversation_id required"}


async def test_admin_delete(wire, store):
    await store.append_messages("c9", "conv-9", "general", [{"role": "user", "content": "q"}])
    async with wire(store) as client:
        resp = await client.delete(
            "/api/chat-history/admin/conversation", params={"client_id": "c9", "conversation_id": "conv-9"}
        )
        bad = await client.delete("/api/chat-history/admin/conversation", params={"conversation_id": "conv-9"})

    assert resp.json() == {"ok": True, "deleted": 1}
    assert bad.status_code == 400
    assert bad.json() == {"error": "client_id and conversation_id required"}


async def test_messages_requires_ids(wire, store):
    async with wire(store) as client:
        resp = await client.get("/api/chat-history/messages", params={"client_id": "c1"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "client_id and conversation_id required"}


@pytest.mark.parametrize(
    "method, path, kwargs",
    [
        ("GET", "/api/chat-history", {}),
        ("GET", "/api/chat-history/admin", {}),
        ("GET", "/api/chat-history/messages", {"params": {"client_id": "c", "conversation_id": "v"}}),
        ("DELETE", "/api/chat-history/conversation", {"params": {"conversation_id": "v"}}),
        ("DELETE", "/api/chat-history/admin/conversation", {"params": {"client_id": "c", "conversation_id": "v"}}),
        ("POST", "/api/sessions/email", {"json": {"email": "a@example.com"}}),
    ],
)
async def test_history_routes_unavailable_without_persistence(wire, method, path, kwargs):
    async with wire() as client:
        resp = await client.request(method, path, **kwargs)
    assert resp.status_code == 503
    assert resp.json() == {"error": "Persistence not configured"}


async def test_history_storage_failure_is_generic(wire, store):
    async def broken(*args, **kwargs):
        raise RuntimeError("password=hunter2 rejected")

    store.list_conversations_for_admin = broken
    async with wire(store) as client:
        resp = await client.get("/api/chat-history/admin")
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to list history"}


async def test_error_responses_documented(wire):
    async with wire() as client:
        schema = (await client.get("/openapi.json")).json()

    error_ref = "#/components/schemas/ErrorResponse"
    chat = schema["paths"]["/api/chat"]["post"]["responses"]
    for status in ("400", "404", "502", "504"):
        assert chat[status]["content"]["application/json"]["schema"]["$ref"] == error_ref

    admin = schema["paths"]["/api/chat-history/admin"]["get"]["responses"]
    assert admin["503"]["content"]["application/json"]["schema"]["$ref"] == error_ref
    link = schema["paths"]["/api/sessions/email"]["post"]["responses"]
    assert link["400"]["content"]["application/json"]["schema"]["$ref"] == error_ref
    assert schema["components"]["schemas"]["ErrorResponse"]["required"] == ["error"]
