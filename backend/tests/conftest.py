import os

# 配置必须在导入 chat_relay 之前就绪；持久化参数留空 => 默认不落库
os.environ["GATEWAY_API_KEY"] = "test-gateway-key"
os.environ["GATEWAY_BASE_URL"] = "http://gateway.test"
os.environ["CHAT_MODEL"] = "openai/gpt-test"
os.environ["CONNECTION_TYPE"] = "POSTGRES"
os.environ["POSTGRES_SQL_CONNECTION_STRING"] = ""
os.environ["AZURE_SQL_CONNECTION_STRING"] = ""
os.environ["AZURE_SQL_SERVER"] = ""

from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from sqlalchemy import Float, case, cast, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import StaticPool

from chat_relay.crud.sql_store import SQLChatStore, sessions_table
from chat_relay.utils.gateway import GatewayClient


class SQLiteChatStore(SQLChatStore):
    """测试用 sqlite 方言实现（与 Postgres 一样走 ON CONFLICT）"""

    dialect_label = "sqlite"

    def __init__(self) -> None:
        super().__init__(
            "sqlite+aiosqlite:///:memory:",
            engine_kwargs={
                "connect_args": {"check_same_thread": False},
                "poolclass": StaticPool,
            },
        )

    def _session_upsert(self, client_id, email, now):
        stmt = sqlite_insert(sessions_table).values(
            client_id=client_id,
            email=email,
            created_at=now,
            updated_at=now,
        )
        return stmt.on_conflict_do_update(
            index_elements=[sessions_table.c.client_id],
            set_={"email": stmt.excluded.email, "updated_at": stmt.excluded.updated_at},
        )

    def _usage_number(self, usage, field):
        path = f"$.{field}"
        return case(
            (
                func.json_valid(usage) == 1,
                case(
                    (
                        func.json_type(usage, path).in_(["integer", "real"]),
                        cast(func.json_extract(usage, path), Float),
                    ),
                    else_=None,
                ),
            ),
            else_=None,
        )


@pytest.fixture
async def store():
    chat_store = SQLiteChatStore()
    await chat_store.ensure_schema()
    yield chat_store
    await chat_store.close()


@pytest.fixture
def rules_dir(tmp_path):
    root = tmp_path / "rules"
    root.mkdir()
    (root / "general.md").write_text(
        "# Prompt Selection\nGeneral assistant\n\n"
        "# Prompt Information\nAsk anything\nabout the product.\n\n"
        "# Prompt Rules\n- Be brief.\n- Be kind.\n",
        encoding="utf-8",
    )
    (root / "plain.txt").write_text("# Prompt Selection\nPlain\n", encoding="utf-8")
    return root


def gateway_reply(content: str = "Hi there", **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"result": {"choices": [{"message": {"content": content}}]}}
    body.update(extra)
    return body


class RecordingGateway:
    """基于 httpx.MockTransport 的网关替身，记录每次请求"""

    def __init__(self, responder: Optional[Callable[[httpx.Request], httpx.Response]] = None) -> None:
        self.requests: List[httpx.Request] = []
        self._responder = responder or (lambda request: httpx.Response(200, json=gateway_reply()))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._responder(request)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def client(self) -> GatewayClient:
        return GatewayClient(
            "http://gateway.test",
            "test-gateway-key",
            timeout_ms=5000,
            transport=httpx.MockTransport(self.handler),
        )
