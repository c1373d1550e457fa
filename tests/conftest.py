import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from langchain_core.messages import AIMessageChunk

from query_agent.api.deps import get_chat_handler
from query_agent.api.main import app
from query_agent.core.concurrency import ConcurrencyLimiter
from query_agent.core.security import create_access_token
from query_agent.core.settings import AppSettings
from query_agent.services.chat_handler import ChatHandler
from query_agent.services.query_executor import MockStore, QueryExecutor

TENANT_ID = "t1"


class Pause:
    """Script marker: the fake model stalls this long before its next chunk."""

    def __init__(self, seconds: float):
        self.seconds = seconds


def text_chunk(text: str) -> AIMessageChunk:
    return AIMessageChunk(content=text)


def tool_chunk(
    name: Optional[str] = None,
    args: Optional[str] = None,
    call_id: Optional[str] = None,
    index: int = 0,
) -> AIMessageChunk:
    return AIMessageChunk(
        content="",
        tool_call_chunks=[{"name": name, "args": args, "id": call_id, "index": index}],
    )


def sql_call(query: str, call_id: str = "call_1", index: int = 0) -> AIMessageChunk:
    return tool_chunk("execute_sql", json.dumps({"query": query}), call_id, index)


class ScriptedChatModel:
    """
    Stand-in for a LangChain chat model. Each `astream` call plays the next
    turn of the script: a list of chunks, Pause markers or an exception to raise.
    """

    def __init__(self, turns: List[Any]):
        self.turns = list(turns)
        self.calls: List[Dict[str, Any]] = []
        self.model_name = "scripted"

    def bind_tools(self, tools):
        return _BoundScriptedModel(self, tools)

    def astream(self, messages):
        return self._play(messages, None)

    async def _play(self, messages, tools):
        self.calls.append({"messages": list(messages), "tools": tools})
        if not self.turns:
            raise AssertionError("Scripted model ran out of turns")
        turn = self.turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        for item in turn:
            if isinstance(item, Pause):
                await asyncio.sleep(item.seconds)
            elif isinstance(item, BaseException):
                raise item
            else:
                yield item


class _BoundScriptedModel:
    def __init__(self, model: ScriptedChatModel, tools):
        self.model = model
        self.tools = tools

    def astream(self, messages):
        return self.model._play(messages, self.tools)


class FakeRouter:
    def __init__(self, model):
        self.model = model
        self.requests = []

    async def get_chat_model(self, tier="auto", deep_research=False, timeout_ms=None):
        self.requests.append({"tier": tier, "deep_research": deep_research})
        return self.model, "fake", "scripted"


@pytest.fixture
def chunks():
    """Chunk builders for scripting the fake model."""

    class Chunks:
        text = staticmethod(text_chunk)
        tool = staticmethod(tool_chunk)
        sql = staticmethod(sql_call)
        pause = Pause

    return Chunks


@pytest.fixture
def scripted_model():
    return ScriptedChatModel


@pytest_asyncio.fixture
async def executor():
    # Fixture rows are seeded for TENANT_ID, queries go through the limiter
    store = await MockStore.create(TENANT_ID)
    executor = QueryExecutor(store, ConcurrencyLimiter(2), timeout_ms=5000, max_rows=100)
    yield executor
    await executor.close()


@pytest.fixture
def app_settings():
    return AppSettings()


@pytest.fixture
def install_model(executor, app_settings):
    """Wire a scripted model into the app; returns the model."""

    def install(turns):
        model = ScriptedChatModel(turns)
        handler = ChatHandler(executor, router=FakeRouter(model), settings=app_settings)
        app.dependency_overrides[get_chat_handler] = lambda: handler
        return model

    yield install
    app.dependency_overrides.pop(get_chat_handler, None)


@pytest.fixture
def token():
    return create_access_token(subject="user-1", tenant_id=TENANT_ID, role="member")


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(scope="function")
async def async_client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def read_ndjson(body: str) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


@pytest.fixture
def ndjson():
    return read_ndjson
