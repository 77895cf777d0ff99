"""Shared fixtures: a fake Ollama-compatible server behind httpx.MockTransport."""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import pytest

from local_llm_chat.api.app import app, get_client_factory
from local_llm_chat.services.inference import InferenceClient


def ndjson(*records: Dict[str, Any]) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


def delta(content: Optional[str] = None, thinking: Optional[str] = None, done: bool = False) -> Dict[str, Any]:
    message: Dict[str, str] = {"role": "assistant"}
    if content is not None:
        message["content"] = content
    if thinking is not None:
        message["thinking"] = thinking
    return {"model": "llama2", "message": message, "done": done}


HELLO_STREAM = ndjson(delta("He"), delta("llo"), delta("", done=True))


class FakeOllama:
    """Scriptable stand-in for the inference server."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.clients: List[Dict[str, str]] = []
        self.refuse = False
        self.timeout = False
        self.version_status = 200
        self.tags_status = 200
        self.tags_body: Any = {
            "models": [
                {"name": "llama2:latest", "size": 3826793677, "modified_at": "2024-01-02T10:00:00Z"},
                {"name": "qwen3:8b", "size": 5200000000, "modified_at": "2024-03-04T12:30:00Z"},
            ]
        }
        self.chat_status = 200
        self.chat_body: Any = {"message": {"role": "assistant", "content": "Hello there"}, "done": True}
        self.stream_chunks: List[bytes] = [HELLO_STREAM]
        self.stream_error: Optional[Exception] = None
        self.stream_gate: Optional[asyncio.Event] = None

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.method == "POST"]

    async def _stream_body(self) -> AsyncIterator[bytes]:
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_gate is not None:
            await self.stream_gate.wait()
        if self.stream_error is not None:
            raise self.stream_error

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.refuse:
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)

        path = request.url.path
        if path == "/api/version":
            return httpx.Response(self.version_status, json={"version": "0.6.2"})
        if path == "/api/tags":
            return httpx.Response(self.tags_status, json=self.tags_body)
        if path == "/api/chat":
            body = json.loads(request.content)
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, json={"error": "upstream says no"})
            if body.get("stream"):
                return httpx.Response(
                    200,
                    headers={"Content-Type": "application/x-ndjson"},
                    content=self._stream_body(),
                )
            return httpx.Response(200, json=self.chat_body)
        return httpx.Response(404, text="404 page not found")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, api_url: str = "http://ollama.test", api_key: str = "") -> InferenceClient:
        self.clients.append({"api_url": api_url, "api_key": api_key})
        return InferenceClient(api_url, api_key, transport=self.transport())


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def relay_app(fake_ollama: FakeOllama):
    """The relay app with every inference client wired to the fake server."""
    app.dependency_overrides[get_client_factory] = lambda: fake_ollama.client
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def relay_transport(relay_app) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=relay_app)
