"""Shared test fixtures for aichat-tabs."""

import asyncio
import json
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from httpx import ASGITransport, AsyncClient

from aichat_tabs.backends import HttpBackend, MemoryBackend
from aichat_tabs.chat import ChatClient
from aichat_tabs.provider import ChatTransport
from aichat_tabs.registry import SessionRegistry


async def settle(rounds: int = 20):
    """Let every ready task on the loop run a few steps."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def ndjson(*events: dict) -> bytes:
    return "".join(json.dumps(e) + "\n" for e in events).encode("utf-8")


class FakeStream:
    """Response body for one session, fed by the test."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def send(self, **event):
        self.queue.put_nowait(("data", ndjson(event)))

    def send_raw(self, data: bytes):
        self.queue.put_nowait(("data", data))

    def token(self, text: str, done: bool = False, **extra):
        self.send(token=text, done=done, **extra)

    def end(self):
        self.queue.put_nowait(("end", None))

    def fail(self, exc: Exception):
        self.queue.put_nowait(("error", exc))


class FakeTransport(ChatTransport):
    """Chat transport whose response bodies are driven from the test."""

    name = "fake"

    def __init__(self):
        self.streams: dict[str, FakeStream] = {}
        self.requests: list[dict] = []

    def stream_for(self, session_id: str) -> FakeStream:
        return self.streams.setdefault(session_id, FakeStream())

    async def stream_chat(self, model, history, tools_enabled, session_id=None, token=None):
        self.requests.append({
            "model": model,
            "history": history,
            "tools_enabled": tools_enabled,
            "session_id": session_id,
        })
        stream = self.stream_for(session_id)
        while True:
            kind, value = await stream.queue.get()
            if kind == "end":
                return
            if kind == "error":
                raise value
            yield value


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def store():
    return MemoryBackend()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def client(registry, transport, store):
    return ChatClient(
        registry,
        transport,
        store,
        prompts=store,
        model="test-model",
        title_delay=0,
    )


class FakeChatApi:
    """FastAPI stand-in for the chat backend's REST API."""

    def __init__(self):
        self.app = FastAPI()
        self.chat_requests: list[dict] = []
        self.chat_headers: list[dict] = []
        self.stream_lines: list[bytes] = []
        self.stream_error: tuple[int, str] | None = None
        self.sessions: dict[str, dict] = {}
        self.messages: dict[str, list[dict]] = {}
        self.patches: list[tuple[str, dict]] = []
        self.prompts: list[str] = []
        self.deleted: list[str] = []
        self._routes()

    def add_session(self, session_id: str, title: str, messages: list[dict] | None = None, **extra):
        self.sessions[session_id] = {
            "id": session_id,
            "title": title,
            "created_at": "2025-01-15T10:00:00Z",
            "updated_at": "2025-01-15T11:00:00Z",
            "message_count": len(messages or []),
            **extra,
        }
        self.messages[session_id] = list(messages or [])

    def _routes(self):
        app = self.app

        @app.post("/api/claude/chat/stream")
        async def chat_stream(request: Request):
            self.chat_requests.append(await request.json())
            self.chat_headers.append(dict(request.headers))
            if self.stream_error:
                status, detail = self.stream_error
                return Response(content=detail, status_code=status)

            async def body():
                for line in self.stream_lines:
                    yield line

            return StreamingResponse(body(), media_type="application/x-ndjson")

        @app.get("/api/sessions")
        async def list_sessions():
            return list(self.sessions.values())

        @app.post("/api/sessions")
        async def create_session(request: Request):
            data = await request.json()
            self.add_session(data["id"], data["title"])
            return self.sessions[data["id"]]

        @app.get("/api/sessions/{session_id}")
        async def get_session(session_id: str):
            if session_id not in self.sessions:
                return JSONResponse({"error": "not found"}, status_code=404)
            return {
                **self.sessions[session_id],
                "messages": self.messages[session_id],
            }

        @app.patch("/api/sessions/{session_id}")
        async def update_session(session_id: str, request: Request):
            data = await request.json()
            self.patches.append((session_id, data))
            self.sessions[session_id]["title"] = data["title"]
            return self.sessions[session_id]

        @app.delete("/api/sessions/{session_id}")
        async def delete_session(session_id: str):
            self.deleted.append(session_id)
            self.sessions.pop(session_id, None)
            return Response(status_code=204)

        @app.post("/api/sessions/{session_id}/messages")
        async def add_message(session_id: str, request: Request):
            if session_id not in self.sessions:
                return JSONResponse({"error": "not found"}, status_code=404)
            self.messages[session_id].append(await request.json())
            return {"ok": True}

        @app.post("/api/sessions/{session_id}/generate-title")
        async def generate_title(session_id: str):
            first = next((m for m in self.messages.get(session_id, []) if m["role"] == "user"), None)
            if first is None:
                return {"title": None}
            title = " ".join(first["content"].split()[:3]).title()
            self.sessions[session_id]["title"] = title
            return {"title": title}

        @app.post("/api/prompt-history")
        async def add_prompt(request: Request):
            self.prompts.append((await request.json())["content"])
            return Response(status_code=200)


@pytest.fixture
def fake_api():
    return FakeChatApi()


@pytest.fixture
def http_backend(fake_api):
    """HttpBackend wired to the FastAPI fake through ASGITransport."""
    transport = ASGITransport(app=fake_api.app)
    client = AsyncClient(transport=transport, base_url="http://test")
    return HttpBackend(base_url="http://test", auth_secret="s3cret", client=client)


@pytest.fixture
def stored_messages():
    """Wire-format history of one stored session, with a tool call."""
    return [
        {
            "id": "msg-1",
            "role": "user",
            "content": "List the files in src",
            "timestamp": "2025-01-15T10:00:00Z",
        },
        {
            "id": "msg-2",
            "role": "assistant",
            "content": "There are two files.",
            "model": "claude-sonnet-4-6",
            "timestamp": "2025-01-15T10:00:05Z",
            "tool_interactions": [
                {
                    "tool_use_id": "toolu_01",
                    "tool_name": "list_directory",
                    "tool_input": {"path": "src"},
                    "result": "a.py\nb.py",
                    "is_error": False,
                },
            ],
        },
    ]


def at(hour: int) -> datetime:
    return datetime(2025, 1, 15, hour, 0, 0, tzinfo=timezone.utc)
