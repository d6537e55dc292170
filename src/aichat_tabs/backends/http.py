"""HTTP backend for the chat REST API.

One ``httpx.AsyncClient`` serves both the streaming chat endpoint and the
session persistence endpoints:

- ``POST /api/claude/chat/stream``: NDJSON response body
- ``GET|POST /api/sessions``, ``GET|PATCH|DELETE /api/sessions/{id}``
- ``POST /api/sessions/{id}/messages``
- ``POST /api/sessions/{id}/generate-title``
- ``POST /api/prompt-history``

Timestamps on the wire are ISO 8601 strings.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx

from ..cancellation import CancellationToken
from ..config import get_auth_secret, get_backend_url, get_request_timeout
from ..core import ChatMessage, ChatSession, SessionDetail, ToolInteraction, utcnow
from ..provider import ChatTransport, PromptHistory, SessionStore, TransportError

logger = logging.getLogger(__name__)

MAX_TOKENS = 4096


class HttpBackend(ChatTransport, SessionStore, PromptHistory):
    """Talks to the chat backend over HTTP."""

    name = "http"

    def __init__(
        self,
        base_url: str | None = None,
        auth_secret: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or get_backend_url()).rstrip("/")
        self.auth_secret = auth_secret if auth_secret is not None else get_auth_secret()
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else get_request_timeout(),
        )

    async def __aenter__(self) -> "HttpBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Chat transport ───────────────────────────────────────────────

    async def stream_chat(
        self,
        model: str,
        history: list[dict],
        tools_enabled: bool,
        session_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[bytes]:
        body = {
            "model": model,
            "messages": history,
            "max_tokens": MAX_TOKENS,
            "stream": True,
            "tools_enabled": tools_enabled,
        }
        if session_id:
            body["session_id"] = session_id

        try:
            async with self._client.stream(
                "POST", "/api/claude/chat/stream", json=body, headers=self._headers()
            ) as resp:
                if resp.is_error:
                    detail = (await resp.aread()).decode("utf-8", errors="replace")
                    raise TransportError(resp.status_code, detail or resp.reason_phrase)
                async for chunk in resp.aiter_bytes():
                    if token is not None:
                        token.raise_if_cancelled()
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportError(None, str(e) or type(e).__name__) from e

    # ── Session store ────────────────────────────────────────────────

    async def list_sessions(self) -> list[ChatSession]:
        resp = await self._request("GET", "/api/sessions")
        data = resp.json()
        if not isinstance(data, list):
            logger.warning("Unexpected session list payload: %r", type(data))
            return []
        return [_session_from_dict(entry) for entry in data if isinstance(entry, dict)]

    async def create_session(self, session_id: str, title: str) -> ChatSession:
        # The backend is expected to keep the client-generated id.
        resp = await self._request("POST", "/api/sessions", json={"id": session_id, "title": title})
        data = resp.json() if resp.content else {}
        if not isinstance(data, dict) or not data.get("id"):
            return ChatSession(id=session_id, title=title)
        return _session_from_dict(data)

    async def delete_session(self, session_id: str) -> None:
        await self._request("DELETE", _session_path(session_id))

    async def get_session_detail(self, session_id: str) -> SessionDetail:
        resp = await self._request("GET", _session_path(session_id))
        data = resp.json()
        messages = [_message_from_dict(m) for m in data.get("messages") or [] if isinstance(m, dict)]
        return SessionDetail(
            session_id=str(data.get("id") or session_id),
            title=data.get("title") or "",
            messages=messages,
            working_directory=data.get("working_directory") or None,
        )

    async def append_message(
        self, session_id: str, role: str, content: str, model: str | None = None
    ) -> None:
        body = {"role": role, "content": content}
        if model is not None:
            body["model"] = model
        await self._request("POST", f"{_session_path(session_id)}/messages", json=body)

    async def rename_session(self, session_id: str, title: str) -> None:
        await self._request("PATCH", _session_path(session_id), json={"title": title})

    async def generate_title(self, session_id: str) -> Optional[str]:
        resp = await self._request("POST", f"{_session_path(session_id)}/generate-title")
        data = resp.json()
        title = data.get("title") if isinstance(data, dict) else None
        return title or None

    # ── Prompt history ───────────────────────────────────────────────

    async def add_prompt(self, text: str) -> None:
        if not text.strip():
            return
        await self._request("POST", "/api/prompt-history", json={"content": text})

    # ── Private helpers ──────────────────────────────────────────────

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_secret:
            headers["Authorization"] = f"Bearer {self.auth_secret}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(None, str(e) or type(e).__name__) from e
        if resp.is_error:
            raise TransportError(resp.status_code, resp.text or resp.reason_phrase)
        return resp


def _session_path(session_id: str) -> str:
    return f"/api/sessions/{quote(session_id, safe='')}"


def _session_from_dict(data: dict) -> ChatSession:
    created = _parse_iso(data.get("created_at")) or utcnow()
    updated = _parse_iso(data.get("updated_at")) or created
    return ChatSession(
        id=str(data.get("id", "")),
        title=data.get("title") or "Untitled",
        created_at=created,
        updated_at=max(updated, created),
        message_count=int(data.get("message_count") or 0),
        preview=data.get("preview") or None,
        working_directory=data.get("working_directory") or None,
    )


def _message_from_dict(data: dict) -> ChatMessage:
    interactions = []
    for ti in data.get("tool_interactions") or []:
        if not isinstance(ti, dict):
            continue
        interactions.append(ToolInteraction(
            id=ti.get("tool_use_id", ""),
            tool_name=ti.get("tool_name") or "unknown",
            tool_input=ti.get("tool_input") or {},
            result=ti.get("result"),
            is_error=ti.get("is_error"),
            status="error" if ti.get("is_error") else "completed",
        ))

    msg = ChatMessage(
        role=data.get("role", "assistant"),
        content=data.get("content") or "",
        tool_interactions=interactions,
        model=data.get("model") or None,
    )
    if data.get("id"):
        msg.id = str(data["id"])
    timestamp = _parse_iso(data.get("timestamp"))
    if timestamp is not None:
        msg.timestamp = timestamp
    return msg


def _parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string."""
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
