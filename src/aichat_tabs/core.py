"""Core data models for aichat-tabs."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Attachment:
    """A file or image attached to a user message."""

    id: str
    name: str
    kind: str  # "file" | "image"
    content: str
    mime_type: str = ""


@dataclass
class ToolInteraction:
    """One tool invocation made by the assistant while streaming a reply."""

    id: str  # tool_use_id from the stream, correlates tool_call and tool_result
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    result: Optional[str] = None
    is_error: Optional[bool] = None
    status: str = "running"  # "running" | "completed" | "error"


@dataclass
class ChatMessage:
    """A single message within a chat session."""

    role: str  # "user" | "assistant" | "system"
    content: str
    id: str = field(default_factory=new_id)
    attachments: list[Attachment] = field(default_factory=list)
    tool_interactions: list[ToolInteraction] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)
    model: Optional[str] = None
    streaming: bool = False


@dataclass
class ChatSession:
    """A single persistent conversation."""

    id: str
    title: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    message_count: int = 0
    preview: Optional[str] = None
    working_directory: Optional[str] = None
    pending: bool = False  # True only while an optimistic create is in flight


@dataclass
class ChatTab:
    """A switchable handle onto one session."""

    id: str
    session_id: str
    title: str
    is_pinned: bool = False


@dataclass
class SessionDetail:
    """Persisted history of one session, as returned by a session store."""

    session_id: str
    title: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    working_directory: Optional[str] = None
