"""Abstract interfaces for the services the chat client talks to."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from .cancellation import CancellationToken
from .core import ChatSession, SessionDetail


class TransportError(Exception):
    """A chat or persistence request failed (bad status or network failure)."""

    def __init__(self, status: Optional[int], detail: str = ""):
        self.status = status
        self.detail = detail
        if status is None:
            super().__init__(f"Request failed: {detail}")
        else:
            super().__init__(f"Request failed: {status} {detail}".rstrip())


class ChatTransport(ABC):
    """Starts streamed chat completions.

    Implementations return the raw response body as byte chunks; framing is
    left to :mod:`aichat_tabs.stream`.
    """

    name: str

    @abstractmethod
    def stream_chat(
        self,
        model: str,
        history: list[dict],
        tools_enabled: bool,
        session_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[bytes]:
        """Send ``history`` to ``model`` and yield response body chunks."""
        ...


class SessionStore(ABC):
    """Durable storage of sessions and their messages."""

    name: str

    @abstractmethod
    async def list_sessions(self) -> list[ChatSession]:
        ...

    @abstractmethod
    async def create_session(self, session_id: str, title: str) -> ChatSession:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def get_session_detail(self, session_id: str) -> SessionDetail:
        """Return the stored messages of a session."""
        ...

    @abstractmethod
    async def append_message(
        self, session_id: str, role: str, content: str, model: str | None = None
    ) -> None:
        ...

    @abstractmethod
    async def rename_session(self, session_id: str, title: str) -> None:
        ...

    @abstractmethod
    async def generate_title(self, session_id: str) -> Optional[str]:
        """Ask the backend for a better title. Best effort."""
        ...


class PromptHistory(ABC):
    """Append-only log of prompts the user typed, for later recall."""

    @abstractmethod
    async def add_prompt(self, text: str) -> None:
        ...
