"""In-process session store.

Keeps sessions, messages and prompt history in dictionaries. Useful for
running the client without a backend and as the store in tests. It mirrors
the REST backend's behaviour where that matters: unknown sessions answer
like a 404, blank prompts are refused and a prompt equal to the previous
one is not recorded twice.
"""

import logging
from typing import Callable, Optional

from ..core import ChatMessage, ChatSession, SessionDetail, utcnow
from ..provider import PromptHistory, SessionStore, TransportError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 60


def _first_words_title(messages: list[ChatMessage]) -> Optional[str]:
    for msg in messages:
        if msg.role == "user" and msg.content.strip():
            words = msg.content.split()[:7]
            return " ".join(words)[:MAX_TITLE_LENGTH]
    return None


class MemoryBackend(SessionStore, PromptHistory):
    """Session store and prompt history held in memory."""

    name = "memory"

    def __init__(self, title_generator: Callable[[list[ChatMessage]], Optional[str]] | None = None):
        self.sessions: dict[str, ChatSession] = {}
        self.messages: dict[str, list[ChatMessage]] = {}
        self.prompts: list[str] = []
        self._title_generator = title_generator or _first_words_title

    async def list_sessions(self) -> list[ChatSession]:
        return sorted(self.sessions.values(), key=lambda s: s.updated_at, reverse=True)

    async def create_session(self, session_id: str, title: str) -> ChatSession:
        if session_id in self.sessions:
            raise TransportError(409, f"Session already exists: {session_id}")
        session = ChatSession(id=session_id, title=title)
        self.sessions[session_id] = session
        self.messages[session_id] = []
        return session

    async def delete_session(self, session_id: str) -> None:
        self._require(session_id)
        del self.sessions[session_id]
        self.messages.pop(session_id, None)

    async def get_session_detail(self, session_id: str) -> SessionDetail:
        session = self._require(session_id)
        return SessionDetail(
            session_id=session_id,
            title=session.title,
            messages=list(self.messages.get(session_id, [])),
            working_directory=session.working_directory,
        )

    async def append_message(
        self, session_id: str, role: str, content: str, model: str | None = None
    ) -> None:
        session = self._require(session_id)
        self.messages.setdefault(session_id, []).append(
            ChatMessage(role=role, content=content, model=model)
        )
        session.message_count += 1
        session.updated_at = utcnow()

    async def rename_session(self, session_id: str, title: str) -> None:
        session = self._require(session_id)
        session.title = title
        session.updated_at = utcnow()

    async def generate_title(self, session_id: str) -> Optional[str]:
        session = self._require(session_id)
        title = self._title_generator(self.messages.get(session_id, []))
        if not title:
            return None
        session.title = title
        session.updated_at = utcnow()
        return title

    async def add_prompt(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        if self.prompts and self.prompts[-1] == text:
            return
        self.prompts.append(text)

    def _require(self, session_id: str) -> ChatSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise TransportError(404, f"Session not found: {session_id}")
        return session
