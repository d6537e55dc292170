"""Per-session message cache with a view of the active session.

Every session has its own message list and loading flag, keyed by session
id. The ``messages`` / ``is_loading`` attributes always mirror the session
the registry marks active: a write to the active session shows up there
immediately, a write to any other session is stored without touching them.
"""

import asyncio
import logging
from typing import Callable, Optional

from .cancellation import CancellationTokens
from .core import ChatMessage
from .provider import SessionStore
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

Updater = Callable[[list[ChatMessage]], list[ChatMessage]]
DisplayListener = Callable[[list[ChatMessage], bool], None]


class MessageCache:
    def __init__(self, registry: SessionRegistry, store: SessionStore):
        self._registry = registry
        self._store = store
        self._messages: dict[str, list[ChatMessage]] = {}
        self._loading: set[str] = set()
        self._listeners: list[DisplayListener] = []
        self._hydrations: set[asyncio.Task] = set()

        self.tokens = CancellationTokens()
        self.messages: list[ChatMessage] = []
        self.is_loading = False

        registry.subscribe(self._on_active_changed)

    # ── Per-session state ────────────────────────────────────────────

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        return self._messages.get(session_id, [])

    def is_session_loading(self, session_id: str) -> bool:
        return session_id in self._loading

    def update_messages(self, session_id: str, updater: Updater) -> list[ChatMessage]:
        """Replace a session's list with ``updater(current)``."""
        updated = updater(self._messages.get(session_id, []))
        self._messages[session_id] = updated
        if self._is_active(session_id):
            self._display(updated, session_id in self._loading)
        return updated

    def set_loading(self, session_id: str, loading: bool) -> None:
        if loading:
            self._loading.add(session_id)
        else:
            self._loading.discard(session_id)
        if self._is_active(session_id):
            self._display(self._messages.get(session_id, []), loading)

    def clear(self, session_id: str) -> None:
        """Empty one session's history and stop its stream."""
        self._messages[session_id] = []
        self._loading.discard(session_id)
        if self.tokens.cancel(session_id):
            logger.info("Cancelled stream for cleared session %s", session_id)
        if self._is_active(session_id):
            self._display([], False)

    def forget(self, session_id: str) -> None:
        """Drop everything held for a deleted session."""
        self._messages.pop(session_id, None)
        self._loading.discard(session_id)
        self.tokens.cancel(session_id)
        if self._is_active(session_id):
            self._display([], False)

    # ── Displayed view ───────────────────────────────────────────────

    def subscribe(self, listener: DisplayListener) -> None:
        """Call ``listener(messages, is_loading)`` whenever the view changes."""
        self._listeners.append(listener)

    async def wait_hydrated(self) -> None:
        """Wait for history loads started by session switches."""
        while self._hydrations:
            await asyncio.gather(*list(self._hydrations))

    def _is_active(self, session_id: str) -> bool:
        return session_id == self._registry.active_session_id

    def _display(self, messages: list[ChatMessage], loading: bool) -> None:
        self.messages = messages
        self.is_loading = loading
        for listener in list(self._listeners):
            listener(messages, loading)

    def _on_active_changed(self, previous: Optional[str], session_id: Optional[str]) -> None:
        if session_id is None:
            self._display([], False)
            return

        cached = self._messages.get(session_id)
        if cached:
            self._display(cached, session_id in self._loading)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop; not loading history for %s", session_id)
            self._display([], session_id in self._loading)
            return

        self._display([], True)
        task = loop.create_task(self._hydrate(session_id))
        self._hydrations.add(task)
        task.add_done_callback(self._hydrations.discard)

    async def _hydrate(self, session_id: str) -> None:
        try:
            detail = await self._store.get_session_detail(session_id)
            messages = detail.messages
        except Exception as e:
            # A session may not have any stored history yet.
            logger.info("No stored history for %s: %s", session_id, e)
            messages = []

        if self._registry.get_session(session_id) is None:
            return
        if not self._messages.get(session_id):
            self._messages[session_id] = messages
        if self._is_active(session_id):
            self._display(self._messages[session_id], session_id in self._loading)
