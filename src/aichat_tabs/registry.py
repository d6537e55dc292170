"""Session and tab registry.

Holds the durable facts about chat sessions and the tabs opened onto them,
plus which session and tab are active. Everything here is synchronous; the
registry knows nothing about streaming.

Invariants kept by every operation:

- at most one active session and one active tab; when a tab is active its
  session is the active session;
- each session has at most one tab and every tab refers to a known session;
- closing a pinned tab does nothing;
- removing the active tab promotes the tab at the same index in the
  remaining list (clamped to its end), or clears activity when none remain.
"""

import logging
from typing import Callable, Iterable, Optional

from .core import ChatSession, ChatTab, new_id, utcnow

logger = logging.getLogger(__name__)

ActiveListener = Callable[[Optional[str], Optional[str]], None]


class UnknownSessionError(KeyError):
    """Raised when an operation names a session the registry does not hold."""


class SessionRegistry:
    """In-memory list of sessions and tabs with active-selection tracking."""

    def __init__(self):
        self.sessions: list[ChatSession] = []  # most recently created/updated first
        self.tabs: list[ChatTab] = []
        self.active_session_id: Optional[str] = None
        self.active_tab_id: Optional[str] = None
        self.current_view = "home"
        self._listeners: list[ActiveListener] = []

    # ── Lookup ───────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def get_tab(self, tab_id: str) -> Optional[ChatTab]:
        for tab in self.tabs:
            if tab.id == tab_id:
                return tab
        return None

    def get_tab_for_session(self, session_id: str) -> Optional[ChatTab]:
        for tab in self.tabs:
            if tab.session_id == session_id:
                return tab
        return None

    @property
    def active_session(self) -> Optional[ChatSession]:
        if self.active_session_id is None:
            return None
        return self.get_session(self.active_session_id)

    def subscribe(self, listener: ActiveListener) -> None:
        """Call ``listener(previous_id, new_id)`` whenever the active session changes."""
        self._listeners.append(listener)

    # ── Sessions ─────────────────────────────────────────────────────

    def create_session(
        self,
        title: str | None = None,
        session_id: str | None = None,
        pending: bool = False,
    ) -> ChatSession:
        """Create a session with its own tab and make both active."""
        if session_id is not None and self.get_session(session_id) is not None:
            raise ValueError(f"Session already exists: {session_id}")

        now = utcnow()
        session = ChatSession(
            id=session_id or new_id(),
            title=title if title is not None else f"Chat {len(self.sessions) + 1}",
            created_at=now,
            updated_at=now,
            pending=pending,
        )
        self.sessions.insert(0, session)

        tab = ChatTab(id=new_id(), session_id=session.id, title=session.title)
        self.tabs.append(tab)
        self.current_view = "chat"
        self._activate(session.id, tab.id)

        logger.debug("Created session %s (%r)", session.id, session.title)
        return session

    def delete_session(self, session_id: str) -> bool:
        """Remove a session and its tab. Returns False if it was unknown."""
        if self.get_session(session_id) is None:
            return False

        was_active = self.active_session_id == session_id
        index = self._tab_index(lambda t: t.session_id == session_id)

        self.sessions = [s for s in self.sessions if s.id != session_id]
        self.tabs = [t for t in self.tabs if t.session_id != session_id]

        if was_active:
            self._promote_neighbor(index)
        return True

    def rename_session(self, session_id: str, title: str) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return False
        session.title = title
        session.updated_at = utcnow()
        for tab in self.tabs:
            if tab.session_id == session_id:
                tab.title = title
        return True

    def set_pending(self, session_id: str, pending: bool) -> None:
        session = self.get_session(session_id)
        if session is not None:
            session.pending = pending

    def set_working_directory(self, session_id: str, path: str | None) -> None:
        session = self.get_session(session_id)
        if session is not None:
            session.working_directory = path or None

    def record_exchange(self, session_id: str, preview: str, count: int = 2) -> None:
        """Update bookkeeping after a completed request/response exchange."""
        session = self.get_session(session_id)
        if session is None:
            return
        session.message_count += count
        session.preview = preview.strip()[:100] or session.preview
        session.updated_at = utcnow()

    def hydrate(self, loaded: Iterable[ChatSession]) -> None:
        """Merge sessions read from storage into the known ones.

        Rows are de-duplicated by id (the loaded copy wins) and the list is
        re-sorted by most recent update.
        """
        merged = {s.id: s for s in self.sessions}
        for session in loaded:
            merged[session.id] = session

        self.sessions = sorted(merged.values(), key=lambda s: s.updated_at, reverse=True)

        for tab in self.tabs:
            session = merged.get(tab.session_id)
            if session is not None:
                tab.title = session.title
        self._prune_tabs()

    # ── Tabs ─────────────────────────────────────────────────────────

    def open_tab(self, session_id: str) -> ChatTab:
        """Activate the session's tab, creating it if needed."""
        session = self.get_session(session_id)
        if session is None:
            raise UnknownSessionError(session_id)

        tab = self.get_tab_for_session(session_id)
        if tab is None:
            tab = ChatTab(id=new_id(), session_id=session_id, title=session.title)
            self.tabs.append(tab)

        self.current_view = "chat"
        self._activate(session_id, tab.id)
        return tab

    def select_tab(self, tab_id: str) -> None:
        tab = self.get_tab(tab_id)
        if tab is None:
            raise KeyError(tab_id)
        self._activate(tab.session_id, tab.id)

    def close_tab(self, tab_id: str) -> bool:
        """Close a tab. Pinned or unknown tabs are left alone (returns False)."""
        tab = self.get_tab(tab_id)
        if tab is None or tab.is_pinned:
            return False

        index = self.tabs.index(tab)
        self.tabs.pop(index)

        if self.active_tab_id == tab_id:
            self._promote_neighbor(index)
        return True

    def reorder_tabs(self, from_index: int, to_index: int) -> None:
        if not (0 <= from_index < len(self.tabs)) or not (0 <= to_index < len(self.tabs)):
            raise IndexError(f"Tab index out of range: {from_index} -> {to_index}")
        tab = self.tabs.pop(from_index)
        self.tabs.insert(to_index, tab)

    def pin_tab(self, tab_id: str, pinned: bool = True) -> bool:
        tab = self.get_tab(tab_id)
        if tab is None:
            return False
        tab.is_pinned = pinned
        return True

    def set_active_session(self, session_id: str | None) -> None:
        """Point activity at a session (or nothing) without opening a tab."""
        if session_id is None:
            self._activate(None, None)
            return
        if self.get_session(session_id) is None:
            raise UnknownSessionError(session_id)
        tab = self.get_tab_for_session(session_id)
        self._activate(session_id, tab.id if tab else None)

    # ── Private helpers ──────────────────────────────────────────────

    def _tab_index(self, predicate: Callable[[ChatTab], bool]) -> int:
        for index, tab in enumerate(self.tabs):
            if predicate(tab):
                return index
        return 0

    def _promote_neighbor(self, index: int) -> None:
        if self.tabs:
            tab = self.tabs[min(index, len(self.tabs) - 1)]
            self._activate(tab.session_id, tab.id)
        else:
            self._activate(None, None)

    def _prune_tabs(self) -> None:
        known = {s.id for s in self.sessions}
        index = self._tab_index(lambda t: t.id == self.active_tab_id)
        stale = [t for t in self.tabs if t.session_id not in known]
        if not stale:
            return

        logger.info("Pruning %d tab(s) for missing sessions", len(stale))
        self.tabs = [t for t in self.tabs if t.session_id in known]
        if self.active_session_id not in known:
            self._promote_neighbor(index)

    def _activate(self, session_id: str | None, tab_id: str | None) -> None:
        previous = self.active_session_id
        self.active_session_id = session_id
        self.active_tab_id = tab_id
        if previous != session_id:
            for listener in list(self._listeners):
                listener(previous, session_id)
