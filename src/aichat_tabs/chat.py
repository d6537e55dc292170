"""Send/stream orchestration.

:class:`ChatClient` ties the registry, the message cache and the backend
services together. Each call to :meth:`ChatClient.send` captures the active
session id once and routes every update for that exchange through the cache
under that id, so the user can switch tabs mid-stream and several sessions
can stream at the same time on one event loop.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Coroutine, Iterable, Optional

from .cache import MessageCache
from .cancellation import CancellationToken, StreamCancelled
from .core import Attachment, ChatMessage, ChatSession, ToolInteraction
from .provider import ChatTransport, PromptHistory, SessionStore
from .registry import SessionRegistry
from .stream import ToolCallEvent, ToolResultEvent, iter_events

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20  # prior messages sent as context
COMPRESS_KEEP_FULL = 6  # most recent messages never truncated
COMPRESS_THRESHOLD = 500
TRUNCATION_MARKER = "... [truncated for context efficiency]"
PROVISIONAL_TITLE_LENGTH = 30
TITLE_DELAY = 2.0  # seconds before asking the backend for a better title


def compose_content(text: str, attachments: Iterable[Attachment] = ()) -> str:
    """Append file attachments to the typed text as labelled blocks."""
    content = text
    for att in attachments:
        if att.kind == "file":
            content += f"\n\n--- File: {att.name} ---\n{att.content}"
    return content


def provisional_title(text: str) -> str:
    text = text.strip()
    if not text:
        return "New Chat"
    if len(text) > PROVISIONAL_TITLE_LENGTH:
        return text[:PROVISIONAL_TITLE_LENGTH] + "..."
    return text


def build_context(previous: list[ChatMessage], content: str) -> list[dict]:
    """Build the message list sent with a request.

    Keeps the last ``HISTORY_LIMIT`` prior messages. All but the newest
    ``COMPRESS_KEEP_FULL`` of those are cut down to ``COMPRESS_THRESHOLD``
    characters. The new user message goes last, untouched.
    """
    window = previous[-HISTORY_LIMIT:]
    keep_from = len(window) - COMPRESS_KEEP_FULL

    history = []
    for i, msg in enumerate(window):
        text = msg.content
        if i < keep_from and len(text) > COMPRESS_THRESHOLD:
            text = text[:COMPRESS_THRESHOLD] + TRUNCATION_MARKER
        history.append({"role": msg.role, "content": text})

    history.append({"role": "user", "content": content})
    return history


def _add_tool_call(message: ChatMessage, event: ToolCallEvent) -> ChatMessage:
    if any(ti.id == event.correlation_id for ti in message.tool_interactions):
        return message
    interaction = ToolInteraction(
        id=event.correlation_id,
        tool_name=event.tool_name,
        tool_input=dict(event.tool_input),
        status="running",
    )
    return replace(message, tool_interactions=message.tool_interactions + [interaction])


def _apply_tool_result(message: ChatMessage, event: ToolResultEvent) -> ChatMessage:
    if not any(ti.id == event.correlation_id for ti in message.tool_interactions):
        return message

    def finish(ti: ToolInteraction) -> ToolInteraction:
        if ti.id != event.correlation_id:
            return ti
        return replace(
            ti,
            result=event.result if event.result is not None else ti.result,
            is_error=event.is_error if event.is_error is not None else ti.is_error,
            status="error" if event.is_error else "completed",
        )

    return replace(message, tool_interactions=[finish(ti) for ti in message.tool_interactions])


class ChatClient:
    """Runs chat exchanges for any number of sessions concurrently."""

    def __init__(
        self,
        registry: SessionRegistry,
        transport: ChatTransport,
        store: SessionStore,
        prompts: PromptHistory | None = None,
        model: str | None = None,
        tools_enabled: bool = True,
        title_delay: float | None = None,
    ):
        self.registry = registry
        self.transport = transport
        self.store = store
        self.prompts = prompts
        self.model = model
        self.tools_enabled = tools_enabled
        self.title_delay = TITLE_DELAY if title_delay is None else title_delay
        self.cache = MessageCache(registry, store)

        self._background: set[asyncio.Task] = set()
        self._title_tasks: dict[str, asyncio.Task] = {}
        self._writes: dict[str, asyncio.Task] = {}  # last message write per session

    # ── Sending ──────────────────────────────────────────────────────

    async def send(
        self, text: str, attachments: Iterable[Attachment] = ()
    ) -> Optional[ChatMessage]:
        """Send a message to the active session and stream the reply into it.

        Returns the final assistant message, or None when nothing was sent
        (no model, no active session, or the session is already streaming).
        """
        session_id = self.registry.active_session_id
        model = self.model
        if not model or not session_id:
            return None
        if self.cache.is_session_loading(session_id):
            logger.debug("Session %s is already streaming; ignoring send", session_id)
            return None

        attachments = list(attachments)
        content = compose_content(text, attachments)
        previous = list(self.cache.get_messages(session_id))
        first_exchange = not previous

        if first_exchange:
            self.rename_session(session_id, provisional_title(text))

        user_message = ChatMessage(role="user", content=content, attachments=attachments)
        self.cache.update_messages(session_id, lambda prev: prev + [user_message])
        self.cache.set_loading(session_id, True)
        if self.prompts is not None:
            self._spawn(self.prompts.add_prompt(text), "prompt history append")
        self._persist_in_order(
            session_id,
            self.store.append_message(session_id, "user", content, model),
            "user message persist",
        )

        placeholder = ChatMessage(role="assistant", content="", model=model, streaming=True)
        self.cache.update_messages(session_id, lambda prev: prev + [placeholder])

        history = build_context(previous, content)
        token = self.cache.tokens.acquire(session_id)
        task = asyncio.create_task(
            self._consume(session_id, placeholder.id, model, history, token, first_exchange)
        )
        token.attach(task)

        try:
            await task
        except (asyncio.CancelledError, StreamCancelled):
            self._stop_streaming(session_id, placeholder.id, token)
            if not token.cancelled:
                raise
            logger.info("Stream for session %s cancelled", session_id)
        except Exception as e:
            logger.error("Chat stream failed for session %s: %s", session_id, e)
            self._patch(
                session_id,
                placeholder.id,
                lambda m: replace(m, content=f"Error: {e}", streaming=False),
            )
            self._stop_streaming(session_id, placeholder.id, token)

        return self._find(session_id, placeholder.id)

    async def _consume(
        self,
        session_id: str,
        message_id: str,
        model: str,
        history: list[dict],
        token: CancellationToken,
        first_exchange: bool,
    ) -> None:
        chunks = self.transport.stream_chat(
            model, history, self.tools_enabled, session_id, token
        )
        parts: list[str] = []
        finished = False

        async for event in iter_events(chunks):
            if isinstance(event, ToolCallEvent):
                self._patch(session_id, message_id, lambda m: _add_tool_call(m, event))
            elif isinstance(event, ToolResultEvent):
                self._patch(session_id, message_id, lambda m: _apply_tool_result(m, event))
            else:
                if event.token:
                    parts.append(event.token)
                self._patch(
                    session_id,
                    message_id,
                    lambda m: replace(m, content=m.content + event.token, streaming=not event.done),
                )
                if event.done and not finished:
                    finished = True
                    self._complete(
                        session_id, token, "".join(parts), event.model or model, first_exchange
                    )

        if not finished:
            logger.warning("Stream for session %s ended without a done event", session_id)
            self._patch(session_id, message_id, lambda m: replace(m, streaming=False))
            self._complete(session_id, token, "".join(parts), model, first_exchange)

    def _complete(
        self,
        session_id: str,
        token: CancellationToken,
        text: str,
        model: str,
        first_exchange: bool,
    ) -> None:
        self._finish(session_id, token)

        if text:
            self._persist_in_order(
                session_id,
                self.store.append_message(session_id, "assistant", text, model),
                "assistant message persist",
            )
            self.registry.record_exchange(session_id, text)
        else:
            self.registry.record_exchange(session_id, "", count=1)

        if first_exchange:
            self._schedule_title(session_id)

    def _stop_streaming(
        self, session_id: str, message_id: str, token: CancellationToken
    ) -> None:
        self._patch(session_id, message_id, lambda m: replace(m, streaming=False))
        self._finish(session_id, token)

    def _finish(self, session_id: str, token: CancellationToken) -> None:
        """Clear loading and drop ``token``, unless a newer exchange owns the session."""
        current = self.cache.tokens.get(session_id)
        if current is not None and current is not token:
            logger.debug("Session %s has a newer stream; leaving it busy", session_id)
            return
        self.cache.set_loading(session_id, False)
        self.cache.tokens.release(session_id, token)

    def _patch(
        self, session_id: str, message_id: str, change: Callable[[ChatMessage], ChatMessage]
    ) -> None:
        """Apply ``change`` to one message while it is still streaming."""
        if self.registry.get_session(session_id) is None:
            return

        def updater(prev: list[ChatMessage]) -> list[ChatMessage]:
            return [change(m) if m.id == message_id and m.streaming else m for m in prev]

        self.cache.update_messages(session_id, updater)

    def _find(self, session_id: str, message_id: str) -> Optional[ChatMessage]:
        for msg in self.cache.get_messages(session_id):
            if msg.id == message_id:
                return msg
        return None

    # ── Stream control ───────────────────────────────────────────────

    def cancel(self, session_id: str | None = None) -> bool:
        """Stop the in-flight stream of a session (the active one by default)."""
        session_id = session_id or self.registry.active_session_id
        if session_id is None:
            return False
        return self.cache.tokens.cancel(session_id)

    def clear_chat(self, session_id: str | None = None) -> None:
        session_id = session_id or self.registry.active_session_id
        if session_id is not None:
            self.cache.clear(session_id)

    # ── Session lifecycle ────────────────────────────────────────────

    async def load_sessions(self) -> list[ChatSession]:
        """Merge the stored session list into the registry."""
        try:
            sessions = await self.store.list_sessions()
        except Exception as e:
            logger.error("Failed to load sessions from %s: %s", self.store.name, e)
            return []
        self.registry.hydrate(sessions)
        logger.info("Loaded %d session(s) from %s", len(sessions), self.store.name)
        return sessions

    async def new_session(self, title: str | None = None) -> ChatSession:
        """Create a session locally at once, then persist it.

        The local copy is marked pending until the store confirms it and is
        removed again if the store refuses.
        """
        session = self.registry.create_session(title, pending=True)
        try:
            await self.store.create_session(session.id, session.title)
        except Exception as e:
            logger.error("Failed to create session %s: %s", session.id, e)
            self.cache.forget(session.id)
            self.registry.delete_session(session.id)
            raise
        self.registry.set_pending(session.id, False)
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session, stopping everything still running for it."""
        title_task = self._title_tasks.pop(session_id, None)
        if title_task is not None:
            title_task.cancel()
        self.cache.forget(session_id)

        if not self.registry.delete_session(session_id):
            return False
        self._persist_in_order(session_id, self.store.delete_session(session_id), "session delete")
        return True

    def rename_session(self, session_id: str, title: str) -> None:
        if self.registry.rename_session(session_id, title):
            self._spawn(self.store.rename_session(session_id, title), "session rename")

    # ── Background work ──────────────────────────────────────────────

    def _schedule_title(self, session_id: str) -> None:
        previous = self._title_tasks.pop(session_id, None)
        if previous is not None:
            previous.cancel()

        task = asyncio.create_task(self._generate_title(session_id))
        self._title_tasks[session_id] = task

        def done(t: asyncio.Task) -> None:
            if self._title_tasks.get(session_id) is t:
                del self._title_tasks[session_id]

        task.add_done_callback(done)

    async def _generate_title(self, session_id: str) -> None:
        await asyncio.sleep(self.title_delay)
        if self.registry.get_session(session_id) is None:
            return
        try:
            title = await self.store.generate_title(session_id)
        except Exception as e:
            # The provisional title stays.
            logger.debug("Title generation failed for %s: %s", session_id, e)
            return
        if title and self.registry.get_session(session_id) is not None:
            self.registry.rename_session(session_id, title)

    def _spawn(self, coro: Coroutine, description: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_quietly(coro, description))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _persist_in_order(self, session_id: str, coro: Coroutine, description: str) -> None:
        """Run a message write after the previous write of the same session."""
        previous = self._writes.get(session_id)
        task = self._spawn(self._after(previous, coro), description)
        self._writes[session_id] = task

        def done(t: asyncio.Task) -> None:
            if self._writes.get(session_id) is t:
                del self._writes[session_id]

        task.add_done_callback(done)

    @staticmethod
    async def _after(previous: Optional[asyncio.Task], coro: Coroutine) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await coro

    @staticmethod
    async def _run_quietly(coro: Coroutine, description: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning("Background %s failed: %s", description, e)

    async def drain(self) -> None:
        """Wait for pending persistence writes and title requests."""
        while self._background or self._title_tasks:
            pending = list(self._background) + list(self._title_tasks.values())
            await asyncio.gather(*pending, return_exceptions=True)
