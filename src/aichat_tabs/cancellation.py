"""Per-session cancellation handles for in-flight streams."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class StreamCancelled(Exception):
    """Raised when a stream stops because its token was fired."""


class CancellationToken:
    """Cooperative stop signal for one streamed reply.

    The orchestrator attaches the task that consumes the stream; firing the
    token cancels that task so a pending network read is interrupted, and
    transports may also poll ``raise_if_cancelled`` between chunks.
    """

    def __init__(self):
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Task) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> None:
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise StreamCancelled()


class CancellationTokens:
    """Map of session id to the token of its current stream."""

    def __init__(self):
        self._tokens: dict[str, CancellationToken] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._tokens

    def get(self, session_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(session_id)

    def acquire(self, session_id: str) -> CancellationToken:
        """Register a fresh token for a session, firing any stale one."""
        previous = self._tokens.get(session_id)
        if previous is not None:
            logger.warning("Replacing live stream token for session %s", session_id)
            previous.cancel()
        token = CancellationToken()
        self._tokens[session_id] = token
        return token

    def release(self, session_id: str, token: Optional[CancellationToken] = None) -> None:
        """Drop a session's token.

        When ``token`` is given only that exact token is dropped, so a late
        release from a finished stream cannot remove a newer one.
        """
        current = self._tokens.get(session_id)
        if current is None:
            return
        if token is not None and current is not token:
            return
        del self._tokens[session_id]

    def cancel(self, session_id: str) -> bool:
        """Fire and drop a session's token. Returns True if one was live."""
        token = self._tokens.pop(session_id, None)
        if token is None:
            return False
        token.cancel()
        return True
