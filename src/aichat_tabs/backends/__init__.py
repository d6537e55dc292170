"""Backends implementing the chat transport, session store and prompt history."""

from .http import HttpBackend
from .memory import MemoryBackend

__all__ = ["HttpBackend", "MemoryBackend"]
