"""Environment-based settings for the chat backend connection."""

import os

DEFAULT_BACKEND_URL = "http://127.0.0.1:8082"
DEFAULT_MODEL = "claude-sonnet-4-6"
DEFAULT_TIMEOUT = 120.0


def get_backend_url() -> str:
    """Return the base URL of the chat backend, without a trailing slash."""
    return os.environ.get("AICHAT_TABS_BACKEND_URL", DEFAULT_BACKEND_URL).rstrip("/")


def get_auth_secret() -> str | None:
    """Return the bearer secret for the backend, if one is configured."""
    return os.environ.get("AICHAT_TABS_AUTH_SECRET") or None


def get_default_model() -> str:
    return os.environ.get("AICHAT_TABS_MODEL") or DEFAULT_MODEL


def get_request_timeout() -> float:
    """Return the HTTP timeout in seconds. Invalid values fall back to the default."""
    env = os.environ.get("AICHAT_TABS_TIMEOUT")
    if not env:
        return DEFAULT_TIMEOUT
    try:
        return float(env)
    except ValueError:
        return DEFAULT_TIMEOUT
