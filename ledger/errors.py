"""Error taxonomy for the connection/auth core."""

from __future__ import annotations

from typing import Any


class LedgerError(RuntimeError):
    """Base class for errors raised by the connection/auth core."""


class InvalidConfig(LedgerError, ValueError):
    """Raised when a backend URL or key is malformed; nothing is persisted."""


class NoConnection(LedgerError):
    """Raised when an operation needs a backend but none is resolved."""


class NotConnected(NoConnection):
    """Raised by the client registry when asked for an absent config."""


class StorageUnavailable(LedgerError):
    """Raised when an override mutation runs without persistent storage."""


def format_auth_error(error: Any, fallback: str) -> str:
    """Render an auth error as ``message | status=... | code=...``."""

    if error is None:
        return fallback
    if isinstance(error, str):
        return error or fallback
    message = getattr(error, "message", None) or (str(error) if isinstance(error, Exception) else "")
    parts = [message or fallback]
    status = getattr(error, "status", None)
    if isinstance(status, int):
        parts.append(f"status={status}")
    code = getattr(error, "code", None)
    if code:
        parts.append(f"code={code}")
    return " | ".join(parts)


__all__ = [
    "InvalidConfig",
    "LedgerError",
    "NoConnection",
    "NotConnected",
    "StorageUnavailable",
    "format_auth_error",
]
