"""Shared value objects used across connection/auth modules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    """Backend project address: origin URL plus public (anon) key."""

    url: str
    anon_key: str

    @property
    def identity(self) -> str:
        """Cache key for this config; equal configs share one identity."""

        return f"{self.url}::{self.anon_key}"

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc


def normalize_url(raw: str) -> str:
    return raw.strip().rstrip("/")


def parse_config(url: object, anon_key: object) -> ConnectionConfig | None:
    """Return a validated config or ``None`` when either field is unusable."""

    if not isinstance(url, str) or not isinstance(anon_key, str):
        return None
    url = normalize_url(url)
    anon_key = anon_key.strip()
    if not url or not anon_key:
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return ConnectionConfig(url=url, anon_key=anon_key)


class ConnectionSource(str, Enum):
    """Where the active connection config came from."""

    NONE = "none"
    ENV = "env"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class ResolvedConnection:
    """Outcome of resolution; derived on demand, never persisted."""

    config: ConnectionConfig | None
    source: ConnectionSource

    @property
    def connected(self) -> bool:
        return self.config is not None


NO_CONNECTION = ResolvedConnection(config=None, source=ConnectionSource.NONE)


@dataclass(frozen=True, slots=True)
class User:
    id: str
    email: str | None = None


@dataclass(frozen=True, slots=True)
class Session:
    """Authenticated session as reported by a backend client."""

    user: User
    access_token: str = ""
    refresh_token: str | None = None
    expires_at: int | None = None


class AuthChangeEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True, slots=True)
class Profile:
    """Public-facing metadata for an authenticated identity."""

    id: str
    username: str | None = None
    bio: str | None = None
    avatar_url: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, object]) -> Profile:
        def _text(key: str) -> str | None:
            value = row.get(key)
            return str(value) if value is not None else None

        return cls(
            id=str(row["id"]),
            username=_text("username"),
            bio=_text("bio"),
            avatar_url=_text("avatar_url"),
            updated_at=_text("updated_at"),
        )


__all__ = [
    "AuthChangeEvent",
    "ConnectionConfig",
    "ConnectionSource",
    "NO_CONNECTION",
    "Profile",
    "ResolvedConnection",
    "Session",
    "User",
    "normalize_url",
    "parse_config",
]
