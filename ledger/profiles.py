"""Profile reconciliation: every signed-in identity gets a profile row."""

from __future__ import annotations

import logging
import random
import re
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from .clients import BackendClient, BackendError, Conflict, Failure, Ok
from .models import Profile, User

LOG = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
USERNAME_MIN = 3
USERNAME_MAX = 24
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits

_DISALLOWED = re.compile(r"[^a-z0-9_-]")
_VALID = re.compile(r"^[a-z0-9_-]+$")


def normalize_username(raw: str) -> str:
    return _DISALLOWED.sub("", raw.strip().lower())


def validate_username(raw: str) -> str | None:
    """Return a human readable problem with ``raw``, or ``None`` if usable."""

    username = normalize_username(raw)
    if len(username) < USERNAME_MIN:
        return f"Username too short (min {USERNAME_MIN})."
    if len(username) > USERNAME_MAX:
        return f"Username too long (max {USERNAME_MAX})."
    if not _VALID.match(username):
        return "Only a-z 0-9 _ - allowed."
    return None


def username_from_email(email: str | None, *, clock: Callable[[], float] = time.time) -> str:
    """Derive a username candidate from the local part of ``email``."""

    local = (email or "").split("@")[0] or "user"
    cleaned = _DISALLOWED.sub("", local.lower())[:USERNAME_MAX]
    if len(cleaned) >= USERNAME_MIN:
        return cleaned
    return f"user-{str(int(clock() * 1000))[-6:]}"


def random_suffix(length: int = 4) -> str:
    return "".join(random.choices(SUFFIX_ALPHABET, k=length))


@dataclass(frozen=True, slots=True)
class ProfileUpdate:
    """Outcome of a settings save."""

    profile: Profile | None = None
    error: str | None = None


class ProfileReconciler:
    """Create-or-fetch profiles, retrying once on a username collision."""

    def __init__(
        self,
        *,
        suffix: Callable[[], str] = random_suffix,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._suffix = suffix
        self._clock = clock
        self.last_error: BackendError | None = None

    async def fetch_profile(self, user_id: str, client: BackendClient) -> Profile | None:
        result = await client.table(PROFILES_TABLE).select(match={"id": user_id}, limit=1)
        if isinstance(result, Ok):
            row = result.first
            return Profile.from_row(row) if row else None
        self._record(result.error, "select")
        return None

    async def ensure_profile(self, user: User, client: BackendClient) -> Profile | None:
        """Return the profile for ``user``, creating it on first sign-in."""

        self.last_error = None
        table = client.table(PROFILES_TABLE)
        lookup = await table.select(match={"id": user.id}, limit=1)
        if not isinstance(lookup, Ok):
            self._record(lookup.error, "select")
            return None
        if lookup.first:
            return Profile.from_row(lookup.first)

        base = username_from_email(user.email, clock=self._clock)
        candidates = (base, f"{base}-{self._suffix()}")
        for username in candidates:
            inserted = await table.insert({"id": user.id, "username": username})
            if isinstance(inserted, Ok):
                self.last_error = None
                return await self.fetch_profile(user.id, client)
            if isinstance(inserted, Conflict):
                LOG.info("Username taken, retrying", extra={"username": username})
                self.last_error = inserted.error
                continue
            self._record(inserted.error, "insert")
            return None
        LOG.error("Could not claim a username", extra={"user_id": user.id, "base": base})
        return None

    async def update_profile(
        self,
        user: User,
        client: BackendClient,
        *,
        username: str,
        bio: str | None = None,
    ) -> ProfileUpdate:
        normalized = normalize_username(username)
        problem = validate_username(normalized)
        if problem:
            return ProfileUpdate(error=problem)
        result = await client.table(PROFILES_TABLE).update(
            {
                "username": normalized,
                "bio": bio or None,
                "updated_at": datetime.now(tz=timezone.utc).isoformat(),
            },
            match={"id": user.id},
        )
        if isinstance(result, Conflict):
            return ProfileUpdate(error="Username already taken.")
        if isinstance(result, Failure):
            self._record(result.error, "update")
            return ProfileUpdate(error="Save failed.")
        return ProfileUpdate(profile=await self.fetch_profile(user.id, client))

    def _record(self, error: BackendError, operation: str) -> None:
        self.last_error = error
        if error.schema_missing:
            LOG.error(
                "Profiles table missing; run the setup SQL",
                extra={"operation": operation, "code": error.code},
            )
            return
        LOG.error(
            "Profile %s failed: %s",
            operation,
            error.message,
            extra={"operation": operation, "code": error.code},
        )


async def ensure_profile(user: User, client: BackendClient) -> Profile | None:
    """Module-level shortcut using a default reconciler."""

    return await ProfileReconciler().ensure_profile(user, client)


__all__ = [
    "PROFILES_TABLE",
    "ProfileReconciler",
    "ProfileUpdate",
    "ensure_profile",
    "normalize_username",
    "random_suffix",
    "username_from_email",
    "validate_username",
]
