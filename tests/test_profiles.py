"""Tests for profile reconciliation and username helpers."""

from __future__ import annotations

import re
from typing import Any, Mapping

import pytest

from ledger.clients import BackendError, DemoBackendClient, Failure, Ok, TableResult
from ledger.models import ConnectionConfig, User
from ledger.profiles import (
    ProfileReconciler,
    ensure_profile,
    normalize_username,
    random_suffix,
    username_from_email,
    validate_username,
)

CONFIG = ConnectionConfig(url="https://a.supabase.co", anon_key="key-a")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.parametrize(
    ("email", "expected"),
    [
        ("jane@mail.com", "jane"),
        ("Jane.Doe+blog@mail.com", "janedoeblog"),
        ("under_score-dash@mail.com", "under_score-dash"),
        ("a-very-long-local-part-that-goes-on@mail.com", "a-very-long-local-part-t"),
    ],
)
def test_username_from_email(email: str, expected: str) -> None:
    assert username_from_email(email) == expected


@pytest.mark.parametrize("email", ["ab@mail.com", "é@mail.com", "x.y@mail.com"])
def test_username_from_short_email_uses_timestamp(email: str) -> None:
    assert username_from_email(email, clock=lambda: 1_700_000_123.0) == "user-123000"


@pytest.mark.parametrize("email", ["", None, "@mail.com"])
def test_username_without_local_part_defaults_to_user(email: str | None) -> None:
    assert username_from_email(email) == "user"


def test_normalize_and_validate_username() -> None:
    assert normalize_username("  Mert Ö!  ") == "mert"
    assert validate_username("ab") == "Username too short (min 3)."
    assert validate_username("x" * 25) == "Username too long (max 24)."
    assert validate_username("Mert_99") is None


def test_random_suffix_shape() -> None:
    assert re.fullmatch(r"[a-z0-9]{4}", random_suffix())


@pytest.mark.anyio
async def test_ensure_profile_creates_once_and_is_idempotent() -> None:
    client = DemoBackendClient(CONFIG)
    user = User(id="u1", email="mert@mail.com")
    reconciler = ProfileReconciler()

    first = await reconciler.ensure_profile(user, client)
    second = await reconciler.ensure_profile(user, client)

    assert first is not None and second is not None
    assert first.id == second.id == "u1"
    assert first.username == "mert"
    assert first.updated_at
    assert client.count("profiles", "insert") == 1


@pytest.mark.anyio
async def test_username_collision_retries_with_suffix() -> None:
    client = DemoBackendClient(CONFIG)
    await ensure_profile(User(id="u1", email="jane@mail.com"), client)

    profile = await ensure_profile(User(id="u2", email="jane@other.com"), client)

    assert profile is not None
    assert profile.id == "u2"
    assert profile.username is not None
    assert re.fullmatch(r"jane-[a-z0-9]{4}", profile.username)


@pytest.mark.anyio
async def test_collision_uses_injected_suffix() -> None:
    client = DemoBackendClient(CONFIG)
    reconciler = ProfileReconciler(suffix=lambda: "a1b2")

    jane = await reconciler.ensure_profile(User(id="u1", email="jane@mail.com"), client)
    other = await reconciler.ensure_profile(User(id="u2", email="jane@other.com"), client)

    assert jane is not None and jane.username == "jane"
    assert other is not None and other.username == "jane-a1b2"
    assert reconciler.last_error is None


@pytest.mark.anyio
async def test_second_collision_gives_up() -> None:
    client = DemoBackendClient(CONFIG)
    reconciler = ProfileReconciler(suffix=lambda: "a1b2")
    client.tables["profiles"].extend(
        [{"id": "x1", "username": "jane"}, {"id": "x2", "username": "jane-a1b2"}]
    )

    profile = await reconciler.ensure_profile(User(id="u3", email="jane@third.com"), client)

    assert profile is None
    assert reconciler.last_error is not None and reconciler.last_error.code == "23505"
    assert client.count("profiles", "insert") == 2


@pytest.mark.anyio
async def test_missing_table_returns_none_without_insert() -> None:
    client = DemoBackendClient(CONFIG, tables={})
    reconciler = ProfileReconciler()

    profile = await reconciler.ensure_profile(User(id="u1", email="jane@mail.com"), client)

    assert profile is None
    assert reconciler.last_error is not None and reconciler.last_error.schema_missing
    assert client.count("profiles", "insert") == 0


class _ScriptedTable:
    def __init__(self, owner: "_ScriptedClient") -> None:
        self._owner = owner

    async def select(self, *, match: Mapping[str, Any] | None = None, columns: str = "*", limit: int | None = None) -> TableResult:
        return self._owner.selects.pop(0)

    async def insert(self, row: Mapping[str, Any]) -> TableResult:
        self._owner.inserted.append(dict(row))
        return self._owner.inserts.pop(0)

    async def update(self, values: Mapping[str, Any], *, match: Mapping[str, Any]) -> TableResult:
        return Ok()

    async def delete(self, *, match: Mapping[str, Any]) -> TableResult:
        return Ok()


class _ScriptedClient:
    def __init__(self, selects: list[TableResult], inserts: list[TableResult]) -> None:
        self.config = CONFIG
        self.auth = None
        self.selects = selects
        self.inserts = inserts
        self.inserted: list[dict[str, Any]] = []

    def table(self, name: str) -> _ScriptedTable:
        return _ScriptedTable(self)


@pytest.mark.anyio
async def test_lookup_error_skips_creation() -> None:
    client = _ScriptedClient(selects=[Failure(BackendError("timeout", code="57014"))], inserts=[])

    profile = await ProfileReconciler().ensure_profile(User(id="u1", email="jane@mail.com"), client)  # type: ignore[arg-type]

    assert profile is None
    assert client.inserted == []


@pytest.mark.anyio
async def test_non_conflict_insert_failure_is_not_retried() -> None:
    client = _ScriptedClient(
        selects=[Ok()],
        inserts=[Failure(BackendError("permission denied", code="42501"))],
    )
    reconciler = ProfileReconciler()

    profile = await reconciler.ensure_profile(User(id="u1", email="jane@mail.com"), client)  # type: ignore[arg-type]

    assert profile is None
    assert len(client.inserted) == 1
    assert reconciler.last_error is not None and reconciler.last_error.code == "42501"


@pytest.mark.anyio
async def test_created_profile_is_refetched() -> None:
    client = _ScriptedClient(
        selects=[Ok(), Ok(({"id": "u1", "username": "jane", "bio": None, "updated_at": "2024-01-01"},))],
        inserts=[Ok()],
    )

    profile = await ProfileReconciler().ensure_profile(User(id="u1", email="jane@mail.com"), client)  # type: ignore[arg-type]

    assert profile is not None and profile.username == "jane"
    assert client.inserted == [{"id": "u1", "username": "jane"}]


@pytest.mark.anyio
async def test_update_profile_validates_and_reports_conflicts() -> None:
    client = DemoBackendClient(CONFIG)
    reconciler = ProfileReconciler()
    jane = User(id="u1", email="jane@mail.com")
    mert = User(id="u2", email="mert@mail.com")
    await reconciler.ensure_profile(jane, client)
    await reconciler.ensure_profile(mert, client)

    too_short = await reconciler.update_profile(jane, client, username="j")
    taken = await reconciler.update_profile(jane, client, username="Mert")
    saved = await reconciler.update_profile(jane, client, username="Jane_Writes", bio="hello")

    assert too_short.error == "Username too short (min 3)."
    assert taken.error == "Username already taken."
    assert saved.error is None
    assert saved.profile is not None
    assert saved.profile.username == "jane_writes"
    assert saved.profile.bio == "hello"
