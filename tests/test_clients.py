"""Tests for backend clients and the client registry."""

from __future__ import annotations

import functools
import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from supabase import AuthError, PostgrestAPIError

from ledger.clients import (
    BackendError,
    ClientRegistry,
    Conflict,
    DemoBackendClient,
    Failure,
    Ok,
    SupabaseAuthStorage,
    SupabaseBackendClient,
    classify_error,
    client_factory,
)
from ledger.errors import NotConnected
from ledger.models import AuthChangeEvent, ConnectionConfig, Session
from ledger.storage import MemoryStorage

A = ConnectionConfig(url="https://a.supabase.co", anon_key="key-a")
B = ConnectionConfig(url="https://b.supabase.co", anon_key="key-b")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_registry_returns_same_client_for_equal_configs() -> None:
    registry = ClientRegistry(DemoBackendClient)

    first = registry.get_client(A)
    second = registry.get_client(ConnectionConfig(url=A.url, anon_key=A.anon_key))

    assert first is second
    assert len(registry) == 1
    assert A in registry


@pytest.mark.parametrize(
    "other",
    [B, ConnectionConfig(url=A.url, anon_key="other"), ConnectionConfig(url="https://c.supabase.co", anon_key=A.anon_key)],
)
def test_registry_builds_distinct_clients_for_distinct_configs(other: ConnectionConfig) -> None:
    registry = ClientRegistry(DemoBackendClient)

    assert registry.get_client(A) is not registry.get_client(other)
    assert len(registry) == 2


def test_registry_refuses_absent_config() -> None:
    registry = ClientRegistry(DemoBackendClient)

    with pytest.raises(NotConnected):
        registry.get_client(None)
    assert len(registry) == 0


def test_classify_error_tags_unique_violations() -> None:
    assert isinstance(classify_error(BackendError("dup", code="23505")), Conflict)
    failure = classify_error(BackendError('relation "public.posts" does not exist', code="42P01"))
    assert isinstance(failure, Failure)
    assert failure.error.schema_missing
    assert not BackendError("timeout", code="57014").schema_missing


@pytest.mark.anyio
async def test_demo_table_enforces_unique_columns() -> None:
    client = DemoBackendClient(A)
    profiles = client.table("profiles")

    created = await profiles.insert({"id": "u1", "username": "mert"})
    clash = await profiles.insert({"id": "u2", "username": "mert"})

    assert isinstance(created, Ok)
    assert created.first is not None and created.first["username"] == "mert"
    assert isinstance(clash, Conflict)
    assert clash.error.code == "23505"
    assert client.count("profiles", "insert") == 2


@pytest.mark.anyio
async def test_demo_table_update_and_delete() -> None:
    client = DemoBackendClient(A)
    profiles = client.table("profiles")
    await profiles.insert({"id": "u1", "username": "one"})
    await profiles.insert({"id": "u2", "username": "two"})

    clash = await profiles.update({"username": "two"}, match={"id": "u1"})
    renamed = await profiles.update({"username": "uno"}, match={"id": "u1"})
    removed = await profiles.delete(match={"id": "u2"})
    remaining = await profiles.select()

    assert isinstance(clash, Conflict)
    assert isinstance(renamed, Ok) and renamed.first and renamed.first["username"] == "uno"
    assert isinstance(removed, Ok) and len(removed.rows) == 1
    assert isinstance(remaining, Ok) and [row["id"] for row in remaining.rows] == ["u1"]


@pytest.mark.anyio
async def test_demo_missing_table_reports_schema_missing() -> None:
    client = DemoBackendClient(A, tables={})

    result = await client.table("posts").select(limit=1)

    assert isinstance(result, Failure)
    assert result.error.schema_missing


@pytest.mark.anyio
async def test_demo_auth_sign_up_sign_in_and_events() -> None:
    auth = DemoBackendClient(A).auth
    events: list[tuple[AuthChangeEvent, Session | None]] = []
    subscription = auth.on_auth_state_change(lambda event, session: events.append((event, session)))

    signed_up = await auth.sign_up("Jane@Mail.com", "secret1")
    duplicate = await auth.sign_up("jane@mail.com", "secret1")
    await auth.sign_out()
    wrong = await auth.sign_in_with_password("jane@mail.com", "nope")
    signed_in = await auth.sign_in_with_password("jane@mail.com", "secret1")
    session = await auth.get_session()
    subscription.unsubscribe()
    await auth.sign_out()

    assert signed_up.ok and signed_in.ok
    assert duplicate.error and "already registered" in duplicate.error
    assert wrong.error and "Invalid login credentials" in wrong.error
    assert session is not None and session.user.email == "jane@mail.com"
    assert [event for event, _ in events] == [
        AuthChangeEvent.SIGNED_IN,
        AuthChangeEvent.SIGNED_OUT,
        AuthChangeEvent.SIGNED_IN,
    ]
    assert auth.listener_count == 0


class _FakeQuery:
    def __init__(self, owner: "_FakePostgrest", table: str) -> None:
        self._owner = owner
        self._table = table
        self.filters: list[tuple[str, Any]] = []

    def select(self, columns: str) -> "_FakeQuery":
        self._owner.calls.append((self._table, "select", columns))
        return self

    def insert(self, row: dict[str, Any]) -> "_FakeQuery":
        self._owner.calls.append((self._table, "insert", row))
        return self

    def eq(self, column: str, value: Any) -> "_FakeQuery":
        self.filters.append((column, value))
        return self

    def limit(self, count: int) -> "_FakeQuery":
        self._owner.calls.append((self._table, "limit", count))
        return self

    def order(self, column: str, *, desc: bool = False) -> "_FakeQuery":
        self._owner.calls.append((self._table, "order", (column, desc)))
        return self

    async def execute(self) -> SimpleNamespace:
        self._owner.filters.extend(self.filters)
        outcome = self._owner.outcome
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(data=outcome)


class _FakeSubscription:
    def __init__(self) -> None:
        self.active = True

    def unsubscribe(self) -> None:
        self.active = False


class _FakeAuthError(AuthError):
    def __init__(self, message: str) -> None:
        Exception.__init__(self, message)
        self.message = message
        self.status = 400
        self.code = "invalid_credentials"


class _FakeGoTrue:
    def __init__(self) -> None:
        self.callback: Any = None
        self.fail_with: Exception | None = None
        self.session: Any = None

    async def get_session(self) -> Any:
        return self.session

    def on_auth_state_change(self, callback: Any) -> _FakeSubscription:
        self.callback = callback
        return _FakeSubscription()

    async def sign_in_with_password(self, credentials: dict[str, str]) -> None:
        if self.fail_with:
            raise self.fail_with

    async def sign_up(self, credentials: dict[str, str]) -> None:
        if self.fail_with:
            raise self.fail_with

    async def sign_out(self) -> None:
        return None


class _FakePostgrest:
    def __init__(self) -> None:
        self.auth = _FakeGoTrue()
        self.outcome: Any = []
        self.calls: list[tuple[str, str, Any]] = []
        self.filters: list[tuple[str, Any]] = []

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)


def _api_error(code: str, message: str) -> PostgrestAPIError:
    return PostgrestAPIError({"message": message, "code": code, "details": None, "hint": None})


@pytest.mark.anyio
async def test_supabase_client_maps_table_results() -> None:
    fake = _FakePostgrest()
    client = SupabaseBackendClient(A, client=fake)

    fake.outcome = [{"id": "u1", "username": "mert"}]
    ok = await client.table("profiles").select(match={"id": "u1"}, limit=1)
    fake.outcome = _api_error("23505", "duplicate key value violates unique constraint")
    conflict = await client.table("profiles").insert({"id": "u2", "username": "mert"})
    fake.outcome = _api_error("42P01", 'relation "public.posts" does not exist')
    missing = await client.table("posts").select(columns="id", limit=1)
    fake.outcome = httpx.ConnectError("unreachable")
    offline = await client.table("posts").select()

    assert isinstance(ok, Ok) and ok.first == {"id": "u1", "username": "mert"}
    assert ("id", "u1") in fake.filters
    assert ("profiles", "limit", 1) in fake.calls
    assert isinstance(conflict, Conflict)
    assert isinstance(missing, Failure) and missing.error.schema_missing
    assert isinstance(offline, Failure) and "unreachable" in offline.error.message


@pytest.mark.anyio
async def test_supabase_client_maps_auth_errors_and_events() -> None:
    fake = _FakePostgrest()
    client = SupabaseBackendClient(A, client=fake)
    seen: list[tuple[AuthChangeEvent, Session | None]] = []

    subscription = client.auth.on_auth_state_change(lambda event, session: seen.append((event, session)))
    fake.auth.callback(
        "SIGNED_IN",
        SimpleNamespace(
            user=SimpleNamespace(id="u1", email="jane@mail.com"),
            access_token="token",
            refresh_token="refresh",
            expires_at=123,
        ),
    )
    fake.auth.callback("SIGNED_OUT", None)
    fake.auth.fail_with = _FakeAuthError("Invalid login credentials")
    failed = await client.auth.sign_in_with_password("jane@mail.com", "bad")
    fake.auth.fail_with = None
    succeeded = await client.auth.sign_up("jane@mail.com", "good-password")

    assert seen[0][0] is AuthChangeEvent.SIGNED_IN
    assert seen[0][1] is not None and seen[0][1].user.id == "u1"
    assert seen[1] == (AuthChangeEvent.SIGNED_OUT, None)
    assert failed.error == "Invalid login credentials | status=400 | code=invalid_credentials"
    assert succeeded.ok
    subscription.unsubscribe()
    assert subscription.active is False


@pytest.mark.anyio
async def test_supabase_select_passes_ordering() -> None:
    fake = _FakePostgrest()
    client = SupabaseBackendClient(A, client=fake)

    await client.table("posts").select(match={"author_id": "u1"}, order="inserted_at", descending=True)

    assert ("posts", "order", ("inserted_at", True)) in fake.calls


@pytest.mark.anyio
async def test_demo_select_orders_rows() -> None:
    client = DemoBackendClient(A)
    client.tables["posts"].extend([{"id": 1, "inserted_at": "b"}, {"id": 2, "inserted_at": "c"}, {"id": 3, "inserted_at": "a"}])

    newest = await client.table("posts").select(order="inserted_at", descending=True)
    oldest = await client.table("posts").select(order="inserted_at", limit=1)

    assert isinstance(newest, Ok) and [row["id"] for row in newest.rows] == [2, 1, 3]
    assert isinstance(oldest, Ok) and [row["id"] for row in oldest.rows] == [3]


@pytest.mark.anyio
async def test_auth_storage_namespaces_keys_per_project() -> None:
    storage = MemoryStorage()
    first = SupabaseAuthStorage(storage, A)
    same_project = SupabaseAuthStorage(storage, ConnectionConfig(url=A.url, anon_key=A.anon_key))
    other_project = SupabaseAuthStorage(storage, B)

    await first.set_item("sb-auth-token", "payload")

    assert await same_project.get_item("sb-auth-token") == "payload"
    assert await other_project.get_item("sb-auth-token") is None
    assert storage.get("sb-auth-token") is None

    await same_project.remove_item("sb-auth-token")
    assert await first.get_item("sb-auth-token") is None


class _PersistingGoTrue(_FakeGoTrue):
    """Auth client that keeps its session in the storage it was handed."""

    KEY = "sb-auth-token"

    def __init__(self, storage: Any) -> None:
        super().__init__()
        self._storage = storage

    async def sign_in_with_password(self, credentials: dict[str, str]) -> None:
        payload = {"access_token": "token", "user": {"id": "u1", "email": credentials["email"]}}
        await self._storage.set_item(self.KEY, json.dumps(payload))

    async def get_session(self) -> Any:
        raw = await self._storage.get_item(self.KEY)
        if raw is None:
            return None
        data = json.loads(raw)
        return SimpleNamespace(access_token=data["access_token"], user=SimpleNamespace(**data["user"]))


class _RecordingAsyncClient:
    def __init__(self, url: str, key: str, options: Any = None) -> None:
        self.options = options
        self.auth = _PersistingGoTrue(options.storage if options is not None else None)


@pytest.mark.anyio
async def test_supabase_session_survives_new_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("ledger.clients.AsyncClient", _RecordingAsyncClient)
    storage = MemoryStorage()

    first = SupabaseBackendClient(A, auth_storage=storage)
    signed_in = await first.auth.sign_in_with_password("jane@mail.com", "secret1")
    restarted = SupabaseBackendClient(A, auth_storage=storage)
    other = SupabaseBackendClient(B, auth_storage=storage)

    session = await restarted.auth.get_session()

    assert signed_in.ok
    assert isinstance(first._client.options.storage, SupabaseAuthStorage)
    assert session is not None and session.user.id == "u1"
    assert session.user.email == "jane@mail.com"
    assert await other.auth.get_session() is None


def test_client_factory_selects_backend() -> None:
    storage = MemoryStorage()

    assert client_factory("demo") is DemoBackendClient
    factory = client_factory("supabase", auth_storage=storage)
    assert isinstance(factory, functools.partial)
    assert factory.func is SupabaseBackendClient
    assert factory.keywords == {"auth_storage": storage}
    assert client_factory("mystery").func is SupabaseBackendClient  # type: ignore[attr-defined]
