"""Backend clients and the process-wide client registry."""

from __future__ import annotations

import functools
import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence, Union, runtime_checkable

import httpx
from supabase import AsyncClient, AuthError, PostgrestAPIError
from supabase.lib.client_options import AsyncClientOptions
from supabase_auth import AsyncSupportedStorage

from .errors import NotConnected, format_auth_error
from .models import AuthChangeEvent, ConnectionConfig, Session, User
from .storage import KeyValueStorage

LOG = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
UNDEFINED_TABLE_CODES = frozenset({"42P01", "PGRST205"})

Row = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class BackendError:
    """Failure reported by the backend for a table operation."""

    message: str
    code: str | None = None
    details: str | None = None

    @property
    def schema_missing(self) -> bool:
        if self.code in UNDEFINED_TABLE_CODES:
            return True
        return "does not exist" in self.message or "Could not find the table" in self.message


@dataclass(frozen=True, slots=True)
class Ok:
    rows: tuple[dict[str, Any], ...] = ()

    @property
    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


@dataclass(frozen=True, slots=True)
class Conflict:
    """Write rejected by a unique constraint."""

    error: BackendError


@dataclass(frozen=True, slots=True)
class Failure:
    error: BackendError


TableResult = Union[Ok, Conflict, Failure]


def classify_error(error: BackendError) -> Conflict | Failure:
    """Map a backend error onto the tagged result variants."""

    if error.code == UNIQUE_VIOLATION:
        return Conflict(error)
    return Failure(error)


@dataclass(frozen=True, slots=True)
class AuthResult:
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


AuthListener = Callable[[AuthChangeEvent, "Session | None"], None]


class AuthSubscription(Protocol):
    def unsubscribe(self) -> None:
        """Stop delivering events; takes effect immediately."""


class AuthApi(Protocol):
    """Authentication half of a backend client."""

    async def get_session(self) -> Session | None:
        """Return the stored session, if any."""

    def on_auth_state_change(self, listener: AuthListener) -> AuthSubscription:
        """Register for pushed auth events."""

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        """Sign in with email and password."""

    async def sign_up(self, email: str, password: str) -> AuthResult:
        """Register a new account."""

    async def sign_out(self) -> None:
        """End the current session."""


class Table(Protocol):
    """Row operations against one table."""

    async def select(
        self,
        *,
        match: Mapping[str, Any] | None = None,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
        descending: bool = False,
    ) -> TableResult:
        """Return matching rows, sorted by ``order`` when given."""

    async def insert(self, row: Row) -> TableResult:
        """Insert a row."""

    async def update(self, values: Row, *, match: Mapping[str, Any]) -> TableResult:
        """Update matching rows."""

    async def delete(self, *, match: Mapping[str, Any]) -> TableResult:
        """Delete matching rows."""


@runtime_checkable
class BackendClient(Protocol):
    """Protocol implemented by backend clients."""

    config: ConnectionConfig

    @property
    def auth(self) -> AuthApi:
        """Authentication API."""

    def table(self, name: str) -> Table:
        """Row API for ``name``."""


ClientFactory = Callable[[ConnectionConfig], BackendClient]


def _to_event(raw: object) -> AuthChangeEvent:
    try:
        return AuthChangeEvent(str(raw))
    except ValueError:
        return AuthChangeEvent.USER_UPDATED


def _to_session(raw: Any) -> Session | None:
    if raw is None or getattr(raw, "user", None) is None:
        return None
    user = raw.user
    return Session(
        user=User(id=str(user.id), email=getattr(user, "email", None)),
        access_token=getattr(raw, "access_token", "") or "",
        refresh_token=getattr(raw, "refresh_token", None),
        expires_at=getattr(raw, "expires_at", None),
    )


class _SupabaseAuth:
    def __init__(self, auth: Any) -> None:
        self._auth = auth

    async def get_session(self) -> Session | None:
        try:
            session = await self._auth.get_session()
        except AuthError as exc:
            LOG.warning("Could not restore session: %s", format_auth_error(exc, "auth error"))
            return None
        return _to_session(session)

    def on_auth_state_change(self, listener: AuthListener) -> AuthSubscription:
        def _callback(event: Any, session: Any) -> None:
            listener(_to_event(event), _to_session(session))

        return self._auth.on_auth_state_change(_callback)

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        try:
            await self._auth.sign_in_with_password({"email": email, "password": password})
        except AuthError as exc:
            return AuthResult(error=format_auth_error(exc, "Sign-in failed"))
        except httpx.HTTPError as exc:
            return AuthResult(error=format_auth_error(exc, "Sign-in failed"))
        return AuthResult()

    async def sign_up(self, email: str, password: str) -> AuthResult:
        try:
            await self._auth.sign_up({"email": email, "password": password})
        except AuthError as exc:
            return AuthResult(error=format_auth_error(exc, "Sign-up failed"))
        except httpx.HTTPError as exc:
            return AuthResult(error=format_auth_error(exc, "Sign-up failed"))
        return AuthResult()

    async def sign_out(self) -> None:
        await self._auth.sign_out()


class _SupabaseTable:
    def __init__(self, client: Any, name: str) -> None:
        self._client = client
        self._name = name

    async def select(
        self,
        *,
        match: Mapping[str, Any] | None = None,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
        descending: bool = False,
    ) -> TableResult:
        query = self._client.table(self._name).select(columns)
        for key, value in (match or {}).items():
            query = query.eq(key, value)
        if order is not None:
            query = query.order(order, desc=descending)
        if limit is not None:
            query = query.limit(limit)
        return await self._execute(query)

    async def insert(self, row: Row) -> TableResult:
        return await self._execute(self._client.table(self._name).insert(dict(row)))

    async def update(self, values: Row, *, match: Mapping[str, Any]) -> TableResult:
        query = self._client.table(self._name).update(dict(values))
        for key, value in match.items():
            query = query.eq(key, value)
        return await self._execute(query)

    async def delete(self, *, match: Mapping[str, Any]) -> TableResult:
        query = self._client.table(self._name).delete()
        for key, value in match.items():
            query = query.eq(key, value)
        return await self._execute(query)

    async def _execute(self, query: Any) -> TableResult:
        try:
            response = await query.execute()
        except PostgrestAPIError as exc:
            return classify_error(
                BackendError(message=exc.message or str(exc), code=exc.code, details=exc.details)
            )
        except httpx.HTTPError as exc:
            return Failure(BackendError(message=f"{self._name}: {exc}"))
        data = response.data
        if isinstance(data, list):
            return Ok(tuple(dict(row) for row in data))
        if isinstance(data, dict):
            return Ok((dict(data),))
        return Ok()


class SupabaseAuthStorage(AsyncSupportedStorage):
    """Persist supabase-auth sessions in a key/value store, one namespace per project."""

    PREFIX = "ledger_auth"

    def __init__(self, storage: KeyValueStorage, config: ConnectionConfig) -> None:
        self._storage = storage
        digest = hashlib.sha256(config.identity.encode("utf-8")).hexdigest()[:16]
        self._namespace = f"{self.PREFIX}_{digest}:"

    async def get_item(self, key: str) -> str | None:
        return self._storage.get(self._namespace + key)

    async def set_item(self, key: str, value: str) -> None:
        self._storage.set(self._namespace + key, value)

    async def remove_item(self, key: str) -> None:
        self._storage.remove(self._namespace + key)


class SupabaseBackendClient:
    """Backend client that talks to a Supabase project via supabase-py.

    With ``auth_storage`` the auth session survives restarts; without it
    supabase-py keeps the session in memory only.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        client: Any | None = None,
        auth_storage: KeyValueStorage | None = None,
    ) -> None:
        self.config = config
        if client is None:
            options = None
            if auth_storage is not None:
                options = AsyncClientOptions(storage=SupabaseAuthStorage(auth_storage, config))
            client = AsyncClient(config.url, config.anon_key, options=options)
        self._client = client
        self._auth = _SupabaseAuth(self._client.auth)

    @property
    def auth(self) -> _SupabaseAuth:
        return self._auth

    def table(self, name: str) -> _SupabaseTable:
        return _SupabaseTable(self._client, name)


@dataclass(slots=True)
class _DemoAccount:
    user: User
    password: str


@dataclass(slots=True, eq=False)
class _DemoSubscription:
    listener: AuthListener
    owner: "DemoAuth"
    active: bool = True

    def unsubscribe(self) -> None:
        self.active = False
        self.owner._subscriptions.discard(self)


class DemoAuth:
    """In-memory auth service; sign-up signs the new account in directly."""

    def __init__(self) -> None:
        self._accounts: dict[str, _DemoAccount] = {}
        self._session: Session | None = None
        self._subscriptions: set[_DemoSubscription] = set()

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    async def get_session(self) -> Session | None:
        return self._session

    def on_auth_state_change(self, listener: AuthListener) -> _DemoSubscription:
        subscription = _DemoSubscription(listener=listener, owner=self)
        self._subscriptions.add(subscription)
        return subscription

    async def sign_in_with_password(self, email: str, password: str) -> AuthResult:
        account = self._accounts.get(email.strip().lower())
        if account is None or account.password != password:
            return AuthResult(error="Invalid login credentials | status=400 | code=invalid_credentials")
        self._start_session(account.user)
        return AuthResult()

    async def sign_up(self, email: str, password: str) -> AuthResult:
        key = email.strip().lower()
        if key in self._accounts:
            return AuthResult(error="User already registered | status=422 | code=user_already_exists")
        if len(password) < 6:
            return AuthResult(error="Password should be at least 6 characters | status=422 | code=weak_password")
        account = _DemoAccount(user=User(id=str(uuid.uuid4()), email=key), password=password)
        self._accounts[key] = account
        self._start_session(account.user)
        return AuthResult()

    async def sign_out(self) -> None:
        self._session = None
        self.emit(AuthChangeEvent.SIGNED_OUT, None)

    def emit(self, event: AuthChangeEvent, session: Session | None) -> None:
        """Push an auth event to listeners (testing helper)."""

        for subscription in tuple(self._subscriptions):
            if subscription.active:
                subscription.listener(event, session)

    def restore(self, user: User) -> Session:
        """Install a session as if persisted by an earlier run (testing helper)."""

        self._session = Session(user=user, access_token=f"demo-{uuid.uuid4().hex}")
        return self._session

    def _start_session(self, user: User) -> None:
        self._session = Session(user=user, access_token=f"demo-{uuid.uuid4().hex}")
        self.emit(AuthChangeEvent.SIGNED_IN, self._session)


DEMO_UNIQUE_COLUMNS: Mapping[str, Sequence[str]] = {
    "profiles": ("id", "username"),
    "posts": ("id",),
}
DEMO_SERIAL_TABLES = frozenset({"posts"})


class _DemoTable:
    def __init__(self, owner: "DemoBackendClient", name: str) -> None:
        self._owner = owner
        self._name = name

    async def select(
        self,
        *,
        match: Mapping[str, Any] | None = None,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
        descending: bool = False,
    ) -> TableResult:
        rows = self._rows()
        if rows is None:
            return self._missing()
        self._owner.operations.append((self._name, "select"))
        found = [dict(row) for row in rows if _matches(row, match)]
        if order is not None:
            found.sort(key=lambda row: (row.get(order) is None, row.get(order)), reverse=descending)
        if limit is not None:
            found = found[:limit]
        return Ok(tuple(found))

    async def insert(self, row: Row) -> TableResult:
        rows = self._rows()
        if rows is None:
            return self._missing()
        self._owner.operations.append((self._name, "insert"))
        record = dict(row)
        now = datetime.now(tz=timezone.utc).isoformat()
        if self._name in DEMO_SERIAL_TABLES:
            record.setdefault("id", max((int(existing["id"]) for existing in rows if "id" in existing), default=0) + 1)
            record.setdefault("inserted_at", now)
        else:
            record.setdefault("updated_at", now)
        conflict = self._conflict(rows, record)
        if conflict:
            return conflict
        rows.append(record)
        return Ok((dict(record),))

    async def update(self, values: Row, *, match: Mapping[str, Any]) -> TableResult:
        rows = self._rows()
        if rows is None:
            return self._missing()
        self._owner.operations.append((self._name, "update"))
        updated: list[dict[str, Any]] = []
        for row in rows:
            if not _matches(row, match):
                continue
            candidate = {**row, **values}
            others = [other for other in rows if other is not row]
            conflict = self._conflict(others, candidate)
            if conflict:
                return conflict
            row.update(values)
            updated.append(dict(row))
        return Ok(tuple(updated))

    async def delete(self, *, match: Mapping[str, Any]) -> TableResult:
        rows = self._rows()
        if rows is None:
            return self._missing()
        self._owner.operations.append((self._name, "delete"))
        removed = [dict(row) for row in rows if _matches(row, match)]
        rows[:] = [row for row in rows if not _matches(row, match)]
        return Ok(tuple(removed))

    def _rows(self) -> list[dict[str, Any]] | None:
        return self._owner.tables.get(self._name)

    def _missing(self) -> Failure:
        return Failure(
            BackendError(
                message=f'relation "public.{self._name}" does not exist',
                code="42P01",
            )
        )

    def _conflict(self, rows: Sequence[Row], record: Row) -> Conflict | None:
        for column in self._owner.unique_columns.get(self._name, ()):
            value = record.get(column)
            if value is None:
                continue
            if any(row.get(column) == value for row in rows):
                return Conflict(
                    BackendError(
                        message=f'duplicate key value violates unique constraint "{self._name}_{column}_key"',
                        code=UNIQUE_VIOLATION,
                    )
                )
        return None


def _matches(row: Row, match: Mapping[str, Any] | None) -> bool:
    if not match:
        return True
    return all(row.get(key) == value for key, value in match.items())


@dataclass(slots=True)
class DemoBackendClient:
    """In-memory backend used for offline runs and tests."""

    config: ConnectionConfig
    tables: dict[str, list[dict[str, Any]]] = field(
        default_factory=lambda: {name: [] for name in DEMO_UNIQUE_COLUMNS}
    )
    unique_columns: Mapping[str, Sequence[str]] = field(default_factory=lambda: dict(DEMO_UNIQUE_COLUMNS))
    operations: list[tuple[str, str]] = field(default_factory=list)
    _auth: DemoAuth = field(default_factory=DemoAuth)

    @property
    def auth(self) -> DemoAuth:
        return self._auth

    def table(self, name: str) -> _DemoTable:
        return _DemoTable(self, name)

    def count(self, table: str, operation: str) -> int:
        """Number of recorded ``operation`` calls against ``table``."""

        return sum(1 for entry in self.operations if entry == (table, operation))


def client_factory(backend: str, auth_storage: KeyValueStorage | None = None) -> ClientFactory:
    """Factory for the configured backend; unknown names fall back to supabase."""

    if backend == "demo":
        return DemoBackendClient
    if backend != "supabase":
        LOG.warning("Unknown backend %r, using supabase", backend)
    return functools.partial(SupabaseBackendClient, auth_storage=auth_storage)


class ClientRegistry:
    """Insert-only cache holding one client per distinct config identity."""

    def __init__(self, factory: ClientFactory | None = None) -> None:
        self._factory = factory or SupabaseBackendClient
        self._clients: dict[str, BackendClient] = {}

    def get_client(self, config: ConnectionConfig | None) -> BackendClient:
        """Return the cached client for ``config``, building it on first use."""

        if config is None:
            raise NotConnected("No backend project is connected yet.")
        key = config.identity
        client = self._clients.get(key)
        if client is None:
            client = self._clients.setdefault(key, self._factory(config))
            LOG.debug("Created backend client", extra={"host": config.host})
        return client

    def __contains__(self, config: object) -> bool:
        return isinstance(config, ConnectionConfig) and config.identity in self._clients

    def __len__(self) -> int:
        return len(self._clients)


__all__ = [
    "AuthApi",
    "AuthListener",
    "AuthResult",
    "AuthSubscription",
    "BackendClient",
    "BackendError",
    "ClientFactory",
    "ClientRegistry",
    "Conflict",
    "DemoAuth",
    "DemoBackendClient",
    "Failure",
    "Ok",
    "SupabaseAuthStorage",
    "SupabaseBackendClient",
    "Table",
    "TableResult",
    "UNIQUE_VIOLATION",
    "classify_error",
    "client_factory",
]
