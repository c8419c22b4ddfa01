"""Auth facade coordinating connection, session and profile state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .clients import AuthResult, BackendClient, ClientRegistry, Failure, Ok
from .connections import ConnectionStore
from .errors import NoConnection, format_auth_error
from .models import ConnectionConfig, ConnectionSource, Profile, ResolvedConnection, Session, User
from .posts import PostStore
from .profiles import ProfileReconciler, ProfileUpdate
from .session import SessionState, SessionTracker, TrackerStatus

LOG = logging.getLogger(__name__)

SCHEMA_TABLE = "posts"


class SchemaStatus(str, Enum):
    READY = "ready"
    MISSING = "missing"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class SchemaCheck:
    status: SchemaStatus
    message: str


@dataclass(frozen=True, slots=True)
class ConnectResult:
    connection: ResolvedConnection
    schema: SchemaCheck | None = None


@dataclass(frozen=True, slots=True)
class AuthState:
    """What the UI sees: connection, session and profile in one snapshot."""

    connection: ResolvedConnection
    has_default_connection: bool
    status: TrackerStatus
    session: Session | None = None
    profile: Profile | None = None
    profile_loading: bool = False
    last_error: str | None = None

    @property
    def user(self) -> User | None:
        return self.session.user if self.session else None

    @property
    def has_connection(self) -> bool:
        return self.connection.config is not None

    @property
    def connection_source(self) -> ConnectionSource:
        return self.connection.source

    @property
    def loading(self) -> bool:
        return self.status in (TrackerStatus.UNINITIALIZED, TrackerStatus.LOADING) or self.profile_loading


StateListener = Callable[[AuthState], None]


@dataclass(slots=True, eq=False)
class _ProfileSync:
    user_id: str
    cancelled: bool = False
    task: asyncio.Task[Any] | None = field(default=None)


class AuthFacade:
    """Sign-in/out and connect/disconnect with coherent state resets."""

    def __init__(
        self,
        connections: ConnectionStore,
        registry: ClientRegistry,
        *,
        tracker: SessionTracker | None = None,
        reconciler: ProfileReconciler | None = None,
    ) -> None:
        self._connections = connections
        self._registry = registry
        self._tracker = tracker or SessionTracker(connections, registry)
        self._reconciler = reconciler or ProfileReconciler()
        self._listeners: set[StateListener] = set()
        self._profile: Profile | None = None
        self._sync: _ProfileSync | None = None
        self._last_error: str | None = None
        self._tracker_unsubscribe: Callable[[], None] | None = None

    @property
    def tracker(self) -> SessionTracker:
        return self._tracker

    @property
    def connections(self) -> ConnectionStore:
        return self._connections

    @property
    def state(self) -> AuthState:
        session_state = self._tracker.state
        user = session_state.user
        profile = self._profile if user is not None and self._profile and self._profile.id == user.id else None
        return AuthState(
            connection=session_state.connection,
            has_default_connection=self._connections.has_default,
            status=session_state.status,
            session=session_state.session,
            profile=profile,
            profile_loading=self._sync is not None and self._sync.task is not None and not self._sync.task.done(),
            last_error=self._last_error,
        )

    def start(self) -> None:
        """Start session tracking; must run inside the event loop."""

        if self._tracker_unsubscribe is None:
            self._tracker_unsubscribe = self._tracker.subscribe(self._handle_session_state)
        self._tracker.start()

    def close(self) -> None:
        if self._tracker_unsubscribe:
            self._tracker_unsubscribe()
            self._tracker_unsubscribe = None
        self._cancel_profile_sync()
        self._tracker.close()
        self._listeners.clear()

    async def wait_until_ready(self) -> AuthState:
        """Wait for pending session and profile loads to settle."""

        while True:
            await self._tracker.wait_until_ready()
            sync = self._sync
            if sync is None or sync.task is None or sync.task.done():
                break
            await asyncio.wait({sync.task})
        return self.state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self.state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def sign_in(self, email: str, password: str) -> AuthResult:
        client = self._require_client()
        result = await client.auth.sign_in_with_password(email, password)
        self._set_error(result.error)
        return result

    async def sign_up(self, email: str, password: str) -> AuthResult:
        client = self._require_client()
        result = await client.auth.sign_up(email, password)
        self._set_error(result.error)
        return result

    async def sign_out(self) -> AuthResult:
        client = self._require_client()
        try:
            await client.auth.sign_out()
        except Exception as exc:
            LOG.warning("Sign-out failed", exc_info=True)
            result = AuthResult(error=format_auth_error(exc, "Sign-out failed"))
        else:
            result = AuthResult()
        self._set_error(result.error)
        return result

    async def connect(self, url: str, anon_key: str, *, verify_schema: bool = False) -> ConnectResult:
        """Save ``url``/``anon_key`` as the active override and reload the session.

        Raises ``InvalidConfig`` before anything is persisted when the pair is malformed.
        """

        resolved = self._connections.save_override(ConnectionConfig(url=url, anon_key=anon_key))
        self._reset_local()
        schema = await self.check_schema() if verify_schema else None
        return ConnectResult(connection=resolved, schema=schema)

    async def switch_to_default(self) -> AuthState:
        """Go back to the operator default; no-op without one."""

        if not self._connections.has_default:
            return self.state
        await self._best_effort_sign_out()
        if self._connections.has_storage:
            self._connections.disable_override()
        self._reset_local()
        return self.state

    async def disconnect(self) -> AuthState:
        """Sign out where possible and forget the override."""

        await self._best_effort_sign_out()
        if self._connections.has_storage:
            self._connections.clear_override()
        self._reset_local()
        return self.state

    async def refresh_profile(self) -> Profile | None:
        user = self._tracker.state.user
        client = self._tracker.client
        if user is None or client is None:
            return None
        self._cancel_profile_sync()
        sync = _ProfileSync(user_id=user.id)
        self._sync = sync
        profile = await self._reconciler.ensure_profile(user, client)
        self._apply_profile(sync, profile)
        return self.state.profile

    async def update_profile(self, username: str, bio: str | None = None) -> ProfileUpdate:
        user = self._tracker.state.user
        client = self._tracker.client
        if user is None or client is None:
            return ProfileUpdate(error="Not signed in.")
        result = await self._reconciler.update_profile(user, client, username=username, bio=bio)
        if result.profile is not None and self._tracker.state.user == user:
            self._profile = result.profile
            self._notify()
        return result

    async def check_schema(self) -> SchemaCheck:
        """Check that the connected project has the blog tables."""

        client = self._require_client()
        result = await client.table(SCHEMA_TABLE).select(columns="id", limit=1)
        if isinstance(result, Ok):
            return SchemaCheck(SchemaStatus.READY, "Connection verified.")
        if isinstance(result, Failure) and result.error.schema_missing:
            return SchemaCheck(SchemaStatus.MISSING, "Connection established, but the database is empty.")
        return SchemaCheck(SchemaStatus.ERROR, f"Connection error: {result.error.message}")

    def posts(self) -> PostStore:
        """Post store bound to the active backend; raises ``NoConnection`` without one."""

        return PostStore(self._require_client())

    def _require_client(self) -> BackendClient:
        resolved = self._connections.resolve()
        if resolved.config is None:
            raise NoConnection("Connect a backend project first.")
        return self._registry.get_client(resolved.config)

    async def _best_effort_sign_out(self) -> None:
        resolved = self._connections.resolve()
        if resolved.config is None:
            return
        client = self._registry.get_client(resolved.config)
        try:
            await client.auth.sign_out()
        except Exception:
            LOG.info("Ignoring sign-out failure during connection change", exc_info=True)

    def _reset_local(self) -> None:
        self._cancel_profile_sync()
        self._profile = None
        self._last_error = None
        state = self._tracker.state
        if state.connection.config is not None and state.status is not TrackerStatus.LOADING:
            self._tracker.reset()
        else:
            self._notify()

    def _handle_session_state(self, state: SessionState) -> None:
        user = state.user
        if user is None:
            self._cancel_profile_sync()
            self._profile = None
        elif self._sync is None or self._sync.user_id != user.id:
            self._start_profile_sync(user)
        self._notify()

    def _start_profile_sync(self, user: User) -> None:
        self._cancel_profile_sync()
        self._profile = None
        client = self._tracker.client
        if client is None:
            return
        sync = _ProfileSync(user_id=user.id)
        self._sync = sync
        loop = asyncio.get_running_loop()
        sync.task = loop.create_task(self._run_profile_sync(sync, user, client))

    async def _run_profile_sync(self, sync: _ProfileSync, user: User, client: BackendClient) -> None:
        try:
            profile = await self._reconciler.ensure_profile(user, client)
        except Exception:
            LOG.exception("Profile sync failed", extra={"user_id": user.id})
            profile = None
        self._apply_profile(sync, profile)

    def _apply_profile(self, sync: _ProfileSync, profile: Profile | None) -> None:
        user = self._tracker.state.user
        if sync.cancelled or user is None or user.id != sync.user_id:
            LOG.debug("Discarding stale profile result", extra={"user_id": sync.user_id})
            return
        self._profile = profile
        error = self._reconciler.last_error
        if profile is None and error is not None:
            self._last_error = (
                "Profiles table missing; run the setup SQL." if error.schema_missing else error.message
            )
        self._notify()

    def _cancel_profile_sync(self) -> None:
        sync = self._sync
        self._sync = None
        if sync is None:
            return
        sync.cancelled = True
        if sync.task is not None and not sync.task.done():
            sync.task.cancel()

    def _set_error(self, error: str | None) -> None:
        self._last_error = error
        self._notify()

    def _notify(self) -> None:
        state = self.state
        for listener in tuple(self._listeners):
            try:
                listener(state)
            except Exception:
                LOG.exception("Auth state listener failed")


__all__ = [
    "AuthFacade",
    "AuthState",
    "ConnectResult",
    "SchemaCheck",
    "SchemaStatus",
    "StateListener",
]
