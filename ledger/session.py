"""Session tracker keeping the auth session in step with the active backend."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from .clients import AuthSubscription, BackendClient, ClientRegistry
from .connections import ConnectionStore
from .models import AuthChangeEvent, ResolvedConnection, Session, User

LOG = logging.getLogger(__name__)


class TrackerStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot (active connection + auth session)."""

    status: TrackerStatus
    connection: ResolvedConnection
    session: Session | None = None
    changed_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    @property
    def user(self) -> User | None:
        return self.session.user if self.session else None

    @property
    def loading(self) -> bool:
        return self.status in (TrackerStatus.UNINITIALIZED, TrackerStatus.LOADING)


SessionListener = Callable[[SessionState], None]


@dataclass(slots=True, eq=False)
class _Activation:
    """One tracked client; results arriving after ``cancelled`` are dropped."""

    connection: ResolvedConnection
    client: BackendClient
    subscription: AuthSubscription | None = None
    cancelled: bool = False
    pushed: bool = False


class SessionTracker:
    """Follow the auth state of whichever client the connection store resolves.

    A change of config identity tears the old auth subscription down before
    subscribing to the new client, clears the in-memory session and re-enters
    ``LOADING`` until the new client's stored session has been fetched.
    """

    def __init__(self, connections: ConnectionStore, registry: ClientRegistry) -> None:
        self._connections = connections
        self._registry = registry
        self._listeners: set[SessionListener] = set()
        self._state = SessionState(TrackerStatus.UNINITIALIZED, connections.current)
        self._activation: _Activation | None = None
        self._load_task: asyncio.Task[Any] | None = None
        self._store_unsubscribe: Callable[[], None] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def client(self) -> BackendClient | None:
        """Client the tracker is currently bound to, if any."""

        return self._activation.client if self._activation else None

    @property
    def started(self) -> bool:
        return self._store_unsubscribe is not None

    def start(self) -> None:
        """Begin tracking; must run inside the event loop."""

        if self._store_unsubscribe is None:
            self._store_unsubscribe = self._connections.subscribe(self._handle_connection_change)
        self._activate(self._connections.resolve())

    def reset(self) -> None:
        """Drop the in-memory session and reload it from the resolved client."""

        if not self.started:
            return
        self._activate(self._connections.resolve())

    def close(self) -> None:
        """Release every subscription; no listener fires afterwards."""

        if self._store_unsubscribe:
            self._store_unsubscribe()
            self._store_unsubscribe = None
        self._teardown()
        self._listeners.clear()

    async def wait_until_ready(self) -> SessionState:
        """Wait for the pending session fetch, if any, and return the state."""

        while self._load_task is not None and not self._load_task.done():
            await asyncio.wait({self._load_task})
        return self._state

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _handle_connection_change(self, resolved: ResolvedConnection) -> None:
        active = self._activation
        if active is not None and resolved.config == active.connection.config:
            active.connection = resolved
            if resolved != self._state.connection:
                self._set_state(self._state.status, resolved, self._state.session)
            return
        if active is None and resolved.config is None and self._state.connection == resolved:
            return
        self._activate(resolved)

    def _activate(self, resolved: ResolvedConnection) -> None:
        self._teardown()
        if resolved.config is None:
            self._set_state(TrackerStatus.ANONYMOUS, resolved, None)
            return
        client = self._registry.get_client(resolved.config)
        activation = _Activation(connection=resolved, client=client)
        self._activation = activation
        self._set_state(TrackerStatus.LOADING, resolved, None)

        def _on_auth_event(event: AuthChangeEvent, session: Session | None) -> None:
            self._handle_auth_event(activation, event, session)

        activation.subscription = client.auth.on_auth_state_change(_on_auth_event)
        loop = asyncio.get_running_loop()
        self._load_task = loop.create_task(self._load(activation))

    def _teardown(self) -> None:
        activation = self._activation
        self._activation = None
        if activation is not None:
            activation.cancelled = True
            if activation.subscription is not None:
                activation.subscription.unsubscribe()
                activation.subscription = None
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        self._load_task = None

    async def _load(self, activation: _Activation) -> None:
        try:
            session = await activation.client.auth.get_session()
        except asyncio.CancelledError:
            return
        except Exception:
            LOG.exception("Session fetch failed", extra={"host": activation.connection.config.host})
            session = None
        if activation.cancelled or activation.pushed:
            LOG.debug("Discarding stale session fetch")
            return
        status = TrackerStatus.AUTHENTICATED if session else TrackerStatus.ANONYMOUS
        self._set_state(status, activation.connection, session)

    def _handle_auth_event(
        self,
        activation: _Activation,
        event: AuthChangeEvent,
        session: Session | None,
    ) -> None:
        if activation.cancelled:
            return
        activation.pushed = True
        LOG.debug("Auth state changed", extra={"event": event.value})
        status = TrackerStatus.AUTHENTICATED if session else TrackerStatus.ANONYMOUS
        self._set_state(status, activation.connection, session)

    def _set_state(
        self,
        status: TrackerStatus,
        connection: ResolvedConnection,
        session: Session | None,
    ) -> None:
        self._state = SessionState(status=status, connection=connection, session=session)
        for listener in tuple(self._listeners):
            try:
                listener(self._state)
            except Exception:
                LOG.exception("Session listener failed")


__all__ = ["SessionListener", "SessionState", "SessionTracker", "TrackerStatus"]
