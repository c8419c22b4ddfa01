"""Connection store deciding which backend project is active."""

from __future__ import annotations

import json
import logging
from typing import Callable

from .errors import InvalidConfig, StorageUnavailable
from .models import (
    ConnectionConfig,
    ConnectionSource,
    NO_CONNECTION,
    ResolvedConnection,
    parse_config,
)
from .storage import KeyValueStorage

LOG = logging.getLogger(__name__)

OVERRIDE_KEY = "ledger_supabase_config_v1"
ENABLED_KEY = "ledger_supabase_custom_enabled_v1"

ConnectionListener = Callable[[ResolvedConnection], None]


class ConnectionStore:
    """Persist the user override and resolve it against the operator default.

    Resolution order: an enabled override, then the environment default,
    then any stored override even if disabled, then nothing.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None,
        *,
        env_config: ConnectionConfig | None = None,
    ) -> None:
        self._storage = storage
        self._env_config = env_config
        self._listeners: set[ConnectionListener] = set()
        self._current = self.resolve()

    @property
    def env_config(self) -> ConnectionConfig | None:
        """Operator-provided default, if any."""

        return self._env_config

    @property
    def has_default(self) -> bool:
        return self._env_config is not None

    @property
    def has_storage(self) -> bool:
        return self._storage is not None

    @property
    def current(self) -> ResolvedConnection:
        """Resolution as of the last notification."""

        return self._current

    def stored_override(self) -> ConnectionConfig | None:
        """Return the persisted override; malformed data reads as absent."""

        if self._storage is None:
            return None
        raw = self._storage.get(OVERRIDE_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOG.warning("Ignoring malformed stored connection override")
            return None
        if not isinstance(data, dict):
            return None
        return parse_config(data.get("url"), data.get("anonKey"))

    def override_enabled(self) -> bool:
        if self._storage is None:
            return False
        return self._storage.get(ENABLED_KEY) == "1"

    def resolve(self) -> ResolvedConnection:
        """Pick the active config without side effects."""

        stored = self.stored_override()
        if stored is not None and self.override_enabled():
            return ResolvedConnection(config=stored, source=ConnectionSource.CUSTOM)
        if self._env_config is not None:
            return ResolvedConnection(config=self._env_config, source=ConnectionSource.ENV)
        if stored is not None:
            return ResolvedConnection(config=stored, source=ConnectionSource.CUSTOM)
        return NO_CONNECTION

    def save_override(self, config: ConnectionConfig) -> ResolvedConnection:
        """Validate, persist and enable ``config``."""

        parsed = parse_config(config.url, config.anon_key)
        if parsed is None:
            raise InvalidConfig("Backend URL must be an absolute http(s) URL and the key must not be empty.")
        storage = self._require_storage()
        payload = json.dumps({"url": parsed.url, "anonKey": parsed.anon_key})
        storage.set(OVERRIDE_KEY, payload)
        storage.set(ENABLED_KEY, "1")
        return self._notify()

    def disable_override(self) -> ResolvedConnection:
        """Fall back to the default source without forgetting the override."""

        self._require_storage().set(ENABLED_KEY, "0")
        return self._notify()

    def clear_override(self) -> ResolvedConnection:
        storage = self._require_storage()
        storage.remove(OVERRIDE_KEY)
        storage.set(ENABLED_KEY, "0")
        return self._notify()

    def notify_external(self) -> ResolvedConnection:
        """Re-resolve after another context changed the shared storage."""

        return self._notify()

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Subscribe to resolution changes; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _require_storage(self) -> KeyValueStorage:
        if self._storage is None:
            raise StorageUnavailable("No persistent storage available in this context.")
        return self._storage

    def _notify(self) -> ResolvedConnection:
        self._current = self.resolve()
        for listener in tuple(self._listeners):
            try:
                listener(self._current)
            except Exception:
                LOG.exception("Connection listener failed")
        return self._current


__all__ = ["ConnectionListener", "ConnectionStore", "ENABLED_KEY", "OVERRIDE_KEY"]
