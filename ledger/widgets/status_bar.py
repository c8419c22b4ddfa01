"""Status bar widget that mirrors connection and auth state."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from ledger.auth import AuthFacade, AuthState
from ledger.models import ConnectionSource

SOURCE_LABELS = {
    ConnectionSource.NONE: "Not connected",
    ConnectionSource.ENV: "Default",
    ConnectionSource.CUSTOM: "Custom",
}


def describe_state(state: AuthState) -> str:
    """One-line summary of ``state`` for the status strip."""

    config = state.connection.config
    backend = SOURCE_LABELS[state.connection_source]
    if config is not None:
        backend = f"{backend} ({config.host})"
    parts = [f"Backend: {backend}"]
    if state.loading:
        parts.append("Session: loading")
    elif state.user is None:
        parts.append("Session: signed out")
    else:
        parts.append(f"User: {state.user.email or state.user.id}")
        username = state.profile.username if state.profile else None
        parts.append(f"Profile: @{username}" if username else "Profile: -")
    if state.last_error:
        parts.append(f"Error: {state.last_error.splitlines()[0][:80]}")
    return " | ".join(parts)


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, auth: AuthFacade) -> None:
        super().__init__("", id="status-bar")
        self._auth = auth
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._auth.subscribe(self._handle_state)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_state(self, state: AuthState) -> None:
        self.update(describe_state(state))


__all__ = ["StatusBar", "describe_state"]
