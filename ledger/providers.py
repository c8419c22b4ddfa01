"""Command palette providers for connection and account actions."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .auth import AuthState
from .models import ConnectionSource

# (label, app method, help, shown when)
_COMMANDS: tuple[tuple[str, str, str, str], ...] = (
    ("Connect backend…", "open_connect", "Use your own backend project URL and key.", "always"),
    ("Switch to default backend", "switch_to_default", "Drop the custom backend and use the default.", "custom"),
    ("Disconnect backend", "disconnect", "Sign out and forget the custom backend.", "connected"),
    ("Sign in…", "open_sign_in", "Sign in with email and password.", "signed_out"),
    ("Sign up…", "open_sign_up", "Create an account on the connected backend.", "signed_out"),
    ("Sign out", "sign_out", "End the current session.", "signed_in"),
    ("Refresh profile", "refresh_profile", "Re-sync your public profile.", "signed_in"),
    ("My posts", "list_posts", "List the posts you have written.", "signed_in"),
)


def _available(when: str, state: AuthState) -> bool:
    if when == "always":
        return True
    if when == "custom":
        return state.has_default_connection and state.connection_source is ConnectionSource.CUSTOM
    if when == "connected":
        return state.has_connection
    if when == "signed_out":
        return state.has_connection and state.user is None
    if when == "signed_in":
        return state.user is not None
    return False


class AccountCommandsProvider(Provider):
    """Expose connect/sign-in actions to the command palette."""

    async def search(self, query: str) -> Hits:
        state = self._auth_state
        if state is None:
            return
        matcher = self.matcher(query)
        for label, method, help_text, when in _COMMANDS:
            if not _available(when, state):
                continue
            score = matcher.match(label)
            if score > 0:
                yield Hit(
                    score=score,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(method),
                    help=help_text,
                )

    async def discover(self) -> Hits:
        state = self._auth_state
        if state is None:
            return
        for label, method, help_text, when in _COMMANDS:
            if _available(when, state):
                yield DiscoveryHit(
                    display=label,
                    command=self._build_callback(method),
                    help=help_text,
                )

    @property
    def _auth_state(self) -> AuthState | None:
        auth = getattr(self.app, "auth", None)
        state = getattr(auth, "state", None)
        if isinstance(state, AuthState):
            return state
        return None

    def _build_callback(self, method: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            action = getattr(self.app, method, None)
            if action is None:
                return
            action()

        return _run


__all__ = ["AccountCommandsProvider"]
