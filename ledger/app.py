"""Textual application entry point for ledger."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Mapping

from textual.app import App, ComposeResult
from textual.widgets import Footer, Header, Static

from .auth import AuthFacade, AuthState, SchemaStatus
from .clients import ClientRegistry, Ok, client_factory
from .config import AppConfig, configure_logging, load_config
from .connections import ConnectionStore
from .errors import LedgerError
from .posts import posts_from
from .providers import AccountCommandsProvider
from .screens import ConnectScreen, Credentials, CredentialsScreen
from .storage import FileStorage, StorageWatcher
from .widgets import StatusBar

LOG = logging.getLogger(__name__)

WELCOME = """\
[bold]ledger[/]: bring your own database.

Open the command palette (ctrl+p) to connect a backend project,
sign in, or switch back to the default backend."""


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config()


def build_auth(config: AppConfig, *, environ: Mapping[str, str] | None = None) -> tuple[AuthFacade, FileStorage]:
    """Wire storage, connection store, client registry and facade together."""

    storage = FileStorage(config.storage_path())
    connections = ConnectionStore(storage, env_config=config.env_connection(environ))
    registry = ClientRegistry(client_factory(config.backend, auth_storage=storage))
    return AuthFacade(connections, registry), storage


class LedgerApp(App[None]):
    """Minimal Textual shell around the connection/auth core."""

    COMMANDS = App.COMMANDS | {AccountCommandsProvider}
    CSS = """
    Screen {
        layout: vertical;
    }
    #welcome {
        height: 1fr;
        padding: 1 2;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(self, config: AppConfig | None = None) -> None:
        super().__init__()
        self._config = config or _load_app_config()
        self._auth, storage = build_auth(self._config)
        self._watcher = StorageWatcher(
            storage.path,
            self._auth.connections.notify_external,
            interval=self._config.watch_interval,
        )
        self._storage_unsubscribe: Callable[[], None] | None = storage.subscribe(self._watcher.acknowledge)
        self._auth_unsubscribe: Callable[[], None] | None = None
        self._last_error: str | None = None

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        yield Static(WELCOME, id="welcome")
        yield StatusBar(self._auth)
        yield Footer()

    async def on_mount(self) -> None:
        self._auth_unsubscribe = self._auth.subscribe(self._handle_auth_state)
        self._auth.start()
        self._watcher.start()

    @property
    def auth(self) -> AuthFacade:
        """Expose the auth facade for tests and command providers."""

        return self._auth

    @property
    def watcher(self) -> StorageWatcher:
        return self._watcher

    def open_connect(self) -> None:
        config = self._auth.state.connection.config
        screen = ConnectScreen(config.url if config else "", config.anon_key if config else "")
        self.push_screen(screen, self._handle_connect)

    def open_sign_in(self) -> None:
        self.push_screen(CredentialsScreen(), self._handle_sign_in)

    def open_sign_up(self) -> None:
        self.push_screen(CredentialsScreen(sign_up=True), self._handle_sign_up)

    def sign_out(self) -> None:
        self._run(self._auth.sign_out)

    def switch_to_default(self) -> None:
        self._run(self._auth.switch_to_default)

    def disconnect(self) -> None:
        self._run(self._auth.disconnect)

    def refresh_profile(self) -> None:
        self._run(self._auth.refresh_profile)

    def list_posts(self) -> None:
        async def _list() -> None:
            user = self._auth.state.user
            if user is None:
                return
            result = await self._auth.posts().list_mine(user.id)
            if not isinstance(result, Ok):
                self.notify(f"Could not load posts: {result.error.message}", severity="error")
                return
            posts = posts_from(result)
            if not posts:
                self.notify("No posts yet.")
                return
            lines = [f"{post.title} ({'public' if post.is_public else 'draft'})" for post in posts[:10]]
            self.notify("\n".join(lines), title=f"My posts ({len(posts)})")

        self._run(_list)

    async def _shutdown(self) -> None:
        self._watcher.stop()
        if self._storage_unsubscribe:
            self._storage_unsubscribe()
            self._storage_unsubscribe = None
        if self._auth_unsubscribe:
            self._auth_unsubscribe()
            self._auth_unsubscribe = None
        self._auth.close()
        await super()._shutdown()

    def _handle_connect(self, result: Credentials | None) -> None:
        if result is None:
            return
        url, anon_key = result

        async def _connect() -> None:
            outcome = await self._auth.connect(url, anon_key, verify_schema=True)
            schema = outcome.schema
            if schema is None or schema.status is SchemaStatus.READY:
                self.notify("Backend connected.", severity="information")
            elif schema.status is SchemaStatus.MISSING:
                self.notify(f"{schema.message} Run the setup SQL first.", severity="warning")
            else:
                self.notify(schema.message, severity="error")

        self._run(_connect)

    def _handle_sign_in(self, result: Credentials | None) -> None:
        if result is not None:
            email, password = result
            self._run(lambda: self._auth.sign_in(email, password))

    def _handle_sign_up(self, result: Credentials | None) -> None:
        if result is not None:
            email, password = result
            self._run(lambda: self._auth.sign_up(email, password))

    def _run(self, operation: Callable[[], Awaitable[object]]) -> None:
        async def _guarded() -> None:
            try:
                await operation()
            except LedgerError as exc:
                LOG.info("Operation rejected: %s", exc)
                self.notify(str(exc), severity="error")

        self.run_worker(_guarded(), exclusive=True, group="auth")

    def _handle_auth_state(self, state: AuthState) -> None:
        if state.last_error and state.last_error != self._last_error and self.is_running:
            self.notify(state.last_error, severity="error")
        self._last_error = state.last_error


def main() -> None:
    """Invoke the Textual application."""

    config = _load_app_config()
    configure_logging(config.log_level, config.storage_path().parent / "ledger.log")
    LedgerApp(config).run()


if __name__ == "__main__":
    main()
