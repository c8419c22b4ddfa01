"""Modal dialogs for connecting a backend and signing in."""

from __future__ import annotations

from textual import on
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label

Credentials = tuple[str, str]

DIALOG_CSS = """
{name} {{
    align: center middle;
}}
#dialog {{
    width: 64;
    height: auto;
    border: solid $primary;
    padding: 1 2;
    background: $surface;
}}
#dialog Input {{
    margin-bottom: 1;
}}
#dialog-buttons {{
    height: auto;
    align-horizontal: right;
}}
"""


class _PairDialog(ModalScreen[Credentials | None]):
    """Two-field dialog dismissed with the entered pair or ``None``."""

    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    TITLE_TEXT = ""
    SUBMIT_LABEL = "OK"
    FIRST_PLACEHOLDER = ""
    SECOND_PLACEHOLDER = ""
    SECOND_PASSWORD = True

    def __init__(self, first: str = "", second: str = "") -> None:
        super().__init__()
        self._first = first
        self._second = second

    def compose(self) -> ComposeResult:
        yield Vertical(
            Label(f"[bold]{self.TITLE_TEXT}[/]"),
            Input(value=self._first, placeholder=self.FIRST_PLACEHOLDER, id="first"),
            Input(
                value=self._second,
                placeholder=self.SECOND_PLACEHOLDER,
                password=self.SECOND_PASSWORD,
                id="second",
            ),
            Horizontal(
                Button(self.SUBMIT_LABEL, variant="primary", id="submit"),
                Button("Cancel", id="cancel"),
                id="dialog-buttons",
            ),
            id="dialog",
        )

    def action_cancel(self) -> None:
        self.dismiss(None)

    @on(Button.Pressed, "#cancel")
    def _cancel_pressed(self) -> None:
        self.dismiss(None)

    @on(Button.Pressed, "#submit")
    @on(Input.Submitted)
    def _submit(self) -> None:
        first = self.query_one("#first", Input).value.strip()
        second = self.query_one("#second", Input).value.strip()
        if not first or not second:
            self.notify("Both fields are required.", severity="warning")
            return
        self.dismiss((first, second))


class ConnectScreen(_PairDialog):
    """Ask for a backend project URL and anon key."""

    CSS = DIALOG_CSS.format(name="ConnectScreen")
    TITLE_TEXT = "Connect your backend project"
    SUBMIT_LABEL = "Connect"
    FIRST_PLACEHOLDER = "https://xyz.supabase.co"
    SECOND_PLACEHOLDER = "anon public key"


class CredentialsScreen(_PairDialog):
    """Email + password prompt shared by sign-in and sign-up."""

    CSS = DIALOG_CSS.format(name="CredentialsScreen")
    FIRST_PLACEHOLDER = "you@example.com"
    SECOND_PLACEHOLDER = "password"

    def __init__(self, *, sign_up: bool = False) -> None:
        super().__init__()
        self.sign_up = sign_up
        self.TITLE_TEXT = "Create an account" if sign_up else "Sign in"
        self.SUBMIT_LABEL = "Sign up" if sign_up else "Sign in"


__all__ = ["ConnectScreen", "Credentials", "CredentialsScreen"]
