"""Widget library for the Textual UI."""

from __future__ import annotations

from .status_bar import StatusBar

__all__ = ["StatusBar"]
