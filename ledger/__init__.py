"""Bring-your-own-backend blogging client: connection and auth core."""

from __future__ import annotations

from .auth import AuthFacade, AuthState
from .clients import ClientRegistry
from .connections import ConnectionStore
from .models import ConnectionConfig, ConnectionSource, Profile, ResolvedConnection
from .posts import Post, PostStore, Visibility
from .profiles import ProfileReconciler, ensure_profile
from .session import SessionTracker, TrackerStatus

__all__ = [
    "AuthFacade",
    "AuthState",
    "ClientRegistry",
    "ConnectionConfig",
    "ConnectionSource",
    "ConnectionStore",
    "Post",
    "PostStore",
    "Profile",
    "ProfileReconciler",
    "ResolvedConnection",
    "SessionTracker",
    "TrackerStatus",
    "Visibility",
    "ensure_profile",
]
