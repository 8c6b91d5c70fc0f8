"""Viewer identity and authorization helpers."""

from shroud.auth.middleware import Viewer, ViewerMiddleware, get_viewer, require_admin

__all__ = ["Viewer", "ViewerMiddleware", "get_viewer", "require_admin"]
