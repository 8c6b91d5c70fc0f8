"""Test helper functions."""

from shroud.auth.middleware import VIEWER_ID_HEADER, VIEWER_ROLE_HEADER


def viewer_headers(user_id: int, admin: bool = False) -> dict[str, str]:
    """Headers the gateway forwards for an authenticated viewer."""
    headers = {VIEWER_ID_HEADER: str(user_id)}
    if admin:
        headers[VIEWER_ROLE_HEADER] = "admin"
    return headers


def admin_headers(user_id: int = 1) -> dict[str, str]:
    return viewer_headers(user_id, admin=True)
