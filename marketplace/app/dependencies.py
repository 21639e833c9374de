"""FastAPI dependencies resolving the session user from the application context."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import Cookie

from .. import app_context

SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def get_session_user(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def get_session_admin(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    return app_context.get_current_admin(session_token=session_token)


__all__ = ["SESSION_COOKIE_NAME", "get_session_admin", "get_session_user"]
