"""Request dependencies shared by the API routers."""
from __future__ import annotations

import os
from typing import Any, Optional

from fastapi import Cookie, Depends, Header, HTTPException, status

from ... import app_context

GENERIC_ERROR_MESSAGE = "Something went wrong, please try again."

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
) -> Any:
    return app_context.get_current_user(session_token=session_token, authorization=authorization)


def get_optional_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
) -> Optional[Any]:
    return app_context.get_optional_current_user(
        session_token=session_token, authorization=authorization
    )


def require_admin(current_user=Depends(get_current_user)) -> Any:
    if not getattr(current_user, "is_admin", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def generic_error(status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> HTTPException:
    return HTTPException(status_code=status_code, detail=GENERIC_ERROR_MESSAGE)


__all__ = [
    "GENERIC_ERROR_MESSAGE",
    "generic_error",
    "get_current_user",
    "get_optional_current_user",
    "require_admin",
]
