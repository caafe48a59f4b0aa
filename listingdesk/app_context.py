"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .app.services.credits import CreditsServices

_get_current_user: Optional[Callable[..., Any]] = None
_get_optional_current_user: Optional[Callable[..., Optional[Any]]] = None
_credits_services: Optional["CreditsServices"] = None


def configure(
    *,
    get_current_user: Callable[..., Any],
    get_optional_current_user: Callable[..., Optional[Any]],
    credits_services: "CreditsServices",
) -> None:
    """Register application-wide dependencies required by modular routers."""

    global _get_current_user
    global _get_optional_current_user
    global _credits_services

    _get_current_user = get_current_user
    _get_optional_current_user = get_optional_current_user
    _credits_services = credits_services


def reset() -> None:
    global _get_current_user
    global _get_optional_current_user
    global _credits_services

    _get_current_user = None
    _get_optional_current_user = None
    _credits_services = None


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    dependency = _require(_get_current_user, "get_current_user")
    return dependency(*args, **kwargs)


def get_optional_current_user(*args: Any, **kwargs: Any) -> Optional[Any]:
    dependency = _require(_get_optional_current_user, "get_optional_current_user")
    return dependency(*args, **kwargs)


def get_credits_services() -> "CreditsServices":
    return _require(_credits_services, "credits_services")
