"""Exceptions raised by the credits and reconciliation layer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class CreditsError(Exception):
    """Base error carrying a stable code and an HTTP mapping."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ConfigurationError(CreditsError):
    """A price or plan mapping is missing; retry once an operator fixes it."""

    def __init__(self, message: str, *, price_id: Optional[str] = None) -> None:
        detail = {"price_id": price_id} if price_id else None
        super().__init__(
            code="configuration_error",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
        )
        self.price_id = price_id


class TransientError(CreditsError):
    """The backing store could not be reached; safe to retry."""

    def __init__(self, message: str = "Credits store unavailable") -> None:
        super().__init__(
            code="transient_error",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class InsufficientCreditsError(CreditsError):
    """The user does not hold enough credits for the requested usage."""

    def __init__(self, *, balance: int, required: int) -> None:
        super().__init__(
            code="insufficient_credits",
            message="Not enough credits remaining",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class WebhookVerificationError(CreditsError):
    """An inbound provider notification failed signature verification."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(
            code="invalid_signature",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


__all__ = [
    "ConfigurationError",
    "CreditsError",
    "InsufficientCreditsError",
    "TransientError",
    "WebhookVerificationError",
]
