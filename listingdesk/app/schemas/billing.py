"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..credits import PlanStatus, PlanTier, ProcessingOutcome


class BillingStatusResponse(BaseModel):
    plan: PlanTier
    status: Optional[PlanStatus] = None
    balance: int
    unlimited: bool = False

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSessionRequest(BaseModel):
    sku: str = Field(min_length=1, max_length=40)
    success_url: Optional[str] = Field(alias="successUrl", default=None)
    cancel_url: Optional[str] = Field(alias="cancelUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionRequest(BaseModel):
    return_url: Optional[str] = Field(alias="returnUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SessionUrlResponse(BaseModel):
    url: str


class WebhookAckResponse(BaseModel):
    received: bool = True
    outcome: ProcessingOutcome


__all__ = [
    "BillingStatusResponse",
    "CheckoutSessionRequest",
    "PortalSessionRequest",
    "SessionUrlResponse",
    "WebhookAckResponse",
]
