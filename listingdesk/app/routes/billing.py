"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ... import app_context
from ..credits import (
    ConfigurationError,
    CreditsError,
    ProcessingOutcome,
    TransientError,
    WebhookVerificationError,
)
from ..credits.stripe_events import translate_stripe_event
from ..schemas.billing import (
    BillingStatusResponse,
    CheckoutSessionRequest,
    PortalSessionRequest,
    SessionUrlResponse,
    WebhookAckResponse,
)
from .dependencies import generic_error, get_current_user

logger = logging.getLogger(__name__)

_UNACKNOWLEDGED_STATUS = {
    ProcessingOutcome.CONFIGURATION_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ProcessingOutcome.TRANSIENT_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _same_site_url(candidate: Optional[str], site_url: str, default: str) -> str:
    if candidate and candidate.startswith(site_url + "/"):
        return candidate
    return default


@router.get("/status", response_model=BillingStatusResponse)
def read_billing_status(*, current_user=Depends(get_current_user)) -> BillingStatusResponse:
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    try:
        profile = services.engine.profile_for(user_id)
        balance = services.projector.balance_of(user_id)
    except TransientError:
        logger.exception("Billing status lookup failed for user=%s", user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return BillingStatusResponse(
        plan=profile.plan_tier,
        status=profile.plan_status,
        balance=balance,
        unlimited=services.config.catalog.is_unlimited(profile.plan_tier),
    )


@router.post("/checkout-session", response_model=SessionUrlResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_user=Depends(get_current_user),
) -> SessionUrlResponse:
    services = app_context.get_credits_services()
    item = services.config.catalog.checkout_item(payload.sku)
    if item is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown sku {payload.sku!r}")

    site_url = services.config.site_url
    user_id = str(current_user.id)
    try:
        profile = services.engine.profile_for(user_id)
        url = services.gateway.create_checkout_session(
            user_id=user_id,
            email=getattr(current_user, "email", None),
            item=item,
            success_url=_same_site_url(
                payload.success_url,
                site_url,
                f"{site_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            ),
            cancel_url=_same_site_url(payload.cancel_url, site_url, f"{site_url}/billing/cancel"),
            customer_ref=profile.customer_ref,
        )
    except TransientError:
        logger.exception("Checkout session unavailable for user=%s sku=%s", user_id, item.sku)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    except (CreditsError, stripe.StripeError):
        logger.exception("Checkout session failed for user=%s sku=%s", user_id, item.sku)
        raise generic_error()
    return SessionUrlResponse(url=url)


@router.post("/portal-session", response_model=SessionUrlResponse)
def create_portal_session(
    payload: Optional[PortalSessionRequest] = None,
    *,
    current_user=Depends(get_current_user),
) -> SessionUrlResponse:
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    site_url = services.config.site_url
    try:
        profile = services.engine.profile_for(user_id)
    except TransientError:
        logger.exception("Portal profile lookup failed for user=%s", user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    if not profile.customer_ref:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No billing account found")

    return_url = _same_site_url(payload.return_url if payload else None, site_url, f"{site_url}/billing")
    try:
        url = services.gateway.create_portal_session(customer_ref=profile.customer_ref, return_url=return_url)
    except (CreditsError, stripe.StripeError):
        logger.exception("Portal session failed for user=%s", user_id)
        raise generic_error()
    return SessionUrlResponse(url=url)


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(request: Request):
    services = app_context.get_credits_services()
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        raw_event = services.gateway.construct_event(body, signature)
    except WebhookVerificationError as exc:
        raise exc.to_http_exception() from exc
    except ConfigurationError as exc:
        logger.error("Stripe webhook received but not configured: %s", exc.message)
        raise exc.to_http_exception() from exc

    try:
        event = translate_stripe_event(raw_event)
    except ValueError as exc:
        logger.warning("Malformed Stripe event %s: %s", raw_event.get("id"), exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed event payload") from exc

    if event is None:
        result = services.engine.skip_unrecognized(
            str(raw_event.get("id") or ""), str(raw_event.get("type") or "")
        )
    else:
        result = await run_in_threadpool(services.engine.process, event)

    if not result.acknowledged:
        return JSONResponse(
            status_code=_UNACKNOWLEDGED_STATUS[result.outcome],
            content={"received": False, "outcome": result.outcome.value},
        )
    return WebhookAckResponse(outcome=result.outcome)
