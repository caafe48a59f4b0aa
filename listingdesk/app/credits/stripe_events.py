"""Stripe webhook verification, checkout helpers, and event translation."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe

from .catalog import CheckoutItem
from .exceptions import ConfigurationError, WebhookVerificationError
from .models import BillingEvent, BillingEventKind, CheckoutMode, PlanStatus

logger = logging.getLogger(__name__)

STRIPE_EVENT_KINDS: Dict[str, BillingEventKind] = {
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAID,
    "customer.subscription.created": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
}

STRIPE_STATUSES: Dict[str, PlanStatus] = {
    "active": PlanStatus.ACTIVE,
    "trialing": PlanStatus.ACTIVE,
    "past_due": PlanStatus.PAST_DUE,
    "unpaid": PlanStatus.PAST_DUE,
    "incomplete": PlanStatus.PAST_DUE,
    "canceled": PlanStatus.CANCELED,
    "incomplete_expired": PlanStatus.CANCELED,
    "paused": PlanStatus.CANCELED,
}


def map_subscription_status(raw: Optional[str]) -> PlanStatus:
    try:
        return STRIPE_STATUSES[(raw or "").strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown Stripe subscription status {raw!r}") from exc


def _get(source: Any, *path: str) -> Any:
    current = source
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _first_line_item(container: Any) -> Mapping[str, Any]:
    items = _get(container, "data")
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return {}


def _as_ref(value: Any) -> Optional[str]:
    # Expanded objects arrive as mappings; references as plain ids.
    if isinstance(value, Mapping):
        value = value.get("id")
    if value in (None, ""):
        return None
    return str(value)


def _line_price(line: Mapping[str, Any]) -> Optional[str]:
    return (
        _as_ref(_get(line, "price"))
        or _as_ref(_get(line, "pricing", "price_details", "price"))
        or _as_ref(_get(line, "plan"))
    )


def _checkout_payload(obj: Mapping[str, Any]) -> Dict[str, Any]:
    metadata = _get(obj, "metadata") or {}
    return {
        "kind": BillingEventKind.CHECKOUT_COMPLETED.value,
        "mode": _get(obj, "mode"),
        "price_id": metadata.get("price_id"),
        "user_id": metadata.get("user_id") or _get(obj, "client_reference_id"),
        "customer_ref": _as_ref(_get(obj, "customer")),
        "subscription_ref": _as_ref(_get(obj, "subscription")),
        "session_ref": _get(obj, "id"),
    }


def _invoice_payload(obj: Mapping[str, Any]) -> Dict[str, Any]:
    line = _first_line_item(_get(obj, "lines"))
    subscription_details = _get(obj, "subscription_details") or _get(
        obj, "parent", "subscription_details"
    ) or {}
    user_id = _get(subscription_details, "metadata", "user_id") or _get(obj, "metadata", "user_id")
    subscription_ref = _as_ref(_get(obj, "subscription")) or _as_ref(
        _get(subscription_details, "subscription")
    )
    return {
        "kind": BillingEventKind.INVOICE_PAID.value,
        "price_id": _line_price(line),
        "user_id": user_id,
        "customer_ref": _as_ref(_get(obj, "customer")),
        "subscription_ref": subscription_ref,
        "invoice_ref": _get(obj, "id"),
        "billing_reason": _get(obj, "billing_reason"),
    }


def _subscription_payload(obj: Mapping[str, Any]) -> Dict[str, Any]:
    item = _first_line_item(_get(obj, "items"))
    return {
        "kind": BillingEventKind.SUBSCRIPTION_UPDATED.value,
        "price_id": _line_price(item),
        "status": map_subscription_status(_get(obj, "status")),
        "user_id": _get(obj, "metadata", "user_id"),
        "customer_ref": _as_ref(_get(obj, "customer")),
        "subscription_ref": _get(obj, "id"),
    }


def _subscription_deleted_payload(obj: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "kind": BillingEventKind.SUBSCRIPTION_DELETED.value,
        "user_id": _get(obj, "metadata", "user_id"),
        "customer_ref": _as_ref(_get(obj, "customer")),
        "subscription_ref": _get(obj, "id"),
    }


_PAYLOAD_BUILDERS = {
    BillingEventKind.CHECKOUT_COMPLETED: _checkout_payload,
    BillingEventKind.INVOICE_PAID: _invoice_payload,
    BillingEventKind.SUBSCRIPTION_UPDATED: _subscription_payload,
    BillingEventKind.SUBSCRIPTION_DELETED: _subscription_deleted_payload,
}


def translate_stripe_event(event: Mapping[str, Any]) -> Optional[BillingEvent]:
    """Translate a verified Stripe event into a :class:`BillingEvent`.

    Returns ``None`` for event types that carry no billing effect. Raises
    ``ValueError`` (including pydantic's ``ValidationError``) when a
    recognized event is missing the fields reconciliation needs.
    """

    event_type = str(event.get("type") or "")
    kind = STRIPE_EVENT_KINDS.get(event_type)
    if kind is None:
        return None

    obj = _get(event, "data", "object")
    if not isinstance(obj, Mapping):
        raise ValueError(f"Stripe event {event.get('id')!r} has no data object")

    created = event.get("created")
    occurred_at = (
        datetime.fromtimestamp(int(created), tz=timezone.utc)
        if created is not None
        else datetime.now(timezone.utc)
    )

    return BillingEvent.model_validate(
        {
            "event_id": event.get("id"),
            "kind": kind,
            "payload": _PAYLOAD_BUILDERS[kind](obj),
            "occurred_at": occurred_at,
        }
    )


class StripeGateway:
    """Thin wrapper over the Stripe SDK calls the billing routes need."""

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        client: Any = stripe,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._stripe = client

    def _client(self) -> Any:
        if not self._secret_key:
            raise ConfigurationError("Stripe secret key is not configured")
        self._stripe.api_key = self._secret_key
        return self._stripe

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify ``payload`` against its signature and return the decoded event."""

        if not self._webhook_secret:
            raise ConfigurationError("Stripe webhook secret is not configured")
        try:
            self._stripe.Webhook.construct_event(payload, signature or "", self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature rejected: %s", exc)
            raise WebhookVerificationError() from exc
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc

        try:
            decoded = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Malformed webhook payload") from exc
        if not isinstance(decoded, dict):
            raise WebhookVerificationError("Malformed webhook payload")
        return decoded

    def find_or_create_customer(self, *, email: str, user_id: str) -> str:
        client = self._client()
        existing = client.Customer.list(email=email, limit=1)
        data = list(getattr(existing, "data", None) or [])
        if data:
            return data[0].id
        customer = client.Customer.create(email=email, metadata={"user_id": user_id})
        logger.info("Created Stripe customer %s for user=%s", customer.id, user_id)
        return customer.id

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: Optional[str],
        item: CheckoutItem,
        success_url: str,
        cancel_url: str,
        customer_ref: Optional[str] = None,
    ) -> str:
        client = self._client()
        if customer_ref is None and email:
            customer_ref = self.find_or_create_customer(email=email, user_id=user_id)

        metadata = {"user_id": user_id, "sku": item.sku, "price_id": item.price_id}
        params: Dict[str, Any] = {
            "mode": item.mode.value,
            "line_items": [{"price": item.price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": metadata,
            "allow_promotion_codes": True,
        }
        if customer_ref:
            params["customer"] = customer_ref
        if item.mode == CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": dict(metadata)}

        session = client.checkout.Session.create(**params)
        logger.info(
            "Created Stripe checkout session %s for user=%s sku=%s",
            session.id,
            user_id,
            item.sku,
        )
        return session.url

    def create_portal_session(self, *, customer_ref: str, return_url: str) -> str:
        client = self._client()
        portal = client.billing_portal.Session.create(customer=customer_ref, return_url=return_url)
        return portal.url


__all__ = [
    "STRIPE_EVENT_KINDS",
    "STRIPE_STATUSES",
    "StripeGateway",
    "map_subscription_status",
    "translate_stripe_event",
]
