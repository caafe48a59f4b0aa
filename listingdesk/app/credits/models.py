"""Domain models for the credits ledger and billing reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Subscription levels governing usage allowances."""

    FREE = "free"
    STARTER = "starter"
    PREMIUM = "premium"


class PlanStatus(str, Enum):
    """Mirror of the payment provider's subscription status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class CheckoutMode(str, Enum):
    """Checkout flavours offered by the payment provider."""

    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


class BillingEventKind(str, Enum):
    """Payment provider events the reconciliation engine reacts to."""

    CHECKOUT_COMPLETED = "checkout-completed"
    INVOICE_PAID = "invoice-paid"
    SUBSCRIPTION_UPDATED = "subscription-updated"
    SUBSCRIPTION_DELETED = "subscription-deleted"


class LedgerReason(str, Enum):
    """Reason codes attached to every ledger row."""

    PURCHASE = "purchase"
    SUBSCRIPTION_GRANT = "subscription-grant"
    SUBSCRIPTION_RENEWAL = "subscription-renewal"
    ADMIN_ADJUSTMENT = "admin-adjustment"
    CORRECTION = "correction"
    SIGNUP_GRANT = "signup-grant"
    USAGE = "usage"


class _PayloadBase(BaseModel):
    user_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("user_id", "customer_ref", "subscription_ref", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class CheckoutCompletedPayload(_PayloadBase):
    """A checkout session that finished successfully."""

    kind: Literal["checkout-completed"] = "checkout-completed"
    mode: CheckoutMode
    price_id: str = Field(min_length=1)
    session_ref: Optional[str] = None


class InvoicePaidPayload(_PayloadBase):
    """A subscription invoice that was paid (initial or renewal)."""

    kind: Literal["invoice-paid"] = "invoice-paid"
    price_id: str = Field(min_length=1)
    invoice_ref: Optional[str] = None
    billing_reason: Optional[str] = None

    @property
    def is_subscription_create(self) -> bool:
        return self.billing_reason == "subscription_create"


class SubscriptionUpdatedPayload(_PayloadBase):
    """Current state of a subscription as reported by the provider."""

    kind: Literal["subscription-updated"] = "subscription-updated"
    price_id: str = Field(min_length=1)
    status: PlanStatus


class SubscriptionDeletedPayload(_PayloadBase):
    """A subscription that has ended."""

    kind: Literal["subscription-deleted"] = "subscription-deleted"


BillingEventPayload = Annotated[
    Union[
        CheckoutCompletedPayload,
        InvoicePaidPayload,
        SubscriptionUpdatedPayload,
        SubscriptionDeletedPayload,
    ],
    Field(discriminator="kind"),
]


class BillingEvent(BaseModel):
    """Verified payment provider notification, immutable once received."""

    event_id: str = Field(min_length=1)
    kind: BillingEventKind
    payload: BillingEventPayload
    occurred_at: datetime = Field(default_factory=_utcnow)
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _payload_matches_kind(self) -> "BillingEvent":
        if self.payload.kind != self.kind.value:
            raise ValueError(
                f"payload kind {self.payload.kind!r} does not match event kind {self.kind.value!r}"
            )
        return self


class LedgerEntry(BaseModel):
    """Signed credit delta attributed to a user."""

    entry_id: Optional[int] = None
    user_id: str = Field(min_length=1)
    delta: int
    reason: LedgerReason
    external_ref: Optional[str] = None
    actor_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("ledger entries must carry a non-zero delta")
        return value


class LedgerHistoryItem(BaseModel):
    """Ledger row paired with the balance right after it was applied."""

    entry: LedgerEntry
    running_balance: int

    model_config = ConfigDict(frozen=True)


class Profile(BaseModel):
    """Per-user plan state, mutated only by reconciliation or admin action."""

    user_id: str
    plan_tier: PlanTier = PlanTier.FREE
    plan_status: Optional[PlanStatus] = None
    customer_ref: Optional[str] = None
    plan_event_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SavedListing(BaseModel):
    """Generated listing copy kept for its owner."""

    listing_id: Optional[int] = None
    user_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: str
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class PlanChange(BaseModel):
    """Requested plan mutation carrying the provider time it reflects."""

    user_id: str
    plan_tier: PlanTier
    plan_status: PlanStatus
    occurred_at: datetime
    customer_ref: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ProcessingOutcome(str, Enum):
    """Result categories reported back to the webhook boundary."""

    APPLIED = "applied"
    DUPLICATE_SKIPPED = "duplicate_skipped"
    UNRECOGNIZED_EVENT_KIND = "unrecognized_event_kind"
    UNRESOLVED_USER = "unresolved_user"
    CONFIGURATION_ERROR = "configuration_error"
    TRANSIENT_ERROR = "transient_error"


_ACKNOWLEDGED_OUTCOMES = frozenset(
    {
        ProcessingOutcome.APPLIED,
        ProcessingOutcome.DUPLICATE_SKIPPED,
        ProcessingOutcome.UNRECOGNIZED_EVENT_KIND,
        ProcessingOutcome.UNRESOLVED_USER,
    }
)


class ProcessingResult(BaseModel):
    """What happened to a single billing event."""

    event_id: str
    outcome: ProcessingOutcome
    user_id: Optional[str] = None
    ledger_entries: tuple[LedgerEntry, ...] = ()
    profile: Optional[Profile] = None
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def acknowledged(self) -> bool:
        """``True`` when the provider should not redeliver the event."""
        return self.outcome in _ACKNOWLEDGED_OUTCOMES


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted while reconciling."""

    CREDITS_PURCHASED = "credits_purchased"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    ALLOTMENT_GRANTED = "allotment_granted"
    UNEXPECTED_TRANSITION = "unexpected_transition"
    STALE_PLAN_EVENT = "stale_plan_event"
    UNRESOLVED_USER = "unresolved_user"
    UNRECOGNIZED_EVENT = "unrecognized_event"


class BillingAuditEvent(BaseModel):
    """Structured audit record for analytics and operator follow-up."""

    event_type: BillingAuditEventType
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)
