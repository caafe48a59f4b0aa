"""Reconciliation of payment provider events into ledger and profile state."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Protocol, Tuple

from .catalog import PriceCatalog
from .exceptions import ConfigurationError, TransientError
from .ledger import BalanceProjector
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    CheckoutCompletedPayload,
    CheckoutMode,
    InvoicePaidPayload,
    LedgerEntry,
    LedgerReason,
    PlanChange,
    PlanStatus,
    PlanTier,
    ProcessingOutcome,
    ProcessingResult,
    Profile,
    SubscriptionDeletedPayload,
    SubscriptionUpdatedPayload,
)
from .store import CreditsRepository, CreditsStore

logger = logging.getLogger(__name__)


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


_StatusTransition = Tuple[Optional[PlanStatus], PlanStatus]

ALLOWED_STATUS_TRANSITIONS: FrozenSet[_StatusTransition] = frozenset(
    {
        (None, PlanStatus.ACTIVE),
        (PlanStatus.ACTIVE, PlanStatus.PAST_DUE),
        (PlanStatus.PAST_DUE, PlanStatus.ACTIVE),
        (PlanStatus.ACTIVE, PlanStatus.CANCELED),
        (PlanStatus.PAST_DUE, PlanStatus.CANCELED),
        (PlanStatus.CANCELED, PlanStatus.ACTIVE),
    }
)


def is_expected_transition(previous: Optional[PlanStatus], new: PlanStatus) -> bool:
    return previous == new or (previous, new) in ALLOWED_STATUS_TRANSITIONS


def _activation_ref(subscription_ref: str) -> str:
    return f"subscription:{subscription_ref}"


def _invoice_ref(invoice_ref: str) -> str:
    return f"invoice:{invoice_ref}"


@dataclass
class _Reconciliation:
    event: BillingEvent
    repository: CreditsRepository
    audits: List[BillingAuditEvent] = field(default_factory=list)
    entries: List[LedgerEntry] = field(default_factory=list)
    profile: Optional[Profile] = None
    previous_status: Optional[PlanStatus] = None

    def audit(
        self,
        event_type: BillingAuditEventType,
        *,
        user_id: Optional[str] = None,
        **metadata: Optional[str],
    ) -> None:
        self.audits.append(
            BillingAuditEvent(
                event_type=event_type,
                event_id=self.event.event_id,
                user_id=user_id,
                metadata={key: str(value) for key, value in metadata.items() if value is not None},
            )
        )

    def result(
        self,
        outcome: ProcessingOutcome,
        *,
        user_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ProcessingResult:
        return ProcessingResult(
            event_id=self.event.event_id,
            outcome=outcome,
            user_id=user_id,
            ledger_entries=tuple(self.entries),
            profile=self.profile,
            message=message,
        )


@dataclass
class ReconciliationEngine:
    """Applies each billing event's ledger and profile effects exactly once.

    The event id is claimed inside the same store transaction as the
    mutations it implies. Configuration and store failures roll the claim
    back so the provider's redelivery can retry the event; every other
    outcome commits the claim.
    """

    store: CreditsStore
    catalog: PriceCatalog
    projector: BalanceProjector
    event_logger: BillingEventLogger

    def process(self, event: BillingEvent) -> ProcessingResult:
        ctx: Optional[_Reconciliation] = None
        try:
            with self.store.transaction() as repository:
                ctx = _Reconciliation(event=event, repository=repository)
                if not repository.claim_event(event):
                    logger.info(
                        "Skipping duplicate billing event %s kind=%s",
                        event.event_id,
                        event.kind.value,
                    )
                    return ctx.result(ProcessingOutcome.DUPLICATE_SKIPPED)
                result = self._dispatch(ctx)
        except ConfigurationError as exc:
            logger.error(
                "Billing event %s kind=%s left unhandled: %s",
                event.event_id,
                event.kind.value,
                exc.message,
            )
            return ProcessingResult(
                event_id=event.event_id,
                outcome=ProcessingOutcome.CONFIGURATION_ERROR,
                message=exc.message,
            )
        except TransientError as exc:
            logger.warning(
                "Billing event %s kind=%s deferred: %s",
                event.event_id,
                event.kind.value,
                exc.message,
            )
            return ProcessingResult(
                event_id=event.event_id,
                outcome=ProcessingOutcome.TRANSIENT_ERROR,
                message=exc.message,
            )

        for audit_event in ctx.audits:
            self.event_logger.log(audit_event)
        logger.info(
            "Billing event %s kind=%s outcome=%s user=%s ledger_rows=%s",
            event.event_id,
            event.kind.value,
            result.outcome.value,
            result.user_id,
            len(result.ledger_entries),
        )
        return result

    def skip_unrecognized(self, event_id: str, event_type: str) -> ProcessingResult:
        """Acknowledge a provider event type that carries no billing effect."""

        logger.info("Ignoring unrecognized billing event %s type=%s", event_id, event_type)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.UNRECOGNIZED_EVENT,
                event_id=event_id,
                metadata={"provider_type": event_type},
            )
        )
        return ProcessingResult(
            event_id=event_id,
            outcome=ProcessingOutcome.UNRECOGNIZED_EVENT_KIND,
            message=f"Unrecognized event type {event_type!r}",
        )

    def profile_for(self, user_id: str) -> Profile:
        """Return the user's profile, or the implicit free profile."""

        with self.store.transaction() as repository:
            profile = repository.get_profile(user_id)
        return profile or Profile(user_id=user_id)

    def override_plan(
        self,
        user_id: str,
        *,
        tier: PlanTier,
        status: Optional[PlanStatus],
        actor_id: Optional[str] = None,
    ) -> Profile:
        """Administrative plan change outside the provider's lifecycle."""

        with self.store.transaction() as repository:
            profile = repository.override_plan(user_id, tier=tier, status=status)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_UPDATED,
                user_id=user_id,
                metadata={
                    "tier": tier.value,
                    "status": status.value if status else "none",
                    "actor_id": actor_id or "",
                    "source": "admin",
                },
            )
        )
        return profile

    def _dispatch(self, ctx: _Reconciliation) -> ProcessingResult:
        payload = ctx.event.payload
        if isinstance(payload, CheckoutCompletedPayload):
            if payload.mode == CheckoutMode.PAYMENT:
                return self._handle_credit_purchase(ctx, payload)
            tier = self.catalog.tier_for_price(payload.price_id)
            return self._handle_subscription_state(ctx, payload, tier, PlanStatus.ACTIVE)
        if isinstance(payload, SubscriptionUpdatedPayload):
            tier = self.catalog.tier_for_price(payload.price_id)
            return self._handle_subscription_state(ctx, payload, tier, payload.status)
        if isinstance(payload, InvoicePaidPayload):
            return self._handle_invoice_paid(ctx, payload)
        return self._handle_subscription_deleted(ctx, payload)

    def _handle_credit_purchase(
        self,
        ctx: _Reconciliation,
        payload: CheckoutCompletedPayload,
    ) -> ProcessingResult:
        credits = self.catalog.credits_for_price(payload.price_id)
        user_id = self._resolve_user(ctx, payload)
        if user_id is None:
            return self._unresolved(ctx, payload)

        entry = self.projector.grant(
            user_id,
            credits,
            reason=LedgerReason.PURCHASE,
            external_ref=ctx.event.event_id,
            note=f"price {payload.price_id}",
            repository=ctx.repository,
        )
        ctx.entries.append(entry)
        if payload.customer_ref:
            ctx.profile = ctx.repository.link_customer(user_id, payload.customer_ref)
        ctx.audit(
            BillingAuditEventType.CREDITS_PURCHASED,
            user_id=user_id,
            credits=str(credits),
            price_id=payload.price_id,
            session_ref=payload.session_ref,
        )
        return ctx.result(ProcessingOutcome.APPLIED, user_id=user_id)

    def _handle_subscription_state(
        self,
        ctx: _Reconciliation,
        payload: CheckoutCompletedPayload | SubscriptionUpdatedPayload,
        tier: PlanTier,
        status: PlanStatus,
    ) -> ProcessingResult:
        user_id = self._resolve_user(ctx, payload)
        if user_id is None:
            return self._unresolved(ctx, payload)

        if status == PlanStatus.CANCELED:
            tier = PlanTier.FREE

        profile = self._apply_plan(ctx, user_id, tier, status, payload.customer_ref)
        if profile is None:
            return ctx.result(
                ProcessingOutcome.APPLIED,
                user_id=user_id,
                message="Stale plan event ignored",
            )

        if status == PlanStatus.ACTIVE and self._is_first_activation(ctx, user_id, payload.subscription_ref):
            self._grant_activation(ctx, user_id, tier, payload.subscription_ref)
        return ctx.result(ProcessingOutcome.APPLIED, user_id=user_id)

    def _is_first_activation(
        self,
        ctx: _Reconciliation,
        user_id: str,
        subscription_ref: Optional[str],
    ) -> bool:
        if subscription_ref:
            ctx.repository.lock_user(user_id)
            return not ctx.repository.has_ledger_ref(user_id, _activation_ref(subscription_ref))
        return ctx.previous_status in (None, PlanStatus.CANCELED)

    def _grant_activation(
        self,
        ctx: _Reconciliation,
        user_id: str,
        tier: PlanTier,
        subscription_ref: Optional[str],
    ) -> None:
        allotment = self.catalog.monthly_allotment(tier)
        if allotment <= 0:
            return
        entry = self.projector.grant(
            user_id,
            allotment,
            reason=LedgerReason.SUBSCRIPTION_GRANT,
            external_ref=_activation_ref(subscription_ref) if subscription_ref else ctx.event.event_id,
            note=f"{tier.value} activation",
            repository=ctx.repository,
        )
        ctx.entries.append(entry)
        ctx.audit(
            BillingAuditEventType.ALLOTMENT_GRANTED,
            user_id=user_id,
            tier=tier.value,
            credits=str(allotment),
            reason=LedgerReason.SUBSCRIPTION_GRANT.value,
            subscription_ref=subscription_ref,
        )

    def _handle_invoice_paid(
        self,
        ctx: _Reconciliation,
        payload: InvoicePaidPayload,
    ) -> ProcessingResult:
        tier = self.catalog.tier_for_price(payload.price_id)
        user_id = self._resolve_user(ctx, payload)
        if user_id is None:
            return self._unresolved(ctx, payload)

        if payload.is_subscription_create:
            # The first invoice and the activation share one grant per subscription.
            if payload.subscription_ref and self._is_first_activation(ctx, user_id, payload.subscription_ref):
                self._grant_activation(ctx, user_id, tier, payload.subscription_ref)
            return ctx.result(ProcessingOutcome.APPLIED, user_id=user_id)

        allotment = self.catalog.monthly_allotment(tier)
        if allotment <= 0:
            return ctx.result(ProcessingOutcome.APPLIED, user_id=user_id)

        external_ref = ctx.event.event_id
        if payload.invoice_ref:
            external_ref = _invoice_ref(payload.invoice_ref)
            ctx.repository.lock_user(user_id)
            if ctx.repository.has_ledger_ref(user_id, external_ref):
                logger.info(
                    "Invoice %s already credited for user=%s; event %s adds nothing",
                    payload.invoice_ref,
                    user_id,
                    ctx.event.event_id,
                )
                return ctx.result(
                    ProcessingOutcome.APPLIED,
                    user_id=user_id,
                    message="Invoice already credited",
                )

        entry = self.projector.grant(
            user_id,
            allotment,
            reason=LedgerReason.SUBSCRIPTION_RENEWAL,
            external_ref=external_ref,
            note=f"{tier.value} renewal invoice {payload.invoice_ref or ''}".strip(),
            repository=ctx.repository,
        )
        ctx.entries.append(entry)
        ctx.audit(
            BillingAuditEventType.ALLOTMENT_GRANTED,
            user_id=user_id,
            tier=tier.value,
            credits=str(allotment),
            reason=LedgerReason.SUBSCRIPTION_RENEWAL.value,
            invoice_ref=payload.invoice_ref,
        )
        return ctx.result(ProcessingOutcome.APPLIED, user_id=user_id)

    def _handle_subscription_deleted(
        self,
        ctx: _Reconciliation,
        payload: SubscriptionDeletedPayload,
    ) -> ProcessingResult:
        user_id = self._resolve_user(ctx, payload)
        if user_id is None:
            return self._unresolved(ctx, payload)

        profile = self._apply_plan(
            ctx, user_id, PlanTier.FREE, PlanStatus.CANCELED, payload.customer_ref
        )
        message = None if profile is not None else "Stale plan event ignored"
        return ctx.result(ProcessingOutcome.APPLIED, user_id=user_id, message=message)

    def _apply_plan(
        self,
        ctx: _Reconciliation,
        user_id: str,
        tier: PlanTier,
        status: PlanStatus,
        customer_ref: Optional[str],
    ) -> Optional[Profile]:
        repository = ctx.repository
        current = repository.get_profile(user_id, for_update=True)
        previous_status = current.plan_status if current else None
        ctx.previous_status = previous_status

        updated = repository.apply_plan_change(
            PlanChange(
                user_id=user_id,
                plan_tier=tier,
                plan_status=status,
                occurred_at=ctx.event.occurred_at,
                customer_ref=customer_ref,
            )
        )
        if updated is None:
            logger.info(
                "Stale plan event %s for user=%s ignored (occurred_at=%s, applied_at=%s)",
                ctx.event.event_id,
                user_id,
                ctx.event.occurred_at.isoformat(),
                current.plan_event_at.isoformat() if current and current.plan_event_at else None,
            )
            ctx.audit(
                BillingAuditEventType.STALE_PLAN_EVENT,
                user_id=user_id,
                tier=tier.value,
                status=status.value,
            )
            return None

        ctx.profile = updated
        if not is_expected_transition(previous_status, status):
            logger.warning(
                "Unexpected plan status transition user=%s %s -> %s (event %s)",
                user_id,
                previous_status.value if previous_status else "none",
                status.value,
                ctx.event.event_id,
            )
            ctx.audit(
                BillingAuditEventType.UNEXPECTED_TRANSITION,
                user_id=user_id,
                previous_status=previous_status.value if previous_status else "none",
                status=status.value,
            )

        if status == PlanStatus.CANCELED:
            audit_type = BillingAuditEventType.SUBSCRIPTION_CANCELED
        elif status == PlanStatus.ACTIVE and previous_status != PlanStatus.ACTIVE:
            audit_type = BillingAuditEventType.SUBSCRIPTION_ACTIVATED
        else:
            audit_type = BillingAuditEventType.SUBSCRIPTION_UPDATED
        ctx.audit(audit_type, user_id=user_id, tier=tier.value, status=status.value)
        return updated

    def _resolve_user(
        self,
        ctx: _Reconciliation,
        payload: CheckoutCompletedPayload
        | InvoicePaidPayload
        | SubscriptionUpdatedPayload
        | SubscriptionDeletedPayload,
    ) -> Optional[str]:
        if payload.user_id:
            return payload.user_id
        if payload.customer_ref:
            profile = ctx.repository.find_profile_by_customer(payload.customer_ref)
            if profile is not None:
                return profile.user_id
        return None

    def _unresolved(self, ctx: _Reconciliation, payload) -> ProcessingResult:
        logger.error(
            "Billing event %s kind=%s has no resolvable user (customer=%s); manual remediation required",
            ctx.event.event_id,
            ctx.event.kind.value,
            payload.customer_ref,
        )
        ctx.audit(
            BillingAuditEventType.UNRESOLVED_USER,
            customer_ref=payload.customer_ref,
            subscription_ref=payload.subscription_ref,
        )
        return ctx.result(
            ProcessingOutcome.UNRESOLVED_USER,
            message="No user could be resolved for this event",
        )


__all__ = [
    "ALLOWED_STATUS_TRANSITIONS",
    "BillingEventLogger",
    "ReconciliationEngine",
    "is_expected_transition",
]
