"""Tests for the billing event reconciliation engine."""
from __future__ import annotations

import threading
from contextlib import contextmanager

import pytest

from listingdesk.app.credits import (
    BillingAuditEventType,
    CheckoutCompletedPayload,
    CheckoutMode,
    InvoicePaidPayload,
    LedgerReason,
    PlanStatus,
    PlanTier,
    ProcessingOutcome,
    Profile,
    ReconciliationEngine,
    SubscriptionDeletedPayload,
    SubscriptionUpdatedPayload,
    TransientError,
    build_price_catalog,
)

from listingdesk.app.credits.stripe_events import translate_stripe_event

from conftest import COINS_PRICE, PREMIUM_PRICE, STARTER_PRICE


def _coins_checkout(**overrides) -> CheckoutCompletedPayload:
    values = {"mode": CheckoutMode.PAYMENT, "price_id": COINS_PRICE, "user_id": "u1"}
    values.update(overrides)
    return CheckoutCompletedPayload(**values)


def _subscription_update(status: PlanStatus = PlanStatus.ACTIVE, **overrides) -> SubscriptionUpdatedPayload:
    values = {"price_id": STARTER_PRICE, "status": status, "user_id": "u1"}
    values.update(overrides)
    return SubscriptionUpdatedPayload(**values)


def test_credit_purchase_grants_pack_credits(engine, projector, store, make_event):
    result = engine.process(make_event("evt_1", _coins_checkout(customer_ref="cus_1")))

    assert result.outcome == ProcessingOutcome.APPLIED
    assert result.acknowledged
    assert projector.balance_of("u1") == 15
    assert [entry.reason for entry in store.ledger] == [LedgerReason.PURCHASE]
    assert store.ledger[0].external_ref == "evt_1"
    assert store.profiles["u1"].customer_ref == "cus_1"


def test_duplicate_delivery_is_skipped(engine, projector, store, make_event):
    event = make_event("evt_1", _coins_checkout())

    first = engine.process(event)
    second = engine.process(event)

    assert first.outcome == ProcessingOutcome.APPLIED
    assert second.outcome == ProcessingOutcome.DUPLICATE_SKIPPED
    assert second.acknowledged
    assert second.ledger_entries == ()
    assert projector.balance_of("u1") == 15
    assert len(store.ledger) == 1


def test_starter_activation_sets_plan_and_grants_allotment(engine, projector, store, make_event, event_logger):
    result = engine.process(make_event("evt_sub", _subscription_update()))

    profile = store.profiles["u1"]
    assert result.outcome == ProcessingOutcome.APPLIED
    assert profile.plan_tier == PlanTier.STARTER
    assert profile.plan_status == PlanStatus.ACTIVE
    assert [entry.reason for entry in store.ledger] == [LedgerReason.SUBSCRIPTION_GRANT]
    assert projector.balance_of("u1") == 25
    assert BillingAuditEventType.SUBSCRIPTION_ACTIVATED in event_logger.types()
    assert BillingAuditEventType.ALLOTMENT_GRANTED in event_logger.types()


def test_activation_grant_happens_only_on_first_activation(engine, projector, make_event):
    engine.process(make_event("evt_checkout", CheckoutCompletedPayload(
        mode=CheckoutMode.SUBSCRIPTION, price_id=STARTER_PRICE, user_id="u1",
    )))
    engine.process(make_event("evt_update", _subscription_update(), minutes=1))

    assert projector.balance_of("u1") == 25


def test_premium_activation_grants_nothing(engine, store, make_event):
    engine.process(make_event("evt_sub", _subscription_update(price_id=PREMIUM_PRICE)))

    assert store.profiles["u1"].plan_tier == PlanTier.PREMIUM
    assert store.ledger == []


def test_subscription_deleted_reverts_to_free(engine, store, make_event):
    store.seed_profile(Profile(user_id="u1", plan_tier=PlanTier.PREMIUM, plan_status=PlanStatus.ACTIVE))

    result = engine.process(make_event("evt_del", SubscriptionDeletedPayload(user_id="u1")))

    profile = store.profiles["u1"]
    assert result.outcome == ProcessingOutcome.APPLIED
    assert profile.plan_tier == PlanTier.FREE
    assert profile.plan_status == PlanStatus.CANCELED
    assert store.ledger == []


def test_premium_invoice_inserts_no_rows_and_keeps_profile(engine, store, make_event):
    profile = Profile(user_id="u1", plan_tier=PlanTier.PREMIUM, plan_status=PlanStatus.ACTIVE)
    store.seed_profile(profile)

    result = engine.process(make_event("evt_inv", InvoicePaidPayload(
        price_id=PREMIUM_PRICE, user_id="u1", billing_reason="subscription_cycle",
    )))

    assert result.outcome == ProcessingOutcome.APPLIED
    assert store.ledger == []
    assert store.profiles["u1"] == profile


def test_starter_renewal_grants_allotment(engine, projector, store, make_event):
    result = engine.process(make_event("evt_inv", InvoicePaidPayload(
        price_id=STARTER_PRICE, user_id="u1", invoice_ref="in_1", billing_reason="subscription_cycle",
    )))

    assert [entry.reason for entry in result.ledger_entries] == [LedgerReason.SUBSCRIPTION_RENEWAL]
    assert projector.balance_of("u1") == 25


def test_first_invoice_of_new_subscription_grants_nothing_extra(engine, projector, make_event):
    engine.process(make_event("evt_sub", _subscription_update()))
    engine.process(make_event("evt_inv", InvoicePaidPayload(
        price_id=STARTER_PRICE, user_id="u1", billing_reason="subscription_create",
    ), minutes=1))

    assert projector.balance_of("u1") == 25


def test_user_resolved_by_customer_reference(engine, projector, store, make_event):
    store.seed_profile(Profile(user_id="u7", customer_ref="cus_7"))

    result = engine.process(make_event("evt_1", _coins_checkout(user_id=None, customer_ref="cus_7")))

    assert result.user_id == "u7"
    assert projector.balance_of("u7") == 15


def test_unresolved_user_is_acknowledged_and_claimed(engine, store, make_event, event_logger):
    event = make_event("evt_1", _coins_checkout(user_id=None, customer_ref="cus_unknown"))

    result = engine.process(event)
    retry = engine.process(event)

    assert result.outcome == ProcessingOutcome.UNRESOLVED_USER
    assert result.acknowledged
    assert retry.outcome == ProcessingOutcome.DUPLICATE_SKIPPED
    assert store.ledger == []
    assert BillingAuditEventType.UNRESOLVED_USER in event_logger.types()


def test_unknown_price_is_not_acknowledged_and_can_be_retried(store, projector, event_logger, make_event):
    empty_catalog = build_price_catalog(
        starter_price_id=None,
        premium_price_id=None,
        coins_price_id=None,
        coins_credits=15,
        starter_monthly_credits=25,
        premium_monthly_credits=0,
    )
    misconfigured = ReconciliationEngine(
        store=store, catalog=empty_catalog, projector=projector, event_logger=event_logger,
    )
    event = make_event("evt_1", _coins_checkout())

    result = misconfigured.process(event)

    assert result.outcome == ProcessingOutcome.CONFIGURATION_ERROR
    assert not result.acknowledged
    assert store.events == {}
    assert store.ledger == []


def test_configuration_fix_lets_the_retry_apply(store, projector, event_logger, catalog, make_event):
    empty_catalog = build_price_catalog(
        starter_price_id=None,
        premium_price_id=None,
        coins_price_id=None,
        coins_credits=15,
        starter_monthly_credits=25,
        premium_monthly_credits=0,
    )
    event = make_event("evt_1", _coins_checkout())
    ReconciliationEngine(store=store, catalog=empty_catalog, projector=projector, event_logger=event_logger).process(event)

    fixed = ReconciliationEngine(store=store, catalog=catalog, projector=projector, event_logger=event_logger)
    result = fixed.process(event)

    assert result.outcome == ProcessingOutcome.APPLIED
    assert projector.balance_of("u1") == 15


class _UnavailableStore:
    @contextmanager
    def transaction(self):
        raise TransientError("database unreachable")
        yield  # pragma: no cover


def test_store_failure_is_transient_and_not_acknowledged(catalog, event_logger, make_event):
    store = _UnavailableStore()
    from listingdesk.app.credits import BalanceProjector

    engine = ReconciliationEngine(
        store=store, catalog=catalog, projector=BalanceProjector(store), event_logger=event_logger,
    )

    result = engine.process(make_event("evt_1", _coins_checkout()))

    assert result.outcome == ProcessingOutcome.TRANSIENT_ERROR
    assert not result.acknowledged
    assert event_logger.events == []


def test_stale_subscription_update_does_not_regress_tier(engine, store, make_event, event_logger):
    engine.process(make_event("evt_new", _subscription_update(price_id=PREMIUM_PRICE), minutes=10))

    result = engine.process(make_event("evt_old", _subscription_update(price_id=STARTER_PRICE), minutes=5))

    assert result.outcome == ProcessingOutcome.APPLIED
    assert store.profiles["u1"].plan_tier == PlanTier.PREMIUM
    assert store.ledger == []
    assert BillingAuditEventType.STALE_PLAN_EVENT in event_logger.types()


def test_past_due_then_recovery_are_expected_transitions(engine, store, make_event, event_logger):
    engine.process(make_event("evt_1", _subscription_update(), minutes=0))
    engine.process(make_event("evt_2", _subscription_update(PlanStatus.PAST_DUE), minutes=1))
    engine.process(make_event("evt_3", _subscription_update(PlanStatus.ACTIVE), minutes=2))

    assert store.profiles["u1"].plan_status == PlanStatus.ACTIVE
    assert BillingAuditEventType.UNEXPECTED_TRANSITION not in event_logger.types()


def test_unexpected_transition_is_applied_and_audited(engine, store, make_event, event_logger):
    result = engine.process(make_event("evt_1", _subscription_update(PlanStatus.PAST_DUE)))

    assert result.outcome == ProcessingOutcome.APPLIED
    assert store.profiles["u1"].plan_status == PlanStatus.PAST_DUE
    assert BillingAuditEventType.UNEXPECTED_TRANSITION in event_logger.types()


def test_canceled_status_update_drops_to_free(engine, store, make_event):
    engine.process(make_event("evt_1", _subscription_update(), minutes=0))
    engine.process(make_event("evt_2", _subscription_update(PlanStatus.CANCELED), minutes=1))

    profile = store.profiles["u1"]
    assert profile.plan_tier == PlanTier.FREE
    assert profile.plan_status == PlanStatus.CANCELED


def test_skip_unrecognized_is_acknowledged(engine, store, event_logger):
    result = engine.skip_unrecognized("evt_x", "customer.created")

    assert result.outcome == ProcessingOutcome.UNRECOGNIZED_EVENT_KIND
    assert result.acknowledged
    assert store.events == {}
    assert event_logger.types() == [BillingAuditEventType.UNRECOGNIZED_EVENT]


def test_override_plan_sets_profile(engine, store):
    profile = engine.override_plan("u1", tier=PlanTier.PREMIUM, status=PlanStatus.ACTIVE, actor_id="admin")

    assert profile.plan_tier == PlanTier.PREMIUM
    assert store.profiles["u1"].plan_status == PlanStatus.ACTIVE


def test_profile_for_unknown_user_defaults_to_free(engine):
    profile = engine.profile_for("ghost")

    assert profile.plan_tier == PlanTier.FREE
    assert profile.plan_status is None


def test_payload_must_match_event_kind(make_event):
    from listingdesk.app.credits import BillingEvent, BillingEventKind

    with pytest.raises(ValueError):
        BillingEvent(
            event_id="evt_1",
            kind=BillingEventKind.INVOICE_PAID,
            payload=_coins_checkout(),
        )


def _starter_checkout(subscription_ref=None) -> CheckoutCompletedPayload:
    return CheckoutCompletedPayload(
        mode=CheckoutMode.SUBSCRIPTION,
        price_id=STARTER_PRICE,
        user_id="u1",
        subscription_ref=subscription_ref,
    )


def test_one_invoice_is_credited_once_even_with_two_event_ids(engine, projector, store, make_event):
    for event_id in ("evt_a", "evt_b"):
        result = engine.process(make_event(event_id, InvoicePaidPayload(
            price_id=STARTER_PRICE, user_id="u1", invoice_ref="in_renew_1", billing_reason="subscription_cycle",
        )))
        assert result.outcome == ProcessingOutcome.APPLIED

    renewals = [entry for entry in store.ledger if entry.reason == LedgerReason.SUBSCRIPTION_RENEWAL]
    assert len(renewals) == 1
    assert renewals[0].external_ref == "invoice:in_renew_1"
    assert projector.balance_of("u1") == 25


def test_stripe_invoice_notifications_grant_one_renewal(engine, projector, store):
    invoice = {
        "id": "in_renew_1",
        "customer": "cus_1",
        "billing_reason": "subscription_cycle",
        "subscription_details": {"metadata": {"user_id": "u1"}},
        "lines": {"data": [{"price": {"id": STARTER_PRICE}}]},
    }
    for event_id, event_type in (("evt_a", "invoice.paid"), ("evt_b", "invoice.payment_succeeded")):
        raw = {"id": event_id, "type": event_type, "created": 1700000000, "data": {"object": invoice}}
        event = translate_stripe_event(raw)
        if event is None:
            engine.skip_unrecognized(event_id, event_type)
        else:
            engine.process(event)

    renewals = [entry for entry in store.ledger if entry.reason == LedgerReason.SUBSCRIPTION_RENEWAL]
    assert len(renewals) == 1
    assert projector.balance_of("u1") == 25


def test_resubscribing_after_cancellation_grants_a_new_allotment(engine, projector, store, make_event):
    engine.process(make_event("evt_co1", _starter_checkout("sub_1"), minutes=0))
    engine.process(make_event("evt_del", SubscriptionDeletedPayload(user_id="u1", subscription_ref="sub_1"), minutes=10))
    before = projector.balance_of("u1")

    engine.process(make_event("evt_co2", _starter_checkout("sub_2"), minutes=20))
    engine.process(make_event("evt_inv", InvoicePaidPayload(
        price_id=STARTER_PRICE,
        user_id="u1",
        subscription_ref="sub_2",
        invoice_ref="in_2",
        billing_reason="subscription_create",
    ), minutes=21))

    assert projector.balance_of("u1") - before == 25
    assert store.profiles["u1"].plan_tier == PlanTier.STARTER
    assert store.profiles["u1"].plan_status == PlanStatus.ACTIVE


def test_resubscribing_without_subscription_refs_grants_a_new_allotment(engine, projector, make_event):
    engine.process(make_event("evt_co1", _starter_checkout(), minutes=0))
    engine.process(make_event("evt_del", SubscriptionDeletedPayload(user_id="u1"), minutes=10))
    engine.process(make_event("evt_co2", _starter_checkout(), minutes=20))
    engine.process(make_event("evt_inv", InvoicePaidPayload(
        price_id=STARTER_PRICE, user_id="u1", billing_reason="subscription_create",
    ), minutes=21))

    assert projector.balance_of("u1") == 50


def test_first_invoice_before_activation_grants_the_allotment_once(engine, projector, store, make_event):
    engine.process(make_event("evt_inv", InvoicePaidPayload(
        price_id=STARTER_PRICE,
        user_id="u1",
        subscription_ref="sub_1",
        billing_reason="subscription_create",
    ), minutes=0))
    engine.process(make_event("evt_co", _starter_checkout("sub_1"), minutes=1))
    engine.process(make_event("evt_sub", _subscription_update(subscription_ref="sub_1"), minutes=2))

    assert [entry.reason for entry in store.ledger] == [LedgerReason.SUBSCRIPTION_GRANT]
    assert store.ledger[0].external_ref == "subscription:sub_1"
    assert projector.balance_of("u1") == 25


def test_concurrent_deliveries_of_one_event_apply_once(engine, projector, store, make_event):
    event = make_event("evt_race", _coins_checkout())
    barrier = threading.Barrier(8)
    outcomes = []

    def deliver():
        barrier.wait()
        outcomes.append(engine.process(event).outcome)

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(ProcessingOutcome.APPLIED) == 1
    assert outcomes.count(ProcessingOutcome.DUPLICATE_SKIPPED) == 7
    assert len(store.ledger) == 1
    assert projector.balance_of("u1") == 15
