"""Tests for ledger balance projection and balance-relative writes."""
from __future__ import annotations

import itertools

import pytest

from listingdesk.app.credits import (
    InsufficientCreditsError,
    LedgerEntry,
    LedgerReason,
    project_balance,
)


def _entry(user_id: str, delta: int, reason: LedgerReason = LedgerReason.ADMIN_ADJUSTMENT) -> LedgerEntry:
    return LedgerEntry(user_id=user_id, delta=delta, reason=reason)


def test_balance_of_unknown_user_is_zero(projector):
    assert projector.balance_of("nobody") == 0


def test_balance_is_sum_of_deltas_in_any_order():
    deltas = [15, -1, 25, -3, 7]
    for ordering in itertools.permutations(deltas):
        assert project_balance(_entry("u1", delta) for delta in ordering) == sum(deltas)


def test_balance_only_counts_rows_for_that_user(store, projector):
    store.seed_ledger_entry(_entry("u1", 10))
    store.seed_ledger_entry(_entry("u2", 99))
    store.seed_ledger_entry(_entry("u1", -4))

    assert projector.balance_of("u1") == 6
    assert projector.balance_of("u2") == 99


def test_ledger_rejects_zero_delta():
    with pytest.raises(ValueError):
        _entry("u1", 0)


@pytest.mark.parametrize("start,target", [(0, 0), (0, 10), (12, 3), (5, 5), (7, 0), (-2, 4)])
def test_set_balance_to_reaches_target(store, projector, start, target):
    if start:
        store.seed_ledger_entry(_entry("u1", start))
    rows_before = len(store.ledger)

    entry = projector.set_balance_to("u1", target)

    assert projector.balance_of("u1") == target
    if start == target:
        assert entry is None
        assert len(store.ledger) == rows_before
    else:
        assert entry is not None
        assert entry.delta == target - start
        assert entry.reason == LedgerReason.CORRECTION
        assert len(store.ledger) == rows_before + 1


def test_set_balance_to_by_admin_uses_admin_reason(projector):
    entry = projector.set_balance_to("u1", 8, admin=True, actor_id="admin-1")

    assert entry.reason == LedgerReason.ADMIN_ADJUSTMENT
    assert entry.actor_id == "admin-1"


def test_set_balance_to_rejects_negative_target(projector):
    with pytest.raises(ValueError):
        projector.set_balance_to("u1", -1)


def test_history_is_newest_first_with_running_balance(store, projector):
    store.seed_ledger_entry(_entry("u1", 4, LedgerReason.SIGNUP_GRANT))
    store.seed_ledger_entry(_entry("u1", 15, LedgerReason.PURCHASE))
    store.seed_ledger_entry(_entry("u1", -1, LedgerReason.USAGE))

    history = projector.history("u1", limit=2)

    assert [item.entry.delta for item in history] == [-1, 15]
    assert [item.running_balance for item in history] == [18, 19]


def test_history_rejects_non_positive_limit(projector):
    with pytest.raises(ValueError):
        projector.history("u1", limit=0)


def test_ensure_minimum_tops_up_only_once(store, projector):
    assert projector.ensure_minimum("u1", 4) == 4
    assert projector.ensure_minimum("u1", 4) == 0

    assert projector.balance_of("u1") == 4
    assert [entry.reason for entry in store.ledger] == [LedgerReason.SIGNUP_GRANT]


def test_ensure_minimum_grants_the_shortfall(store, projector):
    store.seed_ledger_entry(_entry("u1", 1))

    assert projector.ensure_minimum("u1", 4) == 3
    assert projector.balance_of("u1") == 4


def test_consume_debits_one_credit(store, projector):
    store.seed_ledger_entry(_entry("u1", 2))

    entry = projector.consume("u1", external_ref="generation:abc")

    assert entry.delta == -1
    assert entry.reason == LedgerReason.USAGE
    assert projector.balance_of("u1") == 1


def test_consume_with_insufficient_balance_writes_nothing(store, projector):
    with pytest.raises(InsufficientCreditsError) as excinfo:
        projector.consume("u1")

    assert excinfo.value.balance == 0
    assert excinfo.value.to_http_exception().status_code == 402
    assert store.ledger == []


def test_consume_for_unlimited_plan_writes_nothing(store, projector):
    assert projector.consume("u1", unlimited=True) is None
    assert store.ledger == []


def test_grant_rejects_zero_delta(projector):
    with pytest.raises(ValueError):
        projector.grant("u1", 0)
