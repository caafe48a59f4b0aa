"""Read-side projections and balance-dependent writes over the credits ledger."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from .exceptions import InsufficientCreditsError
from .models import LedgerEntry, LedgerHistoryItem, LedgerReason
from .store import CreditsRepository, CreditsStore

logger = logging.getLogger(__name__)


def project_balance(entries: Iterable[LedgerEntry]) -> int:
    """Fold ledger rows into a balance; row order does not matter."""

    return sum(entry.delta for entry in entries)


class BalanceProjector:
    """Computes balances from the ledger and writes balance-relative rows.

    Every read goes to the store so a row inserted by reconciliation is
    visible to the very next ``balance_of`` call.
    """

    def __init__(self, store: CreditsStore) -> None:
        self._store = store

    @contextmanager
    def _transaction(self, repository: Optional[CreditsRepository]) -> Iterator[CreditsRepository]:
        if repository is not None:
            yield repository
            return
        with self._store.transaction() as opened:
            yield opened

    def balance_of(self, user_id: str, *, repository: Optional[CreditsRepository] = None) -> int:
        with self._transaction(repository) as repo:
            return repo.sum_ledger(user_id)

    def history(self, user_id: str, *, limit: int = 50) -> List[LedgerHistoryItem]:
        """Return ledger rows newest first, each with the balance after it."""

        if limit < 1:
            raise ValueError("limit must be >= 1")
        with self._transaction(None) as repo:
            entries = list(repo.list_ledger_entries(user_id))

        items: List[LedgerHistoryItem] = []
        running = 0
        for entry in entries:
            running += entry.delta
            items.append(LedgerHistoryItem(entry=entry, running_balance=running))
        items.reverse()
        return items[:limit]

    def set_balance_to(
        self,
        user_id: str,
        target: int,
        *,
        admin: bool = False,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
        repository: Optional[CreditsRepository] = None,
    ) -> Optional[LedgerEntry]:
        """Insert the delta that moves the balance to ``target``.

        Returns ``None`` without writing anything when the balance already
        equals ``target``. Not idempotent on its own: callers that retry must
        deduplicate requests themselves.
        """

        if target < 0:
            raise ValueError("target balance must be non-negative")

        with self._transaction(repository) as repo:
            repo.lock_user(user_id)
            current = repo.sum_ledger(user_id)
            delta = target - current
            if delta == 0:
                return None
            entry = repo.insert_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    delta=delta,
                    reason=LedgerReason.ADMIN_ADJUSTMENT if admin else LedgerReason.CORRECTION,
                    actor_id=actor_id,
                    note=note or f"set balance {current} -> {target}",
                )
            )
        logger.info(
            "Balance set user=%s from=%s to=%s delta=%s actor=%s",
            user_id,
            current,
            target,
            delta,
            actor_id,
        )
        return entry

    def grant(
        self,
        user_id: str,
        delta: int,
        *,
        reason: LedgerReason = LedgerReason.ADMIN_ADJUSTMENT,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
        external_ref: Optional[str] = None,
        repository: Optional[CreditsRepository] = None,
    ) -> LedgerEntry:
        if delta == 0:
            raise ValueError("delta must be non-zero")

        with self._transaction(repository) as repo:
            entry = repo.insert_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    delta=delta,
                    reason=reason,
                    actor_id=actor_id,
                    note=note,
                    external_ref=external_ref,
                )
            )
        logger.info(
            "Ledger grant user=%s delta=%s reason=%s actor=%s",
            user_id,
            delta,
            reason.value,
            actor_id,
        )
        return entry

    def ensure_minimum(self, user_id: str, minimum: int) -> int:
        """Top the balance up to ``minimum``; returns the amount granted."""

        if minimum < 0:
            raise ValueError("minimum must be non-negative")

        with self._transaction(None) as repo:
            repo.lock_user(user_id)
            current = repo.sum_ledger(user_id)
            if current >= minimum:
                return 0
            granted = minimum - current
            repo.insert_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    delta=granted,
                    reason=LedgerReason.SIGNUP_GRANT,
                )
            )
        logger.info("Granted %s free credits to user=%s", granted, user_id)
        return granted

    def consume(
        self,
        user_id: str,
        amount: int = 1,
        *,
        unlimited: bool = False,
        external_ref: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Optional[LedgerEntry]:
        """Debit ``amount`` credits for usage; unlimited plans are not metered."""

        if amount < 1:
            raise ValueError("amount must be >= 1")
        if unlimited:
            return None

        with self._transaction(None) as repo:
            repo.lock_user(user_id)
            current = repo.sum_ledger(user_id)
            if current < amount:
                raise InsufficientCreditsError(balance=current, required=amount)
            return repo.insert_ledger_entry(
                LedgerEntry(
                    user_id=user_id,
                    delta=-amount,
                    reason=LedgerReason.USAGE,
                    external_ref=external_ref,
                    note=note,
                )
            )


__all__ = ["BalanceProjector", "project_balance"]
