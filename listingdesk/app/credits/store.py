"""Store abstractions for billing events, the credits ledger, and profiles."""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import ContextManager, Dict, Iterator, List, Optional, Protocol, Sequence

from .models import BillingEvent, LedgerEntry, PlanChange, PlanTier, PlanStatus, Profile, SavedListing


class CreditsRepository(Protocol):
    """Operations available inside a single store transaction."""

    def claim_event(self, event: BillingEvent) -> bool:
        """Atomically record ``event``; ``False`` when its id is already present."""

    def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        ...

    def sum_ledger(self, user_id: str) -> int:
        ...

    def list_ledger_entries(self, user_id: str) -> Sequence[LedgerEntry]:
        """Return every ledger row for ``user_id`` oldest first."""

    def has_ledger_ref(self, user_id: str, external_ref: str) -> bool:
        """Whether a ledger row for ``user_id`` already carries ``external_ref``."""

    def lock_user(self, user_id: str) -> None:
        """Serialize balance-dependent writes for ``user_id`` until commit."""

    def get_profile(self, user_id: str, *, for_update: bool = False) -> Optional[Profile]:
        ...

    def find_profile_by_customer(self, customer_ref: str) -> Optional[Profile]:
        ...

    def apply_plan_change(self, change: PlanChange) -> Optional[Profile]:
        """Upsert plan state unless a newer plan event was already applied."""

    def link_customer(self, user_id: str, customer_ref: str) -> Profile:
        ...

    def override_plan(self, user_id: str, *, tier: PlanTier, status: Optional[PlanStatus]) -> Profile:
        ...

    def insert_listing(self, listing: SavedListing) -> SavedListing:
        ...

    def list_listings(self, user_id: str, *, limit: int) -> Sequence[SavedListing]:
        """Return the newest listings owned by ``user_id`` first."""

    def get_listing(self, user_id: str, listing_id: int) -> Optional[SavedListing]:
        ...


class CreditsStore(Protocol):
    """Factory for transactional repositories."""

    def transaction(self) -> ContextManager[CreditsRepository]:
        ...


class _MemoryState:
    def __init__(self) -> None:
        self.events: Dict[str, BillingEvent] = {}
        self.ledger: List[LedgerEntry] = []
        self.profiles: Dict[str, Profile] = {}
        self.listings: List[SavedListing] = []
        self.next_entry_id = 1
        self.next_listing_id = 1


class InMemoryCreditsRepository:
    """Repository view over :class:`InMemoryCreditsStore` state."""

    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def claim_event(self, event: BillingEvent) -> bool:
        if event.event_id in self._state.events:
            return False
        self._state.events[event.event_id] = event
        return True

    def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        stored = entry.model_copy(update={"entry_id": self._state.next_entry_id})
        self._state.next_entry_id += 1
        self._state.ledger.append(stored)
        return stored

    def sum_ledger(self, user_id: str) -> int:
        return sum(entry.delta for entry in self._state.ledger if entry.user_id == user_id)

    def list_ledger_entries(self, user_id: str) -> Sequence[LedgerEntry]:
        return [entry for entry in self._state.ledger if entry.user_id == user_id]

    def has_ledger_ref(self, user_id: str, external_ref: str) -> bool:
        return any(
            entry.user_id == user_id and entry.external_ref == external_ref
            for entry in self._state.ledger
        )

    def lock_user(self, user_id: str) -> None:
        # The store lock already serializes whole transactions.
        return None

    def get_profile(self, user_id: str, *, for_update: bool = False) -> Optional[Profile]:
        return self._state.profiles.get(user_id)

    def find_profile_by_customer(self, customer_ref: str) -> Optional[Profile]:
        for profile in self._state.profiles.values():
            if profile.customer_ref == customer_ref:
                return profile
        return None

    def apply_plan_change(self, change: PlanChange) -> Optional[Profile]:
        now = datetime.now(timezone.utc)
        current = self._state.profiles.get(change.user_id)
        if current is None:
            updated = Profile(
                user_id=change.user_id,
                plan_tier=change.plan_tier,
                plan_status=change.plan_status,
                customer_ref=change.customer_ref,
                plan_event_at=change.occurred_at,
                updated_at=now,
            )
        else:
            if current.plan_event_at is not None and current.plan_event_at > change.occurred_at:
                return None
            updated = current.model_copy(
                update={
                    "plan_tier": change.plan_tier,
                    "plan_status": change.plan_status,
                    "customer_ref": change.customer_ref or current.customer_ref,
                    "plan_event_at": change.occurred_at,
                    "updated_at": now,
                }
            )
        self._state.profiles[change.user_id] = updated
        return updated

    def link_customer(self, user_id: str, customer_ref: str) -> Profile:
        now = datetime.now(timezone.utc)
        current = self._state.profiles.get(user_id)
        if current is None:
            updated = Profile(user_id=user_id, customer_ref=customer_ref, updated_at=now)
        elif current.customer_ref:
            return current
        else:
            updated = current.model_copy(update={"customer_ref": customer_ref, "updated_at": now})
        self._state.profiles[user_id] = updated
        return updated

    def override_plan(self, user_id: str, *, tier: PlanTier, status: Optional[PlanStatus]) -> Profile:
        now = datetime.now(timezone.utc)
        current = self._state.profiles.get(user_id) or Profile(user_id=user_id)
        updated = current.model_copy(
            update={"plan_tier": tier, "plan_status": status, "updated_at": now}
        )
        self._state.profiles[user_id] = updated
        return updated

    def insert_listing(self, listing: SavedListing) -> SavedListing:
        stored = listing.model_copy(update={"listing_id": self._state.next_listing_id})
        self._state.next_listing_id += 1
        self._state.listings.append(stored)
        return stored

    def list_listings(self, user_id: str, *, limit: int) -> Sequence[SavedListing]:
        owned = [listing for listing in self._state.listings if listing.user_id == user_id]
        owned.reverse()
        return owned[:limit]

    def get_listing(self, user_id: str, listing_id: int) -> Optional[SavedListing]:
        for listing in self._state.listings:
            if listing.listing_id == listing_id and listing.user_id == user_id:
                return listing
        return None


class InMemoryCreditsStore:
    """Process-local store suitable for tests and local development.

    Transactions are serialized by a lock and roll back by restoring a
    snapshot taken when the transaction began.
    """

    def __init__(self) -> None:
        self._state = _MemoryState()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[InMemoryCreditsRepository]:
        with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemoryCreditsRepository(self._state)
            except Exception:
                self._state = snapshot
                raise

    @property
    def events(self) -> Dict[str, BillingEvent]:
        return dict(self._state.events)

    @property
    def ledger(self) -> List[LedgerEntry]:
        return list(self._state.ledger)

    @property
    def profiles(self) -> Dict[str, Profile]:
        return dict(self._state.profiles)

    @property
    def listings(self) -> List[SavedListing]:
        return list(self._state.listings)

    def seed_profile(self, profile: Profile) -> None:
        with self._lock:
            self._state.profiles[profile.user_id] = profile

    def seed_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with self.transaction() as repository:
            return repository.insert_ledger_entry(entry)


__all__ = [
    "CreditsRepository",
    "CreditsStore",
    "InMemoryCreditsRepository",
    "InMemoryCreditsStore",
]
