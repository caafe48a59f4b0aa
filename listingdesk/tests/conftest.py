"""Shared fixtures for the credits and billing test suites."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from listingdesk.app.credits import (
    BalanceProjector,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BillingEventKind,
    InMemoryCreditsStore,
    ReconciliationEngine,
    build_price_catalog,
)

STARTER_PRICE = "price_starter"
PREMIUM_PRICE = "price_premium"
COINS_PRICE = "price_coins"
BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[BillingAuditEventType]:
        return [event.event_type for event in self.events]


@pytest.fixture
def catalog():
    return build_price_catalog(
        starter_price_id=STARTER_PRICE,
        premium_price_id=PREMIUM_PRICE,
        coins_price_id=COINS_PRICE,
        coins_credits=15,
        starter_monthly_credits=25,
        premium_monthly_credits=0,
    )


@pytest.fixture
def store() -> InMemoryCreditsStore:
    return InMemoryCreditsStore()


@pytest.fixture
def projector(store) -> BalanceProjector:
    return BalanceProjector(store)


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def engine(store, catalog, projector, event_logger) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=store,
        catalog=catalog,
        projector=projector,
        event_logger=event_logger,
    )


@pytest.fixture
def make_event():
    def _make(event_id: str, payload, *, minutes: int = 0, at: Optional[datetime] = None) -> BillingEvent:
        return BillingEvent(
            event_id=event_id,
            kind=BillingEventKind(payload.kind),
            payload=payload,
            occurred_at=at or BASE_TIME + timedelta(minutes=minutes),
        )

    return _make
