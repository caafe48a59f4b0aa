"""Construction of the credits, billing, and listing collaborators."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..credits import (
    BalanceProjector,
    BillingAuditEvent,
    BillingEventLogger,
    CreditsConfig,
    CreditsStore,
    InMemoryCreditsStore,
    ReconciliationEngine,
)
from ..credits.repository import PostgresCreditsStore
from ..credits.stripe_events import StripeGateway
from ..listings import ListingGenerator, ListingService

logger = logging.getLogger("listingdesk.billing.audit")


class LoggingBillingEventLogger(BillingEventLogger):
    """Forwards billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s event_id=%s user=%s metadata=%s",
            event.event_type.value,
            event.event_id,
            event.user_id,
            event.metadata,
            extra={"billing_event_type": event.event_type.value, "billing_event_id": event.event_id},
        )


@dataclass
class CreditsServices:
    config: CreditsConfig
    store: CreditsStore
    projector: BalanceProjector
    engine: ReconciliationEngine
    gateway: StripeGateway
    listings: ListingService


def build_store(
    config: CreditsConfig,
    *,
    get_conn: Optional[Callable[[], Any]] = None,
    release_conn: Optional[Callable[[Any], None]] = None,
) -> CreditsStore:
    if config.store_backend == "memory":
        logger.warning("Using in-memory credits store; balances will not survive a restart")
        return InMemoryCreditsStore()
    if get_conn is None:
        raise RuntimeError("A connection factory is required for the postgres credits store")
    return PostgresCreditsStore(get_conn=get_conn, release_conn=release_conn)


def build_credits_services(
    config: CreditsConfig,
    *,
    store: CreditsStore,
    generator: ListingGenerator,
    gateway: Optional[StripeGateway] = None,
    event_logger: Optional[BillingEventLogger] = None,
) -> CreditsServices:
    projector = BalanceProjector(store)
    engine = ReconciliationEngine(
        store=store,
        catalog=config.catalog,
        projector=projector,
        event_logger=event_logger or LoggingBillingEventLogger(),
    )
    gateway = gateway or StripeGateway(
        secret_key=config.stripe_secret_key,
        webhook_secret=config.stripe_webhook_secret,
    )
    listings = ListingService(
        store=store,
        projector=projector,
        catalog=config.catalog,
        generator=generator,
    )
    return CreditsServices(
        config=config,
        store=store,
        projector=projector,
        engine=engine,
        gateway=gateway,
        listings=listings,
    )


__all__ = [
    "CreditsServices",
    "LoggingBillingEventLogger",
    "build_credits_services",
    "build_store",
]
