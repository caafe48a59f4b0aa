"""Credit-metered listing generation."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from ..credits.catalog import PriceCatalog
from ..credits.ledger import BalanceProjector
from ..credits.exceptions import TransientError
from ..credits.models import LedgerEntry, LedgerReason, PlanTier, SavedListing
from ..credits.store import CreditsStore
from .generator import ListingGenerator, build_listing_prompt
from .models import ListingFacts

logger = logging.getLogger(__name__)

UNTITLED_LISTING = "Untitled Listing"


class ListingGenerationError(RuntimeError):
    """The generator failed; any credit debited for the attempt was refunded."""


@dataclass(frozen=True)
class GeneratedListing:
    text: str
    balance: int
    debited: int
    request_id: str
    saved: Optional[SavedListing] = None


class ListingService:
    """Debits one credit per generation and refunds it when generation fails."""

    def __init__(
        self,
        *,
        store: CreditsStore,
        projector: BalanceProjector,
        catalog: PriceCatalog,
        generator: ListingGenerator,
        cost: int = 1,
    ) -> None:
        self._store = store
        self._projector = projector
        self._catalog = catalog
        self._generator = generator
        self._cost = cost

    def _tier_for(self, user_id: str) -> PlanTier:
        with self._store.transaction() as repository:
            profile = repository.get_profile(user_id)
        return profile.plan_tier if profile else PlanTier.FREE

    def generate(self, user_id: str, facts: ListingFacts) -> GeneratedListing:
        tier = self._tier_for(user_id)
        request_id = uuid.uuid4().hex
        debit = self._projector.consume(
            user_id,
            self._cost,
            unlimited=self._catalog.is_unlimited(tier),
            external_ref=f"generation:{request_id}",
            note=facts.title,
        )

        prompt = build_listing_prompt(facts)
        try:
            text = self._generator.generate(prompt)
        except Exception as exc:
            logger.exception("Listing generation failed for user=%s request=%s", user_id, request_id)
            self._refund(user_id, debit)
            raise ListingGenerationError("Generation failed") from exc

        if not text:
            logger.warning("Listing generation returned no content for user=%s", user_id)
            self._refund(user_id, debit)
            raise ListingGenerationError("No content generated")

        saved = self._save(user_id, facts, text)
        balance = self._projector.balance_of(user_id)
        logger.info(
            "Generated listing for user=%s tier=%s request=%s balance=%s",
            user_id,
            tier.value,
            request_id,
            balance,
        )
        return GeneratedListing(
            text=text,
            balance=balance,
            debited=-debit.delta if debit else 0,
            request_id=request_id,
            saved=saved,
        )

    def recent_listings(self, user_id: str, *, limit: int = 5) -> List[SavedListing]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        with self._store.transaction() as repository:
            return list(repository.list_listings(user_id, limit=limit))

    def get_listing(self, user_id: str, listing_id: int) -> Optional[SavedListing]:
        with self._store.transaction() as repository:
            return repository.get_listing(user_id, listing_id)

    def _save(self, user_id: str, facts: ListingFacts, text: str) -> Optional[SavedListing]:
        title = (facts.title or "").strip() or UNTITLED_LISTING
        try:
            with self._store.transaction() as repository:
                return repository.insert_listing(
                    SavedListing(user_id=user_id, title=title, description=text)
                )
        except TransientError:
            # Generated text is returned even when saving it fails.
            logger.exception("Saving generated listing failed for user=%s", user_id)
            return None

    def _refund(self, user_id: str, debit: Optional[LedgerEntry]) -> None:
        if debit is None:
            return
        self._projector.grant(
            user_id,
            -debit.delta,
            reason=LedgerReason.CORRECTION,
            external_ref=f"{debit.external_ref}:refund",
            note="refund: generation failed",
        )


__all__ = ["GeneratedListing", "ListingGenerationError", "ListingService", "UNTITLED_LISTING"]
