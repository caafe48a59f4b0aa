"""Listing copy generation metered by the credits ledger."""

from .generator import ListingGenerator, OpenAIListingGenerator, build_listing_prompt
from .models import ListingFacts
from .service import UNTITLED_LISTING, GeneratedListing, ListingGenerationError, ListingService

__all__ = [
    "GeneratedListing",
    "ListingFacts",
    "ListingGenerationError",
    "ListingGenerator",
    "ListingService",
    "OpenAIListingGenerator",
    "UNTITLED_LISTING",
    "build_listing_prompt",
]
