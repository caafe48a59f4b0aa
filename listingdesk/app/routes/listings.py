"""API routes for credit-metered listing generation and saved listings."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ... import app_context
from ..credits import InsufficientCreditsError, TransientError
from ..listings import ListingGenerationError
from ..schemas.listings import (
    GenerateListingRequest,
    GenerateListingResponse,
    SavedListingResponse,
    SavedListingsResponse,
)
from .dependencies import generic_error, get_current_user

logger = logging.getLogger(__name__)

_DEFAULT_RECENT_LISTINGS = 5
_MAX_RECENT_LISTINGS = 50

router = APIRouter(prefix="/api/listings", tags=["listings"])


@router.post("/generate", response_model=GenerateListingResponse)
def generate_listing(
    payload: GenerateListingRequest,
    *,
    current_user=Depends(get_current_user),
) -> GenerateListingResponse:
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    try:
        generated = services.listings.generate(user_id, payload.to_facts())
    except InsufficientCreditsError as exc:
        raise exc.to_http_exception() from exc
    except ListingGenerationError:
        raise generic_error(status.HTTP_502_BAD_GATEWAY)
    except TransientError:
        logger.exception("Listing generation unavailable for user=%s", user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)

    return GenerateListingResponse(
        listing=generated.text,
        balance=generated.balance,
        debited=generated.debited,
        request_id=generated.request_id,
        saved=SavedListingResponse.from_saved(generated.saved) if generated.saved else None,
    )


@router.get("", response_model=SavedListingsResponse)
def read_recent_listings(
    *,
    limit: int = Query(default=_DEFAULT_RECENT_LISTINGS, ge=1, le=_MAX_RECENT_LISTINGS),
    current_user=Depends(get_current_user),
) -> SavedListingsResponse:
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    try:
        listings = services.listings.recent_listings(user_id, limit=limit)
    except TransientError:
        logger.exception("Listing lookup failed for user=%s", user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return SavedListingsResponse(data=[SavedListingResponse.from_saved(item) for item in listings])


@router.get("/{listing_id}", response_model=SavedListingResponse)
def read_listing(listing_id: int, *, current_user=Depends(get_current_user)) -> SavedListingResponse:
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    try:
        listing = services.listings.get_listing(user_id, listing_id)
    except TransientError:
        logger.exception("Listing %s lookup failed for user=%s", listing_id, user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    if listing is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Listing not found")
    return SavedListingResponse.from_saved(listing)
