"""API routes exposing the signed-in user's credit balance."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, status

from ... import app_context
from ..credits import TransientError
from ..schemas.credits import (
    BalanceResponse,
    GrantInitialResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
)
from .dependencies import generic_error, get_current_user

logger = logging.getLogger(__name__)

_DEFAULT_HISTORY_SIZE = 50
_MAX_HISTORY_SIZE = 200

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance", response_model=BalanceResponse)
def read_balance(*, current_user=Depends(get_current_user)) -> BalanceResponse:
    services = app_context.get_credits_services()
    try:
        balance = services.projector.balance_of(str(current_user.id))
    except TransientError:
        logger.exception("Balance lookup failed for user=%s", current_user.id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return BalanceResponse(balance=balance)


@router.get("/ledger", response_model=LedgerHistoryResponse)
def read_ledger(
    *,
    limit: int = Query(default=_DEFAULT_HISTORY_SIZE, ge=1, le=_MAX_HISTORY_SIZE),
    current_user=Depends(get_current_user),
) -> LedgerHistoryResponse:
    """Return the user's most recent ledger rows with running balances."""
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    try:
        history = services.projector.history(user_id, limit=limit)
        balance = services.projector.balance_of(user_id)
    except TransientError:
        logger.exception("Ledger lookup failed for user=%s", user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return LedgerHistoryResponse(
        balance=balance,
        entries=[LedgerEntryResponse.from_history_item(item) for item in history],
    )


@router.post("/grant-initial", response_model=GrantInitialResponse)
def grant_initial_credits(*, current_user=Depends(get_current_user)) -> GrantInitialResponse:
    services = app_context.get_credits_services()
    user_id = str(current_user.id)
    try:
        granted = services.projector.ensure_minimum(user_id, services.config.min_free_credits)
        balance = services.projector.balance_of(user_id)
    except TransientError:
        logger.exception("Initial credit grant failed for user=%s", user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return GrantInitialResponse(granted=granted, balance=balance)
