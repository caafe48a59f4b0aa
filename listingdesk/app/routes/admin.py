"""Administrative routes for credit adjustments and plan overrides."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from ... import app_context
from ..credits import LedgerReason, TransientError
from ..schemas.admin import (
    AdminCreditRequest,
    AdminLedgerResponse,
    AdminPlanOverrideRequest,
    AdminPlanOverrideResponse,
    AdminSetBalanceRequest,
    IsAdminResponse,
)
from .dependencies import generic_error, get_optional_current_user, require_admin

logger = logging.getLogger(__name__)

_ADMIN_REASONS = {LedgerReason.ADMIN_ADJUSTMENT.value, LedgerReason.CORRECTION.value}

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/is-admin", response_model=IsAdminResponse)
def read_is_admin(*, current_user=Depends(get_optional_current_user)) -> IsAdminResponse:
    if current_user is None:
        return IsAdminResponse(is_admin=False, email=None)
    return IsAdminResponse(
        is_admin=bool(getattr(current_user, "is_admin", False)),
        email=getattr(current_user, "email", None),
    )


@router.post("/credits", response_model=AdminLedgerResponse)
def adjust_credits(
    payload: AdminCreditRequest,
    *,
    admin_user=Depends(require_admin),
) -> AdminLedgerResponse:
    """Insert a signed credit adjustment for another user."""
    services = app_context.get_credits_services()
    raw_reason = (payload.reason or "").strip()
    if raw_reason in _ADMIN_REASONS:
        reason, note = LedgerReason(raw_reason), None
    else:
        reason, note = LedgerReason.ADMIN_ADJUSTMENT, raw_reason or None

    try:
        entry = services.projector.grant(
            payload.target_user_id,
            payload.delta,
            reason=reason,
            actor_id=str(admin_user.id),
            note=note,
        )
        balance = services.projector.balance_of(payload.target_user_id)
    except TransientError:
        logger.exception("Admin credit adjustment failed for user=%s", payload.target_user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return AdminLedgerResponse(
        target_user_id=payload.target_user_id,
        balance=balance,
        entry_id=entry.entry_id,
    )


@router.post("/set-balance", response_model=AdminLedgerResponse)
def set_balance(
    payload: AdminSetBalanceRequest,
    *,
    admin_user=Depends(require_admin),
) -> AdminLedgerResponse:
    services = app_context.get_credits_services()
    try:
        entry = services.projector.set_balance_to(
            payload.target_user_id,
            payload.balance,
            admin=True,
            actor_id=str(admin_user.id),
            note=payload.note,
        )
        balance = services.projector.balance_of(payload.target_user_id)
    except TransientError:
        logger.exception("Admin set-balance failed for user=%s", payload.target_user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    return AdminLedgerResponse(
        target_user_id=payload.target_user_id,
        balance=balance,
        entry_id=entry.entry_id if entry else None,
    )


@router.post("/plan", response_model=AdminPlanOverrideResponse)
def override_plan(
    payload: AdminPlanOverrideRequest,
    *,
    admin_user=Depends(require_admin),
) -> AdminPlanOverrideResponse:
    services = app_context.get_credits_services()
    try:
        profile = services.engine.override_plan(
            payload.target_user_id,
            tier=payload.plan,
            status=payload.status,
            actor_id=str(admin_user.id),
        )
    except TransientError:
        logger.exception("Admin plan override failed for user=%s", payload.target_user_id)
        raise generic_error(status.HTTP_503_SERVICE_UNAVAILABLE)
    logger.info(
        "Admin %s set plan for user=%s to %s/%s",
        admin_user.id,
        payload.target_user_id,
        profile.plan_tier.value,
        profile.plan_status.value if profile.plan_status else "none",
    )
    return AdminPlanOverrideResponse(
        target_user_id=profile.user_id,
        plan=profile.plan_tier,
        status=profile.plan_status,
    )
