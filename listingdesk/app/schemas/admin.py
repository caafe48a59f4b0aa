"""API schemas for administrative credit and plan endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..credits import PlanStatus, PlanTier


class IsAdminResponse(BaseModel):
    is_admin: bool = Field(alias="isAdmin")
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AdminCreditRequest(BaseModel):
    target_user_id: str = Field(alias="targetUserId", min_length=1)
    delta: int
    reason: Optional[str] = Field(default=None, max_length=200)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must be non-zero")
        return value


class AdminSetBalanceRequest(BaseModel):
    target_user_id: str = Field(alias="targetUserId", min_length=1)
    balance: int = Field(ge=0)
    note: Optional[str] = Field(default=None, max_length=200)

    model_config = ConfigDict(populate_by_name=True)


class AdminLedgerResponse(BaseModel):
    success: bool = True
    target_user_id: str = Field(alias="targetUserId")
    balance: int
    entry_id: Optional[int] = Field(alias="entryId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class AdminPlanOverrideRequest(BaseModel):
    target_user_id: str = Field(alias="targetUserId", min_length=1)
    plan: PlanTier
    status: Optional[PlanStatus] = None

    model_config = ConfigDict(populate_by_name=True)


class AdminPlanOverrideResponse(BaseModel):
    target_user_id: str = Field(alias="targetUserId")
    plan: PlanTier
    status: Optional[PlanStatus] = None

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "AdminCreditRequest",
    "AdminLedgerResponse",
    "AdminPlanOverrideRequest",
    "AdminPlanOverrideResponse",
    "AdminSetBalanceRequest",
    "IsAdminResponse",
]
