"""API schemas for credit balance endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..credits import LedgerHistoryItem, LedgerReason


class BalanceResponse(BaseModel):
    balance: int


class LedgerEntryResponse(BaseModel):
    id: Optional[int] = None
    delta: int
    reason: LedgerReason
    external_ref: Optional[str] = Field(alias="externalRef", default=None)
    note: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")
    running_balance: int = Field(alias="runningBalance")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_history_item(cls, item: LedgerHistoryItem) -> "LedgerEntryResponse":
        entry = item.entry
        return cls(
            id=entry.entry_id,
            delta=entry.delta,
            reason=entry.reason,
            external_ref=entry.external_ref,
            note=entry.note,
            created_at=entry.created_at,
            running_balance=item.running_balance,
        )


class LedgerHistoryResponse(BaseModel):
    balance: int
    entries: List[LedgerEntryResponse]


class GrantInitialResponse(BaseModel):
    granted: int
    balance: int


__all__ = [
    "BalanceResponse",
    "GrantInitialResponse",
    "LedgerEntryResponse",
    "LedgerHistoryResponse",
]
