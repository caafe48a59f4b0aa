"""Property facts accepted by the listing generator."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ListingFacts(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)
    property_type: Optional[str] = Field(default=None, max_length=80)
    location: Optional[str] = Field(default=None, max_length=200)
    bedrooms: Optional[int] = Field(default=None, ge=0, le=100)
    bathrooms: Optional[float] = Field(default=None, ge=0, le=100)
    guests: Optional[int] = Field(default=None, ge=0, le=500)
    amenities: List[str] = Field(default_factory=list)
    highlights: Optional[str] = Field(default=None, max_length=2000)
    tone: Optional[str] = Field(default=None, max_length=80)
    notes: Optional[str] = Field(default=None, max_length=4000)

    model_config = ConfigDict(frozen=True)

    @field_validator("amenities")
    @classmethod
    def _strip_amenities(cls, value: List[str]) -> List[str]:
        return [item.strip() for item in value if item and item.strip()]


__all__ = ["ListingFacts"]
