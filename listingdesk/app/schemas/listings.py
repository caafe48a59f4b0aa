"""API schemas for listing generation."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..credits import SavedListing
from ..listings import ListingFacts


class GenerateListingRequest(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)
    property_type: Optional[str] = Field(alias="propertyType", default=None, max_length=80)
    location: Optional[str] = Field(default=None, max_length=200)
    bedrooms: Optional[int] = Field(default=None, ge=0, le=100)
    bathrooms: Optional[float] = Field(default=None, ge=0, le=100)
    guests: Optional[int] = Field(default=None, ge=0, le=500)
    amenities: List[str] = Field(default_factory=list)
    highlights: Optional[str] = Field(default=None, max_length=2000)
    tone: Optional[str] = Field(default=None, max_length=80)
    notes: Optional[str] = Field(alias="prompt", default=None, max_length=4000)

    model_config = ConfigDict(populate_by_name=True)

    def to_facts(self) -> ListingFacts:
        return ListingFacts(**self.model_dump())


class SavedListingResponse(BaseModel):
    id: int
    title: str
    description: str
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_saved(cls, listing: SavedListing) -> "SavedListingResponse":
        return cls(
            id=listing.listing_id,
            title=listing.title,
            description=listing.description,
            created_at=listing.created_at,
        )


class SavedListingsResponse(BaseModel):
    data: List[SavedListingResponse]


class GenerateListingResponse(BaseModel):
    listing: str
    balance: int
    debited: int
    request_id: str = Field(alias="requestId")
    saved: Optional[SavedListingResponse] = None

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "GenerateListingRequest",
    "GenerateListingResponse",
    "SavedListingResponse",
    "SavedListingsResponse",
]
