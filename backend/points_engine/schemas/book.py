"""
Points Engine — Listing, Exchange and Recommendation Schemas
=============================================================

What:  Request/response models for routes/books.py and routes/exchange.py.
Why:   Input limits live here so routes stay thin. Business vocabulary (the
       book condition) is checked by the service so a bad value gets the same
       400 validation_error envelope as every other rule violation.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from points_engine.services.valuation import ValuationResult


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════

class CreateListingRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    author: str = Field(min_length=1, max_length=255)
    condition: str = Field(
        max_length=20, description="NEW, LIKE_NEW, VERY_GOOD, GOOD or ACCEPTABLE"
    )
    description: Optional[str] = Field(default=None, max_length=2000)
    location: Optional[str] = Field(default=None, max_length=255)

    @field_validator("title", "author")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class BookRequestCreate(BaseModel):
    book_id: uuid.UUID
    message: Optional[str] = Field(default=None, max_length=500)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════

class BookResponse(BaseModel):
    id: uuid.UUID
    owner_id: str
    title: str
    author: str
    condition: str
    description: Optional[str] = None
    location: Optional[str] = None
    point_value: int
    is_available: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ListingResponse(BaseModel):
    """
    What:  Result of listing a book.
    Why:   The client shows the price, how it was reached, and the new balance
           after the listing bonus in one round trip.
    """
    book: BookResponse
    valuation: ValuationResult
    listing_bonus: int
    balance: int


class BookRequestResponse(BaseModel):
    id: uuid.UUID
    book_id: uuid.UUID
    requester_id: str
    owner_id: str
    points_offered: int
    status: str
    message: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ExchangeActionResponse(BaseModel):
    request: BookRequestResponse
    balance: int = Field(description="Acting user's balance after the action")


class RecommendationItem(BaseModel):
    book: BookResponse
    score: float
    reason: str


class RecommendationList(BaseModel):
    recommendations: List[RecommendationItem]
    is_personalized: bool
