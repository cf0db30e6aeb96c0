"""
Points Engine — Book Listing and Recommendation Routes
=======================================================

What:  List a book (priced by the valuation estimator, +listing bonus), read
       a listing, and fetch recommendations.

Endpoints:
    POST /api/books                      create listing (auth)
    GET  /api/books/recommendations      personalized when signed in
    GET  /api/books/trending             most requested available listings
    GET  /api/books/{book_id}            one listing
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.dependencies import (
    get_container,
    get_current_user_id,
    get_optional_user_id,
    get_read_session,
)
from points_engine.schemas.book import (
    BookResponse,
    CreateListingRequest,
    ListingResponse,
    RecommendationList,
)
from points_engine.schemas.common import ErrorResponse
from points_engine.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/books", tags=["Books"])


@router.post(
    "",
    response_model=ListingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Unknown book condition", "model": ErrorResponse},
        404: {"description": "Account not provisioned", "model": ErrorResponse},
    },
    summary="List a book for exchange",
)
async def create_listing(
    body: CreateListingRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> ListingResponse:
    result = await container.listings.create_listing(
        user_id,
        title=body.title,
        author=body.author,
        condition=body.condition,
        description=body.description,
        location=body.location,
    )
    return ListingResponse(
        book=BookResponse.model_validate(result.book),
        valuation=result.valuation,
        listing_bonus=result.listing_bonus,
        balance=result.balance,
    )


@router.get(
    "/recommendations",
    response_model=RecommendationList,
    summary="Recommended listings",
)
async def get_recommendations(
    limit: int = Query(default=6, ge=1, le=20),
    user_id=Depends(get_optional_user_id),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> RecommendationList:
    return await container.recommendations.recommend(db, user_id, limit)


@router.get(
    "/trending",
    response_model=RecommendationList,
    summary="Most requested available listings",
)
async def get_trending(
    limit: int = Query(default=6, ge=1, le=20),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> RecommendationList:
    return await container.recommendations.trending(db, limit)


@router.get(
    "/{book_id}",
    response_model=BookResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get a listing",
)
async def get_book(
    book_id: uuid.UUID,
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> BookResponse:
    return BookResponse.model_validate(await container.listings.get_book(db, book_id))
