"""
Points Engine — Exchange Routes
================================

What:  HTTP surface of the request lifecycle (request, accept, decline,
       cancel, complete) and the incoming/outgoing request lists.
Why:   Every action here moves points; the routes only map HTTP to
       ExchangeService calls and its results to response models.

Error mapping (via global handlers):
    InsufficientBalanceError → 409, PermissionDeniedError → 403,
    NotFoundError → 404, ValidationError → 400
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.dependencies import get_container, get_current_user_id, get_read_session
from points_engine.models.enums import RequestStatus
from points_engine.schemas.book import (
    BookRequestCreate,
    BookRequestResponse,
    ExchangeActionResponse,
)
from points_engine.schemas.common import ErrorResponse
from points_engine.services.container import ServiceContainer
from points_engine.services.exchange_service import ExchangeResult

router = APIRouter(prefix="/api/exchange", tags=["Exchange"])

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"description": "Insufficient balance", "model": ErrorResponse},
}


def _to_response(result: ExchangeResult) -> ExchangeActionResponse:
    return ExchangeActionResponse(
        request=BookRequestResponse.model_validate(result.request),
        balance=result.balance,
    )


@router.post(
    "/requests",
    response_model=ExchangeActionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_ERRORS,
    summary="Request a book (debits its point value)",
)
async def request_book(
    body: BookRequestCreate,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> ExchangeActionResponse:
    result = await container.exchanges.request_book(user_id, body.book_id, body.message)
    return _to_response(result)


@router.post("/requests/{request_id}/accept", response_model=ExchangeActionResponse, responses=_ERRORS)
async def accept_request(
    request_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> ExchangeActionResponse:
    return _to_response(await container.exchanges.accept_request(user_id, request_id))


@router.post("/requests/{request_id}/decline", response_model=ExchangeActionResponse, responses=_ERRORS)
async def decline_request(
    request_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> ExchangeActionResponse:
    return _to_response(await container.exchanges.decline_request(user_id, request_id))


@router.post("/requests/{request_id}/cancel", response_model=ExchangeActionResponse, responses=_ERRORS)
async def cancel_request(
    request_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> ExchangeActionResponse:
    return _to_response(await container.exchanges.cancel_request(user_id, request_id))


@router.post("/requests/{request_id}/complete", response_model=ExchangeActionResponse, responses=_ERRORS)
async def complete_exchange(
    request_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> ExchangeActionResponse:
    return _to_response(await container.exchanges.complete_exchange(user_id, request_id))


@router.get("/requests", response_model=List[BookRequestResponse], responses={400: {"model": ErrorResponse}})
async def list_requests(
    direction: str = Query(default="incoming", pattern="^(incoming|outgoing)$"),
    status_filter: Optional[RequestStatus] = Query(default=None, alias="status"),
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> List[BookRequestResponse]:
    rows = await container.exchanges.list_requests(db, user_id, direction, status_filter)
    return [BookRequestResponse.model_validate(r) for r in rows]
