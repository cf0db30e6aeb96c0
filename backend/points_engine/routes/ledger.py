"""
Points Engine — Ledger Routes
==============================

What:  The wallet API: balance, summary, transaction history, reconciliation,
       and account provisioning.
Why:   Read-only views over the ledger for the signed-in user. The only write
       here is provisioning the local account row, which never moves points.
Who:   Wallet screen and header points badge.

Endpoints:
    GET /api/points/balance
    GET /api/points/summary
    GET /api/points/history?limit=20&cursor=<uuid>
    GET /api/points/consistency
    PUT /api/points/account
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.database import UnitOfWork
from points_engine.dependencies import get_container, get_current_user_id, get_read_session
from points_engine.schemas.common import ErrorResponse
from points_engine.schemas.ledger import (
    AccountRequest,
    AccountResponse,
    BalanceResponse,
    ConsistencyResponse,
    PointsSummaryResponse,
    TransactionHistoryResponse,
    TransactionResponse,
)
from points_engine.services.container import ServiceContainer
from points_engine.services.ledger_service import HISTORY_DEFAULT_LIMIT, HISTORY_MAX_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/points", tags=["Points"])


@router.get(
    "/balance",
    response_model=BalanceResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Current points balance",
)
async def get_balance(
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> BalanceResponse:
    points = await container.ledger.get_balance(db, user_id)
    return BalanceResponse(user_id=user_id, points=points)


@router.get(
    "/summary",
    response_model=PointsSummaryResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Balance with lifetime earned/spent totals",
)
async def get_summary(
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> PointsSummaryResponse:
    return await container.ledger.get_summary(db, user_id)


@router.get(
    "/history",
    response_model=TransactionHistoryResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Transaction history, newest first",
)
async def get_history(
    limit: int = Query(default=HISTORY_DEFAULT_LIMIT, ge=1, le=HISTORY_MAX_LIMIT),
    cursor: Optional[uuid.UUID] = Query(
        default=None,
        description="next_cursor from the previous page; omit for the first page",
    ),
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> TransactionHistoryResponse:
    rows, next_cursor = await container.ledger.get_history(db, user_id, cursor=cursor, limit=limit)
    return TransactionHistoryResponse(
        transactions=[TransactionResponse.model_validate(r) for r in rows],
        next_cursor=next_cursor,
    )


@router.get(
    "/consistency",
    response_model=ConsistencyResponse,
    summary="Compare cached balance with the transaction log",
)
async def get_consistency(
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_read_session),
) -> ConsistencyResponse:
    return await container.ledger.check_consistency(db, user_id)


@router.put(
    "/account",
    response_model=AccountResponse,
    summary="Provision (or refresh) the local account for the signed-in user",
)
async def put_account(
    body: AccountRequest,
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
) -> AccountResponse:
    """
    Idempotent. Called by the frontend after sign-in; new accounts start at 0.
    A concurrent first sign-in races on the primary key; the loser retries
    once and finds the row.
    """
    for attempt in range(2):
        try:
            async with UnitOfWork(container.session_factory) as session:
                user = await container.ledger.ensure_account(
                    session, user_id, name=body.name, email=body.email
                )
            return AccountResponse.model_validate(user)
        except IntegrityError:
            if attempt:
                raise
            logger.info("Concurrent account provisioning for %s; retrying", user_id)
