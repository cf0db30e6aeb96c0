"""
Points Engine — Ledger Schemas
===============================

What:  Response models for balances, the wallet summary, transaction history
       and the reconciliation check.
Who:   Returned by routes/ledger.py.

Pagination:
    History is cursor-based. `next_cursor` is the id of the first transaction
    of the next page; pass it back unchanged to continue. Null means the end.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class TransactionResponse(BaseModel):
    id: uuid.UUID = Field(description="Transaction identifier")
    amount: int = Field(description="Signed amount: positive credit, negative debit")
    type: str = Field(description="EARNED_LISTING, EARNED_EXCHANGE, SPENT_REQUEST, REFUND or BONUS")
    description: str
    book_id: Optional[uuid.UUID] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TransactionHistoryResponse(BaseModel):
    transactions: List[TransactionResponse] = Field(description="Newest first")
    next_cursor: Optional[uuid.UUID] = Field(
        default=None,
        description="Cursor for the next page (null if this is the last page)",
    )


class BalanceResponse(BaseModel):
    user_id: str
    points: int = Field(ge=0, description="Current balance")


class PointsSummaryResponse(BaseModel):
    """
    What:  The wallet header: balance plus lifetime totals.

    total_earned counts listing and exchange credits only; purchased points
    and refunds are excluded. total_spent is the absolute sum of debits.
    """
    current_points: int
    total_earned: int
    total_spent: int
    transaction_count: int


class ConsistencyResponse(BaseModel):
    """Balance-versus-ledger comparison used for reconciliation."""
    user_id: str
    cached_balance: int
    ledger_sum: int
    consistent: bool


class AccountRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


class AccountResponse(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    points: int
    created_at: datetime

    model_config = {"from_attributes": True}
