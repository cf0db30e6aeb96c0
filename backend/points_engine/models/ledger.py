"""
Points Engine — Ledger Models
==============================

What:  The append-only point transaction log and the payment-event
       idempotency table.
Why:   The log is the audit trail the cached balance must always agree with;
       the payment-event table turns "at most one credit per external event"
       into a primary-key constraint.

Query Patterns:
    - History page: WHERE user_id = :u ORDER BY created_at DESC, id DESC
      → idx_point_transactions_user_created
    - Duplicate webhook: lookup by payment_events.event_id (primary key)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from points_engine.database import Base


class PointTransaction(Base):
    """
    One point movement. Immutable once created: rows are only ever inserted.

    amount > 0 is a credit, amount < 0 a debit; zero is rejected.
    """

    __tablename__ = "point_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    book_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_point_transactions_amount_non_zero"),
        Index("idx_point_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PointTransaction(id={self.id}, user_id='{self.user_id}', "
            f"amount={self.amount}, type='{self.type}')>"
        )


class PaymentEvent(Base):
    """
    A processed payment-completion event.

    The primary key on event_id is the idempotency guard: a redelivered event
    cannot insert a second row, so it can never produce a second credit.
    """

    __tablename__ = "payment_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("point_transactions.id"), nullable=True
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"<PaymentEvent(event_id='{self.event_id}', points={self.points})>"
