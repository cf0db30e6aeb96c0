"""
Points Engine — Book and BookRequest Models
============================================

What:  Listings and the exchange requests made against them.
Why:   The listing flow prices a Book once (point_value) and the exchange flow
       moves that many points through the ledger.

Table Design Rationale:
    - point_value: set once at listing time, CHECK-bounded to [50, 500]
    - book_requests.points_offered: snapshot of point_value when requested, so
      a refund or payout always moves exactly what was debited
    - status columns: VARCHAR(20), values from models.enums.RequestStatus
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from points_engine.database import Base
from points_engine.models.enums import RequestStatus


class Book(Base):
    __tablename__ = "books"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    author: Mapped[str] = mapped_column(String(255), nullable=False)
    condition: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    point_value: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Valuation at listing time; immutable afterwards",
    )

    is_available: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        CheckConstraint(
            "point_value BETWEEN 50 AND 500", name="ck_books_point_value_range"
        ),
        Index("idx_books_available_created", "is_available", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Book(id={self.id}, title='{self.title}', point_value={self.point_value})>"


class BookRequest(Base):
    __tablename__ = "book_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("books.id"), nullable=False, index=True
    )
    requester_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False, index=True
    )
    owner_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False, index=True
    )
    points_offered: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RequestStatus.PENDING.value,
        server_default=text("'PENDING'"),
    )
    message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    book: Mapped[Book] = relationship(lazy="raise")

    def __repr__(self) -> str:
        return f"<BookRequest(id={self.id}, status='{self.status}')>"
