"""
Points Engine — User Model
===========================

What:  Local mirror of an identity-provider user, carrying the cached balance.
Why:   The balance lives next to the user row so a single conditional UPDATE
       can both check the floor and apply the delta.

Ownership:
    `points` is owned by LedgerService. Nothing else writes it; the CHECK
    constraint is the last line of defence for the non-negative invariant.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from points_engine.database import Base


class User(Base):
    __tablename__ = "users"

    # Opaque id issued by the identity provider (not generated here)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    points: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
        comment="Cached balance; always equals the sum of point_transactions.amount",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<User(id='{self.id}', points={self.points})>"
