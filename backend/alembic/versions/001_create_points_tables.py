"""Create points economy tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  users, books, book_requests, point_transactions, payment_events.
Why:   The ledger invariants are enforced in the schema as well as in code:
       users.points >= 0, point_transactions.amount <> 0, books.point_value
       in [50, 500], and payment_events.event_id as the idempotency key.

Rollback: downgrade() drops every table (destructive).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column(
            "points",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Cached balance; always equals the sum of point_transactions.amount",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("points >= 0", name="ck_users_points_non_negative"),
    )

    op.create_table(
        "books",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("author", sa.String(255), nullable=False),
        sa.Column("condition", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column(
            "point_value",
            sa.Integer(),
            nullable=False,
            comment="Valuation at listing time; immutable afterwards",
        ),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("point_value BETWEEN 50 AND 500", name="ck_books_point_value_range"),
    )
    op.create_index("ix_books_owner_id", "books", ["owner_id"])
    op.create_index("idx_books_available_created", "books", ["is_available", "created_at"])

    op.create_table(
        "book_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("book_id", sa.Uuid(), sa.ForeignKey("books.id"), nullable=False),
        sa.Column("requester_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("owner_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("points_offered", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("message", sa.String(500), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_book_requests_book_id", "book_requests", ["book_id"])
    op.create_index("ix_book_requests_requester_id", "book_requests", ["requester_id"])
    op.create_index("ix_book_requests_owner_id", "book_requests", ["owner_id"])

    op.create_table(
        "point_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("book_id", sa.Uuid(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.CheckConstraint("amount <> 0", name="ck_point_transactions_amount_non_zero"),
    )
    op.create_index(
        "idx_point_transactions_user_created",
        "point_transactions",
        ["user_id", "created_at"],
    )

    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("checkout_session_id", sa.String(255), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Uuid(),
            sa.ForeignKey("point_transactions.id"),
            nullable=True,
        ),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_payment_events_user_id", "payment_events", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_events_user_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("idx_point_transactions_user_created", table_name="point_transactions")
    op.drop_table("point_transactions")
    op.drop_index("ix_book_requests_owner_id", table_name="book_requests")
    op.drop_index("ix_book_requests_requester_id", table_name="book_requests")
    op.drop_index("ix_book_requests_book_id", table_name="book_requests")
    op.drop_table("book_requests")
    op.drop_index("idx_books_available_created", table_name="books")
    op.drop_index("ix_books_owner_id", table_name="books")
    op.drop_table("books")
    op.drop_table("users")
