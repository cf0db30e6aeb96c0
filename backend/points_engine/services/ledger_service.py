"""
Points Engine — Ledger Service (Credit/Debit Operations)
=========================================================

What:  The ONLY writer of balances and point transactions, plus the read API
       over them (balance, history, wallet summary, reconciliation check).
Why:   Every point movement must change the cached balance and append its
       transaction row together, and never take a balance below zero.
How:   apply_movement() runs inside the caller's UnitOfWork:
           1. one conditional UPDATE on the user row:
                UPDATE users SET points = points + :amount
                WHERE id = :user AND points + :amount >= 0
                RETURNING points
           2. INSERT the PointTransaction row and flush
       The UPDATE takes the row lock, so concurrent movements on one user
       serialize in the database; the WHERE clause is the floor check, applied
       atomically with the write. Zero rows updated means "missing user" or
       "insufficient balance", and nothing has been written.
Who:   ListingService, ExchangeService, PaymentIntakeService, ledger routes.

Invariant:
    users.points == SUM(point_transactions.amount) for every user, at every
    commit boundary. check_consistency() verifies it for one user.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from points_engine.exceptions import (
    DatabaseError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from points_engine.models.enums import EARNING_TYPES, TransactionType
from points_engine.models.ledger import PointTransaction
from points_engine.models.user import User
from points_engine.schemas.ledger import ConsistencyResponse, PointsSummaryResponse

logger = logging.getLogger(__name__)

HISTORY_DEFAULT_LIMIT = 20
HISTORY_MAX_LIMIT = 50


@dataclass(frozen=True)
class MovementResult:
    """Outcome of one applied movement."""
    balance: int
    transaction_id: uuid.UUID


class LedgerService:
    """
    Business logic for the points ledger.

    Stateless: every method receives the session it must use. Write methods
    never commit; the enclosing UnitOfWork decides, so a movement can be
    composed atomically with other writes (a book insert, a payment-event row,
    a request status change).
    """

    # ── Writes ────────────────────────────────────────────────────────────
    async def apply_movement(
        self,
        session: AsyncSession,
        user_id: str,
        amount: int,
        type: TransactionType,
        description: str,
        book_id: Optional[uuid.UUID] = None,
    ) -> MovementResult:
        """
        Apply one signed movement to a user's balance and record it.

        Args:
            amount: Non-zero; positive credits, negative debits.
            type: One of TransactionType.
            description: Human-readable reason, shown in the history.

        Returns:
            MovementResult with the new balance and the transaction id.

        Raises:
            ValidationError: amount is zero/not an int, or type is unknown.
            NotFoundError: the user does not exist.
            InsufficientBalanceError: the debit would go below zero.
            DatabaseError: unexpected store failure.

        On any raise, this call has written nothing that will survive the
        enclosing unit of work's rollback.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValidationError(
                message="Movement amount must be a non-zero integer",
                field="amount",
                context={"amount": repr(amount)},
            )
        try:
            tx_type = TransactionType(type)
        except ValueError:
            raise ValidationError(
                message=f"Unknown transaction type '{type}'",
                field="type",
            )

        try:
            stmt = (
                update(User)
                .where(User.id == user_id, User.points + amount >= 0)
                .values(points=User.points + amount)
                .returning(User.points)
                .execution_options(synchronize_session=False)
            )
            new_balance = (await session.execute(stmt)).scalar_one_or_none()

            if new_balance is None:
                current = (
                    await session.execute(select(User.points).where(User.id == user_id))
                ).scalar_one_or_none()
                if current is None:
                    raise NotFoundError(resource="user", resource_id=user_id)
                logger.info(
                    "Debit refused for user %s: needs %d, has %d",
                    user_id, -amount, current,
                )
                raise InsufficientBalanceError(required=-amount, available=current)

            # created_at is taken after the row lock, so per-user order is monotonic
            tx = PointTransaction(
                id=uuid.uuid4(),
                user_id=user_id,
                amount=amount,
                type=tx_type.value,
                description=description,
                book_id=book_id,
                created_at=datetime.now(timezone.utc),
            )
            session.add(tx)
            await session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Ledger write failed for user %s (amount=%d, type=%s): %s",
                user_id, amount, tx_type.value, str(e),
            )
            raise DatabaseError(
                message="Failed to record point movement",
                context={"user_id": user_id, "error_type": e.__class__.__name__},
            ) from e

        logger.info(
            "Ledger: user=%s amount=%+d type=%s balance=%d tx=%s",
            user_id, amount, tx_type.value, new_balance, tx.id,
        )
        return MovementResult(balance=new_balance, transaction_id=tx.id)

    async def credit(
        self,
        session: AsyncSession,
        user_id: str,
        points: int,
        type: TransactionType,
        description: str,
        book_id: Optional[uuid.UUID] = None,
    ) -> MovementResult:
        """Add `points` (> 0) to the user's balance."""
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError(message="Credit must be a positive integer", field="points")
        return await self.apply_movement(session, user_id, points, type, description, book_id)

    async def debit(
        self,
        session: AsyncSession,
        user_id: str,
        points: int,
        type: TransactionType,
        description: str,
        book_id: Optional[uuid.UUID] = None,
    ) -> MovementResult:
        """Remove `points` (> 0) from the user's balance, refusing to go below zero."""
        if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
            raise ValidationError(message="Debit must be a positive integer", field="points")
        return await self.apply_movement(session, user_id, -points, type, description, book_id)

    async def ensure_account(
        self,
        session: AsyncSession,
        user_id: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        """
        Provision the local row for an identity-provider user (balance 0).

        Idempotent: an existing row is returned, with name/email refreshed when
        given. Balances are never touched here. A concurrent first-time insert
        surfaces as IntegrityError at flush; callers retry in a fresh unit of
        work, where the row is then found.
        """
        if not user_id or len(user_id) > 64:
            raise ValidationError(message="Invalid user id", field="user_id")

        user = await session.get(User, user_id)
        if user is None:
            user = User(id=user_id, name=name, email=email, points=0)
            session.add(user)
            await session.flush()
            logger.info("Provisioned account for user %s", user_id)
            return user

        if name is not None:
            user.name = name
        if email is not None:
            user.email = email
        return user

    # ── Reads ─────────────────────────────────────────────────────────────
    async def get_balance(self, session: AsyncSession, user_id: str) -> int:
        points = (
            await session.execute(select(User.points).where(User.id == user_id))
        ).scalar_one_or_none()
        if points is None:
            raise NotFoundError(resource="user", resource_id=user_id)
        return points

    async def get_history(
        self,
        session: AsyncSession,
        user_id: str,
        cursor: Optional[uuid.UUID] = None,
        limit: int = HISTORY_DEFAULT_LIMIT,
    ) -> Tuple[List[PointTransaction], Optional[uuid.UUID]]:
        """
        One page of the user's transactions, newest first.

        Ordering is (created_at DESC, id DESC). `cursor` is the id of the
        first row of the requested page, as returned in next_cursor by the
        previous call. Returns (rows, next_cursor); next_cursor is None on the
        last page.

        Cursor Pagination Algorithm:
            Fetch limit + 1 rows starting AT the cursor row. If we got the
            extra row, it becomes the next cursor and is dropped from this page.
        """
        if limit < 1 or limit > HISTORY_MAX_LIMIT:
            raise ValidationError(
                message=f"limit must be between 1 and {HISTORY_MAX_LIMIT}",
                field="limit",
            )

        try:
            query = select(PointTransaction).where(PointTransaction.user_id == user_id)

            if cursor is not None:
                anchor = (
                    await session.execute(
                        select(PointTransaction.created_at, PointTransaction.id).where(
                            PointTransaction.id == cursor,
                            PointTransaction.user_id == user_id,
                        )
                    )
                ).one_or_none()
                if anchor is None:
                    raise ValidationError(message="Invalid pagination cursor", field="cursor")
                anchor_created, anchor_id = anchor
                query = query.where(
                    or_(
                        PointTransaction.created_at < anchor_created,
                        and_(
                            PointTransaction.created_at == anchor_created,
                            PointTransaction.id <= anchor_id,
                        ),
                    )
                )

            query = query.order_by(
                PointTransaction.created_at.desc(), PointTransaction.id.desc()
            ).limit(limit + 1)
            rows = list((await session.execute(query)).scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error reading history for %s: %s", user_id, str(e), exc_info=True)
            raise DatabaseError(message="Failed to load transaction history") from e

        next_cursor = None
        if len(rows) > limit:
            next_cursor = rows.pop().id
        return rows, next_cursor

    async def get_summary(self, session: AsyncSession, user_id: str) -> PointsSummaryResponse:
        """
        Wallet header numbers.

        total_earned: positive EARNED_LISTING / EARNED_EXCHANGE amounts only.
        total_spent:  absolute sum of all negative amounts.
        """
        current = await self.get_balance(session, user_id)

        earned_q = select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(
            PointTransaction.user_id == user_id,
            PointTransaction.amount > 0,
            PointTransaction.type.in_([t.value for t in EARNING_TYPES]),
        )
        spent_q = select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(
            PointTransaction.user_id == user_id,
            PointTransaction.amount < 0,
        )
        count_q = select(func.count()).select_from(PointTransaction).where(
            PointTransaction.user_id == user_id
        )

        earned = (await session.execute(earned_q)).scalar_one()
        spent = (await session.execute(spent_q)).scalar_one()
        count = (await session.execute(count_q)).scalar_one()

        return PointsSummaryResponse(
            current_points=current,
            total_earned=int(earned),
            total_spent=abs(int(spent)),
            transaction_count=int(count),
        )

    async def check_consistency(self, session: AsyncSession, user_id: str) -> ConsistencyResponse:
        """
        Compare the cached balance with the ledger sum.

        A mismatch is logged at ERROR; it can only come from a write that
        bypassed this service.
        """
        cached = await self.get_balance(session, user_id)
        ledger_sum = (
            await session.execute(
                select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(
                    PointTransaction.user_id == user_id
                )
            )
        ).scalar_one()

        consistent = cached == int(ledger_sum)
        if not consistent:
            logger.error(
                "LEDGER MISMATCH user=%s cached=%d ledger_sum=%d",
                user_id, cached, ledger_sum,
            )
        return ConsistencyResponse(
            user_id=user_id,
            cached_balance=cached,
            ledger_sum=int(ledger_sum),
            consistent=consistent,
        )
