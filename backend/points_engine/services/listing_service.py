"""
Points Engine — Listing Service
================================

What:  Lists a book for exchange: price it, store it, pay the listing bonus.
Why:   The listing's point_value is fixed here, once, and the lister's bonus
       must be recorded together with the book it was earned for.
How:   1. read-only: count similar available listings and pending demand
       2. ValuationEstimator (no transaction open while the model thinks)
       3. one UnitOfWork: INSERT book + credit EARNED_LISTING bonus
Who:   routes/books.py (POST /api/books).
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from points_engine.database import UnitOfWork
from points_engine.exceptions import NotFoundError, ValidationError
from points_engine.models.book import Book, BookRequest
from points_engine.models.enums import BookCondition, RequestStatus, TransactionType
from points_engine.services.ledger_service import LedgerService
from points_engine.services.valuation import ValuationEstimator, ValuationResult

logger = logging.getLogger(__name__)


@dataclass
class ListingResult:
    book: Book
    valuation: ValuationResult
    listing_bonus: int
    balance: int


def _similar_to(title: str, author: str):
    """Case-insensitive substring match on both title and author."""
    return (
        Book.title.icontains(title, autoescape=True),
        Book.author.icontains(author, autoescape=True),
    )


class ListingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerService,
        estimator: ValuationEstimator,
        listing_bonus: int = 10,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._estimator = estimator
        self._listing_bonus = listing_bonus

    async def count_market_signals(self, session: AsyncSession, title: str, author: str):
        """Returns (similar available listings, pending requests on similar listings)."""
        similar = await session.scalar(
            select(func.count()).select_from(Book).where(
                *_similar_to(title, author), Book.is_available.is_(True)
            )
        )
        pending = await session.scalar(
            select(func.count())
            .select_from(BookRequest)
            .join(Book, Book.id == BookRequest.book_id)
            .where(*_similar_to(title, author), BookRequest.status == RequestStatus.PENDING.value)
        )
        return int(similar or 0), int(pending or 0)

    async def create_listing(
        self,
        user_id: str,
        title: str,
        author: str,
        condition: str,
        description: Optional[str] = None,
        location: Optional[str] = None,
    ) -> ListingResult:
        try:
            condition = BookCondition(condition)
        except ValueError:
            raise ValidationError(
                f"Unknown condition '{condition}'; expected one of "
                + ", ".join(c.value for c in BookCondition),
                field="condition",
            )

        async with self._session_factory() as session:
            await self._ledger.get_balance(session, user_id)  # NotFoundError for unknown users
            similar, pending = await self.count_market_signals(session, title, author)

        valuation = await self._estimator.estimate(title, author, condition, similar, pending)

        async with UnitOfWork(self._session_factory) as session:
            book = Book(
                id=uuid.uuid4(),
                owner_id=user_id,
                title=title,
                author=author,
                condition=condition.value,
                description=description,
                location=location,
                point_value=valuation.points,
                is_available=True,
            )
            session.add(book)
            await session.flush()

            if self._listing_bonus > 0:
                movement = await self._ledger.credit(
                    session,
                    user_id,
                    self._listing_bonus,
                    TransactionType.EARNED_LISTING,
                    f'Listed "{title}" for exchange',
                    book_id=book.id,
                )
                balance = movement.balance
            else:
                balance = await self._ledger.get_balance(session, user_id)

        logger.info(
            "Listed book %s for %s at %d points (%s; similar=%d pending=%d)",
            book.id, user_id, valuation.points, valuation.source, similar, pending,
        )
        return ListingResult(
            book=book,
            valuation=valuation,
            listing_bonus=self._listing_bonus,
            balance=balance,
        )

    async def get_book(self, session: AsyncSession, book_id: uuid.UUID) -> Book:
        book = await session.get(Book, book_id)
        if book is None:
            raise NotFoundError(resource="book", resource_id=str(book_id))
        return book
