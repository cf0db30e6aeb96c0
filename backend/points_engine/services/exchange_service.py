"""
Points Engine — Exchange Service
=================================

What:  The book request lifecycle and the point movements it causes.
Why:   Requesting a book costs points, a decline/cancel refunds them, and a
       completed exchange pays the lister. Each of those must happen exactly
       once per request, even under concurrent clicks.
How:   Every flow is one UnitOfWork. Status changes are conditional UPDATEs
       (WHERE status = <expected>); only the caller whose UPDATE matched goes
       on to move points, so a request is refunded or paid out at most once.
Who:   routes/exchange.py.

Lifecycle:
    PENDING ──accept──▶ ACCEPTED ──complete──▶ COMPLETED   (lister +points)
       │
       ├──decline──▶ DECLINED   (requester refunded)
       ├──cancel───▶ CANCELLED  (requester refunded)
       └─(another request accepted or completed)─▶ DECLINED (refunded)

    request_book debits the requester the book's point_value up front.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from points_engine.database import UnitOfWork
from points_engine.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from points_engine.models.book import Book, BookRequest
from points_engine.models.enums import RequestStatus, TransactionType
from points_engine.services.ledger_service import LedgerService
from points_engine.services.notifier import Notifier

logger = logging.getLogger(__name__)


@dataclass
class ExchangeResult:
    request: BookRequest
    balance: int
    # (user_id, event, payload) to send once the unit of work has committed
    notifications: List[Tuple[str, str, dict]] = field(default_factory=list)


class ExchangeService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerService,
        notifier: Notifier,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._notifier = notifier

    # ── Helpers ───────────────────────────────────────────────────────────
    @staticmethod
    async def _transition(
        session: AsyncSession,
        request_id: uuid.UUID,
        expected: RequestStatus,
        target: RequestStatus,
    ) -> bool:
        """Compare-and-set on the request status. True if this call won."""
        result = await session.execute(
            update(BookRequest)
            .where(BookRequest.id == request_id, BookRequest.status == expected.value)
            .values(status=target.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def _load_request(session: AsyncSession, request_id: uuid.UUID) -> Tuple[BookRequest, Book]:
        request = await session.get(BookRequest, request_id)
        if request is None:
            raise NotFoundError(resource="request", resource_id=str(request_id))
        book = await session.get(Book, request.book_id)
        if book is None:
            raise NotFoundError(resource="book", resource_id=str(request.book_id))
        return request, book

    @staticmethod
    def _require_current_owner(request: BookRequest, book: Book) -> None:
        # A request addressed to a previous owner can no longer be acted on
        if book.owner_id != request.owner_id:
            raise ValidationError("This book is no longer owned by you")

    async def _decline_pending(
        self,
        session: AsyncSession,
        book: Book,
        keep_id: uuid.UUID,
        reason: str,
    ) -> List[Tuple[str, str, dict]]:
        """Decline and refund every PENDING request on the book except keep_id."""
        notifications = []
        others = (
            await session.execute(
                select(BookRequest).where(
                    BookRequest.book_id == book.id,
                    BookRequest.id != keep_id,
                    BookRequest.status == RequestStatus.PENDING.value,
                )
            )
        ).scalars().all()

        for other in others:
            if not await self._transition(session, other.id, RequestStatus.PENDING, RequestStatus.DECLINED):
                continue
            await self._ledger.credit(
                session,
                other.requester_id,
                other.points_offered,
                TransactionType.REFUND,
                f'Refund for "{book.title}" - {reason}',
                book_id=book.id,
            )
            notifications.append((other.requester_id, "request-update", {
                "request_id": str(other.id),
                "book_title": book.title,
                "status": RequestStatus.DECLINED.value,
            }))
        return notifications

    async def _dispatch(self, result: ExchangeResult) -> ExchangeResult:
        for user_id, event, payload in result.notifications:
            await self._notifier.notify(user_id, event, payload)
        return result

    # ── Flows ─────────────────────────────────────────────────────────────
    async def request_book(
        self, requester_id: str, book_id: uuid.UUID, message: Optional[str] = None
    ) -> ExchangeResult:
        """
        Create a PENDING request and debit the requester the book's value.

        Rejected (nothing written) when the book is missing or unavailable,
        is the requester's own, is already promised through an accepted
        request, already has a pending request from them, was
        previously handed by the requester to its current owner, or was once
        owned by the requester. InsufficientBalanceError when they cannot pay.
        """
        async with UnitOfWork(self._session_factory) as session:
            book = await session.get(Book, book_id)
            if book is None:
                raise NotFoundError(resource="book", resource_id=str(book_id))
            if not book.is_available:
                raise ValidationError("This book is not available for exchange", field="book_id")
            if book.owner_id == requester_id:
                raise ValidationError("You cannot request your own book", field="book_id")

            promised = await session.scalar(
                select(BookRequest.id).where(
                    BookRequest.book_id == book_id,
                    BookRequest.status == RequestStatus.ACCEPTED.value,
                ).limit(1)
            )
            if promised is not None:
                raise ValidationError(
                    "This book is already promised to another member", field="book_id"
                )

            pending = await session.scalar(
                select(BookRequest.id).where(
                    BookRequest.book_id == book_id,
                    BookRequest.requester_id == requester_id,
                    BookRequest.status == RequestStatus.PENDING.value,
                ).limit(1)
            )
            if pending is not None:
                raise ValidationError("You already have a pending request for this book")

            # Anti-farming: no buying back a book you handed to this owner
            circular = await session.scalar(
                select(BookRequest.id).where(
                    BookRequest.book_id == book_id,
                    BookRequest.status == RequestStatus.COMPLETED.value,
                    BookRequest.requester_id == book.owner_id,
                    BookRequest.owner_id == requester_id,
                ).limit(1)
            )
            if circular is not None:
                raise ValidationError(
                    "Circular exchange detected. You cannot request a book you "
                    "previously gave to this user."
                )

            previously_owned = await session.scalar(
                select(BookRequest.id).where(
                    BookRequest.book_id == book_id,
                    BookRequest.status == RequestStatus.COMPLETED.value,
                    BookRequest.requester_id == requester_id,
                ).limit(1)
            )
            if previously_owned is not None:
                raise ValidationError("You cannot request a book you once owned")

            request = BookRequest(
                id=uuid.uuid4(),
                book_id=book.id,
                requester_id=requester_id,
                owner_id=book.owner_id,
                points_offered=book.point_value,
                status=RequestStatus.PENDING.value,
                message=message,
            )
            session.add(request)
            await session.flush()

            movement = await self._ledger.debit(
                session,
                requester_id,
                book.point_value,
                TransactionType.SPENT_REQUEST,
                f'Requested "{book.title}" by {book.author}',
                book_id=book.id,
            )

        logger.info(
            "Request %s: %s requested book %s for %d points",
            request.id, requester_id, book.id, book.point_value,
        )
        return await self._dispatch(ExchangeResult(
            request=request,
            balance=movement.balance,
            notifications=[(book.owner_id, "book-request", {
                "request_id": str(request.id),
                "book_id": str(book.id),
                "book_title": book.title,
                "requester_id": requester_id,
                "points_offered": book.point_value,
                "message": message,
            })],
        ))

    async def accept_request(self, owner_id: str, request_id: uuid.UUID) -> ExchangeResult:
        """
        Accept one request; decline and refund every other pending request
        for the same book. Points for the accepted request stay debited until
        the exchange completes. Only one request per book can be ACCEPTED.
        """
        async with UnitOfWork(self._session_factory) as session:
            request, book = await self._load_request(session, request_id)
            if request.owner_id != owner_id:
                raise PermissionDeniedError("Only the book owner can accept requests")
            self._require_current_owner(request, book)

            promised = await session.scalar(
                select(BookRequest.id).where(
                    BookRequest.book_id == book.id,
                    BookRequest.id != request_id,
                    BookRequest.status == RequestStatus.ACCEPTED.value,
                ).limit(1)
            )
            if promised is not None:
                raise ValidationError("Another request for this book has already been accepted")
            if not await self._transition(session, request_id, RequestStatus.PENDING, RequestStatus.ACCEPTED):
                raise ValidationError("This request has already been processed")

            notifications = await self._decline_pending(
                session, book, request_id, "another request accepted"
            )

            await session.refresh(request)
            balance = await self._ledger.get_balance(session, owner_id)

        logger.info(
            "Request %s accepted by %s; %d competing request(s) declined",
            request_id, owner_id, len(notifications),
        )
        notifications.append((request.requester_id, "request-update", {
            "request_id": str(request.id),
            "book_title": book.title,
            "status": RequestStatus.ACCEPTED.value,
        }))
        return await self._dispatch(ExchangeResult(request, balance, notifications))

    async def decline_request(self, owner_id: str, request_id: uuid.UUID) -> ExchangeResult:
        async with UnitOfWork(self._session_factory) as session:
            request, book = await self._load_request(session, request_id)
            if request.owner_id != owner_id:
                raise PermissionDeniedError("Only the book owner can decline requests")
            self._require_current_owner(request, book)
            if not await self._transition(session, request_id, RequestStatus.PENDING, RequestStatus.DECLINED):
                raise ValidationError("This request has already been processed")

            await self._ledger.credit(
                session,
                request.requester_id,
                request.points_offered,
                TransactionType.REFUND,
                f'Refund for "{book.title}" - request declined',
                book_id=book.id,
            )
            await session.refresh(request)
            balance = await self._ledger.get_balance(session, owner_id)

        return await self._dispatch(ExchangeResult(request, balance, [
            (request.requester_id, "request-update", {
                "request_id": str(request.id),
                "book_title": book.title,
                "status": RequestStatus.DECLINED.value,
            }),
        ]))

    async def cancel_request(self, requester_id: str, request_id: uuid.UUID) -> ExchangeResult:
        async with UnitOfWork(self._session_factory) as session:
            request, book = await self._load_request(session, request_id)
            if request.requester_id != requester_id:
                raise PermissionDeniedError("You can only cancel your own requests")
            if not await self._transition(session, request_id, RequestStatus.PENDING, RequestStatus.CANCELLED):
                raise ValidationError("Only pending requests can be cancelled")

            movement = await self._ledger.credit(
                session,
                requester_id,
                request.points_offered,
                TransactionType.REFUND,
                f'Cancelled request for "{book.title}"',
                book_id=book.id,
            )
            await session.refresh(request)

        return await self._dispatch(ExchangeResult(request, movement.balance, [
            (request.owner_id, "request-update", {
                "request_id": str(request.id),
                "book_title": book.title,
                "status": RequestStatus.CANCELLED.value,
            }),
        ]))

    async def complete_exchange(self, owner_id: str, request_id: uuid.UUID) -> ExchangeResult:
        """
        Owner confirms handover: pay the owner, move the book to the
        requester. The book stays available under its new owner. Requests
        still PENDING against the old owner are declined and refunded.
        """
        async with UnitOfWork(self._session_factory) as session:
            request, book = await self._load_request(session, request_id)
            if request.owner_id != owner_id:
                raise PermissionDeniedError("Only the book owner can complete exchanges")
            self._require_current_owner(request, book)
            if not await self._transition(session, request_id, RequestStatus.ACCEPTED, RequestStatus.COMPLETED):
                raise ValidationError("This request must be accepted first")

            moved = await session.execute(
                update(Book)
                .where(Book.id == book.id, Book.owner_id == owner_id)
                .values(owner_id=request.requester_id, is_available=True)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise ValidationError("This book is no longer owned by you")

            movement = await self._ledger.credit(
                session,
                owner_id,
                request.points_offered,
                TransactionType.EARNED_EXCHANGE,
                f'Exchanged "{book.title}"',
                book_id=book.id,
            )
            leftovers = await self._decline_pending(session, book, request_id, "book exchanged")
            await session.refresh(request)

        logger.info(
            "Exchange %s completed: book %s → %s, %d points to %s",
            request_id, book.id, request.requester_id, request.points_offered, owner_id,
        )
        return await self._dispatch(ExchangeResult(request, movement.balance, [
            *leftovers,
            (request.requester_id, "request-update", {
                "request_id": str(request.id),
                "book_title": book.title,
                "status": RequestStatus.COMPLETED.value,
            }),
        ]))

    # ── Reads ─────────────────────────────────────────────────────────────
    async def list_requests(
        self,
        session: AsyncSession,
        user_id: str,
        direction: str = "incoming",
        status: Optional[RequestStatus] = None,
    ) -> List[BookRequest]:
        """Requests received (incoming) or made (outgoing), newest first."""
        if direction == "incoming":
            query = select(BookRequest).where(BookRequest.owner_id == user_id)
        elif direction == "outgoing":
            query = select(BookRequest).where(BookRequest.requester_id == user_id)
        else:
            raise ValidationError("direction must be 'incoming' or 'outgoing'", field="direction")
        if status is not None:
            query = query.where(BookRequest.status == RequestStatus(status).value)
        query = query.order_by(BookRequest.created_at.desc())
        return list((await session.execute(query)).scalars().all())
