"""ORM models. Importing this package registers every table on Base.metadata."""

from points_engine.models.book import Book, BookRequest
from points_engine.models.enums import BookCondition, RequestStatus, TransactionType
from points_engine.models.ledger import PaymentEvent, PointTransaction
from points_engine.models.user import User

__all__ = [
    "Book",
    "BookCondition",
    "BookRequest",
    "PaymentEvent",
    "PointTransaction",
    "RequestStatus",
    "TransactionType",
    "User",
]
