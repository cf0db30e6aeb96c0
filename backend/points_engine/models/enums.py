"""
Points Engine — Domain Enumerations
====================================

What:  The fixed vocabularies shared by models, schemas and services.
Why:   Stored as short VARCHAR columns (like every status column we keep);
       the enum is the single place the allowed values are spelled out.
"""

import enum


class BookCondition(str, enum.Enum):
    NEW = "NEW"
    LIKE_NEW = "LIKE_NEW"
    VERY_GOOD = "VERY_GOOD"
    GOOD = "GOOD"
    ACCEPTABLE = "ACCEPTABLE"


class TransactionType(str, enum.Enum):
    """
    Kind of point movement recorded on the ledger.

    EARNED_LISTING  — bonus for listing a book
    EARNED_EXCHANGE — lister paid when an exchange completes
    SPENT_REQUEST   — requester pays when requesting a book
    REFUND          — request declined/cancelled, points returned
    BONUS           — points purchased through the payment processor
    """
    EARNED_LISTING = "EARNED_LISTING"
    EARNED_EXCHANGE = "EARNED_EXCHANGE"
    SPENT_REQUEST = "SPENT_REQUEST"
    REFUND = "REFUND"
    BONUS = "BONUS"


# Credits that count towards "total earned" on the wallet summary.
# Purchased points (BONUS) and refunds are deliberately excluded.
EARNING_TYPES = (TransactionType.EARNED_LISTING, TransactionType.EARNED_EXCHANGE)


class RequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"
