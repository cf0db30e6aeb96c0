"""
Points Engine — Listing Service Tests
======================================

What:  Tests for listing a book: market signals, valuation, book insert and
       listing bonus.
Why:   The listing fixes a book's point value for its whole life and pays
       the lister; both must land together or not at all.

What we test:
    ✅ Fallback pricing from similar listings and pending demand
    ✅ Model pricing when a model answers
    ✅ Listing bonus recorded as EARNED_LISTING, linked to the book
    ✅ Failure during the credit leaves no orphan book
    ✅ Unknown users cannot list; unknown conditions are rejected before pricing
"""

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from conftest import FakeLLM
from points_engine.exceptions import DatabaseError, NotFoundError, ValidationError
from points_engine.models.book import Book
from points_engine.models.enums import BookCondition
from points_engine.services.listing_service import ListingService
from points_engine.services.valuation import ValuationEstimator


async def _book_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Book))


class TestCreateListing:
    @pytest.mark.asyncio
    async def test_first_copy_priced_as_rare_and_bonus_paid(self, container, funded_user):
        """GOOD, no similar listings, no demand → 100 × 1.0 × 1.5 × 1.0 = 150."""
        await funded_user("alice", 40)

        result = await container.listings.create_listing(
            "alice", "Dune", "Frank Herbert", BookCondition.GOOD, location="Leeds"
        )

        assert result.book.point_value == 150
        assert result.valuation.source == "fallback"
        assert result.valuation.breakdown.similar_listings == 0
        assert result.listing_bonus == 10
        assert result.balance == 50

        async with container.session_factory() as session:
            rows, _ = await container.ledger.get_history(session, "alice")
            stored = await session.get(Book, result.book.id)
        assert rows[0].type == "EARNED_LISTING"
        assert rows[0].amount == 10
        assert rows[0].book_id == result.book.id
        assert rows[0].description == 'Listed "Dune" for exchange'
        assert stored.owner_id == "alice"
        assert stored.is_available is True
        assert stored.location == "Leeds"

    @pytest.mark.asyncio
    async def test_market_signals_counted_case_insensitively(self, container, funded_user):
        await funded_user("alice")
        await funded_user("bob", 1000)
        first = await container.listings.create_listing(
            "alice", "Dune", "Frank Herbert", BookCondition.GOOD
        )
        await container.listings.create_listing(
            "alice", "Dune Messiah", "Frank Herbert", BookCondition.GOOD
        )
        await container.exchanges.request_book("bob", first.book.id)

        async with container.session_factory() as session:
            similar, pending = await container.listings.count_market_signals(
                session, "dune", "frank herbert"
            )

        assert similar == 2
        assert pending == 1

    @pytest.mark.asyncio
    async def test_signals_feed_the_fallback_formula(self, container, funded_user):
        """Two similar listings (×1.3) and one pending request (×1.05)."""
        await funded_user("alice")
        await funded_user("bob", 1000)
        first = await container.listings.create_listing(
            "alice", "Dune", "Frank Herbert", BookCondition.GOOD
        )
        await container.listings.create_listing(
            "alice", "Dune", "Frank Herbert", BookCondition.ACCEPTABLE
        )
        await container.exchanges.request_book("bob", first.book.id)

        result = await container.listings.create_listing(
            "bob", "Dune", "Frank Herbert", BookCondition.NEW
        )

        # 100 × 1.5 × 1.3 × 1.05 = 204.75 → 200
        assert result.valuation.breakdown.similar_listings == 2
        assert result.valuation.breakdown.pending_requests == 1
        assert result.book.point_value == 200

    @pytest.mark.asyncio
    async def test_model_price_used_when_available(self, container, funded_user):
        await funded_user("alice")
        llm = FakeLLM('{"points": 420, "reasoning": "Signed first edition"}')
        service = ListingService(
            container.session_factory,
            container.ledger,
            ValuationEstimator(llm, timeout_seconds=1),
            listing_bonus=10,
        )

        result = await service.create_listing("alice", "Dune", "Frank Herbert", BookCondition.NEW)

        assert result.book.point_value == 420
        assert result.valuation.source == "model"
        assert len(llm.prompts) == 1

    @pytest.mark.asyncio
    async def test_no_bonus_configured(self, container, funded_user):
        await funded_user("alice", 25)
        service = ListingService(
            container.session_factory, container.ledger, container.estimator, listing_bonus=0
        )

        result = await service.create_listing("alice", "Dune", "Frank Herbert", BookCondition.GOOD)

        assert result.listing_bonus == 0
        assert result.balance == 25

    @pytest.mark.asyncio
    async def test_credit_failure_leaves_no_book(self, container, funded_user):
        await funded_user("alice")

        with patch.object(
            container.ledger, "credit", side_effect=DatabaseError("Failed to record point movement")
        ):
            with pytest.raises(DatabaseError):
                await container.listings.create_listing(
                    "alice", "Dune", "Frank Herbert", BookCondition.GOOD
                )

        assert await _book_count(container.session_factory) == 0
        async with container.session_factory() as session:
            assert await container.ledger.get_balance(session, "alice") == 0

    @pytest.mark.asyncio
    async def test_unknown_user_cannot_list(self, container):
        with pytest.raises(NotFoundError):
            await container.listings.create_listing(
                "ghost", "Dune", "Frank Herbert", BookCondition.GOOD
            )
        assert await _book_count(container.session_factory) == 0

    @pytest.mark.asyncio
    async def test_unknown_condition_rejected_before_pricing(self, container, funded_user):
        await funded_user("alice")
        llm = FakeLLM('{"points": 300}')
        service = ListingService(
            container.session_factory,
            container.ledger,
            ValuationEstimator(llm, timeout_seconds=1),
            listing_bonus=10,
        )

        with pytest.raises(ValidationError) as exc_info:
            await service.create_listing("alice", "Dune", "Frank Herbert", "PRISTINE")

        assert exc_info.value.field == "condition"
        assert llm.prompts == []
        assert await _book_count(container.session_factory) == 0

    @pytest.mark.asyncio
    async def test_condition_accepted_as_plain_string(self, container, funded_user):
        await funded_user("alice")
        result = await container.listings.create_listing("alice", "Dune", "Frank Herbert", "NEW")
        assert result.book.condition == "NEW"
        assert result.book.point_value == 230

    @pytest.mark.asyncio
    async def test_get_book_not_found(self, container):
        async with container.session_factory() as session:
            with pytest.raises(NotFoundError):
                await container.listings.get_book(session, uuid.uuid4())
