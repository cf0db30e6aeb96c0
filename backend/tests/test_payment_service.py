"""
Points Engine — Payment Event Intake Tests
===========================================

What:  Tests for webhook signature verification and the idempotent
       "checkout completed" → BONUS credit flow.
Why:   This is the only path by which money turns into points. It must pay
       exactly once per event and never for a forged or malformed event.
How:   Signed bodies are built with the same HMAC scheme the processor uses
       (conftest.sign); the intake runs against the in-memory database.

What we test:
    ✅ Signature: valid, rotated secrets, tampered body, stale timestamp,
       malformed headers
    ✅ First delivery credits once; redelivery is a no-op duplicate
    ✅ A twin delivery racing past the pre-check is settled by the event-id key
    ✅ Malformed metadata and bodies: rejected, nothing written
    ✅ Unknown user: nothing written, a later redelivery can still credit
    ✅ Non-checkout events ignored
    ✅ Unsigned mode only as an explicit, loudly logged opt-in
"""

import json
import logging
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import (
    WEBHOOK_SECRET,
    checkout_event,
    count_payment_events,
    count_transactions,
    sign,
)
from points_engine.exceptions import AuthenticationError, NotFoundError, ValidationError
from points_engine.models.ledger import PaymentEvent, PointTransaction
from points_engine.services.payment_service import (
    PaymentIntakeService,
    WebhookSignatureVerifier,
    compute_signature,
)

NOW = 1_700_000_000


def _verifier(now=NOW, tolerance=300):
    return WebhookSignatureVerifier(WEBHOOK_SECRET, tolerance_seconds=tolerance, clock=lambda: now)


class TestWebhookSignatureVerifier:
    """Tests for the Stripe-compatible HMAC check."""

    def test_valid_signature_passes(self):
        body = checkout_event()
        _verifier().verify(body, sign(body, timestamp=NOW))

    def test_any_matching_v1_passes(self):
        """During secret rotation the header carries several signatures."""
        body = checkout_event()
        header = (
            f"t={NOW},v1={compute_signature('whsec_old', NOW, body)},"
            f"v1={compute_signature(WEBHOOK_SECRET, NOW, body)}"
        )
        _verifier().verify(body, header)

    def test_tampered_body_fails(self):
        body = checkout_event(points="1000")
        header = sign(body, timestamp=NOW)
        with pytest.raises(AuthenticationError):
            _verifier().verify(checkout_event(points="9000"), header)

    def test_wrong_secret_fails(self):
        body = checkout_event()
        with pytest.raises(AuthenticationError):
            _verifier().verify(body, sign(body, secret="whsec_attacker", timestamp=NOW))

    def test_stale_timestamp_fails(self):
        body = checkout_event()
        header = sign(body, timestamp=NOW - 301)
        with pytest.raises(AuthenticationError):
            _verifier().verify(body, header)

    def test_timestamp_inside_tolerance_passes(self):
        body = checkout_event()
        _verifier().verify(body, sign(body, timestamp=NOW - 299))

    @pytest.mark.parametrize("header", [
        None,
        "",
        "garbage",
        f"t={NOW}",
        "v1=abcdef",
        "t=yesterday,v1=abcdef",
    ])
    def test_missing_or_malformed_header_fails(self, header):
        with pytest.raises(AuthenticationError):
            _verifier().verify(checkout_event(), header)

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            WebhookSignatureVerifier("")


class TestPaymentIntake:
    """Tests for the full intake flow against the database."""

    @pytest.mark.asyncio
    async def test_first_delivery_credits_once(self, container, funded_user):
        """Balance 0, one "1000 points" event → balance 1000, one BONUS row."""
        await funded_user("user_a")
        body = checkout_event(event_id="evt_purchase_1", user_id="user_a", points="1000")

        outcome = await container.payments.handle_payment_completed(body, sign(body))

        assert outcome.status == "credited"
        assert outcome.balance == 1000
        async with container.session_factory() as session:
            rows = (
                await session.execute(
                    select(PointTransaction).where(PointTransaction.user_id == "user_a")
                )
            ).scalars().all()
            event = await session.get(PaymentEvent, "evt_purchase_1")
        assert len(rows) == 1
        assert rows[0].amount == 1000
        assert rows[0].type == "BONUS"
        assert rows[0].description == "Purchased 1000 points"
        assert event.transaction_id == rows[0].id
        assert event.checkout_session_id == "cs_test_1"

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged_without_paying_twice(self, container, funded_user):
        await funded_user("user_a")
        body = checkout_event(event_id="evt_purchase_1", user_id="user_a", points="1000")

        await container.payments.handle_payment_completed(body, sign(body))
        again = await container.payments.handle_payment_completed(body, sign(body))

        assert again.status == "duplicate"
        async with container.session_factory() as session:
            assert await container.ledger.get_balance(session, "user_a") == 1000
        assert await count_transactions(container.session_factory, "user_a") == 1
        assert await count_payment_events(container.session_factory) == 1

    @pytest.mark.asyncio
    async def test_concurrent_delivery_settles_on_unique_event_id(self, container, funded_user):
        """A delivery that passes the pre-check after a twin committed is a duplicate."""
        await funded_user("user_a")
        body = checkout_event(event_id="evt_twin", user_id="user_a", points="1000")
        service = container.payments
        original_get = AsyncSession.get
        state = {"twin": None}

        async def get_while_twin_commits(session, entity, ident, **kwargs):
            if entity is PaymentEvent and state["twin"] is None:
                state["twin"] = "running"
                state["twin"] = await service.handle_payment_completed(body, sign(body))
                return None
            return await original_get(session, entity, ident, **kwargs)

        with patch.object(AsyncSession, "get", get_while_twin_commits):
            outcome = await service.handle_payment_completed(body, sign(body))

        assert state["twin"].status == "credited"
        assert outcome.status == "duplicate"
        async with container.session_factory() as session:
            assert await container.ledger.get_balance(session, "user_a") == 1000
        assert await count_transactions(container.session_factory, "user_a") == 1
        assert await count_payment_events(container.session_factory) == 1

    @pytest.mark.asyncio
    async def test_distinct_events_each_credit(self, container, funded_user):
        await funded_user("user_a")
        for event_id in ("evt_a", "evt_b"):
            body = checkout_event(event_id=event_id, points="500")
            await container.payments.handle_payment_completed(body, sign(body))

        async with container.session_factory() as session:
            assert await container.ledger.get_balance(session, "user_a") == 1000

    @pytest.mark.asyncio
    async def test_missing_user_id_rejected_without_mutation(self, container, funded_user):
        await funded_user("user_a")
        body = checkout_event(user_id=None)

        with pytest.raises(ValidationError) as exc_info:
            await container.payments.handle_payment_completed(body, sign(body))

        assert "userId" in exc_info.value.field
        assert await count_transactions(container.session_factory) == 0
        assert await count_payment_events(container.session_factory) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("points", ["0", "-5", "12.5", "1e3", "abc", "", None])
    async def test_invalid_points_rejected(self, container, funded_user, points):
        await funded_user("user_a")
        body = checkout_event(points=points)

        with pytest.raises(ValidationError):
            await container.payments.handle_payment_completed(body, sign(body))

        assert await count_transactions(container.session_factory) == 0

    @pytest.mark.asyncio
    async def test_boolean_points_rejected(self, container, funded_user):
        await funded_user("user_a")
        body = json.dumps({
            "id": "evt_bool",
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"userId": "user_a", "points": True}}},
        }).encode()

        with pytest.raises(ValidationError):
            await container.payments.handle_payment_completed(body, sign(body))

    @pytest.mark.asyncio
    async def test_unknown_user_writes_nothing_and_can_be_retried(self, container, funded_user):
        body = checkout_event(event_id="evt_early", user_id="late_user", points="500")

        with pytest.raises(NotFoundError):
            await container.payments.handle_payment_completed(body, sign(body))
        assert await count_payment_events(container.session_factory) == 0

        await funded_user("late_user")
        outcome = await container.payments.handle_payment_completed(body, sign(body))

        assert outcome.status == "credited"
        assert outcome.balance == 500

    @pytest.mark.asyncio
    async def test_other_event_types_ignored(self, container, funded_user):
        await funded_user("user_a")
        body = checkout_event(event_type="payment_intent.created")

        outcome = await container.payments.handle_payment_completed(body, sign(body))

        assert outcome.status == "ignored"
        assert await count_payment_events(container.session_factory) == 0
        assert await count_transactions(container.session_factory) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'{"type": "checkout.session.completed"}'])
    async def test_malformed_body_rejected(self, container, body):
        with pytest.raises(ValidationError):
            await container.payments.handle_payment_completed(body, sign(body))

    @pytest.mark.asyncio
    async def test_bad_signature_logged_on_security_logger(self, container, funded_user, caplog):
        await funded_user("user_a")
        body = checkout_event()

        with caplog.at_level(logging.WARNING, logger="points_engine.security"):
            with pytest.raises(AuthenticationError):
                await container.payments.handle_payment_completed(body, "t=1,v1=deadbeef")

        assert "Payment webhook rejected" in caplog.text
        assert await count_transactions(container.session_factory) == 0


class TestUnsignedMode:
    """Unsigned intake exists only as an explicit opt-in."""

    @pytest.mark.asyncio
    async def test_no_secret_and_no_opt_in_rejects(self, container, funded_user):
        await funded_user("user_a")
        intake = PaymentIntakeService(container.session_factory, container.ledger, verifier=None)

        with pytest.raises(AuthenticationError):
            await intake.handle_payment_completed(checkout_event(), None)
        assert await count_transactions(container.session_factory) == 0

    @pytest.mark.asyncio
    async def test_opt_in_accepts_and_warns_every_event(self, container, funded_user, caplog):
        await funded_user("user_a")

        with caplog.at_level(logging.WARNING, logger="points_engine.security"):
            intake = PaymentIntakeService(
                container.session_factory, container.ledger, verifier=None, allow_unsigned=True
            )
            first = await intake.handle_payment_completed(checkout_event(event_id="evt_u1"), None)
            second = await intake.handle_payment_completed(checkout_event(event_id="evt_u2"), None)

        assert first.status == second.status == "credited"
        assert second.balance == 2000
        insecure = [r for r in caplog.records if "INSECURE" in r.getMessage()]
        assert len(insecure) == 2
        assert "WITHOUT signature verification" in caplog.text
