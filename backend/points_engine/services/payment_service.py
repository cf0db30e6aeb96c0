"""
Points Engine — Payment Event Intake
=====================================

What:  Turns one "checkout completed" webhook into exactly one BONUS credit.
Why:   Payment processors deliver at-least-once. A redelivered event must be
       acknowledged without paying out twice, and a forged event must never
       pay out at all.
How:   authenticate → parse (typed) → filter event type → validate metadata
       → in ONE unit of work: claim the event id, credit, link the two.
Who:   routes/webhooks.py (POST /api/webhooks/payments).

Idempotency:
    payment_events.event_id is a primary key. The intake pre-checks it, then
    inserts the row and flushes BEFORE crediting, inside the same unit of work
    as the credit. Two concurrent deliveries of the same event race on that
    insert; the loser gets an IntegrityError, rolls back, and is reported as
    a duplicate. The credit and the event row commit together or not at all.

Signature Scheme (Stripe-compatible):
    Header:   Stripe-Signature: t=<unix seconds>,v1=<hex>[,v1=<hex>...]
    Expected: hex(HMAC_SHA256(secret, f"{t}.{raw_body}"))
    Any v1 may match (secret rotation). The timestamp must be within the
    tolerance window of "now" to bound replay.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from points_engine.database import UnitOfWork
from points_engine.exceptions import (
    AuthenticationError,
    DuplicateEventError,
    NotFoundError,
    ValidationError,
)
from points_engine.models.enums import TransactionType
from points_engine.models.ledger import PaymentEvent
from points_engine.schemas.payment import (
    CHECKOUT_COMPLETED,
    PaymentCompleted,
    StripeEventEnvelope,
)
from points_engine.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("points_engine.security")


# ══════════════════════════════════════════════════════════════════════════
# Signature Verification
# ══════════════════════════════════════════════════════════════════════════

def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    """HMAC-SHA256 over "<timestamp>.<payload>", hex encoded."""
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


class WebhookSignatureVerifier:
    """
    Verifies the Stripe-Signature header against the raw request body.

    The body must be the exact bytes received; re-serialized JSON will not
    verify. `clock` returns unix seconds and is injectable for tests.
    """

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Webhook secret must not be empty")
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._clock = clock

    def verify(self, payload: bytes, header: Optional[str]) -> None:
        """
        Raises:
            AuthenticationError: header missing/malformed, timestamp outside
                the tolerance window, or no matching signature.
        """
        if not header:
            raise AuthenticationError("Missing signature header")

        timestamp = None
        signatures = []
        for part in header.split(","):
            key, sep, value = part.strip().partition("=")
            if not sep:
                continue
            if key == "t":
                try:
                    timestamp = int(value)
                except ValueError:
                    raise AuthenticationError("Malformed signature timestamp")
            elif key == "v1":
                signatures.append(value)

        if timestamp is None or not signatures:
            raise AuthenticationError("Malformed signature header")

        if abs(self._clock() - timestamp) > self._tolerance:
            raise AuthenticationError(
                "Signature timestamp outside tolerance window",
                context={"timestamp": timestamp},
            )

        expected = compute_signature(self._secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise AuthenticationError("No matching signature")


# ══════════════════════════════════════════════════════════════════════════
# Intake
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PaymentOutcome:
    """
    status:
        credited  — the credit was applied by this delivery
        duplicate — the event was already processed; nothing changed
        ignored   — not a checkout-completed event; nothing changed
    """
    status: str
    event_id: str
    user_id: Optional[str] = None
    points: Optional[int] = None
    balance: Optional[int] = None
    transaction_id: Optional[uuid.UUID] = None


class PaymentIntakeService:
    """
    Converts authenticated payment-completion events into ledger credits.

    Unsigned Mode:
        With no verifier AND allow_unsigned=True, events are accepted without
        authentication and EVERY such event is logged at WARNING on the
        security logger. With no verifier and allow_unsigned=False, every event
        is rejected. There is no silent unsigned path.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerService,
        verifier: Optional[WebhookSignatureVerifier],
        allow_unsigned: bool = False,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._verifier = verifier
        self._allow_unsigned = allow_unsigned

        if verifier is None and allow_unsigned:
            security_logger.warning(
                "Payment webhooks will be accepted WITHOUT signature verification "
                "(ALLOW_UNSIGNED_WEBHOOKS=true). Never enable this in production."
            )

    # ── Step 1: Authenticate ──────────────────────────────────────────────
    def authenticate(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        if self._verifier is not None:
            try:
                self._verifier.verify(raw_body, signature_header)
            except AuthenticationError as e:
                security_logger.warning("Payment webhook rejected: %s", e.message)
                raise
            return

        if self._allow_unsigned:
            security_logger.warning(
                "INSECURE: accepting unsigned payment webhook (%d bytes)", len(raw_body)
            )
            return

        security_logger.error(
            "Payment webhook rejected: no signing secret configured and unsigned mode is off"
        )
        raise AuthenticationError("Webhook signing is not configured")

    # ── Step 2: Parse ─────────────────────────────────────────────────────
    @staticmethod
    def parse_event(raw_body: bytes) -> StripeEventEnvelope:
        try:
            data = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise ValidationError(message="Webhook body is not valid JSON", field="body")
        if not isinstance(data, dict):
            raise ValidationError(message="Webhook body must be a JSON object", field="body")
        try:
            return StripeEventEnvelope.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                message="Webhook event envelope is invalid",
                field="body",
                context={"errors": [err["loc"] for err in e.errors()]},
            )

    @staticmethod
    def parse_metadata(envelope: StripeEventEnvelope) -> PaymentCompleted:
        try:
            return PaymentCompleted.model_validate(envelope.data.object.metadata)
        except PydanticValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            logger.warning(
                "Payment event %s has invalid metadata: %s", envelope.id, ", ".join(fields)
            )
            raise ValidationError(
                message="Missing or invalid payment metadata",
                field=",".join(fields) or "metadata",
                context={"event_id": envelope.id},
            )

    # ── Full Flow ─────────────────────────────────────────────────────────
    async def handle_payment_completed(
        self, raw_body: bytes, signature_header: Optional[str]
    ) -> PaymentOutcome:
        """
        Process one webhook delivery.

        Returns:
            PaymentOutcome (credited, duplicate or ignored).

        Raises:
            AuthenticationError: signature missing/invalid, or signing not configured.
            ValidationError: body or metadata malformed.
            NotFoundError: metadata names an unknown user (logged for reconciliation).
            DatabaseError / other: transient failure; the processor should retry.
        """
        self.authenticate(raw_body, signature_header)
        envelope = self.parse_event(raw_body)

        if envelope.type != CHECKOUT_COMPLETED:
            logger.info("Ignoring payment event %s of type %s", envelope.id, envelope.type)
            return PaymentOutcome(status="ignored", event_id=envelope.id)

        payment = self.parse_metadata(envelope)

        try:
            return await self._apply_credit(envelope, payment)
        except DuplicateEventError:
            logger.info("Payment event %s already processed; acknowledging", envelope.id)
            return PaymentOutcome(
                status="duplicate",
                event_id=envelope.id,
                user_id=payment.user_id,
                points=payment.points,
            )

    async def _apply_credit(
        self, envelope: StripeEventEnvelope, payment: PaymentCompleted
    ) -> PaymentOutcome:
        async with UnitOfWork(self._session_factory) as session:
            if await session.get(PaymentEvent, envelope.id) is not None:
                raise DuplicateEventError(envelope.id)

            event = PaymentEvent(
                event_id=envelope.id,
                checkout_session_id=envelope.data.object.id,
                user_id=payment.user_id,
                points=payment.points,
            )
            session.add(event)
            try:
                await session.flush()
            except IntegrityError:
                raise DuplicateEventError(envelope.id)

            try:
                result = await self._ledger.credit(
                    session,
                    payment.user_id,
                    payment.points,
                    TransactionType.BONUS,
                    f"Purchased {payment.points} points",
                )
            except NotFoundError:
                logger.error(
                    "RECONCILIATION REQUIRED: paid event %s credits unknown user %s "
                    "(%d points); nothing applied",
                    envelope.id, payment.user_id, payment.points,
                )
                raise

            event.transaction_id = result.transaction_id

        logger.info(
            "Payment event %s credited %d points to %s (balance=%d)",
            envelope.id, payment.points, payment.user_id, result.balance,
        )
        return PaymentOutcome(
            status="credited",
            event_id=envelope.id,
            user_id=payment.user_id,
            points=payment.points,
            balance=result.balance,
            transaction_id=result.transaction_id,
        )
