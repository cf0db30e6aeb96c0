"""
Points Engine — Custom Exception Hierarchy
===========================================

What:  Application-specific exceptions for every failure class of the engine.
Why:   Typed failures let callers choose their own user-facing messaging, and let
       the global handlers in main.py map each one to a fixed HTTP status.
How:   Each exception carries a safe, user-facing message plus a context dict
       that is logged server-side but never returned to the client.

Exception Hierarchy:
    PointsEngineError (base)
    ├── ValidationError           → 400 Bad Request
    ├── AuthenticationError       → 400 Bad Request (webhook signature)
    ├── PermissionDeniedError     → 403 Forbidden
    ├── NotFoundError             → 404 Not Found
    ├── InsufficientBalanceError  → 409 Conflict
    ├── DuplicateEventError       → handled inside payment intake (200)
    ├── UpstreamUnavailableError  → absorbed by the valuation estimator
    │   └── CircuitBreakerOpenError
    └── DatabaseError             → 500 Internal Server Error
"""

from typing import Any, Dict, Optional


class PointsEngineError(Exception):
    """
    Base exception for all points engine errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(PointsEngineError):
    """
    Raised when input fails a business rule: a zero amount, malformed webhook
    metadata, an unknown condition, a request that is no longer pending.
    No state is changed when this is raised.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthenticationError(PointsEngineError):
    """
    Raised when a payment webhook fails signature verification.

    Security-relevant: logged on the dedicated security logger so it can be
    alerted on separately from ordinary validation failures.
    """

    def __init__(
        self,
        message: str = "Webhook signature verification failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class PermissionDeniedError(PointsEngineError):
    """Raised when a user acts on a request or book they do not own."""

    def __init__(
        self,
        message: str = "You are not allowed to perform this action",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(PointsEngineError):
    """
    Raised when a referenced user, book or request does not exist.

    On the payment path this also means money was received without a
    destination; the intake logs it for manual reconciliation before raising.
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class InsufficientBalanceError(PointsEngineError):
    """
    Raised when a debit would take a balance below zero.

    Neither the balance nor the transaction log is touched.
    """

    def __init__(
        self,
        required: int,
        available: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Insufficient balance. You need {required} points but only have {available}."
        )
        ctx = context or {}
        ctx.update({"required": required, "available": available})
        super().__init__(message=message, context=ctx)
        self.required = required
        self.available = available


class DuplicateEventError(PointsEngineError):
    """
    Raised when a payment event id has already been processed.

    The intake acknowledges duplicates as success; the credit is not re-applied.
    """

    def __init__(
        self,
        event_id: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["event_id"] = event_id
        super().__init__(message=f"Payment event '{event_id}' was already processed", context=ctx)
        self.event_id = event_id


class UpstreamUnavailableError(PointsEngineError):
    """
    Raised when the valuation model fails: network error, timeout, exhausted
    retries. Never leaves the valuation estimator, which falls back to rules.
    """

    def __init__(
        self,
        message: str = "Valuation model is temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CircuitBreakerOpenError(UpstreamUnavailableError):
    """
    Raised when the circuit breaker is OPEN after repeated model failures.

    CLOSED → (threshold failures) → OPEN → (recovery timeout) → HALF_OPEN
    → success: CLOSED / failure: OPEN
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(
            message=(
                "Valuation model is paused after repeated failures; "
                f"retrying in approximately {recovery_time} seconds."
            ),
            context=ctx,
        )
        self.recovery_time = recovery_time


class DatabaseError(PointsEngineError):
    """
    Raised when a database operation fails unexpectedly.

    The client always gets a generic message; details stay in the server log.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
