"""
Points Engine — Google Gemini Service Implementation
=====================================================

What:  Concrete LLMService backed by the Google Gemini text API.
Why:   Gemini gives the valuation estimator a cheap, fast free-form opinion on
       a book's worth; everything it says is validated before use.
How:   Sends the prompt with tenacity retries (exponential backoff + jitter)
       behind a circuit breaker, and translates every failure into
       UpstreamUnavailableError.
Who:   Constructed once by the service container (no module-level instance);
       called by ValuationEstimator.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker so a dead upstream costs <1ms per listing, not seconds
    3. The caller wraps the whole call in its own timeout budget
"""

import asyncio
import logging
import time
import uuid
from typing import Optional

import google.generativeai as genai
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from points_engine.config import Settings
from points_engine.exceptions import CircuitBreakerOpenError, UpstreamUnavailableError
from points_engine.services.llm_base import LLMService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Implements the circuit breaker pattern to prevent cascade failures.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE trial request through; other callers still get
              CircuitBreakerOpenError until it finishes
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    For the estimator an open circuit simply means "use the rule-based value
    now" instead of waiting on a model that is known to be down.

    Concurrency:
        Plain counters and a trial flag, no locks. Safe for a single asyncio
        event loop; each worker process keeps its own breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60, clock=time.monotonic):
        """
        Args:
            failure_threshold: Consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before testing recovery
            clock: Time source, injectable for tests
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        self._clock = clock

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through the circuit breaker.

        Raises:
            CircuitBreakerOpenError if circuit is OPEN and recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                self._trial_in_flight = True
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        # HALF_OPEN: only one trial request at a time
        if self._trial_in_flight:
            raise CircuitBreakerOpenError(recovery_time=0)
        self._trial_in_flight = True
        return True

    def record_success(self) -> None:
        """Record a successful call. Resets the breaker to CLOSED."""
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        """Record a failed call. May trigger CLOSED → OPEN transition."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self._trial_in_flight = False

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(LLMService):
    """
    Google Gemini implementation of LLMService.

    Error Handling Chain:
        API call fails → tenacity retries (retry_max_attempts, backoff + jitter)
        → All retries fail → record circuit breaker failure
        → UpstreamUnavailableError raised to the estimator (which falls back)
        → Threshold reached → future calls rejected instantly until recovery
    """

    def __init__(self, settings: Settings, model=None):
        """
        Args:
            settings: Application settings (API key, model name, retry knobs).
            model: Pre-built model object; tests pass a fake here.
        """
        self._settings = settings

        # The SDK keeps auth in module-level state
        if settings.gemini_api_key:
            genai.configure(api_key=settings.gemini_api_key)

        self.model = model if model is not None else genai.GenerativeModel(settings.gemini_model)

        # Every retry attempt must fit inside the estimator's overall budget
        self.attempt_timeout = settings.valuation_timeout_seconds / settings.retry_max_attempts

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiService initialized with model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    async def generate_text(self, prompt: str) -> str:
        """
        Send the prompt to Gemini and return the reply text.

        Flow:
            1. Check circuit breaker → may raise CircuitBreakerOpenError
            2. Call Gemini with retries
            3. Record success/failure in circuit breaker
               (cancellation by the caller's timeout is a failure too)

        Raises:
            CircuitBreakerOpenError: Circuit is open (too many recent failures)
            UpstreamUnavailableError: Gemini failed after all retry attempts
        """
        call_id = str(uuid.uuid4())[:8]

        self.circuit_breaker.can_execute()

        try:
            text = await self._call_with_retry(prompt, call_id)
        except asyncio.CancelledError:
            # Caller's time budget ran out; a hung model counts as a failure
            self.circuit_breaker.record_failure()
            logger.warning("[%s] Gemini call cancelled by the caller's timeout", call_id)
            raise
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Gemini call failed after %d attempt(s): %s",
                call_id,
                self._settings.retry_max_attempts,
                str(e),
            )
            raise UpstreamUnavailableError(
                message="Valuation model call failed after retries",
                context={"call_id": call_id, "error_type": type(e).__name__},
            ) from e

        self.circuit_breaker.record_success()
        return text

    async def _call_with_retry(self, prompt: str, call_id: str) -> str:
        """
        Makes the actual Gemini API call under tenacity.

        Kept apart from generate_text so only the API call is retried, never
        the circuit breaker check.
        """
        retrying = AsyncRetrying(
            # The SDK raises generic exceptions for API errors
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self._settings.retry_max_attempts),
            wait=wait_exponential_jitter(
                initial=self._settings.retry_min_wait,
                max=self._settings.retry_max_wait,
                jitter=1,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_once(prompt, call_id)
        raise UpstreamUnavailableError(context={"call_id": call_id})  # pragma: no cover

    async def _call_once(self, prompt: str, call_id: str) -> str:
        start_time = time.time()
        try:
            response = await self.model.generate_content_async(
                prompt,
                request_options={"timeout": self.attempt_timeout},
            )
            text = response.text.strip() if response.text else ""
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(
                "[%s] Gemini API call failed after %.0fms: %s",
                call_id,
                duration_ms,
                str(e),
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "[%s] Gemini call completed in %.0fms, %d chars",
            call_id,
            duration_ms,
            len(text),
        )
        return text

    async def health_check(self) -> bool:
        """
        Check if Gemini API is reachable by listing models (no token cost).
        """
        try:
            models = genai.list_models()
            model_names = [m.name for m in models]
            target = f"models/{self._settings.gemini_model}"
            if target not in model_names:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
