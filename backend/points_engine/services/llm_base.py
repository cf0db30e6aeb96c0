"""
Points Engine — Abstract LLM Service Interface
===============================================

What:  Abstract base class defining the contract for text-generation providers.
Why:   The valuation estimator only needs "prompt in, text out". Keeping the
       provider behind an interface lets tests inject a fake and lets us swap
       Gemini for another model without touching the estimator.
How:   Concrete implementations inherit from LLMService and implement
       generate_text() and health_check().
Who:   Constructed by the service container; consumed by ValuationEstimator.

Design Decision:
    The provider returns raw text. Parsing and validating that text is the
    estimator's job, because "what counts as a usable answer" is a business
    rule (bounded points, fallback on anything else), not a transport concern.
"""

from abc import ABC, abstractmethod


class LLMService(ABC):
    """
    Abstract interface for text generation.

    Contract:
        - generate_text() returns the model's reply as plain text
        - Implementations handle their own retry logic and circuit breaking
        - Failures raise UpstreamUnavailableError (or CircuitBreakerOpenError)
    """

    @abstractmethod
    async def generate_text(self, prompt: str) -> str:
        """
        Send a single-turn prompt and return the reply text.

        Returns:
            The reply text, stripped. Empty string if the model returned nothing.

        Raises:
            UpstreamUnavailableError: the provider failed after all retries.
            CircuitBreakerOpenError: too many recent failures; call not attempted.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Lightweight connectivity test (does NOT consume generation quota).

        Returns: True if the provider is reachable, False otherwise.
        """
        ...
