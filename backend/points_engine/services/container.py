"""
Points Engine — Service Container
==================================

What:  Builds and owns every long-lived object: engine, session factory,
       model client, estimator and services.
Why:   Explicit construction instead of module-level singletons. The
       lifespan builds one container per process; tests build their own with
       an in-memory database and a fake model.
Who:   main.lifespan (production), tests/conftest.py (tests).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from points_engine.config import Settings
from points_engine.database import build_engine, build_session_factory
from points_engine.services.exchange_service import ExchangeService
from points_engine.services.gemini_service import GeminiService
from points_engine.services.ledger_service import LedgerService
from points_engine.services.listing_service import ListingService
from points_engine.services.llm_base import LLMService
from points_engine.services.notifier import LoggingNotifier, Notifier
from points_engine.services.payment_service import (
    PaymentIntakeService,
    WebhookSignatureVerifier,
)
from points_engine.services.recommendation_service import RecommendationService
from points_engine.services.valuation import ValuationEstimator

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    llm: Optional[LLMService]
    estimator: ValuationEstimator
    ledger: LedgerService
    payments: PaymentIntakeService
    listings: ListingService
    exchanges: ExchangeService
    recommendations: RecommendationService
    notifier: Notifier

    async def aclose(self) -> None:
        """Close all pooled database connections."""
        await self.engine.dispose()


def build_container(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    llm: Optional[LLMService] = None,
    notifier: Optional[Notifier] = None,
) -> ServiceContainer:
    """
    Wire the object graph.

    Without a Gemini key and without an explicit `llm`, the estimator runs
    on the rule-based fallback alone.
    """
    engine = engine if engine is not None else build_engine(settings)
    session_factory = build_session_factory(engine)

    if llm is None and settings.gemini_api_key:
        llm = GeminiService(settings)
    if llm is None:
        logger.warning("No valuation model configured; listings use rule-based pricing")

    notifier = notifier if notifier is not None else LoggingNotifier()
    ledger = LedgerService()
    estimator = ValuationEstimator(llm, timeout_seconds=settings.valuation_timeout_seconds)

    verifier = None
    if settings.webhook_signing_enabled:
        verifier = WebhookSignatureVerifier(
            settings.payment_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        llm=llm,
        estimator=estimator,
        ledger=ledger,
        payments=PaymentIntakeService(
            session_factory,
            ledger,
            verifier,
            allow_unsigned=settings.allow_unsigned_webhooks,
        ),
        listings=ListingService(
            session_factory,
            ledger,
            estimator,
            listing_bonus=settings.listing_bonus_points,
        ),
        exchanges=ExchangeService(session_factory, ledger, notifier),
        recommendations=RecommendationService(),
        notifier=notifier,
    )
