"""
Points Engine — Valuation Estimator
====================================

What:  Prices a book listing in points: an integer in [50, 500], multiple of 10.
Why:   Listing value drives what a requester pays and what the lister earns,
       so it must always be bounded, even when the model misbehaves.
How:   Ask the LLM for {"points", "reasoning"}; validate the first JSON object
       in its reply; on ANY problem use the deterministic rule-based formula.
Who:   ListingService, once per new listing, before its unit of work opens.

Fallback Formula:
    raw    = 100 × condition × rarity × demand
    points = clamp(round_half_up(raw / 10) × 10, 50, 500)

    condition: NEW 1.5 · LIKE_NEW 1.3 · VERY_GOOD 1.1 · GOOD 1.0 · ACCEPTABLE 0.7
               (unknown → 1.0)
    rarity (similar available listings):
               0 → 1.5 · 1-2 → 1.3 · 3-5 → 1.15 · 6-10 → 1.0 · >10 → 0.85
    demand (pending requests on similar listings):
               ≥10 → 1.5 · ≥5 → 1.3 · ≥3 → 1.15 · ≥1 → 1.05 · else 1.0

    Arithmetic is Decimal, so 59.5 always rounds to 60 and 337.5 to 340
    regardless of binary float representation.
"""

import asyncio
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from points_engine.services.llm_base import LLMService

logger = logging.getLogger(__name__)

MIN_POINTS = 50
MAX_POINTS = 500
BASE_POINTS = Decimal("100")

CONDITION_MULTIPLIERS = {
    "NEW": Decimal("1.5"),
    "LIKE_NEW": Decimal("1.3"),
    "VERY_GOOD": Decimal("1.1"),
    "GOOD": Decimal("1.0"),
    "ACCEPTABLE": Decimal("0.7"),
}

VALUATION_PROMPT = """You are a book valuation expert for a book exchange platform. Calculate a fair point value for a book based on the following factors:

Book Details:
- Title: "{title}"
- Author: "{author}"
- Condition: {condition}

Context:
- Similar books available in system: {similar} (lower = more rare = higher value)
- Pending requests for similar books: {pending} (higher = more demand = higher value)

Valuation Guidelines:
a. Condition: NEW and LIKE_NEW should get higher points. ACCEPTABLE should get lower points.
b. Demand: More pending requests indicate higher demand, which increases value.
c. Rarity: Fewer similar books in the system means higher rarity, which increases value.

The point value MUST be a round number between 50 and 500 points (like 100, 150, 200, 250, 300, etc.).

Respond with ONLY a JSON object in this exact format:
{{"points": <number>, "reasoning": "<brief explanation>"}}"""


# ── Result Types ──────────────────────────────────────────────────────────
class ValuationBreakdown(BaseModel):
    """Factors behind a rule-based valuation, shown to users as the value breakdown."""

    base_points: int
    condition: str
    condition_multiplier: float
    similar_listings: int
    rarity_multiplier: float
    pending_requests: int
    demand_multiplier: float
    raw_points: float


class ValuationResult(BaseModel):
    points: int = Field(..., ge=MIN_POINTS, le=MAX_POINTS, multiple_of=10)
    source: Literal["model", "fallback"]
    reasoning: Optional[str] = None
    breakdown: Optional[ValuationBreakdown] = None


class EstimatorReply(BaseModel):
    """
    The shape we accept from the model. Anything else triggers the fallback.

    `points` must be a finite number inside the allowed range; numeric strings
    are accepted the way a JSON-producing model sometimes writes them.
    """

    points: float = Field(..., ge=MIN_POINTS, le=MAX_POINTS, allow_inf_nan=False)
    reasoning: str = ""


# ── Rule-based Fallback ───────────────────────────────────────────────────
def rarity_multiplier(similar_listings: int) -> Decimal:
    if similar_listings <= 0:
        return Decimal("1.5")
    if similar_listings <= 2:
        return Decimal("1.3")
    if similar_listings <= 5:
        return Decimal("1.15")
    if similar_listings <= 10:
        return Decimal("1.0")
    return Decimal("0.85")


def demand_multiplier(pending_requests: int) -> Decimal:
    if pending_requests >= 10:
        return Decimal("1.5")
    if pending_requests >= 5:
        return Decimal("1.3")
    if pending_requests >= 3:
        return Decimal("1.15")
    if pending_requests >= 1:
        return Decimal("1.05")
    return Decimal("1.0")


def round_to_ten(value: Decimal) -> int:
    """Half-up rounding to the nearest multiple of 10."""
    tens = (value / 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(tens) * 10


def _condition_name(condition) -> str:
    return str(getattr(condition, "value", condition) or "").upper()


def fallback_points(condition, similar_listings: int, pending_requests: int) -> ValuationResult:
    """
    Deterministic rule-based valuation.

    Pure function: same inputs, same output, no I/O. Negative counts are
    treated as zero; an unknown condition uses multiplier 1.0.
    """
    similar = max(0, int(similar_listings))
    pending = max(0, int(pending_requests))
    name = _condition_name(condition)

    cond_mult = CONDITION_MULTIPLIERS.get(name, Decimal("1.0"))
    rare_mult = rarity_multiplier(similar)
    dem_mult = demand_multiplier(pending)

    raw = BASE_POINTS * cond_mult * rare_mult * dem_mult
    points = max(MIN_POINTS, min(MAX_POINTS, round_to_ten(raw)))

    return ValuationResult(
        points=points,
        source="fallback",
        breakdown=ValuationBreakdown(
            base_points=int(BASE_POINTS),
            condition=name,
            condition_multiplier=float(cond_mult),
            similar_listings=similar,
            rarity_multiplier=float(rare_mult),
            pending_requests=pending,
            demand_multiplier=float(dem_mult),
            raw_points=float(raw),
        ),
    )


# ── Model Reply Parsing ───────────────────────────────────────────────────
def parse_estimator_reply(text: str) -> Optional[EstimatorReply]:
    """
    Extract and validate the first well-formed JSON object in `text`.

    Models often wrap JSON in prose or code fences, so we scan for the first
    position where a complete object decodes. Returns None when there is no
    object, or when that object does not validate.
    """
    if not text:
        return None

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except ValueError:
            start = text.find("{", start + 1)
            continue
        if not isinstance(obj, dict):
            return None
        try:
            return EstimatorReply.model_validate(obj)
        except PydanticValidationError as e:
            logger.warning("Valuation reply rejected: %s", e.errors()[0].get("msg", "invalid"))
            return None
    return None


# ── Estimator ─────────────────────────────────────────────────────────────
class ValuationEstimator:
    """
    Model-first, rules-always valuation.

    Guarantees:
        - estimate() never raises; every upstream failure degrades to the
          rule-based value and is logged at WARNING
        - the returned points are always in [50, 500] and a multiple of 10
        - the model call (retries included) is bounded by timeout_seconds

    llm may be None (no API key configured); the estimator then prices
    everything with the fallback formula.
    """

    def __init__(self, llm: Optional[LLMService], timeout_seconds: float = 8.0):
        self._llm = llm
        self._timeout = timeout_seconds

    def build_prompt(self, title: str, author: str, condition, similar: int, pending: int) -> str:
        return VALUATION_PROMPT.format(
            title=title,
            author=author,
            condition=_condition_name(condition),
            similar=similar,
            pending=pending,
        )

    async def estimate(
        self,
        title: str,
        author: str,
        condition,
        similar_listings_count: int,
        pending_demand_count: int,
    ) -> ValuationResult:
        similar = max(0, int(similar_listings_count))
        pending = max(0, int(pending_demand_count))

        if self._llm is None:
            return fallback_points(condition, similar, pending)

        prompt = self.build_prompt(title, author, condition, similar, pending)
        try:
            text = await asyncio.wait_for(self._llm.generate_text(prompt), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Valuation model timed out after %.1fs; using fallback for '%s'",
                self._timeout,
                title,
            )
            return fallback_points(condition, similar, pending)
        except Exception as e:
            logger.warning(
                "Valuation model unavailable (%s); using fallback for '%s'",
                type(e).__name__,
                title,
            )
            return fallback_points(condition, similar, pending)

        reply = parse_estimator_reply(text)
        if reply is None:
            logger.warning("Valuation reply unusable; using fallback for '%s'", title)
            return fallback_points(condition, similar, pending)

        points = round_to_ten(Decimal(str(reply.points)))
        logger.info("Valuation for '%s' by model: %d points", title, points)
        return ValuationResult(points=points, source="model", reasoning=reply.reasoning or None)
