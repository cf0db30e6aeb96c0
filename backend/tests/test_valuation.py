"""
Points Engine — Valuation Estimator Tests
==========================================

What:  Tests for the rule-based formula, model reply parsing, and the
       model-first estimator with its fallback paths.
Why:   A listing's value decides what every later request pays; it must be
       bounded and a multiple of 10 no matter what the model returns.
How:   Pure functions are called directly; the estimator gets a scripted
       FakeLLM (see conftest.py), so no network is involved.

What we test:
    ✅ Documented fallback cases (ACCEPTABLE/12/0 → 60, NEW/0/10 → 340)
    ✅ Bounds and multiple-of-10 over the whole input grid
    ✅ Unknown condition, negative counts, determinism
    ✅ Reply parsing: prose, code fences, out-of-range, NaN, garbage
    ✅ Estimator: model value rounded half-up; timeout, error, open circuit
       and unusable replies all fall back
"""

from decimal import Decimal

import pytest

from conftest import FakeLLM
from points_engine.exceptions import CircuitBreakerOpenError, UpstreamUnavailableError
from points_engine.models.enums import BookCondition
from points_engine.services.valuation import (
    ValuationEstimator,
    demand_multiplier,
    fallback_points,
    parse_estimator_reply,
    rarity_multiplier,
    round_to_ten,
)


class TestFallbackFormula:
    """Tests for the deterministic rule-based valuation."""

    def test_acceptable_common_book(self):
        """100 × 0.7 × 0.85 × 1.0 = 59.5 → 60."""
        result = fallback_points(BookCondition.ACCEPTABLE, 12, 0)
        assert result.points == 60
        assert result.source == "fallback"
        assert result.breakdown.raw_points == pytest.approx(59.5)

    def test_new_rare_book_in_demand(self):
        """100 × 1.5 × 1.5 × 1.5 = 337.5 → 340."""
        result = fallback_points(BookCondition.NEW, 0, 10)
        assert result.points == 340
        assert result.breakdown.condition_multiplier == 1.5
        assert result.breakdown.rarity_multiplier == 1.5
        assert result.breakdown.demand_multiplier == 1.5

    def test_good_average_book(self):
        """GOOD, 6-10 similar, no demand → exactly the base value."""
        assert fallback_points(BookCondition.GOOD, 8, 0).points == 100

    def test_bounded_and_multiple_of_ten_for_all_inputs(self):
        for condition in BookCondition:
            for similar in (0, 1, 2, 3, 5, 6, 10, 11, 100):
                for pending in (0, 1, 3, 5, 10, 50):
                    points = fallback_points(condition, similar, pending).points
                    assert 50 <= points <= 500
                    assert points % 10 == 0

    def test_unknown_condition_uses_neutral_multiplier(self):
        result = fallback_points("MINT_IN_BOX", 8, 0)
        assert result.points == 100
        assert result.breakdown.condition_multiplier == 1.0

    def test_plain_string_condition_matches_enum(self):
        assert fallback_points("new", 0, 10).points == 340

    def test_negative_counts_treated_as_zero(self):
        assert fallback_points(BookCondition.GOOD, -5, -3) == fallback_points(BookCondition.GOOD, 0, 0)

    def test_is_deterministic(self):
        first = fallback_points(BookCondition.VERY_GOOD, 4, 3)
        for _ in range(5):
            assert fallback_points(BookCondition.VERY_GOOD, 4, 3) == first

    def test_rarity_bands(self):
        assert rarity_multiplier(0) == Decimal("1.5")
        assert rarity_multiplier(2) == Decimal("1.3")
        assert rarity_multiplier(5) == Decimal("1.15")
        assert rarity_multiplier(10) == Decimal("1.0")
        assert rarity_multiplier(11) == Decimal("0.85")

    def test_demand_bands(self):
        assert demand_multiplier(0) == Decimal("1.0")
        assert demand_multiplier(1) == Decimal("1.05")
        assert demand_multiplier(3) == Decimal("1.15")
        assert demand_multiplier(5) == Decimal("1.3")
        assert demand_multiplier(10) == Decimal("1.5")

    def test_round_to_ten_is_half_up(self):
        assert round_to_ten(Decimal("59.5")) == 60
        assert round_to_ten(Decimal("55")) == 60
        assert round_to_ten(Decimal("54.99")) == 50
        assert round_to_ten(Decimal("125")) == 130


class TestParseEstimatorReply:
    """Tests for extracting the model's JSON answer."""

    def test_plain_json(self):
        reply = parse_estimator_reply('{"points": 200, "reasoning": "Classic in good shape"}')
        assert reply.points == 200
        assert reply.reasoning == "Classic in good shape"

    def test_json_wrapped_in_prose_and_fences(self):
        text = 'Here you go:\n```json\n{"points": 150, "reasoning": "common"}\n```\nThanks!'
        assert parse_estimator_reply(text).points == 150

    def test_skips_braces_that_are_not_json(self):
        text = 'Estimate {roughly} follows: {"points": 250, "reasoning": "rare"}'
        assert parse_estimator_reply(text).points == 250

    def test_numeric_string_points_accepted(self):
        assert parse_estimator_reply('{"points": "300"}').points == 300

    @pytest.mark.parametrize("text", [
        "",
        "no json here",
        '{"points": 40}',
        '{"points": 501}',
        '{"points": "lots"}',
        '{"points": NaN}',
        '{"points": Infinity}',
        '{"reasoning": "forgot the number"}',
        '{"points": 200',
    ])
    def test_unusable_replies_return_none(self, text):
        assert parse_estimator_reply(text) is None


class TestValuationEstimator:
    """Tests for the model-first estimator and its fallbacks."""

    @pytest.mark.asyncio
    async def test_model_value_used_and_rounded_half_up(self):
        llm = FakeLLM('{"points": 255, "reasoning": "Signed first edition"}')
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        result = await estimator.estimate("Dune", "Frank Herbert", BookCondition.LIKE_NEW, 3, 2)

        assert result.points == 260
        assert result.source == "model"
        assert result.reasoning == "Signed first edition"
        assert result.breakdown is None

    @pytest.mark.asyncio
    async def test_prompt_carries_listing_context(self):
        llm = FakeLLM('{"points": 100}')
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        await estimator.estimate("Dune", "Frank Herbert", BookCondition.GOOD, 4, 7)

        prompt = llm.prompts[0]
        assert '"Dune"' in prompt
        assert '"Frank Herbert"' in prompt
        assert "Condition: GOOD" in prompt
        assert "system: 4" in prompt
        assert "similar books: 7" in prompt

    @pytest.mark.asyncio
    async def test_upstream_failure_falls_back(self):
        llm = FakeLLM(UpstreamUnavailableError("Gemini down"))
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        result = await estimator.estimate("Old Manual", "Anon", BookCondition.ACCEPTABLE, 12, 0)

        assert result.points == 60
        assert result.source == "fallback"

    @pytest.mark.asyncio
    async def test_open_circuit_falls_back(self):
        llm = FakeLLM(CircuitBreakerOpenError(recovery_time=30))
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        result = await estimator.estimate("Rare Find", "Someone", BookCondition.NEW, 0, 10)

        assert result.points == 340
        assert result.source == "fallback"

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self):
        llm = FakeLLM(RuntimeError("SDK bug"))
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        result = await estimator.estimate("Dune", "Frank Herbert", BookCondition.GOOD, 8, 0)
        assert result.points == 100

    @pytest.mark.asyncio
    async def test_slow_model_times_out_to_fallback(self):
        llm = FakeLLM('{"points": 500}', delay=1.0)
        estimator = ValuationEstimator(llm, timeout_seconds=0.05)

        result = await estimator.estimate("Dune", "Frank Herbert", BookCondition.GOOD, 8, 0)

        assert result.points == 100
        assert result.source == "fallback"

    @pytest.mark.asyncio
    async def test_out_of_range_reply_falls_back(self):
        llm = FakeLLM('{"points": 9000, "reasoning": "priceless"}')
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        result = await estimator.estimate("Dune", "Frank Herbert", BookCondition.GOOD, 8, 0)

        assert result.points == 100
        assert result.source == "fallback"

    @pytest.mark.asyncio
    async def test_no_model_configured_uses_fallback(self):
        estimator = ValuationEstimator(None)

        result = await estimator.estimate("Dune", "Frank Herbert", BookCondition.NEW, 0, 10)

        assert result.points == 340
        assert result.source == "fallback"

    @pytest.mark.asyncio
    async def test_model_boundary_values_survive(self):
        llm = FakeLLM('{"points": 50}', '{"points": 500}')
        estimator = ValuationEstimator(llm, timeout_seconds=1)

        low = await estimator.estimate("A", "B", BookCondition.GOOD, 0, 0)
        high = await estimator.estimate("A", "B", BookCondition.GOOD, 0, 0)

        assert (low.points, high.points) == (50, 500)
