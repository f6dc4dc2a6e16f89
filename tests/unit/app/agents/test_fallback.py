import asyncio

import pytest
from fakes import FakeGateway, make_error, make_result

from sr_screening.app.agents.fallback import (
    FallbackChain,
    FallbackExhaustedError,
    ProviderTier,
    attempt_or_next,
    default_tiers,
)
from sr_screening.app.agents.gateway import ProviderConfigurationError
from sr_screening.core.types import ScreeningDecisionType, ScreeningStrategyType

CONSERVATIVE = ScreeningStrategyType.CONSERVATIVE
COMPREHENSIVE = ScreeningStrategyType.COMPREHENSIVE


def test_default_tiers_from_settings(settings, tiers):
    assert default_tiers(settings) == tiers


def test_tier_model_for_stance(tiers):
    assert tiers[0].model_for(CONSERVATIVE) == "openai:gpt-4o"
    assert tiers[0].model_for(COMPREHENSIVE) == "google:gemini-1.5-pro"


def test_chain_requires_tiers():
    with pytest.raises(ValueError, match="at least one provider tier"):
        FallbackChain(FakeGateway(), [])


@pytest.mark.asyncio
async def test_attempt_or_next_returns_first_success():
    seen = []

    async def attempt(n):
        seen.append(n)
        if n < 3:
            raise RuntimeError(f"fail {n}")
        return n * 10

    assert await attempt_or_next([1, 2, 3, 4], attempt) == 30
    assert seen == [1, 2, 3]


@pytest.mark.asyncio
async def test_attempt_or_next_exhausted_chains_last_error():
    async def attempt(n):
        raise RuntimeError(f"fail {n}")

    with pytest.raises(FallbackExhaustedError) as exc_info:
        await attempt_or_next([1, 2], attempt)
    assert str(exc_info.value.__cause__) == "fail 2"


@pytest.mark.asyncio
async def test_attempt_or_next_empty():
    async def attempt(n):
        return n

    with pytest.raises(FallbackExhaustedError):
        await attempt_or_next([], attempt)


@pytest.mark.unit
class TestFallbackChain:
    @pytest.mark.asyncio
    async def test_primary_tier_serves_both_stances(self, tiers, reference, criteria):
        gateway = FakeGateway()
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        assert sorted(gateway.calls) == sorted(
            [("openai:gpt-4o", CONSERVATIVE), ("google:gemini-1.5-pro", COMPREHENSIVE)]
        )
        assert pair.conservative.screening_strategy is CONSERVATIVE
        assert pair.comprehensive.screening_strategy is COMPREHENSIVE
        assert not pair.conservative.is_fallback
        assert not pair.comprehensive.is_fallback
        assert pair.get(COMPREHENSIVE) is pair.comprehensive

    @pytest.mark.asyncio
    async def test_unconfigured_tier_is_skipped(self, tiers, reference, criteria):
        gateway = FakeGateway(unconfigured={"google:gemini-1.5-pro"})
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        called = {model for model, _ in gateway.calls}
        assert called == {"openrouter:anthropic/claude-3.5-sonnet", "openai:gpt-4o-mini"}
        assert pair.conservative.is_fallback
        assert pair.conservative.reviewer.endswith("(Fallback)")
        assert pair.comprehensive.is_fallback

    @pytest.mark.asyncio
    async def test_failed_slot_retried_on_next_tier_keeps_other_slot(
        self, tiers, reference, criteria
    ):
        primary_conservative = make_result(
            "exclude", 0.9, reviewer="OpenAI gpt-4o", model_identifier="openai:gpt-4o"
        )
        gateway = FakeGateway(
            {
                "openai:gpt-4o": primary_conservative,
                "google:gemini-1.5-pro": make_error(
                    reviewer="Google gemini-1.5-pro", strategy=COMPREHENSIVE
                ),
                "openai:gpt-4o-mini": make_result(
                    "include", 0.7, reviewer="OpenAI gpt-4o-mini"
                ),
            }
        )
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        assert pair.conservative.reviewer == "OpenAI gpt-4o"
        assert pair.conservative.decision is ScreeningDecisionType.EXCLUDE
        assert not pair.conservative.is_fallback
        assert pair.comprehensive.reviewer == "OpenAI gpt-4o-mini (Fallback)"
        assert pair.comprehensive.is_fallback
        assert pair.comprehensive.screening_strategy is COMPREHENSIVE
        assert ("openai:gpt-4o-mini", COMPREHENSIVE) in gateway.calls
        assert all(model != "openrouter:anthropic/claude-3.5-sonnet" for model, _ in gateway.calls)

    @pytest.mark.asyncio
    async def test_slot_retry_failure_keeps_sentinel(self, tiers, reference, criteria):
        sentinel = make_error(reviewer="Google gemini-1.5-pro", strategy=COMPREHENSIVE)
        gateway = FakeGateway(
            {
                "google:gemini-1.5-pro": sentinel,
                "openai:gpt-4o-mini": RuntimeError("down"),
                "google:gemini-1.5-flash": RuntimeError("down too"),
            }
        )
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        assert pair.conservative.is_valid
        assert pair.comprehensive.has_error_signature

    @pytest.mark.asyncio
    async def test_both_failed_slots_retried_concurrently(self, tiers, reference, criteria):
        secondary = {"openrouter:anthropic/claude-3.5-sonnet", "openai:gpt-4o-mini"}
        both_waiting = asyncio.Event()
        waiting: list[str] = []

        class BarrierGateway(FakeGateway):
            async def call(self, prompt, model_identifier, *, strategy=CONSERVATIVE):
                if model_identifier in secondary:
                    waiting.append(model_identifier)
                    if len(waiting) == 2:
                        both_waiting.set()
                    await asyncio.wait_for(both_waiting.wait(), timeout=1.0)
                return await super().call(prompt, model_identifier, strategy=strategy)

        gateway = BarrierGateway(
            {
                "openai:gpt-4o": make_error(reviewer="OpenAI gpt-4o"),
                "google:gemini-1.5-pro": make_error(
                    reviewer="Google gemini-1.5-pro", strategy=COMPREHENSIVE
                ),
            }
        )
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        assert sorted(waiting) == sorted(secondary)
        assert pair.conservative.model_identifier == "openrouter:anthropic/claude-3.5-sonnet"
        assert pair.comprehensive.model_identifier == "openai:gpt-4o-mini"
        assert pair.conservative.is_fallback
        assert pair.comprehensive.is_fallback
        assert all(model != "google:gemini-1.5-flash" for model, _ in gateway.calls)

    @pytest.mark.asyncio
    async def test_one_stance_raising_becomes_sentinel(self, tiers, reference, criteria):
        gateway = FakeGateway({"google:gemini-1.5-pro": RuntimeError("connection reset")})
        gateway.unconfigured = {"openai:gpt-4o-mini", "google:gemini-1.5-flash"}
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        assert pair.conservative.is_valid
        assert pair.comprehensive.reviewer == "AI Reviewer 2 (Error)"
        assert "connection reset" in pair.comprehensive.reasoning

    @pytest.mark.asyncio
    async def test_all_tiers_failing_yields_two_sentinels(self, tiers, reference, criteria):
        boom = ProviderConfigurationError("401 rejected")
        gateway = FakeGateway(
            {
                model: boom
                for tier in tiers
                for model in (tier.conservative_model, tier.comprehensive_model)
            }
        )
        pair = await FallbackChain(gateway, tiers).review(reference, criteria)

        for stance, result in zip(ScreeningStrategyType, pair, strict=True):
            assert result.reviewer == f"AI Reviewer {stance.slot} (Error)"
            assert result.screening_strategy is stance
            assert result.confidence == 0.0
            assert "all provider tiers failed" in result.reasoning

    @pytest.mark.asyncio
    async def test_no_configured_tier_yields_two_sentinels(self, reference, criteria):
        tier = ProviderTier("only", "openai:gpt-4o", "openai:gpt-4o")
        gateway = FakeGateway(unconfigured={"openai:gpt-4o"})
        pair = await FallbackChain(gateway, [tier]).review(reference, criteria)

        assert gateway.calls == []
        assert pair.conservative.has_error_signature
        assert pair.comprehensive.has_error_signature
