"""Provider fallback chain producing one result per reviewer stance.

Tiers are tried in order (primary, secondary, tertiary). Within a tier both stances
run concurrently. A slot whose result carries the error-sentinel signature is
retried once on the next configured tier for the same stance, the other slot is
kept as is.
"""

from __future__ import annotations

import asyncio
import typing as t
from collections.abc import Awaitable, Callable, Sequence

from loguru import logger

from sr_screening.app.agents.gateway import ModelGateway, ProviderConfigurationError
from sr_screening.app.agents.screening_agents import build_screening_prompt
from sr_screening.core.schemas import Criteria, Reference, ReviewerResult
from sr_screening.core.types import ScreeningStrategyType

if t.TYPE_CHECKING:
    from sr_screening.app.config import Settings


class FallbackExhaustedError(Exception):
    """Every strategy of a fallback sequence failed."""


class ProviderTier(t.NamedTuple):
    """One rung of the fallback ladder.

    Attributes:
        name (str): Tier name for logs, e.g. ``primary``.
        conservative_model (str): ``provider:model`` for the conservative stance.
        comprehensive_model (str): ``provider:model`` for the comprehensive stance.
    """

    name: str
    conservative_model: str
    comprehensive_model: str

    def model_for(self, stance: ScreeningStrategyType) -> str:
        if stance is ScreeningStrategyType.CONSERVATIVE:
            return self.conservative_model
        return self.comprehensive_model


class ReviewerPair(t.NamedTuple):
    """Results of both reviewer slots for one reference."""

    conservative: ReviewerResult
    comprehensive: ReviewerResult

    def get(self, stance: ScreeningStrategyType) -> ReviewerResult:
        if stance is ScreeningStrategyType.CONSERVATIVE:
            return self.conservative
        return self.comprehensive


def default_tiers(settings: Settings) -> list[ProviderTier]:
    """Primary multi-model tier, secondary aggregator tier, tertiary single provider."""
    return [
        ProviderTier(
            "primary",
            settings.primary_conservative_model,
            settings.primary_comprehensive_model,
        ),
        ProviderTier(
            "secondary",
            settings.secondary_conservative_model,
            settings.secondary_comprehensive_model,
        ),
        ProviderTier("tertiary", settings.tertiary_model, settings.tertiary_model),
    ]


async def attempt_or_next[S, R](
    strategies: Sequence[S],
    attempt: Callable[[S], Awaitable[R]],
) -> R:
    """Return the outcome of the first strategy whose attempt does not raise.

    Raises:
        FallbackExhaustedError: All attempts raised (or ``strategies`` is empty).
            Chained from the last error.
    """
    last_exc: Exception | None = None
    for strategy in strategies:
        try:
            return await attempt(strategy)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Fallback strategy {strategy!r} failed: {exc}")
            last_exc = exc
    msg = f"All {len(strategies)} fallback strategies failed"
    raise FallbackExhaustedError(msg) from last_exc


class FallbackChain:
    """Dual review of one reference across ordered provider tiers."""

    def __init__(
        self,
        gateway: ModelGateway,
        tiers: Sequence[ProviderTier],
    ) -> None:
        if not tiers:
            msg = "FallbackChain needs at least one provider tier"
            raise ValueError(msg)
        self.gateway = gateway
        self.tiers = list(tiers)

    def _check_configured(self, tier: ProviderTier) -> None:
        for stance in ScreeningStrategyType:
            model = tier.model_for(stance)
            if not self.gateway.is_configured(model):
                msg = f"{tier.name} tier unavailable, no credentials for {model}"
                raise ProviderConfigurationError(msg)

    async def _call(
        self,
        tier: ProviderTier,
        stance: ScreeningStrategyType,
        prompts: dict[ScreeningStrategyType, str],
    ) -> ReviewerResult:
        return await self.gateway.call(
            prompts[stance], tier.model_for(stance), strategy=stance
        )

    async def _attempt_tier(
        self,
        tier: ProviderTier,
        prompts: dict[ScreeningStrategyType, str],
    ) -> tuple[int, ReviewerPair]:
        self._check_configured(tier)
        tier_index = self.tiers.index(tier)
        stances = list(ScreeningStrategyType)
        outcomes = await asyncio.gather(
            *(self._call(tier, stance, prompts) for stance in stances),
            return_exceptions=True,
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if len(errors) == len(outcomes):
            raise errors[-1]

        results: dict[ScreeningStrategyType, ReviewerResult] = {}
        for stance, outcome in zip(stances, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning(
                    f"{tier.name} tier {stance} reviewer raised, keeping the other slot: {outcome}"
                )
                result = ReviewerResult.error_sentinel(
                    reviewer=f"AI Reviewer {stance.slot}",
                    strategy=stance,
                    message=str(outcome),
                    model_identifier=tier.model_for(stance),
                )
            else:
                result = outcome
            results[stance] = result.as_fallback() if tier_index > 0 else result
        return tier_index, ReviewerPair(
            conservative=results[ScreeningStrategyType.CONSERVATIVE],
            comprehensive=results[ScreeningStrategyType.COMPREHENSIVE],
        )

    async def _retry_slot(
        self,
        stance: ScreeningStrategyType,
        failed: ReviewerResult,
        later_tiers: Sequence[ProviderTier],
        prompts: dict[ScreeningStrategyType, str],
    ) -> ReviewerResult:
        configured = [
            tier
            for tier in later_tiers
            if self.gateway.is_configured(tier.model_for(stance))
        ]
        if not configured:
            logger.warning(f"No later provider configured to retry {stance} reviewer")
            return failed

        async def attempt(tier: ProviderTier) -> ReviewerResult:
            logger.info(
                f"Retrying {stance} reviewer on {tier.name} tier ({tier.model_for(stance)})"
            )
            return await self._call(tier, stance, prompts)

        try:
            result = await attempt_or_next(configured, attempt)
        except FallbackExhaustedError as exc:
            logger.warning(f"Slot retry for {stance} reviewer failed: {exc.__cause__}")
            return failed
        return result.as_fallback()

    async def review(self, reference: Reference, criteria: Criteria) -> ReviewerPair:
        """Produce conservative and comprehensive results for a reference.

        Never raises for provider failures: if every tier fails both slots are
        error sentinels.
        """
        log = logger.bind(reference_id=reference.id)
        prompts = {
            stance: build_screening_prompt(reference, criteria, stance)
            for stance in ScreeningStrategyType
        }
        try:
            tier_index, pair = await attempt_or_next(
                self.tiers, lambda tier: self._attempt_tier(tier, prompts)
            )
        except FallbackExhaustedError as exc:
            log.error(f"All provider tiers failed: {exc.__cause__}")
            message = f"all provider tiers failed: {exc.__cause__}"
            return ReviewerPair(
                *(
                    ReviewerResult.error_sentinel(
                        reviewer=f"AI Reviewer {stance.slot}",
                        strategy=stance,
                        message=message,
                    )
                    for stance in ScreeningStrategyType
                )
            )

        later_tiers = self.tiers[tier_index + 1 :]
        results = dict(zip(ScreeningStrategyType, pair, strict=True))
        failed = [stance for stance, result in results.items() if result.has_error_signature]
        for stance in failed:
            log.warning(f"{stance} reviewer failed on {self.tiers[tier_index].name} tier")
        retried = await asyncio.gather(
            *(
                self._retry_slot(stance, results[stance], later_tiers, prompts)
                for stance in failed
            )
        )
        results.update(zip(failed, retried, strict=True))
        return ReviewerPair(
            conservative=results[ScreeningStrategyType.CONSERVATIVE],
            comprehensive=results[ScreeningStrategyType.COMPREHENSIVE],
        )
