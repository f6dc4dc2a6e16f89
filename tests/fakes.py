"""Test doubles and builders shared by the test modules."""

from __future__ import annotations

import typing as t

from sr_screening.core.schemas import ReviewerResult
from sr_screening.core.types import ScreeningDecisionType, ScreeningStrategyType


def make_result(
    decision: ScreeningDecisionType | str = ScreeningDecisionType.INCLUDE,
    confidence: float = 0.8,
    *,
    reviewer: str = "OpenAI gpt-4o",
    strategy: ScreeningStrategyType = ScreeningStrategyType.CONSERVATIVE,
    **kwargs: t.Any,
) -> ReviewerResult:
    return ReviewerResult(
        decision=ScreeningDecisionType(decision),
        confidence=confidence,
        reasoning="Test reasoning",
        reviewer=reviewer,
        screening_strategy=strategy,
        **kwargs,
    )


def make_error(
    *,
    reviewer: str = "OpenAI gpt-4o",
    strategy: ScreeningStrategyType = ScreeningStrategyType.CONSERVATIVE,
    rate_limited: bool = False,
) -> ReviewerResult:
    return ReviewerResult.error_sentinel(
        reviewer=reviewer, strategy=strategy, message="boom", rate_limited=rate_limited
    )


class FakeGateway:
    """Stands in for ModelGateway. Scripted outcomes per model identifier.

    An outcome is a ReviewerResult, an exception to raise, or a list of those
    consumed one per call.
    """

    def __init__(
        self,
        outcomes: dict[str, t.Any] | None = None,
        unconfigured: set[str] | None = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.unconfigured = unconfigured or set()
        self.calls: list[tuple[str, ScreeningStrategyType]] = []

    def is_configured(self, model_identifier: str) -> bool:
        return model_identifier not in self.unconfigured

    async def call(
        self,
        prompt: str,
        model_identifier: str,
        *,
        strategy: ScreeningStrategyType = ScreeningStrategyType.CONSERVATIVE,
    ) -> ReviewerResult:
        self.calls.append((model_identifier, strategy))
        outcome = self.outcomes.get(model_identifier)
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if outcome is None:
            outcome = make_result(
                ScreeningDecisionType.INCLUDE,
                0.8,
                reviewer=f"reviewer {model_identifier}",
                strategy=strategy,
                model_identifier=model_identifier,
            )
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome.model_copy(update={"screening_strategy": strategy})


