"""Deterministic reconciliation of two reviewer results into one decision."""

from __future__ import annotations

import typing as t

from loguru import logger

from sr_screening.core.schemas import ReviewerResult, ScreeningDecision
from sr_screening.core.types import ScreeningDecisionType, ScreeningStrategyType

if t.TYPE_CHECKING:
    from collections.abc import Iterable

DOUBLE_FAILURE_CONFIDENCE: t.Final = 0.1
"""Final confidence when neither reviewer produced a valid result."""


def reconcile(
    reference_id: str,
    reviewer1: ReviewerResult,
    reviewer2: ReviewerResult,
) -> ScreeningDecision:
    """Reconcile the conservative (``reviewer1``) and comprehensive (``reviewer2``) results.

    Rules:
        - Both valid and agree: shared decision, mean confidence.
        - Both valid and disagree: strictly higher confidence wins. An exact tie
          resolves to exclude at the tied confidence.
        - Exactly one valid: that reviewer's decision and confidence.
        - Neither valid: exclude at :data:`DOUBLE_FAILURE_CONFIDENCE`, flagged as
          a double failure.

    ``conflict`` is always ``not agreement``.
    """
    log = logger.bind(reference_id=reference_id)
    r1_valid, r2_valid = reviewer1.is_valid, reviewer2.is_valid
    double_failure = False

    if r1_valid and r2_valid:
        agreement = reviewer1.decision == reviewer2.decision
        if agreement:
            final_decision = reviewer1.decision
            final_confidence = (reviewer1.confidence + reviewer2.confidence) / 2
        elif reviewer1.confidence > reviewer2.confidence:
            final_decision, final_confidence = reviewer1.decision, reviewer1.confidence
        elif reviewer2.confidence > reviewer1.confidence:
            final_decision, final_confidence = reviewer2.decision, reviewer2.confidence
        else:
            final_decision = ScreeningDecisionType.EXCLUDE
            final_confidence = reviewer1.confidence
            log.info(f"Reviewers tied at {final_confidence}, defaulting to exclude")
        if not agreement:
            log.info(
                f"Reviewer conflict: {reviewer1.reviewer}={reviewer1.decision} ({reviewer1.confidence}) "
                f"vs {reviewer2.reviewer}={reviewer2.decision} ({reviewer2.confidence}), "
                f"resolved to {final_decision}"
            )
    elif r1_valid or r2_valid:
        agreement = False
        valid = reviewer1 if r1_valid else reviewer2
        final_decision, final_confidence = valid.decision, valid.confidence
        log.warning(f"Only {valid.reviewer} produced a valid result, using its decision")
    else:
        agreement = False
        double_failure = True
        final_decision = ScreeningDecisionType.EXCLUDE
        final_confidence = DOUBLE_FAILURE_CONFIDENCE
        log.error(
            "Double failure: neither reviewer produced a valid result, "
            "defaulting to exclude for manual review"
        )

    return ScreeningDecision(
        reference_id=reference_id,
        reviewer1=reviewer1,
        reviewer2=reviewer2,
        agreement=agreement,
        final_decision=final_decision,
        final_confidence=final_confidence,
        conflict=not agreement,
        double_failure=double_failure,
    )


def worst_case_decision(reference_id: str, error: BaseException | str) -> ScreeningDecision:
    """Stand-in decision for a reference whose processing raised."""
    message = str(error) or type(error).__name__
    reviewers = [
        ReviewerResult.error_sentinel(
            reviewer=f"AI Reviewer {stance.slot}",
            strategy=stance,
            message=message,
        )
        for stance in ScreeningStrategyType
    ]
    return ScreeningDecision(
        reference_id=reference_id,
        reviewer1=reviewers[0],
        reviewer2=reviewers[1],
        agreement=False,
        final_decision=ScreeningDecisionType.EXCLUDE,
        final_confidence=0.0,
        conflict=True,
        double_failure=True,
        success=False,
        error=message,
    )


def agreement_rate(decisions: Iterable[ScreeningDecision]) -> float:
    """Share of decisions where both reviewers agreed, 0.0 for no decisions."""
    decisions = list(decisions)
    if not decisions:
        return 0.0
    return sum(d.agreement for d in decisions) / len(decisions)


def conflict_decisions(decisions: Iterable[ScreeningDecision]) -> list[ScreeningDecision]:
    """Decisions flagged for human review."""
    return [d for d in decisions if d.conflict]
