# src/sr_screening/core/schemas.py

"""Core schemas for the screening orchestrator.

Domain objects passed between the prompt builder, gateway, fallback chain,
reconciliation engine and coordinator. Persistence uses the SQLModel models in
:mod:`sr_screening.core.models`; these are the application-layer view.
"""

from __future__ import annotations

import typing as t
import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Literal

from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)
from pydantic.types import AwareDatetime  # noqa: TC002

from sr_screening.core.types import (
    ConfidenceScore,
    ExclusionCriterionStatus,
    InclusionCriterionStatus,
    PicottStatus,
    ReferenceStatus,
    RunStatus,
    ScreeningDecisionType,
    ScreeningStrategyType,
)

ERROR_SIGNATURE_WORDS: t.Final = ("error", "quota", "rate limit")
"""Reviewer label/reasoning fragments marking an error-sentinel result."""


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class BaseSchema(BaseModel):  # noqa: D101
    model_config = ConfigDict(
        populate_by_name=True,  # use field names AND aliases
        arbitrary_types_allowed=True,
        validate_assignment=True,
        use_attribute_docstrings=True,  # populate '.description' from attr docstring
        revalidate_instances="always",
    )


# --- Screening inputs ---


class Reference(BaseSchema):
    """A bibliographic record under review. Read-only during screening."""

    model_config = ConfigDict(frozen=True)

    id: str
    """Stable reference identifier."""

    title: str = ""
    abstract: str = ""
    authors: str = ""
    """Authors as a single display string, lists are joined with ', '."""

    journal: str | None = None
    year: int | None = None
    doi: str | None = None
    pmid: str | None = None

    @field_validator("authors", mode="before")
    @classmethod
    def _join_authors(cls, v: t.Any) -> t.Any:
        if isinstance(v, list | tuple):
            return ", ".join(str(a) for a in v if a)
        if v is None:
            return ""
        return v

    @field_validator("title", "abstract", mode="before")
    @classmethod
    def _none_to_empty(cls, v: t.Any) -> t.Any:
        return "" if v is None else v


class Criteria(BaseSchema):
    """PICO(TT) screening rubric for a project."""

    population: str | None = None
    intervention: str | None = None
    comparator: str | None = None
    outcome: str | None = None
    timeframe_start: str | None = None
    timeframe_end: str | None = None
    timeframe_description: str | None = None
    study_designs: list[str] = Field(default_factory=list)
    inclusion_criteria: list[str] = Field(default_factory=list)
    exclusion_criteria: list[str] = Field(default_factory=list)

    def snapshot(self) -> Criteria:
        """Deep copy used for the duration of one screening run.

        Edits to the original after the run started are not visible to the run.
        """
        return self.model_copy(deep=True)


# --- Model output contract ---


class PicottElementAssessment(BaseSchema):
    status: PicottStatus
    """Whether the element is present, absent or unclear in the title/abstract."""

    evidence: str
    """Direct quote from the abstract, or your rationale if inferred or absent."""

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: t.Any) -> t.Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in PicottStatus.__members__.values():
                return PicottStatus.UNCLEAR
        return v


class PicottAssessment(BaseSchema):
    population: PicottElementAssessment
    intervention: PicottElementAssessment
    comparator: PicottElementAssessment
    outcome: PicottElementAssessment
    timeframe: PicottElementAssessment
    study_design: PicottElementAssessment


def _normalize_criterion_status(v: t.Any, status_type: type[StrEnum]) -> t.Any:
    if isinstance(v, str):
        v = v.strip().lower().replace("-", "_").replace(" ", "_")
        if v not in status_type.__members__.values():
            return status_type("unclear")
    return v


class InclusionCriterionAssessment(BaseSchema):
    criterion: str
    status: InclusionCriterionStatus
    evidence: str

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: t.Any) -> t.Any:
        return _normalize_criterion_status(v, InclusionCriterionStatus)


class ExclusionCriterionAssessment(BaseSchema):
    criterion: str
    status: ExclusionCriterionStatus
    evidence: str

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v: t.Any) -> t.Any:
        return _normalize_criterion_status(v, ExclusionCriterionStatus)


class CriteriaAssessment(BaseSchema):
    inclusion_criteria: list[InclusionCriterionAssessment] = Field(
        default_factory=list
    )
    exclusion_criteria: list[ExclusionCriterionAssessment] = Field(
        default_factory=list
    )


# The JSONSchema of this model is embedded in the screening prompt.
class ScreeningResponse(BaseSchema):
    """Your systematic review screening response for the given study.

    The recommendation is binary. There is no 'maybe'.
    """

    recommendation: ScreeningDecisionType
    """Either 'include' or 'exclude'."""

    confidence: ConfidenceScore
    """Confidence in the recommendation, a number between 0.0 and 1.0."""

    picott_assessment: PicottAssessment | None = None
    """Per PICOTT element status and evidence."""

    criteria_assessment: CriteriaAssessment | None = None
    """Per inclusion/exclusion criterion status and evidence."""

    reasoning: str = Field(min_length=1)
    """Final decision reasoning based on the above assessment and why you chose
    include/exclude despite any uncertainties."""

    @field_validator("recommendation", mode="before")
    @classmethod
    def _coerce_recommendation(cls, v: t.Any) -> t.Any:
        normalized = v.strip().lower() if isinstance(v, str) else v
        if normalized not in (
            ScreeningDecisionType.INCLUDE,
            ScreeningDecisionType.EXCLUDE,
        ):
            logger.warning(
                f"Invalid recommendation {v!r} from model, defaulting to exclude"
            )
            return ScreeningDecisionType.EXCLUDE
        return normalized

    @field_validator("picott_assessment", "criteria_assessment", mode="wrap")
    @classmethod
    def _drop_malformed_assessment(
        cls, v: t.Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> t.Any:
        try:
            return handler(v)
        except ValidationError as exc:
            logger.warning(
                f"Dropping malformed {info.field_name} from model response: "
                f"{exc.error_count()} validation error(s)"
            )
            return None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: t.Any) -> t.Any:
        if isinstance(v, bool) or not isinstance(v, int | float):
            msg = f"confidence must be a number, got {v!r}"
            raise ValueError(msg)  # noqa: TRY004
        return max(0.0, min(1.0, float(v)))


class ResponseParseError(BaseSchema):
    """Explicit failure variant of the response parse step."""

    kind: Literal["parse_error"] = "parse_error"
    message: str
    raw_text: str = ""


type ParsedScreeningResponse = ScreeningResponse | ResponseParseError
"""Result of parsing a model response: validated response or explicit error."""


# --- Reviewer results and decisions ---


class ReviewerResult(BaseSchema):
    """One model's verdict on one reference. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    decision: ScreeningDecisionType
    confidence: ConfidenceScore
    reasoning: str
    reviewer: str
    """Reviewer label, e.g. 'OpenAI gpt-4o' or 'Google gemini-1.5-flash (Error)'."""

    screening_strategy: ScreeningStrategyType
    model_identifier: str = ""
    """``provider:model`` used to produce this result."""

    picott_assessment: PicottAssessment | None = None
    criteria_assessment: CriteriaAssessment | None = None
    is_fallback: bool = False
    """Produced by a later tier than the one first attempted for this slot."""

    is_error: bool = False
    rate_limited: bool = False
    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None

    @property
    def is_valid(self) -> bool:
        """A true result, not a failure stand-in."""
        return self.confidence > 0

    @property
    def has_error_signature(self) -> bool:
        """Zero confidence and an error/quota label."""
        label = self.reviewer.lower()
        return self.confidence == 0 and any(w in label for w in ERROR_SIGNATURE_WORDS)

    @classmethod
    def from_response(
        cls,
        response: ScreeningResponse,
        *,
        reviewer: str,
        strategy: ScreeningStrategyType,
        model_identifier: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> ReviewerResult:
        return cls(
            decision=response.recommendation,
            confidence=response.confidence,
            reasoning=response.reasoning,
            picott_assessment=response.picott_assessment,
            criteria_assessment=response.criteria_assessment,
            reviewer=reviewer,
            screening_strategy=strategy,
            model_identifier=model_identifier,
            start_time=start_time,
            end_time=end_time or utc_now(),
        )

    @classmethod
    def error_sentinel(
        cls,
        *,
        reviewer: str,
        strategy: ScreeningStrategyType,
        message: str,
        model_identifier: str = "",
        rate_limited: bool = False,
        start_time: datetime | None = None,
    ) -> ReviewerResult:
        """Well-formed failure result: exclude, confidence 0, label suffixed '(Error)'."""
        if rate_limited:
            message = f"rate limit / quota exceeded: {message}"
        return cls(
            decision=ScreeningDecisionType.EXCLUDE,
            confidence=0.0,
            reasoning=(
                f"Error occurred during {reviewer} screening: {message}. "
                "Manual review required. Defaulting to exclude for safety."
            ),
            reviewer=f"{reviewer} (Error)",
            screening_strategy=strategy,
            model_identifier=model_identifier,
            is_error=True,
            rate_limited=rate_limited,
            start_time=start_time,
            end_time=utc_now(),
        )

    def as_fallback(self) -> ReviewerResult:
        """Copy marked as produced by a fallback provider."""
        if self.is_fallback:
            return self
        reviewer = self.reviewer
        if not self.is_error:
            reviewer = f"{reviewer} (Fallback)"
        return self.model_copy(update={"is_fallback": True, "reviewer": reviewer})


class ScreeningDecision(BaseSchema):
    """Reconciled outcome for one reference in one run."""

    model_config = ConfigDict(frozen=True)

    reference_id: str
    reviewer1: ReviewerResult
    """Conservative slot."""

    reviewer2: ReviewerResult
    """Comprehensive slot."""

    agreement: bool
    final_decision: ScreeningDecisionType
    final_confidence: ConfidenceScore
    conflict: bool
    double_failure: bool = False
    """Neither slot produced a valid result."""

    success: bool = True
    """False when the reference raised and this is the worst-case stand-in."""

    error: str | None = None
    processed_at: AwareDatetime = Field(default_factory=utc_now)
    duration_ms: int | None = None
    """Wall time spent on the reference, set by the coordinator."""

    @model_validator(mode="after")
    def _check_agreement(self) -> t.Self:
        both_valid = self.reviewer1.is_valid and self.reviewer2.is_valid
        expected = both_valid and self.reviewer1.decision == self.reviewer2.decision
        if self.agreement != expected:
            msg = f"agreement={self.agreement} inconsistent with reviewer results"
            raise ValueError(msg)
        if self.agreement and self.final_decision != self.reviewer1.decision:
            msg = "final_decision must equal the shared decision when reviewers agree"
            raise ValueError(msg)
        if self.conflict == self.agreement:
            msg = "conflict must be the negation of agreement"
            raise ValueError(msg)
        return self

    @property
    def final_status(self) -> ReferenceStatus:
        return self.final_decision.status

    def decision_payload(self) -> dict[str, JsonValue]:
        """Full decision payload stored with the log row and reference."""
        return {
            "reviewer1": self.reviewer1.model_dump(mode="json"),
            "reviewer2": self.reviewer2.model_dump(mode="json"),
            "agreement": self.agreement,
            "conflict": self.conflict,
            "double_failure": self.double_failure,
            "final_decision": self.final_decision.value,
            "final_confidence": self.final_confidence,
            "processed_at": self.processed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
        }


# --- Run state and events ---


class CurrentReference(BaseSchema):
    id: str
    title: str
    authors: str

    @classmethod
    def of(cls, reference: Reference) -> CurrentReference:
        return cls(id=reference.id, title=reference.title, authors=reference.authors)


class ScreeningRunProgress(BaseSchema):
    """Run-scoped counters. The coordinator is the only writer."""

    session_id: uuid.UUID
    project_id: str
    total_references: int = Field(ge=0)
    current_reference_index: int = 0
    completed_count: int = 0
    included_count: int = 0
    excluded_count: int = 0
    conflict_count: int = 0
    current_reference_id: str | None = None
    current_reference_title: str | None = None
    current_reference_authors: str | None = None
    status: RunStatus = RunStatus.INITIALIZED
    estimated_time_remaining: int | None = None
    """Seconds."""

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def percentage(self) -> float:
        if self.total_references == 0:
            return 0.0
        return self.completed_count / self.total_references * 100


class ReasoningStep(BaseSchema):
    """Append-only observability timeline event."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    session_id: uuid.UUID
    reference_id: str
    reviewer: str
    step: str
    reasoning: str
    confidence: ConfidenceScore | None = None
    timestamp: AwareDatetime = Field(default_factory=utc_now)


class ProgressEvent(BaseSchema):
    kind: Literal["progress"] = "progress"
    session_id: uuid.UUID
    completed: int
    total: int
    included: int = 0
    excluded: int = 0
    conflicts: int = 0
    estimated_time_remaining: int | None = None
    current_reference: CurrentReference | None = None

    @property
    def percentage(self) -> float:
        return self.completed / self.total * 100 if self.total else 0.0


class CurrentReferenceEvent(BaseSchema):
    kind: Literal["current_reference"] = "current_reference"
    session_id: uuid.UUID
    index: int
    """0-based position of the reference in the batch."""

    reference: Reference


class ReasoningEvent(BaseSchema):
    kind: Literal["reasoning_step"] = "reasoning_step"
    step: ReasoningStep


class RunStatusEvent(BaseSchema):
    kind: Literal["status"] = "status"
    session_id: uuid.UUID
    status: RunStatus
    message: str | None = None


type ScreeningEvent = t.Annotated[
    ProgressEvent | CurrentReferenceEvent | ReasoningEvent | RunStatusEvent,
    Field(discriminator="kind"),
]
"""Everything an observer can receive."""
