"""Core types for the screening orchestrator.

Anything used as a SQLModel field type cannot be Literal, SQLAlchemy requires column
types to be classes. So use StrEnum instead. Literal is fine nested in values/schemas.

Notes:
    - Any Enum is `Iterable` by default, Literal types need typing.get_args().
    - The model-facing vocabulary (``include``/``exclude``) and the persisted
      reference status vocabulary (``included``/``excluded``) are separate enums.
"""

from __future__ import annotations

import typing as t
from enum import StrEnum, auto

import annotated_types as at

type ConfidenceScore = t.Annotated[float, at.Ge(0.0), at.Le(1.0)]
"""Confidence in [0.0, 1.0]."""


class ScreeningDecisionType(StrEnum):
    """Binary screening decision. There is no 'maybe'.

    Attributes:
        include: Include the study in the systematic review.
        exclude: Exclude the study from the systematic review.
    """

    INCLUDE = auto()
    """Include the study in the systematic review."""
    EXCLUDE = auto()
    """Exclude the study from the systematic review."""

    @property
    def status(self) -> ReferenceStatus:
        """Persisted reference status for this decision."""
        if self is ScreeningDecisionType.INCLUDE:
            return ReferenceStatus.INCLUDED
        return ReferenceStatus.EXCLUDED


class ReferenceStatus(StrEnum):
    """Reference status vocabulary used by storage.

    Conflict is a separate boolean flag, never a status value.
    """

    PENDING = auto()
    INCLUDED = auto()
    EXCLUDED = auto()


class ScreeningStrategyType(StrEnum):
    """Reviewer stance. Maps to the bias instruction used in the prompt."""

    CONSERVATIVE = auto()
    COMPREHENSIVE = auto()

    @property
    def slot(self) -> int:
        """1-based reviewer slot number."""
        return 1 if self is ScreeningStrategyType.CONSERVATIVE else 2


class PicottStatus(StrEnum):
    """Whether a PICOTT element is reported in the title/abstract."""

    PRESENT = auto()
    ABSENT = auto()
    UNCLEAR = auto()


class InclusionCriterionStatus(StrEnum):
    MET = auto()
    NOT_MET = auto()
    UNCLEAR = auto()


class ExclusionCriterionStatus(StrEnum):
    VIOLATED = auto()
    NOT_VIOLATED = auto()
    UNCLEAR = auto()


class RunStatus(StrEnum):
    """Screening run state.

    ``initialized -> running -> completed``. ``error`` is only reachable from
    ``running`` for failures outside per-reference handling, ``cancelled`` when a
    caller requested cooperative cancellation.
    """

    INITIALIZED = auto()
    RUNNING = auto()
    COMPLETED = auto()
    ERROR = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ERROR, RunStatus.CANCELLED)


class ModelProvider(StrEnum):
    """Model providers reachable through the gateway.

    ``openrouter`` is an OpenAI-compatible aggregator.
    """

    OPENAI = auto()
    GOOGLE = auto()
    OPENROUTER = auto()

    @property
    def display_name(self) -> str:
        return {
            ModelProvider.OPENAI: "OpenAI",
            ModelProvider.GOOGLE: "Google",
            ModelProvider.OPENROUTER: "OpenRouter",
        }[self]


class ScreeningStage(StrEnum):
    TITLE_ABSTRACT_SCREENING = auto()


class LogLevel(StrEnum):
    """Loguru log levels.

    Attributes:
        TRACE | trace (str|int): TRACE | 5
        DEBUG | debug (str|int): DEBUG | 10
        INFO | info (str|int): INFO | 20
        SUCCESS | success (str|int): SUCCESS | 25
        WARNING | warning (str|int): WARNING | 30
        ERROR | error (str|int): ERROR | 40
        CRITICAL | critical (str|int): CRITICAL | 50

    Examples:
        >>> LogLevel.INFO.int
        ... 20
        >>> list(LogLevel.__members__)
        ... ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]
    """

    def __new__(cls, value: str, level_int: int) -> t.Self:
        self = str.__new__(cls, value.upper())
        self._value_ = value.upper()
        self.int = level_int
        return self

    TRACE = "trace", 5
    DEBUG = "debug", 10
    INFO = "info", 20
    SUCCESS = "success", 25
    WARNING = "warning", 30
    ERROR = "error", 40
    CRITICAL = "critical", 50
