# src/sr_screening/core/models.py
"""SQLModel/Alchemy models for the screening store.

These are for DB R/W and abstracted away from the application layer which uses
the Pydantic schemas in :mod:`sr_screening.core.schemas`. The relational schema
itself belongs to the surrounding application, these tables mirror the columns
the orchestrator reads and writes.

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere, so the same models
work against SQLite in tests.
"""

import enum
import typing as t
import uuid
from collections.abc import Mapping, MutableMapping
from datetime import datetime

import sqlalchemy as sa
import sqlalchemy.dialects.postgresql as sa_pg
from pydantic import ConfigDict, JsonValue
from pydantic.types import PositiveInt
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlmodel import Field, SQLModel  # type: ignore

from sr_screening.core.types import (
    LogLevel,
    ReferenceStatus,
    RunStatus,
    ScreeningStage,
)

JSONVariant = sa.JSON().with_variant(sa_pg.JSONB(), "postgresql")
"""JSONB on PostgreSQL, JSON on other dialects."""


def enum_values(enum_class: type[enum.Enum]) -> list[str]:
    """Get values for enum."""
    return [member.value for member in enum_class]


def enum_column(enum_class: type[enum.Enum], name: str, **kwargs: t.Any) -> sa.Column:
    return sa.Column(
        sa.Enum(enum_class, name=name, values_callable=enum_values),
        **kwargs,
    )


def created_at_column() -> sa.Column:
    return sa.Column(
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=True,
    )


def updated_at_column() -> sa.Column:
    return sa.Column(
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        onupdate=sa.func.now(),
        nullable=True,
    )


class SQLModelBase(AsyncAttrs, SQLModel):
    """Base SQLModel with ``awaitable_attrs`` mixin attribute.

    Attributes:
        awaitable_attrs: SQLAlchemy proxy mixin that makes all attributes awaitable.
    """

    model_config = ConfigDict(  # type: ignore
        from_attributes=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
        use_attribute_docstrings=True,
    )


Base = SQLModelBase


class ScreeningProgress(SQLModelBase, table=True):
    """Progress record of one screening run (session).

    Polled by clients, written only by the run coordinator.
    """

    _tablename: t.ClassVar[t.Literal["screening_progress"]] = "screening_progress"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    session_id: uuid.UUID = Field(unique=True, index=True)
    project_id: str = Field(index=True)
    current_reference_index: int = Field(default=0)
    total_references: int = Field(ge=0)
    completed_count: int = Field(default=0)
    included_count: int = Field(default=0)
    excluded_count: int = Field(default=0)
    conflict_count: int = Field(default=0)
    current_reference_id: str | None = Field(default=None)
    current_reference_title: str | None = Field(
        default=None, sa_column=sa.Column(sa.Text(), nullable=True)
    )
    current_reference_authors: str | None = Field(
        default=None, sa_column=sa.Column(sa.Text(), nullable=True)
    )
    status: RunStatus = Field(
        default=RunStatus.INITIALIZED,
        sa_column=enum_column(RunStatus, "runstatus_enum", nullable=False, index=True),
    )
    estimated_time_remaining: int | None = Field(default=None)
    """Seconds."""

    created_at: datetime | None = Field(default=None, sa_column=created_at_column())
    updated_at: datetime | None = Field(default=None, sa_column=updated_at_column())


class ScreeningReasoningStep(SQLModelBase, table=True):
    """Append-only reasoning timeline row."""

    _tablename: t.ClassVar[t.Literal["screening_reasoning_steps"]] = (
        "screening_reasoning_steps"
    )

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    session_id: uuid.UUID = Field(
        foreign_key="screening_progress.session_id", index=True
    )
    reference_id: str = Field(index=True)
    reviewer: str
    step_description: str = Field(sa_column=sa.Column(sa.Text(), nullable=False))
    reasoning: str = Field(sa_column=sa.Column(sa.Text(), nullable=False))
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    created_at: datetime | None = Field(default=None, sa_column=created_at_column())


class AIScreeningLog(SQLModelBase, table=True):
    """Append-only decision log, one row per reference per run."""

    _tablename: t.ClassVar[t.Literal["ai_screening_log"]] = "ai_screening_log"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    project_id: str = Field(index=True)
    reference_id: str = Field(index=True)
    screening_stage: ScreeningStage = Field(
        sa_column=enum_column(ScreeningStage, "screeningstage_enum", nullable=False),
    )
    primary_model_decision: ReferenceStatus = Field(
        sa_column=enum_column(ReferenceStatus, "referencestatus_enum", nullable=False),
    )
    primary_model_confidence: float = Field(ge=0.0, le=1.0)
    secondary_model_decision: ReferenceStatus = Field(
        sa_column=enum_column(ReferenceStatus, "referencestatus_enum", nullable=False),
    )
    secondary_model_confidence: float = Field(ge=0.0, le=1.0)
    final_decision: ReferenceStatus = Field(
        sa_column=enum_column(
            ReferenceStatus, "referencestatus_enum", nullable=False, index=True
        ),
    )
    model_agreement_score: float | None = Field(default=None)
    decision_reason: Mapping[str, JsonValue] = Field(
        default_factory=dict,
        sa_column=sa.Column(JSONVariant, nullable=False),
    )
    """Full decision payload: both reviewer results, agreement, conflict."""

    created_at: datetime | None = Field(default=None, sa_column=created_at_column())


class ScreeningReference(SQLModelBase, table=True):
    """Reference row with its current screening status and AI fields."""

    _tablename: t.ClassVar[t.Literal["references"]] = "references"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: str = Field(primary_key=True)
    project_id: str | None = Field(default=None, index=True)
    title: str = Field(default="", sa_column=sa.Column(sa.Text(), nullable=False))
    abstract: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    authors: str | None = Field(default=None, sa_column=sa.Column(sa.Text()))
    journal: str | None = Field(default=None)
    year: int | None = Field(default=None)
    doi: str | None = Field(default=None, index=True)
    pmid: str | None = Field(default=None)
    status: ReferenceStatus = Field(
        default=ReferenceStatus.PENDING,
        sa_column=enum_column(
            ReferenceStatus, "referencestatus_enum", nullable=False, index=True
        ),
    )
    ai_recommendation: ReferenceStatus | None = Field(
        default=None,
        sa_column=enum_column(ReferenceStatus, "referencestatus_enum", nullable=True),
    )
    ai_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    ai_screening_details: MutableMapping[str, JsonValue] = Field(
        default_factory=dict,
        sa_column=sa.Column(JSONVariant, nullable=False),
    )
    ai_conflict_flag: bool = Field(default=False)
    created_at: datetime | None = Field(default=None, sa_column=created_at_column())
    updated_at: datetime | None = Field(default=None, sa_column=updated_at_column())


class LogRecord(SQLModelBase, table=True):
    """Model for storing app log records."""

    _tablename: t.ClassVar[t.Literal["log_records"]] = "log_records"

    __tablename__ = _tablename  # pyright: ignore # type: ignore

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    timestamp: datetime = Field(
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False, index=True)
    )
    level: LogLevel = Field(
        sa_column=enum_column(LogLevel, "loglevel_enum", nullable=False, index=True),
    )
    message: str = Field(sa_column=sa.Column(sa.Text(), nullable=False))
    module: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(100), default=None, nullable=True)
    )
    name: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(100), default=None, nullable=True)
    )
    function: str | None = Field(
        default=None, sa_column=sa.Column(sa.String(200), default=None, nullable=True)
    )
    line: PositiveInt | None = Field(
        default=None, sa_column=sa.Column(sa.Integer(), default=None, nullable=True)
    )
    thread: str | None = Field(default=None, description="{thread.name}:{thread.id}")
    process: str | None = Field(default=None, description="{process.name}:{process.id}")
    extra: Mapping[str, JsonValue] = Field(
        default_factory=dict,
        description="User provided extra context.",
        sa_column=sa.Column(JSONVariant, nullable=False),
    )
    exception: Mapping[str, JsonValue] | None = Field(
        default=None,
        description="Exception information.",
        sa_column=sa.Column(JSONVariant, nullable=True),
    )
    session_id: uuid.UUID | None = Field(
        default=None,
        description="Screening session the record relates to, read from extra by the sink.",
        index=True,
    )
