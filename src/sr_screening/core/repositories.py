"""Synchronous repository implementations for the screening store.

This module provides sync repositories for database operations using SQLModel.

Note:
    - Repositories take a ``Session`` provided by the calling service and never
      commit or roll back themselves.

      ``with session_factory.begin() as session``:
            - Executes the operations within one transaction.
            - Commits the session.
            - Rollbacks the session on error.
            - DOES NOT SUPPORT MANUAL ``session.commit()``

    - Counter updates are single ``UPDATE ... SET x = x + n`` statements so a
      poller never observes a half-applied increment.

Examples:
    ```python
    progress_repo = ScreeningProgressRepository()

    with session_factory.begin() as session:
        progress_repo.add(session, ScreeningProgress(session_id=sid, project_id="p1", total_references=3))

    with session_factory.begin() as session:
        progress_repo.increment_counters(session, sid, included=1)
        progress = progress_repo.get_by_session_id(session, sid)
    ```
"""

from __future__ import annotations

import types
import typing as t
import uuid

import sqlalchemy as sa
from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, and_, col, select
from sqlmodel.sql.expression import SelectOfScalar

from sr_screening.core.models import (
    AIScreeningLog,
    Base,
    LogRecord,
    ScreeningProgress,
    ScreeningReasoningStep,
    ScreeningReference,
)
from sr_screening.core.types import LogLevel, ReferenceStatus, RunStatus

if t.TYPE_CHECKING:
    from collections.abc import Sequence

    from pydantic import JsonValue

type RecordId = uuid.UUID | str


class RepositoryError(Exception):
    """Base exception for persistence layer failures."""


class ConstraintViolationError(RepositoryError):
    """Database constraint violation (unique constraint, foreign key, etc.)."""


class RecordNotFoundError(RepositoryError):
    """Requested record was not found in the database."""


class BaseRepository[T: Base]:
    """Base repository implementing common sync database operations.

    Methods accept a Session provided by the calling service.
    Repositories do not manage transactions (commit/rollback).
    """

    @property
    def model_cls(self) -> type[T]:
        """Get the model class associated with the repository."""
        generic_base = next(
            (
                base
                for base in types.get_original_bases(type(self))
                if t.get_origin(base) is BaseRepository
            ),
            None,
        )
        if generic_base is None:
            raise TypeError(
                f"Could not determine the generic base for {type(self).__name__}"
            )

        model_arg = t.get_args(generic_base)[0]
        if not isinstance(model_arg, type):
            raise TypeError(
                f"Expected a type argument for BaseRepository, got {model_arg}"
            )
        return model_arg

    def _construct_get_stmt(self, id: RecordId) -> SelectOfScalar[T]:
        Model = self.model_cls
        return select(Model).where(Model.id == id)  # pyright: ignore[reportAttributeAccessIssue]

    def get_by_id(self, session: Session, id: RecordId) -> T | None:
        try:
            stmt = self._construct_get_stmt(id)
            return session.exec(stmt).first()
        except SQLAlchemyError as exc:
            msg = f"Database error in get_by_id for {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def _construct_list_stmt(self, **filters: t.Any) -> SelectOfScalar[T]:
        Model = self.model_cls
        stmt = select(Model)
        where_clauses = []
        for c, v in filters.items():
            if not hasattr(Model, c):
                msg = f"Invalid column name {c} for model {Model.__name__}"
                logger.warning(msg)
                raise ValueError(msg)
            where_clauses.append(getattr(Model, c) == v)

        if where_clauses:
            stmt = stmt.where(and_(*where_clauses))
        return stmt

    def list(self, session: Session, **filters: t.Any) -> Sequence[T]:
        try:
            stmt = self._construct_list_stmt(**filters)
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to list {self.model_cls.__name__} with filters {filters}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def add(self, session: Session, record: T) -> T:
        try:
            session.add(record)
            session.flush([record])
            return record
        except IntegrityError as exc:
            msg = f"Constraint violation adding {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise ConstraintViolationError(msg) from exc
        except SQLAlchemyError as exc:
            msg = f"Database error adding {self.model_cls.__name__}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class ScreeningProgressRepository(BaseRepository[ScreeningProgress]):
    """Repository for run progress rows, keyed by ``session_id``."""

    def get_by_session_id(
        self, session: Session, session_id: uuid.UUID
    ) -> ScreeningProgress | None:
        try:
            stmt = select(self.model_cls).where(
                self.model_cls.session_id == session_id
            )
            return session.exec(stmt).first()
        except SQLAlchemyError as exc:
            msg = f"Database error fetching progress for session {session_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def _update_by_session_id(
        self, session: Session, session_id: uuid.UUID, values: dict[str, t.Any]
    ) -> None:
        Model = self.model_cls
        try:
            stmt = (
                sa.update(Model)
                .where(col(Model.session_id) == session_id)
                .values(**values, updated_at=sa.func.now())
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
        except SQLAlchemyError as exc:
            msg = f"Database error updating progress for session {session_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc
        if result.rowcount == 0:  # pyright: ignore[reportAttributeAccessIssue]
            msg = f"No screening progress for session {session_id}"
            logger.warning(msg)
            raise RecordNotFoundError(msg)

    def set_current_reference(
        self,
        session: Session,
        session_id: uuid.UUID,
        *,
        index: int,
        reference_id: str,
        title: str,
        authors: str,
    ) -> None:
        self._update_by_session_id(
            session,
            session_id,
            {
                "current_reference_index": index,
                "current_reference_id": reference_id,
                "current_reference_title": title,
                "current_reference_authors": authors,
            },
        )

    def increment_counters(
        self,
        session: Session,
        session_id: uuid.UUID,
        *,
        completed: int = 1,
        included: int = 0,
        excluded: int = 0,
        conflicts: int = 0,
    ) -> None:
        """Apply counter deltas in a single UPDATE statement."""
        Model = self.model_cls
        self._update_by_session_id(
            session,
            session_id,
            {
                "completed_count": col(Model.completed_count) + completed,
                "included_count": col(Model.included_count) + included,
                "excluded_count": col(Model.excluded_count) + excluded,
                "conflict_count": col(Model.conflict_count) + conflicts,
            },
        )

    def set_estimated_time(
        self, session: Session, session_id: uuid.UUID, seconds: int | None
    ) -> None:
        self._update_by_session_id(
            session, session_id, {"estimated_time_remaining": seconds}
        )

    def set_status(
        self,
        session: Session,
        session_id: uuid.UUID,
        status: RunStatus,
        *,
        clear_current: bool = False,
    ) -> None:
        values: dict[str, t.Any] = {"status": status}
        if clear_current:
            values |= {
                "current_reference_id": None,
                "current_reference_title": None,
                "current_reference_authors": None,
                "estimated_time_remaining": 0,
            }
        self._update_by_session_id(session, session_id, values)

    def get_by_project_id(
        self, session: Session, project_id: str
    ) -> Sequence[ScreeningProgress]:
        try:
            stmt = (
                select(self.model_cls)
                .where(self.model_cls.project_id == project_id)
                .order_by(col(self.model_cls.created_at).desc())
            )
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch screening runs for project {project_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class ScreeningReasoningStepRepository(BaseRepository[ScreeningReasoningStep]):
    """Repository for the append-only reasoning timeline."""

    def list_by_session(
        self,
        session: Session,
        session_id: uuid.UUID,
        reference_id: str | None = None,
    ) -> Sequence[ScreeningReasoningStep]:
        """Steps of a run in append order, optionally for one reference."""
        Model = self.model_cls
        try:
            stmt = select(Model).where(Model.session_id == session_id)
            if reference_id is not None:
                stmt = stmt.where(Model.reference_id == reference_id)
            stmt = stmt.order_by(col(Model.created_at).asc())
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch reasoning steps for session {session_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class AIScreeningLogRepository(BaseRepository[AIScreeningLog]):
    """Repository for the decision log."""

    def get_by_reference_id(
        self, session: Session, reference_id: str
    ) -> Sequence[AIScreeningLog]:
        try:
            stmt = (
                select(self.model_cls)
                .where(self.model_cls.reference_id == reference_id)
                .order_by(col(self.model_cls.created_at).asc())
            )
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch decision log for reference {reference_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def get_by_project_id(
        self,
        session: Session,
        project_id: str,
        final_decision: ReferenceStatus | None = None,
    ) -> Sequence[AIScreeningLog]:
        try:
            stmt = select(self.model_cls).where(
                self.model_cls.project_id == project_id
            )
            if final_decision is not None:
                stmt = stmt.where(self.model_cls.final_decision == final_decision)
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch decision log for project {project_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class ScreeningReferenceRepository(BaseRepository[ScreeningReference]):
    """Repository for reference rows."""

    def update_screening_status(
        self,
        session: Session,
        reference_id: str,
        *,
        status: ReferenceStatus,
        confidence: float,
        details: dict[str, JsonValue],
        conflict: bool,
    ) -> ScreeningReference:
        """Write the final status and AI fields of a screened reference.

        Raises:
            RecordNotFoundError: No reference row with this id.
            RepositoryError: If a database error occurs.
        """
        record = self.get_by_id(session, reference_id)
        if record is None:
            msg = f"Reference {reference_id} not found for status update."
            logger.warning(msg)
            raise RecordNotFoundError(msg)
        try:
            record.status = status
            record.ai_recommendation = status
            record.ai_confidence = confidence
            record.ai_screening_details = details
            record.ai_conflict_flag = conflict
            session.add(record)
            session.flush([record])
            return record
        except SQLAlchemyError as exc:
            msg = f"Database error updating status of reference {reference_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def get_conflicts(
        self, session: Session, project_id: str
    ) -> Sequence[ScreeningReference]:
        """References flagged for human review."""
        try:
            stmt = select(self.model_cls).where(
                self.model_cls.project_id == project_id,
                col(self.model_cls.ai_conflict_flag).is_(True),
            )
            return session.exec(stmt).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch conflicted references for project {project_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc


class LogRepository(BaseRepository[LogRecord]):
    """Repository for log records."""

    def get_by_session_id(
        self, session: Session, session_id: uuid.UUID
    ) -> Sequence[LogRecord]:
        try:
            query = select(self.model_cls).where(
                self.model_cls.session_id == session_id
            )
            return session.exec(query).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch log records for session {session_id}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc

    def get_by_level(
        self,
        session: Session,
        level: LogLevel,
        session_id: uuid.UUID | None = None,
    ) -> Sequence[LogRecord]:
        """Get log records by level and optional screening session ID."""
        try:
            query = select(self.model_cls).where(self.model_cls.level == level)
            if session_id is not None:
                query = query.where(self.model_cls.session_id == session_id)
            return session.exec(query).all()
        except SQLAlchemyError as exc:
            msg = f"Failed to fetch records by level for {session_id}, {level}: {exc}"
            logger.exception(msg)
            raise RepositoryError(msg) from exc
