"""Progress/reasoning store interface and the in-memory implementation.

The run coordinator is the only writer. Observers and pollers only read.
:class:`~sr_screening.app.services.SQLModelScreeningStore` is the database backed
implementation.
"""

from __future__ import annotations

import typing as t
import uuid

from loguru import logger

from sr_screening.core.repositories import ConstraintViolationError, RecordNotFoundError
from sr_screening.core.schemas import (
    CurrentReference,
    ReasoningStep,
    ScreeningDecision,
    ScreeningRunProgress,
    utc_now,
)
from sr_screening.core.types import ReferenceStatus, RunStatus, ScreeningStage


@t.runtime_checkable
class ScreeningStore(t.Protocol):
    """Durable session state consumed by polling or streaming clients."""

    async def create_run(
        self, session_id: uuid.UUID, project_id: str, total_references: int
    ) -> ScreeningRunProgress: ...

    async def update_current_reference(
        self, session_id: uuid.UUID, index: int, reference: CurrentReference
    ) -> None: ...

    async def append_reasoning_step(self, step: ReasoningStep) -> None: ...

    async def append_decision_log(
        self,
        project_id: str,
        decision: ScreeningDecision,
        stage: ScreeningStage = ScreeningStage.TITLE_ABSTRACT_SCREENING,
    ) -> None: ...

    async def update_reference_status(self, decision: ScreeningDecision) -> None: ...

    async def increment_counters(
        self, session_id: uuid.UUID, decision: ScreeningDecision
    ) -> None: ...

    async def update_estimated_time(
        self, session_id: uuid.UUID, seconds: int | None
    ) -> None: ...

    async def mark_run_completed(self, session_id: uuid.UUID) -> None: ...

    async def mark_run_status(self, session_id: uuid.UUID, status: RunStatus) -> None: ...

    async def get_progress(self, session_id: uuid.UUID) -> ScreeningRunProgress | None: ...

    async def list_reasoning_steps(
        self, session_id: uuid.UUID, reference_id: str | None = None
    ) -> list[ReasoningStep]: ...


class DecisionLogEntry(t.NamedTuple):
    project_id: str
    stage: ScreeningStage
    decision: ScreeningDecision


class ReferenceScreeningState(t.NamedTuple):
    status: ReferenceStatus
    confidence: float
    conflict: bool
    details: dict[str, t.Any]


class InMemoryScreeningStore:
    """Process-local store. Used in tests and for runs that need no database."""

    def __init__(self) -> None:
        self.runs: dict[uuid.UUID, ScreeningRunProgress] = {}
        self.reasoning_steps: dict[uuid.UUID, list[ReasoningStep]] = {}
        self.decision_log: list[DecisionLogEntry] = []
        self.references: dict[str, ReferenceScreeningState] = {}

    def _run(self, session_id: uuid.UUID) -> ScreeningRunProgress:
        try:
            return self.runs[session_id]
        except KeyError as exc:
            msg = f"No screening run for session {session_id}"
            raise RecordNotFoundError(msg) from exc

    def _touch(self, progress: ScreeningRunProgress, **changes: t.Any) -> None:
        for name, value in changes.items():
            setattr(progress, name, value)
        progress.updated_at = utc_now()

    async def create_run(
        self, session_id: uuid.UUID, project_id: str, total_references: int
    ) -> ScreeningRunProgress:
        if session_id in self.runs:
            msg = f"Screening run for session {session_id} already exists"
            raise ConstraintViolationError(msg)
        now = utc_now()
        progress = ScreeningRunProgress(
            session_id=session_id,
            project_id=project_id,
            total_references=total_references,
            created_at=now,
            updated_at=now,
        )
        self.runs[session_id] = progress
        self.reasoning_steps[session_id] = []
        logger.debug(f"Created in-memory screening run {session_id}")
        return progress.model_copy()

    async def update_current_reference(
        self, session_id: uuid.UUID, index: int, reference: CurrentReference
    ) -> None:
        self._touch(
            self._run(session_id),
            current_reference_index=index,
            current_reference_id=reference.id,
            current_reference_title=reference.title,
            current_reference_authors=reference.authors,
        )

    async def append_reasoning_step(self, step: ReasoningStep) -> None:
        self._run(step.session_id)
        self.reasoning_steps[step.session_id].append(step)

    async def append_decision_log(
        self,
        project_id: str,
        decision: ScreeningDecision,
        stage: ScreeningStage = ScreeningStage.TITLE_ABSTRACT_SCREENING,
    ) -> None:
        self.decision_log.append(DecisionLogEntry(project_id, stage, decision))

    async def update_reference_status(self, decision: ScreeningDecision) -> None:
        self.references[decision.reference_id] = ReferenceScreeningState(
            status=decision.final_status,
            confidence=decision.final_confidence,
            conflict=decision.conflict,
            details=decision.decision_payload(),
        )

    async def increment_counters(
        self, session_id: uuid.UUID, decision: ScreeningDecision
    ) -> None:
        progress = self._run(session_id)
        included = decision.final_status is ReferenceStatus.INCLUDED
        self._touch(
            progress,
            completed_count=progress.completed_count + 1,
            included_count=progress.included_count + int(included),
            excluded_count=progress.excluded_count + int(not included),
            conflict_count=progress.conflict_count + int(decision.conflict),
        )

    async def update_estimated_time(
        self, session_id: uuid.UUID, seconds: int | None
    ) -> None:
        self._touch(self._run(session_id), estimated_time_remaining=seconds)

    async def mark_run_completed(self, session_id: uuid.UUID) -> None:
        self._touch(
            self._run(session_id),
            status=RunStatus.COMPLETED,
            current_reference_id=None,
            current_reference_title=None,
            current_reference_authors=None,
            estimated_time_remaining=0,
        )

    async def mark_run_status(self, session_id: uuid.UUID, status: RunStatus) -> None:
        self._touch(self._run(session_id), status=status)

    async def get_progress(self, session_id: uuid.UUID) -> ScreeningRunProgress | None:
        progress = self.runs.get(session_id)
        return progress.model_copy() if progress is not None else None

    async def list_reasoning_steps(
        self, session_id: uuid.UUID, reference_id: str | None = None
    ) -> list[ReasoningStep]:
        steps = self.reasoning_steps.get(session_id, [])
        if reference_id is not None:
            return [s for s in steps if s.reference_id == reference_id]
        return list(steps)
