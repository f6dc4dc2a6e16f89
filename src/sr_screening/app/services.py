"""Application service layer: the SQLModel screening store and the run coordinator."""

from __future__ import annotations

import asyncio
import time
import typing as t
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import timezone

from loguru import logger
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session

from sr_screening.app.agents.fallback import FallbackChain, default_tiers
from sr_screening.app.agents.gateway import ModelGateway
from sr_screening.app.agents.reconciliation import reconcile, worst_case_decision
from sr_screening.app.config import Settings, get_settings
from sr_screening.app.database import get_session_factory, session_factory_for
from sr_screening.app.observers import (
    CallbackObserver,
    CompositeObserver,
    ScreeningObserver,
)
from sr_screening.app.store import ScreeningStore
from sr_screening.core import models, repositories
from sr_screening.core.schemas import (
    Criteria,
    CurrentReference,
    CurrentReferenceEvent,
    ProgressEvent,
    ReasoningEvent,
    ReasoningStep,
    Reference,
    RunStatusEvent,
    ScreeningDecision,
    ScreeningEvent,
    ScreeningRunProgress,
)
from sr_screening.core.types import ReferenceStatus, RunStatus, ScreeningStage

if t.TYPE_CHECKING:
    from sr_screening.app.observers import Callback


class ServiceError(Exception):
    """Base exception for service layer errors."""


class RunInitializationError(ServiceError):
    """The run could not be created in the store. The run never started."""


class PersistenceError(ServiceError):
    """A store write or read failed."""


class ScreeningRunError(ServiceError):
    """The run failed outside per-reference handling.

    Attributes:
        decisions: Decisions produced before the failure.
    """

    def __init__(self, message: str, decisions: Sequence[ScreeningDecision]) -> None:
        super().__init__(message)
        self.decisions = list(decisions)


class BaseService:
    """Base service providing session management (sync)."""

    def __init__(self, factory: sessionmaker[Session] | None = None):
        self.session_factory = factory or get_session_factory()


# --- SQLModel store ---


def _to_progress(record: models.ScreeningProgress) -> ScreeningRunProgress:
    return ScreeningRunProgress.model_validate(record, from_attributes=True)


def _to_reasoning_step(record: models.ScreeningReasoningStep) -> ReasoningStep:
    timestamp = record.created_at
    if timestamp is not None and timestamp.tzinfo is None:
        # SQLite returns naive datetimes
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return ReasoningStep(
        id=record.id,
        session_id=record.session_id,
        reference_id=record.reference_id,
        reviewer=record.reviewer,
        step=record.step_description,
        reasoning=record.reasoning,
        confidence=record.confidence,
        **({"timestamp": timestamp} if timestamp is not None else {}),
    )


class SQLModelScreeningStore(BaseService):
    """:class:`~sr_screening.app.store.ScreeningStore` on the SQLModel tables.

    Every operation runs in its own ``session_factory.begin()`` transaction in a
    worker thread, so the event loop is never blocked on the database.
    """

    def __init__(
        self,
        factory: sessionmaker[Session] | None = None,
        progress_repo: repositories.ScreeningProgressRepository | None = None,
        step_repo: repositories.ScreeningReasoningStepRepository | None = None,
        log_repo: repositories.AIScreeningLogRepository | None = None,
        reference_repo: repositories.ScreeningReferenceRepository | None = None,
    ):
        super().__init__(factory)
        self.progress_repo = progress_repo or repositories.ScreeningProgressRepository()
        self.step_repo = step_repo or repositories.ScreeningReasoningStepRepository()
        self.log_repo = log_repo or repositories.AIScreeningLogRepository()
        self.reference_repo = (
            reference_repo or repositories.ScreeningReferenceRepository()
        )

    async def _run[R](self, op: str, fn: Callable[[Session], R]) -> R:
        def in_transaction() -> R:
            with self.session_factory.begin() as session:
                return fn(session)

        try:
            return await asyncio.to_thread(in_transaction)
        except repositories.RepositoryError as exc:
            msg = f"{op} failed: {exc}"
            raise PersistenceError(msg) from exc

    async def create_run(
        self, session_id: uuid.UUID, project_id: str, total_references: int
    ) -> ScreeningRunProgress:
        def create(session: Session) -> ScreeningRunProgress:
            record = self.progress_repo.add(
                session,
                models.ScreeningProgress(
                    session_id=session_id,
                    project_id=project_id,
                    total_references=total_references,
                    status=RunStatus.INITIALIZED,
                ),
            )
            return _to_progress(record)

        return await self._run("create_run", create)

    async def update_current_reference(
        self, session_id: uuid.UUID, index: int, reference: CurrentReference
    ) -> None:
        await self._run(
            "update_current_reference",
            lambda session: self.progress_repo.set_current_reference(
                session,
                session_id,
                index=index,
                reference_id=reference.id,
                title=reference.title,
                authors=reference.authors,
            ),
        )

    async def append_reasoning_step(self, step: ReasoningStep) -> None:
        record = models.ScreeningReasoningStep(
            id=step.id,
            session_id=step.session_id,
            reference_id=step.reference_id,
            reviewer=step.reviewer,
            step_description=step.step,
            reasoning=step.reasoning,
            confidence=step.confidence,
            created_at=step.timestamp,
        )
        await self._run(
            "append_reasoning_step", lambda session: self.step_repo.add(session, record)
        )

    async def append_decision_log(
        self,
        project_id: str,
        decision: ScreeningDecision,
        stage: ScreeningStage = ScreeningStage.TITLE_ABSTRACT_SCREENING,
    ) -> None:
        record = models.AIScreeningLog(
            project_id=project_id,
            reference_id=decision.reference_id,
            screening_stage=stage,
            primary_model_decision=decision.reviewer1.decision.status,
            primary_model_confidence=decision.reviewer1.confidence,
            secondary_model_decision=decision.reviewer2.decision.status,
            secondary_model_confidence=decision.reviewer2.confidence,
            final_decision=decision.final_status,
            model_agreement_score=1.0 if decision.agreement else 0.0,
            decision_reason=decision.decision_payload(),
        )
        await self._run(
            "append_decision_log", lambda session: self.log_repo.add(session, record)
        )

    async def update_reference_status(self, decision: ScreeningDecision) -> None:
        await self._run(
            "update_reference_status",
            lambda session: self.reference_repo.update_screening_status(
                session,
                decision.reference_id,
                status=decision.final_status,
                confidence=decision.final_confidence,
                details=decision.decision_payload(),
                conflict=decision.conflict,
            ),
        )

    async def increment_counters(
        self, session_id: uuid.UUID, decision: ScreeningDecision
    ) -> None:
        included = decision.final_status is ReferenceStatus.INCLUDED
        await self._run(
            "increment_counters",
            lambda session: self.progress_repo.increment_counters(
                session,
                session_id,
                completed=1,
                included=int(included),
                excluded=int(not included),
                conflicts=int(decision.conflict),
            ),
        )

    async def update_estimated_time(
        self, session_id: uuid.UUID, seconds: int | None
    ) -> None:
        await self._run(
            "update_estimated_time",
            lambda session: self.progress_repo.set_estimated_time(
                session, session_id, seconds
            ),
        )

    async def mark_run_completed(self, session_id: uuid.UUID) -> None:
        await self._run(
            "mark_run_completed",
            lambda session: self.progress_repo.set_status(
                session, session_id, RunStatus.COMPLETED, clear_current=True
            ),
        )

    async def mark_run_status(self, session_id: uuid.UUID, status: RunStatus) -> None:
        await self._run(
            "mark_run_status",
            lambda session: self.progress_repo.set_status(session, session_id, status),
        )

    async def get_progress(self, session_id: uuid.UUID) -> ScreeningRunProgress | None:
        def get(session: Session) -> ScreeningRunProgress | None:
            record = self.progress_repo.get_by_session_id(session, session_id)
            return _to_progress(record) if record is not None else None

        return await self._run("get_progress", get)

    async def list_reasoning_steps(
        self, session_id: uuid.UUID, reference_id: str | None = None
    ) -> list[ReasoningStep]:
        def list_steps(session: Session) -> list[ReasoningStep]:
            records = self.step_repo.list_by_session(session, session_id, reference_id)
            return [_to_reasoning_step(r) for r in records]

        return await self._run("list_reasoning_steps", list_steps)


# --- Run coordinator ---


class CancellationToken:
    """Cooperative cancellation, checked by the coordinator between references."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


class _RunCounters:
    def __init__(self) -> None:
        self.completed = 0
        self.included = 0
        self.excluded = 0
        self.conflicts = 0

    def add(self, decision: ScreeningDecision) -> None:
        self.completed += 1
        if decision.final_status is ReferenceStatus.INCLUDED:
            self.included += 1
        else:
            self.excluded += 1
        self.conflicts += int(decision.conflict)


SYSTEM_REVIEWER: t.Final = "System"


class ScreeningRunCoordinator:
    """Screens a batch of references sequentially with two reviewers each.

    Per reference: current-reference event, "Starting AI screening" step, dual review
    through the fallback chain, one step per reviewer, reconciliation, decision log
    and reference status writes, "Screening completed" step, counters, ETA and
    progress event, then the pacing delay.

    The coordinator is the only writer of run progress, reasoning steps and
    decisions. Store failures after the run started are logged and swallowed, the
    returned decisions are authoritative.
    """

    def __init__(
        self,
        store: ScreeningStore,
        chain: FallbackChain,
        *,
        pacing_interval: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.chain = chain
        self.pacing_interval = (
            get_settings().pacing_interval if pacing_interval is None else pacing_interval
        )
        self._sleep = sleep
        self._clock = clock

    async def _persist(self, op: str, write: Awaitable[t.Any]) -> None:
        try:
            await write
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Store operation {op} failed, continuing run: {exc!r}")

    async def _emit(
        self, observer: ScreeningObserver | None, event: ScreeningEvent
    ) -> None:
        if observer is None:
            return
        try:
            await observer.on_event(event)
        except Exception:  # noqa: BLE001
            logger.exception(f"Observer failed on {event.kind} event")

    async def _step(
        self,
        observer: ScreeningObserver | None,
        session_id: uuid.UUID,
        reference_id: str,
        *,
        reviewer: str,
        step: str,
        reasoning: str,
        confidence: float | None = None,
    ) -> ReasoningStep:
        reasoning_step = ReasoningStep(
            session_id=session_id,
            reference_id=reference_id,
            reviewer=reviewer,
            step=step,
            reasoning=reasoning,
            confidence=confidence,
        )
        await self._persist(
            "append_reasoning_step", self.store.append_reasoning_step(reasoning_step)
        )
        await self._emit(observer, ReasoningEvent(step=reasoning_step))
        return reasoning_step

    async def _screen_reference(
        self,
        observer: ScreeningObserver | None,
        session_id: uuid.UUID,
        reference: Reference,
        criteria: Criteria,
    ) -> ScreeningDecision:
        pair = await self.chain.review(reference, criteria)
        for result in pair:
            await self._step(
                observer,
                session_id,
                reference.id,
                reviewer=result.reviewer,
                step=f"Decision: {result.decision}",
                reasoning=result.reasoning,
                confidence=result.confidence,
            )
        return reconcile(reference.id, pair.conservative, pair.comprehensive)

    @staticmethod
    def _observer(
        observer: ScreeningObserver | None,
        on_progress: Callback[ProgressEvent] | None,
        on_current_reference: Callback[CurrentReferenceEvent] | None,
        on_reasoning_step: Callback[ReasoningStep] | None,
    ) -> ScreeningObserver | None:
        if not (on_progress or on_current_reference or on_reasoning_step):
            return observer
        callbacks = CallbackObserver(
            on_progress=on_progress,
            on_current_reference=on_current_reference,
            on_reasoning_step=on_reasoning_step,
        )
        if observer is None:
            return callbacks
        return CompositeObserver(observer, callbacks)

    async def _initialize(
        self, session_id: uuid.UUID, project_id: str, total: int
    ) -> None:
        try:
            await self.store.create_run(session_id, project_id, total)
        except Exception as exc:
            logger.exception(f"Could not create screening run {session_id}")
            msg = f"Failed to initialize screening run {session_id}: {exc}"
            raise RunInitializationError(msg) from exc
        try:
            await self.store.mark_run_status(session_id, RunStatus.RUNNING)
        except Exception as exc:
            logger.exception(f"Could not start screening run {session_id}")
            await self._persist(
                "mark_run_status", self.store.mark_run_status(session_id, RunStatus.ERROR)
            )
            msg = f"Failed to start screening run {session_id}: {exc}"
            raise RunInitializationError(msg) from exc

    async def run_screening(
        self,
        references: Sequence[Reference],
        criteria: Criteria,
        project_id: str,
        *,
        observer: ScreeningObserver | None = None,
        cancellation: CancellationToken | None = None,
        session_id: uuid.UUID | None = None,
        on_progress: Callback[ProgressEvent] | None = None,
        on_current_reference: Callback[CurrentReferenceEvent] | None = None,
        on_reasoning_step: Callback[ReasoningStep] | None = None,
    ) -> list[ScreeningDecision]:
        """Screen ``references`` against a snapshot of ``criteria``.

        Args:
            references: Batch to screen, in order.
            criteria: Project criteria. Snapshotted at run start.
            project_id: Project the decisions are logged under.
            observer: Receives every run event.
            cancellation: Checked before each reference. Once cancelled the run
                stops with status ``cancelled`` and remaining references get no
                decision.
            session_id: Run id, generated if not given.
            on_progress: Callback for progress events.
            on_current_reference: Callback for current-reference events.
            on_reasoning_step: Callback for reasoning steps.

        Returns:
            One decision per attempted reference, in batch order.

        Raises:
            RunInitializationError: The run could not be created or started.
            ScreeningRunError: Failure outside per-reference handling, the run is
                marked ``error``.
        """
        session_id = session_id or uuid.uuid4()
        log = logger.bind(session_id=str(session_id), project_id=project_id)
        snapshot = criteria.snapshot()
        observer = self._observer(
            observer, on_progress, on_current_reference, on_reasoning_step
        )
        total = len(references)

        await self._initialize(session_id, project_id, total)
        log.info(f"Screening run started for {total} references")
        await self._emit(
            observer, RunStatusEvent(session_id=session_id, status=RunStatus.RUNNING)
        )

        decisions: list[ScreeningDecision] = []
        counters = _RunCounters()
        final_status = RunStatus.COMPLETED
        started = self._clock()
        try:
            for index, reference in enumerate(references):
                if cancellation is not None and cancellation.is_cancelled:
                    log.warning(
                        f"Screening run cancelled after {index} of {total} references"
                    )
                    final_status = RunStatus.CANCELLED
                    break
                decision = await self._process_reference(
                    observer, session_id, project_id, index, reference, snapshot
                )
                decisions.append(decision)
                counters.add(decision)

                remaining = total - counters.completed
                elapsed = self._clock() - started
                eta = round(elapsed / counters.completed * remaining)
                await self._persist(
                    "update_estimated_time",
                    self.store.update_estimated_time(session_id, eta),
                )
                await self._emit(
                    observer,
                    ProgressEvent(
                        session_id=session_id,
                        completed=counters.completed,
                        total=total,
                        included=counters.included,
                        excluded=counters.excluded,
                        conflicts=counters.conflicts,
                        estimated_time_remaining=eta,
                        current_reference=CurrentReference.of(reference),
                    ),
                )
                if index < total - 1:
                    await self._sleep(self.pacing_interval)
        except Exception as exc:
            log.exception("Screening run failed")
            await self._persist(
                "mark_run_status", self.store.mark_run_status(session_id, RunStatus.ERROR)
            )
            await self._emit(
                observer,
                RunStatusEvent(
                    session_id=session_id, status=RunStatus.ERROR, message=str(exc)
                ),
            )
            msg = f"Screening run {session_id} failed: {exc}"
            raise ScreeningRunError(msg, decisions) from exc

        if final_status is RunStatus.COMPLETED:
            await self._persist(
                "mark_run_completed", self.store.mark_run_completed(session_id)
            )
        else:
            await self._persist(
                "mark_run_status", self.store.mark_run_status(session_id, final_status)
            )
        log.info(
            f"Screening run {final_status}: {counters.completed}/{total} screened, "
            f"{counters.included} included, {counters.excluded} excluded, "
            f"{counters.conflicts} conflicts"
        )
        await self._emit(
            observer, RunStatusEvent(session_id=session_id, status=final_status)
        )
        return decisions

    async def _process_reference(
        self,
        observer: ScreeningObserver | None,
        session_id: uuid.UUID,
        project_id: str,
        index: int,
        reference: Reference,
        criteria: Criteria,
    ) -> ScreeningDecision:
        log = logger.bind(session_id=str(session_id), reference_id=reference.id)
        ref_started = self._clock()
        await self._persist(
            "update_current_reference",
            self.store.update_current_reference(
                session_id, index, CurrentReference.of(reference)
            ),
        )
        await self._emit(
            observer,
            CurrentReferenceEvent(session_id=session_id, index=index, reference=reference),
        )
        await self._step(
            observer,
            session_id,
            reference.id,
            reviewer=SYSTEM_REVIEWER,
            step="Starting AI screening",
            reasoning=f"Analyzing reference: {reference.title}",
            confidence=1.0,
        )
        try:
            decision = await self._screen_reference(
                observer, session_id, reference, criteria
            )
        except Exception as exc:
            log.exception(f"Screening failed for reference {reference.id}")
            decision = worst_case_decision(reference.id, exc)
            await self._step(
                observer,
                session_id,
                reference.id,
                reviewer=SYSTEM_REVIEWER,
                step="Error occurred",
                reasoning=f"Error: {decision.error}",
                confidence=0.0,
            )

        decision = decision.model_copy(
            update={"duration_ms": round((self._clock() - ref_started) * 1000)}
        )
        await self._persist(
            "append_decision_log", self.store.append_decision_log(project_id, decision)
        )
        await self._persist(
            "update_reference_status", self.store.update_reference_status(decision)
        )
        if decision.success:
            await self._step(
                observer,
                session_id,
                reference.id,
                reviewer=SYSTEM_REVIEWER,
                step="Screening completed",
                reasoning=f"Final decision: {decision.final_decision}"
                + (" (conflict, flagged for human review)" if decision.conflict else ""),
                confidence=decision.final_confidence,
            )
        await self._persist(
            "increment_counters", self.store.increment_counters(session_id, decision)
        )
        log.info(
            f"Reference {reference.id}: {decision.final_status} "
            f"({decision.final_confidence:.2f}), conflict={decision.conflict}"
        )
        return decision


def build_coordinator(
    settings: Settings | None = None,
    store: ScreeningStore | None = None,
) -> ScreeningRunCoordinator:
    """Coordinator wired from settings: SQLModel store, gateway and default tiers.

    Without an explicit store the SQLModel store is bound to ``settings.DATABASE_URL``.
    """
    if store is None:
        store = SQLModelScreeningStore(session_factory_for(settings))
    settings = settings or get_settings()
    gateway = ModelGateway(settings)
    chain = FallbackChain(gateway, default_tiers(settings))
    return ScreeningRunCoordinator(
        store,
        chain,
        pacing_interval=settings.pacing_interval,
    )


async def screen_references(
    references: Sequence[Reference],
    criteria: Criteria,
    project_id: str,
    *,
    settings: Settings | None = None,
    store: ScreeningStore | None = None,
    observer: ScreeningObserver | None = None,
    cancellation: CancellationToken | None = None,
    session_id: uuid.UUID | None = None,
) -> list[ScreeningDecision]:
    """Screen a batch with the default wiring. See :meth:`ScreeningRunCoordinator.run_screening`."""
    coordinator = build_coordinator(settings, store)
    return await coordinator.run_screening(
        references,
        criteria,
        project_id,
        observer=observer,
        cancellation=cancellation,
        session_id=session_id,
    )
