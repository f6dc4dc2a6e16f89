import json
import uuid

import pytest

from sr_screening.app.observers import (
    CallbackObserver,
    CompositeObserver,
    ProgressPoller,
    StreamingObserver,
    screening_event_adapter,
)
from sr_screening.app.store import InMemoryScreeningStore
from sr_screening.core.schemas import (
    CurrentReferenceEvent,
    ProgressEvent,
    ReasoningEvent,
    ReasoningStep,
    Reference,
    RunStatusEvent,
)
from sr_screening.core.types import RunStatus

SESSION_ID = uuid.uuid4()


class FakeSink:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True


def _progress(completed=1):
    return ProgressEvent(session_id=SESSION_ID, completed=completed, total=4)


def _reasoning():
    return ReasoningEvent(
        step=ReasoningStep(
            session_id=SESSION_ID,
            reference_id="r1",
            reviewer="System",
            step="Starting AI screening",
            reasoning="Analyzing reference: T",
        )
    )


@pytest.mark.asyncio
async def test_callback_observer_dispatches_by_kind(mocker):
    on_progress = mocker.Mock()
    on_current_reference = mocker.AsyncMock()
    on_reasoning_step = mocker.Mock()
    observer = CallbackObserver(
        on_progress=on_progress,
        on_current_reference=on_current_reference,
        on_reasoning_step=on_reasoning_step,
    )
    progress = _progress()
    current = CurrentReferenceEvent(
        session_id=SESSION_ID, index=0, reference=Reference(id="r1", title="T")
    )
    reasoning = _reasoning()

    await observer.on_event(progress)
    await observer.on_event(current)
    await observer.on_event(reasoning)
    await observer.on_event(RunStatusEvent(session_id=SESSION_ID, status=RunStatus.RUNNING))

    on_progress.assert_called_once_with(progress)
    on_current_reference.assert_awaited_once_with(current)
    on_reasoning_step.assert_called_once_with(reasoning.step)


@pytest.mark.asyncio
async def test_streaming_observer_sends_json_within_scope():
    sink = FakeSink()
    async with StreamingObserver(sink) as observer:
        assert sink.connected
        await observer.on_event(_progress(2))
        await observer.on_event(_reasoning())
    assert sink.closed

    first = json.loads(sink.sent[0])
    assert first["kind"] == "progress"
    assert first["completed"] == 2
    second = screening_event_adapter.validate_json(sink.sent[1])
    assert isinstance(second, ReasoningEvent)
    assert second.step.step == "Starting AI screening"


@pytest.mark.asyncio
async def test_streaming_observer_outside_scope_raises():
    sink = FakeSink()
    observer = StreamingObserver(sink)
    with pytest.raises(RuntimeError, match="outside of its connection scope"):
        await observer.on_event(_progress())

    async with observer:
        pass
    with pytest.raises(RuntimeError):
        await observer.on_event(_progress())
    assert sink.sent == []


@pytest.mark.asyncio
async def test_composite_observer_isolates_failures(mocker):
    failing = mocker.Mock()
    failing.on_event = mocker.AsyncMock(side_effect=RuntimeError("socket closed"))
    healthy = mocker.Mock()
    healthy.on_event = mocker.AsyncMock()
    event = _progress()

    await CompositeObserver(failing, healthy).on_event(event)

    failing.on_event.assert_awaited_once_with(event)
    healthy.on_event.assert_awaited_once_with(event)


@pytest.mark.asyncio
async def test_progress_poller_watch_stops_on_terminal_status(mocker):
    store = InMemoryScreeningStore()
    session_id = uuid.uuid4()
    await store.create_run(session_id, "p1", 2)
    await store.mark_run_status(session_id, RunStatus.RUNNING)
    poller = ProgressPoller(store, session_id, interval=0.5)

    async def advance(interval):
        await store.mark_run_status(session_id, RunStatus.COMPLETED)

    sleep = mocker.patch(
        "sr_screening.app.observers.asyncio.sleep", side_effect=advance
    )

    statuses = [progress.status async for progress in poller.watch()]

    assert statuses == [RunStatus.RUNNING, RunStatus.COMPLETED]
    sleep.assert_awaited_once_with(0.5)


@pytest.mark.asyncio
async def test_progress_poller_reads_reasoning_steps():
    store = InMemoryScreeningStore()
    session_id = uuid.uuid4()
    await store.create_run(session_id, "p1", 1)
    step = ReasoningStep(
        session_id=session_id, reference_id="r1", reviewer="System", step="s", reasoning="r"
    )
    await store.append_reasoning_step(step)

    poller = ProgressPoller(store, session_id)
    assert await poller.reasoning_steps("r1") == [step]
    assert await poller.reasoning_steps("r2") == []
    assert (await poller.poll()).total_references == 1
