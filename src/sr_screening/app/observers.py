"""Run observers.

Every consumer of run events implements one interface,
:meth:`ScreeningObserver.on_event`:

- :class:`CallbackObserver` calls in-process callbacks.
- :class:`StreamingObserver` pushes JSON over a caller-owned connection whose
  lifetime is scoped with ``async with``.
- :class:`CompositeObserver` fans out to several observers.

Polling clients do not observe, they read the store via :class:`ProgressPoller`.
"""

from __future__ import annotations

import asyncio
import inspect
import typing as t
import uuid

from loguru import logger
from pydantic import TypeAdapter

from sr_screening.core.schemas import (
    CurrentReferenceEvent,
    ProgressEvent,
    ReasoningEvent,
    ReasoningStep,
    RunStatusEvent,
    ScreeningEvent,
    ScreeningRunProgress,
)

if t.TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

    from sr_screening.app.store import ScreeningStore

screening_event_adapter: TypeAdapter[ScreeningEvent] = TypeAdapter(ScreeningEvent)
"""Validates/serializes any event by its ``kind`` discriminator."""


@t.runtime_checkable
class ScreeningObserver(t.Protocol):
    async def on_event(self, event: ScreeningEvent) -> None: ...


type Callback[E] = Callable[[E], Awaitable[None] | None]


async def _maybe_await(value: t.Any) -> None:
    if inspect.isawaitable(value):
        await value


class CallbackObserver:
    """Dispatches events to per-kind callbacks, sync or async."""

    def __init__(
        self,
        *,
        on_progress: Callback[ProgressEvent] | None = None,
        on_current_reference: Callback[CurrentReferenceEvent] | None = None,
        on_reasoning_step: Callback[ReasoningStep] | None = None,
        on_status: Callback[RunStatusEvent] | None = None,
    ) -> None:
        self.on_progress = on_progress
        self.on_current_reference = on_current_reference
        self.on_reasoning_step = on_reasoning_step
        self.on_status = on_status

    async def on_event(self, event: ScreeningEvent) -> None:
        match event:
            case ProgressEvent() if self.on_progress:
                await _maybe_await(self.on_progress(event))
            case CurrentReferenceEvent() if self.on_current_reference:
                await _maybe_await(self.on_current_reference(event))
            case ReasoningEvent() if self.on_reasoning_step:
                await _maybe_await(self.on_reasoning_step(event.step))
            case RunStatusEvent() if self.on_status:
                await _maybe_await(self.on_status(event))
            case _:
                pass


class EventSink(t.Protocol):
    """Connection a :class:`StreamingObserver` writes to, e.g. a websocket."""

    async def connect(self) -> None: ...

    async def send(self, data: str) -> None: ...

    async def close(self) -> None: ...


class StreamingObserver:
    """Streams JSON encoded events over a scoped connection.

    Examples:
        >>> async with StreamingObserver(websocket_sink) as observer:
        ...     await coordinator.run_screening(refs, criteria, "p1", observer=observer)
    """

    def __init__(self, sink: EventSink) -> None:
        self.sink = sink
        self.connected = False

    async def __aenter__(self) -> t.Self:
        await self.sink.connect()
        self.connected = True
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.connected = False
        await self.sink.close()

    async def on_event(self, event: ScreeningEvent) -> None:
        if not self.connected:
            msg = "StreamingObserver used outside of its connection scope"
            raise RuntimeError(msg)
        await self.sink.send(screening_event_adapter.dump_json(event).decode())


class CompositeObserver:
    """Fans events out to several observers. A failing observer does not stop others."""

    def __init__(self, *observers: ScreeningObserver) -> None:
        self.observers: Sequence[ScreeningObserver] = observers

    async def on_event(self, event: ScreeningEvent) -> None:
        for observer in self.observers:
            try:
                await observer.on_event(event)
            except Exception:  # noqa: BLE001
                logger.exception(f"Observer {observer!r} failed on {event.kind} event")


class ProgressPoller:
    """Read side for clients that poll the store instead of observing.

    Examples:
        >>> poller = ProgressPoller(store, session_id, interval=2.0)
        >>> async for progress in poller.watch():
        ...     print(f"{progress.percentage:.0f}%")
    """

    def __init__(
        self,
        store: ScreeningStore,
        session_id: uuid.UUID,
        interval: float = 1.0,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.interval = interval

    async def poll(self) -> ScreeningRunProgress | None:
        return await self.store.get_progress(self.session_id)

    async def reasoning_steps(self, reference_id: str | None = None) -> list[ReasoningStep]:
        return await self.store.list_reasoning_steps(self.session_id, reference_id)

    async def watch(self) -> AsyncIterator[ScreeningRunProgress]:
        """Yield progress snapshots until the run reaches a terminal status."""
        while True:
            progress = await self.poll()
            if progress is not None:
                yield progress
                if progress.status.is_terminal:
                    return
            await asyncio.sleep(self.interval)
