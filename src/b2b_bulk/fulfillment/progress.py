"""Progress events and cooperative cancellation for batch processing."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass


@dataclass(frozen=True)
class BatchStarted:
    batch_index: int
    total_batches: int
    item_count: int


@dataclass(frozen=True)
class ItemProcessed:
    index: int
    sku: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class BatchCompleted:
    batch_index: int
    total_batches: int
    items_added: int
    items_failed: int


@dataclass(frozen=True)
class ProcessingCompleted:
    items_processed: int
    items_added: int
    items_failed: int
    cancelled: bool


ProgressEvent = BatchStarted | ItemProcessed | BatchCompleted | ProcessingCompleted

_CLOSED = object()


class ProgressChannel:
    """Unbounded async stream of progress events.

    The engine publishes and closes; a consumer iterates with ``async for``
    until the channel is closed. Publishing never blocks the engine.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            raise RuntimeError("Progress channel is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event  # type: ignore[misc]

    def drain(self) -> list[ProgressEvent]:
        """Return events already queued without waiting."""
        events: list[ProgressEvent] = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is _CLOSED:
                break
            events.append(event)  # type: ignore[arg-type]
        return events


class CancellationToken:
    """Checked between batches; in-flight calls always finish."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

