# src/progress/sinks.py — v2
"""Progress sinks and the stream-writer task that feeds them.

A sink is any push transport accepting ordered events and a close()
signal. SSESink renders server-sent-event frames for HTTP streaming.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from geocopy.progress.emitter import ProgressEmitter
from geocopy.progress.models import ProgressEvent

logger = logging.getLogger(__name__)


def format_sse_message(event: ProgressEvent) -> str:
    """Render one event as an SSE frame."""
    return f"data: {event.model_dump_json()}\n\n"


class ProgressSink(ABC):
    """Push transport for progress events."""

    @abstractmethod
    async def send(self, event: ProgressEvent) -> None:
        """Deliver one event."""

    @abstractmethod
    async def close(self) -> None:
        """Signal that no further events will arrive."""

    def abort(self) -> None:
        """Close without waiting; used when the writer is cancelled."""


class MemorySink(ProgressSink):
    """Collects events in a list."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []
        self.closed = False

    async def send(self, event: ProgressEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        self.closed = True

    def abort(self) -> None:
        self.closed = True

    @property
    def percentages(self) -> list[int]:
        return [e.percentage for e in self.events]


class LoggingSink(ProgressSink):
    """Writes each event to a logger."""

    def __init__(self, log: logging.Logger | None = None, level: int = logging.INFO) -> None:
        self._log = log or logger
        self._level = level

    async def send(self, event: ProgressEvent) -> None:
        self._log.log(
            self._level,
            "[%3d%%] %s %s: %s",
            event.percentage, event.type, event.stage, event.message,
        )

    async def close(self) -> None:
        return None


class SSESink(ProgressSink):
    """Buffers SSE frames for an HTTP response body.

    Iterate with ``async for frame in sink`` until close().
    """

    def __init__(self, buffer_size: int = 64) -> None:
        self._frames: asyncio.Queue[str | None] = asyncio.Queue(maxsize=buffer_size)
        self._closed = False

    async def send(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        await self._frames.put(format_sse_message(event))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._frames.put(None)

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Undelivered frames are dropped so the sentinel always fits.
        while not self._frames.empty():
            self._frames.get_nowait()
        self._frames.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame


class StreamWriter:
    """Drains an emitter into a sink on a dedicated task."""

    def __init__(self, emitter: ProgressEmitter, sink: ProgressSink) -> None:
        self._emitter = emitter
        self._sink = sink
        self._task: asyncio.Task[int] | None = None
        self._error: BaseException | None = None

    @property
    def error(self) -> BaseException | None:
        """Exception raised by the sink, if delivery stopped early."""
        return self._error

    async def run(self) -> int:
        """Forward events until the terminal one; returns how many were sent.

        A sink failure detaches the emitter, so the run continues without
        progress delivery, and is kept in ``error``.
        """
        sent = 0
        try:
            async for event in self._emitter.events():
                try:
                    await self._sink.send(event)
                except Exception as e:
                    self._error = e
                    logger.warning("Progress sink failed after %d events: %s", sent, e)
                    self._emitter.detach()
                    self._sink.abort()
                    return sent
                sent += 1
        except BaseException:
            self._sink.abort()
            raise
        await self._sink.close()
        return sent

    def start(self) -> asyncio.Task[int]:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="progress-stream-writer")
        return self._task

    async def wait(self) -> int:
        if self._task is None:
            return 0
        return await self._task

    async def cancel(self) -> None:
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
