from __future__ import annotations

import asyncio
import contextlib

from loguru import logger

from agent_bridge.errors import DecodeFailure
from agent_bridge.frame_decoder import EndOfStream, FrameDecoder
from agent_bridge.messages import Event

_END = object()

DEFAULT_QUEUE_SIZE = 32


class EventPump:
    """Relays decoded events onto a bounded queue from a background task.

    The queue is closed (an end marker is enqueued) exactly once, either
    when the decoder reaches end of stream or fails, or when ``stop`` is
    requested. A send onto a full queue is raced against the stop signal.
    """

    def __init__(self, decoder: FrameDecoder, *, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._decoder = decoder
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=max(1, maxsize))
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: DecodeFailure | None = None
        self._queue_closed = False
        self._exhausted = False
        self._pending_end: asyncio.Future | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="agent-bridge-event-pump")

    @property
    def error(self) -> DecodeFailure | None:
        """Decode failure that ended the pump, if any."""
        return self._error

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def get(self) -> Event | None:
        """Next event in decode order, or None once the queue is closed."""
        if self._exhausted:
            return None
        item = await self._queue.get()
        if item is _END:
            self._exhausted = True
            return None
        return item

    def stop(self) -> None:
        self._stop.set()

    async def aclose(self, timeout: float = 1.0) -> None:
        """Stop relaying, wait for the background task and drop any parked end marker."""
        self.stop()
        task = self._task
        if task is None:
            self._close_queue(discard=True)
        elif not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                # Still blocked reading the child; cancel the read.
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        pending = self._pending_end
        if pending is not None and not pending.done():
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pending
            # Stopped: undelivered events are dropped so the marker fits.
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_END)

    async def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    event = await self._decoder.next()
                except EndOfStream:
                    logger.debug("Event pump reached end of stream")
                    break
                except DecodeFailure as ex:
                    self._error = ex
                    logger.warning(f"Event pump stopped on decode failure: {ex}")
                    break
                if not await self._send(event):
                    break
        finally:
            self._close_queue(discard=self._stop.is_set())

    async def _send(self, item: object) -> bool:
        if self._stop.is_set():
            return False
        try:
            self._queue.put_nowait(item)
            return True
        except asyncio.QueueFull:
            pass

        put = asyncio.ensure_future(self._queue.put(item))
        stopped = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({put, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not put.done():
                put.cancel()
        return put.done() and not put.cancelled()

    def _close_queue(self, *, discard: bool) -> None:
        if self._queue_closed:
            return
        self._queue_closed = True
        while True:
            try:
                self._queue.put_nowait(_END)
                return
            except asyncio.QueueFull:
                if not discard:
                    break
                # Stopped: undelivered events are dropped to make room.
                self._queue.get_nowait()
        # Queue full at end of stream: hand the marker to a waiter task.
        self._pending_end = asyncio.ensure_future(self._queue.put(_END))
