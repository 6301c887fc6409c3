from __future__ import annotations

import asyncio
import inspect
import json
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from agent_bridge.messages import utc_now


@runtime_checkable
class AuditSink(Protocol):
    def emit(self, session_id: str, event_type: str, data: dict[str, Any] | None) -> None: ...


@dataclass(frozen=True)
class AuditEvent:
    time: datetime
    session_id: str
    type: str
    data: dict[str, Any] | None = None

    def to_json(self) -> str:
        record: dict[str, Any] = {
            "time": self.time.isoformat(),
            "session_id": self.session_id,
            "type": self.type,
        }
        if self.data:
            record["data"] = self.data
        return json.dumps(record, ensure_ascii=True, default=str)


class Auditor:
    """Fans audit events out to sinks; a failing sink never reaches the caller."""

    def __init__(self, sinks: Iterable[AuditSink] = ()):
        self._sinks = list(sinks)

    def __bool__(self) -> bool:
        return bool(self._sinks)

    def emit(self, session_id: str, event_type: str, data: dict[str, Any] | None = None) -> None:
        for sink in self._sinks:
            try:
                sink.emit(session_id, event_type, data)
            except Exception:
                logger.opt(exception=True).warning(
                    f"Audit sink {type(sink).__name__} failed on {event_type}"
                )

    async def start(self) -> None:
        for sink in self._sinks:
            start = getattr(sink, "start", None)
            if start is None:
                continue
            try:
                value = start()
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning(f"Audit sink {type(sink).__name__} failed to start")

    async def aclose(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                value = close()
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning(f"Audit sink {type(sink).__name__} failed to close")


class JsonlAuditSink:
    """Appends each event as one JSON line to a file."""

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a", encoding="utf-8")
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, session_id: str, event_type: str, data: dict[str, Any] | None) -> None:
        line = AuditEvent(utc_now(), session_id, event_type, data).to_json()
        with self._lock:
            if self._file.closed:
                return
            self._file.write(line + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


class BufferedAuditSink:
    """Batches delivery to ``inner`` on a background task.

    ``emit`` only enqueues; whatever is still queued is flushed on close.
    """

    def __init__(self, inner: AuditSink, *, batch_size: int = 50, flush_interval_seconds: float = 0.2):
        self._inner = inner
        self._batch_size = max(1, batch_size)
        self._flush_interval_seconds = max(0.01, flush_interval_seconds)
        self._queue: asyncio.Queue[tuple[str, str, dict[str, Any] | None]] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def emit(self, session_id: str, event_type: str, data: dict[str, Any] | None) -> None:
        if self._closed:
            return
        self._queue.put_nowait((session_id, event_type, data))

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._flush_all()
        close = getattr(self._inner, "close", None)
        if close is not None:
            value = close()
            if inspect.isawaitable(value):
                await value

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_seconds)
            self._flush_once()

    def _flush_all(self) -> None:
        while not self._queue.empty():
            self._flush_once()

    def _flush_once(self) -> None:
        items: list[tuple[str, str, dict[str, Any] | None]] = []
        while len(items) < self._batch_size and not self._queue.empty():
            items.append(self._queue.get_nowait())
        if not items:
            return

        for session_id, event_type, data in items:
            try:
                self._inner.emit(session_id, event_type, data)
            except Exception:
                logger.opt(exception=True).warning(
                    f"Audit sink {type(self._inner).__name__} failed on {event_type}"
                )
