"""Loguru sinks for the bridge.

Session and control records carry ``session_id`` in their extra dict (``-``
until the child reports one). Lines the child writes to stderr are logged
with ``child_stderr=True`` and ``child_pid``; each consumer can keep or drop
them, and the ``child_stderr`` consumer writes only those lines.
"""

import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

DEFAULT_LOG_FILE = "agent_bridge.log"
DEFAULT_CHILD_STDERR_FILE = "agent_bridge.child.log"

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <magenta>{extra[session_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[session_id]} | {name}:{function}:{line} - {message}"
_CHILD_STDERR_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | pid {extra[child_pid]} | {message}"


def _is_child_stderr(record: dict) -> bool:
    return bool(record["extra"].get("child_stderr"))


def _bridge_filter(child_stderr: bool):
    if child_stderr:
        return None
    return lambda record: not _is_child_stderr(record)


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def __init__(self, child_stderr: bool = True):
        self._child_stderr = child_stderr

    def register(self, level: str) -> int:
        return logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, filter=_bridge_filter(self._child_stderr))

    def describe(self, level: str) -> str:
        suffix = "" if self._child_stderr else ", no child stderr"
        return f"console (stderr, {level}{suffix})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = DEFAULT_LOG_FILE,
        rotation: str = "10 MB",
        retention: int = 3,
        child_stderr: bool = True,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._child_stderr = child_stderr

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format=_FILE_FORMAT,
            filter=_bridge_filter(self._child_stderr),
            rotation=self._rotation,
            retention=self._retention,
        )

    def describe(self, level: str) -> str:
        suffix = "" if self._child_stderr else ", no child stderr"
        return f"file ({self._path}, {level}{suffix})"


class ChildStderrLogConsumer:
    """Keeps the child's stderr in its own file, one line per record."""

    def __init__(self, path: str = DEFAULT_CHILD_STDERR_FILE, rotation: str = "10 MB", retention: int = 3):
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def register(self, level: str) -> int:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            self._path,
            level=level,
            format=_CHILD_STDERR_FORMAT,
            filter=_is_child_stderr,
            rotation=self._rotation,
            retention=self._retention,
        )

    def describe(self, level: str) -> str:
        return f"child stderr ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "child_stderr": ChildStderrLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "child_stderr": False},
    {"type": "file", "path": DEFAULT_LOG_FILE},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all loguru sinks with the configured consumers.

    Returns a description of each registered consumer. Unknown consumer
    types are skipped with a warning.
    """
    logger.remove()
    logger.configure(extra={"session_id": "-", "child_pid": "-"})

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        kwargs = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)
        consumer = cls(**kwargs)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
