from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

from agent_bridge.tool_input import ToolInput


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class MessageMeta:
    timestamp: datetime
    session_id: str = ""
    turn: int = 1
    sequence: int = 0
    parent_id: str = ""
    subagent_id: str = ""


@dataclass(frozen=True)
class ToolInfo:
    name: str
    description: str = ""


@dataclass(frozen=True)
class McpStatus:
    name: str
    status: str


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Usage:
        if not data:
            return cls()
        return cls(
            input_tokens=as_int(data.get("input_tokens")),
            output_tokens=as_int(data.get("output_tokens")),
            cache_read=as_int(data.get("cache_read_input_tokens")),
            cache_write=as_int(data.get("cache_creation_input_tokens")),
        )


@dataclass(frozen=True, kw_only=True)
class Event:
    """Base of every decoded frame."""

    audit_type: ClassVar[str] = ""

    meta: MessageMeta


@dataclass(frozen=True, kw_only=True)
class SessionInit(Event):
    transcript_path: str = ""
    tools: tuple[ToolInfo, ...] = ()
    mcp_servers: tuple[McpStatus, ...] = ()

    @property
    def session_id(self) -> str:
        return self.meta.session_id


@dataclass(frozen=True, kw_only=True)
class Text(Event):
    audit_type: ClassVar[str] = "message.text"

    text: str = ""


@dataclass(frozen=True, kw_only=True)
class Reasoning(Event):
    audit_type: ClassVar[str] = "message.thinking"

    thinking: str = ""
    signature: str = ""


@dataclass(frozen=True, kw_only=True)
class ActionRequest(Event):
    audit_type: ClassVar[str] = "message.tool_use"

    id: str = ""
    name: str = ""
    input: ToolInput = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class ActionOutcome(Event):
    audit_type: ClassVar[str] = "message.tool_result"

    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False
    duration: timedelta = timedelta(0)


@dataclass(frozen=True, kw_only=True)
class TurnResult(Event):
    audit_type: ClassVar[str] = "message.result"

    duration_total: timedelta = timedelta(0)
    duration_api: timedelta = timedelta(0)
    num_turns: int = 0
    cost_usd: float = 0.0
    usage: Usage = field(default_factory=Usage)
    result_text: str = ""
    is_error: bool = False


@dataclass(frozen=True, kw_only=True)
class ControlRequest(Event):
    request_id: str = ""
    subtype: str = ""
    tool_name: str = ""
    tool_input: ToolInput | None = None


@dataclass(frozen=True, kw_only=True)
class Failure(Event):
    audit_type: ClassVar[str] = "error"

    error: str = ""


def audit_payload(event: Event) -> dict[str, Any]:
    """Audit data recorded for a caller-visible event."""
    if isinstance(event, Text):
        return {"text": event.text}
    if isinstance(event, Reasoning):
        return {"thinking": event.thinking}
    if isinstance(event, ActionRequest):
        return {"id": event.id, "name": event.name, "input": event.input}
    if isinstance(event, ActionOutcome):
        return {
            "tool_use_id": event.tool_use_id,
            "is_error": event.is_error,
            "duration": str(event.duration),
        }
    if isinstance(event, TurnResult):
        return {
            "result_text": event.result_text,
            "num_turns": event.num_turns,
            "cost_usd": event.cost_usd,
            "duration_total": str(event.duration_total),
            "duration_api": str(event.duration_api),
            "is_error": event.is_error,
        }
    if isinstance(event, Failure):
        return {"error": event.error}
    return {}
