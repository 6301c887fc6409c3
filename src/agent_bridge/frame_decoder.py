"""Line-oriented decoding of the child's JSON output into typed events.

Each non-blank line is one frame. The decoder keeps three pieces of state:
the session id (learned from the ``system/init`` frame), the turn number
(starting at 1, bumped after every ``result`` frame) and the sequence
number (bumped once for every frame that reaches the decode stage).
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Protocol

from loguru import logger

from agent_bridge.errors import DecodeFailure, InvalidToolInput
from agent_bridge.messages import (
    ActionOutcome,
    ActionRequest,
    ControlRequest,
    Event,
    Failure,
    McpStatus,
    MessageMeta,
    Reasoning,
    SessionInit,
    Text,
    ToolInfo,
    TurnResult,
    Usage,
    as_float,
    as_int,
    utc_now,
)
from agent_bridge.tool_input import validate_tool_input


class LineSource(Protocol):
    async def readline(self) -> bytes: ...


class EndOfStream(Exception):
    """The line source is exhausted."""


class FrameDecoder:
    def __init__(self, source: LineSource):
        self._source = source
        self.session_id = ""
        self.turn = 1
        self.sequence = 0

    async def next(self) -> Event:
        """Return the next event.

        Raises EndOfStream when the source is exhausted and DecodeFailure when
        a line is not a JSON object. A failed line consumes no sequence number.
        """
        while True:
            try:
                line = await self._source.readline()
            except ValueError as ex:
                # asyncio.StreamReader reports an overlong line this way.
                raise DecodeFailure("", f"frame exceeds line limit: {ex}") from ex
            if not line:
                raise EndOfStream()
            event = self.decode_line(line)
            if event is not None:
                return event

    def decode_line(self, line: bytes | str) -> Event | None:
        """Decode one frame; blank lines yield None."""
        text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
        text = text.strip()
        if not text:
            return None

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as ex:
            logger.warning(f"Malformed frame from child: {ex}")
            raise DecodeFailure(text, str(ex)) from ex
        if not isinstance(raw, dict):
            raise DecodeFailure(text, f"expected a JSON object, got {type(raw).__name__}")

        frame_type = raw.get("type")
        if frame_type in ("permission", "control"):
            # Validate before consuming a sequence number.
            tool_input = self._control_input(raw, text)
            return ControlRequest(
                meta=self._next_meta(raw),
                request_id=str(raw.get("request_id") or ""),
                subtype=str(raw.get("subtype") or ""),
                tool_name=str(raw.get("tool_name") or ""),
                tool_input=tool_input,
            )

        if frame_type == "system" and raw.get("subtype") == "init":
            tools, servers = _init_inventory(raw, text)
            return SessionInit(
                meta=self._next_meta(raw),
                transcript_path=str(raw.get("transcript_path") or ""),
                tools=tools,
                mcp_servers=servers,
            )

        meta = self._next_meta(raw)
        if frame_type == "system":
            return Text(meta=meta, text=text)
        if frame_type == "assistant":
            return self._decode_assistant(raw, meta)
        if frame_type == "user":
            return self._decode_user(raw, meta)
        if frame_type == "result":
            return self._decode_result(raw, meta)
        if frame_type == "error":
            return Failure(meta=meta, error=_error_text(raw.get("error")))
        return Text(meta=meta, text=text)

    def _next_meta(self, raw: dict[str, Any]) -> MessageMeta:
        self.sequence += 1
        if raw.get("type") == "system" and raw.get("subtype") == "init":
            session_id = raw.get("session_id")
            if isinstance(session_id, str) and session_id and not self.session_id:
                self.session_id = session_id
        return MessageMeta(
            timestamp=utc_now(),
            session_id=self.session_id,
            turn=self.turn,
            sequence=self.sequence,
            parent_id=str(raw.get("parent_tool_use_id") or ""),
            subagent_id=str(raw.get("subagent_id") or ""),
        )

    @staticmethod
    def _control_input(raw: dict[str, Any], text: str) -> dict | None:
        tool_input = raw.get("tool_input")
        if tool_input is None:
            return None
        try:
            return validate_tool_input(tool_input)
        except InvalidToolInput as ex:
            raise DecodeFailure(text, f"invalid tool_input: {ex}") from ex

    def _decode_assistant(self, raw: dict[str, Any], meta: MessageMeta) -> Event:
        blocks = _content_blocks(raw)
        if blocks is None:
            return Text(meta=meta, text=json.dumps(raw.get("message", raw.get("content"))))
        if not blocks:
            return Text(meta=meta, text="")

        _warn_dropped(blocks)
        block = blocks[0]
        block_type = block.get("type")
        if block_type == "thinking":
            return Reasoning(
                meta=meta,
                thinking=str(block.get("thinking") or ""),
                signature=str(block.get("signature") or ""),
            )
        if block_type == "tool_use":
            try:
                tool_input = validate_tool_input(block.get("input") or {})
            except InvalidToolInput:
                return Text(meta=meta, text=json.dumps(block))
            return ActionRequest(
                meta=meta,
                id=str(block.get("id") or ""),
                name=str(block.get("name") or ""),
                input=tool_input,
            )
        return Text(meta=meta, text=str(block.get("text") or ""))

    def _decode_user(self, raw: dict[str, Any], meta: MessageMeta) -> Event:
        blocks = _content_blocks(raw)
        if not blocks:
            return Text(meta=meta, text="")

        _warn_dropped(blocks)
        block = blocks[0]
        if block.get("type") == "tool_result":
            return ActionOutcome(
                meta=meta,
                tool_use_id=str(block.get("tool_use_id") or ""),
                content=block.get("content"),
                is_error=bool(block.get("is_error", False)),
                duration=_millis(raw.get("duration_ms")),
            )
        return Text(meta=meta, text=str(block.get("text") or ""))

    def _decode_result(self, raw: dict[str, Any], meta: MessageMeta) -> TurnResult:
        # The result belongs to the turn it concludes.
        self.turn += 1
        usage = raw.get("usage")
        return TurnResult(
            meta=meta,
            duration_total=_millis(raw.get("duration_ms")),
            duration_api=_millis(raw.get("duration_api_ms")),
            num_turns=as_int(raw.get("num_turns")),
            cost_usd=as_float(raw.get("total_cost_usd")),
            usage=Usage.from_dict(usage if isinstance(usage, dict) else None),
            result_text=str(raw.get("result") or ""),
            is_error=bool(raw.get("is_error", False)),
        )


def _init_inventory(raw: dict[str, Any], text: str) -> tuple[tuple[ToolInfo, ...], tuple[McpStatus, ...]]:
    """Tool and MCP server lists of an init frame; non-list values are a DecodeFailure."""
    tools = raw.get("tools")
    if tools is None:
        tools = []
    if not isinstance(tools, list):
        raise DecodeFailure(text, f"init tools must be a list, got {type(tools).__name__}")
    servers = raw.get("mcp_servers")
    if servers is None:
        servers = []
    if not isinstance(servers, list):
        raise DecodeFailure(text, f"init mcp_servers must be a list, got {type(servers).__name__}")
    return (
        tuple(ToolInfo(name=str(name)) for name in tools),
        tuple(
            McpStatus(name=str(server.get("name", "")), status=str(server.get("status", "")))
            for server in servers
            if isinstance(server, dict)
        ),
    )


def _content_blocks(raw: dict[str, Any]) -> list[dict[str, Any]] | None:
    """Content list of a message frame, or None if it is not shaped like one."""
    message = raw.get("message")
    if message is not None:
        if not isinstance(message, dict):
            return None
        content = message.get("content", [])
    else:
        # Legacy frames carry the content list at the root.
        content = raw.get("content", [])
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if not isinstance(content, list) or not all(isinstance(block, dict) for block in content):
        return None
    return content


def _warn_dropped(blocks: list[dict[str, Any]]) -> None:
    if len(blocks) > 1:
        dropped = ", ".join(str(block.get("type")) for block in blocks[1:])
        logger.warning(f"Frame carried {len(blocks)} content blocks; only the first is surfaced (dropped: {dropped})")


def _millis(value: Any) -> timedelta:
    try:
        return timedelta(milliseconds=float(value or 0))
    except (TypeError, ValueError):
        return timedelta(0)


def _error_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return str(value.get("message") or json.dumps(value))
    return json.dumps(value)
