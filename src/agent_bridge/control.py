from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from agent_bridge.audit import Auditor
from agent_bridge.errors import CapabilityExecutionError, SessionClosedError
from agent_bridge.messages import ControlRequest
from agent_bridge.policy import Decision, PolicyChain, ToolCall
from agent_bridge.tool import Tool
from agent_bridge.tool_input import ToolInput
from agent_bridge.tool_registry import CapabilityRegistry

FrameWriter = Callable[[bytes], Awaitable[None]]


def encode_frame(frame: dict[str, Any]) -> bytes:
    return (json.dumps(frame, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def decision_frame(
    request_id: str,
    decision: Decision,
    reason: str = "",
    updated_input: ToolInput | None = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {"request_id": request_id, "decision": decision.value}
    if reason:
        frame["reason"] = reason
    if updated_input is not None:
        frame["updated_input"] = updated_input
    return frame


def capability_frame(request_id: str, result: Any, is_error: bool) -> dict[str, Any]:
    return {"request_id": request_id, "decision": Decision.ALLOW.value, "result": result, "is_error": is_error}


class ControlCoordinator:
    """Answers control requests from the child with exactly one frame each.

    The policy chain decides first. An allowed request that names a
    registered capability is executed here and its result sent back;
    otherwise the child is told to proceed with its own handling.
    """

    def __init__(
        self,
        write: FrameWriter,
        policies: PolicyChain,
        capabilities: CapabilityRegistry,
        *,
        auditor: Auditor | None = None,
        session_id: Callable[[], str] = lambda: "",
    ):
        self._write = write
        self._policies = policies
        self._capabilities = capabilities
        self._auditor = auditor or Auditor()
        self._session_id = session_id
        self._answered: set[str] = set()
        self.last_write_error: BaseException | None = None

    @property
    def _log(self):
        return logger.bind(session_id=self._session_id() or "-")

    def answered(self, request_id: str) -> bool:
        return request_id in self._answered

    async def handle(self, request: ControlRequest) -> dict[str, Any] | None:
        """Resolve one request and write its response frame.

        Returns the frame that was written, or None for a request id that
        was already answered.
        """
        request_id = request.request_id
        if request_id:
            if request_id in self._answered:
                self._log.warning(f"Control request {request_id} already answered; ignoring duplicate")
                return None
            self._answered.add(request_id)

        if not request.tool_name:
            return await self._send(decision_frame(request_id, Decision.ALLOW))

        tool = self._capabilities.get(request.tool_name)
        call = ToolCall(request.tool_name, dict(request.tool_input or {}))
        verdict = self._policies.evaluate(call)
        self._log.debug(
            f"Control {request_id}: {request.tool_name} -> {verdict.decision.value}"
            + (f" ({verdict.reason})" if verdict.reason else "")
        )
        self._audit(
            "hook.pre_tool_use",
            {
                "request_id": request_id,
                "tool_name": request.tool_name,
                "decision": verdict.decision.value,
                "reason": verdict.reason,
            },
        )

        if verdict.decision is Decision.DENY:
            return await self._send(decision_frame(request_id, Decision.DENY, verdict.reason))

        if tool is None:
            return await self._send(
                decision_frame(request_id, Decision.ALLOW, verdict.reason, verdict.updated_input)
            )

        tool_input = verdict.updated_input if verdict.updated_input is not None else dict(request.tool_input or {})
        return await self._send(await self._execute(request_id, tool, tool_input))

    async def _execute(self, request_id: str, tool: Tool, tool_input: ToolInput) -> dict[str, Any]:
        self._audit("tool.custom.start", {"request_id": request_id, "tool_name": tool.name, "input": tool_input})
        started = time.monotonic()
        try:
            result = await tool.execute(tool_input)
        except CapabilityExecutionError as ex:
            return self._failure(request_id, tool.name, ex)
        except Exception as ex:
            return self._failure(request_id, tool.name, CapabilityExecutionError(tool.name, str(ex) or type(ex).__name__))

        try:
            json.dumps(result)
        except (TypeError, ValueError) as ex:
            return self._failure(request_id, tool.name, CapabilityExecutionError(tool.name, "result is not JSON serializable", ex))

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._audit("tool.custom.complete", {"request_id": request_id, "tool_name": tool.name, "duration_ms": elapsed_ms})
        return capability_frame(request_id, result, False)

    def _failure(self, request_id: str, tool_name: str, error: CapabilityExecutionError) -> dict[str, Any]:
        self._log.warning(str(error))
        self._audit("tool.custom.error", {"request_id": request_id, "tool_name": tool_name, "error": str(error)})
        return capability_frame(request_id, str(error), True)

    async def _send(self, frame: dict[str, Any]) -> dict[str, Any]:
        try:
            await self._write(encode_frame(frame))
        except (SessionClosedError, ConnectionError, OSError) as ex:
            self.last_write_error = ex
            self._log.warning(f"Failed to write control response {frame['request_id']}: {ex}")
        return frame

    def _audit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._auditor:
            self._auditor.emit(self._session_id(), event_type, data)

