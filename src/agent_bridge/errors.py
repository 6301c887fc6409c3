from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base exception for agent_bridge."""


class StartFailure(BridgeError):
    def __init__(self, reason: str, cause: BaseException | None = None):
        self.reason = reason
        self.cause = cause
        if cause is not None:
            super().__init__(f"start failed: {reason}: {cause}")
        else:
            super().__init__(f"start failed: {reason}")


class DecodeFailure(BridgeError):
    """A single frame could not be decoded into an event."""

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:120] + "..."
        super().__init__(f"decode failed: {reason}: {preview!r}")


class StreamTerminated(BridgeError):
    """The child closed its output before the turn concluded."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        super().__init__(f"stream terminated before a result was received (session: {session_id or '<unknown>'})")


class TurnLimitExceeded(BridgeError):
    def __init__(self, turns: int, max_allowed: int, session_id: str, result: Any = None):
        self.turns = turns
        self.max_allowed = max_allowed
        self.session_id = session_id
        self.result = result
        super().__init__(f"max turns exceeded: {turns}/{max_allowed} (session: {session_id})")


class TaskFailure(BridgeError):
    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        self.message = message
        super().__init__(f"task error (session: {session_id}): {message}")


class CapabilityExecutionError(BridgeError):
    def __init__(self, tool_name: str, message: str, cause: BaseException | None = None):
        self.tool_name = tool_name
        self.message = message
        self.cause = cause
        if cause is not None:
            super().__init__(f'Error executing tool "{tool_name}": {message}: {cause}')
        else:
            super().__init__(f'Error executing tool "{tool_name}": {message}')


class ProcessFailure(BridgeError):
    def __init__(self, exit_code: int, stderr: str):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"process exited with code {exit_code}: {stderr}")


class SessionClosedError(BridgeError):
    """Raised when a closed session is asked to send."""


class InvalidToolInput(BridgeError, TypeError):
    """A tool input or rewrite is not a JSON object of JSON values."""


class PolicyFault(BridgeError):
    """Recorded when one policy function fails; it is treated as Continue."""

    def __init__(self, policy: str, cause: BaseException):
        self.policy = policy
        self.cause = cause
        super().__init__(f"policy {policy} failed: {cause}")
