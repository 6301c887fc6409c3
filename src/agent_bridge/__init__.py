from agent_bridge.audit import AuditSink, BufferedAuditSink, JsonlAuditSink
from agent_bridge.errors import (
    BridgeError,
    CapabilityExecutionError,
    DecodeFailure,
    PolicyFault,
    ProcessFailure,
    SessionClosedError,
    StartFailure,
    StreamTerminated,
    TaskFailure,
    TurnLimitExceeded,
)
from agent_bridge.lifecycle import PromptSubmitEvent, StopEvent, StopReason
from agent_bridge.messages import (
    ActionOutcome,
    ActionRequest,
    ControlRequest,
    Event,
    Failure,
    MessageMeta,
    Reasoning,
    SessionInit,
    Text,
    TurnResult,
)
from agent_bridge.policy import Decision, PolicyChain, PolicyResult, ToolCall
from agent_bridge.session import RunOptions, Session
from agent_bridge.session_config import SessionConfig, SessionConfigBuilder
from agent_bridge.tool import FunctionTool, Tool

__all__ = [
    "ActionOutcome",
    "ActionRequest",
    "AuditSink",
    "BridgeError",
    "BufferedAuditSink",
    "CapabilityExecutionError",
    "ControlRequest",
    "Decision",
    "DecodeFailure",
    "Event",
    "Failure",
    "FunctionTool",
    "JsonlAuditSink",
    "MessageMeta",
    "PolicyChain",
    "PolicyFault",
    "PolicyResult",
    "ProcessFailure",
    "PromptSubmitEvent",
    "Reasoning",
    "RunOptions",
    "Session",
    "SessionClosedError",
    "SessionConfig",
    "SessionConfigBuilder",
    "SessionInit",
    "StartFailure",
    "StopEvent",
    "StopReason",
    "StreamTerminated",
    "TaskFailure",
    "Text",
    "Tool",
    "ToolCall",
    "TurnLimitExceeded",
    "TurnResult",
]
