from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from agent_bridge.errors import PolicyFault
from agent_bridge.tool_input import ToolInput, merge_inputs, validate_tool_input


class Decision(str, Enum):
    CONTINUE = "continue"
    ALLOW = "allow"
    DENY = "deny"


@dataclass
class ToolCall:
    """A proposed action; policies may read it but rewrite only via results."""

    name: str
    input: ToolInput = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyResult:
    decision: Decision
    reason: str = ""
    updated_input: ToolInput | None = None

    @classmethod
    def proceed(cls, updated_input: ToolInput | None = None) -> PolicyResult:
        return cls(Decision.CONTINUE, updated_input=updated_input)

    @classmethod
    def allow(cls, updated_input: ToolInput | None = None, reason: str = "") -> PolicyResult:
        return cls(Decision.ALLOW, reason=reason, updated_input=updated_input)

    @classmethod
    def deny(cls, reason: str) -> PolicyResult:
        return cls(Decision.DENY, reason=reason)


Policy = Callable[[ToolCall], PolicyResult]


def _policy_name(policy: Policy) -> str:
    return getattr(policy, "__qualname__", None) or getattr(policy, "__name__", None) or repr(policy)


class PolicyChain:
    """Ordered policy evaluation: first Deny wins, Allow short-circuits.

    Rewrites accumulate across Continue results and are applied to the
    call before each following policy runs. A policy that raises, or that
    returns something other than a PolicyResult with a valid rewrite, is
    recorded as a fault and counts as Continue.
    """

    def __init__(self, policies: Sequence[Policy] = ()):
        self._policies = list(policies)
        self.faults: list[PolicyFault] = []

    def __len__(self) -> int:
        return len(self._policies)

    def add(self, policy: Policy) -> None:
        self._policies.append(policy)

    def evaluate(self, call: ToolCall) -> PolicyResult:
        if not self._policies:
            return PolicyResult.allow()

        accumulated: ToolInput | None = None
        for policy in self._policies:
            if accumulated is not None:
                call.input = merge_inputs(call.input, accumulated)

            result = self._invoke(policy, call)
            if result is None:
                continue

            if result.decision is Decision.DENY:
                return PolicyResult.deny(result.reason)
            if result.updated_input is not None:
                accumulated = merge_inputs(accumulated, result.updated_input)
            if result.decision is Decision.ALLOW:
                return PolicyResult.allow(accumulated, reason=result.reason)

        return PolicyResult.allow(accumulated)

    def _invoke(self, policy: Policy, call: ToolCall) -> PolicyResult | None:
        name = _policy_name(policy)
        try:
            result = policy(call)
            if not isinstance(result, PolicyResult):
                raise TypeError(f"expected PolicyResult, got {type(result).__name__}")
            decision = Decision(result.decision)
            updated = None if result.updated_input is None else validate_tool_input(result.updated_input)
        except Exception as ex:
            fault = PolicyFault(name, ex)
            self.faults.append(fault)
            logger.opt(exception=True).warning(f"Policy {name} failed on tool {call.name!r}; treating as continue")
            return None
        if decision is not result.decision or updated is not result.updated_input:
            result = PolicyResult(decision, result.reason, updated)
        return result
