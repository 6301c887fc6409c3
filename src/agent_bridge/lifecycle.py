"""Session lifecycle hooks: prompt submission, action outcomes, and stop."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from agent_bridge.messages import ActionOutcome
from agent_bridge.policy import ToolCall


class StopReason(str, Enum):
    COMPLETED = "completed"
    MAX_TURNS = "max_turns"
    INTERRUPTED = "interrupted"
    ERROR = "error"


@dataclass(frozen=True)
class PromptSubmitEvent:
    prompt: str
    session_id: str
    turn: int


@dataclass(frozen=True)
class StopEvent:
    session_id: str
    reason: StopReason
    num_turns: int
    cost_usd: float


PromptSubmitHook = Callable[[PromptSubmitEvent], "str | None"]
PostActionHook = Callable[[ToolCall, ActionOutcome], None]
StopHook = Callable[[StopEvent], None]


def _hook_name(hook: Callable) -> str:
    return getattr(hook, "__qualname__", None) or repr(hook)


def apply_prompt_hooks(hooks: Sequence[PromptSubmitHook], event: PromptSubmitEvent) -> str:
    """Run prompt hooks in order; each sees the prompt produced by the one before."""
    prompt = event.prompt
    for hook in hooks:
        try:
            rewritten = hook(PromptSubmitEvent(prompt, event.session_id, event.turn))
        except Exception:
            logger.opt(exception=True).warning(f"Prompt hook {_hook_name(hook)} failed; prompt left unchanged")
            continue
        if isinstance(rewritten, str):
            prompt = rewritten
    return prompt


def notify_post_action(hooks: Sequence[PostActionHook], call: ToolCall, outcome: ActionOutcome) -> None:
    for hook in hooks:
        try:
            hook(call, outcome)
        except Exception:
            logger.opt(exception=True).warning(f"Post-action hook {_hook_name(hook)} failed for {call.name!r}")


def notify_stop(hooks: Sequence[StopHook], event: StopEvent) -> None:
    for hook in hooks:
        try:
            hook(event)
        except Exception:
            logger.opt(exception=True).warning(f"Stop hook {_hook_name(hook)} failed")
