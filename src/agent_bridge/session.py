from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

from agent_bridge.audit import Auditor
from agent_bridge.control import ControlCoordinator, encode_frame
from agent_bridge.errors import (
    BridgeError,
    ProcessFailure,
    SessionClosedError,
    StartFailure,
    StreamTerminated,
    TaskFailure,
    TurnLimitExceeded,
)
from agent_bridge.event_pump import EventPump
from agent_bridge.frame_decoder import FrameDecoder
from agent_bridge.lifecycle import (
    PromptSubmitEvent,
    StopEvent,
    StopReason,
    apply_prompt_hooks,
    notify_post_action,
    notify_stop,
)
from agent_bridge.messages import (
    ActionOutcome,
    ActionRequest,
    ControlRequest,
    Event,
    Failure,
    SessionInit,
    TurnResult,
    audit_payload,
)
from agent_bridge.policy import PolicyChain, ToolCall
from agent_bridge.process import ProcessHandle
from agent_bridge.session_config import SessionConfig
from agent_bridge.tool_registry import CapabilityRegistry

T = TypeVar("T")


@dataclass(frozen=True)
class RunOptions:
    """Per-call overrides; None falls back to the session config."""

    timeout: float | None = None
    max_turns: int | None = None


def prompt_frame(prompt: str) -> dict[str, Any]:
    return {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": prompt}]},
    }


class Session:
    """One child process and the protocol state around it.

    ``stream`` sends a prompt and yields the caller-visible events of that
    turn, ending with its TurnResult. Control requests are answered inline
    and never yielded. Only one turn runs at a time.
    """

    def __init__(self, config: SessionConfig, process: ProcessHandle, auditor: Auditor):
        self._config = config
        self._process = process
        self._auditor = auditor
        self._decoder = FrameDecoder(process.stdout)
        self._pump = EventPump(self._decoder, maxsize=config.queue_size)
        self._policies = PolicyChain(config.policies)
        self._capabilities = CapabilityRegistry(config.capabilities)
        self._control = ControlCoordinator(
            process.write,
            self._policies,
            self._capabilities,
            auditor=auditor,
            session_id=lambda: self._session_id,
        )
        # Guards the closed flag, session id and counters.
        self._state_lock = asyncio.Lock()
        self._turn_lock = asyncio.Lock()
        self._closed = False
        self._session_id = ""
        self._total_turns = 0
        self._total_cost_usd = 0.0
        self._stop_reason: StopReason | None = None
        self._last_error: BaseException | None = None
        self._pending_actions: dict[str, ToolCall] = {}
        self._unfinished_turns = 0

    @classmethod
    async def start(cls, config: SessionConfig) -> Session:
        """Launch the child and begin relaying its output.

        Raises StartFailure if the process cannot be spawned.
        """
        auditor = Auditor(config.audit_sinks)
        await auditor.start()
        try:
            process = await ProcessHandle.start(config.process_spec(), max_line_bytes=config.max_line_bytes)
        except StartFailure:
            await auditor.aclose()
            raise

        session = cls(config, process, auditor)
        session._pump.start()
        spec = config.process_spec()
        session._audit(
            "session.start",
            {"command": spec.command, "args": list(spec.args), "pid": process.pid},
        )
        return session

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def _log(self):
        return logger.bind(session_id=self._session_id or "-")

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def total_turns(self) -> int:
        return self._total_turns

    @property
    def total_cost_usd(self) -> float:
        return self._total_cost_usd

    @property
    def stop_reason(self) -> StopReason | None:
        return self._stop_reason

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def policies(self) -> PolicyChain:
        return self._policies

    @property
    def capabilities(self) -> CapabilityRegistry:
        return self._capabilities

    async def run(self, prompt: str, options: RunOptions | None = None) -> TurnResult:
        """Send ``prompt`` and return the turn's result.

        Raises TaskFailure if the child reported an error frame during the
        turn, and TurnLimitExceeded (carrying the result) past the ceiling.
        """
        result: TurnResult | None = None
        failure: Failure | None = None
        async for event in self.stream(prompt, options):
            if isinstance(event, Failure) and failure is None:
                failure = event
            elif isinstance(event, TurnResult):
                result = event
        if failure is not None:
            raise TaskFailure(self._session_id, failure.error)
        if result is None:
            raise StreamTerminated(self._session_id)
        return result

    async def stream(self, prompt: str, options: RunOptions | None = None) -> AsyncIterator[Event]:
        """Send ``prompt`` and yield the turn's events, ending with its TurnResult.

        A turn left before its TurnResult (timeout, cancellation, or the
        caller leaving the loop) is finished by the next call: its remaining
        events are read and discarded, and its control requests answered,
        before the new prompt is written.

        Past the turn ceiling the TurnResult is still yielded, then
        TurnLimitExceeded is raised. A caller that stops at the TurnResult
        finds the same error in ``last_error``.
        """
        options = options or RunOptions()
        timeout = options.timeout if options.timeout is not None else self._config.timeout_seconds
        max_turns = options.max_turns if options.max_turns is not None else self._config.max_turns
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout

        async with self._turn_lock:
            if self._closed:
                raise SessionClosedError("session is closed")
            in_flight = False
            try:
                if self._unfinished_turns:
                    await self._discard_unfinished(deadline)

                async with self._state_lock:
                    if self._closed:
                        raise SessionClosedError("session is closed")
                    if max_turns and self._total_turns >= max_turns:
                        self._stop_reason = StopReason.MAX_TURNS
                        raise TurnLimitExceeded(self._total_turns, max_turns, self._session_id)
                    turn = self._decoder.turn

                prompt = apply_prompt_hooks(
                    self._config.prompt_hooks,
                    PromptSubmitEvent(prompt, self._session_id, turn),
                )
                # Bytes handed to the transport may reach the child even if the drain is cut short.
                in_flight = True
                await self._bounded(self._process.write(encode_frame(prompt_frame(prompt))), deadline)
                self._audit("message.prompt", {"prompt": prompt})

                while True:
                    event = await self._next_event(deadline)
                    if event is None:
                        continue
                    if not isinstance(event, TurnResult):
                        yield event
                        continue

                    in_flight = False
                    total = await self._account(event)
                    error = None
                    if max_turns and total > max_turns:
                        error = TurnLimitExceeded(total, max_turns, self._session_id, event)
                        self._stop_reason = StopReason.MAX_TURNS
                        self._last_error = error
                    yield event
                    if error is not None:
                        raise error
                    return
            except (asyncio.CancelledError, TimeoutError) as ex:
                self._stop_reason = StopReason.INTERRUPTED
                if isinstance(ex, TimeoutError):
                    self._last_error = ex
                raise
            except (BrokenPipeError, ConnectionResetError) as ex:
                error = StreamTerminated(self._session_id)
                await self._record_failure(error)
                raise error from ex
            finally:
                if in_flight:
                    self._unfinished_turns += 1
                    self._log.debug(f"Turn left before its result; {self._unfinished_turns} to discard")

    async def close(self) -> None:
        """Release the child and stop relaying. Safe to call repeatedly."""
        async with self._state_lock:
            if self._closed:
                return
            self._closed = True
            reason = self._stop_reason or StopReason.COMPLETED
            self._stop_reason = reason

            if self._config.stop_hooks:
                notify_stop(
                    self._config.stop_hooks,
                    StopEvent(self._session_id, reason, self._total_turns, self._total_cost_usd),
                )
                self._audit("hook.stop", {"reason": reason.value})
            self._audit(
                "session.end",
                {"reason": reason.value, "num_turns": self._total_turns, "cost_usd": self._total_cost_usd},
            )

            self._pump.stop()
            try:
                await self._process.close(self._config.close_timeout_seconds)
            except ProcessFailure as ex:
                self._last_error = ex
                self._log.warning(f"Child exited abnormally: {ex}")
            await self._pump.aclose()
            await self._auditor.aclose()
            self._log.info(
                f"Session closed: {reason.value}, "
                f"{self._total_turns} turn(s), ${self._total_cost_usd:.4f}"
            )

    async def _next_event(self, deadline: float | None) -> Event | None:
        """Next caller-visible event, or None for a frame handled here."""
        event = await self._bounded(self._pump.get(), deadline)
        if event is None:
            await self._end_of_stream()
        if isinstance(event, SessionInit):
            await self._absorb_init(event)
            return None
        if isinstance(event, ControlRequest):
            await self._bounded(self._control.handle(event), deadline)
            return None
        self._observe(event)
        return event

    async def _discard_unfinished(self, deadline: float | None) -> None:
        discarded = 0
        while self._unfinished_turns:
            event = await self._next_event(deadline)
            if isinstance(event, TurnResult):
                # The child did the work; its cost still counts.
                await self._account(event)
                self._unfinished_turns -= 1
                self._log.info(f"Discarded {discarded} event(s) and the result of an unfinished turn")
                discarded = 0
            elif event is not None:
                discarded += 1

    async def _absorb_init(self, event: SessionInit) -> None:
        async with self._state_lock:
            if not self._session_id and event.session_id:
                self._session_id = event.session_id
                self._log.info(f"Session id captured: {self._session_id}")
        self._audit(
            "session.init",
            {
                "transcript_path": event.transcript_path,
                "tools": [t.name for t in event.tools],
                "mcp_servers": {s.name: s.status for s in event.mcp_servers},
            },
        )

    def _observe(self, event: Event) -> None:
        self._audit(event.audit_type, audit_payload(event))
        if isinstance(event, ActionRequest):
            self._pending_actions[event.id] = ToolCall(event.name, dict(event.input))
        elif isinstance(event, ActionOutcome):
            call = self._pending_actions.pop(event.tool_use_id, None)
            if call is not None and self._config.post_action_hooks:
                notify_post_action(self._config.post_action_hooks, call, event)
                self._audit(
                    "hook.post_tool_use",
                    {"tool_use_id": event.tool_use_id, "tool_name": call.name, "is_error": event.is_error},
                )
        elif isinstance(event, Failure):
            self._last_error = TaskFailure(self._session_id, event.error)

    async def _account(self, result: TurnResult) -> int:
        async with self._state_lock:
            self._total_turns += result.num_turns
            self._total_cost_usd += result.cost_usd
            self._stop_reason = StopReason.ERROR if result.is_error else StopReason.COMPLETED
            return self._total_turns

    async def _end_of_stream(self) -> None:
        if self._closed:
            raise SessionClosedError("session closed during turn")
        failure = self._pump.error
        if failure is not None:
            await self._record_failure(failure)
            raise failure
        error = StreamTerminated(self._session_id)
        await self._record_failure(error)
        raise error

    async def _record_failure(self, error: BridgeError) -> None:
        async with self._state_lock:
            self._last_error = error
            self._stop_reason = StopReason.ERROR
        self._log.error(f"Turn failed: {error}")

    @staticmethod
    async def _bounded(aw: Awaitable[T], deadline: float | None) -> T:
        if deadline is None:
            return await aw
        remaining = deadline - asyncio.get_running_loop().time()
        return await asyncio.wait_for(aw, timeout=max(remaining, 0))

    def _audit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._auditor and event_type:
            self._auditor.emit(self._session_id, event_type, data)
