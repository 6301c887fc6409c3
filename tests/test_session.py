import asyncio
import contextlib
import json

from agent_bridge.errors import (
    DecodeFailure,
    SessionClosedError,
    StartFailure,
    StreamTerminated,
    TaskFailure,
    TurnLimitExceeded,
)
from agent_bridge.lifecycle import StopReason
from agent_bridge.messages import ActionOutcome, ActionRequest, SessionInit, Text, TurnResult
from agent_bridge.policies import deny_commands
from agent_bridge.policy import PolicyResult, ToolCall
from agent_bridge.session import RunOptions, Session
from agent_bridge.session_config import SessionConfigBuilder
from agent_bridge.tool import FunctionTool
from tests.support import ChildProcessTestCase, RecordingSink

ECHO_CHILD = """
send({"type": "system", "subtype": "init", "session_id": "sess-abc123", "tools": ["Bash"]})
while True:
    line = sys.stdin.readline()
    if not line:
        break
    prompt = json.loads(line)["message"]["content"][0]["text"]
    send({"type": "assistant", "message": {"role": "assistant", "content": [{"type": "text", "text": "echo: " + prompt}]}})
    send({
        "type": "result",
        "duration_ms": 12,
        "duration_api_ms": 10,
        "num_turns": NUM_TURNS,
        "total_cost_usd": 0.0042,
        "is_error": False,
        "result": "Task completed successfully",
        "usage": {"input_tokens": 1, "output_tokens": 2},
    })
"""

CONTROL_CHILD = """
send({"type": "system", "subtype": "init", "session_id": "sess-ctl"})
while True:
    line = sys.stdin.readline()
    if not line:
        break
    send(REQUEST)
    response = json.loads(sys.stdin.readline())
    send({"type": "assistant", "message": {"content": [{"type": "text", "text": json.dumps(response)}]}})
    send({"type": "result", "num_turns": 1, "total_cost_usd": 0.001, "result": "done"})
"""

SLOW_FIRST_CHILD = """
import time

send({"type": "system", "subtype": "init", "session_id": "sess-slow"})
while True:
    line = sys.stdin.readline()
    if not line:
        break
    prompt = json.loads(line)["message"]["content"][0]["text"]
    if prompt == "one":
        time.sleep(0.6)
        send({"type": "permission", "request_id": "req-late", "tool_name": "Bash", "tool_input": {"command": "ls"}})
        sys.stdin.readline()
    send({"type": "assistant", "message": {"content": [{"type": "text", "text": "answer to " + prompt}]}})
    send({"type": "result", "num_turns": 1, "total_cost_usd": 0.001, "result": "answer to " + prompt})
"""


def _echo_child(num_turns: int = 3) -> str:
    return ECHO_CHILD.replace("NUM_TURNS", str(num_turns))


def _control_child(request: dict) -> str:
    return CONTROL_CHILD.replace("REQUEST", repr(request))


class SessionTests(ChildProcessTestCase):
    def _collect(self, builder: SessionConfigBuilder, prompt: str = "hello", options: RunOptions | None = None):
        async def scenario() -> tuple[list, Session]:
            session = await Session.start(builder.build())
            try:
                events = [event async for event in session.stream(prompt, options)]
            finally:
                await session.close()
            return events, session

        return asyncio.run(scenario())

    def test_run_returns_result_and_captures_session_id(self) -> None:
        async def scenario() -> tuple:
            session = await Session.start(self.builder(_echo_child()).build())
            async with session:
                result = await session.run("hello")
            return result, session

        result, session = asyncio.run(scenario())

        self.assertIsInstance(result, TurnResult)
        self.assertEqual(0.0042, result.cost_usd)
        self.assertEqual("Task completed successfully", result.result_text)
        self.assertEqual("sess-abc123", session.session_id)
        self.assertEqual(3, session.total_turns)
        self.assertAlmostEqual(0.0042, session.total_cost_usd)
        self.assertTrue(session.closed)
        self.assertIs(StopReason.COMPLETED, session.stop_reason)
        self.assertIsNone(session.last_error)

    def test_stream_forwards_events_and_absorbs_init(self) -> None:
        events, _ = self._collect(self.builder(_echo_child()))

        self.assertFalse(any(isinstance(e, SessionInit) for e in events))
        self.assertIsInstance(events[0], Text)
        self.assertEqual("echo: hello", events[0].text)
        self.assertIsInstance(events[-1], TurnResult)
        self.assertEqual("sess-abc123", events[0].meta.session_id)
        self.assertEqual([2, 3], [e.meta.sequence for e in events])

    def test_turns_accumulate_across_prompts(self) -> None:
        async def scenario() -> Session:
            session = await Session.start(self.builder(_echo_child(num_turns=1)).build())
            async with session:
                first = await session.run("one")
                second = await session.run("two")
                self.assertEqual(1, first.meta.turn)
                self.assertEqual(2, second.meta.turn)
            return session

        session = asyncio.run(scenario())
        self.assertEqual(2, session.total_turns)
        self.assertAlmostEqual(0.0084, session.total_cost_usd)

    def test_denied_control_request_writes_deny_frame(self) -> None:
        request = {"type": "permission", "request_id": "req-1", "tool_name": "Bash", "tool_input": {"command": "rm -rf /"}}
        builder = self.builder(_control_child(request)).with_policy(deny_commands("rm -rf"))

        events, _ = self._collect(builder)

        texts = [e.text for e in events if isinstance(e, Text)]
        self.assertEqual(
            {"request_id": "req-1", "decision": "deny", "reason": "command contains blocked pattern: rm -rf"},
            json.loads(texts[0]),
        )

    def test_capability_runs_with_rewritten_input(self) -> None:
        received: list[dict] = []

        def lookup(tool_input: dict) -> dict:
            received.append(tool_input)
            return {"found": tool_input["query"]}

        def rewrite(call: ToolCall) -> PolicyResult:
            if call.name != "lookup":
                return PolicyResult.proceed()
            return PolicyResult.allow({"query": "rewritten"})

        request = {"type": "control", "request_id": "req-2", "tool_name": "lookup", "tool_input": {"query": "original"}}
        builder = (
            self.builder(_control_child(request))
            .with_policy(rewrite)
            .with_capability(FunctionTool("lookup", "finds things", {"type": "object"}, lookup))
        )

        events, _ = self._collect(builder)

        self.assertEqual([{"query": "rewritten"}], received)
        response = json.loads(next(e.text for e in events if isinstance(e, Text)))
        self.assertEqual(
            {"request_id": "req-2", "decision": "allow", "result": {"found": "rewritten"}, "is_error": False},
            response,
        )

    def test_turn_ceiling_exceeded_still_delivers_result(self) -> None:
        builder = self.builder(_echo_child(num_turns=6)).with_max_turns(5)

        async def scenario() -> tuple:
            session = await Session.start(builder.build())
            events = []
            async with session:
                with self.assertRaises(TurnLimitExceeded) as ctx:
                    async for event in session.stream("go"):
                        events.append(event)
                with self.assertRaises(TurnLimitExceeded) as again:
                    await session.run("more")
            return events, ctx.exception, again.exception, session

        events, error, again, session = asyncio.run(scenario())

        self.assertIsInstance(events[-1], TurnResult)
        self.assertEqual(6, error.turns)
        self.assertEqual(5, error.max_allowed)
        self.assertEqual("sess-abc123", error.session_id)
        self.assertIs(events[-1], error.result)
        self.assertIsNone(again.result)
        self.assertIs(StopReason.MAX_TURNS, session.stop_reason)

    def test_early_end_of_output_is_stream_terminated(self) -> None:
        child = """
        sys.stdin.readline()
        send({"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}})
        """

        async def scenario() -> tuple:
            session = await Session.start(self.builder(child).build())
            async with session:
                with self.assertRaises(StreamTerminated):
                    await session.run("hello")
            return session

        session = asyncio.run(scenario())
        self.assertIsInstance(session.last_error, StreamTerminated)
        self.assertIs(StopReason.ERROR, session.stop_reason)

    def test_malformed_output_surfaces_decode_failure(self) -> None:
        child = """
        sys.stdin.readline()
        sys.stdout.write("{not json\\n")
        sys.stdout.flush()
        """

        async def scenario() -> Session:
            session = await Session.start(self.builder(child).build())
            async with session:
                with self.assertRaises(DecodeFailure):
                    await session.run("hello")
            return session

        session = asyncio.run(scenario())
        self.assertIsInstance(session.last_error, DecodeFailure)

    def test_error_frame_raises_task_failure_from_run(self) -> None:
        child = """
        sys.stdin.readline()
        send({"type": "error", "error": "rate limited"})
        send({"type": "result", "num_turns": 1, "is_error": True, "result": ""})
        sys.stdin.read()
        """

        async def scenario() -> None:
            session = await Session.start(self.builder(child).build())
            async with session:
                await session.run("hello")

        with self.assertRaises(TaskFailure) as ctx:
            asyncio.run(scenario())
        self.assertEqual("rate limited", ctx.exception.message)

    def test_closed_session_rejects_prompts(self) -> None:
        async def scenario() -> None:
            session = await Session.start(self.builder(_echo_child()).build())
            await session.close()
            await session.close()
            await session.run("hello")

        with self.assertRaises(SessionClosedError):
            asyncio.run(scenario())

    def test_close_during_stream_ends_it(self) -> None:
        child = """
        for line in sys.stdin:
            pass
        """

        async def scenario() -> BaseException | None:
            session = await Session.start(self.builder(child).build())

            async def consume() -> None:
                async for _ in session.stream("hello"):
                    pass

            task = asyncio.create_task(consume())
            await asyncio.sleep(0.2)
            await session.close()
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except SessionClosedError as ex:
                return ex
            return None

        self.assertIsInstance(asyncio.run(scenario()), SessionClosedError)

    def test_timeout_interrupts_turn(self) -> None:
        child = """
        for line in sys.stdin:
            pass
        """

        async def scenario() -> Session:
            session = await Session.start(self.builder(child).build())
            async with session:
                with self.assertRaises(TimeoutError):
                    await session.run("hello", RunOptions(timeout=0.2))
                self.assertIs(StopReason.INTERRUPTED, session.stop_reason)
            return session

        session = asyncio.run(scenario())
        self.assertTrue(session.closed)

    def test_timed_out_turn_is_drained_before_next_prompt(self) -> None:
        sink = RecordingSink()
        builder = self.builder(SLOW_FIRST_CHILD).with_audit_sink(sink)

        async def scenario() -> tuple:
            session = await Session.start(builder.build())
            async with session:
                with self.assertRaises(TimeoutError):
                    await session.run("one", RunOptions(timeout=0.2))
                second = await session.run("two", RunOptions(timeout=5.0))
            return second, session

        second, session = asyncio.run(scenario())

        self.assertEqual("answer to two", second.result_text)
        self.assertEqual(2, second.meta.turn)
        self.assertEqual(2, session.total_turns)
        self.assertAlmostEqual(0.002, session.total_cost_usd)
        self.assertIn("hook.pre_tool_use", sink.types())

    def test_turn_left_early_is_drained_before_next_prompt(self) -> None:
        async def scenario() -> tuple:
            session = await Session.start(self.builder(SLOW_FIRST_CHILD).build())
            async with session:
                async with contextlib.aclosing(session.stream("one")) as events:
                    async for event in events:
                        first = event
                        break
                second = await session.run("two", RunOptions(timeout=5.0))
            return first, second, session

        first, second, session = asyncio.run(scenario())

        self.assertIsInstance(first, Text)
        self.assertEqual("answer to one", first.text)
        self.assertEqual("answer to two", second.result_text)
        self.assertEqual(2, session.total_turns)

    def test_turn_ceiling_is_recorded_before_result_is_yielded(self) -> None:
        builder = self.builder(_echo_child(num_turns=6)).with_max_turns(5)

        async def scenario() -> tuple:
            session = await Session.start(builder.build())
            async with session:
                async with contextlib.aclosing(session.stream("go")) as events:
                    async for event in events:
                        if isinstance(event, TurnResult):
                            break
                return event, session.last_error, session.stop_reason

        result, error, reason = asyncio.run(scenario())

        self.assertIsInstance(error, TurnLimitExceeded)
        self.assertIs(result, error.result)
        self.assertIs(StopReason.MAX_TURNS, reason)

    def test_run_without_result_is_stream_terminated(self) -> None:
        async def scenario() -> None:
            session = await Session.start(self.builder(_echo_child()).build())

            async def no_result(prompt, options=None):
                yield Text(meta=None, text="partial")

            session.stream = no_result
            async with session:
                await session.run("hello")

        with self.assertRaises(StreamTerminated):
            asyncio.run(scenario())

    def test_hooks_and_audit(self) -> None:
        child = """
        send({"type": "system", "subtype": "init", "session_id": "sess-hooks"})
        prompt = json.loads(sys.stdin.readline())["message"]["content"][0]["text"]
        send({"type": "assistant", "message": {"content": [{"type": "text", "text": prompt}]}})
        send({"type": "assistant", "message": {"content": [{"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"file_path": "/a"}}]}})
        send({"type": "user", "message": {"content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "data"}]}})
        send({"type": "result", "num_turns": 2, "total_cost_usd": 0.5, "result": "ok"})
        sys.stdin.read()
        """
        sink = RecordingSink()
        outcomes: list[tuple[str, str]] = []
        stops = []

        builder = (
            self.builder(child)
            .with_prompt_hook(lambda event: event.prompt.upper())
            .with_post_action_hook(lambda call, outcome: outcomes.append((call.name, outcome.tool_use_id)))
            .with_stop_hook(stops.append)
            .with_audit_sink(sink)
        )

        events, _ = self._collect(builder, prompt="hello")

        self.assertEqual("HELLO", events[0].text)
        self.assertIsInstance(events[1], ActionRequest)
        self.assertIsInstance(events[2], ActionOutcome)
        self.assertEqual([("Read", "tu_1")], outcomes)

        self.assertEqual(1, len(stops))
        self.assertEqual("sess-hooks", stops[0].session_id)
        self.assertIs(StopReason.COMPLETED, stops[0].reason)
        self.assertEqual(2, stops[0].num_turns)

        self.assertEqual(
            [
                "session.start",
                "message.prompt",
                "session.init",
                "message.text",
                "message.tool_use",
                "message.tool_result",
                "hook.post_tool_use",
                "message.result",
                "hook.stop",
                "session.end",
            ],
            sink.types(),
        )
        self.assertEqual("sess-hooks", sink.events[-1][0])

    def test_start_failure(self) -> None:
        builder = SessionConfigBuilder().with_command(str(self._tmp_dir / "missing-binary"))
        with self.assertRaises(StartFailure):
            asyncio.run(Session.start(builder.build()))
