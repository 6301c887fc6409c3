import asyncio
import os
import sys

from dotenv import load_dotenv
from loguru import logger

from agent_bridge.errors import BridgeError, DecodeFailure, StartFailure, StreamTerminated, TurnLimitExceeded
from agent_bridge.logging_config import setup_logging
from agent_bridge.messages import ActionOutcome, ActionRequest, Failure, Reasoning, Text, TurnResult
from agent_bridge.session import Session
from agent_bridge.session_config import load_json_config, parse_logging_settings, parse_session_config

_LINE_PREFIX = "assistant> "
_USER_PROMPT = "you> "


def _print_event(event) -> None:
    if isinstance(event, Text):
        print(f"{_LINE_PREFIX}{event.text}")
    elif isinstance(event, Reasoning):
        logger.debug(f"thinking: {event.thinking}")
    elif isinstance(event, ActionRequest):
        print(f"  [tool] {event.name}")
    elif isinstance(event, ActionOutcome) and event.is_error:
        print(f"  [tool error] {event.content}")
    elif isinstance(event, Failure):
        print(f"  [error] {event.error}")
    elif isinstance(event, TurnResult):
        print(
            f"[{event.num_turns} turn(s), ${event.cost_usd:.4f}, "
            f"{event.duration_total.total_seconds():.1f}s"
            f"{', error' if event.is_error else ''}]"
        )


async def main() -> None:
    load_dotenv()

    config = load_json_config()
    settings = parse_logging_settings(config)
    log_descriptions = setup_logging(level=settings.level, consumers=settings.consumers)

    builder = parse_session_config(config)
    if len(sys.argv) > 1:
        builder.with_command(sys.argv[1], *sys.argv[2:])
    elif not builder.command:
        builder.with_command(os.environ.get("AGENT_BRIDGE_COMMAND", ""))
    if not builder.command:
        logger.error("No child command configured. Set Command in config.json, AGENT_BRIDGE_COMMAND, or pass it as arguments.")
        sys.exit(1)

    try:
        session = await Session.start(builder.build())
    except (StartFailure, ValueError) as ex:
        logger.error(str(ex))
        sys.exit(1)

    print("agent-bridge (type 'exit' to quit)")
    print(f"Child: {builder.command} (pid {session.pid})")
    if len(session.policies):
        print(f"Policies: {len(session.policies)}")
    if session.capabilities.names:
        print(f"Capabilities: {', '.join(session.capabilities.names)}")
    if log_descriptions:
        print(f"Logging: {', '.join(log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, _USER_PROMPT)
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                async for event in session.stream(trimmed):
                    _print_event(event)
                print()
            except TurnLimitExceeded as ex:
                print(f"\n{ex}")
                break
            except (StreamTerminated, DecodeFailure) as ex:
                logger.error(f"Child stream ended: {ex}")
                break
            except BridgeError as ex:
                logger.error(f"Turn failed: {ex}")
    finally:
        await session.close()
        if session.session_id:
            print(f"Session {session.session_id}: {session.total_turns} turn(s), ${session.total_cost_usd:.4f}")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
