from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from agent_bridge.audit import AuditSink, BufferedAuditSink, JsonlAuditSink
from agent_bridge.event_pump import DEFAULT_QUEUE_SIZE
from agent_bridge.lifecycle import PostActionHook, PromptSubmitHook, StopHook
from agent_bridge.policies import allow_paths, deny_commands, deny_paths
from agent_bridge.policy import Policy
from agent_bridge.process import DEFAULT_MAX_LINE_BYTES, ProcessSpec
from agent_bridge.tool import Tool

DEFAULT_CLOSE_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class SessionConfig:
    """Everything a Session needs, fixed at construction time."""

    process: ProcessSpec
    max_turns: int = 0
    timeout_seconds: float | None = None
    queue_size: int = DEFAULT_QUEUE_SIZE
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES
    close_timeout_seconds: float = DEFAULT_CLOSE_TIMEOUT_SECONDS
    policies: tuple[Policy, ...] = ()
    capabilities: tuple[Tool, ...] = ()
    prompt_hooks: tuple[PromptSubmitHook, ...] = ()
    post_action_hooks: tuple[PostActionHook, ...] = ()
    stop_hooks: tuple[StopHook, ...] = ()
    audit_sinks: tuple[AuditSink, ...] = ()

    def process_spec(self) -> ProcessSpec:
        return self.process

    @staticmethod
    def builder(command: str = "") -> SessionConfigBuilder:
        return SessionConfigBuilder(command)


class SessionConfigBuilder:
    """Fluent construction of a SessionConfig.

    Each call returns the builder; ``build()`` validates and freezes.
    """

    def __init__(self, command: str = ""):
        self.command = command
        self._args: list[str] = []
        self._env: dict[str, str] = {}
        self._working_directory: str | None = None
        self._max_turns = 0
        self._timeout_seconds: float | None = None
        self._queue_size = DEFAULT_QUEUE_SIZE
        self._max_line_bytes = DEFAULT_MAX_LINE_BYTES
        self._close_timeout_seconds = DEFAULT_CLOSE_TIMEOUT_SECONDS
        self._policies: list[Policy] = []
        self._capabilities: list[Tool] = []
        self._prompt_hooks: list[PromptSubmitHook] = []
        self._post_action_hooks: list[PostActionHook] = []
        self._stop_hooks: list[StopHook] = []
        self._audit_sinks: list[AuditSink] = []

    def with_command(self, command: str, *args: str) -> SessionConfigBuilder:
        self.command = command
        self._args = list(args)
        return self

    def with_args(self, *args: str) -> SessionConfigBuilder:
        self._args.extend(args)
        return self

    def with_env(self, **env: str) -> SessionConfigBuilder:
        self._env.update(env)
        return self

    def with_working_directory(self, path: str | Path | None) -> SessionConfigBuilder:
        self._working_directory = str(path) if path else None
        return self

    def with_max_turns(self, max_turns: int) -> SessionConfigBuilder:
        self._max_turns = max_turns
        return self

    def with_timeout(self, seconds: float | None) -> SessionConfigBuilder:
        self._timeout_seconds = seconds
        return self

    def with_queue_size(self, size: int) -> SessionConfigBuilder:
        self._queue_size = size
        return self

    def with_max_line_bytes(self, size: int) -> SessionConfigBuilder:
        self._max_line_bytes = size
        return self

    def with_close_timeout(self, seconds: float) -> SessionConfigBuilder:
        self._close_timeout_seconds = seconds
        return self

    def with_policy(self, *policies: Policy) -> SessionConfigBuilder:
        self._policies.extend(policies)
        return self

    def with_capability(self, *tools: Tool) -> SessionConfigBuilder:
        self._capabilities.extend(tools)
        return self

    def with_prompt_hook(self, *hooks: PromptSubmitHook) -> SessionConfigBuilder:
        self._prompt_hooks.extend(hooks)
        return self

    def with_post_action_hook(self, *hooks: PostActionHook) -> SessionConfigBuilder:
        self._post_action_hooks.extend(hooks)
        return self

    def with_stop_hook(self, *hooks: StopHook) -> SessionConfigBuilder:
        self._stop_hooks.extend(hooks)
        return self

    def with_audit_sink(self, *sinks: AuditSink) -> SessionConfigBuilder:
        self._audit_sinks.extend(sinks)
        return self

    def build(self) -> SessionConfig:
        if self._max_turns < 0:
            raise ValueError("max_turns must be >= 0")
        if self._timeout_seconds is not None and self._timeout_seconds <= 0:
            raise ValueError("timeout must be positive")
        if self._queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        if self._max_line_bytes < 1024:
            raise ValueError("max_line_bytes must be >= 1024")
        if self._close_timeout_seconds <= 0:
            raise ValueError("close timeout must be positive")
        return SessionConfig(
            process=ProcessSpec(
                command=self.command,
                args=tuple(self._args),
                env=dict(self._env),
                working_directory=self._working_directory,
            ),
            max_turns=self._max_turns,
            timeout_seconds=self._timeout_seconds,
            queue_size=self._queue_size,
            max_line_bytes=self._max_line_bytes,
            close_timeout_seconds=self._close_timeout_seconds,
            policies=tuple(self._policies),
            capabilities=tuple(self._capabilities),
            prompt_hooks=tuple(self._prompt_hooks),
            post_action_hooks=tuple(self._post_action_hooks),
            stop_hooks=tuple(self._stop_hooks),
            audit_sinks=tuple(self._audit_sinks),
        )


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    consumers: list | None = None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _str_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def parse_session_config(config: dict) -> SessionConfigBuilder:
    builder = SessionConfigBuilder(str(config.get("Command", "")).strip())
    builder.with_args(*_str_list(config.get("Args")))
    builder.with_env(**{str(k): str(v) for k, v in (config.get("Env") or {}).items()})
    builder.with_working_directory(config.get("WorkingDirectory"))
    builder.with_max_turns(int(config.get("MaxTurns", 0)))
    timeout = config.get("TimeoutSeconds")
    builder.with_timeout(float(timeout) if timeout else None)
    builder.with_queue_size(int(config.get("QueueSize", DEFAULT_QUEUE_SIZE)))
    builder.with_max_line_bytes(int(config.get("MaxLineBytes", DEFAULT_MAX_LINE_BYTES)))
    builder.with_close_timeout(float(config.get("CloseTimeoutSeconds", DEFAULT_CLOSE_TIMEOUT_SECONDS)))

    if patterns := _str_list(config.get("DenyCommands")):
        builder.with_policy(deny_commands(*patterns))
    if prefixes := _str_list(config.get("DenyPaths")):
        builder.with_policy(deny_paths(*prefixes))
    if prefixes := _str_list(config.get("AllowPaths")):
        builder.with_policy(allow_paths(*prefixes))

    if audit_path := str(config.get("AuditLogPath", "")).strip():
        sink: AuditSink = JsonlAuditSink(audit_path)
        if _to_bool(config.get("AuditBuffered", True), default=True):
            sink = BufferedAuditSink(sink)
        builder.with_audit_sink(sink)
    return builder


def parse_logging_settings(config: dict) -> LoggingSettings:
    return LoggingSettings(
        level=config.get("LogLevel", "INFO"),
        consumers=config.get("LogConsumers"),
    )
