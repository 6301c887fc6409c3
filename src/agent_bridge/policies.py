"""Ready-made policies for common command and path restrictions."""

from __future__ import annotations

from agent_bridge.policy import Policy, PolicyResult, ToolCall

PATH_TOOLS = frozenset({"Read", "Write", "Edit", "MultiEdit"})


def _bash_command(call: ToolCall) -> str | None:
    if call.name != "Bash":
        return None
    command = call.input.get("command")
    return command if isinstance(command, str) else None


def _path_of(call: ToolCall) -> tuple[str, str] | None:
    if call.name not in PATH_TOOLS:
        return None
    for field_name in ("file_path", "path"):
        value = call.input.get(field_name)
        if isinstance(value, str):
            return field_name, value
    return None


def deny_commands(*patterns: str) -> Policy:
    """Deny Bash commands containing any of ``patterns``."""

    def policy(call: ToolCall) -> PolicyResult:
        command = _bash_command(call)
        if command is None:
            return PolicyResult.proceed()
        for pattern in patterns:
            if pattern in command:
                return PolicyResult.deny(f"command contains blocked pattern: {pattern}")
        return PolicyResult.proceed()

    policy.__qualname__ = f"deny_commands{patterns!r}"
    return policy


def require_command(use: str, *instead_of: str) -> Policy:
    """Deny Bash commands using ``instead_of`` patterns, pointing at ``use``."""

    def policy(call: ToolCall) -> PolicyResult:
        command = _bash_command(call)
        if command is None:
            return PolicyResult.proceed()
        for pattern in instead_of:
            if pattern in command:
                return PolicyResult.deny(f"use {use} instead of {pattern}")
        return PolicyResult.proceed()

    policy.__qualname__ = f"require_command({use!r})"
    return policy


def allow_paths(*prefixes: str) -> Policy:
    def policy(call: ToolCall) -> PolicyResult:
        found = _path_of(call)
        if found is None:
            return PolicyResult.proceed()
        _, path = found
        if any(path.startswith(prefix) for prefix in prefixes):
            return PolicyResult.proceed()
        return PolicyResult.deny(f"path not in allowed list: {path}")

    policy.__qualname__ = f"allow_paths{prefixes!r}"
    return policy


def deny_paths(*prefixes: str) -> Policy:
    def policy(call: ToolCall) -> PolicyResult:
        found = _path_of(call)
        if found is None:
            return PolicyResult.proceed()
        _, path = found
        if any(path.startswith(prefix) for prefix in prefixes):
            return PolicyResult.deny(f"path is in denied list: {path}")
        return PolicyResult.proceed()

    policy.__qualname__ = f"deny_paths{prefixes!r}"
    return policy


def redirect_path(source: str, target: str) -> Policy:
    """Rewrite paths under ``source`` to live under ``target`` and allow the call."""

    def policy(call: ToolCall) -> PolicyResult:
        found = _path_of(call)
        if found is None:
            return PolicyResult.proceed()
        field_name, path = found
        if not path.startswith(source):
            return PolicyResult.proceed()
        return PolicyResult.allow({field_name: target + path[len(source):]})

    policy.__qualname__ = f"redirect_path({source!r}, {target!r})"
    return policy
