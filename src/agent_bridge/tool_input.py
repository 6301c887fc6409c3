"""JSON value kinds carried in action inputs, and the rewrite merge law."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeAlias

from agent_bridge.errors import InvalidToolInput

JsonScalar: TypeAlias = "None | bool | int | float | str"
JsonValue: TypeAlias = "JsonScalar | list[JsonValue] | dict[str, JsonValue]"
ToolInput: TypeAlias = "dict[str, JsonValue]"

_SCALARS = (type(None), bool, int, float, str)


def validate_json_value(value: Any, *, path: str = "$") -> JsonValue:
    """Return a normalized copy of ``value`` or raise InvalidToolInput.

    Tuples become lists; mappings must have string keys.
    """
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, (list, tuple)):
        return [validate_json_value(item, path=f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, Mapping):
        return validate_tool_input(value, path=path)
    raise InvalidToolInput(f"{path}: unsupported value of type {type(value).__name__}")


def validate_tool_input(value: Any, *, path: str = "$") -> ToolInput:
    if not isinstance(value, Mapping):
        raise InvalidToolInput(f"{path}: expected an object, got {type(value).__name__}")
    result: dict[str, JsonValue] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise InvalidToolInput(f"{path}: object key {key!r} is not a string")
        result[key] = validate_json_value(item, path=f"{path}.{key}")
    return result


def merge_inputs(base: ToolInput | None, updates: ToolInput | None) -> ToolInput | None:
    """Merge two input maps, keys from ``updates`` winning.

    merge(None, None) is None, merge(None, u) is a copy of u, merge(b, None) is b.
    """
    if base is None and updates is None:
        return None
    if base is None:
        return dict(updates)
    if updates is None:
        return base
    merged = dict(base)
    merged.update(updates)
    return merged
