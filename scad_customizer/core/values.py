"""
Literal serialization and coercion for customizable parameter values.

The same text form is used when a value is written back into source text and
when it is passed to the engine as a ``-D name=value`` override, so a value
always reads identically in both places.
"""

from __future__ import annotations

import math
import re
from typing import Any

from .errors import ParameterValueError

NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_INT_RE = re.compile(r"^[+-]?\d+$")


def parse_number(token: str) -> int | float | None:
    """Strict decimal parse. Returns None for anything that is not a plain finite number."""
    token = token.strip()
    if not NUMBER_RE.match(token):
        return None
    if _INT_RE.match(token):
        return int(token)
    value = float(token)
    # 1e400 overflows to inf, which has no literal form to write back.
    if not math.isfinite(value):
        return None
    return value


def format_number(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Cannot serialize non-finite number: {value}")
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def format_value(param_type: str, value: Any) -> str:
    """Render a value as source literal text. Strings are not escaped."""
    if param_type == "bool":
        return "true" if value else "false"
    if param_type == "string":
        return f'"{value}"'
    return format_number(value)


def coerce_value(param_type: str, raw: Any) -> Any:
    if param_type == "bool":
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
            return raw.strip().lower() == "true"
        raise ParameterValueError(f"Expected a boolean, got {raw!r}")

    if param_type == "string":
        if isinstance(raw, (dict, list)):
            raise ParameterValueError(f"Expected a string, got {raw!r}")
        return raw if isinstance(raw, str) else str(raw)

    if isinstance(raw, bool):
        raise ParameterValueError(f"Expected a number, got {raw!r}")
    if isinstance(raw, (int, float)):
        if isinstance(raw, float) and not math.isfinite(raw):
            raise ParameterValueError(f"Expected a finite number, got {raw!r}")
        return raw
    if isinstance(raw, str):
        parsed = parse_number(raw)
        if parsed is not None:
            return parsed
    raise ParameterValueError(f"Expected a number, got {raw!r}")
