"""
Source synthesis: write edited parameter values back into .scad text.

Only the literal token between ``=`` and ``;`` on a descriptor's line is
replaced. Indentation, identifier, operator, delimiter and trailing comment
are preserved character for character. Edited strings are wrapped in double
quotes without escaping, so a value containing ``"`` produces invalid source.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..schemas import ParameterDescriptor, ParameterOverride
from .errors import ParameterValueError, StaleDescriptorError
from .parameters import extract_parameters, split_lines
from .values import format_value

logger = logging.getLogger(__name__)


def render_line(descriptor: ParameterDescriptor) -> str:
    if descriptor.is_unchanged():
        return descriptor.raw_line
    literal = format_value(descriptor.type.value, descriptor.value)
    line = descriptor.raw_line
    return line[:descriptor.value_start] + literal + line[descriptor.value_end:]


def synthesize_source(source_text: str, descriptors: Iterable[ParameterDescriptor]) -> str:
    lines = split_lines(source_text)
    for d in descriptors:
        if d.line >= len(lines) or lines[d.line] != d.raw_line:
            raise StaleDescriptorError(
                f"Parameter '{d.name}' no longer matches line {d.line + 1} of the source"
            )
        lines[d.line] = render_line(d)
    return "\n".join(lines)


def apply_values(descriptors: list[ParameterDescriptor], values: dict[str, Any]) -> None:
    by_name = {d.name: d for d in descriptors}
    unknown = sorted(set(values) - set(by_name))
    if unknown:
        raise ParameterValueError(f"Unknown parameter(s): {', '.join(unknown)}")
    for name, raw in values.items():
        try:
            by_name[name].set_value(raw)
        except ParameterValueError as exc:
            raise ParameterValueError(f"{name}: {exc}") from exc


def customize(source_text: str, values: dict[str, Any]) -> tuple[str, list[ParameterOverride]]:
    """Extract, apply edited values by name, and synthesize.

    Returns the effective source and one override per descriptor.
    """
    descriptors = extract_parameters(source_text)
    apply_values(descriptors, values)
    effective = synthesize_source(source_text, descriptors)
    changed = sum(1 for d in descriptors if not d.is_unchanged())
    logger.debug("source_customized params=%d changed=%d", len(descriptors), changed)
    return effective, [d.to_override() for d in descriptors]
