"""
Parameter extraction from customizer-annotated .scad source.

    // [Dimensions]
    height = 10;           // [1:100]         -> slider  min:1 max:100
    width  = 20;           // [5:0.5:50]      -> slider  min:5 step:0.5 max:50
    shape  = "round";      // [round, square] -> dropdown
    show   = true;                            -> checkbox
    label  = "test";                          -> text input
    size   = 10;           // Description     -> number with description

Scanning stops at the first module/function definition. Right-hand sides that
are not plain literals (expressions, vectors, function calls) are skipped.
"""

from __future__ import annotations

import logging

from ..schemas import ParameterDescriptor, ParameterType
from .annotations import Assignment, SectionHeader, StopKeyword, classify_line, parse_annotation, parse_literal
from .values import parse_number

logger = logging.getLogger(__name__)


def split_lines(source_text: str) -> list[str]:
    return source_text.split("\n")


def extract_parameters(source_text: str) -> list[ParameterDescriptor]:
    params: list[ParameterDescriptor] = []
    lines = split_lines(source_text)
    current_section: str | None = None

    for index, line in enumerate(lines):
        shape = classify_line(line)
        if shape is None:
            continue
        if isinstance(shape, SectionHeader):
            current_section = shape.title
            continue
        if isinstance(shape, StopKeyword):
            break

        descriptor = _build_descriptor(shape, index, line, current_section)
        if descriptor is not None:
            params.append(descriptor)

    logger.debug("parameters_extracted count=%d lines_scanned=%d", len(params), len(lines))
    return params


def _build_descriptor(
    assignment: Assignment,
    index: int,
    line: str,
    section: str | None,
) -> ParameterDescriptor | None:
    if assignment.is_special:
        return None

    literal = parse_literal(assignment.literal)
    if literal is None:
        return None
    param_type, value = literal

    descriptor = ParameterDescriptor(
        name=assignment.name,
        section=section,
        line=index,
        raw_line=line,
        raw_value=assignment.literal,
        value_start=assignment.value_start,
        value_end=assignment.value_end,
        comment=assignment.comment,
        type=ParameterType(param_type),
        value=value,
        default=value,
    )

    annotation = parse_annotation(assignment.comment)
    if annotation.kind == "range":
        descriptor.min = annotation.min
        descriptor.max = annotation.max
        descriptor.step = annotation.step
        descriptor.type = ParameterType.number
        descriptor.options = None
    elif annotation.kind == "options":
        options: list[int | float | str] = list(annotation.options)
        if descriptor.type == ParameterType.number:
            options = [_maybe_number(o) for o in annotation.options]
        descriptor.options = options
        descriptor.ambiguous_annotation = annotation.ambiguous
        if annotation.ambiguous:
            logger.warning(
                "ambiguous_annotation name=%s line=%d comment=%r", assignment.name, index, assignment.comment
            )
    elif annotation.kind == "description":
        descriptor.description = annotation.description

    return descriptor


def _maybe_number(token: str) -> int | float | str:
    number = parse_number(token)
    return token if number is None else number


def list_sections(params: list[ParameterDescriptor]) -> list[str]:
    """Section titles in first-occurrence order."""
    seen: list[str] = []
    for p in params:
        if p.section and p.section not in seen:
            seen.append(p.section)
    return seen


def find_parameter(params: list[ParameterDescriptor], name: str) -> ParameterDescriptor | None:
    for p in params:
        if p.name == name:
            return p
    return None
