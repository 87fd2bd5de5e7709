"""
Line lexer for the customizer annotation grammar.

Three line shapes matter in the declarative preamble of a .scad file:

    // [Section Title]              section header (also /* [Section Title] */)
    module foo() { ... }            stop keyword, ends the preamble
    height = 10;  // [1:100]        assignment with optional trailing comment

Trailing comments are further classified as a numeric range
(``[min:max]`` / ``[min:step:max]``), an option list (``[a, b, "c"]``) or
free-text description.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from .values import NUMBER_RE, parse_number

_SECTION_LINE_RE = re.compile(r"^//\s*\[([^\]]+)\]\s*$")
_SECTION_BLOCK_RE = re.compile(r"^/\*\s*\[([^\]]+)\]\s*\*/$")
_STOP_RE = re.compile(r"^(?:module|function)\s+")
_IDENT_RE = re.compile(r"\$?[A-Za-z0-9_]+")
_BRACKET_RE = re.compile(r"^\[([^\]]+)\]$")
_RANGE_RE = re.compile(r"^([^:]+):(?:([^:]+):)?([^:]+)$")
_BARE_OPTION_RE = re.compile(r'^[^",:\[\]]+$')
_QUOTED_OPTION_RE = re.compile(r'^"[^"]*"$')

SIGIL = "$"


@dataclass(frozen=True)
class SectionHeader:
    title: str


@dataclass(frozen=True)
class StopKeyword:
    keyword: str


@dataclass(frozen=True)
class Assignment:
    name: str
    literal: str
    value_start: int
    value_end: int
    comment: str = ""

    @property
    def is_special(self) -> bool:
        return self.name.startswith(SIGIL)


LineShape = Union[SectionHeader, StopKeyword, Assignment]


@dataclass
class Annotation:
    kind: str  # "range" | "options" | "description" | "none"
    min: float | None = None
    max: float | None = None
    step: float | None = None
    options: list[str] = field(default_factory=list)
    description: str = ""
    ambiguous: bool = False


def classify_line(line: str) -> LineShape | None:
    stripped = line.strip()
    if not stripped:
        return None

    header = _SECTION_LINE_RE.match(stripped) or _SECTION_BLOCK_RE.match(stripped)
    if header:
        return SectionHeader(header.group(1).strip())

    stop = _STOP_RE.match(stripped)
    if stop:
        return StopKeyword(stripped.split(None, 1)[0])

    return scan_assignment(line)


def _skip_ws(line: str, pos: int) -> int:
    while pos < len(line) and line[pos].isspace():
        pos += 1
    return pos


def _scan_quoted(line: str, pos: int) -> int:
    """Return the index just past the closing quote, or -1 when unterminated."""
    pos += 1
    while pos < len(line):
        ch = line[pos]
        if ch == "\\":
            pos += 2
            continue
        if ch == '"':
            return pos + 1
        pos += 1
    return -1


def scan_assignment(line: str) -> Assignment | None:
    pos = _skip_ws(line, 0)
    ident = _IDENT_RE.match(line, pos)
    if not ident:
        return None
    name = ident.group(0)
    pos = _skip_ws(line, ident.end())

    if pos >= len(line) or line[pos] != "=" or line.startswith("==", pos):
        return None
    pos = _skip_ws(line, pos + 1)
    value_start = pos

    if pos < len(line) and line[pos] == '"':
        value_end = _scan_quoted(line, pos)
        if value_end < 0:
            return None
        pos = _skip_ws(line, value_end)
        if pos >= len(line) or line[pos] != ";":
            return None
    else:
        semi = line.find(";", pos)
        if semi < 0:
            return None
        value_end = semi
        while value_end > value_start and line[value_end - 1].isspace():
            value_end -= 1
        pos = semi

    if value_end <= value_start:
        return None

    rest = line[pos + 1:].strip()
    if rest and not rest.startswith("//"):
        return None
    comment = rest[2:].strip() if rest else ""

    return Assignment(
        name=name,
        literal=line[value_start:value_end],
        value_start=value_start,
        value_end=value_end,
        comment=comment,
    )


def parse_literal(token: str) -> tuple[str, bool | int | float | str] | None:
    """Classify a right-hand side. Returns (type, value) or None for expressions."""
    token = token.strip()
    if token in ("true", "false"):
        return "bool", token == "true"
    if len(token) >= 2 and token[0] == '"' and token[-1] == '"':
        # A quoted token that closes early ("a" + "b") is an expression.
        if _scan_quoted(token, 0) == len(token):
            return "string", token[1:-1]
        return None
    number = parse_number(token)
    if number is not None:
        return "number", number
    return None


def _unquote(token: str) -> str:
    if token.startswith('"'):
        token = token[1:]
    if token.endswith('"'):
        token = token[:-1]
    return token


def _parse_range(inner: str) -> tuple[float, float | None, float] | None:
    match = _RANGE_RE.match(inner.strip())
    if not match:
        return None
    parts = [match.group(1), match.group(2), match.group(3)]
    if any(p is not None and not NUMBER_RE.match(p.strip()) for p in parts):
        return None
    lo = parse_number(parts[0])
    step = parse_number(parts[1]) if parts[1] is not None else None
    hi = parse_number(parts[2])
    if lo is None or hi is None or (parts[1] is not None and step is None):
        return None
    return lo, step, hi


def parse_annotation(comment: str) -> Annotation:
    comment = comment.strip()
    if not comment:
        return Annotation(kind="none")

    bracket = _BRACKET_RE.match(comment)
    if not bracket:
        return Annotation(kind="description", description=comment)

    inner = bracket.group(1)
    numeric = _parse_range(inner)
    if numeric is not None:
        lo, step, hi = numeric
        return Annotation(kind="range", min=lo, max=hi, step=step)

    raw_tokens = [t.strip() for t in inner.split(",")]
    ambiguous = any(
        not t or not (_BARE_OPTION_RE.match(t) or _QUOTED_OPTION_RE.match(t))
        for t in raw_tokens
    )
    return Annotation(
        kind="options",
        options=[_unquote(t) for t in raw_tokens],
        ambiguous=ambiguous,
    )
