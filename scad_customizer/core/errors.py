"""
Error taxonomy for parameter handling and compilation.

Non-errors, handled without raising:
  - non-literal right-hand side: not extracted
  - abnormal engine exit status: warning log line
  - dependency body that fails to download: dropped from the file set
"""

from __future__ import annotations


class ScadCustomizerError(Exception):
    """Base class for every failure surfaced to a compile caller."""

    status_code: int = 500


class ParameterValueError(ScadCustomizerError, ValueError):
    """An edited value cannot be coerced to its parameter's type, or names no parameter."""

    status_code = 400


class StaleDescriptorError(ScadCustomizerError):
    """A descriptor's anchor line no longer matches the text being synthesized."""

    status_code = 409


class EngineLoadError(ScadCustomizerError):
    """The build engine could not be located or failed its startup probe."""

    status_code = 503


class DependencyListingError(ScadCustomizerError):
    """The external library's file listing could not be fetched."""

    status_code = 502


class ArtifactMissingError(ScadCustomizerError):
    """The engine finished without writing the output artifact."""

    status_code = 422

    def __init__(self, message: str = "Output STL was not generated. Check your .scad code.") -> None:
        super().__init__(message)


class ChannelError(ScadCustomizerError):
    """The isolated compile context died without sending a terminal message."""
