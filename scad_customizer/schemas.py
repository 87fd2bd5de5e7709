from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from .core.values import coerce_value, format_value

ScalarValue = Union[bool, int, float, str]


class ParameterType(str, Enum):
    number = "number"
    bool = "bool"
    string = "string"


class LogLevel(str, Enum):
    info = "info"
    success = "success"
    warning = "warning"
    error = "error"


class CompileJobStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

class ParameterDescriptor(BaseModel):
    """One customizable assignment found in the declarative preamble of a .scad file.

    ``line`` is the zero-based index of the assignment in the original text and
    ``value_start``/``value_end`` delimit the literal token inside ``raw_line``.
    Both stay valid only while the original text is unmodified.
    """

    name: str
    section: str | None = None
    line: int
    raw_line: str
    raw_value: str
    value_start: int
    value_end: int
    comment: str = ""
    description: str = ""
    type: ParameterType
    value: ScalarValue
    default: ScalarValue
    options: list[int | float | str] | None = None
    min: float | None = None
    max: float | None = None
    step: float | None = None
    ambiguous_annotation: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def slider_step(self) -> float | None:
        if self.min is None or self.max is None:
            return None
        if self.step is not None:
            return self.step
        return 0.1 if (self.max - self.min) <= 10 else 1

    def set_value(self, raw: Any) -> None:
        self.value = coerce_value(self.type.value, raw)

    def is_unchanged(self) -> bool:
        if isinstance(self.value, bool) != isinstance(self.default, bool):
            return False
        return self.value == self.default

    def to_override(self) -> "ParameterOverride":
        return ParameterOverride(name=self.name, value=self.value, type=self.type)


class ParameterOverride(BaseModel):
    name: str = Field(pattern=r"^[A-Za-z0-9_]+$")
    value: ScalarValue
    type: ParameterType = ParameterType.number

    @property
    def expression(self) -> str:
        return f"{self.name}={format_value(self.type.value, self.value)}"


class ExtractRequest(BaseModel):
    source_text: str


class ExtractResponse(BaseModel):
    parameters: list[ParameterDescriptor] = Field(default_factory=list)
    sections: list[str] = Field(default_factory=list)
    ambiguous: list[str] = Field(default_factory=list)


class SynthesizeRequest(BaseModel):
    source_text: str
    values: dict[str, Any] = Field(default_factory=dict)


class SynthesizeResponse(BaseModel):
    source_text: str
    overrides: list[ParameterOverride] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Compile request
# ---------------------------------------------------------------------------

class CompileRequest(BaseModel):
    """Input for a compile.

    Either send the effective source with explicit ``overrides``, or send the
    original source with ``values`` (parameter name -> edited value) and let
    the service synthesize the effective source and overrides.
    """

    source_text: str
    overrides: list[ParameterOverride] = Field(default_factory=list)
    values: dict[str, Any] | None = None

    request_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def _require_source(self) -> "CompileRequest":
        if not self.source_text.strip():
            raise ValueError("source_text must not be empty")
        if self.values is not None and self.overrides:
            raise ValueError("Provide either overrides or values, not both")
        return self


# ---------------------------------------------------------------------------
# Channel messages
# ---------------------------------------------------------------------------

class CompileRequestMessage(BaseModel):
    type: Literal["compile-request"] = "compile-request"
    source_text: str
    overrides: list[ParameterOverride] = Field(default_factory=list)


class LogMessage(BaseModel):
    type: Literal["log"] = "log"
    text: str
    level: LogLevel = LogLevel.info

    terminal: ClassVar[bool] = False


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    artifact: bytes = Field(exclude=True)
    exit_code: int | None = None
    elapsed: float = 0.0

    terminal: ClassVar[bool] = True

    @computed_field  # type: ignore[prop-decorator]
    @property
    def size(self) -> int:
        return len(self.artifact)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str
    status_code: int = Field(default=500, exclude=True)

    terminal: ClassVar[bool] = True


ChannelMessage = Annotated[
    Union[CompileRequestMessage, LogMessage, ResultMessage, ErrorMessage],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class LogEntry(BaseModel):
    text: str
    level: LogLevel = LogLevel.info
    timestamp: datetime


class CompileResult(BaseModel):
    success: bool = True
    job_id: str = ""
    artifact_path: str = ""
    artifact_url: str = ""
    artifact_size: int = 0
    artifact_sha256: str = ""
    exit_code: int | None = None
    elapsed: float = 0.0
    overrides: list[ParameterOverride] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Job views (for /jobs endpoints)
# ---------------------------------------------------------------------------

class JobRecordView(BaseModel):
    id: str
    status: CompileJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: int = 0
    detail: str = ""

    request_summary: dict[str, Any] = Field(default_factory=dict)
    logs: list[LogEntry] = Field(default_factory=list)
    result: CompileResult | None = None
    error: dict[str, Any] | None = None


class AsyncJobAccepted(BaseModel):
    job_id: str
    status: CompileJobStatus = CompileJobStatus.queued
    status_url: str
    result_url: str
