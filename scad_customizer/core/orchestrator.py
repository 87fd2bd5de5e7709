"""
Compilation orchestrator: .scad source + overrides -> STL bytes.

  1. Get the resident engine factory (loaded once per process)
  2. Resolve BOSL2 when the source includes/uses it
  3. Create a fresh engine instance (private workspace) for this request
  4. Stage library files and the source
  5. Build ``input.scad -o output.stl -D name=value ...``
  6. Run the engine, streaming its output to the log sink
  7. Read ``output.stl``: its presence alone decides success

A non-zero exit status is reported as a warning only. OpenSCAD exits non-zero
on some warnings while still writing a valid mesh, and exits zero on some
failures (empty top-level object) without writing one.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable

from shared.files import format_size

from ..schemas import LogLevel, ParameterOverride
from .dependency_cache import DependencyCache, stage_library
from .engine import INPUT_FILE, OUTPUT_FILE, EngineLoader, LogSink, null_sink
from .errors import ArtifactMissingError

logger = logging.getLogger(__name__)


@dataclass
class CompileArtifact:
    data: bytes
    exit_code: int | None = None
    elapsed: float = 0.0
    overrides_applied: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.data)


def build_define_flags(overrides: Iterable[ParameterOverride]) -> list[str]:
    args: list[str] = []
    for override in overrides:
        args.extend(["-D", override.expression])
    return args


def build_arguments(overrides: Iterable[ParameterOverride]) -> list[str]:
    return [INPUT_FILE, "-o", OUTPUT_FILE, *build_define_flags(overrides)]


class CompileOrchestrator:
    def __init__(self, engine_loader: EngineLoader, dependencies: DependencyCache):
        self.engine_loader = engine_loader
        self.dependencies = dependencies

    async def compile(
        self,
        source_text: str,
        overrides: list[ParameterOverride] | None = None,
        log: LogSink = null_sink,
    ) -> CompileArtifact:
        overrides = overrides or []
        factory = await self.engine_loader.get(log)

        library_files: dict[str, bytes] | None = None
        if self.dependencies.is_referenced(source_text):
            library_files = await self.dependencies.resolve(log)

        log("Starting OpenSCAD instance...", LogLevel.info)
        with factory.create_instance() as instance:
            if library_files:
                staged = stage_library(instance, self.dependencies.library_name, library_files)
                logger.debug("dependency_staged library=%s files=%d", self.dependencies.library_name, staged)
            instance.write_file(INPUT_FILE, source_text)

            args = build_arguments(overrides)
            expressions = [o.expression for o in overrides]
            if expressions:
                log(f"Overrides: {', '.join(expressions)}", LogLevel.info)

            log("Compiling...", LogLevel.info)
            t0 = time.time()
            exit_code = await instance.call_main(args, log)
            elapsed = time.time() - t0

            if exit_code:
                log(f"OpenSCAD exited with status {exit_code}.", LogLevel.warning)

            data = instance.read_file(OUTPUT_FILE)

        if data is None:
            logger.warning("compile_artifact_missing exit_code=%s elapsed=%.2fs", exit_code, elapsed)
            raise ArtifactMissingError()

        log(f"Compilation finished: STL {format_size(len(data))}", LogLevel.success)
        logger.info(
            "compile_succeeded bytes=%d exit_code=%s elapsed=%.2fs overrides=%d",
            len(data), exit_code, elapsed, len(overrides),
        )
        return CompileArtifact(
            data=data,
            exit_code=exit_code,
            elapsed=round(elapsed, 3),
            overrides_applied=expressions,
        )
