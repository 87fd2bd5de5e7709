"""
OpenSCAD engine lifecycle.

  - ``EngineLoader`` locates and probes the executable once per process and
    keeps the resulting ``EngineFactory`` resident.
  - ``EngineFactory.create_instance()`` hands out a fresh ``EngineInstance``
    per compile: a private working directory that no other compile sees.
  - ``EngineInstance.call_main()`` runs the CLI and streams its output line by
    line to a log sink while it runs.

The subprocess runs on the event loop via asyncio pipes, so the loop stays
free for other requests while a build is in progress.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable

from shared.files import ensure_dir

from ..schemas import LogLevel
from .errors import EngineLoadError
from .once import SingleFlight

logger = logging.getLogger(__name__)

LogSink = Callable[[str, LogLevel], None]

INPUT_FILE = "input.scad"
OUTPUT_FILE = "output.stl"
LIBRARY_ROOT = "libraries"

_STREAM_LIMIT = 1024 * 1024
_ENGINE_KEY = "openscad"


def null_sink(text: str, level: LogLevel = LogLevel.info) -> None:
    return None


def classify_stderr(line: str) -> LogLevel:
    head = line.lstrip().upper()
    if head.startswith(("ERROR", "TRACE", "PARSER ERROR")) or "ERROR:" in head:
        return LogLevel.error
    if head.startswith(("WARNING", "DEPRECATED")):
        return LogLevel.warning
    return LogLevel.info


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


async def _pump(stream: asyncio.StreamReader | None, log: LogSink, is_stderr: bool) -> None:
    if stream is None:
        return
    async for raw in stream:
        text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not text:
            continue
        log(text, classify_stderr(text) if is_stderr else LogLevel.info)


# ---------------------------------------------------------------------------
# Per-request instance
# ---------------------------------------------------------------------------

class EngineInstance:
    """One compile's private file area plus the means to run the engine in it."""

    def __init__(self, factory: "EngineFactory", workdir: Path):
        self.factory = factory
        self.workdir = workdir
        self.closed = False

    def __enter__(self) -> "EngineInstance":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def library_root(self) -> Path:
        return self.workdir / LIBRARY_ROOT

    def path(self, relative: str) -> Path:
        rel = PurePosixPath(relative.lstrip("/"))
        if not rel.parts or ".." in rel.parts:
            raise ValueError(f"Refusing to stage outside the workspace: {relative!r}")
        return self.workdir.joinpath(*rel.parts)

    def write_file(self, relative: str, data: str | bytes) -> Path:
        target = self.path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            target.write_text(data, encoding="utf-8")
        else:
            target.write_bytes(data)
        return target

    def read_file(self, relative: str) -> bytes | None:
        target = self.path(relative)
        if not target.is_file():
            return None
        return target.read_bytes()

    async def call_main(self, args: list[str], log: LogSink = null_sink) -> int | None:
        """Run the engine with ``args``. Returns the exit status (negative when killed)."""
        cmd = [str(self.factory.executable), *args]
        env = os.environ.copy()
        env["OPENSCADPATH"] = str(self.library_root)
        timeout = self.factory.timeout

        logger.info("engine_run workdir=%s args=%d", self.workdir.name, len(args))
        t0 = time.time()
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(self.workdir),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(proc.stdout, log, is_stderr=False),
                    _pump(proc.stderr, log, is_stderr=True),
                    proc.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error("engine_timeout workdir=%s timeout=%ds", self.workdir.name, timeout)
            log(f"Engine timed out after {timeout}s and was stopped.", LogLevel.error)
        finally:
            await _terminate(proc)

        logger.info(
            "engine_exit workdir=%s code=%s elapsed=%.2fs",
            self.workdir.name, proc.returncode, time.time() - t0,
        )
        return proc.returncode

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.factory.keep_workspaces:
            logger.debug("engine_workspace_kept path=%s", self.workdir)
            return
        shutil.rmtree(self.workdir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Factory (resident) and loader
# ---------------------------------------------------------------------------

@dataclass
class EngineFactory:
    executable: Path
    version: str
    workspace_root: Path
    timeout: int = 300
    keep_workspaces: bool = False

    def create_instance(self) -> EngineInstance:
        ensure_dir(self.workspace_root)
        workdir = Path(tempfile.mkdtemp(prefix="scad_", dir=str(self.workspace_root)))
        ensure_dir(workdir / LIBRARY_ROOT)
        return EngineInstance(self, workdir)


class EngineLoader:
    def __init__(
        self,
        executable: Path,
        workspace_root: Path,
        timeout: int = 300,
        probe_timeout: int = 60,
        keep_workspaces: bool = False,
    ):
        self.executable = executable
        self.workspace_root = workspace_root
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.keep_workspaces = keep_workspaces
        self._cache: SingleFlight[str, EngineFactory] = SingleFlight("engine_factory")

    @property
    def loaded(self) -> EngineFactory | None:
        return self._cache.peek(_ENGINE_KEY)

    async def get(self, log: LogSink = null_sink) -> EngineFactory:
        return await self._cache.get(_ENGINE_KEY, lambda: self._load(log))

    async def _load(self, log: LogSink) -> EngineFactory:
        log("Loading OpenSCAD engine...", LogLevel.info)
        try:
            version = await self._probe()
        except EngineLoadError as exc:
            logger.error("engine_load_failed executable=%s error=%s", self.executable, exc)
            log(f"Error loading OpenSCAD engine: {exc}", LogLevel.error)
            raise

        log(f"OpenSCAD engine loaded ({version}).", LogLevel.success)
        logger.info("engine_loaded executable=%s version=%r", self.executable, version)
        return EngineFactory(
            executable=self.executable,
            version=version,
            workspace_root=self.workspace_root,
            timeout=self.timeout,
            keep_workspaces=self.keep_workspaces,
        )

    async def _probe(self) -> str:
        exe = self.executable
        if not exe.is_file() or not os.access(exe, os.X_OK):
            raise EngineLoadError(f"OpenSCAD executable not found or not executable: {exe}")

        try:
            proc = await asyncio.create_subprocess_exec(
                str(exe),
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EngineLoadError(f"Cannot start {exe}: {exc}") from exc

        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            await _terminate(proc)
            raise EngineLoadError(f"{exe} --version did not answer within {self.probe_timeout}s")

        if proc.returncode != 0:
            raise EngineLoadError(f"{exe} --version exited with status {proc.returncode}")

        text = (out + err).decode("utf-8", errors="replace").strip()
        return text.splitlines()[0].strip() if text else "unknown version"
