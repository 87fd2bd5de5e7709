"""
Async job manager for .scad compiles.

Provides:
  - Bounded work queue; the default single worker keeps one compile in flight
  - Per-job progress, detail and the streamed engine log
  - Artifact persistence (``<artifacts_dir>/<job_id>.stl``)
  - TTL-based cleanup of completed job records and their artifacts
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from shared.files import ensure_dir, safe_name, sha256_bytes

from .config import ScadCustomizerSettings
from .core.channel import CompileChannel
from .core.errors import ScadCustomizerError
from .core.synthesizer import customize
from .schemas import (
    CompileJobStatus,
    CompileRequest,
    CompileResult,
    ErrorMessage,
    JobRecordView,
    LogEntry,
    LogLevel,
    LogMessage,
    ParameterOverride,
    ResultMessage,
)

logger = logging.getLogger(__name__)

_FINISHED = {
    CompileJobStatus.succeeded,
    CompileJobStatus.failed,
    CompileJobStatus.cancelled,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    id: str
    request: CompileRequest
    status: CompileJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: int = 0
    detail: str = ""
    logs: list[LogEntry] = field(default_factory=list)
    result: CompileResult | None = None
    error: dict[str, Any] | None = None
    artifact_path: Path | None = None
    done_event: asyncio.Event = field(default_factory=asyncio.Event)

    def add_log(self, text: str, level: LogLevel = LogLevel.info) -> None:
        self.logs.append(LogEntry(text=text, level=level, timestamp=_utc_now()))

    def as_view(self, include_logs: bool = True) -> JobRecordView:
        return JobRecordView(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            progress=self.progress,
            detail=self.detail,
            request_summary={
                "source_chars": len(self.request.source_text),
                "overrides": len(self.request.overrides),
                "values": len(self.request.values or {}),
            },
            logs=self.logs if include_logs else [],
            result=self.result,
            error=self.error,
        )


class CompileJobManager:
    def __init__(self, settings: ScadCustomizerSettings, channel: CompileChannel):
        self.settings = settings
        self.channel = channel
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=settings.max_queue_size)
        self.jobs: dict[str, JobRecord] = {}
        self._workers: list[asyncio.Task] = []
        self._cleanup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        ensure_dir(self.settings.artifacts_dir)
        worker_count = self.settings.max_concurrent_jobs
        for idx in range(worker_count):
            self._workers.append(
                asyncio.create_task(self._worker_loop(idx), name=f"scad-compile-worker-{idx}")
            )
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="scad-compile-cleanup")
        logger.info("compile_job_manager_started workers=%s", worker_count)

    async def shutdown(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

    async def submit(self, request: CompileRequest, job_id: str | None = None) -> JobRecord:
        async with self._lock:
            if self.queue.full():
                raise RuntimeError("Job queue is full, retry later")

            _id = safe_name(job_id or request.request_id or "", fallback="") or uuid.uuid4().hex
            if _id in self.jobs:
                raise RuntimeError(f"Duplicate job_id: {_id}")

            record = JobRecord(
                id=_id,
                request=request,
                status=CompileJobStatus.queued,
                created_at=_utc_now(),
            )
            self.jobs[_id] = record
            self.queue.put_nowait(_id)
            return record

    async def wait_for_completion(self, job_id: str, timeout_seconds: int) -> JobRecord:
        record = await self.get(job_id)
        try:
            await asyncio.wait_for(record.done_event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Job '{job_id}' did not finish within {timeout_seconds}s")
        return await self.get(job_id)

    async def get(self, job_id: str) -> JobRecord:
        record = self.jobs.get(job_id)
        if not record:
            raise KeyError(f"Job not found: {job_id}")
        return record

    async def cancel(self, job_id: str) -> JobRecord:
        record = await self.get(job_id)
        if record.status == CompileJobStatus.queued:
            record.status = CompileJobStatus.cancelled
            record.finished_at = _utc_now()
            record.done_event.set()
            return record
        if record.status in _FINISHED:
            return record
        raise RuntimeError("Running compiles cannot be cancelled")

    def active_count(self) -> int:
        return sum(
            1 for x in self.jobs.values()
            if x.status in {CompileJobStatus.queued, CompileJobStatus.running}
        )

    def _prepare(self, request: CompileRequest) -> tuple[str, list[ParameterOverride]]:
        if request.values is not None:
            return customize(request.source_text, request.values)
        return request.source_text, request.overrides

    async def _run(self, record: JobRecord) -> None:
        try:
            source_text, overrides = self._prepare(record.request)
        except ScadCustomizerError as exc:
            self._fail(record, str(exc), exc.status_code)
            return

        record.progress = 10
        record.detail = "Compiling..."

        async with aclosing(self.channel.request(source_text, overrides)) as replies:
            async for message in replies:
                if isinstance(message, LogMessage):
                    record.add_log(message.text, message.level)
                    record.detail = message.text[:200]
                elif isinstance(message, ResultMessage):
                    self._succeed(record, message, overrides)
                elif isinstance(message, ErrorMessage):
                    record.add_log(message.message, LogLevel.error)
                    self._fail(record, message.message, message.status_code)

    def _succeed(self, record: JobRecord, message: ResultMessage, overrides: list[ParameterOverride]) -> None:
        artifact_path = self.settings.artifacts_dir / f"{record.id}.stl"
        artifact_path.write_bytes(message.artifact)
        record.artifact_path = artifact_path
        record.result = CompileResult(
            success=True,
            job_id=record.id,
            artifact_path=str(artifact_path),
            artifact_url=f"/jobs/{record.id}/artifact",
            artifact_size=len(message.artifact),
            artifact_sha256=sha256_bytes(message.artifact),
            exit_code=message.exit_code,
            elapsed=message.elapsed,
            overrides=overrides,
        )
        record.status = CompileJobStatus.succeeded
        record.progress = 100
        record.detail = "Compilation complete"

    def _fail(self, record: JobRecord, message: str, status_code: int = 500) -> None:
        record.status = CompileJobStatus.failed
        record.error = {"message": message, "status_code": status_code}
        record.progress = 100
        record.detail = f"Error: {message[:200]}"

    async def _worker_loop(self, idx: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                record = self.jobs.get(job_id)
                if not record or record.status == CompileJobStatus.cancelled:
                    continue

                record.status = CompileJobStatus.running
                record.started_at = _utc_now()
                record.progress = 5
                record.detail = "Starting compile..."

                try:
                    await self._run(record)
                    if record.status == CompileJobStatus.running:
                        self._fail(record, "Compile finished without a result")
                except Exception as exc:
                    self._fail(record, str(exc))
                    logger.exception("Worker %d: job %s failed", idx, job_id)

                finally:
                    record.finished_at = _utc_now()
                    record.done_event.set()

            finally:
                self.queue.task_done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            self.prune()

    def prune(self) -> None:
        now = _utc_now()
        ttl = timedelta(seconds=self.settings.finished_job_ttl_seconds)

        expired = [
            jid
            for jid, job in self.jobs.items()
            if job.status in _FINISHED
            and job.finished_at
            and now - job.finished_at > ttl
        ]
        for jid in expired:
            self._drop(jid)

        completed_ids = [jid for jid, job in self.jobs.items() if job.status in _FINISHED]
        overflow = max(0, len(completed_ids) - self.settings.max_job_records)
        if overflow > 0:
            completed_sorted = sorted(
                completed_ids,
                key=lambda i: self.jobs[i].finished_at or self.jobs[i].created_at,
            )
            for jid in completed_sorted[:overflow]:
                self._drop(jid)

    def _drop(self, job_id: str) -> None:
        record = self.jobs.pop(job_id, None)
        if record and record.artifact_path:
            record.artifact_path.unlink(missing_ok=True)
