"""
SCAD Customizer Microservice: FastAPI entry point.

Endpoints:
  POST /parameters   Extract customizer parameters from .scad source
  POST /synthesize   Write edited values back into the source
  POST /run          Sync compile (plain or envelope-wrapped body)
  POST /jobs         Async compile submission (polling)
  GET  /jobs/{id}    Job status, progress and engine log
  GET  /jobs/{id}/result     Final result
  GET  /jobs/{id}/artifact   STL download
  DELETE /jobs/{id}  Cancel queued job
  WS   /ws/compile   Streaming compile channel (log / result / error)
  GET  /health       Service health check
  GET  /tool/schema  Tool schema for registry
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import aclosing, asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import ValidationError

from shared.files import ensure_dir
from shared.logging import configure_logging
from shared.payloads import unwrap_tool_payload

from .config import ScadCustomizerSettings, settings
from .core.channel import CompileChannel
from .core.dependency_cache import DependencyCache
from .core.engine import EngineLoader
from .core.errors import ScadCustomizerError
from .core.orchestrator import CompileOrchestrator
from .core.parameters import extract_parameters, list_sections
from .core.synthesizer import customize
from .job_manager import CompileJobManager
from .schemas import (
    AsyncJobAccepted,
    CompileJobStatus,
    CompileRequest,
    CompileRequestMessage,
    CompileResult,
    ExtractRequest,
    ExtractResponse,
    JobRecordView,
    ResultMessage,
    SynthesizeRequest,
    SynthesizeResponse,
)

configure_logging(settings.log_level)
logger = logging.getLogger("scad_customizer.main")


def build_orchestrator(cfg: ScadCustomizerSettings) -> CompileOrchestrator:
    engine_loader = EngineLoader(
        executable=cfg.openscad_executable,
        workspace_root=cfg.workspaces_dir,
        timeout=cfg.engine_timeout_seconds,
        probe_timeout=cfg.engine_probe_timeout_seconds,
        keep_workspaces=cfg.keep_workspaces,
    )
    dependencies = DependencyCache(
        library_name=cfg.library_name,
        repo=cfg.library_repo,
        version=cfg.library_version,
        listing_url=cfg.library_listing_url,
        file_url=cfg.library_file_url,
        file_suffix=cfg.library_file_suffix,
        batch_size=cfg.dependency_batch_size,
        http_timeout=cfg.http_timeout_seconds,
    )
    return CompileOrchestrator(engine_loader, dependencies)


# ---------------------------------------------------------------------------
# Process-wide services (engine factory + dependency cache live here)
# ---------------------------------------------------------------------------

orchestrator = build_orchestrator(settings)
channel = CompileChannel(orchestrator)
jobs = CompileJobManager(settings, channel)


# ---------------------------------------------------------------------------
# Auth helper
# ---------------------------------------------------------------------------

def _require_api_key(x_api_key: str | None) -> None:
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


async def _read_compile_request(request: Request) -> tuple[CompileRequest, bool]:
    try:
        raw = await request.json()
        data, _, wrapped = unwrap_tool_payload(raw)
        return CompileRequest.model_validate(data), wrapped
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(_: FastAPI):
    ensure_dir(settings.workspaces_dir)
    ensure_dir(settings.artifacts_dir)
    await jobs.startup()
    yield
    await jobs.shutdown()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SCAD Customizer Service",
    version="1.0.0",
    description=(
        "Extracts customizer parameters from OpenSCAD sources, writes edited "
        "values back, and compiles the result to STL with a headless OpenSCAD "
        "engine. BOSL2 is fetched and cached on first use."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/")
async def root():
    return {
        "service": settings.service_name,
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health")
async def health():
    engine = orchestrator.engine_loader.loaded
    return {
        "status": "ok",
        "service": settings.service_name,
        "queue_size": jobs.queue.qsize(),
        "active_jobs": jobs.active_count(),
        "openscad_exists": settings.openscad_executable.exists(),
        "engine_version": engine.version if engine else None,
        "cached_libraries": orchestrator.dependencies.cached_libraries(),
        "max_concurrent_jobs": settings.max_concurrent_jobs,
    }


@app.get("/tool/schema")
async def tool_schema():
    return {
        "name": "scad-compile",
        "description": (
            "Compiles an OpenSCAD source to a binary STL mesh, applying "
            "customizer parameter overrides."
        ),
        "input_schema": CompileRequest.model_json_schema(),
        "output_schema": CompileResult.model_json_schema(),
    }


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

@app.post("/parameters", response_model=ExtractResponse)
async def parameters(body: ExtractRequest):
    params = extract_parameters(body.source_text)
    return ExtractResponse(
        parameters=params,
        sections=list_sections(params),
        ambiguous=[p.name for p in params if p.ambiguous_annotation],
    )


@app.post("/synthesize", response_model=SynthesizeResponse)
async def synthesize(body: SynthesizeRequest):
    try:
        source_text, overrides = customize(body.source_text, body.values)
    except ScadCustomizerError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return SynthesizeResponse(source_text=source_text, overrides=overrides)


# ---------------------------------------------------------------------------
# POST /run (sync compile)
# ---------------------------------------------------------------------------

@app.post("/run")
async def run_sync(request: Request, x_api_key: str | None = Header(default=None)):
    """
    Sync endpoint. Accepts either:
      - plain CompileRequest JSON
      - envelope shape: { "data": { ... }, "meta": { ... } }
    """
    _require_api_key(x_api_key)
    compile_request, wrapped = await _read_compile_request(request)

    try:
        record = await jobs.submit(compile_request)
        finished = await jobs.wait_for_completion(
            record.id, timeout_seconds=settings.sync_wait_timeout_seconds
        )
    except TimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if finished.status == CompileJobStatus.succeeded and finished.result:
        result_dict = finished.result.model_dump()
        if wrapped:
            return {"result": result_dict}
        return result_dict

    if finished.status == CompileJobStatus.cancelled:
        raise HTTPException(status_code=409, detail="Job cancelled")

    error = finished.error or {"message": "Unknown compile error", "status_code": 500}
    raise HTTPException(
        status_code=int(error.get("status_code", 500)),
        detail=error.get("message", "Compile failed"),
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@app.post("/jobs", response_model=AsyncJobAccepted)
async def enqueue_job(request: Request, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    compile_request, _ = await _read_compile_request(request)
    try:
        record = await jobs.submit(compile_request)
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return AsyncJobAccepted(
        job_id=record.id,
        status=record.status,
        status_url=f"/jobs/{record.id}",
        result_url=f"/jobs/{record.id}/result",
    )


@app.get("/jobs/{job_id}", response_model=JobRecordView)
async def get_job(job_id: str, logs: bool = True, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.get(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return record.as_view(include_logs=logs)


@app.get("/jobs/{job_id}/result")
async def get_job_result(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.get(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    if record.status == CompileJobStatus.queued:
        return {"status": "queued", "progress": record.progress}
    if record.status == CompileJobStatus.running:
        return {"status": "running", "progress": record.progress, "detail": record.detail}
    if record.status == CompileJobStatus.cancelled:
        return {"status": "cancelled"}
    if record.status == CompileJobStatus.failed:
        return {
            "status": "failed",
            "error": (record.error or {}).get("message", "unknown error"),
        }
    return {
        "status": "succeeded",
        "result": record.result.model_dump() if record.result else None,
    }


@app.get("/jobs/{job_id}/artifact")
async def get_job_artifact(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.get(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    if not record.artifact_path or not record.artifact_path.is_file():
        raise HTTPException(status_code=404, detail="STL not available")
    return FileResponse(
        str(record.artifact_path),
        media_type="model/stl",
        filename=f"{record.id}.stl",
    )


@app.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, x_api_key: str | None = Header(default=None)):
    _require_api_key(x_api_key)
    try:
        record = await jobs.cancel(job_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "job_id": job_id, "status": record.status}


# ---------------------------------------------------------------------------
# WS /ws/compile (streaming channel)
# ---------------------------------------------------------------------------

@app.websocket("/ws/compile")
async def compile_socket(websocket: WebSocket):
    """
    One compile per connection. The client sends a ``compile-request`` text
    frame; the server answers with ``log`` text frames followed by either an
    ``error`` text frame or the STL as a single binary frame.
    """
    if settings.api_key and websocket.headers.get("x-api-key") != settings.api_key:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    frame = await websocket.receive()
    if frame["type"] == "websocket.disconnect":
        return

    try:
        raw = frame.get("text")
        if raw is None:
            raise ValueError("expected a JSON text frame")
        message = CompileRequestMessage.model_validate(json.loads(raw))
    except (ValidationError, ValueError) as exc:
        await websocket.send_json({"type": "error", "message": f"Invalid compile request: {exc}"})
        await websocket.close()
        return

    try:
        async with aclosing(channel.request(message.source_text, message.overrides)) as replies:
            async for reply in replies:
                if isinstance(reply, ResultMessage):
                    await websocket.send_bytes(reply.artifact)
                else:
                    await websocket.send_json(reply.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info("compile_socket_disconnected")
        return
    except ScadCustomizerError as exc:
        logger.error("compile_socket_channel_failed error=%s", exc)
        await websocket.close(code=1011, reason=str(exc)[:120])
        return

    await websocket.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "scad_customizer.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=bool(int(os.getenv("UVICORN_RELOAD", "0"))),
    )
