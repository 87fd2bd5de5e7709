from __future__ import annotations

import os
import shutil
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.dependency_cache import DEFAULT_FILE_URL, DEFAULT_LISTING_URL


SERVICE_ROOT = Path(__file__).resolve().parents[1]

load_dotenv(SERVICE_ROOT / ".env", override=False)


def _default_openscad_executable() -> Path:
    candidates: list[str] = [
        os.getenv("SCAD_OPENSCAD_EXECUTABLE", "").strip(),
        os.getenv("OPENSCAD_PATH", "").strip(),
        os.getenv("OPENSCAD_EXEC", "").strip(),
        shutil.which("openscad") or "",
        shutil.which("openscad-nightly") or "",
        "/usr/bin/openscad",
        "/usr/local/bin/openscad",
        "/Applications/OpenSCAD.app/Contents/MacOS/OpenSCAD",
    ]
    for candidate in candidates:
        if not candidate:
            continue
        path = Path(candidate).expanduser()
        if path.exists():
            return path
    return Path("/usr/bin/openscad")


class ScadCustomizerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SCAD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "scad-customizer-service"
    host: str = "0.0.0.0"
    port: int = 8110
    log_level: str = "INFO"

    # Engine
    openscad_executable: Path = Field(default_factory=_default_openscad_executable)
    engine_timeout_seconds: int = Field(default=300, ge=5, le=3600)
    engine_probe_timeout_seconds: int = Field(default=60, ge=1, le=600)
    keep_workspaces: bool = False

    # External library (BOSL2)
    library_name: str = "BOSL2"
    library_repo: str = "BelfrySCAD/BOSL2"
    library_version: str = "master"
    library_listing_url: str = DEFAULT_LISTING_URL
    library_file_url: str = DEFAULT_FILE_URL
    library_file_suffix: str = ".scad"
    dependency_batch_size: int = Field(default=8, ge=1, le=64)
    http_timeout_seconds: float = Field(default=60.0, ge=1.0, le=600.0)

    # Storage
    storage_dir: Path = Field(default_factory=lambda: SERVICE_ROOT / "data")
    workspaces_subdir: str = "workspaces"
    artifacts_subdir: str = "artifacts"

    # Concurrency (one compile in flight by default)
    max_concurrent_jobs: int = Field(default=1, ge=1, le=16)
    max_queue_size: int = Field(default=32, ge=1, le=10000)
    sync_wait_timeout_seconds: int = Field(default=600, ge=10, le=3600)

    # Job lifecycle
    finished_job_ttl_seconds: int = Field(default=1800, ge=60, le=86400)
    cleanup_interval_seconds: int = Field(default=30, ge=5, le=3600)
    max_job_records: int = Field(default=500, ge=10, le=200000)

    # Auth
    api_key: str | None = None

    @field_validator("openscad_executable", mode="after")
    @classmethod
    def _resolve_openscad(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @property
    def workspaces_dir(self) -> Path:
        return self.storage_dir / self.workspaces_subdir

    @property
    def artifacts_dir(self) -> Path:
        return self.storage_dir / self.artifacts_subdir


settings = ScadCustomizerSettings()
