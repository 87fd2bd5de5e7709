from __future__ import annotations

import hashlib
import re
from pathlib import Path


_SAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]+")


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_name(name: str, fallback: str = "file") -> str:
    value = _SAFE_NAME_RE.sub("_", (name or "").strip()).strip("._")
    return value or fallback


def format_size(num_bytes: int) -> str:
    """Human readable size: ``512 B``, ``12.3 KB``, ``4.0 MB``."""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"
