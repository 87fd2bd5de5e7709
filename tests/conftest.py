from __future__ import annotations

import os
import stat
import sys
import tempfile
from pathlib import Path
from typing import Callable

import httpx
import pytest

# ---------------------------------------------------------------------------
# Fake OpenSCAD CLI. Behaviour is selected by marker comments in the source:
#   // fake:no-output   exit 0 without writing the STL
#   // fake:exit-1      write the STL, then exit 1
#   // fake:sleep       hang before writing anything
# ---------------------------------------------------------------------------

FAKE_ENGINE_SOURCE = '''
import json
import os
import sys
import time

args = sys.argv[1:]
if args == ["--version"]:
    sys.stderr.write("OpenSCAD version 2021.01\\n")
    sys.exit(0)

input_path = args[0]
output_path = args[args.index("-o") + 1]
defines = [args[i + 1] for i, a in enumerate(args) if a == "-D"]
with open(input_path, encoding="utf-8") as f:
    source = f.read()

print("ECHO: fake engine started", flush=True)
for d in defines:
    sys.stderr.write("Parameter override: %s\\n" % d)
sys.stderr.flush()

if "include <BOSL2/" in source or "use <BOSL2/" in source:
    lib = os.path.join(os.environ.get("OPENSCADPATH", ""), "BOSL2", "std.scad")
    if not os.path.isfile(lib):
        sys.stderr.write("ERROR: Can't open include file 'BOSL2/std.scad'.\\n")
        sys.exit(1)
    print("ECHO: BOSL2 found", flush=True)

if "// fake:sleep" in source:
    time.sleep(30)

if "// fake:no-output" in source:
    sys.stderr.write("WARNING: Current top level object is empty.\\n")
    sys.exit(0)

with open(output_path, "w", encoding="utf-8") as out:
    json.dump({"args": args, "defines": defines, "source": source}, out)

if "// fake:exit-1" in source:
    sys.stderr.write("WARNING: something non-fatal happened\\n")
    sys.exit(1)
sys.exit(0)
'''


def write_fake_engine(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / "fake_openscad.py"
    script.write_text(FAKE_ENGINE_SOURCE, encoding="utf-8")
    wrapper = directory / "openscad"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding="utf-8")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


# The app module builds its services from settings at import time, so the
# environment has to point at the fake engine before any test imports it.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="scad_customizer_tests_"))
os.environ["SCAD_OPENSCAD_EXECUTABLE"] = str(write_fake_engine(_SESSION_DIR / "bin"))
os.environ["SCAD_STORAGE_DIR"] = str(_SESSION_DIR / "data")
os.environ.pop("SCAD_API_KEY", None)


@pytest.fixture
def fake_engine(tmp_path: Path) -> Path:
    return write_fake_engine(tmp_path / "bin")


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def engine_loader(fake_engine: Path, workspace_root: Path):
    from scad_customizer.core.engine import EngineLoader

    return EngineLoader(executable=fake_engine, workspace_root=workspace_root, timeout=30)


BOSL2_FILES = {
    "std.scad": b"include <BOSL2/shapes3d.scad>\n",
    "shapes3d.scad": b"module cuboid(size) { cube(size, center=true); }\n",
    "gears.scad": b"module spur_gear() {}\n",
}


class FakeLibraryServer:
    """In-memory listing + file endpoints for httpx.MockTransport."""

    def __init__(self, files: dict[str, bytes] | None = None, extra_listing: list[str] | None = None):
        self.files = dict(BOSL2_FILES if files is None else files)
        self.extra_listing = extra_listing or ["README.md", "tutorials/intro.md"]
        self.listing_status = 200
        self.failing_paths: set[str] = set()
        self.listing_calls = 0
        self.file_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "data.jsdelivr.com":
            self.listing_calls += 1
            if self.listing_status != 200:
                return httpx.Response(self.listing_status, json={"message": "not found"})
            names = sorted(self.files) + self.extra_listing
            return httpx.Response(
                200,
                json={"type": "gh", "files": [{"type": "file", "name": f"/{n}", "size": 1} for n in names]},
            )

        self.file_calls += 1
        path = request.url.path.split("@", 1)[1].split("/", 1)[1]
        if path in self.failing_paths or path not in self.files:
            return httpx.Response(500, text="upstream error")
        return httpx.Response(200, content=self.files[path])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def library_server() -> FakeLibraryServer:
    return FakeLibraryServer()


@pytest.fixture
def make_dependency_cache(library_server: FakeLibraryServer) -> Callable[..., object]:
    from scad_customizer.core.dependency_cache import DependencyCache

    def _make(**kwargs):
        kwargs.setdefault("batch_size", 2)
        return DependencyCache(transport=library_server.transport, **kwargs)

    return _make


class LogCollector:
    def __init__(self):
        self.entries: list[tuple[str, str]] = []

    def __call__(self, text, level="info") -> None:
        self.entries.append((text, getattr(level, "value", level)))

    def texts(self, level: str | None = None) -> list[str]:
        return [t for t, lv in self.entries if level is None or lv == level]


@pytest.fixture
def log_collector() -> LogCollector:
    return LogCollector()
