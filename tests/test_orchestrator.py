from __future__ import annotations

import asyncio
import json

import pytest

from scad_customizer.core.engine import EngineLoader, classify_stderr
from scad_customizer.core.errors import ArtifactMissingError, DependencyListingError, EngineLoadError
from scad_customizer.core.orchestrator import CompileOrchestrator, build_arguments
from scad_customizer.schemas import LogLevel, ParameterOverride, ParameterType

from .conftest import write_fake_engine


@pytest.fixture
def orchestrator(engine_loader, make_dependency_cache):
    return CompileOrchestrator(engine_loader, make_dependency_cache())


def _compile(orchestrator, source, overrides=None, log=None):
    kwargs = {"log": log} if log is not None else {}
    return asyncio.run(orchestrator.compile(source, overrides, **kwargs))


def test_build_arguments_serializes_overrides():
    overrides = [
        ParameterOverride(name="tamanho", value=55),
        ParameterOverride(name="espessura", value=2.5),
        ParameterOverride(name="formato", value="redondo", type=ParameterType.string),
        ParameterOverride(name="tampa", value=False, type=ParameterType.bool),
    ]
    assert build_arguments(overrides) == [
        "input.scad", "-o", "output.stl",
        "-D", "tamanho=55",
        "-D", "espessura=2.5",
        "-D", 'formato="redondo"',
        "-D", "tampa=false",
    ]


def test_build_arguments_without_overrides():
    assert build_arguments([]) == ["input.scad", "-o", "output.stl"]


def test_compile_returns_artifact_and_streams_log(orchestrator, log_collector, library_server):
    overrides = [ParameterOverride(name="tamanho", value=55)]
    artifact = _compile(orchestrator, "cube(tamanho);", overrides, log_collector)

    produced = json.loads(artifact.data)
    assert produced["args"] == ["input.scad", "-o", "output.stl", "-D", "tamanho=55"]
    assert produced["source"] == "cube(tamanho);"
    assert artifact.exit_code == 0
    assert artifact.overrides_applied == ["tamanho=55"]
    assert artifact.size == len(artifact.data)

    texts = log_collector.texts()
    assert texts[0] == "Loading OpenSCAD engine..."
    assert texts.index("Compiling...") < texts.index("ECHO: fake engine started")
    assert "Parameter override: tamanho=55" in texts
    assert log_collector.texts("success")[-1].startswith("Compilation finished: STL ")
    # No library reference, no network.
    assert library_server.listing_calls == 0


def test_nonzero_exit_with_artifact_is_success(orchestrator, log_collector):
    artifact = _compile(orchestrator, "cube(1); // fake:exit-1", log=log_collector)
    assert artifact.exit_code == 1
    assert json.loads(artifact.data)["source"].startswith("cube(1);")
    warnings = log_collector.texts("warning")
    assert "WARNING: something non-fatal happened" in warnings
    assert "OpenSCAD exited with status 1." in warnings


def test_zero_exit_without_artifact_is_failure(orchestrator, log_collector):
    with pytest.raises(ArtifactMissingError, match="Output STL was not generated"):
        _compile(orchestrator, "// fake:no-output", log=log_collector)
    assert "WARNING: Current top level object is empty." in log_collector.texts("warning")


def test_engine_failure_output_is_logged_as_error(orchestrator, library_server, log_collector):
    # Every library body fails to download, so nothing is staged.
    library_server.failing_paths.update({"std.scad", "shapes3d.scad", "gears.scad"})
    with pytest.raises(ArtifactMissingError):
        _compile(orchestrator, "include <BOSL2/std.scad>\ncuboid(10);", log=log_collector)
    assert "ERROR: Can't open include file 'BOSL2/std.scad'." in log_collector.texts("error")


def test_library_is_resolved_and_staged(orchestrator, library_server, log_collector):
    artifact = _compile(orchestrator, "include <BOSL2/std.scad>\ncuboid(10);", log=log_collector)
    assert json.loads(artifact.data)["source"].startswith("include <BOSL2/std.scad>")
    assert "ECHO: BOSL2 found" in log_collector.texts()
    assert library_server.listing_calls == 1


def test_library_resolution_is_reused_across_compiles(orchestrator, library_server):
    source = "include <BOSL2/std.scad>\ncuboid(10);"

    async def scenario():
        await orchestrator.compile(source)
        await orchestrator.compile(source)

    asyncio.run(scenario())
    assert library_server.listing_calls == 1
    assert library_server.file_calls == 3


def test_listing_failure_fails_the_compile(orchestrator, library_server):
    library_server.listing_status = 503
    with pytest.raises(DependencyListingError):
        _compile(orchestrator, "use <BOSL2/gears.scad>\nspur_gear();")


def test_workspaces_are_removed_after_each_compile(orchestrator, workspace_root):
    async def scenario():
        await orchestrator.compile("cube(1);")
        await orchestrator.compile("// fake:no-output")

    with pytest.raises(ArtifactMissingError):
        asyncio.run(scenario())
    assert list(workspace_root.iterdir()) == []


def test_each_compile_gets_a_fresh_instance(engine_loader):
    async def scenario():
        factory = await engine_loader.get()
        with factory.create_instance() as first, factory.create_instance() as second:
            first.write_file("input.scad", "cube(1);")
            assert first.workdir != second.workdir
            assert second.read_file("input.scad") is None

    asyncio.run(scenario())


def test_engine_is_loaded_once(engine_loader, make_dependency_cache, log_collector):
    orchestrator = CompileOrchestrator(engine_loader, make_dependency_cache())

    async def scenario():
        await orchestrator.compile("cube(1);", log=log_collector)
        await orchestrator.compile("cube(2);", log=log_collector)

    asyncio.run(scenario())
    assert log_collector.texts().count("Loading OpenSCAD engine...") == 1
    assert engine_loader.loaded.version == "OpenSCAD version 2021.01"


def test_engine_load_failure_is_retried_on_next_request(tmp_path, make_dependency_cache, log_collector):
    bin_dir = tmp_path / "late-bin"
    loader = EngineLoader(executable=bin_dir / "openscad", workspace_root=tmp_path / "ws", timeout=30)
    orchestrator = CompileOrchestrator(loader, make_dependency_cache())

    with pytest.raises(EngineLoadError):
        _compile(orchestrator, "cube(1);", log=log_collector)
    assert log_collector.texts("error")[0].startswith("Error loading OpenSCAD engine: ")
    assert loader.loaded is None

    write_fake_engine(bin_dir)
    artifact = _compile(orchestrator, "cube(1);")
    assert artifact.exit_code == 0
    assert loader.loaded is not None


def test_engine_timeout_kills_the_process(fake_engine, workspace_root, make_dependency_cache, log_collector):
    loader = EngineLoader(executable=fake_engine, workspace_root=workspace_root, timeout=1)
    orchestrator = CompileOrchestrator(loader, make_dependency_cache())
    with pytest.raises(ArtifactMissingError):
        _compile(orchestrator, "cube(1); // fake:sleep", log=log_collector)
    assert "Engine timed out after 1s and was stopped." in log_collector.texts("error")


@pytest.mark.parametrize(
    "line,level",
    [
        ("ERROR: Parser error in file input.scad, line 3", LogLevel.error),
        ("TRACE: called by 'cuboid'", LogLevel.error),
        ("WARNING: Ignoring unknown variable 'x'", LogLevel.warning),
        ("DEPRECATED: child() will be removed", LogLevel.warning),
        ("Geometries in cache: 3", LogLevel.info),
        ("Compiling design (CSG Products normalization)...", LogLevel.info),
    ],
)
def test_classify_stderr(line, level):
    assert classify_stderr(line) == level
