"""Shared fixtures: stub OpenSCAD / PrusaSlicer executables and a small mesh."""

import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from config import Settings
from pipeline import ConversionPipeline
from profiles import ProfileRegistry
from tool_runner import ToolRunner
from workspace import Workspace

# Closed tetrahedron, 10mm legs
TETRA_STL = """solid tetra
facet normal 0 0 -1
 outer loop
  vertex 0 0 0
  vertex 0 10 0
  vertex 10 0 0
 endloop
endfacet
facet normal 0 -1 0
 outer loop
  vertex 0 0 0
  vertex 10 0 0
  vertex 0 0 10
 endloop
endfacet
facet normal -1 0 0
 outer loop
  vertex 0 0 0
  vertex 0 0 10
  vertex 0 10 0
 endloop
endfacet
facet normal 0.577 0.577 0.577
 outer loop
  vertex 10 0 0
  vertex 0 10 0
  vertex 0 0 10
 endloop
endfacet
endsolid tetra
"""


def write_stub(path: Path, body: str) -> Path:
    """Write an executable Python script run by the current interpreter."""
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


OPENSCAD_STUB = f'''
import sys

args = sys.argv[1:]
out = args[args.index("-o") + 1]
source = open(args[-1]).read()
defines = [args[i + 1] for i, a in enumerate(args) if a == "-D"]

print("Compiling " + args[-1])
if "FAIL" in source or any("FAIL" in d for d in defines):
    sys.stderr.write("ERROR: Parser error in file, line 1: syntax error\\n")
    sys.exit(1)
if "EMPTY" in source:
    open(out, "w").close()
    sys.exit(0)
for d in defines:
    sys.stderr.write("define " + d + "\\n")
with open(out, "w") as f:
    f.write({TETRA_STL!r})
'''

SLICER_STUB = '''
import os, sys

args = sys.argv[1:]
if "--upload" in args:
    toolpath = args[args.index("--upload") + 1]
    printer = args[args.index("--printer") + 1]
    if printer == "consume":
        os.remove(toolpath)
        sys.exit(0)
    if printer == "broken":
        sys.stderr.write("Upload failed\\n")
        sys.exit(2)
    sys.exit(0)

loads = [args[i + 1] for i, a in enumerate(args) if a == "--load"]
for path in loads:
    if not os.path.isfile(path):
        sys.stderr.write("Failed loading the input file: " + path + "\\n")
        sys.exit(1)
out = args[args.index("--output") + 1]
with open(out, "w") as f:
    for path in loads:
        f.write("; load " + os.path.basename(path) + "\\n")
    f.write("G28\\nG1 X10 Y10 Z0.2\\n")
'''


@pytest.fixture
def stl_file(tmp_path):
    path = tmp_path / "tetra.stl"
    path.write_text(TETRA_STL)
    return path


@pytest.fixture
def openscad_stub(tmp_path):
    return write_stub(tmp_path / "openscad", OPENSCAD_STUB)


@pytest.fixture
def slicer_stub(tmp_path):
    return write_stub(tmp_path / "prusa-slicer", SLICER_STUB)


@pytest.fixture
def settings(tmp_path, openscad_stub, slicer_stub):
    return Settings(
        scratch_dir=tmp_path / "scratch",
        profile_dir=tmp_path / "profiles",
        openscad_path=str(openscad_stub),
        slicer_path=str(slicer_stub),
        openscad_timeout=30.0,
        slicer_timeout=30.0,
        cleanup_delay=0.0,
    )


@pytest.fixture
def pipeline(settings):
    workspace = Workspace(settings.scratch_dir, settings.cleanup_delay)
    workspace.ensure()
    registry = ProfileRegistry(settings.profile_dir)
    registry.seed_defaults()
    runner = ToolRunner(default_timeout=30.0, max_output_bytes=settings.max_output_bytes)
    return ConversionPipeline(workspace, registry, runner, settings)


@pytest.fixture
def app_env(tmp_path, monkeypatch, openscad_stub, slicer_stub):
    """Environment for the FastAPI app; returns the scratch directory."""
    scratch = tmp_path / "scratch"
    monkeypatch.setenv("SCRATCH_DIR", str(scratch))
    monkeypatch.setenv("PROFILE_DIR", str(tmp_path / "profiles"))
    monkeypatch.setenv("OPENSCAD_PATH", str(openscad_stub))
    monkeypatch.setenv("SLICER_PATH", str(slicer_stub))
    monkeypatch.setenv("CLEANUP_DELAY_SECONDS", "0")
    monkeypatch.delenv("PRUSA_CONNECT_TOKEN", raising=False)
    monkeypatch.delenv("JOB_LOG_DIR", raising=False)
    return scratch


def scratch_files(scratch: Path):
    return sorted(p.name for p in scratch.iterdir()) if scratch.exists() else []


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
