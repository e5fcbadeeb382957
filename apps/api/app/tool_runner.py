"""Async wrapper around the external command-line tools (OpenSCAD, PrusaSlicer).

Every invocation resolves to a :class:`ToolResult`; a non-zero exit, a
timeout, runaway output or a missing artifact are reported in the result
rather than raised. Only a missing executable raises, before anything is
spawned.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shlex
import shutil
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
DIAGNOSTIC_TAIL_CHARS = 4000
KILL_DRAIN_SECONDS = 5.0


class ToolNotFoundError(Exception):
    """Raised when an external executable cannot be located."""
    pass


class OutputLimitExceeded(Exception):
    """Raised internally when a tool writes more than the capture limit."""
    pass


@dataclass
class ToolResult:
    """Outcome of one external tool invocation."""

    success: bool
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    log: Optional[str] = None
    artifact: Optional[Path] = None
    timed_out: bool = False
    diagnostic: str = ""
    duration_seconds: float = 0.0

    def details(self) -> str:
        """Human-readable failure text: the diagnostic plus the tail of stderr."""
        parts = []
        if self.diagnostic:
            parts.append(self.diagnostic)
        stderr = self.stderr.strip()
        if stderr:
            parts.append(stderr[-DIAGNOSTIC_TAIL_CHARS:])
        elif self.stdout.strip() and not self.success:
            parts.append(self.stdout.strip()[-DIAGNOSTIC_TAIL_CHARS:])
        return "\n".join(parts) or "unknown error"


def resolve_executable(executable: str) -> str:
    """Return an invocable path for ``executable`` or raise ToolNotFoundError."""
    if not executable:
        raise ToolNotFoundError("No executable configured")
    if os.path.dirname(executable):
        if os.path.isfile(executable):
            return executable
        raise ToolNotFoundError(f"Executable not found: {executable}")
    found = shutil.which(executable)
    if found:
        return found
    raise ToolNotFoundError(f"Executable not found on PATH: {executable}")


async def _read_capped(stream: Optional[asyncio.StreamReader], buffer: bytearray, limit: int) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        if len(buffer) + len(chunk) > limit:
            buffer.extend(chunk[: max(limit - len(buffer), 0)])
            raise OutputLimitExceeded()
        buffer.extend(chunk)


async def _communicate(proc: asyncio.subprocess.Process, stdout: bytearray, stderr: bytearray, limit: int) -> None:
    readers = [
        asyncio.create_task(_read_capped(proc.stdout, stdout, limit)),
        asyncio.create_task(_read_capped(proc.stderr, stderr, limit)),
    ]
    try:
        await asyncio.gather(*readers)
        await proc.wait()
    finally:
        for reader in readers:
            reader.cancel()
        # Readers must be fully stopped before the streams are drained elsewhere.
        await asyncio.gather(*readers, return_exceptions=True)


async def _drain(stream: Optional[asyncio.StreamReader]) -> None:
    if stream is None:
        return
    while await stream.read(READ_CHUNK_SIZE):
        pass


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Kill ``proc`` and its process group if still running, then reap it."""
    if proc.returncode is None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(asyncio.gather(_drain(proc.stdout), _drain(proc.stderr)), timeout=KILL_DRAIN_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"Output pipes of pid {proc.pid} still open after kill")
    await proc.wait()


class ToolRunner:
    """Runs external tools with a timeout and a bounded output buffer."""

    def __init__(self, default_timeout: float = 180.0, max_output_bytes: int = 5 * 1024 * 1024):
        self.default_timeout = default_timeout
        self.max_output_bytes = max_output_bytes

    async def run(
        self,
        executable: str,
        args: Sequence[Any],
        *,
        timeout: Optional[float] = None,
        max_output_bytes: Optional[int] = None,
        expected_output: Optional[Path] = None,
        log_path: Optional[Path] = None,
        job_logger: Optional[logging.Logger] = None,
    ) -> ToolResult:
        """Run ``executable`` with ``args`` and wait for it to finish.

        Args:
            executable: Path or PATH-resolvable name of the tool.
            args: Argument list; each item is passed as a single argv entry.
            timeout: Wall-clock limit in seconds; the process is killed on expiry.
            max_output_bytes: Capture limit per stream; exceeding it is a failure.
            expected_output: Artifact the tool must produce with non-zero size.
            log_path: When given, captured stdout/stderr are also written here
                and returned as ``ToolResult.log``.

        Raises:
            ToolNotFoundError: If the executable cannot be located.
        """
        log = job_logger or logger
        exe = resolve_executable(executable)
        argv = [exe, *(str(a) for a in args)]
        tool = Path(exe).name
        timeout = self.default_timeout if timeout is None else timeout
        limit = self.max_output_bytes if max_output_bytes is None else max_output_bytes

        log.info(f"Running command: {shlex.join(argv)}")
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            log.error(f"Failed to start {tool}: {e}")
            return ToolResult(success=False, diagnostic=f"Failed to start {tool}: {e}")

        stdout_buf = bytearray()
        stderr_buf = bytearray()
        timed_out = False
        overflowed = False

        try:
            await asyncio.wait_for(_communicate(proc, stdout_buf, stderr_buf, limit), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            await _terminate(proc)
        except OutputLimitExceeded:
            overflowed = True
            await _terminate(proc)
        except asyncio.CancelledError:
            await _terminate(proc)
            raise

        duration = time.monotonic() - started
        stdout = stdout_buf.decode("utf-8", errors="replace")
        stderr = stderr_buf.decode("utf-8", errors="replace")

        log_text = None
        if log_path is not None:
            log_text = f"STDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"
            try:
                log_path.write_text(log_text, encoding="utf-8")
            except OSError as e:
                log.warning(f"Could not write tool log {log_path}: {e}")

        result = ToolResult(
            success=False,
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            log=log_text,
            timed_out=timed_out,
            duration_seconds=duration,
        )

        if timed_out:
            result.diagnostic = f"{tool} timed out after {timeout:g}s"
        elif overflowed:
            result.diagnostic = f"{tool} output exceeded {limit} bytes"
        elif proc.returncode != 0:
            result.diagnostic = f"{tool} exited with code {proc.returncode}"
        elif expected_output is not None and not expected_output.exists():
            result.diagnostic = f"{tool} finished but output file was not created: {expected_output.name}"
        elif expected_output is not None and expected_output.stat().st_size == 0:
            result.diagnostic = f"{tool} finished but output file is empty: {expected_output.name}"
        else:
            result.success = True
            result.artifact = expected_output

        if result.success:
            log.info(f"{tool} finished in {duration:.1f}s")
        else:
            log.error(f"{result.diagnostic} ({duration:.1f}s)")
            if stderr.strip():
                log.error(f"{tool} stderr: {stderr.strip()[-DIAGNOSTIC_TAIL_CHARS:]}")
        return result


# ---------------------------------------------------------------------------
# OpenSCAD literal encoding
# ---------------------------------------------------------------------------

_SCAD_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def scad_literal(value: Any) -> str:
    """Encode a Python value as an OpenSCAD literal.

    Strings are double-quoted, lists and tuples become bracketed vectors,
    numbers stay bare, ``None`` becomes ``undef``. Order is preserved.
    """
    if value is None:
        return "undef"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Cannot encode non-finite number {value!r} for OpenSCAD")
        return repr(value)
    if isinstance(value, str):
        return '"' + "".join(_SCAD_ESCAPES.get(ch, ch) for ch in value) + '"'
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(scad_literal(v) for v in value) + "]"
    raise TypeError(f"Cannot encode {type(value).__name__} as an OpenSCAD literal")


def scad_assignment(name: str, value: Any) -> str:
    return f"{name}={scad_literal(value)}"


def scad_define(name: str, value: Any) -> List[str]:
    """Command-line ``-D`` override for one variable."""
    return ["-D", scad_assignment(name, value)]


# ---------------------------------------------------------------------------
# Argument builders
# ---------------------------------------------------------------------------

def openscad_args(
    output: Path,
    source: Path,
    defines: Optional[Sequence[str]] = None,
    debug: bool = False,
) -> List[str]:
    args: List[str] = []
    if debug:
        args.extend(["--debug", "all"])
    if defines:
        args.extend(defines)
    args.extend(["-o", str(output), str(source)])
    return args


def slicer_args(profile_paths, output: Path, mesh: Path, datadir: Optional[Path] = None) -> List[str]:
    """PrusaSlicer export arguments loading printer, filament and print profiles in order."""
    args: List[str] = []
    if datadir is not None:
        args.extend(["--datadir", str(datadir)])
    args.append("--export-gcode")
    for path in profile_paths.as_list():
        args.extend(["--load", str(path)])
    args.extend(["--output", str(output), str(mesh)])
    return args


def slicer_upload_args(toolpath: Path, printer_name: str, datadir: Optional[Path] = None) -> List[str]:
    """Arguments for the slicer's own upload-to-printer subcommand."""
    args: List[str] = []
    if datadir is not None:
        args.extend(["--datadir", str(datadir)])
    args.extend(["--upload", str(toolpath), "--printer", printer_name])
    return args
