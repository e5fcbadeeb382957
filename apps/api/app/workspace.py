"""Scratch directory management for conversion jobs.

Every job gets a random hex id that prefixes all of its temporary files, so
concurrent jobs never share a path. Job files are deleted shortly after the
job ends; an hourly sweep removes anything a crashed job left behind.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from pathlib import Path
from typing import Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

JOB_ID_BYTES = 8
_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def new_job_id() -> str:
    """Return a random 16-character hex token."""
    return secrets.token_hex(JOB_ID_BYTES)


def setup_job_logging(job_id: str, log_dir: Optional[Path] = None) -> logging.Logger:
    """Setup logger for a conversion job, optionally mirrored to a file."""
    job_logger = logging.getLogger(f"job.{job_id}")
    job_logger.setLevel(logging.INFO)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / f"job_{job_id}.log")
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        job_logger.addHandler(handler)

    return job_logger


def close_job_logging(job_logger: logging.Logger) -> None:
    for handler in list(job_logger.handlers):
        job_logger.removeHandler(handler)
        handler.close()


def sanitize_filename(filename: Optional[str], default: str = "upload") -> str:
    name = Path(filename or "").name
    name = _UNSAFE_FILENAME_RE.sub("_", name).strip("._")
    return name[:100] or default


class Job:
    """One request's unit of temp-file ownership."""

    def __init__(self, workspace: "Workspace", job_id: Optional[str] = None):
        self.workspace = workspace
        self.id = job_id or new_job_id()
        self.paths: List[Path] = []
        self.logger = setup_job_logging(self.id, workspace.job_log_dir)

    def path(self, suffix: str) -> Path:
        """Allocate and register a temp path for this job."""
        return self.register(self.workspace.temp_path(self.id, suffix))

    def register(self, path: Path) -> Path:
        path = Path(path)
        if path not in self.paths:
            self.paths.append(path)
        return path

    async def __aenter__(self) -> "Job":
        self.logger.info(f"Job {self.id} started")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self.logger.info(f"Job {self.id} ended with {exc_type.__name__}: {exc}")
        else:
            self.logger.info(f"Job {self.id} finished")
        self.workspace.schedule_cleanup(list(self.paths))
        close_job_logging(self.logger)


class Workspace:
    """Scratch directory shared by all jobs, disjoint by job-id prefix."""

    def __init__(self, root: Path, cleanup_delay: float = 1.0, job_log_dir: Optional[Path] = None):
        self.root = Path(root).resolve()
        self.cleanup_delay = cleanup_delay
        self.job_log_dir = job_log_dir
        self._pending: Set[asyncio.Task] = set()

    def ensure(self) -> None:
        if not self.root.exists():
            logger.info(f"Temp directory not found, creating at: {self.root}")
        self.root.mkdir(parents=True, exist_ok=True)

    def job(self, job_id: Optional[str] = None) -> Job:
        return Job(self, job_id)

    def temp_path(self, job_id: str, suffix: str) -> Path:
        return self.root / f"{job_id}{suffix}"

    def save_upload(self, job: Job, content: bytes, filename: Optional[str]) -> Path:
        """Persist uploaded bytes as ``<job_id>-<name>`` and register the path."""
        path = job.path(f"-{sanitize_filename(filename)}")
        path.write_bytes(content)
        job.logger.info(f"Saved upload {filename!r} to {path.name} ({len(content)} bytes)")
        return path

    def cleanup(self, paths: Iterable[Path]) -> int:
        """Delete every path that still exists. Failures are logged, never raised."""
        removed = 0
        for path in paths:
            try:
                if path.exists():
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.error(f"Error deleting file {path}: {e}")
        if removed:
            logger.debug(f"Cleaned up {removed} temp file(s)")
        return removed

    async def _delayed_cleanup(self, paths: List[Path]) -> None:
        if self.cleanup_delay > 0:
            await asyncio.sleep(self.cleanup_delay)
        await asyncio.to_thread(self.cleanup, paths)

    def schedule_cleanup(self, paths: List[Path]) -> Optional[asyncio.Task]:
        """Delete ``paths`` in the background after ``cleanup_delay`` seconds."""
        if not paths:
            return None
        task = asyncio.get_running_loop().create_task(self._delayed_cleanup(paths))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for all scheduled cleanups to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def reap_stale(self, max_age_seconds: float) -> int:
        """Delete files in the scratch root older than ``max_age_seconds``."""
        if not self.root.is_dir():
            return 0

        now = time.time()
        removed = 0
        for path in self.root.iterdir():
            try:
                if not path.is_file():
                    continue
                if now - path.stat().st_mtime > max_age_seconds:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.error(f"Error reaping temp file {path}: {e}")

        if removed:
            logger.info(f"Reaped {removed} stale temp file(s) from {self.root}")
        return removed

    async def run_reaper(self, interval: float, max_age_seconds: float) -> None:
        """Sweep the scratch root every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.reap_stale, max_age_seconds)
            except Exception as e:
                logger.error(f"Error sweeping temp directory: {e}")
