"""Service configuration read from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


APP_DIR = Path(__file__).resolve().parent

DEFAULT_PRINTER_PROFILE = "ORIGINAL_PRUSA_MK4"
DEFAULT_FILAMENT_PROFILE = "Prusament PLA"
DEFAULT_PRINT_PROFILE = "0.15mm SPEED"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 3000
    scratch_dir: Path = APP_DIR / "temp"
    profile_dir: Path = APP_DIR / "prusaslicer-config"
    template_dir: Path = APP_DIR / "templates"
    openscad_path: Optional[str] = None
    slicer_path: Optional[str] = None
    openscad_timeout: float = 180.0
    slicer_timeout: float = 300.0
    max_output_bytes: int = 5 * 1024 * 1024
    cleanup_delay: float = 1.0
    reap_interval: float = 3600.0
    reap_max_age: float = 3600.0
    prusa_connect_url: str = "https://connect.prusa3d.com/app"
    prusa_connect_token: Optional[str] = None
    job_log_dir: Optional[Path] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build settings from the current environment."""
    job_log_dir = os.getenv("JOB_LOG_DIR")
    cors = os.getenv("CORS_ORIGINS", "*")

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_env_int("PORT", 3000),
        scratch_dir=_env_path("SCRATCH_DIR", APP_DIR / "temp"),
        profile_dir=_env_path("PROFILE_DIR", APP_DIR / "prusaslicer-config"),
        template_dir=_env_path("SCAD_TEMPLATE_DIR", APP_DIR / "templates"),
        openscad_path=os.getenv("OPENSCAD_PATH") or None,
        slicer_path=os.getenv("SLICER_PATH") or None,
        openscad_timeout=_env_float("OPENSCAD_TIMEOUT_SECONDS", 180.0),
        slicer_timeout=_env_float("SLICER_TIMEOUT_SECONDS", 300.0),
        max_output_bytes=_env_int("TOOL_MAX_OUTPUT_BYTES", 5 * 1024 * 1024),
        cleanup_delay=_env_float("CLEANUP_DELAY_SECONDS", 1.0),
        reap_interval=_env_float("REAP_INTERVAL_SECONDS", 3600.0),
        reap_max_age=_env_float("REAP_MAX_AGE_SECONDS", 3600.0),
        prusa_connect_url=os.getenv("PRUSA_CONNECT_URL", "https://connect.prusa3d.com/app"),
        prusa_connect_token=os.getenv("PRUSA_CONNECT_TOKEN") or None,
        job_log_dir=Path(job_log_dir) if job_log_dir else None,
        cors_origins=[o.strip() for o in cors.split(",") if o.strip()] or ["*"],
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
