"""PrusaSlicer profile registry.

Profiles live as flat ``key = value`` INI files in one subdirectory per kind::

    <root>/printer/ORIGINAL_PRUSA_MK4.ini
    <root>/filament/Prusament PLA.ini
    <root>/print/0.15mm SPEED.ini

The registry never caches: every lookup rereads the directory so operators
can edit profiles without restarting the service.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PROFILE_KINDS = ("printer", "filament", "print")
PROFILE_EXTENSION = ".ini"

NAME_RE = re.compile(r"^\s*name\s*=\s*(.+?)\s*$", re.MULTILINE)

# Built-in profiles written on first start when the printer directory is empty.
DEFAULT_PROFILES: Dict[str, Dict[str, str]] = {
    "printer": {
        "ORIGINAL_PRUSA_MK4": """
[printer_settings]
name = Original Prusa MK4
bed_shape = 0x0,250x0,250x210,0x210
max_print_height = 220
nozzle_diameter = 0.4
""",
    },
    "filament": {
        "Prusament PLA": """
[filament_settings]
name = Prusament PLA
temperature = 215
bed_temperature = 60
""",
    },
    "print": {
        "0.15mm SPEED": """
[print_settings]
name = 0.15mm SPEED
layer_height = 0.15
perimeters = 3
top_solid_layers = 5
bottom_solid_layers = 5
fill_density = 15%
""",
    },
}

OPENSCAD_NAMES = ["openscad", "openscad-nightly", "openscad.com", "openscad.exe"]
OPENSCAD_DIRS = [
    "C:\\Program Files\\OpenSCAD",
    "C:\\Program Files (x86)\\OpenSCAD",
    "/Applications/OpenSCAD.app/Contents/MacOS",
    "/usr/local/bin",
    "/usr/bin",
    "/snap/bin",
]

# Console build first: the GUI binary on Windows detaches from stdout.
SLICER_NAMES = [
    "prusa-slicer-console.exe",
    "PrusaSlicer.exe",
    "prusa-slicer",
    "PrusaSlicer",
    "prusa-slicer-console",
]
SLICER_DIRS = [
    "C:\\Program Files\\Prusa3D\\PrusaSlicer",
    "C:\\Program Files\\PrusaSlicer",
    "C:\\Program Files (x86)\\Prusa3D\\PrusaSlicer",
    "/Applications/PrusaSlicer.app/Contents/MacOS",
    "/usr/local/bin",
    "/usr/bin",
    "/opt/prusaslicer",
]


class ProfileError(Exception):
    """Raised for invalid profile lookups."""
    pass


@dataclass
class Profile:
    id: str
    name: str
    kind: str
    path: Path

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass
class ProfilePaths:
    """Resolved INI paths handed to the slicer as ``--load`` arguments."""
    printer: Path
    filament: Path
    print: Path

    def as_list(self) -> List[Path]:
        return [self.printer, self.filament, self.print]

    def missing(self) -> List[Path]:
        return [p for p in self.as_list() if not p.is_file()]


class ProfileRegistry:
    """Read-only view over the profile directory tree."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def kind_dir(self, kind: str) -> Path:
        if kind not in PROFILE_KINDS:
            raise ProfileError(f"Unknown profile kind: {kind}")
        return self.root / kind

    def list_profiles(self, kind: str) -> List[Profile]:
        """List every profile of ``kind`` with its display name."""
        kind_dir = self.kind_dir(kind)
        if not kind_dir.is_dir():
            return []

        profiles = []
        for path in sorted(kind_dir.iterdir()):
            if not path.is_file() or path.suffix != PROFILE_EXTENSION:
                continue
            profile_id = path.stem
            content = path.read_text(encoding="utf-8", errors="replace")
            match = NAME_RE.search(content)
            name = match.group(1) if match else profile_id
            profiles.append(Profile(id=profile_id, name=name, kind=kind, path=path))
        return profiles

    def profile_path(self, kind: str, profile_id: str) -> Path:
        return self.kind_dir(kind) / f"{profile_id}{PROFILE_EXTENSION}"

    def resolve_profile_paths(self, printer_id: str, filament_id: str, print_id: str) -> ProfilePaths:
        """Build the three profile paths. Existence is left for the slicer to report."""
        return ProfilePaths(
            printer=self.profile_path("printer", printer_id),
            filament=self.profile_path("filament", filament_id),
            print=self.profile_path("print", print_id),
        )

    def seed_defaults(self) -> bool:
        """Write the built-in profiles if no printer profile exists yet.

        Returns:
            True when defaults were written, False when the tree was already populated.
        """
        for kind in PROFILE_KINDS:
            self.kind_dir(kind).mkdir(parents=True, exist_ok=True)

        printer_dir = self.kind_dir("printer")
        if any(p.suffix == PROFILE_EXTENSION for p in printer_dir.iterdir()):
            logger.info("PrusaSlicer config already initialized")
            return False

        logger.info(f"Initializing PrusaSlicer config in {self.root}")
        for kind, entries in DEFAULT_PROFILES.items():
            for profile_id, body in entries.items():
                self.profile_path(kind, profile_id).write_text(body.lstrip("\n"), encoding="utf-8")

        logger.info("PrusaSlicer config initialized with default profiles")
        return True


def locate_executable(
    candidate_names: Iterable[str],
    candidate_dirs: Iterable[str],
    override_env: Optional[str] = None,
) -> Optional[str]:
    """Find an installed executable.

    Search order: the directory named by ``override_env``, then each of
    ``candidate_dirs`` (every name is tried in each directory), then the
    ``PATH`` lookup for each name.

    Returns:
        The first existing path, or None when nothing was found.
    """
    names = list(candidate_names)
    dirs = list(candidate_dirs)

    if override_env:
        override = os.getenv(override_env)
        if override:
            dirs.insert(0, override)

    for directory in dirs:
        for name in names:
            candidate = os.path.join(directory, name)
            if os.path.isfile(candidate):
                return candidate

    for name in names:
        found = shutil.which(name)
        if found:
            return found

    return None
