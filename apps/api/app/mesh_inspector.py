"""Mesh sanity checks using trimesh.

Uploaded meshes are loaded once before they are handed to the slicer or the
remote print service, so a truncated or non-mesh upload is rejected as a
client error instead of surfacing as an opaque slicer failure.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import trimesh

logger = logging.getLogger(__name__)

MESH_EXTENSIONS = {".stl", ".obj", ".3mf", ".ply", ".off"}


class MeshInspectionError(Exception):
    """Raised when a file cannot be read as a non-empty mesh."""
    pass


@dataclass
class MeshSummary:
    vertex_count: int
    face_count: int
    bounds: List[List[float]]
    watertight: bool

    @property
    def size(self) -> List[float]:
        return [hi - lo for lo, hi in zip(self.bounds[0], self.bounds[1])]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vertex_count": self.vertex_count,
            "face_count": self.face_count,
            "bounds": self.bounds,
            "size": self.size,
            "watertight": self.watertight,
        }


def load_mesh(file_path: Path) -> trimesh.Trimesh:
    """Load a mesh file, flattening multi-body scenes into one mesh.

    Raises:
        MeshInspectionError: If loading fails or the mesh has no faces.
    """
    file_type = file_path.suffix.lower().lstrip(".") or "stl"
    if f".{file_type}" not in MESH_EXTENSIONS:
        file_type = "stl"

    try:
        mesh = trimesh.load(str(file_path), file_type=file_type, force="mesh")
    except Exception as e:
        raise MeshInspectionError(f"Failed to read mesh {file_path.name}: {e}") from e

    # Some loaders still hand back a Scene for multi-body files
    if isinstance(mesh, trimesh.Scene):
        geometries = list(mesh.geometry.values())
        if not geometries:
            raise MeshInspectionError(f"Mesh {file_path.name} contains no geometry")
        mesh = trimesh.util.concatenate(geometries)

    if not hasattr(mesh, "vertices") or len(mesh.vertices) == 0:
        raise MeshInspectionError(f"Mesh {file_path.name} contains no vertices")
    if not hasattr(mesh, "faces") or len(mesh.faces) == 0:
        raise MeshInspectionError(f"Mesh {file_path.name} contains no faces")

    return mesh


def inspect_mesh(file_path: Path) -> MeshSummary:
    """Load ``file_path`` and summarize its geometry."""
    mesh = load_mesh(file_path)
    bounds = mesh.bounds
    summary = MeshSummary(
        vertex_count=len(mesh.vertices),
        face_count=len(mesh.faces),
        bounds=[bounds[0].tolist(), bounds[1].tolist()],
        watertight=bool(mesh.is_watertight),
    )

    width, depth, height = summary.size
    logger.info(
        f"Inspected mesh {file_path.name}: {summary.vertex_count} verts, "
        f"{summary.face_count} faces, {width:.1f}x{depth:.1f}x{height:.1f}mm"
    )
    if not summary.watertight:
        logger.warning(f"Mesh {file_path.name} is not watertight; slicing may produce gaps")
    return summary
