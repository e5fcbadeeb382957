"""Render a shaded isometric preview image of a mesh.

The mesh is rotated 45° around Z and projected with the same oblique
cabinet-style projection used for G-code previews, then its triangles are
painted back-to-front with flat Lambert shading. No OpenGL or display server
is needed, so previews work on headless hosts where ``openscad --render``
to PNG would not.
"""

import base64
import io
import logging
from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image, ImageDraw

from mesh_inspector import load_mesh

logger = logging.getLogger(__name__)

DEFAULT_MODEL_COLOR = (59, 130, 246)  # Blue
DEFAULT_BACKGROUND = (26, 26, 26)
AMBIENT = 0.35
MAX_FACES = 150_000

COS45 = 0.7071
SIN45 = 0.7071

# Light from upper-left, slightly in front of the viewer (rotated frame).
_LIGHT = np.array([-0.35, -0.75, 0.55])
LIGHT_DIR = _LIGHT / np.linalg.norm(_LIGHT)


def _project(vertices: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Rotate around Z and project; returns (screen_x, screen_y, rotated_y, z)."""
    lo = vertices.min(axis=0)
    hi = vertices.max(axis=0)
    cx = (lo[0] + hi[0]) / 2
    cy = (lo[1] + hi[1]) / 2

    rx = vertices[:, 0] - cx
    ry = vertices[:, 1] - cy
    gz = vertices[:, 2] - lo[2]

    rx2 = rx * COS45 - ry * SIN45
    ry2 = rx * SIN45 + ry * COS45

    sx = rx2
    sy = -(ry2 * 0.5 + gz)
    return sx, sy, ry2, gz


def render_mesh_preview(
    mesh_path: Path,
    image_size: int = 512,
    model_color: Tuple[int, int, int] = DEFAULT_MODEL_COLOR,
    background_color: Tuple[int, int, int] = DEFAULT_BACKGROUND,
) -> Image.Image:
    """Render an isometric preview of a mesh file.

    Args:
        mesh_path: Path to an STL (or other trimesh-readable) file
        image_size: Width and height of the square output image
        model_color: Base RGB colour, darkened per face by its shading
        background_color: RGB background colour

    Returns:
        PIL Image of the shaded model

    Raises:
        MeshInspectionError: If the mesh cannot be loaded
    """
    mesh = load_mesh(mesh_path)
    vertices = np.asarray(mesh.vertices, dtype=float)
    faces = np.asarray(mesh.faces)
    normals = np.asarray(mesh.face_normals, dtype=float)

    if len(faces) > MAX_FACES:
        step = len(faces) // MAX_FACES + 1
        faces = faces[::step]
        normals = normals[::step]
        logger.info(f"Decimated preview to {len(faces):,} faces (1/{step})")

    sx, sy, ry2, gz = _project(vertices)

    margin = image_size * 0.08
    span = max(float(sx.max() - sx.min()), float(sy.max() - sy.min()), 1e-6)
    scale = (image_size - 2 * margin) / span
    px = (sx - (sx.min() + sx.max()) / 2) * scale + image_size / 2
    py = (sy - (sy.min() + sy.max()) / 2) * scale + image_size / 2

    # Flat shading in the rotated frame
    nrx = normals[:, 0] * COS45 - normals[:, 1] * SIN45
    nry = normals[:, 0] * SIN45 + normals[:, 1] * COS45
    intensity = np.clip(nrx * LIGHT_DIR[0] + nry * LIGHT_DIR[1] + normals[:, 2] * LIGHT_DIR[2], 0.0, 1.0)
    shade = AMBIENT + (1.0 - AMBIENT) * intensity

    # Moving along (+2 rotated-Y, -1 Z) keeps the screen position, so that is
    # the view direction. Paint far faces first.
    depth = 2.0 * ry2[faces].mean(axis=1) - gz[faces].mean(axis=1)
    order = np.argsort(-depth, kind="stable")

    img = Image.new("RGB", (image_size, image_size), background_color)
    draw = ImageDraw.Draw(img)
    face_x = px[faces]
    face_y = py[faces]

    for idx in order:
        s = shade[idx]
        fill = (int(model_color[0] * s), int(model_color[1] * s), int(model_color[2] * s))
        xs = face_x[idx]
        ys = face_y[idx]
        draw.polygon([(xs[0], ys[0]), (xs[1], ys[1]), (xs[2], ys[2])], fill=fill)

    logger.info(f"Rendered {len(faces):,} faces for {mesh_path.name}")
    return img


def render_png(mesh_path: Path, image_size: int = 512) -> bytes:
    image = render_mesh_preview(mesh_path, image_size=image_size)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", optimize=True)
    return buffer.getvalue()


def to_data_uri(png_bytes: bytes, media_type: str = "image/png") -> str:
    return f"data:{media_type};base64,{base64.b64encode(png_bytes).decode('ascii')}"
