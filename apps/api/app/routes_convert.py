"""Conversion endpoints: SCAD -> STL, STL -> G-code, SCAD -> G-code, design -> STL."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from designs import InjectionStyle, normalize_design
from mesh_inspector import MeshInspectionError, inspect_mesh
from pipeline import Artifact, ProfileSelection, get_pipeline
from workspace import Job

router = APIRouter(prefix="/api", tags=["conversion"])
logger = logging.getLogger(__name__)

MESH_FIELD = "stlFile"


def attachment_response(artifact: Artifact) -> Response:
    """Binary download for a finished artifact (already fully in memory)."""
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


async def read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON")


def parse_profile_selection(data: Any) -> ProfileSelection:
    if not isinstance(data, dict):
        data = {}
    try:
        return ProfileSelection.model_validate(data)
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid profile selection", "details": str(e)},
        )


def _scad_code(data: Any) -> str:
    scad_code = data.get("scadCode") if isinstance(data, dict) else None
    if not isinstance(scad_code, str) or not scad_code.strip():
        raise HTTPException(status_code=400, detail="Missing SCAD code")
    return scad_code


async def read_mesh_form(request: Request) -> Tuple[Optional[UploadFile], Dict[str, str]]:
    """Split a multipart form into the mesh upload and the text fields."""
    form = await request.form()
    upload = form.get(MESH_FIELD)
    fields = {key: value for key, value in form.items() if isinstance(value, str)}
    if not isinstance(upload, UploadFile):
        upload = None
    return upload, fields


async def save_mesh_upload(job: Job, upload: Optional[UploadFile]) -> Path:
    """Persist the uploaded mesh and check trimesh can read it."""
    if upload is None:
        raise HTTPException(status_code=400, detail="STL file is required")

    content = await upload.read()
    if not content:
        raise HTTPException(status_code=400, detail="STL file is empty")

    pipeline = get_pipeline()
    path = await asyncio.to_thread(pipeline.workspace.save_upload, job, content, upload.filename)
    try:
        await asyncio.to_thread(inspect_mesh, path)
    except MeshInspectionError as e:
        job.logger.error(f"Rejected upload {upload.filename!r}: {e}")
        raise HTTPException(status_code=400, detail={"error": "Invalid mesh file", "details": str(e)})
    return path


@router.post("/convert-scad-to-stl")
async def convert_scad_to_stl(request: Request):
    """Compile ``{scadCode}`` and return ``model.stl``."""
    data = await read_json_body(request)
    scad_code = _scad_code(data)

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        artifact = await pipeline.scad_to_stl(job, scad_code)
    return attachment_response(artifact)


@router.post("/convert-stl-to-gcode")
async def convert_stl_to_gcode(request: Request):
    """Slice an uploaded mesh (multipart field ``stlFile``) and return ``model.gcode``."""
    upload, fields = await read_mesh_form(request)
    selection = parse_profile_selection(fields)
    if upload is None:
        raise HTTPException(status_code=400, detail="STL file is required")

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        mesh_path = await save_mesh_upload(job, upload)
        artifact = await pipeline.stl_to_gcode(job, mesh_path, selection)
    return attachment_response(artifact)


@router.post("/convert-scad-to-gcode")
async def convert_scad_to_gcode(request: Request):
    data = await read_json_body(request)
    scad_code = _scad_code(data)
    selection = parse_profile_selection(data)

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        artifact = await pipeline.scad_to_gcode(job, scad_code, selection)
    return attachment_response(artifact)


@router.post("/convert-to-scad")
async def convert_to_scad(request: Request):
    """Build ``button_device.stl`` from a button layout.

    The layout is written into the generated SCAD file rather than passed
    with ``-D``, which keeps large layouts off the command line.
    """
    data = await read_json_body(request)
    design = normalize_design(data)

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        artifact = await pipeline.design_to_stl(job, design, InjectionStyle.INCLUDE_FILE)
    return attachment_response(artifact)


@router.post("/generate-stl")
async def generate_stl(request: Request):
    data = await read_json_body(request)
    design = normalize_design(data)

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        artifact = await pipeline.design_to_stl(job, design)
    return attachment_response(artifact)
