"""Remote print endpoints: Prusa Connect dispatch and the slicer's direct upload."""

import asyncio
import logging
from typing import Dict

from fastapi import APIRouter, HTTPException, Request

from pipeline import get_pipeline
from prusa_connect import PrusaConnectClient, PrusaConnectError, get_prusa_connect
from routes_convert import attachment_response, parse_profile_selection, read_mesh_form, save_mesh_upload

router = APIRouter(prefix="/api", tags=["printing"])
logger = logging.getLogger(__name__)

PRINTER_FIELDS = ("printerName", "printer", "printer_name")


def _require_client() -> PrusaConnectClient:
    client = get_prusa_connect()
    if client is None or not client.configured:
        raise PrusaConnectError("Prusa Connect API token not configured. Set PRUSA_CONNECT_TOKEN.", status_code=500)
    return client


def _printer_name(fields: Dict[str, str]) -> str:
    for key in PRINTER_FIELDS:
        value = fields.get(key, "").strip()
        if value:
            return value
    raise HTTPException(status_code=400, detail="Printer name is required")


@router.post("/print-via-prusa-connect")
async def print_via_prusa_connect(request: Request):
    """Upload a mesh to Prusa Connect and start a print on the named printer."""
    upload, fields = await read_mesh_form(request)
    selection = parse_profile_selection(fields)
    printer_name = _printer_name(fields)
    client = _require_client()

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        mesh_path = await save_mesh_upload(job, upload)
        content = await asyncio.to_thread(mesh_path.read_bytes)
        filename = upload.filename or mesh_path.name

        printer = await client.resolve_printer_id(printer_name)
        job.logger.info(f"Resolved printer '{printer_name}' to {printer['id']}")

        file_id = await client.upload_artifact(printer["id"], content, filename)
        print_response = await client.dispatch_print(
            printer["id"],
            file_id,
            selection.printer_type,
            selection.filament_type,
            selection.quality_profile,
        )

    logger.info(f"Print job for {filename} sent to {printer['name']}")
    return {
        "message": "Print job sent to Prusa Connect",
        "printer": printer["name"],
        "file": filename,
        "printer_id": printer["id"],
        "file_id": file_id,
        "print_response": print_response,
    }


@router.get("/test-prusa-connect")
async def test_prusa_connect():
    """Check the token by fetching the printer list."""
    client = _require_client()
    try:
        data = await client.get_printers_raw()
    except PrusaConnectError as e:
        raise PrusaConnectError(
            f"Failed to connect to Prusa Connect API: {e.message}",
            status_code=500,
            remote_status=e.remote_status,
            remote_body=e.remote_body,
        ) from e
    return {"message": "Successfully connected to Prusa Connect API", "data": data}


@router.post("/slice-and-print-direct")
async def slice_and_print_direct(request: Request):
    """Slice locally, then let PrusaSlicer upload to the printer itself.

    If the upload cannot be confirmed the G-code is returned as a download
    so the caller still gets the result.
    """
    upload, fields = await read_mesh_form(request)
    selection = parse_profile_selection(fields)
    printer_name = _printer_name(fields)

    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        mesh_path = await save_mesh_upload(job, upload)
        artifact = await pipeline.stl_to_gcode(job, mesh_path, selection)
        uploaded = await pipeline.upload_direct(job, artifact.path, printer_name)

    if uploaded:
        return {"message": f"Print job sent directly to {printer_name}", "method": "direct_upload"}
    return attachment_response(artifact)
