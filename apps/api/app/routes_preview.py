"""Design preview endpoints (PNG data URIs)."""

import logging

from fastapi import APIRouter, HTTPException, Request

from designs import normalize_design
from pipeline import get_pipeline
from routes_convert import read_json_body

router = APIRouter(prefix="/api", tags=["previews"])
logger = logging.getLogger(__name__)


@router.post("/generate-previews")
async def generate_previews(request: Request):
    """Render every design in ``{designs: [...]}``.

    Always answers with one entry per design in request order; a design that
    fails gets ``{id, type, error, preview: null}`` instead of a preview.
    """
    data = await read_json_body(request)
    designs = data.get("designs") if isinstance(data, dict) else None
    if not isinstance(designs, list) or not designs:
        raise HTTPException(status_code=400, detail="Missing or empty designs array")

    logger.info(f"Generating previews for {len(designs)} design(s)")
    return await get_pipeline().batch_previews(designs)


@router.post("/generate-single-preview")
async def generate_single_preview(request: Request):
    data = await read_json_body(request)
    payload = data.get("design") if isinstance(data, dict) else None
    if payload is None:
        raise HTTPException(status_code=400, detail="Missing design")

    design = normalize_design(payload)
    pipeline = get_pipeline()
    async with pipeline.workspace.job() as job:
        preview = await pipeline.design_preview(job, design)
    return {"id": design.id, "type": design.type, "preview": preview}
