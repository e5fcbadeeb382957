import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import load_settings
from designs import InvalidDesignError
from mesh_inspector import MeshInspectionError
from pipeline import ConversionError, close_pipeline, get_pipeline, init_pipeline
from profiles import ProfileError
from prusa_connect import PrusaConnectError, close_prusa_connect, init_prusa_connect
from routes_convert import router as convert_router
from routes_preview import router as preview_router
from routes_print import router as print_router
from tool_runner import ToolNotFoundError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)

    pipeline = init_pipeline(settings)
    await init_prusa_connect(settings.prusa_connect_url, settings.prusa_connect_token)
    reaper = asyncio.create_task(
        pipeline.workspace.run_reaper(settings.reap_interval, settings.reap_max_age)
    )
    logger.info(f"Scratch directory: {pipeline.workspace.root}, profiles: {pipeline.registry.root}")
    yield
    # Shutdown
    reaper.cancel()
    try:
        await reaper
    except asyncio.CancelledError:
        pass
    await close_prusa_connect()
    await close_pipeline()


app = FastAPI(title="SCAD Print Bridge API", lifespan=lifespan)

_cors_origins = load_settings().cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials="*" not in _cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(convert_router)
app.include_router(preview_router)
app.include_router(print_router)


# ---------------------------------------------------------------------------
# Error bodies: {"error": ..., "details": ..., "log"?: ...}
# ---------------------------------------------------------------------------

@app.exception_handler(HTTPException)
async def http_exc(request: Request, exc: HTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exc(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": str(exc.errors())})


@app.exception_handler(InvalidDesignError)
async def invalid_design_exc(request: Request, exc: InvalidDesignError):
    logger.warning(f"{request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(MeshInspectionError)
async def mesh_exc(request: Request, exc: MeshInspectionError):
    logger.warning(f"{request.url.path}: {exc}")
    return JSONResponse(status_code=400, content={"error": "Invalid mesh file", "details": str(exc)})


@app.exception_handler(ConversionError)
async def conversion_exc(request: Request, exc: ConversionError):
    logger.error(f"{request.url.path}: {exc.message}: {exc.details}")
    content = {"error": exc.message, "details": exc.details}
    if exc.log:
        content["log"] = exc.log
    return JSONResponse(status_code=500, content=content)


@app.exception_handler(ToolNotFoundError)
async def tool_not_found_exc(request: Request, exc: ToolNotFoundError):
    logger.error(f"{request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "External tool not available", "details": str(exc)})


@app.exception_handler(ProfileError)
async def profile_exc(request: Request, exc: ProfileError):
    logger.error(f"{request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Profile lookup failed", "details": str(exc)})


@app.exception_handler(PrusaConnectError)
async def prusa_connect_exc(request: Request, exc: PrusaConnectError):
    logger.error(f"{request.url.path}: {exc.message} (remote status {exc.remote_status})")
    content = {"error": exc.message, "details": exc.remote_body or exc.message}
    if exc.remote_status is not None:
        content["remote_status"] = exc.remote_status
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/")
def root():
    return {
        "name": "SCAD Print Bridge API",
        "version": "1.0.0",
        "endpoints": {
            "health": "/healthz",
            "profiles": "GET /api/{printer,filament,print}-profiles",
            "scad_to_stl": "POST /api/convert-scad-to-stl",
            "stl_to_gcode": "POST /api/convert-stl-to-gcode",
            "scad_to_gcode": "POST /api/convert-scad-to-gcode",
            "design_to_stl": "POST /api/convert-to-scad, POST /api/generate-stl",
            "previews": "POST /api/generate-previews, POST /api/generate-single-preview",
            "prusa_connect": "POST /api/print-via-prusa-connect, GET /api/test-prusa-connect",
            "direct_print": "POST /api/slice-and-print-direct",
        },
    }


@app.get("/healthz")
def health():
    return {"status": "ok"}


def _list_profiles(kind: str):
    try:
        return [p.to_dict() for p in get_pipeline().registry.list_profiles(kind)]
    except (OSError, ProfileError) as e:
        logger.error(f"Error getting {kind} profiles: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": f"Failed to get {kind} profiles", "details": str(e)},
        )


@app.get("/api/printer-profiles")
def printer_profiles():
    return _list_profiles("printer")


@app.get("/api/filament-profiles")
def filament_profiles():
    return _list_profiles("filament")


@app.get("/api/print-profiles")
def print_profiles():
    return _list_profiles("print")


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
