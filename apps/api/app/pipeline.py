"""Conversion jobs: SCAD source -> mesh -> toolpath, and design -> mesh -> preview.

Every stage runs inside a :class:`workspace.Job`, so all temp files it
allocates are removed when the request finishes, whichever way it ends.
Stage transitions are logged on the job logger::

    INPUT_RECEIVED -> STAGE_1_RUNNING -> [STAGE_2_RUNNING] -> ARTIFACT_READY | FAILED
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from config import (
    DEFAULT_FILAMENT_PROFILE,
    DEFAULT_PRINT_PROFILE,
    DEFAULT_PRINTER_PROFILE,
    Settings,
)
from designs import (
    DesignDescriptor,
    DesignTemplateError,
    InjectionStyle,
    InvalidDesignError,
    choose_injection,
    design_defines,
    normalize_design,
    render_design_source,
    template_paths,
)
from mesh_inspector import MeshInspectionError
from preview_renderer import render_png, to_data_uri
from profiles import (
    OPENSCAD_DIRS,
    OPENSCAD_NAMES,
    SLICER_DIRS,
    SLICER_NAMES,
    ProfileRegistry,
    locate_executable,
)
from tool_runner import (
    ToolNotFoundError,
    ToolResult,
    ToolRunner,
    openscad_args,
    slicer_args,
    slicer_upload_args,
)
from workspace import Job, Workspace

logger = logging.getLogger(__name__)

INPUT_RECEIVED = "INPUT_RECEIVED"
STAGE_1_RUNNING = "STAGE_1_RUNNING"
STAGE_2_RUNNING = "STAGE_2_RUNNING"
ARTIFACT_READY = "ARTIFACT_READY"
FAILED = "FAILED"

OCTET_STREAM = "application/octet-stream"
PREVIEW_SIZE = 512


class ConversionError(Exception):
    """A pipeline stage failed; carries the tool diagnostic and optional log."""

    def __init__(self, message: str, details: str = "", log: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.log = log


@dataclass
class Artifact:
    content: bytes
    filename: str
    media_type: str = OCTET_STREAM
    path: Optional[Path] = None


def _has_control_chars(value: str) -> bool:
    return any(ord(ch) < 32 or ord(ch) == 127 for ch in value)


class ProfileSelection(BaseModel):
    """Printer, filament and print profile ids for one slicing request.

    Accepts the misspelled field names older clients send
    (``filementType``, ``qualityPorfile``). Blank values fall back to the defaults.
    """

    model_config = ConfigDict(populate_by_name=True)

    printer_type: str = Field(
        DEFAULT_PRINTER_PROFILE,
        validation_alias=AliasChoices("printerType", "printer_type", "printerProfile"),
    )
    filament_type: str = Field(
        DEFAULT_FILAMENT_PROFILE,
        validation_alias=AliasChoices("filamentType", "filementType", "filament_type", "filamentProfile"),
    )
    quality_profile: str = Field(
        DEFAULT_PRINT_PROFILE,
        validation_alias=AliasChoices("qualityProfile", "qualityPorfile", "quality_profile", "printProfile"),
    )

    @field_validator("printer_type", "filament_type", "quality_profile", mode="before")
    @classmethod
    def _blank_to_default(cls, value: Any, info) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        if isinstance(value, str):
            value = value.strip()
            # Profile ids become file names under the profile root
            if "/" in value or "\\" in value or value.startswith(".") or _has_control_chars(value):
                raise ValueError(f"Invalid profile id: {value!r}")
        return value


class ConversionPipeline:
    """Composes the profile registry, workspace and tool runner into jobs."""

    def __init__(self, workspace: Workspace, registry: ProfileRegistry, runner: ToolRunner, settings: Settings):
        self.workspace = workspace
        self.registry = registry
        self.runner = runner
        self.settings = settings
        self._openscad: Optional[str] = settings.openscad_path
        self._slicer: Optional[str] = settings.slicer_path

    # -- executables -------------------------------------------------------

    def openscad_executable(self) -> str:
        if self._openscad is None:
            found = locate_executable(OPENSCAD_NAMES, OPENSCAD_DIRS, override_env="OPENSCAD_HOME")
            if found is None:
                raise ToolNotFoundError(
                    "OpenSCAD executable not found. Install OpenSCAD or set OPENSCAD_PATH / OPENSCAD_HOME."
                )
            logger.info(f"Using OpenSCAD at: {found}")
            self._openscad = found
        return self._openscad

    def slicer_executable(self) -> str:
        if self._slicer is None:
            found = locate_executable(SLICER_NAMES, SLICER_DIRS, override_env="PRUSASLICER_HOME")
            if found is None:
                raise ToolNotFoundError(
                    "PrusaSlicer executable not found. Install PrusaSlicer or set SLICER_PATH / PRUSASLICER_HOME."
                )
            logger.info(f"Using PrusaSlicer at: {found}")
            self._slicer = found
        return self._slicer

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _stage(job: Job, state: str, detail: str = "") -> None:
        job.logger.info(f"[{state}] job {job.id}" + (f": {detail}" if detail else ""))

    def _fail(self, job: Job, message: str, result: ToolResult, extra: str = "") -> ConversionError:
        details = result.details()
        if extra:
            details = f"{extra}\n{details}"
        job.logger.error(f"[{FAILED}] job {job.id}: {message}: {details.splitlines()[0] if details else ''}")
        return ConversionError(message, details, result.log)

    async def _write_source(self, path: Path, text: str) -> None:
        await asyncio.to_thread(path.write_text, text, encoding="utf-8")

    async def _artifact(self, job: Job, path: Path, filename: str) -> Artifact:
        content = await asyncio.to_thread(path.read_bytes)
        self._stage(job, ARTIFACT_READY, f"{filename} ({len(content)} bytes)")
        return Artifact(content=content, filename=filename, path=path)

    async def _compile(self, job: Job, source: Path, output: Path) -> Path:
        result = await self.runner.run(
            self.openscad_executable(),
            openscad_args(output, source),
            timeout=self.settings.openscad_timeout,
            expected_output=output,
            job_logger=job.logger,
        )
        if not result.success:
            raise self._fail(job, "OpenSCAD conversion failed", result)
        return output

    async def _slice(self, job: Job, mesh_path: Path, selection: ProfileSelection) -> Path:
        paths = self.registry.resolve_profile_paths(
            selection.printer_type, selection.filament_type, selection.quality_profile
        )
        output = job.path(".gcode")
        result = await self.runner.run(
            self.slicer_executable(),
            slicer_args(paths, output, mesh_path, datadir=self.registry.root),
            timeout=self.settings.slicer_timeout,
            expected_output=output,
            job_logger=job.logger,
        )
        if not result.success:
            missing = paths.missing()
            extra = ""
            if missing:
                names = ", ".join(f"{p.parent.name}/{p.name}" for p in missing)
                extra = f"Profile file(s) not found: {names}"
            raise self._fail(job, "Conversion failed", result, extra)
        return output

    async def _design_mesh(self, job: Job, design: DesignDescriptor, style: Optional[InjectionStyle]) -> Path:
        style = choose_injection(design, style)
        try:
            source_text = render_design_source(design, self.settings.template_dir, style)
        except DesignTemplateError as e:
            job.logger.error(f"[{FAILED}] job {job.id}: {e}")
            raise ConversionError(str(e), f"Template directory: {self.settings.template_dir}") from e

        source = job.path("_output.scad")
        output = job.path(".stl")
        log_path = job.path(".log")
        await self._write_source(source, source_text)
        job.logger.debug(f"Generated SCAD source ({style.value}):\n{source_text}")

        self._stage(job, STAGE_1_RUNNING, "compiling design")
        defines = design_defines(design) if style is InjectionStyle.DEFINES else None
        result = await self.runner.run(
            self.openscad_executable(),
            openscad_args(output, source, defines=defines, debug=True),
            timeout=self.settings.openscad_timeout,
            expected_output=output,
            log_path=log_path,
            job_logger=job.logger,
        )
        if not result.success:
            raise self._fail(job, "OpenSCAD conversion failed", result)
        return output

    # -- stages ------------------------------------------------------------

    async def scad_to_stl(self, job: Job, scad_code: str) -> Artifact:
        """Compile raw SCAD source to an STL mesh."""
        self._stage(job, INPUT_RECEIVED, "scad source")
        source = job.path(".scad")
        output = job.path(".stl")
        await self._write_source(source, scad_code)
        job.logger.info(f"SCAD file created at {source}")

        self._stage(job, STAGE_1_RUNNING, "compiling SCAD")
        await self._compile(job, source, output)
        return await self._artifact(job, output, "model.stl")

    async def stl_to_gcode(self, job: Job, mesh_path: Path, selection: ProfileSelection) -> Artifact:
        """Slice an existing mesh with the selected profiles."""
        self._stage(job, INPUT_RECEIVED, f"mesh {mesh_path.name}")
        self._stage(
            job,
            STAGE_1_RUNNING,
            f"slicing with {selection.printer_type} / {selection.filament_type} / {selection.quality_profile}",
        )
        output = await self._slice(job, mesh_path, selection)
        return await self._artifact(job, output, "model.gcode")

    async def scad_to_gcode(self, job: Job, scad_code: str, selection: ProfileSelection) -> Artifact:
        """Compile SCAD source and slice the result; the mesh stays internal."""
        self._stage(job, INPUT_RECEIVED, "scad source")
        source = job.path(".scad")
        mesh = job.path(".stl")
        await self._write_source(source, scad_code)

        self._stage(job, STAGE_1_RUNNING, "compiling SCAD")
        await self._compile(job, source, mesh)

        self._stage(job, STAGE_2_RUNNING, "slicing mesh")
        output = await self._slice(job, mesh, selection)
        return await self._artifact(job, output, "model.gcode")

    async def design_to_stl(self, job: Job, design: DesignDescriptor, style: Optional[InjectionStyle] = None) -> Artifact:
        """Build the button device mesh for a design descriptor."""
        self._stage(job, INPUT_RECEIVED, f"design {design.id}")
        mesh = await self._design_mesh(job, design, style)
        return await self._artifact(job, mesh, "button_device.stl")

    async def design_preview(self, job: Job, design: DesignDescriptor) -> str:
        """Render a design to a PNG data URI."""
        self._stage(job, INPUT_RECEIVED, f"preview for design {design.id}")
        mesh = await self._design_mesh(job, design, None)

        self._stage(job, STAGE_2_RUNNING, "rendering preview")
        try:
            png = await asyncio.to_thread(render_png, mesh, PREVIEW_SIZE)
        except MeshInspectionError as e:
            job.logger.error(f"[{FAILED}] job {job.id}: {e}")
            raise ConversionError("Preview rendering failed", str(e)) from e

        self._stage(job, ARTIFACT_READY, f"preview ({len(png)} bytes)")
        return to_data_uri(png)

    async def batch_previews(self, designs: List[Any]) -> List[Dict[str, Any]]:
        """One entry per design, in input order; failures do not stop the batch."""
        entries: List[Dict[str, Any]] = []
        for index, raw in enumerate(designs):
            raw_id = raw.get("id") if isinstance(raw, dict) else None
            raw_type = raw.get("type") if isinstance(raw, dict) else None
            try:
                design = normalize_design(raw)
                async with self.workspace.job() as job:
                    preview = await self.design_preview(job, design)
                entries.append({"id": design.id, "type": design.type, "preview": preview})
            except (InvalidDesignError, ConversionError, ToolNotFoundError) as e:
                logger.error(f"Preview {index} (id={raw_id}) failed: {e}")
                entry = {"id": raw_id, "type": raw_type, "error": str(e), "preview": None}
                if isinstance(e, ConversionError) and e.details:
                    entry["details"] = e.details
                entries.append(entry)
        return entries

    async def upload_direct(self, job: Job, toolpath: Path, printer_name: str) -> bool:
        """Hand a toolpath to the slicer's own upload command.

        Counts as uploaded only when the tool exits 0 and has consumed the
        toolpath file; a file left behind means the upload did not happen.
        """
        self._stage(job, STAGE_2_RUNNING, f"direct upload to {printer_name}")
        result = await self.runner.run(
            self.slicer_executable(),
            slicer_upload_args(toolpath, printer_name, datadir=self.registry.root),
            timeout=self.settings.slicer_timeout,
            job_logger=job.logger,
        )
        consumed = not toolpath.exists()
        uploaded = result.success and consumed
        if uploaded:
            job.logger.info(f"Direct upload to {printer_name} succeeded")
        else:
            job.logger.warning(
                f"Direct upload to {printer_name} not confirmed "
                f"(exit={result.exit_code}, toolpath consumed={consumed}); returning G-code"
            )
        return uploaded


# Global pipeline instance
_pipeline: Optional[ConversionPipeline] = None


def init_pipeline(settings: Settings) -> ConversionPipeline:
    """Create the workspace, registry and runner for this process."""
    global _pipeline

    workspace = Workspace(settings.scratch_dir, settings.cleanup_delay, settings.job_log_dir)
    workspace.ensure()

    registry = ProfileRegistry(settings.profile_dir)
    try:
        registry.seed_defaults()
    except OSError as e:
        logger.error(f"Failed to initialize PrusaSlicer config: {e}")

    try:
        template_paths(settings.template_dir)
    except DesignTemplateError:
        logger.warning(
            f"SCAD templates not found in {settings.template_dir}; "
            "set SCAD_TEMPLATE_DIR to enable the design endpoints"
        )

    runner = ToolRunner(default_timeout=settings.openscad_timeout, max_output_bytes=settings.max_output_bytes)
    _pipeline = ConversionPipeline(workspace, registry, runner, settings)
    return _pipeline


def get_pipeline() -> ConversionPipeline:
    if _pipeline is None:
        raise RuntimeError("Pipeline not initialized. Call init_pipeline() first.")
    return _pipeline


async def close_pipeline() -> None:
    """Flush pending temp-file cleanups."""
    global _pipeline

    if _pipeline:
        await _pipeline.workspace.drain()
        _pipeline = None
