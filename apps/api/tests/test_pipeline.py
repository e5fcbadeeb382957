"""Tests for the conversion pipeline against stub OpenSCAD / PrusaSlicer."""

import dataclasses
import logging

import pytest

from conftest import scratch_files
from designs import InjectionStyle, normalize_design
from pipeline import ConversionError, ConversionPipeline, ProfileSelection, init_pipeline
from tool_runner import ToolNotFoundError

LAYOUT = [["A", "B"], ["C", "D"]]


class TestProfileSelection:

    def test_defaults(self):
        selection = ProfileSelection.model_validate({})
        assert selection.printer_type == "ORIGINAL_PRUSA_MK4"
        assert selection.filament_type == "Prusament PLA"
        assert selection.quality_profile == "0.15mm SPEED"

    def test_legacy_aliases(self):
        selection = ProfileSelection.model_validate(
            {"printerType": "MINI", "filementType": "PETG", "qualityPorfile": "0.20mm QUALITY"}
        )
        assert selection.printer_type == "MINI"
        assert selection.filament_type == "PETG"
        assert selection.quality_profile == "0.20mm QUALITY"

    def test_blank_values_use_defaults(self):
        selection = ProfileSelection.model_validate({"printerType": "", "filamentType": "  "})
        assert selection.printer_type == "ORIGINAL_PRUSA_MK4"
        assert selection.filament_type == "Prusament PLA"

    @pytest.mark.parametrize("value", ["../printer/MK4", "..", "a\\b"])
    def test_rejects_path_like_ids(self, value):
        with pytest.raises(ValueError):
            ProfileSelection.model_validate({"printerType": value})

    @pytest.mark.parametrize("value", ["MK4\x00x", "MK4\nMINI", "PLA\x7f"])
    def test_rejects_control_characters(self, value):
        with pytest.raises(ValueError):
            ProfileSelection.model_validate({"filamentType": value})


class TestStages:

    @pytest.mark.asyncio
    async def test_scad_to_stl(self, pipeline):
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.scad_to_stl(job, "cube(10);")

        assert artifact.filename == "model.stl"
        assert artifact.media_type == "application/octet-stream"
        assert artifact.content.startswith(b"solid tetra")
        await pipeline.workspace.drain()
        assert scratch_files(pipeline.workspace.root) == []

    @pytest.mark.asyncio
    async def test_compiler_failure(self, pipeline):
        with pytest.raises(ConversionError) as excinfo:
            async with pipeline.workspace.job() as job:
                await pipeline.scad_to_stl(job, "FAIL();")

        assert excinfo.value.message == "OpenSCAD conversion failed"
        assert "exited with code 1" in excinfo.value.details
        assert "Parser error" in excinfo.value.details

    @pytest.mark.asyncio
    async def test_compiler_empty_output(self, pipeline):
        with pytest.raises(ConversionError) as excinfo:
            async with pipeline.workspace.job() as job:
                await pipeline.scad_to_stl(job, "// EMPTY")
        assert "is empty" in excinfo.value.details

    @pytest.mark.asyncio
    async def test_stl_to_gcode_loads_profiles_in_order(self, pipeline, stl_file):
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.stl_to_gcode(job, stl_file, ProfileSelection())

        text = artifact.content.decode()
        assert artifact.filename == "model.gcode"
        assert text.index("ORIGINAL_PRUSA_MK4.ini") < text.index("Prusament PLA.ini") < text.index("0.15mm SPEED.ini")

    @pytest.mark.asyncio
    async def test_unknown_profile_is_named_in_details(self, pipeline, stl_file):
        selection = ProfileSelection(printerType="UNKNOWN_ID")
        with pytest.raises(ConversionError) as excinfo:
            async with pipeline.workspace.job() as job:
                await pipeline.stl_to_gcode(job, stl_file, selection)

        assert "printer/UNKNOWN_ID.ini" in excinfo.value.details

    @pytest.mark.asyncio
    async def test_failing_second_stage_still_cleans_up(self, pipeline):
        selection = ProfileSelection(filamentType="NO_SUCH_FILAMENT")
        with pytest.raises(ConversionError):
            async with pipeline.workspace.job() as job:
                await pipeline.scad_to_gcode(job, "cube(10);", selection)

        # Both stages ran and left files behind until cleanup
        assert len(job.paths) == 3
        await pipeline.workspace.drain()
        assert not [name for name in scratch_files(pipeline.workspace.root) if name.startswith(job.id)]

    @pytest.mark.asyncio
    async def test_scad_to_gcode(self, pipeline):
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.scad_to_gcode(job, "cube(10);", ProfileSelection())
        assert b"G28" in artifact.content

    @pytest.mark.asyncio
    async def test_design_to_stl_with_defines(self, pipeline):
        design = normalize_design({"buttonLayout": LAYOUT, "buttonParams": [[18, 18, 8]]})
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.design_to_stl(job, design, InjectionStyle.DEFINES)
            log_text = (pipeline.workspace.root / f"{job.id}.log").read_text()
            source = (pipeline.workspace.root / f"{job.id}_output.scad").read_text()

        assert artifact.filename == "button_device.stl"
        assert 'define button_layout=[["A", "B"], ["C", "D"]]' in log_text
        assert "main_assembly();" in source
        assert "button_layout=" not in source

    @pytest.mark.asyncio
    async def test_design_to_stl_include_file(self, pipeline):
        design = normalize_design({"buttonLayout": LAYOUT})
        async with pipeline.workspace.job() as job:
            await pipeline.design_to_stl(job, design, InjectionStyle.INCLUDE_FILE)
            source = (pipeline.workspace.root / f"{job.id}_output.scad").read_text()
            log_text = (pipeline.workspace.root / f"{job.id}.log").read_text()

        assert 'button_layout=[["A", "B"], ["C", "D"]];' in source
        assert "define " not in log_text

    @pytest.mark.asyncio
    async def test_design_failure_includes_log(self, pipeline, tmp_path):
        templates = tmp_path / "failing-templates"
        templates.mkdir()
        (templates / "input_device.scad").write_text("FAIL\n")
        (templates / "ParametricButton.scad").write_text("")
        pipeline.settings = dataclasses.replace(pipeline.settings, template_dir=templates)

        # The stub only sees the generated file, so make the layout carry the marker
        design = normalize_design({"buttonLayout": [["FAIL"]]})
        with pytest.raises(ConversionError) as excinfo:
            async with pipeline.workspace.job() as job:
                await pipeline.design_to_stl(job, design, InjectionStyle.INCLUDE_FILE)

        assert excinfo.value.log.startswith("STDOUT:")
        assert "Parser error" in excinfo.value.log

    @pytest.mark.asyncio
    async def test_missing_templates(self, pipeline, tmp_path):
        pipeline.settings = dataclasses.replace(pipeline.settings, template_dir=tmp_path / "empty")
        design = normalize_design({"buttonLayout": LAYOUT})
        with pytest.raises(ConversionError, match="Required SCAD files not found"):
            async with pipeline.workspace.job() as job:
                await pipeline.design_to_stl(job, design)

    @pytest.mark.asyncio
    async def test_missing_executable(self, pipeline, monkeypatch):
        monkeypatch.setattr("pipeline.locate_executable", lambda *args, **kwargs: None)
        pipeline._openscad = None
        with pytest.raises(ToolNotFoundError, match="OPENSCAD_PATH"):
            async with pipeline.workspace.job() as job:
                await pipeline.scad_to_stl(job, "cube(1);")

    @pytest.mark.asyncio
    async def test_executable_located_lazily(self, pipeline, monkeypatch, openscad_stub):
        calls = []

        def fake_locate(names, dirs, override_env=None):
            calls.append(override_env)
            return str(openscad_stub)

        monkeypatch.setattr("pipeline.locate_executable", fake_locate)
        pipeline._openscad = None
        assert calls == []
        assert pipeline.openscad_executable() == str(openscad_stub)
        assert pipeline.openscad_executable() == str(openscad_stub)
        assert calls == ["OPENSCAD_HOME"]


class TestPreviews:

    @pytest.mark.asyncio
    async def test_design_preview(self, pipeline):
        design = normalize_design({"design": {"id": "d1", "button_layout": LAYOUT}})
        async with pipeline.workspace.job() as job:
            preview = await pipeline.design_preview(job, design)
        assert preview.startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_batch_keeps_order_and_isolates_failures(self, pipeline):
        designs = [
            {"id": 1, "type": "pad", "button_layout": LAYOUT},
            {"id": 2, "type": "pad", "button_layout": "not a layout"},
            {"id": 3, "type": "strip", "button_layout": [["X", "Y", "Z"]]},
            {"id": 4, "type": "pad", "button_layout": [["FAIL"]]},
        ]

        entries = await pipeline.batch_previews(designs)

        assert [e["id"] for e in entries] == [1, 2, 3, 4]
        assert entries[0]["preview"].startswith("data:image/png;base64,")
        assert entries[2]["preview"].startswith("data:image/png;base64,")
        assert entries[2]["type"] == "strip"
        assert entries[1]["preview"] is None
        assert "layout" in entries[1]["error"]
        assert entries[3]["preview"] is None
        assert entries[3]["error"] == "OpenSCAD conversion failed"
        assert len([e for e in entries if "error" in e]) == 2

        await pipeline.workspace.drain()
        assert scratch_files(pipeline.workspace.root) == []

    @pytest.mark.asyncio
    async def test_batch_entry_for_unspawnable_label(self, pipeline):
        designs = [
            {"id": "a", "button_layout": [["A"]]},
            {"id": "b", "button_layout": [["B\x00"]]},
        ]

        entries = await pipeline.batch_previews(designs)

        assert len(entries) == 2
        assert entries[0]["preview"].startswith("data:image/png;base64,")
        assert entries[1]["preview"] is None
        assert entries[1]["error"] == "OpenSCAD conversion failed"
        assert "Failed to start" in entries[1]["details"]


class TestDirectUpload:

    @pytest.mark.asyncio
    async def test_consumed_toolpath_counts_as_uploaded(self, pipeline, stl_file):
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.stl_to_gcode(job, stl_file, ProfileSelection())
            assert await pipeline.upload_direct(job, artifact.path, "consume") is True

    @pytest.mark.asyncio
    async def test_leftover_toolpath_is_not_success(self, pipeline, stl_file):
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.stl_to_gcode(job, stl_file, ProfileSelection())
            assert await pipeline.upload_direct(job, artifact.path, "MK4 Lab") is False
            assert artifact.path.exists()

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_not_success(self, pipeline, stl_file):
        async with pipeline.workspace.job() as job:
            artifact = await pipeline.stl_to_gcode(job, stl_file, ProfileSelection())
            assert await pipeline.upload_direct(job, artifact.path, "broken") is False


def test_init_pipeline_warns_without_templates(settings, caplog):
    settings = dataclasses.replace(settings, template_dir=settings.scratch_dir / "no-templates")

    with caplog.at_level(logging.WARNING, logger="pipeline"):
        init_pipeline(settings)

    assert "SCAD_TEMPLATE_DIR" in caplog.text


def test_pipeline_uses_settings_paths(settings, pipeline):
    assert isinstance(pipeline, ConversionPipeline)
    assert pipeline.workspace.root == settings.scratch_dir.resolve()
    assert pipeline.registry.root == settings.profile_dir.resolve()
