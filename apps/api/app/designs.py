"""Parametric button designs: request normalization and SCAD source generation.

Clients have sent button layouts in several shapes over time. All of them are
resolved here, in one fixed order, into a single :class:`DesignDescriptor`:

1. ``buttonLayout`` / ``button_layout`` at the top level (a list, or a JSON string)
2. the same keys inside a nested ``design``, ``config``, ``data`` or ``layout`` object
3. ``button_layout=[[...]]`` embedded in a ``scadCommand`` string
4. the whole body sent as a JSON-encoded string of any of the above

Parameters come from the same place as the layout, else from the top-level
``buttonParams`` / ``button_params``.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError, field_validator

from tool_runner import scad_assignment

logger = logging.getLogger(__name__)

LAYOUT_KEYS = ("buttonLayout", "button_layout")
PARAM_KEYS = ("buttonParams", "button_params")
NESTED_KEYS = ("design", "config", "data", "layout")

# Variable names understood by the bundled templates.
LAYOUT_VARIABLE = "button_layout"
PARAMS_VARIABLE = "button_params"

TEMPLATE_FILES = ("input_device.scad", "ParametricButton.scad")
TEMPLATE_ENTRY_MODULE = "main_assembly"

# Above this many characters the values go into the generated source instead of -D flags.
MAX_DEFINE_CHARS = 4096

Scalar = Union[str, int, float, bool, None]


class InvalidDesignError(Exception):
    """Raised when no usable button layout can be resolved from a request."""
    pass


class DesignTemplateError(Exception):
    """Raised when the SCAD templates needed for a design are missing."""
    pass


class InjectionStyle(str, Enum):
    DEFINES = "defines"
    INCLUDE_FILE = "include_file"


class DesignDescriptor(BaseModel):
    id: Scalar = None
    type: Scalar = None
    button_layout: List[List[Scalar]]
    button_params: Optional[List[Any]] = None

    @field_validator("button_layout")
    @classmethod
    def _layout_not_empty(cls, value: List[List[Scalar]]) -> List[List[Scalar]]:
        if not value or not any(row for row in value):
            raise ValueError("button layout must contain at least one element")
        _check_encodable(LAYOUT_VARIABLE, value)
        return value

    @field_validator("button_params")
    @classmethod
    def _params_encodable(cls, value: Optional[List[Any]]) -> Optional[List[Any]]:
        if value is not None:
            _check_encodable(PARAMS_VARIABLE, value)
        return value


def _check_encodable(name: str, value: Any) -> None:
    """Reject values OpenSCAD has no literal for (objects, NaN)."""
    try:
        scad_assignment(name, value)
    except TypeError as e:
        raise ValueError(str(e)) from e


def _coerce_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _first_present(container: dict, keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if container.get(key) is not None:
            return _coerce_json(container[key])
    return None


def _probe(container: Any) -> Optional[Tuple[Any, Any]]:
    """Return (layout, params) if ``container`` carries a layout key."""
    if not isinstance(container, dict):
        return None
    layout = _first_present(container, LAYOUT_KEYS)
    if layout is None:
        return None
    return layout, _first_present(container, PARAM_KEYS)


def _extract_bracketed(text: str, name: str) -> Optional[str]:
    """Pull the balanced ``[...]`` value assigned to ``name`` out of SCAD text."""
    match = re.search(rf"\b{re.escape(name)}\s*=\s*\[", text)
    if not match:
        return None

    start = match.end() - 1
    depth = 0
    quote = None
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return text[start:idx + 1]
    return None


def _parse_scad_vector(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw.replace("'", '"'))
    except ValueError as e:
        logger.warning(f"Failed to parse SCAD vector {raw[:80]!r}: {e}")
        return None


def _resolve(payload: Any, allow_string: bool = True) -> Optional[Tuple[str, Any, Any, dict]]:
    if allow_string and isinstance(payload, str):
        decoded = _coerce_json(payload)
        if decoded is payload:
            return None
        resolved = _resolve(decoded, allow_string=False)
        if resolved is None:
            return None
        return "json-string body", resolved[1], resolved[2], resolved[3]

    if not isinstance(payload, dict):
        return None

    hit = _probe(payload)
    if hit is not None:
        return "top-level", hit[0], hit[1], payload

    for key in NESTED_KEYS:
        nested = _coerce_json(payload.get(key))
        hit = _probe(nested)
        if hit is not None:
            return f"nested '{key}'", hit[0], hit[1], nested

    command = payload.get("scadCommand")
    if isinstance(command, str):
        layout = _parse_scad_vector(_extract_bracketed(command, LAYOUT_VARIABLE))
        if layout is not None:
            params = _parse_scad_vector(_extract_bracketed(command, PARAMS_VARIABLE))
            return "scadCommand", layout, params, payload

    return None


def normalize_design(payload: Any) -> DesignDescriptor:
    """Resolve any accepted request shape into a DesignDescriptor.

    Raises:
        InvalidDesignError: If no layout is found or the layout is malformed.
    """
    resolved = _resolve(payload)
    if resolved is None:
        raise InvalidDesignError("Missing or invalid button layout configuration")

    variant, layout, params, container = resolved
    top = payload if isinstance(payload, dict) else container
    if params is None and isinstance(top, dict):
        params = _first_present(top, PARAM_KEYS)

    try:
        design = DesignDescriptor(
            id=container.get("id", top.get("id")),
            type=container.get("type", top.get("type")),
            button_layout=layout,
            button_params=params,
        )
    except ValidationError as e:
        raise InvalidDesignError(f"Invalid button layout configuration: {e}") from e

    logger.debug(f"Resolved button layout from {variant} request shape")
    return design


def design_assignments(design: DesignDescriptor) -> List[str]:
    """``name=value`` statements for the layout and (when present) params."""
    assignments = [scad_assignment(LAYOUT_VARIABLE, design.button_layout)]
    if design.button_params is not None:
        assignments.append(scad_assignment(PARAMS_VARIABLE, design.button_params))
    return assignments


def design_defines(design: DesignDescriptor) -> List[str]:
    args: List[str] = []
    for assignment in design_assignments(design):
        args.extend(["-D", assignment])
    return args


def choose_injection(design: DesignDescriptor, forced: Optional[InjectionStyle] = None) -> InjectionStyle:
    if forced is not None:
        return forced
    size = sum(len(a) for a in design_assignments(design))
    return InjectionStyle.INCLUDE_FILE if size > MAX_DEFINE_CHARS else InjectionStyle.DEFINES


def template_paths(template_dir: Path) -> List[Path]:
    paths = [Path(template_dir).resolve() / name for name in TEMPLATE_FILES]
    missing = [p for p in paths if not p.is_file()]
    if missing:
        logger.error(f"Missing SCAD files: {', '.join(str(p) for p in missing)}")
        raise DesignTemplateError("Required SCAD files not found")
    return paths


def render_design_source(design: DesignDescriptor, template_dir: Path, style: InjectionStyle) -> str:
    """Generate the SCAD entry file that includes the templates and builds the device."""
    lines = []
    for path in template_paths(template_dir):
        lines.append(f"include <{path.as_posix()}>")
    lines.append("")

    if style is InjectionStyle.INCLUDE_FILE:
        lines.append("// Button layout configuration")
        for assignment in design_assignments(design):
            lines.append(f"{assignment};")
        lines.append("")

    lines.append(f"{TEMPLATE_ENTRY_MODULE}();")
    return "\n".join(lines) + "\n"
