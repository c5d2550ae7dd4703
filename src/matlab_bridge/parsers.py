"""Engine output parsing.

Two families of helpers:
- JSON bridge: generate code that prints variables as one marked JSON blob,
  and extract that blob from captured output
- Text heuristics: best-effort conversion of displayed values
  (scalars, arrays, matrices, structs, cells) when JSON is unavailable
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Sequence
from typing import Any

from .types import JSON_END_MARKER, JSON_START_MARKER

__all__ = [
    "JSON_RESULT_VAR",
    "extract_json",
    "remove_json_markers",
    "generate_json_extraction_code",
    "parse_array_string",
    "parse_matrix_output",
    "parse_struct_output",
    "parse_cell_array_output",
    "parse_logical",
    "parse_scalar",
    "parse_string",
    "detect_output_type",
    "auto_parse",
]

# Temporary workspace variable holding the struct being encoded
JSON_RESULT_VAR = "mbJsonResult__"

_NUMBER_RE = re.compile(r"^[-+]?\d*\.?\d+(?:[eE][-+]?\d+)?")
_SCALAR_RE = re.compile(r"^[-+]?\d*\.?\d+(?:[eE][-+]?\d+)?[ij]?$")
_STRUCT_LINE_RE = re.compile(r"^\s*(\w+):\s*(.+)$")
_STRUCT_DETECT_RE = re.compile(r"^\s*\w+:\s*.+$", re.MULTILINE)
_CELL_ITEM_RE = re.compile(r"'([^']*)'|\b(\d+(?:\.\d+)?)\b")
_CELL_HEADER_RE = re.compile(r"^\s*\[\d+[×x]\d+\s+cell\]")
_NUMERIC_LINE_RE = re.compile(r"^[\s\d.eE+-]+$")
_LOGICAL_RE = re.compile(r"^(logical\s+)?[01]$")


def extract_json(output: str) -> Any:
    """Return the JSON value between the markers, or None.

    Missing markers or malformed JSON yield None rather than an error.
    """
    start = output.find(JSON_START_MARKER)
    end = output.find(JSON_END_MARKER)
    if start == -1 or end == -1 or end <= start:
        return None

    payload = output[start + len(JSON_START_MARKER):end]
    try:
        return json.loads(payload)
    except ValueError:
        return None


def remove_json_markers(output: str) -> str:
    """Drop the marked JSON blob from output, keeping the rest."""
    start = output.find(JSON_START_MARKER)
    end = output.find(JSON_END_MARKER)
    if start == -1 or end == -1:
        return output
    return (output[:start] + output[end + len(JSON_END_MARKER):]).strip()


def generate_json_extraction_code(variables: Sequence[str]) -> str:
    """Engine code printing ``variables`` as one marked JSON object.

    Fields are assigned one by one: ``struct('x', {1, 2})`` would build a
    struct array from cell values.
    """
    if not variables:
        return ""

    lines = [f"{JSON_RESULT_VAR} = struct();"]
    lines.extend(f"{JSON_RESULT_VAR}.{name} = {name};" for name in variables)
    lines.append(
        f"fprintf('{JSON_START_MARKER}%s{JSON_END_MARKER}\\n', jsonencode({JSON_RESULT_VAR}));"
    )
    lines.append(f"clear {JSON_RESULT_VAR};")
    return "\n".join(lines)


def parse_array_string(text: str) -> list[float]:
    """ "1 2 3" -> [1.0, 2.0, 3.0]; non-numeric tokens are dropped."""
    values: list[float] = []
    for token in text.split():
        try:
            values.append(float(token))
        except ValueError:
            continue
    return values


def parse_matrix_output(output: str) -> list[list[float]]:
    matrix = []
    for line in output.strip().split("\n"):
        row = parse_array_string(line)
        if row:
            matrix.append(row)
    return matrix


def parse_struct_output(output: str) -> dict[str, str]:
    """Parse "field: value" display lines into a dict of strings."""
    result: dict[str, str] = {}
    for line in output.strip().split("\n"):
        match = _STRUCT_LINE_RE.match(line)
        if match:
            result[match.group(1)] = match.group(2).strip()
    return result


def parse_cell_array_output(output: str) -> list[str]:
    result = []
    for match in _CELL_ITEM_RE.finditer(output):
        value = match.group(1) if match.group(1) is not None else match.group(2)
        if value is not None:
            result.append(value)
    return result


def parse_logical(output: str) -> bool | None:
    text = output.strip().lower()
    if text in ("1", "true", "logical 1"):
        return True
    if text in ("0", "false", "logical 0"):
        return False
    return None


def parse_scalar(output: str) -> float | None:
    """Parse a displayed scalar; complex values keep their real part."""
    text = output.strip()
    if text in ("Inf", "inf"):
        return math.inf
    if text in ("-Inf", "-inf"):
        return -math.inf
    if text in ("NaN", "nan"):
        return math.nan

    match = _NUMBER_RE.match(text)
    if match:
        return float(match.group(0))
    return None


def parse_string(output: str) -> str:
    text = output.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def detect_output_type(output: str) -> str:
    """Guess the displayed type.

    Returns one of: logical, string, scalar, struct, cell, matrix, array,
    unknown.
    """
    text = output.strip()

    if _LOGICAL_RE.match(text) or text.lower() in ("true", "false"):
        return "logical"

    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return "string"

    if _SCALAR_RE.match(text) or text in ("Inf", "-Inf", "NaN"):
        return "scalar"

    if _STRUCT_DETECT_RE.search(text):
        return "struct"

    if "{" in text or _CELL_HEADER_RE.match(text):
        return "cell"

    lines = [line for line in text.split("\n") if line.strip()]
    if len(lines) > 1 and all(_NUMERIC_LINE_RE.match(line) for line in lines):
        return "matrix"

    if _NUMERIC_LINE_RE.match(text) and len(text.split()) > 1:
        return "array"

    return "unknown"


def auto_parse(output: str) -> Any:
    """Parse displayed output according to detect_output_type()."""
    kind = detect_output_type(output)
    if kind == "logical":
        return parse_logical(output)
    if kind == "scalar":
        return parse_scalar(output)
    if kind == "string":
        return parse_string(output)
    if kind == "array":
        return parse_array_string(output)
    if kind == "matrix":
        return parse_matrix_output(output)
    if kind == "struct":
        return parse_struct_output(output)
    if kind == "cell":
        return parse_cell_array_output(output)
    return output.strip()
