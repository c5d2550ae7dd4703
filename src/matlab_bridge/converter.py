"""Python value -> MATLAB source conversion.

``to_matlab_code(value)`` renders a Python value as a MATLAB expression:

    None            -> []
    True / False    -> true / false
    int / float     -> 42, 3.5, 1e+20, Inf, -Inf, NaN
    complex         -> complex(1, 2)
    str             -> 'it''s'
    list of str     -> {'a', 'b'}
    list of lists   -> [1, 2; 3, 4]
    list of numbers -> [1, 2, 3]
    mixed list      -> {1, 'a', []}
    datetime / date -> datetime(2024, 1, 31, 12, 0, 0)
    dict            -> struct('a', 1, 'b', {{'x', 'y'}})
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from .types import MatlabDataType, VariableInfo

__all__ = [
    "MATLAB_KEYWORDS",
    "MAX_NAME_LENGTH",
    "to_matlab_code",
    "convert_to_matlab",
    "sanitize_field_name",
    "generate_set_variables_code",
    "infer_matlab_type",
    "create_variable_info",
    "parse_complex_number",
    "is_valid_matlab_name",
    "is_matlab_keyword",
]

MAX_NAME_LENGTH = 63

MATLAB_KEYWORDS = frozenset({
    "break", "case", "catch", "classdef", "continue", "else", "elseif",
    "end", "for", "function", "global", "if", "otherwise", "parfor",
    "persistent", "return", "spmd", "switch", "try", "while",
})

_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]{0,62}$")
_INVALID_CHARS_RE = re.compile(r"[^a-zA-Z0-9_]")
_COMPLEX_RE = re.compile(
    r"^([-+]?\d*\.?\d+(?:[eE][-+]?\d+)?)\s*([-+])\s*(\d*\.?\d+(?:[eE][-+]?\d+)?)[ij]$"
)
_IMAGINARY_RE = re.compile(r"^([-+]?\d*\.?\d+(?:[eE][-+]?\d+)?)[ij]$")


def to_matlab_code(value: Any, var_name: str | None = None) -> str:
    """Render ``value`` as an expression, or an assignment if var_name is given."""
    expression = convert_to_matlab(value)
    return f"{var_name} = {expression};" if var_name else expression


def convert_to_matlab(value: Any) -> str:
    if value is None:
        return "[]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, complex):
        return f"complex({_format_number(value.real)}, {_format_number(value.imag)})"
    if isinstance(value, str):
        return _format_string(value)
    if isinstance(value, datetime):
        return (
            f"datetime({value.year}, {value.month}, {value.day}, "
            f"{value.hour}, {value.minute}, {value.second})"
        )
    if isinstance(value, date):
        return f"datetime({value.year}, {value.month}, {value.day})"
    if isinstance(value, Mapping):
        return _format_struct(value)
    if isinstance(value, (list, tuple)):
        return _format_array(list(value))
    return str(value)


def _format_number(number: int | float) -> str:
    if isinstance(number, int):
        return str(number)
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "Inf" if number > 0 else "-Inf"
    if abs(number) > 1e10 or (number != 0 and abs(number) < 1e-10):
        mantissa, exponent = f"{number:.15e}".split("e")
        mantissa = mantissa.rstrip("0").rstrip(".")
        return f"{mantissa}e{int(exponent):+d}"
    return repr(number)


def _format_string(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def _is_numeric(item: Any) -> bool:
    return isinstance(item, (bool, int, float, complex))


def _format_array(items: list[Any]) -> str:
    if not items:
        return "[]"

    if all(isinstance(item, (list, tuple)) for item in items):
        rows = [", ".join(convert_to_matlab(v) for v in row) for row in items]
        return f"[{'; '.join(rows)}]"

    if all(isinstance(item, str) for item in items):
        return "{" + ", ".join(_format_string(item) for item in items) + "}"

    if all(_is_numeric(item) for item in items):
        return "[" + ", ".join(convert_to_matlab(item) for item in items) + "]"

    return "{" + ", ".join(convert_to_matlab(item) for item in items) + "}"


def _format_struct(mapping: Mapping[Any, Any]) -> str:
    if not mapping:
        return "struct()"

    fields = []
    for key, value in mapping.items():
        rendered = convert_to_matlab(value)
        # struct('f', {..}) would build a struct array
        if rendered.startswith("{"):
            rendered = "{" + rendered + "}"
        fields.append(f"'{sanitize_field_name(str(key))}', {rendered}")
    return f"struct({', '.join(fields)})"


def sanitize_field_name(name: str) -> str:
    """Make ``name`` a valid field/variable name (max 63 chars)."""
    sanitized = _INVALID_CHARS_RE.sub("_", name)
    if not sanitized[:1].isalpha() or not sanitized[:1].isascii():
        sanitized = f"f_{sanitized}"
    return sanitized[:MAX_NAME_LENGTH]


def generate_set_variables_code(variables: Mapping[str, Any]) -> str:
    """One assignment line per variable, names sanitized."""
    return "\n".join(
        f"{sanitize_field_name(name)} = {convert_to_matlab(value)};"
        for name, value in variables.items()
    )


def infer_matlab_type(value: Any) -> MatlabDataType:
    if value is None:
        return MatlabDataType.DOUBLE
    if isinstance(value, bool):
        return MatlabDataType.LOGICAL
    if isinstance(value, (int, float, complex)):
        return MatlabDataType.DOUBLE
    if isinstance(value, str):
        return MatlabDataType.CHAR
    if isinstance(value, (datetime, date)):
        return MatlabDataType.DATETIME
    if isinstance(value, Mapping):
        return MatlabDataType.STRUCT
    if isinstance(value, (list, tuple)):
        if not value:
            return MatlabDataType.DOUBLE
        if all(isinstance(item, str) for item in value):
            return MatlabDataType.CELL
        if len({type(item) for item in value}) > 1:
            return MatlabDataType.CELL
        return MatlabDataType.DOUBLE
    return MatlabDataType.UNKNOWN


def create_variable_info(name: str, value: Any) -> VariableInfo:
    if value is None:
        size = [0, 0]
    elif isinstance(value, (list, tuple)):
        if not value:
            size = [0, 0]
        elif isinstance(value[0], (list, tuple)):
            size = [len(value), len(value[0])]
        else:
            size = [1, len(value)]
    elif isinstance(value, str):
        size = [1, len(value)]
    else:
        size = [1, 1]

    return VariableInfo(
        name=name,
        size=size,
        type=infer_matlab_type(value),
        complex=isinstance(value, complex),
    )


def parse_complex_number(text: str) -> complex | None:
    """Parse "3+4i", "-3.5-2.1j" or "4i"; None if not a complex literal."""
    text = text.strip()
    match = _COMPLEX_RE.match(text)
    if match:
        sign = -1 if match.group(2) == "-" else 1
        return complex(float(match.group(1)), sign * float(match.group(3)))

    match = _IMAGINARY_RE.match(text)
    if match:
        return complex(0, float(match.group(1)))

    return None


def is_valid_matlab_name(name: str) -> bool:
    """Letter first, then letters/digits/underscores, at most 63 chars."""
    return bool(_NAME_RE.match(name))


def is_matlab_keyword(name: str) -> bool:
    return name.lower() in MATLAB_KEYWORDS
