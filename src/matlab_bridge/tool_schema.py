"""Tool schema definitions.

Tool names, descriptions, parameter schemas and the mapping from tool
name to the tool family used by MATLAB_BRIDGE_ENABLE / DISABLE.
"""

from __future__ import annotations

from typing import Any

from .types import ImageFormat

__all__ = [
    "TOOL_FAMILIES",
    "TOOL_DESCRIPTIONS",
    "TOOL_NAMES",
    "tool_family",
    "create_tool_schema",
]

# Tool name -> family (see config.SUPPORTED_TOOLS)
TOOL_FAMILIES = {
    "matlab_run": "run",
    "matlab_eval": "eval",
    "matlab_get_variables": "variables",
    "matlab_call_function": "function",
    "matlab_save_figure": "figure",
    "matlab_info": "info",
    "matlab_session_start": "session",
    "matlab_session_run": "session",
    "matlab_session_get_variable": "session",
    "matlab_session_set_variable": "session",
    "matlab_session_close": "session",
    "matlab_session_list": "session",
}

TOOL_NAMES = list(TOOL_FAMILIES)

TOOL_DESCRIPTIONS = {
    "matlab_run": """Run MATLAB code (or an existing .m file) in a fresh batch process.

Each call starts a new MATLAB process: variables do NOT persist between
calls. Use matlab_session_* tools for a persistent workspace.

Returns the printed output and any warnings.""",

    "matlab_eval": """Evaluate a single MATLAB expression and return its displayed value.

Example: expression="magic(3)".""",

    "matlab_get_variables": """Run MATLAB code, then return the named variables as JSON.

Values are encoded with jsonencode: matrices become nested lists,
structs become objects.""",

    "matlab_call_function": """Call a MATLAB function with JSON arguments.

Arguments are converted to MATLAB literals (lists -> matrices, objects ->
structs). Returns the first `nargout` outputs as a JSON list.""",

    "matlab_save_figure": """Run plotting code and save the current figure to a file.

Supports png, jpg, svg, pdf, eps and fig.""",

    "matlab_info": """Report MATLAB installation details: path, version and (optionally) toolboxes.""",

    "matlab_session_start": """Start a persistent interactive MATLAB session.

Returns a session_id. Commands sent with matlab_session_run share the
same workspace and run one at a time in submission order.""",

    "matlab_session_run": """Run MATLAB code in an existing session and return its output.

A command that times out is reported as failed, but the engine keeps
working on it; later commands wait until it finishes.""",

    "matlab_session_get_variable": """Read a workspace variable from a session as JSON.""",

    "matlab_session_set_variable": """Assign a JSON value to a workspace variable in a session.""",

    "matlab_session_close": """Close a session: pending commands are rejected and the process exits.""",

    "matlab_session_list": """List open sessions with their state and queue length.""",
}

_TIMEOUT_PROP = {
    "type": "integer",
    "minimum": 0,
    "description": "Timeout in milliseconds (0 = none). Defaults to the server setting.",
}

_DEBUG_PROP = {
    "type": "boolean",
    "description": "Include timing details in the response.",
}

_SESSION_ID_PROP = {
    "type": "string",
    "description": "Session id returned by matlab_session_start.",
}

_PATH_LIST_PROP = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Directories added to the MATLAB path first.",
}


def tool_family(name: str) -> str | None:
    return TOOL_FAMILIES.get(name)


def create_tool_schema(name: str) -> dict[str, Any]:
    """Build the JSON schema for a tool's arguments."""
    properties: dict[str, Any]
    required: list[str]

    if name == "matlab_run":
        properties = {
            "code": {
                "type": "string",
                "description": "MATLAB code, or the path of an existing .m file.",
            },
            "cwd": {"type": "string", "description": "Working directory."},
            "add_path": _PATH_LIST_PROP,
            "timeout_ms": _TIMEOUT_PROP,
        }
        required = ["code"]
    elif name == "matlab_eval":
        properties = {
            "expression": {"type": "string", "description": "MATLAB expression."},
            "timeout_ms": _TIMEOUT_PROP,
        }
        required = ["expression"]
    elif name == "matlab_get_variables":
        properties = {
            "code": {"type": "string", "description": "MATLAB code that defines the variables."},
            "variables": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": 1,
                "description": "Variable names to return.",
            },
            "timeout_ms": _TIMEOUT_PROP,
        }
        required = ["code", "variables"]
    elif name == "matlab_call_function":
        properties = {
            "function": {"type": "string", "description": "Function name."},
            "args": {"type": "array", "description": "Positional arguments.", "default": []},
            "nargout": {"type": "integer", "minimum": 1, "default": 1},
            "timeout_ms": _TIMEOUT_PROP,
        }
        required = ["function"]
    elif name == "matlab_save_figure":
        properties = {
            "code": {"type": "string", "description": "MATLAB plotting code."},
            "output_path": {"type": "string", "description": "Image file path."},
            "format": {
                "type": "string",
                "enum": [fmt.value for fmt in ImageFormat],
                "default": ImageFormat.PNG.value,
            },
            "resolution": {"type": "integer", "minimum": 1, "default": 300},
            "width": {"type": "integer", "minimum": 1},
            "height": {"type": "integer", "minimum": 1},
            "timeout_ms": _TIMEOUT_PROP,
        }
        required = ["code", "output_path"]
    elif name == "matlab_info":
        properties = {
            "include_toolboxes": {
                "type": "boolean",
                "default": False,
                "description": "Also list installed toolboxes (slow).",
            },
        }
        required = []
    elif name == "matlab_session_start":
        properties = {
            "cwd": {"type": "string", "description": "Initial working directory."},
            "add_path": _PATH_LIST_PROP,
            "timeout_ms": {
                "type": "integer",
                "minimum": 0,
                "description": "Default per-command timeout in milliseconds.",
            },
        }
        required = []
    elif name == "matlab_session_run":
        properties = {
            "session_id": _SESSION_ID_PROP,
            "code": {"type": "string", "description": "MATLAB code."},
            "timeout_ms": _TIMEOUT_PROP,
        }
        required = ["session_id", "code"]
    elif name == "matlab_session_get_variable":
        properties = {
            "session_id": _SESSION_ID_PROP,
            "name": {"type": "string", "description": "Variable name."},
        }
        required = ["session_id", "name"]
    elif name == "matlab_session_set_variable":
        properties = {
            "session_id": _SESSION_ID_PROP,
            "name": {"type": "string", "description": "Variable name."},
            "value": {"description": "JSON value to assign."},
        }
        required = ["session_id", "name", "value"]
    elif name == "matlab_session_close":
        properties = {"session_id": _SESSION_ID_PROP}
        required = ["session_id"]
    elif name == "matlab_session_list":
        properties = {}
        required = []
    else:
        raise ValueError(f"Unknown tool: {name}")

    if name not in ("matlab_session_list", "matlab_session_close"):
        properties["debug"] = _DEBUG_PROP

    return {
        "type": "object",
        "properties": properties,
        "required": required,
    }
