"""Figure export code generation.

Vector formats go through exportgraphics with a ``print`` fallback for
releases before R2020a; ``fig`` files use ``saveas``.
"""

from __future__ import annotations

from .types import FigureOptions, ImageFormat

__all__ = [
    "DEFAULT_FIGURE_OPTIONS",
    "FIGURE_SIZE_PRESETS",
    "get_extension",
    "get_print_device",
    "is_vector_format",
    "escape_path",
    "validate_output_path",
    "get_figure_size_preset",
    "generate_save_figure_code",
    "generate_save_all_figures_code",
    "generate_figure_count_code",
    "generate_close_all_figures_code",
]

DEFAULT_FIGURE_OPTIONS = FigureOptions()

FIGURE_SIZE_PRESETS = {
    "small": (400, 300),
    "medium": (800, 600),
    "large": (1200, 900),
    "widescreen": (1920, 1080),
    "square": (600, 600),
}

_PRINT_DEVICES = {
    ImageFormat.PNG: "-dpng",
    ImageFormat.SVG: "-dsvg",
    ImageFormat.PDF: "-dpdf",
    ImageFormat.EPS: "-depsc",
    ImageFormat.JPG: "-djpeg",
    ImageFormat.FIG: "",
}

_VECTOR_FORMATS = frozenset({ImageFormat.SVG, ImageFormat.PDF, ImageFormat.EPS})


def get_extension(fmt: ImageFormat | str) -> str:
    return f".{ImageFormat(fmt).value}"


def get_print_device(fmt: ImageFormat | str) -> str:
    """``print`` device flag; empty for fig (saved with saveas)."""
    return _PRINT_DEVICES[ImageFormat(fmt)]


def is_vector_format(fmt: ImageFormat | str) -> bool:
    return ImageFormat(fmt) in _VECTOR_FORMATS


def escape_path(path: str) -> str:
    """Forward slashes, doubled single quotes."""
    return path.replace("\\", "/").replace("'", "''")


def validate_output_path(path: str, fmt: ImageFormat | str) -> str:
    """Append the format's extension unless the path already has it."""
    ext = get_extension(fmt)
    if not path.lower().endswith(ext):
        return path + ext
    return path


def get_figure_size_preset(preset: str) -> tuple[int, int]:
    """(width, height) for small/medium/large/widescreen/square."""
    try:
        return FIGURE_SIZE_PRESETS[preset]
    except KeyError:
        raise ValueError(f"Unknown figure size preset: {preset}") from None


def _style_lines(handle: str, options: FigureOptions, indent: str = "") -> list[str]:
    lines = []
    if options.width and options.height:
        lines.append(f"{indent}set({handle}, 'Position', [100, 100, {options.width}, {options.height}]);")
    if options.background_color in ("transparent", "none"):
        lines.append(f"{indent}set({handle}, 'Color', 'none');")
        if handle == "gcf":
            lines.append(f"{indent}set(gca, 'Color', 'none');")
    elif options.background_color == "white":
        lines.append(f"{indent}set({handle}, 'Color', 'white');")
    return lines


def _save_lines(handle: str, target: str, options: FigureOptions, indent: str = "") -> list[str]:
    """Save statements; ``target`` is a MATLAB expression for the path."""
    fmt = options.format
    if fmt is ImageFormat.FIG:
        return [f"{indent}saveas({handle}, {target});"]

    device = get_print_device(fmt)
    if is_vector_format(fmt):
        content_type = "vector" if options.content_type == "auto" else options.content_type
        export = f"exportgraphics({handle}, {target}, 'ContentType', '{content_type}');"
        fallback = f"print({handle}, {target}, '{device}');"
    else:
        export = f"exportgraphics({handle}, {target}, 'Resolution', {options.resolution});"
        fallback = f"print({handle}, {target}, '{device}', '-r{options.resolution}');"

    return [
        f"{indent}try",
        f"{indent}    {export}",
        f"{indent}catch",
        f"{indent}    {fallback}",
        f"{indent}end",
    ]


def generate_save_figure_code(output_path: str, options: FigureOptions | None = None) -> str:
    """Code saving the current figure to ``output_path``."""
    options = options or DEFAULT_FIGURE_OPTIONS
    final_path = validate_output_path(output_path, options.format)
    target = f"'{escape_path(final_path)}'"

    lines = _style_lines("gcf", options)
    lines.extend(_save_lines("gcf", target, options))
    return "\n".join(lines)


def generate_save_all_figures_code(
    output_dir: str,
    prefix: str = "figure",
    options: FigureOptions | None = None,
) -> str:
    """Code saving every open figure as ``<dir>/<prefix>_<number><ext>``."""
    options = options or DEFAULT_FIGURE_OPTIONS
    ext = get_extension(options.format)
    prefix = prefix.replace("'", "''").replace("%", "%%")

    lines = [
        "mbFigs__ = findall(0, 'Type', 'figure');",
        "for mbI__ = 1:length(mbFigs__)",
        "    mbFig__ = mbFigs__(mbI__);",
        f"    mbFile__ = fullfile('{escape_path(output_dir)}', sprintf('{prefix}_%d{ext}', mbFig__.Number));",
        "    figure(mbFig__);",
    ]
    lines.extend(_style_lines("mbFig__", options, indent="    "))
    lines.extend(_save_lines("mbFig__", "mbFile__", options, indent="    "))
    lines.append("end")
    lines.append("clear mbFigs__ mbI__ mbFig__ mbFile__;")
    return "\n".join(lines)


def generate_figure_count_code() -> str:
    return "length(findall(0, 'Type', 'figure'))"


def generate_close_all_figures_code() -> str:
    return "close all;"
