"""Debug rendering of label placement results."""

from .svg import render_svg, write_svg

__all__ = [
    "render_svg",
    "write_svg",
]
