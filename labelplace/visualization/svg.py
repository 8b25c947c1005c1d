"""
SVG Rendering

Draws a solved placement for inspection: features, placed labels,
optionally every candidate of the problem and the unplaced labels.
"""

import logging
from html import escape
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from shapely.geometry.base import BaseGeometry

from ..engine.geometry import split_parts
from ..engine.label_position import LabelPosition
from ..engine.problem import Problem
from ..engine.settings import EngineSettings
from ..engine.solver import Solution
from ..index.spatial_index import BoundingBox

logger = logging.getLogger(__name__)

BACKGROUND = "#ffffff"
FEATURE_COLOR = "#607d8b"
LABEL_COLOR = "#3498db"
CANDIDATE_COLOR = "#bdbdbd"


def _solution_extent(solution: Solution, problem: Optional[Problem]) -> BoundingBox:
    if problem is not None:
        return problem.map_extent_bounds
    boxes = [lp.bounding_box for lp in solution.labels + solution.unlabeled]
    if not boxes:
        return (0.0, 0.0, 100.0, 100.0)
    return (min(b[0] for b in boxes), min(b[1] for b in boxes),
            max(b[2] for b in boxes), max(b[3] for b in boxes))


def render_svg(
    solution: Solution,
    problem: Optional[Problem] = None,
    settings: Optional[EngineSettings] = None,
    extent: Optional[BoundingBox] = None,
    width: int = 800,
) -> str:
    """Render a solution as an SVG document.

    Args:
        solution: Solved placement
        problem: Problem the solution came from (features and candidates)
        settings: Presentation flags (draw_candidates, draw_unplaced,
            unplaced_color); defaults draw placed labels only
        extent: Area to draw; defaults to the problem's extent
        width: SVG width in pixels

    Returns:
        SVG string
    """
    settings = settings or EngineSettings()
    min_x, min_y, max_x, max_y = extent or _solution_extent(solution, problem)
    map_width = max_x - min_x
    map_height = max_y - min_y
    if map_width <= 0 or map_height <= 0:
        map_width = map_height = 100.0

    height = int(width * map_height / map_width)
    padding = 20
    svg_width = width + 2 * padding
    svg_height = height + 2 * padding
    scale = width / map_width

    def tx(x: float) -> float:
        return padding + (x - min_x) * scale

    def ty(y: float) -> float:
        # Flip Y for SVG coordinate system
        return padding + (max_y - y) * scale

    def points(coords: Iterable[Tuple[float, float]]) -> str:
        return " ".join(f"{tx(x):.2f},{ty(y):.2f}" for x, y in coords)

    svg_parts: List[str] = [
        f'<svg xmlns="http://www.w3.org/2000/svg" '
        f'width="{svg_width}" height="{svg_height}" '
        f'viewBox="0 0 {svg_width} {svg_height}">',
        f'<rect width="100%" height="100%" fill="{BACKGROUND}"/>',
    ]

    if problem is not None:
        for part in problem.features:
            svg_parts.extend(_geometry_svg(part.geometry, points, tx, ty))

    if settings.draw_candidates and problem is not None:
        for lp in problem.candidates:
            svg_parts.append(
                f'<polygon points="{points(lp.polygon.exterior.coords)}" fill="none" '
                f'stroke="{CANDIDATE_COLOR}" stroke-width="0.5" class="candidate"/>'
            )

    for lp in solution.labels:
        svg_parts.append(_label_svg(lp, points, tx, ty, LABEL_COLOR, "label"))

    if settings.draw_unplaced:
        for lp in solution.unlabeled:
            svg_parts.append(_label_svg(lp, points, tx, ty, settings.unplaced_color, "unplaced"))

    svg_parts.append("</svg>")
    logger.debug("Rendered %d labels (%d unplaced)", len(solution.labels), len(solution.unlabeled))
    return "\n".join(svg_parts)


def _geometry_svg(geom: BaseGeometry, points, tx, ty) -> List[str]:
    parts = []
    for g in split_parts(geom):
        if g.geom_type == "Point":
            parts.append(f'<circle cx="{tx(g.x):.2f}" cy="{ty(g.y):.2f}" r="2" '
                         f'fill="{FEATURE_COLOR}" class="feature"/>')
        elif g.geom_type == "LineString":
            parts.append(f'<polyline points="{points(g.coords)}" fill="none" '
                         f'stroke="{FEATURE_COLOR}" stroke-width="1" class="feature"/>')
        elif g.geom_type == "Polygon":
            parts.append(f'<polygon points="{points(g.exterior.coords)}" fill="{FEATURE_COLOR}" '
                         f'fill-opacity="0.15" stroke="{FEATURE_COLOR}" class="feature"/>')
    return parts


def _label_svg(lp: LabelPosition, points, tx, ty, color: str, css_class: str) -> str:
    cx, cy = lp.center
    text = escape(lp.feature.label_text or str(lp.feature.feature_id))
    return (
        f'<g class="{css_class}">'
        f'<polygon points="{points(lp.polygon.exterior.coords)}" fill="{color}" '
        f'fill-opacity="0.25" stroke="{color}" stroke-width="1"/>'
        f'<text x="{tx(cx):.2f}" y="{ty(cy):.2f}" fill="{color}" font-size="10" '
        f'text-anchor="middle" dominant-baseline="middle">{text}</text>'
        f'</g>'
    )


def write_svg(path: Union[str, Path], solution: Solution, problem: Optional[Problem] = None,
              settings: Optional[EngineSettings] = None, extent: Optional[BoundingBox] = None):
    """Render a solution and write it to a file."""
    Path(path).write_text(render_svg(solution, problem, settings, extent))
    logger.info("Wrote SVG to %s", path)
