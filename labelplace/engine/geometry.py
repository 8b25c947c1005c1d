"""Geometry helpers shared by candidate generation and costing."""

import math
from enum import Enum
from typing import List, Tuple

from shapely.geometry import LineString, Point, Polygon
from shapely.geometry.base import BaseGeometry

# Default text metrics when a provider gives no label size
CHAR_WIDTH = 0.6  # fraction of the font height per character
LINE_SPACING = 1.2


class GeometryType(Enum):
    """Labelable geometry classes."""
    POINT = "point"
    LINE = "line"
    POLYGON = "polygon"


def geometry_type(geom: BaseGeometry) -> GeometryType:
    """Classify a single-part shapely geometry."""
    kind = geom.geom_type
    if kind == "Point":
        return GeometryType.POINT
    if kind in ("LineString", "LinearRing"):
        return GeometryType.LINE
    if kind == "Polygon":
        return GeometryType.POLYGON
    raise ValueError(f"Unsupported geometry type for labeling: {kind}")


def split_parts(geom: BaseGeometry) -> List[BaseGeometry]:
    """Split multi-part geometries and collections into single parts."""
    if geom is None or geom.is_empty:
        return []
    if hasattr(geom, "geoms"):
        parts: List[BaseGeometry] = []
        for sub in geom.geoms:
            parts.extend(split_parts(sub))
        return parts
    return [geom]


def label_rectangle(x: float, y: float, width: float, height: float,
                    alpha: float = 0.0) -> Polygon:
    """Rectangle with its lower-left corner at (x, y), rotated by alpha radians."""
    cos_a = math.cos(alpha)
    sin_a = math.sin(alpha)
    dx_w, dy_w = width * cos_a, width * sin_a
    dx_h, dy_h = -height * sin_a, height * cos_a
    return Polygon([
        (x, y),
        (x + dx_w, y + dy_w),
        (x + dx_w + dx_h, y + dy_w + dy_h),
        (x + dx_h, y + dy_h),
    ])


def rectangle_corners(x: float, y: float, width: float, height: float,
                      alpha: float = 0.0) -> List[Tuple[float, float]]:
    cos_a = math.cos(alpha)
    sin_a = math.sin(alpha)
    return [
        (x, y),
        (x + width * cos_a, y + width * sin_a),
        (x + width * cos_a - height * sin_a, y + width * sin_a + height * cos_a),
        (x - height * sin_a, y + height * cos_a),
    ]


def representative_point(geom: BaseGeometry) -> Point:
    """A point guaranteed to lie on the geometry."""
    if geom.geom_type == "Point":
        return geom
    return geom.representative_point()


def estimate_label_size(text: str, font_height: float = 1.0) -> Tuple[float, float]:
    """Approximate (width, height) of a possibly multi-line label."""
    lines = text.split("\n") if text else [""]
    width = max(len(line) for line in lines) * CHAR_WIDTH * font_height
    height = font_height + (len(lines) - 1) * font_height * LINE_SPACING
    return (max(width, CHAR_WIDTH * font_height), height)


def normalize_angle(alpha: float) -> float:
    """Wrap an angle into [0, 2*pi)."""
    alpha = math.fmod(alpha, 2 * math.pi)
    if alpha < 0:
        alpha += 2 * math.pi
    return alpha


def is_upside_down(alpha: float) -> bool:
    """True when text at this angle would read upside down."""
    alpha = normalize_angle(alpha)
    return math.pi / 2 < alpha <= 3 * math.pi / 2


def segment_angle(line: LineString, start: float, end: float) -> float:
    """Angle of the chord between two distances along a line."""
    p1 = line.interpolate(start)
    p2 = line.interpolate(end)
    return math.atan2(p2.y - p1.y, p2.x - p1.x)
