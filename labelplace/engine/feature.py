"""
Label Features and Candidate Generation

A ``LabelFeature`` is what a provider hands to a layer: one map
feature with its label text, label size and labeling options. The layer
splits it into ``FeaturePart`` objects, one per single-part geometry,
and each part generates its own candidate label positions according to
the layer's arrangement:

- Points: around the point, over the point, or at cartographically
  ordered positions
- Lines: along the line (parallel, optionally above/below) or with
  horizontal labels sliding along it
- Polygons: horizontal or free (rotated) labels inside the polygon,
  around/over the centroid, or along the perimeter
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum, Flag, auto
from typing import TYPE_CHECKING, List, Optional, Tuple

from shapely.geometry import LineString, Point, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import substring
from shapely.prepared import prep

from .geometry import (
    GeometryType,
    estimate_label_size,
    geometry_type,
    is_upside_down,
    normalize_angle,
    representative_point,
    segment_angle,
)
from .label_position import LabelPosition
from .settings import PlacementEngineVersion
from ..index.spatial_index import BoundingBox

if TYPE_CHECKING:
    from .layer import Layer

logger = logging.getLogger(__name__)

# Priority used for features that must always be shown. Negative so the
# inactive cost (2 ** (10 - 10 * priority)) exceeds any regular feature.
ALWAYS_SHOW_PRIORITY = -0.2

# Base cost of a candidate at the preferred position
BASE_COST = 0.0001

# Hard cap on candidates tried inside a polygon grid
_MAX_POLYGON_GRID = 2000


class Arrangement(Enum):
    """How labels are arranged relative to their feature."""
    AROUND_POINT = "around_point"
    OVER_POINT = "over_point"
    CARTOGRAPHIC = "cartographic"
    LINE = "line"
    HORIZONTAL = "horizontal"
    FREE = "free"
    PERIMETER = "perimeter"


class LinePlacementFlags(Flag):
    """Which sides of a line labels may sit on."""
    ON_LINE = auto()
    ABOVE_LINE = auto()
    BELOW_LINE = auto()


DEFAULT_LINE_FLAGS = LinePlacementFlags.ON_LINE | LinePlacementFlags.ABOVE_LINE | LinePlacementFlags.BELOW_LINE

# Cartographic positions in order of preference: (name, dx sign, dy sign)
CARTOGRAPHIC_POSITIONS: Tuple[Tuple[str, int, int], ...] = (
    ("top_right", 1, 1),
    ("top_left", -1, 1),
    ("bottom_right", 1, -1),
    ("bottom_left", -1, -1),
    ("middle_right", 1, 0),
    ("middle_left", -1, 0),
    ("top_middle", 0, 1),
    ("bottom_middle", 0, -1),
)


@dataclass
class LabelFeature:
    """A provider-side feature to be labeled (or used as an obstacle)."""
    feature_id: object
    geometry: BaseGeometry
    label_text: str = ""
    width: Optional[float] = None  # label size in map units
    height: Optional[float] = None
    priority: float = -1.0  # 0 = most important, 1 = least, -1 = layer default
    is_obstacle: bool = True
    obstacle_factor: float = 1.0
    always_show: bool = False
    distance: float = 0.0  # gap between point features and their labels
    obstacle_geometry: Optional[BaseGeometry] = None

    def label_size(self, font_height: float = 1.0) -> Tuple[float, float]:
        """Label (width, height), estimated from the text when not given."""
        if self.width is not None and self.height is not None:
            return (self.width, self.height)
        est_w, est_h = estimate_label_size(self.label_text, font_height)
        return (self.width if self.width is not None else est_w,
                self.height if self.height is not None else est_h)


class FeaturePart:
    """One single-part geometry of a label feature.

    Holes of polygon parts become self-obstacles: obstacles that only
    affect this part's own candidates.
    """

    def __init__(self, label_feature: LabelFeature, geometry: BaseGeometry,
                 layer: Optional["Layer"] = None, hole_of: Optional["FeaturePart"] = None,
                 merged_from: Tuple[LabelFeature, ...] = ()):
        self.label_feature = label_feature
        self.geometry = geometry
        self.geometry_type = geometry_type(geometry)
        self.layer = layer
        self.hole_of = hole_of
        # Other features joined into this part by line merging
        self.merged_from = merged_from
        self._self_obstacles: Optional[List["FeaturePart"]] = None

    def __repr__(self):
        return f"FeaturePart(id={self.feature_id!r}, type={self.geometry_type.value})"

    @property
    def feature_id(self):
        return self.label_feature.feature_id

    @property
    def label_text(self) -> str:
        return self.label_feature.label_text

    @property
    def bounding_box(self) -> BoundingBox:
        return tuple(self.geometry.bounds)

    @property
    def always_show(self) -> bool:
        return self.label_feature.always_show

    @property
    def obstacle_factor(self) -> float:
        return self.label_feature.obstacle_factor

    @property
    def label_features(self) -> Tuple[LabelFeature, ...]:
        return (self.label_feature,) + self.merged_from

    def has_same_label_feature_as(self, other: "FeaturePart") -> bool:
        if other is None:
            return False
        return any(mine is theirs
                   for mine in self.label_features
                   for theirs in other.label_features)

    @property
    def self_obstacles(self) -> List["FeaturePart"]:
        """Holes of this part, as obstacle parts."""
        if self._self_obstacles is None:
            self._self_obstacles = []
            if self.geometry_type == GeometryType.POLYGON and self.hole_of is None:
                for ring in self.geometry.interiors:
                    hole = Polygon(ring)
                    if hole.is_empty or hole.area <= 0:
                        continue
                    self._self_obstacles.append(
                        FeaturePart(self.label_feature, hole, layer=self.layer, hole_of=self))
        return self._self_obstacles

    def calculate_priority(self) -> float:
        """Priority in [0, 1] (0 most important), or below 0 for always-show."""
        if self.label_feature.always_show:
            return ALWAYS_SHOW_PRIORITY
        if self.label_feature.priority >= 0:
            return self.label_feature.priority
        return self.layer.priority if self.layer else 0.5

    # ------------------------------------------------------------------
    # Candidate generation
    # ------------------------------------------------------------------

    def _max_candidates(self) -> int:
        if self.layer is None:
            return 16
        return self.layer.max_candidates_for(self.geometry_type)

    def _engine_version(self) -> PlacementEngineVersion:
        if self.layer is not None and self.layer.engine is not None:
            return self.layer.engine.placement_engine_version
        return PlacementEngineVersion.VERSION_2

    def create_candidates(self) -> List[LabelPosition]:
        """Generate candidate positions for this part's label."""
        arrangement = self.layer.arrangement if self.layer else Arrangement.AROUND_POINT
        width, height = self.label_feature.label_size()
        if width <= 0 or height <= 0:
            return []

        gtype = self.geometry_type
        if gtype == GeometryType.POINT:
            candidates = self._point_candidates(self.geometry, arrangement, width, height)
        elif gtype == GeometryType.LINE:
            if arrangement in (Arrangement.AROUND_POINT, Arrangement.OVER_POINT,
                               Arrangement.CARTOGRAPHIC):
                anchor = self.geometry.interpolate(0.5, normalized=True)
                candidates = self._point_candidates(anchor, arrangement, width, height)
            else:
                candidates = self._line_candidates(self.geometry, arrangement, width, height)
        else:
            if arrangement in (Arrangement.AROUND_POINT, Arrangement.OVER_POINT,
                               Arrangement.CARTOGRAPHIC):
                candidates = self._point_candidates(self._polygon_anchor(), arrangement, width, height)
            elif arrangement in (Arrangement.PERIMETER, Arrangement.LINE):
                ring = LineString(self.geometry.exterior.coords)
                candidates = self._line_candidates(ring, Arrangement.LINE, width, height)
            else:
                candidates = self._polygon_candidates(arrangement, width, height)

        for i, candidate in enumerate(candidates):
            candidate.generation_id = i
        return candidates

    def create_candidate_point_on_surface(self) -> Optional[LabelPosition]:
        """A single label centred on a point of the feature.

        Used to report where a feature without surviving candidates
        would have been labeled.
        """
        if self.geometry.is_empty:
            return None
        width, height = self.label_feature.label_size()
        point = representative_point(self.geometry)
        return LabelPosition(self, point.x - width / 2, point.y - height / 2,
                             width, height, cost=BASE_COST, quadrant="over")

    def _polygon_anchor(self) -> Point:
        centroid = self.geometry.centroid
        centroid_inside = self.layer.centroid_inside if self.layer else False
        if centroid.is_empty or (centroid_inside and not self.geometry.contains(centroid)):
            return representative_point(self.geometry)
        return centroid

    def _distance(self) -> float:
        return max(self.label_feature.distance, 0.0)

    def _point_candidates(self, point: Point, arrangement: Arrangement,
                          width: float, height: float) -> List[LabelPosition]:
        if arrangement == Arrangement.OVER_POINT:
            return [LabelPosition(self, point.x - width / 2, point.y - height / 2,
                                  width, height, cost=BASE_COST, quadrant="over")]
        if arrangement == Arrangement.CARTOGRAPHIC:
            return self._cartographic_candidates(point, width, height)
        return self._around_point_candidates(point, width, height)

    def _around_point_candidates(self, point: Point, width: float,
                                 height: float) -> List[LabelPosition]:
        """Candidates evenly spread on a circle, top-right preferred."""
        count = self._max_candidates()
        distance = self._distance()
        preferred = math.pi / 4
        step = 2 * math.pi / count
        sqrt2 = math.sqrt(2)

        candidates = []
        for i in range(count):
            angle = normalize_angle(preferred + i * step)
            cos_a = math.cos(angle)
            sin_a = math.sin(angle)
            anchor_x = point.x + distance * cos_a
            anchor_y = point.y + distance * sin_a
            # Slide the rectangle so its nearest corner/edge touches the anchor
            cx = max(-1.0, min(1.0, cos_a * sqrt2))
            cy = max(-1.0, min(1.0, sin_a * sqrt2))
            x = anchor_x - width * (1 - cx) / 2
            y = anchor_y - height * (1 - cy) / 2

            deviation = abs(normalize_angle(angle - preferred + math.pi) - math.pi)
            cost = BASE_COST + 0.002 * deviation / math.pi
            candidates.append(LabelPosition(self, x, y, width, height, cost=cost,
                                            quadrant=_quadrant_name(angle)))
        return candidates

    def _cartographic_candidates(self, point: Point, width: float,
                                 height: float) -> List[LabelPosition]:
        count = min(self._max_candidates(), len(CARTOGRAPHIC_POSITIONS))
        distance = self._distance()
        diagonal = distance / math.sqrt(2)

        candidates = []
        for i, (name, sx, sy) in enumerate(CARTOGRAPHIC_POSITIONS[:count]):
            offset = diagonal if sx and sy else distance
            anchor_x = point.x + sx * offset
            anchor_y = point.y + sy * offset
            x = anchor_x - width * (1 - sx) / 2
            y = anchor_y - height * (1 - sy) / 2
            candidates.append(LabelPosition(self, x, y, width, height,
                                            cost=BASE_COST * (1 + i), quadrant=name))
        return candidates

    def _line_candidates(self, line: LineString, arrangement: Arrangement,
                         width: float, height: float) -> List[LabelPosition]:
        """Labels sliding along a line, parallel to it or horizontal."""
        length = line.length
        if length <= 0:
            return []

        if width > length:
            if self._engine_version() == PlacementEngineVersion.VERSION_1:
                return []
            # Overrun: a single label centred on the line
            stations = [length / 2]
            overrun = True
        else:
            free = length - width
            count = max(1, min(self._max_candidates(), int(free / max(height, 1e-9)) + 1))
            if count == 1:
                stations = [length / 2]
            else:
                stations = [width / 2 + free * i / (count - 1) for i in range(count)]
            overrun = False

        flags = self.layer.line_placement_flags if self.layer else DEFAULT_LINE_FLAGS
        allow_upside_down = self.layer.upside_down_labels if self.layer else False
        distance = self._distance()

        candidates = []
        for station in stations:
            start = max(station - width / 2, 0.0)
            end = min(station + width / 2, length)
            if arrangement == Arrangement.HORIZONTAL:
                alpha = 0.0
                straightness = 1.0
            else:
                alpha = segment_angle(line, start, end)
                piece = substring(line, start, end)
                chord = line.interpolate(start).distance(line.interpolate(end))
                straightness = chord / piece.length if piece.length > 0 else 1.0
                if straightness < 0.5 and not overrun:
                    continue

            flipped = False
            if not allow_upside_down and is_upside_down(alpha):
                alpha = normalize_angle(alpha + math.pi)
                flipped = True
            alpha = normalize_angle(alpha)

            centre = line.interpolate(station)
            position_cost = abs(station - length / 2) / (length / 2) if length > 0 else 0.0
            cost = BASE_COST + 0.25 * (1 - straightness) + 0.05 * position_cost
            if overrun:
                cost += 0.3 * (width - length) / width

            sin_a = math.sin(alpha)
            cos_a = math.cos(alpha)
            for flag, side, side_cost in (
                (LinePlacementFlags.ON_LINE, 0.0, 0.0),
                (LinePlacementFlags.ABOVE_LINE, 1.0, 0.001),
                (LinePlacementFlags.BELOW_LINE, -1.0, 0.002),
            ):
                if not flag & flags:
                    continue
                offset = side * (height / 2 + distance)
                cx = centre.x - sin_a * offset
                cy = centre.y + cos_a * offset
                x = cx - (width / 2) * cos_a + (height / 2) * sin_a
                y = cy - (width / 2) * sin_a - (height / 2) * cos_a
                candidates.append(LabelPosition(
                    self, x, y, width, height, alpha=alpha,
                    cost=min(cost + side_cost, 0.99),
                    quadrant=flag.name.lower(), upside_down=flipped))
        return candidates

    def _polygon_candidates(self, arrangement: Arrangement, width: float,
                            height: float) -> List[LabelPosition]:
        """Labels fully inside the polygon on a regular grid."""
        polygon = self.geometry
        alpha = 0.0
        if arrangement == Arrangement.FREE:
            alpha = _principal_angle(polygon)

        min_x, min_y, max_x, max_y = polygon.bounds
        span_x, span_y = max_x - min_x, max_y - min_y
        target = max(self._max_candidates() * 4, 4)
        area = span_x * span_y
        step = math.sqrt(area / target) if area > 0 else max(span_x, span_y, 1e-9)
        step = max(step, 1e-9)

        nx = min(max(int(span_x / step), 1), _MAX_POLYGON_GRID)
        ny = min(max(int(span_y / step), 1), max(_MAX_POLYGON_GRID // nx, 1))
        sin_a = math.sin(alpha)
        cos_a = math.cos(alpha)
        prepared = prep(polygon)

        candidates = []
        for j in range(ny):
            cy = min_y + span_y * (j + 0.5) / ny
            for i in range(nx):
                cx = min_x + span_x * (i + 0.5) / nx
                x = cx - (width / 2) * cos_a + (height / 2) * sin_a
                y = cy - (width / 2) * sin_a - (height / 2) * cos_a
                candidate = LabelPosition(self, x, y, width, height, alpha=alpha,
                                          cost=BASE_COST, quadrant="inside")
                if prepared.contains(candidate.polygon):
                    candidates.append(candidate)

        if not candidates and self._engine_version() == PlacementEngineVersion.VERSION_2:
            # Label larger than the polygon: centre it on the polygon anyway
            anchor = self._polygon_anchor()
            candidates.append(LabelPosition(
                self, anchor.x - width / 2, anchor.y - height / 2, width, height,
                cost=0.1, quadrant="over"))
        return candidates


def _principal_angle(polygon: Polygon) -> float:
    """Orientation of the polygon's longer minimum-rectangle side, kept upright."""
    rect = polygon.minimum_rotated_rectangle
    if rect.geom_type != "Polygon":
        return 0.0
    coords = list(rect.exterior.coords)
    edges = [(coords[i], coords[i + 1]) for i in range(2)]
    (x1, y1), (x2, y2) = max(edges, key=lambda e: math.dist(e[0], e[1]))
    alpha = normalize_angle(math.atan2(y2 - y1, x2 - x1))
    if is_upside_down(alpha):
        alpha = normalize_angle(alpha + math.pi)
    return alpha


def _quadrant_name(angle: float) -> str:
    octant = int(((normalize_angle(angle) + math.pi / 8) % (2 * math.pi)) // (math.pi / 4))
    return ("right", "top_right", "top", "top_left",
            "left", "bottom_left", "bottom", "bottom_right")[octant]
