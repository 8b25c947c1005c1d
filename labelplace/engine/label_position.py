"""Label position candidates."""

import math
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from shapely.geometry import Polygon

from .geometry import label_rectangle, rectangle_corners
from ..index.spatial_index import BoundingBox, SpatialHashIndex

if TYPE_CHECKING:
    from .feature import FeaturePart

# Overlap area below this fraction of the smaller label is treated as touching
_CONFLICT_AREA_EPSILON = 1e-9

# Largest cost a validated candidate can carry
MAX_VALID_COST = 0.999


class LabelPosition:
    """One candidate placement of a feature's label.

    The position is the lower-left corner of the label rectangle, which
    is rotated by ``alpha`` radians around that corner.
    """

    def __init__(self, feature: "FeaturePart", x: float, y: float,
                 width: float, height: float, alpha: float = 0.0,
                 cost: float = 0.0, quadrant: Optional[str] = None,
                 upside_down: bool = False):
        self.feature = feature
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.alpha = alpha
        self.cost = cost
        self.quadrant = quadrant
        self.upside_down = upside_down

        self.generation_id = 0  # order of creation within the feature
        self.problem_feature_id = -1
        self.problem_id = -1
        self.num_overlaps = 0
        self.conflicts_with_obstacle = False

        self._polygon: Optional[Polygon] = None
        self._bbox: Optional[BoundingBox] = None

    def __repr__(self):
        return (f"LabelPosition(feature={self.feature.feature_id!r}, x={self.x:.3f}, "
                f"y={self.y:.3f}, alpha={self.alpha:.3f}, cost={self.cost:.4f})")

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    @property
    def polygon(self) -> Polygon:
        if self._polygon is None:
            self._polygon = label_rectangle(self.x, self.y, self.width, self.height, self.alpha)
        return self._polygon

    @property
    def bounding_box(self) -> BoundingBox:
        if self._bbox is None:
            corners = rectangle_corners(self.x, self.y, self.width, self.height, self.alpha)
            xs = [c[0] for c in corners]
            ys = [c[1] for c in corners]
            self._bbox = (min(xs), min(ys), max(xs), max(ys))
        return self._bbox

    @property
    def center(self) -> Tuple[float, float]:
        cos_a = math.cos(self.alpha)
        sin_a = math.sin(self.alpha)
        hw, hh = self.width / 2, self.height / 2
        return (self.x + hw * cos_a - hh * sin_a,
                self.y + hw * sin_a + hh * cos_a)

    @property
    def is_axis_aligned(self) -> bool:
        return math.isclose(math.sin(self.alpha), 0.0, abs_tol=1e-12)

    def intersects(self, prepared_boundary) -> bool:
        """Check if the label touches a prepared boundary geometry."""
        return prepared_boundary.intersects(self.polygon)

    def within(self, prepared_boundary) -> bool:
        """Check if the label lies completely inside a prepared boundary."""
        return prepared_boundary.contains(self.polygon)

    def is_in_conflict(self, other: "LabelPosition") -> bool:
        """Check whether two candidates of different features overlap.

        Labels that only share an edge are not in conflict.
        """
        if other is self or other.feature is self.feature:
            return False
        a = self.bounding_box
        b = other.bounding_box
        if a[2] <= b[0] or b[2] <= a[0] or a[3] <= b[1] or b[3] <= a[1]:
            return False
        if self.is_axis_aligned and other.is_axis_aligned:
            return True
        area = self.polygon.intersection(other.polygon).area
        smaller = min(self.width * self.height, other.width * other.height)
        return area > _CONFLICT_AREA_EPSILON * max(smaller, 1e-12)

    # ------------------------------------------------------------------
    # Index membership
    # ------------------------------------------------------------------

    def insert_into_index(self, index: SpatialHashIndex):
        index.insert(self, self.bounding_box)

    def remove_from_index(self, index: SpatialHashIndex):
        index.remove(self)

    # ------------------------------------------------------------------
    # Problem bookkeeping
    # ------------------------------------------------------------------

    def set_problem_ids(self, feature_id: int, label_id: int):
        self.problem_feature_id = feature_id
        self.problem_id = label_id

    def reset_num_overlaps(self):
        self.num_overlaps = 0

    def count_overlap(self, other: "LabelPosition") -> bool:
        """Visitor for candidate index scans: count conflicts with self."""
        if self.is_in_conflict(other):
            self.num_overlaps += 1
        return True

    def validate_cost(self):
        """Clamp cost into [0, 1)."""
        if self.cost >= 1:
            self.cost = MAX_VALID_COST
        elif self.cost < 0 or math.isnan(self.cost):
            self.cost = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Serializable summary used by the CLI and renderers."""
        cx, cy = self.center
        return {
            "feature_id": self.feature.feature_id,
            "layer": self.feature.layer.name if self.feature.layer else None,
            "text": self.feature.label_text,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "rotation": math.degrees(self.alpha),
            "center": [cx, cy],
            "cost": self.cost,
            "upside_down": self.upside_down,
        }
