"""
Label Layers

A layer is the registration unit for one label provider. It owns the
provider's feature parts in a feature index (parts to be labeled) and
an obstacle index (parts labels should avoid), both guarded by the
layer's own lock so providers can keep registering features while other
layers are being extracted.
"""

import logging
import threading
from collections import OrderedDict
from typing import TYPE_CHECKING, Hashable, Iterator, List, Optional, Sequence

from shapely.geometry import LineString, MultiLineString
from shapely.ops import linemerge, substring

from .feature import Arrangement, DEFAULT_LINE_FLAGS, FeaturePart, LabelFeature, LinePlacementFlags
from .geometry import GeometryType, split_parts
from ..index.spatial_index import BoundingBox, SpatialHashIndex

if TYPE_CHECKING:
    from .labeling_engine import LabelingEngine

logger = logging.getLogger(__name__)


class Layer:
    """A set of features labeled with shared settings."""

    def __init__(
        self,
        provider: Hashable,
        name: str,
        arrangement: Arrangement = Arrangement.AROUND_POINT,
        default_priority: float = 0.5,
        active: bool = True,
        to_label: bool = True,
        engine: Optional["LabelingEngine"] = None,
        display_all: bool = False,
    ):
        """
        Args:
            provider: Object supplying this layer's features (registry key)
            name: Layer name reported in Problem metadata
            arrangement: How labels are placed relative to features
            default_priority: Priority of features without their own, in
                [0, 1] where 0 is the most important
            active: Inactive layers are skipped by extraction
            to_label: False makes the layer contribute obstacles only
            engine: Owning engine, source of default candidate counts
            display_all: Show every feature's label even when it conflicts
        """
        self.provider = provider
        self.name = name
        self.arrangement = arrangement
        self.priority = min(max(default_priority, 0.0), 1.0)
        self.active = active
        self.to_label = to_label
        self.engine = engine
        self.display_all = display_all

        self.merge_connected_lines = False
        self.repeat_distance = 0.0
        self.line_placement_flags: LinePlacementFlags = DEFAULT_LINE_FLAGS
        self.upside_down_labels = False
        self.centroid_inside = False

        # Per-layer overrides of the engine's candidate counts
        self.max_point_candidates: Optional[int] = None
        self.max_line_candidates: Optional[int] = None
        self.max_polygon_candidates: Optional[int] = None

        self.feature_index = SpatialHashIndex()
        self.obstacle_index = SpatialHashIndex()
        self.mutex = threading.Lock()

        self._feature_parts: List[FeaturePart] = []
        self._obstacle_parts: List[FeaturePart] = []
        self._connected: "OrderedDict[str, List[FeaturePart]]" = OrderedDict()
        self._unchopped: List[FeaturePart] = []

    def __repr__(self):
        return f"Layer(name={self.name!r}, features={len(self._feature_parts)})"

    @property
    def feature_parts(self) -> List[FeaturePart]:
        return list(self._feature_parts)

    @property
    def obstacle_parts(self) -> List[FeaturePart]:
        return list(self._obstacle_parts)

    def max_candidates_for(self, gtype: GeometryType) -> int:
        """Maximum candidates kept per feature of a geometry type."""
        if gtype == GeometryType.POINT:
            override, attr = self.max_point_candidates, "max_point_candidates"
        elif gtype == GeometryType.LINE:
            override, attr = self.max_line_candidates, "max_line_candidates"
        else:
            override, attr = self.max_polygon_candidates, "max_polygon_candidates"
        if override is not None and override > 0:
            return override
        if self.engine is not None:
            return getattr(self.engine, attr)
        return {"max_point_candidates": 16, "max_line_candidates": 50,
                "max_polygon_candidates": 30}[attr]

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_feature(self, feature: LabelFeature) -> List[FeaturePart]:
        """Split a feature into parts and index them.

        Returns:
            The label parts created (empty for obstacle-only features)
        """
        if feature.geometry is None or not hasattr(feature.geometry, "geom_type"):
            raise ValueError(f"Feature {feature.feature_id!r} has no shapely geometry")

        label_parts: List[FeaturePart] = []
        with self.mutex:
            if self.to_label:
                for geom in split_parts(feature.geometry):
                    part = FeaturePart(feature, geom, layer=self)
                    self._add_feature_part(part)
                    label_parts.append(part)

            if feature.is_obstacle:
                if feature.obstacle_geometry is None and label_parts:
                    obstacles = label_parts
                else:
                    source = feature.obstacle_geometry or feature.geometry
                    obstacles = [FeaturePart(feature, geom, layer=self)
                                 for geom in split_parts(source)]
                for part in obstacles:
                    self.obstacle_index.insert(part, part.bounding_box)
                    self._obstacle_parts.append(part)

        if not label_parts and not feature.is_obstacle:
            logger.debug("Feature %r in layer %s contributes nothing", feature.feature_id, self.name)
        return label_parts

    def _add_feature_part(self, part: FeaturePart):
        self.feature_index.insert(part, part.bounding_box)
        self._feature_parts.append(part)
        if part.geometry_type == GeometryType.LINE:
            self._unchopped.append(part)
            if self.merge_connected_lines and part.label_text:
                self._connected.setdefault(part.label_text, []).append(part)

    def _remove_feature_part(self, part: FeaturePart):
        self.feature_index.remove(part)
        self._feature_parts.remove(part)

    # ------------------------------------------------------------------
    # Line preprocessing
    # ------------------------------------------------------------------

    def join_connected_features(self) -> int:
        """Merge touching line parts that share the same label text.

        Returns:
            Number of parts removed by merging
        """
        removed = 0
        with self.mutex:
            for text, parts in self._connected.items():
                if len(parts) < 2:
                    continue
                merged = linemerge(MultiLineString([p.geometry for p in parts]))
                merged_lines = [g for g in split_parts(merged) if g.geom_type == "LineString"]
                if len(merged_lines) >= len(parts):
                    continue

                first = parts[0]
                for part in parts:
                    self._remove_feature_part(part)
                    if part in self._unchopped:
                        self._unchopped.remove(part)
                merged_from = tuple(p.label_feature for p in parts[1:])
                for line in merged_lines:
                    new_part = FeaturePart(first.label_feature, line, layer=self,
                                           merged_from=merged_from)
                    self.feature_index.insert(new_part, new_part.bounding_box)
                    self._feature_parts.append(new_part)
                    self._unchopped.append(new_part)
                removed += len(parts) - len(merged_lines)
                logger.debug("Layer %s: merged %d lines labeled %r into %d",
                             self.name, len(parts), text, len(merged_lines))
            self._connected.clear()
        return removed

    def chop_features_at_repeat_distance(self) -> int:
        """Cut lines longer than the repeat distance into pieces.

        Each piece gets its own candidates, so long lines are labeled
        repeatedly. Lines are only ever chopped once.

        Returns:
            Number of pieces created
        """
        if self.repeat_distance <= 0:
            return 0
        created = 0
        with self.mutex:
            pending, self._unchopped = self._unchopped, []
            for part in pending:
                length = part.geometry.length
                if length <= self.repeat_distance:
                    continue
                pieces = _chop_line(part.geometry, self.repeat_distance)
                if len(pieces) < 2:
                    continue
                self._remove_feature_part(part)
                for piece in pieces:
                    new_part = FeaturePart(part.label_feature, piece, layer=self,
                                           merged_from=part.merged_from)
                    self.feature_index.insert(new_part, new_part.bounding_box)
                    self._feature_parts.append(new_part)
                    created += 1
        return created

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def features_in(self, bbox: BoundingBox) -> Iterator[FeaturePart]:
        return self.feature_index.iter_intersecting(bbox)

    def obstacles_in(self, bbox: BoundingBox) -> Iterator[FeaturePart]:
        return self.obstacle_index.iter_intersecting(bbox)


def _chop_line(line: LineString, distance: float) -> Sequence[LineString]:
    """Split a line into consecutive pieces of (roughly) equal length."""
    length = line.length
    count = max(int(length // distance), 1)
    if length - count * distance > 1e-9 * length:
        count += 1
    step = length / count
    pieces = []
    for i in range(count):
        piece = substring(line, i * step, min((i + 1) * step, length))
        if piece.geom_type == "LineString" and piece.length > 0:
            pieces.append(piece)
    return pieces
