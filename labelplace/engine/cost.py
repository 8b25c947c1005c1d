"""
Candidate Cost Calculation

Costs are small positive numbers where lower is better. Generation
gives each candidate a base cost describing how good its position is
relative to its own feature; obstacles then add penalties of roughly
one unit per conflict, and finalization ranks, trims and normalizes
each feature's candidate list before the candidates enter a Problem.
"""

import logging
import math
from typing import TYPE_CHECKING, Sequence, Tuple

from shapely.geometry import Point, box

from .feature import Arrangement, FeaturePart
from .geometry import GeometryType
from .label_position import LabelPosition
from .settings import PlacementEngineVersion
from ..index.spatial_index import BoundingBox

if TYPE_CHECKING:
    from .problem import Feats

logger = logging.getLogger(__name__)

# Cost given to every kept candidate when all of a feature's candidates
# conflict with obstacles
FLATTENED_COST = 0.0021

# Weight of the distance-to-border term for candidates inside polygons
POLYGON_DISTANCE_WEIGHT = 0.0049

# Polygon obstacle penalty per fraction of the label covered
POLYGON_OVERLAP_WEIGHT = 4.0


def candidate_sort_key(candidate: LabelPosition) -> Tuple[float, int]:
    """Sort candidates best first: ascending cost, then generation order."""
    return (candidate.cost, candidate.generation_id)


def inactive_cost(priority: float) -> float:
    """Penalty for leaving a feature unlabeled.

    Priority 1.0 (least important) costs 1, priority 0.0 costs 1024.
    """
    return math.pow(2, 10 - 10 * priority)


def obstacle_applies(candidate: LabelPosition, obstacle: FeaturePart) -> bool:
    """Holes only repel their own feature's labels; other obstacles
    never repel their own feature's labels."""
    feature = candidate.feature
    if obstacle.hole_of is not None:
        return feature.has_same_label_feature_as(obstacle.hole_of)
    return not feature.has_same_label_feature_as(obstacle)


def obstacle_conflict_amount(candidate: LabelPosition, obstacle: FeaturePart,
                             version: PlacementEngineVersion) -> float:
    """How strongly a candidate collides with an obstacle (0 = not at all)."""
    a = candidate.bounding_box
    b = obstacle.bounding_box
    if a[2] < b[0] or b[2] < a[0] or a[3] < b[1] or b[3] < a[1]:
        return 0.0

    if version == PlacementEngineVersion.VERSION_1:
        return 1.0

    label = candidate.polygon
    geom = obstacle.geometry
    if obstacle.geometry_type == GeometryType.POINT:
        return 1.0 if label.intersects(geom) and not label.touches(geom) else 0.0

    if obstacle.geometry_type == GeometryType.LINE:
        crossing = label.intersection(geom)
        if crossing.is_empty or crossing.length <= 0:
            return 0.0
        return float(len(getattr(crossing, "geoms", [crossing])))

    area = label.area
    if area <= 0:
        return 0.0
    covered = label.intersection(geom).area / area
    return POLYGON_OVERLAP_WEIGHT * covered


def add_obstacle_cost_penalty(candidate: LabelPosition, obstacle: FeaturePart,
                              version: PlacementEngineVersion) -> bool:
    """Increase a candidate's cost for colliding with an obstacle.

    Returns True if the candidate conflicted with the obstacle.
    """
    if not obstacle_applies(candidate, obstacle):
        return False
    amount = obstacle_conflict_amount(candidate, obstacle, version)
    if amount <= 0:
        return False
    candidate.conflicts_with_obstacle = True
    candidate.cost += obstacle.obstacle_factor * amount
    return True


def finalize_candidates_costs(feats: "Feats", max_candidates: int,
                              extent: BoundingBox) -> int:
    """Rank a feature's candidates and decide how many to keep.

    Candidates are split by integer cost thresholds: only those under
    the first threshold that holds any candidate survive, so a
    candidate free of obstacles always beats one that hits an obstacle.

    Returns:
        Number of leading candidates to keep
    """
    candidates = feats.candidates
    if not candidates:
        return 0
    candidates.sort(key=candidate_sort_key)

    discrim = 0.0
    stop = 0
    worst = candidates[-1].cost
    while True:
        discrim += 1.0
        stop = 0
        while stop < len(candidates) and candidates[stop].cost < discrim:
            stop += 1
        if stop > 0 or discrim >= worst + 2.0:
            break

    if discrim > 1.5:
        for candidate in candidates[:stop]:
            candidate.cost = FLATTENED_COST

    max_candidates = min(max_candidates, stop)

    feature = feats.feature
    arrangement = feature.layer.arrangement if feature.layer else None
    if (feature.geometry_type == GeometryType.POLYGON
            and arrangement in (Arrangement.HORIZONTAL, Arrangement.FREE)):
        set_polygon_candidates_cost(candidates[:stop], feature, extent)
        candidates[:stop] = sorted(candidates[:stop], key=candidate_sort_key)

    add_size_penalty(feature, candidates[:max_candidates], extent)
    return max_candidates


def set_polygon_candidates_cost(candidates: Sequence[LabelPosition],
                                feature: FeaturePart, extent: BoundingBox):
    """Favour candidates far from the polygon border and the map edge."""
    if not candidates:
        return
    border = feature.geometry.boundary
    edge = box(*extent).boundary
    distances = []
    for candidate in candidates:
        center = Point(candidate.center)
        distances.append(min(border.distance(center), edge.distance(center)))
    max_distance = max(distances)
    if max_distance <= 0:
        return
    for candidate, distance in zip(candidates, distances):
        candidate.cost += POLYGON_DISTANCE_WEIGHT * (1 - distance / max_distance)


def add_size_penalty(feature: FeaturePart, candidates: Sequence[LabelPosition],
                     extent: BoundingBox):
    """Penalize labels of lines and polygons that are small on the map."""
    width = extent[2] - extent[0]
    height = extent[3] - extent[1]
    if feature.geometry_type == GeometryType.LINE:
        reference = max(width, height) / 4
        if reference <= 0:
            return
        size = feature.geometry.length
    elif feature.geometry_type == GeometryType.POLYGON:
        reference = width * height / 16
        if reference <= 0:
            return
        size = feature.geometry.area
    else:
        return

    if size >= reference:
        return
    size_cost = min(max(1 - size / reference, 0.0), 1.0)
    for candidate in candidates:
        candidate.cost += size_cost / 100
