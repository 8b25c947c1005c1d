"""
Label Placement Problem

``ProblemBuilder`` turns the registered layers into a ``Problem`` for
one map extent:

1. Collect features and obstacles inside the extent from every active
   layer, generating candidates per feature
2. Drop candidates outside the map boundary (or only partially inside,
   unless partial labels are allowed)
3. Penalize candidates hitting obstacles
4. Finalize costs and keep the best candidates per feature
5. Number candidates and count pairwise overlaps

The resulting Problem is the solver's read-only input.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from shapely.prepared import prep

from .cost import add_obstacle_cost_penalty, candidate_sort_key, finalize_candidates_costs, inactive_cost
from .feature import FeaturePart
from .label_position import LabelPosition
from ..index.spatial_index import BoundingBox, SpatialHashIndex

if TYPE_CHECKING:
    from .labeling_engine import LabelingEngine

logger = logging.getLogger(__name__)

# Cost of one pair of overlapping active labels. Exceeds every inactive
# cost, so dropping a label is always cheaper than overlapping it.
OVERLAP_PENALTY = 8192.0


@dataclass
class Feats:
    """A feature part with its filtered, sorted candidates (extraction only)."""
    feature: FeaturePart
    candidates: List[LabelPosition] = field(default_factory=list)
    priority: float = 0.5


class Problem:
    """Immutable optimization input for one map extent.

    Candidates are stored in one flat list; feature ``i`` owns the
    contiguous id range ``[feature_start_ids[i], feature_start_ids[i] +
    feature_candidate_counts[i])``.
    """

    def __init__(self, extent: BoundingBox):
        self.map_extent_bounds: BoundingBox = tuple(extent)
        self.features: Tuple[FeaturePart, ...] = ()
        self.feature_candidate_counts: Tuple[int, ...] = ()
        self.feature_start_ids: Tuple[int, ...] = ()
        self.inactive_costs: Tuple[float, ...] = ()
        self.candidates: Tuple[LabelPosition, ...] = ()
        self.candidate_index = SpatialHashIndex()
        self.positions_with_no_candidates: Tuple[LabelPosition, ...] = ()
        self.labelled_layer_names: Tuple[str, ...] = ()
        self.total_candidates = 0
        self.nb_overlap = 0

    def __repr__(self):
        return (f"Problem(features={self.feature_count}, candidates={self.total_candidates}, "
                f"overlaps={self.nb_overlap})")

    @property
    def feature_count(self) -> int:
        return len(self.features)

    @property
    def layer_count(self) -> int:
        return len(self.labelled_layer_names)

    def feature_candidates(self, feature_id: int) -> Sequence[LabelPosition]:
        start = self.feature_start_ids[feature_id]
        return self.candidates[start:start + self.feature_candidate_counts[feature_id]]

    def conflicts_of(self, label_id: int) -> List[int]:
        """Ids of the candidates overlapping a candidate, ascending."""
        lp = self.candidates[label_id]
        ids = [other.problem_id for other in self.candidate_index.iter_intersecting(lp.bounding_box)
               if lp.is_in_conflict(other)]
        ids.sort()
        return ids

    def solution_cost(self, active_ids: Sequence[int]) -> float:
        """Objective of an assignment (one label id or -1 per feature).

        Sum of active candidate costs, inactive costs of unlabeled
        features and the overlap penalty of every conflicting active pair.
        """
        active = set()
        total = 0.0
        for fid, lid in enumerate(active_ids):
            if lid < 0:
                total += self.inactive_costs[fid]
            else:
                total += self.candidates[lid].cost
                active.add(lid)
        for lid in active:
            for other in self.conflicts_of(lid):
                if other > lid and other in active:
                    total += OVERLAP_PENALTY
        return total

    def overlap_sum(self) -> int:
        """Raw sum of per-candidate overlap counters (each pair counted twice)."""
        return sum(lp.num_overlaps for lp in self.candidates)


class ProblemBuilder:
    """Extracts a Problem from an engine's layers."""

    def __init__(self, engine: "LabelingEngine"):
        self.engine = engine

    def _canceled(self) -> bool:
        return self.engine.is_canceled()

    def build(self, extent: BoundingBox, map_boundary: Optional[BaseGeometry] = None) -> Optional[Problem]:
        """Build the problem, or return None if extraction was canceled."""
        engine = self.engine
        extent = tuple(extent)
        if map_boundary is None:
            map_boundary = box(*extent)
        boundary = prep(map_boundary)
        partial = engine.show_partial_labels
        version = engine.placement_engine_version

        problem = Problem(extent)
        obstacles = SpatialHashIndex()
        features: List[Feats] = []
        no_candidates: List[LabelPosition] = []
        layer_names: List[str] = []
        obstacle_count = 0
        generated = 0

        with engine.mutex:
            for layer in engine.layers:
                if not layer.active:
                    continue
                if layer.merge_connected_lines:
                    layer.join_connected_features()
                layer.chop_features_at_repeat_distance()

                previous_features = len(features)
                previous_obstacles = obstacle_count
                with layer.mutex:
                    for part in layer.features_in(extent):
                        if self._canceled():
                            return None
                        for hole in part.self_obstacles:
                            obstacles.insert(hole, hole.bounding_box)

                        candidates = part.create_candidates()
                        generated += len(candidates)
                        if partial:
                            candidates = [lp for lp in candidates if lp.intersects(boundary)]
                        else:
                            candidates = [lp for lp in candidates if lp.within(boundary)]

                        if candidates:
                            for lp in candidates:
                                lp.insert_into_index(problem.candidate_index)
                            candidates.sort(key=candidate_sort_key)
                            features.append(Feats(part, candidates, part.calculate_priority()))
                        else:
                            unplaced = part.create_candidate_point_on_surface()
                            if unplaced is not None:
                                no_candidates.append(unplaced)

                    for obstacle in layer.obstacles_in(extent):
                        obstacles.insert(obstacle, obstacle.bounding_box)
                        obstacle_count += 1

                if len(features) > previous_features or obstacle_count > previous_obstacles:
                    layer_names.append(layer.name)

        problem.labelled_layer_names = tuple(layer_names)
        problem.positions_with_no_candidates = tuple(no_candidates)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Extraction: layers=%d features=%d unplaceable=%d obstacles=%d generated=%d kept=%d",
                len(layer_names), len(features), len(no_candidates), len(obstacles),
                generated, len(problem.candidate_index),
            )

        if features:
            if not self._prune_candidates(problem, obstacles, version):
                return None
            if not self._assemble(problem, features, extent):
                return None

        logger.info("Extracted problem: %d features, %d candidates, %d overlaps",
                    problem.feature_count, problem.total_candidates, problem.nb_overlap)
        return problem

    def _prune_candidates(self, problem: Problem, obstacles: SpatialHashIndex, version) -> bool:
        """Penalize candidates for every obstacle they hit."""
        index = problem.candidate_index
        hits = 0

        def visit(obstacle: FeaturePart) -> bool:
            nonlocal hits
            if self._canceled():
                return False
            for lp in index.iter_intersecting(obstacle.bounding_box):
                if add_obstacle_cost_penalty(lp, obstacle, version):
                    hits += 1
            return True

        completed = obstacles.search(None, visit)
        if not completed or self._canceled():
            return False
        logger.debug("Obstacle pruning: %d candidate/obstacle conflicts", hits)
        return True

    def _assemble(self, problem: Problem, features: List[Feats], extent: BoundingBox) -> bool:
        """Truncate candidate lists, number candidates and count overlaps."""
        index = problem.candidate_index
        starts: List[int] = []
        counts: List[int] = []
        inactive: List[float] = []
        parts: List[FeaturePart] = []
        flat: List[LabelPosition] = []
        dropped = 0

        next_id = 0
        for i, feat in enumerate(features):
            starts.append(next_id)
            inactive.append(inactive_cost(feat.priority))
            parts.append(feat.feature)

            max_p = feat.feature.layer.max_candidates_for(feat.feature.geometry_type)
            max_p = finalize_candidates_costs(feat, max_p, extent)

            while len(feat.candidates) > max_p:
                feat.candidates.pop().remove_from_index(index)
                dropped += 1

            counts.append(len(feat.candidates))
            for lp in feat.candidates:
                lp.set_problem_ids(i, next_id)
                next_id += 1

        overlap_sum = 0
        for feat in features:
            if self._canceled():
                return False
            for lp in feat.candidates:
                lp.reset_num_overlaps()
                lp.validate_cost()
                index.search(lp.bounding_box, lp.count_overlap)
                overlap_sum += lp.num_overlaps
                flat.append(lp)

        problem.features = tuple(parts)
        problem.feature_start_ids = tuple(starts)
        problem.feature_candidate_counts = tuple(counts)
        problem.inactive_costs = tuple(inactive)
        problem.candidates = tuple(flat)
        problem.total_candidates = len(flat)
        problem.nb_overlap = overlap_sum // 2

        logger.debug("Assembled problem: dropped=%d candidates=%d overlap_sum=%d",
                     dropped, len(flat), overlap_sum)
        return True
