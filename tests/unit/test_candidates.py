"""
Tests for features and candidate generation.

Tests cover:
- Label sizes and priorities
- Point arrangements (around, over, cartographic)
- Line arrangements, upside-down flipping, overrun per engine version
- Polygon arrangements, holes and fallbacks
"""

import math

import pytest
from shapely.geometry import MultiPoint, Point, Polygon, box

from labelplace.engine.feature import (
    ALWAYS_SHOW_PRIORITY,
    BASE_COST,
    Arrangement,
    FeaturePart,
    LabelFeature,
    LinePlacementFlags,
)
from labelplace.engine.geometry import GeometryType, is_upside_down, label_rectangle
from labelplace.engine.label_position import LabelPosition
from labelplace.engine.labeling_engine import LabelingEngine
from labelplace.engine.settings import PlacementEngineVersion


def make_layer(arrangement, **tunables):
    engine = LabelingEngine()
    for name, value in tunables.items():
        setattr(engine, name, value)
    return engine.add_layer(object(), "test", arrangement)


# =============================================================================
# Features
# =============================================================================

class TestLabelFeature:
    def test_explicit_size(self):
        feature = LabelFeature("a", Point(0, 0), "Alpha", width=12, height=3)
        assert feature.label_size() == (12, 3)

    def test_estimated_size(self):
        feature = LabelFeature("a", Point(0, 0), "abc")
        width, height = feature.label_size()
        assert width == pytest.approx(1.8)
        assert height == pytest.approx(1.0)

    def test_multiline_estimate(self):
        feature = LabelFeature("a", Point(0, 0), "ab\nabcd")
        width, height = feature.label_size(font_height=2.0)
        assert width == pytest.approx(4 * 0.6 * 2.0)
        assert height == pytest.approx(2.0 + 2.0 * 1.2)


class TestPriority:
    def test_layer_default(self, point_layer, make_point):
        part = point_layer.register_feature(make_point("a", 0, 0))[0]
        assert part.calculate_priority() == pytest.approx(0.5)

    def test_feature_priority_wins(self, point_layer, make_point):
        part = point_layer.register_feature(make_point("a", 0, 0, priority=0.1))[0]
        assert part.calculate_priority() == pytest.approx(0.1)

    def test_always_show(self, point_layer, make_point):
        part = point_layer.register_feature(make_point("a", 0, 0, always_show=True))[0]
        assert part.calculate_priority() == ALWAYS_SHOW_PRIORITY

    def test_layer_priority_clamped(self):
        engine = LabelingEngine()
        layer = engine.add_layer("p", "p", default_priority=3.0)
        assert layer.priority == 1.0


class TestFeaturePart:
    def test_unsupported_geometry(self):
        feature = LabelFeature("a", Point(0, 0), "a")
        with pytest.raises(ValueError):
            FeaturePart(feature, MultiPoint([(0, 0), (1, 1)]))

    def test_holes_become_self_obstacles(self, make_polygon):
        feature = make_polygon("lake", [(0, 0), (100, 0), (100, 100), (0, 100)],
                               holes=[[(40, 40), (60, 40), (60, 60), (40, 60)]])
        part = FeaturePart(feature, feature.geometry)
        holes = part.self_obstacles
        assert len(holes) == 1
        assert holes[0].hole_of is part
        assert holes[0].geometry.area == pytest.approx(400)
        assert part.has_same_label_feature_as(holes[0])

    def test_same_label_feature(self):
        feature = LabelFeature("a", Point(0, 0), "a")
        other = LabelFeature("b", Point(1, 1), "b")
        part = FeaturePart(feature, feature.geometry)
        assert part.has_same_label_feature_as(FeaturePart(feature, Point(5, 5)))
        assert not part.has_same_label_feature_as(FeaturePart(other, other.geometry))
        assert not part.has_same_label_feature_as(None)


# =============================================================================
# Label rectangles
# =============================================================================

class TestLabelPosition:
    def test_rectangle_rotates_around_anchor(self):
        rect = label_rectangle(0, 0, 10, 2, math.pi / 2)
        min_x, min_y, max_x, max_y = rect.bounds
        assert min_x == pytest.approx(-2)
        assert max_x == pytest.approx(0)
        assert max_y == pytest.approx(10)

    def test_center(self):
        feature = FeaturePart(LabelFeature("a", Point(0, 0), "a"), Point(0, 0))
        lp = LabelPosition(feature, 0, 0, 10, 2)
        assert lp.center == pytest.approx((5, 1))

    def test_touching_labels_do_not_conflict(self):
        a = FeaturePart(LabelFeature("a", Point(0, 0), "a"), Point(0, 0))
        b = FeaturePart(LabelFeature("b", Point(0, 0), "b"), Point(0, 0))
        assert not LabelPosition(a, 0, 0, 10, 2).is_in_conflict(LabelPosition(b, 10, 0, 10, 2))
        assert LabelPosition(a, 0, 0, 10, 2).is_in_conflict(LabelPosition(b, 9, 1, 10, 2))

    def test_same_feature_never_conflicts(self):
        a = FeaturePart(LabelFeature("a", Point(0, 0), "a"), Point(0, 0))
        assert not LabelPosition(a, 0, 0, 10, 2).is_in_conflict(LabelPosition(a, 1, 0, 10, 2))

    def test_rotated_conflict_uses_exact_shape(self):
        a = FeaturePart(LabelFeature("a", Point(0, 0), "a"), Point(0, 0))
        b = FeaturePart(LabelFeature("b", Point(0, 0), "b"), Point(0, 0))
        diagonal = LabelPosition(a, 0, 0, 10, 1, alpha=math.pi / 4)
        # Inside the diagonal label's bounding box but clear of the label itself
        corner = LabelPosition(b, 5, 0, 1, 1)
        assert not diagonal.is_in_conflict(corner)

    @pytest.mark.parametrize("cost,expected", [
        (-0.5, 0.0),
        (0.25, 0.25),
        (1.0, 0.999),
        (7.3, 0.999),
        (float("nan"), 0.0),
    ])
    def test_validate_cost(self, cost, expected):
        a = FeaturePart(LabelFeature("a", Point(0, 0), "a"), Point(0, 0))
        lp = LabelPosition(a, 0, 0, 1, 1, cost=cost)
        lp.validate_cost()
        assert lp.cost == pytest.approx(expected)


# =============================================================================
# Point candidates
# =============================================================================

class TestPointCandidates:
    def test_around_point_count_and_order(self, make_point):
        layer = make_layer(Arrangement.AROUND_POINT, max_point_candidates=4)
        part = layer.register_feature(make_point("a", 0, 0))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 4
        assert [c.generation_id for c in candidates] == [0, 1, 2, 3]
        best = min(candidates, key=lambda c: c.cost)
        assert best.cost == pytest.approx(BASE_COST)
        assert (best.x, best.y) == pytest.approx((0, 0))
        assert best.quadrant == "top_right"

    def test_around_point_touches_the_point(self, make_point):
        layer = make_layer(Arrangement.AROUND_POINT, max_point_candidates=8)
        part = layer.register_feature(make_point("a", 3, 4))[0]
        for candidate in part.create_candidates():
            assert candidate.polygon.distance(Point(3, 4)) == pytest.approx(0, abs=1e-9)

    def test_distance_offsets_labels(self, make_point):
        layer = make_layer(Arrangement.AROUND_POINT, max_point_candidates=8)
        part = layer.register_feature(make_point("a", 0, 0, distance=2.0))[0]
        for candidate in part.create_candidates():
            assert candidate.polygon.distance(Point(0, 0)) > 1.0

    def test_over_point(self, make_point):
        layer = make_layer(Arrangement.OVER_POINT)
        part = layer.register_feature(make_point("a", 5, 5))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 1
        assert candidates[0].center == pytest.approx((5, 5))

    def test_cartographic_positions(self, make_point):
        layer = make_layer(Arrangement.CARTOGRAPHIC)
        part = layer.register_feature(make_point("a", 0, 0))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 8
        assert candidates[0].quadrant == "top_right"
        assert candidates[1].quadrant == "top_left"
        costs = [c.cost for c in candidates]
        assert costs == sorted(costs)

    def test_zero_size_label_has_no_candidates(self):
        layer = make_layer(Arrangement.AROUND_POINT)
        part = layer.register_feature(LabelFeature("a", Point(0, 0), "a", width=0, height=2))[0]
        assert part.create_candidates() == []


# =============================================================================
# Line candidates
# =============================================================================

class TestLineCandidates:
    def test_parallel_candidates(self, make_line):
        layer = make_layer(Arrangement.LINE, max_line_candidates=10)
        part = layer.register_feature(make_line("road", [(0, 0), (100, 0)]))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 30
        assert all(c.alpha == pytest.approx(0) for c in candidates)
        quadrants = {c.quadrant for c in candidates}
        assert quadrants == {"on_line", "above_line", "below_line"}

    def test_placement_flags(self, make_line):
        layer = make_layer(Arrangement.LINE, max_line_candidates=5)
        layer.line_placement_flags = LinePlacementFlags.ABOVE_LINE
        part = layer.register_feature(make_line("road", [(0, 0), (100, 0)]))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 5
        assert all(c.y == pytest.approx(0) for c in candidates)

    def test_upside_down_labels_are_flipped(self, make_line):
        layer = make_layer(Arrangement.LINE, max_line_candidates=3)
        part = layer.register_feature(make_line("road", [(100, 0), (0, 0)]))[0]
        for candidate in part.create_candidates():
            assert not is_upside_down(candidate.alpha)
            assert candidate.upside_down

    def test_upside_down_allowed(self, make_line):
        layer = make_layer(Arrangement.LINE, max_line_candidates=3)
        layer.upside_down_labels = True
        part = layer.register_feature(make_line("road", [(100, 0), (0, 0)]))[0]
        for candidate in part.create_candidates():
            assert candidate.alpha == pytest.approx(math.pi)

    def test_short_line_version_1(self, make_line):
        layer = make_layer(Arrangement.LINE, placement_engine_version=PlacementEngineVersion.VERSION_1)
        part = layer.register_feature(make_line("lane", [(0, 0), (5, 0)]))[0]
        assert part.create_candidates() == []

    def test_short_line_version_2_overruns(self, make_line):
        layer = make_layer(Arrangement.LINE)
        part = layer.register_feature(make_line("lane", [(0, 0), (5, 0)]))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 3
        assert candidates[0].center == pytest.approx((2.5, 0))

    def test_horizontal_along_line(self, make_line):
        layer = make_layer(Arrangement.HORIZONTAL, max_line_candidates=4)
        part = layer.register_feature(make_line("river", [(0, 0), (60, 60)]))[0]
        candidates = part.create_candidates()
        assert candidates
        assert all(c.alpha == 0 for c in candidates)

    def test_point_arrangement_uses_midpoint(self, make_line):
        layer = make_layer(Arrangement.OVER_POINT)
        part = layer.register_feature(make_line("road", [(0, 0), (100, 0)]))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 1
        assert candidates[0].center == pytest.approx((50, 0))


# =============================================================================
# Polygon candidates
# =============================================================================

class TestPolygonCandidates:
    def test_horizontal_inside(self, make_polygon):
        layer = make_layer(Arrangement.HORIZONTAL, max_polygon_candidates=10)
        part = layer.register_feature(make_polygon("park", [(0, 0), (100, 0), (100, 100), (0, 100)]))[0]
        candidates = part.create_candidates()
        assert candidates
        square = box(0, 0, 100, 100)
        assert all(square.contains(c.polygon) for c in candidates)

    def test_free_follows_orientation(self, make_polygon):
        layer = make_layer(Arrangement.FREE, max_polygon_candidates=5)
        strip = Polygon([(0, 0), (100, 100), (95, 105), (-5, 5)])
        part = layer.register_feature(LabelFeature("strip", strip, "strip", width=10, height=2))[0]
        candidates = part.create_candidates()
        assert candidates
        assert candidates[0].alpha == pytest.approx(math.pi / 4)

    def test_tiny_polygon_fallback_version_2(self, make_polygon):
        layer = make_layer(Arrangement.HORIZONTAL)
        part = layer.register_feature(make_polygon("pond", [(0, 0), (2, 0), (2, 2), (0, 2)]))[0]
        candidates = part.create_candidates()
        assert len(candidates) == 1
        assert candidates[0].cost == pytest.approx(0.1)
        assert candidates[0].center == pytest.approx((1, 1))

    def test_tiny_polygon_version_1(self, make_polygon):
        layer = make_layer(Arrangement.HORIZONTAL, placement_engine_version=PlacementEngineVersion.VERSION_1)
        part = layer.register_feature(make_polygon("pond", [(0, 0), (2, 0), (2, 2), (0, 2)]))[0]
        assert part.create_candidates() == []

    def test_perimeter(self, make_polygon):
        layer = make_layer(Arrangement.PERIMETER, max_polygon_candidates=4)
        part = layer.register_feature(make_polygon("park", [(0, 0), (100, 0), (100, 100), (0, 100)]))[0]
        candidates = part.create_candidates()
        assert candidates
        outline = box(0, 0, 100, 100).exterior
        assert all(c.polygon.distance(outline) < 2.0 for c in candidates)

    def test_around_centroid(self, make_polygon):
        layer = make_layer(Arrangement.OVER_POINT)
        part = layer.register_feature(make_polygon("park", [(0, 0), (10, 0), (10, 10), (0, 10)]))[0]
        assert part.geometry_type == GeometryType.POLYGON
        assert part.create_candidates()[0].center == pytest.approx((5, 5))

    def test_centroid_inside(self, make_polygon):
        layer = make_layer(Arrangement.OVER_POINT)
        layer.centroid_inside = True
        ring = [(0, 0), (30, 0), (30, 30), (20, 30), (20, 10), (10, 10), (10, 30), (0, 30)]
        part = layer.register_feature(make_polygon("u", ring))[0]
        center = Point(part.create_candidates()[0].center)
        assert part.geometry.contains(center)

    def test_point_on_surface(self, make_polygon):
        layer = make_layer(Arrangement.HORIZONTAL)
        part = layer.register_feature(make_polygon("park", [(0, 0), (10, 0), (10, 10), (0, 10)]))[0]
        unplaced = part.create_candidate_point_on_surface()
        assert part.geometry.contains(Point(unplaced.center))
