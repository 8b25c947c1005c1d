"""
Shared test fixtures for LabelPlace tests.

Provides engines, layers and feature factories for testing candidate
generation, problem extraction and solving.
"""

import pytest
from itertools import combinations
from typing import List

from shapely.geometry import LineString, Point, Polygon

from labelplace.engine.feature import Arrangement, LabelFeature
from labelplace.engine.labeling_engine import LabelingEngine
from labelplace.engine.layer import Layer
from labelplace.engine.label_position import LabelPosition


def point_feature(fid, x: float, y: float, text: str = "", width: float = 10.0,
                  height: float = 2.0, **kwargs) -> LabelFeature:
    """A point feature with an explicit label size."""
    return LabelFeature(fid, Point(x, y), text or str(fid), width=width, height=height, **kwargs)


def line_feature(fid, coords, text: str = "", width: float = 10.0,
                 height: float = 2.0, **kwargs) -> LabelFeature:
    return LabelFeature(fid, LineString(coords), text or str(fid), width=width, height=height, **kwargs)


def polygon_feature(fid, shell, holes=None, text: str = "", width: float = 10.0,
                    height: float = 2.0, **kwargs) -> LabelFeature:
    return LabelFeature(fid, Polygon(shell, holes), text or str(fid),
                        width=width, height=height, **kwargs)


def assert_conflict_free(labels: List[LabelPosition]):
    """No two placed labels overlap."""
    for a, b in combinations(labels, 2):
        assert not a.is_in_conflict(b), f"{a} overlaps {b}"


@pytest.fixture
def engine() -> LabelingEngine:
    """Engine with default tunables."""
    return LabelingEngine()


@pytest.fixture
def point_layer(engine) -> Layer:
    """Around-point layer with no registered features."""
    return engine.add_layer("points", "points", Arrangement.AROUND_POINT)


@pytest.fixture
def three_points_engine() -> LabelingEngine:
    """Three well separated points, four candidates each."""
    engine = LabelingEngine()
    engine.max_point_candidates = 4
    layer = engine.add_layer("towns", "towns")
    layer.register_feature(point_feature("a", 0, 0))
    layer.register_feature(point_feature("b", 100, 0))
    layer.register_feature(point_feature("c", 0, 100))
    return engine


@pytest.fixture
def crowded_engine() -> LabelingEngine:
    """A 5x5 grid of points whose labels compete for space."""
    engine = LabelingEngine()
    engine.max_point_candidates = 8
    layer = engine.add_layer("grid", "grid")
    for i in range(5):
        for j in range(5):
            layer.register_feature(point_feature(f"p{i}{j}", i * 8.0, j * 4.0, is_obstacle=False))
    return engine


CROWDED_EXTENT = (-30.0, -30.0, 70.0, 50.0)


@pytest.fixture
def make_point():
    """Factory for point features."""
    return point_feature


@pytest.fixture
def make_line():
    """Factory for line features."""
    return line_feature


@pytest.fixture
def make_polygon():
    """Factory for polygon features."""
    return polygon_feature


@pytest.fixture
def check_conflict_free():
    return assert_conflict_free


@pytest.fixture
def crowded_extent():
    return CROWDED_EXTENT
