"""
LabelPlace - Map Label Placement Engine

Places text labels for point, line and polygon map features so that as
many labels as possible are shown without overlapping obstacles or one
another.
"""

__version__ = "0.1.0"

from .engine import (
    Arrangement,
    EngineSettings,
    LabelFeature,
    LabelingEngine,
    PlacementEngineVersion,
    SearchMethod,
    Solution,
    SolveOutcome,
)

__all__ = [
    "Arrangement",
    "EngineSettings",
    "LabelFeature",
    "LabelingEngine",
    "PlacementEngineVersion",
    "SearchMethod",
    "Solution",
    "SolveOutcome",
]
