"""Label placement engine: layers, candidates, costs, problems and the solver."""

from .feature import Arrangement, FeaturePart, LabelFeature, LinePlacementFlags
from .label_position import LabelPosition
from .labeling_engine import DuplicateProviderError, LabelingEngine
from .layer import Layer
from .problem import Problem, ProblemBuilder
from .settings import (
    EngineSettings,
    PlacementEngineVersion,
    SearchMethod,
    load_engine_settings,
    save_engine_settings,
)
from .solver import LabelSolver, Solution, SolveOutcome, SolverConfig

__all__ = [
    "Arrangement",
    "FeaturePart",
    "LabelFeature",
    "LinePlacementFlags",
    "LabelPosition",
    "DuplicateProviderError",
    "LabelingEngine",
    "Layer",
    "Problem",
    "ProblemBuilder",
    "EngineSettings",
    "PlacementEngineVersion",
    "SearchMethod",
    "load_engine_settings",
    "save_engine_settings",
    "LabelSolver",
    "Solution",
    "SolveOutcome",
    "SolverConfig",
]
