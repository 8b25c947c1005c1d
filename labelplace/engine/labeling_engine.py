"""
Labeling Engine

Registry of label layers and entry point of the placement pipeline:

    engine = LabelingEngine()
    layer = engine.add_layer(provider, "towns")
    layer.register_feature(LabelFeature("a", Point(0, 0), "Alpha"))
    problem = engine.extract_problem((-100, -100, 100, 100))
    solution = engine.solve_problem(problem)

Tunables are properties whose setters only accept valid values; an
invalid value is ignored (with a warning) and the previous one kept.
"""

import logging
import threading
from typing import Any, Callable, Dict, Hashable, List, Optional

from shapely.geometry.base import BaseGeometry

from .feature import Arrangement
from .layer import Layer
from .problem import Problem, ProblemBuilder
from .settings import EngineSettings, PlacementEngineVersion, SearchMethod, is_valid
from .solver import LabelSolver, Solution, SolverConfig
from ..index.spatial_index import BoundingBox

logger = logging.getLogger(__name__)


class DuplicateProviderError(AssertionError):
    """A provider was registered with the engine twice."""


def _tunable(name: str, doc: str):
    """Property storing a tunable, rejecting values that fail validation."""
    attr = "_" + name

    def getter(self):
        return getattr(self, attr)

    def setter(self, value):
        if not is_valid(name, value):
            logger.warning("Ignoring invalid %s=%r (keeping %r)", name, value, getattr(self, attr))
            return
        setattr(self, attr, value)

    return property(getter, setter, doc=doc)


class LabelingEngine:
    """Owns layers and tunables, runs extraction and solving."""

    max_point_candidates = _tunable("max_point_candidates", "Candidates kept per point feature (> 0)")
    max_line_candidates = _tunable("max_line_candidates", "Candidates kept per line feature (> 0)")
    max_polygon_candidates = _tunable("max_polygon_candidates", "Candidates kept per polygon feature (> 0)")
    tabu_min_iterations = _tunable("tabu_min_iterations", "Tabu iterations without improvement per feature (>= 0)")
    tabu_max_iterations = _tunable("tabu_max_iterations", "Maximum tabu iterations per feature (> 0)")
    popmusic_radius = _tunable("popmusic_radius", "Features per POPMUSIC sub-problem (> 0)")
    ejection_chain_degree = _tunable("ejection_chain_degree", "Maximum ejection chain length")
    tenure = _tunable("tenure", "Iterations a moved feature stays tabu")
    candidate_list_size_factor = _tunable("candidate_list_size_factor",
                                          "Share of moves sampled per tabu iteration")
    show_partial_labels = _tunable("show_partial_labels",
                                   "Keep candidates that only partly lie inside the map boundary")

    def __init__(self, settings: Optional[EngineSettings] = None):
        defaults = EngineSettings()
        self._max_point_candidates = defaults.max_point_candidates
        self._max_line_candidates = defaults.max_line_candidates
        self._max_polygon_candidates = defaults.max_polygon_candidates
        self._tabu_min_iterations = defaults.tabu_min_iterations
        self._tabu_max_iterations = defaults.tabu_max_iterations
        self._popmusic_radius = defaults.popmusic_radius
        self._ejection_chain_degree = defaults.ejection_chain_degree
        self._tenure = defaults.tenure
        self._candidate_list_size_factor = defaults.candidate_list_size_factor
        self._show_partial_labels = defaults.show_partial_labels
        self._placement_engine_version = defaults.placement_engine_version
        self._search_method = defaults.search_method

        self.mutex = threading.Lock()
        self._layers: Dict[Hashable, Layer] = {}
        self._cancel_fn: Optional[Callable[[Any], bool]] = None
        self._cancel_context: Any = None

        if settings is not None:
            settings.apply(self)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "LabelingEngine":
        return cls(settings)

    def __repr__(self):
        return f"LabelingEngine(layers={len(self._layers)})"

    # ------------------------------------------------------------------
    # Tunables without a validation rule beyond their type
    # ------------------------------------------------------------------

    @property
    def placement_engine_version(self) -> PlacementEngineVersion:
        return self._placement_engine_version

    @placement_engine_version.setter
    def placement_engine_version(self, value):
        try:
            self._placement_engine_version = PlacementEngineVersion(value)
        except ValueError:
            logger.warning("Ignoring unknown placement engine version %r", value)

    @property
    def search_method(self) -> SearchMethod:
        return self._search_method

    @search_method.setter
    def search_method(self, value):
        try:
            self._search_method = SearchMethod(value)
        except ValueError:
            logger.warning("Ignoring unknown search method %r", value)

    def settings(self) -> EngineSettings:
        """Snapshot of the current tunables."""
        return EngineSettings(
            max_point_candidates=self.max_point_candidates,
            max_line_candidates=self.max_line_candidates,
            max_polygon_candidates=self.max_polygon_candidates,
            tabu_min_iterations=self.tabu_min_iterations,
            tabu_max_iterations=self.tabu_max_iterations,
            popmusic_radius=self.popmusic_radius,
            ejection_chain_degree=self.ejection_chain_degree,
            tenure=self.tenure,
            candidate_list_size_factor=self.candidate_list_size_factor,
            search_method=self.search_method,
            show_partial_labels=self.show_partial_labels,
            placement_engine_version=self.placement_engine_version,
        )

    # ------------------------------------------------------------------
    # Layer registry
    # ------------------------------------------------------------------

    @property
    def layers(self) -> List[Layer]:
        """Registered layers in registration order."""
        return list(self._layers.values())

    def layer_for(self, provider: Hashable) -> Optional[Layer]:
        return self._layers.get(provider)

    def add_layer(
        self,
        provider: Hashable,
        name: str,
        arrangement: Arrangement = Arrangement.AROUND_POINT,
        default_priority: float = 0.5,
        active: bool = True,
        to_label: bool = True,
        display_all: bool = False,
    ) -> Layer:
        """Create and register the layer of a provider.

        Raises:
            DuplicateProviderError: If the provider already has a layer
        """
        with self.mutex:
            if provider in self._layers:
                raise DuplicateProviderError(f"Provider {provider!r} is already registered")
            layer = Layer(provider, name, arrangement=arrangement,
                          default_priority=default_priority, active=active,
                          to_label=to_label, engine=self, display_all=display_all)
            self._layers[provider] = layer
        logger.debug("Added layer %s", name)
        return layer

    def remove_layer(self, layer: Optional[Layer]):
        """Unregister a layer and drop its indexes.

        None and layers registered with another engine are ignored.
        """
        if layer is None:
            return
        with self.mutex:
            if self._layers.get(layer.provider) is not layer:
                return
            del self._layers[layer.provider]
        with layer.mutex:
            layer.feature_index.clear()
            layer.obstacle_index.clear()
            layer.engine = None
        logger.debug("Removed layer %s", layer.name)

    def close(self):
        """Remove every layer."""
        for layer in self.layers:
            self.remove_layer(layer)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def register_cancellation_callback(self, fn: Optional[Callable[[Any], bool]], context: Any = None):
        """Install the predicate polled during extraction and solving.

        ``fn(context)`` returning True aborts the running call. Passing
        None removes the callback.
        """
        self._cancel_fn = fn
        self._cancel_context = context

    def is_canceled(self) -> bool:
        if self._cancel_fn is None:
            return False
        return bool(self._cancel_fn(self._cancel_context))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def extract_problem(self, extent: BoundingBox,
                        map_boundary: Optional[BaseGeometry] = None) -> Optional[Problem]:
        """Build the placement problem for an extent.

        Args:
            extent: (min_x, min_y, max_x, max_y) of the map
            map_boundary: Exact visible area; defaults to the extent

        Returns:
            The Problem, or None if canceled
        """
        problem = ProblemBuilder(self).build(extent, map_boundary)
        if problem is None:
            logger.info("Extraction canceled")
        return problem

    def solver_config(self) -> SolverConfig:
        return SolverConfig(
            search_method=self.search_method,
            tabu_min_iterations=self.tabu_min_iterations,
            tabu_max_iterations=self.tabu_max_iterations,
            popmusic_radius=self.popmusic_radius,
            ejection_chain_degree=self.ejection_chain_degree,
            tenure=self.tenure,
            candidate_list_size_factor=self.candidate_list_size_factor,
        )

    def solve_problem(self, problem: Optional[Problem], display_all: bool = False) -> Solution:
        """Choose the labels to show.

        Returns an empty solution if the problem is None; a CANCELED
        one if cancellation fires while solving.
        """
        if problem is None:
            return Solution.empty()
        solution = LabelSolver(problem, self.solver_config(), self.is_canceled).solve(display_all)
        if not solution.solved:
            logger.info("Solve ended without a solution: %s", solution.outcome.value)
        return solution

    def run(self, extent: BoundingBox, map_boundary: Optional[BaseGeometry] = None,
            display_all: bool = False) -> Solution:
        """Extract and solve in one call."""
        problem = self.extract_problem(extent, map_boundary)
        if problem is None:
            return Solution.canceled()
        return self.solve_problem(problem, display_all)
