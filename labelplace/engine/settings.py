"""
Labeling Engine Settings

The flat set of tunables the placement engine exposes, with defaults,
validation rules and YAML persistence. Settings files only carry the
flat key set below; anything else found in a file is ignored.
"""

import logging
import math
from dataclasses import dataclass, asdict, fields
from enum import Enum
from numbers import Real
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)


class PlacementEngineVersion(Enum):
    """Placement engine behaviour revisions.

    VERSION_1 drops line candidates when the label is longer than the
    line and tests obstacles by bounding box. VERSION_2 lets labels
    overrun short lines and tests obstacles against exact geometry.
    """
    VERSION_1 = 1
    VERSION_2 = 2


class SearchMethod(Enum):
    """Combinatorial search pipeline run by the solver."""
    FALP = "falp"                                  # greedy initial solution only
    CHAIN = "chain"                                # FALP + ejection chains
    POPMUSIC_TABU = "popmusic_tabu"                # FALP + POPMUSIC tabu search
    POPMUSIC_CHAIN = "popmusic_chain"              # FALP + POPMUSIC ejection chains
    POPMUSIC_TABU_CHAIN = "popmusic_tabu_chain"    # tabu sub-problems, chain polish


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_real(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


# Validation rules applied by the engine setters. Tunables without a
# rule are stored as given.
VALIDATORS: Dict[str, Callable[[Any], bool]] = {
    "max_point_candidates": lambda v: _is_int(v) and v > 0,
    "max_line_candidates": lambda v: _is_int(v) and v > 0,
    "max_polygon_candidates": lambda v: _is_int(v) and v > 0,
    "tabu_min_iterations": lambda v: _is_int(v) and v >= 0,
    "tabu_max_iterations": lambda v: _is_int(v) and v > 0,
    "popmusic_radius": lambda v: _is_int(v) and v > 0,
    "ejection_chain_degree": _is_int,
    "tenure": _is_int,
    "candidate_list_size_factor": _is_real,
    "show_partial_labels": lambda v: isinstance(v, bool),
}


def is_valid(name: str, value: Any) -> bool:
    """Check a tunable value against its validation rule."""
    check = VALIDATORS.get(name)
    if check is None:
        return True
    try:
        return bool(check(value))
    except TypeError:
        return False


@dataclass
class EngineSettings:
    """Tunables consumed by the labeling engine."""
    # Candidate counts per geometry type
    max_point_candidates: int = 16
    max_line_candidates: int = 50
    max_polygon_candidates: int = 30

    # Search
    tabu_min_iterations: int = 2  # iterations without improvement, per sub-problem feature
    tabu_max_iterations: int = 4  # hard cap on iterations, per sub-problem feature
    popmusic_radius: int = 30  # features per POPMUSIC sub-problem
    ejection_chain_degree: int = 50
    tenure: int = 10
    candidate_list_size_factor: float = 0.2
    search_method: SearchMethod = SearchMethod.POPMUSIC_TABU_CHAIN

    # Extraction
    show_partial_labels: bool = True
    placement_engine_version: PlacementEngineVersion = PlacementEngineVersion.VERSION_2

    # Presentation flags, read by renderers only
    draw_candidates: bool = False
    draw_unplaced: bool = False
    unplaced_color: str = "#ff0000"

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict suitable for YAML/JSON."""
        data = asdict(self)
        data["search_method"] = self.search_method.value
        data["placement_engine_version"] = self.placement_engine_version.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineSettings":
        """Build settings from a dict, keeping defaults for invalid values."""
        settings = cls()
        known = {f.name for f in fields(cls)}
        for key, value in (data or {}).items():
            if key not in known:
                logger.warning("Ignoring unknown labeling setting '%s'", key)
                continue
            try:
                value = _coerce(key, value)
            except (TypeError, ValueError) as e:
                logger.warning("Ignoring invalid value for '%s': %s", key, e)
                continue
            if not is_valid(key, value):
                logger.warning("Ignoring out-of-range value for '%s': %r", key, value)
                continue
            setattr(settings, key, value)
        return settings

    def apply(self, engine):
        """Push every tunable through the engine's validated setters."""
        engine.max_point_candidates = self.max_point_candidates
        engine.max_line_candidates = self.max_line_candidates
        engine.max_polygon_candidates = self.max_polygon_candidates
        engine.tabu_min_iterations = self.tabu_min_iterations
        engine.tabu_max_iterations = self.tabu_max_iterations
        engine.popmusic_radius = self.popmusic_radius
        engine.ejection_chain_degree = self.ejection_chain_degree
        engine.tenure = self.tenure
        engine.candidate_list_size_factor = self.candidate_list_size_factor
        engine.search_method = self.search_method
        engine.show_partial_labels = self.show_partial_labels
        engine.placement_engine_version = self.placement_engine_version


def _coerce(key: str, value: Any) -> Any:
    if key == "search_method":
        return value if isinstance(value, SearchMethod) else SearchMethod(value)
    if key == "placement_engine_version":
        if isinstance(value, PlacementEngineVersion):
            return value
        return PlacementEngineVersion(int(value))
    if key in ("show_partial_labels", "draw_candidates", "draw_unplaced"):
        if not isinstance(value, bool):
            raise TypeError(f"expected a boolean, got {value!r}")
        return value
    if key == "unplaced_color":
        return str(value)
    if key == "candidate_list_size_factor":
        return float(value)
    if isinstance(value, bool) or isinstance(value, float) and not value.is_integer():
        raise TypeError(f"expected an integer, got {value!r}")
    return int(value)


def load_engine_settings(path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """Load settings from a YAML file.

    A missing file yields the defaults. The file may hold the keys at
    top level or under a ``labeling`` mapping.
    """
    if path is None:
        return EngineSettings()

    config_path = Path(path)
    if not config_path.exists():
        logger.warning("Labeling settings not found at %s, using defaults", config_path)
        return EngineSettings()

    with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a mapping of settings")
    if isinstance(data.get("labeling"), dict):
        data = data["labeling"]

    logger.debug("Loaded labeling settings from %s", config_path)
    return EngineSettings.from_dict(data)


def save_engine_settings(settings: EngineSettings, path: Union[str, Path]):
    """Write settings to a YAML file under a ``labeling`` mapping."""
    with open(path, "w") as f:
        yaml.safe_dump({"labeling": settings.to_dict()}, f, sort_keys=False)
