"""
Label Providers

A provider supplies the features of one layer. The engine keys layers
by provider, so each provider object registers exactly one layer.

GeoJSON feature properties understood by ``GeoJsonProvider``:

    label / name    label text
    width, height   label size in map units (estimated from text if absent)
    priority        0 (most important) .. 1, omitted = layer default
    obstacle        false to let labels cover the feature
    obstacle_factor obstacle penalty multiplier
    always_show     show the label even when it conflicts
    distance        gap between a point and its label
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from shapely.geometry import shape

from .engine.feature import Arrangement, LabelFeature
from .engine.labeling_engine import LabelingEngine
from .engine.layer import Layer

logger = logging.getLogger(__name__)


class LabelProvider:
    """Base provider: a named source of label features."""

    name = "labels"
    arrangement = Arrangement.AROUND_POINT
    default_priority = 0.5
    to_label = True
    display_all = False

    def features(self) -> Iterator[LabelFeature]:
        raise NotImplementedError


class MemoryProvider(LabelProvider):
    """Provider over an in-memory list of features."""

    def __init__(self, features: Iterable[LabelFeature] = (), name: str = "memory",
                 arrangement: Arrangement = Arrangement.AROUND_POINT,
                 default_priority: float = 0.5, to_label: bool = True,
                 display_all: bool = False):
        self._features: List[LabelFeature] = list(features)
        self.name = name
        self.arrangement = arrangement
        self.default_priority = default_priority
        self.to_label = to_label
        self.display_all = display_all

    def add(self, feature: LabelFeature):
        self._features.append(feature)

    def features(self) -> Iterator[LabelFeature]:
        return iter(self._features)

    def __len__(self):
        return len(self._features)


class GeoJsonProvider(MemoryProvider):
    """Provider reading a GeoJSON FeatureCollection."""

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "GeoJsonProvider":
        with open(path, "r") as f:
            data = json.load(f)
        kwargs.setdefault("name", Path(path).stem)
        return cls.from_mapping(data, **kwargs)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], **kwargs) -> "GeoJsonProvider":
        if data.get("type") == "Feature":
            records = [data]
        elif data.get("type") == "FeatureCollection":
            records = data.get("features") or []
        else:
            raise ValueError("Expected a GeoJSON Feature or FeatureCollection")

        features = []
        for i, record in enumerate(records):
            feature = feature_from_geojson(record, default_id=i)
            if feature is not None:
                features.append(feature)
        logger.debug("Read %d of %d GeoJSON features", len(features), len(records))
        return cls(features, **kwargs)


def feature_from_geojson(record: Dict[str, Any], default_id: Any = None) -> Optional[LabelFeature]:
    """Convert one GeoJSON feature, or None if it has no usable geometry."""
    geometry = record.get("geometry")
    fid = record.get("id", default_id)
    if not geometry:
        logger.warning("Skipping feature %r without geometry", fid)
        return None
    geom = shape(geometry)
    if geom.is_empty:
        logger.warning("Skipping feature %r with empty geometry", fid)
        return None

    props = record.get("properties") or {}
    text = props.get("label", props.get("name", ""))
    return LabelFeature(
        feature_id=fid,
        geometry=geom,
        label_text="" if text is None else str(text),
        width=_optional_float(props.get("width")),
        height=_optional_float(props.get("height")),
        priority=float(props.get("priority", -1.0)),
        is_obstacle=bool(props.get("obstacle", True)),
        obstacle_factor=float(props.get("obstacle_factor", 1.0)),
        always_show=bool(props.get("always_show", False)),
        distance=float(props.get("distance", 0.0)),
    )


def _optional_float(value) -> Optional[float]:
    return None if value is None else float(value)


def register_provider(engine: LabelingEngine, provider: LabelProvider,
                      active: bool = True) -> Layer:
    """Add a layer for a provider and register all its features."""
    layer = engine.add_layer(
        provider,
        provider.name,
        arrangement=provider.arrangement,
        default_priority=provider.default_priority,
        active=active,
        to_label=provider.to_label,
        display_all=provider.display_all,
    )
    count = 0
    for feature in provider.features():
        layer.register_feature(feature)
        count += 1
    logger.debug("Registered %d features for layer %s", count, layer.name)
    return layer
