"""Spatial indexing for label candidates, features and obstacles."""

from .spatial_index import BoundingBox, SpatialHashIndex, auto_calibrate_cell_size

__all__ = [
    "BoundingBox",
    "SpatialHashIndex",
    "auto_calibrate_cell_size",
]
