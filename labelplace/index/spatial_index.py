"""Spatial hash index for bounding-box range queries.

Grid hashing gives O(~1) inserts, removals and range queries for the
small, roughly uniform boxes label placement works with (candidate
rectangles, feature parts, obstacles). Queries are exposed both as a
lazy iterator and as a visitor whose boolean return value stops the
scan early, so callers can honour cancellation mid-query.

Results are always yielded in insertion order, which keeps every
consumer of the index deterministic.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

logger = logging.getLogger(__name__)

# (min_x, min_y, max_x, max_y)
BoundingBox = Tuple[float, float, float, float]

# A query spanning more cells than this multiple of the item count
# falls back to a linear scan.
_LINEAR_SCAN_RATIO = 2

# Auto-sized indexes re-hash whenever their item count doubles past this.
_RECALIBRATE_MIN_ITEMS = 64


def boxes_intersect(a: BoundingBox, b: BoundingBox) -> bool:
    """Check if two boxes intersect (touching edges count)."""
    return not (a[2] < b[0] or b[2] < a[0] or
                a[3] < b[1] or b[3] < a[1])


def is_unbounded(bbox: Optional[BoundingBox]) -> bool:
    """True for ``None`` or a box with any infinite coordinate."""
    if bbox is None:
        return True
    return any(math.isinf(v) for v in bbox)


@dataclass
class _Entry:
    item: Any
    bbox: BoundingBox
    seq: int
    cells: List[Tuple[int, int]] = field(default_factory=list)


class SpatialHashIndex:
    """Grid-based spatial hash storing arbitrary items by bounding box.

    Items are keyed by identity, so the same object can only be stored
    once; inserting it again replaces its box.

    Cell size selection matters:
    - Too small: boxes span many cells, inserts get expensive
    - Too large: many items per cell, queries get expensive
    - Rule of thumb: 2-3x the typical box size

    When ``cell_size`` is None the index sizes itself from the boxes it
    holds and re-hashes as it grows.
    """

    def __init__(self, cell_size: Optional[float] = None):
        if cell_size is not None and cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self._auto_size = cell_size is None
        self.cell_size: float = cell_size if cell_size is not None else 1.0
        self._cells: Dict[Tuple[int, int], Dict[int, None]] = {}
        self._entries: Dict[int, _Entry] = {}
        self._seq = 0
        self._calibrated_at = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: Any) -> bool:
        return id(item) in self._entries

    def __iter__(self) -> Iterator[Any]:
        return iter(self.items())

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def _cell_range(self, bbox: BoundingBox) -> Tuple[int, int, int, int]:
        size = self.cell_size
        return (int(math.floor(bbox[0] / size)),
                int(math.floor(bbox[1] / size)),
                int(math.floor(bbox[2] / size)),
                int(math.floor(bbox[3] / size)))

    def _cells_for_box(self, bbox: BoundingBox) -> List[Tuple[int, int]]:
        """Get all cells that a box overlaps."""
        start_x, start_y, end_x, end_y = self._cell_range(bbox)
        return [(cx, cy)
                for cx in range(start_x, end_x + 1)
                for cy in range(start_y, end_y + 1)]

    def _cell_count(self, bbox: BoundingBox) -> int:
        start_x, start_y, end_x, end_y = self._cell_range(bbox)
        return (end_x - start_x + 1) * (end_y - start_y + 1)

    def _hash_entry(self, key: int, entry: _Entry):
        entry.cells = self._cells_for_box(entry.bbox)
        for cell in entry.cells:
            bucket = self._cells.get(cell)
            if bucket is None:
                bucket = self._cells[cell] = {}
            bucket[key] = None

    def _unhash_entry(self, key: int, entry: _Entry):
        for cell in entry.cells:
            bucket = self._cells.get(cell)
            if bucket is None:
                continue
            bucket.pop(key, None)
            if not bucket:
                del self._cells[cell]
        entry.cells = []

    def _maybe_recalibrate(self):
        if not self._auto_size:
            return
        count = len(self._entries)
        if self._calibrated_at and count < max(_RECALIBRATE_MIN_ITEMS, 2 * self._calibrated_at):
            return
        new_size = auto_calibrate_cell_size([e.bbox for e in self._entries.values()],
                                            default=self.cell_size)
        self._calibrated_at = count
        if math.isclose(new_size, self.cell_size):
            return
        self.rehash(new_size)

    def rehash(self, cell_size: float):
        """Rebuild the grid with a new cell size."""
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        self.cell_size = cell_size
        self._cells = {}
        for key, entry in self._entries.items():
            self._hash_entry(key, entry)
        logger.debug("Spatial index rehashed: items=%d cell_size=%.4g",
                     len(self._entries), cell_size)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, item: Any, bbox: BoundingBox):
        """Add item with its bounding box (replaces any previous box)."""
        if any(math.isnan(v) or math.isinf(v) for v in bbox):
            raise ValueError(f"Cannot index non-finite box {bbox}")
        if bbox[0] > bbox[2] or bbox[1] > bbox[3]:
            raise ValueError(f"Inverted box {bbox}")

        key = id(item)
        existing = self._entries.get(key)
        if existing is not None:
            self._unhash_entry(key, existing)
            existing.bbox = tuple(bbox)
            self._hash_entry(key, existing)
            return

        entry = _Entry(item=item, bbox=tuple(bbox), seq=self._seq)
        self._seq += 1
        self._entries[key] = entry
        self._hash_entry(key, entry)
        self._maybe_recalibrate()

    def remove(self, item: Any) -> bool:
        """Remove item from index. Returns False if it was not indexed."""
        key = id(item)
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._unhash_entry(key, entry)
        return True

    def clear(self):
        self._cells.clear()
        self._entries.clear()
        self._calibrated_at = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def bbox_of(self, item: Any) -> Optional[BoundingBox]:
        entry = self._entries.get(id(item))
        return entry.bbox if entry else None

    def items(self) -> List[Any]:
        """All items in insertion order."""
        return [e.item for e in sorted(self._entries.values(), key=lambda e: e.seq)]

    def iter_intersecting(self, bbox: Optional[BoundingBox] = None) -> Iterator[Any]:
        """Lazily yield items whose box intersects ``bbox``.

        ``None`` (or any infinite coordinate) queries the whole index.
        The matches are collected when iteration starts, so the index
        may be mutated while the iterator is consumed.
        """
        if is_unbounded(bbox):
            if bbox is None:
                entries = list(self._entries.values())
            else:
                entries = [e for e in self._entries.values()
                           if boxes_intersect(e.bbox, bbox)]
        elif self._cell_count(bbox) > _LINEAR_SCAN_RATIO * max(len(self._entries), 1):
            entries = [e for e in self._entries.values()
                       if boxes_intersect(e.bbox, bbox)]
        else:
            keys: Set[int] = set()
            for cell in self._cells_for_box(bbox):
                bucket = self._cells.get(cell)
                if bucket:
                    keys.update(bucket)
            entries = []
            for key in keys:
                entry = self._entries[key]
                if boxes_intersect(entry.bbox, bbox):
                    entries.append(entry)

        entries.sort(key=lambda e: e.seq)
        for entry in entries:
            yield entry.item

    def query(self, bbox: Optional[BoundingBox] = None) -> List[Any]:
        """Items whose box intersects ``bbox``, in insertion order."""
        return list(self.iter_intersecting(bbox))

    def search(self, bbox: Optional[BoundingBox], visitor: Callable[[Any], bool]) -> bool:
        """Call ``visitor`` for every intersecting item.

        The visitor returns True to continue and False to stop.

        Returns:
            True if the scan completed, False if the visitor stopped it
        """
        for item in self.iter_intersecting(bbox):
            if not visitor(item):
                return False
        return True

    def bounds(self) -> Optional[BoundingBox]:
        """Union of all indexed boxes, or None when empty."""
        if not self._entries:
            return None
        boxes = [e.bbox for e in self._entries.values()]
        return (min(b[0] for b in boxes), min(b[1] for b in boxes),
                max(b[2] for b in boxes), max(b[3] for b in boxes))

    def get_stats(self) -> Dict:
        """Get index statistics for debugging."""
        cell_counts = [len(bucket) for bucket in self._cells.values()]
        return {
            "total_items": len(self._entries),
            "total_cells": len(self._cells),
            "cell_size": self.cell_size,
            "avg_items_per_cell": sum(cell_counts) / max(len(cell_counts), 1),
            "max_items_per_cell": max(cell_counts) if cell_counts else 0,
        }


def auto_calibrate_cell_size(
    boxes: Sequence[BoundingBox],
    default: float = 1.0
) -> float:
    """
    Determine a cell size from a set of boxes.

    Rule of thumb: cell_size = 2.5x median box size. Degenerate boxes
    (points) fall back to the mean spacing of the box centres over the
    covered area.

    Args:
        boxes: Boxes to calibrate on
        default: Cell size if nothing can be derived

    Returns:
        Cell size in map units
    """
    if not boxes:
        return default

    max_dims = sorted(max(b[2] - b[0], b[3] - b[1]) for b in boxes)
    median_size = max_dims[len(max_dims) // 2]
    if median_size > 0:
        return median_size * 2.5

    min_x = min(b[0] for b in boxes)
    min_y = min(b[1] for b in boxes)
    max_x = max(b[2] for b in boxes)
    max_y = max(b[3] for b in boxes)
    span = max(max_x - min_x, max_y - min_y)
    if span <= 0:
        return default
    # Spacing of a uniform grid holding all boxes, ~4 items per cell
    spacing = span / math.sqrt(len(boxes))
    return spacing * 2.0
