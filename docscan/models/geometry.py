from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple
import math

import numpy as np

from ..errors import InvalidGeometry

CORNER_NAMES = ("top_left", "top_right", "bottom_right", "bottom_left")


@dataclass(frozen=True)
class Point:
    """Raster-space coordinate. May be fractional and may lie outside the raster."""
    x: float
    y: float

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)

    def distance_to(self, other: Point) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def clamped(self, width: float, height: float) -> Point:
        return Point(min(max(self.x, 0.0), float(width)),
                     min(max(self.y, 0.0), float(height)))

    def as_tuple(self) -> Tuple[float, float]:
        return self.x, self.y


def _to_point(value) -> Point:
    if isinstance(value, Point):
        return value
    if isinstance(value, dict):
        if "x" not in value or "y" not in value:
            raise InvalidGeometry(f"Corner is missing 'x' or 'y': {value}")
        x, y = value["x"], value["y"]
    else:
        try:
            x, y = value
        except (TypeError, ValueError):
            raise InvalidGeometry(f"Cannot read a corner from {value!r}") from None
    try:
        return Point(float(x), float(y))
    except (TypeError, ValueError):
        raise InvalidGeometry(f"Corner coordinates must be numbers, got {value!r}") from None


class CornerSet:
    """
    Exactly four points, ordered top-left, top-right, bottom-right, bottom-left.

    The constructor only validates count and finiteness; it does not reorder.
    Use `CornerSet.canonical` for points of unknown order.
    """

    __slots__ = ("_points",)

    def __init__(self, points: Iterable):
        if points is None:
            raise InvalidGeometry("Corner set is missing")
        pts = tuple(_to_point(p) for p in points)
        if len(pts) != 4:
            raise InvalidGeometry(f"Expected 4 corners, got {len(pts)}")
        for i, p in enumerate(pts):
            if not p.is_finite():
                raise InvalidGeometry(f"Corner {i} ({CORNER_NAMES[i]}) has non-finite coordinates: {p}")
        self._points = pts

    # ── Constructors ─────────────────────────────────────────────────
    @classmethod
    def bounding_box(cls, width: float, height: float) -> CornerSet:
        return cls([(0, 0), (width, 0), (width, height), (0, height)])

    @classmethod
    def canonical(cls, points: Iterable) -> CornerSet:
        """
        Order four points TL, TR, BR, BL: sort by polar angle around the
        centroid, then rotate so the point with the smallest x + y leads.
        """
        pts = [_to_point(p) for p in points]
        if len(pts) != 4:
            raise InvalidGeometry(f"Expected 4 corners, got {len(pts)}")
        cx = sum(p.x for p in pts) / 4.0
        cy = sum(p.y for p in pts) / 4.0
        # y grows downward, so ascending atan2 walks the corners clockwise on screen.
        ordered = sorted(pts, key=lambda p: math.atan2(p.y - cy, p.x - cx))
        start = min(range(4), key=lambda i: ordered[i].x + ordered[i].y)
        return cls(ordered[start:] + ordered[:start])

    @classmethod
    def from_list(cls, values: Sequence) -> CornerSet:
        """Accepts [{"x": .., "y": ..}, ...] or [[x, y], ...]."""
        return cls(values)

    # ── Accessors ────────────────────────────────────────────────────
    @property
    def points(self) -> Tuple[Point, Point, Point, Point]:
        return self._points

    @property
    def top_left(self) -> Point:
        return self._points[0]

    @property
    def top_right(self) -> Point:
        return self._points[1]

    @property
    def bottom_right(self) -> Point:
        return self._points[2]

    @property
    def bottom_left(self) -> Point:
        return self._points[3]

    def __len__(self) -> int:
        return 4

    def __iter__(self):
        return iter(self._points)

    def __getitem__(self, index: int) -> Point:
        return self._points[index]

    def __eq__(self, other) -> bool:
        if not isinstance(other, CornerSet):
            return NotImplemented
        return self._points == other._points

    def __hash__(self) -> int:
        return hash(self._points)

    def __repr__(self) -> str:
        inner = ", ".join(f"({p.x:g}, {p.y:g})" for p in self._points)
        return f"CornerSet([{inner}])"

    def as_array(self) -> np.ndarray:
        return np.array([p.as_tuple() for p in self._points], dtype=np.float64)

    def as_list(self) -> List[dict]:
        return [{"x": p.x, "y": p.y} for p in self._points]

    # ── Editing ──────────────────────────────────────────────────────
    def nearest_corner(self, point, radius: float = 20.0) -> int | None:
        """Index of the closest corner strictly within `radius` of `point`, else None."""
        point = _to_point(point)
        distances = [point.distance_to(p) for p in self._points]
        best = min(range(4), key=lambda i: distances[i])
        return best if distances[best] < radius else None

    def with_corner(self, index: int, point, width: float | None = None,
                    height: float | None = None) -> CornerSet:
        """New CornerSet with corner `index` moved; clamped when the raster size is given."""
        if not 0 <= index < 4:
            raise InvalidGeometry(f"Corner index must be 0-3, got {index}")
        point = _to_point(point)
        if width is not None and height is not None:
            point = point.clamped(width, height)
        pts = list(self._points)
        pts[index] = point
        return CornerSet(pts)

    # ── Measurements ─────────────────────────────────────────────────
    def edge_lengths(self) -> Tuple[float, float, float, float]:
        """Top, right, bottom, left edge lengths."""
        tl, tr, br, bl = self._points
        return (tl.distance_to(tr), tr.distance_to(br),
                br.distance_to(bl), bl.distance_to(tl))

    def area(self) -> float:
        """Shoelace area (absolute)."""
        arr = self.as_array()
        x, y = arr[:, 0], arr[:, 1]
        return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))

    def is_convex(self) -> bool:
        """True for a simple convex quadrilateral (all turns in the same direction)."""
        arr = self.as_array()
        signs = []
        for i in range(4):
            a, b, c = arr[i], arr[(i + 1) % 4], arr[(i + 2) % 4]
            cross = (b[0] - a[0]) * (c[1] - b[1]) - (b[1] - a[1]) * (c[0] - b[0])
            if cross != 0:
                signs.append(cross > 0)
        return len(signs) == 4 and (all(signs) or not any(signs))
