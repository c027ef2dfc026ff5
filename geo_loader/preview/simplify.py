"""Douglas-Peucker simplification for preview geometry."""

from __future__ import annotations

from typing import TYPE_CHECKING, assert_never

from geo_loader.core.constants import MIN_LINE_POSITIONS, MIN_RING_POSITIONS
from geo_loader.models.geometry import (
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from geo_loader.models.geometry import Geometry, Position


def _simplify_path(path: Sequence[Position], tolerance: float, minimum: int) -> tuple[Position, ...]:
    """Simplify one path; returns the original when it would drop below ``minimum``."""
    from shapely.geometry import LineString as ShapelyLineString

    original = tuple(path)
    simplified = ShapelyLineString(original).simplify(tolerance, preserve_topology=False)
    if simplified.is_empty:
        return original
    coords = tuple(tuple(float(v) for v in c) for c in simplified.coords)
    if len(coords) < minimum:
        return original
    return coords  # type: ignore[return-value]


def _simplify_rings(rings: Sequence[Sequence[Position]], tolerance: float) -> tuple[tuple[Position, ...], ...]:
    return tuple(_simplify_path(ring, tolerance, MIN_RING_POSITIONS) for ring in rings)


def simplify_geometry(geometry: Geometry, tolerance: float) -> Geometry:
    """Simplify lines and polygon rings with tolerance ``tolerance``.

    Rings that would collapse below four positions keep their original
    vertices, as do lines that would drop below two.  Points pass
    through unchanged, as does everything when ``tolerance <= 0``.
    """
    if tolerance <= 0:
        return geometry
    match geometry:
        case Point() | MultiPoint():
            return geometry
        case LineString():
            return LineString(_simplify_path(geometry.coordinates, tolerance, MIN_LINE_POSITIONS))
        case MultiLineString():
            return MultiLineString(
                tuple(_simplify_path(line, tolerance, MIN_LINE_POSITIONS) for line in geometry.coordinates)
            )
        case Polygon():
            return Polygon(_simplify_rings(geometry.coordinates, tolerance))
        case MultiPolygon():
            return MultiPolygon(tuple(_simplify_rings(polygon, tolerance) for polygon in geometry.coordinates))
        case _:
            assert_never(geometry)
