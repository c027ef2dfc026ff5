"""Ring helpers shared by the Shapefile and DXF HATCH readers.

Groups a flat list of closed rings into polygons (exterior plus holes),
either by winding order (Shapefile: clockwise exteriors) or by nesting
(HATCH boundaries carry no reliable orientation).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from geo_loader.models.geometry import Position, Ring


def signed_area(ring: Sequence[Position]) -> float:
    """Shoelace area; positive for counter-clockwise rings."""
    total = 0.0
    for (x1, y1, *_), (x2, y2, *_) in zip(ring, ring[1:], strict=False):
        total += x1 * y2 - x2 * y1
    return total / 2.0


def point_in_ring(point: Position, ring: Sequence[Position]) -> bool:
    """Even-odd ray casting test (boundary points may go either way)."""
    x, y = point[0], point[1]
    inside = False
    for (x1, y1, *_), (x2, y2, *_) in zip(ring, ring[1:], strict=False):
        if (y1 > y) != (y2 > y):
            x_cross = x1 + (y - y1) * (x2 - x1) / (y2 - y1)
            if x < x_cross:
                inside = not inside
    return inside


def _ring_inside(inner: Ring, outer: Ring) -> bool:
    # Test a vertex off the shared boundary where possible.
    return any(point_in_ring(p, outer) for p in inner[:-1])


def group_rings(rings: Sequence[Ring], *, by_orientation: bool) -> list[list[Ring]]:
    """Group closed rings into ``[exterior, *holes]`` polygons.

    Args:
        rings: Closed rings.
        by_orientation: When ``True``, clockwise rings are exteriors and
            counter-clockwise rings are holes (ESRI convention).  When
            ``False``, rings are nested by containment, largest first.

    Returns:
        One ring list per polygon.  A hole that fits no exterior is
        promoted to an exterior of its own.
    """
    polygons: list[list[Ring]] = []
    if by_orientation:
        exteriors = [r for r in rings if signed_area(r) < 0]
        holes = [r for r in rings if signed_area(r) >= 0]
        if not exteriors:
            return [[r] for r in holes]
        polygons = [[r] for r in exteriors]
        for hole in holes:
            owner = next((p for p in polygons if _ring_inside(hole, p[0])), None)
            if owner is None:
                polygons.append([hole])
            else:
                owner.append(hole)
        return polygons

    for ring in sorted(rings, key=lambda r: abs(signed_area(r)), reverse=True):
        owner = next(
            (p for p in polygons if _ring_inside(ring, p[0]) and not any(_ring_inside(ring, h) for h in p[1:])),
            None,
        )
        if owner is None:
            polygons.append([ring])
        else:
            owner.append(ring)
    return polygons
