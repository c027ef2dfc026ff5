"""Validation & Repair Engine.

Applies to Polygon and MultiPolygon geometry only; everything else
passes through untouched.

Steps:
1. Clean: drop vertices within ``tolerance`` of the previously kept
   vertex and re-close each ring.  A ring left with fewer than four
   positions is a repair failure.
2. Check: shapely ``is_valid`` detects self-intersections.  Skipped
   when the vertex count exceeds ``complexity_limit``.
3. Repair: ``buffer(+d).buffer(-d)`` with mitre joins (a morphological
   closing, so slivers and pinches are bridged rather than eroded), then
   ``buffer(0)``, then ``make_valid`` keeping polygonal parts.  If all
   fail the result carries ``geometry=None`` and an error.

The engine is idempotent: a valid, clean geometry comes back unchanged
with both flags false, and a repaired geometry is cleaned again before
it is returned so a second pass finds nothing to do.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from geo_loader.core.constants import (
    CLEAN_TOLERANCE,
    CLOSURE_EPSILON,
    COMPLEXITY_LIMIT,
    MIN_LINE_POSITIONS,
    MIN_RING_POSITIONS,
    REPAIR_BUFFER_DISTANCE,
)
from geo_loader.core.exceptions import RepairError
from geo_loader.models.geometry import (
    InvalidGeometryError,
    MultiPolygon,
    Polygon,
    from_shapely,
    geometry_to_dict,
    to_shapely,
    vertex_count,
)

if TYPE_CHECKING:
    from geo_loader.models.geometry import Geometry, Position, Ring

logger = logging.getLogger(__name__)

_POLYGONAL = ("Polygon", "MultiPolygon")


@dataclass(frozen=True, slots=True)
class RepairResult:
    """Outcome of ``validate_and_repair``.

    Attributes:
        geometry: The clean (and possibly repaired) geometry, or ``None``
            when repair failed.
        was_repaired: A self-intersection was fixed.
        was_cleaned: Near-duplicate vertices were removed.
        error: Why repair failed, when ``geometry`` is ``None``.
    """

    geometry: Geometry | None
    was_repaired: bool = False
    was_cleaned: bool = False
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.geometry is None


# ---------------------------------------------------------------------------
# Step 1: cleaning
# ---------------------------------------------------------------------------


def _close_enough(a: Position, b: Position, tolerance: float) -> bool:
    return math.hypot(a[0] - b[0], a[1] - b[1]) <= tolerance


def clean_ring(ring: Ring, tolerance: float) -> Ring:
    """Drop near-duplicate vertices and re-close.

    Raises:
        RepairError: If fewer than four positions remain.
    """
    open_ring = ring[:-1] if len(ring) > 1 else ring
    kept: list[Position] = []
    for position in open_ring:
        if not kept or not _close_enough(position, kept[-1], tolerance):
            kept.append(position)
    while len(kept) > 1 and _close_enough(kept[-1], kept[0], tolerance):
        kept.pop()
    kept.append(kept[0])
    if len(kept) < MIN_RING_POSITIONS:
        msg = f"Ring collapsed to {len(kept)} positions after removing near-duplicate vertices"
        raise RepairError(msg, code="RING_COLLAPSED")
    return tuple(kept)


def _same_rings(cleaned: tuple[Ring, ...], original: tuple[Ring, ...]) -> bool:
    # The closing position is re-normalised, so only open rings are compared.
    return all(a[:-1] == b[:-1] for a, b in zip(cleaned, original, strict=True))


def clean_geometry(geometry: Polygon | MultiPolygon, tolerance: float) -> tuple[Polygon | MultiPolygon, bool]:
    """Clean every ring.

    Returns:
        ``(geometry, changed)``; the input object itself when unchanged.

    Raises:
        RepairError: If a ring collapses.
    """
    if isinstance(geometry, Polygon):
        rings = tuple(clean_ring(r, tolerance) for r in geometry.coordinates)
        if _same_rings(rings, geometry.coordinates):
            return geometry, False
        return Polygon(rings), True
    polygons = tuple(tuple(clean_ring(r, tolerance) for r in polygon) for polygon in geometry.coordinates)
    if all(_same_rings(a, b) for a, b in zip(polygons, geometry.coordinates, strict=True)):
        return geometry, False
    return MultiPolygon(polygons), True


# ---------------------------------------------------------------------------
# Step 3: repair
# ---------------------------------------------------------------------------


def _polygonal_parts(shape: Any) -> Any:
    from shapely.ops import unary_union

    if shape.geom_type in _POLYGONAL:
        return shape
    parts = [g for g in getattr(shape, "geoms", ()) if g.geom_type in _POLYGONAL]
    return unary_union(parts) if parts else None


def _usable(shape: Any) -> bool:
    return shape is not None and not shape.is_empty and shape.geom_type in _POLYGONAL and shape.is_valid


def repair_shape(shape: Any, distance: float = REPAIR_BUFFER_DISTANCE) -> tuple[Any, str]:
    """Repair an invalid shapely polygon.

    Returns:
        ``(repaired_shape, method)``.

    Raises:
        RepairError: If no strategy yields a valid polygonal shape.
    """
    from shapely.errors import GEOSException
    from shapely.validation import make_valid

    attempts = (
        ("buffer", lambda s: s.buffer(distance, join_style="mitre").buffer(-distance, join_style="mitre")),
        ("buffer0", lambda s: s.buffer(0)),
        ("make_valid", lambda s: _polygonal_parts(make_valid(s))),
    )
    failures: list[str] = []
    for method, attempt in attempts:
        try:
            candidate = attempt(shape)
        except (GEOSException, ValueError) as exc:
            failures.append(f"{method}: {exc}")
            continue
        if _usable(candidate):
            return candidate, method
        failures.append(f"{method}: produced no valid polygonal area")
    msg = "Self-intersection could not be repaired (" + "; ".join(failures) + ")"
    raise RepairError(msg, code="SELF_INTERSECTION_UNREPAIRABLE")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_and_repair(
    geometry: Geometry,
    *,
    tolerance: float = CLEAN_TOLERANCE,
    complexity_limit: int = COMPLEXITY_LIMIT,
    buffer_distance: float = REPAIR_BUFFER_DISTANCE,
) -> RepairResult:
    """Clean, check and repair a polygonal geometry.

    ``tolerance`` and ``buffer_distance`` are in the units of the
    geometry's coordinates; the defaults suit degrees.

    Never raises for bad geometry; failures are reported through
    ``RepairResult.error`` with ``geometry=None``.
    """
    if not isinstance(geometry, Polygon | MultiPolygon):
        return RepairResult(geometry=geometry)

    try:
        cleaned, was_cleaned = clean_geometry(geometry, tolerance)
    except RepairError as exc:
        return RepairResult(geometry=None, error=exc.message)

    if vertex_count(cleaned) > complexity_limit:
        logger.debug(
            "Skipped self-intersection check | vertices=%d | limit=%d",
            vertex_count(cleaned),
            complexity_limit,
        )
        return RepairResult(geometry=cleaned, was_cleaned=was_cleaned)

    shape = to_shapely(cleaned)
    if shape.is_valid:
        return RepairResult(geometry=cleaned, was_cleaned=was_cleaned)

    from shapely.validation import explain_validity

    reason = explain_validity(shape)
    try:
        repaired_shape, method = repair_shape(shape, buffer_distance)
        repaired = from_shapely(repaired_shape)
        if isinstance(repaired, Polygon | MultiPolygon):
            recleaned, _ = clean_geometry(repaired, tolerance)
            if to_shapely(recleaned).is_valid:
                repaired = recleaned
    except (RepairError, InvalidGeometryError) as exc:
        logger.warning("Geometry repair failed | reason=%s | error=%s", reason, exc.message)
        return RepairResult(geometry=None, was_cleaned=was_cleaned, error=f"{reason}: {exc.message}")

    logger.debug("Geometry repaired | reason=%s | method=%s", reason, method)
    return RepairResult(geometry=repaired, was_repaired=True, was_cleaned=was_cleaned)


def validate_geometry(geometry: Geometry | Mapping[str, Any]) -> list[str]:
    """Well-formedness problems of a geometry or GeoJSON geometry mapping.

    Checks finite coordinates, minimum vertex counts, ring closure and
    degenerate rings.  Returns an empty list when well-formed.
    """
    data = geometry if isinstance(geometry, Mapping) else geometry_to_dict(geometry)
    geom_type = data.get("type")
    coords = data.get("coordinates")
    problems: list[str] = []

    def _position(value: Any, where: str) -> None:
        if not isinstance(value, list | tuple) or len(value) not in (2, 3):
            problems.append(f"{where}: position must have 2 or 3 components")
            return
        if not all(isinstance(v, int | float) and math.isfinite(v) for v in value):
            problems.append(f"{where}: non-finite coordinate {list(value)!r}")

    def _line(value: Any, where: str) -> None:
        if not isinstance(value, list | tuple) or len(value) < MIN_LINE_POSITIONS:
            problems.append(f"{where}: needs at least {MIN_LINE_POSITIONS} positions")
            return
        for i, p in enumerate(value):
            _position(p, f"{where}[{i}]")

    def _ring(value: Any, where: str) -> None:
        if not isinstance(value, list | tuple) or len(value) < MIN_RING_POSITIONS:
            problems.append(f"{where}: ring needs at least {MIN_RING_POSITIONS} positions")
            return
        before = len(problems)
        for i, p in enumerate(value):
            _position(p, f"{where}[{i}]")
        if len(problems) > before:
            return
        first, last = value[0], value[-1]
        if any(abs(a - b) > CLOSURE_EPSILON for a, b in zip(first, last, strict=False)):
            problems.append(f"{where}: ring is not closed")
        if len({(p[0], p[1]) for p in value}) < 3:
            problems.append(f"{where}: ring has fewer than 3 distinct positions")

    def _polygon(value: Any, where: str) -> None:
        if not isinstance(value, list | tuple) or not value:
            problems.append(f"{where}: polygon needs an exterior ring")
            return
        for i, ring in enumerate(value):
            _ring(ring, f"{where}[{i}]")

    match geom_type:
        case "Point":
            _position(coords, "Point")
        case "LineString":
            _line(coords, "LineString")
        case "Polygon":
            _polygon(coords, "Polygon")
        case "MultiPoint" | "MultiLineString" | "MultiPolygon":
            if not isinstance(coords, list | tuple) or not coords:
                problems.append(f"{geom_type}: needs at least one part")
            else:
                check = {"MultiPoint": _position, "MultiLineString": _line, "MultiPolygon": _polygon}[geom_type]
                for i, part in enumerate(coords):
                    check(part, f"{geom_type}[{i}]")
        case _:
            problems.append(f"Unsupported geometry type: {geom_type!r}")
    return problems
