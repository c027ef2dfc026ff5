"""Format-independent geometry model.

Every parser converts its native entities into these types, and every
later stage (reprojection, repair, simplification, preview) consumes
them.  Geometries are immutable; coordinates are stored as nested
tuples of floats.

Invariants enforced at construction:
- every position has 2 or 3 finite components (no z means "no height")
- a LineString has at least 2 positions
- a polygon ring has at least 4 positions and is closed
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, assert_never

from geo_loader.core.constants import (
    CLOSURE_EPSILON,
    DEFAULT_CENTER_LAT,
    DEFAULT_CENTER_LON,
    DEFAULT_REGION_HALF_SPAN_DEG,
    MIN_LINE_POSITIONS,
    MIN_RING_POSITIONS,
)
from geo_loader.core.exceptions import EntityError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Sequence

Position = tuple[float, ...]
Ring = tuple[Position, ...]
GeometryFamily = Literal["point", "line", "polygon"]


class InvalidGeometryError(EntityError):
    """Raised when coordinates violate a geometry invariant."""

    default_code = "GEOMETRY_INVALID"


# ---------------------------------------------------------------------------
# Position helpers
# ---------------------------------------------------------------------------


def validate_position(values: Sequence[float]) -> Position:
    """Return ``values`` as a float tuple, enforcing the position invariant.

    Raises:
        InvalidGeometryError: If the arity is not 2 or 3, or any
            component is not a finite number.
    """
    if len(values) not in (2, 3):
        msg = f"Position must have 2 or 3 components, got {len(values)}"
        raise InvalidGeometryError(msg)
    try:
        position = tuple(float(v) for v in values)
    except (TypeError, ValueError) as exc:
        msg = f"Position components must be numeric: {values!r}"
        raise InvalidGeometryError(msg) from exc
    if not all(math.isfinite(v) for v in position):
        msg = f"Position components must be finite: {position!r}"
        raise InvalidGeometryError(msg)
    return position


def positions_equal(a: Position, b: Position, epsilon: float = CLOSURE_EPSILON) -> bool:
    """Whether two positions coincide within ``epsilon`` on every shared axis."""
    return all(abs(p - q) <= epsilon for p, q in zip(a, b, strict=False))


def close_ring(ring: Sequence[Sequence[float]]) -> Ring:
    """Return ``ring`` closed by appending its first position if needed."""
    positions = tuple(validate_position(p) for p in ring)
    if positions and not positions_equal(positions[0], positions[-1]):
        positions = (*positions, positions[0])
    return positions


def _validate_line(coords: Sequence[Sequence[float]]) -> tuple[Position, ...]:
    positions = tuple(validate_position(p) for p in coords)
    if len(positions) < MIN_LINE_POSITIONS:
        msg = f"LineString needs at least {MIN_LINE_POSITIONS} positions, got {len(positions)}"
        raise InvalidGeometryError(msg)
    return positions


def _validate_ring(coords: Sequence[Sequence[float]]) -> Ring:
    positions = tuple(validate_position(p) for p in coords)
    if len(positions) < MIN_RING_POSITIONS:
        msg = f"Polygon ring needs at least {MIN_RING_POSITIONS} positions, got {len(positions)}"
        raise InvalidGeometryError(msg)
    if not positions_equal(positions[0], positions[-1]):
        msg = f"Polygon ring is not closed: first={positions[0]!r} last={positions[-1]!r}"
        raise InvalidGeometryError(msg)
    return positions


def _validate_polygon(rings: Sequence[Sequence[Sequence[float]]]) -> tuple[Ring, ...]:
    if not rings:
        msg = "Polygon needs at least an exterior ring"
        raise InvalidGeometryError(msg)
    return tuple(_validate_ring(r) for r in rings)


# ---------------------------------------------------------------------------
# Geometry variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Point:
    """A single position."""

    coordinates: Position

    def __post_init__(self) -> None:
        object.__setattr__(self, "coordinates", validate_position(self.coordinates))

    @property
    def type(self) -> str:
        return "Point"


@dataclass(frozen=True, slots=True)
class LineString:
    """An open or closed sequence of at least two positions."""

    coordinates: tuple[Position, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "coordinates", _validate_line(self.coordinates))

    @property
    def type(self) -> str:
        return "LineString"


@dataclass(frozen=True, slots=True)
class Polygon:
    """An exterior ring followed by zero or more hole rings."""

    coordinates: tuple[Ring, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "coordinates", _validate_polygon(self.coordinates))

    @property
    def type(self) -> str:
        return "Polygon"

    @property
    def exterior(self) -> Ring:
        return self.coordinates[0]

    @property
    def holes(self) -> tuple[Ring, ...]:
        return self.coordinates[1:]


@dataclass(frozen=True, slots=True)
class MultiPoint:
    coordinates: tuple[Position, ...]

    def __post_init__(self) -> None:
        positions = tuple(validate_position(p) for p in self.coordinates)
        if not positions:
            msg = "MultiPoint needs at least one position"
            raise InvalidGeometryError(msg)
        object.__setattr__(self, "coordinates", positions)

    @property
    def type(self) -> str:
        return "MultiPoint"


@dataclass(frozen=True, slots=True)
class MultiLineString:
    coordinates: tuple[tuple[Position, ...], ...]

    def __post_init__(self) -> None:
        lines = tuple(_validate_line(line) for line in self.coordinates)
        if not lines:
            msg = "MultiLineString needs at least one line"
            raise InvalidGeometryError(msg)
        object.__setattr__(self, "coordinates", lines)

    @property
    def type(self) -> str:
        return "MultiLineString"


@dataclass(frozen=True, slots=True)
class MultiPolygon:
    coordinates: tuple[tuple[Ring, ...], ...]

    def __post_init__(self) -> None:
        polygons = tuple(_validate_polygon(p) for p in self.coordinates)
        if not polygons:
            msg = "MultiPolygon needs at least one polygon"
            raise InvalidGeometryError(msg)
        object.__setattr__(self, "coordinates", polygons)

    @property
    def type(self) -> str:
        return "MultiPolygon"


Geometry = Point | LineString | Polygon | MultiPoint | MultiLineString | MultiPolygon


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------


def iter_positions(geometry: Geometry) -> Iterator[Position]:
    """Yield every position of ``geometry`` in storage order."""
    match geometry:
        case Point():
            yield geometry.coordinates
        case LineString() | MultiPoint():
            yield from geometry.coordinates
        case Polygon() | MultiLineString():
            for part in geometry.coordinates:
                yield from part
        case MultiPolygon():
            for polygon in geometry.coordinates:
                for ring in polygon:
                    yield from ring
        case _:
            assert_never(geometry)


def vertex_count(geometry: Geometry) -> int:
    """Total number of stored positions, closing positions included."""
    return sum(1 for _ in iter_positions(geometry))


def geometry_family(geometry: Geometry) -> GeometryFamily:
    """Map a geometry to its preview collection (point, line, or polygon)."""
    match geometry:
        case Point() | MultiPoint():
            return "point"
        case LineString() | MultiLineString():
            return "line"
        case Polygon() | MultiPolygon():
            return "polygon"
        case _:
            assert_never(geometry)


def map_positions(geometry: Geometry, func: Callable[[Position], Position]) -> Geometry:
    """Return a new geometry of the same type with ``func`` applied per position.

    ``func`` receives and returns a position tuple.  Rings stay closed
    because the closing position is transformed identically.
    """
    match geometry:
        case Point():
            return Point(func(geometry.coordinates))
        case LineString():
            return LineString(tuple(func(p) for p in geometry.coordinates))
        case MultiPoint():
            return MultiPoint(tuple(func(p) for p in geometry.coordinates))
        case Polygon():
            return Polygon(tuple(close_ring([func(p) for p in ring]) for ring in geometry.coordinates))
        case MultiLineString():
            return MultiLineString(tuple(tuple(func(p) for p in line) for line in geometry.coordinates))
        case MultiPolygon():
            return MultiPolygon(
                tuple(
                    tuple(close_ring([func(p) for p in ring]) for ring in polygon)
                    for polygon in geometry.coordinates
                )
            )
        case _:
            assert_never(geometry)


def geometry_to_dict(geometry: Geometry) -> dict[str, Any]:
    """Serialise to a GeoJSON geometry mapping (lists, not tuples)."""

    def _lists(value: Any) -> Any:
        if isinstance(value, tuple) and value and isinstance(value[0], float):
            return list(value)
        if isinstance(value, tuple):
            return [_lists(v) for v in value]
        return value

    return {"type": geometry.type, "coordinates": _lists(geometry.coordinates)}


_GEOMETRY_TYPES: dict[str, type] = {
    "Point": Point,
    "LineString": LineString,
    "Polygon": Polygon,
    "MultiPoint": MultiPoint,
    "MultiLineString": MultiLineString,
    "MultiPolygon": MultiPolygon,
}


def geometry_from_dict(data: dict[str, Any]) -> Geometry:
    """Deserialise a GeoJSON geometry mapping.

    Raises:
        InvalidGeometryError: On unknown type or invalid coordinates.
    """
    geom_type = data.get("type")
    cls = _GEOMETRY_TYPES.get(str(geom_type))
    if cls is None:
        msg = f"Unsupported geometry type: {geom_type!r}"
        raise InvalidGeometryError(msg)

    def _tuples(value: Any) -> Any:
        if isinstance(value, list | tuple):
            return tuple(_tuples(v) for v in value)
        return value

    return cls(_tuples(data.get("coordinates", ())))  # type: ignore[no-any-return]


# ---------------------------------------------------------------------------
# Shapely interop (lazy import, heavy dependency)
# ---------------------------------------------------------------------------


def to_shapely(geometry: Geometry) -> Any:
    """Build the equivalent shapely geometry."""
    from shapely.geometry import shape

    return shape(geometry_to_dict(geometry))


def from_shapely(shape: Any) -> Geometry:
    """Convert a shapely geometry back into the model.

    Raises:
        InvalidGeometryError: If the shape is empty, a collection, or
            its coordinates violate an invariant.
    """
    from shapely.geometry import mapping

    if shape.is_empty:
        msg = "Cannot convert an empty shape"
        raise InvalidGeometryError(msg)
    if shape.geom_type == "GeometryCollection":
        msg = "GeometryCollection is not supported"
        raise InvalidGeometryError(msg)
    if shape.geom_type == "LinearRing":
        return LineString(tuple(shape.coords))
    return geometry_from_dict(mapping(shape))


# ---------------------------------------------------------------------------
# Bounds
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Bounds:
    """Axis-aligned bounding box.

    ``min <= max`` on every axis.  ``is_fallback`` marks the empty
    sentinel: a fixed default region returned when no finite coordinate
    exists, so callers can tell it apart from computed bounds.
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float
    min_z: float | None = None
    max_z: float | None = None
    is_fallback: bool = False

    def __post_init__(self) -> None:
        if self.min_x > self.max_x or self.min_y > self.max_y:
            msg = f"Bounds min exceeds max: {self.as_tuple()!r}"
            raise ValueError(msg)

    @classmethod
    def empty(cls) -> Bounds:
        """The fallback region (Aarau) used when no finite coordinate exists."""
        return cls(
            min_x=DEFAULT_CENTER_LON - DEFAULT_REGION_HALF_SPAN_DEG,
            min_y=DEFAULT_CENTER_LAT - DEFAULT_REGION_HALF_SPAN_DEG,
            max_x=DEFAULT_CENTER_LON + DEFAULT_REGION_HALF_SPAN_DEG,
            max_y=DEFAULT_CENTER_LAT + DEFAULT_REGION_HALF_SPAN_DEG,
            is_fallback=True,
        )

    @classmethod
    def from_positions(cls, positions: Iterable[Sequence[float]]) -> Bounds:
        builder = BoundsBuilder()
        for p in positions:
            builder.add(p)
        return builder.build()

    @classmethod
    def of(cls, geometry: Geometry) -> Bounds:
        return cls.from_positions(iter_positions(geometry))

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def is_finite(self) -> bool:
        """Whether these bounds were computed from real coordinates."""
        return not self.is_fallback and all(math.isfinite(v) for v in self.as_tuple())

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    def union(self, other: Bounds) -> Bounds:
        """Smallest bounds covering both; a fallback operand is ignored."""
        if self.is_fallback:
            return other
        if other.is_fallback:
            return self
        builder = BoundsBuilder()
        builder.add_bounds(self)
        builder.add_bounds(other)
        return builder.build()

    def contains(self, other: Bounds) -> bool:
        """Whether ``other`` lies entirely inside (or on) this box."""
        return (
            self.min_x <= other.min_x
            and self.min_y <= other.min_y
            and self.max_x >= other.max_x
            and self.max_y >= other.max_y
        )

    def pad(self, fraction: float, min_extent: float = DEFAULT_REGION_HALF_SPAN_DEG) -> Bounds:
        """Expand each axis by ``fraction`` of its extent on both sides.

        A degenerate axis (zero extent) is padded by ``fraction`` of
        ``min_extent`` so single points stay visible.  ``min_extent`` is
        in the units of the box; the default suits degrees.
        """
        pad_x = self.width * fraction or min_extent * fraction
        pad_y = self.height * fraction or min_extent * fraction
        return Bounds(
            min_x=self.min_x - pad_x,
            min_y=self.min_y - pad_y,
            max_x=self.max_x + pad_x,
            max_y=self.max_y + pad_y,
            min_z=self.min_z,
            max_z=self.max_z,
            is_fallback=self.is_fallback,
        )

    def to_dict(self) -> dict[str, float | bool | None]:
        return {
            "min_x": self.min_x,
            "min_y": self.min_y,
            "max_x": self.max_x,
            "max_y": self.max_y,
            "min_z": self.min_z,
            "max_z": self.max_z,
            "is_fallback": self.is_fallback,
        }


@dataclass(slots=True)
class BoundsBuilder:
    """Incrementally accumulates bounds; non-finite values are ignored."""

    min_x: float = math.inf
    min_y: float = math.inf
    max_x: float = -math.inf
    max_y: float = -math.inf
    min_z: float = math.inf
    max_z: float = -math.inf
    count: int = field(default=0)

    def add(self, position: Sequence[float]) -> None:
        if len(position) < 2:
            return
        x, y = position[0], position[1]
        if not (math.isfinite(x) and math.isfinite(y)):
            return
        self.min_x = min(self.min_x, x)
        self.min_y = min(self.min_y, y)
        self.max_x = max(self.max_x, x)
        self.max_y = max(self.max_y, y)
        if len(position) > 2 and math.isfinite(position[2]):
            self.min_z = min(self.min_z, position[2])
            self.max_z = max(self.max_z, position[2])
        self.count += 1

    def add_bounds(self, bounds: Bounds) -> None:
        if bounds.is_fallback:
            return
        self.add((bounds.min_x, bounds.min_y))
        self.add((bounds.max_x, bounds.max_y))
        if bounds.min_z is not None and bounds.max_z is not None:
            self.min_z = min(self.min_z, bounds.min_z)
            self.max_z = max(self.max_z, bounds.max_z)

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    def build(self) -> Bounds:
        """Return the accumulated bounds, or the fallback sentinel if empty."""
        if self.is_empty:
            return Bounds.empty()
        has_z = math.isfinite(self.min_z)
        return Bounds(
            min_x=self.min_x,
            min_y=self.min_y,
            max_x=self.max_x,
            max_y=self.max_y,
            min_z=self.min_z if has_z else None,
            max_z=self.max_z if has_z else None,
        )
