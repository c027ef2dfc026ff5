"""DXF entity to geometry conversion.

One converter per entity record, selected by an exhaustive ``match``
over the ``DxfEntity`` union.  Curves are tessellated with a fixed
segment count; angles stored in degrees are converted to radians
before use.  INSERT references are expanded from their block
definitions (translation, x/y scale, rotation), following nested
inserts with a block-path guard against cycles.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, assert_never

from geo_loader.core.constants import CIRCLE_SEGMENTS
from geo_loader.core.exceptions import EntityError
from geo_loader.models.geometry import (
    InvalidGeometryError,
    LineString,
    MultiPolygon,
    Point,
    Polygon,
    close_ring,
    map_positions,
)
from geo_loader.parsers._rings import group_rings
from geo_loader.parsers.dxf._entities import (
    ArcEntity,
    CircleEntity,
    DimensionEntity,
    EllipseEntity,
    FaceEntity,
    HatchEntity,
    InsertEntity,
    LineEntity,
    PointEntity,
    PolylineEntity,
    SplineEntity,
    TextEntity,
    build_entity,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from geo_loader.models.geometry import Geometry, Position
    from geo_loader.parsers.dxf._entities import BlockDefinition, DxfEntity, EntityCommon

logger = logging.getLogger("geo_loader.parsers.dxf")


@dataclass(slots=True)
class Converted:
    """One output geometry with the entity attributes it came from."""

    geometry: Geometry
    common: EntityCommon
    properties: dict[str, Any] = field(default_factory=dict)
    block: str = ""


@dataclass(slots=True)
class ConversionContext:
    """Shared state for converting one file.

    Attributes:
        blocks: Block definitions by name.
        segments: Tessellation segment count for full circles.
        expand_blocks: Expand INSERT references (else emit a Point).
        errors: Non-fatal problems found while expanding blocks.
    """

    blocks: dict[str, BlockDefinition] = field(default_factory=dict)
    segments: int = CIRCLE_SEGMENTS
    expand_blocks: bool = True
    errors: list[EntityError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tessellation
# ---------------------------------------------------------------------------


def _with_z(x: float, y: float, z: float | None) -> Position:
    return (x, y) if z is None else (x, y, z)


def _z(position: Position) -> float | None:
    return position[2] if len(position) > 2 else None


def circle_ring(center: Position, radius: float, segments: int = CIRCLE_SEGMENTS) -> list[Position]:
    """Closed ring of ``segments + 1`` positions starting at angle 0."""
    cx, cy, cz = center[0], center[1], _z(center)
    step = 2 * math.pi / segments
    ring = [_with_z(cx + radius * math.cos(step * i), cy + radius * math.sin(step * i), cz) for i in range(segments)]
    ring.append(ring[0])
    return ring


def arc_points(
    center: Position,
    radius: float,
    start_deg: float,
    end_deg: float,
    segments: int = CIRCLE_SEGMENTS,
) -> list[Position]:
    """Counter-clockwise arc from ``start_deg`` to ``end_deg`` (degrees)."""
    if end_deg <= start_deg:
        end_deg += 360.0
    start, sweep = math.radians(start_deg), math.radians(end_deg - start_deg)
    cx, cy, cz = center[0], center[1], _z(center)
    angles = [start + sweep * i / segments for i in range(segments + 1)]
    return [_with_z(cx + radius * math.cos(a), cy + radius * math.sin(a), cz) for a in angles]


def ellipse_points(entity: EllipseEntity, segments: int = CIRCLE_SEGMENTS) -> tuple[list[Position], bool]:
    """Tessellate an ellipse; returns ``(positions, is_full)``."""
    cx, cy, cz = entity.center[0], entity.center[1], _z(entity.center)
    mx, my = entity.major_axis[0], entity.major_axis[1]
    # Minor axis: major rotated +90 degrees, scaled by ratio.
    nx, ny = -my * entity.ratio, mx * entity.ratio
    start, end = entity.start_param, entity.end_param
    if end <= start:
        end += 2 * math.pi
    full = math.isclose(end - start, 2 * math.pi, abs_tol=1e-9)
    points = [
        _with_z(
            cx + math.cos(t) * mx + math.sin(t) * nx,
            cy + math.cos(t) * my + math.sin(t) * ny,
            cz,
        )
        for t in (start + (end - start) * i / segments for i in range(segments + 1))
    ]
    if full:
        points[-1] = points[0]
    return points, full


def bulge_points(p1: Position, p2: Position, bulge: float, segments: int = CIRCLE_SEGMENTS) -> list[Position]:
    """Intermediate positions of the arc a polyline bulge describes.

    ``bulge`` is tan(theta/4) of the included angle; positive is
    counter-clockwise.  Endpoints are not included.
    """
    dx, dy = p2[0] - p1[0], p2[1] - p1[1]
    chord = math.hypot(dx, dy)
    if chord == 0 or bulge == 0:
        return []
    theta = 4 * math.atan(bulge)
    radius = chord / (2 * math.sin(theta / 2))
    direction = math.atan2(dy, dx) + math.pi / 2 - theta / 2
    cx = p1[0] + radius * math.cos(direction)
    cy = p1[1] + radius * math.sin(direction)
    start = math.atan2(p1[1] - cy, p1[0] - cx)
    steps = max(2, math.ceil(segments * abs(theta) / (2 * math.pi)))
    r = abs(radius)
    z = _z(p1)
    angles = [start + theta * k / steps for k in range(1, steps)]
    return [_with_z(cx + r * math.cos(a), cy + r * math.sin(a), z) for a in angles]


# ---------------------------------------------------------------------------
# Per-entity converters
# ---------------------------------------------------------------------------


def _polyline(entity: PolylineEntity, segments: int) -> Geometry:
    vertices = entity.vertices
    count = len(vertices)
    points: list[Position] = []
    last_segment = count if entity.closed else count - 1
    for i in range(count):
        points.append(vertices[i])
        if i < last_segment and i < len(entity.bulges) and entity.bulges[i]:
            points.extend(bulge_points(vertices[i], vertices[(i + 1) % count], entity.bulges[i], segments))
    if entity.closed:
        return Polygon((close_ring(points),))
    return LineString(tuple(points))


def _hatch(entity: HatchEntity) -> Geometry:
    if not entity.paths:
        msg = "HATCH has no supported boundary paths"
        raise InvalidGeometryError(msg)
    rings = [close_ring(path) for path in entity.paths]
    polygons = group_rings(rings, by_orientation=False)
    if len(polygons) == 1:
        return Polygon(tuple(polygons[0]))
    return MultiPolygon(tuple(tuple(p) for p in polygons))


def _spline(entity: SplineEntity) -> Geometry:
    points = entity.fit_points if len(entity.fit_points) >= 2 else entity.control_points
    if entity.closed and len(points) >= 3:
        return LineString(close_ring(points))
    return LineString(tuple(points))


def _insert_transform(insert: InsertEntity, base: Position) -> Callable[[Position], Position]:
    angle = math.radians(insert.rotation)
    cos_a, sin_a = math.cos(angle), math.sin(angle)
    ix, iy, iz = insert.insert[0], insert.insert[1], _z(insert.insert)
    bz = _z(base) or 0.0

    def _apply(p: Position) -> Position:
        x = (p[0] - base[0]) * insert.scale_x
        y = (p[1] - base[1]) * insert.scale_y
        tx = ix + x * cos_a - y * sin_a
        ty = iy + x * sin_a + y * cos_a
        if len(p) > 2:
            return (tx, ty, (iz or 0.0) + p[2] - bz)
        return _with_z(tx, ty, iz)

    return _apply


def _expand_insert(entity: InsertEntity, ctx: ConversionContext, block_path: tuple[str, ...]) -> list[Converted]:
    common = entity.common
    attributes = {f"attr_{k}": v for k, v in entity.attributes.items() if k}
    point = Converted(Point(entity.insert), common, {"block": entity.block_name, **attributes})
    if not ctx.expand_blocks:
        return [point]
    if entity.block_name in block_path:
        msg = f"Cyclic block reference {' -> '.join((*block_path, entity.block_name))}"
        ctx.errors.append(EntityError(msg, entity_type="INSERT", handle=common.handle, layer=common.layer))
        return []
    block = ctx.blocks.get(entity.block_name)
    if block is None:
        msg = f"INSERT references unknown block {entity.block_name!r}"
        ctx.errors.append(EntityError(msg, entity_type="INSERT", handle=common.handle, layer=common.layer))
        return [point]

    transform = _insert_transform(entity, block.base_point)
    path = (*block_path, entity.block_name)
    expanded: list[Converted] = []
    for raw in block.entities:
        try:
            child = build_entity(raw)
            items = convert_entity(child, ctx, path)
        except EntityError as exc:
            ctx.errors.append(exc)
            continue
        for item in items:
            if item.common.layer == "0":
                item.common.layer = common.layer
            item.geometry = map_positions(item.geometry, transform)
            item.block = item.block or entity.block_name
            item.properties.update(attributes)
            expanded.append(item)
    logger.debug("Expanded INSERT | block=%s | handle=%s | geometries=%d", entity.block_name, common.handle, len(expanded))
    return expanded


def _convert(entity: DxfEntity, ctx: ConversionContext, block_path: tuple[str, ...]) -> list[Converted]:
    match entity:
        case PointEntity():
            return [Converted(Point(entity.location), entity.common)]
        case LineEntity():
            return [Converted(LineString((entity.start, entity.end)), entity.common)]
        case PolylineEntity():
            return [Converted(_polyline(entity, ctx.segments), entity.common)]
        case CircleEntity():
            ring = circle_ring(entity.center, entity.radius, ctx.segments)
            return [Converted(Polygon((tuple(ring),)), entity.common, {"radius": entity.radius})]
        case ArcEntity():
            points = arc_points(entity.center, entity.radius, entity.start_angle, entity.end_angle, ctx.segments)
            return [Converted(LineString(tuple(points)), entity.common, {"radius": entity.radius})]
        case EllipseEntity():
            points, full = ellipse_points(entity, ctx.segments)
            geometry: Geometry = Polygon((tuple(points),)) if full else LineString(tuple(points))
            return [Converted(geometry, entity.common)]
        case TextEntity():
            props = {"text": entity.text, "height": entity.height, "rotation": entity.rotation}
            return [Converted(Point(entity.insert), entity.common, props)]
        case InsertEntity():
            return _expand_insert(entity, ctx, block_path)
        case DimensionEntity():
            points = entity.definition_points
            geometry = LineString(tuple(points)) if len(points) >= 2 else Point(points[0])
            return [Converted(geometry, entity.common, {"text": entity.text} if entity.text else {})]
        case HatchEntity():
            if entity.unsupported_paths:
                msg = f"HATCH has {entity.unsupported_paths} boundary path(s) with unsupported edges"
                ctx.errors.append(
                    EntityError(msg, entity_type="HATCH", handle=entity.common.handle, layer=entity.common.layer)
                )
            props = {"pattern": entity.pattern} if entity.pattern else {}
            return [Converted(_hatch(entity), entity.common, props)]
        case FaceEntity():
            return [Converted(Polygon((close_ring(entity.corners),)), entity.common)]
        case SplineEntity():
            return [Converted(_spline(entity), entity.common)]
        case _:
            assert_never(entity)


def convert_entity(
    entity: DxfEntity,
    ctx: ConversionContext,
    block_path: tuple[str, ...] = (),
) -> list[Converted]:
    """Convert one entity record into zero or more geometries.

    Raises:
        EntityError: If the entity's coordinates cannot form a valid
            geometry (carries the entity's type/handle/layer).
    """
    try:
        return _convert(entity, ctx, block_path)
    except InvalidGeometryError as exc:
        common = entity.common
        msg = f"{common.entity_type} cannot form a valid geometry: {exc.message}"
        raise EntityError(
            msg,
            entity_type=common.entity_type,
            handle=common.handle,
            layer=common.layer,
            code="DXF_GEOMETRY_INVALID",
            stage="parse_dxf",
        ) from exc


def entity_properties(item: Converted) -> dict[str, Any]:
    """Feature properties for a converted geometry."""
    common = item.common
    props: dict[str, Any] = {"layer": common.layer, "entity_type": common.entity_type}
    if common.handle:
        props["handle"] = common.handle
    if common.color is not None:
        props["color"] = common.color
    if common.linetype:
        props["linetype"] = common.linetype
    if common.lineweight is not None:
        props["lineweight"] = common.lineweight
    if item.block:
        props["block"] = item.block
    props.update(item.properties)
    return props

