"""DXF entity reconstruction.

Turns ezdxf entities into typed entity records, one dataclass per
supported entity type.  The ``DxfEntity`` union is the input to the
geometry conversion dispatch in ``_conversion``.

Also reads the header variables, the layer table and the block
definitions from the loaded ezdxf document.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ezdxf.entities.boundary_paths import ArcEdge, EdgePath, LineEdge, PolylinePath
from ezdxf.math import Vec3

from geo_loader.core.exceptions import EntityError
from geo_loader.parsers.dxf._constants import SUPPORTED_ENTITIES

if TYPE_CHECKING:
    from ezdxf.document import Drawing
    from ezdxf.entities import DXFGraphic

    from geo_loader.models.geometry import Position

logger = logging.getLogger("geo_loader.parsers.dxf")

HATCH_ARC_STEPS = 8
_LAYOUT_BLOCKS = ("*model_space", "*paper_space")


# ---------------------------------------------------------------------------
# Entity records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class EntityCommon:
    """Attributes shared by every entity."""

    entity_type: str
    handle: str = ""
    layer: str = "0"
    linetype: str = ""
    color: int | None = None
    lineweight: int | None = None


@dataclass(slots=True)
class PointEntity:
    common: EntityCommon
    location: Position


@dataclass(slots=True)
class LineEntity:
    common: EntityCommon
    start: Position
    end: Position


@dataclass(slots=True)
class PolylineEntity:
    """POLYLINE or LWPOLYLINE.  ``bulges[i]`` applies to segment i -> i+1."""

    common: EntityCommon
    vertices: list[Position]
    bulges: list[float]
    closed: bool


@dataclass(slots=True)
class CircleEntity:
    common: EntityCommon
    center: Position
    radius: float


@dataclass(slots=True)
class ArcEntity:
    """Angles are in degrees, counter-clockwise from +x."""

    common: EntityCommon
    center: Position
    radius: float
    start_angle: float
    end_angle: float


@dataclass(slots=True)
class EllipseEntity:
    """``major_axis`` is relative to ``center``; parameters are radians."""

    common: EntityCommon
    center: Position
    major_axis: Position
    ratio: float
    start_param: float
    end_param: float


@dataclass(slots=True)
class TextEntity:
    """TEXT or MTEXT."""

    common: EntityCommon
    insert: Position
    text: str
    height: float
    rotation: float


@dataclass(slots=True)
class InsertEntity:
    common: EntityCommon
    block_name: str
    insert: Position
    scale_x: float
    scale_y: float
    rotation: float
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DimensionEntity:
    common: EntityCommon
    definition_points: list[Position]
    text: str


@dataclass(slots=True)
class HatchEntity:
    """Boundary paths as position lists; ``unsupported_paths`` counts skipped ones."""

    common: EntityCommon
    pattern: str
    paths: list[list[Position]]
    unsupported_paths: int = 0


@dataclass(slots=True)
class FaceEntity:
    """3DFACE or SOLID corners, already in ring order."""

    common: EntityCommon
    corners: list[Position]


@dataclass(slots=True)
class SplineEntity:
    common: EntityCommon
    control_points: list[Position]
    fit_points: list[Position]
    closed: bool


DxfEntity = (
    PointEntity
    | LineEntity
    | PolylineEntity
    | CircleEntity
    | ArcEntity
    | EllipseEntity
    | TextEntity
    | InsertEntity
    | DimensionEntity
    | HatchEntity
    | FaceEntity
    | SplineEntity
)


@dataclass(slots=True)
class LayerInfo:
    name: str
    color: int = 7
    frozen: bool = False
    off: bool = False

    @property
    def visible(self) -> bool:
        return not (self.frozen or self.off)


@dataclass(slots=True)
class BlockDefinition:
    """A block's base point and its ezdxf entities, converted on demand."""

    name: str
    base_point: Position
    entities: list[Any] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Attribute helpers
# ---------------------------------------------------------------------------


def _pos(vector: Any) -> Position:
    """Position from an ezdxf vector; a zero z is dropped."""
    v = Vec3(vector)
    return (v.x, v.y) if v.z == 0 else (v.x, v.y, v.z)


def _common(entity: DXFGraphic) -> EntityCommon:
    dxf = entity.dxf
    return EntityCommon(
        entity_type=entity.dxftype(),
        handle=dxf.get("handle") or "",
        layer=dxf.get("layer") or "0",
        linetype=dxf.get("linetype") or "",
        color=dxf.get("color"),
        lineweight=dxf.get("lineweight"),
    )


def _entity_error(common: EntityCommon, message: str) -> EntityError:
    return EntityError(
        message,
        entity_type=common.entity_type,
        handle=common.handle,
        layer=common.layer,
        code="DXF_ENTITY_INVALID",
        stage="parse_dxf",
    )


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _build_lwpolyline(entity: Any, common: EntityCommon) -> PolylineEntity:
    elevation = float(entity.dxf.get("elevation", 0.0) or 0.0)
    vertices: list[Position] = []
    bulges: list[float] = []
    for x, y, bulge in entity.get_points("xyb"):
        vertices.append((x, y) if elevation == 0 else (x, y, elevation))
        bulges.append(bulge)
    return PolylineEntity(common, vertices=vertices, bulges=bulges, closed=bool(entity.closed))


def _build_polyline(entity: Any, common: EntityCommon) -> PolylineEntity:
    vertices: list[Position] = []
    bulges: list[float] = []
    for vertex in entity.vertices:
        # Polyface face records carry vertex indexes, not coordinates.
        if vertex.is_face_record:
            continue
        vertices.append(_pos(vertex.dxf.location))
        bulges.append(float(vertex.dxf.get("bulge", 0.0)))
    if entity.is_poly_face_mesh:
        logger.debug("Reading POLYFACE mesh vertices only | handle=%s", common.handle)
    return PolylineEntity(common, vertices=vertices, bulges=bulges, closed=bool(entity.is_closed))


def _build_text(entity: Any, common: EntityCommon) -> TextEntity:
    dxf = entity.dxf
    if common.entity_type == "MTEXT":
        return TextEntity(
            common,
            insert=_pos(dxf.get("insert", (0.0, 0.0))),
            text=entity.plain_text(),
            height=float(dxf.get("char_height", 0.0)),
            rotation=float(entity.get_rotation()),
        )
    return TextEntity(
        common,
        insert=_pos(dxf.get("insert", (0.0, 0.0))),
        text=dxf.get("text", ""),
        height=float(dxf.get("height", 0.0)),
        rotation=float(dxf.get("rotation", 0.0)),
    )


def _build_face(entity: Any, common: EntityCommon) -> FaceEntity:
    dxf = entity.dxf
    corners = [_pos(dxf.get(f"vtx{i}", (0.0, 0.0))) for i in range(4)]
    if common.entity_type == "SOLID":
        # SOLID stores its corners in zig-zag order.
        corners = [corners[0], corners[1], corners[3], corners[2]]
    if corners[3] == corners[2]:
        corners = corners[:3]
    return FaceEntity(common, corners=corners)


def _arc_edge(edge: ArcEdge) -> list[Position]:
    start, end = edge.start_angle, edge.end_angle
    if end < start:
        end += 360.0
    cx, cy = edge.center[0], edge.center[1]
    points: list[Position] = []
    for k in range(HATCH_ARC_STEPS + 1):
        angle = math.radians(start + (end - start) * k / HATCH_ARC_STEPS)
        if not edge.ccw:
            angle = -angle
        points.append((cx + edge.radius * math.cos(angle), cy + edge.radius * math.sin(angle)))
    return points


def _build_hatch(entity: Any, common: EntityCommon) -> HatchEntity:
    """Polyline paths and line/arc edge paths; ellipse and spline edges are skipped."""
    paths: list[list[Position]] = []
    unsupported = 0
    for path in entity.paths:
        ring: list[Position] = []
        if isinstance(path, PolylinePath):
            ring = [(float(v[0]), float(v[1])) for v in path.vertices]
        elif isinstance(path, EdgePath):
            for edge in path.edges:
                if isinstance(edge, LineEdge):
                    ring.append((edge.start[0], edge.start[1]))
                elif isinstance(edge, ArcEdge):
                    ring.extend(_arc_edge(edge))
                else:
                    ring = []
                    break
            if not ring:
                unsupported += 1
                continue
        if len(ring) >= 3:
            paths.append(ring)
    return HatchEntity(common, pattern=entity.dxf.get("pattern_name", ""), paths=paths, unsupported_paths=unsupported)


def build_entity(entity: DXFGraphic) -> DxfEntity:
    """Build the typed record for one ezdxf entity.

    Raises:
        EntityError: If the entity type is unsupported or its values
            cannot describe a geometry.
    """
    common = _common(entity)
    dxf = entity.dxf
    match common.entity_type:
        case "POINT":
            return PointEntity(common, location=_pos(dxf.get("location", (0.0, 0.0))))
        case "LINE":
            return LineEntity(common, start=_pos(dxf.get("start", (0.0, 0.0))), end=_pos(dxf.get("end", (0.0, 0.0))))
        case "LWPOLYLINE":
            return _build_lwpolyline(entity, common)
        case "POLYLINE":
            return _build_polyline(entity, common)
        case "CIRCLE" | "ARC":
            radius = float(dxf.get("radius", 0.0))
            if radius <= 0:
                raise _entity_error(common, f"{common.entity_type} radius must be > 0, got {radius}")
            center = _pos(dxf.get("center", (0.0, 0.0)))
            if common.entity_type == "CIRCLE":
                return CircleEntity(common, center=center, radius=radius)
            return ArcEntity(
                common,
                center=center,
                radius=radius,
                start_angle=float(dxf.get("start_angle", 0.0)),
                end_angle=float(dxf.get("end_angle", 360.0)),
            )
        case "ELLIPSE":
            ratio = float(dxf.get("ratio", 1.0))
            if not 0 < ratio <= 1:
                raise _entity_error(common, f"ELLIPSE axis ratio must be in (0, 1], got {ratio}")
            return EllipseEntity(
                common,
                center=_pos(dxf.get("center", (0.0, 0.0))),
                major_axis=_pos(dxf.get("major_axis", (1.0, 0.0))),
                ratio=ratio,
                start_param=float(dxf.get("start_param", 0.0)),
                end_param=float(dxf.get("end_param", math.tau)),
            )
        case "TEXT" | "MTEXT":
            return _build_text(entity, common)
        case "INSERT":
            return InsertEntity(
                common,
                block_name=dxf.get("name", ""),
                insert=_pos(dxf.get("insert", (0.0, 0.0))),
                scale_x=float(dxf.get("xscale", 1.0)),
                scale_y=float(dxf.get("yscale", 1.0)),
                rotation=float(dxf.get("rotation", 0.0)),
                attributes={a.dxf.get("tag", ""): a.dxf.get("text", "") for a in entity.attribs},
            )
        case "DIMENSION":
            points = [_pos(dxf.get(name)) for name in ("defpoint2", "defpoint3") if dxf.hasattr(name)]
            if not points:
                points = [_pos(dxf.get("defpoint", (0.0, 0.0)))]
            return DimensionEntity(common, definition_points=points, text=dxf.get("text", ""))
        case "HATCH":
            return _build_hatch(entity, common)
        case "3DFACE" | "SOLID":
            return _build_face(entity, common)
        case "SPLINE":
            return SplineEntity(
                common,
                control_points=[_pos(p) for p in entity.control_points],
                fit_points=[_pos(p) for p in entity.fit_points],
                closed=bool(entity.closed),
            )
    msg = f"Unsupported entity type {common.entity_type!r}"
    raise EntityError(
        msg,
        entity_type=common.entity_type,
        handle=common.handle,
        layer=common.layer,
        code="DXF_ENTITY_UNSUPPORTED",
        stage="parse_dxf",
    )


def is_supported(entity_type: str) -> bool:
    return entity_type in SUPPORTED_ENTITIES


# ---------------------------------------------------------------------------
# Header / layers / blocks
# ---------------------------------------------------------------------------


def read_header(doc: Drawing) -> dict[str, object]:
    """Extract ``$INSUNITS``, ``$EXTMIN`` and ``$EXTMAX`` when the header sets them."""
    header: dict[str, object] = {}
    if "$INSUNITS" in doc.header:
        header["insunits"] = int(doc.header.get("$INSUNITS", 0))
    for variable in ("$EXTMIN", "$EXTMAX"):
        if variable in doc.header:
            v = Vec3(doc.header.get(variable))
            header[variable[1:].lower()] = (v.x, v.y)
    return header


def read_layers(doc: Drawing) -> dict[str, LayerInfo]:
    """Read the layer table."""
    layers: dict[str, LayerInfo] = {}
    for layer in doc.layers:
        name = layer.dxf.name
        layers[name] = LayerInfo(
            name=name,
            color=abs(int(layer.dxf.get("color", 7))),
            frozen=layer.is_frozen(),
            off=layer.is_off(),
        )
    return layers


def read_blocks(doc: Drawing) -> dict[str, BlockDefinition]:
    """Read block definitions; layout blocks are left out."""
    blocks: dict[str, BlockDefinition] = {}
    for layout in doc.blocks:
        name = layout.name
        if name.lower().startswith(_LAYOUT_BLOCKS):
            continue
        base = layout.block.dxf.get("base_point", (0.0, 0.0)) if layout.block is not None else (0.0, 0.0)
        blocks[name] = BlockDefinition(name=name, base_point=_pos(base), entities=list(layout))
    return blocks
