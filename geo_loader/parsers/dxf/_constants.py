"""DXF group-code ranges and entity names."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ValueKind(StrEnum):
    """Value type a group-code range carries."""

    STRING = "string"
    HANDLE = "handle"
    FLOAT = "float"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    BOOLEAN = "boolean"


@dataclass(frozen=True, slots=True)
class GroupCodeRange:
    """Inclusive range of group codes sharing one value kind."""

    start: int
    end: int
    kind: ValueKind


# AutoCAD DXF reference, "Group Code Value Types".
GROUP_CODE_RANGES: tuple[GroupCodeRange, ...] = (
    GroupCodeRange(0, 9, ValueKind.STRING),
    GroupCodeRange(10, 59, ValueKind.FLOAT),
    GroupCodeRange(60, 79, ValueKind.INT16),
    GroupCodeRange(90, 99, ValueKind.INT32),
    GroupCodeRange(100, 102, ValueKind.STRING),
    GroupCodeRange(105, 105, ValueKind.HANDLE),
    GroupCodeRange(110, 149, ValueKind.FLOAT),
    GroupCodeRange(160, 169, ValueKind.INT64),
    GroupCodeRange(170, 179, ValueKind.INT16),
    GroupCodeRange(210, 239, ValueKind.FLOAT),
    GroupCodeRange(270, 279, ValueKind.INT16),
    GroupCodeRange(280, 289, ValueKind.INT8),
    GroupCodeRange(290, 299, ValueKind.BOOLEAN),
    GroupCodeRange(300, 319, ValueKind.STRING),
    GroupCodeRange(320, 369, ValueKind.HANDLE),
    GroupCodeRange(370, 389, ValueKind.INT16),
    GroupCodeRange(390, 399, ValueKind.HANDLE),
    GroupCodeRange(400, 409, ValueKind.INT16),
    GroupCodeRange(410, 419, ValueKind.STRING),
    GroupCodeRange(420, 429, ValueKind.INT32),
    GroupCodeRange(430, 439, ValueKind.STRING),
    GroupCodeRange(440, 449, ValueKind.INT32),
    GroupCodeRange(450, 459, ValueKind.INT64),
    GroupCodeRange(460, 469, ValueKind.FLOAT),
    GroupCodeRange(470, 479, ValueKind.STRING),
    GroupCodeRange(480, 481, ValueKind.HANDLE),
    GroupCodeRange(999, 999, ValueKind.STRING),
    GroupCodeRange(1000, 1009, ValueKind.STRING),
    GroupCodeRange(1010, 1059, ValueKind.FLOAT),
    GroupCodeRange(1060, 1070, ValueKind.INT16),
    GroupCodeRange(1071, 1071, ValueKind.INT32),
)

INT_LIMITS: dict[ValueKind, tuple[int, int]] = {
    ValueKind.INT8: (0, 255),
    ValueKind.INT16: (-32768, 32767),
    ValueKind.INT32: (-(2**31), 2**31 - 1),
    ValueKind.INT64: (-(2**63), 2**63 - 1),
}

# ---------------------------------------------------------------------------
# Common group codes
# ---------------------------------------------------------------------------

CODE_ENTITY_TYPE = 0
CODE_NAME = 2
CODE_HANDLE = 5
CODE_LAYER = 8
CODE_ATTRIBS_FOLLOW = 66
CODE_COMMENT = 999

# Sections whose entities are value-checked before loading.
VALIDATED_SECTIONS: tuple[str, ...] = ("ENTITIES", "BLOCKS")

# ---------------------------------------------------------------------------
# Entity names
# ---------------------------------------------------------------------------

SUPPORTED_ENTITIES: frozenset[str] = frozenset(
    {
        "POINT",
        "LINE",
        "POLYLINE",
        "LWPOLYLINE",
        "CIRCLE",
        "ARC",
        "ELLIPSE",
        "TEXT",
        "MTEXT",
        "INSERT",
        "DIMENSION",
        "HATCH",
        "3DFACE",
        "SOLID",
        "SPLINE",
    }
)
