"""DXF tag pass: structural checks and group-code value validation.

Runs before the document is handed to ``ezdxf.recover``:

- Reject files whose signature or pairing is unrecognisable (fatal)
- Validate every entity's tag values against the group-code range
  table; an entity with a bad value is cut out of the byte stream and
  reported, so one bad entity never costs the rest of the file
- Re-terminate a file that ends without ``EOF`` (reported as truncated)

Tags are read with ``ezdxf.lldxf.tagger.ascii_tags_loader``.  Comments
are kept so that tag ``i`` always spans source lines ``2i`` and ``2i+1``.
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import ezdxf
from ezdxf.lldxf.tagger import ascii_tags_loader

from geo_loader.core.exceptions import EntityError, StructuralError
from geo_loader.parsers.dxf._constants import (
    CODE_ATTRIBS_FOLLOW,
    CODE_COMMENT,
    CODE_ENTITY_TYPE,
    CODE_HANDLE,
    CODE_LAYER,
    CODE_NAME,
    GROUP_CODE_RANGES,
    INT_LIMITS,
    VALIDATED_SECTIONS,
    GroupCodeRange,
    ValueKind,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = logging.getLogger("geo_loader.parsers.dxf")

TagValue = str | float | int | bool


@dataclass(frozen=True, slots=True)
class RawTag:
    """One group code and its untyped value.

    Attributes:
        code: Group code.
        value: Value with surrounding whitespace removed.
        index: Position in the tag stream; the tag occupies source
            lines ``2 * index`` and ``2 * index + 1`` (0-based).
    """

    code: int
    value: str
    index: int

    @property
    def line(self) -> int:
        """1-based source line of the value."""
        return 2 * self.index + 2


class DxfStructureError(StructuralError):
    """Raised when a DXF file cannot be read as a tag stream at all."""

    default_stage = "parse_dxf"
    default_code = "DXF_STRUCTURE_INVALID"


@dataclass(slots=True)
class EntityGroup:
    """One top-level entity with its VERTEX/ATTRIB/SEQEND children, still raw."""

    head: list[RawTag]
    children: list[list[RawTag]] = field(default_factory=list)

    @property
    def entity_type(self) -> str:
        return peek_identity(self.head)[0]

    def tags(self) -> Iterator[RawTag]:
        yield from self.head
        for child in self.children:
            yield from child


@dataclass(slots=True)
class ScreenedDxf:
    """Result of the tag pass.

    Attributes:
        data: Bytes to load; the input itself when nothing was cut.
        errors: Entities removed for invalid group-code values.
        terminated: ``False`` when the file ended without ``EOF``.
        tag_count: Tags read, comments included.
    """

    data: bytes
    errors: list[EntityError] = field(default_factory=list)
    terminated: bool = True
    tag_count: int = 0


# ---------------------------------------------------------------------------
# Reading tags
# ---------------------------------------------------------------------------


def _lines(raw: bytes) -> list[bytes]:
    lines = raw.replace(b"\r\n", b"\n").split(b"\n")
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def read_tags(lines: Sequence[bytes], encoding: str = "utf-8") -> list[RawTag]:
    """Read raw tags from the file's lines.

    Raises:
        DxfStructureError: If the file is empty, a code line is not an
            integer, the file ends mid-pair, or no ``SECTION`` marker
            precedes the data.
    """
    if not lines:
        msg = "DXF file is empty"
        raise DxfStructureError(msg, code="DXF_EMPTY")
    text = b"\n".join(lines).decode(encoding, errors="replace") + "\n"
    try:
        tags = [
            RawTag(tag.code, str(tag.value).strip(), index)
            for index, tag in enumerate(ascii_tags_loader(io.StringIO(text), skip_comments=False))
        ]
    except ezdxf.DXFStructureError as exc:
        if len(lines) % 2:
            msg = f"DXF file is truncated: odd number of lines ({len(lines)})"
            raise DxfStructureError(msg, code="DXF_TRUNCATED") from exc
        msg = f"Invalid DXF tag stream: {exc}"
        raise DxfStructureError(msg) from exc

    first = next((t for t in tags if t.code != CODE_COMMENT), None)
    if first is None or (first.code, first.value) != (CODE_ENTITY_TYPE, "SECTION"):
        msg = "Not a DXF file: missing leading SECTION marker"
        raise DxfStructureError(msg, code="DXF_SIGNATURE_INVALID")
    return tags


def split_sections(tags: Sequence[RawTag]) -> tuple[dict[str, list[RawTag]], bool, bool]:
    """Group tags by section name.

    Returns:
        ``(sections, terminated, open_section)``; ``terminated`` is
        ``False`` when the file ended without ``EOF`` or inside an open
        section, ``open_section`` when the last section lacks ``ENDSEC``.
    """
    sections: dict[str, list[RawTag]] = {}
    current: list[RawTag] | None = None
    terminated = False
    i = 0
    while i < len(tags):
        tag = tags[i]
        if tag.code == CODE_ENTITY_TYPE and tag.value == "SECTION":
            name = tags[i + 1].value if i + 1 < len(tags) and tags[i + 1].code == CODE_NAME else ""
            current = sections.setdefault(name, [])
            i += 2
            continue
        if tag.code == CODE_ENTITY_TYPE and tag.value == "ENDSEC":
            current = None
        elif tag.code == CODE_ENTITY_TYPE and tag.value == "EOF":
            terminated = current is None
            break
        elif current is not None:
            current.append(tag)
        i += 1
    return sections, terminated, current is not None


def split_groups(tags: Sequence[RawTag]) -> Iterator[list[RawTag]]:
    """Yield tag groups, each starting at a code-0 tag."""
    group: list[RawTag] = []
    for tag in tags:
        if tag.code == CODE_ENTITY_TYPE and group:
            yield group
            group = []
        if tag.code == CODE_COMMENT:
            continue
        group.append(tag)
    if group:
        yield group


def peek_identity(group: Sequence[RawTag]) -> tuple[str, str, str]:
    """Return ``(type, handle, layer)`` from raw tags without coercion."""
    entity_type = group[0].value if group and group[0].code == CODE_ENTITY_TYPE else ""
    handle = next((t.value for t in group if t.code == CODE_HANDLE), "")
    layer = next((t.value for t in group if t.code == CODE_LAYER), "")
    return entity_type, handle, layer


def assemble_groups(tags: Sequence[RawTag]) -> list[EntityGroup]:
    """Attach VERTEX, ATTRIB and SEQEND groups to their owning POLYLINE/INSERT."""
    assembled: list[EntityGroup] = []
    owner: EntityGroup | None = None
    for group in split_groups(tags):
        entity_type = peek_identity(group)[0]
        if entity_type in ("VERTEX", "ATTRIB", "SEQEND") and owner is not None:
            owner.children.append(group)
            if entity_type == "SEQEND":
                owner = None
            continue
        current = EntityGroup(head=group)
        assembled.append(current)
        has_attribs = any(t.code == CODE_ATTRIBS_FOLLOW and t.value == "1" for t in group)
        owner = current if entity_type == "POLYLINE" or (entity_type == "INSERT" and has_attribs) else None
    return assembled


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def lookup_range(code: int) -> GroupCodeRange | None:
    for code_range in GROUP_CODE_RANGES:
        if code_range.start <= code <= code_range.end:
            return code_range
    return None


def coerce_value(code: int, value: str) -> TagValue:
    """Coerce ``value`` to the type its group code requires.

    Raises:
        ValueError: If the code is unknown or the value is outside its
            range (the caller attaches entity context).
    """
    code_range = lookup_range(code)
    if code_range is None:
        msg = f"Unknown group code {code}"
        raise ValueError(msg)

    kind = code_range.kind
    if kind in (ValueKind.STRING, ValueKind.HANDLE):
        return value
    if kind is ValueKind.BOOLEAN:
        if value not in ("0", "1"):
            msg = f"Group code {code} expects a boolean 0/1, got {value!r}"
            raise ValueError(msg)
        return value == "1"
    if kind is ValueKind.FLOAT:
        try:
            number = float(value)
        except ValueError as exc:
            msg = f"Group code {code} expects a float, got {value!r}"
            raise ValueError(msg) from exc
        if not math.isfinite(number):
            msg = f"Group code {code} expects a finite float, got {value!r}"
            raise ValueError(msg)
        return number

    try:
        integer = int(value)
    except ValueError as exc:
        msg = f"Group code {code} expects an integer ({kind}), got {value!r}"
        raise ValueError(msg) from exc
    low, high = INT_LIMITS[kind]
    if not low <= integer <= high:
        msg = f"Group code {code} value {integer} outside {kind} range [{low}, {high}]"
        raise ValueError(msg)
    return integer


def validate_group(group: EntityGroup) -> None:
    """Check every tag of an entity and its children.

    Raises:
        EntityError: On the first invalid tag, carrying the group code
            and the owning entity's type/handle/layer.
    """
    entity_type, handle, layer = peek_identity(group.head)
    for raw in group.tags():
        try:
            coerce_value(raw.code, raw.value)
        except ValueError as exc:
            msg = f"{entity_type or 'entity'} at line {raw.line}: {exc}"
            raise EntityError(
                msg,
                entity_type=entity_type,
                handle=handle,
                layer=layer,
                group_code=raw.code,
                code="DXF_GROUP_CODE_INVALID",
                stage="parse_dxf",
            ) from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _entity_groups(section: str, tags: Sequence[RawTag]) -> Iterator[EntityGroup]:
    for group in assemble_groups(tags):
        # Block delimiters keep the BLOCKS section well formed; they are never cut.
        if section == "BLOCKS" and group.entity_type in ("BLOCK", "ENDBLK"):
            continue
        yield group


def screen(raw: bytes, encoding: str = "utf-8") -> ScreenedDxf:
    """Run the tag pass over a whole file.

    Raises:
        DxfStructureError: If the file is not a recognisable DXF stream.
    """
    lines = _lines(raw)
    tags = read_tags(lines, encoding)
    sections, terminated, open_section = split_sections(tags)

    errors: list[EntityError] = []
    dropped: set[int] = set()
    for name in VALIDATED_SECTIONS:
        for group in _entity_groups(name, sections.get(name, [])):
            try:
                validate_group(group)
            except EntityError as exc:
                errors.append(exc)
                dropped.update(tag.index for tag in group.tags())

    result = ScreenedDxf(data=raw, errors=errors, terminated=terminated, tag_count=len(tags))
    if not dropped and terminated:
        return result

    kept = [line for number, line in enumerate(lines) if number // 2 not in dropped]
    if not terminated:
        if open_section:
            kept.extend((b"  0", b"ENDSEC"))
        kept.extend((b"  0", b"EOF"))
    result.data = b"\n".join(kept) + b"\n"
    logger.debug(
        "Screened DXF tag stream | tags=%d | removed_entities=%d | terminated=%s",
        len(tags),
        len(errors),
        terminated,
    )
    return result
