"""Structured diagnostics: per-entity warnings and progress events.

These records are what the progress/diagnostics collaborator receives.
They never carry raw stack traces; the message plus identifying context
(handle, layer, type, row, group code) is the primary signal.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from geo_loader.core.exceptions import EntityError


@dataclass(frozen=True, slots=True)
class ParseWarning:
    """A non-fatal, per-entity problem found during parsing or processing.

    Attributes:
        message: Human-readable description.
        code: Machine-readable code (e.g. ``"DXF_GROUP_CODE_RANGE"``).
        entity_type: Source entity type (``"LWPOLYLINE"``, ``"record"``, ``"row"``).
        handle: Entity handle, record number, or feature id.
        layer: Layer name, if known.
        row: Source line or row number, if known.
        group_code: Offending DXF group code, if any.
    """

    message: str
    code: str = "ENTITY_INVALID"
    entity_type: str = ""
    handle: str = ""
    layer: str = ""
    row: int | None = None
    group_code: int | None = None

    @classmethod
    def from_error(cls, error: EntityError, *, row: int | None = None) -> ParseWarning:
        return cls(
            message=error.message,
            code=error.code,
            entity_type=error.entity_type,
            handle=error.handle,
            layer=error.layer,
            row=row,
            group_code=error.group_code,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Progress update for one pipeline phase.

    Attributes:
        phase: Phase name (``"parse"``, ``"transform"``, ``"stream"``, ``"preview"``).
        fraction: Completion in ``[0, 1]``; never regresses within a channel.
        features_processed: Features handled so far in this phase.
        message: Optional free-text detail.
    """

    phase: str
    fraction: float
    features_processed: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
