"""Unified loader exception taxonomy.

Every domain exception inherits from ``PipelineError`` and carries
structured context fields that let the caller decide whether to abort
the file, skip an entity, or retry a network call.

Taxonomy categories
-------------------
- ``StructuralError``       (fatal) unrecognised signature, truncated
  header, missing required companion file.  Aborts before any feature.
- ``EntityError``           (recoverable) one malformed entity, record
  or row.  Parsers catch it and emit a ``ParseWarning`` instead.
- ``TransformationError``   a coordinate could not be reprojected; the
  affected coordinate becomes ``None``.
- ``RepairError``           a geometry could not be cleaned or repaired;
  the feature keeps its original geometry plus a flag.
- ``ResourceExceededError`` memory or size ceiling hit; terminal, with
  partial results marked incomplete.

Every exception exposes ``to_error_dict()`` for a stable structured
error payload suitable for diagnostics and logging.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class PipelineError(Exception):
    """Base exception for all loader errors.

    Attributes:
        message: Human-readable error description.
        stage: Pipeline stage where the error occurred
            (e.g. ``"parse_dxf"``, ``"transform"``).
        code: Machine-readable error code (e.g. ``"DXF_TRUNCATED"``).
        retryable: Whether the caller may retry the operation.
        correlation_id: Import session identifier.
        diagnostics: Non-fatal warnings accumulated before the failure.
    """

    #: Default stage for subclasses (override via class attribute or kwarg).
    default_stage: str = ""
    #: Default code for subclasses (override via class attribute or kwarg).
    default_code: str = ""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool = False,
        correlation_id: str = "",
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = retryable
        self.correlation_id = correlation_id
        self.diagnostics: list[object] = []
        super().__init__(message)

    @property
    def category(self) -> str:
        """Return the error category based on concrete class."""
        if isinstance(self, StructuralError):
            return "structural"
        if isinstance(self, EntityError):
            return "entity"
        if isinstance(self, TransformationError):
            return "transformation"
        if isinstance(self, RepairError):
            return "repair"
        if isinstance(self, ResourceExceededError):
            return "resource"
        return "transient" if self.retryable else "permanent"

    @property
    def is_fatal(self) -> bool:
        """Whether this error terminates the current file's pipeline."""
        return self.category in ("structural", "resource", "permanent")

    def attach_diagnostics(self, warnings: Sequence[object]) -> None:
        """Attach accumulated non-fatal warnings to a terminal error."""
        self.diagnostics = list(warnings)

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "correlation_id": self.correlation_id,
            "diagnostics": len(self.diagnostics),
        }


# ---------------------------------------------------------------------------
# (a) Fatal-Structural
# ---------------------------------------------------------------------------


class StructuralError(PipelineError):
    """File signature unrecognised, header truncated, or companion missing."""

    default_stage = "parse"
    default_code = "STRUCTURAL_ERROR"

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class UnsupportedFormatError(StructuralError):
    """No parser is registered for the file's extension."""

    default_code = "UNSUPPORTED_FORMAT"


class MissingCompanionError(StructuralError):
    """A required companion file (e.g. ``.shx``/``.dbf``) is absent.

    Attributes:
        companion: The missing extension (e.g. ``".shx"``).
    """

    default_code = "MISSING_COMPANION"

    def __init__(self, companion: str, message: str = "", **kwargs: object) -> None:
        self.companion = companion
        super().__init__(message or f"Required companion file {companion} is missing", **kwargs)


# ---------------------------------------------------------------------------
# (b) Per-Entity-Recoverable
# ---------------------------------------------------------------------------


class EntityError(PipelineError):
    """A single entity, record, or row is malformed.

    Attributes:
        entity_type: Source entity type (e.g. ``"LWPOLYLINE"``).
        handle: Source handle or record/row identifier.
        layer: Layer name, if known.
        group_code: Offending DXF group code, if any.
    """

    default_stage = "parse"
    default_code = "ENTITY_INVALID"

    def __init__(
        self,
        message: str = "",
        *,
        entity_type: str = "",
        handle: str = "",
        layer: str = "",
        group_code: int | None = None,
        **kwargs: object,
    ) -> None:
        self.entity_type = entity_type
        self.handle = handle
        self.layer = layer
        self.group_code = group_code
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# (c) Transformation-Failure
# ---------------------------------------------------------------------------


class TransformationError(PipelineError):
    """A coordinate transform leg failed.

    Attributes:
        leg: The failing leg (e.g. ``"EPSG:2056->EPSG:4326"``).
        position: The original input position.
    """

    default_stage = "transform"
    default_code = "TRANSFORM_FAILED"

    def __init__(
        self,
        message: str = "",
        *,
        leg: str = "",
        position: tuple[float, ...] | None = None,
        **kwargs: object,
    ) -> None:
        self.leg = leg
        self.position = position
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class ServiceCallError(TransformationError):
    """One call to the external geodesy service failed.

    Attributes:
        call: Name of the failing call (``"lhn95tobessel"`` or ``"lv95towgs84"``).
        status_code: HTTP status, or ``None`` for transport failures.
    """

    default_code = "SERVICE_CALL_FAILED"

    def __init__(
        self,
        call: str,
        message: str = "",
        *,
        status_code: int | None = None,
        retryable: bool = False,
        **kwargs: object,
    ) -> None:
        self.call = call
        self.status_code = status_code
        super().__init__(message, leg=call, retryable=retryable, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# (d) Repair-Failure
# ---------------------------------------------------------------------------


class RepairError(PipelineError):
    """Geometry cannot be cleaned or repaired into a valid shape."""

    default_stage = "repair"
    default_code = "REPAIR_FAILED"


# ---------------------------------------------------------------------------
# (e) Resource-Exceeded
# ---------------------------------------------------------------------------


class ResourceExceededError(PipelineError):
    """A size, memory, or complexity ceiling was hit.

    Attributes:
        limit: The configured ceiling.
        actual: The observed value that crossed it.
        partial: The non-authoritative result gathered before the ceiling
            was hit, when the raiser had one.
    """

    default_stage = "stream"
    default_code = "RESOURCE_EXCEEDED"

    def __init__(
        self,
        message: str = "",
        *,
        limit: float = 0,
        actual: float = 0,
        partial: object = None,
        **kwargs: object,
    ) -> None:
        self.limit = limit
        self.actual = actual
        self.partial = partial
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class StreamAbortedError(ResourceExceededError):
    """The feature stream terminated early.

    Raised when the producer fails mid-stream.  ``partial`` holds the
    incomplete result (bounds so far, features emitted) so callers can
    still report it, explicitly marked non-authoritative.
    """

    default_code = "STREAM_ABORTED"
