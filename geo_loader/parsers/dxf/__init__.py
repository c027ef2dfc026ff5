"""DXF parser.

Reads ASCII DXF with ezdxf and converts supported entities to features.
Before loading, every entity's group-code values are validated against
the DXF range table; an entity with a bad value is removed and reported
as a ``ParseWarning`` while the rest of the file loads.  The document is
then read with ``ezdxf.recover``, and whatever its auditor fixes or
discards is reported the same way.  Only an unrecognisable file (no
``SECTION`` signature, non-integer code line, odd line count) is fatal.

The document is loaded when the stream opens; entities are converted
as the stream is iterated.

Public API:
    DxfParser          -- ``Parser`` implementation for ``.dxf``
    DxfParseOptions    -- layer allow-list, visibility, tessellation, block expansion
    DxfStructureError  -- fatal structural error
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import ezdxf
from ezdxf import recover

from geo_loader.core.constants import CIRCLE_SEGMENTS
from geo_loader.core.exceptions import EntityError
from geo_loader.models.diagnostics import ParseWarning
from geo_loader.models.feature import Feature
from geo_loader.parsers.base import ParseResult, Parser, ParseStream
from geo_loader.parsers.dxf._conversion import ConversionContext, convert_entity, entity_properties
from geo_loader.parsers.dxf._entities import (
    LayerInfo,
    build_entity,
    is_supported,
    read_blocks,
    read_header,
    read_layers,
)
from geo_loader.parsers.dxf._tags import DxfStructureError, screen

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

__all__ = [
    "DxfParseOptions",
    "DxfParser",
    "DxfStructureError",
]

logger = logging.getLogger("geo_loader.parsers.dxf")

_BINARY_SIGNATURE = b"AutoCAD Binary DXF"


@dataclass(frozen=True, slots=True)
class DxfParseOptions:
    """DXF parsing options.

    Attributes:
        layers: Layer allow-list; ``None`` keeps every layer.
        visible_only: Drop entities on frozen or switched-off layers.
        segments: Tessellation segment count for circles, arcs and ellipses.
        expand_blocks: Expand INSERT references into their block geometry.
        encoding: Text encoding used for the group-code validation pass.
    """

    layers: frozenset[str] | None = None
    visible_only: bool = False
    segments: int = CIRCLE_SEGMENTS
    expand_blocks: bool = True
    encoding: str = "utf-8"

    def __post_init__(self) -> None:
        if self.layers is not None and not isinstance(self.layers, frozenset):
            object.__setattr__(self, "layers", frozenset(self.layers))
        if self.segments < 3:
            msg = f"segments must be >= 3, got {self.segments}"
            raise ValueError(msg)


class DxfParser(Parser):
    """Parser for ASCII DXF files."""

    format_name = "dxf"

    def __init__(self, options: DxfParseOptions | None = None) -> None:
        self._options = options or DxfParseOptions()

    @property
    def options(self) -> DxfParseOptions:
        return self._options

    def open_path(self, path: Path) -> ParseStream:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            msg = f"Cannot read DXF file: {exc}"
            raise DxfStructureError(msg, code="DXF_UNREADABLE") from exc
        return self.open_bytes(raw, source=path.name)

    def parse_text(self, text: str) -> ParseResult:
        """Parse DXF text already in memory.

        Raises:
            DxfStructureError: If the text is not a recognisable DXF stream.
        """
        with self.open_bytes(text.encode(self._options.encoding)) as stream:
            return stream.to_result()

    def open_bytes(self, raw: bytes, *, source: str = "") -> ParseStream:
        """Validate and load a DXF document, returning a lazy feature stream.

        Raises:
            DxfStructureError: If the data is binary DXF or not a
                recognisable DXF stream.
        """
        if raw.startswith(_BINARY_SIGNATURE):
            msg = "Binary DXF is not supported"
            raise DxfStructureError(msg, code="DXF_BINARY_UNSUPPORTED")

        screened = screen(raw, self._options.encoding)
        warnings: list[ParseWarning] = []
        for error in screened.errors:
            self._warn(warnings, error)
        if not screened.terminated:
            warnings.append(
                ParseWarning(message="DXF file ends without EOF marker; content may be truncated", code="DXF_TRUNCATED")
            )

        try:
            doc, auditor = recover.read(io.BytesIO(screened.data))
        except ezdxf.DXFError as exc:
            msg = f"ezdxf cannot load the document: {exc}"
            raise DxfStructureError(msg) from exc
        if auditor.fixes:
            logger.info("DXF auditor applied fixes | source=%s | fixes=%d", source or "<bytes>", len(auditor.fixes))
        for entry in auditor.errors:
            warnings.append(self._audit_warning(entry))

        layer_table = read_layers(doc)
        ctx = ConversionContext(
            blocks=read_blocks(doc),
            segments=self._options.segments,
            expand_blocks=self._options.expand_blocks,
        )
        metadata: dict[str, Any] = {**read_header(doc), "dxf_version": doc.dxfversion, "filtered_by_layer": 0}
        layers = set(layer_table)
        features = self._features(doc.modelspace(), ctx, layer_table, layers, warnings, metadata)
        return self._stream(
            features,
            source or "<bytes>",
            layers=layers,
            warnings=warnings,
            metadata=metadata,
        )

    def parse_bytes(self, raw: bytes) -> ParseResult:
        with self.open_bytes(raw) as stream:
            return stream.to_result()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _features(
        self,
        entities: Any,
        ctx: ConversionContext,
        layer_table: dict[str, LayerInfo],
        layers: set[str],
        warnings: list[ParseWarning],
        metadata: dict[str, Any],
    ) -> Iterator[Feature]:
        for index, raw in enumerate(entities):
            entity_type = raw.dxftype()
            if not is_supported(entity_type):
                self._warn(
                    warnings,
                    EntityError(
                        f"Unsupported entity type {entity_type!r}",
                        entity_type=entity_type,
                        handle=raw.dxf.get("handle") or "",
                        layer=raw.dxf.get("layer") or "",
                        code="DXF_ENTITY_UNSUPPORTED",
                    ),
                )
                continue
            try:
                entity = build_entity(raw)
                converted = convert_entity(entity, ctx)
            except EntityError as exc:
                self._warn(warnings, exc)
                continue
            finally:
                for error in ctx.errors:
                    self._warn(warnings, error)
                ctx.errors.clear()

            for offset, item in enumerate(converted):
                layer = item.common.layer
                layers.add(layer)
                if not self._keep_layer(layer, layer_table):
                    metadata["filtered_by_layer"] += 1
                    continue
                handle = entity.common.handle or f"{entity_type}-{index}"
                feature_id = handle if len(converted) == 1 else f"{handle}:{offset}"
                yield Feature(geometry=item.geometry, properties=entity_properties(item), id=feature_id)

        if metadata["filtered_by_layer"]:
            logger.info("Filtered DXF entities by layer | skipped=%d", metadata["filtered_by_layer"])

    @staticmethod
    def _audit_warning(entry: Any) -> ParseWarning:
        entity = entry.entity
        entity_type, handle, layer = "", "", ""
        if entity is not None:
            entity_type = entity.dxftype()
            handle = entity.dxf.get("handle") or ""
            layer = entity.dxf.get("layer") or ""
        logger.warning(
            "DXF auditor reported a problem | type=%s | handle=%s | reason=%s",
            entity_type or "?",
            handle or "?",
            entry.message,
        )
        return ParseWarning(
            message=entry.message,
            code="DXF_AUDIT",
            entity_type=entity_type,
            handle=handle,
            layer=layer,
        )

    def _keep_layer(self, layer: str, layer_table: dict[str, LayerInfo]) -> bool:
        if self._options.layers is not None and layer not in self._options.layers:
            return False
        if self._options.visible_only:
            info = layer_table.get(layer)
            return info is None or info.visible
        return True
