"""ESRI Shapefile parser.

Reads a shapefile set through fiona (OGR "ESRI Shapefile" driver).
Companion files are located by stem, case-insensitively.  A missing
``.shx`` or ``.dbf`` is fatal and raised before any feature is
produced; a missing ``.prj`` leaves the coordinate system to
range-based detection.  A record that cannot be read or converted is
skipped with a ``ParseWarning`` naming its record number.

Public API:
    ShapefileParser          -- ``Parser`` implementation for ``.shp``
    ShapefileReader          -- lazy record iterator over one shapefile set
    ShapefileStructureError  -- fatal structural error
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from geo_loader.core.exceptions import EntityError, MissingCompanionError, StructuralError
from geo_loader.models.feature import Feature
from geo_loader.models.geometry import geometry_from_dict
from geo_loader.parsers.base import Parser, ParseStream
from geo_loader.parsers.shapefile._constants import REQUIRED_COMPANIONS
from geo_loader.parsers.shapefile._prj import detect_prj_crs

if TYPE_CHECKING:
    from collections.abc import Iterator

    from geo_loader.models.diagnostics import ParseWarning
    from geo_loader.models.geometry import Geometry

__all__ = [
    "ShapefileParser",
    "ShapefileReader",
    "ShapefileStructureError",
]

logger = logging.getLogger("geo_loader.parsers.shapefile")


class ShapefileStructureError(StructuralError):
    """Raised when a shapefile set cannot be opened at all."""

    default_stage = "parse_shapefile"
    default_code = "SHAPEFILE_STRUCTURE_INVALID"


def find_companion(path: Path, extension: str) -> Path | None:
    """Return the sibling of ``path`` with ``extension`` (any case), if present."""
    for candidate in (path.with_suffix(extension), path.with_suffix(extension.upper())):
        if candidate.exists():
            return candidate
    stem = path.stem.lower()
    for sibling in path.parent.iterdir():
        if sibling.stem.lower() == stem and sibling.suffix.lower() == extension:
            return sibling
    return None


def _record_error(number: int, message: str) -> EntityError:
    return EntityError(
        message,
        entity_type="record",
        handle=str(number),
        code="SHAPEFILE_RECORD_INVALID",
        stage="parse_shapefile",
    )


class ShapefileReader:
    """One open shapefile set (``.shp`` + ``.shx`` + ``.dbf``, optional ``.prj``/``.cpg``).

    The constructor validates companions and opens the collection;
    records are read lazily by ``iter_records``.  Close the reader when
    done.

    Raises:
        MissingCompanionError: If ``.shx`` or ``.dbf`` is absent.
        ShapefileStructureError: If OGR cannot open the set.
    """

    def __init__(self, path: Path, *, encoding: str | None = None) -> None:
        import fiona
        from fiona.errors import FionaError

        self.path = path
        for ext in REQUIRED_COMPANIONS:
            if find_companion(path, ext) is None:
                msg = f"Required companion file {path.stem}{ext} is missing next to {path.name}"
                raise MissingCompanionError(ext, msg, stage="parse_shapefile")

        cpg = find_companion(path, ".cpg")
        self.encoding = encoding or (cpg.read_text(encoding="ascii", errors="ignore").strip() if cpg else None)
        try:
            if encoding:
                self._collection = fiona.open(str(path), driver="ESRI Shapefile", encoding=encoding)
            else:
                self._collection = fiona.open(str(path), driver="ESRI Shapefile")
        except FionaError as exc:
            msg = f"Cannot open shapefile {path.name}: {exc}"
            raise ShapefileStructureError(msg, code="SHAPEFILE_UNREADABLE") from exc

    @property
    def shape_type(self) -> str:
        return str(self._collection.schema.get("geometry", "Unknown"))

    @property
    def bbox(self) -> tuple[float, float, float, float]:
        return tuple(self._collection.bounds)  # type: ignore[return-value]

    def __len__(self) -> int:
        return len(self._collection)

    def coordinate_system(self) -> str | None:
        return detect_prj_crs(self._collection.crs_wkt or "")

    def iter_records(self) -> Iterator[tuple[int, Geometry | None, dict[str, Any]] | EntityError]:
        """Yield ``(record_number, geometry, attributes)`` per record (1-based).

        A per-record problem is yielded as an ``EntityError`` instead so
        the caller can record it and continue.
        """
        from fiona.errors import FionaError

        for index in range(len(self._collection)):
            number = index + 1
            try:
                record = self._collection[index]
            except (FionaError, KeyError, IndexError) as exc:
                yield _record_error(number, f"Record {number} cannot be read: {exc}")
                continue
            if record is None:
                yield _record_error(number, f"Record {number} is missing from the .shp file")
                continue
            properties = dict(record.properties or {})
            if record.geometry is None:
                yield number, None, properties
                continue
            try:
                geometry = geometry_from_dict(
                    {"type": record.geometry.type, "coordinates": record.geometry.coordinates}
                )
            except EntityError as exc:
                yield _record_error(number, f"Record {number}: {exc.message}")
                continue
            yield number, geometry, properties

    def close(self) -> None:
        self._collection.close()


class ShapefileParser(Parser):
    """Parser for ESRI Shapefiles."""

    format_name = "shapefile"

    def __init__(self, encoding: str | None = None) -> None:
        self._encoding = encoding

    def open_path(self, path: Path) -> ParseStream:
        reader = ShapefileReader(Path(path), encoding=self._encoding)
        try:
            metadata: dict[str, Any] = {
                "shape_type": reader.shape_type,
                "bbox": reader.bbox,
                "encoding": reader.encoding,
                "records": len(reader),
                "null_shapes": 0,
            }
            coordinate_system = reader.coordinate_system()
        except BaseException:
            reader.close()
            raise
        warnings: list[ParseWarning] = []
        return self._stream(
            self._features(reader, path.stem, warnings, metadata),
            path,
            layers={path.stem},
            warnings=warnings,
            coordinate_system=coordinate_system,
            metadata=metadata,
            on_close=reader.close,
        )

    def _features(
        self,
        reader: ShapefileReader,
        layer: str,
        warnings: list[ParseWarning],
        metadata: dict[str, Any],
    ) -> Iterator[Feature]:
        for item in reader.iter_records():
            if isinstance(item, EntityError):
                self._warn(warnings, item, row=int(item.handle))
                continue
            number, geometry, values = item
            if geometry is None:
                metadata["null_shapes"] += 1
                continue
            yield Feature(geometry=geometry, properties={"layer": layer, **values}, id=str(number))
        if metadata["null_shapes"]:
            logger.info("Skipped shapefile records | null_shapes=%d", metadata["null_shapes"])
