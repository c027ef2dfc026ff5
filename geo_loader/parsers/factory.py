"""Parser factory: selects the format parser by file extension.

The factory maintains a registry of known parsers.  New parsers are
registered with ``register_parser``; the built-in ones are loaded
lazily on first use.

Usage::

    from geo_loader.parsers.factory import get_parser

    check_file_size(path)
    parser = get_parser(path.suffix)
    result = parser.parse(path)

Oversized files are rejected by ``check_file_size`` before any parser
touches them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from geo_loader.core.constants import MAX_FILE_SIZES
from geo_loader.core.exceptions import ResourceExceededError, UnsupportedFormatError

if TYPE_CHECKING:
    from collections.abc import Callable

    from geo_loader.parsers.base import Parser

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Format name constants
# ---------------------------------------------------------------------------

DXF = ".dxf"
SHAPEFILE = ".shp"
CSV = ".csv"
XYZ = ".xyz"
TXT = ".txt"

# ---------------------------------------------------------------------------
# Lazy-import parser registry
# ---------------------------------------------------------------------------

# Each entry maps an extension to a callable that builds a parser from
# keyword options.

_PARSER_REGISTRY: dict[str, Callable[..., Parser]] = {}


def _register_builtin_parsers() -> None:
    """Register the built-in parsers (called once, on first lookup)."""

    def _dxf(**options: Any) -> Parser:
        from geo_loader.parsers.dxf import DxfParseOptions, DxfParser

        return DxfParser(DxfParseOptions(**options))

    def _shapefile(**options: Any) -> Parser:
        from geo_loader.parsers.shapefile import ShapefileParser

        return ShapefileParser(**options)

    def _csv(**options: Any) -> Parser:
        from geo_loader.parsers.csv_xyz import CsvParseOptions, CsvXyzParser

        return CsvXyzParser(CsvParseOptions(**options))

    def _xyz(**options: Any) -> Parser:
        from geo_loader.parsers.csv_xyz import CsvXyzParser, xyz_options

        return CsvXyzParser(xyz_options(**options))

    _PARSER_REGISTRY[DXF] = _dxf
    _PARSER_REGISTRY[SHAPEFILE] = _shapefile
    _PARSER_REGISTRY[CSV] = _csv
    _PARSER_REGISTRY[TXT] = _csv
    _PARSER_REGISTRY[XYZ] = _xyz


def _ensure_registry() -> None:
    """Initialise the parser registry once (idempotent)."""
    if not _PARSER_REGISTRY:
        _register_builtin_parsers()


def _normalise_extension(extension: str) -> str:
    ext = extension.lower().strip()
    return ext if ext.startswith(".") else f".{ext}"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def register_parser(extension: str, loader: Callable[..., Parser]) -> None:
    """Register a custom parser for ``extension``.

    Raises:
        ValueError: If the extension is empty.
    """
    if not extension.strip(". "):
        msg = "Parser extension must be non-empty"
        raise ValueError(msg)
    _ensure_registry()
    _PARSER_REGISTRY[_normalise_extension(extension)] = loader
    logger.debug("Registered parser: %s", extension)


def get_parser(extension: str, **options: Any) -> Parser:
    """Create the parser registered for ``extension``.

    Args:
        extension: File extension, with or without the leading dot.
        **options: Parser-specific options.

    Raises:
        UnsupportedFormatError: If no parser is registered.
    """
    _ensure_registry()
    ext = _normalise_extension(extension)
    loader = _PARSER_REGISTRY.get(ext)
    if loader is None:
        available = ", ".join(sorted(_PARSER_REGISTRY))
        msg = f"Unsupported file format: {ext!r}. Available: {available}"
        raise UnsupportedFormatError(msg)
    return loader(**options)


def list_parsers() -> list[str]:
    """Return the registered extensions."""
    _ensure_registry()
    return sorted(_PARSER_REGISTRY)


def detect_format(path: Path | str) -> str:
    """Return the registered extension for ``path`` (case-insensitive).

    Raises:
        UnsupportedFormatError: If the extension is not registered.
    """
    ext = Path(path).suffix.lower()
    if ext not in list_parsers():
        msg = f"Unsupported file format: {Path(path).name}"
        raise UnsupportedFormatError(msg)
    return ext


def check_file_size(path: Path | str, size: int | None = None) -> None:
    """Reject files above their format's size ceiling before parsing.

    Args:
        path: File path; its extension selects the ceiling.
        size: Size in bytes; read from disk when omitted.

    Raises:
        ResourceExceededError: If the file exceeds the ceiling.
    """
    p = Path(path)
    limit = MAX_FILE_SIZES.get(p.suffix.lower())
    if limit is None:
        return
    actual = p.stat().st_size if size is None else size
    if actual > limit:
        msg = f"File {p.name} is {actual} bytes, exceeding the {limit // (1024 * 1024)} MB limit"
        raise ResourceExceededError(msg, stage="size_check", code="FILE_TOO_LARGE", limit=limit, actual=actual)
