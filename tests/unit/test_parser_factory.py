"""Tests for the parser factory.

Covers:
- Built-in registry (dxf, shp, csv, txt, xyz)
- Extension normalisation and format detection
- Unsupported formats -> UnsupportedFormatError
- Custom parser registration
- Pre-parse file size ceilings
"""

from __future__ import annotations

from pathlib import Path

import pytest

from geo_loader.core.constants import MAX_FILE_SIZES
from geo_loader.core.exceptions import ResourceExceededError, UnsupportedFormatError
from geo_loader.parsers.base import Parser, ParseStream
from geo_loader.parsers.csv_xyz import CsvXyzParser
from geo_loader.parsers.dxf import DxfParser
from geo_loader.parsers.factory import (
    _PARSER_REGISTRY,
    check_file_size,
    detect_format,
    get_parser,
    list_parsers,
    register_parser,
)
from geo_loader.parsers.shapefile import ShapefileParser


class _NullParser(Parser):
    format_name = "null"

    def open_path(self, path: Path) -> ParseStream:
        return self._stream([], path)


class TestRegistry:
    """Built-in parser lookup."""

    def test_builtin_extensions(self) -> None:
        assert {".dxf", ".shp", ".csv", ".txt", ".xyz"} <= set(list_parsers())

    @pytest.mark.parametrize(
        ("extension", "parser_type"),
        [(".dxf", DxfParser), ("DXF", DxfParser), (".shp", ShapefileParser), ("csv", CsvXyzParser)],
    )
    def test_get_parser(self, extension: str, parser_type: type[Parser]) -> None:
        assert isinstance(get_parser(extension), parser_type)

    def test_xyz_parser_is_whitespace_delimited(self) -> None:
        parser = get_parser(".xyz")
        assert isinstance(parser, CsvXyzParser)
        assert parser.options.delimiter == " "
        assert parser.options.has_header is False

    def test_options_forwarded(self) -> None:
        parser = get_parser(".dxf", segments=8)
        assert isinstance(parser, DxfParser)
        assert parser.options.segments == 8

    def test_unsupported_extension(self) -> None:
        with pytest.raises(UnsupportedFormatError, match="Available"):
            get_parser(".kml")

    def test_register_custom_parser(self) -> None:
        register_parser("geojson", lambda **_: _NullParser())
        try:
            assert isinstance(get_parser(".GeoJSON"), _NullParser)
        finally:
            _PARSER_REGISTRY.pop(".geojson", None)

    def test_register_rejects_empty_extension(self) -> None:
        with pytest.raises(ValueError, match="non-empty"):
            register_parser(" . ", lambda **_: _NullParser())


class TestDetectFormat:
    """Extension-based format detection."""

    def test_case_insensitive(self) -> None:
        assert detect_format("PLAN.DXF") == ".dxf"
        assert detect_format(Path("/data/points.xyz")) == ".xyz"

    def test_unknown_extension(self) -> None:
        with pytest.raises(UnsupportedFormatError) as excinfo:
            detect_format("model.ifc")
        assert excinfo.value.category == "structural"


class TestFileSize:
    """Oversize files are rejected before parsing."""

    def test_under_limit_passes(self, tmp_path: Path) -> None:
        path = tmp_path / "small.csv"
        path.write_text("x,y\n1,2\n", encoding="utf-8")
        check_file_size(path)

    def test_over_limit_raises(self) -> None:
        limit = MAX_FILE_SIZES[".dxf"]
        with pytest.raises(ResourceExceededError) as excinfo:
            check_file_size("huge.dxf", size=limit + 1)
        err = excinfo.value
        assert err.code == "FILE_TOO_LARGE"
        assert err.stage == "size_check"
        assert (err.limit, err.actual) == (limit, limit + 1)
        assert err.is_fatal

    def test_exact_limit_passes(self) -> None:
        check_file_size("edge.shp", size=MAX_FILE_SIZES[".shp"])

    def test_unknown_extension_ignored(self) -> None:
        check_file_size("notes.md", size=10**12)
