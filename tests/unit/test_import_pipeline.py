"""Tests for the end-to-end import pipeline.

Covers:
- CSV import with detected WGS84 and LV95 sources
- Per-row warnings surface without failing the import
- Structural and resource failures carry the warnings gathered so far
- Cancellation yields a result marked incomplete
- Opt-in Swiss height conversion through an injected manager
- Progress events from every stage
- Reprojection failures dropped or kept untransformed, per caller choice
- The parser is read lazily, batch by batch, under the buffer ceiling
"""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from geo_loader.coordinates.manager import CoordinateSystemManager
from geo_loader.coordinates.swiss_service import SwissReframeClient
from geo_loader.core import constants
from geo_loader.core.config import LoaderConfig
from geo_loader.core.constants import SWISS_LV95, WEB_MERCATOR, WGS84
from geo_loader.core.exceptions import (
    MissingCompanionError,
    ResourceExceededError,
    StructuralError,
    UnsupportedFormatError,
)
from geo_loader.orchestrators.import_pipeline import import_file
from geo_loader.parsers.base import ParseStream
from geo_loader.streaming.feature_stream import StreamResult
from geo_loader.streaming.progress import ProgressChannel
from tests.conftest import BESSEL_OFFSET_M, WGS84_OFFSET_M, write_shapefile


def _csv(tmp_path: Path, text: str, name: str = "points.csv") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


class TestCsvImport:
    """Successful imports."""

    def test_wgs84_points(self, tmp_path: Path) -> None:
        path = _csv(tmp_path, "lon,lat,name\n8.0,47.0,a\n8.1,47.1,b\n")
        result = import_file(path)

        assert result.complete is True
        assert result.source_system == WGS84
        assert [f.properties["name"] for f in result.features] == ["a", "b"]
        assert result.warnings == []
        assert (result.bounds.min_x, result.bounds.max_y) == (8.0, 47.1)
        assert result.preview.sampled_features == 2
        assert result.preview.coordinate_system == WGS84
        assert result.layers == {"points"}

    def test_lv95_detected_and_reprojected(self, tmp_path: Path) -> None:
        path = _csv(tmp_path, "e,n\n2600000,1200000\n2600100,1200100\n")
        result = import_file(path)

        assert result.source_system == SWISS_LV95
        lon, lat = result.features[0].geometry.coordinates  # type: ignore[misc]
        assert lon == pytest.approx(7.43863, abs=1e-3)
        assert lat == pytest.approx(46.95108, abs=1e-3)

    def test_target_system_applies_to_preview(self, tmp_path: Path) -> None:
        path = _csv(tmp_path, "lon,lat\n7.43863,46.95108\n")
        result = import_file(path, target_system=SWISS_LV95)
        assert result.target_system == SWISS_LV95
        assert result.preview.coordinate_system == SWISS_LV95
        assert result.features[0].geometry.coordinates[0] == pytest.approx(2_600_000.0, abs=5.0)

    def test_row_warnings_do_not_fail(self, tmp_path: Path) -> None:
        path = _csv(tmp_path, "lon,lat\n8.0,47.0\nabc,47.0\n8.2,47.2\n")
        result = import_file(path)
        assert len(result.features) == 2
        assert [w.code for w in result.warnings] == ["CSV_COORDINATE_INVALID"]
        assert result.complete is True

    def test_progress_covers_stages(self, tmp_path: Path) -> None:
        channel = ProgressChannel()
        import_file(_csv(tmp_path, "lon,lat\n8.0,47.0\n"), progress=channel)
        phases = {e.phase for e in channel.events()}
        assert {"parse", "transform", "stream", "preview"} <= phases


class TestFailures:
    """Fatal errors propagate with diagnostics."""

    def test_unsupported_format(self, tmp_path: Path) -> None:
        path = tmp_path / "track.gpx"
        path.write_text("<gpx/>", encoding="utf-8")
        with pytest.raises(UnsupportedFormatError) as excinfo:
            import_file(path)
        assert excinfo.value.category == "structural"

    def test_missing_companion(self, tmp_path: Path) -> None:
        point = {"type": "Point", "coordinates": (1.0, 2.0)}
        shp = write_shapefile(tmp_path, "parcels", "Point", [(point, {"NAME": "a"})], skip=(".shx",))
        with pytest.raises(MissingCompanionError) as excinfo:
            import_file(shp)
        assert isinstance(excinfo.value, StructuralError)
        assert excinfo.value.diagnostics == []

    def test_oversize_rejected_before_parsing(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setitem(constants.MAX_FILE_SIZES, ".csv", 10)
        path = _csv(tmp_path, "lon,lat\n8.0,47.0\n8.1,47.1\n")
        with pytest.raises(ResourceExceededError) as excinfo:
            import_file(path)
        assert excinfo.value.code == "FILE_TOO_LARGE"
        assert excinfo.value.limit == 10

    def test_buffer_ceiling_keeps_warnings(self, tmp_path: Path) -> None:
        path = _csv(tmp_path, "lon,lat\n8.0,47.0\nbad,47.0\n8.1,47.1\n8.2,47.2\n")
        config = LoaderConfig(chunk_size=1, max_buffered_features=2)
        with pytest.raises(ResourceExceededError) as excinfo:
            import_file(path, config=config)
        assert excinfo.value.code == "BUFFER_FEATURES_EXCEEDED"
        assert len(excinfo.value.diagnostics) == 1
        partial = excinfo.value.partial
        assert isinstance(partial, StreamResult)
        assert partial.complete is False
        assert len(partial.features) == 2


class TestCancellation:
    """Cooperative cancellation."""

    def test_cancelled_import_is_incomplete(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        cancel.set()
        path = _csv(tmp_path, "e,n\n2600000,1200000\n2600100,1200100\n")
        result = import_file(path, cancel_event=cancel)
        assert result.complete is False
        assert result.features == []


class TestSwissHeights:
    """Opt-in LHN95 -> ellipsoidal height conversion."""

    def test_heights_applied_before_reprojection(self, tmp_path: Path, reframe_client: SwissReframeClient) -> None:
        path = _csv(tmp_path, "e,n,h\n2600100,1200100,500\n2600200,1200300,510\n")
        manager = CoordinateSystemManager(service=reframe_client)

        result = import_file(path, swiss_heights=True, manager=manager)

        assert result.heights is not None
        assert result.heights.transformed == 2
        props = result.features[0].properties
        assert props["height_mode"] == "absolute_ellipsoidal"
        assert props["lv95_easting"] == 2_600_100.0
        assert props["base_elevation_ellipsoidal"] == pytest.approx(500.0 + BESSEL_OFFSET_M + WGS84_OFFSET_M)
        lon, lat, height = result.features[0].geometry.coordinates  # type: ignore[misc]
        assert lon == pytest.approx(7.44, abs=0.01)
        assert height == 500.0

    def test_not_requested(self, tmp_path: Path, reframe_client: SwissReframeClient) -> None:
        path = _csv(tmp_path, "e,n,h\n2600100,1200100,500\n")
        result = import_file(path, manager=CoordinateSystemManager(service=reframe_client))
        assert result.heights is None
        assert "height_mode" not in result.features[0].properties

    def test_without_service_skipped(self, tmp_path: Path) -> None:
        path = _csv(tmp_path, "e,n,h\n2600100,1200100,500\n")
        result = import_file(path, swiss_heights=True, manager=CoordinateSystemManager())
        assert result.heights is None
        assert result.complete is True


class TestTransformFailurePolicy:
    """A feature that cannot be reprojected is dropped or kept, as asked."""

    # The pole has no Web Mercator image.
    POLE_CSV = "lon,lat,name\n8.0,47.0,a\n0.0,90.0,pole\n8.1,47.1,b\n"

    def test_drop_is_default(self, tmp_path: Path) -> None:
        result = import_file(_csv(tmp_path, self.POLE_CSV), target_system=WEB_MERCATOR)

        assert [f.properties["name"] for f in result.features] == ["a", "b"]
        assert [(w.code, w.handle) for w in result.warnings] == [("TRANSFORM_FAILED", "1")]
        assert result.complete is True

    def test_keep_flags_untransformed_feature(self, tmp_path: Path) -> None:
        result = import_file(
            _csv(tmp_path, self.POLE_CSV),
            target_system=WEB_MERCATOR,
            on_transform_failure="keep",
        )

        assert [f.properties["name"] for f in result.features] == ["a", "pole", "b"]
        pole = result.features[1]
        assert pole.geometry.coordinates == (0.0, 90.0)
        assert pole.properties["transform_failed"] is True
        assert pole.properties["transform_error"]
        assert "transform_failed" not in result.features[0].properties
        assert [w.code for w in result.warnings] == ["TRANSFORM_FAILED"]
        assert result.preview.sampled_features == 2
        # Bounds stay in the target system: the kept pole is excluded.
        assert result.bounds.min_x > 800_000.0

    def test_keep_across_batches(self, tmp_path: Path) -> None:
        result = import_file(
            _csv(tmp_path, self.POLE_CSV),
            target_system=WEB_MERCATOR,
            config=LoaderConfig(chunk_size=1),
            on_transform_failure="keep",
        )
        assert [f.properties.get("transform_failed", False) for f in result.features] == [False, True, False]
        assert result.warnings[0].handle == "1"

    def test_unknown_policy_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="on_transform_failure"):
            import_file(_csv(tmp_path, self.POLE_CSV), on_transform_failure="ignore")


class TestLazyParsing:
    """The parser is not drained ahead of the streaming buffer."""

    def test_ceiling_stops_parser_early(self, tmp_path: Path) -> None:
        rows = "".join(f"8.{i:04d},47.0\n" for i in range(500))
        path = _csv(tmp_path, "lon,lat\n" + rows)
        seen: list[tuple[int, bool]] = []
        original = ParseStream.close

        def _close(stream: ParseStream) -> None:
            seen.append((stream.produced, stream.exhausted))
            original(stream)

        config = LoaderConfig(chunk_size=2, max_buffered_features=4)
        with (
            patch.object(ParseStream, "close", autospec=True, side_effect=_close),
            pytest.raises(ResourceExceededError) as excinfo,
        ):
            import_file(path, config=config)

        assert excinfo.value.code == "BUFFER_FEATURES_EXCEEDED"
        produced, exhausted = seen[0]
        assert produced <= 8
        assert exhausted is False

