"""Tests for the Preview/Sampling Generator.

Covers:
- Deterministic systematic sampling and seeded random sampling
- Douglas-Peucker simplification that never collapses rings
- Family split, padded bounds and the fallback region (labelled WGS84)
- Tolerances and padding scaled to projected (metre) systems
- Repair failures flagged on the original geometry
- Chunked progress and cooperative cancellation
- Preview settings validation and the pydantic schema
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from geo_loader.core.config import ConfigValidationError
from geo_loader.core.constants import METRES_PER_DEGREE, SWISS_LV95, WGS84
from geo_loader.models.feature import Feature
from geo_loader.models.geometry import LineString, Point, Polygon
from geo_loader.models.preview import SCHEMA_VERSION, PreviewDataset
from geo_loader.preview.generator import PreviewConfig, generate_preview
from geo_loader.preview.sampling import sample_indices
from geo_loader.preview.simplify import simplify_geometry
from geo_loader.streaming.progress import ProgressChannel


class TestSampling:
    """Index selection."""

    def test_systematic_every_nth(self) -> None:
        indices = sample_indices(10_000, 500)
        assert len(indices) == 500
        assert indices[:3] == [0, 20, 40]
        assert indices[-1] == 9980

    def test_short_input_kept_whole(self) -> None:
        assert sample_indices(5, 10) == [0, 1, 2, 3, 4]

    def test_systematic_is_deterministic(self) -> None:
        assert sample_indices(1234, 100) == sample_indices(1234, 100)

    def test_random_seeded(self) -> None:
        first = sample_indices(1000, 50, "random", seed=7)
        assert first == sample_indices(1000, 50, "random", seed=7)
        assert first == sorted(first)
        assert len(set(first)) == 50

    @pytest.mark.parametrize(("max_features", "mode"), [(0, "systematic"), (10, "stratified")])
    def test_invalid_arguments(self, max_features: int, mode: str) -> None:
        with pytest.raises(ValueError):
            sample_indices(100, max_features, mode)  # type: ignore[arg-type]


class TestSimplify:
    """Geometry simplification."""

    def test_line_drops_collinear_vertices(self) -> None:
        line = LineString(((0.0, 0.0), (1.0, 0.000001), (2.0, 0.0)))
        assert simplify_geometry(line, 0.001) == LineString(((0.0, 0.0), (2.0, 0.0)))

    def test_small_ring_kept(self) -> None:
        tiny = Polygon((((0.0, 0.0), (0.0001, 0.0), (0.0, 0.0001), (0.0, 0.0)),))
        assert simplify_geometry(tiny, 1.0) == tiny

    def test_zero_tolerance_and_points_unchanged(self, unit_square: Polygon) -> None:
        point = Point((1.0, 2.0))
        assert simplify_geometry(unit_square, 0) is unit_square
        assert simplify_geometry(point, 1.0) is point


class TestGeneratePreview:
    """Preview assembly."""

    def test_families_and_bounds(self, mixed_features: list[Feature]) -> None:
        preview = generate_preview(mixed_features)

        assert len(preview.points["features"]) == 1
        assert len(preview.lines["features"]) == 1
        assert len(preview.polygons["features"]) == 1
        assert preview.feature_count == 3
        assert (preview.total_features, preview.sampled_features) == (3, 3)
        assert preview.complete is True
        assert preview.bounds.is_fallback is False
        assert preview.bounds.min_x < 0.0
        assert preview.bounds.max_y > 47.01

    def test_sampling_bounds_output(self, make_features: Callable[..., list[Feature]]) -> None:
        preview = generate_preview(make_features(100), PreviewConfig(max_features=10))
        assert preview.sampled_features == 10
        assert preview.total_features == 100
        assert [f["id"] for f in preview.points["features"]][:3] == ["0", "10", "20"]

    def test_empty_input_uses_fallback(self) -> None:
        preview = generate_preview([])
        assert preview.bounds.is_fallback is True
        assert preview.feature_count == 0

    def test_repaired_feature_counted(self, bowtie: Polygon) -> None:
        preview = generate_preview([Feature(geometry=bowtie, id="b")])
        assert preview.repaired == 1
        assert preview.repair_failures == 0

    def test_repair_failure_flagged(self) -> None:
        collapsed = Polygon((((0.0, 0.0), (1e-8, 0.0), (0.0, 1e-8), (0.0, 0.0)),))
        feature = Feature(geometry=collapsed, properties={"layer": "x"}, id="c")

        preview = generate_preview([feature])

        assert preview.repair_failures == 1
        [flagged] = preview.polygons["features"]
        assert flagged["properties"]["_repair_failed"] is True
        assert "collapsed" in flagged["properties"]["_repair_error"]
        assert flagged["geometry"]["coordinates"][0][1] == [1e-8, 0.0]
        assert "_repair_failed" not in feature.properties

    def test_progress_per_chunk(self, make_features: Callable[..., list[Feature]]) -> None:
        channel = ProgressChannel()
        generate_preview(make_features(10), PreviewConfig(chunk_size=4), progress=channel)
        events = channel.events()
        assert [e.fraction for e in events] == [0.4, 0.8, 1.0]
        assert events[-1].features_processed == 10

    def test_cancelled_preview_is_partial(self, make_features: Callable[..., list[Feature]]) -> None:
        cancel = threading.Event()
        cancel.set()
        preview = generate_preview(make_features(10), cancel_event=cancel)
        assert preview.complete is False
        assert preview.sampled_features == 0
        assert preview.bounds.is_fallback is True

    def test_fallback_bounds_labelled_wgs84(self) -> None:
        preview = generate_preview([], PreviewConfig(coordinate_system=SWISS_LV95))
        assert preview.coordinate_system == SWISS_LV95
        assert preview.bounds.is_fallback is True
        assert preview.bounds.coordinate_system == WGS84

    def test_finite_bounds_labelled_with_preview_system(self, mixed_features: list[Feature]) -> None:
        preview = generate_preview(mixed_features)
        assert preview.bounds.coordinate_system == WGS84

    def test_single_projected_point_padded_in_metres(self) -> None:
        feature = Feature(geometry=Point((2_600_000.0, 1_200_000.0)), id="p")
        preview = generate_preview([feature], PreviewConfig(coordinate_system=SWISS_LV95))

        bounds = preview.bounds
        assert bounds.is_fallback is False
        assert bounds.coordinate_system == SWISS_LV95
        assert bounds.max_x - bounds.min_x == pytest.approx(2 * 0.1 * 0.1 * METRES_PER_DEGREE)
        assert bounds.min_x < 2_600_000.0 < bounds.max_x

    def test_projected_near_duplicate_cleaned_in_metres(self) -> None:
        e, n = 2_600_000.0, 1_200_000.0
        ring = ((e, n), (e + 100.0, n), (e + 100.005, n), (e + 100.0, n + 100.0), (e, n + 100.0), (e, n))
        feature = Feature(geometry=Polygon((ring,)), id="lv95")
        config = PreviewConfig(coordinate_system=SWISS_LV95, simplify_tolerance=0.0)

        preview = generate_preview([feature], config)

        [polygon] = preview.polygons["features"]
        exterior = polygon["geometry"]["coordinates"][0]
        assert len(exterior) == 5
        assert [e + 100.005, n] not in exterior

    def test_schema_serialises(self, mixed_features: list[Feature]) -> None:
        preview = generate_preview(mixed_features, PreviewConfig(coordinate_system="EPSG:2056"))
        restored = PreviewDataset.model_validate_json(preview.model_dump_json())
        assert restored.coordinate_system == "EPSG:2056"
        assert restored.schema_version == SCHEMA_VERSION
        assert restored.feature_count == 3


class TestPreviewConfig:
    """Settings validation."""

    @pytest.mark.parametrize(
        ("kwargs", "key"),
        [
            ({"max_features": 0}, "max_features"),
            ({"simplify_tolerance": -1.0}, "simplify_tolerance"),
            ({"sampling": "stratified"}, "sampling"),
            ({"chunk_size": 0}, "chunk_size"),
            ({"bounds_padding": -0.1}, "bounds_padding"),
            ({"clean_tolerance": -1.0}, "clean_tolerance"),
            ({"repair_buffer_distance": 0.0}, "repair_buffer_distance"),
        ],
    )
    def test_invalid(self, kwargs: dict[str, object], key: str) -> None:
        with pytest.raises(ConfigValidationError) as excinfo:
            PreviewConfig(**kwargs)  # type: ignore[arg-type]
        assert excinfo.value.key == key
