"""Tests for coordinate systems and the Coordinate System Manager.

Covers:
- Registry lookup and duplicate registration
- Range-based detection (LV95, LV03, WGS84, fallback to LV95)
- Geographic vs projected units and degree-to-working-unit distances
- Identity and WGS84-pivot transforms (LV95 <-> WGS84, LV95 -> LV03)
- Heights pass through reprojection unchanged
- Failures name the leg and original position; unknown codes
- Concurrent batch transform keeps input order and honours cancellation
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from geo_loader.coordinates.manager import CoordinateSystemManager
from geo_loader.coordinates.systems import (
    BUILTIN_SYSTEMS,
    CoordinateSystem,
    CoordinateSystemRegistry,
    detect_coordinate_system,
    is_geographic,
    working_distance,
)
from geo_loader.core.constants import METRES_PER_DEGREE, SWISS_LV03, SWISS_LV95, WEB_MERCATOR, WGS84
from geo_loader.core.exceptions import TransformationError
from geo_loader.models.feature import Feature
from geo_loader.models.geometry import Point, Polygon

BERN_LV95 = (2_600_000.0, 1_200_000.0)
BERN_WGS84 = (7.43863, 46.95108)


class TestRegistry:
    """Lookup and registration of coordinate systems."""

    def test_builtins_present(self) -> None:
        registry = CoordinateSystemRegistry()
        assert registry.codes() == sorted(s.code for s in BUILTIN_SYSTEMS)
        assert WEB_MERCATOR in registry
        assert registry.get(SWISS_LV95).has_swiss_heights is True

    def test_unknown_code(self) -> None:
        with pytest.raises(KeyError, match="EPSG:9999"):
            CoordinateSystemRegistry().get("EPSG:9999")

    def test_duplicate_registration_rejected(self) -> None:
        registry = CoordinateSystemRegistry()
        with pytest.raises(ValueError, match="already registered"):
            registry.register(CoordinateSystem(code=WGS84, name="dup", proj_definition="+proj=longlat"))

    def test_custom_system(self) -> None:
        registry = CoordinateSystemRegistry()
        registry.register(
            CoordinateSystem(code="EPSG:32632", name="UTM 32N", proj_definition="+proj=utm +zone=32 +datum=WGS84")
        )
        assert "EPSG:32632" in registry


class TestDetection:
    """Range-based detection of unprojected data."""

    @pytest.mark.parametrize(
        ("positions", "expected"),
        [
            ([(2_600_000.0, 1_200_000.0), (2_700_000.0, 1_250_000.0)], SWISS_LV95),
            ([(600_000.0, 200_000.0)], SWISS_LV03),
            ([(8.0, 47.0), (-120.0, 35.0)], WGS84),
            ([(5_000_000.0, 5_000_000.0)], SWISS_LV95),
            ([], SWISS_LV95),
        ],
    )
    def test_detect(self, positions: list[tuple[float, float]], expected: str) -> None:
        assert detect_coordinate_system(positions) == expected

    def test_mixed_ranges_default_to_lv95(self) -> None:
        assert detect_coordinate_system([(600_000.0, 200_000.0), (8.0, 47.0)]) == SWISS_LV95

    def test_samples_first_hundred(self) -> None:
        positions = [(8.0, 47.0)] * 100 + [(2_600_000.0, 1_200_000.0)]
        assert detect_coordinate_system(iter(positions)) == WGS84


class TestUnits:
    """Angular vs linear units."""

    @pytest.mark.parametrize(
        ("code", "expected"),
        [(WGS84, True), (SWISS_LV95, False), (SWISS_LV03, False), (WEB_MERCATOR, False), ("EPSG:4258", True)],
    )
    def test_is_geographic(self, code: str, expected: bool) -> None:
        assert is_geographic(code) is expected

    def test_unresolvable_code_assumed_geographic(self) -> None:
        assert is_geographic("NOT:A:CRS") is True

    def test_working_distance(self) -> None:
        assert working_distance(WGS84, 1e-5) == 1e-5
        assert working_distance(SWISS_LV95, 1e-5) == pytest.approx(1e-5 * METRES_PER_DEGREE)
        assert working_distance(SWISS_LV95, 0.0000002) == pytest.approx(0.0223, abs=1e-4)


class TestTransform:
    """Single-position transforms through the WGS84 pivot."""

    def test_identity_returns_input(self) -> None:
        position = (1.0, 2.0, 3.0)
        assert CoordinateSystemManager().transform(position, SWISS_LV95, SWISS_LV95) is position

    def test_lv95_to_wgs84_near_bern(self) -> None:
        lon, lat = CoordinateSystemManager().transform(BERN_LV95, SWISS_LV95, WGS84)
        assert lon == pytest.approx(BERN_WGS84[0], abs=1e-3)
        assert lat == pytest.approx(BERN_WGS84[1], abs=1e-3)

    def test_round_trip(self) -> None:
        manager = CoordinateSystemManager()
        there = manager.transform((2_650_000.0, 1_150_000.0), SWISS_LV95, WGS84)
        back = manager.transform(there, WGS84, SWISS_LV95)
        assert back == pytest.approx((2_650_000.0, 1_150_000.0), abs=1e-3)

    def test_lv95_to_lv03_offsets(self) -> None:
        x, y = CoordinateSystemManager().transform(BERN_LV95, SWISS_LV95, SWISS_LV03)
        assert x == pytest.approx(600_000.0, abs=1.0)
        assert y == pytest.approx(200_000.0, abs=1.0)

    def test_height_passes_through(self) -> None:
        result = CoordinateSystemManager().transform((*BERN_LV95, 540.0), SWISS_LV95, WGS84)
        assert result[2] == 540.0

    def test_unknown_code_names_leg(self) -> None:
        with pytest.raises(TransformationError) as excinfo:
            CoordinateSystemManager().transform((1.0, 2.0), "EPSG:9999", WGS84)
        assert excinfo.value.leg == "EPSG:9999->EPSG:4326"
        assert excinfo.value.position == (1.0, 2.0)
        assert excinfo.value.category == "transformation"

    def test_out_of_domain_mercator_fails(self) -> None:
        with pytest.raises(TransformationError) as excinfo:
            CoordinateSystemManager().transform((0.0, 90.0), WGS84, WEB_MERCATOR)
        assert excinfo.value.leg == "EPSG:4326->EPSG:3857"


class TestTransformFeatures:
    """Feature and batch reprojection."""

    def test_feature_keeps_properties_and_closure(self, unit_square: Polygon) -> None:
        ring = tuple((BERN_LV95[0] + x * 100, BERN_LV95[1] + y * 100) for x, y in unit_square.exterior)
        feature = Feature(geometry=Polygon((ring,)), properties={"layer": "a"}, id="f1")
        outcome = CoordinateSystemManager().transform_feature(feature, SWISS_LV95, WGS84)

        assert outcome.ok
        assert outcome.feature is not None
        assert outcome.feature.properties == {"layer": "a"}
        assert outcome.feature.id == "f1"
        exterior = outcome.feature.geometry.exterior  # type: ignore[union-attr]
        assert exterior[0] == exterior[-1]

    def test_failed_feature_becomes_outcome(self) -> None:
        feature = Feature(geometry=Point((0.0, 90.0)), id="pole")
        outcome = CoordinateSystemManager().transform_feature(feature, WGS84, WEB_MERCATOR, index=7)
        assert outcome.feature is None
        assert not outcome.ok
        warning = outcome.warning()
        assert warning is not None
        assert warning.handle == "7"
        assert warning.code == "TRANSFORM_FAILED"

    def test_batch_keeps_input_order(self, make_features: Callable[..., list[Feature]]) -> None:
        features = make_features(50, origin=(2_600_000.0, 1_200_000.0), step=10.0)
        outcomes = CoordinateSystemManager(workers=4).transform_features(features, SWISS_LV95, WGS84)
        assert [o.index for o in outcomes] == list(range(50))
        assert [o.feature.id for o in outcomes if o.feature] == [str(i) for i in range(50)]

    def test_batch_indices_offset_by_start(self, make_features: Callable[..., list[Feature]]) -> None:
        features = make_features(3, origin=(2_600_000.0, 1_200_000.0), step=10.0)
        outcomes = CoordinateSystemManager().transform_features(features, SWISS_LV95, WGS84, start=200)
        assert [o.index for o in outcomes] == [200, 201, 202]

    def test_batch_identity_short_circuits(self, make_features: Callable[..., list[Feature]]) -> None:
        features = make_features(3)
        outcomes = CoordinateSystemManager().transform_features(features, WGS84, WGS84)
        assert [o.feature for o in outcomes] == features

    def test_batch_unknown_code_raises_once(self, make_features: Callable[..., list[Feature]]) -> None:
        with pytest.raises(KeyError):
            CoordinateSystemManager().transform_features(make_features(3), "EPSG:9999", WGS84)

    def test_cancelled_batch_is_empty(self, make_features: Callable[..., list[Feature]]) -> None:
        cancel = threading.Event()
        cancel.set()
        outcomes = CoordinateSystemManager().transform_features(
            make_features(10, origin=BERN_LV95, step=1.0), SWISS_LV95, WGS84, cancel_event=cancel
        )
        assert outcomes == []

    def test_swiss_heights_requires_service(self) -> None:
        assert CoordinateSystemManager().swiss_heights is None
