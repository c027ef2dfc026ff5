"""Tests for Swiss height post-processing.

Covers:
- Marking 3D LV95 points with their stored triple
- Stored triple lookup from properties and Point z
- Proximity grouping by grid cell
- Applying heights: success, failure, skip, cancellation
- Geometry is never modified
"""

from __future__ import annotations

import threading

import httpx
import pytest

from geo_loader.coordinates.delta_cache import SwissHeightTransformer
from geo_loader.coordinates.heights import (
    apply_swiss_heights,
    group_features_by_proximity,
    lv95_triple,
    mark_lv95_stored,
)
from geo_loader.coordinates.swiss_service import SwissReframeClient
from geo_loader.models.feature import Feature
from geo_loader.models.geometry import LineString, Point
from tests.conftest import BESSEL_OFFSET_M, REFRAME_TEST_URL, WGS84_OFFSET_M, FakeReframe


def _stored(easting: float, northing: float, height: float, fid: str = "f") -> Feature:
    feature = Feature(geometry=Point((easting, northing, height)), id=fid)
    mark_lv95_stored([feature])
    return feature


class TestMarking:
    """Recording the native LV95 triple."""

    def test_marks_3d_points_only(self) -> None:
        features = [
            Feature(geometry=Point((2_600_000.0, 1_200_000.0, 500.0))),
            Feature(geometry=Point((2_600_000.0, 1_200_000.0))),
            Feature(geometry=LineString(((0.0, 0.0, 1.0), (1.0, 1.0, 1.0)))),
        ]
        assert mark_lv95_stored(features) == 1
        assert features[0].properties == {
            "lv95_easting": 2_600_000.0,
            "lv95_northing": 1_200_000.0,
            "lv95_height": 500.0,
            "height_mode": "lv95_stored",
        }
        assert features[1].properties == {}

    def test_existing_height_mode_left_alone(self) -> None:
        feature = Feature(geometry=Point((1.0, 2.0, 3.0)), properties={"height_mode": "relative"})
        assert mark_lv95_stored([feature]) == 0
        assert "lv95_height" not in feature.properties


class TestTriple:
    """Stored triple lookup."""

    def test_from_properties(self) -> None:
        feature = Feature(
            geometry=Point((7.4, 46.9)),
            properties={"lv95_easting": "2600000", "lv95_northing": 1_200_000, "lv95_height": 500.5},
        )
        assert lv95_triple(feature) == (2_600_000.0, 1_200_000.0, 500.5)

    @pytest.mark.parametrize("bad", ["abc", float("nan"), None])
    def test_invalid_property(self, bad: object) -> None:
        feature = Feature(
            geometry=Point((7.4, 46.9)),
            properties={"lv95_easting": 2_600_000.0, "lv95_northing": 1_200_000.0, "lv95_height": bad},
        )
        assert lv95_triple(feature) is None

    def test_from_point_z(self) -> None:
        assert lv95_triple(Feature(geometry=Point((1.0, 2.0, 3.0)))) == (1.0, 2.0, 3.0)


class TestGrouping:
    """Proximity grouping."""

    def test_groups_by_cell(self) -> None:
        features = [
            _stored(2_600_100.0, 1_200_100.0, 1.0, "a"),
            _stored(2_600_900.0, 1_200_900.0, 1.0, "b"),
            _stored(2_601_100.0, 1_200_100.0, 1.0, "c"),
        ]
        groups = group_features_by_proximity(features)
        assert {cell: [f.id for f in group] for cell, group in groups.items()} == {
            (2600, 1200): ["a", "b"],
            (2601, 1200): ["c"],
        }

    def test_line_uses_first_position(self) -> None:
        feature = Feature(geometry=LineString(((2_600_500.0, 1_200_500.0), (2_700_000.0, 1_300_000.0))))
        assert list(group_features_by_proximity([feature], grid_size=500.0)) == [(5201, 2401)]

    def test_grid_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="grid_size"):
            group_features_by_proximity([], grid_size=0)


class TestApplyHeights:
    """End-to-end height conversion against the fake service."""

    def test_success_sets_provenance(self, reframe_client: SwissReframeClient) -> None:
        features = [_stored(2_600_100.0, 1_200_100.0, 500.0, "a"), _stored(2_600_200.0, 1_200_300.0, 510.0, "b")]
        geometries = [f.geometry for f in features]

        summary = apply_swiss_heights(features, SwissHeightTransformer(reframe_client))

        assert (summary.transformed, summary.failed, summary.skipped, summary.cancelled) == (2, 0, 0, False)
        offset = BESSEL_OFFSET_M + WGS84_OFFSET_M
        props = features[1].properties
        assert props["base_elevation_ellipsoidal"] == pytest.approx(510.0 + offset)
        assert props["height_mode"] == "absolute_ellipsoidal"
        assert props["height_transformed"] is True
        assert props["height_method"] == "delta_cache"
        assert "height_transformed_at" in props
        assert [f.geometry for f in features] == geometries

    def test_unmarked_features_skipped(self, reframe: FakeReframe, reframe_client: SwissReframeClient) -> None:
        features = [Feature(geometry=Point((8.0, 47.0))), Feature(geometry=Point((1.0, 2.0, 3.0)))]
        summary = apply_swiss_heights(features, SwissHeightTransformer(reframe_client))
        assert summary.skipped == 2
        assert reframe.calls == []

    def test_bypass_cache_reports_service(self, reframe_client: SwissReframeClient) -> None:
        feature = _stored(2_600_100.0, 1_200_100.0, 500.0)
        apply_swiss_heights([feature], SwissHeightTransformer(reframe_client), bypass_cache=True)
        assert feature.properties["height_method"] == "service"

    def test_service_failure_marks_feature(self) -> None:
        fake = FakeReframe(failures={"lhn95tobessel": 10})
        client = SwissReframeClient(
            REFRAME_TEST_URL, max_retries=0, backoff=0, client=httpx.Client(transport=httpx.MockTransport(fake))
        )
        feature = _stored(2_600_100.0, 1_200_100.0, 500.0)

        summary = apply_swiss_heights([feature], SwissHeightTransformer(client))

        assert summary.failed == 1
        assert feature.properties["height_transformed"] is False
        assert "lhn95tobessel" in feature.properties["height_transformation_error"]
        assert feature.properties["height_mode"] == "lv95_stored"

    def test_fallback_labelled(self) -> None:
        fake = FakeReframe(failures={"lv95towgs84": 10})
        client = SwissReframeClient(
            REFRAME_TEST_URL, max_retries=0, backoff=0, client=httpx.Client(transport=httpx.MockTransport(fake))
        )
        feature = _stored(2_600_100.0, 1_200_100.0, 500.0)
        summary = apply_swiss_heights([feature], SwissHeightTransformer(client), allow_fallback=True)
        assert summary.transformed == 1
        assert feature.properties["height_method"] == "approximate"

    def test_cancelled_before_start(self, reframe: FakeReframe, reframe_client: SwissReframeClient) -> None:
        cancel = threading.Event()
        cancel.set()
        feature = _stored(2_600_100.0, 1_200_100.0, 500.0)

        summary = apply_swiss_heights([feature], SwissHeightTransformer(reframe_client), cancel_event=cancel)

        assert summary.cancelled is True
        assert summary.transformed == 0
        assert feature.properties["height_mode"] == "lv95_stored"
        assert reframe.calls == []
