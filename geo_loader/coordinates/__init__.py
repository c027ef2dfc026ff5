"""Coordinate systems, reprojection and the Swiss height pipeline."""

from geo_loader.coordinates.delta_cache import (
    CACHE_ERROR_BOUND_DEG,
    HeightDelta,
    HeightDeltaCache,
    SwissHeightTransformer,
)
from geo_loader.coordinates.heights import (
    HeightSummary,
    apply_swiss_heights,
    group_features_by_proximity,
    mark_lv95_stored,
)
from geo_loader.coordinates.manager import CoordinateSystemManager, TransformOutcome
from geo_loader.coordinates.swiss_service import (
    SwissReframeClient,
    SwissTransformResult,
    approximate_lv95_to_wgs84,
)
from geo_loader.coordinates.systems import (
    CoordinateSystem,
    CoordinateSystemRegistry,
    detect_coordinate_system,
    is_geographic,
    working_distance,
)

__all__ = [
    "CACHE_ERROR_BOUND_DEG",
    "CoordinateSystem",
    "CoordinateSystemManager",
    "CoordinateSystemRegistry",
    "HeightDelta",
    "HeightDeltaCache",
    "HeightSummary",
    "SwissHeightTransformer",
    "SwissReframeClient",
    "SwissTransformResult",
    "TransformOutcome",
    "apply_swiss_heights",
    "approximate_lv95_to_wgs84",
    "detect_coordinate_system",
    "group_features_by_proximity",
    "is_geographic",
    "mark_lv95_stored",
    "working_distance",
]
