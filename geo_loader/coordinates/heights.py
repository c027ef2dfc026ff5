"""Swiss height post-processing.

Features imported from LV95 data can carry their original coordinates
(``lv95_easting``/``lv95_northing``/``lv95_height``) with
``height_mode="lv95_stored"``.  This stage converts the stored LHN95
height into a WGS84 ellipsoidal base elevation and records provenance
on the feature properties.  Geometry is never modified here.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from geo_loader.core.constants import HEIGHT_MODE_ABSOLUTE_ELLIPSOIDAL, HEIGHT_MODE_LV95_STORED
from geo_loader.core.exceptions import TransformationError
from geo_loader.models.geometry import Point, iter_positions

if TYPE_CHECKING:
    from collections.abc import Iterable

    from geo_loader.coordinates.delta_cache import SwissHeightTransformer
    from geo_loader.models.feature import Feature

logger = logging.getLogger(__name__)

DEFAULT_GRID_SIZE_M = 1000.0


@dataclass(slots=True)
class HeightSummary:
    """Counts from one ``apply_swiss_heights`` run."""

    transformed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False


def lv95_triple(feature: Feature) -> tuple[float, float, float] | None:
    """The stored ``(easting, northing, height)`` of a feature, if any.

    Reads the ``lv95_*`` properties, falling back to the z of a Point.
    """
    props = feature.properties
    values = (props.get("lv95_easting"), props.get("lv95_northing"), props.get("lv95_height"))
    if all(v is not None for v in values):
        try:
            triple = tuple(float(v) for v in values)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        return triple if all(math.isfinite(v) for v in triple) else None  # type: ignore[return-value]
    if isinstance(feature.geometry, Point) and len(feature.geometry.coordinates) == 3:
        e, n, h = feature.geometry.coordinates
        return (e, n, h)
    return None


def _anchor(feature: Feature) -> tuple[float, float] | None:
    triple = lv95_triple(feature)
    if triple is not None:
        return triple[0], triple[1]
    first = next(iter_positions(feature.geometry), None)
    return None if first is None else (first[0], first[1])


def group_features_by_proximity(
    features: Iterable[Feature],
    grid_size: float = DEFAULT_GRID_SIZE_M,
) -> dict[tuple[int, int], list[Feature]]:
    """Group features by the grid cell of their LV95 anchor point.

    Features in the same cell share one cached height delta, so
    processing them together keeps service calls to one per cell.
    """
    if grid_size <= 0:
        msg = f"grid_size must be > 0, got {grid_size}"
        raise ValueError(msg)
    groups: dict[tuple[int, int], list[Feature]] = defaultdict(list)
    for feature in features:
        anchor = _anchor(feature)
        if anchor is None:
            continue
        cell = (math.floor(anchor[0] / grid_size), math.floor(anchor[1] / grid_size))
        groups[cell].append(feature)
    return dict(groups)


def mark_lv95_stored(features: Iterable[Feature]) -> int:
    """Record the native LV95 triple of 3D point features before reprojection.

    Features that already carry a ``height_mode`` are left alone.

    Returns:
        The number of features marked ``height_mode="lv95_stored"``.
    """
    marked = 0
    for feature in features:
        if "height_mode" in feature.properties:
            continue
        if not (isinstance(feature.geometry, Point) and len(feature.geometry.coordinates) == 3):
            continue
        e, n, h = feature.geometry.coordinates
        feature.properties.update(
            {"lv95_easting": e, "lv95_northing": n, "lv95_height": h, "height_mode": HEIGHT_MODE_LV95_STORED}
        )
        marked += 1
    return marked


def _mark_failed(feature: Feature, error: str) -> None:
    feature.properties["height_transformed"] = False
    feature.properties["height_transformation_error"] = error


def apply_swiss_heights(
    features: Iterable[Feature],
    transformer: SwissHeightTransformer,
    *,
    bypass_cache: bool = False,
    allow_fallback: bool = False,
    cancel_event: threading.Event | None = None,
) -> HeightSummary:
    """Convert stored LHN95 heights to ellipsoidal base elevations in place.

    Only features with ``height_mode == "lv95_stored"`` are touched.  On
    success they gain ``base_elevation_ellipsoidal``, ``height_mode``
    (``"absolute_ellipsoidal"``), ``height_transformed``,
    ``height_transformed_at`` and ``height_method``.  On failure they
    gain ``height_transformation_error`` and ``height_transformed=False``.

    Returns:
        A ``HeightSummary``; features left untouched by a cancellation
        are not counted.
    """
    summary = HeightSummary()
    candidates: list[Feature] = []
    for feature in features:
        if feature.properties.get("height_mode") == HEIGHT_MODE_LV95_STORED:
            candidates.append(feature)
        else:
            summary.skipped += 1

    grouped = group_features_by_proximity(candidates)
    anchored = {id(f) for group in grouped.values() for f in group}
    for feature in candidates:
        if id(feature) not in anchored:
            _mark_failed(feature, "Feature has no coordinates to anchor a height transform")
            summary.failed += 1

    for cell, group in grouped.items():
        for feature in group:
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                logger.info("Height transformation cancelled | done=%d", summary.transformed + summary.failed)
                return summary
            triple = lv95_triple(feature)
            if triple is None:
                _mark_failed(feature, "Feature has no stored LV95 easting/northing/height")
                summary.failed += 1
                continue
            try:
                result = transformer.transform(*triple, bypass_cache=bypass_cache, allow_fallback=allow_fallback)
            except TransformationError as exc:
                _mark_failed(feature, exc.message)
                summary.failed += 1
                logger.warning("Height transformation failed | feature=%s | cell=%s | error=%s", feature.id, cell, exc)
                continue
            feature.properties.update(
                {
                    "base_elevation_ellipsoidal": result.ell_height,
                    "height_mode": HEIGHT_MODE_ABSOLUTE_ELLIPSOIDAL,
                    "height_transformed": True,
                    "height_transformed_at": datetime.now(UTC).isoformat(),
                    "height_method": result.method,
                }
            )
            feature.properties.pop("height_transformation_error", None)
            summary.transformed += 1

    logger.info(
        "Swiss heights applied | transformed=%d | failed=%d | skipped=%d",
        summary.transformed,
        summary.failed,
        summary.skipped,
    )
    return summary
