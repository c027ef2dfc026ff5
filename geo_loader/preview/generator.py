"""Preview/Sampling Generator.

Turns a full feature list into a bounded ``PreviewDataset``:

1. Sample down to ``max_features`` (systematic or seeded random).
2. Repair each sampled geometry, then simplify it.  A feature whose
   repair fails keeps its original geometry and is flagged with
   ``_repair_failed`` / ``_repair_error`` properties.
3. Split the results into point, line and polygon collections.
4. Pad the aggregate bounds, or use the fallback region (always WGS84)
   when no finite coordinate exists.

Tolerances in ``PreviewConfig`` are given in degrees and scaled to the
units of ``coordinate_system`` before use, so a projected (metre) input
is cleaned and simplified at the same ground distance as WGS84.

Work is done in chunks; each chunk publishes a ``ProgressEvent`` and
yields the thread with ``time.sleep(0)``.  Cancellation is checked
between chunks and returns the partial preview with ``complete=False``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from geo_loader.core.config import ConfigValidationError
from geo_loader.coordinates.systems import working_distance
from geo_loader.core.constants import (
    CLEAN_TOLERANCE,
    COMPLEXITY_LIMIT,
    DEFAULT_REGION_HALF_SPAN_DEG,
    REPAIR_BUFFER_DISTANCE,
    WGS84,
)
from geo_loader.models.diagnostics import ProgressEvent
from geo_loader.models.geometry import BoundsBuilder, geometry_family, iter_positions
from geo_loader.models.preview import PreviewBounds, PreviewDataset
from geo_loader.preview.sampling import SAMPLING_MODES, SamplingMode, sample_indices
from geo_loader.preview.simplify import simplify_geometry
from geo_loader.validation.repair import validate_and_repair

if TYPE_CHECKING:
    from collections.abc import Sequence

    from geo_loader.models.feature import Feature
    from geo_loader.streaming.progress import ProgressChannel

logger = logging.getLogger(__name__)

PHASE = "preview"
REPAIR_FAILED_PROPERTY = "_repair_failed"
REPAIR_ERROR_PROPERTY = "_repair_error"


@dataclass(frozen=True, slots=True)
class PreviewConfig:
    """Preview generation settings.

    Attributes:
        max_features: Upper bound on features in the preview.
        simplify_tolerance: Douglas-Peucker tolerance in degrees
            (0.00001 degrees is roughly 1 m).
        sampling: ``"systematic"`` or ``"random"``.
        seed: Seed for random sampling.
        chunk_size: Features processed between progress events.
        bounds_padding: Fraction of the extent added on every side.
        coordinate_system: Authority code of the input coordinates.
        clean_tolerance: Near-duplicate vertex tolerance in degrees.
        repair_buffer_distance: Closing distance in degrees used to
            dissolve self-intersections.
        complexity_limit: Vertex count above which the validity check is skipped.
    """

    max_features: int = 5000
    simplify_tolerance: float = 0.00001
    sampling: SamplingMode = "systematic"
    seed: int | None = None
    chunk_size: int = 500
    bounds_padding: float = 0.1
    coordinate_system: str = WGS84
    clean_tolerance: float = CLEAN_TOLERANCE
    complexity_limit: int = COMPLEXITY_LIMIT
    repair_buffer_distance: float = REPAIR_BUFFER_DISTANCE

    def __post_init__(self) -> None:
        if self.max_features <= 0:
            raise ConfigValidationError("max_features", self.max_features, "must be > 0")
        if self.simplify_tolerance < 0:
            raise ConfigValidationError("simplify_tolerance", self.simplify_tolerance, "must be >= 0")
        if self.sampling not in SAMPLING_MODES:
            raise ConfigValidationError("sampling", self.sampling, f"must be one of {SAMPLING_MODES}")
        if self.chunk_size <= 0:
            raise ConfigValidationError("chunk_size", self.chunk_size, "must be > 0")
        if self.bounds_padding < 0:
            raise ConfigValidationError("bounds_padding", self.bounds_padding, "must be >= 0")
        if self.clean_tolerance < 0:
            raise ConfigValidationError("clean_tolerance", self.clean_tolerance, "must be >= 0")
        if self.repair_buffer_distance <= 0:
            raise ConfigValidationError("repair_buffer_distance", self.repair_buffer_distance, "must be > 0")

    def in_working_units(self, degrees: float) -> float:
        """Convert a degree distance into ``coordinate_system`` units."""
        return working_distance(self.coordinate_system, degrees)


def _prepare(feature: Feature, config: PreviewConfig) -> tuple[Feature, bool, bool]:
    """Repair and simplify one feature.

    Returns:
        ``(preview_feature, repaired, repair_failed)``.
    """
    result = validate_and_repair(
        feature.geometry,
        tolerance=config.in_working_units(config.clean_tolerance),
        complexity_limit=config.complexity_limit,
        buffer_distance=config.in_working_units(config.repair_buffer_distance),
    )
    if result.geometry is None:
        flagged = feature.with_geometry(feature.geometry)
        flagged.properties[REPAIR_FAILED_PROPERTY] = True
        flagged.properties[REPAIR_ERROR_PROPERTY] = result.error or "repair failed"
        return flagged, False, True
    simplified = simplify_geometry(result.geometry, config.in_working_units(config.simplify_tolerance))
    return feature.with_geometry(simplified), result.was_repaired, False


def generate_preview(
    features: Sequence[Feature],
    config: PreviewConfig | None = None,
    progress: ProgressChannel | None = None,
    cancel_event: threading.Event | None = None,
) -> PreviewDataset:
    """Build a bounded preview of ``features``.

    Args:
        features: Features in ``config.coordinate_system``.
        config: Preview settings (defaults when ``None``).
        progress: Receives one ``"preview"`` event per chunk.
        cancel_event: Cooperative cancellation, checked between chunks.

    Returns:
        The preview; ``complete=False`` if cancelled part-way.
    """
    config = config or PreviewConfig()
    indices = sample_indices(len(features), config.max_features, config.sampling, config.seed)
    collections: dict[str, list[dict[str, object]]] = {"point": [], "line": [], "polygon": []}
    bounds = BoundsBuilder()
    repaired = 0
    failures = 0
    processed = 0
    complete = True

    for start in range(0, len(indices), config.chunk_size):
        if cancel_event is not None and cancel_event.is_set():
            complete = False
            break
        for index in indices[start : start + config.chunk_size]:
            prepared, was_repaired, failed = _prepare(features[index], config)
            repaired += was_repaired
            failures += failed
            for position in iter_positions(prepared.geometry):
                bounds.add(position)
            collections[geometry_family(prepared.geometry)].append(prepared.to_dict())
            processed += 1
        if progress is not None:
            progress.publish(
                ProgressEvent(
                    phase=PHASE,
                    fraction=processed / len(indices),
                    features_processed=processed,
                )
            )
        time.sleep(0)

    aggregate = bounds.build()
    if not aggregate.is_fallback:
        aggregate = aggregate.pad(
            config.bounds_padding,
            min_extent=config.in_working_units(DEFAULT_REGION_HALF_SPAN_DEG),
        )

    if failures:
        logger.warning("Preview repair failures | failed=%d | sampled=%d", failures, processed)
    logger.info(
        "Preview generated | total=%d | sampled=%d | repaired=%d | repair_failures=%d | complete=%s",
        len(features),
        processed,
        repaired,
        failures,
        complete,
    )

    return PreviewDataset(
        points={"type": "FeatureCollection", "features": collections["point"]},
        lines={"type": "FeatureCollection", "features": collections["line"]},
        polygons={"type": "FeatureCollection", "features": collections["polygon"]},
        bounds=PreviewBounds(
            min_x=aggregate.min_x,
            min_y=aggregate.min_y,
            max_x=aggregate.max_x,
            max_y=aggregate.max_y,
            is_fallback=aggregate.is_fallback,
            coordinate_system=WGS84 if aggregate.is_fallback else config.coordinate_system,
        ),
        coordinate_system=config.coordinate_system,
        total_features=len(features),
        sampled_features=processed,
        repair_failures=failures,
        repaired=repaired,
        complete=complete,
    )
