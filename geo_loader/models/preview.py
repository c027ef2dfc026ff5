"""Pydantic schema for the preview dataset handed to the rendering collaborator.

The preview is the bounded, simplified view of an import: features
split by geometry family into three GeoJSON FeatureCollections, the
padded aggregate bounds, and bookkeeping about sampling and repair.

Engineering standards:
- Deterministic: systematic sampling yields the same preview for the same input
- Explicit: ``coordinate_system`` is an authority code, bounds are in that system
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

# Schema version for forward compatibility
SCHEMA_VERSION = "geo-preview-v1"


def _empty_collection() -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": []}


class PreviewBounds(BaseModel):
    """Padded preview bounds.

    Attributes:
        min_x / min_y / max_x / max_y: Box corners in ``coordinate_system`` units.
        is_fallback: ``True`` when no finite coordinate existed and the
            default region was substituted.
        coordinate_system: Authority code the corners are expressed in.
            The fallback region is always WGS84, whatever the preview's
            own system.
    """

    min_x: float
    min_y: float
    max_x: float
    max_y: float
    is_fallback: bool = False
    coordinate_system: str = "EPSG:4326"


class PreviewDataset(BaseModel):
    """Bounded preview of an imported file.

    Attributes:
        points: GeoJSON FeatureCollection of Point/MultiPoint features.
        lines: GeoJSON FeatureCollection of LineString/MultiLineString features.
        polygons: GeoJSON FeatureCollection of Polygon/MultiPolygon features.
        bounds: Padded aggregate bounds.
        coordinate_system: Authority code of all preview coordinates.
        generated_at: UTC timestamp of generation.
        total_features: Input feature count before sampling.
        sampled_features: Features kept after sampling.
        repair_failures: Features whose repair failed (kept with original geometry).
        repaired: Features whose geometry was repaired.
        complete: ``False`` if generation was cancelled part-way.
        schema_version: Schema identifier.
    """

    points: dict[str, Any] = Field(default_factory=_empty_collection)
    lines: dict[str, Any] = Field(default_factory=_empty_collection)
    polygons: dict[str, Any] = Field(default_factory=_empty_collection)
    bounds: PreviewBounds
    coordinate_system: str = "EPSG:4326"
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_features: int = 0
    sampled_features: int = 0
    repair_failures: int = 0
    repaired: int = 0
    complete: bool = True
    schema_version: str = SCHEMA_VERSION

    @property
    def feature_count(self) -> int:
        """Features across all three collections."""
        return sum(len(c["features"]) for c in (self.points, self.lines, self.polygons))
