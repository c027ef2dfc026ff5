"""Feature and FeatureCollection containers.

A Feature is one parsed entity: a geometry plus its property mapping,
an optional stable identifier and an optional precomputed bounding box.
Parsers create features; the height post-processing stage may add
provenance properties.  Only one pipeline stage touches a feature at a
time, so the property dict is intentionally mutable.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from geo_loader.models.geometry import (
    Bounds,
    BoundsBuilder,
    Geometry,
    geometry_from_dict,
    geometry_to_dict,
    iter_positions,
)


@dataclass(slots=True)
class Feature:
    """A single geometry with properties.

    Attributes:
        geometry: The feature geometry.
        properties: Mixed scalar/string property values keyed by name.
        id: Optional stable identifier (DXF handle, record number, row).
        bbox: Optional precomputed bounding box.
    """

    geometry: Geometry
    properties: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    bbox: Bounds | None = None

    @property
    def layer(self) -> str:
        return str(self.properties.get("layer", ""))

    def compute_bbox(self) -> Bounds:
        """Return ``bbox`` if precomputed, else scan the coordinates."""
        if self.bbox is not None:
            return self.bbox
        builder = BoundsBuilder()
        for position in iter_positions(self.geometry):
            builder.add(position)
        return builder.build()

    def with_geometry(self, geometry: Geometry) -> Feature:
        """Copy with a new geometry; properties are copied, bbox dropped."""
        return Feature(
            geometry=geometry,
            properties=copy.copy(self.properties),
            id=self.id,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a GeoJSON Feature mapping."""
        data: dict[str, Any] = {
            "type": "Feature",
            "geometry": geometry_to_dict(self.geometry),
            "properties": dict(self.properties),
        }
        if self.id is not None:
            data["id"] = self.id
        if self.bbox is not None:
            data["bbox"] = list(self.bbox.as_tuple())
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        """Deserialise from a GeoJSON Feature mapping.

        Raises:
            TypeError: If ``geometry`` or ``properties`` have unexpected types.
            InvalidGeometryError: If the geometry is invalid.
        """
        geometry_raw = data.get("geometry")
        if not isinstance(geometry_raw, dict):
            msg = f"geometry must be a dict, got {type(geometry_raw).__name__}"
            raise TypeError(msg)
        properties_raw = data.get("properties") or {}
        if not isinstance(properties_raw, dict):
            msg = f"properties must be a dict, got {type(properties_raw).__name__}"
            raise TypeError(msg)

        bbox = None
        bbox_raw = data.get("bbox")
        if isinstance(bbox_raw, list | tuple) and len(bbox_raw) == 4:
            bbox = Bounds(*(float(v) for v in bbox_raw))

        feature_id = data.get("id")
        return cls(
            geometry=geometry_from_dict(geometry_raw),
            properties=dict(properties_raw),
            id=None if feature_id is None else str(feature_id),
            bbox=bbox,
        )


@dataclass(slots=True)
class FeatureCollection:
    """An ordered list of features with optional aggregate bounds."""

    features: list[Feature] = field(default_factory=list)
    bounds: Bounds | None = None

    def __len__(self) -> int:
        return len(self.features)

    def compute_bounds(self) -> Bounds:
        """Aggregate bounds of every feature (fallback sentinel when empty)."""
        builder = BoundsBuilder()
        for feature in self.features:
            if feature.bbox is not None:
                builder.add_bounds(feature.bbox)
            else:
                for position in iter_positions(feature.geometry):
                    builder.add(position)
        return builder.build()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": "FeatureCollection",
            "features": [f.to_dict() for f in self.features],
        }
        if self.bounds is not None:
            data["bbox"] = list(self.bounds.as_tuple())
        return data
