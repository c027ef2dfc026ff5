"""Data models and schemas.

Defines the data structures used throughout the loader:
- Geometry variants, Position helpers and Bounds
- Feature / FeatureCollection containers
- ParseWarning / ProgressEvent diagnostics
- PreviewDataset schema for the rendering collaborator
"""

from geo_loader.models.diagnostics import ParseWarning, ProgressEvent
from geo_loader.models.feature import Feature, FeatureCollection
from geo_loader.models.geometry import (
    Bounds,
    BoundsBuilder,
    Geometry,
    InvalidGeometryError,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
    Position,
    close_ring,
    geometry_family,
    iter_positions,
)
from geo_loader.models.preview import PreviewBounds, PreviewDataset

__all__ = [
    "Bounds",
    "BoundsBuilder",
    "Feature",
    "FeatureCollection",
    "Geometry",
    "InvalidGeometryError",
    "LineString",
    "MultiLineString",
    "MultiPoint",
    "MultiPolygon",
    "ParseWarning",
    "Point",
    "Polygon",
    "Position",
    "PreviewBounds",
    "PreviewDataset",
    "ProgressEvent",
    "close_ring",
    "geometry_family",
    "iter_positions",
]
