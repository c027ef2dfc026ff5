"""Constants for the ESRI Shapefile reader."""

from __future__ import annotations

REQUIRED_COMPANIONS: tuple[str, ...] = (".shx", ".dbf")

# Known projection names / EPSG codes for .prj files pyproj cannot identify.
PROJECTION_PATTERNS: tuple[tuple[str, str], ...] = (
    ("CH1903+_LV95", "EPSG:2056"),
    ("CH1903+", "EPSG:2056"),
    ("CH1903_LV03", "EPSG:21781"),
    ("CH1903", "EPSG:21781"),
    ("EPSG:2056", "EPSG:2056"),
    ("EPSG:21781", "EPSG:21781"),
    ("GCS_WGS_1984", "EPSG:4326"),
    ("WGS84", "EPSG:4326"),
    ("EPSG:4326", "EPSG:4326"),
)
