"""Shared loader constants: single source of truth.

Centralises coordinate system codes, default tolerances, file size
ceilings, and the Swiss geodesy service endpoints used across parsers,
the coordinate manager, and the preview generator.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Coordinate system codes
# ---------------------------------------------------------------------------

WGS84: str = "EPSG:4326"
"""Geographic WGS 84 (lon/lat degrees).  The transform pivot."""

SWISS_LV95: str = "EPSG:2056"
"""Swiss CH1903+ / LV95 (metres)."""

SWISS_LV03: str = "EPSG:21781"
"""Swiss CH1903 / LV03 (metres)."""

WEB_MERCATOR: str = "EPSG:3857"
"""Pseudo-Mercator used by web map tiles."""

# ---------------------------------------------------------------------------
# Fallback region (Aarau, Switzerland)
# ---------------------------------------------------------------------------

DEFAULT_CENTER_LON: float = 8.0472
DEFAULT_CENTER_LAT: float = 47.3925
DEFAULT_REGION_HALF_SPAN_DEG: float = 0.1

# ---------------------------------------------------------------------------
# Geometry tolerances
# ---------------------------------------------------------------------------

CLOSURE_EPSILON: float = 1e-9
"""Maximum per-axis distance for a ring's first/last positions to count as equal."""

CLEAN_TOLERANCE: float = 0.0000002
"""Near-duplicate vertex distance (about 2 cm in degrees)."""

REPAIR_BUFFER_DISTANCE: float = 0.00002
"""Outward-then-inward buffer distance (degrees) used to dissolve self-intersections."""

METRES_PER_DEGREE: float = 111_320.0
"""Length of one degree of latitude, used to express degree tolerances in metres."""

COMPLEXITY_LIMIT: int = 1000
"""Vertex count above which the self-intersection check is skipped."""

MIN_RING_POSITIONS: int = 4
MIN_LINE_POSITIONS: int = 2

# ---------------------------------------------------------------------------
# Tessellation
# ---------------------------------------------------------------------------

CIRCLE_SEGMENTS: int = 32
"""Segments used to approximate circles, arcs and ellipses."""

# ---------------------------------------------------------------------------
# File size ceilings (bytes), checked before parsing begins
# ---------------------------------------------------------------------------

MB: int = 1024 * 1024
GB: int = 1024 * MB

MAX_FILE_SIZES: dict[str, int] = {
    ".dxf": 1 * GB,
    ".shp": 2 * GB,
    ".shx": 256 * MB,
    ".dbf": 2 * GB,
    ".prj": 1 * MB,
    ".cpg": 1 * MB,
    ".csv": 512 * MB,
    ".xyz": 2 * GB,
    ".txt": 512 * MB,
}

# ---------------------------------------------------------------------------
# Swiss geodesy service (swisstopo REFRAME)
# ---------------------------------------------------------------------------

SWISS_REFRAME_BASE_URL: str = "https://geodesy.geo.admin.ch/reframe"
LHN95_TO_BESSEL: str = "lhn95tobessel"
LV95_TO_WGS84: str = "lv95towgs84"
SWISS_BATCH_SIZE: int = 100

# ---------------------------------------------------------------------------
# Height post-processing property names
# ---------------------------------------------------------------------------

HEIGHT_MODE_LV95_STORED: str = "lv95_stored"
HEIGHT_MODE_ABSOLUTE_ELLIPSOIDAL: str = "absolute_ellipsoidal"
