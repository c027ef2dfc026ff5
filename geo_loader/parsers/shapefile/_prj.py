"""Projection (``.prj``) detection."""

from __future__ import annotations

import logging
import re

from geo_loader.parsers.shapefile._constants import PROJECTION_PATTERNS

logger = logging.getLogger("geo_loader.parsers.shapefile")

_EPSG_RE = re.compile(r"EPSG[\":,\[\s]+(\d+)", re.IGNORECASE)

# pyproj confidence threshold for matching an ESRI WKT to an EPSG entry.
_MIN_CONFIDENCE = 70


def detect_prj_crs(wkt: str) -> str | None:
    """Return the authority code of a ``.prj`` WKT, or ``None``.

    Uses ``pyproj.CRS.from_wkt`` first; falls back to known projection
    names and embedded EPSG codes when pyproj cannot identify it.
    """
    from pyproj import CRS
    from pyproj.exceptions import CRSError

    text = wkt.strip()
    if not text:
        return None
    try:
        epsg = CRS.from_wkt(text).to_epsg(min_confidence=_MIN_CONFIDENCE)
    except CRSError as exc:
        logger.warning("pyproj could not read .prj WKT | error=%s", exc)
        epsg = None
    if epsg is not None:
        return f"EPSG:{epsg}"

    for pattern, code in PROJECTION_PATTERNS:
        if pattern in text:
            return code
    match = _EPSG_RE.search(text)
    if match:
        return f"EPSG:{match.group(1)}"
    return None
