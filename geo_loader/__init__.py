"""Geo Loader: geospatial and CAD ingestion core.

Parses DXF, Shapefile and CSV/XYZ uploads into a common feature model,
reprojects coordinates (including the Swiss LV95/LHN95 to WGS84 height
pipeline), validates and repairs polygon geometry, and produces a
bounded, simplified preview dataset for interactive rendering.
"""

__version__ = "0.1.0"
