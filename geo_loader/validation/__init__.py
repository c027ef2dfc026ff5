"""Geometry validation and repair."""

from geo_loader.validation.repair import RepairResult, clean_ring, validate_and_repair, validate_geometry

__all__ = [
    "RepairResult",
    "clean_ring",
    "validate_and_repair",
    "validate_geometry",
]
