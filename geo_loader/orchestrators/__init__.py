"""Pipeline orchestration."""

from geo_loader.orchestrators.import_pipeline import ImportResult, import_file

__all__ = ["ImportResult", "import_file"]
