"""Preview generation: sampling, simplification and categorisation."""

from geo_loader.preview.generator import PreviewConfig, generate_preview
from geo_loader.preview.sampling import sample_indices
from geo_loader.preview.simplify import simplify_geometry

__all__ = [
    "PreviewConfig",
    "generate_preview",
    "sample_indices",
    "simplify_geometry",
]
