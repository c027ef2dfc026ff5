"""Chunked feature streaming and progress reporting."""

from geo_loader.streaming.feature_stream import (
    ProcessingState,
    StreamingFeatureManager,
    StreamResult,
    estimate_feature_bytes,
)
from geo_loader.streaming.progress import ProgressChannel

__all__ = [
    "ProcessingState",
    "ProgressChannel",
    "StreamResult",
    "StreamingFeatureManager",
    "estimate_feature_bytes",
]
