"""Loader configuration loaded from environment variables.

All configuration values have sensible defaults.  Environment variables
override them per deployment.

Fail-fast validation:
    ``from_env()`` raises ``ConfigValidationError`` if any numeric
    value is out of its valid range.  This catches bad configuration at
    startup rather than halfway through a large import.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from geo_loader.core.constants import (
    CLEAN_TOLERANCE,
    COMPLEXITY_LIMIT,
    SWISS_REFRAME_BASE_URL,
)
from geo_loader.core.exceptions import PipelineError


class ConfigValidationError(PipelineError):
    """Raised when configuration values are out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
        message: Human-readable description of the valid range.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")
        self.message = message


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class LoaderConfig:
    """Immutable loader configuration.

    Loaded once per process and threaded through the import pipeline.

    Attributes:
        chunk_size: Features per streamed chunk.
        max_buffered_features: Memory ceiling (feature count) for the stream buffer.
        max_buffered_bytes: Memory ceiling (estimated bytes) for the stream buffer.
        clean_tolerance: Near-duplicate vertex tolerance for repair (working units).
        complexity_limit: Vertex count above which self-intersection checks are skipped.
        delta_cell_size_m: Grid cell size for the height delta cache, in metres.
        delta_ttl_s: Delta cache entry lifetime, in seconds.
        delta_valid_radius_m: Distance from a cell reference within which a delta applies.
        swiss_reframe_base_url: Base URL of the Swiss REFRAME service.
        swiss_reframe_timeout_s: Per-request timeout, in seconds.
        swiss_reframe_max_retries: Retries per service call (each call independently).
        allow_approximate: Whether the labelled approximate fallback may be used.
        transform_workers: Thread pool size for concurrent reprojection.
    """

    chunk_size: int = 1000
    max_buffered_features: int = 100_000
    max_buffered_bytes: int = 256 * 1024 * 1024
    clean_tolerance: float = CLEAN_TOLERANCE
    complexity_limit: int = COMPLEXITY_LIMIT
    delta_cell_size_m: float = 1000.0
    delta_ttl_s: float = 24 * 60 * 60.0
    delta_valid_radius_m: float = 1000.0
    swiss_reframe_base_url: str = SWISS_REFRAME_BASE_URL
    swiss_reframe_timeout_s: float = 30.0
    swiss_reframe_max_retries: int = 2
    allow_approximate: bool = False
    transform_workers: int = 4

    @classmethod
    def from_env(cls) -> LoaderConfig:
        """Load and validate configuration from environment variables.

        Raises:
            ConfigValidationError: If a numeric value is out of range
                or a required string value is empty.
            ValueError: If a numeric environment variable cannot be
                parsed (e.g. ``GEO_LOADER_CHUNK_SIZE=abc``).
        """
        config = cls(
            chunk_size=int(os.getenv("GEO_LOADER_CHUNK_SIZE", "1000")),
            max_buffered_features=int(os.getenv("GEO_LOADER_MAX_BUFFERED_FEATURES", "100000")),
            max_buffered_bytes=int(os.getenv("GEO_LOADER_MAX_BUFFERED_BYTES", str(256 * 1024 * 1024))),
            clean_tolerance=float(os.getenv("GEO_LOADER_CLEAN_TOLERANCE", str(CLEAN_TOLERANCE))),
            complexity_limit=int(os.getenv("GEO_LOADER_COMPLEXITY_LIMIT", str(COMPLEXITY_LIMIT))),
            delta_cell_size_m=float(os.getenv("GEO_LOADER_DELTA_CELL_SIZE_M", "1000")),
            delta_ttl_s=float(os.getenv("GEO_LOADER_DELTA_TTL_S", "86400")),
            delta_valid_radius_m=float(os.getenv("GEO_LOADER_DELTA_VALID_RADIUS_M", "1000")),
            swiss_reframe_base_url=os.getenv("SWISS_REFRAME_BASE_URL", SWISS_REFRAME_BASE_URL),
            swiss_reframe_timeout_s=float(os.getenv("SWISS_REFRAME_TIMEOUT_S", "30")),
            swiss_reframe_max_retries=int(os.getenv("SWISS_REFRAME_MAX_RETRIES", "2")),
            allow_approximate=_env_bool("GEO_LOADER_ALLOW_APPROXIMATE", "false"),
            transform_workers=int(os.getenv("GEO_LOADER_TRANSFORM_WORKERS", "4")),
        )
        _validate(config)
        return config


def _validate(config: LoaderConfig) -> None:
    """Validate configuration ranges.  Raises ``ConfigValidationError``."""
    if config.chunk_size <= 0:
        raise ConfigValidationError("GEO_LOADER_CHUNK_SIZE", config.chunk_size, "must be > 0")

    if config.max_buffered_features < config.chunk_size:
        raise ConfigValidationError(
            "GEO_LOADER_MAX_BUFFERED_FEATURES",
            config.max_buffered_features,
            f"must be >= chunk size ({config.chunk_size})",
        )

    if config.max_buffered_bytes <= 0:
        raise ConfigValidationError(
            "GEO_LOADER_MAX_BUFFERED_BYTES",
            config.max_buffered_bytes,
            "must be > 0 (bytes)",
        )

    if config.clean_tolerance < 0:
        raise ConfigValidationError(
            "GEO_LOADER_CLEAN_TOLERANCE",
            config.clean_tolerance,
            "must be >= 0 (working units)",
        )

    if config.complexity_limit <= 0:
        raise ConfigValidationError(
            "GEO_LOADER_COMPLEXITY_LIMIT",
            config.complexity_limit,
            "must be > 0 (vertices)",
        )

    if config.delta_cell_size_m <= 0:
        raise ConfigValidationError(
            "GEO_LOADER_DELTA_CELL_SIZE_M",
            config.delta_cell_size_m,
            "must be > 0 (metres)",
        )

    if config.delta_ttl_s <= 0:
        raise ConfigValidationError("GEO_LOADER_DELTA_TTL_S", config.delta_ttl_s, "must be > 0 (seconds)")

    if config.delta_valid_radius_m <= 0:
        raise ConfigValidationError(
            "GEO_LOADER_DELTA_VALID_RADIUS_M",
            config.delta_valid_radius_m,
            "must be > 0 (metres)",
        )

    if not config.swiss_reframe_base_url:
        raise ConfigValidationError(
            "SWISS_REFRAME_BASE_URL",
            config.swiss_reframe_base_url,
            "must not be empty",
        )

    if config.swiss_reframe_timeout_s <= 0:
        raise ConfigValidationError(
            "SWISS_REFRAME_TIMEOUT_S",
            config.swiss_reframe_timeout_s,
            "must be > 0 (seconds)",
        )

    if config.swiss_reframe_max_retries < 0:
        raise ConfigValidationError(
            "SWISS_REFRAME_MAX_RETRIES",
            config.swiss_reframe_max_retries,
            "must be >= 0",
        )

    if config.transform_workers <= 0:
        raise ConfigValidationError(
            "GEO_LOADER_TRANSFORM_WORKERS",
            config.transform_workers,
            "must be > 0",
        )
