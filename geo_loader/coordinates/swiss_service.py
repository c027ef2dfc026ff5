"""Client for the swisstopo REFRAME geodesy service.

Converting an LV95 position with an LHN95 (orthometric) height into
WGS84 with an ellipsoidal height takes two service calls:

1. ``lhn95tobessel``: LHN95 height -> Bessel ellipsoidal height
2. ``lv95towgs84``: LV95 + Bessel height -> WGS84 lon/lat/ellipsoidal height

Each call is retried independently on transport errors and 5xx
responses; a failure raises ``ServiceCallError`` naming the call.

``approximate_lv95_to_wgs84`` is a labelled best-effort fallback with
no accuracy guarantee.  It is only used when the caller opts in.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

import httpx

from geo_loader.core.constants import (
    LHN95_TO_BESSEL,
    LV95_TO_WGS84,
    SWISS_BATCH_SIZE,
    SWISS_REFRAME_BASE_URL,
)
from geo_loader.core.exceptions import ServiceCallError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from geo_loader.core.config import LoaderConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_S = 0.25

# Degraded-mode coefficients (rough linearisation around Bern).
APPROX_LON_ORIGIN = 8.23
APPROX_LAT_ORIGIN = 46.82
APPROX_EASTING_ORIGIN = 2_600_000.0
APPROX_NORTHING_ORIGIN = 1_200_000.0
APPROX_METRES_PER_DEG_LON = 78_000.0
APPROX_METRES_PER_DEG_LAT = 111_000.0
APPROX_HEIGHT_OFFSET_M = 49.5

TransformMethod = Literal["service", "delta_cache", "approximate"]


@dataclass(frozen=True, slots=True)
class SwissTransformResult:
    """WGS84 position with ellipsoidal height.

    Attributes:
        lon: Longitude in degrees.
        lat: Latitude in degrees.
        ell_height: Ellipsoidal height in metres.
        method: ``"service"`` (exact), ``"delta_cache"`` (cached local
            approximation) or ``"approximate"`` (degraded fallback).
    """

    lon: float
    lat: float
    ell_height: float
    method: TransformMethod = "service"


def approximate_lv95_to_wgs84(easting: float, northing: float, height: float) -> SwissTransformResult:
    """Best-effort LV95/LHN95 -> WGS84 without the service.

    No accuracy bound is claimed; the result is labelled ``approximate``.
    """
    return SwissTransformResult(
        lon=APPROX_LON_ORIGIN + (easting - APPROX_EASTING_ORIGIN) / APPROX_METRES_PER_DEG_LON,
        lat=APPROX_LAT_ORIGIN + (northing - APPROX_NORTHING_ORIGIN) / APPROX_METRES_PER_DEG_LAT,
        ell_height=height + APPROX_HEIGHT_OFFSET_M,
        method="approximate",
    )


def _number(payload: dict[str, Any], key: str, call: str) -> float:
    raw = payload.get(key)
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        msg = f"{call} response field {key!r} is missing or not numeric: {raw!r}"
        raise ServiceCallError(call, msg) from exc
    if not math.isfinite(value):
        msg = f"{call} response field {key!r} is not finite: {raw!r}"
        raise ServiceCallError(call, msg)
    return value


class SwissReframeClient:
    """Synchronous REFRAME client backed by ``httpx.Client``.

    Args:
        base_url: Service base URL.
        timeout: Per-request timeout in seconds.
        max_retries: Retries per call after the first attempt.
        backoff: Base delay between retries (doubles per attempt).
        client: Injected ``httpx.Client`` (tests use ``httpx.MockTransport``).
            When omitted the client creates and owns one.
        cancel_event: Once set, no further requests are issued.
    """

    def __init__(
        self,
        base_url: str = SWISS_REFRAME_BASE_URL,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: float = DEFAULT_BACKOFF_S,
        client: httpx.Client | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._backoff = backoff
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)
        self.cancel_event = cancel_event
        self.request_count = 0

    @classmethod
    def from_config(cls, config: LoaderConfig, **kwargs: Any) -> SwissReframeClient:
        return cls(
            config.swiss_reframe_base_url,
            timeout=config.swiss_reframe_timeout_s,
            max_retries=config.swiss_reframe_max_retries,
            **kwargs,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> SwissReframeClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _get(self, call: str, params: dict[str, float]) -> dict[str, Any]:
        """GET ``{base}/{call}`` with per-call retry.

        Raises:
            ServiceCallError: After retries are exhausted, on a
                non-retryable status, or when cancelled.
        """
        url = f"{self._base_url}/{call}"
        query = {**{k: repr(v) for k, v in params.items()}, "format": "json"}
        attempt = 0
        while True:
            if self.cancel_event is not None and self.cancel_event.is_set():
                msg = f"{call} not issued: import cancelled"
                raise ServiceCallError(call, msg, code="CANCELLED")
            self.request_count += 1
            try:
                response = self._client.get(url, params=query)
            except httpx.TransportError as exc:
                last_error = ServiceCallError(call, f"{call} transport error: {exc}", retryable=True)
            else:
                if response.status_code == httpx.codes.OK:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        msg = f"{call} returned a body that is not JSON"
                        raise ServiceCallError(call, msg, status_code=response.status_code) from exc
                    if not isinstance(payload, dict):
                        msg = f"{call} returned {type(payload).__name__}, expected an object"
                        raise ServiceCallError(call, msg, status_code=response.status_code)
                    return payload
                retryable = response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR
                last_error = ServiceCallError(
                    call,
                    f"{call} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    retryable=retryable,
                )
                if not retryable:
                    raise last_error

            if attempt >= self._max_retries:
                logger.error(
                    "Service call retries exhausted | call=%s | attempts=%d | error=%s",
                    call,
                    self._max_retries + 1,
                    last_error.message,
                )
                raise last_error
            logger.warning(
                "Service call attempt %d/%d failed (retryable) | call=%s | error=%s",
                attempt + 1,
                self._max_retries + 1,
                call,
                last_error.message,
            )
            if self._backoff > 0:
                time.sleep(self._backoff * 2**attempt)
            attempt += 1

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def lhn95_to_bessel(self, easting: float, northing: float, height: float) -> float:
        """Convert an LHN95 height to a Bessel ellipsoidal height."""
        payload = self._get(LHN95_TO_BESSEL, {"easting": easting, "northing": northing, "altitude": height})
        return _number(payload, "altitude", LHN95_TO_BESSEL)

    def lv95_to_wgs84(self, easting: float, northing: float, bessel_height: float) -> tuple[float, float, float]:
        """Convert LV95 + Bessel height to WGS84 ``(lon, lat, ellipsoidal height)``."""
        payload = self._get(LV95_TO_WGS84, {"easting": easting, "northing": northing, "altitude": bessel_height})
        return (
            _number(payload, "easting", LV95_TO_WGS84),
            _number(payload, "northing", LV95_TO_WGS84),
            _number(payload, "altitude", LV95_TO_WGS84),
        )

    def transform(
        self,
        easting: float,
        northing: float,
        height: float,
        *,
        allow_fallback: bool = False,
    ) -> SwissTransformResult:
        """Exact LV95/LHN95 -> WGS84 via both calls.

        Args:
            allow_fallback: On failure, return the labelled approximate
                result instead of raising.

        Raises:
            ServiceCallError: If either call fails and fallback is off.
        """
        try:
            bessel = self.lhn95_to_bessel(easting, northing, height)
            lon, lat, ell_height = self.lv95_to_wgs84(easting, northing, bessel)
        except ServiceCallError as exc:
            if not allow_fallback or exc.code == "CANCELLED":
                raise
            logger.warning(
                "Using approximate Swiss transform | call=%s | easting=%.3f | northing=%.3f | error=%s",
                exc.call,
                easting,
                northing,
                exc.message,
            )
            return approximate_lv95_to_wgs84(easting, northing, height)
        return SwissTransformResult(lon=lon, lat=lat, ell_height=ell_height, method="service")

    def transform_batch(
        self,
        points: Sequence[tuple[float, float, float]],
        *,
        allow_fallback: bool = False,
    ) -> list[SwissTransformResult | None]:
        """Transform points in chunks of ``SWISS_BATCH_SIZE``.

        A point that fails gets ``None``; the batch continues.  A
        cancellation stops the batch and leaves remaining points ``None``.
        """
        results: list[SwissTransformResult | None] = [None] * len(points)
        failed = 0
        for start in range(0, len(points), SWISS_BATCH_SIZE):
            chunk = points[start : start + SWISS_BATCH_SIZE]
            for offset, (easting, northing, height) in enumerate(chunk):
                try:
                    results[start + offset] = self.transform(easting, northing, height, allow_fallback=allow_fallback)
                except ServiceCallError as exc:
                    if exc.code == "CANCELLED":
                        logger.info("Swiss batch cancelled | done=%d | total=%d", start + offset, len(points))
                        return results
                    failed += 1
            logger.debug("Swiss batch chunk done | start=%d | size=%d", start, len(chunk))
        logger.info("Swiss batch transformed | total=%d | failed=%d", len(points), failed)
        return results
