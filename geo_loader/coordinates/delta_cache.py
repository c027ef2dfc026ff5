"""Grid-cell cache of Swiss height deltas.

One exact service transform per 1 km grid cell is enough to serve every
other point in that cell: the cache stores the height offset
(ellipsoidal minus LHN95) at the cell centre plus a local linear
approximation of the horizontal transform (a 2x2 Jacobian of lon/lat
per metre, estimated with pyproj by central differences).

Within ``valid_radius`` of the reference the horizontal error of the
linear approximation stays below ``CACHE_ERROR_BOUND_DEG``.  A point
farther away triggers one exact transform for a finer sub-cell (small
enough that its centre lies within ``valid_radius`` of every point in
it), and that delta is cached under its own key.

Thread safety:
    Reads, writes and evictions happen under one lock; concurrent
    writes to the same cell are last-write-wins.  Cells being computed
    are tracked so concurrent callers wait for the first computation
    instead of issuing duplicate service calls.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from geo_loader.coordinates.swiss_service import SwissTransformResult, approximate_lv95_to_wgs84
from geo_loader.core.constants import SWISS_LV95, WGS84
from geo_loader.core.exceptions import ServiceCallError, TransformationError

if TYPE_CHECKING:
    from collections.abc import Callable

    from geo_loader.coordinates.swiss_service import SwissReframeClient
    from geo_loader.core.config import LoaderConfig

logger = logging.getLogger(__name__)

DEFAULT_CELL_SIZE_M = 1000.0
DEFAULT_TTL_S = 24 * 60 * 60.0
DEFAULT_VALID_RADIUS_M = 1000.0
JACOBIAN_STEP_M = 1.0
PENDING_WAIT_S = 30.0

CACHE_ERROR_BOUND_DEG = 1e-6
"""Maximum horizontal deviation (degrees, about 0.1 m) of a cached
transform from the exact one, within ``valid_radius`` of the reference."""

CellKey = tuple[str, str, float, int, int]
Jacobian = tuple[tuple[float, float], tuple[float, float]]


@dataclass(frozen=True, slots=True)
class HeightDelta:
    """Cached transform parameters for one grid cell.

    Attributes:
        reference: Cell centre ``(easting, northing, lhn95_height)``.
        reference_wgs84: Exact ``(lon, lat, ell_height)`` of the reference.
        height_offset: ``ell_height - lhn95_height`` at the reference.
        jacobian: ``((dlon/de, dlon/dn), (dlat/de, dlat/dn))`` in degrees per metre.
        created_at: Monotonic clock time of creation.
        valid_radius: Metres from the reference within which the delta applies.
    """

    reference: tuple[float, float, float]
    reference_wgs84: tuple[float, float, float]
    height_offset: float
    jacobian: Jacobian
    created_at: float
    valid_radius: float = DEFAULT_VALID_RADIUS_M

    def distance(self, easting: float, northing: float) -> float:
        return math.hypot(easting - self.reference[0], northing - self.reference[1])

    def applies_to(self, easting: float, northing: float) -> bool:
        return self.distance(easting, northing) <= self.valid_radius

    def apply(self, easting: float, northing: float, height: float) -> SwissTransformResult:
        """Transform a nearby point with the cached linear approximation."""
        dx = easting - self.reference[0]
        dy = northing - self.reference[1]
        (lon_e, lon_n), (lat_e, lat_n) = self.jacobian
        return SwissTransformResult(
            lon=self.reference_wgs84[0] + lon_e * dx + lon_n * dy,
            lat=self.reference_wgs84[1] + lat_e * dx + lat_n * dy,
            ell_height=height + self.height_offset,
            method="delta_cache",
        )


class HeightDeltaCache:
    """TTL cache of ``HeightDelta`` keyed by ``(source, target, cell_size, gx, gy)``.

    Regular cells use ``cell_size``; sub-cells of ``sub_cell_size`` hold
    deltas for points outside the radius of their regular cell.

    Expired entries are evicted when read.
    """

    def __init__(
        self,
        cell_size: float = DEFAULT_CELL_SIZE_M,
        ttl: float = DEFAULT_TTL_S,
        valid_radius: float = DEFAULT_VALID_RADIUS_M,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cell_size = cell_size
        self.ttl = ttl
        self.valid_radius = valid_radius
        self._clock = clock
        self._data: dict[CellKey, HeightDelta] = {}
        self._pending: dict[CellKey, threading.Event] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @classmethod
    def from_config(cls, config: LoaderConfig) -> HeightDeltaCache:
        return cls(
            cell_size=config.delta_cell_size_m,
            ttl=config.delta_ttl_s,
            valid_radius=config.delta_valid_radius_m,
        )

    def now(self) -> float:
        return self._clock()

    @property
    def sub_cell_size(self) -> float:
        """Largest cell whose centre is within ``valid_radius`` of all its points."""
        return min(self.cell_size, self.valid_radius * math.sqrt(2))

    def key(
        self,
        easting: float,
        northing: float,
        source: str = SWISS_LV95,
        target: str = WGS84,
        *,
        cell_size: float | None = None,
    ) -> CellKey:
        size = cell_size or self.cell_size
        return (
            source,
            target,
            size,
            math.floor(easting / size),
            math.floor(northing / size),
        )

    def cell_centre(self, key: CellKey) -> tuple[float, float]:
        _, _, size, gx, gy = key
        return ((gx + 0.5) * size, (gy + 0.5) * size)

    def get(self, key: CellKey) -> HeightDelta | None:
        with self._lock:
            delta = self._data.get(key)
            if delta is None:
                self.misses += 1
                return None
            age = self._clock() - delta.created_at
            if age >= self.ttl:
                del self._data[key]
                self.evictions += 1
                self.misses += 1
                logger.debug("Height delta expired | cell=%s | age=%.0fs", key[3:], age)
                return None
            self.hits += 1
            return delta

    def put(self, key: CellKey, delta: HeightDelta) -> None:
        with self._lock:
            self._data[key] = delta

    def claim(self, key: CellKey) -> tuple[threading.Event, bool]:
        """Mark ``key`` as being computed.

        Returns:
            ``(event, owner)``.  The owner computes and then calls
            ``release``; other callers wait on ``event``.
        """
        with self._lock:
            event = self._pending.get(key)
            if event is not None:
                return event, False
            event = threading.Event()
            self._pending[key] = event
            return event, True

    def release(self, key: CellKey) -> None:
        with self._lock:
            event = self._pending.pop(key, None)
        if event is not None:
            event.set()

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class SwissHeightTransformer:
    """LV95/LHN95 -> WGS84 ellipsoidal transforms with delta caching.

    Args:
        service: REFRAME client used for exact transforms.
        cache: Delta cache; a private one is created when omitted.
        lv95_definition: PROJ definition used to estimate the Jacobian.
    """

    def __init__(
        self,
        service: SwissReframeClient,
        cache: HeightDeltaCache | None = None,
        *,
        lv95_definition: str | None = None,
    ) -> None:
        self.service = service
        self.cache = cache if cache is not None else HeightDeltaCache()
        self._lv95_definition = lv95_definition
        self._local = threading.local()

    def _transformer(self) -> object:
        transformer = getattr(self._local, "transformer", None)
        if transformer is None:
            from pyproj import Transformer

            from geo_loader.coordinates.systems import BUILTIN_SYSTEMS

            source = self._lv95_definition or next(s for s in BUILTIN_SYSTEMS if s.code == SWISS_LV95).proj_definition
            transformer = Transformer.from_crs(source, "+proj=longlat +datum=WGS84 +no_defs", always_xy=True)
            self._local.transformer = transformer
        return transformer

    def jacobian(self, easting: float, northing: float) -> Jacobian:
        """Degrees per metre around a point, by central differences."""
        from pyproj.exceptions import ProjError

        step = JACOBIAN_STEP_M
        transformer = self._transformer()
        try:
            east = transformer.transform(  # type: ignore[attr-defined]
                [easting + step, easting - step], [northing, northing], errcheck=True
            )
            north = transformer.transform(  # type: ignore[attr-defined]
                [easting, easting], [northing + step, northing - step], errcheck=True
            )
        except ProjError as exc:
            msg = f"Cannot estimate local transform at ({easting}, {northing}): {exc}"
            raise TransformationError(msg, leg=f"{SWISS_LV95}->{WGS84}", position=(easting, northing)) from exc
        lon_e = (east[0][0] - east[0][1]) / (2 * step)
        lat_e = (east[1][0] - east[1][1]) / (2 * step)
        lon_n = (north[0][0] - north[0][1]) / (2 * step)
        lat_n = (north[1][0] - north[1][1]) / (2 * step)
        return ((lon_e, lon_n), (lat_e, lat_n))

    def _compute(self, key: CellKey, height: float) -> HeightDelta:
        ref_e, ref_n = self.cache.cell_centre(key)
        exact = self.service.transform(ref_e, ref_n, height)
        delta = HeightDelta(
            reference=(ref_e, ref_n, height),
            reference_wgs84=(exact.lon, exact.lat, exact.ell_height),
            height_offset=exact.ell_height - height,
            jacobian=self.jacobian(ref_e, ref_n),
            created_at=self.cache.now(),
            valid_radius=self.cache.valid_radius,
        )
        self.cache.put(key, delta)
        logger.debug("Height delta computed | cell=%s | offset=%.3f", key[3:], delta.height_offset)
        return delta

    def _delta_for(self, key: CellKey, height: float) -> HeightDelta:
        delta = self.cache.get(key)
        if delta is not None:
            return delta
        event, owner = self.cache.claim(key)
        if not owner:
            event.wait(PENDING_WAIT_S)
            delta = self.cache.get(key)
            if delta is not None:
                return delta
            # The owner failed or timed out; compute independently.
            return self._compute(key, height)
        try:
            # Another caller may have finished this cell between our miss and the claim.
            delta = self.cache.get(key)
            if delta is not None:
                return delta
            return self._compute(key, height)
        finally:
            self.cache.release(key)

    def transform(
        self,
        easting: float,
        northing: float,
        height: float,
        *,
        bypass_cache: bool = False,
        allow_fallback: bool = False,
    ) -> SwissTransformResult:
        """Transform one LV95/LHN95 point to WGS84 with ellipsoidal height.

        Args:
            bypass_cache: Always call the service.
            allow_fallback: Return the labelled approximate result when
                the service fails.

        Raises:
            ServiceCallError: If the service fails and fallback is off.
            TransformationError: If the local Jacobian cannot be estimated.
        """
        if bypass_cache:
            return self.service.transform(easting, northing, height, allow_fallback=allow_fallback)

        try:
            delta = self._delta_for(self.cache.key(easting, northing), height)
            if not delta.applies_to(easting, northing):
                logger.debug(
                    "Point outside delta radius, using sub-cell | distance=%.1f | radius=%.1f",
                    delta.distance(easting, northing),
                    delta.valid_radius,
                )
                sub_key = self.cache.key(easting, northing, cell_size=self.cache.sub_cell_size)
                delta = self._delta_for(sub_key, height)
        except ServiceCallError as exc:
            if not allow_fallback or exc.code == "CANCELLED":
                raise
            logger.warning("Using approximate Swiss transform | call=%s | error=%s", exc.call, exc.message)
            return approximate_lv95_to_wgs84(easting, northing, height)

        if not delta.applies_to(easting, northing):
            return self.service.transform(easting, northing, height, allow_fallback=allow_fallback)
        return delta.apply(easting, northing, height)
