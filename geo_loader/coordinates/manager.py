"""Coordinate System Manager: reprojection through a WGS84 pivot.

Every transform runs ``source -> WGS84 -> target`` using pyproj
``Transformer`` objects built from the registered PROJ definitions.
A failing leg raises ``TransformationError`` naming the leg and the
original position; no partially transformed position is ever returned.

Heights (the third component) pass through unchanged.  Converting
LHN95 heights to ellipsoidal heights is the job of
``coordinates.heights.apply_swiss_heights``.

pyproj ``Transformer`` objects are not safe to share between threads,
so the transformer cache is per thread.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from geo_loader.coordinates.systems import CoordinateSystemRegistry
from geo_loader.core.constants import WGS84
from geo_loader.core.exceptions import TransformationError
from geo_loader.models.diagnostics import ParseWarning
from geo_loader.models.geometry import InvalidGeometryError, map_positions

if TYPE_CHECKING:
    from collections.abc import Sequence

    from geo_loader.coordinates.delta_cache import HeightDeltaCache, SwissHeightTransformer
    from geo_loader.coordinates.swiss_service import SwissReframeClient
    from geo_loader.models.feature import Feature
    from geo_loader.models.geometry import Position

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4


@dataclass(frozen=True, slots=True)
class TransformOutcome:
    """Result of reprojecting one feature.

    Attributes:
        index: Position of the feature in the input sequence.
        feature: The reprojected feature, or ``None`` on failure.
        error: The failure, or ``None`` on success.
    """

    index: int
    feature: Feature | None
    error: TransformationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def warning(self) -> ParseWarning | None:
        if self.error is None:
            return None
        return ParseWarning(
            message=self.error.message,
            code=self.error.code,
            entity_type="feature",
            handle=str(self.index),
        )


class CoordinateSystemManager:
    """Reprojects positions, features and feature batches.

    Args:
        registry: Coordinate system registry (built-ins when omitted).
        cache: Height delta cache for the Swiss height pipeline.
        service: Swiss REFRAME client for the Swiss height pipeline.
        workers: Thread count for ``transform_features``.
    """

    def __init__(
        self,
        registry: CoordinateSystemRegistry | None = None,
        cache: HeightDeltaCache | None = None,
        service: SwissReframeClient | None = None,
        *,
        workers: int = DEFAULT_WORKERS,
    ) -> None:
        self.registry = registry or CoordinateSystemRegistry()
        self._cache = cache
        self._service = service
        self._workers = workers
        self._local = threading.local()
        self._swiss_heights: SwissHeightTransformer | None = None
        self._swiss_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Swiss heights
    # ------------------------------------------------------------------

    @property
    def swiss_heights(self) -> SwissHeightTransformer | None:
        """Height transformer bound to this manager's service and cache.

        ``None`` when no service was supplied.
        """
        if self._service is None:
            return None
        with self._swiss_lock:
            if self._swiss_heights is None:
                from geo_loader.coordinates.delta_cache import HeightDeltaCache, SwissHeightTransformer

                self._swiss_heights = SwissHeightTransformer(
                    self._service,
                    cache=self._cache if self._cache is not None else HeightDeltaCache(),
                )
            return self._swiss_heights

    # ------------------------------------------------------------------
    # Transformers
    # ------------------------------------------------------------------

    def _transformer(self, from_code: str, to_code: str) -> Any:
        cache: dict[tuple[str, str], Any] | None = getattr(self._local, "transformers", None)
        if cache is None:
            cache = {}
            self._local.transformers = cache
        key = (from_code, to_code)
        transformer = cache.get(key)
        if transformer is None:
            from pyproj import Transformer

            source = self.registry.get(from_code)
            target = self.registry.get(to_code)
            transformer = Transformer.from_crs(source.proj_definition, target.proj_definition, always_xy=True)
            cache[key] = transformer
            logger.debug("Built transformer | leg=%s->%s", from_code, to_code)
        return transformer

    def _leg(self, position: Position, original: Position, from_code: str, to_code: str) -> Position:
        from pyproj.exceptions import ProjError

        leg = f"{from_code}->{to_code}"
        try:
            x, y = self._transformer(from_code, to_code).transform(position[0], position[1], errcheck=True)
        except (ProjError, KeyError) as exc:
            msg = f"Transform leg {leg} failed for {original!r}: {exc}"
            raise TransformationError(msg, leg=leg, position=original) from exc
        if not (math.isfinite(x) and math.isfinite(y)):
            msg = f"Transform leg {leg} produced a non-finite result for {original!r}"
            raise TransformationError(msg, leg=leg, position=original)
        return (x, y, *position[2:])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def transform(self, position: Position, from_code: str, to_code: str) -> Position:
        """Transform one position.

        Returns:
            The position in ``to_code``; identical input when the codes match.

        Raises:
            TransformationError: If any leg fails.
        """
        if from_code == to_code:
            return position
        pivot = position if from_code == WGS84 else self._leg(position, position, from_code, WGS84)
        if to_code == WGS84:
            return pivot
        return self._leg(pivot, position, WGS84, to_code)

    def transform_feature(self, feature: Feature, from_code: str, to_code: str, *, index: int = 0) -> TransformOutcome:
        """Reproject one feature's geometry.

        A failure yields an outcome with ``feature=None`` and the error;
        it never raises.
        """
        if from_code == to_code:
            return TransformOutcome(index=index, feature=feature)
        try:
            geometry = map_positions(feature.geometry, lambda p: self.transform(p, from_code, to_code))
        except TransformationError as exc:
            return TransformOutcome(index=index, feature=None, error=exc)
        except InvalidGeometryError as exc:
            # A projection can collapse a ring onto itself at the poles.
            error = TransformationError(exc.message, leg=f"{from_code}->{to_code}")
            return TransformOutcome(index=index, feature=None, error=error)
        return TransformOutcome(index=index, feature=feature.with_geometry(geometry))

    def transform_features(
        self,
        features: Sequence[Feature],
        from_code: str,
        to_code: str,
        *,
        cancel_event: threading.Event | None = None,
        start: int = 0,
    ) -> list[TransformOutcome]:
        """Reproject many features concurrently.

        Outcomes are returned in input order, indexed from ``start``.  When
        ``cancel_event`` is set, features not yet started are left out of
        the result.
        """
        if from_code == to_code:
            return [TransformOutcome(index=i, feature=f) for i, f in enumerate(features, start)]

        # Resolve both codes up front so an unknown code fails once, not per feature.
        self.registry.get(from_code)
        self.registry.get(to_code)

        def _run(index: int, feature: Feature) -> TransformOutcome | None:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.transform_feature(feature, from_code, to_code, index=index)

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="geo-transform") as pool:
            futures = [pool.submit(_run, i, f) for i, f in enumerate(features, start)]
            outcomes = [o for o in (fut.result() for fut in futures) if o is not None]

        failed = sum(1 for o in outcomes if not o.ok)
        logger.info(
            "Transformed features | leg=%s->%s | total=%d | done=%d | failed=%d",
            from_code,
            to_code,
            len(features),
            len(outcomes),
            failed,
        )
        return outcomes
