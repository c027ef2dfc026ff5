"""Coordinate system definitions, registry, and range-based detection."""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from geo_loader.core.constants import METRES_PER_DEGREE, SWISS_LV03, SWISS_LV95, WEB_MERCATOR, WGS84

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)

DETECTION_SAMPLE_SIZE = 100

# (min_x, max_x, min_y, max_y) in native units.
LV95_RANGE = (2_000_000.0, 3_000_000.0, 1_000_000.0, 1_400_000.0)
LV03_RANGE = (400_000.0, 900_000.0, 50_000.0, 400_000.0)
WGS84_RANGE = (-180.0, 180.0, -90.0, 90.0)


@dataclass(frozen=True, slots=True)
class CoordinateSystem:
    """A registered coordinate reference system.

    Attributes:
        code: Authority code (``"EPSG:2056"``).
        name: Display name.
        proj_definition: PROJ string handed to pyproj.
        units: ``"degrees"`` or ``"metres"``.
        has_swiss_heights: Whether heights are LHN95 and need the Swiss
            height pipeline to become ellipsoidal.
    """

    code: str
    name: str
    proj_definition: str
    units: str = "metres"
    has_swiss_heights: bool = False

    @property
    def is_geographic(self) -> bool:
        return self.units == "degrees"


BUILTIN_SYSTEMS: tuple[CoordinateSystem, ...] = (
    CoordinateSystem(
        code=WGS84,
        name="WGS 84",
        proj_definition="+proj=longlat +datum=WGS84 +no_defs",
        units="degrees",
    ),
    CoordinateSystem(
        code=SWISS_LV95,
        name="CH1903+ / LV95",
        proj_definition=(
            "+proj=somerc +lat_0=46.9524055555556 +lon_0=7.43958333333333 +k_0=1 "
            "+x_0=2600000 +y_0=1200000 +ellps=bessel "
            "+towgs84=674.374,15.056,405.346,0,0,0,0 +units=m +no_defs"
        ),
        has_swiss_heights=True,
    ),
    CoordinateSystem(
        code=SWISS_LV03,
        name="CH1903 / LV03",
        proj_definition=(
            "+proj=somerc +lat_0=46.9524055555556 +lon_0=7.43958333333333 +k_0=1 "
            "+x_0=600000 +y_0=200000 +ellps=bessel "
            "+towgs84=674.374,15.056,405.346,0,0,0,0 +units=m +no_defs"
        ),
    ),
    CoordinateSystem(
        code=WEB_MERCATOR,
        name="WGS 84 / Pseudo-Mercator",
        proj_definition=(
            "+proj=merc +a=6378137 +b=6378137 +lat_ts=0 +lon_0=0 +x_0=0 +y_0=0 "
            "+k=1 +units=m +nadgrids=@null +wktext +no_defs"
        ),
    ),
)


class CoordinateSystemRegistry:
    """Thread-safe lookup of coordinate systems by code.

    Constructed with the built-in systems; custom systems are added with
    ``register``.
    """

    def __init__(self, systems: Iterable[CoordinateSystem] = BUILTIN_SYSTEMS) -> None:
        self._systems: dict[str, CoordinateSystem] = {}
        self._lock = threading.Lock()
        for system in systems:
            self.register(system)

    def register(self, system: CoordinateSystem) -> None:
        """Add ``system``.

        Raises:
            ValueError: If the code is already registered.
        """
        with self._lock:
            if system.code in self._systems:
                msg = f"Coordinate system already registered: {system.code}"
                raise ValueError(msg)
            self._systems[system.code] = system
        logger.debug("Registered coordinate system | code=%s", system.code)

    def get(self, code: str) -> CoordinateSystem:
        """Return the system for ``code``.

        Raises:
            KeyError: If the code is unknown.
        """
        try:
            return self._systems[code]
        except KeyError:
            available = ", ".join(sorted(self._systems))
            msg = f"Unknown coordinate system {code!r}. Available: {available}"
            raise KeyError(msg) from None

    def __contains__(self, code: object) -> bool:
        return code in self._systems

    def codes(self) -> list[str]:
        return sorted(self._systems)


def _within(positions: Sequence[Sequence[float]], bounds: tuple[float, float, float, float]) -> bool:
    min_x, max_x, min_y, max_y = bounds
    return all(min_x <= p[0] <= max_x and min_y <= p[1] <= max_y for p in positions)


def detect_coordinate_system(positions: Iterable[Sequence[float]]) -> str:
    """Guess the coordinate system of unprojected data from coordinate ranges.

    Samples up to the first 100 positions.  Order of preference is LV95,
    LV03, then WGS84; anything else (and an empty sample) defaults to
    LV95 with a logged warning.

    Returns:
        Authority code of the detected system.
    """
    sample: list[Sequence[float]] = []
    for position in positions:
        sample.append(position)
        if len(sample) >= DETECTION_SAMPLE_SIZE:
            break

    if sample:
        if _within(sample, LV95_RANGE):
            return SWISS_LV95
        if _within(sample, LV03_RANGE):
            return SWISS_LV03
        if _within(sample, WGS84_RANGE):
            return WGS84

    logger.warning(
        "Coordinate system not recognised, assuming LV95 | sampled=%d",
        len(sample),
    )
    return SWISS_LV95


# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=64)
def is_geographic(code: str) -> bool:
    """Whether ``code`` uses angular (degree) coordinates.

    Built-in systems answer from their declared units; anything else is
    asked of pyproj.  An unresolvable code is treated as geographic.
    """
    for system in BUILTIN_SYSTEMS:
        if system.code == code:
            return system.is_geographic

    from pyproj import CRS
    from pyproj.exceptions import CRSError

    try:
        return bool(CRS.from_user_input(code).is_geographic)
    except CRSError as exc:
        logger.warning("Cannot resolve coordinate system units, assuming degrees | code=%s | error=%s", code, exc)
        return True


def working_distance(code: str, degrees: float) -> float:
    """Express a distance given in degrees in the native units of ``code``.

    Projected systems are assumed to be metric; one degree is
    ``METRES_PER_DEGREE`` metres.
    """
    if is_geographic(code):
        return degrees
    return degrees * METRES_PER_DEGREE
