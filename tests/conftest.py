"""Shared pytest fixtures for the geo_loader test suite."""

from __future__ import annotations

import io
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import ezdxf
import httpx
import pytest
from ezdxf.document import Drawing

from geo_loader.coordinates.swiss_service import SwissReframeClient
from geo_loader.models.feature import Feature
from geo_loader.models.geometry import LineString, Point, Polygon

# ---------------------------------------------------------------------------
# DXF documents (built with ezdxf)
# ---------------------------------------------------------------------------


def render_dxf(doc: Drawing) -> str:
    """Serialise an ezdxf drawing to ASCII DXF text."""
    stream = io.StringIO()
    doc.write(stream)
    return stream.getvalue()


def replace_group_value(text: str, handle: str, code: int, value: str) -> str:
    """Overwrite the first ``code`` value of the entity with ``handle``."""
    start = text.index(f"  5\n{handle}\n")
    marker = f"\n{code:>3}\n"
    value_start = text.index(marker, start) + len(marker)
    value_end = text.index("\n", value_start)
    return text[:value_start] + value + text[value_end:]


@pytest.fixture()
def dxf_doc() -> Drawing:
    """Empty R2010 drawing with ``$INSUNITS`` set to metres."""
    return ezdxf.new("R2010", units=6)


# ---------------------------------------------------------------------------
# Shapefile sets (written with fiona)
# ---------------------------------------------------------------------------

ShapeRecord = tuple[dict[str, Any] | None, dict[str, Any]]


def write_shapefile(
    directory: Path,
    name: str,
    geometry_type: str,
    records: Sequence[ShapeRecord],
    *,
    properties: Sequence[tuple[str, str]] = (("NAME", "str:10"),),
    crs: str | None = None,
    encoding: str | None = None,
    skip: Sequence[str] = (),
) -> Path:
    """Write ``name.shp`` plus companions; ``skip`` removes companions by extension."""
    import fiona

    path = directory / f"{name}.shp"
    schema = {"geometry": geometry_type, "properties": dict(properties)}
    options: dict[str, Any] = {"driver": "ESRI Shapefile", "schema": schema}
    if crs is not None:
        options["crs"] = crs
    if encoding is not None:
        options["encoding"] = encoding
    with fiona.open(str(path), "w", **options) as sink:
        for geometry, values in records:
            sink.write({"geometry": geometry, "properties": values})
    for ext in skip:
        path.with_suffix(ext).unlink()
    return path


@pytest.fixture()
def shapefile_writer(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a shapefile set into ``tmp_path``."""

    def _write(name: str, geometry_type: str, records: Sequence[ShapeRecord], **kwargs: Any) -> Path:
        return write_shapefile(tmp_path, name, geometry_type, records, **kwargs)

    return _write


# ---------------------------------------------------------------------------
# Geometry fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def unit_square() -> Polygon:
    """Counter-clockwise 1x1 square at the origin."""
    return Polygon((((0.0, 0.0), (1.0, 0.0), (1.0, 1.0), (0.0, 1.0), (0.0, 0.0)),))


@pytest.fixture()
def bowtie() -> Polygon:
    """Self-intersecting figure-eight ring."""
    return Polygon((((0.0, 0.0), (1.0, 1.0), (1.0, 0.0), (0.0, 1.0), (0.0, 0.0)),))


@pytest.fixture()
def make_features() -> Callable[..., list[Feature]]:
    """Factory for ``n`` point features along a line, ids ``"0".."n-1"``."""

    def _make(count: int, *, origin: tuple[float, float] = (8.0, 47.0), step: float = 0.001) -> list[Feature]:
        return [
            Feature(
                geometry=Point((origin[0] + i * step, origin[1] + i * step)),
                properties={"layer": "test", "index": i},
                id=str(i),
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture()
def mixed_features(unit_square: Polygon) -> list[Feature]:
    """One point, one line and one polygon feature in WGS84-like degrees."""
    return [
        Feature(geometry=Point((8.0, 47.0)), properties={"layer": "a"}, id="p"),
        Feature(geometry=LineString(((8.0, 47.0), (8.01, 47.01))), properties={"layer": "a"}, id="l"),
        Feature(geometry=unit_square, properties={"layer": "b"}, id="s"),
    ]


# ---------------------------------------------------------------------------
# REFRAME service fake (httpx.MockTransport)
# ---------------------------------------------------------------------------

REFRAME_TEST_URL = "https://reframe.test/reframe"
BESSEL_OFFSET_M = 49.55
WGS84_OFFSET_M = 0.3


class FakeReframe:
    """In-process stand-in for the REFRAME endpoints.

    ``lv95towgs84`` answers with pyproj's LV95 -> WGS84 result so cached
    and exact transforms can be compared.  ``failures`` maps a call name
    to the number of leading requests answered with ``status``.
    """

    def __init__(self, failures: dict[str, int] | None = None, status: int = 503) -> None:
        from pyproj import Transformer

        from geo_loader.coordinates.systems import BUILTIN_SYSTEMS
        from geo_loader.core.constants import SWISS_LV95

        lv95 = next(s for s in BUILTIN_SYSTEMS if s.code == SWISS_LV95)
        self._transformer = Transformer.from_crs(
            lv95.proj_definition, "+proj=longlat +datum=WGS84 +no_defs", always_xy=True
        )
        self.failures = dict(failures or {})
        self.status = status
        self.calls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        call = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(call)
        if self.failures.get(call, 0) > 0:
            self.failures[call] -= 1
            return httpx.Response(self.status, text="unavailable")
        params = request.url.params
        easting = float(params["easting"])
        northing = float(params["northing"])
        altitude = float(params["altitude"])
        if call == "lhn95tobessel":
            body = {"easting": str(easting), "northing": str(northing), "altitude": str(altitude + BESSEL_OFFSET_M)}
        elif call == "lv95towgs84":
            lon, lat = self._transformer.transform(easting, northing)
            body = {"easting": repr(lon), "northing": repr(lat), "altitude": str(altitude + WGS84_OFFSET_M)}
        else:
            return httpx.Response(404, text="unknown endpoint")
        return httpx.Response(200, json=body)


@pytest.fixture()
def reframe() -> FakeReframe:
    return FakeReframe()


@pytest.fixture()
def reframe_client(reframe: FakeReframe) -> Iterator[SwissReframeClient]:
    """REFRAME client wired to ``reframe`` with retries but no backoff delay."""
    http = httpx.Client(transport=httpx.MockTransport(reframe))
    client = SwissReframeClient(REFRAME_TEST_URL, backoff=0, client=http)
    yield client
    http.close()
