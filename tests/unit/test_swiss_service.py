"""Tests for the REFRAME service client.

Uses ``httpx.MockTransport`` with an in-process fake of both endpoints.

Covers:
- Two-call LV95/LHN95 -> WGS84 transform
- Per-call retries on 5xx, no retry on 4xx
- Failure names the failing call
- Labelled approximate fallback (opt-in only)
- Cancellation stops further requests
- Batch transform keeps going past per-point failures
"""

from __future__ import annotations

import threading

import httpx
import pytest

from geo_loader.coordinates.swiss_service import SwissReframeClient, approximate_lv95_to_wgs84
from geo_loader.core.config import LoaderConfig
from geo_loader.core.exceptions import ServiceCallError
from tests.conftest import REFRAME_TEST_URL, FakeReframe


def _client(fake: FakeReframe, **kwargs: object) -> SwissReframeClient:
    http = httpx.Client(transport=httpx.MockTransport(fake))
    return SwissReframeClient(REFRAME_TEST_URL, backoff=0, client=http, **kwargs)  # type: ignore[arg-type]


class TestExactTransform:
    """Both service calls in sequence."""

    def test_two_calls_in_order(self, reframe: FakeReframe, reframe_client: SwissReframeClient) -> None:
        result = reframe_client.transform(2_600_000.0, 1_200_000.0, 500.0)
        assert reframe.calls == ["lhn95tobessel", "lv95towgs84"]
        assert result.method == "service"
        assert result.lon == pytest.approx(7.43863, abs=1e-3)
        assert result.lat == pytest.approx(46.95108, abs=1e-3)
        assert result.ell_height == pytest.approx(500.0 + 49.55 + 0.3)
        assert reframe_client.request_count == 2

    def test_query_parameters(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"altitude": "10.0"})

        client = SwissReframeClient(
            REFRAME_TEST_URL, backoff=0, client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        assert client.lhn95_to_bessel(2_600_000.5, 1_200_000.25, 400.0) == 10.0
        params = seen[0].url.params
        assert seen[0].url.path == "/reframe/lhn95tobessel"
        assert params["easting"] == "2600000.5"
        assert params["northing"] == "1200000.25"
        assert params["format"] == "json"

    def test_non_numeric_field_rejected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"altitude": "n/a"})

        client = SwissReframeClient(
            REFRAME_TEST_URL, backoff=0, client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        with pytest.raises(ServiceCallError, match="not numeric"):
            client.lhn95_to_bessel(2_600_000.0, 1_200_000.0, 400.0)


class TestRetries:
    """Each call is retried independently."""

    def test_transient_5xx_recovers(self) -> None:
        fake = FakeReframe(failures={"lv95towgs84": 2})
        client = _client(fake, max_retries=2)
        result = client.transform(2_600_000.0, 1_200_000.0, 500.0)
        assert result.method == "service"
        assert fake.calls == ["lhn95tobessel", "lv95towgs84", "lv95towgs84", "lv95towgs84"]

    def test_exhausted_retries_name_the_call(self) -> None:
        fake = FakeReframe(failures={"lhn95tobessel": 5})
        client = _client(fake, max_retries=1)
        with pytest.raises(ServiceCallError) as excinfo:
            client.transform(2_600_000.0, 1_200_000.0, 500.0)
        err = excinfo.value
        assert err.call == "lhn95tobessel"
        assert err.leg == "lhn95tobessel"
        assert err.status_code == 503
        assert err.retryable is True
        assert fake.calls == ["lhn95tobessel", "lhn95tobessel"]

    def test_4xx_not_retried(self) -> None:
        fake = FakeReframe(failures={"lhn95tobessel": 5}, status=400)
        client = _client(fake, max_retries=3)
        with pytest.raises(ServiceCallError) as excinfo:
            client.transform(2_600_000.0, 1_200_000.0, 500.0)
        assert excinfo.value.status_code == 400
        assert excinfo.value.retryable is False
        assert fake.calls == ["lhn95tobessel"]

    def test_transport_error_retried(self) -> None:
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"altitude": "1.0"})

        client = SwissReframeClient(
            REFRAME_TEST_URL, backoff=0, client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        assert client.lhn95_to_bessel(2_600_000.0, 1_200_000.0, 0.0) == 1.0
        assert attempts["n"] == 2

    @pytest.mark.parametrize("max_retries", [0, 2])
    def test_persistent_transport_error_raises_last_error(self, max_retries: int) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = SwissReframeClient(
            REFRAME_TEST_URL,
            max_retries=max_retries,
            backoff=0,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(ServiceCallError) as excinfo:
            client.lhn95_to_bessel(2_600_000.0, 1_200_000.0, 0.0)
        assert "transport error" in excinfo.value.message
        assert excinfo.value.retryable is True
        assert client.request_count == max_retries + 1


class TestFallback:
    """The approximate result is opt-in and labelled."""

    def test_fallback_disabled_raises(self) -> None:
        client = _client(FakeReframe(failures={"lv95towgs84": 9}), max_retries=0)
        with pytest.raises(ServiceCallError):
            client.transform(2_600_000.0, 1_200_000.0, 500.0)

    def test_fallback_labelled_approximate(self) -> None:
        client = _client(FakeReframe(failures={"lv95towgs84": 9}), max_retries=0)
        result = client.transform(2_600_000.0, 1_200_000.0, 500.0, allow_fallback=True)
        assert result.method == "approximate"
        assert result == approximate_lv95_to_wgs84(2_600_000.0, 1_200_000.0, 500.0)

    def test_approximate_formula(self) -> None:
        result = approximate_lv95_to_wgs84(2_678_000.0, 1_311_000.0, 100.0)
        assert result.lon == pytest.approx(9.23)
        assert result.lat == pytest.approx(47.82)
        assert result.ell_height == pytest.approx(149.5)


class TestCancellation:
    """No request is issued once the cancel event is set."""

    def test_cancelled_before_request(self, reframe: FakeReframe) -> None:
        cancel = threading.Event()
        cancel.set()
        client = _client(reframe, cancel_event=cancel)
        with pytest.raises(ServiceCallError) as excinfo:
            client.transform(2_600_000.0, 1_200_000.0, 500.0, allow_fallback=True)
        assert excinfo.value.code == "CANCELLED"
        assert reframe.calls == []

    def test_batch_stops_on_cancel(self, reframe: FakeReframe) -> None:
        cancel = threading.Event()
        points = [(2_600_000.0 + i, 1_200_000.0, 500.0) for i in range(5)]

        def cancelling(request: httpx.Request) -> httpx.Response:
            response = reframe(request)
            if len(reframe.calls) == 4:
                cancel.set()
            return response

        client = SwissReframeClient(
            REFRAME_TEST_URL,
            backoff=0,
            client=httpx.Client(transport=httpx.MockTransport(cancelling)),
            cancel_event=cancel,
        )
        results = client.transform_batch(points)
        assert [r is not None for r in results] == [True, True, False, False, False]


class TestBatch:
    """Batch transform over many points."""

    def test_failures_leave_none(self) -> None:
        fake = FakeReframe(failures={"lhn95tobessel": 1})
        client = _client(fake, max_retries=0)
        results = client.transform_batch([(2_600_000.0, 1_200_000.0, 1.0), (2_600_100.0, 1_200_000.0, 1.0)])
        assert results[0] is None
        assert results[1] is not None

    def test_from_config(self) -> None:
        config = LoaderConfig(swiss_reframe_base_url="https://example.test/", swiss_reframe_max_retries=0)
        with SwissReframeClient.from_config(config) as client:
            assert client.request_count == 0
