from datetime import datetime, timezone

import pytest
import requests

from marketsync.connectors.base import BaseConnector, ConnectorCapability
from marketsync.exceptions import (
    ConfigurationError, ConnectorError, MarketplaceAPIError, MarketplaceAuthError,
    RateLimitExceededError, UnsupportedOperationError
)
from marketsync.models.account import MarketplaceType
from marketsync.models.records import SalesParams

from conftest import FakeResponse, FakeSession, RecordingSleep, make_connector


class EchoConnector(BaseConnector):
    marketplace = MarketplaceType.WILDBERRIES
    default_base_url = "https://api.example.test"
    required_credentials = ("api_key",)
    retry_base_interval = 2.0

    def get_capabilities(self):
        return ConnectorCapability(can_read_sales=True, can_read_stock=True)

    def _auth_headers(self):
        return {"Authorization": self.credentials["api_key"]}

    def test_connection(self):
        return True

    def _get_sales(self, params):
        return []

    def _get_products(self, params):
        return []

    def _get_stock(self, params):
        return self._with_fallback("stock", primary=lambda: self._request("GET", "/stock", "stock"), optional=True)

    def _get_orders(self, params):
        return []


@pytest.fixture
def connector(session):
    connector = make_connector(EchoConnector, session)
    connector.connect({"api_key": "secret"})
    return connector


def test_connect_requires_credentials(session):
    connector = make_connector(EchoConnector, session)
    with pytest.raises(ConfigurationError):
        connector.connect({})
    assert not connector.is_connected


def test_connect_sets_auth_header_and_disconnect_is_idempotent(connector, session):
    assert session.headers["Authorization"] == "secret"
    connector.disconnect()
    connector.disconnect()
    assert session.closed
    assert not connector.is_connected


def test_request_before_connect_fails(session):
    with pytest.raises(ConnectorError):
        make_connector(EchoConnector, session)._request("GET", "/x", "x")


def test_throttled_request_backs_off_linearly(session):
    sleep = RecordingSleep()
    connector = make_connector(EchoConnector, session, sleep=sleep)
    connector.connect({"api_key": "secret"})
    session.add("GET", "/data", FakeResponse(429), FakeResponse(429), FakeResponse(200, {"ok": True}))

    assert connector._request("GET", "/data", "data") == {"ok": True}
    assert sleep.calls == [2.0, 4.0]


def test_throttling_gives_up_after_max_retries(session):
    sleep = RecordingSleep()
    connector = make_connector(EchoConnector, session, sleep=sleep, max_rate_limit_retries=2)
    connector.connect({"api_key": "secret"})
    session.add("GET", "/data", FakeResponse(429, {"message": "slow down"}))

    with pytest.raises(RateLimitExceededError) as info:
        connector._request("GET", "/data", "data")

    assert info.value.upstream_message == "slow down"
    assert info.value.status_code == 429
    assert len(session.calls_to("/data")) == 3
    assert sleep.calls == [2.0, 4.0]


@pytest.mark.parametrize("status, error", [
    (401, MarketplaceAuthError),
    (403, MarketplaceAuthError),
    (500, MarketplaceAPIError),
])
def test_error_statuses(connector, session, status, error):
    session.add("GET", "/data", FakeResponse(status, {"errorText": "nope"}))
    with pytest.raises(error) as info:
        connector._request("GET", "/data", "data")
    assert info.value.upstream_message == "nope"
    assert "data" in str(info.value)


def test_empty_and_malformed_bodies(connector, session):
    session.add("GET", "/empty", FakeResponse(204))
    session.add("GET", "/junk", FakeResponse(200, text="<html>"))

    assert connector._request("GET", "/empty", "empty") == {}
    with pytest.raises(MarketplaceAPIError):
        connector._request("GET", "/junk", "junk")


def test_network_errors_become_api_errors(connector, session, monkeypatch):
    def explode(*args, **kwargs):
        raise requests.exceptions.ConnectionError("connection reset")

    monkeypatch.setattr(session, "request", explode)
    with pytest.raises(MarketplaceAPIError):
        connector._request("GET", "/data", "data")


def test_optional_data_degrades_on_missing_scope(connector, session):
    session.add("GET", "/stock", FakeResponse(401, {"message": "token scope"}))
    assert connector.get_stock() == []


def test_fallback_tries_legacy_after_failure_or_empty(connector):
    def failing():
        raise MarketplaceAPIError("HTTP 500")

    assert connector._with_fallback("x", failing, lambda: ["legacy"]) == ["legacy"]
    assert connector._with_fallback("x", lambda: [], lambda: ["legacy"]) == ["legacy"]
    assert connector._with_fallback("x", lambda: ["primary"], lambda: ["legacy"]) == ["primary"]
    with pytest.raises(MarketplaceAPIError):
        connector._with_fallback("x", failing)


def test_windowed_fetch_records_gaps_and_keeps_other_windows(connector):
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    end = datetime(2024, 5, 10, tzinfo=timezone.utc)

    def fetch(window_start, window_end):
        if window_start.day == 4:
            raise MarketplaceAPIError("HTTP 500")
        return [window_start.day]

    assert connector._fetch_windowed(start, end, 3, fetch, "sales") == [1, 7]
    assert len(connector.last_fetch_gaps) == 1
    assert connector.last_fetch_gaps[0]["start"] == "2024-05-04T00:00:00+00:00"


def test_windowed_fetch_raises_when_every_window_fails(connector):
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    end = datetime(2024, 5, 7, tzinfo=timezone.utc)

    def fetch(window_start, window_end):
        raise MarketplaceAPIError("HTTP 500")

    with pytest.raises(MarketplaceAPIError):
        connector._fetch_windowed(start, end, 3, fetch, "sales")


def test_windowed_fetch_aborts_on_auth_error(connector):
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    end = datetime(2024, 5, 7, tzinfo=timezone.utc)
    calls = []

    def fetch(window_start, window_end):
        calls.append(window_start)
        raise MarketplaceAuthError("HTTP 401")

    with pytest.raises(MarketplaceAuthError):
        connector._fetch_windowed(start, end, 3, fetch, "sales")
    assert len(calls) == 1


def test_unsupported_operations(connector):
    with pytest.raises(UnsupportedOperationError):
        connector.get_products()
    with pytest.raises(UnsupportedOperationError):
        connector.get_ad_campaigns()
    assert connector.get_sales(SalesParams()) == []
