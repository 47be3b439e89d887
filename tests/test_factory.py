import pytest

from marketsync.connectors import CONNECTOR_REGISTRY, get_connector
from marketsync.connectors.factory import ConnectorFactory
from marketsync.connectors.ozon import OzonConnector
from marketsync.connectors.wildberries import WildberriesConnector
from marketsync.connectors.yandex_market import YandexMarketConnector
from marketsync.exceptions import ConfigurationError, ConnectorError, MarketplaceAuthError
from marketsync.models.account import MarketplaceType

from conftest import FakeResponse, FakeSession, FakeVault


def test_registry_covers_every_marketplace():
    assert set(CONNECTOR_REGISTRY) == set(MarketplaceType)
    assert get_connector(MarketplaceType.OZON) is OzonConnector
    assert get_connector("yandex_market") is YandexMarketConnector
    with pytest.raises(ValueError):
        get_connector("amazon")


def test_each_call_builds_an_independent_connector():
    factory = ConnectorFactory(FakeVault())
    first = factory.create(MarketplaceType.WILDBERRIES)
    second = factory.create(MarketplaceType.WILDBERRIES)
    assert isinstance(first, WildberriesConnector)
    assert first is not second
    assert first.rate_limiter is not second.rate_limiter


def factory_with_session(session, credentials):
    options = {
        MarketplaceType.WILDBERRIES: {"session_factory": lambda: session, "min_request_interval": 0},
    }
    return ConnectorFactory(FakeVault({"acc-wb": credentials}), connector_options=options)


def test_get_connected(wb_account):
    session = FakeSession().add("GET", "/api/v1/supplier/incomes", FakeResponse(200, []))
    connector = factory_with_session(session, {"api_key": "wb-key"}).get_connected(wb_account)
    assert connector.is_connected
    assert session.headers["Authorization"] == "wb-key"


def test_missing_credentials(wb_account):
    factory = factory_with_session(FakeSession(), {})
    with pytest.raises(ConfigurationError):
        factory.get_connected(wb_account)
    assert factory.check_connection(wb_account)[0] is False


def test_rejected_key_is_an_auth_error(wb_account):
    session = FakeSession().add("GET", "/api/v1/supplier/incomes", FakeResponse(401, {"title": "bad key"}))
    factory = factory_with_session(session, {"api_key": "wb-key"})

    with pytest.raises(MarketplaceAuthError):
        factory.get_connected(wb_account)
    assert session.closed
    assert factory.vault.forgotten == ["acc-wb"]

    connected, error = factory.check_connection(wb_account)
    assert connected is False
    assert "bad key" in error


def test_failed_connection_test(wb_account):
    session = FakeSession().add("GET", "/api/v1/supplier/incomes", FakeResponse(500, {"title": "down"}))
    factory = factory_with_session(session, {"api_key": "wb-key"})

    with pytest.raises(ConnectorError) as excinfo:
        factory.get_connected(wb_account)
    assert not isinstance(excinfo.value, MarketplaceAuthError)
    assert "acc-wb" in str(excinfo.value)
