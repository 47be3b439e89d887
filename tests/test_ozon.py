from datetime import datetime, timezone

import pytest

from marketsync.connectors.ozon import OzonConnector
from marketsync.exceptions import ConfigurationError, MarketplaceAuthError
from marketsync.models.records import OrdersParams, SalesParams

from conftest import FakeResponse, load_fixture, make_connector

START = datetime(2024, 5, 1, tzinfo=timezone.utc)
END = datetime(2024, 5, 7, tzinfo=timezone.utc)


def posting(number, status="awaiting_packaging", region="Москва"):
    return {
        "posting_number": number,
        "order_number": number.rsplit("-", 1)[0],
        "status": status,
        "in_process_at": "2024-05-02T10:00:00Z",
        "analytics_data": {"region": region},
        "products": [{"sku": 900100, "name": "Кружка", "price": "499.00", "quantity": 2}],
    }


@pytest.fixture
def connector(session):
    session.add("POST", "/v1/warehouse/list", FakeResponse(200, {"result": []}))
    connector = make_connector(OzonConnector, session)
    assert connector.connect({"api_key": "12345", "api_secret": "ozon-secret"})
    return connector


def test_requires_client_id_and_api_key(session):
    with pytest.raises(ConfigurationError):
        make_connector(OzonConnector, session).connect({"api_key": "12345"})


def test_auth_headers(connector, session):
    assert session.headers["Client-Id"] == "12345"
    assert session.headers["Api-Key"] == "ozon-secret"


def test_sales_from_finance_transactions(connector, session):
    session.add("POST", "/v3/finance/transaction/list", FakeResponse(200, load_fixture("ozon_transactions.json")))

    sales = connector.get_sales(SalesParams(start_date=START, end_date=END))

    assert [(s.id, s.product_id, s.price) for s in sales] == [
        ("7001-900100", "900100", 1500.0),
        ("7001-900200", "900200", 1500.0),
    ]
    assert all(s.order_id == "12345-0001-1" for s in sales)
    assert sales[0].date == datetime(2024, 5, 2, 14, 30, tzinfo=timezone.utc)
    request = session.calls_to("/v3/finance/transaction/list")[0]["json"]
    assert request["filter"]["operation_type"] == ["OperationAgentDeliveredToCustomer"]
    assert request["filter"]["date"]["from"] == "2024-05-01T00:00:00.000Z"


def test_long_sales_range_is_split_into_monthly_windows(connector, session):
    session.add("POST", "/v3/finance/transaction/list", FakeResponse(200, {"result": {"operations": []}}))
    session.add("POST", "/v3/posting/fbs/list", FakeResponse(200, {"result": {"postings": [], "has_next": False}}))

    connector.get_sales(SalesParams(start_date=START, end_date=datetime(2024, 7, 1, tzinfo=timezone.utc)))

    assert len(session.calls_to("/v3/finance/transaction/list")) == 3


def test_transaction_pages_are_followed(connector, session):
    fixture = load_fixture("ozon_transactions.json")
    first = {"result": dict(fixture["result"], page_count=2)}
    session.add("POST", "/v3/finance/transaction/list", FakeResponse(200, first), FakeResponse(200, fixture))

    sales = connector.get_sales(SalesParams(start_date=START, end_date=END))

    pages = [c["json"]["page"] for c in session.calls_to("/v3/finance/transaction/list")]
    assert pages == [1, 2]
    assert len(sales) == 4


def test_products_listed_then_detailed(connector, session):
    session.add("POST", "/v3/product/list", FakeResponse(200, {
        "result": {"items": [{"product_id": 1}, {"product_id": 2}], "last_id": ""},
    }))
    session.add("POST", "/v3/product/info/list", FakeResponse(200, {"items": [
        {"id": 1, "name": "Кружка", "offer_id": "MUG", "barcodes": ["460"], "price": "499.00",
         "stocks": {"stocks": [{"present": 3}, {"present": 4}]}},
        {"id": 2, "offer_id": "SPOON"},
    ]}))

    products = connector.get_products()

    assert session.calls_to("/v3/product/info/list")[0]["json"] == {"product_id": [1, 2]}
    assert [(p.id, p.name, p.sku) for p in products] == [("1", "Кружка", "MUG"), ("2", "SPOON", "SPOON")]
    assert products[0].stock == 7
    assert products[0].barcode == "460"


def test_fbs_postings_paginate_by_offset(connector, session):
    session.add(
        "POST", "/v3/posting/fbs/list",
        FakeResponse(200, {"result": {"postings": [posting("100-1-1")], "has_next": True}}),
        FakeResponse(200, {"result": {"postings": [posting("100-2-1")], "has_next": False}}),
    )

    orders = connector.get_orders(OrdersParams(start_date=START, end_date=END))

    assert [o.id for o in orders] == ["100-1-1", "100-2-1"]
    assert orders[0].total_amount == 998.0
    assert orders[0].region == "Москва"
    offsets = [c["json"]["offset"] for c in session.calls_to("/v3/posting/fbs/list")]
    assert offsets == [0, 1]


def test_orders_fall_back_to_fbo(connector, session):
    session.add("POST", "/v3/posting/fbs/list", FakeResponse(500, {"message": "unavailable"}))
    session.add("POST", "/v2/posting/fbo/list", FakeResponse(200, {"result": [posting("200-1-1", "delivered")]}))

    [order] = connector.get_orders(OrdersParams(start_date=START, end_date=END))

    assert order.id == "200-1-1"
    assert order.status == "delivered"


def test_stock_falls_back_then_degrades(connector, session):
    session.add("POST", "/v4/product/info/stocks", FakeResponse(403, {"message": "no scope"}))
    session.add("POST", "/v3/product/info/stocks", FakeResponse(403, {"message": "no scope"}))

    assert connector.get_stock() == []
    assert len(session.calls_to("/v3/product/info/stocks")) == 1


def test_stock_rows_per_warehouse_type(connector, session):
    session.add("POST", "/v4/product/info/stocks", FakeResponse(200, {
        "cursor": "",
        "items": [{"product_id": 1, "offer_id": "MUG", "stocks": [
            {"type": "fbo", "present": 10, "reserved": 2},
            {"type": "fbs", "present": 1, "reserved": 0},
        ]}],
    }))

    stock = connector.get_stock()

    assert [(s.warehouse_id, s.available_quantity) for s in stock] == [("fbo", 8), ("fbs", 1)]


def test_ad_statistics_without_scope_is_empty(connector, session):
    session.add("POST", "/v1/performance/statistics", FakeResponse(403, {"message": "no scope"}))
    assert connector.get_ad_statistics(["5"]) == []


def test_rejected_key_is_raised_from_connect(session):
    session.add("POST", "/v1/warehouse/list", FakeResponse(403, {"message": "invalid Api-Key"}))
    with pytest.raises(MarketplaceAuthError):
        make_connector(OzonConnector, session).connect({"api_key": "12345", "api_secret": "wrong"})
