from datetime import timedelta

from marketsync.engine.persistence import RecordWriter, product_doc_id, record_key, sale_doc_id
from marketsync.models.records import Order, Product, RegionalBucket, Sale, Stock

from conftest import NOW


def sale(**overrides):
    data = dict(
        id="rrd-1", product_id="p1", price=50.0, total_amount=100.0, quantity=2,
        date=NOW, order_id="o1",
    )
    data.update(overrides)
    return Sale(**data)


def test_record_key_is_stable_and_distinguishes_parts():
    assert record_key("a", "b") == record_key("a", "b")
    assert record_key("a", "b") != record_key("ab", "")
    assert record_key("a", None) == record_key("a", "")


def test_sale_key_ignores_upstream_row_id():
    assert sale_doc_id("acc", sale()) == sale_doc_id("acc", sale(id="rrd-2"))
    assert sale_doc_id("acc", sale()) != sale_doc_id("acc", sale(date=NOW + timedelta(seconds=1)))
    assert sale_doc_id("acc", sale()) != sale_doc_id("other", sale())


def test_same_sale_ingested_twice_is_stored_once(store):
    writer = RecordWriter(store)

    first = writer.write_sales("acc", [sale()])
    second = writer.write_sales("acc", [sale(id="rrd-2")])

    assert first == {"created": 1, "duplicates": 0}
    assert second == {"created": 0, "duplicates": 1}
    assert len(store.sales) == 1
    counters = store.products[product_doc_id("acc", "p1")]
    assert counters["total_sales"] == 2
    assert counters["total_revenue"] == 100.0


def test_products_stock_and_orders_upsert(store):
    writer = RecordWriter(store)

    writer.write_products("acc", [Product(id="p1", name="Old")])
    writer.write_products("acc", [Product(id="p1", name="New")])
    writer.write_stock("acc", [Stock(product_id="p1", warehouse_id="w1", quantity=1)])
    writer.write_stock("acc", [Stock(product_id="p1", warehouse_id="w1", quantity=3)])
    writer.write_stock("acc", [Stock(product_id="p1", warehouse_id="w2", quantity=7)])
    writer.write_orders("acc", [Order(id="o1", order_number="100", date=NOW)])

    assert len(store.products) == 1
    product = store.products[product_doc_id("acc", "p1")]
    assert product["name"] == "New"
    assert product["product_id"] == "p1"
    assert sorted(row["quantity"] for row in store.stock.values()) == [3, 7]
    assert next(iter(store.orders.values()))["order_id"] == "o1"


def test_regional_buckets_keyed_by_period(store):
    writer = RecordWriter(store)
    buckets = [RegionalBucket(region="Moscow", orders_count=1, total_amount=10.0)]

    writer.write_regional("acc", buckets, NOW - timedelta(days=7), NOW)
    writer.write_regional("acc", buckets, NOW - timedelta(days=7), NOW)
    writer.write_regional("acc", buckets, NOW - timedelta(days=1), NOW)

    assert len(store.regional) == 2
    row = next(iter(store.regional.values()))
    assert row["account_id"] == "acc"
    assert row["period_end"] == NOW
