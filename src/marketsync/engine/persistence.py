"""
Idempotent persistence of normalized records.

Every record is written under a document id derived from its natural key,
so a retried or overlapping job overwrites instead of duplicating. Sales are
create-once: only the first ingestion of a sale bumps the product's
sales and revenue counters.
"""

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, List

from ..models.records import Sale, Product, Stock, Order, RegionalBucket

logger = logging.getLogger(__name__)


def record_key(*parts: Any) -> str:
    """Stable document id for a composite natural key."""
    raw = "|".join("" if part is None else str(part) for part in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def sale_doc_id(account_id: str, sale: Sale) -> str:
    return record_key(account_id, "sale", *sale.natural_key())


def product_doc_id(account_id: str, product_id: str) -> str:
    return record_key(account_id, "product", product_id)


class RecordWriter:
    """Writes normalized records for one account through the storage collaborator."""

    def __init__(self, storage):
        self.storage = storage

    def write_sales(self, account_id: str, sales: List[Sale]) -> Dict[str, int]:
        created = 0
        for sale in sales:
            data = sale.model_dump(mode="python")
            data["account_id"] = account_id
            if self.storage.create_sale_if_absent(sale_doc_id(account_id, sale), data):
                created += 1
                self.storage.increment_product_counters(
                    product_doc_id(account_id, sale.product_id),
                    account_id,
                    sale.quantity,
                    sale.total_amount,
                )
        duplicates = len(sales) - created
        if duplicates:
            logger.info(f"Account {account_id}: skipped {duplicates} already stored sales")
        return {"created": created, "duplicates": duplicates}

    def write_products(self, account_id: str, products: List[Product]) -> int:
        for product in products:
            data = product.model_dump(mode="python")
            data["account_id"] = account_id
            data["product_id"] = data.pop("id")
            self.storage.upsert_product(product_doc_id(account_id, product.id), data)
        return len(products)

    def write_stock(self, account_id: str, stock: List[Stock]) -> int:
        for row in stock:
            data = row.model_dump(mode="python")
            data["account_id"] = account_id
            self.storage.upsert_stock(record_key(account_id, "stock", row.product_id, row.warehouse_id), data)
        return len(stock)

    def write_orders(self, account_id: str, orders: List[Order]) -> int:
        for order in orders:
            data = order.model_dump(mode="python")
            data["account_id"] = account_id
            data["order_id"] = data.pop("id")
            self.storage.upsert_order(record_key(account_id, "order", order.id), data)
        return len(orders)

    def write_regional(
        self,
        account_id: str,
        buckets: List[RegionalBucket],
        period_start: datetime,
        period_end: datetime,
    ) -> int:
        """Regional buckets are keyed by region and the period they summarize."""
        for bucket in buckets:
            data = bucket.model_dump(mode="python")
            data.update({
                "account_id": account_id,
                "period_start": period_start,
                "period_end": period_end,
            })
            key = record_key(account_id, "region", bucket.region, period_start.date(), period_end.date())
            self.storage.upsert_regional(key, data)
        return len(buckets)
