"""
Ozon Seller API connector.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..exceptions import MarketplaceAPIError, MarketplaceAuthError
from ..models.account import MarketplaceType
from ..models.records import (
    Sale, Product, Stock, Order, OrderItem, AdCampaign, AdStatistics,
    SalesParams, ProductsParams, StockParams, OrdersParams, AdCampaignsParams,
    AdStatisticsParams
)
from .base import BaseConnector, ConnectorCapability
from .normalize import (
    parse_datetime, product_name_or_default, region_or_default, require_price,
    to_float, to_int
)

logger = logging.getLogger(__name__)

DELIVERED_OPERATION = "OperationAgentDeliveredToCustomer"
PRODUCT_INFO_BATCH = 100


def _ozon_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S.000Z")


class OzonConnector(BaseConnector):
    """Connector for the Ozon Seller API (``Client-Id`` + ``Api-Key``)."""

    marketplace = MarketplaceType.OZON
    default_base_url = "https://api-seller.ozon.ru"
    required_credentials = ("api_key", "api_secret")

    min_request_interval = 0.2
    retry_base_interval = 1.0
    # Finance transactions accept at most one month per request
    sales_window_days = 28
    page_size = 1000

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(
            can_read_sales=True,
            can_read_products=True,
            can_read_stock=True,
            can_read_orders=True,
            can_read_ads=True,
            can_read_ad_statistics=True,
            can_read_regional=True,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Client-Id": str(self.credentials["api_key"]),
            "Api-Key": self.credentials["api_secret"],
        }

    def test_connection(self) -> bool:
        try:
            self._request("POST", "/v1/warehouse/list", "test connection", json={})
            logger.info("Ozon connection test successful")
            return True
        except MarketplaceAuthError:
            # A rejected key is not transient
            raise
        except MarketplaceAPIError as e:
            logger.warning(f"Ozon connection test failed: {e}")
            return False

    # Sales

    def _get_sales(self, params: SalesParams) -> List[Sale]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        return self._with_fallback(
            "sales",
            primary=lambda: self._fetch_windowed(
                start, end, self.sales_window_days, self._fetch_transactions, "finance transactions"
            ),
            legacy=lambda: self._sales_from_postings(start, end),
        )

    def _fetch_transactions(self, start: datetime, end: datetime) -> List[Sale]:
        sales: List[Sale] = []
        page = 1
        while True:
            data = self._request(
                "POST", "/v3/finance/transaction/list", "finance transactions",
                json={
                    "filter": {
                        "date": {"from": _ozon_time(start), "to": _ozon_time(end)},
                        "operation_type": [DELIVERED_OPERATION],
                        "posting_number": "",
                        "transaction_type": "all",
                    },
                    "page": page,
                    "page_size": self.page_size,
                },
            ) or {}
            result = data.get("result") or {}
            for operation in result.get("operations") or []:
                sales.extend(self._normalize_transaction(operation))
            if page >= to_int(result.get("page_count"), 1):
                break
            page += 1
        return sales

    @staticmethod
    def _normalize_transaction(operation: Dict[str, Any]) -> List[Sale]:
        posting = operation.get("posting") or {}
        items = operation.get("items") or [{}]
        accrued = require_price(
            operation.get("accruals_for_sale", operation.get("amount")), "ozon finance transaction"
        )
        price = round(accrued / len(items), 2)
        date = parse_datetime(operation.get("operation_date"), "operation_date")
        sales = []
        for index, item in enumerate(items):
            sku = item.get("sku")
            sales.append(Sale(
                id=f"{operation.get('operation_id')}-{sku if sku is not None else index}",
                product_id=str(sku if sku is not None else posting.get("posting_number")),
                product_name=product_name_or_default(item.get("name")),
                quantity=1,
                price=price,
                total_amount=price,
                date=date,
                order_id=posting.get("posting_number") or None,
                extra={"delivery_schema": posting.get("delivery_schema")},
            ))
        return sales

    def _sales_from_postings(self, start: datetime, end: datetime) -> List[Sale]:
        sales = []
        for posting in self._fetch_fbs_postings(start, end, status="delivered"):
            region = region_or_default((posting.get("analytics_data") or {}).get("region"))
            date = parse_datetime(
                posting.get("delivering_date") or posting.get("in_process_at"), "posting date"
            )
            for product in posting.get("products") or []:
                price = require_price(product.get("price"), "ozon posting")
                quantity = to_int(product.get("quantity"), 1) or 1
                sales.append(Sale(
                    id=f"{posting.get('posting_number')}-{product.get('sku')}",
                    product_id=str(product.get("sku")),
                    product_name=product_name_or_default(product.get("name")),
                    quantity=quantity,
                    price=price,
                    total_amount=round(price * quantity, 2),
                    date=date,
                    region=region,
                    order_id=posting.get("posting_number"),
                ))
        return sales

    # Products

    def _get_products(self, params: ProductsParams) -> List[Product]:
        return self._with_fallback(
            "products",
            primary=self._fetch_product_info,
            legacy=self._fetch_legacy_products,
        )

    def _list_product_ids(self, path: str, context: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        last_id = ""
        while True:
            data = self._request(
                "POST", path, context,
                json={"filter": {"visibility": "ALL"}, "last_id": last_id, "limit": self.page_size},
            ) or {}
            result = data.get("result") or {}
            batch = result.get("items") or []
            items.extend(batch)
            last_id = result.get("last_id") or ""
            if len(batch) < self.page_size or not last_id:
                break
        return items

    def _fetch_product_info(self) -> List[Product]:
        ids = [item.get("product_id") for item in self._list_product_ids("/v3/product/list", "product list")]
        products: List[Product] = []
        for offset in range(0, len(ids), PRODUCT_INFO_BATCH):
            data = self._request(
                "POST", "/v3/product/info/list", "product info",
                json={"product_id": ids[offset:offset + PRODUCT_INFO_BATCH]},
            ) or {}
            products.extend(self._normalize_product(item) for item in data.get("items") or [])
        return products

    def _fetch_legacy_products(self) -> List[Product]:
        return [
            Product(
                id=str(item.get("product_id")),
                name=product_name_or_default(item.get("offer_id")),
                sku=str(item.get("offer_id") or ""),
            )
            for item in self._list_product_ids("/v2/product/list", "legacy product list")
        ]

    @staticmethod
    def _normalize_product(item: Dict[str, Any]) -> Product:
        stocks = (item.get("stocks") or {}).get("stocks") or []
        barcodes = item.get("barcodes") or []
        return Product(
            id=str(item.get("id")),
            name=product_name_or_default(item.get("name") or item.get("offer_id")),
            sku=str(item.get("offer_id") or ""),
            barcode=barcodes[0] if barcodes else item.get("barcode"),
            category=str(item["description_category_id"]) if item.get("description_category_id") else None,
            price=to_float(item.get("price")),
            stock=sum(to_int(s.get("present")) for s in stocks),
            images=item.get("images") or [],
        )

    def _get_product_by_id(self, product_id: str) -> Optional[Product]:
        data = self._request(
            "POST", "/v3/product/info/list", "product info", json={"product_id": [product_id]},
        ) or {}
        items = data.get("items") or []
        return self._normalize_product(items[0]) if items else None

    # Stock

    def _get_stock(self, params: StockParams) -> List[Stock]:
        return self._with_fallback(
            "stock",
            primary=self._fetch_stocks,
            legacy=self._fetch_legacy_stocks,
            optional=True,
        )

    def _fetch_stocks(self) -> List[Stock]:
        stock: List[Stock] = []
        cursor = ""
        while True:
            data = self._request(
                "POST", "/v4/product/info/stocks", "stock",
                json={"filter": {"visibility": "ALL"}, "cursor": cursor, "limit": self.page_size},
            ) or {}
            batch = data.get("items") or []
            for item in batch:
                stock.extend(self._normalize_stock(item))
            cursor = data.get("cursor") or ""
            if len(batch) < self.page_size or not cursor:
                break
        return stock

    def _fetch_legacy_stocks(self) -> List[Stock]:
        stock: List[Stock] = []
        for item in self._list_product_ids("/v3/product/info/stocks", "legacy stock"):
            stock.extend(self._normalize_stock(item))
        return stock

    @staticmethod
    def _normalize_stock(item: Dict[str, Any]) -> List[Stock]:
        rows = []
        for entry in item.get("stocks") or []:
            present = to_int(entry.get("present"))
            reserved = to_int(entry.get("reserved"))
            rows.append(Stock(
                product_id=str(item.get("product_id")),
                product_name=product_name_or_default(item.get("offer_id")),
                warehouse_id=entry.get("type"),
                warehouse_name=(entry.get("type") or "").upper() or None,
                quantity=present,
                reserved_quantity=reserved,
                available_quantity=max(present - reserved, 0),
            ))
        return rows

    # Orders

    def _get_orders(self, params: OrdersParams) -> List[Order]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        return self._with_fallback(
            "orders",
            primary=lambda: [self._normalize_posting(p) for p in self._fetch_fbs_postings(start, end)],
            legacy=lambda: self._fetch_fbo_orders(start, end),
        )

    def _fetch_fbs_postings(
        self,
        start: datetime,
        end: datetime,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        postings: List[Dict[str, Any]] = []
        offset = 0
        filters: Dict[str, Any] = {"since": _ozon_time(start), "to": _ozon_time(end)}
        if status:
            filters["status"] = status
        while True:
            data = self._request(
                "POST", "/v3/posting/fbs/list", "fbs postings",
                json={
                    "dir": "ASC",
                    "filter": filters,
                    "limit": self.page_size,
                    "offset": offset,
                    "with": {"analytics_data": True, "financial_data": True},
                },
            ) or {}
            result = data.get("result") or {}
            batch = result.get("postings") or []
            postings.extend(batch)
            if not result.get("has_next") or not batch:
                break
            offset += len(batch)
        return postings

    def _fetch_fbo_orders(self, start: datetime, end: datetime) -> List[Order]:
        orders: List[Order] = []
        offset = 0
        while True:
            data = self._request(
                "POST", "/v2/posting/fbo/list", "fbo postings",
                json={
                    "dir": "ASC",
                    "filter": {"since": _ozon_time(start), "to": _ozon_time(end)},
                    "limit": self.page_size,
                    "offset": offset,
                    "with": {"analytics_data": True, "financial_data": True},
                },
            ) or {}
            batch = data.get("result") or []
            orders.extend(self._normalize_posting(p) for p in batch)
            if len(batch) < self.page_size:
                break
            offset += len(batch)
        return orders

    @staticmethod
    def _normalize_posting(posting: Dict[str, Any]) -> Order:
        items = []
        for product in posting.get("products") or []:
            price = to_float(product.get("price"))
            quantity = to_int(product.get("quantity"), 1) or 1
            items.append(OrderItem(
                product_id=str(product.get("sku")),
                product_name=product_name_or_default(product.get("name")),
                quantity=quantity,
                price=price,
                total_amount=round(price * quantity, 2),
            ))
        return Order(
            id=str(posting.get("posting_number")),
            order_number=str(posting.get("order_number") or posting.get("posting_number")),
            date=parse_datetime(posting.get("in_process_at") or posting.get("created_at"), "posting date"),
            status=posting.get("status") or "new",
            total_amount=round(sum(item.total_amount for item in items), 2),
            items=items,
            region=region_or_default((posting.get("analytics_data") or {}).get("region")),
        )

    def _get_order_by_id(self, order_id: str) -> Optional[Order]:
        data = self._request(
            "POST", "/v3/posting/fbs/get", "fbs posting",
            json={"posting_number": order_id, "with": {"analytics_data": True}},
        ) or {}
        result = data.get("result")
        return self._normalize_posting(result) if result else None

    # Advertising

    def _get_ad_campaigns(self, params: AdCampaignsParams) -> List[AdCampaign]:
        return self._with_fallback("ad campaigns", primary=self._fetch_campaigns, optional=True)

    def _fetch_campaigns(self) -> List[AdCampaign]:
        data = self._request("POST", "/v1/performance/campaign/list", "ad campaigns", json={}) or {}
        return [
            AdCampaign(
                id=str(row.get("id")),
                name=row.get("title") or "",
                status=(row.get("state") or "active").lower().replace("campaign_state_", ""),
                budget=to_float(row.get("dailyBudget")) or None,
                spent=to_float(row.get("spent")),
                start_date=parse_datetime(row.get("fromDate"), required=False),
                end_date=parse_datetime(row.get("toDate"), required=False),
            )
            for row in data.get("list") or []
        ]

    def _get_ad_statistics(self, campaign_ids: List[str], params: AdStatisticsParams) -> List[AdStatistics]:
        return self._with_fallback(
            "ad statistics",
            primary=lambda: self._fetch_ad_statistics(campaign_ids, params),
            optional=True,
        )

    def _fetch_ad_statistics(self, campaign_ids: List[str], params: AdStatisticsParams) -> List[AdStatistics]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        data = self._request(
            "POST", "/v1/performance/statistics", "ad statistics",
            json={
                "campaigns": campaign_ids,
                "dateFrom": start.strftime("%Y-%m-%d"),
                "dateTo": end.strftime("%Y-%m-%d"),
                "groupBy": params.group_by or "NO_GROUP_BY",
            },
        ) or {}
        stats = []
        for row in data.get("rows") or []:
            spent = to_float(row.get("moneySpent"))
            revenue = to_float(row.get("ordersMoney"))
            stats.append(AdStatistics(
                campaign_id=str(row.get("campaignId")),
                impressions=to_int(row.get("views")),
                clicks=to_int(row.get("clicks")),
                conversions=to_int(row.get("orders")),
                spent=spent,
                revenue=revenue,
                roi=round((revenue - spent) / spent, 4) if spent else None,
            ))
        return stats
