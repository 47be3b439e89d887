"""
Wildberries connector.

Wildberries splits its seller API across several hosts (statistics, content,
marketplace and advertising) that share one API key sent in the
``Authorization`` header. The statistics host is heavily throttled, so this
connector spaces requests by a full second and backs off on 429.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from ..exceptions import MarketplaceAPIError, MarketplaceAuthError
from ..models.account import MarketplaceType, utcnow
from ..models.records import (
    Sale, Product, Stock, Order, OrderItem, AdCampaign, AdStatistics,
    SalesParams, ProductsParams, StockParams, OrdersParams, AdCampaignsParams,
    AdStatisticsParams
)
from .base import BaseConnector, ConnectorCapability
from .normalize import (
    parse_datetime, product_name_or_default, region_or_default, require_price,
    rescale_minor_units, to_float, to_int
)

logger = logging.getLogger(__name__)

SALE_OPERATION = "Продажа"

# Advertising campaign status codes
CAMPAIGN_STATUSES = {
    4: "ready",
    7: "completed",
    8: "declined",
    9: "active",
    11: "paused",
}


def _wb_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S")


class WildberriesConnector(BaseConnector):
    """Connector for the Wildberries seller APIs."""

    marketplace = MarketplaceType.WILDBERRIES
    default_base_url = "https://statistics-api.wildberries.ru"
    content_url = "https://content-api.wildberries.ru"
    marketplace_url = "https://marketplace-api.wildberries.ru"
    advert_url = "https://advert-api.wildberries.ru"
    required_credentials = ("api_key",)

    min_request_interval = 1.0
    retry_base_interval = 1.5
    sales_window_days = 3
    page_size = 1000
    cards_page_size = 100

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
        return {"Authorization": self.credentials["api_key"]}

    def test_connection(self) -> bool:
        try:
            self._request(
                "GET", "/api/v1/supplier/incomes", "test connection",
                params={"dateFrom": utcnow().strftime("%Y-%m-%d")},
            )
            logger.info("Wildberries connection test successful")
            return True
        except MarketplaceAuthError:
            # A rejected key is not transient
            raise
        except MarketplaceAPIError as e:
            logger.warning(f"Wildberries connection test failed: {e}")
            return False

    # Sales

    def _get_sales(self, params: SalesParams) -> List[Sale]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        return self._with_fallback(
            "sales",
            primary=lambda: self._fetch_windowed(
                start, end, self.sales_window_days, self._fetch_report_window, "sales report"
            ),
            legacy=lambda: self._fetch_legacy_sales(start, end),
        )

    def _fetch_report_window(self, start: datetime, end: datetime) -> List[Sale]:
        """Page through the realization report with the ``rrdid`` cursor."""
        sales: List[Sale] = []
        rrdid = 0
        while True:
            rows = self._request(
                "GET", "/api/v5/supplier/reportDetailByPeriod", "sales report",
                params={
                    "dateFrom": _wb_time(start),
                    "dateTo": _wb_time(end),
                    "limit": self.page_size,
                    "rrdid": rrdid,
                },
            ) or []
            if not rows:
                break
            for row in rows:
                if row.get("doc_type_name") == SALE_OPERATION or row.get("supplier_oper_name") == SALE_OPERATION:
                    sales.append(self._normalize_report_row(row))
            rrdid = rows[-1].get("rrd_id") or 0
            if len(rows) < self.page_size or not rrdid:
                break
        return sales

    def _fetch_legacy_sales(self, start: datetime, end: datetime) -> List[Sale]:
        rows = self._request(
            "GET", "/api/v1/supplier/sales", "legacy sales",
            params={"dateFrom": _wb_time(start), "flag": 0},
        ) or []
        sales = [self._normalize_sale(row) for row in rows]
        return [s for s in sales if start <= s.date <= end]

    def _normalize_report_row(self, row: Dict[str, Any]) -> Sale:
        price = rescale_minor_units(require_price(row.get("retail_price_withdisc_rub"), "wildberries sales report"))
        quantity = to_int(row.get("quantity"), 1) or 1
        total = rescale_minor_units(to_float(row.get("retail_amount"), price * quantity))
        return Sale(
            id=str(row.get("rrd_id")),
            product_id=str(row.get("nm_id")),
            product_name=product_name_or_default(row.get("subject_name") or row.get("sa_name")),
            quantity=quantity,
            price=price,
            total_amount=total,
            date=parse_datetime(row.get("sale_dt") or row.get("rr_dt"), "sale_dt"),
            region=region_or_default(row.get("oblast") or row.get("ppvz_office_name")),
            order_id=row.get("srid") or None,
            extra={"warehouse": row.get("office_name")},
        )

    def _normalize_sale(self, row: Dict[str, Any]) -> Sale:
        raw_price = row.get("priceWithDisc", row.get("finishedPrice", row.get("price")))
        price = rescale_minor_units(require_price(raw_price, "wildberries sales"))
        quantity = to_int(row.get("quantity"), 1) or 1
        return Sale(
            id=str(row.get("saleID") or row.get("srid")),
            product_id=str(row.get("nmId")),
            product_name=product_name_or_default(row.get("subject")),
            quantity=quantity,
            price=price,
            total_amount=round(price * quantity, 2),
            date=parse_datetime(row.get("date"), "sale date"),
            region=region_or_default(row.get("regionName") or row.get("oblastOkrugName")),
            order_id=row.get("srid") or row.get("gNumber"),
            extra={"warehouse": row.get("warehouseName")},
        )

    # Products

    def _get_products(self, params: ProductsParams) -> List[Product]:
        return self._with_fallback(
            "products",
            primary=self._fetch_cards,
            legacy=self._fetch_legacy_products,
        )

    def _fetch_cards(self) -> List[Product]:
        products: List[Product] = []
        cursor: Dict[str, Any] = {"limit": self.cards_page_size}
        while True:
            data = self._request(
                "POST", "/content/v2/get/cards/list", "product cards",
                base_url=self.content_url,
                json={"settings": {"cursor": cursor, "filter": {"withPhoto": -1}}},
            ) or {}
            cards = data.get("cards") or []
            products.extend(self._normalize_card(card) for card in cards)
            page = data.get("cursor") or {}
            if len(cards) < self.cards_page_size or not page.get("nmID"):
                break
            cursor = {
                "limit": self.cards_page_size,
                "updatedAt": page.get("updatedAt"),
                "nmID": page.get("nmID"),
            }
        return products

    def _fetch_legacy_products(self) -> List[Product]:
        rows = self._request("GET", "/api/v1/supplier/info", "legacy products", params={"quantity": 0}) or []
        return [
            Product(
                id=str(row.get("nmId")),
                name=product_name_or_default(row.get("subject") or row.get("name")),
                sku=str(row.get("supplierArticle") or ""),
                barcode=row.get("barcode"),
                category=row.get("category"),
                price=rescale_minor_units(to_float(row.get("price"))),
                stock=to_int(row.get("quantity")),
            )
            for row in rows
        ]

    @staticmethod
    def _normalize_card(card: Dict[str, Any]) -> Product:
        skus = [sku for size in card.get("sizes") or [] for sku in size.get("skus") or []]
        return Product(
            id=str(card.get("nmID")),
            name=product_name_or_default(card.get("title") or card.get("subjectName")),
            sku=str(card.get("vendorCode") or ""),
            barcode=skus[0] if skus else None,
            category=card.get("subjectName"),
            images=[photo.get("big") for photo in card.get("photos") or [] if photo.get("big")],
            description=card.get("description"),
        )

    # Stock

    def _get_stock(self, params: StockParams) -> List[Stock]:
        return self._with_fallback("stock", primary=self._fetch_stocks, optional=True)

    def _fetch_stocks(self) -> List[Stock]:
        rows = self._request(
            "GET", "/api/v1/supplier/stocks", "stock",
            params={"dateFrom": "2019-06-20"},
        ) or []
        stock = []
        for row in rows:
            quantity = to_int(row.get("quantity"))
            in_transit = to_int(row.get("inWayToClient"))
            stock.append(Stock(
                product_id=str(row.get("nmId")),
                product_name=product_name_or_default(row.get("subject")),
                warehouse_id=row.get("warehouseName"),
                warehouse_name=row.get("warehouseName"),
                quantity=quantity,
                reserved_quantity=in_transit,
                available_quantity=max(quantity - in_transit, 0),
            ))
        return stock

    # Orders

    def _get_orders(self, params: OrdersParams) -> List[Order]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        return self._with_fallback(
            "orders",
            primary=lambda: self._fetch_assembly_orders(start, end),
            legacy=lambda: self._fetch_legacy_orders(start, end),
        )

    def _fetch_assembly_orders(self, start: datetime, end: datetime) -> List[Order]:
        orders: List[Order] = []
        next_cursor = 0
        while True:
            data = self._request(
                "GET", "/api/v3/orders", "assembly orders",
                base_url=self.marketplace_url,
                params={
                    "limit": self.page_size,
                    "next": next_cursor,
                    "dateFrom": int(start.timestamp()),
                    "dateTo": int(end.timestamp()),
                },
            ) or {}
            batch = data.get("orders") or []
            orders.extend(self._normalize_assembly_order(o) for o in batch)
            next_cursor = data.get("next") or 0
            if len(batch) < self.page_size or not next_cursor:
                break
        return orders

    def _fetch_legacy_orders(self, start: datetime, end: datetime) -> List[Order]:
        rows = self._request(
            "GET", "/api/v1/supplier/orders", "legacy orders",
            params={"dateFrom": _wb_time(start), "flag": 0},
        ) or []
        orders = [self._normalize_order(row) for row in rows]
        return [o for o in orders if start <= o.date <= end]

    @staticmethod
    def _normalize_assembly_order(row: Dict[str, Any]) -> Order:
        price = rescale_minor_units(to_float(row.get("convertedPrice", row.get("price"))))
        product_id = str(row.get("nmId"))
        return Order(
            id=str(row.get("id")),
            order_number=str(row.get("rid") or row.get("id")),
            date=parse_datetime(row.get("createdAt"), "createdAt"),
            status="new",
            total_amount=price,
            items=[OrderItem(
                product_id=product_id,
                product_name=product_name_or_default(row.get("article")),
                quantity=1,
                price=price,
                total_amount=price,
            )],
            region=region_or_default((row.get("address") or {}).get("province")),
            extra={"warehouse_id": row.get("warehouseId")},
        )

    @staticmethod
    def _normalize_order(row: Dict[str, Any]) -> Order:
        price = rescale_minor_units(to_float(row.get("priceWithDisc", row.get("totalPrice"))))
        quantity = to_int(row.get("quantity"), 1) or 1
        return Order(
            id=str(row.get("odid") or row.get("srid") or row.get("gNumber")),
            order_number=str(row.get("gNumber") or row.get("srid")),
            date=parse_datetime(row.get("date"), "order date"),
            status="cancelled" if row.get("isCancel") else (row.get("orderType") or "new"),
            total_amount=round(price * quantity, 2),
            items=[OrderItem(
                product_id=str(row.get("nmId")),
                product_name=product_name_or_default(row.get("subject")),
                quantity=quantity,
                price=price,
                total_amount=round(price * quantity, 2),
            )],
            region=region_or_default(row.get("regionName") or row.get("oblastOkrugName")),
        )

    # Advertising

    def _get_ad_campaigns(self, params: AdCampaignsParams) -> List[AdCampaign]:
        return self._with_fallback(
            "ad campaigns",
            primary=self._fetch_promotions,
            legacy=self._fetch_legacy_adverts,
            optional=True,
        )

    def _fetch_promotions(self) -> List[AdCampaign]:
        data = self._request(
            "GET", "/adv/v1/promotion/count", "ad campaigns", base_url=self.advert_url,
        ) or {}
        campaigns = []
        for group in data.get("adverts") or []:
            status = CAMPAIGN_STATUSES.get(group.get("status"), "unknown")
            for advert in group.get("advert_list") or []:
                advert_id = str(advert.get("advertId"))
                campaigns.append(AdCampaign(id=advert_id, name=f"Campaign {advert_id}", status=status))
        return campaigns

    def _fetch_legacy_adverts(self) -> List[AdCampaign]:
        rows = self._request("GET", "/api/v1/supplier/adverts", "legacy ad campaigns") or []
        return [
            AdCampaign(
                id=str(row.get("advertId") or row.get("id")),
                name=row.get("advertName") or row.get("name") or "",
                status=row.get("status") or "active",
                budget=row.get("dailyBudget") or row.get("budget"),
                spent=to_float(row.get("sum")),
                start_date=parse_datetime(row.get("startDate"), required=False),
                end_date=parse_datetime(row.get("endDate"), required=False),
            )
            for row in rows
        ]

    def _get_ad_statistics(self, campaign_ids: List[str], params: AdStatisticsParams) -> List[AdStatistics]:
        return self._with_fallback(
            "ad statistics",
            primary=lambda: self._fetch_ad_statistics(campaign_ids, params),
            optional=True,
        )

    def _fetch_ad_statistics(self, campaign_ids: List[str], params: AdStatisticsParams) -> List[AdStatistics]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        body = [
            {
                "id": int(campaign_id),
                "interval": {"begin": start.strftime("%Y-%m-%d"), "end": end.strftime("%Y-%m-%d")},
            }
            for campaign_id in campaign_ids
        ]
        rows = self._request(
            "POST", "/adv/v2/fullstats", "ad statistics", base_url=self.advert_url, json=body,
        ) or []
        return [self._normalize_ad_statistics(row) for row in rows]

    @staticmethod
    def _normalize_ad_statistics(row: Dict[str, Any]) -> AdStatistics:
        spent = to_float(row.get("sum"))
        revenue = to_float(row.get("sum_price"))
        return AdStatistics(
            campaign_id=str(row.get("advertId")),
            impressions=to_int(row.get("views")),
            clicks=to_int(row.get("clicks")),
            conversions=to_int(row.get("orders")),
            spent=spent,
            revenue=revenue,
            roi=round((revenue - spent) / spent, 4) if spent else None,
        )
