"""
Yandex Market Partner API connector.

Data is scoped by campaign (one per storefront) and, for the catalog, by
business. Campaign ids come from the credentials when present, otherwise
they are discovered once per connection through ``/campaigns``.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import MarketplaceAPIError, MarketplaceAuthError
from ..models.account import MarketplaceType
from ..models.records import (
    Sale, Product, Stock, Order, OrderItem, AdCampaign,
    SalesParams, ProductsParams, StockParams, OrdersParams, AdCampaignsParams
)
from .base import BaseConnector, ConnectorCapability
from .normalize import (
    parse_datetime, product_name_or_default, region_or_default, require_price,
    rescale_minor_units, to_float, to_int
)

logger = logging.getLogger(__name__)

DELIVERED = "DELIVERED"


def _buyer_price(item: Dict[str, Any]) -> Any:
    for price in item.get("prices") or []:
        if price.get("type") == "BUYER":
            return price.get("costPerItem")
    return item.get("buyerPrice", item.get("price"))


class YandexMarketConnector(BaseConnector):
    """Connector for the Yandex Market Partner API."""

    marketplace = MarketplaceType.YANDEX_MARKET
    default_base_url = "https://api.partner.market.yandex.ru"
    required_credentials = ("token",)

    min_request_interval = 0.3
    retry_base_interval = 1.0
    page_size = 200

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._campaign_ids: Optional[List[str]] = None
        self._business_id: Optional[str] = None

    def get_capabilities(self) -> ConnectorCapability:
        # Yandex Market has no advertising API; campaigns read as empty
        return ConnectorCapability(
            can_read_sales=True,
            can_read_products=True,
            can_read_stock=True,
            can_read_orders=True,
            can_read_ads=True,
            can_read_ad_statistics=False,
            can_read_regional=True,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"Api-Key": self.credentials["token"]}

    def disconnect(self) -> None:
        super().disconnect()
        self._campaign_ids = None
        self._business_id = None

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/campaigns", "test connection", params={"pageSize": 1})
            logger.info("Yandex Market connection test successful")
            return True
        except MarketplaceAuthError:
            # A rejected key is not transient
            raise
        except MarketplaceAPIError as e:
            logger.warning(f"Yandex Market connection test failed: {e}")
            return False

    # Campaign discovery

    def _campaigns(self) -> List[str]:
        if self._campaign_ids is not None:
            return self._campaign_ids

        configured = self.credentials.get("campaign_id")
        if configured:
            self._campaign_ids = [str(configured)]
            self._business_id = self.credentials.get("business_id")
            return self._campaign_ids

        data = self._request("GET", "/campaigns", "campaigns") or {}
        campaigns = data.get("campaigns") or []
        self._campaign_ids = [str(c.get("id")) for c in campaigns if c.get("id") is not None]
        if campaigns and not self._business_id:
            business = campaigns[0].get("business") or {}
            self._business_id = str(business["id"]) if business.get("id") else None
        logger.info(f"Yandex Market: discovered {len(self._campaign_ids)} campaigns")
        return self._campaign_ids

    def _business(self) -> Optional[str]:
        if self.credentials.get("business_id"):
            return str(self.credentials["business_id"])
        self._campaigns()
        return self._business_id

    def _paged(
        self,
        method: str,
        path: str,
        context: str,
        extract: Callable[[Dict[str, Any]], List[Dict[str, Any]]],
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Follow ``paging.nextPageToken`` until exhausted."""
        items: List[Dict[str, Any]] = []
        query = dict(params or {})
        query.setdefault("limit", self.page_size)
        while True:
            data = self._request(method, path, context, params=query, json=json) or {}
            items.extend(extract(data))
            paging = (data.get("result") or {}).get("paging") or data.get("paging") or {}
            token = paging.get("nextPageToken")
            if not token:
                break
            query["page_token"] = token
        return items

    # Sales

    def _get_sales(self, params: SalesParams) -> List[Sale]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        return self._with_fallback(
            "sales",
            primary=lambda: self._sales_from_stats(start, end),
            legacy=lambda: self._sales_from_orders(start, end),
        )

    def _stats_orders(self, campaign_id: str, start: datetime, end: datetime, statuses: List[str]):
        body: Dict[str, Any] = {
            "dateFrom": start.strftime("%Y-%m-%d"),
            "dateTo": end.strftime("%Y-%m-%d"),
        }
        if statuses:
            body["statuses"] = statuses
        return self._paged(
            "POST", f"/campaigns/{campaign_id}/stats/orders", "order stats",
            extract=lambda data: (data.get("result") or {}).get("orders") or [],
            json=body,
        )

    def _sales_from_stats(self, start: datetime, end: datetime) -> List[Sale]:
        sales: List[Sale] = []
        for campaign_id in self._campaigns():
            for order in self._stats_orders(campaign_id, start, end, [DELIVERED]):
                sales.extend(self._order_to_sales(
                    order, campaign_id,
                    date_value=order.get("creationDate"),
                    region=(order.get("deliveryRegion") or {}).get("name"),
                ))
        return [s for s in sales if start <= s.date <= end]

    def _sales_from_orders(self, start: datetime, end: datetime) -> List[Sale]:
        sales: List[Sale] = []
        for campaign_id in self._campaigns():
            for order in self._list_orders(campaign_id, start, end, status=DELIVERED):
                sales.extend(self._order_to_sales(
                    order, campaign_id,
                    date_value=order.get("creationDate"),
                    region=((order.get("delivery") or {}).get("region") or {}).get("name"),
                ))
        return [s for s in sales if start <= s.date <= end]

    @staticmethod
    def _order_to_sales(order: Dict[str, Any], campaign_id: str, date_value: Any, region: Any) -> List[Sale]:
        order_id = str(order.get("id"))
        date = parse_datetime(date_value, "creationDate")
        sales = []
        for item in order.get("items") or []:
            price = rescale_minor_units(require_price(_buyer_price(item), "yandex market order"))
            quantity = to_int(item.get("count"), 1) or 1
            product_id = str(item.get("offerId") or item.get("shopSku") or item.get("marketSku"))
            sales.append(Sale(
                id=f"{order_id}-{product_id}",
                product_id=product_id,
                product_name=product_name_or_default(item.get("offerName")),
                quantity=quantity,
                price=price,
                total_amount=round(price * quantity, 2),
                date=date,
                region=region_or_default(region),
                order_id=order_id,
                extra={"campaign_id": campaign_id},
            ))
        return sales

    # Orders

    def _get_orders(self, params: OrdersParams) -> List[Order]:
        start, end = self._resolve_window(params.start_date, params.end_date)
        return self._with_fallback(
            "orders",
            primary=lambda: [
                self._normalize_order(order, campaign_id)
                for campaign_id in self._campaigns()
                for order in self._list_orders(campaign_id, start, end)
            ],
            legacy=lambda: [
                self._normalize_order(order, campaign_id)
                for campaign_id in self._campaigns()
                for order in self._stats_orders(campaign_id, start, end, [])
            ],
        )

    def _list_orders(
        self,
        campaign_id: str,
        start: datetime,
        end: datetime,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "fromDate": start.strftime("%d-%m-%Y"),
            "toDate": end.strftime("%d-%m-%Y"),
        }
        if status:
            params["status"] = status
        return self._paged(
            "GET", f"/campaigns/{campaign_id}/orders", "orders",
            extract=lambda data: data.get("orders") or [],
            params=params,
        )

    @staticmethod
    def _normalize_order(order: Dict[str, Any], campaign_id: str) -> Order:
        items = []
        for item in order.get("items") or []:
            price = rescale_minor_units(to_float(_buyer_price(item)))
            quantity = to_int(item.get("count"), 1) or 1
            items.append(OrderItem(
                product_id=str(item.get("offerId") or item.get("shopSku")),
                product_name=product_name_or_default(item.get("offerName")),
                quantity=quantity,
                price=price,
                total_amount=round(price * quantity, 2),
            ))
        total = order.get("buyerTotal", order.get("itemsTotal"))
        region = ((order.get("delivery") or {}).get("region") or {}).get("name") \
            or (order.get("deliveryRegion") or {}).get("name")
        return Order(
            id=str(order.get("id")),
            order_number=str(order.get("id")),
            date=parse_datetime(order.get("creationDate"), "creationDate"),
            status=(order.get("status") or "new").lower(),
            total_amount=rescale_minor_units(to_float(total)) if total is not None
            else round(sum(i.total_amount for i in items), 2),
            items=items,
            region=region_or_default(region),
            extra={"campaign_id": campaign_id},
        )

    def _get_order_by_id(self, order_id: str) -> Optional[Order]:
        for campaign_id in self._campaigns():
            try:
                data = self._request("GET", f"/campaigns/{campaign_id}/orders/{order_id}", "order") or {}
            except MarketplaceAPIError as e:
                if e.status_code == 404:
                    continue
                raise
            if data.get("order"):
                return self._normalize_order(data["order"], campaign_id)
        return None

    # Products

    def _get_products(self, params: ProductsParams) -> List[Product]:
        return self._with_fallback(
            "products",
            primary=self._fetch_offer_mappings,
            legacy=self._fetch_legacy_offers,
        )

    def _fetch_offer_mappings(self) -> List[Product]:
        business_id = self._business()
        if not business_id:
            return []
        rows = self._paged(
            "POST", f"/businesses/{business_id}/offer-mappings", "offer mappings",
            extract=lambda data: (data.get("result") or {}).get("offerMappings") or [],
            json={},
        )
        return [self._normalize_offer(row.get("offer") or {}) for row in rows]

    def _fetch_legacy_offers(self) -> List[Product]:
        campaigns = self._campaigns()
        if not campaigns:
            return []
        rows = self._paged(
            "GET", f"/campaigns/{campaigns[0]}/offer-mapping-entries", "legacy offers",
            extract=lambda data: (data.get("result") or {}).get("offerMappingEntries") or [],
        )
        return [self._normalize_offer(row.get("offer") or {}) for row in rows]

    @staticmethod
    def _normalize_offer(offer: Dict[str, Any]) -> Product:
        barcodes = offer.get("barcodes") or []
        price = (offer.get("basicPrice") or {}).get("value", offer.get("price"))
        offer_id = offer.get("offerId") or offer.get("shopSku")
        return Product(
            id=str(offer_id),
            name=product_name_or_default(offer.get("name") or offer_id),
            sku=str(offer_id or ""),
            barcode=barcodes[0] if barcodes else None,
            category=offer.get("category"),
            price=rescale_minor_units(to_float(price)),
            images=offer.get("pictures") or [],
            description=offer.get("description"),
        )

    # Stock

    def _get_stock(self, params: StockParams) -> List[Stock]:
        return self._with_fallback("stock", primary=self._fetch_stocks, optional=True)

    def _fetch_stocks(self) -> List[Stock]:
        stock: List[Stock] = []
        for campaign_id in self._campaigns():
            warehouses = self._paged(
                "POST", f"/campaigns/{campaign_id}/offers/stocks", "stock",
                extract=lambda data: (data.get("result") or {}).get("warehouses") or [],
                json={},
            )
            for warehouse in warehouses:
                warehouse_id = str(warehouse.get("warehouseId"))
                for offer in warehouse.get("offers") or []:
                    counts = {s.get("type"): to_int(s.get("count")) for s in offer.get("stocks") or []}
                    quantity = counts.get("FIT", 0)
                    reserved = counts.get("FREEZE", 0)
                    stock.append(Stock(
                        product_id=str(offer.get("offerId")),
                        product_name=product_name_or_default(offer.get("offerId")),
                        warehouse_id=warehouse_id,
                        warehouse_name=warehouse.get("warehouseName") or warehouse_id,
                        quantity=quantity,
                        reserved_quantity=reserved,
                        available_quantity=counts.get("AVAILABLE", max(quantity - reserved, 0)),
                    ))
        return stock

    # Advertising

    def _get_ad_campaigns(self, params: AdCampaignsParams) -> List[AdCampaign]:
        logger.debug("Yandex Market has no advertising API, returning no campaigns")
        return []
