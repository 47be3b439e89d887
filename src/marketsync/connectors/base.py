"""
Base connector class for all marketplace integrations.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from pydantic import BaseModel

from ..exceptions import (
    ConfigurationError, ConnectorError, MarketplaceAPIError, MarketplaceAuthError,
    RateLimitExceededError, UnsupportedOperationError
)
from ..models.account import MarketplaceType, ensure_utc, utcnow
from ..models.records import (
    Sale, Product, Stock, Order, AdCampaign, AdStatistics, RegionalBucket,
    SalesParams, ProductsParams, StockParams, OrdersParams, AdCampaignsParams,
    AdStatisticsParams, RegionalDataParams
)
from .normalize import aggregate_regions, split_window
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

_TUNABLES = (
    "min_request_interval",
    "retry_base_interval",
    "max_rate_limit_retries",
    "request_timeout",
    "sales_window_days",
    "page_size",
    "default_lookback_days",
)


class ConnectorCapability(BaseModel):
    """Defines what data a connector can read."""
    can_read_sales: bool = False
    can_read_products: bool = False
    can_read_stock: bool = False
    can_read_orders: bool = False
    can_read_ads: bool = False
    can_read_ad_statistics: bool = False
    can_read_regional: bool = False


class BaseConnector(ABC):
    """
    Abstract base class for marketplace connectors.

    A connector instance holds one HTTP session and one rate limiter, and is
    never shared between concurrent jobs. Subclasses implement the private
    ``_get_*`` readers; the public readers check capabilities first.
    """

    marketplace: MarketplaceType
    default_base_url: str = ""
    required_credentials: Tuple[str, ...] = ()

    min_request_interval: float = 0.5
    retry_base_interval: float = 1.0
    max_rate_limit_retries: int = 3
    request_timeout: int = 30
    sales_window_days: Optional[int] = None
    page_size: int = 1000
    default_lookback_days: int = 7

    def __init__(
        self,
        base_url: Optional[str] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Optional[Callable[[], float]] = None,
        session_factory: Optional[Callable[[], requests.Session]] = None,
        **kwargs
    ):
        """
        Initialize the connector.

        Args:
            base_url: Override of the marketplace's primary API host
            sleep: Sleep function used by the rate limiter and throttling backoff
            clock: Monotonic clock used by the rate limiter
            session_factory: Callable returning a ``requests.Session``
            **kwargs: Overrides for tuning attributes (``min_request_interval``, ...)
        """
        for name in _TUNABLES:
            if name in kwargs and kwargs[name] is not None:
                setattr(self, name, kwargs.pop(name))
        self.config = kwargs

        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self._sleep = sleep or time.sleep
        self.rate_limiter = RateLimiter(
            self.min_request_interval,
            clock=clock or time.monotonic,
            sleep=self._sleep,
        )
        self._session_factory = session_factory or requests.Session

        self.session: Optional[requests.Session] = None
        self.credentials: Dict[str, Any] = {}
        self.last_fetch_gaps: List[Dict[str, Any]] = []
        logger.debug(f"Initialized {self.__class__.__name__} connector")

    # Connection lifecycle

    @abstractmethod
    def get_capabilities(self) -> ConnectorCapability:
        """Return what data this connector can read."""
        pass

    @abstractmethod
    def _auth_headers(self) -> Dict[str, str]:
        """Headers that authenticate every request."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test if the connector can successfully reach the marketplace."""
        pass

    def connect(self, credentials: Dict[str, Any]) -> bool:
        """
        Open a session with the given credentials and test it.

        Raises:
            ConfigurationError: If a required credential field is missing
        """
        credentials = credentials or {}
        missing = [key for key in self.required_credentials if not credentials.get(key)]
        if missing:
            raise ConfigurationError(
                f"{self.marketplace.value} credentials missing required fields: {', '.join(missing)}"
            )

        self.disconnect()
        self.credentials = dict(credentials)
        self.session = self._session_factory()
        self.session.headers.update({
            "Content-Type": "application/json",
            "User-Agent": "marketsync/0.1.0",
        })
        self.session.headers.update(self._auth_headers())
        return self.test_connection()

    def disconnect(self) -> None:
        """Release the session. Safe to call repeatedly or before ``connect``."""
        if self.session is not None:
            try:
                self.session.close()
            finally:
                self.session = None
        self.credentials = {}
        self.rate_limiter.reset()

    @property
    def is_connected(self) -> bool:
        return self.session is not None

    # HTTP

    def _request(
        self,
        method: str,
        path: str,
        context: str,
        base_url: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        """
        Make a rate-limited request and return the decoded JSON body.

        Throttled responses (429) are retried, waiting
        ``retry_base_interval * (attempt + 1)`` before each retry.

        Raises:
            RateLimitExceededError: If still throttled after all retries
            MarketplaceAuthError: On 401/403
            MarketplaceAPIError: On any other failure
        """
        if self.session is None:
            raise ConnectorError(f"{self.__class__.__name__} is not connected")

        url = f"{(base_url or self.base_url).rstrip('/')}{path}"
        marketplace = self.marketplace.value
        attempt = 0

        while True:
            self.rate_limiter.wait()
            logger.debug(f"{marketplace}: {method} {url} ({context})")
            try:
                response = self.session.request(
                    method, url, params=params, json=json, timeout=self.request_timeout
                )
            except requests.exceptions.RequestException as e:
                logger.error(f"{marketplace} request failed during {context}: {e}")
                raise MarketplaceAPIError(
                    f"{marketplace} request failed during {context}: {e}",
                    marketplace=marketplace, context=context,
                )

            status = response.status_code
            if status == 429:
                upstream = self._error_message(response)
                if attempt < self.max_rate_limit_retries:
                    delay = self.retry_base_interval * (attempt + 1)
                    logger.warning(
                        f"{marketplace} throttled during {context}, retry {attempt + 1}/"
                        f"{self.max_rate_limit_retries} in {delay:.1f}s"
                    )
                    self._sleep(delay)
                    attempt += 1
                    continue
                raise RateLimitExceededError(
                    f"{marketplace} rate limit exceeded during {context} after "
                    f"{self.max_rate_limit_retries} retries: {upstream}",
                    marketplace=marketplace, context=context,
                    status_code=status, upstream_message=upstream,
                )

            if status in (401, 403):
                upstream = self._error_message(response)
                raise MarketplaceAuthError(
                    f"{marketplace} rejected access during {context} (HTTP {status}): {upstream}",
                    marketplace=marketplace, context=context,
                    status_code=status, upstream_message=upstream,
                )

            if status >= 400:
                upstream = self._error_message(response)
                logger.error(f"{marketplace} API error during {context}: HTTP {status} {upstream}")
                raise MarketplaceAPIError(
                    f"{marketplace} API error during {context} (HTTP {status}): {upstream}",
                    marketplace=marketplace, context=context,
                    status_code=status, upstream_message=upstream,
                )

            if status == 204 or not response.content:
                return {}

            try:
                return response.json()
            except ValueError:
                raise MarketplaceAPIError(
                    f"{marketplace} returned malformed JSON during {context}",
                    marketplace=marketplace, context=context, status_code=status,
                    upstream_message=response.text[:500],
                )

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return (response.text or "").strip()[:500]
        if isinstance(data, dict):
            for key in ("message", "errorText", "error", "detail", "title"):
                value = data.get(key)
                if value:
                    return str(value) if not isinstance(value, dict) else str(value.get("message", value))
            errors = data.get("errors")
            if errors:
                return str(errors)
        return str(data)[:500]

    # Fetch strategies

    def _fetch_windowed(
        self,
        start: datetime,
        end: datetime,
        days: int,
        fetch_window: Callable[[datetime, datetime], List[Any]],
        context: str,
    ) -> List[Any]:
        """
        Fetch [start, end] in sequential sub-windows of ``days`` days.

        A failing window is recorded in ``last_fetch_gaps`` and skipped so that
        data from the other windows is kept. Only when every window fails is
        the last error raised. Authorization errors abort immediately.
        """
        windows = split_window(start, end, days)
        results: List[Any] = []
        gaps: List[Dict[str, Any]] = []
        last_error: Optional[MarketplaceAPIError] = None

        for index, (window_start, window_end) in enumerate(windows, start=1):
            try:
                batch = fetch_window(window_start, window_end)
            except MarketplaceAuthError:
                raise
            except MarketplaceAPIError as e:
                logger.warning(
                    f"{self.marketplace.value} {context}: window {index}/{len(windows)} "
                    f"{window_start.isoformat()}..{window_end.isoformat()} failed: {e}"
                )
                gaps.append({
                    "context": context,
                    "start": window_start.isoformat(),
                    "end": window_end.isoformat(),
                    "error": str(e),
                })
                last_error = e
                continue
            logger.info(
                f"{self.marketplace.value} {context}: window {index}/{len(windows)} "
                f"returned {len(batch)} records"
            )
            results.extend(batch)

        if last_error is not None and len(gaps) == len(windows):
            raise last_error

        self.last_fetch_gaps.extend(gaps)
        return results

    def _with_fallback(
        self,
        context: str,
        primary: Callable[[], List[Any]],
        legacy: Optional[Callable[[], List[Any]]] = None,
        optional: bool = False,
    ) -> List[Any]:
        """
        Try the primary endpoint, then the legacy one on failure or empty result.

        With ``optional=True`` an authorization failure degrades to an empty
        list, since many sellers issue tokens without every API scope.
        """
        marketplace = self.marketplace.value
        try:
            result = primary()
        except MarketplaceAuthError as e:
            if legacy is None:
                return self._degrade(context, e, optional)
            logger.warning(f"{marketplace} {context}: primary endpoint denied, trying legacy: {e}")
        except MarketplaceAPIError as e:
            if legacy is None:
                raise
            logger.warning(f"{marketplace} {context}: primary endpoint failed, trying legacy: {e}")
        else:
            if result or legacy is None:
                return result
            logger.info(f"{marketplace} {context}: primary endpoint returned nothing, trying legacy")

        try:
            return legacy()
        except MarketplaceAuthError as e:
            return self._degrade(context, e, optional)

    def _degrade(self, context: str, error: MarketplaceAuthError, optional: bool) -> List[Any]:
        if not optional:
            raise error
        logger.warning(
            f"{self.marketplace.value} {context}: token lacks scope, returning no data ({error})"
        )
        return []

    def _resolve_window(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Tuple[datetime, datetime]:
        end = ensure_utc(end) or utcnow()
        start = ensure_utc(start) or end - timedelta(days=self.default_lookback_days)
        return start, end

    def _require(self, capability: str, operation: str) -> None:
        if not getattr(self.get_capabilities(), capability):
            raise UnsupportedOperationError(
                f"{self.__class__.__name__} does not support {operation}"
            )

    # Readers

    def get_sales(self, params: Optional[SalesParams] = None) -> List[Sale]:
        """
        Read sales in a date window, newest data from the primary endpoint first.

        Args:
            params: Optional window, pagination and product filter

        Returns:
            List of normalized sales
        """
        self._require("can_read_sales", "reading sales")
        params = params or SalesParams()
        sales = self._get_sales(params)
        if params.product_id:
            sales = [s for s in sales if s.product_id == params.product_id]
        return self._paginate(sales, params.offset, params.limit)

    def get_sales_by_date_range(self, start_date: datetime, end_date: datetime) -> List[Sale]:
        return self.get_sales(SalesParams(start_date=start_date, end_date=end_date))

    def get_products(self, params: Optional[ProductsParams] = None) -> List[Product]:
        """Read the product catalog."""
        self._require("can_read_products", "reading products")
        params = params or ProductsParams()
        products = self._get_products(params)
        if params.search:
            needle = params.search.lower()
            products = [p for p in products if needle in p.name.lower() or needle in p.sku.lower()]
        return self._paginate(products, params.offset, params.limit)

    def get_product_by_id(self, product_id: str) -> Optional[Product]:
        self._require("can_read_products", "reading products")
        return self._get_product_by_id(product_id)

    def get_stock(self, params: Optional[StockParams] = None) -> List[Stock]:
        """Read stock levels. Missing API scope yields an empty list."""
        self._require("can_read_stock", "reading stock")
        params = params or StockParams()
        stock = self._get_stock(params)
        if params.product_id:
            stock = [s for s in stock if s.product_id == params.product_id]
        if params.warehouse_id:
            stock = [s for s in stock if s.warehouse_id == params.warehouse_id]
        return stock

    def get_orders(self, params: Optional[OrdersParams] = None) -> List[Order]:
        """Read orders in a date window."""
        self._require("can_read_orders", "reading orders")
        params = params or OrdersParams()
        orders = self._get_orders(params)
        if params.status:
            orders = [o for o in orders if o.status == params.status]
        return self._paginate(orders, params.offset, params.limit)

    def get_order_by_id(self, order_id: str) -> Optional[Order]:
        self._require("can_read_orders", "reading orders")
        return self._get_order_by_id(order_id)

    def get_ad_campaigns(self, params: Optional[AdCampaignsParams] = None) -> List[AdCampaign]:
        """Read advertising campaigns. Missing API scope yields an empty list."""
        self._require("can_read_ads", "reading ad campaigns")
        params = params or AdCampaignsParams()
        campaigns = self._get_ad_campaigns(params)
        if params.status:
            campaigns = [c for c in campaigns if c.status == params.status]
        return self._paginate(campaigns, params.offset, params.limit)

    def get_ad_statistics(
        self,
        campaign_ids: List[str],
        params: Optional[AdStatisticsParams] = None,
    ) -> List[AdStatistics]:
        self._require("can_read_ad_statistics", "reading ad statistics")
        if not campaign_ids:
            return []
        return self._get_ad_statistics(campaign_ids, params or AdStatisticsParams())

    def get_regional_data(self, params: Optional[RegionalDataParams] = None) -> List[RegionalBucket]:
        """Aggregate sales in a window by delivery region."""
        self._require("can_read_regional", "reading regional data")
        params = params or RegionalDataParams()
        return self._get_regional_data(params)

    @staticmethod
    def _paginate(items: List[Any], offset: Optional[int], limit: Optional[int]) -> List[Any]:
        start = offset or 0
        if limit is None:
            return items[start:]
        return items[start:start + limit]

    # Marketplace-specific implementations

    @abstractmethod
    def _get_sales(self, params: SalesParams) -> List[Sale]:
        pass

    @abstractmethod
    def _get_products(self, params: ProductsParams) -> List[Product]:
        pass

    @abstractmethod
    def _get_stock(self, params: StockParams) -> List[Stock]:
        pass

    @abstractmethod
    def _get_orders(self, params: OrdersParams) -> List[Order]:
        pass

    def _get_product_by_id(self, product_id: str) -> Optional[Product]:
        for product in self._get_products(ProductsParams()):
            if product.id == product_id:
                return product
        return None

    def _get_order_by_id(self, order_id: str) -> Optional[Order]:
        for order in self._get_orders(OrdersParams()):
            if order.id == order_id or order.order_number == order_id:
                return order
        return None

    def _get_ad_campaigns(self, params: AdCampaignsParams) -> List[AdCampaign]:
        raise UnsupportedOperationError(f"{self.__class__.__name__} does not support reading ad campaigns")

    def _get_ad_statistics(self, campaign_ids: List[str], params: AdStatisticsParams) -> List[AdStatistics]:
        raise UnsupportedOperationError(f"{self.__class__.__name__} does not support reading ad statistics")

    def _get_regional_data(self, params: RegionalDataParams) -> List[RegionalBucket]:
        sales = self._get_sales(SalesParams(start_date=params.start_date, end_date=params.end_date))
        if params.product_id:
            sales = [s for s in sales if s.product_id == params.product_id]
        return aggregate_regions(sales)
