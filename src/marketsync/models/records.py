"""
Normalized record models every marketplace connector must produce.

Connectors collapse marketplace-specific payloads into these shapes so the
worker and storage never see raw upstream data.
"""

from datetime import datetime
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, Field

UNKNOWN_PRODUCT = "Unknown product"
UNKNOWN_REGION = "Unknown region"


class Sale(BaseModel):
    """A single sold line item."""
    id: str
    product_id: str
    product_name: str = UNKNOWN_PRODUCT
    quantity: int = 1
    price: float
    total_amount: float
    date: datetime
    region: str = UNKNOWN_REGION
    order_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    def natural_key(self) -> tuple:
        """Identity of the sale across re-ingestion: (product, order, date)."""
        return (self.product_id, self.order_id or self.id, self.date.isoformat())


class Product(BaseModel):
    """A catalog entry."""
    id: str
    name: str = UNKNOWN_PRODUCT
    sku: str = ""
    barcode: Optional[str] = None
    category: Optional[str] = None
    price: float = 0.0
    stock: int = 0
    images: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class Stock(BaseModel):
    """Stock level of one product in one warehouse."""
    product_id: str
    product_name: str = UNKNOWN_PRODUCT
    warehouse_id: Optional[str] = None
    warehouse_name: Optional[str] = None
    quantity: int = 0
    reserved_quantity: int = 0
    available_quantity: int = 0


class OrderItem(BaseModel):
    product_id: str
    product_name: str = UNKNOWN_PRODUCT
    quantity: int = 1
    price: float = 0.0
    total_amount: float = 0.0


class CustomerData(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class Order(BaseModel):
    """A customer order with its line items."""
    id: str
    order_number: str
    date: datetime
    status: str = "new"
    total_amount: float = 0.0
    items: List[OrderItem] = Field(default_factory=list)
    customer: Optional[CustomerData] = None
    region: str = UNKNOWN_REGION
    extra: Dict[str, Any] = Field(default_factory=dict)


class AdCampaign(BaseModel):
    id: str
    name: str = ""
    status: str = "active"
    budget: Optional[float] = None
    spent: float = 0.0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class AdStatistics(BaseModel):
    campaign_id: str
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    spent: float = 0.0
    revenue: float = 0.0
    roi: Optional[float] = None


class TopProduct(BaseModel):
    product_id: str
    product_name: str = UNKNOWN_PRODUCT
    quantity: int = 0


class RegionalBucket(BaseModel):
    """Sales aggregated per delivery region."""
    region: str = UNKNOWN_REGION
    region_code: Optional[str] = None
    orders_count: int = 0
    total_amount: float = 0.0
    average_order_value: float = 0.0
    top_products: List[TopProduct] = Field(default_factory=list)


# Reader parameters

class SalesParams(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    product_id: Optional[str] = None


class ProductsParams(BaseModel):
    limit: Optional[int] = None
    offset: Optional[int] = None
    category_id: Optional[str] = None
    search: Optional[str] = None


class StockParams(BaseModel):
    warehouse_id: Optional[str] = None
    product_id: Optional[str] = None


class OrdersParams(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None


class AdCampaignsParams(BaseModel):
    status: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None


class AdStatisticsParams(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    group_by: Optional[str] = None


class RegionalDataParams(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    product_id: Optional[str] = None
