"""
Models for inbound webhook events and outbound delivery retries.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Any, Optional
from pydantic import BaseModel, Field

from .account import MarketplaceType, utcnow


class WebhookEventType(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_UPDATED = "order_updated"
    ORDER_CANCELLED = "order_cancelled"
    PRODUCT_UPDATED = "product_updated"
    STOCK_UPDATED = "stock_updated"
    PRICE_UPDATED = "price_updated"
    REVIEW_RECEIVED = "review_received"
    CUSTOM = "custom"


class WebhookEventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"
    DELIVERED = "delivered"


class WebhookEvent(BaseModel):
    """
    One webhook notification, inbound or outbound.

    Never deleted by the application; it is the audit trail for deliveries.
    """
    id: str
    account_id: Optional[str] = None
    marketplace_type: Optional[MarketplaceType] = None
    type: WebhookEventType = WebhookEventType.CUSTOM
    status: WebhookEventStatus = WebhookEventStatus.PENDING
    payload: Any = None

    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    last_error: Optional[str] = None

    # Outbound delivery
    target_url: Optional[str] = None
    response_status: Optional[int] = None
    response_data: Any = None
    delivery_history: List[Dict[str, Any]] = Field(default_factory=list)

    metadata: Dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format."""
        data = self.model_dump(mode="python", exclude={"id"})
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["marketplace_type"] = self.marketplace_type.value if self.marketplace_type else None
        return data

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "WebhookEvent":
        """Create instance from Firestore document."""
        data = dict(data)
        data["id"] = doc_id
        return cls(**data)


class WebhookDeliveryJob(BaseModel):
    """Body of a queued outbound delivery attempt."""
    webhook_event_id: str
    url: str
    payload: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
