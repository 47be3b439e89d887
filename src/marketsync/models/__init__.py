"""
Models for the marketsync system.
"""

from .account import (
    MarketplaceAccount, MarketplaceType, AccountStatus, SyncState, SyncSettings
)
from .records import (
    Sale, Product, Stock, Order, OrderItem, AdCampaign, AdStatistics,
    RegionalBucket, TopProduct
)
from .sync import (
    SyncJob, SyncJobType, SyncJobStatus, SyncMode, SyncPlan, SyncCadence,
    SyncJobPayload, SyncStatistics
)
from .webhook import (
    WebhookEvent, WebhookEventType, WebhookEventStatus, WebhookDeliveryJob
)

__all__ = [
    # Accounts
    "MarketplaceAccount",
    "MarketplaceType",
    "AccountStatus",
    "SyncState",
    "SyncSettings",

    # Normalized records
    "Sale",
    "Product",
    "Stock",
    "Order",
    "OrderItem",
    "AdCampaign",
    "AdStatistics",
    "RegionalBucket",
    "TopProduct",

    # Sync jobs
    "SyncJob",
    "SyncJobType",
    "SyncJobStatus",
    "SyncMode",
    "SyncPlan",
    "SyncCadence",
    "SyncJobPayload",
    "SyncStatistics",

    # Webhooks
    "WebhookEvent",
    "WebhookEventType",
    "WebhookEventStatus",
    "WebhookDeliveryJob",
]
