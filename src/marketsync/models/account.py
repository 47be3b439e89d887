"""
Marketplace account models, including the typed incremental-sync state.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field, field_validator

SYNC_STATE_VERSION = 1


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC so they compare with stored timestamps."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MarketplaceType(str, Enum):
    """Supported marketplaces."""
    WILDBERRIES = "wildberries"
    OZON = "ozon"
    YANDEX_MARKET = "yandex_market"


class AccountStatus(str, Enum):
    """Status of a connected seller account."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    SYNCING = "syncing"


class SyncState(BaseModel):
    """
    Incremental sync progress for one account.

    Written only by the sync worker after a job completes, and by the
    scheduler when it discovers the history horizon has been reached.
    The storage layer updates it atomically and bumps ``revision``.
    """
    version: int = SYNC_STATE_VERSION
    revision: int = 0
    initial_completed: bool = False
    oldest_synced_date: Optional[datetime] = None
    desired_history_start: Optional[datetime] = None
    full_history_ready: bool = False
    last_daily_sync_at: Optional[datetime] = None

    @field_validator("oldest_synced_date", "desired_history_start", "last_daily_sync_at")
    @classmethod
    def validate_utc(cls, v):
        return ensure_utc(v)


class SyncSettings(BaseModel):
    """Per-account feature flags for scheduled syncs."""
    auto_sync: bool = True
    auto_sync_stock: bool = True


class MarketplaceAccount(BaseModel):
    """
    A connected external seller account.
    This is stored in Firestore.
    """
    id: str = Field(..., description="Unique identifier for this account")
    name: str = Field("", description="Human-readable account name")
    marketplace_type: MarketplaceType

    # Credentials live in the vault; only the reference is stored here
    credentials_secret: Optional[str] = Field(None, description="Secret Manager secret holding credentials")

    status: AccountStatus = AccountStatus.INACTIVE
    sync_state: SyncState = Field(default_factory=SyncState)
    sync_settings: SyncSettings = Field(default_factory=SyncSettings)

    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format."""
        data = self.model_dump(mode="python", exclude={"id"})
        data["marketplace_type"] = self.marketplace_type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "MarketplaceAccount":
        """Create instance from Firestore document."""
        data = dict(data)
        data["id"] = doc_id
        if data.get("sync_state") is None:
            data["sync_state"] = {}
        if data.get("sync_settings") is None:
            data["sync_settings"] = {}
        return cls(**data)
