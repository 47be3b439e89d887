"""
Models for sync jobs, sync plans and status tracking.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from .account import utcnow, ensure_utc


class SyncJobType(str, Enum):
    """What a sync job fetches."""
    SALES = "sales"
    PRODUCTS = "products"
    STOCK = "stock"
    ORDERS = "orders"
    REGIONAL = "regional"
    FULL = "full"


class SyncJobStatus(str, Enum):
    """Status of a sync job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.PROCESSING)


class SyncMode(str, Enum):
    """Incremental sync mode of a full job."""
    INITIAL = "INITIAL"
    CATCH_UP = "CATCH_UP"
    DELTA = "DELTA"


class SyncCadence(str, Enum):
    """Independent scheduler timers."""
    CATCH_UP = "catch_up"
    FULL_RESYNC = "full_resync"
    STOCK = "stock"


class SyncPlan(BaseModel):
    """The next window to fetch for an account."""
    mode: SyncMode
    window_start: datetime
    window_end: datetime


class SyncJob(BaseModel):
    """One unit of sync work against one account."""
    id: str
    account_id: str
    type: SyncJobType
    status: SyncJobStatus = SyncJobStatus.PENDING

    # Parameters
    mode: Optional[SyncMode] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "api"

    # Progress
    progress: int = 0
    records_processed: int = 0
    total_records: Optional[int] = None

    # Outcome
    error: Optional[str] = None
    retry_count: int = 0
    result: Dict[str, Any] = Field(default_factory=dict)
    queue_task_name: Optional[str] = None

    # Timestamps
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES

    def duration_seconds(self) -> Optional[float]:
        if not self.started_at or not self.completed_at:
            return None
        return (ensure_utc(self.completed_at) - ensure_utc(self.started_at)).total_seconds()

    def to_firestore(self) -> Dict[str, Any]:
        """Convert to Firestore document format."""
        data = self.model_dump(mode="python", exclude={"id"})
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["mode"] = self.mode.value if self.mode else None
        return data

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "SyncJob":
        """Create instance from Firestore document."""
        data = dict(data)
        data["id"] = doc_id
        return cls(**data)


class SyncJobPayload(BaseModel):
    """Body of a queued sync task."""
    job_id: str
    account_id: str
    type: SyncJobType
    params: Dict[str, Any] = Field(default_factory=dict)


class SyncStatistics(BaseModel):
    """Aggregate sync statistics for an account."""
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    processing: int = 0
    cancelled: int = 0
    last_sync: Optional[datetime] = None
    average_duration: Optional[int] = Field(None, description="Average duration of completed jobs in seconds")
