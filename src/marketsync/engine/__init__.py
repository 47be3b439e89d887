"""
Sync engine: planning, scheduling, the job worker and webhook delivery.
"""

from .planner import decide_next_window, plan_manual_full
from .sync import SyncService, normalize_job_type
from .worker import SyncWorker
from .persistence import RecordWriter
from .delivery import WebhookDeliveryProcessor, compute_retry_delay

__all__ = [
    "decide_next_window",
    "plan_manual_full",
    "SyncService",
    "normalize_job_type",
    "SyncWorker",
    "RecordWriter",
    "WebhookDeliveryProcessor",
    "compute_retry_delay",
]
