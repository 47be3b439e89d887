"""
Google Cloud backed collaborators: storage, credential vault, work queue and timers.
"""

from .firestore import FirestoreService
from .secrets import SecretManagerService
from .tasks import TaskQueueService
from .scheduler import SchedulerService
from .webhooks import WebhookService

__all__ = [
    "FirestoreService",
    "SecretManagerService",
    "TaskQueueService",
    "SchedulerService",
    "WebhookService",
]
