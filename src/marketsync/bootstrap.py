"""
Wires the Google Cloud collaborators into the sync services.
"""

import logging
from typing import Optional

from .core.config import AppSettings, QueueRetryPolicy
from .connectors.factory import ConnectorFactory
from .engine.delivery import WebhookDeliveryProcessor
from .engine.sync import SyncService
from .engine.worker import SyncWorker
from .services.firestore import FirestoreService
from .services.scheduler import SchedulerService
from .services.secrets import SecretManagerService
from .services.tasks import TaskQueueService
from .services.webhooks import WebhookService

logger = logging.getLogger(__name__)

# Outbound deliveries run their own backoff; the queue must not add retries
WEBHOOK_QUEUE_POLICY = QueueRetryPolicy(max_attempts=1)


class Runtime:
    """The set of services one process needs."""

    def __init__(self, settings: AppSettings):
        self.settings = settings

        self.storage = FirestoreService(project_id=settings.project_id)
        self.vault = SecretManagerService(project_id=settings.project_id)
        self.sync_queue = TaskQueueService(
            settings.sync_queue_name,
            settings.api_base_url,
            project_id=settings.project_id,
            region=settings.region,
        )
        self.webhook_queue = TaskQueueService(
            settings.webhook_queue_name,
            settings.api_base_url,
            project_id=settings.project_id,
            region=settings.region,
        )

        self.factory = ConnectorFactory(self.vault)
        self.sync_service = SyncService(self.storage, self.sync_queue, self.factory, tuning=settings.tuning)
        self.worker = SyncWorker(self.storage, self.factory, tuning=settings.tuning)
        self.webhooks = WebhookService(self.storage, self.vault)
        self.delivery = WebhookDeliveryProcessor(
            self.storage, self.webhook_queue, policy=settings.delivery_policy
        )
        self._scheduler: Optional[SchedulerService] = None

    @property
    def scheduler(self) -> SchedulerService:
        if self._scheduler is None:
            self._scheduler = SchedulerService(project_id=self.settings.project_id, region=self.settings.region)
        return self._scheduler

    def setup_infrastructure(self):
        """Create or update the queues and the cadence scheduler jobs."""
        self.sync_queue.ensure_queue(self.settings.sync_queue_policy)
        self.webhook_queue.ensure_queue(WEBHOOK_QUEUE_POLICY)
        jobs = self.scheduler.ensure_cadence_jobs(self.settings.api_base_url, self.settings.cadences)
        logger.info(f"Infrastructure ready: {len(jobs)} cadence jobs")
        return jobs
