"""
Cloud Tasks service used as the durable work queue.

Jobs are HTTP tasks that POST a JSON payload to
``{service_url}/internal/tasks/{job_name}``. Cloud Tasks retries a task
whenever the handler answers with a non-2xx status, following the queue's
retry configuration.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from google.api_core.exceptions import AlreadyExists, NotFound
from google.auth import default
from google.cloud import tasks_v2

from ..core.config import QueueRetryPolicy
from ..models.account import utcnow

logger = logging.getLogger(__name__)


class TaskQueueService:
    """Named, delayed, retryable jobs on one Cloud Tasks queue."""

    def __init__(
        self,
        queue_name: str,
        service_url: str,
        project_id: Optional[str] = None,
        region: str = "us-central1",
        service_account_email: Optional[str] = None,
        client=None,
    ):
        """
        Initialize the task queue.

        Args:
            queue_name: Cloud Tasks queue id
            service_url: Base URL of the service that handles the tasks
            project_id: Google Cloud project ID. If None, uses default from environment.
            region: Cloud Tasks location
            service_account_email: Identity used for OIDC tokens on task requests
            client: Pre-built Cloud Tasks client
        """
        try:
            if client is not None:
                self.client = client
                self.project_id = project_id
            elif project_id:
                self.client = tasks_v2.CloudTasksClient()
                self.project_id = project_id
            else:
                credentials, project = default()
                self.client = tasks_v2.CloudTasksClient(credentials=credentials)
                self.project_id = project

            self.region = region
            self.queue_name = queue_name
            self.service_url = service_url.rstrip("/")
            self.queue_path = self.client.queue_path(self.project_id, region, queue_name)
            self.service_account_email = (
                service_account_email or f"marketsync-sa@{self.project_id}.iam.gserviceaccount.com"
            )

            logger.info(f"Task queue initialized: {self.queue_path}")

        except Exception as e:
            logger.error(f"Failed to initialize Cloud Tasks: {e}")
            raise

    def ensure_queue(self, policy: QueueRetryPolicy) -> None:
        """Create the queue with the given retry policy, or update an existing one."""
        queue = {
            "name": self.queue_path,
            "retry_config": {
                "max_attempts": policy.max_attempts,
                "min_backoff": timedelta(milliseconds=policy.min_backoff_ms),
                "max_backoff": timedelta(milliseconds=policy.max_backoff_ms),
                "max_doublings": policy.max_doublings,
            },
        }
        try:
            try:
                self.client.get_queue(name=self.queue_path)
                self.client.update_queue(queue=queue)
                logger.info(f"Updated retry policy of queue {self.queue_name}")
            except NotFound:
                parent = f"projects/{self.project_id}/locations/{self.region}"
                self.client.create_queue(parent=parent, queue=queue)
                logger.info(f"Created queue {self.queue_name}")

        except Exception as e:
            logger.error(f"Failed to set up queue {self.queue_name}: {e}")
            raise

    def task_path(self, task_id: str) -> str:
        return self.client.task_path(self.project_id, self.region, self.queue_name, task_id)

    def add(
        self,
        job_name: str,
        payload: Dict[str, Any],
        task_id: Optional[str] = None,
        delay_ms: int = 0,
    ) -> str:
        """
        Enqueue a named job.

        Args:
            job_name: Handler name, e.g. ``sync-data``
            payload: JSON-serializable body
            task_id: Deterministic task id; adding the same id twice is a no-op
            delay_ms: Delay before the first dispatch

        Returns:
            Full task name
        """
        task: Dict[str, Any] = {
            "http_request": {
                "http_method": tasks_v2.HttpMethod.POST,
                "url": f"{self.service_url}/internal/tasks/{job_name}",
                "headers": {"Content-Type": "application/json"},
                "body": json.dumps(payload, default=str).encode("utf-8"),
                "oidc_token": {"service_account_email": self.service_account_email},
            },
        }
        if task_id:
            task["name"] = self.task_path(task_id)
        if delay_ms > 0:
            task["schedule_time"] = utcnow() + timedelta(milliseconds=delay_ms)

        try:
            response = self.client.create_task(parent=self.queue_path, task=task)
            logger.info(f"Enqueued {job_name} task {response.name} (delay {delay_ms} ms)")
            return response.name
        except AlreadyExists:
            logger.info(f"Task {task['name']} already enqueued")
            return task["name"]
        except Exception as e:
            logger.error(f"Failed to enqueue {job_name} task: {e}")
            raise

    def remove_task(self, task_name: str) -> bool:
        """
        Delete a task that has not run yet.

        Returns:
            True if deleted, False if it no longer exists
        """
        try:
            self.client.delete_task(name=task_name)
            logger.info(f"Removed task {task_name}")
            return True
        except NotFound:
            return False
        except Exception as e:
            logger.error(f"Failed to remove task {task_name}: {e}")
            raise
