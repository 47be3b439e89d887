"""
Cloud Scheduler service for the sync cadences.

Each cadence is an independent Cloud Scheduler job that POSTs to
``/api/v1/scheduler/ticks/{cadence}``.
"""

import logging
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import NotFound
from google.auth import default
from google.cloud import scheduler_v1

from ..core.config import CadenceSchedule
from ..models.sync import SyncCadence

logger = logging.getLogger(__name__)

JOB_PREFIX = "marketsync-tick-"


class SchedulerService:
    """
    Service for managing the Cloud Scheduler jobs that drive sync ticks.
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        region: str = "us-central1",
        service_account_email: Optional[str] = None,
        client=None,
    ):
        """
        Initialize Cloud Scheduler service.

        Args:
            project_id: Google Cloud project ID. If None, uses default from environment.
            region: Cloud Scheduler location
            service_account_email: Identity used for OIDC tokens on the tick requests
            client: Pre-built scheduler client
        """
        try:
            if client is not None:
                self.client = client
                self.project_id = project_id
            elif project_id:
                self.client = scheduler_v1.CloudSchedulerClient()
                self.project_id = project_id
            else:
                # Use application default credentials
                credentials, project = default()
                self.client = scheduler_v1.CloudSchedulerClient(credentials=credentials)
                self.project_id = project

            self.region = region
            self.parent = f"projects/{self.project_id}/locations/{self.region}"
            self.service_account_email = (
                service_account_email or f"marketsync-sa@{self.project_id}.iam.gserviceaccount.com"
            )

            logger.info(f"Scheduler service initialized for project: {self.project_id}, region: {self.region}")

        except Exception as e:
            logger.error(f"Failed to initialize Cloud Scheduler: {e}")
            raise

    def _job_path(self, cadence: SyncCadence) -> str:
        return f"{self.parent}/jobs/{JOB_PREFIX}{cadence.value.replace('_', '-')}"

    def _build_job(self, cadence: SyncCadence, schedule: str, service_url: str, time_zone: str) -> Dict[str, Any]:
        return {
            "name": self._job_path(cadence),
            "description": f"marketsync {cadence.value} tick",
            "schedule": schedule,
            "time_zone": time_zone,
            "http_target": {
                "uri": f"{service_url.rstrip('/')}/api/v1/scheduler/ticks/{cadence.value}",
                "http_method": scheduler_v1.HttpMethod.POST,
                "headers": {"Content-Type": "application/json"},
                "body": b'{"triggered_by": "scheduler"}',
                "oidc_token": {"service_account_email": self.service_account_email},
            },
        }

    def upsert_cadence(
        self,
        cadence: SyncCadence,
        schedule: str,
        service_url: str,
        time_zone: str = "UTC",
    ) -> Dict[str, Any]:
        """Create the cadence job, or update it if it already exists."""
        job = self._build_job(cadence, schedule, service_url, time_zone)
        try:
            try:
                self.client.get_job(name=job["name"])
                response = self.client.update_job(job=job)
                action = "Updated"
            except NotFound:
                response = self.client.create_job(parent=self.parent, job=job)
                action = "Created"

            logger.info(f"{action} scheduler job for {cadence.value} with schedule: {schedule}")
            return {
                "cadence": cadence.value,
                "job_path": response.name,
                "schedule": schedule,
                "uri": job["http_target"]["uri"],
            }

        except Exception as e:
            logger.error(f"Failed to set up {cadence.value} schedule: {e}")
            raise

    def ensure_cadence_jobs(self, service_url: str, cadences: Optional[CadenceSchedule] = None) -> List[Dict[str, Any]]:
        """Create or update the scheduler jobs of all cadences."""
        cadences = cadences or CadenceSchedule()
        return [
            self.upsert_cadence(SyncCadence.CATCH_UP, cadences.catch_up, service_url, cadences.time_zone),
            self.upsert_cadence(SyncCadence.FULL_RESYNC, cadences.full_resync, service_url, cadences.time_zone),
            self.upsert_cadence(SyncCadence.STOCK, cadences.stock, service_url, cadences.time_zone),
        ]

    def delete_cadence(self, cadence: SyncCadence) -> bool:
        """
        Delete a cadence job.

        Returns:
            True if deleted, False if not found
        """
        try:
            self.client.delete_job(name=self._job_path(cadence))
            logger.info(f"Deleted scheduler job for {cadence.value}")
            return True
        except NotFound:
            logger.warning(f"Scheduler job for {cadence.value} not found")
            return False
        except Exception as e:
            logger.error(f"Failed to delete {cadence.value} schedule: {e}")
            raise

    def list_cadences(self) -> List[Dict[str, Any]]:
        """List the cadence jobs with their state and next run time."""
        try:
            jobs = []
            for job in self.client.list_jobs(parent=self.parent):
                job_name = job.name.split("/")[-1]
                if not job_name.startswith(JOB_PREFIX):
                    continue
                jobs.append({
                    "cadence": job_name[len(JOB_PREFIX):].replace("-", "_"),
                    "job_path": job.name,
                    "schedule": job.schedule,
                    "time_zone": job.time_zone,
                    "status": job.state.name,
                    "uri": job.http_target.uri if job.http_target else None,
                    "last_attempt_time": job.last_attempt_time.isoformat() if job.last_attempt_time else None,
                    "next_schedule_time": job.schedule_time.isoformat() if job.schedule_time else None,
                })
            return jobs

        except Exception as e:
            logger.error(f"Failed to list schedules: {e}")
            raise

    def pause_cadence(self, cadence: SyncCadence) -> bool:
        try:
            self.client.pause_job(name=self._job_path(cadence))
            logger.info(f"Paused scheduler job for {cadence.value}")
            return True
        except NotFound:
            return False

    def resume_cadence(self, cadence: SyncCadence) -> bool:
        try:
            self.client.resume_job(name=self._job_path(cadence))
            logger.info(f"Resumed scheduler job for {cadence.value}")
            return True
        except NotFound:
            return False
