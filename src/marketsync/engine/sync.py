"""
Sync scheduling: cadence ticks and the manual enqueue/retry/cancel surface.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.config import SyncTuning
from ..exceptions import JobStateError, NotFoundError
from ..models.account import AccountStatus, MarketplaceAccount, SyncState, ensure_utc, utcnow
from ..models.sync import (
    SyncCadence, SyncJob, SyncJobPayload, SyncJobStatus, SyncJobType, SyncMode,
    SyncPlan, SyncStatistics
)
from ..connectors.normalize import parse_datetime
from .planner import decide_next_window, plan_manual_full

logger = logging.getLogger(__name__)

SYNC_TASK = "sync-data"


def normalize_job_type(value: Optional[Union[str, SyncJobType]]) -> SyncJobType:
    """Unknown or missing job types mean a full sync."""
    if isinstance(value, SyncJobType):
        return value
    try:
        return SyncJobType(str(value).lower())
    except ValueError:
        if value:
            logger.warning(f"Unknown sync job type {value!r}, running a full sync")
        return SyncJobType.FULL


def apply_state_updates(updates: Dict[str, Any]) -> Callable[[SyncState], SyncState]:
    def mutate(state: SyncState) -> SyncState:
        for field, value in updates.items():
            setattr(state, field, value)
        return state
    return mutate


class SyncService:
    """
    Decides which sync jobs to run and enqueues them.

    At most one job per account may be pending or processing. The check
    happens before creation and is best-effort under concurrent requests;
    a duplicate job only repeats idempotent writes.
    """

    def __init__(
        self,
        storage,
        queue,
        factory=None,
        tuning: Optional[SyncTuning] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            storage: Storage collaborator (see ``FirestoreService``)
            queue: Work queue collaborator (see ``TaskQueueService``)
            factory: Connector factory, needed for connection checks
            tuning: Window and interval configuration
            clock: Source of the current time
        """
        self.storage = storage
        self.queue = queue
        self.factory = factory
        self.tuning = tuning or SyncTuning()
        self.clock = clock

    # Lookups

    def _require_account(self, account_id: str) -> MarketplaceAccount:
        account = self.storage.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def get_sync_job(self, job_id: str) -> SyncJob:
        job = self.storage.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Sync job {job_id} not found")
        return job

    def get_sync_jobs(self, account_id: str, limit: int = 50) -> List[SyncJob]:
        return self.storage.list_jobs(account_id, limit=limit)

    def get_sync_statistics(self, account_id: str) -> SyncStatistics:
        """Counts by status over recent jobs, last successful sync and average duration."""
        jobs = self.storage.list_jobs(account_id, limit=self.tuning.statistics_sample_size)
        stats = SyncStatistics(total=len(jobs))
        durations = []
        for job in jobs:
            if job.status == SyncJobStatus.COMPLETED:
                stats.completed += 1
                finished = ensure_utc(job.completed_at)
                if finished and (stats.last_sync is None or finished > stats.last_sync):
                    stats.last_sync = finished
                duration = job.duration_seconds()
                if duration is not None:
                    durations.append(duration)
            elif job.status == SyncJobStatus.FAILED:
                stats.failed += 1
            elif job.status == SyncJobStatus.PENDING:
                stats.pending += 1
            elif job.status == SyncJobStatus.PROCESSING:
                stats.processing += 1
            elif job.status == SyncJobStatus.CANCELLED:
                stats.cancelled += 1
        if durations:
            stats.average_duration = round(sum(durations) / len(durations))
        return stats

    # Planning

    def preview_plan(self, account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """The window the next scheduled full sync would cover, without enqueueing."""
        account = self._require_account(account_id)
        plan, updates = decide_next_window(account.sync_state, ensure_utc(now) or self.clock(), self.tuning)
        return {
            "account_id": account_id,
            "fresh": plan is None,
            "mode": plan.mode.value if plan else None,
            "window_start": plan.window_start if plan else None,
            "window_end": plan.window_end if plan else None,
            "state_updates": updates,
        }

    def _persist_state_updates(self, account_id: str, updates: Dict[str, Any]) -> None:
        if updates:
            logger.info(f"Account {account_id}: updating sync state {sorted(updates)}")
            self.storage.update_sync_state(account_id, apply_state_updates(updates))

    def _manual_window(self, job_type: SyncJobType, params: Dict[str, Any], now: datetime):
        end = parse_datetime(params.get("end_date"), "end_date", required=False) or now
        days = self.tuning.regional_lookback_days if job_type == SyncJobType.REGIONAL \
            else self.tuning.manual_lookback_days
        start = parse_datetime(params.get("start_date"), "start_date", required=False) or end - timedelta(days=days)
        return start, end

    # Enqueue

    def create_sync_job(
        self,
        account_id: str,
        job_type: Optional[Union[str, SyncJobType]] = None,
        params: Optional[Dict[str, Any]] = None,
        triggered_by: str = "api",
        plan: Optional[SyncPlan] = None,
    ) -> SyncJob:
        """
        Create and enqueue a sync job for an account.

        If the account already has a pending or processing job, that job is
        returned and nothing new is created.

        Full jobs without explicit dates are planned from the account's sync
        state. Full jobs with explicit dates run without a mode and leave the
        sync state untouched.
        """
        account = self._require_account(account_id)

        existing = self.storage.find_active_job(account_id)
        if existing is not None:
            logger.info(f"Account {account_id} already has active job {existing.id}, not enqueueing")
            return existing

        job_type = normalize_job_type(job_type)
        params = dict(params or {})
        now = self.clock()
        mode: Optional[SyncMode] = None

        if job_type == SyncJobType.FULL and plan is None and not (params.get("start_date") or params.get("end_date")):
            plan, updates = plan_manual_full(account.sync_state, now, self.tuning)
            self._persist_state_updates(account_id, updates)

        if plan is not None:
            mode, window_start, window_end = plan.mode, plan.window_start, plan.window_end
        elif job_type == SyncJobType.STOCK or job_type == SyncJobType.PRODUCTS:
            window_start, window_end = None, None
        else:
            window_start, window_end = self._manual_window(job_type, params, now)

        if mode:
            params["mode"] = mode.value
        if window_start is not None:
            params["start_date"] = window_start.isoformat()
            params["end_date"] = window_end.isoformat()

        job = SyncJob(
            id=str(uuid.uuid4()),
            account_id=account_id,
            type=job_type,
            mode=mode,
            window_start=window_start,
            window_end=window_end,
            params=params,
            triggered_by=triggered_by,
        )
        self.storage.create_job(job)
        self._enqueue(job)

        window = f" {window_start.isoformat()}..{window_end.isoformat()}" if window_start else ""
        logger.info(
            f"Enqueued {job_type.value} job {job.id} for account {account_id}"
            f"{' (' + mode.value + ')' if mode else ''}{window}"
        )
        return job

    def _enqueue(self, job: SyncJob) -> None:
        payload = SyncJobPayload(job_id=job.id, account_id=job.account_id, type=job.type, params=job.params)
        try:
            task_name = self.queue.add(
                SYNC_TASK,
                payload.model_dump(mode="json"),
                task_id=f"{job.id}-{job.retry_count}",
            )
        except Exception as e:
            logger.error(f"Failed to enqueue job {job.id}: {e}")
            self.storage.update_job(job.id, {
                "status": SyncJobStatus.FAILED,
                "error": f"Failed to enqueue: {e}",
                "completed_at": self.clock(),
            })
            raise
        job.queue_task_name = task_name
        self.storage.update_job(job.id, {"queue_task_name": task_name})

    def retry_failed_job(self, job_id: str) -> SyncJob:
        """
        Re-enqueue a failed job with its original parameters.

        Raises:
            JobStateError: If the job is not failed, or the account has another active job
        """
        job = self.get_sync_job(job_id)
        if job.status != SyncJobStatus.FAILED:
            raise JobStateError(f"Only failed jobs can be retried; job {job_id} is {job.status.value}")

        active = self.storage.find_active_job(job.account_id)
        if active is not None and active.id != job.id:
            raise JobStateError(
                f"Account {job.account_id} already has active job {active.id}; retry it after that job finishes"
            )

        job.status = SyncJobStatus.PENDING
        job.error = None
        job.progress = 0
        job.records_processed = 0
        job.started_at = None
        job.completed_at = None
        job.retry_count += 1
        self.storage.update_job(job.id, {
            "status": job.status,
            "error": None,
            "progress": 0,
            "records_processed": 0,
            "started_at": None,
            "completed_at": None,
            "retry_count": job.retry_count,
        })
        self._enqueue(job)
        logger.info(f"Retrying job {job.id} (attempt {job.retry_count})")
        return job

    def cancel_sync_job(self, job_id: str) -> SyncJob:
        """
        Cancel a pending or processing job.

        The queued task is removed when it has not run yet; a running worker
        notices the cancellation between stages and
        before it records completion.

        Raises:
            JobStateError: If the job already finished
        """
        job = self.get_sync_job(job_id)
        if not job.is_active:
            raise JobStateError(f"Only pending or processing jobs can be cancelled; job {job_id} is {job.status.value}")

        if job.queue_task_name:
            try:
                self.queue.remove_task(job.queue_task_name)
            except Exception as e:
                logger.warning(f"Could not remove queued task of job {job_id}: {e}")

        job.status = SyncJobStatus.CANCELLED
        job.completed_at = self.clock()
        self.storage.update_job(job.id, {"status": job.status, "completed_at": job.completed_at})
        logger.info(f"Cancelled job {job_id}")
        return job

    # Cadences

    def tick(self, cadence: Union[str, SyncCadence], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one scheduler tick over all active accounts.

        ``catch_up`` and ``full_resync`` both plan full syncs with
        ``decide_next_window``; ``stock`` enqueues stock-only jobs.
        One account's failure does not stop the tick.
        """
        cadence = SyncCadence(cadence)
        now = ensure_utc(now) or self.clock()
        enqueued: List[str] = []
        skipped: Dict[str, str] = {}
        accounts = self.storage.list_active_accounts()

        for account in accounts:
            try:
                reason = self._tick_account(account, cadence, now, enqueued)
            except Exception as e:
                logger.error(f"Tick {cadence.value} failed for account {account.id}: {e}")
                reason = f"error: {e}"
            if reason:
                skipped[account.id] = reason

        logger.info(
            f"Tick {cadence.value}: {len(accounts)} accounts, {len(enqueued)} enqueued, {len(skipped)} skipped"
        )
        return {"cadence": cadence.value, "accounts": len(accounts), "enqueued": enqueued, "skipped": skipped}

    def _tick_account(
        self,
        account: MarketplaceAccount,
        cadence: SyncCadence,
        now: datetime,
        enqueued: List[str],
    ) -> Optional[str]:
        """Enqueue work for one account; returns the reason when nothing was enqueued."""
        if cadence == SyncCadence.STOCK:
            if not account.sync_settings.auto_sync_stock:
                return "auto_sync_stock disabled"
        elif not account.sync_settings.auto_sync:
            return "auto_sync disabled"

        active = self.storage.find_active_job(account.id)
        if active is not None:
            logger.debug(f"Account {account.id}: job {active.id} still {active.status.value}")
            return "active_job"

        if cadence == SyncCadence.STOCK:
            job = self.create_sync_job(account.id, SyncJobType.STOCK, triggered_by=f"scheduler:{cadence.value}")
            enqueued.append(job.id)
            return None

        plan, updates = decide_next_window(account.sync_state, now, self.tuning)
        self._persist_state_updates(account.id, updates)
        if plan is None:
            logger.debug(f"Account {account.id}: data is fresh")
            return "fresh"

        job = self.create_sync_job(
            account.id, SyncJobType.FULL, triggered_by=f"scheduler:{cadence.value}", plan=plan
        )
        enqueued.append(job.id)
        return None

    # Connections

    def check_account_connection(self, account_id: str) -> Dict[str, Any]:
        """Test an account's credentials and record the outcome on the account."""
        account = self._require_account(account_id)
        if self.factory is None:
            raise RuntimeError("SyncService was created without a connector factory")

        connected, error = self.factory.check_connection(account)
        if connected:
            self.storage.update_account(account_id, {"status": AccountStatus.ACTIVE, "last_error": None})
        else:
            self.storage.update_account(account_id, {"status": AccountStatus.ERROR, "last_error": error})
        return {"account_id": account_id, "connected": connected, "error": error}
