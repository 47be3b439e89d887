"""
Sync worker: executes one queued sync job.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..core.config import SyncTuning
from ..connectors.base import BaseConnector
from ..connectors.normalize import aggregate_regions
from ..exceptions import ConfigurationError, MarketplaceAuthError
from ..models.account import AccountStatus, MarketplaceAccount, SyncState, ensure_utc, utcnow
from ..models.records import OrdersParams, RegionalDataParams, Sale, SalesParams
from ..models.sync import SyncJob, SyncJobPayload, SyncJobStatus, SyncJobType, SyncMode
from .persistence import RecordWriter
from .planner import history_target

logger = logging.getLogger(__name__)

# Stage name and the progress reached once it is persisted
FULL_PIPELINE: List[Tuple[str, int]] = [
    ("products", 20),
    ("stock", 40),
    ("sales", 60),
    ("orders", 80),
    ("regional", 100),
]

STAGE_CAPABILITIES = {
    "products": "can_read_products",
    "stock": "can_read_stock",
    "sales": "can_read_sales",
    "orders": "can_read_orders",
    "regional": "can_read_regional",
}

# Failures the queue should not retry
PERMANENT_ERRORS = (ConfigurationError, MarketplaceAuthError)


class JobCancelled(Exception):
    """Raised between stages when the job was cancelled."""
    pass


def advance_sync_state(job: SyncJob, tuning: SyncTuning, now: datetime) -> Callable[[SyncState], SyncState]:
    """Build the sync-state transition for a completed full job."""
    window_start = ensure_utc(job.window_start)
    window_end = ensure_utc(job.window_end)

    def mutate(state: SyncState) -> SyncState:
        if job.mode == SyncMode.INITIAL:
            state.initial_completed = True
            state.oldest_synced_date = window_start
            state.last_daily_sync_at = window_end
            if state.desired_history_start is None:
                state.desired_history_start = history_target(state, window_end or now, tuning)
            state.full_history_ready = window_start <= state.desired_history_start

        elif job.mode == SyncMode.CATCH_UP:
            oldest = ensure_utc(state.oldest_synced_date)
            state.oldest_synced_date = min(oldest, window_start) if oldest else window_start
            target = history_target(state, now, tuning)
            state.full_history_ready = state.oldest_synced_date <= target

        elif job.mode == SyncMode.DELTA:
            last = ensure_utc(state.last_daily_sync_at)
            state.last_daily_sync_at = max(last, window_end) if last else window_end

        return state

    return mutate


class SyncWorker:
    """
    Runs queued sync jobs.

    Full jobs walk the ordered pipeline products, stock, sales, orders,
    regional. Each stage is persisted before the next starts, so a crash
    leaves earlier stages committed and a retry simply rewrites them.
    Errors are re-raised so the queue's own retry policy applies.
    """

    def __init__(
        self,
        storage,
        factory,
        tuning: Optional[SyncTuning] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.factory = factory
        self.tuning = tuning or SyncTuning()
        self.clock = clock
        self.writer = RecordWriter(storage)

    def handle(
        self,
        payload: Union[SyncJobPayload, Dict[str, Any]],
        queue_attempt: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Process one dequeued job.

        Args:
            payload: The queued job payload
            queue_attempt: How many times the queue already retried this task

        Returns:
            Outcome summary; raises on retryable failures
        """
        if not isinstance(payload, SyncJobPayload):
            payload = SyncJobPayload(**payload)

        job = self.storage.get_job(payload.job_id)
        if job is None:
            logger.warning(f"Sync job {payload.job_id} no longer exists, dropping task")
            return {"job_id": payload.job_id, "status": "skipped", "reason": "job_not_found"}
        if job.status in (SyncJobStatus.CANCELLED, SyncJobStatus.COMPLETED):
            logger.info(f"Sync job {job.id} is {job.status.value}, nothing to do")
            return {"job_id": job.id, "status": "skipped", "reason": job.status.value}

        account = self.storage.get_account(job.account_id)
        if account is None:
            self._mark_failed(job, f"Account {job.account_id} not found")
            return {"job_id": job.id, "status": SyncJobStatus.FAILED.value, "reason": "account_not_found"}

        attempt = f" (queue attempt {queue_attempt + 1})" if queue_attempt else ""
        logger.info(f"Starting {job.type.value} job {job.id} for account {account.id}{attempt}")

        job.status = SyncJobStatus.PROCESSING
        job.started_at = self.clock()
        job.progress = 0
        job.records_processed = 0
        self.storage.update_job(job.id, {
            "status": job.status,
            "started_at": job.started_at,
            "progress": 0,
            "records_processed": 0,
            "error": None,
        })
        previous_status = account.status
        self.storage.update_account(account.id, {"status": AccountStatus.SYNCING})

        connector: Optional[BaseConnector] = None
        try:
            connector = self.factory.get_connected(account)
            counts = self._run_stages(job, connector)
            return self._complete(job, account, counts, connector.last_fetch_gaps)

        except JobCancelled:
            logger.info(f"Job {job.id} was cancelled, stopping after stage boundary")
            self.storage.update_account(account.id, {"status": previous_status})
            return {"job_id": job.id, "status": SyncJobStatus.CANCELLED.value}

        except PERMANENT_ERRORS as e:
            logger.error(f"Job {job.id} failed permanently: {e}")
            self._fail(job, account, e, account_status=AccountStatus.ERROR)
            return {"job_id": job.id, "status": SyncJobStatus.FAILED.value, "error": str(e)}

        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}")
            self._fail(job, account, e, account_status=AccountStatus.ACTIVE)
            raise

        finally:
            if connector is not None:
                connector.disconnect()

    # Pipeline

    def _stages_for(self, job: SyncJob) -> List[Tuple[str, int]]:
        if job.type == SyncJobType.FULL:
            return FULL_PIPELINE
        return [(job.type.value, 100)]

    def _ensure_not_cancelled(self, job_id: str) -> None:
        current = self.storage.get_job(job_id)
        if current is not None and current.status == SyncJobStatus.CANCELLED:
            raise JobCancelled(job_id)

    def _run_stages(self, job: SyncJob, connector: BaseConnector) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        sales: Optional[List[Sale]] = None
        capabilities = connector.get_capabilities()

        for stage, progress in self._stages_for(job):
            self._ensure_not_cancelled(job.id)

            if not getattr(capabilities, STAGE_CAPABILITIES[stage]):
                logger.info(f"Job {job.id}: {connector.marketplace.value} does not provide {stage}, skipping")
                counts[stage] = 0
            else:
                logger.info(f"Job {job.id}: stage {stage} started")
                if stage == "sales":
                    sales = connector.get_sales(SalesParams(start_date=job.window_start, end_date=job.window_end))
                    written = self.writer.write_sales(job.account_id, sales)
                    counts[stage] = len(sales)
                    counts["sales_created"] = written["created"]
                elif stage == "regional":
                    counts[stage] = self._regional_stage(job, connector, sales)
                else:
                    counts[stage] = self._simple_stage(stage, job, connector)
                logger.info(f"Job {job.id}: stage {stage} stored {counts[stage]} records")

            job.progress = progress
            job.records_processed += counts[stage]
            self.storage.update_job(job.id, {
                "progress": job.progress,
                "records_processed": job.records_processed,
            })

        return counts

    def _simple_stage(self, stage: str, job: SyncJob, connector: BaseConnector) -> int:
        if stage == "products":
            return self.writer.write_products(job.account_id, connector.get_products())
        if stage == "stock":
            return self.writer.write_stock(job.account_id, connector.get_stock())
        if stage == "orders":
            orders = connector.get_orders(OrdersParams(start_date=job.window_start, end_date=job.window_end))
            return self.writer.write_orders(job.account_id, orders)
        raise ValueError(f"Unknown stage {stage}")

    def _regional_stage(self, job: SyncJob, connector: BaseConnector, sales: Optional[List[Sale]]) -> int:
        if sales is not None:
            buckets = aggregate_regions(sales)
        else:
            buckets = connector.get_regional_data(
                RegionalDataParams(start_date=job.window_start, end_date=job.window_end)
            )
        period_end = ensure_utc(job.window_end) or self.clock()
        period_start = ensure_utc(job.window_start) or period_end
        return self.writer.write_regional(job.account_id, buckets, period_start, period_end)

    # Outcomes

    def _complete(
        self,
        job: SyncJob,
        account: MarketplaceAccount,
        counts: Dict[str, int],
        gaps: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        now = self.clock()
        # A cancel may land during the last stage
        self._ensure_not_cancelled(job.id)

        state_advanced = False
        if job.type == SyncJobType.FULL and job.mode is not None:
            if gaps:
                # The planner re-plans the same window while the state stays put
                logger.warning(
                    f"Account {account.id}: {job.mode.value} window has {len(gaps)} missing windows, "
                    f"sync state not advanced"
                )
            else:
                state = self.storage.update_sync_state(account.id, advance_sync_state(job, self.tuning, now))
                state_advanced = True
                logger.info(
                    f"Account {account.id}: {job.mode.value} done, oldest synced "
                    f"{state.oldest_synced_date}, full history ready: {state.full_history_ready}"
                )

        self._ensure_not_cancelled(job.id)
        result = {"counts": counts, "gaps": gaps, "state_advanced": state_advanced}
        job.status = SyncJobStatus.COMPLETED
        job.progress = 100
        job.completed_at = now
        job.result = result
        self.storage.update_job(job.id, {
            "status": job.status,
            "progress": 100,
            "completed_at": now,
            "total_records": job.records_processed,
            "result": result,
        })
        self.storage.update_account(account.id, {
            "status": AccountStatus.ACTIVE,
            "last_sync_at": now,
            "last_sync_status": "partial" if gaps else "success",
            "last_error": None,
        })
        if gaps:
            logger.warning(f"Job {job.id} completed with {len(gaps)} missing windows")
        logger.info(f"Job {job.id} completed: {job.records_processed} records")
        return {"job_id": job.id, "status": job.status.value, "records_processed": job.records_processed}

    def _mark_failed(self, job: SyncJob, error: str) -> None:
        current = self.storage.get_job(job.id)
        if current is not None and current.status == SyncJobStatus.CANCELLED:
            return
        self.storage.update_job(job.id, {
            "status": SyncJobStatus.FAILED,
            "error": error,
            "completed_at": self.clock(),
        })

    def _fail(self, job: SyncJob, account: MarketplaceAccount, error: Exception, account_status: AccountStatus) -> None:
        self._mark_failed(job, str(error))
        self.storage.update_account(account.id, {
            "status": account_status,
            "last_sync_status": "failed",
            "last_error": str(error),
        })
