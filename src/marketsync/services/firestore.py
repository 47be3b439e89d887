"""
Firestore service for accounts, sync jobs, webhook events and normalized records.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from google.api_core.exceptions import AlreadyExists, GoogleAPICallError
from google.auth import default
from google.cloud import firestore
from pydantic import BaseModel

from ..exceptions import NotFoundError, StorageError
from ..models.account import MarketplaceAccount, MarketplaceType, AccountStatus, SyncState, utcnow
from ..models.sync import SyncJob, ACTIVE_JOB_STATUSES
from ..models.webhook import WebhookEvent

logger = logging.getLogger(__name__)


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="python")
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


class FirestoreService:
    """
    Storage for the sync core on Firestore.

    Normalized records live in top-level collections keyed by a hash of
    the account id and the natural key, so re-ingestion overwrites instead
    of duplicating.
    """

    def __init__(self, project_id: Optional[str] = None, client: Optional[firestore.Client] = None):
        """
        Initialize Firestore service.

        Args:
            project_id: Google Cloud project ID. If None, uses default from environment.
            client: Pre-built Firestore client
        """
        try:
            if client is not None:
                self.db = client
            elif project_id:
                self.db = firestore.Client(project=project_id)
            else:
                # Use application default credentials
                credentials, project = default()
                self.db = firestore.Client(project=project, credentials=credentials)

            self.accounts_collection = "marketplace_accounts"
            self.jobs_collection = "sync_jobs"
            self.webhook_events_collection = "webhook_events"
            self.sales_collection = "sales"
            self.products_collection = "products"
            self.stock_collection = "stock"
            self.orders_collection = "orders"
            self.regional_collection = "regional_data"

            logger.info(f"Firestore service initialized for project: {self.db.project}")

        except Exception as e:
            logger.error(f"Failed to initialize Firestore: {e}")
            raise

    # Accounts

    def get_account(self, account_id: str) -> Optional[MarketplaceAccount]:
        try:
            doc = self.db.collection(self.accounts_collection).document(account_id).get()
            if doc.exists:
                return MarketplaceAccount.from_firestore(account_id, doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get account {account_id}: {e}")
            raise

    def list_active_accounts(self) -> List[MarketplaceAccount]:
        """Accounts the scheduler should consider: active, or currently syncing."""
        try:
            query = self.db.collection(self.accounts_collection).where(
                "status", "in", [AccountStatus.ACTIVE.value, AccountStatus.SYNCING.value]
            )
            return [MarketplaceAccount.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list active accounts: {e}")
            raise

    def list_accounts_by_marketplace(self, marketplace_type: MarketplaceType) -> List[MarketplaceAccount]:
        try:
            query = self.db.collection(self.accounts_collection).where(
                "marketplace_type", "==", MarketplaceType(marketplace_type).value
            )
            return [MarketplaceAccount.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list {marketplace_type} accounts: {e}")
            raise

    def update_account(self, account_id: str, updates: Dict[str, Any]) -> None:
        try:
            payload = _serialize(updates)
            payload["updated_at"] = utcnow()
            self.db.collection(self.accounts_collection).document(account_id).update(payload)
            logger.debug(f"Updated account {account_id}: {sorted(updates)}")

        except Exception as e:
            logger.error(f"Failed to update account {account_id}: {e}")
            raise

    def update_sync_state(
        self,
        account_id: str,
        mutator: Callable[[SyncState], SyncState],
    ) -> SyncState:
        """
        Atomically read, modify and write an account's sync state.

        The mutator receives the current state and returns the new one; the
        revision is bumped on every write.
        """
        doc_ref = self.db.collection(self.accounts_collection).document(account_id)

        @firestore.transactional
        def apply(transaction) -> SyncState:
            snapshot = doc_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"Account {account_id} not found")
            current = SyncState(**((snapshot.to_dict() or {}).get("sync_state") or {}))
            updated = mutator(current.model_copy(deep=True))
            updated.revision = current.revision + 1
            transaction.update(doc_ref, {
                "sync_state": updated.model_dump(mode="python"),
                "updated_at": utcnow(),
            })
            return updated

        try:
            state = apply(self.db.transaction())
            logger.debug(f"Sync state of account {account_id} now at revision {state.revision}")
            return state

        except NotFoundError:
            raise
        except GoogleAPICallError as e:
            logger.error(f"Failed to update sync state of account {account_id}: {e}")
            raise StorageError(f"Sync state of account {account_id} not written: {e}") from e

    # Sync jobs

    def create_job(self, job: SyncJob) -> SyncJob:
        try:
            job.created_at = utcnow()
            job.updated_at = job.created_at
            self.db.collection(self.jobs_collection).document(job.id).set(job.to_firestore())
            logger.info(f"Created sync job: {job.id}")
            return job

        except Exception as e:
            logger.error(f"Failed to create sync job {job.id}: {e}")
            raise

    def update_job(self, job_id: str, updates: Dict[str, Any]) -> None:
        try:
            payload = _serialize(updates)
            payload["updated_at"] = utcnow()
            self.db.collection(self.jobs_collection).document(job_id).update(payload)

        except Exception as e:
            logger.error(f"Failed to update sync job {job_id}: {e}")
            raise

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        try:
            doc = self.db.collection(self.jobs_collection).document(job_id).get()
            if doc.exists:
                return SyncJob.from_firestore(job_id, doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get sync job {job_id}: {e}")
            raise

    def list_jobs(self, account_id: str, limit: int = 50) -> List[SyncJob]:
        """List an account's jobs, newest first."""
        try:
            query = self.db.collection(self.jobs_collection).where("account_id", "==", account_id)
            query = query.order_by("created_at", direction=firestore.Query.DESCENDING)
            query = query.limit(limit)
            return [SyncJob.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list sync jobs for account {account_id}: {e}")
            raise

    def find_active_job(self, account_id: str) -> Optional[SyncJob]:
        try:
            query = self.db.collection(self.jobs_collection).where("account_id", "==", account_id)
            query = query.where("status", "in", [s.value for s in ACTIVE_JOB_STATUSES]).limit(1)
            for doc in query.stream():
                return SyncJob.from_firestore(doc.id, doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to find active job for account {account_id}: {e}")
            raise

    # Webhook events

    def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        try:
            self.db.collection(self.webhook_events_collection).document(event.id).set(event.to_firestore())
            logger.info(f"Stored webhook event {event.id} ({event.type.value}, {event.status.value})")
            return event

        except Exception as e:
            logger.error(f"Failed to store webhook event {event.id}: {e}")
            raise

    def update_webhook_event(self, event_id: str, updates: Dict[str, Any]) -> None:
        try:
            self.db.collection(self.webhook_events_collection).document(event_id).update(_serialize(updates))

        except Exception as e:
            logger.error(f"Failed to update webhook event {event_id}: {e}")
            raise

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        try:
            doc = self.db.collection(self.webhook_events_collection).document(event_id).get()
            if doc.exists:
                return WebhookEvent.from_firestore(event_id, doc.to_dict())
            return None

        except Exception as e:
            logger.error(f"Failed to get webhook event {event_id}: {e}")
            raise

    def list_webhook_events(self, account_id: str, limit: int = 50) -> List[WebhookEvent]:
        try:
            query = self.db.collection(self.webhook_events_collection).where("account_id", "==", account_id)
            query = query.order_by("created_at", direction=firestore.Query.DESCENDING).limit(limit)
            return [WebhookEvent.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

        except Exception as e:
            logger.error(f"Failed to list webhook events for account {account_id}: {e}")
            raise

    # Normalized records

    def create_sale_if_absent(self, doc_id: str, data: Dict[str, Any]) -> bool:
        """Create the sale document unless it exists. Returns True if created."""
        try:
            self.db.collection(self.sales_collection).document(doc_id).create(_serialize(data))
            return True
        except AlreadyExists:
            return False
        except GoogleAPICallError as e:
            logger.error(f"Failed to store sale {doc_id}: {e}")
            raise StorageError(f"Sale {doc_id} not written: {e}") from e

    def increment_product_counters(self, doc_id: str, account_id: str, quantity: int, revenue: float) -> None:
        try:
            self.db.collection(self.products_collection).document(doc_id).set({
                "account_id": account_id,
                "total_sales": firestore.Increment(quantity),
                "total_revenue": firestore.Increment(revenue),
            }, merge=True)

        except GoogleAPICallError as e:
            logger.error(f"Failed to update counters of product {doc_id}: {e}")
            raise StorageError(f"Counters of product {doc_id} not written: {e}") from e

    def upsert_product(self, doc_id: str, data: Dict[str, Any]) -> None:
        self._upsert(self.products_collection, doc_id, data)

    def upsert_stock(self, doc_id: str, data: Dict[str, Any]) -> None:
        self._upsert(self.stock_collection, doc_id, data)

    def upsert_order(self, doc_id: str, data: Dict[str, Any]) -> None:
        self._upsert(self.orders_collection, doc_id, data)

    def upsert_regional(self, doc_id: str, data: Dict[str, Any]) -> None:
        self._upsert(self.regional_collection, doc_id, data)

    def _upsert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        try:
            payload = _serialize(data)
            payload["updated_at"] = utcnow()
            self.db.collection(collection).document(doc_id).set(payload, merge=True)

        except GoogleAPICallError as e:
            logger.error(f"Failed to upsert {collection}/{doc_id}: {e}")
            raise StorageError(f"{collection}/{doc_id} not written: {e}") from e
