"""Shared fakes for the storage, queue, vault and HTTP collaborators."""

import copy
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import pytest

from marketsync.exceptions import NotFoundError
from marketsync.models.account import AccountStatus, MarketplaceAccount, MarketplaceType, SyncState
from marketsync.models.sync import ACTIVE_JOB_STATUSES, SyncJob
from marketsync.models.webhook import WebhookEvent

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

FIXTURES = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> Any:
    with open(FIXTURES / name, encoding="utf-8") as f:
        return json.load(f)


class InMemoryStore:
    """Dict-backed stand-in for FirestoreService."""

    def __init__(self):
        self.accounts: Dict[str, MarketplaceAccount] = {}
        self.jobs: Dict[str, SyncJob] = {}
        self.events: Dict[str, WebhookEvent] = {}
        self.sales: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.stock: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.regional: Dict[str, Dict[str, Any]] = {}
        self._job_order: List[str] = []

    def add_account(self, account: MarketplaceAccount) -> MarketplaceAccount:
        self.accounts[account.id] = account
        return account

    # Accounts

    def get_account(self, account_id: str) -> Optional[MarketplaceAccount]:
        account = self.accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    def list_active_accounts(self) -> List[MarketplaceAccount]:
        return [
            a.model_copy(deep=True) for a in self.accounts.values()
            if a.status in (AccountStatus.ACTIVE, AccountStatus.SYNCING)
        ]

    def list_accounts_by_marketplace(self, marketplace_type: MarketplaceType) -> List[MarketplaceAccount]:
        return [a.model_copy(deep=True) for a in self.accounts.values() if a.marketplace_type == marketplace_type]

    def update_account(self, account_id: str, updates: Dict[str, Any]) -> None:
        account = self.accounts[account_id]
        for key, value in updates.items():
            setattr(account, key, value)

    def update_sync_state(self, account_id: str, mutator: Callable[[SyncState], SyncState]) -> SyncState:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        current = account.sync_state
        updated = mutator(current.model_copy(deep=True))
        updated.revision = current.revision + 1
        account.sync_state = updated
        return updated.model_copy(deep=True)

    # Jobs

    def create_job(self, job: SyncJob) -> SyncJob:
        self.jobs[job.id] = job.model_copy(deep=True)
        self._job_order.append(job.id)
        return job

    def update_job(self, job_id: str, updates: Dict[str, Any]) -> None:
        job = self.jobs[job_id]
        for key, value in updates.items():
            setattr(job, key, value)

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def list_jobs(self, account_id: str, limit: int = 50) -> List[SyncJob]:
        ordered = [self.jobs[i] for i in reversed(self._job_order) if self.jobs[i].account_id == account_id]
        return [job.model_copy(deep=True) for job in ordered[:limit]]

    def find_active_job(self, account_id: str) -> Optional[SyncJob]:
        for job_id in self._job_order:
            job = self.jobs[job_id]
            if job.account_id == account_id and job.status in ACTIVE_JOB_STATUSES:
                return job.model_copy(deep=True)
        return None

    # Webhook events

    def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        self.events[event.id] = event.model_copy(deep=True)
        return event

    def update_webhook_event(self, event_id: str, updates: Dict[str, Any]) -> None:
        event = self.events[event_id]
        for key, value in updates.items():
            setattr(event, key, value)

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    def list_webhook_events(self, account_id: str, limit: int = 50) -> List[WebhookEvent]:
        return [e for e in self.events.values() if e.account_id == account_id][:limit]

    # Records

    def create_sale_if_absent(self, doc_id: str, data: Dict[str, Any]) -> bool:
        if doc_id in self.sales:
            return False
        self.sales[doc_id] = dict(data)
        return True

    def increment_product_counters(self, doc_id: str, account_id: str, quantity: int, revenue: float) -> None:
        product = self.products.setdefault(doc_id, {"account_id": account_id})
        product["total_sales"] = product.get("total_sales", 0) + quantity
        product["total_revenue"] = product.get("total_revenue", 0.0) + revenue

    def upsert_product(self, doc_id: str, data: Dict[str, Any]) -> None:
        self.products.setdefault(doc_id, {}).update(data)

    def upsert_stock(self, doc_id: str, data: Dict[str, Any]) -> None:
        self.stock.setdefault(doc_id, {}).update(data)

    def upsert_order(self, doc_id: str, data: Dict[str, Any]) -> None:
        self.orders.setdefault(doc_id, {}).update(data)

    def upsert_regional(self, doc_id: str, data: Dict[str, Any]) -> None:
        self.regional.setdefault(doc_id, {}).update(data)


class FakeQueue:
    """Records enqueued tasks instead of calling Cloud Tasks."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.added: List[Dict[str, Any]] = []
        self.removed: List[str] = []

    def add(self, job_name: str, payload: Dict[str, Any], task_id: Optional[str] = None, delay_ms: int = 0) -> str:
        if self.fail:
            raise RuntimeError("queue unavailable")
        name = f"queues/test/tasks/{task_id}"
        self.added.append({
            "job_name": job_name,
            "payload": payload,
            "task_id": task_id,
            "delay_ms": delay_ms,
            "name": name,
        })
        return name

    def remove_task(self, task_name: str) -> bool:
        self.removed.append(task_name)
        return True


class FakeVault:
    def __init__(self, credentials: Optional[Dict[str, Dict[str, Any]]] = None):
        self.credentials = credentials or {}
        self.forgotten: List[str] = []

    def get_account_credentials(self, account: MarketplaceAccount) -> Dict[str, Any]:
        return dict(self.credentials.get(account.id, {}))

    def find_account_by_api_key(self, accounts, api_key):
        for account in accounts:
            creds = self.credentials.get(account.id, {})
            if creds.get("api_key") == api_key or creds.get("token") == api_key:
                return account
        return None

    def forget_account_credentials(self, account: MarketplaceAccount) -> None:
        self.forgotten.append(account.id)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._payload = payload
        if text is not None:
            self.text = text
        elif payload is not None:
            self.text = json.dumps(payload)
        else:
            self.text = ""
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._payload is None:
            return json.loads(self.text)
        return self._payload


class FakeSession:
    """
    Routes requests by method and URL path.

    A route's responses are consumed in order and the last one repeats.
    A response may be a callable taking the request's ``params`` and
    ``json`` and returning a FakeResponse. Unrouted requests get a 404.
    """

    def __init__(self):
        self.headers: Dict[str, str] = {}
        self.routes: Dict[tuple, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, method: str, path: str, *responses) -> "FakeSession":
        self.routes[(method.upper(), path)] = list(responses)
        return self

    def request(self, method, url, params=None, json=None, timeout=None):
        path = urlparse(url).path
        self.calls.append({
            "method": method,
            "url": url,
            "path": path,
            "params": dict(params) if params is not None else None,
            "json": copy.deepcopy(json),
        })
        responses = self.routes.get((method.upper(), path))
        if not responses:
            return FakeResponse(404, {"message": f"no route for {method} {path}"})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            return response(params, json)
        return response

    def calls_to(self, path: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["path"] == path]

    def close(self):
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def make_connector(connector_class, session: FakeSession, sleep: Optional[RecordingSleep] = None, **kwargs):
    """Build a connector wired to a fake session with request spacing disabled."""
    kwargs.setdefault("min_request_interval", 0)
    return connector_class(session_factory=lambda: session, sleep=sleep or RecordingSleep(), **kwargs)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def wb_account(store):
    return store.add_account(MarketplaceAccount(
        id="acc-wb",
        name="WB shop",
        marketplace_type=MarketplaceType.WILDBERRIES,
        status=AccountStatus.ACTIVE,
    ))


@pytest.fixture
def ozon_account(store):
    return store.add_account(MarketplaceAccount(
        id="acc-ozon",
        name="Ozon shop",
        marketplace_type=MarketplaceType.OZON,
        status=AccountStatus.ACTIVE,
    ))
