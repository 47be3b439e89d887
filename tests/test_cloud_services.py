import json
from unittest.mock import MagicMock

import pytest
from google.api_core.exceptions import AlreadyExists, NotFound, ServiceUnavailable

from marketsync.core.config import CadenceSchedule, QueueRetryPolicy
from marketsync.exceptions import ConfigurationError, StorageError
from marketsync.models.account import MarketplaceAccount, MarketplaceType
from marketsync.models.sync import SyncCadence
from marketsync.services.firestore import FirestoreService
from marketsync.services.scheduler import SchedulerService
from marketsync.services.secrets import SecretManagerService, account_secret_name
from marketsync.services.tasks import TaskQueueService

QUEUE_PATH = "projects/proj/locations/us-central1/queues/sync"


def named(name: str, **attrs) -> MagicMock:
    # ``name`` is a MagicMock constructor argument, so it is set afterwards
    mock = MagicMock(**attrs)
    mock.name = name
    return mock


@pytest.fixture
def tasks_client():
    client = MagicMock()
    client.queue_path.return_value = QUEUE_PATH
    client.task_path.side_effect = lambda project, region, queue, task_id: f"{QUEUE_PATH}/tasks/{task_id}"
    client.create_task.side_effect = lambda parent, task: named(task.get("name", "auto"))
    return client


@pytest.fixture
def task_queue(tasks_client):
    return TaskQueueService("sync", "https://svc.example/", project_id="proj", client=tasks_client)


def test_add_posts_json_to_the_job_handler(task_queue, tasks_client):
    name = task_queue.add("sync-data", {"job_id": "j1"}, task_id="j1-0")

    assert name == f"{QUEUE_PATH}/tasks/j1-0"
    task = tasks_client.create_task.call_args.kwargs["task"]
    request = task["http_request"]
    assert request["url"] == "https://svc.example/internal/tasks/sync-data"
    assert json.loads(request["body"]) == {"job_id": "j1"}
    assert request["oidc_token"]["service_account_email"] == "marketsync-sa@proj.iam.gserviceaccount.com"
    assert "schedule_time" not in task


def test_add_with_delay_sets_schedule_time(task_queue, tasks_client):
    task_queue.add("retry-webhook", {}, task_id="e1-1", delay_ms=2000)
    assert "schedule_time" in tasks_client.create_task.call_args.kwargs["task"]


def test_adding_same_task_id_twice_is_a_noop(task_queue, tasks_client):
    tasks_client.create_task.side_effect = AlreadyExists("exists")
    assert task_queue.add("sync-data", {}, task_id="j1-0") == f"{QUEUE_PATH}/tasks/j1-0"


def test_remove_task(task_queue, tasks_client):
    assert task_queue.remove_task("t1") is True
    tasks_client.delete_task.side_effect = NotFound("gone")
    assert task_queue.remove_task("t1") is False


def test_ensure_queue_creates_missing_queue(task_queue, tasks_client):
    tasks_client.get_queue.side_effect = NotFound("missing")

    task_queue.ensure_queue(QueueRetryPolicy(max_attempts=5))

    kwargs = tasks_client.create_queue.call_args.kwargs
    assert kwargs["parent"] == "projects/proj/locations/us-central1"
    assert kwargs["queue"]["retry_config"]["max_attempts"] == 5
    tasks_client.update_queue.assert_not_called()


def test_ensure_queue_updates_existing_queue(task_queue, tasks_client):
    task_queue.ensure_queue(QueueRetryPolicy())
    tasks_client.update_queue.assert_called_once()
    tasks_client.create_queue.assert_not_called()


def secret_client(value: bytes) -> MagicMock:
    client = MagicMock()
    client.access_secret_version.return_value.payload.data = value
    return client


def test_credentials_are_read_once_and_cached():
    client = secret_client(b'{"api_key": "k", "api_secret": "s"}')
    vault = SecretManagerService(project_id="proj", client=client)
    account = MarketplaceAccount(id="a1", marketplace_type=MarketplaceType.OZON)

    assert vault.get_account_credentials(account) == {"api_key": "k", "api_secret": "s"}
    vault.get_account_credentials(account)

    client.access_secret_version.assert_called_once_with(
        request={"name": f"projects/proj/secrets/{account_secret_name('a1')}/versions/latest"}
    )

    vault.invalidate()
    vault.get_account_credentials(account)
    assert client.access_secret_version.call_count == 2


def test_cached_credentials_expire():
    now = [1000.0]
    client = secret_client(b'{"api_key": "k"}')
    vault = SecretManagerService(project_id="proj", client=client, cache_ttl_seconds=60, clock=lambda: now[0])
    account = MarketplaceAccount(id="a1", marketplace_type=MarketplaceType.WILDBERRIES)

    vault.get_account_credentials(account)
    now[0] += 59
    vault.get_account_credentials(account)
    assert client.access_secret_version.call_count == 1

    now[0] += 1
    client.access_secret_version.return_value.payload.data = b'{"api_key": "rotated"}'
    assert vault.get_account_credentials(account) == {"api_key": "rotated"}
    assert client.access_secret_version.call_count == 2


def test_forgetting_credentials_refetches_only_that_account():
    client = secret_client(b'{"api_key": "k"}')
    vault = SecretManagerService(project_id="proj", client=client)
    first = MarketplaceAccount(id="a1", marketplace_type=MarketplaceType.OZON)
    second = MarketplaceAccount(id="a2", marketplace_type=MarketplaceType.OZON)
    vault.get_account_credentials(first)
    vault.get_account_credentials(second)

    vault.forget_account_credentials(first)
    vault.get_account_credentials(first)
    vault.get_account_credentials(second)

    assert client.access_secret_version.call_count == 3


@pytest.mark.parametrize("raw", [b"not json", b'["a list"]'])
def test_malformed_credentials(raw):
    vault = SecretManagerService(project_id="proj", client=secret_client(raw))
    with pytest.raises(ConfigurationError):
        vault.get_account_credentials(MarketplaceAccount(id="a1", marketplace_type=MarketplaceType.OZON))


def test_vault_requires_a_project(monkeypatch):
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    with pytest.raises(ValueError):
        SecretManagerService(client=MagicMock())


def test_find_account_by_api_key_skips_unreadable_accounts():
    secrets = {
        account_secret_name("broken"): RuntimeError("permission denied"),
        account_secret_name("wb"): b'{"api_key": "wb-key"}',
    }

    def access(request):
        value = secrets[request["name"].split("/")[3]]
        if isinstance(value, Exception):
            raise value
        return MagicMock(**{"payload.data": value})

    client = MagicMock()
    client.access_secret_version.side_effect = access
    vault = SecretManagerService(project_id="proj", client=client)
    accounts = [
        MarketplaceAccount(id="broken", marketplace_type=MarketplaceType.WILDBERRIES),
        MarketplaceAccount(id="wb", marketplace_type=MarketplaceType.WILDBERRIES),
    ]

    assert vault.find_account_by_api_key(accounts, "wb-key").id == "wb"
    assert vault.find_account_by_api_key(accounts, "other") is None


@pytest.fixture
def scheduler_client():
    client = MagicMock()
    client.get_job.side_effect = NotFound("missing")
    client.create_job.side_effect = lambda parent, job: named(job["name"])
    return client


def test_cadence_jobs_point_at_tick_endpoint(scheduler_client):
    scheduler = SchedulerService(project_id="proj", client=scheduler_client)

    jobs = scheduler.ensure_cadence_jobs("https://svc.example/", CadenceSchedule(stock="*/15 * * * *"))

    assert [j["cadence"] for j in jobs] == ["catch_up", "full_resync", "stock"]
    assert jobs[0]["job_path"] == "projects/proj/locations/us-central1/jobs/marketsync-tick-catch-up"
    assert jobs[1]["uri"] == "https://svc.example/api/v1/scheduler/ticks/full_resync"
    assert jobs[2]["schedule"] == "*/15 * * * *"
    assert scheduler_client.create_job.call_count == 3


def test_existing_cadence_job_is_updated(scheduler_client):
    scheduler_client.get_job.side_effect = None
    scheduler_client.update_job.return_value = named("projects/proj/jobs/x")
    scheduler = SchedulerService(project_id="proj", client=scheduler_client)

    result = scheduler.upsert_cadence(SyncCadence.STOCK, "*/30 * * * *", "https://svc.example")

    assert result["job_path"] == "projects/proj/jobs/x"
    scheduler_client.create_job.assert_not_called()


def test_list_and_delete_cadences(scheduler_client):
    def job(name):
        return named(f"projects/proj/locations/us-central1/jobs/{name}", **{
            "schedule": "0 * * * *",
            "time_zone": "UTC",
            "state.name": "ENABLED",
            "http_target.uri": "https://svc.example/api/v1/scheduler/ticks/catch_up",
            "last_attempt_time": None,
            "schedule_time": None,
        })

    scheduler_client.list_jobs.return_value = [job("marketsync-tick-catch-up"), job("unrelated-job")]
    scheduler = SchedulerService(project_id="proj", client=scheduler_client)

    listed = scheduler.list_cadences()
    assert [j["cadence"] for j in listed] == ["catch_up"]
    assert listed[0]["status"] == "ENABLED"

    assert scheduler.delete_cadence(SyncCadence.CATCH_UP) is True
    scheduler_client.delete_job.side_effect = NotFound("gone")
    assert scheduler.delete_cadence(SyncCadence.CATCH_UP) is False


@pytest.fixture
def firestore_client():
    client = MagicMock()
    client.project = "proj"
    return client


def test_sale_write_failure_is_a_storage_error(firestore_client):
    document = firestore_client.collection.return_value.document.return_value
    storage = FirestoreService(client=firestore_client)

    document.create.side_effect = AlreadyExists("exists")
    assert storage.create_sale_if_absent("s1", {"account_id": "a1"}) is False

    document.create.side_effect = ServiceUnavailable("firestore down")
    with pytest.raises(StorageError) as excinfo:
        storage.create_sale_if_absent("s1", {"account_id": "a1"})
    assert isinstance(excinfo.value.__cause__, ServiceUnavailable)


def test_upsert_failure_is_a_storage_error(firestore_client):
    document = firestore_client.collection.return_value.document.return_value
    document.set.side_effect = ServiceUnavailable("firestore down")
    storage = FirestoreService(client=firestore_client)

    with pytest.raises(StorageError) as excinfo:
        storage.upsert_stock("a1_sku", {"quantity": 3})
    assert "stock/a1_sku" in str(excinfo.value)

    with pytest.raises(StorageError):
        storage.increment_product_counters("a1_sku", "a1", 1, 10.0)
