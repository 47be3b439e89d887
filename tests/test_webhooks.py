import json

import pytest

from marketsync.exceptions import ConfigurationError, NotFoundError, WebhookSignatureError
from marketsync.models.account import MarketplaceAccount, MarketplaceType
from marketsync.models.webhook import WebhookEventStatus, WebhookEventType
from marketsync.services.webhooks import (
    WebhookService, classify_event, compute_signature, verify_signature
)

from conftest import NOW, FakeVault

BODY = json.dumps({"message_type": "TYPE_NEW_POSTING", "posting_number": "1-1-1"}).encode()


@pytest.fixture
def vault():
    return FakeVault({
        "acc-ozon": {"api_key": "12345", "api_secret": "ozon-secret"},
        "acc-wb": {"api_key": "wb-key"},
    })


@pytest.fixture
def webhooks(store, vault, ozon_account, wb_account):
    return WebhookService(store, vault, clock=lambda: NOW)


@pytest.mark.parametrize("marketplace, payload, expected", [
    (MarketplaceType.WILDBERRIES, {"eventType": "NEW_ORDER"}, WebhookEventType.ORDER_CREATED),
    (MarketplaceType.WILDBERRIES, {"type": "stock_updated"}, WebhookEventType.STOCK_UPDATED),
    (MarketplaceType.OZON, {"message_type": "TYPE_POSTING_CANCELLED"}, WebhookEventType.ORDER_CANCELLED),
    (MarketplaceType.YANDEX_MARKET, {"notificationType": "order_status_changed"}, WebhookEventType.ORDER_UPDATED),
    (MarketplaceType.OZON, {"message_type": "SOMETHING_NEW"}, WebhookEventType.CUSTOM),
    (MarketplaceType.OZON, ["not", "a", "dict"], WebhookEventType.CUSTOM),
])
def test_classify_event(marketplace, payload, expected):
    assert classify_event(marketplace, payload) == expected


def test_signature_from_other_secret_is_rejected():
    credentials = {"api_secret": "right"}
    good = {"x-ozon-signature": compute_signature("right", BODY)}
    bad = {"x-ozon-signature": compute_signature("wrong", BODY)}

    verify_signature(MarketplaceType.OZON, BODY, good, credentials)
    with pytest.raises(WebhookSignatureError):
        verify_signature(MarketplaceType.OZON, BODY, bad, credentials)
    with pytest.raises(WebhookSignatureError):
        verify_signature(MarketplaceType.OZON, BODY, {}, credentials)
    with pytest.raises(WebhookSignatureError):
        verify_signature(MarketplaceType.OZON, BODY + b" ", good, credentials)


def test_wildberries_bearer_prefix_and_key_fallback():
    headers = {"authorization": "Bearer " + compute_signature("wb-key", BODY)}
    verify_signature(MarketplaceType.WILDBERRIES, BODY, headers, {"api_key": "wb-key"})


def test_missing_signing_secret_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        verify_signature(MarketplaceType.OZON, BODY, {"x-ozon-signature": "abc"}, {"api_key": "only"})


def test_signed_webhook_is_stored_and_processed(webhooks, store):
    headers = {
        "X-Account-Id": "acc-ozon",
        "X-Ozon-Signature": compute_signature("ozon-secret", BODY),
    }

    result = webhooks.receive("ozon", BODY, headers)

    assert result["status"] == "received"
    assert result["result"] == "processed"
    assert result["type"] == "order_created"
    event = store.events[result["event_id"]]
    assert event.account_id == "acc-ozon"
    assert event.status == WebhookEventStatus.PROCESSED
    assert event.processed_at == NOW
    assert event.payload["posting_number"] == "1-1-1"


def test_bad_signature_stores_nothing(webhooks, store):
    headers = {"x-account-id": "acc-ozon", "x-ozon-signature": compute_signature("guess", BODY)}

    with pytest.raises(WebhookSignatureError):
        webhooks.receive("ozon", BODY, headers)
    assert store.events == {}


def test_account_resolved_by_api_key(webhooks, store):
    body = json.dumps({"type": "price_updated", "apiKey": "wb-key"}).encode()
    headers = {"x-signature": compute_signature("wb-key", body)}

    result = webhooks.receive("wildberries", body, headers)

    assert store.events[result["event_id"]].account_id == "acc-wb"
    assert result["type"] == "price_updated"


def test_account_of_other_marketplace_is_not_used(webhooks, store):
    body = json.dumps({"accountId": "acc-wb"}).encode()

    result = webhooks.receive("ozon", body, {})

    assert result["result"] == "account_not_found"
    assert store.events[result["event_id"]].status == WebhookEventStatus.IGNORED


def test_unresolved_webhook_is_ignored_not_rejected(webhooks, store):
    result = webhooks.receive("yandex_market", b"not json", {})

    assert result == {"status": "received", "result": "account_not_found", "event_id": result["event_id"]}
    event = store.events[result["event_id"]]
    assert event.error == "account_not_found"
    assert event.payload == {"raw": "not json"}


def test_unknown_marketplace(webhooks):
    with pytest.raises(NotFoundError):
        webhooks.receive("amazon", BODY, {})


def test_list_events(webhooks, store):
    headers = {"x-account-id": "acc-ozon", "x-ozon-signature": compute_signature("ozon-secret", BODY)}
    webhooks.receive("ozon", BODY, headers)
    store.add_account(MarketplaceAccount(id="acc-other", marketplace_type=MarketplaceType.OZON))

    assert len(webhooks.list_events("acc-ozon")) == 1
    assert webhooks.list_events("acc-other") == []
