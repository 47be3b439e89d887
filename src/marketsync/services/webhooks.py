"""
Inbound marketplace webhooks: account resolution, signature verification,
classification and persistence.
"""

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..exceptions import ConfigurationError, NotFoundError, WebhookSignatureError
from ..models.account import MarketplaceAccount, MarketplaceType, utcnow
from ..models.webhook import WebhookEvent, WebhookEventStatus, WebhookEventType

logger = logging.getLogger(__name__)

WILDBERRIES_EVENTS = {
    "new_order": WebhookEventType.ORDER_CREATED,
    "order_created": WebhookEventType.ORDER_CREATED,
    "order_updated": WebhookEventType.ORDER_UPDATED,
    "order_status_changed": WebhookEventType.ORDER_UPDATED,
    "order_cancelled": WebhookEventType.ORDER_CANCELLED,
    "card_updated": WebhookEventType.PRODUCT_UPDATED,
    "product_updated": WebhookEventType.PRODUCT_UPDATED,
    "stock_updated": WebhookEventType.STOCK_UPDATED,
    "price_updated": WebhookEventType.PRICE_UPDATED,
    "feedback_created": WebhookEventType.REVIEW_RECEIVED,
    "review_received": WebhookEventType.REVIEW_RECEIVED,
}

OZON_EVENTS = {
    "TYPE_NEW_POSTING": WebhookEventType.ORDER_CREATED,
    "POSTING_FBS_CREATED": WebhookEventType.ORDER_CREATED,
    "TYPE_STATE_CHANGED": WebhookEventType.ORDER_UPDATED,
    "POSTING_FBS_CHANGED": WebhookEventType.ORDER_UPDATED,
    "TYPE_POSTING_CANCELLED": WebhookEventType.ORDER_CANCELLED,
    "POSTING_FBS_CANCELLED": WebhookEventType.ORDER_CANCELLED,
    "PRODUCT_PRICE_CHANGED": WebhookEventType.PRICE_UPDATED,
    "TYPE_PRICE_INDEX_CHANGED": WebhookEventType.PRICE_UPDATED,
    "PRODUCT_STOCK_CHANGED": WebhookEventType.STOCK_UPDATED,
    "TYPE_STOCKS_CHANGED": WebhookEventType.STOCK_UPDATED,
    "PRODUCT_INFO_CHANGED": WebhookEventType.PRODUCT_UPDATED,
    "TYPE_CREATE_OR_UPDATE_ITEM": WebhookEventType.PRODUCT_UPDATED,
}

YANDEX_MARKET_EVENTS = {
    "ORDER_CREATED": WebhookEventType.ORDER_CREATED,
    "ORDER_STATUS_CHANGED": WebhookEventType.ORDER_UPDATED,
    "ORDER_UPDATED": WebhookEventType.ORDER_UPDATED,
    "ORDER_CANCELLED": WebhookEventType.ORDER_CANCELLED,
    "STOCK_UPDATED": WebhookEventType.STOCK_UPDATED,
    "PRICE_UPDATED": WebhookEventType.PRICE_UPDATED,
    "PRODUCT_UPDATED": WebhookEventType.PRODUCT_UPDATED,
    "REVIEW_CREATED": WebhookEventType.REVIEW_RECEIVED,
}


def classify_event(marketplace_type: MarketplaceType, payload: Any) -> WebhookEventType:
    """Map a marketplace's event name onto the shared vocabulary; unknown names are CUSTOM."""
    if not isinstance(payload, dict):
        return WebhookEventType.CUSTOM

    if marketplace_type == MarketplaceType.WILDBERRIES:
        name = str(payload.get("eventType") or payload.get("type") or "").lower()
        return WILDBERRIES_EVENTS.get(name, WebhookEventType.CUSTOM)
    if marketplace_type == MarketplaceType.OZON:
        name = str(payload.get("message_type") or payload.get("type") or "").upper()
        return OZON_EVENTS.get(name, WebhookEventType.CUSTOM)
    if marketplace_type == MarketplaceType.YANDEX_MARKET:
        name = str(payload.get("notificationType") or payload.get("event") or "").upper()
        return YANDEX_MARKET_EVENTS.get(name, WebhookEventType.CUSTOM)
    return WebhookEventType.CUSTOM


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _signature_header(marketplace_type: MarketplaceType, headers: Mapping[str, str]) -> Optional[str]:
    if marketplace_type == MarketplaceType.WILDBERRIES:
        value = headers.get("x-signature") or headers.get("authorization")
        if value:
            for prefix in ("Bearer ", "WB "):
                if value.startswith(prefix):
                    value = value[len(prefix):]
        return value
    if marketplace_type == MarketplaceType.OZON:
        return headers.get("x-ozon-signature")
    if marketplace_type == MarketplaceType.YANDEX_MARKET:
        return headers.get("x-yandex-market-signature")
    return None


def _signing_secret(marketplace_type: MarketplaceType, credentials: Dict[str, Any]) -> Optional[str]:
    if marketplace_type == MarketplaceType.WILDBERRIES:
        return credentials.get("api_secret") or credentials.get("api_key")
    if marketplace_type == MarketplaceType.OZON:
        return credentials.get("api_secret")
    if marketplace_type == MarketplaceType.YANDEX_MARKET:
        return credentials.get("api_secret") or credentials.get("token")
    return None


def verify_signature(
    marketplace_type: MarketplaceType,
    body: bytes,
    headers: Mapping[str, str],
    credentials: Dict[str, Any],
) -> None:
    """
    Check the HMAC-SHA256 signature of a raw webhook body.

    Raises:
        ConfigurationError: If the account has no signing secret
        WebhookSignatureError: If the signature is missing or does not match
    """
    secret = _signing_secret(marketplace_type, credentials)
    if not secret:
        raise ConfigurationError(f"No webhook signing secret configured for {marketplace_type.value}")

    provided = _signature_header(marketplace_type, headers)
    if not provided:
        raise WebhookSignatureError("Missing webhook signature")

    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected, provided.strip().lower()):
        raise WebhookSignatureError("Invalid webhook signature")


class WebhookService:
    """Validates inbound webhooks and records them as events."""

    def __init__(self, storage, vault, clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.vault = vault
        self.clock = clock

    def resolve_account(
        self,
        marketplace_type: MarketplaceType,
        payload: Any,
        headers: Mapping[str, str],
    ) -> Optional[MarketplaceAccount]:
        """Find the owning account by explicit id, else by matching its API key."""
        body = payload if isinstance(payload, dict) else {}

        account_id = body.get("accountId") or body.get("account_id") or headers.get("x-account-id")
        if account_id:
            account = self.storage.get_account(str(account_id))
            if account is not None and account.marketplace_type == marketplace_type:
                return account
            logger.warning(f"Webhook names account {account_id}, which is not a {marketplace_type.value} account")

        api_key = body.get("apiKey") or body.get("api_key") or headers.get("x-api-key")
        if api_key:
            candidates = self.storage.list_accounts_by_marketplace(marketplace_type)
            return self.vault.find_account_by_api_key(candidates, str(api_key))
        return None

    def receive(
        self,
        marketplace_type: str,
        body: bytes,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        """
        Handle one inbound webhook.

        Returns:
            ``{"status": "received", "result": "processed" | "account_not_found", ...}``

        Raises:
            NotFoundError: For an unknown marketplace type
            WebhookSignatureError: On a missing or wrong signature; nothing is stored
        """
        try:
            marketplace = MarketplaceType(marketplace_type)
        except ValueError:
            raise NotFoundError(f"Unknown marketplace type: {marketplace_type}")

        headers = {k.lower(): v for k, v in headers.items()}
        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            payload = {"raw": body.decode("utf-8", errors="replace")}

        event_type = classify_event(marketplace, payload)
        account = self.resolve_account(marketplace, payload, headers)

        if account is None:
            event = WebhookEvent(
                id=str(uuid.uuid4()),
                marketplace_type=marketplace,
                type=event_type,
                status=WebhookEventStatus.IGNORED,
                payload=payload,
                error="account_not_found",
                created_at=self.clock(),
            )
            self.storage.create_webhook_event(event)
            logger.warning(f"{marketplace.value} webhook {event.id}: no matching account")
            return {"status": "received", "result": "account_not_found", "event_id": event.id}

        verify_signature(marketplace, body, headers, self.vault.get_account_credentials(account))

        event = WebhookEvent(
            id=str(uuid.uuid4()),
            account_id=account.id,
            marketplace_type=marketplace,
            type=event_type,
            status=WebhookEventStatus.PENDING,
            payload=payload,
            created_at=self.clock(),
        )
        self.storage.create_webhook_event(event)
        self.process_webhook_event(event.id)
        logger.info(f"{marketplace.value} webhook {event.id} ({event_type.value}) accepted for account {account.id}")
        return {
            "status": "received",
            "result": "processed",
            "event_id": event.id,
            "type": event_type.value,
        }

    def process_webhook_event(self, event_id: str) -> None:
        self.storage.update_webhook_event(event_id, {
            "status": WebhookEventStatus.PROCESSED,
            "processed_at": self.clock(),
        })

    def list_events(self, account_id: str, limit: int = 50) -> List[WebhookEvent]:
        return self.storage.list_webhook_events(account_id, limit=limit)
