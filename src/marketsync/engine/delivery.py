"""
Outbound webhook delivery with capped exponential backoff.

Each attempt is one queued task. A failed attempt schedules the next one
with a delay of ``min(base * 2**attempt, cap)`` until ``max_attempts`` is
reached; then the event is FAILED for good. The delivery queue itself is
configured without automatic retries, so this is the only retry loop.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

import requests

from ..core.config import DeliveryRetryPolicy
from ..models.account import utcnow
from ..models.webhook import (
    WebhookDeliveryJob, WebhookEvent, WebhookEventStatus, WebhookEventType
)

logger = logging.getLogger(__name__)

DELIVERY_TASK = "retry-webhook"


def compute_retry_delay(attempt: int, base_delay_ms: int = 1000, max_delay_ms: int = 60000) -> int:
    """Delay in milliseconds after failed attempt number ``attempt`` (0-based)."""
    return min(base_delay_ms * (2 ** attempt), max_delay_ms)


def _response_body(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return (response.text or "")[:1000]


class WebhookDeliveryProcessor:
    """Delivers outbound webhooks and keeps the full attempt history on the event."""

    def __init__(
        self,
        storage,
        queue,
        policy: Optional[DeliveryRetryPolicy] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.queue = queue
        self.policy = policy or DeliveryRetryPolicy()
        self.session = session or requests.Session()
        self.clock = clock

    def schedule_delivery(
        self,
        url: str,
        payload: Any,
        headers: Optional[Dict[str, str]] = None,
        account_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> WebhookEvent:
        """Record an outbound event and enqueue its first attempt."""
        max_attempts = max_attempts or self.policy.max_attempts
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            account_id=account_id,
            type=WebhookEventType.CUSTOM,
            status=WebhookEventStatus.PENDING,
            payload=payload,
            max_retries=max_attempts,
            target_url=url,
        )
        self.storage.create_webhook_event(event)
        job = WebhookDeliveryJob(
            webhook_event_id=event.id,
            url=url,
            payload=payload,
            headers=headers or {},
            attempt=0,
            max_attempts=max_attempts,
        )
        self.queue.add(DELIVERY_TASK, job.model_dump(mode="json"), task_id=f"{event.id}-0")
        logger.info(f"Scheduled delivery of event {event.id} to {url}")
        return event

    def handle(self, job: Union[WebhookDeliveryJob, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Run one delivery attempt.

        Returns:
            ``delivered``, ``retry_scheduled`` (with ``delay_ms``) or ``failed``
        """
        if not isinstance(job, WebhookDeliveryJob):
            job = WebhookDeliveryJob(**job)

        event = self.storage.get_webhook_event(job.webhook_event_id)
        if event is None:
            logger.warning(f"Webhook event {job.webhook_event_id} not found, dropping delivery")
            return {"event_id": job.webhook_event_id, "status": "skipped"}
        if event.status in (WebhookEventStatus.DELIVERED, WebhookEventStatus.FAILED):
            logger.info(f"Webhook event {event.id} already {event.status.value}")
            return {"event_id": event.id, "status": "skipped"}

        attempted_at = self.clock()
        status_code: Optional[int] = None
        body: Any = None
        error: Optional[str] = None

        try:
            response = self.session.post(
                job.url, json=job.payload, headers=job.headers, timeout=self.policy.timeout_seconds
            )
            status_code = response.status_code
            body = _response_body(response)
            if status_code >= 400:
                error = f"HTTP {status_code}"
        except requests.exceptions.RequestException as e:
            error = str(e) or e.__class__.__name__

        history = list(event.delivery_history) + [{
            "attempt": job.attempt,
            "attempted_at": attempted_at,
            "status_code": status_code,
            "error": error,
        }]

        if error is None:
            self.storage.update_webhook_event(event.id, {
                "status": WebhookEventStatus.DELIVERED,
                "response_status": status_code,
                "response_data": body,
                "delivered_at": attempted_at,
                "retry_count": job.attempt,
                "delivery_history": history,
            })
            logger.info(f"Delivered webhook event {event.id} on attempt {job.attempt + 1}")
            return {"event_id": event.id, "status": WebhookEventStatus.DELIVERED.value}

        attempts_made = job.attempt + 1
        if attempts_made < job.max_attempts:
            delay_ms = compute_retry_delay(job.attempt, self.policy.base_delay_ms, self.policy.max_delay_ms)
            self.storage.update_webhook_event(event.id, {
                "status": WebhookEventStatus.PENDING,
                "retry_count": attempts_made,
                "last_error": error,
                "response_status": status_code,
                "response_data": body,
                "delivery_history": history,
            })
            next_job = job.model_copy(update={"attempt": attempts_made})
            self.queue.add(
                DELIVERY_TASK,
                next_job.model_dump(mode="json"),
                task_id=f"{event.id}-{attempts_made}",
                delay_ms=delay_ms,
            )
            logger.warning(
                f"Delivery of event {event.id} failed ({error}), retry {attempts_made}/"
                f"{job.max_attempts - 1} in {delay_ms} ms"
            )
            return {"event_id": event.id, "status": "retry_scheduled", "delay_ms": delay_ms}

        self.storage.update_webhook_event(event.id, {
            "status": WebhookEventStatus.FAILED,
            "retry_count": attempts_made,
            "error": error,
            "last_error": error,
            "response_status": status_code,
            "response_data": body,
            "delivery_history": history,
        })
        logger.error(f"Delivery of event {event.id} failed permanently after {attempts_made} attempts: {error}")
        return {"event_id": event.id, "status": WebhookEventStatus.FAILED.value}
