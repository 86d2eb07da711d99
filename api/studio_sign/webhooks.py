import logging
import time
from datetime import datetime, timedelta
from typing import List, Optional
import httpx
from sqlalchemy import update
from sqlmodel import Session, select
from .config import (
    WEBHOOK_CLAIM_MARGIN_SECONDS, WEBHOOK_MAX_RETRIES, WEBHOOK_RETRY_BACKOFF_SECONDS, WEBHOOK_SWEEP_BATCH,
    WEBHOOK_TIMEOUT_SECONDS,
)
from .errors import NotFound
from .models import DeliveryStatus, WebhookDelivery, WebhookEndpoint
from .schemas import WebhookEndpointCreate
from .utils import canonical_json, hmac_sha256, load_json, random_token, utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "Kori-Webhooks/1.0"
RESPONSE_BODY_LIMIT = 1000


def retry_delay(backoff_seconds: int, attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failures: backoff * 2^(attempts-1)."""
    return timedelta(seconds=backoff_seconds * (2 ** max(attempts - 1, 0)))


def _subscribed(endpoint: WebhookEndpoint, event_type: str) -> bool:
    events = load_json(endpoint.events_json, [])
    return not events or "*" in events or event_type in events


class WebhookService:
    def __init__(self, session: Session, client: Optional[httpx.Client] = None):
        self.session = session
        self.client = client

    # ---------- endpoints ----------

    def register(self, data: WebhookEndpointCreate) -> WebhookEndpoint:
        endpoint = WebhookEndpoint(
            url=data.url,
            secret=data.secret,
            events_json=canonical_json(sorted(set(data.events))),
            headers_json=canonical_json(data.headers),
            max_retries=data.max_retries or WEBHOOK_MAX_RETRIES,
            retry_backoff_seconds=data.retry_backoff_seconds or WEBHOOK_RETRY_BACKOFF_SECONDS,
            timeout_seconds=data.timeout_seconds or WEBHOOK_TIMEOUT_SECONDS,
        )
        self.session.add(endpoint)
        self.session.commit()
        self.session.refresh(endpoint)
        logger.info("webhook endpoint %s registered for %s", endpoint.id, endpoint.url)
        return endpoint

    def list_endpoints(self) -> List[WebhookEndpoint]:
        return list(self.session.exec(select(WebhookEndpoint).order_by(WebhookEndpoint.id)).all())

    def list_deliveries(self, endpoint_id: int) -> List[WebhookDelivery]:
        if not self.session.get(WebhookEndpoint, endpoint_id):
            raise NotFound(f"webhook endpoint {endpoint_id} not found")
        return list(self.session.exec(
            select(WebhookDelivery)
            .where(WebhookDelivery.endpoint_id == endpoint_id)
            .order_by(WebhookDelivery.id.desc())
        ).all())

    # ---------- fan-out ----------

    def emit(self, event_type: str, data: dict, event_id: Optional[str] = None) -> List[WebhookDelivery]:
        """Queue one delivery per subscribed endpoint. Never raises."""
        try:
            now = utcnow()
            event_id = event_id or random_token(16)
            payload = canonical_json({"event": event_type, "id": event_id, "timestamp": now.isoformat() + "Z", "data": data})
            endpoints = self.session.exec(
                select(WebhookEndpoint).where(WebhookEndpoint.is_active == True)  # noqa: E712
            ).all()
            deliveries = []
            for endpoint in endpoints:
                if not _subscribed(endpoint, event_type):
                    continue
                delivery = WebhookDelivery(
                    endpoint_id=endpoint.id,
                    event_type=event_type,
                    event_id=event_id,
                    payload_json=payload,
                    max_attempts=endpoint.max_retries,
                    next_retry_at=now,
                )
                self.session.add(delivery)
                deliveries.append(delivery)
            self.session.commit()
            if deliveries:
                logger.info("queued %d webhook deliveries for %s", len(deliveries), event_type)
            return deliveries
        except Exception:
            logger.exception("could not queue webhook %s", event_type)
            self.session.rollback()
            return []

    # ---------- delivery ----------

    def _claim(self, delivery_id: int, now: datetime) -> bool:
        result = self.session.exec(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id, WebhookDelivery.status == DeliveryStatus.PENDING.value)
            .values(status=DeliveryStatus.SENDING.value, last_attempt_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def _post(self, endpoint: WebhookEndpoint, delivery: WebhookDelivery) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Delivery": str(delivery.id),
        }
        headers.update(load_json(endpoint.headers_json, {}))
        if endpoint.secret:
            headers["X-Webhook-Signature"] = f"sha256={hmac_sha256(endpoint.secret, delivery.payload_json)}"
        if self.client is not None:
            return self.client.post(endpoint.url, content=delivery.payload_json, headers=headers,
                                    timeout=endpoint.timeout_seconds)
        with httpx.Client() as client:
            return client.post(endpoint.url, content=delivery.payload_json, headers=headers,
                               timeout=endpoint.timeout_seconds)

    def attempt_delivery(self, delivery_id: int, now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
        """One POST attempt. Returns None when another worker already holds the delivery."""
        now = now or utcnow()
        if not self._claim(delivery_id, now):
            return None
        delivery = self.session.get(WebhookDelivery, delivery_id, populate_existing=True)
        endpoint = self.session.get(WebhookEndpoint, delivery.endpoint_id)

        ok = False
        delivery.response_status = None
        delivery.response_body = None
        if not endpoint or not endpoint.is_active:
            delivery.error = "endpoint inactive"
            delivery.attempts = delivery.max_attempts
        else:
            started = time.monotonic()
            try:
                resp = self._post(endpoint, delivery)
                delivery.response_status = resp.status_code
                delivery.response_body = resp.text[:RESPONSE_BODY_LIMIT]
                ok = 200 <= resp.status_code < 300
                delivery.error = None if ok else f"HTTP {resp.status_code}"
            except httpx.HTTPError as exc:
                delivery.error = str(exc) or exc.__class__.__name__
            except Exception as exc:
                logger.exception("webhook delivery %s could not be sent", delivery.id)
                delivery.error = f"{exc.__class__.__name__}: {exc}"
            delivery.response_time_ms = int((time.monotonic() - started) * 1000)
            delivery.attempts += 1

        if ok:
            delivery.status = DeliveryStatus.SUCCEEDED.value
            delivery.succeeded_at = now
            delivery.next_retry_at = None
            endpoint.last_success_at = now
            endpoint.consecutive_failures = 0
        else:
            if delivery.attempts >= delivery.max_attempts:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.failed_at = now
                delivery.next_retry_at = None
            else:
                delivery.status = DeliveryStatus.PENDING.value
                delivery.next_retry_at = now + retry_delay(endpoint.retry_backoff_seconds, delivery.attempts)
            if endpoint:
                endpoint.last_failure_at = now
                endpoint.failure_count += 1
                endpoint.consecutive_failures += 1
            logger.warning(
                "webhook delivery %s to endpoint %s failed (attempt %s/%s): %s",
                delivery.id, delivery.endpoint_id, delivery.attempts, delivery.max_attempts, delivery.error,
            )
        self.session.add(delivery)
        if endpoint:
            self.session.add(endpoint)
        self.session.commit()
        self.session.refresh(delivery)
        return delivery

    def reclaim_stale(self, now: Optional[datetime] = None) -> List[int]:
        """Put SENDING deliveries whose worker outlived the endpoint timeout back in the queue."""
        now = now or utcnow()
        rows = self.session.exec(
            select(WebhookDelivery, WebhookEndpoint)
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.endpoint_id)
            .where(WebhookDelivery.status == DeliveryStatus.SENDING.value)
        ).all()
        reclaimed = []
        for delivery, endpoint in rows:
            grace = timedelta(seconds=(endpoint.timeout_seconds or WEBHOOK_TIMEOUT_SECONDS) + WEBHOOK_CLAIM_MARGIN_SECONDS)
            if delivery.last_attempt_at and delivery.last_attempt_at + grace > now:
                continue
            result = self.session.exec(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery.id,
                    WebhookDelivery.status == DeliveryStatus.SENDING.value,
                    WebhookDelivery.last_attempt_at == delivery.last_attempt_at,
                )
                .values(status=DeliveryStatus.PENDING.value, next_retry_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                reclaimed.append(delivery.id)
        self.session.commit()
        if reclaimed:
            logger.warning("reclaimed %d stuck webhook deliveries: %s", len(reclaimed), reclaimed)
        return reclaimed

    def retry_due(self, now: Optional[datetime] = None, limit: int = WEBHOOK_SWEEP_BATCH) -> dict:
        now = now or utcnow()
        self.reclaim_stale(now)
        ids = self.session.exec(
            select(WebhookDelivery.id)
            .where(
                WebhookDelivery.status == DeliveryStatus.PENDING.value,
                WebhookDelivery.next_retry_at != None,  # noqa: E711
                WebhookDelivery.next_retry_at <= now,
            )
            .order_by(WebhookDelivery.next_retry_at)
            .limit(limit)
        ).all()
        summary = {"attempted": 0, "succeeded": 0, "failed": 0, "pending": 0}
        for delivery_id in ids:
            try:
                delivery = self.attempt_delivery(delivery_id, now=now)
            except Exception:
                # left SENDING; reclaim_stale requeues it on a later sweep
                logger.exception("webhook delivery %s aborted", delivery_id)
                self.session.rollback()
                continue
            if delivery is None:
                continue
            summary["attempted"] += 1
            if delivery.status == DeliveryStatus.SUCCEEDED.value:
                summary["succeeded"] += 1
            elif delivery.status == DeliveryStatus.FAILED.value:
                summary["failed"] += 1
            else:
                summary["pending"] += 1
        return summary


def endpoint_to_dict(endpoint: WebhookEndpoint) -> dict:
    return {
        "id": endpoint.id,
        "url": endpoint.url,
        "events": load_json(endpoint.events_json, []),
        "is_active": endpoint.is_active,
        "has_secret": bool(endpoint.secret),
        "max_retries": endpoint.max_retries,
        "retry_backoff_seconds": endpoint.retry_backoff_seconds,
        "timeout_seconds": endpoint.timeout_seconds,
        "last_success_at": endpoint.last_success_at,
        "last_failure_at": endpoint.last_failure_at,
        "failure_count": endpoint.failure_count,
        "consecutive_failures": endpoint.consecutive_failures,
    }


def delivery_to_dict(delivery: WebhookDelivery) -> dict:
    return {
        "id": delivery.id,
        "endpoint_id": delivery.endpoint_id,
        "event_type": delivery.event_type,
        "event_id": delivery.event_id,
        "status": delivery.status,
        "attempts": delivery.attempts,
        "max_attempts": delivery.max_attempts,
        "next_retry_at": delivery.next_retry_at,
        "last_attempt_at": delivery.last_attempt_at,
        "response_status": delivery.response_status,
        "response_time_ms": delivery.response_time_ms,
        "error": delivery.error,
    }
