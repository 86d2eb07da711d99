import logging
from celery import Celery
from sqlmodel import Session
from .config import REDIS_URL, WORKER_QUEUE
from .db import engine
from .envelopes import EnvelopeService
from .lifecycle import ContractLifecycle
from .webhooks import WebhookService

logger = logging.getLogger(__name__)

cel = Celery("contracts", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "expire-contracts": {"task": "expire_contracts", "schedule": 300.0},
    "expiry-reminders": {"task": "send_expiry_reminders", "schedule": 3600.0},
    "retry-webhooks": {"task": "retry_webhook_deliveries", "schedule": 60.0},
}


@cel.task(name="expire_contracts", queue=WORKER_QUEUE)
def expire_contracts():
    with Session(engine) as session:
        contracts = ContractLifecycle(session).expire_due()
        envelopes = EnvelopeService(session).expire_due()
    logger.info("expiry sweep: %d contracts, %d envelopes", len(contracts), len(envelopes))
    return {"contracts": contracts, "envelopes": envelopes}


@cel.task(name="send_expiry_reminders", queue=WORKER_QUEUE)
def send_expiry_reminders():
    with Session(engine) as session:
        reminded = ContractLifecycle(session).send_expiry_reminders()
    return {"reminded": reminded}


@cel.task(name="retry_webhook_deliveries", queue=WORKER_QUEUE)
def retry_webhook_deliveries():
    with Session(engine) as session:
        return WebhookService(session).retry_due()
