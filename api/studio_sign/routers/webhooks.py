from fastapi import APIRouter, Depends
from sqlmodel import Session
from ..auth import require_admin_access
from ..db import get_session
from ..schemas import WebhookEndpointCreate
from ..webhooks import WebhookService, delivery_to_dict, endpoint_to_dict

router = APIRouter()


@router.post("", status_code=201)
def register_endpoint(data: WebhookEndpointCreate, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return endpoint_to_dict(WebhookService(session).register(data))


@router.get("")
def list_endpoints(session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return [endpoint_to_dict(e) for e in WebhookService(session).list_endpoints()]


@router.post("/deliveries/retry")
def retry_deliveries(session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return WebhookService(session).retry_due()


@router.get("/{endpoint_id}/deliveries")
def list_deliveries(endpoint_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return [delivery_to_dict(d) for d in WebhookService(session).list_deliveries(endpoint_id)]
