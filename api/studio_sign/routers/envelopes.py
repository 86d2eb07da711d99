from typing import Optional
from fastapi import APIRouter, Depends, File, UploadFile
from sqlmodel import Session
from ..auth import require_admin_access
from ..db import get_session
from ..envelopes import EnvelopeService, envelope_to_dict
from ..schemas import EnvelopeCreate, VoidRequest

router = APIRouter()


@router.post("", status_code=201)
def create_envelope(data: EnvelopeCreate, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    svc = EnvelopeService(session)
    env = svc.create(data, created_by=ctx.role)
    return envelope_to_dict(env, svc.signers(env.id))


@router.get("/{envelope_id}")
def get_envelope(envelope_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    svc = EnvelopeService(session)
    env = svc.get(envelope_id)
    return envelope_to_dict(env, svc.signers(env.id))


@router.post("/{envelope_id}/document")
async def attach_document(
    envelope_id: int,
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    content = await file.read()
    svc = EnvelopeService(session)
    env = svc.attach_document(envelope_id, content)
    return envelope_to_dict(env, svc.signers(env.id))


@router.post("/{envelope_id}/send")
def send_envelope(envelope_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return EnvelopeService(session).send(envelope_id)


@router.post("/{envelope_id}/void")
def void_envelope(
    envelope_id: int,
    payload: Optional[VoidRequest] = None,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    svc = EnvelopeService(session)
    env = svc.void(envelope_id, reason=payload.reason if payload else None)
    return envelope_to_dict(env, svc.signers(env.id))
