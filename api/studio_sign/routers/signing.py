from typing import Optional
from fastapi import APIRouter, Depends, Request
from sqlmodel import Session
from ..db import get_session
from ..envelopes import EnvelopeService
from ..schemas import EnvelopeDecline, EnvelopeSign

router = APIRouter()


@router.get("/{token}")
def load_signing_session(token: str, request: Request, session: Session = Depends(get_session)):
    ip = request.client.host if request.client else None
    return EnvelopeService(session).load_for_signer(token, ip=ip, user_agent=request.headers.get("user-agent"))


@router.post("/{token}/complete")
def complete_signing(token: str, payload: EnvelopeSign, request: Request, session: Session = Depends(get_session)):
    ip = request.client.host if request.client else None
    return EnvelopeService(session).sign_as_signer(token, payload, ip=ip, user_agent=request.headers.get("user-agent"))


@router.post("/{token}/decline")
def decline_signing(
    token: str,
    request: Request,
    payload: Optional[EnvelopeDecline] = None,
    session: Session = Depends(get_session),
):
    ip = request.client.host if request.client else None
    return EnvelopeService(session).decline_as_signer(
        token, reason=payload.reason if payload else None, ip=ip, user_agent=request.headers.get("user-agent"),
    )
