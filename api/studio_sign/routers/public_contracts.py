from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from sqlmodel import Session
from ..db import get_session
from ..lifecycle import ContractLifecycle, contract_to_dict
from ..schemas import DeclineRequest, OtpRequest, OtpVerify, SignRequest
from ..signature import SignatureService

router = APIRouter()


def _client_meta(request: Request):
    return (request.client.host if request.client else None), request.headers.get("user-agent")


@router.get("/contract/{token}")
def open_magic_link(token: str, session: Session = Depends(get_session)):
    return ContractLifecycle(session).open_magic_link(token)


@router.post("/contract/{token}/open")
def redeem_magic_link(token: str, request: Request, session: Session = Depends(get_session)):
    ip, ua = _client_meta(request)
    return ContractLifecycle(session).redeem_magic_link(token, ip=ip, user_agent=ua)


@router.post("/contract/{token}/otp")
def request_otp(token: str, payload: OtpRequest, request: Request, session: Session = Depends(get_session)):
    ip, _ = _client_meta(request)
    return ContractLifecycle(session).request_otp(token, payload.email, ip=ip)


@router.post("/contract/{token}/otp/verify")
def verify_otp(token: str, payload: OtpVerify, request: Request, session: Session = Depends(get_session)):
    ip, ua = _client_meta(request)
    return ContractLifecycle(session).verify_otp(token, payload.code, ip=ip, user_agent=ua)


@router.post("/contracts/{contract_id}/sign")
def sign_contract(
    contract_id: int,
    payload: SignRequest,
    request: Request,
    x_signer_session: Optional[str] = Header(default=None, alias="X-Signer-Session"),
    session: Session = Depends(get_session),
):
    ip, ua = _client_meta(request)
    return SignatureService(session).sign_contract(contract_id, x_signer_session, payload, ip=ip, user_agent=ua)


@router.post("/contracts/{contract_id}/decline")
def decline_contract(
    contract_id: int,
    request: Request,
    payload: Optional[DeclineRequest] = None,
    x_signer_session: Optional[str] = Header(default=None, alias="X-Signer-Session"),
    session: Session = Depends(get_session),
):
    ip, ua = _client_meta(request)
    contract = ContractLifecycle(session).decline_contract(
        contract_id, x_signer_session, reason=payload.reason if payload else None, ip=ip, user_agent=ua,
    )
    return {"ok": True, "contract": contract_to_dict(contract)}
