from typing import Optional
from fastapi import APIRouter, Depends
from sqlmodel import Session
from ..auth import require_admin_access
from ..db import get_session
from ..lifecycle import ContractLifecycle, contract_to_dict
from ..repository import ContractRepository
from ..schemas import ContractCreate, VoidRequest

router = APIRouter()


@router.post("", status_code=201)
def create_contract(data: ContractCreate, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    contract, warnings = ContractLifecycle(session).create_contract(data, created_by=ctx.role)
    return {"contract": contract_to_dict(contract), "warnings": warnings}


@router.get("")
def list_contracts(
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    return [contract_to_dict(c) for c in ContractRepository(session).list_contracts(status=status, client_id=client_id)]


@router.get("/{contract_id}")
def get_contract(contract_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return contract_to_dict(ContractLifecycle(session).get_contract(contract_id))


@router.post("/{contract_id}/send")
def send_contract(contract_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return ContractLifecycle(session).send_contract(contract_id)


@router.post("/{contract_id}/resend")
def resend_contract(contract_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return ContractLifecycle(session).resend_contract(contract_id)


@router.post("/{contract_id}/void")
def void_contract(
    contract_id: int,
    payload: Optional[VoidRequest] = None,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    contract = ContractLifecycle(session).void_contract(contract_id, reason=payload.reason if payload else None)
    return contract_to_dict(contract)


@router.post("/{contract_id}/pdf")
def render_pdf(contract_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return ContractLifecycle(session).render_pdf(contract_id)


@router.get("/{contract_id}/pdf/verify")
def verify_pdf(contract_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return ContractLifecycle(session).verify_pdf(contract_id)


@router.get("/{contract_id}/events")
def get_events(contract_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return ContractLifecycle(session).get_events(contract_id)
