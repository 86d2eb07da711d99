import logging
from typing import Iterable, List, Optional
from sqlalchemy import update
from sqlmodel import Session, select
from .errors import NotFound
from .models import AuditLog, Client, Contract, ContractEvent, ContractStatus, ContractTemplate
from .utils import GENESIS_HASH, canonical_json, load_json, sha256_text, utcnow

logger = logging.getLogger(__name__)


def event_digest(prev_hash: str, type_: str, meta: dict, at) -> str:
    return sha256_text(prev_hash + canonical_json({"type": type_, "meta": meta, "at": at.isoformat()}))


class ContractRepository:
    """Persistence for contracts and their append-only trails.

    Writes never commit; the calling service owns the transaction so a status
    change and the events describing it land together.
    """

    def __init__(self, session: Session):
        self.session = session

    # ---------- reads ----------

    def get_contract(self, contract_id: int) -> Contract:
        contract = self.session.get(Contract, contract_id, populate_existing=True)
        if not contract:
            raise NotFound(f"contract {contract_id} not found")
        return contract

    def find_by_token(self, token: str) -> Optional[Contract]:
        if not token:
            return None
        return self.session.exec(
            select(Contract).where(Contract.magic_link_token == token).execution_options(populate_existing=True)
        ).first()

    def get_client(self, client_id: Optional[int]) -> Optional[Client]:
        if client_id is None:
            return None
        return self.session.get(Client, client_id)

    def get_template(self, template_id: int) -> Optional[ContractTemplate]:
        return self.session.get(ContractTemplate, template_id)

    def next_contract_number(self, year: int) -> str:
        prefix = f"CONT-{year}-"
        numbers = self.session.exec(
            select(Contract.contract_number).where(Contract.contract_number.startswith(prefix))
        ).all()
        highest = 0
        for number in numbers:
            try:
                highest = max(highest, int(number[len(prefix):]))
            except ValueError:
                continue
        return f"{prefix}{highest + 1:03d}"

    def list_contracts(self, status: Optional[str] = None, client_id: Optional[int] = None) -> List[Contract]:
        stmt = select(Contract)
        if status:
            stmt = stmt.where(Contract.status == status)
        if client_id is not None:
            stmt = stmt.where(Contract.client_id == client_id)
        return list(self.session.exec(stmt.order_by(Contract.id.desc())).all())

    # ---------- conditional writes ----------

    def update_if(
        self,
        contract_id: int,
        allowed_from: Iterable[ContractStatus],
        extra_where: tuple = (),
        **values,
    ) -> bool:
        """UPDATE ... WHERE id = ? AND status IN (...); True when exactly one row changed."""
        statuses = [ContractStatus(s).value for s in allowed_from]
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(Contract)
            .where(Contract.id == contract_id, Contract.status.in_(statuses), *extra_where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        return result.rowcount == 1

    def transition(
        self,
        contract_id: int,
        allowed_from: Iterable[ContractStatus],
        to_status: ContractStatus,
        extra_where: tuple = (),
        **values,
    ) -> bool:
        ok = self.update_if(contract_id, allowed_from, extra_where, status=ContractStatus(to_status).value, **values)
        if ok:
            logger.info("contract %s -> %s", contract_id, ContractStatus(to_status).value)
        return ok

    # ---------- trails ----------

    def append_event(
        self,
        contract_id: int,
        type_: str,
        meta: Optional[dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ContractEvent:
        meta = meta or {}
        type_ = getattr(type_, "value", type_)
        last = self.session.exec(
            select(ContractEvent).where(ContractEvent.contract_id == contract_id).order_by(ContractEvent.id.desc())
        ).first()
        prev_hash = last.hash if last and last.hash else GENESIS_HASH
        at = utcnow()
        if last and at < last.at:
            at = last.at
        event = ContractEvent(
            contract_id=contract_id,
            type=type_,
            meta_json=canonical_json(meta),
            ip=ip,
            user_agent=user_agent,
            at=at,
            prev_hash=prev_hash,
            hash=event_digest(prev_hash, type_, meta, at),
        )
        self.session.add(event)
        self.session.flush()
        return event

    def append_audit(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[int],
        actor: str = "system",
        client_id: Optional[int] = None,
        meta: Optional[dict] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLog:
        row = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            client_id=client_id,
            actor=actor,
            meta_json=canonical_json(meta or {}),
            ip=ip,
            user_agent=user_agent,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def list_events(self, contract_id: int) -> List[ContractEvent]:
        return list(self.session.exec(
            select(ContractEvent)
            .where(ContractEvent.contract_id == contract_id)
            .order_by(ContractEvent.at, ContractEvent.id)
        ).all())

    def list_audit(self, entity_type: str, entity_id: int) -> List[AuditLog]:
        return list(self.session.exec(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.at, AuditLog.id)
        ).all())

    def verify_chain(self, contract_id: int) -> bool:
        prev_hash = GENESIS_HASH
        for ev in self.list_events(contract_id):
            if ev.prev_hash != prev_hash:
                return False
            if ev.hash != event_digest(prev_hash, ev.type, load_json(ev.meta_json, {}), ev.at):
                return False
            prev_hash = ev.hash
        return True


def event_to_dict(ev: ContractEvent) -> dict:
    return {
        "id": ev.id,
        "type": ev.type,
        "meta": load_json(ev.meta_json, {}),
        "ip": ev.ip,
        "user_agent": ev.user_agent,
        "at": ev.at,
        "prev_hash": ev.prev_hash,
        "hash": ev.hash,
    }


def audit_to_dict(row: AuditLog) -> dict:
    return {
        "id": row.id,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "client_id": row.client_id,
        "actor": row.actor,
        "meta": load_json(row.meta_json, {}),
        "ip": row.ip,
        "at": row.at,
    }
