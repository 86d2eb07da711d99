"""Contract lifecycle: DRAFT -> SENT -> VIEWED -> SIGNED | DECLINED | EXPIRED | VOIDED.

Every status change goes through ``ContractRepository.transition``, a single
conditional UPDATE. When it touches no row the caller lost a race (or asked
for an illegal edge) and the transaction is rolled back untouched.
"""
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional
from sqlalchemy import and_, func, or_
from sqlmodel import Session, select
from . import storage
from . import email_templates
from .config import (
    ADMIN_EMAIL, BRAND_NAME, MAGIC_LINK_TTL_HOURS, OTP_MAX_ATTEMPTS, OTP_TTL_MINUTES, PUBLIC_URL,
    REMINDER_WINDOW_HOURS, SECRET_KEY, SIGNER_SESSION_TTL_MINUTES,
)
from .errors import (
    AlreadyDeclined, AlreadySigned, AuthorizationError, EmailMismatch, IntegrationFailure,
    InvalidSession, InvalidState, InvalidToken, NotFound, TokenConsumed, TokenExpired,
)
from .models import OPEN_STATUSES, TERMINAL_STATUSES, Client, Contract, ContractStatus, EventType
from .notifications import Notifier
from .repository import ContractRepository, audit_to_dict, event_to_dict
from .schemas import ContractCreate
from .stamping import render_contract_pdf
from .template_store import apply_defaults, check_variables, parse_schema
from .templating import render
from .utils import canonical_json, hmac_sha256, load_json, otp_code, random_token, sha256_bytes, tokens_equal, utcnow
from .webhooks import WebhookService

logger = logging.getLogger(__name__)

LINKED_STATUSES = (ContractStatus.SENT, ContractStatus.VIEWED)


def magic_link_url(token: str) -> str:
    return f"{PUBLIC_URL}/contract/sign/{token}"


def hash_otp(contract_id: int, code: str) -> str:
    return hmac_sha256(SECRET_KEY, f"otp:{contract_id}:{code}")


def client_context(client: Optional[Client]) -> dict:
    if not client:
        return {}
    return {"name": client.name, "email": client.email, "phone": client.phone or "", "company": client.company or ""}


def contract_to_dict(contract: Contract) -> dict:
    return {
        "id": contract.id,
        "contract_number": contract.contract_number,
        "title": contract.title,
        "client_id": contract.client_id,
        "template_id": contract.template_id,
        "template_version": contract.template_version,
        "proposal_id": contract.proposal_id,
        "status": contract.status,
        "body_html": contract.body_html,
        "variables": load_json(contract.variables_json, {}),
        "pdf_path": contract.pdf_path,
        "pdf_hash": contract.pdf_hash,
        "sign_by_at": contract.sign_by_at,
        "require_otp": contract.require_otp,
        "magic_link_expires_at": contract.magic_link_expires_at,
        "sent_at": contract.sent_at,
        "viewed_at": contract.viewed_at,
        "signed_at": contract.signed_at,
        "declined_at": contract.declined_at,
        "voided_at": contract.voided_at,
        "expired_at": contract.expired_at,
        "voided_reason": contract.voided_reason,
        "created_at": contract.created_at,
        "updated_at": contract.updated_at,
    }


def public_summary(contract: Contract, client: Optional[Client]) -> dict:
    return {
        "id": contract.id,
        "contractNumber": contract.contract_number,
        "title": contract.title,
        "status": contract.status,
        "bodyHtml": contract.body_html,
        "clientName": client.name if client else None,
        "signByAt": contract.sign_by_at,
        "expiresAt": contract.magic_link_expires_at,
        "requiresOtp": contract.require_otp,
        "hasPdf": bool(contract.pdf_path),
    }


def check_signer_session(contract: Contract, session_id: Optional[str], now: datetime):
    if not tokens_equal(contract.signer_session_id, session_id):
        raise InvalidSession("signing session is missing or does not match")
    if not contract.signer_session_expires_at or contract.signer_session_expires_at < now:
        raise InvalidSession("signing session expired; reopen the link")


class ContractLifecycle:
    def __init__(self, session: Session, notifier: Optional[Notifier] = None, webhooks: Optional[WebhookService] = None):
        self.session = session
        self.repo = ContractRepository(session)
        self.notifier = notifier or Notifier()
        self.webhooks = webhooks or WebhookService(session)

    # ---------- helpers ----------

    def _render_snapshot(self, contract: Contract, client: Optional[Client]) -> tuple:
        template = self.repo.get_template(contract.template_id)
        if not template:
            raise NotFound(f"template {contract.template_id} not found")
        variables = load_json(contract.variables_json, {})
        variables.update({
            "client": client_context(client),
            "contract_number": contract.contract_number,
            "date": {"today": date.today().isoformat()},
        })
        variables = apply_defaults(parse_schema(template.variables_schema_json), variables)
        return render(template.body_html, variables), variables

    def _store_pdf(self, contract: Contract, body_html: str) -> tuple:
        try:
            pdf = render_contract_pdf(contract.title, contract.contract_number, body_html, brand=BRAND_NAME)
            pdf_hash = sha256_bytes(pdf)
            key = f"contracts/{contract.contract_number}/{pdf_hash}.pdf"
            storage.put_bytes(key, pdf, content_type="application/pdf")
        except Exception as exc:
            logger.error("pdf render/store failed for contract %s", contract.id, exc_info=True)
            raise IntegrationFailure("could not render the contract PDF") from exc
        return key, pdf_hash

    def _lost_race(self, contract_id: int, action: str):
        self.session.rollback()
        current = self.repo.get_contract(contract_id)
        logger.info("contract %s: %s rejected in status %s", contract_id, action, current.status)
        if current.status == ContractStatus.SIGNED.value:
            raise AlreadySigned("contract is already signed")
        if current.status == ContractStatus.DECLINED.value:
            raise AlreadyDeclined("contract was declined")
        raise InvalidState(f"cannot {action} a contract in status {current.status}")

    def _emit(self, event_type: str, contract: Contract, **extra):
        data = {"contractId": contract.id, "contractNumber": contract.contract_number, "status": contract.status}
        data.update(extra)
        self.webhooks.emit(event_type, data)

    # ---------- admin operations ----------

    def create_contract(self, data: ContractCreate, created_by: Optional[str] = "admin") -> tuple:
        template = self.repo.get_template(data.template_id)
        if not template:
            raise NotFound(f"template {data.template_id} not found")
        if not template.is_active:
            raise InvalidState("template is inactive")
        client = self.repo.get_client(data.client_id)
        if not client:
            raise NotFound(f"client {data.client_id} not found")

        sections = parse_schema(template.variables_schema_json)
        variables = apply_defaults(sections, data.variables)
        warnings = check_variables(sections, variables)
        number = self.repo.next_contract_number(utcnow().year)
        variables.update({
            "client": client_context(client),
            "contract_number": number,
            "date": {"today": date.today().isoformat()},
        })
        contract = Contract(
            contract_number=number,
            title=data.title or template.name,
            client_id=client.id,
            template_id=template.id,
            template_version=template.version,
            proposal_id=data.proposal_id,
            status=ContractStatus.DRAFT.value,
            body_html=render(template.body_html, variables),
            variables_json=canonical_json(variables),
            sign_by_at=data.sign_by_at,
            require_otp=data.require_otp,
            created_by=created_by,
        )
        self.session.add(contract)
        self.session.flush()
        self.repo.append_event(contract.id, EventType.CREATED, {
            "templateId": template.id, "templateVersion": template.version, "warnings": warnings,
        })
        self.repo.append_audit("CREATE_CONTRACT", "Contract", contract.id, actor=created_by or "system",
                               client_id=client.id, meta={"contractNumber": number})
        self.session.commit()
        self.session.refresh(contract)
        logger.info("contract %s (%s) created from template %s", contract.id, number, template.id)
        return contract, warnings

    def get_contract(self, contract_id: int) -> Contract:
        return self.repo.get_contract(contract_id)

    def send_contract(self, contract_id: int) -> dict:
        contract = self.repo.get_contract(contract_id)
        if contract.status != ContractStatus.DRAFT.value:
            raise InvalidState(f"only DRAFT contracts can be sent (status {contract.status})")
        client = self.repo.get_client(contract.client_id)
        if not client:
            raise NotFound(f"client {contract.client_id} not found")

        now = utcnow()
        body_html, variables = self._render_snapshot(contract, client)
        values = {"body_html": body_html, "variables_json": canonical_json(variables)}
        rendered = False
        if not contract.pdf_path:
            values["pdf_path"], values["pdf_hash"] = self._store_pdf(contract, body_html)
            rendered = True

        token = random_token()
        expires_at = now + timedelta(hours=MAGIC_LINK_TTL_HOURS)
        if contract.sign_by_at and contract.sign_by_at < expires_at:
            expires_at = contract.sign_by_at
        ok = self.repo.transition(
            contract.id, [ContractStatus.DRAFT], ContractStatus.SENT,
            magic_link_token=token,
            magic_link_expires_at=expires_at,
            magic_link_consumed_at=None,
            sent_at=now,
            **values,
        )
        if not ok:
            self._lost_race(contract.id, "send")
        if rendered:
            self.repo.append_event(contract.id, EventType.PDF_RENDERED, {"pdfHash": values["pdf_hash"]})
        self.repo.append_event(contract.id, EventType.SENT, {"to": client.email, "expiresAt": expires_at.isoformat()})
        self.repo.append_audit("SEND_CONTRACT", "Contract", contract.id, actor="admin", client_id=client.id)
        self.session.commit()

        contract = self.repo.get_contract(contract.id)
        url = magic_link_url(token)
        self.notifier.notify(client.email, email_templates.magic_link_email(client.name, contract.title, url, expires_at))
        self._emit("contract.sent", contract)
        return {"contract": contract_to_dict(contract), "magicLinkUrl": url}

    def resend_contract(self, contract_id: int) -> dict:
        """Revoke the outstanding link and session and mail a fresh link; status is unchanged."""
        contract = self.repo.get_contract(contract_id)
        if contract.status not in (s.value for s in LINKED_STATUSES):
            raise InvalidState(f"only SENT or VIEWED contracts can be resent (status {contract.status})")
        client = self.repo.get_client(contract.client_id)
        now = utcnow()
        token = random_token()
        expires_at = now + timedelta(hours=MAGIC_LINK_TTL_HOURS)
        if contract.sign_by_at and contract.sign_by_at < expires_at:
            expires_at = contract.sign_by_at
        ok = self.repo.update_if(
            contract.id, LINKED_STATUSES,
            magic_link_token=token,
            magic_link_expires_at=expires_at,
            magic_link_consumed_at=None,
            signer_session_id=None,
            signer_session_expires_at=None,
            otp_code_hash=None,
            otp_expires_at=None,
            otp_attempts=0,
            reminder_sent_at=None,
        )
        if not ok:
            self._lost_race(contract.id, "resend")
        self.repo.append_event(contract.id, EventType.REISSUED, {"expiresAt": expires_at.isoformat()})
        self.repo.append_audit("RESEND_CONTRACT", "Contract", contract.id, actor="admin", client_id=contract.client_id)
        self.session.commit()

        contract = self.repo.get_contract(contract.id)
        url = magic_link_url(token)
        if client:
            self.notifier.notify(client.email, email_templates.magic_link_email(client.name, contract.title, url, expires_at))
        return {"contract": contract_to_dict(contract), "magicLinkUrl": url}

    def void_contract(self, contract_id: int, reason: Optional[str] = None, actor: str = "admin") -> Contract:
        contract = self.repo.get_contract(contract_id)
        reason = (reason or "").strip() or "Voided by studio"
        ok = self.repo.transition(
            contract.id, OPEN_STATUSES, ContractStatus.VOIDED,
            voided_at=utcnow(),
            voided_reason=reason,
            signer_session_id=None,
            signer_session_expires_at=None,
        )
        if not ok:
            self._lost_race(contract.id, "void")
        self.repo.append_event(contract.id, EventType.VOIDED, {"reason": reason})
        self.repo.append_audit("VOID_CONTRACT", "Contract", contract.id, actor=actor, client_id=contract.client_id,
                               meta={"reason": reason})
        self.session.commit()
        contract = self.repo.get_contract(contract.id)
        self._emit("contract.voided", contract, reason=reason)
        return contract

    # ---------- signer access ----------

    def _linked_contract(self, token: str, now: datetime) -> Contract:
        contract = self.repo.find_by_token(token)
        if not contract:
            raise InvalidToken("signing link is invalid")
        expired = contract.magic_link_expires_at is not None and contract.magic_link_expires_at < now
        if contract.status == ContractStatus.EXPIRED.value or expired:
            raise TokenExpired("signing link has expired")
        if contract.status in (s.value for s in TERMINAL_STATUSES) or contract.magic_link_consumed_at:
            raise TokenConsumed("signing link has already been used")
        if contract.status not in (s.value for s in LINKED_STATUSES):
            raise InvalidToken("signing link is invalid")
        return contract

    def open_magic_link(self, token: str) -> dict:
        contract = self._linked_contract(token, utcnow())
        client = self.repo.get_client(contract.client_id)
        return {"contract": public_summary(contract, client), "requiresOtp": contract.require_otp}

    def _redeem(self, contract: Contract, token: str, ip=None, user_agent=None, via: str = "link", **extra) -> dict:
        now = utcnow()
        session_id = random_token()
        session_expires = now + timedelta(minutes=SIGNER_SESSION_TTL_MINUTES)
        first_view = contract.status == ContractStatus.SENT.value
        ok = self.repo.transition(
            contract.id, LINKED_STATUSES, ContractStatus.VIEWED,
            extra_where=(Contract.magic_link_token == token, Contract.magic_link_consumed_at.is_(None)),
            viewed_at=func.coalesce(Contract.viewed_at, now),
            magic_link_consumed_at=now,
            signer_session_id=session_id,
            signer_session_expires_at=session_expires,
            **extra,
        )
        if not ok:
            self.session.rollback()
            raise TokenConsumed("signing link has already been used")
        self.repo.append_event(contract.id, EventType.VIEWED, {"via": via, "firstView": first_view},
                               ip=ip, user_agent=user_agent)
        self.repo.append_audit("VIEW_CONTRACT", "Contract", contract.id, actor=f"client:{contract.client_id}",
                               client_id=contract.client_id, ip=ip, user_agent=user_agent)
        self.session.commit()

        contract = self.repo.get_contract(contract.id)
        client = self.repo.get_client(contract.client_id)
        if first_view:
            self._emit("contract.viewed", contract)
        return {
            "sessionId": session_id,
            "sessionExpiresAt": session_expires,
            "contract": public_summary(contract, client),
        }

    def redeem_magic_link(self, token: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        contract = self._linked_contract(token, utcnow())
        if contract.require_otp:
            raise AuthorizationError("this contract requires a verification code")
        return self._redeem(contract, token, ip=ip, user_agent=user_agent)

    def request_otp(self, token: str, email: str, ip: Optional[str] = None) -> dict:
        now = utcnow()
        contract = self._linked_contract(token, now)
        if not contract.require_otp:
            raise InvalidState("this contract does not use verification codes")
        client = self.repo.get_client(contract.client_id)
        if not client or (email or "").strip().lower() != client.email.strip().lower():
            raise EmailMismatch("email does not match the contract recipient")

        code = otp_code()
        expires_at = now + timedelta(minutes=OTP_TTL_MINUTES)
        ok = self.repo.update_if(
            contract.id, LINKED_STATUSES,
            extra_where=(Contract.magic_link_consumed_at.is_(None),),
            otp_email=client.email,
            otp_code_hash=hash_otp(contract.id, code),
            otp_expires_at=expires_at,
            otp_attempts=0,
        )
        if not ok:
            self.session.rollback()
            raise TokenConsumed("signing link has already been used")
        self.repo.append_event(contract.id, EventType.OTP_REQUESTED, {"email": client.email}, ip=ip)
        try:
            self.notifier.deliver(client.email, email_templates.otp_email(client.name, code, OTP_TTL_MINUTES))
        except IntegrationFailure:
            self.session.rollback()
            raise
        self.session.commit()
        return {"sent": True, "expiresAt": expires_at}

    def verify_otp(self, token: str, code: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        now = utcnow()
        contract = self._linked_contract(token, now)
        if not contract.otp_code_hash:
            raise InvalidState("no verification code has been requested")
        if contract.otp_expires_at and contract.otp_expires_at < now:
            raise TokenExpired("verification code has expired")

        if tokens_equal(contract.otp_code_hash, hash_otp(contract.id, (code or "").strip())):
            self.repo.append_event(contract.id, EventType.OTP_VERIFIED, {}, ip=ip, user_agent=user_agent)
            return self._redeem(contract, token, ip=ip, user_agent=user_agent, via="otp",
                                otp_code_hash=None, otp_expires_at=None)

        attempts = contract.otp_attempts + 1
        revoked = attempts >= OTP_MAX_ATTEMPTS
        values = {"otp_attempts": Contract.otp_attempts + 1}
        if revoked:
            values.update(magic_link_consumed_at=now, otp_code_hash=None, otp_expires_at=None)
        if not self.repo.update_if(contract.id, LINKED_STATUSES,
                                   extra_where=(Contract.otp_attempts == contract.otp_attempts,), **values):
            # a concurrent attempt moved the row; report against its state instead
            self.session.rollback()
            self._linked_contract(token, now)
            raise AuthorizationError("verification code is incorrect")
        self.repo.append_event(contract.id, EventType.OTP_FAILED, {"attempts": attempts, "revoked": revoked},
                               ip=ip, user_agent=user_agent)
        self.session.commit()
        if revoked:
            logger.warning("contract %s: link revoked after %s failed codes", contract.id, attempts)
            raise TokenConsumed("too many incorrect codes; ask the studio for a new link")
        raise AuthorizationError("verification code is incorrect")

    def decline_contract(
        self,
        contract_id: int,
        session_id: Optional[str],
        reason: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Contract:
        now = utcnow()
        contract = self.repo.get_contract(contract_id)
        if contract.status == ContractStatus.SIGNED.value:
            raise AlreadySigned("contract is already signed")
        if contract.status == ContractStatus.DECLINED.value:
            raise AlreadyDeclined("contract was already declined")
        if contract.status != ContractStatus.VIEWED.value:
            raise InvalidState(f"cannot decline a contract in status {contract.status}")
        check_signer_session(contract, session_id, now)

        reason = (reason or "").strip() or "Declined by client"
        ok = self.repo.transition(
            contract.id, [ContractStatus.VIEWED], ContractStatus.DECLINED,
            extra_where=(Contract.signer_session_id == session_id,),
            declined_at=now,
            voided_reason=reason,
            signer_session_id=None,
            signer_session_expires_at=None,
        )
        if not ok:
            self._lost_race(contract.id, "decline")
        self.repo.append_event(contract.id, EventType.DECLINED, {"reason": reason}, ip=ip, user_agent=user_agent)
        self.repo.append_audit("DECLINE_CONTRACT", "Contract", contract.id, actor=f"client:{contract.client_id}",
                               client_id=contract.client_id, meta={"reason": reason}, ip=ip, user_agent=user_agent)
        self.session.commit()

        contract = self.repo.get_contract(contract.id)
        client = self.repo.get_client(contract.client_id)
        self.notifier.notify(ADMIN_EMAIL, email_templates.declined_email(
            client.name if client else "Client", contract.title, contract.contract_number, reason,
        ))
        self._emit("contract.declined", contract, reason=reason)
        return contract

    # ---------- sweeps ----------

    def expire_due(self, now: Optional[datetime] = None) -> List[int]:
        now = now or utcnow()
        overdue = or_(
            and_(Contract.sign_by_at != None, Contract.sign_by_at < now),  # noqa: E711
            and_(Contract.magic_link_expires_at != None, Contract.magic_link_expires_at < now),  # noqa: E711
        )
        candidates = self.session.exec(
            select(Contract.id).where(Contract.status.in_([s.value for s in OPEN_STATUSES]), overdue)
        ).all()
        expired = []
        for contract_id in candidates:
            ok = self.repo.transition(
                contract_id, OPEN_STATUSES, ContractStatus.EXPIRED,
                extra_where=(overdue,),
                expired_at=now,
                signer_session_id=None,
                signer_session_expires_at=None,
            )
            if not ok:
                self.session.rollback()
                continue
            self.repo.append_event(contract_id, EventType.EXPIRED, {"at": now.isoformat()})
            self.session.commit()
            expired.append(contract_id)
            self._emit("contract.expired", self.repo.get_contract(contract_id))
        if expired:
            logger.info("expired %d contracts", len(expired))
        return expired

    def send_expiry_reminders(self, now: Optional[datetime] = None) -> List[int]:
        now = now or utcnow()
        horizon = now + timedelta(hours=REMINDER_WINDOW_HOURS)
        window = (
            Contract.reminder_sent_at.is_(None),
            Contract.magic_link_expires_at != None,  # noqa: E711
            Contract.magic_link_expires_at > now,
            Contract.magic_link_expires_at <= horizon,
        )
        candidates = self.session.exec(
            select(Contract.id).where(Contract.status.in_([s.value for s in LINKED_STATUSES]), *window)
        ).all()
        reminded = []
        for contract_id in candidates:
            if not self.repo.update_if(contract_id, LINKED_STATUSES, extra_where=window, reminder_sent_at=now):
                self.session.rollback()
                continue
            self.repo.append_event(contract_id, EventType.REMINDER_SENT, {})
            self.session.commit()
            contract = self.repo.get_contract(contract_id)
            client = self.repo.get_client(contract.client_id)
            if client:
                self.notifier.notify(client.email, email_templates.expiring_email(
                    client.name, contract.title, magic_link_url(contract.magic_link_token), contract.magic_link_expires_at,
                ))
            reminded.append(contract_id)
        return reminded

    # ---------- documents and trail ----------

    def render_pdf(self, contract_id: int) -> dict:
        contract = self.repo.get_contract(contract_id)
        if contract.status not in (s.value for s in OPEN_STATUSES):
            raise InvalidState(f"cannot regenerate the PDF of a {contract.status} contract")
        key, pdf_hash = self._store_pdf(contract, contract.body_html)
        if not self.repo.update_if(contract.id, OPEN_STATUSES, pdf_path=key, pdf_hash=pdf_hash):
            self._lost_race(contract.id, "render")
        self.repo.append_event(contract.id, EventType.PDF_RENDERED, {"pdfHash": pdf_hash})
        self.session.commit()
        return {"pdfPath": key, "pdfHash": pdf_hash}

    def verify_pdf(self, contract_id: int) -> dict:
        contract = self.repo.get_contract(contract_id)
        if not contract.pdf_path:
            raise NotFound("contract has no PDF")
        try:
            data = storage.get_bytes(contract.pdf_path)
        except Exception as exc:
            logger.error("could not read %s", contract.pdf_path, exc_info=True)
            raise IntegrationFailure("could not read the stored PDF") from exc
        actual = sha256_bytes(data)
        return {
            "pdfPath": contract.pdf_path,
            "expectedHash": contract.pdf_hash,
            "actualHash": actual,
            "valid": actual == contract.pdf_hash,
        }

    def get_events(self, contract_id: int) -> dict:
        contract = self.repo.get_contract(contract_id)
        return {
            "contractId": contract.id,
            "events": [event_to_dict(e) for e in self.repo.list_events(contract.id)],
            "audit": [audit_to_dict(a) for a in self.repo.list_audit("Contract", contract.id)],
            "chainValid": self.repo.verify_chain(contract.id),
        }
