import logging
from typing import Optional
from sqlmodel import Session
from . import storage
from . import email_templates
from .config import ADMIN_EMAIL
from .errors import (
    AlreadySigned, EmailMismatch, IntegrationFailure, InvalidSignatureImage, InvalidState,
    TermsNotAgreed, ValidationError,
)
from .lifecycle import check_signer_session, contract_to_dict
from .models import Contract, ContractStatus, EventType
from .notifications import Notifier
from .repository import ContractRepository
from .schemas import SignRequest
from .stamping import signed_filename, stamp_signature
from .utils import EMAIL_RE, decode_data_url, sha256_bytes, sha256_text, utcnow
from .webhooks import WebhookService

logger = logging.getLogger(__name__)


class SignatureService:
    def __init__(self, session: Session, notifier: Optional[Notifier] = None, webhooks: Optional[WebhookService] = None):
        self.session = session
        self.repo = ContractRepository(session)
        self.notifier = notifier or Notifier()
        self.webhooks = webhooks or WebhookService(session)

    def _validate(self, contract: Contract, session_id: Optional[str], data: SignRequest, now) -> tuple:
        if contract.status == ContractStatus.SIGNED.value:
            raise AlreadySigned("contract is already signed")
        if contract.status != ContractStatus.VIEWED.value:
            raise InvalidState(f"cannot sign a contract in status {contract.status}")
        check_signer_session(contract, session_id, now)
        if not data.agreed_to_terms:
            raise TermsNotAgreed("you must agree to the terms before signing")
        decoded = decode_data_url(data.signature_data_url)
        if not decoded:
            raise InvalidSignatureImage("signature must be a PNG or JPEG data URL")
        name = (data.signer_name or "").strip()
        email = (data.signer_email or "").strip()
        if len(name) < 2:
            raise ValidationError("signer name must be at least 2 characters")
        if not EMAIL_RE.match(email):
            raise ValidationError("signer email is not a valid address")
        client = self.repo.get_client(contract.client_id)
        if client and client.email.strip().lower() != email.lower():
            raise EmailMismatch("signer email does not match the contract recipient")
        return decoded[1], name, email, client

    def _stamp(self, contract: Contract, image: bytes, name: str, email: str, signed_at) -> tuple:
        try:
            original = storage.get_bytes(contract.pdf_path)
            stamped = stamp_signature(original, image, name, email, signed_at, contract.contract_number)
            pdf_hash = sha256_bytes(stamped)
            key = f"contracts/{signed_filename(contract.contract_number, pdf_hash)}"
            storage.put_bytes(key, stamped, content_type="application/pdf")
        except Exception as exc:
            logger.error("stamping failed for contract %s", contract.id, exc_info=True)
            raise IntegrationFailure("could not stamp the signed PDF") from exc
        return key, pdf_hash

    def sign_contract(
        self,
        contract_id: int,
        session_id: Optional[str],
        data: SignRequest,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict:
        now = utcnow()
        contract = self.repo.get_contract(contract_id)
        image, name, email, client = self._validate(contract, session_id, data, now)

        values = {}
        if contract.pdf_path:
            values["pdf_path"], values["pdf_hash"] = self._stamp(contract, image, name, email, now)
        else:
            logger.warning("contract %s signed without a PDF on file", contract.id)

        ok = self.repo.transition(
            contract.id, [ContractStatus.VIEWED], ContractStatus.SIGNED,
            extra_where=(Contract.signer_session_id == session_id,),
            signed_at=now,
            signer_session_id=None,
            signer_session_expires_at=None,
            **values,
        )
        if not ok:
            self.session.rollback()
            current = self.repo.get_contract(contract.id)
            if current.status == ContractStatus.SIGNED.value:
                raise AlreadySigned("contract is already signed")
            raise InvalidState(f"cannot sign a contract in status {current.status}")

        meta = {
            "signerName": name,
            "signerEmail": email,
            "signatureHash": sha256_text(data.signature_data_url),
            "pdfHash": values.get("pdf_hash"),
        }
        self.repo.append_event(contract.id, EventType.SIGNED, meta, ip=ip, user_agent=user_agent)
        self.repo.append_audit("SIGN_CONTRACT", "Contract", contract.id, actor=f"client:{contract.client_id}",
                               client_id=contract.client_id, meta=meta, ip=ip, user_agent=user_agent)
        self.session.commit()

        contract = self.repo.get_contract(contract.id)
        logger.info("contract %s signed by %s", contract.contract_number, email)
        self.notifier.notify(email, email_templates.signed_client_email(
            name, contract.title, contract.contract_number, now,
        ))
        self.notifier.notify(ADMIN_EMAIL, email_templates.signed_admin_email(
            client.name if client else name, client.email if client else email,
            contract.title, contract.contract_number, now, contract.pdf_hash,
        ))
        self.webhooks.emit("contract.signed", {
            "contractId": contract.id,
            "contractNumber": contract.contract_number,
            "status": contract.status,
            "signedAt": now.isoformat(),
            "pdfHash": contract.pdf_hash,
        })
        return {"contract": contract_to_dict(contract), "pdfHash": contract.pdf_hash}
