"""Multi-party envelopes: several signers on one document, in order or in parallel."""
import logging
from datetime import timedelta
from io import BytesIO
from typing import List, Optional, Tuple
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from sqlalchemy import update
from sqlmodel import Session, select
from . import storage
from . import email_templates
from .config import ADMIN_EMAIL, ENVELOPE_DECLINE_TERMINATES, ENVELOPE_LINK_TTL_DAYS, PUBLIC_URL
from .errors import (
    AlreadyDeclined, AlreadySigned, IntegrationFailure, InvalidSignatureImage, InvalidState, InvalidToken,
    NotFound, OrderingViolation, TermsNotAgreed, TokenExpired, ValidationError,
)
from .models import (
    AuditLog, Envelope, EnvelopeStatus, Signature, Signer, SignerStatus, SigningWorkflow,
)
from .notifications import Notifier
from .schemas import EnvelopeCreate, EnvelopeSign
from .stamping import seal_envelope_pdf
from .utils import canonical_json, decode_data_url, make_token, random_token, read_token, sha256_bytes, sha256_text, utcnow
from .webhooks import WebhookService

logger = logging.getLogger(__name__)

TOKEN_SALT = "envelope-signer"
OPEN_ENVELOPE = (EnvelopeStatus.DRAFT, EnvelopeStatus.PENDING)


def signing_url(token: str) -> str:
    return f"{PUBLIC_URL}/sign/{token}"


def assign_sequence(workflow: SigningWorkflow, requested: List[Optional[int]]) -> List[int]:
    """Sequence numbers for the signers as given.

    Parallel envelopes take whatever was asked (default: position). Sequential
    ones must be exactly 1..N in the order supplied, or omitted entirely.
    """
    if workflow != SigningWorkflow.SEQUENTIAL:
        return [n if n is not None else i + 1 for i, n in enumerate(requested)]
    if all(n is None for n in requested):
        return list(range(1, len(requested) + 1))
    if any(n is None for n in requested):
        raise ValidationError("sequence_number must be given for every signer or none")
    if requested != list(range(1, len(requested) + 1)):
        raise ValidationError("sequential signers need sequence numbers 1..N, increasing and without gaps")
    return list(requested)


def next_envelope_status(envelope: Envelope, signers: List[Signer]) -> EnvelopeStatus:
    statuses = [s.status for s in signers]
    if statuses and all(st == SignerStatus.SIGNED.value for st in statuses):
        return EnvelopeStatus.COMPLETED
    if SignerStatus.DECLINED.value in statuses:
        if envelope.decline_terminates or envelope.workflow == SigningWorkflow.SEQUENTIAL.value:
            return EnvelopeStatus.DECLINED
        if SignerStatus.PENDING.value not in statuses:
            return EnvelopeStatus.DECLINED
    return EnvelopeStatus.PENDING


class EnvelopeService:
    def __init__(self, session: Session, notifier: Optional[Notifier] = None, webhooks: Optional[WebhookService] = None):
        self.session = session
        self.notifier = notifier or Notifier()
        self.webhooks = webhooks or WebhookService(session)

    # ---------- helpers ----------

    def _audit(self, action: str, envelope_id: int, actor: str = "system", meta: Optional[dict] = None, ip=None, ua=None):
        self.session.add(AuditLog(
            action=action, entity_type="Envelope", entity_id=envelope_id, actor=actor,
            meta_json=canonical_json(meta or {}), ip=ip, user_agent=ua,
        ))

    def get(self, envelope_id: int) -> Envelope:
        env = self.session.get(Envelope, envelope_id, populate_existing=True)
        if not env:
            raise NotFound(f"envelope {envelope_id} not found")
        return env

    def signers(self, envelope_id: int) -> List[Signer]:
        return list(self.session.exec(
            select(Signer)
            .where(Signer.envelope_id == envelope_id)
            .order_by(Signer.sequence_number, Signer.id)
            .execution_options(populate_existing=True)
        ).all())

    def _set_envelope_status(self, env: Envelope, allowed_from: List[EnvelopeStatus], to: EnvelopeStatus, **values) -> bool:
        result = self.session.exec(
            update(Envelope)
            .where(Envelope.id == env.id, Envelope.status.in_([s.value for s in allowed_from]))
            .values(status=to.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _set_signer_status(self, signer: Signer, to: SignerStatus, **values) -> bool:
        result = self.session.exec(
            update(Signer)
            .where(Signer.id == signer.id, Signer.status == SignerStatus.PENDING.value)
            .values(status=to.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _resolve(self, token: str) -> Tuple[Signer, Envelope]:
        data = read_token(token, salt=TOKEN_SALT)
        if not data:
            raise InvalidToken("signing link is invalid")
        signer = self.session.get(Signer, data.get("signer_id"), populate_existing=True)
        if not signer or signer.envelope_id != data.get("envelope_id") or signer.magic_link_token != token:
            raise InvalidToken("signing link is invalid")
        if signer.magic_link_expires_at and signer.magic_link_expires_at < utcnow():
            raise TokenExpired("signing link has expired")
        return signer, self.get(signer.envelope_id)

    def _check_actionable(self, signer: Signer, env: Envelope):
        if env.status == EnvelopeStatus.EXPIRED.value or (env.expires_at and env.expires_at < utcnow()):
            raise TokenExpired("envelope has expired")
        if env.status != EnvelopeStatus.PENDING.value:
            raise InvalidState(f"envelope is {env.status}")
        if signer.status == SignerStatus.SIGNED.value:
            raise AlreadySigned("you have already signed")
        if signer.status == SignerStatus.DECLINED.value:
            raise AlreadyDeclined("you have already declined")

    def _check_turn(self, signer: Signer, env: Envelope, signers: List[Signer]):
        if env.workflow != SigningWorkflow.SEQUENTIAL.value:
            return
        waiting = [s for s in signers if s.sequence_number < signer.sequence_number and s.status != SignerStatus.SIGNED.value]
        if waiting:
            raise OrderingViolation(f"waiting on {waiting[0].name} to sign first")

    def _lock_open(self, env: Envelope):
        # no-op write that holds the PENDING envelope row until commit
        result = self.session.exec(
            update(Envelope)
            .where(Envelope.id == env.id, Envelope.status == EnvelopeStatus.PENDING.value)
            .values(status=Envelope.status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            raise InvalidState("envelope is no longer open")

    def _request_signature(self, signer: Signer, env: Envelope):
        self.notifier.notify(signer.email, email_templates.envelope_request_email(
            signer.name, env.name, signing_url(signer.magic_link_token), env.description,
        ))

    # ---------- admin operations ----------

    def create(self, data: EnvelopeCreate, created_by: Optional[str] = "admin") -> Envelope:
        emails = [s.email for s in data.signers]
        if len(set(emails)) != len(emails):
            raise ValidationError("each signer needs a distinct email")
        sequence = assign_sequence(data.workflow, [s.sequence_number for s in data.signers])
        decline_terminates = data.decline_terminates
        if decline_terminates is None:
            decline_terminates = ENVELOPE_DECLINE_TERMINATES
        env = Envelope(
            name=data.name,
            description=data.description,
            workflow=data.workflow.value,
            status=EnvelopeStatus.DRAFT.value,
            decline_terminates=decline_terminates,
            expires_at=data.expires_at,
            created_by=created_by,
        )
        self.session.add(env)
        self.session.flush()
        for s, seq in zip(data.signers, sequence):
            signer = Signer(envelope_id=env.id, name=s.name, email=s.email, role=s.role, sequence_number=seq)
            self.session.add(signer)
            self.session.flush()
            self.session.add(Signature(envelope_id=env.id, signer_id=signer.id))
        self._audit("CREATE_ENVELOPE", env.id, actor=created_by or "system",
                    meta={"workflow": env.workflow, "signers": len(data.signers)})
        self.session.commit()
        self.session.refresh(env)
        logger.info("envelope %s created (%s, %d signers)", env.id, env.workflow, len(data.signers))
        return env

    def attach_document(self, envelope_id: int, pdf_bytes: bytes) -> Envelope:
        env = self.get(envelope_id)
        if env.status != EnvelopeStatus.DRAFT.value:
            raise InvalidState("documents can only be attached to DRAFT envelopes")
        try:
            if not PdfReader(BytesIO(pdf_bytes)).pages:
                raise ValidationError("document has no pages")
        except (PdfReadError, ValueError) as exc:
            raise ValidationError("document is not a readable PDF") from exc
        digest = sha256_bytes(pdf_bytes)
        key = f"envelopes/{env.id}/original-{digest[:16]}.pdf"
        try:
            storage.put_bytes(key, pdf_bytes, content_type="application/pdf")
        except Exception as exc:
            logger.error("storing envelope %s document failed", env.id, exc_info=True)
            raise IntegrationFailure("could not store the document") from exc
        env.document_key = key
        env.document_hash = digest
        self.session.add(env)
        self._audit("ATTACH_DOCUMENT", env.id, actor="admin", meta={"sha256": digest})
        self.session.commit()
        self.session.refresh(env)
        return env

    def send(self, envelope_id: int) -> dict:
        env = self.get(envelope_id)
        now = utcnow()
        if not self._set_envelope_status(env, [EnvelopeStatus.DRAFT], EnvelopeStatus.PENDING, sent_at=now):
            self.session.rollback()
            raise InvalidState(f"only DRAFT envelopes can be sent (status {env.status})")
        link_expiry = now + timedelta(days=ENVELOPE_LINK_TTL_DAYS)
        if env.expires_at and env.expires_at < link_expiry:
            link_expiry = env.expires_at
        signers = self.signers(env.id)
        links = {}
        for signer in signers:
            signer.magic_link_token = make_token(
                {"signer_id": signer.id, "envelope_id": env.id, "nonce": random_token(8)}, salt=TOKEN_SALT,
            )
            signer.magic_link_expires_at = link_expiry
            self.session.add(signer)
            links[signer.id] = signing_url(signer.magic_link_token)
        self._audit("SEND_ENVELOPE", env.id, actor="admin")
        self.session.commit()
        env = self.get(env.id)

        if env.workflow == SigningWorkflow.SEQUENTIAL.value:
            recipients = signers[:1]
        else:
            recipients = signers
        for signer in recipients:
            self._request_signature(signer, env)
        self.webhooks.emit("envelope.sent", {"envelopeId": env.id, "status": env.status})
        logger.info("envelope %s sent to %d of %d signers", env.id, len(recipients), len(signers))
        return {"envelope": envelope_to_dict(env, signers), "links": links}

    def void(self, envelope_id: int, reason: Optional[str] = None) -> Envelope:
        env = self.get(envelope_id)
        if not self._set_envelope_status(env, list(OPEN_ENVELOPE), EnvelopeStatus.VOIDED):
            self.session.rollback()
            raise InvalidState(f"cannot void an envelope in status {env.status}")
        self._audit("VOID_ENVELOPE", env.id, actor="admin", meta={"reason": reason or "Voided by studio"})
        self.session.commit()
        env = self.get(env.id)
        self.webhooks.emit("envelope.voided", {"envelopeId": env.id})
        return env

    # ---------- signer operations ----------

    def load_for_signer(self, token: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> dict:
        signer, env = self._resolve(token)
        signers = self.signers(env.id)
        if signer.viewed_at is None:
            signer.viewed_at = utcnow()
            self.session.add(signer)
            self._audit("VIEW_ENVELOPE", env.id, actor=f"signer:{signer.id}", ip=ip, ua=user_agent)
            self.session.commit()
        blocking = [s for s in signers if s.sequence_number < signer.sequence_number and s.status != SignerStatus.SIGNED.value]
        your_turn = env.status == EnvelopeStatus.PENDING.value and signer.status == SignerStatus.PENDING.value and (
            env.workflow == SigningWorkflow.PARALLEL.value or not blocking
        )
        return {
            "envelope": {"id": env.id, "name": env.name, "description": env.description,
                         "workflow": env.workflow, "status": env.status},
            "signer": signer_to_dict(signer),
            "waitingOn": len([s for s in signers if s.status == SignerStatus.PENDING.value and s.id != signer.id]),
            "yourTurn": your_turn,
        }

    def sign_as_signer(self, token: str, data: EnvelopeSign, ip: Optional[str] = None,
                       user_agent: Optional[str] = None) -> dict:
        signer, env = self._resolve(token)
        self._check_actionable(signer, env)
        self._check_turn(signer, env, self.signers(env.id))
        if not data.agreed_to_terms:
            raise TermsNotAgreed("you must agree to the terms before signing")
        decoded = decode_data_url(data.signature_data_url)
        if not decoded:
            raise InvalidSignatureImage("signature must be a PNG or JPEG data URL")

        self._lock_open(env)
        now = utcnow()
        if not self._set_signer_status(signer, SignerStatus.SIGNED, signed_at=now):
            self.session.rollback()
            raise AlreadySigned("signer has already acted")
        signature = self.session.exec(select(Signature).where(Signature.signer_id == signer.id)).first()
        signature.status = SignerStatus.SIGNED.value
        signature.signature_data_url = data.signature_data_url
        signature.signature_hash = sha256_text(data.signature_data_url)
        signature.signed_at = now
        signature.signer_ip = ip
        signature.signer_user_agent = user_agent
        self.session.add(signature)
        self._audit("SIGN_ENVELOPE", env.id, actor=f"signer:{signer.id}",
                    meta={"signatureHash": signature.signature_hash}, ip=ip, ua=user_agent)
        self.session.flush()

        signers = self.signers(env.id)
        status = next_envelope_status(env, signers)
        final_pdf = None
        if status == EnvelopeStatus.COMPLETED:
            final_pdf = self._seal(env, signers, now)
            ok = self._set_envelope_status(env, [EnvelopeStatus.PENDING], status, completed_at=now,
                                           final_key=env.final_key, final_hash=env.final_hash)
        elif status != EnvelopeStatus.PENDING:
            ok = self._set_envelope_status(env, [EnvelopeStatus.PENDING], status)
        else:
            ok = True
        if not ok:
            self.session.rollback()
            raise InvalidState("envelope changed while signing; try again")
        self.session.commit()
        env = self.get(env.id)
        logger.info("envelope %s: signer %s signed, envelope %s", env.id, signer.id, env.status)

        if env.status == EnvelopeStatus.COMPLETED.value:
            template = email_templates.envelope_completed_email(env.name, env.final_hash)
            attachment = [{"filename": f"{env.name} - executed.pdf", "content": final_pdf,
                           "maintype": "application", "subtype": "pdf"}]
            for s in signers:
                self.notifier.notify(s.email, template, attachments=attachment)
            self.webhooks.emit("envelope.completed", {"envelopeId": env.id, "finalHash": env.final_hash})
        elif env.workflow == SigningWorkflow.SEQUENTIAL.value:
            pending = [s for s in signers if s.status == SignerStatus.PENDING.value]
            if pending:
                self._request_signature(pending[0], env)
        self.webhooks.emit("envelope.signed", {"envelopeId": env.id, "signerId": signer.id, "status": env.status})
        return {
            "ok": True,
            "status": env.status,
            "waitingOn": len([s for s in signers if s.status == SignerStatus.PENDING.value]),
            "finalHash": env.final_hash,
        }

    def _seal(self, env: Envelope, signers: List[Signer], now) -> bytes:
        signatures = {
            sig.signer_id: sig
            for sig in self.session.exec(select(Signature).where(Signature.envelope_id == env.id)).all()
        }
        rows = []
        for s in signers:
            sig = signatures.get(s.id)
            decoded = decode_data_url(sig.signature_data_url) if sig and sig.signature_data_url else None
            rows.append({
                "sequence_number": s.sequence_number,
                "name": s.name,
                "email": s.email,
                "role": s.role,
                "signed_at": sig.signed_at.isoformat() if sig and sig.signed_at else None,
                "signature_hash": sig.signature_hash if sig else None,
                "image": decoded[1] if decoded else None,
            })
        try:
            original = storage.get_bytes(env.document_key) if env.document_key else None
            final_pdf = seal_envelope_pdf(original, {
                "Envelope": env.name,
                "Envelope ID": env.id,
                "Workflow": env.workflow,
                "SHA256 original": env.document_hash or "-",
                "Completed": now.isoformat() + "Z",
            }, rows)
            final_hash = sha256_bytes(final_pdf)
            key = f"envelopes/{env.id}/final-{final_hash[:16]}.pdf"
            storage.put_bytes(key, final_pdf, content_type="application/pdf")
        except Exception as exc:
            logger.error("sealing envelope %s failed", env.id, exc_info=True)
            raise IntegrationFailure("could not seal the completed document") from exc
        env.final_key = key
        env.final_hash = final_hash
        return final_pdf

    def expire_due(self, now=None) -> List[int]:
        now = now or utcnow()
        ids = self.session.exec(
            select(Envelope.id).where(
                Envelope.status.in_([s.value for s in OPEN_ENVELOPE]),
                Envelope.expires_at != None,  # noqa: E711
                Envelope.expires_at < now,
            )
        ).all()
        expired = []
        for envelope_id in ids:
            env = self.get(envelope_id)
            if not self._set_envelope_status(env, list(OPEN_ENVELOPE), EnvelopeStatus.EXPIRED):
                self.session.rollback()
                continue
            self._audit("EXPIRE_ENVELOPE", envelope_id)
            self.session.commit()
            expired.append(envelope_id)
            self.webhooks.emit("envelope.expired", {"envelopeId": envelope_id})
        return expired

    def decline_as_signer(self, token: str, reason: Optional[str] = None, ip: Optional[str] = None,
                          user_agent: Optional[str] = None) -> dict:
        signer, env = self._resolve(token)
        self._check_actionable(signer, env)
        self._check_turn(signer, env, self.signers(env.id))
        reason = (reason or "").strip() or "Declined by signer"
        self._lock_open(env)
        now = utcnow()
        if not self._set_signer_status(signer, SignerStatus.DECLINED, declined_at=now, declined_reason=reason):
            self.session.rollback()
            raise InvalidState("signer has already acted")
        signature = self.session.exec(select(Signature).where(Signature.signer_id == signer.id)).first()
        if signature:
            signature.status = SignerStatus.DECLINED.value
            self.session.add(signature)
        self._audit("DECLINE_ENVELOPE", env.id, actor=f"signer:{signer.id}", meta={"reason": reason}, ip=ip, ua=user_agent)
        self.session.flush()

        signers = self.signers(env.id)
        status = next_envelope_status(env, signers)
        if status != EnvelopeStatus.PENDING and not self._set_envelope_status(env, [EnvelopeStatus.PENDING], status):
            self.session.rollback()
            raise InvalidState("envelope changed while declining; try again")
        self.session.commit()
        env = self.get(env.id)
        logger.info("envelope %s: signer %s declined, envelope %s", env.id, signer.id, env.status)

        self.notifier.notify(ADMIN_EMAIL, email_templates.declined_email(signer.name, env.name, f"Envelope {env.id}", reason))
        if env.status == EnvelopeStatus.DECLINED.value:
            self.webhooks.emit("envelope.declined", {"envelopeId": env.id, "signerId": signer.id, "reason": reason})
        return {"ok": True, "status": env.status}


def signer_to_dict(s: Signer) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "email": s.email,
        "role": s.role,
        "sequence_number": s.sequence_number,
        "status": s.status,
        "viewed_at": s.viewed_at,
        "signed_at": s.signed_at,
        "declined_at": s.declined_at,
        "declined_reason": s.declined_reason,
    }


def envelope_to_dict(env: Envelope, signers: List[Signer]) -> dict:
    return {
        "id": env.id,
        "name": env.name,
        "description": env.description,
        "workflow": env.workflow,
        "status": env.status,
        "decline_terminates": env.decline_terminates,
        "document_hash": env.document_hash,
        "final_hash": env.final_hash,
        "expires_at": env.expires_at,
        "sent_at": env.sent_at,
        "completed_at": env.completed_at,
        "signers": [signer_to_dict(s) for s in signers],
    }
