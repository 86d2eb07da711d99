from enum import Enum
from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field as ORMField
from .utils import utcnow


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    VIEWED = "VIEWED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    VOIDED = "VOIDED"


TERMINAL_STATUSES = (
    ContractStatus.SIGNED,
    ContractStatus.DECLINED,
    ContractStatus.EXPIRED,
    ContractStatus.VOIDED,
)
OPEN_STATUSES = (ContractStatus.DRAFT, ContractStatus.SENT, ContractStatus.VIEWED)


class EventType(str, Enum):
    CREATED = "CREATED"
    PDF_RENDERED = "PDF_RENDERED"
    SENT = "SENT"
    REISSUED = "REISSUED"
    VIEWED = "VIEWED"
    OTP_REQUESTED = "OTP_REQUESTED"
    OTP_VERIFIED = "OTP_VERIFIED"
    OTP_FAILED = "OTP_FAILED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    VOIDED = "VOIDED"
    EXPIRED = "EXPIRED"
    REMINDER_SENT = "REMINDER_SENT"


class SigningWorkflow(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"


class EnvelopeStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    VOIDED = "VOIDED"


class SignerStatus(str, Enum):
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Client(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    email: str
    phone: Optional[str] = None
    company: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)


class ContractTemplate(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str = ORMField(index=True)
    description: Optional[str] = None
    document_type: str = "CONTRACT"
    event_type: Optional[str] = None
    body_html: str = ""
    variables_schema_json: str = "[]"
    mandatory_clause_ids_json: str = "[]"
    is_active: bool = True
    is_published: bool = False
    version: int = 1
    parent_id: Optional[int] = None
    created_by: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)


class Contract(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    contract_number: str = ORMField(unique=True, index=True)
    title: str
    client_id: Optional[int] = ORMField(default=None, index=True)
    template_id: int
    template_version: int = 1
    proposal_id: Optional[int] = None
    status: str = ORMField(default=ContractStatus.DRAFT.value, index=True)
    body_html: str = ""
    variables_json: str = "{}"
    pdf_path: Optional[str] = None
    pdf_hash: Optional[str] = None
    sign_by_at: Optional[datetime] = None
    require_otp: bool = False
    magic_link_token: Optional[str] = ORMField(default=None, index=True)
    magic_link_expires_at: Optional[datetime] = None
    magic_link_consumed_at: Optional[datetime] = None
    otp_email: Optional[str] = None
    otp_code_hash: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_attempts: int = 0
    signer_session_id: Optional[str] = None
    signer_session_expires_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    voided_reason: Optional[str] = None
    reminder_sent_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)


class ContractEvent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    contract_id: int = ORMField(index=True)
    type: str
    meta_json: str = "{}"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    at: datetime = ORMField(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None


class AuditLog(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    action: str
    entity_type: str
    entity_id: Optional[int] = ORMField(default=None, index=True)
    client_id: Optional[int] = None
    actor: str = "system"  # system|admin|client:<id>|signer:<id>
    meta_json: str = "{}"
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    at: datetime = ORMField(default_factory=utcnow)


class Envelope(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    workflow: str = SigningWorkflow.SEQUENTIAL.value
    status: str = ORMField(default=EnvelopeStatus.DRAFT.value, index=True)
    decline_terminates: bool = True
    document_key: Optional[str] = None
    document_hash: Optional[str] = None
    final_key: Optional[str] = None
    final_hash: Optional[str] = None
    expires_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime = ORMField(default_factory=utcnow)


class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    name: str
    email: str
    role: str = "Signer"
    sequence_number: int = 1
    status: str = SignerStatus.PENDING.value
    magic_link_token: Optional[str] = None
    magic_link_expires_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    declined_reason: Optional[str] = None


class Signature(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(index=True)
    signer_id: int = ORMField(unique=True)
    status: str = SignerStatus.PENDING.value
    signature_data_url: Optional[str] = None
    signature_hash: Optional[str] = None
    signed_at: Optional[datetime] = None
    signer_ip: Optional[str] = None
    signer_user_agent: Optional[str] = None


class WebhookEndpoint(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    url: str
    secret: Optional[str] = None
    events_json: str = "[]"
    headers_json: str = "{}"
    is_active: bool = True
    max_retries: int = 3
    retry_backoff_seconds: int = 60
    timeout_seconds: float = 10.0
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    failure_count: int = 0
    consecutive_failures: int = 0
    created_at: datetime = ORMField(default_factory=utcnow)


class WebhookDelivery(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    endpoint_id: int = ORMField(index=True)
    event_type: str
    event_id: str
    payload_json: str = "{}"
    status: str = ORMField(default=DeliveryStatus.PENDING.value, index=True)
    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[int] = None
    error: Optional[str] = None
    succeeded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
