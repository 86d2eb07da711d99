from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from .models import SigningWorkflow


# ---------- template variable schema ----------

class _FieldBase(BaseModel):
    name: str = Field(min_length=1)
    label: Optional[str] = None
    required: bool = False
    default: Any = None
    help_text: Optional[str] = None


class TextFieldSpec(_FieldBase):
    type: Literal["text", "textarea", "email"]


class NumberFieldSpec(_FieldBase):
    type: Literal["number", "currency"]
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"{self.name}: min is greater than max")
        return self


class DateFieldSpec(_FieldBase):
    type: Literal["date"]


class ChoiceFieldSpec(_FieldBase):
    type: Literal["select", "multiselect"]
    options: List[str] = Field(min_length=1)


FieldSpec = Annotated[
    Union[TextFieldSpec, NumberFieldSpec, DateFieldSpec, ChoiceFieldSpec],
    Field(discriminator="type"),
]


class VariableSection(BaseModel):
    title: str = "Details"
    fields: List[FieldSpec] = []


# ---------- templates ----------

class TemplateCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    document_type: str = "CONTRACT"
    event_type: Optional[str] = None
    body_html: str
    variables_schema: List[VariableSection] = []
    mandatory_clause_ids: List[str] = []


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    document_type: Optional[str] = None
    event_type: Optional[str] = None
    body_html: Optional[str] = None
    variables_schema: Optional[List[VariableSection]] = None
    mandatory_clause_ids: Optional[List[str]] = None


class RenderRequest(BaseModel):
    variables: Dict[str, Any] = {}


# ---------- contracts ----------

class ContractCreate(BaseModel):
    template_id: int
    client_id: int
    title: Optional[str] = None
    variables: Dict[str, Any] = {}
    sign_by_at: Optional[datetime] = None
    require_otp: bool = False
    proposal_id: Optional[int] = None


class VoidRequest(BaseModel):
    reason: Optional[str] = None


class SignRequest(BaseModel):
    # shape checks happen in the signing service so each failure gets its own reason
    model_config = ConfigDict(populate_by_name=True)

    signature_data_url: str = Field(default="", alias="signatureDataUrl")
    signer_name: str = Field(default="", alias="signerName")
    signer_email: str = Field(default="", alias="signerEmail")
    agreed_to_terms: bool = Field(default=False, alias="agreedToTerms")


class DeclineRequest(BaseModel):
    reason: Optional[str] = None


class OtpRequest(BaseModel):
    email: str


class OtpVerify(BaseModel):
    code: str


# ---------- envelopes ----------

class SignerCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    role: str = "Signer"
    sequence_number: Optional[int] = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()


class EnvelopeCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    workflow: SigningWorkflow = SigningWorkflow.SEQUENTIAL
    signers: List[SignerCreate] = Field(min_length=1)
    expires_at: Optional[datetime] = None
    decline_terminates: Optional[bool] = None


class EnvelopeSign(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    signature_data_url: str = Field(default="", alias="signatureDataUrl")
    agreed_to_terms: bool = Field(default=False, alias="agreedToTerms")


class EnvelopeDecline(BaseModel):
    reason: Optional[str] = None


# ---------- webhooks ----------

class WebhookEndpointCreate(BaseModel):
    url: str = Field(pattern=r"^https?://")
    secret: Optional[str] = None
    events: List[str] = []
    headers: Dict[str, str] = {}
    max_retries: Optional[int] = Field(default=None, ge=1, le=10)
    retry_backoff_seconds: Optional[int] = Field(default=None, ge=1)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
