
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional


class IdentityStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    PROCESSING = "processing"
    VERIFIED = "verified"
    REVIEW = "review"
    REJECTED = "rejected"
    FAILED = "failed"


class CredentialStatus(str, Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    PROCESSING = "processing"
    DOC_VERIFIED = "doc_verified"
    VERIFIED = "verified"               # confirmed against the issuing registry
    REVIEW = "review"
    REJECTED = "rejected"
    FAILED = "failed"
    EXPIRED = "expired"
    BARRED = "barred"
    OCG_NOT_FOUND = "ocg_not_found"
    CLOSED = "closed"
    APPLICATION_PENDING = "application_pending"


class ContactStatus(str, Enum):
    NOT_STARTED = "not_started"
    SAVED = "saved"


class CrossCheckStatus(str, Enum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    PASSED = "passed"
    REVIEW = "review"


class CredentialMethod(str, Enum):
    DOCUMENT_EMAIL = "document_email"
    MOBILE_WALLET = "mobile_wallet"
    MANUAL_ENTRY = "manual_entry"


class Phase(str, Enum):
    IDENTITY = "identity"
    CREDENTIAL = "credential"


class UserRole(str, Enum):
    PROVIDER = "provider"
    FAMILY = "family"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class ExpiryWindow(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class UserGuidance(BaseModel):
    title: str
    explanation: str
    steps_to_fix: List[str] = Field(default_factory=list)


class ExtractionVerdict(BaseModel):
    """Structured answer of the document extraction collaborator."""
    model_config = ConfigDict(populate_by_name=True)

    passed: bool = Field(alias="pass")
    fields: Dict[str, Optional[str]] = Field(default_factory=dict)
    reasoning: str = ""
    issues: List[str] = Field(default_factory=list)
    confidence: float = 1.0
    needs_review: bool = False
    user_guidance: Optional[UserGuidance] = None


# ------------------------------ Submissions ----------------------------------

class IdentitySubmission(BaseModel):
    surname: str
    given_names: str
    date_of_birth: str          # YYYY-MM-DD
    document_country: str
    document_ref: str
    selfie_ref: str
    attested: bool = False


class CredentialSubmission(BaseModel):
    method: CredentialMethod
    credential_number: Optional[str] = None
    expiry_date: Optional[str] = None      # YYYY-MM-DD
    document_ref: Optional[str] = None     # wallet screenshot ref
    attested: bool = False


class ContactSubmission(BaseModel):
    phone_number: str
    address_line: str
    city: str
    postcode: str
    region: Optional[str] = None
    country: Optional[str] = None


# ------------------------------ Record ---------------------------------------

class VerificationRecord(BaseModel):
    id: str
    user_id: str

    # identity
    surname: Optional[str] = None
    given_names: Optional[str] = None
    date_of_birth: Optional[str] = None
    document_country: Optional[str] = None
    document_ref: Optional[str] = None
    selfie_ref: Optional[str] = None
    extracted_surname: Optional[str] = None
    extracted_given_names: Optional[str] = None
    extracted_dob: Optional[str] = None
    extracted_nationality: Optional[str] = None
    extracted_document_number: Optional[str] = None
    extracted_document_expiry: Optional[str] = None
    identity_reasoning: Optional[str] = None
    identity_issues: List[str] = Field(default_factory=list)
    identity_rejection_reason: Optional[str] = None
    identity_guidance: Optional[UserGuidance] = None
    identity_status: IdentityStatus = IdentityStatus.NOT_STARTED
    identity_status_at: Optional[str] = None
    identity_submission_id: Optional[str] = None

    # credential
    credential_method: Optional[CredentialMethod] = None
    credential_number: Optional[str] = None
    credential_expiry: Optional[str] = None
    credential_document_refs: List[str] = Field(default_factory=list)
    extracted_credential_surname: Optional[str] = None
    extracted_credential_first_name: Optional[str] = None
    extracted_credential_other_names: Optional[str] = None
    extracted_credential_number: Optional[str] = None
    extracted_clearance_type: Optional[str] = None
    extracted_credential_expiry: Optional[str] = None
    credential_doc_verified: bool = False
    credential_admin_verified: bool = False
    credential_expiry_warning: bool = False
    credential_reasoning: Optional[str] = None
    credential_issues: List[str] = Field(default_factory=list)
    credential_rejection_reason: Optional[str] = None
    credential_guidance: Optional[UserGuidance] = None
    credential_status: CredentialStatus = CredentialStatus.NOT_STARTED
    credential_status_at: Optional[str] = None
    credential_submission_id: Optional[str] = None

    # contact
    phone_number: Optional[str] = None
    address_line: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    contact_status: ContactStatus = ContactStatus.NOT_STARTED

    # cross-check
    cross_check_status: CrossCheckStatus = CrossCheckStatus.NOT_STARTED
    cross_check_reasoning: Optional[str] = None
    cross_check_issues: List[str] = Field(default_factory=list)

    verification_status: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TransitionEvent(BaseModel):
    record_id: str
    user_id: str
    stage: str                  # identity | credential | contact | cross_check
    from_status: str
    to_status: str
    reason: Optional[str] = None
    at: str


class DocumentCheck(BaseModel):
    """Outcome of the local credential document check."""
    passed: bool
    needs_fallback: bool = False
    name_mismatch: bool = False
    expiry_window: Optional[ExpiryWindow] = None
    fields: Dict[str, Optional[str]] = Field(default_factory=dict)
    markers_found: int = 0
    issues: List[str] = Field(default_factory=list)
    reasoning: str = ""


class CrossCheckResult(BaseModel):
    passed: bool
    issues: List[str] = Field(default_factory=list)
    reasoning: str


class RegistryResult(BaseModel):
    reference_number: str
    result_status: str          # CLEARED | NOT FOUND | BARRED | INTERIM BAR | CLOSED | APPLICATION IN PROGRESS
    family_name: Optional[str] = None
    expiry_date: Optional[str] = None
    result_text: Optional[str] = None


class StatusSnapshot(BaseModel):
    record_id: Optional[str] = None
    user_id: str
    verification_status: int
    verification_label: str
    verification_level: int
    fully_verified: bool

    identity_status: IdentityStatus
    identity_message: Optional[str] = None
    identity_guidance: Optional[UserGuidance] = None
    identity_stale: bool = False
    surname: Optional[str] = None
    given_names: Optional[str] = None
    extracted_nationality: Optional[str] = None

    credential_status: CredentialStatus
    credential_method: Optional[CredentialMethod] = None
    credential_number: Optional[str] = None
    credential_expiry: Optional[str] = None
    credential_expiry_warning: bool = False
    credential_message: Optional[str] = None
    credential_guidance: Optional[UserGuidance] = None
    credential_stale: bool = False
    credential_resubmittable: bool = True

    contact_status: ContactStatus
    cross_check_status: CrossCheckStatus
    cross_check_reasoning: Optional[str] = None

    credential_unlocked: bool
    contact_unlocked: bool
    should_poll: bool
    poll_interval_seconds: int
