from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from ..models import (
    CredentialStatus,
    ExtractionVerdict,
    IdentityStatus,
    IdentitySubmission,
    Phase,
    UserGuidance,
    VerificationRecord,
)
from ..tools.persist import CREDENTIAL_COLUMNS, CROSS_CHECK_COLUMNS, VerificationStore, pristine_values
from ..tools.policy import VerificationPolicy, guidance, load_policy
from .cross_check import CrossCheckEngine
from .dispatch import Dispatcher
from .errors import CredentialBarred, DispatchFailed, SubmissionInvalid, TransitionConflict
from .extraction import ExtractionClient, call_collaborator

LOGGER = logging.getLogger(__name__)

# statuses from which the provider may (re)submit; processing is superseded
SUBMITTABLE = (
    IdentityStatus.NOT_STARTED,
    IdentityStatus.PENDING,
    IdentityStatus.PROCESSING,
    IdentityStatus.FAILED,
    IdentityStatus.REJECTED,
)
MANUAL_REVIEW_FROM = (IdentityStatus.FAILED, IdentityStatus.REJECTED, IdentityStatus.REVIEW)

# verdict field name -> record column (first alias found wins)
_FIELD_MAP: Dict[str, Tuple[str, ...]] = {
    "extracted_surname": ("surname", "family_name", "last_name"),
    "extracted_given_names": ("given_names", "first_name", "given_name"),
    "extracted_dob": ("date_of_birth", "dob"),
    "extracted_nationality": ("nationality",),
    "extracted_document_number": ("document_number", "passport_number", "id_number"),
    "extracted_document_expiry": ("expiry_date", "date_of_expiry", "expiry"),
}


def pick_fields(fields: Dict[str, Any], mapping: Dict[str, Tuple[str, ...]]) -> Dict[str, Optional[str]]:
    """Map collaborator field names (tolerant to common aliases) onto record columns."""
    out: Dict[str, Optional[str]] = {}
    for column, aliases in mapping.items():
        value = next((fields.get(a) for a in aliases if fields.get(a) not in (None, "")), None)
        out[column] = str(value).strip() if value is not None else None
    return out


def rejection_reason(verdict: ExtractionVerdict, default: str) -> str:
    if verdict.issues:
        return "; ".join(verdict.issues)
    return verdict.reasoning or default


class IdentityEngine:
    def __init__(
        self,
        store: VerificationStore,
        extraction: ExtractionClient,
        dispatcher: Dispatcher,
        cross_check: CrossCheckEngine,
        policy: Callable[[], VerificationPolicy] = load_policy,
    ):
        self.store = store
        self.extraction = extraction
        self.dispatcher = dispatcher
        self.cross_check = cross_check
        self.policy = policy

    # ------------------------------ provider actions ------------------------------

    @staticmethod
    def check_attested(submission: IdentitySubmission) -> None:
        if not submission.attested:
            raise SubmissionInvalid(
                "Please confirm that your details are accurate",
                [{"code": "ATTESTATION_REQUIRED", "text": "Attestation is required"}],
            )

    def submit(
        self,
        record: VerificationRecord,
        submission: IdentitySubmission,
        dispatcher: Optional[Dispatcher] = None,
    ) -> VerificationRecord:
        """Persist the submission as `processing` and dispatch the async check."""
        self.check_attested(submission)
        if record.identity_status not in SUBMITTABLE:
            raise TransitionConflict(f"Identity cannot be resubmitted while '{record.identity_status.value}'")

        submission_id = uuid.uuid4().hex
        changes = {
            "surname": submission.surname.strip(),
            "given_names": submission.given_names.strip(),
            "date_of_birth": submission.date_of_birth,
            "document_country": submission.document_country.strip(),
            "document_ref": submission.document_ref,
            "selfie_ref": submission.selfie_ref,
            **{column: None for column in _FIELD_MAP},
            "identity_reasoning": None,
            "identity_issues": [],
            "identity_rejection_reason": None,
            "identity_guidance": None,
            "identity_status": IdentityStatus.PROCESSING,
            "identity_submission_id": submission_id,
            **pristine_values(CROSS_CHECK_COLUMNS),
        }
        result = self.store.transition(record.id, expect={"identity_status": SUBMITTABLE}, changes=changes)
        if result is None:
            raise TransitionConflict("Identity stage changed while saving; refresh and try again")
        before, _ = result

        try:
            (dispatcher or self.dispatcher).submit(self.run_check, record.id, submission_id)
        except Exception as exc:
            self._restore(before, changes, submission_id)
            if isinstance(exc, DispatchFailed):
                raise
            raise DispatchFailed(f"Could not start the identity check: {exc}") from exc

        return self.store.get(record.id)

    def submit_for_manual_review(self, record: VerificationRecord) -> VerificationRecord:
        """
        Escalate a failed identity to a human. Credential work done against the old
        determination is wiped in the same write.
        """
        if record.identity_status not in MANUAL_REVIEW_FROM:
            raise TransitionConflict(
                f"Manual review is only available after a failed check (currently '{record.identity_status.value}')"
            )
        if record.credential_status == CredentialStatus.BARRED:
            raise CredentialBarred("This account cannot be re-verified")

        changes = {
            "identity_status": IdentityStatus.REVIEW,
            "identity_rejection_reason": None,
            "identity_guidance": None,
            "identity_submission_id": None,
            **pristine_values(CREDENTIAL_COLUMNS),
            **pristine_values(CROSS_CHECK_COLUMNS),
        }
        result = self.store.transition(
            record.id,
            expect={"identity_status": MANUAL_REVIEW_FROM, "credential_status": _not_barred()},
            changes=changes,
        )
        if result is None:
            raise TransitionConflict("Identity stage changed while requesting review; refresh and try again")
        return result[1]

    # ------------------------------ async verdict ------------------------------

    def run_check(self, record_id: str, submission_id: str) -> None:
        """Worker entry point: call the collaborator and write the verdict back."""
        record = self.store.get(record_id)
        if (
            record is None
            or record.identity_status != IdentityStatus.PROCESSING
            or record.identity_submission_id != submission_id
        ):
            LOGGER.info("Skipping identity check for superseded submission %s", submission_id)
            return

        policy = self.policy()
        verdict = call_collaborator(
            self.extraction,
            [record.document_ref, record.selfie_ref],
            Phase.IDENTITY,
            {
                "surname": record.surname,
                "given_names": record.given_names,
                "date_of_birth": record.date_of_birth,
                "document_country": record.document_country,
            },
            timeout=policy.extraction_timeout_seconds,
            attempts=policy.extraction_attempts,
            retry_delay=policy.extraction_retry_delay_seconds,
            record_id=record_id,
        )
        if verdict is None:
            self.mark_technical_failure(record_id, submission_id)
            return
        self.apply_verdict(record_id, submission_id, verdict)

    def apply_verdict(self, record_id: str, submission_id: str, verdict: ExtractionVerdict) -> bool:
        """Guarded write-back; False when the submission was superseded or already decided."""
        status, reason, user_guidance = self._outcome(verdict, self.policy())
        changes = {
            **pick_fields(verdict.fields, _FIELD_MAP),
            "identity_reasoning": verdict.reasoning,
            "identity_issues": list(verdict.issues),
            "identity_status": status,
            "identity_rejection_reason": reason,
            "identity_guidance": user_guidance,
        }
        result = self.store.transition(
            record_id,
            expect={"identity_status": IdentityStatus.PROCESSING, "identity_submission_id": submission_id},
            changes=changes,
        )
        if result is None:
            LOGGER.info("Discarded identity verdict for submission %s (no longer current)", submission_id)
            return False
        if status == IdentityStatus.VERIFIED:
            self.cross_check.trigger(record_id)
        return True

    def mark_technical_failure(self, record_id: str, submission_id: str) -> bool:
        result = self.store.transition(
            record_id,
            expect={"identity_status": IdentityStatus.PROCESSING, "identity_submission_id": submission_id},
            changes={
                "identity_status": IdentityStatus.FAILED,
                "identity_rejection_reason": "The automated identity check could not be completed",
                "identity_guidance": guidance("TECHNICAL_RETRY"),
            },
        )
        return result is not None

    # ------------------------------ helpers ------------------------------

    @staticmethod
    def _outcome(
        verdict: ExtractionVerdict, policy: VerificationPolicy
    ) -> Tuple[IdentityStatus, Optional[str], Optional[UserGuidance]]:
        if verdict.needs_review or verdict.confidence < policy.review_confidence:
            return IdentityStatus.REVIEW, None, verdict.user_guidance
        if verdict.passed:
            return IdentityStatus.VERIFIED, None, None
        reason = rejection_reason(verdict, "Automated identity check failed")
        return IdentityStatus.FAILED, reason, verdict.user_guidance or guidance("IDENTITY_FAILED")

    def _restore(self, before: VerificationRecord, changes: Dict[str, Any], submission_id: str) -> None:
        restore = {column: getattr(before, column) for column in changes}
        restore["identity_status_at"] = before.identity_status_at
        restored = self.store.transition(
            before.id,
            expect={"identity_status": IdentityStatus.PROCESSING, "identity_submission_id": submission_id},
            changes=restore,
        )
        if restored is None:
            LOGGER.warning("Could not restore identity stage of record %s after dispatch failure", before.id)


def _not_barred() -> Tuple[CredentialStatus, ...]:
    return tuple(s for s in CredentialStatus if s != CredentialStatus.BARRED)
