from __future__ import annotations

import logging
import re
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models import (
    CredentialMethod,
    CredentialStatus,
    CredentialSubmission,
    DocumentCheck,
    ExpiryWindow,
    ExtractionVerdict,
    IdentityStatus,
    Phase,
    RegistryResult,
    UserGuidance,
    VerificationRecord,
)
from ..tools.credential_pdf import check_credential_pdf
from ..tools.persist import CREDENTIAL_COLUMNS, CROSS_CHECK_COLUMNS, VerificationStore, pristine_values
from ..tools.policy import VerificationPolicy, guidance, load_policy
from ..tools.storage import LocalObjectStorage
from .cross_check import CrossCheckEngine
from .dispatch import Dispatcher
from .errors import (
    CredentialBarred,
    DispatchFailed,
    DocumentCheckFailed,
    ManualEntrySuggested,
    StageLocked,
    SubmissionInvalid,
    TransitionConflict,
    ValidationTimeout,
)
from .extraction import ExtractionClient, call_collaborator
from .identity import pick_fields, rejection_reason
from .matching import check_expiry, parse_iso_date

LOGGER = logging.getLogger(__name__)

NOT_RESUBMITTABLE = (CredentialStatus.DOC_VERIFIED, CredentialStatus.VERIFIED, CredentialStatus.BARRED)
SUBMITTABLE = tuple(s for s in CredentialStatus if s not in NOT_RESUBMITTABLE)

_FIELD_MAP: Dict[str, Tuple[str, ...]] = {
    "extracted_credential_surname": ("surname", "family_name", "last_name"),
    "extracted_credential_first_name": ("first_name", "given_names", "given_name"),
    "extracted_credential_other_names": ("other_names", "other_name", "middle_names"),
    "extracted_credential_number": ("credential_number", "wwc_number", "wwcc_number", "number"),
    "extracted_clearance_type": ("clearance_type", "type_of_clearance", "type"),
    "extracted_credential_expiry": ("expiry_date", "expiry", "date_of_expiry"),
}

# registry result -> (stage status, guidance code)
REGISTRY_OUTCOMES: Dict[str, Tuple[CredentialStatus, Optional[str]]] = {
    "CLEARED": (CredentialStatus.VERIFIED, None),
    "NOT FOUND": (CredentialStatus.OCG_NOT_FOUND, "CREDENTIAL_NOT_FOUND"),
    "BARRED": (CredentialStatus.BARRED, "CREDENTIAL_BARRED"),
    "INTERIM BAR": (CredentialStatus.BARRED, "CREDENTIAL_BARRED"),
    "CLOSED": (CredentialStatus.CLOSED, "CREDENTIAL_CLOSED"),
    "APPLICATION IN PROGRESS": (CredentialStatus.APPLICATION_PENDING, "APPLICATION_PENDING"),
}
REGISTRY_MATCHABLE = (
    CredentialStatus.PENDING,
    CredentialStatus.PROCESSING,
    CredentialStatus.DOC_VERIFIED,
    CredentialStatus.REVIEW,
    CredentialStatus.APPLICATION_PENDING,
)


def normalize_credential_number(value: Optional[str]) -> str:
    return re.sub(r"\s+", "", value or "").upper()


class CredentialEngine:
    def __init__(
        self,
        store: VerificationStore,
        extraction: ExtractionClient,
        storage: LocalObjectStorage,
        dispatcher: Dispatcher,
        cross_check: CrossCheckEngine,
        policy: Callable[[], VerificationPolicy] = load_policy,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.extraction = extraction
        self.storage = storage
        self.dispatcher = dispatcher
        self.cross_check = cross_check
        self.policy = policy
        self.today = today

    # ------------------------------ preconditions ------------------------------

    @staticmethod
    def check_unlocked(record: VerificationRecord) -> None:
        if record.identity_status != IdentityStatus.VERIFIED:
            raise StageLocked("Your identity must be verified before you add a clearance")

    @staticmethod
    def check_resubmittable(record: VerificationRecord) -> None:
        if record.credential_status == CredentialStatus.BARRED:
            raise CredentialBarred("This clearance has been barred and cannot be resubmitted")
        if record.credential_status in NOT_RESUBMITTABLE:
            raise TransitionConflict("Your clearance is already verified")

    # ------------------------------ local document check ------------------------------

    def validate_document(self, record: VerificationRecord, data: bytes) -> DocumentCheck:
        """Local structural check of a clearance PDF, bounded by the validation timeout."""
        self.check_unlocked(record)
        policy = self.policy()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="credential-pdf")
        future = pool.submit(
            check_credential_pdf,
            data,
            expected_surname=record.extracted_surname or record.surname,
            expected_given_names=record.extracted_given_names or record.given_names,
            today=self.today(),
            policy=policy,
        )
        try:
            return future.result(timeout=policy.validation_timeout_seconds)
        except FuturesTimeout as exc:
            raise ValidationTimeout(
                f"Checking the document took longer than {policy.validation_timeout_seconds:g}s; please try again"
            ) from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------ submission ------------------------------

    def submit(
        self,
        record: VerificationRecord,
        submission: CredentialSubmission,
        document: Optional[bytes] = None,
        filename: Optional[str] = None,
        dispatcher: Optional[Dispatcher] = None,
    ) -> VerificationRecord:
        self.check_unlocked(record)
        self.check_resubmittable(record)

        if submission.method == CredentialMethod.DOCUMENT_EMAIL:
            return self._submit_document(record, document, filename)
        if submission.method == CredentialMethod.MOBILE_WALLET:
            return self._submit_wallet(record, submission, document, filename, dispatcher)
        return self._submit_manual(record, submission)

    def _fresh(self, method: CredentialMethod) -> Dict[str, Any]:
        """Changes that discard any earlier credential attempt and the cross-check built on it."""
        return {
            **pristine_values(CREDENTIAL_COLUMNS),
            **pristine_values(CROSS_CHECK_COLUMNS),
            "credential_method": method,
        }

    def _save(self, record: VerificationRecord, changes: Dict[str, Any]) -> Tuple[VerificationRecord, VerificationRecord]:
        result = self.store.transition(
            record.id,
            expect={"identity_status": IdentityStatus.VERIFIED, "credential_status": SUBMITTABLE},
            changes=changes,
        )
        if result is None:
            raise TransitionConflict("Clearance stage changed while saving; refresh and try again")
        return result

    def _store_file(self, user_id: str, filename: str, data: bytes) -> str:
        try:
            return self.storage.put(user_id, filename, data)
        except ValueError as exc:
            raise SubmissionInvalid(str(exc), [{"code": "FILE_INVALID", "text": str(exc)}]) from exc
        except OSError as exc:
            raise DispatchFailed(f"Could not store the document: {exc}") from exc

    def _submit_document(
        self, record: VerificationRecord, document: Optional[bytes], filename: Optional[str]
    ) -> VerificationRecord:
        if not document:
            raise SubmissionInvalid(
                "Upload your clearance email as a PDF",
                [{"code": "DOCUMENT_MISSING", "text": "A PDF document is required"}],
            )
        check = self.validate_document(record, document)
        if not check.passed:
            raise self._document_error(check)

        ref = self._store_file(record.user_id, filename or "clearance.pdf", document)
        fields = pick_fields(check.fields, _FIELD_MAP)
        changes = {
            **self._fresh(CredentialMethod.DOCUMENT_EMAIL),
            **fields,
            "credential_number": fields["extracted_credential_number"],
            "credential_expiry": fields["extracted_credential_expiry"],
            "credential_document_refs": [ref],
            "credential_doc_verified": True,
            "credential_expiry_warning": check.expiry_window == ExpiryWindow.EXPIRING_SOON,
            "credential_reasoning": check.reasoning,
            "credential_issues": check.issues,
            "credential_status": CredentialStatus.DOC_VERIFIED,
        }
        self._save(record, changes)
        self.cross_check.trigger(record.id)
        return self.store.get(record.id)

    @staticmethod
    def _document_error(check: DocumentCheck) -> DocumentCheckFailed:
        if check.name_mismatch:
            return DocumentCheckFailed(
                "The name on this clearance doesn't match your identity document", check, guidance("DOCUMENT_NAME_MISMATCH")
            )
        if check.expiry_window == ExpiryWindow.EXPIRED:
            return DocumentCheckFailed("This clearance has expired", check, guidance("CREDENTIAL_EXPIRED"))
        if check.needs_fallback:
            return ManualEntrySuggested(
                "We couldn't confirm this document automatically; enter your clearance details manually instead",
                check,
                guidance("DOCUMENT_UNREADABLE"),
            )
        return DocumentCheckFailed("This document could not be accepted", check, guidance("DOCUMENT_UNREADABLE"))

    def _submit_wallet(
        self,
        record: VerificationRecord,
        submission: CredentialSubmission,
        document: Optional[bytes],
        filename: Optional[str],
        dispatcher: Optional[Dispatcher],
    ) -> VerificationRecord:
        policy = self.policy()
        number = normalize_credential_number(submission.credential_number) or None
        if number and not re.fullmatch(policy.credential_number_pattern, number):
            raise SubmissionInvalid(
                "Clearance number must look like WWC1234567A",
                [{"code": "CREDENTIAL_NUMBER_INVALID", "text": "Clearance number format is invalid"}],
            )
        if document:
            ref = self._store_file(record.user_id, filename or "wallet.png", document)
        elif submission.document_ref and self.storage.belongs_to(submission.document_ref, record.user_id):
            ref = submission.document_ref
        else:
            raise SubmissionInvalid(
                "Upload a screenshot of your clearance",
                [{"code": "DOCUMENT_MISSING", "text": "A wallet screenshot is required"}],
            )

        submission_id = uuid.uuid4().hex
        changes = {
            **self._fresh(CredentialMethod.MOBILE_WALLET),
            "credential_number": number,
            "credential_document_refs": [ref],
            "credential_status": CredentialStatus.PENDING,
            "credential_submission_id": submission_id,
        }
        before, _ = self._save(record, changes)

        try:
            (dispatcher or self.dispatcher).submit(self.run_check, record.id, submission_id)
        except Exception as exc:
            self._restore(before, changes, submission_id)
            if isinstance(exc, DispatchFailed):
                raise
            raise DispatchFailed(f"Could not start the clearance check: {exc}") from exc
        return self.store.get(record.id)

    def _submit_manual(self, record: VerificationRecord, submission: CredentialSubmission) -> VerificationRecord:
        policy = self.policy()
        violations: List[Dict[str, str]] = []
        number = normalize_credential_number(submission.credential_number)
        if not number:
            violations.append({"code": "CREDENTIAL_NUMBER_MISSING", "text": "Clearance number is required"})
        elif not re.fullmatch(policy.credential_number_pattern, number):
            violations.append({"code": "CREDENTIAL_NUMBER_INVALID", "text": "Clearance number must look like WWC1234567A"})

        expiry = parse_iso_date(submission.expiry_date)
        window: Optional[ExpiryWindow] = None
        if expiry is None:
            violations.append({"code": "EXPIRY_MISSING", "text": "Expiry date is required (YYYY-MM-DD)"})
        else:
            window = check_expiry(expiry, self.today(), policy.expiry_warning_days)
            if window == ExpiryWindow.EXPIRED:
                violations.append({"code": "CREDENTIAL_EXPIRED", "text": f"Clearance expired on {expiry.isoformat()}"})

        if not submission.attested:
            violations.append({"code": "ATTESTATION_REQUIRED", "text": "Confirm that the clearance details are yours"})
        if violations:
            raise SubmissionInvalid("Clearance details are not valid", violations)

        changes = {
            **self._fresh(CredentialMethod.MANUAL_ENTRY),
            "credential_number": number,
            "credential_expiry": expiry.isoformat(),
            "credential_expiry_warning": window == ExpiryWindow.EXPIRING_SOON,
            "credential_status": CredentialStatus.REVIEW,
        }
        self._save(record, changes)
        return self.store.get(record.id)

    # ------------------------------ async verdict ------------------------------

    def run_check(self, record_id: str, submission_id: str) -> None:
        """Worker entry point: claim pending -> processing, call the collaborator, write back."""
        claimed = self.store.transition(
            record_id,
            expect={"credential_status": CredentialStatus.PENDING, "credential_submission_id": submission_id},
            changes={"credential_status": CredentialStatus.PROCESSING},
        )
        if claimed is None:
            LOGGER.info("Skipping clearance check for superseded submission %s", submission_id)
            return
        _, record = claimed

        policy = self.policy()
        verdict = call_collaborator(
            self.extraction,
            list(record.credential_document_refs),
            Phase.CREDENTIAL,
            {
                "surname": record.extracted_surname or record.surname,
                "given_names": record.extracted_given_names or record.given_names,
                "credential_number": record.credential_number,
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
        fields = pick_fields(verdict.fields, _FIELD_MAP)
        if fields["extracted_credential_number"]:
            fields["extracted_credential_number"] = normalize_credential_number(fields["extracted_credential_number"])
        policy = self.policy()
        expiry = parse_iso_date(fields["extracted_credential_expiry"])
        window = check_expiry(expiry, self.today(), policy.expiry_warning_days) if expiry else None
        status, reason, user_guidance = self._outcome(verdict, window, expiry, policy)

        changes: Dict[str, Any] = {
            **fields,
            "credential_reasoning": verdict.reasoning,
            "credential_issues": list(verdict.issues),
            "credential_status": status,
            "credential_rejection_reason": reason,
            "credential_guidance": user_guidance,
            "credential_doc_verified": status == CredentialStatus.DOC_VERIFIED,
            "credential_expiry_warning": window == ExpiryWindow.EXPIRING_SOON,
        }
        if expiry:
            changes["credential_expiry"] = expiry.isoformat()

        result = self.store.transition(
            record_id,
            expect={"credential_status": CredentialStatus.PROCESSING, "credential_submission_id": submission_id},
            changes=changes,
        )
        if result is None:
            LOGGER.info("Discarded clearance verdict for submission %s (no longer current)", submission_id)
            return False
        before, after = result
        if not after.credential_number and after.extracted_credential_number:
            self.store.transition(
                record_id,
                expect={"credential_submission_id": submission_id},
                changes={"credential_number": after.extracted_credential_number},
            )
        if status == CredentialStatus.DOC_VERIFIED:
            self.cross_check.trigger(record_id)
        return True

    def mark_technical_failure(self, record_id: str, submission_id: str) -> bool:
        result = self.store.transition(
            record_id,
            expect={"credential_status": CredentialStatus.PROCESSING, "credential_submission_id": submission_id},
            changes={
                "credential_status": CredentialStatus.FAILED,
                "credential_rejection_reason": "The automated clearance check could not be completed",
                "credential_guidance": guidance("TECHNICAL_RETRY"),
            },
        )
        return result is not None

    @staticmethod
    def _outcome(
        verdict: ExtractionVerdict,
        window: Optional[ExpiryWindow],
        expiry: Optional[date],
        policy: VerificationPolicy,
    ) -> Tuple[CredentialStatus, Optional[str], Optional[UserGuidance]]:
        if verdict.needs_review or verdict.confidence < policy.review_confidence:
            return CredentialStatus.REVIEW, None, verdict.user_guidance
        if window == ExpiryWindow.EXPIRED:
            return (
                CredentialStatus.EXPIRED,
                f"Clearance expired on {expiry.isoformat()}",
                verdict.user_guidance or guidance("CREDENTIAL_EXPIRED"),
            )
        if verdict.passed:
            return CredentialStatus.DOC_VERIFIED, None, None
        reason = rejection_reason(verdict, "Automated clearance check failed")
        return CredentialStatus.FAILED, reason, verdict.user_guidance or guidance("DOCUMENT_UNREADABLE")

    def _restore(self, before: VerificationRecord, changes: Dict[str, Any], submission_id: str) -> None:
        restore = {column: getattr(before, column) for column in changes}
        restore["credential_status_at"] = before.credential_status_at
        restored = self.store.transition(
            before.id,
            expect={"credential_status": CredentialStatus.PENDING, "credential_submission_id": submission_id},
            changes=restore,
        )
        if restored is None:
            LOGGER.warning("Could not restore clearance stage of record %s after dispatch failure", before.id)

    # ------------------------------ registry feed ------------------------------

    def apply_registry_result(self, result: RegistryResult) -> List[Dict[str, Any]]:
        """Apply one issuing-authority lookup to every matching record; returns what was done."""
        key = (result.result_status or "").strip().upper()
        outcome = REGISTRY_OUTCOMES.get(key)
        number = normalize_credential_number(result.reference_number)
        if outcome is None:
            LOGGER.warning("Unknown registry status %r for %s", result.result_status, number)
            return [{"reference_number": number, "action": "ignored", "reason": f"unknown status {key}"}]

        status, guidance_code = outcome
        actions: List[Dict[str, Any]] = []
        for record in self.store.find_by_credential_number(number):
            changes: Dict[str, Any] = {"credential_status": status}
            text = f"Registry: {key}" + (f" - {result.result_text}" if result.result_text else "")
            if status == CredentialStatus.VERIFIED:
                changes.update(
                    credential_doc_verified=True,
                    credential_rejection_reason=None,
                    credential_guidance=None,
                    credential_reasoning=text,
                )
                expiry = parse_iso_date(result.expiry_date)
                if expiry:
                    changes["credential_expiry"] = expiry.isoformat()
            else:
                changes.update(credential_rejection_reason=text, credential_guidance=guidance(guidance_code))
                changes.update(pristine_values(CROSS_CHECK_COLUMNS))
            applied = self.store.transition(
                record.id, expect={"credential_status": REGISTRY_MATCHABLE}, changes=changes
            )
            actions.append({
                "record_id": record.id,
                "reference_number": number,
                "action": status.value if applied else "skipped",
            })
            if applied and status == CredentialStatus.VERIFIED:
                self.cross_check.trigger(record.id)
        if not actions:
            actions.append({"reference_number": number, "action": "unmatched"})
        return actions
