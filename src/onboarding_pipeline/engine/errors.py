from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import DocumentCheck, UserGuidance


class VerificationError(Exception):
    """Base class for every error the verification engine raises to callers."""

    code: str = "VERIFICATION_ERROR"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class SubmissionInvalid(VerificationError):
    code = "SUBMISSION_INVALID"

    def __init__(self, message: str, violations: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.violations = violations or []

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["violations"] = self.violations
        return out


class DocumentCheckFailed(SubmissionInvalid):
    code = "DOCUMENT_CHECK_FAILED"

    def __init__(self, message: str, check: DocumentCheck, guidance: Optional[UserGuidance] = None):
        super().__init__(message, [{"code": self.code, "text": issue} for issue in check.issues])
        self.check = check
        self.guidance = guidance

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["check"] = self.check.model_dump()
        out["guidance"] = self.guidance.model_dump() if self.guidance else None
        return out


class ManualEntrySuggested(DocumentCheckFailed):
    code = "MANUAL_ENTRY_SUGGESTED"


class StageLocked(VerificationError):
    code = "STAGE_LOCKED"


class TransitionConflict(VerificationError):
    code = "TRANSITION_CONFLICT"


class CredentialBarred(TransitionConflict):
    code = "CREDENTIAL_BARRED"


class RecordNotFound(VerificationError):
    code = "RECORD_NOT_FOUND"


class NotAuthorized(VerificationError):
    code = "NOT_AUTHORIZED"


class DispatchFailed(VerificationError):
    code = "DISPATCH_FAILED"
    retryable = True


class ValidationTimeout(VerificationError):
    code = "VALIDATION_TIMEOUT"
    retryable = True
