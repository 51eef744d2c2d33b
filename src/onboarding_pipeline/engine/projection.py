"""
Status projection for the provider-facing poll. A pure read: nothing here writes,
escalates or dispatches; staleness is only reported.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from ..models import (
    ContactStatus,
    CredentialStatus,
    CrossCheckStatus,
    IdentityStatus,
    StatusSnapshot,
    VerificationRecord,
)
from ..tools.policy import VerificationPolicy
from .status import FULLY_VERIFIED, NOT_STARTED, is_in_flight, status_label, verification_level

_IDENTITY_MESSAGES: Dict[IdentityStatus, str] = {
    IdentityStatus.NOT_STARTED: "Submit your passport and a selfie to get started.",
    IdentityStatus.PENDING: "We're checking your identity documents.",
    IdentityStatus.PROCESSING: "We're checking your identity documents.",
    IdentityStatus.VERIFIED: "Your identity is verified.",
    IdentityStatus.REVIEW: "A team member is reviewing your identity documents.",
    IdentityStatus.REJECTED: "Your identity could not be verified.",
    IdentityStatus.FAILED: "We couldn't verify your identity automatically.",
}

_CREDENTIAL_MESSAGES: Dict[CredentialStatus, str] = {
    CredentialStatus.NOT_STARTED: "Add your Working With Children Check.",
    CredentialStatus.PENDING: "We're checking your clearance.",
    CredentialStatus.PROCESSING: "We're checking your clearance.",
    CredentialStatus.DOC_VERIFIED: "Your clearance document is verified.",
    CredentialStatus.VERIFIED: "Your clearance is confirmed with the registry.",
    CredentialStatus.REVIEW: "A team member is checking your clearance.",
    CredentialStatus.REJECTED: "Your clearance was not accepted.",
    CredentialStatus.FAILED: "We couldn't verify your clearance automatically.",
    CredentialStatus.EXPIRED: "Your clearance has expired.",
    CredentialStatus.BARRED: "You can't complete verification with this clearance.",
    CredentialStatus.OCG_NOT_FOUND: "The registry has no record of this clearance.",
    CredentialStatus.CLOSED: "This clearance has been closed by the issuing authority.",
    CredentialStatus.APPLICATION_PENDING: "Your clearance application is still being processed.",
}

_STALE_MESSAGE = "This is taking longer than usual. We'll keep checking."


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def is_stale(status, status_at: Optional[str], now: datetime, stale_after_seconds: int) -> bool:
    if getattr(status, "value", status) != "processing":
        return False
    started = _parse_ts(status_at)
    return started is not None and now - started > timedelta(seconds=stale_after_seconds)


def _message(default: str, reason: Optional[str], stale: bool) -> str:
    if stale:
        return _STALE_MESSAGE
    return f"{default} {reason}" if reason else default


def project(
    user_id: str,
    record: Optional[VerificationRecord],
    policy: VerificationPolicy,
    now: Optional[datetime] = None,
) -> StatusSnapshot:
    now = now or datetime.now(timezone.utc)
    if record is None:
        return StatusSnapshot(
            user_id=user_id,
            verification_status=NOT_STARTED,
            verification_label=status_label(NOT_STARTED),
            verification_level=verification_level(NOT_STARTED, IdentityStatus.NOT_STARTED),
            fully_verified=False,
            identity_status=IdentityStatus.NOT_STARTED,
            identity_message=_IDENTITY_MESSAGES[IdentityStatus.NOT_STARTED],
            credential_status=CredentialStatus.NOT_STARTED,
            contact_status=ContactStatus.NOT_STARTED,
            cross_check_status=CrossCheckStatus.NOT_STARTED,
            credential_unlocked=False,
            contact_unlocked=False,
            should_poll=False,
            poll_interval_seconds=policy.poll_interval_seconds,
        )

    identity_stale = is_stale(record.identity_status, record.identity_status_at, now, policy.stale_after_seconds)
    credential_stale = is_stale(record.credential_status, record.credential_status_at, now, policy.stale_after_seconds)
    identity_ok = record.identity_status == IdentityStatus.VERIFIED
    aggregate = record.verification_status

    return StatusSnapshot(
        record_id=record.id,
        user_id=record.user_id,
        verification_status=aggregate,
        verification_label=status_label(aggregate),
        verification_level=verification_level(aggregate, record.identity_status),
        fully_verified=aggregate == FULLY_VERIFIED,
        identity_status=record.identity_status,
        identity_message=_message(
            _IDENTITY_MESSAGES[record.identity_status], record.identity_rejection_reason, identity_stale
        ),
        identity_guidance=record.identity_guidance,
        identity_stale=identity_stale,
        surname=record.surname,
        given_names=record.given_names,
        extracted_nationality=record.extracted_nationality,
        credential_status=record.credential_status,
        credential_method=record.credential_method,
        credential_number=record.credential_number,
        credential_expiry=record.credential_expiry,
        credential_expiry_warning=record.credential_expiry_warning,
        credential_message=_message(
            _CREDENTIAL_MESSAGES[record.credential_status], record.credential_rejection_reason, credential_stale
        ),
        credential_guidance=record.credential_guidance,
        credential_stale=credential_stale,
        credential_resubmittable=identity_ok and record.credential_status not in (
            CredentialStatus.DOC_VERIFIED, CredentialStatus.VERIFIED, CredentialStatus.BARRED
        ),
        contact_status=record.contact_status,
        cross_check_status=record.cross_check_status,
        cross_check_reasoning=(
            "A team member is reconciling the details on your documents."
            if record.cross_check_status == CrossCheckStatus.REVIEW
            else record.cross_check_reasoning
        ),
        credential_unlocked=identity_ok,
        contact_unlocked=record.credential_status != CredentialStatus.NOT_STARTED,
        should_poll=is_in_flight(record.identity_status) or is_in_flight(record.credential_status),
        poll_interval_seconds=policy.poll_interval_seconds,
    )
