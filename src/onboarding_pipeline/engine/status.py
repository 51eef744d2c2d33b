"""
Aggregate verification status.

`verification_status` is never written on its own: the store recomputes it from the
stage statuses inside every guarded write, using `aggregate_status` below.
"""

from __future__ import annotations

from typing import Dict, Union

from ..models import (
    ContactStatus,
    CredentialStatus,
    CrossCheckStatus,
    IdentityStatus,
)

NOT_STARTED = 0
PENDING_ID_AUTO = 10
PENDING_ID_REVIEW = 11
ID_REJECTED = 12
PENDING_CREDENTIAL_AUTO = 20
PENDING_CREDENTIAL_REVIEW = 21
CREDENTIAL_REJECTED = 22
CREDENTIAL_EXPIRED = 23
CREDENTIAL_DOCUMENT_FAILED = 24
CREDENTIAL_PROCESSING = 25
AWAITING_CROSS_CHECK = 26
CROSS_CHECK_REVIEW = 27
PROVISIONALLY_VERIFIED = 30
FULLY_VERIFIED = 40

STATUS_LABELS: Dict[int, str] = {
    NOT_STARTED: "not started",
    PENDING_ID_AUTO: "identity check in progress",
    PENDING_ID_REVIEW: "identity under review",
    ID_REJECTED: "identity not verified",
    PENDING_CREDENTIAL_AUTO: "awaiting credential",
    PENDING_CREDENTIAL_REVIEW: "credential under review",
    CREDENTIAL_REJECTED: "credential rejected",
    CREDENTIAL_EXPIRED: "credential expired",
    CREDENTIAL_DOCUMENT_FAILED: "credential document failed",
    CREDENTIAL_PROCESSING: "credential check in progress",
    AWAITING_CROSS_CHECK: "awaiting cross-check",
    CROSS_CHECK_REVIEW: "cross-check under review",
    PROVISIONALLY_VERIFIED: "provisionally verified",
    FULLY_VERIFIED: "fully verified",
}

# verification levels shown to providers
LEVEL_SIGNED_UP = 0
LEVEL_REGISTERED = 1
LEVEL_ID_VERIFIED = 2
LEVEL_PROVISIONALLY_VERIFIED = 3
LEVEL_FULLY_VERIFIED = 4

IN_FLIGHT = {"pending", "processing"}

CREDENTIAL_SUCCESS = {CredentialStatus.DOC_VERIFIED, CredentialStatus.VERIFIED}
CREDENTIAL_HARD_FAILURES = {
    CredentialStatus.REJECTED,
    CredentialStatus.BARRED,
    CredentialStatus.OCG_NOT_FOUND,
    CredentialStatus.CLOSED,
}
CREDENTIAL_REVIEWABLE = {CredentialStatus.REVIEW, CredentialStatus.APPLICATION_PENDING}

StatusLike = Union[str, IdentityStatus, CredentialStatus, CrossCheckStatus, ContactStatus]


def aggregate_status(
    identity: StatusLike,
    credential: StatusLike,
    cross_check: StatusLike,
    contact: StatusLike = ContactStatus.NOT_STARTED,
) -> int:
    """Map the stage statuses to the single ordered integer used by queues and filters."""
    identity = IdentityStatus(identity)
    credential = CredentialStatus(credential)
    cross_check = CrossCheckStatus(cross_check)
    contact = ContactStatus(contact)

    if identity == IdentityStatus.NOT_STARTED:
        return NOT_STARTED
    if identity in (IdentityStatus.PENDING, IdentityStatus.PROCESSING):
        return PENDING_ID_AUTO
    if identity == IdentityStatus.REVIEW:
        return PENDING_ID_REVIEW
    if identity in (IdentityStatus.FAILED, IdentityStatus.REJECTED):
        return ID_REJECTED

    # identity verified from here on
    if credential in (CredentialStatus.NOT_STARTED, CredentialStatus.PENDING):
        return PENDING_CREDENTIAL_AUTO
    if credential == CredentialStatus.PROCESSING:
        return CREDENTIAL_PROCESSING
    if credential in CREDENTIAL_REVIEWABLE:
        return PENDING_CREDENTIAL_REVIEW
    if credential in CREDENTIAL_HARD_FAILURES:
        return CREDENTIAL_REJECTED
    if credential == CredentialStatus.EXPIRED:
        return CREDENTIAL_EXPIRED
    if credential == CredentialStatus.FAILED:
        return CREDENTIAL_DOCUMENT_FAILED

    # credential doc_verified / verified
    if cross_check == CrossCheckStatus.REVIEW:
        return CROSS_CHECK_REVIEW
    if cross_check != CrossCheckStatus.PASSED:
        return AWAITING_CROSS_CHECK
    if contact == ContactStatus.SAVED:
        return FULLY_VERIFIED
    return PROVISIONALLY_VERIFIED


def verification_level(aggregate: int, identity: StatusLike) -> int:
    if aggregate == FULLY_VERIFIED:
        return LEVEL_FULLY_VERIFIED
    if aggregate == PROVISIONALLY_VERIFIED:
        return LEVEL_PROVISIONALLY_VERIFIED
    if IdentityStatus(identity) == IdentityStatus.VERIFIED:
        return LEVEL_ID_VERIFIED
    if aggregate == NOT_STARTED:
        return LEVEL_SIGNED_UP
    return LEVEL_REGISTERED


def status_label(aggregate: int) -> str:
    return STATUS_LABELS.get(aggregate, "unknown")


def is_in_flight(status: StatusLike) -> bool:
    value = status.value if hasattr(status, "value") else str(status)
    return value in IN_FLIGHT
