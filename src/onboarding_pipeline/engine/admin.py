"""
Operator overrides. Every action checks the caller's role, applies a guarded
transition (an action on a state it does not apply to is a TransitionConflict,
never a silent double-apply), and appends one line to the audit log.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..models import (
    CredentialStatus,
    IdentityStatus,
    UserRole,
    VerificationRecord,
)
from ..tools.persist import CROSS_CHECK_COLUMNS, AuditLog, VerificationStore, pristine_values
from ..tools.policy import VerificationPolicy, guidance, load_policy
from .cross_check import CrossCheckEngine
from .errors import NotAuthorized, RecordNotFound, SubmissionInvalid, TransitionConflict

LOGGER = logging.getLogger(__name__)

OPERATOR_ROLES = {UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value}
ASSIGNABLE_ROLES = (UserRole.PROVIDER, UserRole.FAMILY, UserRole.ADMIN)

APPROVABLE_IDENTITY = (
    IdentityStatus.PENDING,
    IdentityStatus.PROCESSING,
    IdentityStatus.REVIEW,
    IdentityStatus.FAILED,
    IdentityStatus.REJECTED,
)
REJECTABLE_IDENTITY = (
    IdentityStatus.PENDING,
    IdentityStatus.PROCESSING,
    IdentityStatus.REVIEW,
    IdentityStatus.FAILED,
    IdentityStatus.VERIFIED,
)
CONFIRMABLE_CREDENTIAL = (
    CredentialStatus.PENDING,
    CredentialStatus.PROCESSING,
    CredentialStatus.REVIEW,
    CredentialStatus.FAILED,
    CredentialStatus.APPLICATION_PENDING,
)
REJECTABLE_CREDENTIAL = tuple(
    s for s in CredentialStatus
    if s not in (CredentialStatus.NOT_STARTED, CredentialStatus.REJECTED, CredentialStatus.BARRED)
)
BARRABLE_CREDENTIAL = tuple(s for s in CredentialStatus if s != CredentialStatus.BARRED)


def _env_super_admins() -> set:
    raw = os.getenv("SUPER_ADMIN_IDS", "")
    return {part.strip() for part in raw.split(",") if part.strip()}


def _required_reason(reason: Optional[str]) -> str:
    text = (reason or "").strip()
    if not text:
        raise SubmissionInvalid("A reason is required", [{"code": "REASON_REQUIRED", "text": "reason must not be blank"}])
    return text


class AdminEngine:
    def __init__(
        self,
        store: VerificationStore,
        audit: AuditLog,
        cross_check: CrossCheckEngine,
        policy: Callable[[], VerificationPolicy] = load_policy,
    ):
        self.store = store
        self.audit = audit
        self.cross_check = cross_check
        self.policy = policy

    # ------------------------------ authorization ------------------------------

    def role_of(self, user_id: str) -> Optional[str]:
        if user_id in _env_super_admins():
            return UserRole.SUPER_ADMIN.value
        return self.store.get_role(user_id)

    def require_admin(self, admin_id: Optional[str]) -> str:
        if not admin_id or self.role_of(admin_id) not in OPERATOR_ROLES:
            raise NotAuthorized("Operator access required")
        return admin_id

    def _load(self, record_id: str) -> VerificationRecord:
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFound(f"Verification {record_id} not found")
        return record

    def _apply(
        self,
        admin_id: str,
        action: str,
        record: VerificationRecord,
        expect: Dict[str, Any],
        changes: Dict[str, Any],
        conflict: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> VerificationRecord:
        result = self.store.transition(record.id, expect=expect, changes=changes)
        if result is None:
            raise TransitionConflict(conflict)
        self.audit.record(admin_id, action, record.id, {"user_id": record.user_id, **(details or {})})
        return result[1]

    # ------------------------------ identity ------------------------------

    def approve_identity(self, admin_id: str, record_id: str) -> VerificationRecord:
        self.require_admin(admin_id)
        record = self._load(record_id)
        after = self._apply(
            admin_id,
            "approve_identity",
            record,
            expect={"identity_status": APPROVABLE_IDENTITY},
            changes={
                "identity_status": IdentityStatus.VERIFIED,
                "identity_rejection_reason": None,
                "identity_guidance": None,
                "identity_submission_id": None,
            },
            conflict=f"Identity cannot be approved while '{record.identity_status.value}'",
            details={"from": record.identity_status.value},
        )
        self.cross_check.trigger(record_id)
        return self.store.get(record_id) or after

    def reject_identity(self, admin_id: str, record_id: str, reason: Optional[str]) -> VerificationRecord:
        self.require_admin(admin_id)
        reason = _required_reason(reason)
        record = self._load(record_id)
        return self._apply(
            admin_id,
            "reject_identity",
            record,
            expect={"identity_status": REJECTABLE_IDENTITY},
            changes={
                "identity_status": IdentityStatus.REJECTED,
                "identity_rejection_reason": reason,
                "identity_guidance": None,
                "identity_submission_id": None,
                **pristine_values(CROSS_CHECK_COLUMNS),
            },
            conflict=f"Identity cannot be rejected while '{record.identity_status.value}'",
            details={"from": record.identity_status.value, "reason": reason},
        )

    # ------------------------------ credential ------------------------------

    def confirm_credential(self, admin_id: str, record_id: str) -> VerificationRecord:
        """Operator asserts they checked the registry; extracted fields are left as they are."""
        self.require_admin(admin_id)
        record = self._load(record_id)
        after = self._apply(
            admin_id,
            "confirm_credential",
            record,
            expect={"identity_status": IdentityStatus.VERIFIED, "credential_status": CONFIRMABLE_CREDENTIAL},
            changes={
                "credential_status": CredentialStatus.DOC_VERIFIED,
                "credential_doc_verified": True,
                "credential_admin_verified": True,
                "credential_rejection_reason": None,
                "credential_guidance": None,
                "credential_submission_id": None,
                **pristine_values(CROSS_CHECK_COLUMNS),
            },
            conflict=f"Credential cannot be confirmed while '{record.credential_status.value}'",
            details={"from": record.credential_status.value},
        )
        self.cross_check.trigger(record_id)
        return self.store.get(record_id) or after

    def reject_credential(self, admin_id: str, record_id: str, reason: Optional[str]) -> VerificationRecord:
        self.require_admin(admin_id)
        reason = _required_reason(reason)
        record = self._load(record_id)
        return self._apply(
            admin_id,
            "reject_credential",
            record,
            expect={"credential_status": REJECTABLE_CREDENTIAL},
            changes={
                "credential_status": CredentialStatus.REJECTED,
                "credential_rejection_reason": reason,
                "credential_guidance": None,
                "credential_doc_verified": False,
                "credential_admin_verified": False,
                "credential_submission_id": None,
                **pristine_values(CROSS_CHECK_COLUMNS),
            },
            conflict=f"Credential cannot be rejected while '{record.credential_status.value}'",
            details={"from": record.credential_status.value, "reason": reason},
        )

    def bar_credential(self, admin_id: str, record_id: str, reason: Optional[str]) -> VerificationRecord:
        self.require_admin(admin_id)
        reason = _required_reason(reason)
        record = self._load(record_id)
        return self._apply(
            admin_id,
            "bar_credential",
            record,
            expect={"credential_status": BARRABLE_CREDENTIAL},
            changes={
                "credential_status": CredentialStatus.BARRED,
                "credential_rejection_reason": reason,
                "credential_guidance": guidance("CREDENTIAL_BARRED"),
                "credential_doc_verified": False,
                "credential_admin_verified": False,
                "credential_submission_id": None,
                **pristine_values(CROSS_CHECK_COLUMNS),
            },
            conflict="Credential is already barred",
            details={"from": record.credential_status.value, "reason": reason},
        )

    # ------------------------------ account level ------------------------------

    def reset_verification(self, admin_id: str, user_id: str) -> VerificationRecord:
        """Back to a pristine pre-submission record; the row and its id survive."""
        self.require_admin(admin_id)
        record = self.store.find_by_user(user_id)
        if record is None:
            raise RecordNotFound(f"No verification for user {user_id}")
        result = self.store.clear(record.id)
        if result is None:
            raise RecordNotFound(f"No verification for user {user_id}")
        self.audit.record(admin_id, "reset_verification", record.id, {
            "user_id": user_id,
            "previous_status": record.verification_status,
        })
        return result[1]

    def change_role(self, admin_id: str, user_id: str, role: str) -> Dict[str, str]:
        self.require_admin(admin_id)
        try:
            new_role = UserRole(role)
        except ValueError:
            new_role = None
        if new_role not in ASSIGNABLE_ROLES:
            allowed = ", ".join(r.value for r in ASSIGNABLE_ROLES)
            raise SubmissionInvalid(f"Role must be one of: {allowed}", [{"code": "ROLE_INVALID", "text": str(role)}])

        current = self.role_of(user_id)
        if current == UserRole.SUPER_ADMIN.value:
            raise TransitionConflict("Super admin roles cannot be changed here")
        if user_id == admin_id:
            raise TransitionConflict("You cannot change your own role")

        self.store.set_role(user_id, new_role.value)
        self.audit.record(admin_id, "change_role", user_id, {"from": current, "to": new_role.value})
        return {"user_id": user_id, "role": new_role.value}

    def delete_user(self, admin_id: str, user_id: str) -> Dict[str, Any]:
        self.require_admin(admin_id)
        if user_id == admin_id:
            raise TransitionConflict("You cannot delete your own account")
        if self.role_of(user_id) == UserRole.SUPER_ADMIN.value:
            raise TransitionConflict("Super admin accounts cannot be deleted")

        record_deleted = self.store.delete_for_user(user_id)
        role_deleted = self.store.delete_role(user_id)
        if not (record_deleted or role_deleted):
            raise RecordNotFound(f"User {user_id} not found")
        self.audit.record(admin_id, "delete_user", user_id, {
            "verification_deleted": record_deleted,
            "role_deleted": role_deleted,
        })
        return {"user_id": user_id, "deleted": True}

    # ------------------------------ queues & maintenance ------------------------------

    def list_queue(
        self,
        admin_id: str,
        *,
        verification_status: Optional[Iterable[int]] = None,
        identity_status: Optional[Iterable[str]] = None,
        credential_status: Optional[Iterable[str]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[int, List[VerificationRecord]]:
        self.require_admin(admin_id)
        return self.store.list_records(
            verification_status=verification_status,
            identity_status=identity_status,
            credential_status=credential_status,
            limit=limit,
            offset=offset,
        )

    def escalate_stale(self, now: Optional[datetime] = None, admin_id: Optional[str] = None) -> List[Dict[str, str]]:
        """
        Move stages stuck in `processing` past the stale threshold to `review`.
        Called by operators (audited) or by a scheduler (admin_id=None).
        """
        if admin_id is not None:
            self.require_admin(admin_id)
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(seconds=self.policy().stale_after_seconds)).isoformat(timespec="seconds")
        stale_guidance = guidance("TECHNICAL_STALE")

        escalated: List[Dict[str, str]] = []
        for record in self.store.list_processing_since(cutoff):
            for stage in ("identity", "credential"):
                status = getattr(record, f"{stage}_status")
                at = getattr(record, f"{stage}_status_at")
                if status.value != "processing" or not at or at >= cutoff:
                    continue
                moved = self.store.transition(
                    record.id,
                    expect={
                        f"{stage}_status": "processing",
                        f"{stage}_submission_id": getattr(record, f"{stage}_submission_id"),
                    },
                    changes={
                        f"{stage}_status": "review",
                        f"{stage}_guidance": stale_guidance,
                        f"{stage}_submission_id": None,
                    },
                )
                if moved is not None:
                    LOGGER.warning("Escalated stale %s check of record %s to review", stage, record.id)
                    escalated.append({"record_id": record.id, "stage": stage})

        if admin_id is not None:
            self.audit.record(admin_id, "escalate_stale", "verifications", {"escalated": escalated, "cutoff": cutoff})
        return escalated
