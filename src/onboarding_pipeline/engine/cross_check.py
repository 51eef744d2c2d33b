"""
Cross-check: reconcile the identity captured from the passport with the one read
from the clearance document. Runs once per qualifying transition; the claim
(not_started -> processing) is a guarded write, so concurrent triggers collapse
into a single run.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from ..models import (
    CredentialStatus,
    CrossCheckResult,
    CrossCheckStatus,
    IdentityStatus,
    VerificationRecord,
)
from ..tools.persist import VerificationStore
from ..tools.policy import nationality_groups
from .matching import given_name_present, names_match, nationality_matches, parse_iso_date

LOGGER = logging.getLogger(__name__)


def evaluate(record: VerificationRecord, groups: Dict[str, Iterable[str]]) -> CrossCheckResult:
    issues: List[str] = []
    notes: List[str] = []

    id_surname = record.extracted_surname or record.surname
    id_given = record.extracted_given_names or record.given_names

    # passport vs what the provider typed
    if record.extracted_surname and record.surname and not names_match(record.extracted_surname, record.surname):
        issues.append(
            f"Surname on passport '{record.extracted_surname}' differs from submitted surname '{record.surname}'"
        )
    extracted_dob, submitted_dob = parse_iso_date(record.extracted_dob), parse_iso_date(record.date_of_birth)
    if extracted_dob and submitted_dob and extracted_dob != submitted_dob:
        issues.append(f"Date of birth on passport {extracted_dob} differs from submitted {submitted_dob}")
    if not nationality_matches(record.document_country, record.extracted_nationality, groups):
        issues.append(
            f"Nationality '{record.extracted_nationality}' does not match country of issue '{record.document_country}'"
        )

    # passport vs clearance
    if record.extracted_credential_surname:
        if not names_match(id_surname, record.extracted_credential_surname):
            issues.append(
                f"Surname on clearance '{record.extracted_credential_surname}' differs from identity surname '{id_surname}'"
            )
        if (record.extracted_credential_first_name or record.extracted_credential_other_names) and not given_name_present(
            id_given, record.extracted_credential_first_name, record.extracted_credential_other_names
        ):
            issues.append(f"Given name '{id_given}' not found on clearance")
    elif record.credential_admin_verified:
        notes.append("Clearance name confirmed by an operator against the registry")
    else:
        issues.append("Clearance name could not be read for comparison")

    if issues:
        return CrossCheckResult(passed=False, issues=issues, reasoning="; ".join(issues))
    reasoning = "Identity details are consistent across documents"
    if notes:
        reasoning = f"{reasoning} ({'; '.join(notes)})"
    return CrossCheckResult(passed=True, issues=[], reasoning=reasoning)


class CrossCheckEngine:
    def __init__(
        self,
        store: VerificationStore,
        groups: Callable[[], Dict[str, List[str]]] = nationality_groups,
    ):
        self.store = store
        self.groups = groups

    def trigger(self, record_id: str) -> Optional[CrossCheckStatus]:
        """Run the cross-check if this caller wins the claim; None otherwise."""
        claimed = self.store.transition(
            record_id,
            expect={
                "identity_status": IdentityStatus.VERIFIED,
                "credential_status": (CredentialStatus.DOC_VERIFIED, CredentialStatus.VERIFIED),
                "cross_check_status": CrossCheckStatus.NOT_STARTED,
            },
            changes={"cross_check_status": CrossCheckStatus.PROCESSING},
        )
        if claimed is None:
            return None
        _, record = claimed

        try:
            result = evaluate(record, self.groups())
        except Exception as exc:
            LOGGER.exception("Cross-check for record %s could not complete", record_id)
            result = CrossCheckResult(passed=False, issues=[str(exc)], reasoning="Cross-check could not complete")

        status = CrossCheckStatus.PASSED if result.passed else CrossCheckStatus.REVIEW
        done = self.store.transition(
            record_id,
            expect={"cross_check_status": CrossCheckStatus.PROCESSING},
            changes={
                "cross_check_status": status,
                "cross_check_reasoning": result.reasoning,
                "cross_check_issues": result.issues,
            },
        )
        return status if done else None
