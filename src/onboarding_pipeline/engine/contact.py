from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List

from ..models import ContactStatus, ContactSubmission, CredentialStatus, VerificationRecord
from ..tools.gazetteer import YamlGazetteer
from ..tools.persist import VerificationStore
from ..tools.policy import VerificationPolicy, load_policy
from .errors import StageLocked, SubmissionInvalid, TransitionConflict
from .matching import normalize_phone

LOGGER = logging.getLogger(__name__)


class ContactEngine:
    """Structural validation only; a valid submission is saved straight away."""

    def __init__(
        self,
        store: VerificationStore,
        gazetteer: YamlGazetteer,
        policy: Callable[[], VerificationPolicy] = load_policy,
    ):
        self.store = store
        self.gazetteer = gazetteer
        self.policy = policy

    def submit(self, record: VerificationRecord, submission: ContactSubmission) -> VerificationRecord:
        if record.credential_status == CredentialStatus.NOT_STARTED:
            raise StageLocked("Add your clearance before your contact details")

        policy = self.policy()
        violations: List[Dict[str, str]] = []

        phone = normalize_phone(submission.phone_number)
        if not re.fullmatch(policy.mobile_pattern, phone):
            violations.append({"code": "PHONE_INVALID", "text": "Enter an Australian mobile number, e.g. 0412 345 678"})
        address = submission.address_line.strip()
        if not address:
            violations.append({"code": "FIELD_MISSING", "text": "address_line is required"})
        city = submission.city.strip()
        postcode = submission.postcode.strip()
        if not self.gazetteer.is_valid(city, postcode):
            violations.append({"code": "LOCALITY_INVALID", "text": f"'{city}' is not a known suburb for postcode {postcode}"})
        if violations:
            raise SubmissionInvalid("Contact details are not valid", violations)

        result = self.store.transition(
            record.id,
            expect={"credential_status": tuple(s for s in CredentialStatus if s != CredentialStatus.NOT_STARTED)},
            changes={
                "phone_number": phone,
                "address_line": address,
                "city": city,
                "postcode": postcode,
                "region": (submission.region or "").strip() or policy.default_region,
                "country": (submission.country or "").strip() or policy.default_country,
                "contact_status": ContactStatus.SAVED,
            },
        )
        if result is None:
            raise TransitionConflict("Your clearance stage was reset; add your clearance again first")
        return result[1]
