"""
Local check of a Working With Children Check clearance email saved as PDF.

The clearance email has a fixed shape: a set of stock sentences (authenticity
markers) and a details table rendered as "label line / value line" pairs. When
enough markers are present and the number and expiry can be read, this check is
authoritative and no model call is needed.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Dict, List, Optional

import fitz  # PyMuPDF

from ..engine.matching import (
    check_expiry,
    dmy_to_iso,
    given_name_present,
    names_match,
    parse_iso_date,
)
from ..models import DocumentCheck, ExpiryWindow
from .policy import VerificationPolicy

LOGGER = logging.getLogger(__name__)

_LABELS: Dict[str, str] = {
    "surname": "surname",
    "first name": "first_name",
    "other name": "other_names",
    "other names": "other_names",
    "wwc number": "credential_number",
    "type of clearance": "clearance_type",
    "expiry date": "expiry_date",
}
_HEADER_NUMBER = re.compile(r"Working With Children Check Number:\s*(WWC\s?\d{7}\s?[A-Z])", re.IGNORECASE)
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_SENDER = "wwccnotification@ocg.nsw.gov.au"


def read_pdf_text(data: bytes) -> str:
    with fitz.open(stream=data, filetype="pdf") as doc:
        return "\n".join(page.get_text() for page in doc)


def _clean(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\u2019", "'").replace("\xa0", " ")
    return text


def _label_key(line: str) -> Optional[str]:
    return _LABELS.get(line.strip().rstrip(":").strip().lower())


def extract_fields(text: str) -> Dict[str, Optional[str]]:
    """Pull the details table (label line followed by value line) plus the recipient email."""
    lines = [ln.strip() for ln in text.split("\n") if ln.strip()]
    fields: Dict[str, Optional[str]] = {key: None for key in set(_LABELS.values())}

    for i, line in enumerate(lines[:-1]):
        key = _label_key(line)
        if key and fields[key] is None and _label_key(lines[i + 1]) is None:
            fields[key] = lines[i + 1]

    if not fields["credential_number"]:
        m = _HEADER_NUMBER.search(text)
        fields["credential_number"] = m.group(1) if m else None
    if fields["credential_number"]:
        fields["credential_number"] = re.sub(r"\s+", "", fields["credential_number"]).upper()

    fields["expiry_date"] = dmy_to_iso(fields["expiry_date"]) if fields["expiry_date"] else None
    recipients = [e for e in _EMAIL.findall(text) if e.lower() != _SENDER]
    fields["recipient_email"] = recipients[0] if recipients else None
    return fields


def count_markers(text: str, markers: List[str]) -> int:
    return sum(1 for pattern in markers if re.search(pattern, text, re.IGNORECASE))


def check_credential_text(
    text: str,
    *,
    expected_surname: Optional[str],
    expected_given_names: Optional[str],
    today: date,
    policy: VerificationPolicy,
) -> DocumentCheck:
    text = _clean(text)
    markers = count_markers(text, policy.document_markers)
    if markers < policy.min_document_markers:
        return DocumentCheck(
            passed=False,
            needs_fallback=True,
            markers_found=markers,
            issues=[f"Only {markers} of {len(policy.document_markers)} clearance email markers found"],
            reasoning="Document does not look like a clearance notification email",
        )

    fields = extract_fields(text)
    issues: List[str] = []

    name_mismatch = False
    if fields["surname"] and expected_surname and not names_match(fields["surname"], expected_surname):
        name_mismatch = True
        issues.append(f"Surname '{fields['surname']}' does not match '{expected_surname}'")
    if (
        expected_given_names
        and (fields["first_name"] or fields["other_names"])
        and not given_name_present(expected_given_names, fields["first_name"], fields["other_names"])
    ):
        name_mismatch = True
        issues.append(f"Given name '{expected_given_names}' does not appear on the clearance")

    number = fields["credential_number"]
    number_invalid = bool(number) and not re.fullmatch(policy.credential_number_pattern, number)
    if number_invalid:
        issues.append(f"Clearance number '{number}' is not in the expected format")

    window: Optional[ExpiryWindow] = None
    expiry = parse_iso_date(fields["expiry_date"])
    if expiry:
        window = check_expiry(expiry, today, policy.expiry_warning_days)
        if window == ExpiryWindow.EXPIRED:
            issues.append(f"Clearance expired on {expiry.isoformat()}")
        elif window == ExpiryWindow.EXPIRING_SOON:
            issues.append(f"Clearance expires soon ({expiry.isoformat()})")

    missing_critical = not number or not expiry
    if missing_critical:
        issues.append("Clearance number or expiry date could not be read")

    passed = not (name_mismatch or number_invalid or missing_critical or window == ExpiryWindow.EXPIRED)
    return DocumentCheck(
        passed=passed,
        needs_fallback=missing_critical,
        name_mismatch=name_mismatch,
        expiry_window=window,
        fields=fields,
        markers_found=markers,
        issues=issues,
        reasoning=(
            f"Clearance email verified locally ({markers} markers)"
            if passed
            else f"Clearance email check failed ({markers} markers)"
        ),
    )


def check_credential_pdf(
    data: bytes,
    *,
    expected_surname: Optional[str],
    expected_given_names: Optional[str],
    today: date,
    policy: VerificationPolicy,
) -> DocumentCheck:
    try:
        text = read_pdf_text(data)
    except Exception as exc:
        LOGGER.warning("Could not read clearance PDF: %s", exc)
        return DocumentCheck(
            passed=False,
            needs_fallback=True,
            issues=["The PDF could not be read"],
            reasoning=f"PDF parse error: {exc}",
        )
    return check_credential_text(
        text,
        expected_surname=expected_surname,
        expected_given_names=expected_given_names,
        today=today,
        policy=policy,
    )
