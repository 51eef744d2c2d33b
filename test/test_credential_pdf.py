from datetime import timedelta

import pytest

from conftest import TODAY, clearance_email_text, text_to_pdf
from onboarding_pipeline.models import ExpiryWindow
from onboarding_pipeline.tools.credential_pdf import (
    check_credential_pdf,
    check_credential_text,
    count_markers,
    extract_fields,
)
from onboarding_pipeline.tools.policy import load_policy


def _check(text, surname="Nguyen", given="Minh Van"):
    return check_credential_text(
        text,
        expected_surname=surname,
        expected_given_names=given,
        today=TODAY,
        policy=load_policy(),
    )


def test_extract_fields_reads_label_value_pairs():
    fields = extract_fields(clearance_email_text(expiry=TODAY + timedelta(days=400)))
    assert fields["surname"] == "Nguyen"
    assert fields["first_name"] == "Minh"
    assert fields["other_names"] == "Van"
    assert fields["credential_number"] == "WWC1234567A"
    assert fields["clearance_type"] == "Employee"
    assert fields["expiry_date"] == (TODAY + timedelta(days=400)).isoformat()
    assert fields["recipient_email"] == "minh.nguyen@example.com"


def test_extract_fields_falls_back_to_header_number():
    text = clearance_email_text().replace("WWC Number\nWWC1234567A\n", "")
    assert extract_fields(text)["credential_number"] == "WWC1234567A"


def test_all_markers_present_in_a_real_email():
    assert count_markers(clearance_email_text(), load_policy().document_markers) == 9


def test_clean_document_passes():
    check = _check(clearance_email_text())
    assert check.passed
    assert not check.needs_fallback
    assert check.expiry_window == ExpiryWindow.VALID
    assert check.markers_found == 9


def test_expiring_soon_passes_with_warning():
    check = _check(clearance_email_text(expiry=TODAY + timedelta(days=89)))
    assert check.passed
    assert check.expiry_window == ExpiryWindow.EXPIRING_SOON
    assert any("expires soon" in issue for issue in check.issues)


def test_expiry_beyond_warning_window_is_clean():
    check = _check(clearance_email_text(expiry=TODAY + timedelta(days=91)))
    assert check.passed
    assert check.expiry_window == ExpiryWindow.VALID
    assert check.issues == []


def test_expired_yesterday_is_a_hard_fail():
    check = _check(clearance_email_text(expiry=TODAY - timedelta(days=1)))
    assert not check.passed
    assert not check.needs_fallback
    assert check.expiry_window == ExpiryWindow.EXPIRED


@pytest.mark.parametrize(
    "surname,given",
    [("Tran", "Minh Van"), ("Nguyen", "Anh")],
)
def test_name_mismatch_fails(surname, given):
    check = _check(clearance_email_text(), surname=surname, given=given)
    assert not check.passed
    assert check.name_mismatch


def test_too_few_markers_needs_fallback():
    check = _check("Surname\nNguyen\nWWC Number\nWWC1234567A\nExpiry Date\n01/01/2030")
    assert not check.passed
    assert check.needs_fallback
    assert check.markers_found < 6


def test_missing_expiry_needs_fallback():
    text = clearance_email_text().replace("Expiry Date\n", "")
    check = _check(text)
    assert not check.passed
    assert check.needs_fallback


def test_unreadable_pdf_needs_fallback():
    check = check_credential_pdf(
        b"%PDF-1.4 truncated",
        expected_surname="Nguyen",
        expected_given_names="Minh",
        today=TODAY,
        policy=load_policy(),
    )
    assert not check.passed
    assert check.needs_fallback


def test_rendered_pdf_is_validated_end_to_end():
    data = text_to_pdf(clearance_email_text())
    check = check_credential_pdf(
        data,
        expected_surname="Nguyen",
        expected_given_names="Minh Van",
        today=TODAY,
        policy=load_policy(),
    )
    assert check.passed, check.issues
    assert check.fields["credential_number"] == "WWC1234567A"
