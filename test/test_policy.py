import os
import time
from pathlib import Path

import pytest

from onboarding_pipeline.tools import policy as pol


def _write(path: Path, text: str) -> None:
    path.write_text(text, encoding="utf-8")


def test_packaged_policy_defaults():
    p = pol.load_policy()
    assert p.expiry_warning_days == 90
    assert p.min_document_markers == 6
    assert len(p.document_markers) == 9
    assert p.extraction_attempts == 2
    assert p.credential_number_pattern == r"^WWC\d{7}[A-Z]$"


def test_policy_hot_reloads_on_mtime_change(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("VERIFICATION_CONFIG_DIR", str(tmp_path))
    policy_file = tmp_path / "policy.yaml"
    _write(policy_file, "expiry_warning_days: 30\n")
    assert pol.load_policy().expiry_warning_days == 30

    _write(policy_file, "expiry_warning_days: 45\nunknown_knob: 1\n")
    later = time.time() + 5
    os.utime(policy_file, (later, later))
    assert pol.load_policy().expiry_warning_days == 45


def test_missing_config_falls_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("VERIFICATION_CONFIG_DIR", str(tmp_path / "nothing-here"))
    assert pol.load_policy() == pol.VerificationPolicy()
    assert pol.nationality_groups() == {}
    assert pol.guidance("TECHNICAL_RETRY") is None


def test_nationality_groups_are_lower_cased():
    groups = pol.nationality_groups()
    assert "british citizen" in groups["united kingdom"]
    assert "vietnamese" in groups["vietnam"]


@pytest.mark.parametrize("code", [
    "TECHNICAL_RETRY", "TECHNICAL_STALE", "IDENTITY_FAILED", "DOCUMENT_UNREADABLE",
    "DOCUMENT_NAME_MISMATCH", "CREDENTIAL_EXPIRED", "CREDENTIAL_NOT_FOUND",
    "CREDENTIAL_CLOSED", "APPLICATION_PENDING", "CREDENTIAL_BARRED",
])
def test_guidance_catalogue_entries(code):
    g = pol.guidance(code)
    assert g is not None
    assert g.title and g.explanation
    assert len(g.steps_to_fix) >= 1


def test_check_payload_accepts_valid_identity():
    payload = {
        "surname": "Nguyen",
        "given_names": "Minh",
        "date_of_birth": "1995-01-01",
        "document_country": "Vietnam",
        "document_ref": "u/1-passport.jpg",
        "selfie_ref": "u/2-selfie.jpg",
        "attested": True,
    }
    assert pol.check_payload("identity", payload) == []


def test_check_payload_reports_missing_and_extra_fields():
    violations = pol.check_payload("identity", {"surname": "Nguyen", "nickname": "M"})
    codes = [v["code"] for v in violations]
    assert "FIELD_MISSING" in codes
    assert "SCHEMA_INVALID" in codes  # additionalProperties
    assert any("given_names is required" == v["text"] for v in violations)


def test_check_payload_rejects_impossible_dates():
    violations = pol.check_payload("credential", {"method": "manual_entry", "expiry_date": "2027-02-30"})
    assert [v["code"] for v in violations] == ["DATE_INVALID"]


def test_check_payload_contact_postcode_pattern():
    payload = {"phone_number": "0412345678", "address_line": "1 King St", "city": "Newtown", "postcode": "20A2"}
    assert [v["code"] for v in pol.check_payload("contact", payload)] == ["SCHEMA_INVALID"]


def test_check_payload_non_object():
    assert pol.check_payload("contact", ["not", "a", "dict"])[0]["code"] == "SCHEMA_INVALID"
    with pytest.raises(KeyError):
        pol.check_payload("unknown", {})
