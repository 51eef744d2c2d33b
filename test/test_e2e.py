from datetime import timedelta

from conftest import TODAY, verdict
from onboarding_pipeline.engine.status import (
    FULLY_VERIFIED,
    PENDING_CREDENTIAL_AUTO,
    PENDING_CREDENTIAL_REVIEW,
    PROVISIONALLY_VERIFIED,
)
from onboarding_pipeline.models import Phase

USER = "minh@example.com"


def test_manual_entry_provider_reaches_fully_verified(service, identity_payload, admin_id):
    seen = []
    service.bus.subscribe(lambda e: seen.append((e.stage, e.to_status)))

    # identity, checked inline by the collaborator
    record = service.submit_identity(USER, identity_payload(USER))
    assert record.identity_status.value == "verified"
    assert record.verification_status == PENDING_CREDENTIAL_AUTO

    # clearance typed in by hand, waits for an operator
    record = service.submit_credential(USER, {
        "method": "manual_entry",
        "credential_number": "WWC1234567A",
        "expiry_date": (TODAY + timedelta(days=400)).isoformat(),
        "attested": True,
    })
    assert record.credential_status.value == "review"
    assert record.verification_status == PENDING_CREDENTIAL_REVIEW

    # operator checks the registry and confirms; the cross-check follows
    record = service.admin.confirm_credential(admin_id, record.id)
    assert record.cross_check_status.value == "passed"
    assert record.verification_status == PROVISIONALLY_VERIFIED

    record = service.submit_contact(USER, {
        "phone_number": "0412 345 678",
        "address_line": "12 King St",
        "city": "Newtown",
        "postcode": "2042",
    })
    assert record.verification_status == FULLY_VERIFIED

    snapshot = service.get_status(USER)
    assert snapshot.fully_verified is True
    assert snapshot.verification_level == 4
    assert snapshot.should_poll is False

    assert seen == [
        ("identity", "processing"),
        ("identity", "verified"),
        ("credential", "review"),
        ("credential", "doc_verified"),
        ("cross_check", "processing"),
        ("cross_check", "passed"),
        ("contact", "saved"),
    ]


def test_identity_failure_then_manual_review_then_approval(service, identity_payload, fake_extraction, admin_id):
    fake_extraction.queue(Phase.IDENTITY, verdict(False, issues=["Passport photo is blurry"]))
    record = service.submit_identity(USER, identity_payload(USER))
    assert record.identity_status.value == "failed"
    assert "Passport photo is blurry" in service.get_status(USER).identity_message

    record = service.submit_identity_for_manual_review(USER)
    assert record.identity_status.value == "review"

    record = service.admin.approve_identity(admin_id, record.id)
    assert record.identity_status.value == "verified"
    assert service.get_status(USER).credential_unlocked is True
