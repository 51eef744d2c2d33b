import pytest

from onboarding_pipeline.engine import status as st


@pytest.mark.parametrize(
    "identity,credential,cross_check,contact,expected",
    [
        ("not_started", "not_started", "not_started", "not_started", st.NOT_STARTED),
        ("pending", "not_started", "not_started", "not_started", st.PENDING_ID_AUTO),
        ("processing", "not_started", "not_started", "not_started", st.PENDING_ID_AUTO),
        ("review", "not_started", "not_started", "not_started", st.PENDING_ID_REVIEW),
        ("failed", "not_started", "not_started", "not_started", st.ID_REJECTED),
        ("rejected", "doc_verified", "not_started", "not_started", st.ID_REJECTED),
        ("verified", "not_started", "not_started", "not_started", st.PENDING_CREDENTIAL_AUTO),
        ("verified", "pending", "not_started", "not_started", st.PENDING_CREDENTIAL_AUTO),
        ("verified", "processing", "not_started", "not_started", st.CREDENTIAL_PROCESSING),
        ("verified", "review", "not_started", "not_started", st.PENDING_CREDENTIAL_REVIEW),
        ("verified", "application_pending", "not_started", "not_started", st.PENDING_CREDENTIAL_REVIEW),
        ("verified", "rejected", "not_started", "not_started", st.CREDENTIAL_REJECTED),
        ("verified", "barred", "not_started", "not_started", st.CREDENTIAL_REJECTED),
        ("verified", "ocg_not_found", "not_started", "not_started", st.CREDENTIAL_REJECTED),
        ("verified", "closed", "not_started", "not_started", st.CREDENTIAL_REJECTED),
        ("verified", "expired", "not_started", "not_started", st.CREDENTIAL_EXPIRED),
        ("verified", "failed", "not_started", "not_started", st.CREDENTIAL_DOCUMENT_FAILED),
        ("verified", "doc_verified", "not_started", "not_started", st.AWAITING_CROSS_CHECK),
        ("verified", "doc_verified", "processing", "not_started", st.AWAITING_CROSS_CHECK),
        ("verified", "doc_verified", "review", "saved", st.CROSS_CHECK_REVIEW),
        ("verified", "doc_verified", "passed", "not_started", st.PROVISIONALLY_VERIFIED),
        ("verified", "verified", "passed", "saved", st.FULLY_VERIFIED),
    ],
)
def test_aggregate_status_mapping(identity, credential, cross_check, contact, expected):
    assert st.aggregate_status(identity, credential, cross_check, contact) == expected


def test_aggregate_rejects_unknown_status():
    with pytest.raises(ValueError):
        st.aggregate_status("approved", "not_started", "not_started")


@pytest.mark.parametrize(
    "aggregate,identity,level",
    [
        (st.NOT_STARTED, "not_started", st.LEVEL_SIGNED_UP),
        (st.PENDING_ID_AUTO, "processing", st.LEVEL_REGISTERED),
        (st.ID_REJECTED, "failed", st.LEVEL_REGISTERED),
        (st.PENDING_CREDENTIAL_AUTO, "verified", st.LEVEL_ID_VERIFIED),
        (st.CROSS_CHECK_REVIEW, "verified", st.LEVEL_ID_VERIFIED),
        (st.PROVISIONALLY_VERIFIED, "verified", st.LEVEL_PROVISIONALLY_VERIFIED),
        (st.FULLY_VERIFIED, "verified", st.LEVEL_FULLY_VERIFIED),
    ],
)
def test_verification_level(aggregate, identity, level):
    assert st.verification_level(aggregate, identity) == level


def test_every_code_has_a_label():
    codes = [v for k, v in vars(st).items() if k.isupper() and isinstance(v, int) and not k.startswith("LEVEL_")]
    for code in codes:
        assert st.status_label(code) != "unknown"
    assert st.status_label(st.FULLY_VERIFIED) == "fully verified"
    assert st.status_label(999) == "unknown"
