import threading

import pytest

from onboarding_pipeline.engine.cross_check import CrossCheckEngine, evaluate
from onboarding_pipeline.engine.status import CROSS_CHECK_REVIEW, PROVISIONALLY_VERIFIED
from onboarding_pipeline.models import CrossCheckStatus, VerificationRecord
from onboarding_pipeline.tools.policy import nationality_groups


def _record(**overrides) -> VerificationRecord:
    base = {
        "id": "rec-1",
        "user_id": "u1",
        "surname": "Smith",
        "given_names": "Jane Anne",
        "date_of_birth": "1990-05-01",
        "document_country": "United Kingdom",
        "extracted_surname": "SMITH",
        "extracted_given_names": "Jane Anne",
        "extracted_dob": "1990-05-01",
        "extracted_nationality": "British Citizen",
        "extracted_credential_surname": "Smith",
        "extracted_credential_first_name": "Jane",
        "identity_status": "verified",
        "credential_status": "doc_verified",
    }
    base.update(overrides)
    return VerificationRecord(**base)


def test_consistent_records_pass():
    result = evaluate(_record(), nationality_groups())
    assert result.passed
    assert result.issues == []


@pytest.mark.parametrize(
    "overrides,fragment",
    [
        ({"document_country": "Australia", "extracted_nationality": "Indian"}, "Nationality"),
        ({"extracted_credential_surname": "Jones"}, "Surname on clearance"),
        ({"extracted_credential_first_name": "Mary"}, "Given name"),
        ({"extracted_dob": "1990-05-02"}, "Date of birth"),
        ({"extracted_surname": "Smyth"}, "Surname on passport"),
    ],
)
def test_discrepancies_fail_with_a_reason(overrides, fragment):
    result = evaluate(_record(**overrides), nationality_groups())
    assert not result.passed
    assert any(fragment in issue for issue in result.issues)
    assert fragment in result.reasoning


def test_first_name_may_appear_under_other_names():
    record = _record(extracted_credential_first_name="Anna", extracted_credential_other_names="Jane")
    assert evaluate(record, nationality_groups()).passed


def test_missing_clearance_name_needs_operator_confirmation():
    unread = _record(extracted_credential_surname=None, extracted_credential_first_name=None)
    assert not evaluate(unread, nationality_groups()).passed

    confirmed = unread.model_copy(update={"credential_admin_verified": True})
    result = evaluate(confirmed, nationality_groups())
    assert result.passed
    assert "operator" in result.reasoning


def _seed(store, **changes):
    record = store.get_or_create("u1")
    store.transition(record.id, changes={
        "surname": "Smith",
        "given_names": "Jane",
        "document_country": "United Kingdom",
        "extracted_nationality": "British Citizen",
        "extracted_credential_surname": "Smith",
        "extracted_credential_first_name": "Jane",
        "identity_status": "verified",
        "credential_status": "doc_verified",
        **changes,
    })
    return record.id


def test_trigger_passes_and_moves_aggregate(store):
    record_id = _seed(store)
    engine = CrossCheckEngine(store)
    assert engine.trigger(record_id) == CrossCheckStatus.PASSED
    after = store.get(record_id)
    assert after.cross_check_status == CrossCheckStatus.PASSED
    assert after.verification_status == PROVISIONALLY_VERIFIED


def test_trigger_routes_mismatch_to_review(store):
    record_id = _seed(store, document_country="Australia", extracted_nationality="Indian")
    assert CrossCheckEngine(store).trigger(record_id) == CrossCheckStatus.REVIEW
    after = store.get(record_id)
    assert after.verification_status == CROSS_CHECK_REVIEW
    assert after.cross_check_issues


def test_trigger_does_nothing_until_both_stages_succeed(store):
    record_id = _seed(store, credential_status="review")
    assert CrossCheckEngine(store).trigger(record_id) is None
    assert store.get(record_id).cross_check_status == CrossCheckStatus.NOT_STARTED


def test_trigger_runs_once(store):
    record_id = _seed(store)
    engine = CrossCheckEngine(store)
    assert engine.trigger(record_id) == CrossCheckStatus.PASSED
    assert engine.trigger(record_id) is None


def test_concurrent_triggers_collapse_into_one_run(store):
    record_id = _seed(store)
    calls = []

    def groups():
        calls.append(1)
        return nationality_groups()

    engine = CrossCheckEngine(store, groups)
    barrier = threading.Barrier(4)
    results = []

    def _go():
        barrier.wait()
        results.append(engine.trigger(record_id))

    threads = [threading.Thread(target=_go) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(CrossCheckStatus.PASSED) == 1
    assert len(calls) == 1


def test_evaluation_error_lands_in_review(store):
    record_id = _seed(store)

    def broken_groups():
        raise RuntimeError("nationalities.yaml unreadable")

    assert CrossCheckEngine(store, broken_groups).trigger(record_id) == CrossCheckStatus.REVIEW
    assert store.get(record_id).cross_check_reasoning == "Cross-check could not complete"
