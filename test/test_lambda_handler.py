import json

import pytest

from conftest import RecordingDispatcher
import onboarding_pipeline.lambda_handler as lambda_mod

USER = "minh@example.com"


@pytest.fixture
def queued_identity(service, identity_payload, monkeypatch):
    """An identity submission whose check was queued but not yet run."""
    monkeypatch.setattr(lambda_mod, "get_service", lambda: service)
    dispatcher = RecordingDispatcher()
    record = service.submit_identity(USER, identity_payload(USER), dispatcher=dispatcher)
    return record


def test_direct_event_runs_the_check(service, queued_identity, capsys):
    event = {
        "record_id": queued_identity.id,
        "phase": "identity",
        "submission_id": queued_identity.identity_submission_id,
    }
    result = lambda_mod.lambda_handler(event, None)

    assert result["statusCode"] == 200
    body = json.loads(result["body"])
    assert body["jobs"] == [{"record_id": queued_identity.id, "phase": "identity", "status": "verified"}]
    assert "[lambda_handler] running identity check" in capsys.readouterr().out


def test_sqs_records_are_each_processed(service, queued_identity):
    job = {
        "record_id": queued_identity.id,
        "phase": "identity",
        "submission_id": queued_identity.identity_submission_id,
    }
    event = {"Records": [{"body": json.dumps(job)}, {"body": json.dumps(job)}]}
    body = json.loads(lambda_mod.lambda_handler(event, None)["body"])

    # redelivery of the same job is a no-op
    assert [j["status"] for j in body["jobs"]] == ["verified", "verified"]
    assert service.store.get(queued_identity.id).identity_status.value == "verified"


def test_superseded_job_is_skipped(service, queued_identity):
    event = {"record_id": queued_identity.id, "phase": "identity", "submission_id": "old-token"}
    body = json.loads(lambda_mod.lambda_handler(event, None)["body"])
    assert body["jobs"][0]["status"] == "processing"
