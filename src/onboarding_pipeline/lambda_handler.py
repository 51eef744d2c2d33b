import json
from typing import Any, Dict, List

from onboarding_pipeline.api import get_service


def _jobs(event: Dict[str, Any]) -> List[Dict[str, Any]]:
    """A direct job payload, or one job per SQS record body."""
    if "Records" in event:
        return [json.loads(r["body"]) if isinstance(r.get("body"), str) else r.get("body", {}) for r in event["Records"]]
    return [event]


def lambda_handler(event, context):
    print("Verification job event:", json.dumps(event))
    service = get_service()

    processed = []
    for job in _jobs(event):
        record_id, phase, submission_id = job["record_id"], job["phase"], job["submission_id"]
        print(f"[lambda_handler] running {phase} check for record {record_id}")
        service.run_phase(record_id, phase, submission_id)
        record = service.store.get(record_id)
        processed.append({
            "record_id": record_id,
            "phase": phase,
            "status": getattr(record, f"{phase}_status").value if record else None,
        })

    return {
        "statusCode": 200,
        "body": json.dumps({"message": "Verification jobs processed", "jobs": processed}),
    }
