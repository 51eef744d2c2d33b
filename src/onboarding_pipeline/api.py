import hmac
import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Body, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .engine.dispatch import BackgroundTasksDispatcher
from .engine.errors import (
    DispatchFailed,
    NotAuthorized,
    RecordNotFound,
    StageLocked,
    SubmissionInvalid,
    TransitionConflict,
    ValidationTimeout,
    VerificationError,
)
from .engine.pipeline import VerificationService
from .models import CredentialMethod, VerificationRecord
from .tools.notify import EmailNotifier

# Load environment variables
load_dotenv()

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="Onboarding Verification API")

# most specific first
_HTTP_STATUS = (
    (SubmissionInvalid, 422),
    (StageLocked, 423),
    (TransitionConflict, 409),
    (RecordNotFound, 404),
    (NotAuthorized, 403),
    (DispatchFailed, 502),
    (ValidationTimeout, 504),
)


@lru_cache(maxsize=1)
def get_service() -> VerificationService:
    service = VerificationService()
    service.bus.subscribe(EmailNotifier())
    return service


@app.on_event("shutdown")
def shutdown_service() -> None:
    """Join the background verification workers before the process exits."""
    if get_service.cache_info().currsize:
        LOGGER.info("Shutting down verification workers")
        get_service().close()
        get_service.cache_clear()


@app.exception_handler(VerificationError)
async def _verification_error(request: Request, exc: VerificationError) -> JSONResponse:
    status = next((code for cls, code in _HTTP_STATUS if isinstance(exc, cls)), 400)
    if status >= 500:
        LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})


# ------------------------------ caller identity ------------------------------

def provider_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


def operator_id(x_admin_id: Optional[str] = Header(None, alias="X-Admin-Id")) -> str:
    if not x_admin_id or not x_admin_id.strip():
        raise HTTPException(status_code=401, detail="X-Admin-Id header is required")
    return x_admin_id.strip()


def _admin_view(record: VerificationRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")


# ------------------------------ provider ------------------------------

@app.get("/ping")
def ping():
    return {"pong": True}


@app.post("/uploads", status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    data = await file.read()
    return {"ref": service.upload(user_id, file.filename, data)}


@app.post("/verification/identity", status_code=202)
def submit_identity(
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    service.submit_identity(user_id, payload, dispatcher=BackgroundTasksDispatcher(background))
    return service.get_status(user_id)


@app.post("/verification/identity/manual-review")
def request_identity_review(
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    service.submit_identity_for_manual_review(user_id)
    return service.get_status(user_id)


@app.post("/verification/credential/validate")
async def validate_credential_document(
    file: UploadFile = File(...),
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    data = await file.read()
    return await run_in_threadpool(service.validate_credential_document, user_id, data)


@app.post("/verification/credential")
async def submit_credential(
    background: BackgroundTasks,
    method: CredentialMethod = Form(...),
    credential_number: Optional[str] = Form(None),
    expiry_date: Optional[str] = Form(None),
    document_ref: Optional[str] = Form(None),
    attested: bool = Form(False),
    file: Optional[UploadFile] = File(None),
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    payload: Dict[str, Any] = {"method": method.value, "attested": attested}
    for key, value in (
        ("credential_number", credential_number),
        ("expiry_date", expiry_date),
        ("document_ref", document_ref),
    ):
        if value:
            payload[key] = value
    document = await file.read() if file is not None else None
    await run_in_threadpool(
        service.submit_credential,
        user_id,
        payload,
        document=document,
        filename=file.filename if file is not None else None,
        dispatcher=BackgroundTasksDispatcher(background),
    )
    snapshot = service.get_status(user_id)
    status = 202 if method == CredentialMethod.MOBILE_WALLET else 200
    return JSONResponse(status_code=status, content=snapshot.model_dump(mode="json"))


@app.post("/verification/contact")
def submit_contact(
    payload: Dict[str, Any] = Body(...),
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    service.submit_contact(user_id, payload)
    return service.get_status(user_id)


@app.get("/verification-status")
def verification_status(
    user_id: str = Depends(provider_id),
    service: VerificationService = Depends(get_service),
):
    """Poll while identity or credential is pending/processing (`should_poll`)."""
    return service.get_status(user_id)


@app.get("/localities")
def localities(
    q: str = Query(..., min_length=1, description="Suburb or postcode prefix"),
    limit: int = Query(20, ge=1, le=100),
    service: VerificationService = Depends(get_service),
):
    return {"data": service.search_localities(q, limit)}


# ------------------------------ admin ------------------------------

@app.get("/admin/verifications")
def list_verifications(
    verification_status: Optional[List[int]] = Query(None, description="Aggregate status codes, e.g. 11, 21, 27"),
    identity_status: Optional[List[str]] = Query(None, description="e.g. pending, review"),
    credential_status: Optional[List[str]] = Query(None, description="e.g. review, application_pending"),
    limit: int = Query(50, ge=1, le=500, description="Limit number of results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    """
    Operator queue. Filters combine with AND; repeated query parameters within one
    filter combine with OR (?identity_status=pending&identity_status=review).
    """
    total, records = service.admin.list_queue(
        admin_id,
        verification_status=verification_status,
        identity_status=identity_status,
        credential_status=credential_status,
        limit=limit,
        offset=offset,
    )
    return {
        "filtered_count": total,
        "returned_count": len(records),
        "offset": offset,
        "limit": limit,
        "data": [_admin_view(r) for r in records],
    }


@app.post("/admin/verifications/{record_id}/identity/approve")
def approve_identity(
    record_id: str,
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return _admin_view(service.admin.approve_identity(admin_id, record_id))


@app.post("/admin/verifications/{record_id}/identity/reject")
def reject_identity(
    record_id: str,
    reason: Optional[str] = Body(None, embed=True),
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return _admin_view(service.admin.reject_identity(admin_id, record_id, reason))


@app.post("/admin/verifications/{record_id}/credential/confirm")
def confirm_credential(
    record_id: str,
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return _admin_view(service.admin.confirm_credential(admin_id, record_id))


@app.post("/admin/verifications/{record_id}/credential/reject")
def reject_credential(
    record_id: str,
    reason: Optional[str] = Body(None, embed=True),
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return _admin_view(service.admin.reject_credential(admin_id, record_id, reason))


@app.post("/admin/verifications/{record_id}/credential/bar")
def bar_credential(
    record_id: str,
    reason: Optional[str] = Body(None, embed=True),
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return _admin_view(service.admin.bar_credential(admin_id, record_id, reason))


@app.post("/admin/users/{user_id}/reset-verification")
def reset_verification(
    user_id: str,
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return _admin_view(service.admin.reset_verification(admin_id, user_id))


@app.post("/admin/users/{user_id}/role")
def change_role(
    user_id: str,
    role: str = Body(..., embed=True),
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return service.admin.change_role(admin_id, user_id, role)


@app.delete("/admin/users/{user_id}")
def delete_user(
    user_id: str,
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    return service.admin.delete_user(admin_id, user_id)


@app.post("/admin/maintenance/escalate-stale")
def escalate_stale(
    admin_id: str = Depends(operator_id),
    service: VerificationService = Depends(get_service),
):
    escalated = service.escalate_stale(admin_id=admin_id)
    return {"escalated_count": len(escalated), "data": escalated}


# ------------------------------ registry feed ------------------------------

def _check_webhook_secret(authorization: Optional[str]) -> None:
    secret = os.getenv("REGISTRY_WEBHOOK_SECRET")
    if not secret:
        raise HTTPException(status_code=503, detail="Registry webhook is not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=401, detail="Invalid webhook credentials")


@app.post("/webhooks/registry-results")
def registry_results(
    results: List[Dict[str, Any]] = Body(..., embed=True),
    authorization: Optional[str] = Header(None),
    service: VerificationService = Depends(get_service),
):
    _check_webhook_secret(authorization)
    actions = service.apply_registry_results(results)
    return {"processed": len(results), "actions": actions}
