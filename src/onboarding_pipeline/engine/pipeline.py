"""
VerificationService: the single entry point the HTTP layer, the queue handler and
tests talk to. It parses payloads, resolves the provider's record and delegates to
the stage engines, which own every state transition.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from ..models import (
    ContactSubmission,
    CredentialSubmission,
    DocumentCheck,
    IdentitySubmission,
    Phase,
    RegistryResult,
    StatusSnapshot,
    VerificationRecord,
)
from ..tools.gazetteer import YamlGazetteer
from ..tools.persist import AuditLog, VerificationStore
from ..tools.policy import VerificationPolicy, check_payload, load_policy, nationality_groups
from ..tools.storage import LocalObjectStorage
from .admin import AdminEngine
from .contact import ContactEngine
from .credential import CredentialEngine
from .cross_check import CrossCheckEngine
from .dispatch import Dispatcher, ThreadPoolDispatcher
from .errors import RecordNotFound, StageLocked, SubmissionInvalid
from .events import EventBus
from .extraction import CrewExtractionClient, ExtractionClient
from .identity import IdentityEngine
from .projection import project

LOGGER = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse(kind: str, payload: Any, model: Type[M]) -> M:
    violations = check_payload(kind, payload)
    if violations:
        raise SubmissionInvalid(f"Invalid {kind} submission", violations)
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise SubmissionInvalid(
            f"Invalid {kind} submission",
            [{"code": "SCHEMA_INVALID", "text": err["msg"]} for err in exc.errors()],
        ) from exc


class VerificationService:
    def __init__(
        self,
        store: Optional[VerificationStore] = None,
        storage: Optional[LocalObjectStorage] = None,
        extraction: Optional[ExtractionClient] = None,
        dispatcher: Optional[Dispatcher] = None,
        audit: Optional[AuditLog] = None,
        gazetteer: Optional[YamlGazetteer] = None,
        policy: Callable[[], VerificationPolicy] = load_policy,
        groups: Callable[[], Dict[str, List[str]]] = nationality_groups,
        today: Callable[[], date] = date.today,
    ):
        self.store = store or VerificationStore(bus=EventBus())
        self.bus = self.store.bus
        self.storage = storage or LocalObjectStorage()
        self.extraction = extraction or CrewExtractionClient(self.storage)
        self.dispatcher = dispatcher or ThreadPoolDispatcher()
        self.audit = audit or AuditLog()
        self.gazetteer = gazetteer or YamlGazetteer()
        self.policy = policy

        self.cross_check = CrossCheckEngine(self.store, groups)
        self.identity = IdentityEngine(self.store, self.extraction, self.dispatcher, self.cross_check, policy)
        self.credential = CredentialEngine(
            self.store, self.extraction, self.storage, self.dispatcher, self.cross_check, policy, today
        )
        self.contact = ContactEngine(self.store, self.gazetteer, policy)
        self.admin = AdminEngine(self.store, self.audit, self.cross_check, policy)

    def close(self) -> None:
        """Wait for queued verdict jobs and stop the worker pool."""
        if isinstance(self.dispatcher, ThreadPoolDispatcher):
            self.dispatcher.shutdown(wait=True)

    # ------------------------------ provider ------------------------------

    def upload(self, user_id: str, filename: Optional[str], data: bytes) -> str:
        if not data:
            raise SubmissionInvalid("The uploaded file is empty", [{"code": "FILE_INVALID", "text": "empty file"}])
        try:
            return self.storage.put(user_id, filename, data)
        except ValueError as exc:
            raise SubmissionInvalid(str(exc), [{"code": "FILE_INVALID", "text": str(exc)}]) from exc

    def _check_refs(self, user_id: str, refs: Dict[str, Optional[str]]) -> None:
        violations = [
            {"code": "DOCUMENT_REF_INVALID", "text": f"{name} does not reference one of your uploads"}
            for name, ref in refs.items()
            if ref and not (self.storage.belongs_to(ref, user_id) and self.storage.exists(ref))
        ]
        if violations:
            raise SubmissionInvalid("Unknown document reference", violations)

    def submit_identity(
        self, user_id: str, payload: Dict[str, Any], dispatcher: Optional[Dispatcher] = None
    ) -> VerificationRecord:
        submission = _parse("identity", payload, IdentitySubmission)
        self.identity.check_attested(submission)
        self._check_refs(user_id, {"document_ref": submission.document_ref, "selfie_ref": submission.selfie_ref})
        record = self.store.get_or_create(user_id)
        return self.identity.submit(record, submission, dispatcher)

    def submit_identity_for_manual_review(self, user_id: str) -> VerificationRecord:
        return self.identity.submit_for_manual_review(self._require_record(user_id))

    def validate_credential_document(self, user_id: str, data: bytes) -> DocumentCheck:
        return self.credential.validate_document(self._unlocked_record(user_id), data)

    def submit_credential(
        self,
        user_id: str,
        payload: Dict[str, Any],
        document: Optional[bytes] = None,
        filename: Optional[str] = None,
        dispatcher: Optional[Dispatcher] = None,
    ) -> VerificationRecord:
        submission = _parse("credential", payload, CredentialSubmission)
        self._check_refs(user_id, {"document_ref": submission.document_ref})
        record = self._unlocked_record(user_id)
        return self.credential.submit(record, submission, document, filename, dispatcher)

    def submit_contact(self, user_id: str, payload: Dict[str, Any]) -> VerificationRecord:
        submission = _parse("contact", payload, ContactSubmission)
        return self.contact.submit(self._unlocked_record(user_id), submission)

    def get_status(self, user_id: str, now: Optional[datetime] = None) -> StatusSnapshot:
        """Poll endpoint: read-only, never creates a record or moves a stage."""
        return project(user_id, self.store.find_by_user(user_id), self.policy(), now)

    def search_localities(self, query: str, limit: int = 20) -> List[Dict[str, str]]:
        return self.gazetteer.search(query, limit)

    def _require_record(self, user_id: str) -> VerificationRecord:
        record = self.store.find_by_user(user_id)
        if record is None:
            raise RecordNotFound(f"No verification for user {user_id}")
        return record

    def _unlocked_record(self, user_id: str) -> VerificationRecord:
        record = self.store.find_by_user(user_id)
        if record is None:
            raise StageLocked("Please complete the identity section first")
        return record

    # ------------------------------ async workers ------------------------------

    def run_identity_check(self, record_id: str, submission_id: str) -> None:
        self.identity.run_check(record_id, submission_id)

    def run_credential_check(self, record_id: str, submission_id: str) -> None:
        self.credential.run_check(record_id, submission_id)

    def run_phase(self, record_id: str, phase: Union[str, Phase], submission_id: str) -> None:
        if Phase(phase) == Phase.IDENTITY:
            self.run_identity_check(record_id, submission_id)
        else:
            self.run_credential_check(record_id, submission_id)

    # ------------------------------ maintenance & feeds ------------------------------

    def escalate_stale(self, now: Optional[datetime] = None, admin_id: Optional[str] = None) -> List[Dict[str, str]]:
        return self.admin.escalate_stale(now, admin_id)

    def apply_registry_results(self, results: Iterable[Union[RegistryResult, Dict[str, Any]]]) -> List[Dict[str, Any]]:
        actions: List[Dict[str, Any]] = []
        for item in results:
            try:
                result = item if isinstance(item, RegistryResult) else RegistryResult.model_validate(item)
            except ValidationError as exc:
                raise SubmissionInvalid(
                    "Invalid registry result",
                    [{"code": "SCHEMA_INVALID", "text": err["msg"]} for err in exc.errors()],
                ) from exc
            actions.extend(self.credential.apply_registry_result(result))
        return actions
