import threading
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

import onboarding_pipeline.engine.credential as credential_mod
from onboarding_pipeline.engine.dispatch import Dispatcher, InlineDispatcher
from onboarding_pipeline.engine.extraction import ExtractionClient
from onboarding_pipeline.engine.pipeline import VerificationService
from onboarding_pipeline.models import ExtractionVerdict, Phase
from onboarding_pipeline.tools.persist import AuditLog, VerificationStore
from onboarding_pipeline.tools.policy import load_policy
from onboarding_pipeline.tools.storage import LocalObjectStorage

TODAY = date(2026, 1, 15)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep run logs, audit files and the default DB out of the working tree."""
    monkeypatch.setenv("RUNLOG_DIR", str(tmp_path / "runlogs"))
    monkeypatch.delenv("RUNLOG_FILE", raising=False)
    monkeypatch.setenv("VERIFICATION_AUDIT_DIR", str(tmp_path / "audit"))
    monkeypatch.setenv("VERIFICATION_DB_PATH", str(tmp_path / "default.db"))
    monkeypatch.setenv("VERIFICATION_STORAGE_DIR", str(tmp_path / "default_uploads"))
    for name in ("EMAIL_PROVIDER", "SUPER_ADMIN_IDS", "REGISTRY_WEBHOOK_SECRET", "DEFAULT_TO", "VERIFICATION_CONFIG_DIR"):
        monkeypatch.delenv(name, raising=False)


# -------- Fakes --------

class FakeExtractionClient(ExtractionClient):
    """
    Deterministic collaborator. Queued outcomes (verdicts or exceptions) are consumed
    per phase; with nothing queued it passes, echoing the submitted fields.
    """

    def __init__(self):
        self.queues: Dict[Phase, List[Any]] = {Phase.IDENTITY: [], Phase.CREDENTIAL: []}
        self.calls: List[Dict[str, Any]] = []

    def queue(self, phase: Phase, *outcomes: Any) -> None:
        self.queues[Phase(phase)].extend(outcomes)

    def extract_and_judge(self, document_refs, phase, expected):
        self.calls.append({"refs": list(document_refs), "phase": Phase(phase), "expected": dict(expected)})
        queue = self.queues[Phase(phase)]
        outcome = queue.pop(0) if queue else self._echo(Phase(phase), expected)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @staticmethod
    def _echo(phase: Phase, expected: Dict[str, Optional[str]]) -> ExtractionVerdict:
        if phase == Phase.IDENTITY:
            fields = {
                "surname": expected.get("surname"),
                "given_names": expected.get("given_names"),
                "date_of_birth": expected.get("date_of_birth"),
                "nationality": expected.get("document_country"),
                "document_number": "P1234567",
            }
        else:
            given = (expected.get("given_names") or "").split(" ")
            fields = {
                "surname": expected.get("surname"),
                "first_name": given[0] if given else None,
                "credential_number": expected.get("credential_number") or "WWC7654321B",
                "expiry_date": (TODAY + timedelta(days=400)).isoformat(),
            }
        return ExtractionVerdict(passed=True, fields=fields, reasoning="Documents are consistent", confidence=0.95)


class RecordingDispatcher(Dispatcher):
    """Captures jobs so tests decide when (and whether) the async verdict lands."""

    def __init__(self):
        self.jobs: List[Any] = []

    def submit(self, fn, *args):
        self.jobs.append((fn, args))

    def run_all(self) -> None:
        jobs, self.jobs = self.jobs, []
        for fn, args in jobs:
            fn(*args)


class FailingDispatcher(Dispatcher):
    def __init__(self, exc: Exception):
        self.exc = exc

    def submit(self, fn, *args):
        raise self.exc


def verdict(passed: bool = True, **kwargs) -> ExtractionVerdict:
    return ExtractionVerdict(passed=passed, **kwargs)


def clearance_email_text(
    surname: str = "Nguyen",
    first_name: str = "Minh",
    other_name: Optional[str] = "Van",
    number: str = "WWC1234567A",
    expiry: Optional[date] = None,
) -> str:
    expiry = expiry or TODAY + timedelta(days=400)
    lines = [
        "From: WWCCNotification@ocg.nsw.gov.au",
        "To: minh.nguyen@example.com",
        "Subject: Information Regarding your Working With Children Check",
        f"Working With Children Check Number: {number}",
        f"Dear {first_name} {surname},",
        "You have been granted a Working with Children Check clearance.",
        "You have been cleared to work with children in NSW.",
        "Your details are:",
        "Surname",
        surname,
        "First Name",
        first_name,
    ]
    if other_name:
        lines += ["Other Name", other_name]
    lines += [
        "WWC Number",
        number,
        "Type of Clearance",
        "Employee",
        "Expiry Date",
        expiry.strftime("%d/%m/%Y"),
        "Yours sincerely",
        "Director",
        "Working With Children Check",
        "Office of the Children's Guardian",
        "The Office of the Children's Guardian is an independent statutory authority.",
    ]
    return "\n".join(lines)


def text_to_pdf(text: str) -> bytes:
    import fitz

    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((40, 50), text, fontsize=9)
    data = doc.tobytes()
    doc.close()
    return data


# -------- Fixtures --------

@pytest.fixture
def fast_policy() -> Callable:
    """Packaged policy with retry delays removed so failure paths run instantly."""
    def _policy():
        return load_policy().model_copy(update={
            "extraction_retry_delay_seconds": 0,
            "extraction_timeout_seconds": 5,
        })
    return _policy


@pytest.fixture
def fake_extraction() -> FakeExtractionClient:
    return FakeExtractionClient()


@pytest.fixture
def store(tmp_path: Path) -> VerificationStore:
    return VerificationStore(tmp_path / "verification.db")


@pytest.fixture
def service(tmp_path: Path, store, fake_extraction, fast_policy) -> VerificationService:
    return VerificationService(
        store=store,
        storage=LocalObjectStorage(tmp_path / "uploads"),
        extraction=fake_extraction,
        dispatcher=InlineDispatcher(),
        audit=AuditLog(tmp_path / "audit"),
        policy=fast_policy,
        today=lambda: TODAY,
    )


@pytest.fixture
def identity_payload(service) -> Callable[..., Dict[str, Any]]:
    """Upload a passport photo and selfie for the user and build an identity payload."""
    def _make(user_id: str, **overrides) -> Dict[str, Any]:
        payload = {
            "surname": "Nguyen",
            "given_names": "Minh Van",
            "date_of_birth": "1995-01-01",
            "document_country": "Vietnam",
            "document_ref": service.upload(user_id, "passport.jpg", b"passport-bytes"),
            "selfie_ref": service.upload(user_id, "selfie.jpg", b"selfie-bytes"),
            "attested": True,
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def verified_user(service, identity_payload) -> Callable[[str], Any]:
    """A user whose identity stage has been verified by the (inline) collaborator."""
    def _make(user_id: str = "minh@example.com", **overrides):
        record = service.submit_identity(user_id, identity_payload(user_id, **overrides))
        assert record.identity_status.value == "verified"
        return record
    return _make


@pytest.fixture
def admin_id(store) -> str:
    store.set_role("ops@example.com", "admin")
    return "ops@example.com"


@pytest.fixture
def hung_pdf_check(service, monkeypatch):
    """The local clearance check never answers and the validation timeout is 50ms."""
    release = threading.Event()

    def _hang(data, **kwargs):
        release.wait(2)

    quick = load_policy().model_copy(update={"validation_timeout_seconds": 0.05})
    monkeypatch.setattr(credential_mod, "check_credential_pdf", _hang)
    monkeypatch.setattr(service.credential, "policy", lambda: quick)
    yield
    release.set()
