"""
Document extraction collaborator: contract, crew-backed client, and the
timeout/retry wrapper the async workers use to call it.
"""

from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..models import ExtractionVerdict, Phase
from ..tools.runlog import append_runlog
from ..tools.storage import LocalObjectStorage

LOGGER = logging.getLogger(__name__)


class ExtractionClient:
    """extract_and_judge(document_refs, phase, expected_fields) -> ExtractionVerdict"""

    def extract_and_judge(
        self,
        document_refs: List[str],
        phase: Phase,
        expected: Dict[str, Optional[str]],
    ) -> ExtractionVerdict:
        raise NotImplementedError


def _default_crew():
    from ..crew import DocumentCheckCrew

    return DocumentCheckCrew().crew()


def _strip_fences(text: str) -> str:
    text = text.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, flags=re.DOTALL)
    return fenced.group(1) if fenced else text


def verdict_from_crew_output(result: Any) -> ExtractionVerdict:
    """Accept CrewOutput (.pydantic / .raw), a dict, or raw JSON text."""
    pyd = getattr(result, "pydantic", None)
    if isinstance(pyd, ExtractionVerdict):
        return pyd
    raw = getattr(result, "raw", result)
    if isinstance(raw, dict):
        return ExtractionVerdict.model_validate(raw)
    return ExtractionVerdict.model_validate_json(_strip_fences(str(raw)))


class CrewExtractionClient(ExtractionClient):
    """Runs the extractor + judge crew over locally resolved document files."""

    def __init__(self, storage: LocalObjectStorage, crew_factory: Optional[Callable[[], Any]] = None):
        self.storage = storage
        self.crew_factory = crew_factory or _default_crew

    def extract_and_judge(self, document_refs, phase, expected):
        paths = [str(self.storage.resolve(ref)) for ref in document_refs]
        result = self.crew_factory().kickoff(
            inputs={
                "phase": Phase(phase).value,
                "document_paths": json.dumps(paths),
                "expected_fields": json.dumps(expected, ensure_ascii=False),
                "today": date.today().isoformat(),
            }
        )
        return verdict_from_crew_output(result)


# ------------------------------ timeout + retry ------------------------------

def _call_with_timeout(fn: Callable[[], ExtractionVerdict], timeout: float) -> ExtractionVerdict:
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extraction")
    try:
        return pool.submit(fn).result(timeout=timeout)
    finally:
        # a hung collaborator call is abandoned, not awaited
        pool.shutdown(wait=False, cancel_futures=True)


def call_collaborator(
    client: ExtractionClient,
    document_refs: List[str],
    phase: Phase,
    expected: Dict[str, Optional[str]],
    *,
    timeout: float,
    attempts: int,
    retry_delay: float,
    record_id: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[ExtractionVerdict]:
    """
    Up to `attempts` calls, each bounded by `timeout`. Returns None when every attempt
    failed technically (timeout, transport error, unparseable answer).
    """
    for attempt in range(1, max(1, attempts) + 1):
        started = datetime.now(timezone.utc).isoformat(timespec="seconds")
        try:
            verdict = _call_with_timeout(
                lambda: client.extract_and_judge(document_refs, phase, expected), timeout
            )
        except FuturesTimeout:
            error = f"timed out after {timeout}s"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        else:
            append_runlog({
                "context": f"{Phase(phase).value.upper()}_CHECK",
                "record_id": record_id,
                "attempt": attempt,
                "status": "success",
                "passed": verdict.passed,
                "confidence": verdict.confidence,
                "started_at": started,
            })
            return verdict

        LOGGER.warning("Extraction attempt %s/%s for record %s failed: %s", attempt, attempts, record_id, error)
        append_runlog({
            "context": f"{Phase(phase).value.upper()}_CHECK",
            "record_id": record_id,
            "attempt": attempt,
            "status": "failed",
            "error": error,
            "started_at": started,
        })
        if attempt < attempts:
            sleep(retry_delay)
    return None
