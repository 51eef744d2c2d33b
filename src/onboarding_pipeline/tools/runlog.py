from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from crewai.tools import BaseTool


def _iso_utc_seconds() -> str:
    """UTC ISO8601 to seconds with 'Z' suffix (no microseconds)."""
    return (
        datetime.now(timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def _as_entry(payload: Any) -> Dict[str, Any]:
    """Coerce a payload into a dict entry; JSON strings are decoded, other text is wrapped."""
    if isinstance(payload, dict):
        return dict(payload)
    if isinstance(payload, str):
        try:
            decoded = json.loads(payload)
        except ValueError:
            return {"message": payload}
        return decoded if isinstance(decoded, dict) else {"payload": decoded}
    return {"payload": payload}


def _runlog_path(out_dir: Optional[str | os.PathLike[str]], filename: Optional[str]) -> Path:
    """Explicit args win, then RUNLOG_DIR / RUNLOG_FILE, then runlogs/extraction_runs.jsonl."""
    directory = Path(out_dir or os.getenv("RUNLOG_DIR") or "runlogs")
    name = filename or os.getenv("RUNLOG_FILE") or "extraction_runs.jsonl"
    return directory / name


def append_runlog(
    payload: Any,
    out_dir: Optional[str | os.PathLike[str]] = None,
    filename: Optional[str] = None,
) -> str:
    """Append one JSON line to the run log and return metadata JSON."""
    dest = _runlog_path(out_dir, filename)
    dest.parent.mkdir(parents=True, exist_ok=True)

    entry = {"logged_at": _iso_utc_seconds(), **_as_entry(payload)}
    line = json.dumps(entry, ensure_ascii=False) + "\n"
    with dest.open("a", encoding="utf-8") as f:
        f.write(line)

    bytes_written = len(line.encode("utf-8"))
    print(f"[persist_runlog] appended to {dest} ({bytes_written} bytes)")
    return json.dumps({"saved_to": str(dest), "bytes": bytes_written, "saved_at": entry["logged_at"]})


class PersistRunlogTool(BaseTool):
    """
    CrewAI tool wrapper.

    Kwargs:
      - payload_json: string or JSON-serializable
      - out_dir / filename: optional destination override
      - any other kwargs: if payload_json is missing, they are logged as the entry
    """

    name: str = "persist_runlog"
    description: str = "Append a document verification run entry (JSON) to the run log"

    def _run(self, **kwargs) -> str:  # type: ignore[override]
        out_dir = kwargs.pop("out_dir", None)
        filename = kwargs.pop("filename", None)
        payload = kwargs.pop("payload_json", None)
        if payload is None:
            payload = kwargs
        return append_runlog(payload, out_dir=out_dir, filename=filename)


persist_runlog = PersistRunlogTool()

__all__ = ["persist_runlog", "append_runlog"]
