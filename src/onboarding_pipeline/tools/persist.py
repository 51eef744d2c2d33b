# src/onboarding_pipeline/tools/persist.py
import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from ..engine.events import EventBus, diff_events
from ..engine.status import aggregate_status
from ..models import VerificationRecord

LOGGER = logging.getLogger(__name__)

# ---------- schema ----------

_RECORD_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("id", "TEXT PRIMARY KEY"),
    ("user_id", "TEXT NOT NULL UNIQUE"),
    # identity
    ("surname", "TEXT"),
    ("given_names", "TEXT"),
    ("date_of_birth", "TEXT"),
    ("document_country", "TEXT"),
    ("document_ref", "TEXT"),
    ("selfie_ref", "TEXT"),
    ("extracted_surname", "TEXT"),
    ("extracted_given_names", "TEXT"),
    ("extracted_dob", "TEXT"),
    ("extracted_nationality", "TEXT"),
    ("extracted_document_number", "TEXT"),
    ("extracted_document_expiry", "TEXT"),
    ("identity_reasoning", "TEXT"),
    ("identity_issues", "TEXT NOT NULL DEFAULT '[]'"),        # JSON list of strings
    ("identity_rejection_reason", "TEXT"),
    ("identity_guidance", "TEXT"),                            # JSON object
    ("identity_status", "TEXT NOT NULL DEFAULT 'not_started'"),
    ("identity_status_at", "TEXT"),
    ("identity_submission_id", "TEXT"),
    # credential
    ("credential_method", "TEXT"),
    ("credential_number", "TEXT"),
    ("credential_expiry", "TEXT"),
    ("credential_document_refs", "TEXT NOT NULL DEFAULT '[]'"),
    ("extracted_credential_surname", "TEXT"),
    ("extracted_credential_first_name", "TEXT"),
    ("extracted_credential_other_names", "TEXT"),
    ("extracted_credential_number", "TEXT"),
    ("extracted_clearance_type", "TEXT"),
    ("extracted_credential_expiry", "TEXT"),
    ("credential_doc_verified", "INTEGER NOT NULL DEFAULT 0"),
    ("credential_admin_verified", "INTEGER NOT NULL DEFAULT 0"),
    ("credential_expiry_warning", "INTEGER NOT NULL DEFAULT 0"),
    ("credential_reasoning", "TEXT"),
    ("credential_issues", "TEXT NOT NULL DEFAULT '[]'"),
    ("credential_rejection_reason", "TEXT"),
    ("credential_guidance", "TEXT"),
    ("credential_status", "TEXT NOT NULL DEFAULT 'not_started'"),
    ("credential_status_at", "TEXT"),
    ("credential_submission_id", "TEXT"),
    # contact
    ("phone_number", "TEXT"),
    ("address_line", "TEXT"),
    ("city", "TEXT"),
    ("region", "TEXT"),
    ("postcode", "TEXT"),
    ("country", "TEXT"),
    ("contact_status", "TEXT NOT NULL DEFAULT 'not_started'"),
    # cross-check
    ("cross_check_status", "TEXT NOT NULL DEFAULT 'not_started'"),
    ("cross_check_reasoning", "TEXT"),
    ("cross_check_issues", "TEXT NOT NULL DEFAULT '[]'"),
    # aggregate + timestamps
    ("verification_status", "INTEGER NOT NULL DEFAULT 0"),
    ("created_at", "TEXT NOT NULL"),
    ("updated_at", "TEXT NOT NULL"),
)

_COLUMN_NAMES = tuple(name for name, _ in _RECORD_COLUMNS)
_JSON_COLUMNS = {
    "identity_issues", "identity_guidance", "credential_document_refs",
    "credential_issues", "credential_guidance", "cross_check_issues",
}
_IMMUTABLE_COLUMNS = {"id", "user_id", "created_at", "updated_at", "verification_status"}
_STATUS_AT_COLUMNS = {
    "identity_status": "identity_status_at",
    "credential_status": "credential_status_at",
}
CREDENTIAL_COLUMNS = tuple(
    c for c in _COLUMN_NAMES if c.startswith(("credential_", "extracted_credential_", "extracted_clearance_"))
)
CROSS_CHECK_COLUMNS = tuple(c for c in _COLUMN_NAMES if c.startswith("cross_check_"))


# ---------- helpers ----------

def _utc_now_iso() -> str:
    """ISO 8601 timestamp with timezone, second precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _encode(value: Any) -> Any:
    """Python value -> sqlite value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return value


def _row_to_record(row: Dict[str, Any]) -> VerificationRecord:
    data = dict(row)
    for col in _JSON_COLUMNS:
        raw = data.get(col)
        if raw:
            data[col] = json.loads(raw)
        else:
            data[col] = None if col.endswith("_guidance") else []
    return VerificationRecord.model_validate(data)


def pristine_values(columns: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    Columns at their initial value; all mutable columns when none are named.
    Status timestamps are left out so `transition` stamps them.
    """
    names = _COLUMN_NAMES if columns is None else tuple(columns)
    out: Dict[str, Any] = {}
    for name in names:
        if name in _IMMUTABLE_COLUMNS or name in _STATUS_AT_COLUMNS.values():
            continue
        out[name] = VerificationRecord.model_fields[name].get_default(call_default_factory=True)
    return out


def _as_allowed_set(allowed: Any) -> set:
    if allowed is None or isinstance(allowed, (str, Enum, bool, int)):
        allowed = [allowed]
    return {_encode(v) for v in allowed}


def _ensure_db_schema(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    columns_sql = ",\n                ".join(f"{name} {ddl}" for name, ddl in _RECORD_COLUMNS)
    with sqlite3.connect(db_path) as conn:
        cur = conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute(
            f"""
            CREATE TABLE IF NOT EXISTS verifications (
                {columns_sql}
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_verifications_status ON verifications(verification_status)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS user_roles (
                user_id    TEXT PRIMARY KEY,
                role       TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.commit()


# ---------- store ----------

class VerificationStore:
    """
    One verification row per provider, plus operator roles.

    Every stage mutation goes through `transition`, a compare-and-set write: the row is
    re-read under a write lock, the `expect` guard is checked against the current values,
    and the aggregate `verification_status` is recomputed before commit.
    """

    def __init__(self, db_path: Optional[os.PathLike] = None, bus: Optional[EventBus] = None):
        self.db_path = Path(db_path or os.getenv("VERIFICATION_DB_PATH", "data/verification.db"))
        self.bus = bus or EventBus()
        _ensure_db_schema(self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=10, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=10000;")
        try:
            yield conn
        finally:
            conn.close()

    # ----- reads -----

    def get(self, record_id: str) -> Optional[VerificationRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM verifications WHERE id = ?", (record_id,)).fetchone()
        return _row_to_record(row) if row else None

    def find_by_user(self, user_id: str) -> Optional[VerificationRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM verifications WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_record(row) if row else None

    def find_by_credential_number(self, number: str) -> List[VerificationRecord]:
        needle = (number or "").strip().upper()
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM verifications
                WHERE upper(credential_number) = ? OR upper(extracted_credential_number) = ?
                """,
                (needle, needle),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_records(
        self,
        *,
        verification_status: Optional[Iterable[int]] = None,
        identity_status: Optional[Iterable[str]] = None,
        credential_status: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[int, List[VerificationRecord]]:
        """Filtered page of records, most recently updated first, plus the filtered total."""
        clauses: List[str] = []
        params: List[Any] = []
        for column, values in (
            ("verification_status", verification_status),
            ("identity_status", identity_status),
            ("credential_status", credential_status),
        ):
            if values:
                values = [_encode(v) for v in values]
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM verifications {where}", params).fetchone()[0]
            sql = f"SELECT * FROM verifications {where} ORDER BY updated_at DESC, id LIMIT ? OFFSET ?"
            rows = conn.execute(sql, [*params, limit if limit is not None else -1, offset or 0]).fetchall()
        return int(total), [_row_to_record(r) for r in rows]

    def list_processing_since(self, cutoff_iso: str) -> List[VerificationRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM verifications
                WHERE (identity_status = 'processing' AND identity_status_at < ?)
                   OR (credential_status = 'processing' AND credential_status_at < ?)
                """,
                (cutoff_iso, cutoff_iso),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    # ----- writes -----

    def get_or_create(self, user_id: str) -> VerificationRecord:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO verifications (id, user_id, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (uuid.uuid4().hex, user_id, now, now),
            )
            row = conn.execute("SELECT * FROM verifications WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_record(row)

    def transition(
        self,
        record_id: str,
        *,
        changes: Dict[str, Any],
        expect: Optional[Dict[str, Any]] = None,
    ) -> Optional[Tuple[VerificationRecord, VerificationRecord]]:
        """
        Apply `changes` only if every `expect` column currently holds one of its allowed
        values. Returns (before, after) on success, None when the guard did not match.
        """
        unknown = [c for c in list(changes) + list(expect or {}) if c not in _COLUMN_NAMES]
        if unknown:
            raise KeyError(f"Unknown verification columns: {unknown}")
        if any(c in _IMMUTABLE_COLUMNS for c in changes):
            raise KeyError("id, user_id, timestamps and verification_status are not writable")

        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT * FROM verifications WHERE id = ?", (record_id,)).fetchone()
                if row is None:
                    conn.execute("ROLLBACK")
                    return None
                current = dict(row)
                for column, allowed in (expect or {}).items():
                    if current[column] not in _as_allowed_set(allowed):
                        conn.execute("ROLLBACK")
                        return None

                merged = dict(current)
                merged.update({k: _encode(v) for k, v in changes.items()})
                for status_col, at_col in _STATUS_AT_COLUMNS.items():
                    token_col = status_col.replace("_status", "_submission_id")
                    moved = merged[status_col] != current[status_col] or merged[token_col] != current[token_col]
                    if moved and at_col not in changes:
                        merged[at_col] = now
                merged["verification_status"] = aggregate_status(
                    merged["identity_status"],
                    merged["credential_status"],
                    merged["cross_check_status"],
                    merged["contact_status"],
                )
                merged["updated_at"] = now

                writable = [c for c in _COLUMN_NAMES if c not in ("id", "user_id", "created_at")]
                conn.execute(
                    f"UPDATE verifications SET {', '.join(f'{c} = ?' for c in writable)} WHERE id = ?",
                    [merged[c] for c in writable] + [record_id],
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        before, after = _row_to_record(current), _row_to_record(merged)
        for event in diff_events(before, after, now):
            self.bus.publish(event)
        return before, after

    def clear(self, record_id: str) -> Optional[Tuple[VerificationRecord, VerificationRecord]]:
        """Zero every stage field; the row (and its id) survives."""
        return self.transition(record_id, changes=pristine_values())

    def delete_for_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM verifications WHERE user_id = ?", (user_id,))
        return cur.rowcount > 0

    # ----- roles -----

    def get_role(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT role FROM user_roles WHERE user_id = ?", (user_id,)).fetchone()
        return row["role"] if row else None

    def set_role(self, user_id: str, role: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_roles (user_id, role, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET role = excluded.role, updated_at = excluded.updated_at
                """,
                (user_id, _encode(role), _utc_now_iso()),
            )

    def delete_role(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_roles WHERE user_id = ?", (user_id,))
        return cur.rowcount > 0


# ---------- audit ----------

def _append_jsonl_in_dir(out_dir: Path, filename: str, payload: dict) -> Path:
    """Append as JSONL into <out_dir>/<filename> (ensure dir exists)."""
    out_dir.mkdir(parents=True, exist_ok=True)
    fpath = out_dir / filename
    with fpath.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload, ensure_ascii=False) + "\n")
    return fpath


class AuditLog:
    """Who/when trail of operator actions, one JSON object per line."""

    def __init__(self, out_dir: Optional[os.PathLike] = None, filename: str = "admin_actions.jsonl"):
        self.out_dir = Path(out_dir or os.getenv("VERIFICATION_AUDIT_DIR", "runlogs"))
        self.filename = filename

    @property
    def path(self) -> Path:
        return self.out_dir / self.filename

    def record(self, admin_id: str, action: str, target: str, details: Optional[dict] = None) -> Path:
        payload = {
            "at": _utc_now_iso(),
            "admin_id": admin_id,
            "action": action,
            "target": target,
            "details": details or {},
        }
        return _append_jsonl_in_dir(self.out_dir, self.filename, payload)
