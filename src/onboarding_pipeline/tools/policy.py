# -*- coding: utf-8 -*-
"""
Verification policy (YAML-driven).

Design
------
- Knobs live in config/policy.yaml; nationality equivalence groups in
  nationalities.yaml; provider-facing guidance payloads in guidance.yaml.
- Files are cached and hot-reloaded when their mtime changes (no restart needed).
- Inbound submissions are checked against strict JSON schemas
  (additionalProperties: False); schema problems become {code, text, citation}
  violations, the same shape the engine raises in SubmissionInvalid.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator
from pydantic import BaseModel, Field

from ..models import UserGuidance

# ------------------------------ Logger ---------------------------------------

LOGGER = logging.getLogger(__name__)

# ------------------------------ Constants & Cache -----------------------------

ISO_DATE_PATTERN: str = r"^\d{4}-\d{2}-\d{2}$"

# file name -> {"data": dict, "path": str, "mtime": float}
_YAML_CACHE: Dict[str, Dict[str, Any]] = {}

# <package_root>/onboarding_pipeline/config
_DEFAULT_CONFIG_DIR: Path = Path(__file__).resolve().parents[1] / "config"


class VerificationPolicy(BaseModel):
    credential_number_pattern: str = r"^WWC\d{7}[A-Z]$"
    mobile_pattern: str = r"^04\d{8}$"
    expiry_warning_days: int = 90
    review_confidence: float = 0.6
    extraction_timeout_seconds: float = 25
    extraction_attempts: int = 2
    extraction_retry_delay_seconds: float = 5
    validation_timeout_seconds: float = 15
    min_document_markers: int = 6
    document_markers: List[str] = Field(default_factory=list)
    poll_interval_seconds: int = 3
    stale_after_seconds: int = 300
    default_region: str = "NSW"
    default_country: str = "Australia"


# ------------------------------ File Helpers ---------------------------------

def config_dir() -> Path:
    override = os.getenv("VERIFICATION_CONFIG_DIR")
    return Path(override) if override else _DEFAULT_CONFIG_DIR


def _file_mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except OSError as exc:
        LOGGER.warning("Failed to stat YAML file %s: %s", path, exc)
        return None


def _load_yaml(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return data if isinstance(data, dict) else {}
    except OSError as exc:
        LOGGER.warning("Failed to load YAML %s: %s", path, exc)
        return None


def load_yaml_hot(name: str) -> Dict[str, Any]:
    """
    Cached load of <config_dir>/<name> with hot-reload on mtime change.
    A missing or unreadable file yields {} so callers fall back to defaults.
    """
    path = config_dir() / name
    if not path.exists():
        LOGGER.warning("Config file %s not found; using defaults", path)
        return {}

    mtime = _file_mtime(path)
    cached = _YAML_CACHE.get(name)
    if cached and cached["path"] == str(path) and cached["mtime"] == mtime:
        return cached["data"]

    data = _load_yaml(path)
    if data is None:
        return cached["data"] if cached else {}
    _YAML_CACHE[name] = {"data": data, "path": str(path), "mtime": mtime}
    return data


# ------------------------------ Public Loaders -------------------------------

def load_policy() -> VerificationPolicy:
    raw = load_yaml_hot("policy.yaml")
    known = {k: v for k, v in raw.items() if k in VerificationPolicy.model_fields}
    return VerificationPolicy(**known)


def nationality_groups() -> Dict[str, List[str]]:
    """country (lower-case) -> accepted nationality spellings (lower-case)."""
    raw = load_yaml_hot("nationalities.yaml")
    return {
        str(country).strip().lower(): [str(v).strip().lower() for v in (values or [])]
        for country, values in raw.items()
    }


def guidance(code: str) -> Optional[UserGuidance]:
    entry = load_yaml_hot("guidance.yaml").get(code)
    if not isinstance(entry, dict):
        LOGGER.warning("No guidance entry for %s", code)
        return None
    return UserGuidance(**entry)


# ------------------------------ Payload Schemas ------------------------------

_NON_BLANK = {"type": "string", "minLength": 1, "pattern": r"\S"}
_ISO_DATE = {"type": "string", "pattern": ISO_DATE_PATTERN}

_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "identity": {
        "type": "object",
        "properties": {
            "surname": _NON_BLANK,
            "given_names": _NON_BLANK,
            "date_of_birth": _ISO_DATE,
            "document_country": _NON_BLANK,
            "document_ref": _NON_BLANK,
            "selfie_ref": _NON_BLANK,
            "attested": {"type": "boolean"},
        },
        "required": ["surname", "given_names", "date_of_birth", "document_country", "document_ref", "selfie_ref"],
        "additionalProperties": False,
    },
    "credential": {
        "type": "object",
        "properties": {
            "method": {"enum": ["document_email", "mobile_wallet", "manual_entry"]},
            "credential_number": {"type": ["string", "null"]},
            "expiry_date": {"anyOf": [_ISO_DATE, {"type": "null"}]},
            "document_ref": {"type": ["string", "null"]},
            "attested": {"type": "boolean"},
        },
        "required": ["method"],
        "additionalProperties": False,
    },
    "contact": {
        "type": "object",
        "properties": {
            "phone_number": _NON_BLANK,
            "address_line": _NON_BLANK,
            "city": _NON_BLANK,
            "postcode": {"type": "string", "pattern": r"^\d{4}$"},
            "region": {"type": ["string", "null"]},
            "country": {"type": ["string", "null"]},
        },
        "required": ["phone_number", "address_line", "city", "postcode"],
        "additionalProperties": False,
    },
}


def _add(violations: List[Dict[str, str]], code: str, msg: str, citation: Optional[str] = None) -> None:
    v: Dict[str, str] = {"code": code, "text": msg}
    if citation:
        v["citation"] = citation
    violations.append(v)


def _is_real_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
        return True
    except (TypeError, ValueError):
        return False


def check_payload(kind: str, payload: Any) -> List[Dict[str, str]]:
    """Schema + date sanity violations for a submission payload (empty list = OK)."""
    violations: List[Dict[str, str]] = []
    schema = _SCHEMAS.get(kind)
    if schema is None:
        raise KeyError(f"No payload schema for '{kind}'")
    if not isinstance(payload, dict):
        _add(violations, "SCHEMA_INVALID", "Payload must be a JSON object", "schema")
        return violations

    for err in sorted(Draft7Validator(schema).iter_errors(payload), key=str):
        if err.validator == "required":
            missing = re.findall(r"'([^']+)'", err.message)
            _add(violations, "FIELD_MISSING", f"{missing[0] if missing else 'field'} is required", "schema")
            continue
        field = ".".join(str(p) for p in err.path)
        _add(violations, "SCHEMA_INVALID", f"{field}: {err.message}" if field else err.message, "schema")

    for key in ("date_of_birth", "expiry_date"):
        value = payload.get(key)
        if isinstance(value, str) and re.fullmatch(ISO_DATE_PATTERN, value) and not _is_real_date(value):
            _add(violations, "DATE_INVALID", f"{key} must be a real date in YYYY-MM-DD", "schema")
    return violations
