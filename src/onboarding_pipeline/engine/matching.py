"""Pure comparison helpers shared by the stage engines and the cross-check."""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from ..models import ExpiryWindow


def normalize_text(value: Optional[str]) -> str:
    """NFKC + lower-case + collapsed whitespace; None becomes ''."""
    if not isinstance(value, str):
        return ""
    value = unicodedata.normalize("NFKC", value)
    value = value.replace("\u200b", "").replace("\ufeff", "")
    return re.sub(r"\s+", " ", value).strip().lower()


def names_match(a: Optional[str], b: Optional[str]) -> bool:
    return bool(normalize_text(a)) and normalize_text(a) == normalize_text(b)


def first_given_name(given_names: Optional[str]) -> str:
    parts = normalize_text(given_names).split(" ")
    return parts[0] if parts else ""


def given_name_present(given_names: Optional[str], *candidates: Optional[str]) -> bool:
    """True when the first given name appears as a token of any candidate name field."""
    first = first_given_name(given_names)
    if not first:
        return False
    tokens: List[str] = []
    for c in candidates:
        tokens.extend(normalize_text(c).split(" "))
    return first in tokens


def nationality_matches(
    country: Optional[str],
    nationality: Optional[str],
    groups: Dict[str, Iterable[str]],
) -> bool:
    """
    Country of issue vs extracted nationality. Missing values are not a mismatch;
    otherwise the two must be equal or sit in the same equivalence group.
    """
    c = normalize_text(country)
    n = normalize_text(nationality)
    if not c or not n or c == n:
        return True
    for key, values in groups.items():
        members = {normalize_text(key), *(normalize_text(v) for v in values)}
        if c in members and n in members:
            return True
    return False


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def dmy_to_iso(value: Optional[str]) -> Optional[str]:
    """'31/12/2027' -> '2027-12-31'; anything unparseable -> None."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%d/%m/%Y").date().isoformat()
    except ValueError:
        return None


def check_expiry(expiry: date, today: date, warning_days: int) -> ExpiryWindow:
    if expiry < today:
        return ExpiryWindow.EXPIRED
    if expiry < today + timedelta(days=warning_days):
        return ExpiryWindow.EXPIRING_SOON
    return ExpiryWindow.VALID


def normalize_phone(raw: Optional[str]) -> str:
    """Strip separators and fold +61 / 61 prefixes into the national 0 prefix."""
    digits = re.sub(r"[\s\-().]", "", raw or "")
    if digits.startswith("+61"):
        digits = "0" + digits[3:]
    elif digits.startswith("61") and len(digits) == 11:
        digits = "0" + digits[2:]
    return digits
