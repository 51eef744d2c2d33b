from __future__ import annotations

from typing import Dict, List

from ..engine.matching import normalize_text
from .policy import load_yaml_hot


class YamlGazetteer:
    """Reference (suburb, postcode) pairs read from config/gazetteer.yaml."""

    def __init__(self, filename: str = "gazetteer.yaml"):
        self.filename = filename

    def localities(self) -> List[Dict[str, str]]:
        rows = load_yaml_hot(self.filename).get("localities") or []
        return [
            {"suburb": str(r.get("suburb", "")).strip(), "postcode": str(r.get("postcode", "")).strip()}
            for r in rows
            if isinstance(r, dict)
        ]

    def is_valid(self, suburb: str, postcode: str) -> bool:
        s, p = normalize_text(suburb), (postcode or "").strip()
        return any(normalize_text(r["suburb"]) == s and r["postcode"] == p for r in self.localities())

    def search(self, query: str, limit: int = 20) -> List[Dict[str, str]]:
        q = normalize_text(query)
        if not q:
            return []
        hits = [r for r in self.localities() if normalize_text(r["suburb"]).startswith(q) or r["postcode"].startswith(q)]
        return hits[:limit]
