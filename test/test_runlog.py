import json
from datetime import datetime
from pathlib import Path

import pytest

from onboarding_pipeline.tools.runlog import append_runlog, persist_runlog


def _call_persist_runlog(**kwargs) -> str:
    """Goes through the CrewAI tool runner, like the extractor agent does."""
    return persist_runlog.run(**kwargs)


def _lines(path: Path) -> list:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def _is_iso_seconds(ts: str) -> bool:
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return dt.microsecond == 0
    except ValueError:
        return False


def test_appends_one_line_per_call(tmp_path: Path, capsys: pytest.CaptureFixture):
    out_dir = tmp_path / "logs"

    res1 = json.loads(_call_persist_runlog(payload_json='{"a": 1}', out_dir=str(out_dir), filename="runs.jsonl"))
    saved = Path(res1["saved_to"])
    assert saved == out_dir / "runs.jsonl"
    assert _is_iso_seconds(res1["saved_at"])

    out = capsys.readouterr().out
    assert "[persist_runlog] appended to" in out
    assert str(saved) in out

    _call_persist_runlog(payload_json="plain text note", out_dir=str(out_dir), filename="runs.jsonl")

    entries = _lines(saved)
    assert len(entries) == 2
    assert entries[0]["a"] == 1
    assert entries[1]["message"] == "plain text note"
    assert all(_is_iso_seconds(e["logged_at"]) for e in entries)
    assert res1["bytes"] == len(saved.read_text(encoding="utf-8").splitlines()[0].encode("utf-8")) + 1


def test_handles_non_string_payload(tmp_path: Path):
    payload = {"x": 1, "y": ["a", "b"]}
    res = json.loads(_call_persist_runlog(payload_json=payload, out_dir=str(tmp_path), filename="data.jsonl"))
    entry = _lines(Path(res["saved_to"]))[0]
    assert entry["x"] == 1
    assert entry["y"] == ["a", "b"]


def test_loose_kwargs_become_the_entry(tmp_path: Path):
    res = json.loads(_call_persist_runlog(context="IDENTITY_CHECK", status="success", out_dir=str(tmp_path)))
    entry = _lines(Path(res["saved_to"]))[0]
    assert entry["context"] == "IDENTITY_CHECK"
    assert entry["status"] == "success"


def test_env_directory_is_the_default(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RUNLOG_DIR", str(tmp_path / "envlogs"))
    monkeypatch.setenv("RUNLOG_FILE", "envrun.jsonl")

    res = json.loads(append_runlog({"k": "v"}))
    assert Path(res["saved_to"]) == tmp_path / "envlogs" / "envrun.jsonl"

    # explicit arguments win over the environment
    res = json.loads(append_runlog({"k": "v"}, out_dir=tmp_path / "explicit", filename="f.jsonl"))
    assert Path(res["saved_to"]) == tmp_path / "explicit" / "f.jsonl"


def test_creates_nested_directory(tmp_path: Path):
    out_dir = tmp_path / "nested" / "deep" / "runlogs"
    res = json.loads(append_runlog([1, 2], out_dir=out_dir, filename="f.jsonl"))
    saved = Path(res["saved_to"])
    assert saved.parent == out_dir
    assert _lines(saved)[0]["payload"] == [1, 2]
