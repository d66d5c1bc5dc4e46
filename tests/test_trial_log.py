"""Tests for trial logging and saved estimates."""

from __future__ import annotations

import json
from datetime import datetime, timezone

from llmprobe import __version__
from llmprobe.probe.searcher import PATTERNS_VERSION
from llmprobe.probe.types import (
    Confidence,
    ContextWindowResult,
    EvidenceSource,
    MaxOutputResult,
    ProbeOutcome,
)
from llmprobe.storage import ResultStorage, provider_from_url
from llmprobe.trial_log import TrialLogger, sanitize_name


def _context_result(**overrides) -> ContextWindowResult:
    fields = dict(
        model="org/model",
        max_context_tokens=8192,
        confidence=Confidence.MEDIUM,
        trials=2,
        duration=1.5,
        trial_history=(
            ProbeOutcome(candidate=4096, succeeded=True, estimated_tokens=4100),
            ProbeOutcome(
                candidate=8192,
                succeeded=False,
                error_text="too long",
                evidence_source=EvidenceSource.API_ERROR,
                comprehension=None,
            ),
        ),
    )
    fields.update(overrides)
    return ContextWindowResult(**fields)


def _read_lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


# ─── sanitize_name ──────────────────────────────────────────────────────────


class TestSanitizeName:
    def test_slashes_and_colons(self):
        assert sanitize_name("meta-llama/Llama-3.1-8B:instruct") == "meta-llama-Llama-3.1-8B-instruct"

    def test_whitespace(self):
        assert sanitize_name("  my model  ") == "my-model"

    def test_empty(self):
        assert sanitize_name("///") == "unknown"


# ─── TrialLogger ────────────────────────────────────────────────────────────


class TestTrialLogger:
    def test_file_name(self, tmp_path):
        logger = TrialLogger(tmp_path)
        when = datetime(2026, 3, 14, tzinfo=timezone.utc)
        path = logger.log_file("org/model", "context", when)
        assert path == tmp_path / "2026-03-14-org-model-context.log"

    def test_log_result_writes_trials_then_result(self, tmp_path):
        logger = TrialLogger(tmp_path)
        logger.log_result("org/model", "corp", "context", _context_result())
        [path] = tmp_path.glob("*-org-model-context.log")
        records = _read_lines(path)
        assert [r["trial"]["index"] for r in records] == [0, 1, -1]

        first, second, final = records
        assert first["trial"]["token_count"] == 4096
        assert first["trial"]["success"] is True
        assert first["trial"]["estimated_tokens"] == 4100
        assert "error_message" not in first["trial"]
        assert second["trial"]["error_message"] == "too long"
        assert second["trial"]["evidence_source"] == "api_error"
        assert final["trial"]["result"]["max_context_tokens"] == 8192
        assert "trial_history" not in final["trial"]["result"]

    def test_record_envelope(self, tmp_path):
        logger = TrialLogger(tmp_path)
        logger.log_result("m", "corp", "max_output", _context_result(model="m"))
        record = _read_lines(next(tmp_path.glob("*.log")))[0]
        assert record["model"] == "m"
        assert record["gateway"] == "corp"
        assert record["probe_type"] == "max_output"
        assert datetime.fromisoformat(record["timestamp"])
        assert record["metadata"] == {
            "version": __version__,
            "execution_id": logger.execution_id,
            "patterns_version": PATTERNS_VERSION,
        }

    def test_comprehension_logged(self, tmp_path):
        logger = TrialLogger(tmp_path)
        outcome = ProbeOutcome(candidate=4096, succeeded=True, comprehension=True)
        logger.log_trial("m", "g", "context", 0, outcome)
        record = _read_lines(next(tmp_path.glob("*.log")))[0]
        assert record["trial"]["comprehension"] is True

    def test_appends_across_runs(self, tmp_path):
        TrialLogger(tmp_path).log_result("m", "g", "context", _context_result(model="m"))
        TrialLogger(tmp_path).log_result("m", "g", "context", _context_result(model="m"))
        records = _read_lines(next(tmp_path.glob("*.log")))
        assert len(records) == 6
        assert len({r["metadata"]["execution_id"] for r in records}) == 2

    def test_disabled_writes_nothing(self, tmp_path):
        log_dir = tmp_path / "logs"
        TrialLogger(log_dir, enabled=False).log_result("m", "g", "context", _context_result())
        assert not log_dir.exists()

    def test_creates_directory(self, tmp_path):
        log_dir = tmp_path / "a" / "b"
        TrialLogger(log_dir).log_result("m", "g", "context", _context_result())
        assert any(log_dir.glob("*.log"))

    def test_japanese_text_kept_readable(self, tmp_path):
        logger = TrialLogger(tmp_path)
        outcome = ProbeOutcome(candidate=10, succeeded=False, error_text="長すぎます")
        logger.log_trial("m", "g", "context", 0, outcome)
        assert "長すぎます" in next(tmp_path.glob("*.log")).read_text(encoding="utf-8")


# ─── ResultStorage ──────────────────────────────────────────────────────────


class TestProviderFromUrl:
    def test_host(self):
        assert provider_from_url("https://api.example.com/v1") == "api.example.com"

    def test_host_and_port(self):
        assert provider_from_url("http://localhost:8000/v1") == "localhost-8000"

    def test_without_scheme(self):
        assert provider_from_url("gw.internal:9000") == "gw.internal-9000"


class TestResultStorage:
    def test_save_and_load_context(self, tmp_path):
        storage = ResultStorage(tmp_path)
        path = storage.save_context_result("api.example.com", "org/model", _context_result())
        assert path == tmp_path / "api.example.com-org-model.json"
        loaded = storage.load_context_result("api.example.com", "org/model")
        assert loaded["max_context_tokens"] == 8192
        assert loaded["confidence"] == "medium"
        assert storage.load_max_output_result("api.example.com", "org/model") is None

    def test_saving_one_type_keeps_the_other(self, tmp_path):
        storage = ResultStorage(tmp_path)
        storage.save_context_result("p", "m", _context_result(model="m"))
        storage.save_max_output_result(
            "p",
            "m",
            MaxOutputResult(
                model="m", max_output_tokens=4096, confidence=Confidence.HIGH, trials=3, duration=2.0
            ),
        )
        data = json.loads(storage.path_for("p", "m").read_text(encoding="utf-8"))
        assert data["context_window"]["max_context_tokens"] == 8192
        assert data["max_output"]["max_output_tokens"] == 4096
        assert data["llmprobe_version"] == __version__
        assert "estimated_at" in data

    def test_no_temp_file_left(self, tmp_path):
        storage = ResultStorage(tmp_path)
        storage.save_context_result("p", "m", _context_result())
        assert not list(tmp_path.glob("*.tmp"))

    def test_missing_file(self, tmp_path):
        assert ResultStorage(tmp_path).load_context_result("p", "m") is None

    def test_corrupt_file_ignored(self, tmp_path):
        storage = ResultStorage(tmp_path)
        storage.path_for("p", "m").write_text("{not json", encoding="utf-8")
        assert storage.load_context_result("p", "m") is None
        storage.save_context_result("p", "m", _context_result())
        assert storage.load_context_result("p", "m") is not None
