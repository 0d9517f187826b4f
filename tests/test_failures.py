"""Tests for inference_stack.data.failures."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from inference_stack.data.failures import (
    CATEGORY_AUTH,
    CATEGORY_COMMAND_EXIT,
    CATEGORY_INVALID_OUTPUT,
    CATEGORY_NETWORK,
    CATEGORY_NOT_FOUND,
    CATEGORY_PROVIDER,
    CATEGORY_RATE_LIMIT,
    CATEGORY_TIMEOUT,
    CATEGORY_UNKNOWN,
    Classification,
    FailureEvent,
    FailureRecorder,
    build_advice,
    classify,
    find_event,
    list_events,
    record_best_effort,
)


def _fixed_now():
    return datetime(2026, 3, 1, 12, 30, 0, tzinfo=timezone.utc)


def _write_log(directory, name, events):
    directory.mkdir(parents=True, exist_ok=True)
    with open(directory / name, "w") as f:
        for event in events:
            f.write(json.dumps(event) + "\n")


# ---------------------------------------------------------------------------
# classify
# ---------------------------------------------------------------------------

class TestClassify:
    def test_none_is_unknown(self):
        result = classify(None)
        assert result.category == CATEGORY_UNKNOWN
        assert result.reason == "nil error"

    def test_empty_is_unknown(self):
        result = classify("   ")
        assert result.category == CATEGORY_UNKNOWN
        assert result.reason == "empty error"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_status(self, status):
        result = classify(f"anthropic request failed with status {status}: denied")
        assert result.category == CATEGORY_AUTH
        assert result.status_code == status
        assert result.retryable is False

    def test_rate_limit(self):
        result = classify("openai request failed with status 429: slow down")
        assert result.category == CATEGORY_RATE_LIMIT
        assert result.retryable is True
        assert result.status_code == 429

    def test_server_error_is_provider_unavailable(self):
        result = classify("Status 503 Service Unavailable")
        assert result.category == CATEGORY_PROVIDER
        assert result.retryable is True

    def test_status_wins_over_timeout(self):
        assert classify("status 500 after timeout").category == CATEGORY_PROVIDER

    def test_client_status_falls_through_to_later_rules(self):
        result = classify("status 404: model not found")
        assert result.category == CATEGORY_NOT_FOUND
        assert result.status_code is None

    def test_exit_status(self):
        result = classify("llama-server: exit status 2")
        assert result.category == CATEGORY_COMMAND_EXIT
        assert result.exit_code == 2
        assert result.retryable is False

    def test_exit_status_zero_is_not_command_exit(self):
        assert classify("exit status 0").category == CATEGORY_UNKNOWN

    @pytest.mark.parametrize("message", [
        "context deadline exceeded",
        "request timed out after 30s",
        "Read Timeout",
    ])
    def test_timeout(self, message):
        result = classify(message)
        assert result.category == CATEGORY_TIMEOUT
        assert result.retryable is True

    @pytest.mark.parametrize("message", [
        "dial tcp 127.0.0.1:443: connection refused",
        "lookup api.example.com: no such host",
        "Temporary failure in name resolution",
        "network is unreachable",
    ])
    def test_network(self, message):
        result = classify(message)
        assert result.category == CATEGORY_NETWORK
        assert result.retryable is True

    @pytest.mark.parametrize("message", [
        "install planner response did not include JSON",
        "invalid plan: llm returned unsupported key 'foo'",
        "invalid character 'x' looking for beginning of value",
    ])
    def test_invalid_output(self, message):
        assert classify(message).category == CATEGORY_INVALID_OUTPUT

    def test_not_found(self):
        result = classify("install plan not found for module 'ghost'")
        assert result.category == CATEGORY_NOT_FOUND
        assert result.reason == "resource not found"

    def test_no_such_file(self):
        assert classify("open foo.gguf: No such file or directory").category == CATEGORY_NOT_FOUND

    def test_unclassified(self):
        result = classify("something odd happened")
        assert result.category == CATEGORY_UNKNOWN
        assert result.reason == "unclassified"


# ---------------------------------------------------------------------------
# build_advice
# ---------------------------------------------------------------------------

class TestBuildAdvice:
    @pytest.mark.parametrize("category", [CATEGORY_RATE_LIMIT, CATEGORY_PROVIDER])
    def test_provider_backoff(self, category):
        advice = build_advice(Classification(category=category, retryable=True))
        assert advice.retryable is True
        assert advice.retry_delays == [2, 5, 10]

    @pytest.mark.parametrize("category", [CATEGORY_TIMEOUT, CATEGORY_NETWORK])
    def test_transport_backoff(self, category):
        advice = build_advice(Classification(category=category, retryable=True))
        assert advice.retry_delays == [1, 3, 5]

    def test_not_retryable_has_no_delays(self):
        advice = build_advice(Classification(category=CATEGORY_COMMAND_EXIT))
        assert advice.retryable is False
        assert advice.retry_delays == []
        assert "Underlying command failed" in advice.suggestion

    def test_unknown_suggestion(self):
        advice = build_advice(Classification(category="something-new"))
        assert advice.suggestion == "Unknown failure. Enable debug flags and inspect logs."

    def test_to_dict_omits_empty_delays(self):
        data = build_advice(Classification(category=CATEGORY_AUTH)).to_dict()
        assert "retry_delays" not in data
        assert data["retryable"] is False


# ---------------------------------------------------------------------------
# FailureRecorder
# ---------------------------------------------------------------------------

class TestFailureRecorder:
    def test_record_fills_defaults(self, failures_dir):
        recorder = FailureRecorder(failures_dir, now=_fixed_now)
        event = FailureEvent(phase="model_run", error="llama-server: exit status 1", model="m")

        path = recorder.record(event)

        assert path == failures_dir / "20260301.jsonl"
        assert event.id.startswith("fail-")
        assert event.timestamp.startswith("2026-03-01T12:30:00")
        assert event.classification.category == CATEGORY_COMMAND_EXIT

        data = json.loads(path.read_text().strip())
        assert data["phase"] == "model_run"
        assert data["model"] == "m"
        assert "module" not in data
        assert data["classification"]["exit_code"] == 1

    def test_record_appends(self, failures_dir):
        recorder = FailureRecorder(failures_dir, now=_fixed_now)
        recorder.record(FailureEvent(phase="model_run", error="first"))
        recorder.record(FailureEvent(phase="model_run", error="second"))

        lines = (failures_dir / "20260301.jsonl").read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["error"] == "second"

    def test_keeps_given_id_and_timestamp(self, failures_dir):
        recorder = FailureRecorder(failures_dir, now=_fixed_now)
        event = FailureEvent(phase="smart_run", error="x", id="fail-1", timestamp="then")
        recorder.record(event)
        assert event.id == "fail-1"
        assert event.timestamp == "then"

    def test_requires_error(self, failures_dir):
        with pytest.raises(ValueError, match="error is required"):
            FailureRecorder(failures_dir).record(FailureEvent(phase="model_run", error=" "))

    def test_requires_phase(self, failures_dir):
        with pytest.raises(ValueError, match="phase is required"):
            FailureRecorder(failures_dir).record(FailureEvent(phase="", error="boom"))


class TestRecordBestEffort:
    def test_returns_path_and_advice(self, failures_dir):
        result = record_best_effort(
            FailureEvent(phase="install_planner", error="status 429 too many requests"),
            failures_dir,
        )
        assert result.path is not None and result.path.exists()
        assert result.classification.category == CATEGORY_RATE_LIMIT
        assert result.advice.retry_delays == [2, 5, 10]

    def test_never_raises_when_unwritable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        result = record_best_effort(
            FailureEvent(phase="model_run", error="connection refused"),
            blocker / "failures",
        )

        assert result.path is None
        assert result.classification.category == CATEGORY_NETWORK
        assert result.advice.retryable is True

    def test_invalid_event_is_not_fatal(self, failures_dir):
        result = record_best_effort(FailureEvent(phase="", error="boom"), failures_dir)
        assert result.path is None
        assert result.classification.category == CATEGORY_UNKNOWN


# ---------------------------------------------------------------------------
# list_events / find_event
# ---------------------------------------------------------------------------

class TestListEvents:
    @pytest.fixture
    def populated(self, failures_dir):
        _write_log(failures_dir, "20260101.jsonl", [
            {"id": "a", "phase": "module_install", "module": "vllm",
             "error": "install plan not found for module 'vllm'"},
            {"id": "b", "phase": "smart_run", "model": "m1",
             "error": "smart-run strict mode: status 429",
             "classification": {"category": "rate_limit", "retryable": True}},
        ])
        _write_log(failures_dir, "20260102.jsonl", [
            {"id": "c", "phase": "model_run", "model": "m2", "error": "vllm: exit status 1"},
        ])
        (failures_dir / "notes.txt").write_text("ignored")
        return failures_dir

    def test_missing_dir_is_empty(self, tmp_path):
        assert list_events(tmp_path / "nope") == []

    def test_newest_first(self, populated):
        assert [e.id for e in list_events(populated)] == ["c", "b", "a"]

    def test_limit(self, populated):
        assert [e.id for e in list_events(populated, limit=2)] == ["c", "b"]

    def test_phase_filter(self, populated):
        assert [e.id for e in list_events(populated, phase="SMART_RUN")] == ["b"]

    def test_category_filter_uses_derived_classification(self, populated):
        events = list_events(populated, category="not_found")
        assert [e.id for e in events] == ["a"]
        assert events[0].classification.category == CATEGORY_NOT_FOUND

    def test_malformed_line(self, failures_dir):
        failures_dir.mkdir()
        (failures_dir / "20260101.jsonl").write_text("{not json\n")
        with pytest.raises(ValueError, match="parse"):
            list_events(failures_dir)

    def test_find_event(self, populated):
        event = find_event(populated, " b ")
        assert event.model == "m1"
        assert event.classification.retryable is True

    def test_find_event_missing(self, populated):
        with pytest.raises(LookupError):
            find_event(populated, "zzz")

    def test_find_event_requires_id(self, populated):
        with pytest.raises(ValueError):
            find_event(populated, "")
