"""Failure classification, advice and the per-day JSONL failure log.

Events are appended to ``~/.inference-stack/failures/YYYYMMDD.jsonl``;
the file is opened fresh for every write so separate processes can
record concurrently.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

PHASE_INSTALL_PLANNER = "install_planner"
PHASE_CONFIG_PLANNER = "config_planner"
PHASE_SMART_RUN = "smart_run"
PHASE_MODULE_INSTALL = "module_install"
PHASE_MODEL_RUN = "model_run"

PHASES = (
    PHASE_INSTALL_PLANNER,
    PHASE_CONFIG_PLANNER,
    PHASE_SMART_RUN,
    PHASE_MODULE_INSTALL,
    PHASE_MODEL_RUN,
)

CATEGORY_AUTH = "auth"
CATEGORY_RATE_LIMIT = "rate_limit"
CATEGORY_PROVIDER = "provider_unavailable"
CATEGORY_TIMEOUT = "timeout"
CATEGORY_NETWORK = "network"
CATEGORY_COMMAND_EXIT = "command_exit"
CATEGORY_INVALID_OUTPUT = "invalid_output"
CATEGORY_NOT_FOUND = "not_found"
CATEGORY_UNKNOWN = "unknown"

_STATUS_RE = re.compile(r"status\s+(\d{3})")
_EXIT_RE = re.compile(r"exit status\s+(\d+)")

_TIMEOUT_TERMS = ("deadline exceeded", "timeout", "timed out")
_NETWORK_TERMS = (
    "connection refused",
    "no such host",
    "temporary failure in name resolution",
    "tls handshake timeout",
    "network is unreachable",
)
_INVALID_OUTPUT_TERMS = (
    "did not include json",
    "invalid character",
    "cannot unmarshal",
    "unsupported key",
    "invalid plan",
)
_NOT_FOUND_TERMS = ("not found", "no such file")


@dataclass
class Classification:
    category: str
    retryable: bool = False
    status_code: Optional[int] = None
    exit_code: Optional[int] = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"category": self.category, "retryable": self.retryable}
        if self.status_code:
            data["status_code"] = self.status_code
        if self.exit_code:
            data["exit_code"] = self.exit_code
        if self.reason:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Classification":
        return cls(
            category=str(data.get("category") or ""),
            retryable=bool(data.get("retryable", False)),
            status_code=data.get("status_code"),
            exit_code=data.get("exit_code"),
            reason=str(data.get("reason") or ""),
        )


@dataclass
class Advice:
    retryable: bool
    retry_delays: list[int] = field(default_factory=list)
    suggestion: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"retryable": self.retryable}
        if self.retry_delays:
            data["retry_delays"] = list(self.retry_delays)
        data["suggestion"] = self.suggestion
        return data


@dataclass
class FailureEvent:
    phase: str
    error: str
    id: str = ""
    timestamp: str = ""
    module: str = ""
    model: str = ""
    provider: str = ""
    message: str = ""
    classification: Optional[Classification] = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp,
            "phase": self.phase,
        }
        for key in ("module", "model", "provider", "message"):
            value = getattr(self, key)
            if value:
                data[key] = value
        data["error"] = self.error
        classification = self.classification or classify(self.error)
        data["classification"] = classification.to_dict()
        if self.context:
            data["context"] = dict(self.context)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailureEvent":
        raw = data.get("classification") or {}
        classification = Classification.from_dict(raw) if raw.get("category") else None
        return cls(
            id=str(data.get("id") or ""),
            timestamp=str(data.get("timestamp") or ""),
            phase=str(data.get("phase") or ""),
            module=str(data.get("module") or ""),
            model=str(data.get("model") or ""),
            provider=str(data.get("provider") or ""),
            message=str(data.get("message") or ""),
            error=str(data.get("error") or ""),
            classification=classification,
            context=dict(data.get("context") or {}),
        )


@dataclass
class RecordResult:
    """What a best-effort recording produced; ``path`` is None if nothing was written."""

    classification: Classification
    advice: Advice
    path: Optional[Path] = None


# ── Classification ───────────────────────────────────────────────────


def classify(message: Optional[str]) -> Classification:
    """Map an error message to a failure category.

    Rules are checked in priority order: HTTP-like status, process exit
    status, timeout, network, malformed planner output, not found.
    """
    if message is None:
        return Classification(category=CATEGORY_UNKNOWN, reason="nil error")
    text = str(message).strip().lower()
    if not text:
        return Classification(category=CATEGORY_UNKNOWN, reason="empty error")

    match = _STATUS_RE.search(text)
    if match:
        status = int(match.group(1))
        if status in (401, 403):
            return Classification(
                category=CATEGORY_AUTH,
                status_code=status,
                reason="provider authentication/authorization failed",
            )
        if status == 429:
            return Classification(
                category=CATEGORY_RATE_LIMIT,
                retryable=True,
                status_code=status,
                reason="provider rate limit",
            )
        if status >= 500:
            return Classification(
                category=CATEGORY_PROVIDER,
                retryable=True,
                status_code=status,
                reason="provider service unavailable",
            )

    match = _EXIT_RE.search(text)
    if match and int(match.group(1)) > 0:
        return Classification(
            category=CATEGORY_COMMAND_EXIT,
            exit_code=int(match.group(1)),
            reason="command returned non-zero exit code",
        )

    if _contains_any(text, _TIMEOUT_TERMS):
        return Classification(category=CATEGORY_TIMEOUT, retryable=True, reason="request timeout")
    if _contains_any(text, _NETWORK_TERMS):
        return Classification(category=CATEGORY_NETWORK, retryable=True, reason="network failure")
    if _contains_any(text, _INVALID_OUTPUT_TERMS):
        return Classification(category=CATEGORY_INVALID_OUTPUT, reason="invalid planner output")
    if _contains_any(text, _NOT_FOUND_TERMS):
        return Classification(category=CATEGORY_NOT_FOUND, reason="resource not found")
    return Classification(category=CATEGORY_UNKNOWN, reason="unclassified")


def _contains_any(text: str, terms: tuple[str, ...]) -> bool:
    return any(term in text for term in terms)


_SUGGESTIONS = {
    CATEGORY_AUTH: "Check provider API key, base URL, and model permission.",
    CATEGORY_RATE_LIMIT: "Rate limited by provider. Retry later or reduce request frequency.",
    CATEGORY_PROVIDER: "Provider unavailable. Retry with backoff or switch provider.",
    CATEGORY_TIMEOUT: "Request timed out. Retry and consider increasing timeout.",
    CATEGORY_NETWORK: "Network error. Check connectivity and DNS, then retry.",
    CATEGORY_COMMAND_EXIT: "Underlying command failed. Check module/runtime logs and dependencies.",
    CATEGORY_INVALID_OUTPUT: "Planner output invalid. Enable planner debug and verify prompt/schema.",
    CATEGORY_NOT_FOUND: "Target not found. Verify module/model id and local install state.",
}
_DEFAULT_SUGGESTION = "Unknown failure. Enable debug flags and inspect logs."

_RETRY_DELAYS = {
    CATEGORY_RATE_LIMIT: [2, 5, 10],
    CATEGORY_PROVIDER: [2, 5, 10],
    CATEGORY_TIMEOUT: [1, 3, 5],
    CATEGORY_NETWORK: [1, 3, 5],
}


def build_advice(classification: Classification) -> Advice:
    delays = list(_RETRY_DELAYS.get(classification.category, []))
    return Advice(
        retryable=classification.retryable or bool(delays),
        retry_delays=delays,
        suggestion=_SUGGESTIONS.get(classification.category, _DEFAULT_SUGGESTION),
    )


# ── Recording ────────────────────────────────────────────────────────


def default_failures_dir() -> Path:
    return Path.home() / ".inference-stack" / "failures"


class FailureRecorder:
    """Appends failure events to the per-day log."""

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.base_dir = Path(base_dir) if base_dir else default_failures_dir()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def record(self, event: FailureEvent) -> Path:
        if not event.error.strip():
            raise ValueError("event error is required")
        if not event.phase.strip():
            raise ValueError("event phase is required")

        now = self._now()
        if not event.id.strip():
            event.id = f"fail-{time.time_ns()}"
        if not event.timestamp.strip():
            event.timestamp = now.isoformat()
        if event.classification is None or not event.classification.category:
            event.classification = classify(event.error)

        self.base_dir.mkdir(parents=True, exist_ok=True)
        target = self.base_dir / f"{now.strftime('%Y%m%d')}.jsonl"
        line = json.dumps(event.to_dict(), default=str) + "\n"
        fd = os.open(target, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(line)
        return target


def record_best_effort(
    event: FailureEvent,
    base_dir: Optional[Path] = None,
) -> RecordResult:
    """Record ``event`` and report what happened; never raises."""
    if event.classification is None or not event.classification.category:
        event.classification = classify(event.error)
    classification = event.classification
    advice = build_advice(classification)
    try:
        path = FailureRecorder(base_dir).record(event)
    except Exception:
        logger.debug("Failed to record failure event", exc_info=True)
        return RecordResult(classification, advice, None)
    return RecordResult(classification, advice, path)


# ── Reading ──────────────────────────────────────────────────────────


def _read_events(path: Path) -> list[FailureEvent]:
    events = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"parse {path}: {e}") from e
            event = FailureEvent.from_dict(data)
            if event.classification is None:
                event.classification = classify(event.error)
            events.append(event)
    return events


def list_events(
    base_dir: Optional[Path] = None,
    limit: int = 0,
    phase: str = "",
    category: str = "",
) -> list[FailureEvent]:
    """Return recorded events, newest first, optionally filtered."""
    directory = Path(base_dir) if base_dir else default_failures_dir()
    if not directory.is_dir():
        return []

    files = sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == ".jsonl")
    phase_filter = phase.strip().lower()
    category_filter = category.strip().lower()

    results: list[FailureEvent] = []
    for path in reversed(files):
        for event in reversed(_read_events(path)):
            if phase_filter and event.phase.strip().lower() != phase_filter:
                continue
            if category_filter and event.classification.category.lower() != category_filter:
                continue
            results.append(event)
            if limit > 0 and len(results) >= limit:
                return results
    return results


def find_event(base_dir: Optional[Path], event_id: str) -> FailureEvent:
    wanted = event_id.strip()
    if not wanted:
        raise ValueError("event id is required")
    for event in list_events(base_dir):
        if event.id.strip() == wanted:
            return event
    raise LookupError(f"failure event {wanted!r} not found")
