"""Shared plumbing for LLM refinement of deterministic plans.

A provider reply goes through two phases: the first balanced JSON object
is cut out of the free text, then it is validated into a pydantic
candidate model whose fields are all optional. Anything that fails
either phase is rejected as a whole.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from rich.console import Console
from rich.markup import escape

from inference_stack.core.config import PlannerSettings
from inference_stack.core.errors import InvalidPlanError, PlanValidationError, StrictModeError

logger = logging.getLogger(__name__)

SOURCE_STATIC = "static"
SOURCE_LLM = "llm"

CandidateT = TypeVar("CandidateT", bound=BaseModel)


def clamp(value, lo, hi):
    """Force ``value`` into [lo, hi]; NaN has no place in the range and is rejected."""
    if isinstance(value, float) and math.isnan(value):
        raise PlanValidationError("invalid plan: value is not a finite number")
    if value < lo:
        return lo
    if value > hi:
        return hi
    return value


def extract_first_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` in ``text``, or "" if there is none.

    Braces inside double-quoted strings (with backslash escapes) do not
    count towards nesting depth.
    """
    start = -1
    depth = 0
    in_string = False
    escaped = False

    for i, ch in enumerate(text or ""):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
            continue
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return ""


def _reject_constant(name: str):
    # json.loads otherwise turns NaN and Infinity into floats.
    raise ValueError(f"non-finite number {name}")


def parse_candidate(text: str, model_cls: Type[CandidateT], label: str) -> CandidateT:
    """Extract and validate a candidate from a provider reply.

    Raises:
        InvalidPlanError: If there is no JSON object or it does not fit the schema.
    """
    payload = extract_first_json_object(text)
    if not payload:
        raise InvalidPlanError(f"{label} response did not include JSON")
    try:
        data = json.loads(payload, parse_constant=_reject_constant)
    except ValueError as e:
        raise InvalidPlanError(f"invalid plan: {label} response is not valid JSON ({e})") from e
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise InvalidPlanError(
            f"invalid plan: {label} response did not match schema "
            f"({e.error_count()} errors)"
        ) from e


@dataclass(frozen=True)
class RefinementOutcome:
    """Which plan was used and why."""

    source: str
    reason: str
    error: Optional[Exception] = None

    @property
    def refined(self) -> bool:
        return self.source == SOURCE_LLM


def evaluate_outcome(
    site: str,
    settings: PlannerSettings,
    error: Optional[Exception],
    applied_reason: str = "LLM advice applied",
    disabled_reason: str = "",
) -> RefinementOutcome:
    """Name the plan source and reason for a refinement attempt."""
    if not settings.enabled:
        return RefinementOutcome(SOURCE_STATIC, disabled_reason or f"{site} disabled")
    if error is None:
        return RefinementOutcome(SOURCE_LLM, applied_reason)
    logger.debug("%s fell back to baseline: %s", site, error)
    return RefinementOutcome(SOURCE_STATIC, str(error), error)


def enforce_strict(site: str, settings: PlannerSettings, outcome: RefinementOutcome) -> None:
    """Raise StrictModeError if an enabled strict planner had to use the baseline.

    ``site`` names the call site in the message, e.g. "smart-run".
    """
    if settings.enabled and settings.strict and not outcome.refined:
        raise StrictModeError(f"{site} strict mode: {outcome.reason}") from outcome.error


def resolve_outcome(
    site: str,
    settings: PlannerSettings,
    error: Optional[Exception],
    applied_reason: str = "LLM advice applied",
    disabled_reason: str = "",
) -> RefinementOutcome:
    outcome = evaluate_outcome(site, settings, error, applied_reason, disabled_reason)
    enforce_strict(site, settings, outcome)
    return outcome


def report_outcome(
    console: Console, label: str, outcome: RefinementOutcome, detail: str = ""
) -> None:
    """Debug line naming the plan source and the reason."""
    reason = outcome.reason.strip() or "n/a"
    line = f"{label}: source={outcome.source}"
    if detail:
        line += f" {detail}"
    console.print(f"[dim]{escape(line)} reason={escape(reason)}[/]", highlight=False)
