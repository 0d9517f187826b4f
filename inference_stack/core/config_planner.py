"""Hardware-aware config plans for installed modules.

A static plan is derived from the hardware summary; an LLM may then
adjust the values of keys the static plan already carries. Plans are
only written to disk on an explicit apply.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from rich.console import Console
from rich.table import Table

from inference_stack.core.baselines import gpu_layers_for_vram
from inference_stack.core.config import PlannerSettings
from inference_stack.core.errors import PlanValidationError, StackError
from inference_stack.core.hardware import parse_vram_gb
from inference_stack.core.models import Change, ConfigPlan, HardwareSummary, PlannerMeta
from inference_stack.core.refinement import (
    RefinementOutcome,
    SOURCE_LLM,
    clamp,
    enforce_strict,
    evaluate_outcome,
    parse_candidate,
    report_outcome,
)

logger = logging.getLogger(__name__)

LLM_PLANNER_MODE = "llm+static"
LLM_PLANNER_VERSION = "p3-b"

_ALLOWED_KEYS = {
    "llama.cpp": ("threads", "ctx_size", "n_gpu_layers"),
    "vllm": ("max_model_len", "gpu_memory_utilization"),
    "ollama": ("num_parallel", "keep_alive"),
}

_KEY_LIMITS = {
    "threads": (1, 256),
    "ctx_size": (512, 262144),
    "n_gpu_layers": (0, 999),
    "max_model_len": (256, 131072),
    "gpu_memory_utilization": (0.30, 0.98),
    "num_parallel": (1, 64),
}


def allowed_keys(module: str) -> tuple[str, ...]:
    return _ALLOWED_KEYS.get(module.strip().lower(), ())


def _vllm_max_model_len(vram: int) -> int:
    for floor, length in ((80, 32768), (48, 24576), (24, 16384), (16, 8192), (12, 6144)):
        if vram >= floor:
            return length
    return 4096 if vram > 0 else 2048


def _vllm_memory_utilization(vram: int) -> float:
    for floor, util in ((80, 0.92), (48, 0.90), (24, 0.88), (16, 0.86)):
        if vram >= floor:
            return util
    return 0.82 if vram > 0 else 0.0


def build_static_plan(
    module: str, model: str, hw: HardwareSummary, now: Optional[datetime] = None
) -> ConfigPlan:
    """Build the deterministic plan for ``module``.

    Raises:
        PlanValidationError: If the module is unnamed or has no static planner.
    """
    name = module.strip().lower()
    if not name:
        raise PlanValidationError("module name is required")

    stamp = (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    plan = ConfigPlan(
        module=name,
        model=model.strip(),
        generated_at=stamp,
        context={
            "cpu_cores": hw.cpu_cores,
            "memory_kb": hw.memory_kb,
            "gpu_name": hw.gpu_name.strip(),
            "gpu_count": hw.gpu_count,
        },
    )

    vram = parse_vram_gb(hw.gpu_name)
    if name == "llama.cpp":
        scope = "model.run.llama.cpp"
        ctx_size = 2048
        if hw.memory_kb >= 64 * 1024 * 1024:
            ctx_size = 8192
        elif hw.memory_kb >= 32 * 1024 * 1024:
            ctx_size = 4096
        plan.changes = [
            Change(scope, "threads", hw.cpu_cores if hw.cpu_cores > 0 else 4, "match available CPU cores"),
            Change(scope, "ctx_size", ctx_size, "fit system memory tier"),
            Change(scope, "n_gpu_layers", gpu_layers_for_vram(vram), "fit detected GPU memory"),
        ]
    elif name == "vllm":
        scope = "model.run.vllm"
        plan.changes = [
            Change(scope, "max_model_len", _vllm_max_model_len(vram), "fit detected GPU/host memory"),
            Change(scope, "gpu_memory_utilization", _vllm_memory_utilization(vram), "keep memory pressure stable"),
        ]
    elif name == "ollama":
        scope = "module.runtime.ollama"
        plan.changes = [
            Change(scope, "num_parallel", 2 if hw.cpu_cores >= 16 else 1, "avoid oversubscription on host CPU"),
            Change(scope, "keep_alive", "10m", "reduce model reload overhead"),
        ]
    else:
        raise PlanValidationError(f"no static config planner available for module {name!r}")
    return plan


# ── LLM candidate ────────────────────────────────────────────────────


class ChangeCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    scope: Optional[str] = None
    key: Optional[str] = None
    value: Any = None
    reason: Optional[str] = None


class ConfigCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: Optional[str] = None
    changes: Optional[list[ChangeCandidate]] = None


def _coerce(key: str, baseline: Any, raw: Any) -> Any:
    if isinstance(baseline, bool):
        if isinstance(raw, bool):
            return raw
        raise PlanValidationError(f"invalid plan: value for {key} is not a boolean")
    if isinstance(baseline, int):
        if isinstance(raw, float) and not math.isfinite(raw):
            raise PlanValidationError(f"invalid plan: value for {key} is not a finite number")
        try:
            value = int(raw) if isinstance(raw, (int, float)) else int(str(raw).strip())
        except (TypeError, ValueError, OverflowError) as e:
            raise PlanValidationError(f"invalid plan: value for {key} is not an integer") from e
    elif isinstance(baseline, float):
        try:
            value = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
        except (TypeError, ValueError, OverflowError) as e:
            raise PlanValidationError(f"invalid plan: value for {key} is not a number") from e
        if not math.isfinite(value):
            raise PlanValidationError(f"invalid plan: value for {key} is not a finite number")
    elif isinstance(baseline, str):
        return str(raw)
    else:
        return raw

    if key in _KEY_LIMITS:
        lo, hi = _KEY_LIMITS[key]
        value = clamp(value, lo, hi)
    return value


def merge_changes(base: ConfigPlan, changes: Optional[list[ChangeCandidate]]) -> ConfigPlan:
    """Apply LLM changes on top of a copy of ``base``.

    Every key must be allowed for the module and already present in the
    baseline; the first offending key rejects the whole candidate.
    """
    merged = copy.deepcopy(base)
    if not changes:
        return merged

    allowed = set(allowed_keys(base.module))
    index = {change.key: pos for pos, change in enumerate(merged.changes)}
    for change in changes:
        key = (change.key or "").strip()
        if not key or key not in allowed:
            raise PlanValidationError(f"invalid plan: llm returned unsupported key {key!r}")
        if key not in index:
            raise PlanValidationError(f"invalid plan: llm returned key {key!r} not found in baseline plan")
        target = merged.changes[index[key]]
        target.value = _coerce(key, target.value, change.value)
        if change.reason and change.reason.strip():
            target.reason = change.reason.strip()
    return merged


def build_planner_input(plan: ConfigPlan, hw: HardwareSummary) -> dict[str, Any]:
    return {
        "module": plan.module,
        "model": plan.model,
        "hardware": hw.to_dict(),
        "baseline": plan.to_dict(),
        "allowed": list(allowed_keys(plan.module)),
    }


class ConfigPlanner:
    """Produces config plans, refined by an LLM when one is available."""

    def __init__(
        self,
        client: Any,
        settings: Optional[PlannerSettings] = None,
        console: Optional[Console] = None,
    ):
        self.client = client
        self.settings = settings or PlannerSettings()
        self.console = console or Console()

    def plan(
        self, module: str, model: str, hw: HardwareSummary
    ) -> tuple[ConfigPlan, RefinementOutcome]:
        base = build_static_plan(module, model, hw)
        plan, error, reason = base, None, ""
        if self.settings.enabled:
            try:
                plan, reason = self._refine(base, hw)
            except StackError as e:
                error, plan = e, base

        outcome = evaluate_outcome(
            "config planner",
            self.settings,
            error,
            applied_reason=reason or "LLM config plan applied",
            disabled_reason="config planner disabled",
        )
        if self.settings.debug:
            report_outcome(self.console, "Config planner", outcome)
        enforce_strict("config planner", self.settings, outcome)
        return plan, outcome

    def _refine(self, base: ConfigPlan, hw: HardwareSummary) -> tuple[ConfigPlan, str]:
        from inference_stack.core.llm import render_prompt

        prompt = render_prompt(
            "config_planner.txt",
            planner_input=json.dumps(build_planner_input(base, hw)),
        )
        candidate = parse_candidate(self.client.generate(prompt), ConfigCandidate, "config planner")
        merged = merge_changes(base, candidate.changes)
        merged.source = SOURCE_LLM
        merged.planner = PlannerMeta(
            name=base.planner.name, version=LLM_PLANNER_VERSION, mode=LLM_PLANNER_MODE
        )
        reason = (candidate.reason or "").strip()
        if reason:
            merged.reason = reason
        return merged, reason


def plan_filename(module: str) -> str:
    return module.replace("/", "_") + ".json"


def apply_plan(plan: ConfigPlan, plans_dir: Path) -> Path:
    """Write ``plan`` as pretty JSON to ``<plans_dir>/<module>.json``."""
    plans_dir = Path(plans_dir)
    plans_dir.mkdir(parents=True, exist_ok=True)
    target = plans_dir / plan_filename(plan.module)
    payload = json.dumps(plan.to_dict(), indent=2) + "\n"
    fd = os.open(str(target), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(payload)
    logger.debug("Wrote config plan for %s to %s", plan.module, target)
    return target


def render_plan_text(console: Console, plan: ConfigPlan) -> None:
    console.print(f"[bold]Config plan for {plan.module}[/]")
    console.print(
        f"  Planner: {plan.planner.name} {plan.planner.version} ({plan.planner.mode})",
        highlight=False,
    )
    if plan.model:
        console.print(f"  Model: {plan.model}", highlight=False)
    console.print(f"  Source: {plan.source}  Reason: {plan.reason}", highlight=False)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Scope", style="dim")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_column("Reason", style="dim")
    for change in plan.changes:
        table.add_row(change.scope, change.key, str(change.value), change.reason)
    console.print(table)

    for warning in plan.warnings:
        console.print(f"[yellow]Warning:[/] {warning}")
