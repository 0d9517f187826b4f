"""Install recipes and LLM-assisted install step selection.

A module's ``INSTALL.yaml`` declares install modes and the ordered steps
for each mode. The deterministic plan is "every step of the selected
mode"; an LLM may narrow that to a subset or pick another mode, but only
from ids the recipe defines, and never by dropping a step that sets up
a service or unit file.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from rich.console import Console
from rich.markup import escape

from inference_stack.core.config import PlannerSettings
from inference_stack.core.errors import PlanValidationError, SpecNotFoundError, StackError
from inference_stack.core.models import (
    Expectation,
    HardwareSummary,
    InstallSpec,
    ModeSelection,
    Precondition,
    Step,
)
from inference_stack.core.refinement import (
    SOURCE_LLM,
    SOURCE_STATIC,
    RefinementOutcome,
    parse_candidate,
    resolve_outcome,
)

logger = logging.getLogger(__name__)

INSTALL_FILE = "INSTALL.yaml"
PLANNER_VERSION = "p1.1"

CATEGORIES = (
    "dependency",
    "download",
    "binary_install",
    "source_build",
    "configure",
    "service",
    "verify",
)

_DEPENDENCY_TERMS = (
    "apt-get install", "apt install", "yum install", "dnf install", "apk add",
    "pip install", "uv pip install", "npm install", "pnpm install",
    "brew install", "pacman -s", "install deps", "dependency",
)
_DOWNLOAD_TERMS = (
    "wget ", "curl ", "git clone", "git fetch", "gh release download",
    "aria2c", "rsync", "hf download", "huggingface-cli download",
    "ollama pull", "download",
)
_SOURCE_BUILD_TERMS = (
    "cmake", "make ", "go build", "cargo build", "cargo install",
    "python -m build", "python setup.py", "meson compile", "ninja",
    "source install", "install source", "source",
)
_BINARY_TERMS = (
    "binary", ".deb", ".rpm", "dpkg -i", "rpm -i", "install_binary", "install binary",
)
_VERIFY_TERMS = ("verify", "health", "check ", "is-active")

_CUDA_ARCHS = (
    (("v100",), "70"),
    (("a100",), "80"),
    (("h100",), "90"),
    (("a10",), "86"),
    (("4090", "4080", "4070"), "89"),
    (("3090", "3080", "3070"), "86"),
)


# ── Recipe loading ───────────────────────────────────────────────────


def _expectation(raw: Any) -> Expectation:
    raw = raw if isinstance(raw, dict) else {}
    exit_code = raw.get("exit_code")
    return Expectation(
        equals=str(raw.get("equals") or ""),
        exit_code=int(exit_code) if exit_code is not None else None,
        bin=str(raw.get("bin") or "").strip(),
        unit=str(raw.get("unit") or "").strip(),
        service=str(raw.get("service") or "").strip(),
    )


def _step(raw: dict[str, Any]) -> Step:
    edit = raw.get("edit") or {}
    return Step(
        id=str(raw.get("id") or "").strip(),
        intent=str(raw.get("intent") or ""),
        tool=str(raw.get("tool") or "").strip(),
        command=str(raw.get("command") or ""),
        template=str(edit.get("template") or "").strip(),
        destination=str(edit.get("destination") or "").strip(),
        expected=_expectation(raw.get("expected")),
        idempotent=bool(raw.get("idempotent", False)),
    )


def _script(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("script") or "").strip()
    return ""


def parse_install_spec(data: Any) -> InstallSpec:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise StackError("install plan must be a mapping")

    install = data.get("install") or {}
    steps_by_mode = {
        str(mode): [_step(s) for s in (steps or []) if isinstance(s, dict)]
        for mode, steps in install.items()
    }
    preconditions = [
        Precondition(
            id=str(p.get("id") or "").strip(),
            intent=str(p.get("intent") or ""),
            tool=str(p.get("tool") or "").strip(),
            command=str(p.get("command") or ""),
            expected=_expectation(p.get("expected")),
        )
        for p in (data.get("preconditions") or [])
        if isinstance(p, dict)
    ]
    matrix = data.get("decision_matrix") or {}
    configuration = data.get("configuration") or {}

    return InstallSpec(
        install_modes=[str(m).strip() for m in (data.get("install_modes") or [])],
        default_mode=str(matrix.get("default") or "").strip(),
        preconditions=preconditions,
        steps_by_mode=steps_by_mode,
        configuration_defaults=dict(configuration.get("defaults") or {}),
        update_script=_script(data.get("update")),
        uninstall_script=_script(data.get("uninstall")),
    )


def load_install_spec(module_dir: Path, module_name: str) -> InstallSpec:
    """Load ``INSTALL.yaml`` from ``module_dir``.

    Raises:
        SpecNotFoundError: If the module has no install recipe.
        StackError: If the recipe cannot be parsed.
    """
    path = Path(module_dir) / INSTALL_FILE
    if not path.is_file():
        raise SpecNotFoundError(f"install plan not found for module {module_name!r}")
    logger.debug("Loading install plan from %s", path)
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise StackError(f"failed to parse install plan for module {module_name!r}: {e}") from e
    return parse_install_spec(data)


# ── Mode selection ───────────────────────────────────────────────────


def select_mode(spec: InstallSpec) -> str:
    if spec.default_mode:
        return spec.default_mode
    if spec.install_modes:
        return spec.install_modes[0]
    return next(iter(spec.steps_by_mode), "")


def detect_cuda_archs(gpu_name: str) -> str:
    name = gpu_name.strip().lower()
    for markers, arch in _CUDA_ARCHS:
        if any(marker in name for marker in markers):
            return arch
    return ""


def select_mode_for_system(
    module_name: str, spec: InstallSpec, hw: HardwareSummary
) -> ModeSelection:
    """Pick the install mode, forcing a CUDA source build for llama.cpp on GPU hosts."""
    selection = ModeSelection(mode=select_mode(spec))
    if module_name != "llama.cpp" or not hw.has_gpu:
        return selection

    env = {"LLAMA_CUDA": "1"}
    archs = detect_cuda_archs(hw.gpu_name)
    if archs:
        env["LLAMA_CUDA_ARCHS"] = archs
    return ModeSelection(mode="source", env=env, forced=True)


# ── Planner hints ────────────────────────────────────────────────────


def classify_step(step: Step) -> str:
    """Best-effort category for a step, used only as a planner hint."""
    if step.expected.is_load_bearing:
        return "service"
    if step.tool.lower() == "template":
        return "configure"

    combined = f"{step.id} {step.intent} {step.command}".strip().lower()
    for category, terms in (
        ("dependency", _DEPENDENCY_TERMS),
        ("download", _DOWNLOAD_TERMS),
        ("source_build", _SOURCE_BUILD_TERMS),
        ("binary_install", _BINARY_TERMS),
        ("verify", _VERIFY_TERMS),
    ):
        if any(term in combined for term in terms):
            return category
    return "configure"


def _step_hints(steps: list[Step]) -> list[dict[str, Any]]:
    hints = []
    for step in steps:
        hint: dict[str, Any] = {
            "id": step.id,
            "category": classify_step(step),
            "tool": step.tool,
        }
        if step.intent.strip():
            hint["intent"] = step.intent.strip()
        if step.command.strip():
            hint["command"] = step.command.strip()
        hints.append(hint)
    return hints


def _summarize(hints: list[dict[str, Any]]) -> dict[str, int]:
    summary = {category: 0 for category in CATEGORIES}
    for hint in hints:
        summary[hint["category"]] = summary.get(hint["category"], 0) + 1
    return summary


def available_modes(spec: InstallSpec) -> list[str]:
    modes = {m for m in spec.install_modes if m}
    modes.update(m for m, steps in spec.steps_by_mode.items() if steps)
    return sorted(modes)


def build_planner_input(
    module_name: str, spec: InstallSpec, mode: str, steps: list[Step]
) -> dict[str, Any]:
    """Hint bundle sent to the planner. Contains recipe data only, no secrets."""
    current = _step_hints(steps)
    catalog = []
    for name in sorted(spec.steps_by_mode):
        mode_steps = spec.steps_by_mode[name]
        hints = _step_hints(mode_steps)
        catalog.append({
            "mode": name,
            "steps": hints,
            "summary": _summarize(hints),
            "step_ids": [s.id for s in mode_steps if s.id],
            "step_size": len(mode_steps),
        })

    bundle: dict[str, Any] = {
        "module_name": module_name,
        "current_mode": mode,
        "available_modes": available_modes(spec),
        "current_mode_steps": current,
        "current_mode_summary": _summarize(current),
        "mode_catalog": catalog,
    }
    preconditions = [
        {k: v for k, v in (("id", p.id), ("intent", p.intent.strip()),
                           ("tool", p.tool), ("command", p.command.strip())) if v}
        for p in spec.preconditions
    ]
    if preconditions:
        bundle["preconditions"] = preconditions
    bundle["planner_version"] = PLANNER_VERSION
    return bundle


# ── Candidate ────────────────────────────────────────────────────────


class InstallCandidate(BaseModel):
    """Install plan suggested by the LLM; every field is optional."""

    mode: Optional[str] = None
    steps: Optional[list[str]] = Field(
        default=None, validation_alias=AliasChoices("steps", "selected_steps")
    )
    reason: Optional[str] = None
    risk_level: Optional[str] = None
    fallback_hint: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def step_ids(self) -> list[str]:
        seen: set[str] = set()
        ids = []
        for raw in self.steps or []:
            step_id = raw.strip()
            if step_id and step_id not in seen:
                seen.add(step_id)
                ids.append(step_id)
        return ids

    def normalized_risk(self) -> str:
        risk = (self.risk_level or "").strip().lower()
        return risk if risk in ("low", "medium", "high") else "medium"


def ensure_service_steps(selected: list[Step], all_steps: list[Step]) -> list[Step]:
    """Re-append load-bearing steps that a selection dropped, in recipe order."""
    included = {s.id for s in selected}
    result = list(selected)
    for step in all_steps:
        if step.id not in included and step.expected.is_load_bearing:
            result.append(step)
    return result


def apply_install_candidate(
    spec: InstallSpec,
    selection: ModeSelection,
    default_steps: list[Step],
    candidate: InstallCandidate,
) -> tuple[str, list[Step]]:
    """Validate a candidate against the recipe and return (mode, steps).

    Raises:
        PlanValidationError: For an unknown mode, an empty mode or unknown step ids.
    """
    mode = selection.mode
    suggested = (candidate.mode or "").strip()
    if suggested:
        if selection.forced and suggested != selection.mode:
            logger.debug(
                "Ignoring planner mode %r; hardware forced %r", suggested, selection.mode
            )
            suggested = selection.mode
        if suggested not in spec.steps_by_mode:
            raise PlanValidationError(f"LLM returned unsupported mode {suggested!r}")
        mode = suggested

    mode_steps = default_steps
    if mode != selection.mode:
        mode_steps = spec.steps_by_mode.get(mode) or []
        if not mode_steps:
            raise PlanValidationError(f"resolved mode {mode!r} has no steps")

    ids = candidate.step_ids()
    known = {s.id for s in mode_steps}
    unknown = [i for i in ids if i not in known]
    if unknown:
        raise PlanValidationError(f"LLM returned unknown step IDs: {', '.join(unknown)}")

    wanted = set(ids)
    selected = [s for s in mode_steps if s.id in wanted] or list(mode_steps)
    return mode, ensure_service_steps(selected, mode_steps)


# ── Planner ──────────────────────────────────────────────────────────


@dataclass
class InstallPlan:
    mode: str
    steps: list[Step]
    outcome: RefinementOutcome
    env: dict[str, str] = field(default_factory=dict)
    risk_level: str = ""

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps if s.id]


class InstallPlanner:
    """Chooses the install mode and steps, optionally asking an LLM."""

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
        self, module_name: str, spec: InstallSpec, selection: ModeSelection
    ) -> InstallPlan:
        """Return the steps to execute.

        Raises:
            StackError: If the selected mode has no steps.
            StrictModeError: In strict mode, when the LLM plan was unusable.
        """
        steps = spec.steps_by_mode.get(selection.mode) or []
        if not steps:
            raise StackError(
                f"install plan for module {module_name!r} has no steps for mode {selection.mode!r}"
            )

        mode, planned, risk = selection.mode, list(steps), ""
        error: Optional[StackError] = None
        if self.settings.enabled:
            try:
                candidate = self._suggest(module_name, spec, selection.mode, steps)
                mode, planned = apply_install_candidate(spec, selection, steps, candidate)
                risk = candidate.normalized_risk()
                if candidate.reason:
                    logger.debug("Install planner reason: %s", candidate.reason)
            except StackError as e:
                error = e
                mode, planned = selection.mode, list(steps)
        planned = ensure_service_steps(planned, spec.steps_by_mode.get(mode) or steps)

        if self.settings.debug:
            source = SOURCE_LLM if self.settings.enabled and error is None else SOURCE_STATIC
            self.console.print(
                f"[dim]Install planner: source={source} mode={mode} "
                f"steps={','.join(s.id for s in planned)}[/]",
                highlight=False,
            )
            if error is not None:
                self.console.print(
                    f"[dim]Install planner fallback reason: {escape(str(error))}[/]", highlight=False
                )

        outcome = resolve_outcome(
            "install planner",
            self.settings,
            error,
            applied_reason="LLM install plan applied",
            disabled_reason="install planner disabled",
        )
        return InstallPlan(
            mode=mode, steps=planned, outcome=outcome, env=dict(selection.env), risk_level=risk
        )

    def _suggest(
        self, module_name: str, spec: InstallSpec, mode: str, steps: list[Step]
    ) -> InstallCandidate:
        from inference_stack.core.llm import render_prompt

        bundle = build_planner_input(module_name, spec, mode, steps)
        prompt = render_prompt("install_planner.txt", planner_input=json.dumps(bundle))
        reply = self.client.generate(prompt)
        return parse_candidate(reply, InstallCandidate, "install planner")


def install_failure_phase(message: str) -> str:
    from inference_stack.data.failures import PHASE_INSTALL_PLANNER, PHASE_MODULE_INSTALL

    if "install planner" in message.lower():
        return PHASE_INSTALL_PLANNER
    return PHASE_MODULE_INSTALL


__all__ = [
    "InstallCandidate",
    "InstallPlan",
    "InstallPlanner",
    "apply_install_candidate",
    "build_planner_input",
    "classify_step",
    "ensure_service_steps",
    "load_install_spec",
    "select_mode",
    "select_mode_for_system",
]
