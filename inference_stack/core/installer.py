"""Install plan executor.

Runs a module's preconditions, then its planned steps strictly in order.
Each step is checked against its declared postcondition before the next
one starts; the first failure aborts the install.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from rich.console import Console

from inference_stack.core.errors import (
    InstallStepError,
    PreconditionError,
    SpecNotFoundError,
    StackError,
)
from inference_stack.core.install_planner import (
    INSTALL_FILE,
    InstallPlan,
    InstallPlanner,
    load_install_spec,
    select_mode,
    select_mode_for_system,
)
from inference_stack.core.models import Expectation, HardwareSummary, Step

logger = logging.getLogger(__name__)

NON_INTERACTIVE_ENV = {"NO_COLOR": "1", "CLICOLOR": "0", "CLICOLOR_FORCE": "0"}

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x1b\x07]*(?:\x07|\x1b\\)|\x1b[@-_]")
_DEFAULT_VAR_RE = re.compile(r'\{\{\s*([a-zA-Z0-9_]+)\s*\|\s*default\("([^"]*)"\)\s*\}\}')
_VAR_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


def normalized_output(output: str) -> str:
    cleaned = _ANSI_RE.sub("", output or "")
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    return cleaned.strip()


def command_env(extra: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    env = dict(os.environ)
    for key, value in NON_INTERACTIVE_ENV.items():
        env.setdefault(key, value)
    if extra:
        env.update(extra)
    return env


def render_template(content: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{{var}}`` and ``{{var|default("x")}}`` placeholders.

    Unknown plain variables render as an empty string.
    """
    def with_default(match: re.Match) -> str:
        value = variables.get(match.group(1), "")
        return value if value.strip() else match.group(2)

    result = _DEFAULT_VAR_RE.sub(with_default, content)
    return _VAR_RE.sub(lambda m: variables.get(m.group(1), ""), result)


def flatten_defaults(defaults: Mapping[str, Any]) -> dict[str, str]:
    variables = {}
    for key, value in defaults.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        variables[str(key)] = str(value)
    return variables


def run_shell(
    command: str,
    cwd: Path,
    env: Optional[Mapping[str, str]] = None,
    console: Optional[Console] = None,
) -> tuple[str, int]:
    """Run ``command`` under bash in ``cwd``; return (combined output, exit code).

    With a console the output is streamed to it line by line as well.
    """
    if console is None:
        result = subprocess.run(
            ["bash", "-c", command],
            cwd=str(cwd),
            env=command_env(env),
            capture_output=True,
            text=True,
        )
        return (result.stdout or "") + (result.stderr or ""), result.returncode

    proc = subprocess.Popen(
        ["bash", "-c", command],
        cwd=str(cwd),
        env=command_env(env),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    lines = []
    try:
        for line in proc.stdout:
            lines.append(line)
            console.print(line, end="", markup=False, highlight=False)
        proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        proc.wait()
        raise
    finally:
        proc.stdout.close()
    return "".join(lines), proc.returncode


def _check_output(
    label: str, output: str, exit_code: int, expected: Expectation
) -> Optional[str]:
    """Return a failure detail for ``label``, or None when the result is acceptable."""
    if expected.exit_code is not None:
        if exit_code != expected.exit_code:
            return f"expected exit code {expected.exit_code} but got {exit_code} (exit status {exit_code})"
    elif exit_code != 0:
        detail = normalized_output(output)
        suffix = f": {detail.splitlines()[-1]}" if detail else ""
        return f"{label} exit status {exit_code}{suffix}"
    if expected.equals:
        want = normalized_output(expected.equals)
        got = normalized_output(output)
        if want != got:
            return f"expected {want!r} but got {got!r}"
    return None


@dataclass
class CheckResult:
    step_id: str
    ok: bool
    detail: str = ""


@dataclass
class InstallResult:
    module: str
    plan: Optional[InstallPlan] = None
    executed: list[str] = field(default_factory=list)


class Installer:
    """Installs, updates and removes modules described by INSTALL.yaml recipes."""

    def __init__(
        self,
        modules_root: Path,
        planner: InstallPlanner,
        hardware: Optional[HardwareSummary] = None,
        console: Optional[Console] = None,
    ):
        self.modules_root = Path(modules_root)
        self.planner = planner
        self.hardware = hardware or HardwareSummary()
        self.console = console or Console()

    # ── Discovery ────────────────────────────────────────────────────

    def list_modules(self) -> list[str]:
        if not self.modules_root.is_dir():
            return []
        return sorted(
            p.name for p in self.modules_root.iterdir()
            if p.is_dir() and (p / INSTALL_FILE).is_file()
        )

    def module_dir(self, name: str) -> Path:
        path = self.modules_root / name
        if not path.is_dir():
            raise SpecNotFoundError(f"module {name!r} not found in {self.modules_root}")
        return path

    # ── Install ──────────────────────────────────────────────────────

    def install(self, name: str) -> InstallResult:
        """Load the recipe, check preconditions, plan and run the steps.

        Raises:
            SpecNotFoundError: If the module or its recipe is missing.
            PreconditionError: If a precondition is not met; no step runs.
            InstallStepError: On the first failing step.
            StrictModeError: If strict install planning could not use the LLM plan.
        """
        module = normalize_module_name(name)
        module_dir = self.module_dir(module)
        spec = load_install_spec(module_dir, module)
        result = InstallResult(module=module)

        self.run_preconditions(spec.preconditions, module_dir)

        selection = select_mode_for_system(module, spec, self.hardware)
        plan = self.planner.plan(module, spec, selection)
        result.plan = plan
        logger.debug("Installing %s in mode %s: %s", module, plan.mode, plan.step_ids)

        variables = flatten_defaults(spec.configuration_defaults)
        for step in plan.steps:
            self.console.print(f"[bold cyan]>[/] {step.id}" + (f" [dim]({step.intent})[/]" if step.intent else ""))
            self.run_step(module, module_dir, step, variables, plan.env)
            result.executed.append(step.id)
        return result

    def run_preconditions(self, preconditions, module_dir: Path) -> None:
        for pre in preconditions:
            if not pre.tool:
                continue
            if pre.tool != "shell":
                raise PreconditionError(
                    f"precondition {pre.id} uses unsupported tool {pre.tool!r}"
                )
            output, exit_code = run_shell(pre.command, module_dir)
            detail = _check_output("precondition", output, exit_code, pre.expected)
            if detail:
                raise PreconditionError(f"precondition {pre.id} failed: {detail}")

    def run_step(
        self,
        module: str,
        module_dir: Path,
        step: Step,
        variables: Mapping[str, str],
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        if step.tool == "shell":
            output, exit_code = run_shell(step.command, module_dir, env, console=self.console)
            detail = _check_output("command", output, exit_code, step.expected)
            if detail:
                raise InstallStepError(step.id, detail)
        elif step.tool == "template":
            try:
                self._render_template_step(module_dir, step, variables)
            except (OSError, StackError) as e:
                raise InstallStepError(step.id, str(e)) from e
        else:
            raise InstallStepError(step.id, f"unsupported tool {step.tool!r}")

        detail = validate_expected(module, module_dir, step.expected)
        if detail:
            raise InstallStepError(step.id, detail)

    def _render_template_step(
        self, module_dir: Path, step: Step, variables: Mapping[str, str]
    ) -> None:
        if not step.template:
            raise StackError("template path is required")
        if not step.destination:
            raise StackError("template destination is required")
        source = _resolve(module_dir, step.template)
        dest = _resolve(module_dir, step.destination)
        rendered = render_template(source.read_text(), variables)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(rendered)

    # ── Update / uninstall / setting ─────────────────────────────────

    def update(self, name: str) -> InstallResult:
        """Run the recipe's update script, or reinstall when there is none."""
        module = normalize_module_name(name)
        module_dir = self.module_dir(module)
        spec = load_install_spec(module_dir, module)
        if not spec.update_script:
            return self.install(module)
        self._run_script(module, module_dir, spec.update_script, "update")
        return InstallResult(module=module, executed=["update"])

    def uninstall(self, name: str) -> None:
        module = normalize_module_name(name)
        module_dir = self.module_dir(module)
        spec = load_install_spec(module_dir, module)
        if not spec.uninstall_script:
            raise SpecNotFoundError(f"uninstall script not found for module {module!r}")
        self._run_script(module, module_dir, spec.uninstall_script, "uninstall")

    def setting(self, name: str, args: list[str]) -> str:
        """Run the module's ``scripts/setting.sh`` with ``args``; return its output."""
        if not args:
            raise StackError("setting arguments are required")
        module = normalize_module_name(name)
        module_dir = self.module_dir(module)
        script = module_dir / "scripts" / "setting.sh"
        if not script.is_file():
            raise SpecNotFoundError(f"setting script not found for module {module!r}")
        command = " ".join(["bash"] + [shlex.quote(part) for part in [str(script), *args]])
        output, exit_code = run_shell(command, module_dir)
        if exit_code != 0:
            detail = normalized_output(output) or "no output"
            raise StackError(f"module {module!r} setting failed: exit status {exit_code}: {detail}")
        return normalized_output(output)

    def _run_script(self, module: str, module_dir: Path, script: str, action: str) -> None:
        path = _resolve(module_dir, script)
        if not path.is_file():
            raise SpecNotFoundError(f"{action} script not found for module {module!r}")
        output, exit_code = run_shell(
            f"bash {shlex.quote(str(path))}", module_dir, console=self.console
        )
        if exit_code != 0:
            raise StackError(
                f"module {module!r} {action} failed: exit status {exit_code}"
            )

    # ── Check ────────────────────────────────────────────────────────

    def check(self, name: str) -> list[CheckResult]:
        """Validate the postconditions of the default mode without running anything."""
        module = normalize_module_name(name)
        module_dir = self.module_dir(module)
        spec = load_install_spec(module_dir, module)
        mode = select_mode_for_system(module, spec, self.hardware).mode
        steps = spec.steps_by_mode.get(mode) or spec.steps_by_mode.get(select_mode(spec)) or []

        results = []
        for step in steps:
            expected = step.expected
            if not (expected.bin or expected.unit or expected.service):
                continue
            detail = validate_expected(module, module_dir, expected)
            results.append(CheckResult(step.id, detail is None, detail or ""))
        return results


def normalize_module_name(name: str) -> str:
    module = name.strip().lower()
    if not module:
        raise StackError("module name is required")
    return module


def validate_expected(module: str, module_dir: Path, expected: Expectation) -> Optional[str]:
    """Return why ``expected`` is not met, or None when it is."""
    if expected.bin:
        if os.path.isabs(expected.bin):
            # Some installers put the binary elsewhere on PATH (e.g. /usr/bin).
            if not os.path.exists(expected.bin) and not shutil.which(os.path.basename(expected.bin)):
                return f"binary {expected.bin} not found"
        elif not shutil.which(expected.bin):
            return f"binary {expected.bin} not found in PATH"

    if expected.unit:
        unit = _resolve(module_dir, expected.unit)
        if not unit.exists():
            return f"unit file {unit} not found"

    if expected.service:
        try:
            result = subprocess.run(
                ["systemctl", "is-active", module],
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            return "systemctl not found"
        state = (result.stdout or "").strip()
        if state != expected.service.strip():
            return f"expected service state {expected.service.strip()!r} but got {state!r}"
    return None


def _resolve(module_dir: Path, path: str) -> Path:
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return Path(module_dir) / candidate
