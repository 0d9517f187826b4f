"""CLI entry point for inference-stack."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import replace
from typing import Any, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

import inference_stack
from inference_stack.core.config import PlannerSettings, Settings

app = typer.Typer(
    name="inference-stack",
    help="Install, configure and launch local inference runtimes.",
    no_args_is_help=True,
)
module_app = typer.Typer(help="Install and configure runtime modules.", no_args_is_help=True)
model_app = typer.Typer(help="Run downloaded models.", no_args_is_help=True)
failure_app = typer.Typer(help="Inspect recorded failures.", no_args_is_help=True)
app.add_typer(module_app, name="module")
app.add_typer(model_app, name="model")
app.add_typer(failure_app, name="failure")

console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    if verbose:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


# ── Shared helpers ───────────────────────────────────────────────────


def _settings() -> Settings:
    return Settings.from_env()


def _stored_config(settings: Settings, key: str) -> Optional[str]:
    try:
        from inference_stack.data.store import ConfigStore

        store = ConfigStore(str(settings.db_path))
        value = store.get_config(key)
        store.close()
        return value
    except Exception:
        return None


def _resolve_model(settings: Settings, model: Optional[str]) -> str:
    """Resolve the planner model from CLI flag → env var → config → none."""
    if model:
        return model
    if settings.planner_model:
        return settings.planner_model
    return _stored_config(settings, "planner_model") or ""


def _resolve_timeout(settings: Settings) -> int:
    if os.environ.get("INFERENCE_STACK_PLANNER_TIMEOUT"):
        return settings.planner_timeout
    stored = _stored_config(settings, "planner_timeout")
    try:
        return max(1, int(stored)) if stored else settings.planner_timeout
    except ValueError:
        return settings.planner_timeout


def _planner_client(settings: Settings, model: Optional[str] = None):
    from inference_stack.core.llm import build_planner_client

    return build_planner_client(_resolve_model(settings, model), _resolve_timeout(settings))


def _planner_settings(
    base: PlannerSettings,
    debug: bool = False,
    strict: bool = False,
    enabled: Optional[bool] = None,
    dry_run: bool = False,
) -> PlannerSettings:
    return replace(
        base,
        enabled=base.enabled if enabled is None else enabled,
        debug=base.debug or debug,
        strict=base.strict or strict,
        dry_run=base.dry_run or dry_run,
    )


def _hardware(settings: Settings):
    from inference_stack.core.hardware import load_hardware_summary, resolve_hardware_path

    return load_hardware_summary(resolve_hardware_path(settings.home))


def _fail(
    settings: Settings,
    error: BaseException,
    phase: str,
    *,
    module: str = "",
    model: str = "",
    provider: str = "",
    message: str = "",
    context: Optional[dict[str, Any]] = None,
) -> NoReturn:
    """Record the failure, print it with enough context to find the log line, exit 1."""
    from inference_stack.data.failures import FailureEvent, record_best_effort

    text = str(error).strip()
    if isinstance(error, KeyboardInterrupt):
        text = "interrupted by user"
    text = text or type(error).__name__

    result = record_best_effort(
        FailureEvent(
            phase=phase,
            error=text,
            module=module,
            model=model,
            provider=provider,
            message=message,
            context=context or {},
        ),
        settings.failures_dir,
    )
    subject = f"module {module}" if module else f"model {model}"
    console.print(f"[red]Error ({escape(subject)}, phase {phase}): {escape(text)}[/]")
    if settings.failure_debug:
        advice = result.advice
        console.print(
            f"[dim]Failure handling: phase={phase} "
            f"category={result.classification.category} "
            f"retryable={str(advice.retryable).lower()} "
            f"log={result.path or 'n/a'} "
            f"suggestion={escape(advice.suggestion)}[/]",
            highlight=False,
        )
    raise typer.Exit(1)


def _installer(settings: Settings, planner_settings: PlannerSettings, client):
    from inference_stack.core.install_planner import InstallPlanner
    from inference_stack.core.installer import Installer

    planner = InstallPlanner(client, settings=planner_settings, console=console)
    return Installer(settings.modules_dir, planner, hardware=_hardware(settings), console=console)


# ── module ───────────────────────────────────────────────────────────


@module_app.command("install")
def module_install(
    name: str = typer.Argument(..., help="Module name (e.g. llama.cpp, vllm)"),
    planner_model: Optional[str] = typer.Option(
        None, "--planner-model", help="LLM used to select install steps"
    ),
    planner_debug: bool = typer.Option(
        False, "--planner-debug", help="Print install planner source and fallback reason"
    ),
    planner_strict: bool = typer.Option(
        False, "--planner-strict", help="Fail if the install planner cannot use the LLM plan"
    ),
    no_planner: bool = typer.Option(
        False, "--no-planner", help="Run every step of the selected mode"
    ),
) -> None:
    """Install a module from its INSTALL.yaml recipe."""
    from inference_stack.core.errors import StackError
    from inference_stack.core.install_planner import install_failure_phase

    settings = _settings()
    planner_settings = _planner_settings(
        settings.install_planner, planner_debug, planner_strict, enabled=not no_planner
    )
    client = _planner_client(settings, planner_model)
    try:
        result = _installer(settings, planner_settings, client).install(name)
    except (StackError, KeyboardInterrupt) as e:
        _fail(
            settings, e, install_failure_phase(str(e)),
            module=name, provider=client.provider_name, message="module install failed",
            context={"strict": planner_settings.strict, "planner_model": client.model},
        )
    console.print(
        f"[green]Module {escape(result.module)} installed "
        f"(mode {result.plan.mode}, {len(result.executed)} steps).[/]"
    )


@module_app.command("update")
def module_update(
    name: str = typer.Argument(..., help="Module name"),
) -> None:
    """Update a module, reinstalling it when it has no update script."""
    from inference_stack.core.errors import StackError
    from inference_stack.data.failures import PHASE_MODULE_INSTALL

    settings = _settings()
    client = _planner_client(settings)
    try:
        _installer(settings, settings.install_planner, client).update(name)
    except (StackError, KeyboardInterrupt) as e:
        _fail(settings, e, PHASE_MODULE_INSTALL, module=name, message="module update failed")
    console.print(f"[green]Module {escape(name)} updated.[/]")


@module_app.command("uninstall")
def module_uninstall(
    name: str = typer.Argument(..., help="Module name"),
) -> None:
    """Run a module's uninstall script."""
    from inference_stack.core.errors import StackError
    from inference_stack.core.llm import UnavailableClient
    from inference_stack.data.failures import PHASE_MODULE_INSTALL

    settings = _settings()
    try:
        _installer(settings, settings.install_planner, UnavailableClient("not used")).uninstall(name)
    except (StackError, KeyboardInterrupt) as e:
        _fail(settings, e, PHASE_MODULE_INSTALL, module=name, message="module uninstall failed")
    console.print(f"[green]Module {escape(name)} uninstalled.[/]")


@module_app.command("check")
def module_check(
    name: str = typer.Argument(..., help="Module name"),
) -> None:
    """Check a module's installed binaries, unit files and service state."""
    from inference_stack.core.errors import StackError
    from inference_stack.core.llm import UnavailableClient
    from inference_stack.data.failures import PHASE_MODULE_INSTALL

    settings = _settings()
    try:
        results = _installer(settings, settings.install_planner, UnavailableClient("not used")).check(name)
    except StackError as e:
        _fail(settings, e, PHASE_MODULE_INSTALL, module=name, message="module check failed")

    if not results:
        console.print(f"[yellow]Module {escape(name)} declares nothing to check.[/]")
        return

    table = Table(title=f"Module {name}")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    for r in results:
        table.add_row(r.step_id, "[green]ok[/]" if r.ok else "[red]missing[/]", escape(r.detail))
    console.print(table)
    if not all(r.ok for r in results):
        raise typer.Exit(1)


@module_app.command("list")
def module_list() -> None:
    """List modules that ship an install recipe."""
    from inference_stack.core.llm import UnavailableClient

    settings = _settings()
    modules = _installer(settings, settings.install_planner, UnavailableClient("not used")).list_modules()
    if not modules:
        console.print(f"[yellow]No modules found in {settings.modules_dir}.[/]")
        raise typer.Exit(0)

    table = Table(title="Modules")
    table.add_column("Module", style="cyan")
    for name in modules:
        table.add_row(name)
    console.print(table)


@module_app.command(
    "setting",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def module_setting(
    name: str = typer.Argument(..., help="Module name"),
    args: List[str] = typer.Argument(..., help="Arguments passed to scripts/setting.sh"),
) -> None:
    """Change a module setting through its setting script."""
    from inference_stack.core.errors import StackError
    from inference_stack.core.llm import UnavailableClient
    from inference_stack.data.failures import PHASE_MODULE_INSTALL

    settings = _settings()
    try:
        output = _installer(
            settings, settings.install_planner, UnavailableClient("not used")
        ).setting(name, list(args))
    except StackError as e:
        _fail(settings, e, PHASE_MODULE_INSTALL, module=name, message="module setting failed")
    if output:
        console.print(output, markup=False, highlight=False)


@module_app.command("config-plan")
def module_config_plan(
    name: str = typer.Argument(..., help="Module name (llama.cpp, vllm, ollama)"),
    model: str = typer.Option("", "--model", "-m", help="Model the plan is for"),
    planner_model: Optional[str] = typer.Option(
        None, "--planner-model", help="LLM used to refine the plan"
    ),
    apply: bool = typer.Option(False, "--apply", help="Write the plan to the config-plans directory"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Never write the plan, even with --apply"),
    planner_debug: bool = typer.Option(
        False, "--planner-debug", help="Print config planner source and fallback reason"
    ),
    planner_strict: bool = typer.Option(
        False, "--planner-strict", help="Fail if the config planner cannot use the LLM plan"
    ),
    no_planner: bool = typer.Option(False, "--no-planner", help="Use the static plan only"),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json"),
) -> None:
    """Generate (and optionally apply) a hardware-aware config plan."""
    from inference_stack.core.config_planner import ConfigPlanner, apply_plan, render_plan_text
    from inference_stack.core.errors import StackError
    from inference_stack.data.failures import PHASE_CONFIG_PLANNER

    settings = _settings()
    if output not in ("text", "json"):
        console.print("[red]Output must be 'text' or 'json'.[/]")
        raise typer.Exit(1)

    planner_settings = _planner_settings(
        settings.config_planner, planner_debug, planner_strict,
        enabled=not no_planner, dry_run=dry_run,
    )
    client = _planner_client(settings, planner_model)
    planner = ConfigPlanner(client, settings=planner_settings, console=console)
    try:
        plan, _ = planner.plan(name, model, _hardware(settings))
        target = None
        if apply and not planner_settings.dry_run:
            target = apply_plan(plan, settings.config_plans_dir)
    except (StackError, OSError, KeyboardInterrupt) as e:
        _fail(
            settings, e, PHASE_CONFIG_PLANNER,
            module=name, model=model, provider=client.provider_name,
            message="config plan failed",
            context={"apply": apply, "dry_run": dry_run, "strict": planner_settings.strict},
        )

    if output == "json":
        typer.echo(json.dumps(plan.to_dict(), indent=2))
    else:
        render_plan_text(console, plan)

    if target is not None:
        console.print(f"[green]Config plan written to {target}[/]")
    elif apply:
        console.print("[yellow]Dry run: config plan not written.[/]")


# ── model ────────────────────────────────────────────────────────────


@model_app.command("run")
def model_run(
    model: str = typer.Argument(..., help="Model id or path to a model directory"),
    file: str = typer.Option("", "--file", "-f", help="Specific GGUF file to run"),
    threads: Optional[int] = typer.Option(None, "--threads", help="CPU threads for llama.cpp"),
    ctx_size: Optional[int] = typer.Option(None, "--ctx-size", help="Context size for llama.cpp"),
    n_gpu_layers: Optional[int] = typer.Option(None, "--n-gpu-layers", help="GPU layers for llama.cpp"),
    tensor_split: Optional[str] = typer.Option(
        None, "--tensor-split", help="Tensor split for multi-GPU (comma-separated percentages)"
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Batch size for llama.cpp"),
    ubatch_size: Optional[int] = typer.Option(None, "--ubatch-size", help="Micro batch size for llama.cpp"),
    auto_batch: bool = typer.Option(
        False, "--auto-batch", help="Auto-tune --batch-size/--ubatch-size from hardware and model"
    ),
    temperature: Optional[float] = typer.Option(None, "--temperature", help="Sampling temperature"),
    top_p: Optional[float] = typer.Option(None, "--top-p", help="Top-p sampling"),
    top_k: Optional[int] = typer.Option(None, "--top-k", help="Top-k sampling"),
    min_p: Optional[float] = typer.Option(None, "--min-p", help="Min-p sampling"),
    presence_penalty: Optional[float] = typer.Option(None, "--presence-penalty", help="Presence penalty"),
    repeat_penalty: Optional[float] = typer.Option(None, "--repeat-penalty", help="Repeat penalty"),
    chat_template_kwargs: Optional[str] = typer.Option(
        None, "--chat-template-kwargs", help="JSON passed to llama-server --chat-template-kwargs"
    ),
    vllm_max_model_len: Optional[int] = typer.Option(
        None, "--vllm-max-model-len", help="vLLM max model length"
    ),
    vllm_gpu_memory_utilization: Optional[float] = typer.Option(
        None, "--vllm-gpu-memory-utilization", help="vLLM GPU memory utilization"
    ),
    vllm_trust_remote_code: Optional[bool] = typer.Option(
        None,
        "--vllm-trust-remote-code/--no-vllm-trust-remote-code",
        help="Allow custom model code (auto-enabled when the model ships it)",
    ),
    host: str = typer.Option("0.0.0.0", "--host", help="Server host"),
    port: int = typer.Option(8080, "--port", help="Server port"),
    smart_run: bool = typer.Option(
        False, "--smart-run", help="Use an LLM to refine runtime parameters"
    ),
    smart_run_debug: bool = typer.Option(
        False, "--smart-run-debug", help="Print smart-run source and fallback reason"
    ),
    smart_run_strict: bool = typer.Option(
        False, "--smart-run-strict", help="Fail if smart-run cannot obtain valid LLM advice"
    ),
    planner_model: Optional[str] = typer.Option(
        None, "--planner-model", help="LLM used by smart-run"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Print the final runtime command without launching it"
    ),
) -> None:
    """Run a downloaded model with llama.cpp (GGUF) or vLLM (safetensors)."""
    from inference_stack.core.errors import StackError
    from inference_stack.core.run_planner import RunPlanner
    from inference_stack.core.runner import ModelRunner, RunRequest
    from inference_stack.data.failures import PHASE_MODEL_RUN, PHASE_SMART_RUN

    settings = _settings()
    run_settings = _planner_settings(
        settings.smart_run, smart_run_debug, smart_run_strict,
        enabled=smart_run, dry_run=dry_run,
    )
    client = _planner_client(settings, planner_model) if smart_run else None
    context = {
        "smart_run": smart_run,
        "strict": run_settings.strict,
        "dry_run": dry_run,
        "planner_model": client.model if client else "",
    }

    try:
        if smart_run_strict and not smart_run:
            raise StackError("smart-run-strict requires --smart-run")
        request = RunRequest(
            model=model,
            file=file,
            host=host,
            port=port,
            auto_batch=auto_batch,
            dry_run=run_settings.dry_run,
            threads=threads,
            ctx_size=ctx_size,
            gpu_layers=n_gpu_layers,
            tensor_split=tensor_split,
            batch_size=batch_size,
            ubatch_size=ubatch_size,
            temperature=temperature,
            top_p=top_p,
            top_k=top_k,
            min_p=min_p,
            presence_penalty=presence_penalty,
            repeat_penalty=repeat_penalty,
            chat_template_kwargs=chat_template_kwargs,
            max_model_len=vllm_max_model_len,
            gpu_memory_utilization=vllm_gpu_memory_utilization,
            trust_remote_code=vllm_trust_remote_code,
        )
        runner = ModelRunner(
            settings.models_dir,
            _hardware(settings),
            RunPlanner(client, settings=run_settings, console=console),
            console=console,
            llama_server_bin=settings.llama_server_bin,
            vllm_bin=settings.vllm_bin,
        )
        runner.run(request)
    except (StackError, KeyboardInterrupt) as e:
        phase = PHASE_SMART_RUN if "smart-run" in str(e).lower() else PHASE_MODEL_RUN
        _fail(
            settings, e, phase,
            model=model, provider=client.provider_name if client else "",
            message="model run failed", context=context,
        )


# ── failure ──────────────────────────────────────────────────────────


@failure_app.command("list")
def failure_list(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum events to show (0 = all)"),
    phase: str = typer.Option("", "--phase", help="Only events from this phase"),
    category: str = typer.Option("", "--category", help="Only events in this category"),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json"),
) -> None:
    """List recorded failures, newest first."""
    from inference_stack.data.failures import list_events

    settings = _settings()
    if output not in ("text", "json"):
        console.print("[red]Output must be 'text' or 'json'.[/]")
        raise typer.Exit(1)
    try:
        events = list_events(settings.failures_dir, limit=limit, phase=phase, category=category)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/]")
        raise typer.Exit(1)

    if output == "json":
        typer.echo(json.dumps([e.to_dict() for e in events], indent=2))
        return
    if not events:
        console.print("[yellow]No failures recorded.[/]")
        return

    table = Table(title="Failures")
    table.add_column("ID", style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Phase")
    table.add_column("Category", style="magenta")
    table.add_column("Subject")
    table.add_column("Error")
    for event in events:
        table.add_row(
            event.id,
            event.timestamp,
            event.phase,
            event.classification.category,
            event.module or event.model,
            escape(event.error),
        )
    console.print(table)


@failure_app.command("show")
def failure_show(
    event_id: str = typer.Argument(..., help="Failure event id"),
    output: str = typer.Option("text", "--output", "-o", help="Output format: text or json"),
) -> None:
    """Show one recorded failure with its advice."""
    from inference_stack.data.failures import build_advice, find_event

    settings = _settings()
    try:
        event = find_event(settings.failures_dir, event_id)
    except (LookupError, OSError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/]")
        raise typer.Exit(1)

    advice = build_advice(event.classification)
    if output == "json":
        typer.echo(json.dumps({"event": event.to_dict(), "advice": advice.to_dict()}, indent=2))
        return

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    rows = [
        ("ID", event.id),
        ("Time", event.timestamp),
        ("Phase", event.phase),
        ("Module", event.module),
        ("Model", event.model),
        ("Provider", event.provider),
        ("Message", event.message),
        ("Error", event.error),
        ("Category", event.classification.category),
        ("Retryable", str(advice.retryable).lower()),
        ("Retry delays", ", ".join(f"{d}s" for d in advice.retry_delays)),
        ("Suggestion", advice.suggestion),
    ]
    for field_name, value in rows:
        if value:
            table.add_row(field_name, escape(value))
    console.print(table)


# ── config / version ─────────────────────────────────────────────────


@app.command()
def config(
    action: str = typer.Argument("get", help="Action: get or set"),
    key: Optional[str] = typer.Argument(None, help="Config key (planner_model, planner_timeout)"),
    value: Optional[str] = typer.Argument(None, help="Value to set"),
) -> None:
    """View or modify configuration."""
    from inference_stack.data.store import VALID_KEYS, ConfigStore

    settings = _settings()
    store = ConfigStore(str(settings.db_path))

    if action == "get":
        if key:
            val = store.get_config(key)
            if val is not None:
                console.print(f"{key} = {val}")
            else:
                console.print(f"[yellow]{key} is not set[/]")
        else:
            for k in VALID_KEYS:
                val = store.get_config(k)
                console.print(f"{k} = {val or '(not set)'}")
    elif action == "set":
        if not key or value is None:
            console.print("[red]Usage: inference-stack config set <key> <value>[/]")
            raise typer.Exit(1)
        if key not in VALID_KEYS:
            console.print(
                f"[red]Unknown config key: {key}. "
                f"Valid keys: {', '.join(VALID_KEYS)}[/]"
            )
            raise typer.Exit(1)
        if key == "planner_timeout" and not (value.isdigit() and int(value) > 0):
            console.print("[red]planner_timeout must be a positive number of seconds[/]")
            raise typer.Exit(1)
        store.set_config(key, value)
        console.print(f"[green]Set {key} = {value}[/]")
    else:
        console.print("[red]Unknown action. Use 'get' or 'set'.[/]")
        raise typer.Exit(1)

    store.close()


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"inference-stack {inference_stack.__version__}")


if __name__ == "__main__":
    app()
