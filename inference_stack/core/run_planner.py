"""Smart-run: LLM tuning of launch parameters for a single model run.

The tuned values only live for the launch they were computed for. Fields
the operator set on the command line are never overridden.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import AbstractSet, Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console

from inference_stack.core.config import PlannerSettings
from inference_stack.core.errors import InvalidPlanError, StackError
from inference_stack.core.models import HardwareSummary, LlamaRunParams, VLLMRunParams
from inference_stack.core.refinement import (
    RefinementOutcome,
    clamp,
    enforce_strict,
    evaluate_outcome,
    parse_candidate,
    report_outcome,
)

logger = logging.getLogger(__name__)

VLLM_DTYPES = ("float16", "bfloat16", "float32")

_AUTO_MAP_FILES = (
    "config.json",
    "tokenizer_config.json",
    "preprocessor_config.json",
    "processor_config.json",
)


class LlamaAdvice(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, allow_inf_nan=False)

    threads: Optional[int] = None
    ctx_size: Optional[int] = None
    gpu_layers: Optional[int] = Field(default=None, alias="n_gpu_layers")
    tensor_split: Optional[str] = None
    batch_size: Optional[int] = None
    ubatch_size: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    min_p: Optional[float] = None
    presence_penalty: Optional[float] = None
    repeat_penalty: Optional[float] = None
    chat_template_kwargs: Optional[str] = None


class VLLMAdvice(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    max_model_len: Optional[int] = None
    gpu_memory_utilization: Optional[float] = None
    dtype: Optional[str] = None
    tensor_parallel_size: Optional[int] = None
    enforce_eager: Optional[bool] = None
    optimization_level: Optional[int] = None
    max_num_seqs: Optional[int] = None
    disable_custom_all_reduce: Optional[bool] = None
    trust_remote_code: Optional[bool] = None


class SmartRunEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reason: Optional[str] = None
    llama: Optional[LlamaAdvice] = None
    vllm: Optional[VLLMAdvice] = None


# name: (lo, hi)
_LLAMA_LIMITS = {
    "threads": (1, 256),
    "ctx_size": (512, 262144),
    "gpu_layers": (0, 999),
    "batch_size": (16, 4096),
    "ubatch_size": (16, 2048),
}
_SAMPLING_LIMITS = {
    "temperature": (0.0, 2.0),
    "top_p": (0.0, 1.0),
    "top_k": (0, 1000),
    "min_p": (0.0, 1.0),
    "presence_penalty": (0.0, 2.0),
    "repeat_penalty": (0.0, 2.0),
}
_VLLM_LIMITS = {
    "max_model_len": (256, 131072),
    "gpu_memory_utilization": (0.30, 0.98),
    "tensor_parallel_size": (1, 16),
    "optimization_level": (0, 3),
    "max_num_seqs": (1, 256),
}


def apply_llama_advice(
    params: LlamaRunParams, advice: Optional[LlamaAdvice], explicit: AbstractSet[str] = frozenset()
) -> LlamaRunParams:
    """Return a copy of ``params`` with the clamped advice applied.

    ``explicit`` names the fields the operator set; those keep their value.
    """
    if advice is None:
        return replace(params, sampling=replace(params.sampling))

    updates: dict[str, Any] = {}
    for name, (lo, hi) in _LLAMA_LIMITS.items():
        value = getattr(advice, name)
        if value is not None and name not in explicit:
            updates[name] = clamp(value, lo, hi)
    if advice.tensor_split is not None and "tensor_split" not in explicit:
        updates["tensor_split"] = advice.tensor_split.strip()
    if advice.chat_template_kwargs is not None and "chat_template_kwargs" not in explicit:
        updates["chat_template_kwargs"] = advice.chat_template_kwargs.strip()

    sampling_updates = {}
    for name, (lo, hi) in _SAMPLING_LIMITS.items():
        value = getattr(advice, name)
        if value is not None and name not in explicit:
            sampling_updates[name] = clamp(value, lo, hi)

    tuned = replace(params, sampling=replace(params.sampling, **sampling_updates), **updates)
    if tuned.ubatch_size > 0 and tuned.batch_size > 0 and tuned.ubatch_size > tuned.batch_size:
        tuned.ubatch_size = tuned.batch_size
    return tuned


def apply_vllm_advice(
    params: VLLMRunParams,
    trust_remote_code: bool,
    advice: Optional[VLLMAdvice],
    explicit: AbstractSet[str] = frozenset(),
) -> tuple[VLLMRunParams, bool]:
    """Return (params, trust_remote_code) with the clamped advice applied.

    Unrecognised dtypes are ignored rather than rejected.
    """
    tuned = replace(params, env=list(params.env))
    if advice is None:
        return tuned, trust_remote_code

    for name, (lo, hi) in _VLLM_LIMITS.items():
        value = getattr(advice, name)
        if value is not None and name not in explicit:
            setattr(tuned, name, clamp(value, lo, hi))
    if advice.dtype is not None and "dtype" not in explicit:
        dtype = advice.dtype.strip().lower()
        if dtype in VLLM_DTYPES:
            tuned.dtype = dtype
    for name in ("enforce_eager", "disable_custom_all_reduce"):
        value = getattr(advice, name)
        if value is not None and name not in explicit:
            setattr(tuned, name, value)
    if advice.trust_remote_code is not None and "trust_remote_code" not in explicit:
        trust_remote_code = advice.trust_remote_code
    return tuned, trust_remote_code


def llama_baseline_view(params: LlamaRunParams) -> dict[str, Any]:
    s = params.sampling
    return {
        "threads": params.threads,
        "ctx_size": params.ctx_size,
        "n_gpu_layers": params.gpu_layers,
        "tensor_split": params.tensor_split,
        "batch_size": params.batch_size,
        "ubatch_size": params.ubatch_size,
        "temperature": s.temperature,
        "top_p": s.top_p,
        "top_k": s.top_k,
        "min_p": s.min_p,
        "presence_penalty": s.presence_penalty,
        "repeat_penalty": s.repeat_penalty,
        "chat_template_kwargs": params.chat_template_kwargs,
    }


def vllm_baseline_view(params: VLLMRunParams, trust_remote_code: bool) -> dict[str, Any]:
    return {
        "max_model_len": params.max_model_len,
        "gpu_memory_utilization": params.gpu_memory_utilization,
        "dtype": params.dtype,
        "tensor_parallel_size": params.tensor_parallel_size,
        "enforce_eager": params.enforce_eager,
        "optimization_level": params.optimization_level,
        "max_num_seqs": params.max_num_seqs,
        "disable_custom_all_reduce": params.disable_custom_all_reduce,
        "trust_remote_code": trust_remote_code,
    }


class RunPlanner:
    """Asks the planner LLM to tune a runtime's launch parameters."""

    def __init__(
        self,
        client: Any,
        settings: Optional[PlannerSettings] = None,
        console: Optional[Console] = None,
    ):
        self.client = client
        self.settings = settings or PlannerSettings()
        self.console = console or Console()

    def tune_llama(
        self,
        model_id: str,
        model_path: str,
        hw: HardwareSummary,
        params: LlamaRunParams,
        explicit: AbstractSet[str] = frozenset(),
    ) -> tuple[LlamaRunParams, RefinementOutcome]:
        tuned, error = params, None
        if self.settings.enabled:
            try:
                envelope = self._ask(
                    "smart_run_llama.txt",
                    {
                        "runtime": "llama.cpp",
                        "model": {"id": model_id, "path": model_path},
                        "hardware": hw.to_dict(),
                        "baseline": llama_baseline_view(params),
                    },
                )
                if envelope.llama is None:
                    raise InvalidPlanError("smart-run response did not include llama advice")
                tuned = apply_llama_advice(params, envelope.llama, explicit)
            except StackError as e:
                tuned, error = params, e
        outcome = self._outcome("llama.cpp", error)
        return tuned, outcome

    def tune_vllm(
        self,
        model_id: str,
        model_ref: str,
        hw: HardwareSummary,
        params: VLLMRunParams,
        trust_remote_code: bool,
        explicit: AbstractSet[str] = frozenset(),
    ) -> tuple[VLLMRunParams, bool, RefinementOutcome]:
        tuned, trust, error = params, trust_remote_code, None
        if self.settings.enabled:
            try:
                envelope = self._ask(
                    "smart_run_vllm.txt",
                    {
                        "runtime": "vllm",
                        "model": {"id": model_id, "ref": model_ref},
                        "hardware": hw.to_dict(),
                        "baseline": vllm_baseline_view(params, trust_remote_code),
                    },
                )
                if envelope.vllm is None:
                    raise InvalidPlanError("smart-run response did not include vllm advice")
                tuned, trust = apply_vllm_advice(params, trust_remote_code, envelope.vllm, explicit)
            except StackError as e:
                tuned, trust, error = params, trust_remote_code, e
        outcome = self._outcome("vllm", error)
        return tuned, trust, outcome

    def _ask(self, prompt_name: str, bundle: dict[str, Any]) -> SmartRunEnvelope:
        from inference_stack.core.llm import render_prompt

        prompt = render_prompt(prompt_name, planner_input=json.dumps(bundle))
        return parse_candidate(self.client.generate(prompt), SmartRunEnvelope, "smart-run")

    def _outcome(self, label: str, error: Optional[Exception]) -> RefinementOutcome:
        outcome = evaluate_outcome(
            "smart-run", self.settings, error, disabled_reason="smart-run disabled"
        )
        if self.settings.debug:
            report_outcome(self.console, f"Smart run planner ({label})", outcome)
        enforce_strict("smart-run", self.settings, outcome)
        return outcome


def _has_auto_map(path: Path) -> bool:
    try:
        payload = json.loads(path.read_text())
    except (OSError, ValueError):
        return False
    if not isinstance(payload, dict):
        return False
    value = payload.get("auto_map")
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (dict, list)):
        return len(value) > 0
    return True


def should_trust_remote_code(model_dir: Path) -> bool:
    """True when the model ships custom code (auto_map entries or .py files)."""
    model_dir = Path(model_dir)
    if any(_has_auto_map(model_dir / name) for name in _AUTO_MAP_FILES):
        return True
    return any(model_dir.glob("*.py"))
