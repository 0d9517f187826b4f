"""Model runner — resolve a local model, build its launch plan, run it."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console

from inference_stack.core.baselines import (
    auto_tune_batch,
    auto_tune_llama,
    llama_baseline,
    vllm_baseline,
)
from inference_stack.core.errors import ModelNotFoundError, StackError
from inference_stack.core.launcher import (
    LLAMA_SERVER,
    VLLM,
    build_llama_server_args,
    build_vllm_serve_args,
    find_llama_library_dir,
    format_dry_run,
    launch,
    resolve_binary,
    split_env,
    with_library_path,
)
from inference_stack.core.model_store import (
    find_files,
    has_vllm_config,
    read_model_metadata,
    resolve_model_dir,
    select_gguf_file,
)
from inference_stack.core.models import HardwareSummary, LlamaRunParams, VLLMRunParams
from inference_stack.core.run_planner import RunPlanner, should_trust_remote_code

logger = logging.getLogger(__name__)

_SAMPLING_FIELDS = (
    "temperature",
    "top_p",
    "top_k",
    "min_p",
    "presence_penalty",
    "repeat_penalty",
)


@dataclass
class RunRequest:
    """A model run as asked for by the operator.

    Tuning fields left as None were not set on the command line and may
    be filled in by the baseline or the planner.
    """

    model: str
    file: str = ""
    host: str = "0.0.0.0"
    port: int = 8080
    auto_batch: bool = False
    dry_run: bool = False

    threads: Optional[int] = None
    ctx_size: Optional[int] = None
    gpu_layers: Optional[int] = None
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

    max_model_len: Optional[int] = None
    gpu_memory_utilization: Optional[float] = None
    trust_remote_code: Optional[bool] = None

    def explicit_fields(self) -> set[str]:
        skip = {"model", "file", "host", "port", "auto_batch", "dry_run"}
        return {
            f.name for f in fields(self)
            if f.name not in skip and getattr(self, f.name) is not None
        }

    def validate(self) -> None:
        """Reject out-of-range operator values.

        Raises:
            StackError: Naming the first offending flag.
        """
        if self.temperature is not None and self.temperature < 0:
            raise StackError("temperature must be >= 0")
        if self.top_p is not None and not 0 <= self.top_p <= 1:
            raise StackError("top-p must be in [0, 1]")
        if self.top_k is not None and self.top_k < 0:
            raise StackError("top-k must be >= 0")
        if self.min_p is not None and not 0 <= self.min_p <= 1:
            raise StackError("min-p must be in [0, 1]")
        if self.repeat_penalty is not None and self.repeat_penalty < 0:
            raise StackError("repeat-penalty must be >= 0")
        if self.batch_size is not None and self.batch_size < 0:
            raise StackError("batch-size must be >= 0")
        if self.ubatch_size is not None and self.ubatch_size < 0:
            raise StackError("ubatch-size must be >= 0")
        if self.threads is not None and self.threads < 1:
            raise StackError("threads must be >= 1")
        if self.ctx_size is not None and self.ctx_size < 1:
            raise StackError("ctx-size must be >= 1")
        if self.gpu_layers is not None and self.gpu_layers < 0:
            raise StackError("n-gpu-layers must be >= 0")
        if self.gpu_memory_utilization is not None and not 0 < self.gpu_memory_utilization <= 1:
            raise StackError("vllm-gpu-memory-utilization must be in (0, 1]")


class ModelRunner:
    """Chooses the runtime for a local model and launches it."""

    def __init__(
        self,
        models_dir: Path,
        hardware: HardwareSummary,
        planner: RunPlanner,
        console: Optional[Console] = None,
        llama_server_bin: str = "",
        vllm_bin: str = "",
    ):
        self.models_dir = Path(models_dir)
        self.hardware = hardware
        self.planner = planner
        self.console = console or Console()
        self.llama_server_bin = llama_server_bin
        self.vllm_bin = vllm_bin

    def run(self, request: RunRequest) -> None:
        """Launch the model; safetensors weights go to vLLM, GGUF to llama.cpp.

        Raises:
            ModelNotFoundError: If the model or its weights cannot be found.
            StrictModeError: If strict smart-run could not use LLM advice.
            CommandExitError: If the runtime exits with a non-zero status.
        """
        request.validate()
        model_dir = resolve_model_dir(self.models_dir, request.model)
        safetensors = find_files(model_dir, ".safetensors")
        gguf = find_files(model_dir, ".gguf")
        if not safetensors and not gguf:
            raise ModelNotFoundError(f"no supported model files found for {request.model}")

        if safetensors:
            self.run_vllm(request, model_dir)
        else:
            self.run_llama(request, model_dir, gguf)

    # ── vLLM ─────────────────────────────────────────────────────────

    def vllm_plan(
        self, request: RunRequest, model_dir: Path
    ) -> tuple[str, VLLMRunParams, bool]:
        """Return (model_ref, params, trust_remote_code) for a vLLM launch."""
        model_ref = str(model_dir)
        if not has_vllm_config(model_dir):
            meta = read_model_metadata(model_dir)
            if not meta.id:
                raise StackError("metadata.json missing model id")
            model_ref = meta.id

        params = vllm_baseline(self.hardware)
        if request.max_model_len is not None:
            params.max_model_len = request.max_model_len
        if request.gpu_memory_utilization is not None:
            params.gpu_memory_utilization = request.gpu_memory_utilization

        if request.trust_remote_code is not None:
            trust = request.trust_remote_code
        else:
            trust = should_trust_remote_code(model_dir)

        params, trust, _ = self.planner.tune_vllm(
            request.model, model_ref, self.hardware, params, trust, request.explicit_fields()
        )
        return model_ref, params, trust

    def run_vllm(self, request: RunRequest, model_dir: Path) -> None:
        model_ref, params, trust = self.vllm_plan(request, model_dir)
        binary = self._binary(VLLM, self.vllm_bin, request.dry_run)

        self.console.print(f"Starting vLLM server for {request.model}", highlight=False)
        args = build_vllm_serve_args(model_ref, request.host, request.port, params, trust)
        if request.dry_run:
            self._print_dry_run(binary, args, params.env)
            return
        launch(binary, args, split_env(params.env), console=self.console)

    # ── llama.cpp ────────────────────────────────────────────────────

    def llama_plan(
        self, request: RunRequest, model_dir: Path, gguf: list[Path]
    ) -> tuple[Path, LlamaRunParams]:
        """Return (model_path, params) for a llama-server launch."""
        model_path, auto_selected = select_gguf_file(model_dir, gguf, request.file)
        if auto_selected and len(gguf) > 1:
            self.console.print(f"Auto-selected GGUF file: {model_path.name}", highlight=False)

        params = auto_tune_llama(llama_baseline(self.hardware), self.hardware, str(model_path))
        for name in ("threads", "ctx_size", "gpu_layers", "tensor_split", "chat_template_kwargs"):
            value = getattr(request, name)
            if value is not None:
                setattr(params, name, value)
        for name in _SAMPLING_FIELDS:
            value = getattr(request, name)
            if value is not None:
                setattr(params.sampling, name, value)

        batch = request.batch_size or 0
        ubatch = request.ubatch_size or 0
        if request.auto_batch or batch == 0 or ubatch == 0:
            tuned = auto_tune_batch(self.hardware, str(model_path), params.ctx_size, params.gpu_layers)
            batch = batch or tuned.batch_size
            ubatch = ubatch or tuned.ubatch_size
        if ubatch > 0 and batch > 0 and ubatch > batch:
            ubatch = batch
        params.batch_size, params.ubatch_size = batch, ubatch

        params, _ = self.planner.tune_llama(
            request.model, str(model_path), self.hardware, params, request.explicit_fields()
        )
        return model_path, params

    def run_llama(self, request: RunRequest, model_dir: Path, gguf: list[Path]) -> None:
        model_path, params = self.llama_plan(request, model_dir, gguf)
        binary = self._binary(LLAMA_SERVER, self.llama_server_bin, request.dry_run)

        args = build_llama_server_args(str(model_path), params, request.host, request.port)
        if request.auto_batch:
            self.console.print(
                f"Auto batch tuned: --batch-size {params.batch_size} "
                f"--ubatch-size {params.ubatch_size}",
                highlight=False,
            )
        self.console.print(f"Starting llama.cpp server for {model_path.name}", highlight=False)
        if request.dry_run:
            self._print_dry_run(binary, args)
            return

        env = {}
        library_dir = find_llama_library_dir()
        if library_dir is not None:
            env = with_library_path(os.environ, library_dir)
        else:
            logger.warning("libmtmd.so not found; launching llama-server with the inherited LD_LIBRARY_PATH")
        launch(binary, args, env, console=self.console)

    # ── helpers ──────────────────────────────────────────────────────

    def _binary(self, name: str, override: str, dry_run: bool) -> str:
        try:
            return resolve_binary(name, override)
        except StackError:
            if dry_run:
                return override or name
            raise

    def _print_dry_run(self, binary: str, args: list[str], env: Sequence[str] = ()) -> None:
        for line in format_dry_run(binary, args, env):
            self.console.print(line, markup=False, highlight=False)
