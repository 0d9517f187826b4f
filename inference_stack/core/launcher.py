"""Runtime launch builder — turns final run parameters into a process."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Mapping, Optional, Sequence

from rich.console import Console

from inference_stack.core.errors import CommandExitError, StackError
from inference_stack.core.models import LlamaRunParams, VLLMRunParams

logger = logging.getLogger(__name__)

LLAMA_SERVER = "llama-server"
VLLM = "vllm"

_LLAMA_LIBRARY = "libmtmd.so"


def _g(value: float) -> str:
    return "%.4g" % value


def build_llama_server_args(
    model_path: str, params: LlamaRunParams, host: str, port: int
) -> list[str]:
    s = params.sampling
    args = [
        "--model", str(model_path),
        "--threads", str(params.threads),
        "--ctx-size", str(params.ctx_size),
        "--n-gpu-layers", str(params.gpu_layers),
        "--host", host,
        "--port", str(port),
        "--temp", _g(s.temperature),
        "--top-p", _g(s.top_p),
        "--top-k", str(s.top_k),
        "--min-p", _g(s.min_p),
        "--presence-penalty", _g(s.presence_penalty),
        "--repeat-penalty", _g(s.repeat_penalty),
    ]
    if params.tensor_split:
        args += ["--tensor-split", params.tensor_split]
    if params.batch_size > 0:
        args += ["--batch-size", str(params.batch_size)]
    if params.ubatch_size > 0:
        args += ["--ubatch-size", str(params.ubatch_size)]
    if params.chat_template_kwargs.strip():
        args += ["--chat-template-kwargs", params.chat_template_kwargs]
    return args


def build_vllm_serve_args(
    model_ref: str,
    host: str,
    port: int,
    params: VLLMRunParams,
    trust_remote_code: bool = False,
) -> list[str]:
    args = ["serve", model_ref, "--host", host, "--port", str(port)]
    if params.dtype:
        args += ["--dtype", params.dtype]
    if params.max_model_len > 0:
        args += ["--max-model-len", str(params.max_model_len)]
    if params.gpu_memory_utilization > 0:
        args += ["--gpu-memory-utilization", "%.2f" % params.gpu_memory_utilization]
    if params.tensor_parallel_size > 1:
        args += ["--tensor-parallel-size", str(params.tensor_parallel_size)]
    if params.enforce_eager:
        args.append("--enforce-eager")
    if params.optimization_level >= 0:
        args += ["--optimization-level", str(params.optimization_level)]
    if params.disable_custom_all_reduce:
        args.append("--disable-custom-all-reduce")
    if params.max_num_seqs > 0:
        args += ["--max-num-seqs", str(params.max_num_seqs)]
    if trust_remote_code:
        args.append("--trust-remote-code")
    return args


def format_dry_run(
    binary: str, args: Sequence[str], env: Sequence[str] = ()
) -> list[str]:
    """Lines describing the launch without running it."""
    command = " ".join(shlex.quote(part) for part in [binary, *args])
    lines = [f"Dry run command: {command}"]
    if env:
        lines.append(f"Dry run env: {' '.join(env)}")
    return lines


def resolve_binary(name: str, override: str = "") -> str:
    """Locate ``name``, preferring an explicit override path.

    Raises:
        StackError: If the binary cannot be found ("... not found in PATH").
    """
    if override:
        path = Path(override).expanduser()
        if path.is_file():
            return str(path)
        raise StackError(f"{name} not found at {path}")
    found = shutil.which(name)
    if not found:
        raise StackError(f"{name} not found in PATH (install the module that provides it first)")
    return found


def llama_library_dirs(home: Optional[Path] = None) -> list[Path]:
    home = home or Path.home()
    return [
        Path("/usr/local/llama.cpp/build/bin"),
        Path("/usr/local/llama.cpp/build/lib"),
        Path("/usr/local/llama.cpp/bin"),
        Path("/usr/local/llama.cpp/lib"),
        Path("/usr/local/llama.cpp"),
        Path("/usr/local/lib"),
        Path("/usr/lib"),
        Path("/usr/lib/x86_64-linux-gnu"),
        home / "llama.cpp" / "build" / "bin",
        home / "llama.cpp" / "build" / "lib",
    ]


def find_llama_library_dir(candidates: Optional[Sequence[Path]] = None) -> Optional[Path]:
    """First directory holding llama.cpp's libmtmd shared library, if any."""
    for directory in candidates if candidates is not None else llama_library_dirs():
        if (directory / f"{_LLAMA_LIBRARY}.0").exists() or (directory / _LLAMA_LIBRARY).exists():
            return directory
    return None


def with_library_path(env: Mapping[str, str], directory: Path) -> dict[str, str]:
    """Return ``env`` with ``directory`` prepended to LD_LIBRARY_PATH."""
    updated = dict(env)
    current = updated.get("LD_LIBRARY_PATH", "")
    if not current:
        updated["LD_LIBRARY_PATH"] = str(directory)
    elif str(directory) not in current.split(os.pathsep):
        updated["LD_LIBRARY_PATH"] = f"{directory}{os.pathsep}{current}"
    return updated


def split_env(pairs: Sequence[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if sep and key:
            env[key] = value
    return env


def launch(
    binary: str,
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    console: Optional[Console] = None,
) -> None:
    """Run the runtime in the foreground until it exits.

    stdio is inherited so the server streams its own output.

    Raises:
        CommandExitError: On a non-zero exit status.
        KeyboardInterrupt: After the child has been stopped.
    """
    console = console or Console()
    full_env = dict(os.environ)
    if env:
        full_env.update(env)
    logger.debug("Launching %s with %d args", binary, len(args))

    proc = subprocess.Popen([binary, *args], env=full_env)
    try:
        exit_code = proc.wait()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping runtime...[/]")
        proc.terminate()
        try:
            proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        raise
    if exit_code != 0:
        raise CommandExitError(os.path.basename(binary), exit_code)
