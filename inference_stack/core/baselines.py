"""Deterministic run-parameter baselines for the supported runtimes.

Everything here is a pure function of the hardware summary and, for the
llama.cpp tuning passes, the model file name. These values are what the
launcher uses whenever LLM refinement is disabled or rejected.
"""

from __future__ import annotations

import os
import re
from dataclasses import replace

from inference_stack.core.hardware import is_legacy_gpu, parse_vram_gb
from inference_stack.core.models import (
    BatchParams,
    HardwareSummary,
    LlamaRunParams,
    VLLMRunParams,
)
from inference_stack.core.refinement import clamp

GIB_IN_KB = 1024 * 1024

# llama.cpp treats a layer count above the model's depth as "offload all".
FULL_OFFLOAD_LAYERS = 999

FABRIC_DISABLE_ENV = ("NCCL_IB_DISABLE=1", "NCCL_P2P_DISABLE=1")

_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)b")
_QUANT_PATTERNS = (
    "q2_k",
    "q3_k",
    "q4_k_m",
    "q4_k_s",
    "q4",
    "q5_k_m",
    "q5_k_s",
    "q5",
    "q6_k",
    "q6",
    "q8_0",
    "q8",
)


def closest_power_of_two(value: int) -> int:
    """Nearest power of two; ties round down."""
    if value <= 1:
        return 1
    p = 1
    while p < value:
        p <<= 1
    prev = p >> 1
    if p - value < value - prev:
        return p
    return prev


def make_tensor_split(count: int) -> str:
    """Equal percentage split across ``count`` GPUs, remainder to the first ones."""
    if count <= 1:
        return ""
    base, remaining = divmod(100, count)
    parts = []
    for i in range(count):
        parts.append(str(base + 1 if i < remaining else base))
    return ",".join(parts)


def infer_model_info(filename: str) -> tuple[float, str]:
    """Return (parameter count in billions, quantization tag) from a file name."""
    base = os.path.basename(filename or "").lower()
    size_b = 0.0
    for match in _SIZE_RE.finditer(base):
        size_b = max(size_b, float(match.group(1)))
    quant = next((p for p in _QUANT_PATTERNS if p in base), "")
    return size_b, quant


def _effective_gpu_count(hw: HardwareSummary, vram: int) -> int:
    if hw.gpu_count <= 0 and vram > 0:
        return 1
    return hw.gpu_count


# ── llama.cpp ────────────────────────────────────────────────────────


def llama_baseline(hw: HardwareSummary) -> LlamaRunParams:
    threads = hw.cpu_cores
    if threads <= 0:
        threads = os.cpu_count() or 4

    if hw.memory_kb >= 64 * GIB_IN_KB:
        ctx_size = 8192
    elif hw.memory_kb >= 32 * GIB_IN_KB:
        ctx_size = 4096
    elif hw.memory_kb >= 16 * GIB_IN_KB:
        ctx_size = 2048
    else:
        ctx_size = 1024

    return LlamaRunParams(
        threads=threads,
        ctx_size=ctx_size,
        gpu_layers=gpu_layers_for_vram(parse_vram_gb(hw.gpu_name)),
    )


def gpu_layers_for_vram(vram: int) -> int:
    if vram >= 80:
        return 80
    if vram >= 48:
        return 60
    if vram >= 24:
        return 40
    if vram >= 16:
        return 20
    if vram >= 12:
        return 12
    if vram > 0:
        return 8
    return 0


def auto_tune_llama(
    params: LlamaRunParams, hw: HardwareSummary, model_path: str
) -> LlamaRunParams:
    """Raise context and GPU offload where the host clearly allows it."""
    size_b, quant = infer_model_info(model_path)
    vram = parse_vram_gb(hw.gpu_name)
    gpu_count = _effective_gpu_count(hw, vram)

    ctx_size = params.ctx_size
    if hw.memory_kb >= 64 * GIB_IN_KB:
        ctx_size = max(ctx_size, 8192)
    elif hw.memory_kb >= 32 * GIB_IN_KB:
        ctx_size = max(ctx_size, 4096)

    gpu_layers = params.gpu_layers
    if vram >= 16 and gpu_count >= 1 and 0 < size_b <= 30:
        if quant == "" or quant.startswith(("q4", "q5", "q6", "q8")):
            gpu_layers = FULL_OFFLOAD_LAYERS

    tensor_split = params.tensor_split
    if gpu_count > 1 and gpu_layers != 0:
        tensor_split = make_tensor_split(gpu_count)

    return replace(
        params, ctx_size=ctx_size, gpu_layers=gpu_layers, tensor_split=tensor_split
    )


def auto_tune_batch(
    hw: HardwareSummary, model_path: str, ctx_size: int, gpu_layers: int
) -> BatchParams:
    size_b, quant = infer_model_info(model_path)
    vram = parse_vram_gb(hw.gpu_name)
    gpu_count = _effective_gpu_count(hw, vram)

    if vram >= 80:
        ubatch = 512
    elif vram >= 48:
        ubatch = 256
    elif vram >= 24:
        ubatch = 128
    elif vram >= 16:
        ubatch = 96
    elif vram >= 8:
        ubatch = 64
    elif hw.memory_kb >= 128 * GIB_IN_KB:
        ubatch = 128
    elif hw.memory_kb >= 64 * GIB_IN_KB:
        ubatch = 64
    else:
        ubatch = 32

    if quant.startswith("q8"):
        ubatch //= 2
    elif quant.startswith(("q2", "q3")):
        ubatch *= 2

    if size_b >= 70:
        ubatch //= 2
    elif size_b >= 30:
        ubatch = ubatch * 3 // 4

    if ctx_size > 16384:
        ubatch //= 4
    elif ctx_size > 8192:
        ubatch //= 2

    if gpu_layers == 0:
        ubatch //= 2

    if gpu_count > 1:
        ubatch *= min(gpu_count, 2)

    ubatch = clamp(closest_power_of_two(ubatch), 16, 1024)
    batch = ubatch * 2
    if vram >= 48 or (gpu_count > 1 and vram >= 24):
        batch = ubatch * 4
    batch = clamp(closest_power_of_two(batch), ubatch, 2048)
    return BatchParams(batch_size=batch, ubatch_size=ubatch)


# ── vLLM ─────────────────────────────────────────────────────────────


def vllm_baseline(hw: HardwareSummary) -> VLLMRunParams:
    vram = parse_vram_gb(hw.gpu_name)
    gpu_count = _effective_gpu_count(hw, vram)
    legacy = is_legacy_gpu(hw.gpu_name)

    if vram >= 80:
        max_model_len = 32768
    elif vram >= 48:
        max_model_len = 24576
    elif vram >= 24:
        max_model_len = 16384
    elif vram >= 16:
        max_model_len = 8192
    elif vram >= 12:
        max_model_len = 6144
    elif vram > 0:
        max_model_len = 4096
    elif hw.memory_kb >= 128 * GIB_IN_KB:
        max_model_len = 8192
    elif hw.memory_kb >= 64 * GIB_IN_KB:
        max_model_len = 4096
    else:
        max_model_len = 2048

    gpu_mem_util = 0.0
    if gpu_count > 0 and vram > 0:
        if vram >= 80:
            gpu_mem_util = 0.92
        elif vram >= 48:
            gpu_mem_util = 0.90
        elif vram >= 24:
            gpu_mem_util = 0.88
        elif vram >= 16:
            gpu_mem_util = 0.86
        else:
            gpu_mem_util = 0.82

    small_card = 0 < vram <= 16
    # 16GB-class cards fail while probing KV cache memory at higher pressure.
    if small_card:
        max_model_len = min(max_model_len, 2048)
        gpu_mem_util = 0.88

    if gpu_count >= 2 and 0 < vram <= 24:
        tp_size = 2
    else:
        tp_size = max(gpu_count, 1)

    dtype = "float16" if gpu_count > 0 and legacy else ""

    enforce_eager = legacy or small_card
    optimization_level = 0 if enforce_eager else 2

    if small_card:
        max_num_seqs = 2 if tp_size > 1 else 4
    elif 0 < vram <= 24:
        max_num_seqs = 8
    elif 0 < vram <= 48:
        max_num_seqs = 12
    else:
        max_num_seqs = 16

    disable_custom_all_reduce = tp_size > 1 and (legacy or vram <= 16)
    env = list(FABRIC_DISABLE_ENV) if disable_custom_all_reduce else []

    return VLLMRunParams(
        max_model_len=max_model_len,
        gpu_memory_utilization=gpu_mem_util,
        dtype=dtype,
        tensor_parallel_size=tp_size,
        enforce_eager=enforce_eager,
        optimization_level=optimization_level,
        max_num_seqs=max_num_seqs,
        disable_custom_all_reduce=disable_custom_all_reduce,
        env=env,
    )
