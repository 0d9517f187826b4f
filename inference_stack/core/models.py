"""Core data models for inference-stack."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class HardwareSummary:
    cpu_cores: int = 0
    memory_kb: int = 0
    gpu_name: str = ""
    gpu_count: int = 0

    @property
    def has_gpu(self) -> bool:
        return bool(self.gpu_name.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpu_cores": self.cpu_cores,
            "memory_kb": self.memory_kb,
            "gpu_name": self.gpu_name,
            "gpu_count": self.gpu_count,
        }


# ── Install recipes ──────────────────────────────────────────────────


@dataclass
class Expectation:
    equals: str = ""
    exit_code: Optional[int] = None
    bin: str = ""
    unit: str = ""
    service: str = ""

    @property
    def is_load_bearing(self) -> bool:
        return bool(self.unit.strip() or self.service.strip())


@dataclass
class Step:
    id: str
    intent: str = ""
    tool: str = ""
    command: str = ""
    template: str = ""
    destination: str = ""
    expected: Expectation = field(default_factory=Expectation)
    idempotent: bool = False


@dataclass
class Precondition:
    id: str
    intent: str = ""
    tool: str = ""
    command: str = ""
    expected: Expectation = field(default_factory=Expectation)


@dataclass
class InstallSpec:
    install_modes: list[str] = field(default_factory=list)
    default_mode: str = ""
    preconditions: list[Precondition] = field(default_factory=list)
    steps_by_mode: dict[str, list[Step]] = field(default_factory=dict)
    configuration_defaults: dict[str, Any] = field(default_factory=dict)
    update_script: str = ""
    uninstall_script: str = ""


@dataclass
class ModeSelection:
    """Install mode chosen from the recipe and the host hardware."""

    mode: str
    env: dict[str, str] = field(default_factory=dict)
    forced: bool = False


# ── Config plans ─────────────────────────────────────────────────────


@dataclass
class Change:
    scope: str
    key: str
    value: Any
    reason: str = ""


@dataclass
class PlannerMeta:
    name: str = "module-config-planner"
    version: str = "p3-a"
    mode: str = "static"


@dataclass
class ConfigPlan:
    module: str
    schema_version: str = "inference-stack.configplan/v0.1.0"
    planner: PlannerMeta = field(default_factory=PlannerMeta)
    model: str = ""
    source: str = "static"
    reason: str = "hardware-aware static planner"
    generated_at: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    changes: list[Change] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "schema_version": self.schema_version,
            "planner": {
                "name": self.planner.name,
                "version": self.planner.version,
                "mode": self.planner.mode,
            },
            "module": self.module,
        }
        if self.model:
            data["model"] = self.model
        data.update({
            "source": self.source,
            "reason": self.reason,
            "generated_at": self.generated_at,
            "context": dict(self.context),
            "changes": [
                {"scope": c.scope, "key": c.key, "value": c.value, "reason": c.reason}
                for c in self.changes
            ],
        })
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


# ── Run parameters ───────────────────────────────────────────────────


@dataclass
class SamplingParams:
    temperature: float = 0.7
    top_p: float = 0.8
    top_k: int = 20
    min_p: float = 0.0
    presence_penalty: float = 1.5
    repeat_penalty: float = 1.0


@dataclass
class BatchParams:
    batch_size: int
    ubatch_size: int


@dataclass
class LlamaRunParams:
    threads: int = 4
    ctx_size: int = 1024
    gpu_layers: int = 0
    tensor_split: str = ""
    batch_size: int = 0
    ubatch_size: int = 0
    sampling: SamplingParams = field(default_factory=SamplingParams)
    chat_template_kwargs: str = ""


@dataclass
class VLLMRunParams:
    max_model_len: int = 2048
    gpu_memory_utilization: float = 0.0
    dtype: str = ""
    tensor_parallel_size: int = 1
    enforce_eager: bool = False
    optimization_level: int = 2
    max_num_seqs: int = 16
    disable_custom_all_reduce: bool = False
    env: list[str] = field(default_factory=list)
