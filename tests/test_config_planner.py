"""Tests for inference_stack.core.config_planner — static and refined config plans."""

from __future__ import annotations

import copy
import json
import stat
from datetime import datetime, timezone

import pytest

from inference_stack.core.config import PlannerSettings
from inference_stack.core.config_planner import (
    ChangeCandidate,
    ConfigPlanner,
    allowed_keys,
    apply_plan,
    build_planner_input,
    build_static_plan,
    merge_changes,
    plan_filename,
    render_plan_text,
)
from inference_stack.core.errors import PlanValidationError, StrictModeError
from inference_stack.core.models import HardwareSummary
from tests.conftest import json_reply, make_client

NOW = datetime(2026, 3, 1, 12, 30, 0, tzinfo=timezone.utc)


def _values(plan):
    return {c.key: c.value for c in plan.changes}


# ---------------------------------------------------------------------------
# build_static_plan
# ---------------------------------------------------------------------------

class TestBuildStaticPlan:
    def test_llama_cpp(self, hw_v100):
        plan = build_static_plan("llama.cpp", "qwen", hw_v100, now=NOW)
        assert _values(plan) == {"threads": 32, "ctx_size": 2048, "n_gpu_layers": 20}
        assert {c.scope for c in plan.changes} == {"model.run.llama.cpp"}
        assert plan.source == "static"
        assert plan.generated_at == "2026-03-01T12:30:00+00:00"
        assert plan.context == {
            "cpu_cores": 32,
            "memory_kb": 32691216,
            "gpu_name": "Tesla V100-PCIE-16GB 16GB",
            "gpu_count": 2,
        }

    def test_llama_cpp_unknown_cores(self):
        plan = build_static_plan("llama.cpp", "", HardwareSummary(), now=NOW)
        assert _values(plan) == {"threads": 4, "ctx_size": 2048, "n_gpu_layers": 0}

    def test_vllm(self, hw_a100):
        plan = build_static_plan(" VLLM ", "", hw_a100, now=NOW)
        assert plan.module == "vllm"
        assert _values(plan) == {"max_model_len": 32768, "gpu_memory_utilization": 0.92}

    def test_vllm_16gb(self, hw_v100):
        assert _values(build_static_plan("vllm", "", hw_v100)) == {
            "max_model_len": 8192, "gpu_memory_utilization": 0.86,
        }

    def test_ollama(self, hw_v100, hw_cpu_only):
        assert _values(build_static_plan("ollama", "", hw_v100)) == {"num_parallel": 2, "keep_alive": "10m"}
        assert _values(build_static_plan("ollama", "", hw_cpu_only))["num_parallel"] == 1

    def test_unknown_module(self, hw_v100):
        with pytest.raises(PlanValidationError, match="no static config planner"):
            build_static_plan("tgi", "", hw_v100)

    def test_module_required(self, hw_v100):
        with pytest.raises(PlanValidationError, match="module name is required"):
            build_static_plan("  ", "", hw_v100)

    def test_to_dict(self, hw_v100):
        data = build_static_plan("llama.cpp", "", hw_v100, now=NOW).to_dict()
        assert data["schema_version"] == "inference-stack.configplan/v0.1.0"
        assert data["planner"] == {"name": "module-config-planner", "version": "p3-a", "mode": "static"}
        assert "model" not in data
        assert "warnings" not in data
        assert data["changes"][0]["key"] == "threads"


# ---------------------------------------------------------------------------
# merge_changes
# ---------------------------------------------------------------------------

class TestMergeChanges:
    @pytest.fixture
    def llama_plan(self, hw_v100):
        return build_static_plan("llama.cpp", "", hw_v100, now=NOW)

    def test_empty_changes_keep_baseline(self, llama_plan):
        merged = merge_changes(llama_plan, [])
        assert merged.to_dict() == llama_plan.to_dict()
        assert merged is not llama_plan

    def test_coerces_and_clamps(self, llama_plan):
        merged = merge_changes(llama_plan, [
            ChangeCandidate(key="threads", value="48", reason="use more cores"),
            ChangeCandidate(key="ctx_size", value=100),
            ChangeCandidate(key="n_gpu_layers", value=35.0),
        ])
        assert _values(merged) == {"threads": 48, "ctx_size": 512, "n_gpu_layers": 35}
        assert merged.changes[0].reason == "use more cores"
        assert merged.changes[1].reason == "fit system memory tier"

    def test_does_not_mutate_baseline(self, llama_plan):
        before = copy.deepcopy(llama_plan.to_dict())
        merge_changes(llama_plan, [ChangeCandidate(key="threads", value=8)])
        assert llama_plan.to_dict() == before

    def test_float_clamp(self, hw_a100):
        plan = build_static_plan("vllm", "", hw_a100)
        merged = merge_changes(plan, [ChangeCandidate(key="gpu_memory_utilization", value=1.5)])
        assert _values(merged)["gpu_memory_utilization"] == pytest.approx(0.98)

    def test_ollama_values(self, hw_v100):
        plan = build_static_plan("ollama", "", hw_v100)
        merged = merge_changes(plan, [
            ChangeCandidate(key="num_parallel", value=100),
            ChangeCandidate(key="keep_alive", value="30m"),
        ])
        assert _values(merged) == {"num_parallel": 64, "keep_alive": "30m"}

    def test_unsupported_key(self, llama_plan):
        with pytest.raises(PlanValidationError, match="unsupported key 'flash_attn'"):
            merge_changes(llama_plan, [ChangeCandidate(key="flash_attn", value=True)])

    def test_key_missing_from_baseline(self, llama_plan):
        llama_plan.changes = [c for c in llama_plan.changes if c.key != "threads"]
        with pytest.raises(PlanValidationError, match="not found in baseline plan"):
            merge_changes(llama_plan, [ChangeCandidate(key="threads", value=8)])

    def test_bad_integer(self, llama_plan):
        with pytest.raises(PlanValidationError, match="not an integer"):
            merge_changes(llama_plan, [ChangeCandidate(key="threads", value="lots")])

    @pytest.mark.parametrize("key,raw", [
        ("threads", float("inf")),
        ("threads", float("nan")),
        ("threads", 1e400),
        ("ctx_size", "Infinity"),
    ])
    def test_non_finite_integer_rejected(self, llama_plan, key, raw):
        with pytest.raises(PlanValidationError, match="invalid plan"):
            merge_changes(llama_plan, [ChangeCandidate(key=key, value=raw)])

    @pytest.mark.parametrize("raw", ["NaN", float("nan"), "inf", float("-inf")])
    def test_non_finite_float_rejected(self, hw_a100, raw):
        plan = build_static_plan("vllm", "", hw_a100)
        with pytest.raises(PlanValidationError, match="not a finite number"):
            merge_changes(plan, [ChangeCandidate(key="gpu_memory_utilization", value=raw)])

    def test_allowed_keys(self):
        assert allowed_keys("LLAMA.CPP") == ("threads", "ctx_size", "n_gpu_layers")
        assert allowed_keys("tgi") == ()


# ---------------------------------------------------------------------------
# ConfigPlanner
# ---------------------------------------------------------------------------

class TestConfigPlanner:
    def test_disabled(self, hw_v100, quiet_console):
        client = make_client("{}")
        plan, outcome = ConfigPlanner(client, PlannerSettings(enabled=False), quiet_console).plan(
            "llama.cpp", "", hw_v100
        )
        client.generate.assert_not_called()
        assert plan.source == "static"
        assert outcome.reason == "config planner disabled"

    def test_refined(self, hw_v100, quiet_console):
        client = make_client(json_reply({
            "reason": "larger context fits",
            "changes": [{"scope": "model.run.llama.cpp", "key": "ctx_size", "value": 8192}],
        }))
        plan, outcome = ConfigPlanner(client, PlannerSettings(), quiet_console).plan(
            "llama.cpp", "qwen", hw_v100
        )

        assert _values(plan)["ctx_size"] == 8192
        assert plan.source == "llm"
        assert plan.reason == "larger context fits"
        assert plan.planner.version == "p3-b"
        assert plan.planner.mode == "llm+static"
        assert outcome.refined
        assert outcome.reason == "larger context fits"

        prompt = client.generate.call_args[0][0]
        assert '"allowed": ["threads", "ctx_size", "n_gpu_layers"]' in prompt

    def test_rejected_candidate_falls_back(self, hw_v100, quiet_console):
        client = make_client('{"changes": [{"key": "flash_attn", "value": true}]}')
        plan, outcome = ConfigPlanner(client, PlannerSettings(), quiet_console).plan(
            "llama.cpp", "", hw_v100
        )
        assert plan.source == "static"
        assert plan.planner.version == "p3-a"
        assert "unsupported key" in outcome.reason

    def test_strict_prints_debug_then_raises(self, hw_v100, quiet_console):
        planner = ConfigPlanner(
            make_client("sorry"), PlannerSettings(strict=True, debug=True), quiet_console
        )
        with pytest.raises(StrictModeError, match="^config planner strict mode: "):
            planner.plan("vllm", "", hw_v100)
        assert "Config planner: source=static" in quiet_console.export_text()

    @pytest.mark.parametrize("reply", [
        '{"changes": [{"key": "threads", "value": Infinity}]}',
        '{"changes": [{"key": "ctx_size", "value": NaN}]}',
        '{"changes": [{"key": "threads", "value": 1e400}]}',
    ])
    def test_non_finite_reply_falls_back(self, tmp_path, hw_v100, quiet_console, reply):
        plan, outcome = ConfigPlanner(make_client(reply), PlannerSettings(), quiet_console).plan(
            "llama.cpp", "", hw_v100
        )
        assert plan.source == "static"
        assert _values(plan) == {"threads": 32, "ctx_size": 2048, "n_gpu_layers": 20}
        assert "invalid plan" in outcome.reason
        # The persisted plan stays strict JSON.
        target = apply_plan(plan, tmp_path)
        json.loads(target.read_text(), parse_constant=pytest.fail)

    def test_non_finite_vllm_value_falls_back(self, hw_a100, quiet_console):
        client = make_client('{"changes": [{"key": "gpu_memory_utilization", "value": "NaN"}]}')
        plan, _ = ConfigPlanner(client, PlannerSettings(), quiet_console).plan("vllm", "", hw_a100)
        assert _values(plan)["gpu_memory_utilization"] == pytest.approx(0.92)

    def test_non_finite_reply_strict(self, hw_v100, quiet_console):
        client = make_client('{"changes": [{"key": "threads", "value": 1e400}]}')
        planner = ConfigPlanner(client, PlannerSettings(strict=True), quiet_console)
        with pytest.raises(StrictModeError, match="config planner strict mode: invalid plan"):
            planner.plan("llama.cpp", "", hw_v100)

    def test_unknown_module_is_not_refined(self, hw_v100, quiet_console):
        client = make_client("{}")
        with pytest.raises(PlanValidationError):
            ConfigPlanner(client, PlannerSettings(), quiet_console).plan("tgi", "", hw_v100)
        client.generate.assert_not_called()

    def test_planner_input(self, hw_v100):
        plan = build_static_plan("ollama", "m", hw_v100)
        bundle = build_planner_input(plan, hw_v100)
        assert bundle["module"] == "ollama"
        assert bundle["allowed"] == ["num_parallel", "keep_alive"]
        assert bundle["hardware"]["gpu_count"] == 2


# ---------------------------------------------------------------------------
# Persistence and rendering
# ---------------------------------------------------------------------------

class TestApplyPlan:
    def test_writes_pretty_json(self, tmp_path, hw_v100):
        plan = build_static_plan("llama.cpp", "qwen", hw_v100, now=NOW)
        target = apply_plan(plan, tmp_path / "config-plans")

        assert target == tmp_path / "config-plans" / "llama.cpp.json"
        text = target.read_text()
        assert text.startswith("{\n  ")
        assert json.loads(text)["model"] == "qwen"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_overwrites(self, tmp_path, hw_v100, hw_a100):
        apply_plan(build_static_plan("vllm", "", hw_v100), tmp_path)
        target = apply_plan(build_static_plan("vllm", "", hw_a100), tmp_path)
        data = json.loads(target.read_text())
        assert data["changes"][0]["value"] == 32768

    def test_plan_filename(self):
        assert plan_filename("org/module") == "org_module.json"


class TestRenderPlanText:
    def test_table(self, hw_v100, quiet_console):
        plan = build_static_plan("vllm", "Qwen/Qwen3-8B", hw_v100)
        plan.warnings.append("GPU memory is tight")
        render_plan_text(quiet_console, plan)

        text = quiet_console.export_text()
        assert "Config plan for vllm" in text
        assert "module-config-planner p3-a (static)" in text
        assert "Model: Qwen/Qwen3-8B" in text
        assert "max_model_len" in text
        assert "8192" in text
        assert "Warning: GPU memory is tight" in text
