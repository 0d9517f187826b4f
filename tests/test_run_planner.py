"""Tests for inference_stack.core.run_planner — smart-run tuning."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from inference_stack.core.config import PlannerSettings
from inference_stack.core.errors import ProviderError, StrictModeError
from inference_stack.core.models import LlamaRunParams, VLLMRunParams
from inference_stack.core.run_planner import (
    LlamaAdvice,
    RunPlanner,
    VLLMAdvice,
    apply_llama_advice,
    apply_vllm_advice,
    llama_baseline_view,
    should_trust_remote_code,
)
from tests.conftest import json_reply, make_client


@pytest.fixture
def llama_params() -> LlamaRunParams:
    return LlamaRunParams(threads=8, ctx_size=4096, gpu_layers=20, batch_size=512, ubatch_size=128)


@pytest.fixture
def vllm_params() -> VLLMRunParams:
    return VLLMRunParams(
        max_model_len=8192,
        gpu_memory_utilization=0.86,
        tensor_parallel_size=2,
        env=["NCCL_IB_DISABLE=1"],
    )


# ---------------------------------------------------------------------------
# apply_llama_advice
# ---------------------------------------------------------------------------

class TestApplyLlamaAdvice:
    def test_clamps_every_field(self, llama_params):
        advice = LlamaAdvice.model_validate({
            "threads": 1000,
            "ctx_size": 100,
            "n_gpu_layers": 5000,
            "temperature": 5,
            "top_p": 0.9,
            "top_k": -3,
            "repeat_penalty": 1.1,
        })
        tuned = apply_llama_advice(llama_params, advice)

        assert tuned.threads == 256
        assert tuned.ctx_size == 512
        assert tuned.gpu_layers == 999
        assert tuned.sampling.temperature == 2.0
        assert tuned.sampling.top_p == pytest.approx(0.9)
        assert tuned.sampling.top_k == 0
        assert tuned.sampling.repeat_penalty == pytest.approx(1.1)

    def test_explicit_fields_win(self, llama_params):
        advice = LlamaAdvice(threads=32, gpu_layers=99, temperature=0.2)
        tuned = apply_llama_advice(llama_params, advice, {"threads", "temperature"})
        assert tuned.threads == 8
        assert tuned.sampling.temperature == pytest.approx(0.7)
        assert tuned.gpu_layers == 99

    def test_ubatch_capped_by_batch(self, llama_params):
        tuned = apply_llama_advice(llama_params, LlamaAdvice(batch_size=64, ubatch_size=256))
        assert tuned.batch_size == 64
        assert tuned.ubatch_size == 64

    def test_strings_trimmed(self, llama_params):
        tuned = apply_llama_advice(
            llama_params,
            LlamaAdvice(tensor_split=" 60,40 ", chat_template_kwargs=' {"enable_thinking": false} '),
        )
        assert tuned.tensor_split == "60,40"
        assert tuned.chat_template_kwargs == '{"enable_thinking": false}'

    def test_returns_copy(self, llama_params):
        tuned = apply_llama_advice(llama_params, LlamaAdvice(top_k=50))
        assert llama_params.sampling.top_k == 20
        assert tuned.sampling is not llama_params.sampling

        untouched = apply_llama_advice(llama_params, None)
        assert untouched == llama_params
        assert untouched is not llama_params

    def test_gpu_layers_accepts_either_name(self):
        assert LlamaAdvice.model_validate({"n_gpu_layers": 30}).gpu_layers == 30
        assert LlamaAdvice.model_validate({"gpu_layers": 31}).gpu_layers == 31


# ---------------------------------------------------------------------------
# apply_vllm_advice
# ---------------------------------------------------------------------------

class TestApplyVLLMAdvice:
    def test_clamps(self, vllm_params):
        advice = VLLMAdvice(
            max_model_len=999999,
            gpu_memory_utilization=0.1,
            tensor_parallel_size=0,
            optimization_level=9,
            max_num_seqs=1000,
        )
        tuned, _ = apply_vllm_advice(vllm_params, False, advice)
        assert tuned.max_model_len == 131072
        assert tuned.gpu_memory_utilization == pytest.approx(0.30)
        assert tuned.tensor_parallel_size == 1
        assert tuned.optimization_level == 3
        assert tuned.max_num_seqs == 256

    @pytest.mark.parametrize("raw,expected", [
        ("BFloat16", "bfloat16"), ("float32", "float32"), ("int4", ""), ("auto", ""),
    ])
    def test_dtype_whitelist(self, vllm_params, raw, expected):
        tuned, _ = apply_vllm_advice(vllm_params, False, VLLMAdvice(dtype=raw))
        assert tuned.dtype == expected

    def test_booleans_and_trust(self, vllm_params):
        advice = VLLMAdvice(enforce_eager=True, disable_custom_all_reduce=True, trust_remote_code=True)
        tuned, trust = apply_vllm_advice(vllm_params, False, advice)
        assert tuned.enforce_eager is True
        assert tuned.disable_custom_all_reduce is True
        assert trust is True

    def test_explicit_fields_win(self, vllm_params):
        advice = VLLMAdvice(max_model_len=4096, gpu_memory_utilization=0.5, trust_remote_code=True)
        tuned, trust = apply_vllm_advice(
            vllm_params, False, advice, {"max_model_len", "trust_remote_code"}
        )
        assert tuned.max_model_len == 8192
        assert tuned.gpu_memory_utilization == pytest.approx(0.5)
        assert trust is False

    def test_env_copied(self, vllm_params):
        tuned, _ = apply_vllm_advice(vllm_params, False, VLLMAdvice())
        tuned.env.append("X=1")
        assert vllm_params.env == ["NCCL_IB_DISABLE=1"]


# ---------------------------------------------------------------------------
# RunPlanner
# ---------------------------------------------------------------------------

class TestRunPlanner:
    def test_disabled(self, hw_v100, llama_params, quiet_console):
        client = make_client("{}")
        planner = RunPlanner(client, PlannerSettings(enabled=False), quiet_console)
        tuned, outcome = planner.tune_llama("m", "/m.gguf", hw_v100, llama_params)
        client.generate.assert_not_called()
        assert tuned == llama_params
        assert outcome.reason == "smart-run disabled"

    def test_tune_llama(self, hw_v100, llama_params, quiet_console):
        client = make_client(json_reply({"reason": "more threads", "llama": {"threads": 12, "n_gpu_layers": 999}}))
        planner = RunPlanner(client, PlannerSettings(), quiet_console)

        tuned, outcome = planner.tune_llama("qwen", "/models/qwen.gguf", hw_v100, llama_params)

        assert tuned.threads == 12
        assert tuned.gpu_layers == 999
        assert outcome.refined
        prompt = client.generate.call_args[0][0]
        assert '"runtime": "llama.cpp"' in prompt
        assert '"n_gpu_layers": 20' in prompt

    def test_missing_section_falls_back(self, hw_v100, llama_params, quiet_console):
        planner = RunPlanner(make_client('{"vllm": {"dtype": "float16"}}'), PlannerSettings(), quiet_console)
        tuned, outcome = planner.tune_llama("m", "/m.gguf", hw_v100, llama_params)
        assert tuned == llama_params
        assert outcome.source == "static"
        assert "did not include llama advice" in outcome.reason

    def test_schema_mismatch_falls_back(self, hw_v100, llama_params, quiet_console):
        planner = RunPlanner(make_client('{"llama": {"threads": "many"}}'), PlannerSettings(), quiet_console)
        tuned, outcome = planner.tune_llama("m", "/m.gguf", hw_v100, llama_params)
        assert tuned == llama_params
        assert "invalid plan" in outcome.reason

    def test_strict_prints_debug_then_raises(self, hw_v100, llama_params, quiet_console):
        client = make_client(error=ProviderError("anthropic request timed out"))
        planner = RunPlanner(client, PlannerSettings(strict=True, debug=True), quiet_console)
        with pytest.raises(StrictModeError, match="^smart-run strict mode: anthropic request timed out$"):
            planner.tune_llama("m", "/m.gguf", hw_v100, llama_params)
        assert "Smart run planner (llama.cpp): source=static" in quiet_console.export_text()

    def test_tune_vllm(self, hw_v100, vllm_params, quiet_console):
        client = make_client(json_reply({"vllm": {"dtype": "float16", "max_num_seqs": 4, "trust_remote_code": True}}))
        planner = RunPlanner(client, PlannerSettings(debug=True), quiet_console)

        tuned, trust, outcome = planner.tune_vllm("org/m", "/models/org_m", hw_v100, vllm_params, False)

        assert tuned.dtype == "float16"
        assert tuned.max_num_seqs == 4
        assert trust is True
        assert outcome.refined
        assert "Smart run planner (vllm): source=llm" in quiet_console.export_text()

    def test_tune_vllm_failure_keeps_trust(self, hw_v100, vllm_params, quiet_console):
        planner = RunPlanner(make_client("no"), PlannerSettings(), quiet_console)
        tuned, trust, outcome = planner.tune_vllm("m", "m", hw_v100, vllm_params, True)
        assert tuned == vllm_params
        assert trust is True
        assert outcome.source == "static"

    @pytest.mark.parametrize("reply", [
        '{"llama": {"temperature": NaN}}',
        '{"llama": {"top_p": Infinity}}',
        '{"llama": {"threads": -Infinity}}',
        '{"llama": {"repeat_penalty": 1e400}}',
    ])
    def test_non_finite_llama_advice_falls_back(self, hw_v100, llama_params, quiet_console, reply):
        planner = RunPlanner(make_client(reply), PlannerSettings(), quiet_console)
        tuned, outcome = planner.tune_llama("m", "/m.gguf", hw_v100, llama_params)
        assert tuned == llama_params
        assert outcome.source == "static"
        assert "invalid plan" in outcome.reason

    @pytest.mark.parametrize("reply", [
        '{"vllm": {"gpu_memory_utilization": NaN}}',
        '{"vllm": {"max_model_len": 1e400}}',
    ])
    def test_non_finite_vllm_advice_falls_back(self, hw_v100, vllm_params, quiet_console, reply):
        planner = RunPlanner(make_client(reply), PlannerSettings(), quiet_console)
        tuned, _, outcome = planner.tune_vllm("m", "m", hw_v100, vllm_params, False)
        assert tuned == vllm_params
        assert tuned.gpu_memory_utilization == pytest.approx(0.86)
        assert outcome.source == "static"

    def test_non_finite_advice_strict(self, hw_v100, llama_params, quiet_console):
        planner = RunPlanner(
            make_client('{"llama": {"temperature": NaN}}'), PlannerSettings(strict=True), quiet_console
        )
        with pytest.raises(StrictModeError, match="smart-run strict mode: invalid plan"):
            planner.tune_llama("m", "/m.gguf", hw_v100, llama_params)

    def test_advice_models_reject_non_finite(self):
        with pytest.raises(ValidationError):
            LlamaAdvice(temperature=float("nan"))
        with pytest.raises(ValidationError):
            VLLMAdvice(gpu_memory_utilization=float("inf"))

    def test_baseline_view_uses_runtime_names(self, llama_params):
        view = llama_baseline_view(llama_params)
        assert view["n_gpu_layers"] == 20
        assert "gpu_layers" not in view


# ---------------------------------------------------------------------------
# should_trust_remote_code
# ---------------------------------------------------------------------------

class TestShouldTrustRemoteCode:
    def test_plain_model(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"architectures": ["LlamaForCausalLM"]}))
        assert should_trust_remote_code(tmp_path) is False

    def test_auto_map_in_config(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"auto_map": {"AutoModel": "modeling.Model"}}))
        assert should_trust_remote_code(tmp_path) is True

    def test_empty_auto_map(self, tmp_path):
        (tmp_path / "config.json").write_text(json.dumps({"auto_map": {}}))
        assert should_trust_remote_code(tmp_path) is False

    def test_auto_map_in_processor_config(self, tmp_path):
        (tmp_path / "processor_config.json").write_text(json.dumps({"auto_map": "proc.Processor"}))
        assert should_trust_remote_code(tmp_path) is True

    def test_python_file(self, tmp_path):
        (tmp_path / "modeling_custom.py").write_text("class Model: ...\n")
        assert should_trust_remote_code(tmp_path) is True

    def test_unreadable_config(self, tmp_path):
        (tmp_path / "config.json").write_text("{broken")
        assert should_trust_remote_code(tmp_path) is False
