"""Shared test fixtures for inference-stack tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from inference_stack.core.models import HardwareSummary
from inference_stack.data.store import ConfigStore


@pytest.fixture
def hw_v100() -> HardwareSummary:
    """Two 16 GB legacy cards, 32 cores, ~31 GiB RAM."""
    return HardwareSummary(
        cpu_cores=32,
        memory_kb=32691216,
        gpu_name="Tesla V100-PCIE-16GB 16GB",
        gpu_count=2,
    )


@pytest.fixture
def hw_a100() -> HardwareSummary:
    """Four 80 GB cards, 64 cores, 250 GiB RAM."""
    return HardwareSummary(
        cpu_cores=64,
        memory_kb=262144000,
        gpu_name="NVIDIA A100 80GB",
        gpu_count=4,
    )


@pytest.fixture
def hw_v100_sxm2() -> HardwareSummary:
    """Two SXM2 V100s as named by nvidia-smi."""
    return HardwareSummary(
        cpu_cores=32,
        memory_kb=32691216,
        gpu_name="Tesla V100-SXM2-16GB",
        gpu_count=2,
    )


@pytest.fixture
def hw_a100_sxm4() -> HardwareSummary:
    """Four SXM4 A100s as named by nvidia-smi."""
    return HardwareSummary(
        cpu_cores=64,
        memory_kb=262144000,
        gpu_name="NVIDIA A100-SXM4-80GB",
        gpu_count=4,
    )


@pytest.fixture
def hw_cpu_only() -> HardwareSummary:
    return HardwareSummary(cpu_cores=8, memory_kb=16 * 1024 * 1024)


@pytest.fixture
def quiet_console() -> Console:
    """Console that records output instead of writing to the terminal."""
    return Console(record=True, width=200, force_terminal=False)


@pytest.fixture
def temp_store(tmp_path):
    """ConfigStore with a temporary SQLite database."""
    store = ConfigStore(db_path=str(tmp_path / "test.db"))
    yield store
    store.close()


@pytest.fixture
def failures_dir(tmp_path) -> Path:
    return tmp_path / "failures"


def make_client(reply: Optional[str] = None, error: Optional[Exception] = None) -> MagicMock:
    """Planner client whose ``generate`` returns ``reply`` or raises ``error``."""
    client = MagicMock()
    client.provider_name = "anthropic"
    client.model = "claude-test"
    if error is not None:
        client.generate.side_effect = error
    else:
        client.generate.return_value = reply or ""
    return client


def json_reply(payload: dict[str, Any], prefix: str = "Here is the plan:\n") -> str:
    """Provider-style reply with the JSON embedded in prose."""
    return prefix + json.dumps(payload) + "\nLet me know if you need anything else."


SAMPLE_RECIPE = """\
install_modes:
  - binary
  - source

decision_matrix:
  default: binary

preconditions:
  - id: has-bash
    tool: shell
    command: echo ready
    expected:
      equals: ready

install:
  binary:
    - id: deps
      intent: install deps
      tool: shell
      command: echo deps > deps.txt
    - id: download
      intent: download release
      tool: shell
      command: echo download > download.txt
    - id: configure
      tool: template
      edit:
        template: templates/app.env.tmpl
        destination: out/app.env
    - id: unit
      intent: write unit file
      tool: shell
      command: mkdir -p out && touch out/app.service
      expected:
        unit: out/app.service
  source:
    - id: clone
      intent: git clone sources
      tool: shell
      command: echo clone > clone.txt
    - id: build
      intent: cmake build
      tool: shell
      command: echo build > build.txt

configuration:
  defaults:
    host: 127.0.0.1
    port: 9000
    flash_attn: false

update:
  script: scripts/update.sh

uninstall:
  script: scripts/uninstall.sh
"""


@pytest.fixture
def modules_root(tmp_path) -> Path:
    """Modules directory holding one module, ``demo``, with a working recipe."""
    root = tmp_path / "modules"
    module = root / "demo"
    (module / "templates").mkdir(parents=True)
    (module / "scripts").mkdir()
    (module / "INSTALL.yaml").write_text(SAMPLE_RECIPE)
    (module / "templates" / "app.env.tmpl").write_text(
        'HOST={{host}}\nPORT={{ port }}\nLOG={{log_level|default("info")}}\nFLASH={{flash_attn}}\n'
    )
    (module / "scripts" / "update.sh").write_text("echo updated > updated.txt\n")
    (module / "scripts" / "uninstall.sh").write_text("echo removed > removed.txt\n")
    (module / "scripts" / "setting.sh").write_text('echo "setting $*"\n')
    (root / "not-a-module").mkdir()
    return root
