"""Process configuration, read once at CLI startup.

Planner toggles are turned into PlannerSettings values here and passed
down explicitly; nothing below the CLI reads the environment for them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

ENV_PREFIX = "INFERENCE_STACK_"
DEFAULT_PLANNER_TIMEOUT = 30

_TRUTHY = {"1", "true", "yes", "on"}


def is_truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class PlannerSettings:
    """Per-call behaviour of one refinement call site."""

    enabled: bool = True
    debug: bool = False
    strict: bool = False
    dry_run: bool = False


@dataclass
class Settings:
    home: Path
    modules_dir: Path
    planner_model: str = ""
    planner_timeout: int = DEFAULT_PLANNER_TIMEOUT
    install_planner: PlannerSettings = field(default_factory=PlannerSettings)
    config_planner: PlannerSettings = field(default_factory=PlannerSettings)
    smart_run: PlannerSettings = field(default_factory=PlannerSettings)
    failure_debug: bool = False
    llama_server_bin: str = ""
    vllm_bin: str = ""

    @property
    def failures_dir(self) -> Path:
        return self.home / "failures"

    @property
    def config_plans_dir(self) -> Path:
        return self.home / "config-plans"

    @property
    def models_dir(self) -> Path:
        return self.home / "models"

    @property
    def db_path(self) -> Path:
        return self.home / "data.db"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> str:
            return env.get(ENV_PREFIX + name, "").strip()

        home = Path(get("HOME") or Path.home() / ".inference-stack").expanduser()
        modules_dir = Path(get("MODULES_DIR") or Path.cwd() / "modules").expanduser()

        timeout = DEFAULT_PLANNER_TIMEOUT
        raw_timeout = get("PLANNER_TIMEOUT")
        if raw_timeout:
            try:
                timeout = max(1, int(raw_timeout))
            except ValueError:
                timeout = DEFAULT_PLANNER_TIMEOUT

        return cls(
            home=home,
            modules_dir=modules_dir,
            planner_model=get("MODEL"),
            planner_timeout=timeout,
            install_planner=PlannerSettings(
                debug=is_truthy(get("INSTALL_PLANNER_DEBUG")),
                strict=is_truthy(get("INSTALL_PLANNER_STRICT")),
            ),
            config_planner=PlannerSettings(
                debug=is_truthy(get("CONFIG_PLANNER_DEBUG")),
                strict=is_truthy(get("CONFIG_PLANNER_STRICT")),
            ),
            smart_run=PlannerSettings(
                debug=is_truthy(get("SMART_RUN_DEBUG")),
                strict=is_truthy(get("SMART_RUN_STRICT")),
            ),
            failure_debug=is_truthy(get("FAILURE_DEBUG")),
            llama_server_bin=get("LLAMA_SERVER_BIN"),
            vllm_bin=get("VLLM_BIN"),
        )
