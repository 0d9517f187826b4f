"""Resolution of locally downloaded models."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from inference_stack.core.errors import ModelNotFoundError, StackError

GGUF_PREFERENCE = (
    "q4_k_m",
    "q4_k_s",
    "q5_k_m",
    "q5_k_s",
    "q5",
    "q6_k",
    "q6",
    "q8_0",
    "q8",
)


@dataclass
class ModelMetadata:
    id: str = ""
    source: str = ""


def model_dir_name(model_id: str) -> str:
    return model_id.strip().replace("/", "_")


def resolve_model_dir(models_root: Path, model_ref: str) -> Path:
    """Return the directory holding ``model_ref``.

    ``model_ref`` is either a path to a model directory or a model id
    stored under ``models_root`` with "/" replaced by "_".

    Raises:
        ModelNotFoundError: If neither exists.
    """
    ref = model_ref.strip()
    if not ref:
        raise ModelNotFoundError("model id is required")
    direct = Path(ref).expanduser()
    if direct.is_dir():
        return direct
    stored = Path(models_root) / model_dir_name(ref)
    if stored.is_dir():
        return stored
    raise ModelNotFoundError(f"local model not found: {ref} (looked in {models_root})")


def find_files(model_dir: Path, suffix: str) -> list[Path]:
    """All files under ``model_dir`` with ``suffix`` (case-insensitive), sorted."""
    suffix = suffix.lower()
    found = []
    for root, _dirs, files in os.walk(model_dir):
        for name in files:
            if name.lower().endswith(suffix):
                found.append(Path(root) / name)
    return sorted(found)


def _smallest(files: list[Path]) -> Optional[Path]:
    best, best_size = None, 0
    for path in files:
        try:
            size = path.stat().st_size
        except OSError:
            continue
        if best is None or size < best_size:
            best, best_size = path, size
    return best


def select_gguf_file(
    model_dir: Path, files: list[Path], selected: str = ""
) -> tuple[Path, bool]:
    """Pick the GGUF file to run; returns (path, auto_selected).

    An explicit ``selected`` name wins. Otherwise the first quantization
    tier in GGUF_PREFERENCE with a match is used, smallest file first.
    """
    if selected:
        path = Path(selected)
        if not path.is_absolute():
            path = Path(model_dir) / selected
        if not path.exists():
            raise ModelNotFoundError(f"GGUF file not found: {path}")
        if path.suffix.lower() != ".gguf":
            raise StackError(f"selected file is not a GGUF model: {path}")
        return path, False

    for tier in GGUF_PREFERENCE:
        candidates = [f for f in files if tier in f.name.lower()]
        if candidates:
            best = _smallest(candidates)
            if best is not None:
                return best, True
    best = _smallest(files)
    if best is None:
        raise ModelNotFoundError("no GGUF files available to run")
    return best, True


def has_vllm_config(model_dir: Path) -> bool:
    model_dir = Path(model_dir)
    return (model_dir / "config.json").exists() or (model_dir / "params.json").exists()


def read_model_metadata(model_dir: Path) -> ModelMetadata:
    path = Path(model_dir) / "metadata.json"
    try:
        raw = path.read_text()
    except OSError as e:
        raise ModelNotFoundError(f"missing metadata.json at {path}") from e
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StackError(f"failed to parse metadata.json: {e}") from e
    if not isinstance(data, dict):
        raise StackError("failed to parse metadata.json: expected an object")
    return ModelMetadata(
        id=str(data.get("id") or "").strip(),
        source=str(data.get("source") or "").strip(),
    )
