"""Hardware summary loading.

Reads a previously collected system report and reduces it to a
HardwareSummary. Several historical report formats are accepted; any
read or parse problem yields an all-zero summary instead of an error.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from inference_stack.core.models import HardwareSummary

logger = logging.getLogger(__name__)

LEGACY_GPU_MARKERS = ("v100", "p100", "p40", "p4", "k80", "k40", "m60")

_MEMORY_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([kmgt]?i?b|bytes?)", re.IGNORECASE)
_VRAM_RE = re.compile(r"(\d+)\s*gb", re.IGNORECASE)
_CORES_RE = re.compile(r"-\s*Cores\s*:\s*(\d+)", re.IGNORECASE)
_TOTAL_KB_RE = re.compile(r"-\s*Total\s*:\s*(\d+)\s*kB", re.IGNORECASE)
_GPU_BULLET_RE = re.compile(r"-\s*GPU(?:\s*\([^)]+\))?\s*:\s*([^\n#]+)", re.IGNORECASE)

_KB_PER_UNIT = {
    "kb": 1,
    "kib": 1,
    "mb": 1024,
    "mib": 1024,
    "gb": 1024 ** 2,
    "gib": 1024 ** 2,
    "tb": 1024 ** 3,
    "tib": 1024 ** 3,
}


def resolve_hardware_path(home: Path) -> Path:
    """Return the first existing report under ``home``; default to the JSON one."""
    primary = home / "base_info.json"
    for candidate in (primary, home / "base_info.md"):
        if candidate.is_file():
            return candidate
    return primary


def load_hardware_summary(path: Path) -> HardwareSummary:
    try:
        raw = Path(path).read_text(errors="replace")
    except OSError as e:
        logger.debug("Hardware report unreadable at %s: %s", path, e)
        return HardwareSummary()

    try:
        summary = _parse_json_summary(raw)
        if summary is None:
            summary = _parse_markdown_summary(raw)
    except Exception:
        logger.debug("Hardware report at %s could not be parsed", path, exc_info=True)
        return HardwareSummary()
    return summary


def parse_memory_to_kb(value: str) -> int:
    text = (value or "").strip()
    if not text:
        return 0
    match = _MEMORY_RE.search(text)
    if not match:
        return 0
    number = float(match.group(1))
    unit = match.group(2).lower()
    if unit in ("b", "byte", "bytes"):
        return int(number / 1024)
    factor = _KB_PER_UNIT.get(unit)
    if factor is None:
        return 0
    return int(number * factor)


def parse_vram_gb(gpu_name: str) -> int:
    match = _VRAM_RE.search(gpu_name or "")
    return int(match.group(1)) if match else 0


def is_legacy_gpu(gpu_name: str) -> bool:
    name = (gpu_name or "").lower()
    return any(marker in name for marker in LEGACY_GPU_MARKERS)


# ── JSON reports ─────────────────────────────────────────────────────


def _parse_json_summary(raw: str) -> Optional[HardwareSummary]:
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    cpu = data.get("cpu")
    if isinstance(cpu, dict):
        summary = _summary_from(_as_int(cpu.get("cores")), data.get("memory"), data.get("gpu"))
        if summary is not None:
            return summary

    return _summary_from(
        _as_int(data.get("cpu_cores")), data.get("memory_total"), data.get("gpu")
    )


def _summary_from(cores: int, memory: Any, gpu: Any) -> Optional[HardwareSummary]:
    gpu_text = gpu if isinstance(gpu, str) else ""
    memory_kb = parse_memory_to_kb(memory) if isinstance(memory, str) else 0
    entries = _split_gpu_entries(gpu_text)
    if cores <= 0 and memory_kb <= 0 and not entries and not gpu_text.strip():
        return None
    return HardwareSummary(
        cpu_cores=max(cores, 0),
        memory_kb=memory_kb,
        gpu_name=entries[0] if entries else "",
        gpu_count=len(entries),
    )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


# ── Markdown reports ─────────────────────────────────────────────────


def _parse_markdown_summary(content: str) -> HardwareSummary:
    cpu_section = _markdown_section(content, "CPU")
    memory_section = _markdown_section(content, "Memory")
    gpu_section = _markdown_section(content, "GPU")

    cores = _first_int(_CORES_RE, cpu_section) or _first_int(_CORES_RE, content)
    memory_kb = _first_int(_TOTAL_KB_RE, memory_section) or _first_int(_TOTAL_KB_RE, content)

    entries = _section_gpu_entries(gpu_section)
    if not entries:
        entries = _bullet_gpu_entries(content)

    gpu_name = entries[0] if entries else ""
    gpu_count = len(entries)
    if gpu_count == 0 and gpu_name:
        gpu_count = 1
    return HardwareSummary(
        cpu_cores=cores, memory_kb=memory_kb, gpu_name=gpu_name, gpu_count=gpu_count
    )


def _markdown_section(content: str, name: str) -> str:
    pattern = re.compile(
        r"###\s*" + re.escape(name) + r"\b(.*?)(?:\n###\s|\n##\s)",
        re.IGNORECASE | re.DOTALL,
    )
    match = pattern.search(content)
    if match:
        return match.group(1).strip()
    # Malformed reports sometimes lose the line breaks between sections.
    inline = re.compile(
        r"###\s*" + re.escape(name) + r"\b(.*?)(?:###|##|\Z)",
        re.IGNORECASE | re.DOTALL,
    )
    match = inline.search(content)
    return match.group(1).strip() if match else ""


def _first_int(pattern: re.Pattern, content: str) -> int:
    match = pattern.search(content or "")
    return int(match.group(1)) if match else 0


def _section_gpu_entries(section: str) -> list[str]:
    if not section.strip():
        return []
    entries = _bullet_gpu_entries(section)
    for line in section.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", "-")):
            continue
        if stripped.lower() == "gpu" or "gpu:" in stripped.lower():
            continue
        _add_gpu_entry(entries, stripped)
    return entries


def _bullet_gpu_entries(content: str) -> list[str]:
    entries: list[str] = []
    for match in _GPU_BULLET_RE.finditer(content or ""):
        _add_gpu_entry(entries, match.group(1))
    return entries


def _split_gpu_entries(raw: str) -> list[str]:
    entries: list[str] = []
    for candidate in re.split(r"[\n;]", raw or ""):
        _add_gpu_entry(entries, candidate)
    return entries


def _add_gpu_entry(entries: list[str], value: str) -> None:
    name = value.strip()
    for marker in ("###", "##"):
        idx = name.find(marker)
        if idx >= 0:
            name = name[:idx].strip()
    if not name or name.lower().startswith("unknown"):
        return
    entries.append(name)
