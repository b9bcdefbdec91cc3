from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .command import Command, CommandRunner

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
QUANT = "Q4_K_M"


@dataclass(frozen=True)
class HardwareProfile:
    chip: str
    memory_gb: int
    is_apple_silicon: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"chip": self.chip, "memory_gb": self.memory_gb, "is_apple_silicon": self.is_apple_silicon}


@dataclass(frozen=True)
class Recommendation:
    tier: str
    model: str
    quant: str
    rationale: str

    @property
    def display_name(self) -> str:
        """Catalog key, e.g. "Qwen 3 14B Q4_K_M"."""
        return f"{self.model} {self.quant}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "model": self.display_name,
            "quant": self.quant,
            "rationale": self.rationale,
        }


def _sysctl(runner: CommandRunner, key: str) -> Optional[str]:
    r = runner.run(Command.of("sysctl", "-n", key, login_shell=False))
    if not r.ok or not r.first_line:
        return None
    return r.first_line


def _sysconf_memory() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return 0


def detect_hardware(runner: Optional[CommandRunner] = None) -> HardwareProfile:
    """Chip name and installed memory (whole GiB, rounded down)."""

    runner = runner or CommandRunner()

    mem_bytes = 0
    raw_mem = _sysctl(runner, "hw.memsize")
    if raw_mem and raw_mem.isdigit():
        mem_bytes = int(raw_mem)
    if not mem_bytes:
        mem_bytes = _sysconf_memory()

    chip = _sysctl(runner, "machdep.cpu.brand_string") or platform.processor() or "Unknown"
    is_apple = platform.system() == "Darwin" and platform.machine() == "arm64"

    hw = HardwareProfile(chip=chip, memory_gb=mem_bytes // GIB, is_apple_silicon=is_apple)
    logger.info("Hardware: chip=%s memory=%sGB apple_silicon=%s", hw.chip, hw.memory_gb, hw.is_apple_silicon)
    return hw


def recommend(hw: HardwareProfile) -> Recommendation:
    gb = hw.memory_gb
    if gb < 16:
        return Recommendation(
            tier="Starter",
            model="Qwen 3 8B",
            quant=QUANT,
            rationale=f"{gb}GB of memory fits an 8B model with room left for the system.",
        )
    if gb < 32:
        return Recommendation(
            tier="Balanced",
            model="Qwen 3 14B",
            quant=QUANT,
            rationale=f"{gb}GB of memory runs a 14B model comfortably.",
        )
    return Recommendation(
        tier="Power",
        model="Qwen 3 32B",
        quant=QUANT,
        rationale=f"{gb}GB of memory can hold a 32B model.",
    )
