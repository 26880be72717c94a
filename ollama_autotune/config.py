from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

DEFAULT_STRATEGY_PATH = Path("/etc/default/ollama-autotune.conf")
DEFAULT_CONFIG_PATH = Path("/etc/ollama/config.yaml")

STRATEGY_ENV_VAR = "OLLAMA_AUTOTUNE_CONF"
CONFIG_ENV_VAR = "OLLAMA_CONFIG"

CORE_BASIS_PHYSICAL = "physical"
CORE_BASIS_LOGICAL = "logical"

DEFAULT_MODE = "conservative"

# Integer fields a strategy file may override, globally or per mode.
OVERRIDE_FIELDS: tuple[str, ...] = ("headroom", "cores_per_worker", "timeout", "batch_size")


@dataclass(frozen=True, slots=True)
class ModePolicy:
    name: str
    core_basis: str
    headroom: int
    thread_divisor: int
    batch_size: int
    timeout_s: int


# Policy constants. Timeouts run longest for the most conservative mode.
MODE_POLICIES: Dict[str, ModePolicy] = {
    "conservative": ModePolicy(
        name="conservative",
        core_basis=CORE_BASIS_PHYSICAL,
        headroom=4,
        thread_divisor=4,
        batch_size=256,
        timeout_s=180,
    ),
    "balanced": ModePolicy(
        name="balanced",
        core_basis=CORE_BASIS_PHYSICAL,
        headroom=3,
        thread_divisor=6,
        batch_size=512,
        timeout_s=120,
    ),
    "aggressive": ModePolicy(
        name="aggressive",
        core_basis=CORE_BASIS_LOGICAL,
        headroom=2,
        thread_divisor=8,
        batch_size=1024,
        timeout_s=60,
    ),
}

MODE_ALIASES: Dict[str, str] = {"safe": "conservative"}


@dataclass(frozen=True, slots=True)
class Strategy:
    mode: str = DEFAULT_MODE
    headroom: Optional[int] = None
    cores_per_worker: Optional[int] = None
    timeout: Optional[int] = None
    batch_size: Optional[int] = None
    mmap: Optional[bool] = None
    # {"aggressive": {"timeout": 90}} from AGGRESSIVE_TIMEOUT=90
    mode_overrides: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def override(self, name: str, mode: str) -> Optional[int]:
        """Per-mode value first, then the global one, else None."""
        per_mode = self.mode_overrides.get(mode, {})
        if name in per_mode:
            return per_mode[name]
        return getattr(self, name)


@dataclass(frozen=True, slots=True)
class TopologySnapshot:
    physical_cores: int
    logical_cores: int


@dataclass(slots=True)
class DerivedConfig:
    mode: str
    core_basis: str
    total_cores: int
    headroom: int
    threads: int
    num_thread: int
    num_parallel: int
    batch_size: int
    timeout: int
    mmap: bool

    def managed_values(self) -> Dict[str, object]:
        """Keys written into the server's config.yaml, in write order."""
        return {
            "threads": self.threads,
            "num_thread": self.num_thread,
            "num_parallel": self.num_parallel,
            "batch_size": self.batch_size,
            "timeout": self.timeout,
            "mmap": self.mmap,
        }


def resolve_path(explicit: Optional[str], env_var: str, default: Path) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    from_env = os.environ.get(env_var, "").strip()
    if from_env:
        return Path(from_env).expanduser()
    return default
