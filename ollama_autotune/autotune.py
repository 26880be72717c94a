from __future__ import annotations

import logging

from ollama_autotune.config import (
    CORE_BASIS_LOGICAL,
    MODE_ALIASES,
    MODE_POLICIES,
    DerivedConfig,
    ModePolicy,
    Strategy,
    TopologySnapshot,
)
from ollama_autotune.errors import InvalidModeError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def valid_mode_names() -> list[str]:
    return sorted([*MODE_POLICIES, *MODE_ALIASES])


def resolve_policy(mode: str) -> ModePolicy:
    name = (mode or "").strip().lower()
    name = MODE_ALIASES.get(name, name)
    policy = MODE_POLICIES.get(name)
    if policy is None:
        raise InvalidModeError(
            f"Invalid mode '{mode}'. Use: {', '.join(valid_mode_names())}"
        )
    return policy


def _core_basis(policy: ModePolicy, topology: TopologySnapshot) -> int:
    if policy.core_basis == CORE_BASIS_LOGICAL:
        return max(1, topology.logical_cores)
    return max(1, topology.physical_cores)


def _pick(strategy: Strategy, name: str, policy: ModePolicy, default: int) -> int:
    value = strategy.override(name, policy.name)
    return default if value is None else value


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------

def calculate(strategy: Strategy, topology: TopologySnapshot) -> DerivedConfig:
    """
    Derive server parameters for the strategy's mode.

    Per-worker threads come from the cores-per-worker override, or the core
    basis divided by the mode's divisor. Parallelism is the core basis
    divided by per-worker threads. Both are clamped to [1, total] after the
    arithmetic. The thread budget (total minus headroom) is written out as
    ``threads`` but does not feed the division.
    """
    policy = resolve_policy(strategy.mode)
    total = _core_basis(policy, topology)

    headroom = _pick(strategy, "headroom", policy, policy.headroom)
    per_worker = strategy.override("cores_per_worker", policy.name)
    if per_worker is None:
        per_worker = total // policy.thread_divisor
    num_thread = _clamp(per_worker, 1, total)
    num_parallel = _clamp(total // num_thread, 1, total)
    threads = max(1, total - headroom)

    derived = DerivedConfig(
        mode=policy.name,
        core_basis=policy.core_basis,
        total_cores=total,
        headroom=headroom,
        threads=threads,
        num_thread=num_thread,
        num_parallel=num_parallel,
        batch_size=_pick(strategy, "batch_size", policy, policy.batch_size),
        timeout=_pick(strategy, "timeout", policy, policy.timeout_s),
        mmap=True if strategy.mmap is None else strategy.mmap,
    )
    logger.debug("Derived configuration: %s", derived)
    return derived
