from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Dict, Optional

from ollama_autotune.config import TopologySnapshot
from ollama_autotune.errors import TopologyUnavailableError

logger = logging.getLogger(__name__)

_LSCPU_TIMEOUT_S = 10


def parse_lscpu(text: str) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip()] = value.strip()
    return fields


def _lscpu_int(fields: Dict[str, str], key: str) -> int:
    raw = fields.get(key)
    if raw is None:
        raise TopologyUnavailableError(f"lscpu output has no '{key}' field")
    try:
        value = int(raw)
    except ValueError as exc:
        raise TopologyUnavailableError(f"lscpu reported non-numeric '{key}': {raw!r}") from exc
    if value < 1:
        raise TopologyUnavailableError(f"lscpu reported '{key}' = {value}")
    return value


def physical_cores_from_lscpu(text: str) -> int:
    fields = parse_lscpu(text)
    return _lscpu_int(fields, "Core(s) per socket") * _lscpu_int(fields, "Socket(s)")


def _read_lscpu() -> str:
    lscpu = shutil.which("lscpu")
    if not lscpu:
        raise TopologyUnavailableError("lscpu not found; cannot read CPU inventory")
    env = dict(os.environ, LC_ALL="C")
    try:
        proc = subprocess.run(
            [lscpu],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
            timeout=_LSCPU_TIMEOUT_S,
            env=env,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise TopologyUnavailableError(f"lscpu failed: {exc}") from exc
    if proc.returncode != 0:
        raise TopologyUnavailableError(
            f"lscpu exited with {proc.returncode}: {proc.stderr.strip()}"
        )
    return proc.stdout


def _schedulable_cpus() -> Optional[int]:
    # Same count nproc reports: CPUs this process may run on.
    if hasattr(os, "sched_getaffinity"):
        try:
            return len(os.sched_getaffinity(0))
        except OSError:
            pass
    return os.cpu_count()


def snapshot_from_counts(physical: int, logical: Optional[int] = None) -> TopologySnapshot:
    if physical < 1:
        raise TopologyUnavailableError(f"physical core count must be >= 1, got {physical}")
    if logical is None:
        logical = physical
    if logical < 1:
        raise TopologyUnavailableError(f"logical core count must be >= 1, got {logical}")
    if logical < physical:
        logger.warning(
            "Logical cores (%d) below physical cores (%d); using %d for both",
            logical, physical, physical,
        )
        logical = physical
    return TopologySnapshot(physical_cores=physical, logical_cores=logical)


def query_physical_cores() -> int:
    return physical_cores_from_lscpu(_read_lscpu())


def query_topology(logical: Optional[int] = None) -> TopologySnapshot:
    """Read the host inventory; ``logical`` replaces the schedulable CPU count."""
    physical = query_physical_cores()
    if logical is None:
        logical = _schedulable_cpus()
    if logical is None:
        raise TopologyUnavailableError("could not determine the number of schedulable CPUs")
    snapshot = snapshot_from_counts(physical, logical)
    logger.info(
        "System Info: %d physical cores, %d logical cores",
        snapshot.physical_cores, snapshot.logical_cores,
    )
    return snapshot
