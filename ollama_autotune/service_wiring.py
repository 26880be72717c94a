from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ollama_autotune.config import DEFAULT_CONFIG_PATH, DEFAULT_STRATEGY_PATH
from ollama_autotune.errors import ServiceWiringError, WriteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "ollama.service"
# Written by the server's own installer; takes precedence over the vendor dir.
PRIVILEGED_UNIT_PATH = Path("/etc/systemd/system") / SERVICE_NAME
STANDARD_UNIT_PATH = Path("/usr/lib/systemd/system") / SERVICE_NAME
DROP_IN_PATH = Path("/etc/systemd/system/ollama.service.d/10-autotune.conf")
# /dev/null is not a directory, so nothing can ever be written through this link.
GUARD_TARGET = Path("/dev/null") / SERVICE_NAME
DEFAULT_AUTOTUNE_COMMAND = "/usr/local/bin/ollama-autotune"

DEFAULT_STRATEGY_TEXT = """\
# =====================================================================
# Ollama Auto-Tuner Configuration
# =====================================================================
# This file controls how Ollama is tuned for your hardware.
#
# MODES:
#   conservative - Stable production settings (alias: safe)
#   balanced     - Good balance between throughput and reliability
#   aggressive   - Maximize throughput on all hardware threads
#
# Optional overrides, for every mode or one mode only:
#   HEADROOM=4  CORES_PER_WORKER=2  TIMEOUT=120  BATCH_SIZE=512  MMAP=true
#   AGGRESSIVE_TIMEOUT=90
#
# Edit MODE to change tuning strategy, then restart Ollama:
#   sudo systemctl restart ollama
# =====================================================================

MODE="{mode}"
"""

BASE_UNIT_TEXT = """\
[Unit]
Description=Ollama Service
After=network-online.target

[Service]
ExecStart=/usr/local/bin/ollama serve
User=ollama
Group=ollama
Restart=always
RestartSec=3
Environment="PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

[Install]
WantedBy=default.target
"""

DROP_IN_TEXT = """\
[Service]
Environment="OLLAMA_CONFIG={config_env}"
Nice=-5

# Run autotune before starting Ollama
ExecStartPre=+{command} apply --strategy-file {strategy_arg} --config-file {config_arg}
"""


@dataclass(slots=True)
class InstallOptions:
    root: Path = Path("/")
    strategy_path: Path = DEFAULT_STRATEGY_PATH
    config_path: Path = DEFAULT_CONFIG_PATH
    mode: str = "balanced"
    autotune_command: Optional[str] = None
    force: bool = False
    guard: bool = False
    reload: bool = True
    restart: bool = False


@dataclass(slots=True)
class InstallReport:
    actions: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        logger.info(message)
        self.actions.append(message)


def _under(root: Path, path: Path) -> Path:
    return root / path.relative_to(path.anchor)


def _run(cmd: list[str], timeout_s: int = 120) -> tuple[int, str]:
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout_s,
            check=False,
        )
        return proc.returncode, proc.stdout or ""
    except (OSError, subprocess.TimeoutExpired) as exc:
        return 1, str(exc)


def _write_text(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise WriteError(f"Cannot write {path}: {exc}") from exc


def _autotune_command(options: InstallOptions) -> str:
    if options.autotune_command:
        return options.autotune_command
    return shutil.which("ollama-autotune") or DEFAULT_AUTOTUNE_COMMAND


def _ensure_strategy_file(options: InstallOptions, report: InstallReport) -> None:
    target = _under(options.root, options.strategy_path)
    if target.exists() and not options.force:
        report.add(f"Kept existing strategy file {target}")
        return
    _write_text(target, DEFAULT_STRATEGY_TEXT.format(mode=options.mode))
    report.add(f"Wrote strategy file {target} (MODE={options.mode})")


def _ensure_unit_location(options: InstallOptions, report: InstallReport) -> None:
    privileged = _under(options.root, PRIVILEGED_UNIT_PATH)
    standard = _under(options.root, STANDARD_UNIT_PATH)
    if privileged.is_symlink():
        report.add(f"{privileged} is already blocked")
    elif privileged.is_file():
        try:
            standard.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(privileged), str(standard))
        except OSError as exc:
            raise WriteError(f"Cannot move {privileged} to {standard}: {exc}") from exc
        report.add(f"Moved {privileged} to {standard}")
        return
    if standard.is_file():
        report.add(f"Service file already at {standard}")
        return
    _write_text(standard, BASE_UNIT_TEXT)
    report.add(f"Created service file {standard}")


def _systemd_escape(value: str) -> str:
    # Escapes for a double-quoted unit-file word; % starts a specifier.
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("%", "%%")


def _systemd_quote(value: str) -> str:
    return f"\"{_systemd_escape(value)}\""


def _exec_word(value: str) -> str:
    if any(ch.isspace() or ch in "\"'\\" for ch in value):
        return _systemd_quote(value)
    return value.replace("%", "%%")


def _ensure_drop_in(options: InstallOptions, report: InstallReport) -> None:
    target = _under(options.root, DROP_IN_PATH)
    text = DROP_IN_TEXT.format(
        command=_exec_word(_autotune_command(options)),
        config_env=_systemd_escape(str(options.config_path)),
        strategy_arg=_systemd_quote(str(options.strategy_path)),
        config_arg=_systemd_quote(str(options.config_path)),
    )
    _write_text(target, text)
    report.add(f"Wrote systemd drop-in {target}")


def _guard_privileged_path(options: InstallOptions, report: InstallReport) -> None:
    privileged = _under(options.root, PRIVILEGED_UNIT_PATH)
    if privileged.is_symlink() and Path(os.readlink(privileged)) == GUARD_TARGET:
        return
    try:
        if privileged.is_symlink() or privileged.exists():
            privileged.unlink()
        privileged.parent.mkdir(parents=True, exist_ok=True)
        privileged.symlink_to(GUARD_TARGET)
    except OSError as exc:
        raise WriteError(f"Cannot block {privileged}: {exc}") from exc
    report.add(f"Blocked {privileged} with a dead symlink to {GUARD_TARGET}")


def _systemctl(args: list[str], report: InstallReport, strict: bool = True) -> None:
    systemctl = shutil.which("systemctl")
    if not systemctl:
        raise ServiceWiringError("systemctl not found; is this a systemd host?")
    code, out = _run([systemctl, *args])
    if code != 0:
        if strict:
            raise ServiceWiringError(f"systemctl {' '.join(args)} failed: {out.strip()}")
        logger.debug("systemctl %s exited with %d: %s", " ".join(args), code, out.strip())
        return
    report.add(f"systemctl {' '.join(args)}")


def install(options: InstallOptions) -> InstallReport:
    """
    Wire the tuner into systemd so it runs before every Ollama start.

    A unit the server's installer dropped into /etc/systemd/system is moved to
    the vendor directory, and a drop-in adds the ExecStartPre hook. With
    ``guard`` the installer-writable path is replaced by a dead symlink.
    """
    live = options.root == Path("/")
    if live and hasattr(os, "geteuid") and os.geteuid() != 0:
        raise ServiceWiringError("install must be run as root. Please use sudo.")

    report = InstallReport()
    _ensure_strategy_file(options, report)
    _ensure_unit_location(options, report)
    _ensure_drop_in(options, report)
    if options.guard:
        _guard_privileged_path(options, report)

    if not (live and options.reload):
        return report
    _systemctl(["unmask", SERVICE_NAME], report, strict=False)
    _systemctl(["daemon-reload"], report)
    if options.restart:
        _systemctl(["restart", SERVICE_NAME], report)
    return report
