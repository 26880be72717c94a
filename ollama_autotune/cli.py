from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional, Sequence

from ollama_autotune.autotune import calculate, valid_mode_names
from ollama_autotune.config import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_PATH,
    DEFAULT_STRATEGY_PATH,
    STRATEGY_ENV_VAR,
    DerivedConfig,
    TopologySnapshot,
    resolve_path,
)
from ollama_autotune.errors import AutotuneError
from ollama_autotune.service_wiring import InstallOptions, install
from ollama_autotune.strategy import load_strategy
from ollama_autotune.topology import query_topology, snapshot_from_counts
from ollama_autotune.writer import write_config

logger = logging.getLogger("ollama_autotune")

CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
CONSOLE_DATE_FORMAT = "%H:%M:%S"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ollama-autotune",
        description="Derive CPU tuning parameters for Ollama and write them to its config.yaml.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = p.add_subparsers(dest="cmd", required=True)

    apply = sub.add_parser("apply", help="Compute parameters and write them to the config file.")
    _add_tuning_args(apply)

    show = sub.add_parser("show", help="Compute parameters and print them without writing.")
    _add_tuning_args(show)

    inst = sub.add_parser("install", help="Wire the tuner into the ollama systemd service.")
    inst.add_argument("--strategy-file", default=str(DEFAULT_STRATEGY_PATH))
    inst.add_argument("--config-file", default=str(DEFAULT_CONFIG_PATH))
    inst.add_argument(
        "--mode",
        default="balanced",
        choices=valid_mode_names(),
        help="MODE written to a newly created strategy file.",
    )
    inst.add_argument("--root", default="/", help="Install below this directory instead of /.")
    inst.add_argument("--command", help="Command the drop-in runs before Ollama starts.")
    inst.add_argument("--force", action="store_true", help="Overwrite an existing strategy file.")
    inst.add_argument(
        "--guard",
        action="store_true",
        help="Replace /etc/systemd/system/ollama.service with a dead symlink.",
    )
    inst.add_argument("--no-reload", action="store_true", help="Skip systemctl unmask/daemon-reload.")
    inst.add_argument("--restart", action="store_true", help="Restart ollama after installing.")
    return p


def _add_tuning_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--strategy-file",
        help=f"Strategy file (default: ${STRATEGY_ENV_VAR} or {DEFAULT_STRATEGY_PATH}).",
    )
    parser.add_argument(
        "--config-file",
        help=f"Target YAML file (default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument("--physical-cores", type=int, help="Skip lscpu and use this physical core count.")
    parser.add_argument(
        "--logical-cores",
        type=int,
        help="Use this logical core count; physical comes from lscpu unless --physical-cores is set.",
    )


def setup_logging(verbose: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def _topology(args: argparse.Namespace) -> TopologySnapshot:
    if args.physical_cores is not None:
        return snapshot_from_counts(args.physical_cores, args.logical_cores)
    return query_topology(logical=args.logical_cores)


def _derive(args: argparse.Namespace) -> DerivedConfig:
    strategy_path = resolve_path(args.strategy_file, STRATEGY_ENV_VAR, DEFAULT_STRATEGY_PATH)
    strategy = load_strategy(strategy_path)
    logger.info("Mode: %s", strategy.mode)
    return calculate(strategy, _topology(args))


def _cmd_apply(args: argparse.Namespace) -> int:
    derived = _derive(args)
    config_path = resolve_path(args.config_file, CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    write_config(derived, config_path)
    print(json.dumps(asdict(derived), indent=2))
    return 0


def _cmd_show(args: argparse.Namespace) -> int:
    print(json.dumps(asdict(_derive(args)), indent=2))
    return 0


def _cmd_install(args: argparse.Namespace) -> int:
    report = install(
        InstallOptions(
            root=Path(args.root),
            strategy_path=Path(args.strategy_file),
            config_path=Path(args.config_file),
            mode=args.mode,
            autotune_command=args.command,
            force=bool(args.force),
            guard=bool(args.guard),
            reload=not args.no_reload,
            restart=bool(args.restart),
        )
    )
    print(json.dumps(asdict(report), indent=2))
    return 0


def run(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        if args.cmd == "apply":
            return _cmd_apply(args)
        if args.cmd == "show":
            return _cmd_show(args)
        if args.cmd == "install":
            return _cmd_install(args)
    except AutotuneError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return exc.exit_code
    return 2


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
