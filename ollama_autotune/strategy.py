from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Optional

from ollama_autotune.config import (
    DEFAULT_MODE,
    MODE_ALIASES,
    MODE_POLICIES,
    OVERRIDE_FIELDS,
    Strategy,
)
from ollama_autotune.errors import MissingConfigError, StrategyParseError

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# Minimum accepted value per integer field.
_FIELD_MINIMUM: Dict[str, int] = {
    "headroom": 0,
    "cores_per_worker": 1,
    "timeout": 1,
    "batch_size": 1,
}


def _mode_prefixes() -> Dict[str, str]:
    prefixes = {name.upper() + "_": name for name in MODE_POLICIES}
    for alias, target in MODE_ALIASES.items():
        prefixes[alias.upper() + "_"] = target
    return prefixes


def _unquote(raw: str, where: str) -> str:
    value = raw.strip()
    if value[:1] in ("'", '"'):
        quote = value[0]
        end = value.find(quote, 1)
        if end == -1:
            raise StrategyParseError(f"{where}: unbalanced quote in value {raw.strip()!r}")
        rest = value[end + 1:].strip()
        if rest and not rest.startswith("#"):
            raise StrategyParseError(f"{where}: unexpected text after quoted value: {rest!r}")
        return value[1:end]
    # Unquoted: a '#' preceded by whitespace starts a comment, as in a shell.
    return re.split(r"\s#", raw, maxsplit=1)[0].strip()


def _parse_int(field_name: str, value: str, where: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise StrategyParseError(f"{where}: {field_name} must be an integer, got {value!r}") from exc
    minimum = _FIELD_MINIMUM[field_name]
    if number < minimum:
        raise StrategyParseError(f"{where}: {field_name} must be >= {minimum}, got {number}")
    return number


def _parse_bool(value: str, where: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise StrategyParseError(f"{where}: MMAP must be true or false, got {value!r}")


def parse_strategy(text: str, source: str = "<strategy>") -> Strategy:
    """
    Parse ``KEY=value`` lines into a Strategy.

    Later assignments win, the same as sourcing the file from a shell would.
    Unknown keys are ignored; the mode name is not validated here.
    """
    prefixes = _mode_prefixes()
    mode = DEFAULT_MODE
    globals_: Dict[str, int] = {}
    mmap: Optional[bool] = None
    per_mode: Dict[str, Dict[str, int]] = {}

    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        where = f"{source}:{lineno}"
        if stripped.startswith("export "):
            stripped = stripped[len("export "):].lstrip()
        key, sep, raw_value = stripped.partition("=")
        key = key.strip()
        if not sep or not _KEY_RE.match(key):
            raise StrategyParseError(f"{where}: expected KEY=value, got {line.strip()!r}")
        value = _unquote(raw_value, where)
        upper = key.upper()

        if upper == "MODE":
            # ${MODE:-default}: an empty value counts as unset.
            mode = value.strip() or DEFAULT_MODE
            continue
        if upper == "MMAP":
            mmap = _parse_bool(value, where)
            continue
        field_name = upper.lower()
        if field_name in OVERRIDE_FIELDS:
            globals_[field_name] = _parse_int(field_name, value, where)
            continue

        for prefix, mode_name in prefixes.items():
            suffix = upper[len(prefix):].lower() if upper.startswith(prefix) else ""
            if suffix in OVERRIDE_FIELDS:
                per_mode.setdefault(mode_name, {})[suffix] = _parse_int(suffix, value, where)
                break
        else:
            logger.debug("%s: ignoring unknown key %s", where, key)

    return Strategy(
        mode=mode,
        headroom=globals_.get("headroom"),
        cores_per_worker=globals_.get("cores_per_worker"),
        timeout=globals_.get("timeout"),
        batch_size=globals_.get("batch_size"),
        mmap=mmap,
        mode_overrides=per_mode,
    )


def load_strategy(path: Path) -> Strategy:
    if not path.is_file():
        raise MissingConfigError(f"Config not found at {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise StrategyParseError(f"{path} is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise MissingConfigError(f"Config at {path} is not readable: {exc}") from exc
    strategy = parse_strategy(text, source=str(path))
    logger.debug("Loaded strategy from %s: %s", path, strategy)
    return strategy
