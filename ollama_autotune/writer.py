from __future__ import annotations

import io
import logging
import shutil
from collections.abc import MutableMapping
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.error import YAMLError

from ollama_autotune.config import DerivedConfig
from ollama_autotune.errors import WriteError

logger = logging.getLogger(__name__)


def _yaml() -> YAML:
    # Round-trip mode keeps comments, key order and scalars as written.
    yaml = YAML(typ="rt")
    yaml.preserve_quotes = True
    yaml.default_flow_style = False
    return yaml


def _load_document(path: Path) -> MutableMapping[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        logger.warning("%s is not valid UTF-8 (%s); starting from an empty document", path, exc)
        _backup_corrupt(path)
        return CommentedMap()
    try:
        data = _yaml().load(text)
    except YAMLError as exc:
        logger.warning("%s is not valid YAML (%s); starting from an empty document", path, exc)
        _backup_corrupt(path)
        return CommentedMap()
    if data is None:
        return CommentedMap()
    if not isinstance(data, MutableMapping):
        logger.warning("%s does not hold a mapping; starting from an empty document", path)
        _backup_corrupt(path)
        return CommentedMap()
    return data


def _backup_corrupt(path: Path) -> None:
    backup = path.with_suffix(path.suffix + ".corrupt")
    shutil.copyfile(path, backup)
    logger.warning("Saved the previous contents to %s", backup)


def render_document(document: MutableMapping[str, Any]) -> str:
    buf = io.StringIO()
    _yaml().dump(document, buf)
    return buf.getvalue()


def write_config(derived: DerivedConfig, path: Path) -> MutableMapping[str, Any]:
    """
    Set the managed keys in the YAML file at ``path``.

    The parent directory and the file are created if missing; keys this tool
    does not manage keep their text, order and comments.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch(exist_ok=True)
        document = _load_document(path)
        for key, value in derived.managed_values().items():
            document[key] = value

        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(render_document(document), encoding="utf-8")
        tmp.replace(path)
    except OSError as exc:
        raise WriteError(f"Cannot write configuration to {path}: {exc}") from exc

    logger.info("Configuration applied to %s", path)
    return document
