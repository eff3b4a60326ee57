"""
Decode policy config text (TOML, or JSON for tooling) into a validated PermbotConfig.

Uniqueness is checked here rather than in the compiler: duplicate namespaces, duplicate role
names and a project assigning the same role twice all generate colliding object names, so they
are rejected before anything is compiled.
"""

from __future__ import annotations

import json
import logging
import tomllib
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from permbot.core.errors import ConfigDecodeError
from permbot.core.models import PermbotConfig

logger = logging.getLogger(__name__)


def _duplicates(values: Iterable[str]) -> List[str]:
    return sorted(v for v, n in Counter(values).items() if n > 1)


def validate_config(cfg: PermbotConfig) -> PermbotConfig:
    problems: List[str] = []

    dup_ns = _duplicates(cfg.namespaces())
    if dup_ns:
        problems.append(f"duplicate project namespaces: {', '.join(dup_ns)}")

    dup_roles = _duplicates(r.name for r in cfg.roles)
    if dup_roles:
        problems.append(f"duplicate role names: {', '.join(dup_roles)}")

    for project in cfg.projects:
        dup_assign = _duplicates(ru.role for ru in project.role_assignments)
        if dup_assign:
            problems.append(f"namespace {project.namespace} assigns roles more than once: {', '.join(dup_assign)}")

    if problems:
        raise ConfigDecodeError("; ".join(problems))
    return cfg


def config_from_dict(data: Dict[str, Any]) -> PermbotConfig:
    try:
        cfg = PermbotConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigDecodeError(f"invalid permbot config: {e}") from e
    return validate_config(cfg)


def decode_config(text: Union[str, bytes], *, fmt: str = "toml") -> PermbotConfig:
    """
    Decode config text. `fmt` is "toml" (default) or "json".
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ConfigDecodeError(f"config is not valid UTF-8: {e}") from e
    try:
        if fmt == "json":
            data = json.loads(text)
        elif fmt == "toml":
            data = tomllib.loads(text)
        else:
            raise ConfigDecodeError(f"unsupported config format: {fmt}")
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise ConfigDecodeError(f"unable to parse {fmt} config: {e}") from e
    if not isinstance(data, dict):
        raise ConfigDecodeError("config root must be a table/object")
    cfg = config_from_dict(data)
    logger.debug("decoded config with %d projects, %d roles", len(cfg.projects), len(cfg.roles))
    return cfg


def load_config_file(path: Union[str, Path], *, fmt: Optional[str] = None) -> PermbotConfig:
    """Load a config file; format follows the extension (.json -> json, anything else -> toml)."""
    p = Path(path)
    if fmt is None:
        fmt = "json" if p.suffix.lower() == ".json" else "toml"
    try:
        text = p.read_bytes()
    except OSError as e:
        raise ConfigDecodeError(f"unable to open config {p}: {e}") from e
    return decode_config(text, fmt=fmt)
