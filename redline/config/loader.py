"""Config loading and initialization."""

from __future__ import annotations

from dataclasses import asdict, replace
import os
import re
import shutil
from pathlib import Path
from typing import Any

import yaml

from redline.config.schema import AppConfig, parse_config, parse_connection, parse_logging, parse_pool


DEFAULT_CONFIG_PATH = Path(__file__).with_name("defaults.yml")
_ENV_TOKEN_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")
_SECTION_PARSERS = {
    "connection": parse_connection,
    "pool": parse_pool,
    "logging": parse_logging,
}


def load_config(path: Path | None = None) -> AppConfig:
    """Read a YAML config, expanding ``${VAR}`` and ``${VAR:-default}`` tokens.

    Without ``path`` the packaged defaults are used, so every ``REDIS_*``
    variable they reference still applies.
    """
    source = path or DEFAULT_CONFIG_PATH
    if not source.is_file():
        raise FileNotFoundError(f"config file does not exist: {source}")
    raw = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
    return parse_config(_expand_env(raw))


def initialize_config(path: Path, force: bool = False) -> Path:
    """Write the packaged defaults to ``path`` for editing."""
    if path.exists() and not force:
        raise FileExistsError(f"config already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(DEFAULT_CONFIG_PATH, path)
    return path


def apply_overrides(config: AppConfig, section: str, **overrides: Any) -> AppConfig:
    """Return a copy of ``config`` with one section's fields replaced.

    ``None`` values are ignored so unset command-line flags keep the file's
    value. The merged section goes through the same validation as the file.
    """
    parser = _SECTION_PARSERS.get(section)
    if parser is None:
        raise ValueError(f"unknown config section '{section}'")
    merged = asdict(getattr(config, section))
    merged.update({key: value for key, value in overrides.items() if value is not None})
    return replace(config, **{section: parser(merged)})


def _expand_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return _ENV_TOKEN_RE.sub(_env_token, value)
    return value


def _env_token(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    resolved = os.environ.get(name)
    if resolved is not None:
        return resolved
    if default is not None:
        return default
    raise ValueError(f"missing required environment variable '{name}' referenced by '{match.group(0)}'")
