"""YAML configuration loader.

Overlays a YAML file on top of an env-derived RelayConfig. Keys map
one-to-one onto RelayConfig fields; unknown keys are logged and ignored.

Example YAML:
    server:
      host: 127.0.0.1
      port: 3100
      password: s3cret

    child:
      claude_command: /usr/local/bin/claude
      wrapper_command: /usr/local/bin/unbuffer

    storage:
      data_dir: ~/claude-mobile
      claude_home: ~/.claude

    defaults:
      default_model: claude-sonnet-4-6
      default_effort: high

    relay:
      live_buffer_capacity: 300
      tool_result_limit: 800

    plan:
      plan_idle_seconds: 2
      plan_prompt_patterns:
        - do you want to proceed
        - "\\(y\\)"
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import RelayConfig

logger = logging.getLogger(__name__)

_PATH_FIELDS = {"data_dir", "claude_home"}


def _flatten(raw: dict[str, Any]) -> dict[str, Any]:
    """Accept both flat keys and one level of grouping sections."""
    known = {f.name for f in fields(RelayConfig)}
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, dict) and key not in known:
            for inner_key, inner_value in value.items():
                flat[inner_key] = inner_value
        else:
            flat[key] = value
    return flat


def apply_overrides(config: RelayConfig, raw: dict[str, Any]) -> RelayConfig:
    """Apply a parsed mapping of overrides to config in place."""
    known = {f.name: f for f in fields(RelayConfig)}
    for key, value in _flatten(raw).items():
        if key not in known:
            logger.warning("yaml config: ignoring unknown key %r", key)
            continue
        if key in _PATH_FIELDS and value is not None:
            value = Path(str(value)).expanduser()
        setattr(config, key, value)
    return config


def load_yaml_config(path: str | Path, base: RelayConfig | None = None) -> RelayConfig:
    """Load a YAML file and overlay it on base (or on RelayConfig.from_env())."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = base if base is not None else RelayConfig.from_env()
    apply_overrides(config, raw)
    logger.info(
        "Parsed YAML config %s — sections: %s",
        path.name, ", ".join(sorted(raw.keys())) or "(empty)",
    )
    return config
