"""YAML configuration loader.

Overlays a single YAML file on top of the environment-derived
AgentConfig. When no YAML is provided, env vars work exactly as before.

Example YAML:
    agent:
      executable: qwen
      subcommand: exec
      prompt_flag: ""          # send the prompt on stdin
      model_flag: -m
      image_flag: -i
      extra_args: ["--skip-git-repo-check"]
      tool_marker: qwen
      response_timeout_seconds: 90

    storage:
      home_dir: ~/.agentwire
"""
from __future__ import annotations

import logging
import shlex
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import AgentConfig

logger = logging.getLogger(__name__)

_STORAGE_KEYS = {"home_dir", "temp_subdir"}


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Coerce a YAML scalar/list to the type of the existing field."""
    if name == "extra_args" and isinstance(value, (list, tuple)):
        return " ".join(shlex.quote(str(v)) for v in value)
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if value is None:
        return ""
    return str(value)


def apply_overrides(config: AgentConfig, overrides: dict[str, Any]) -> AgentConfig:
    """Apply a mapping of field overrides in place; unknown keys are logged."""
    known = {f.name for f in fields(AgentConfig)}
    for key, value in overrides.items():
        if key not in known:
            logger.warning("Ignoring unknown config key: %s", key)
            continue
        current = getattr(config, key)
        try:
            setattr(config, key, _coerce(key, value, current))
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid value for %s (%r): %s", key, value, exc)
    return config


def load_yaml_config(
    path: str | Path,
    base: AgentConfig | None = None,
) -> AgentConfig:
    """Load a YAML file and overlay it on ``base`` (default: from_env())."""
    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = base if base is not None else AgentConfig.from_env()

    agent_raw = raw.get("agent") or {}
    storage_raw = raw.get("storage") or {}
    for section, name in ((agent_raw, "agent"), (storage_raw, "storage")):
        if not isinstance(section, dict):
            raise ValueError(f"Section '{name}' in {path} must be a mapping")

    unexpected = sorted(k for k in storage_raw if k not in _STORAGE_KEYS)
    for key in unexpected:
        logger.warning("Ignoring unknown storage key: %s", key)

    apply_overrides(config, agent_raw)
    apply_overrides(
        config, {k: v for k, v in storage_raw.items() if k in _STORAGE_KEYS}
    )

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw.keys())) or "(empty)",
    )
    return config
