# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "y", "on"}

_config_cache: Dict[str, Dict[str, Any]] = {}


def get_bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip().lower() in _TRUTHY


def get_str_env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    return default if value is None else str(value).strip()


def get_int_env(name: str, default: int = 0) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning("Invalid integer value for %s: %r, using default %s", name, value, default)
        return default


def replace_env_vars(value: Any) -> Any:
    """Replace ``$NAME`` string values with the matching environment variable."""
    if not isinstance(value, str):
        return value
    if value.startswith("$"):
        return os.getenv(value[1:], value)
    return value


def process_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively resolve environment variable references in a config dict."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = process_dict(value)
        else:
            result[key] = replace_env_vars(value)
    return result


def load_yaml_config(file_path: str) -> Dict[str, Any]:
    """Load and process a YAML configuration file, caching by path.

    A missing file yields an empty dict so that environment-only setups work.
    """
    if not Path(file_path).exists():
        return {}

    if file_path in _config_cache:
        return _config_cache[file_path]

    with open(file_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Invalid config format in {file_path}, expected a mapping")

    processed = process_dict(config)
    _config_cache[file_path] = processed
    return processed


def clear_config_cache() -> None:
    _config_cache.clear()
