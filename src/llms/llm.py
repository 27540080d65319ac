# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from langchain_openai import ChatOpenAI

from src.config.loader import get_str_env, load_yaml_config

logger = logging.getLogger(__name__)

LLMType = Literal["basic", "analysis"]

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-3-mini"

_llm_cache: dict[LLMType, ChatOpenAI] = {}

# Conversation replies are sampled; analysis must be deterministic.
_DEFAULT_TEMPERATURE: Dict[LLMType, float] = {"basic": 0.7, "analysis": 0.0}


def _get_config_file_path() -> str:
    return str((Path(__file__).parent.parent.parent / "conf.yaml").resolve())


def _get_env_llm_conf(llm_type: str) -> Dict[str, Any]:
    """Read ``BASIC_MODEL__<key>`` style overrides from the environment."""
    prefix = f"{llm_type.upper()}_MODEL__"
    conf: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith(prefix):
            conf[key[len(prefix):].lower()] = value
    return conf


def _create_llm(llm_type: LLMType, model: Optional[str], conf: Dict[str, Any]) -> ChatOpenAI:
    basic = conf.get("BASIC_MODEL") or {}
    section = conf.get(f"{llm_type.upper()}_MODEL") or {}
    if not isinstance(basic, dict) or not isinstance(section, dict):
        raise ValueError(f"Invalid LLM configuration for {llm_type}")

    # Role sections inherit connection settings from BASIC_MODEL.
    merged = {**basic, **_get_env_llm_conf("basic"), **section, **_get_env_llm_conf(llm_type)}
    api_key = merged.get("api_key") or get_str_env("XAI_API_KEY")
    if not api_key:
        raise ValueError("Missing API key for chat model; set XAI_API_KEY or BASIC_MODEL__api_key")

    model_name = model or merged.get("model") or get_str_env("CHAT_MODEL", DEFAULT_MODEL)
    temperature = float(merged.get("temperature", _DEFAULT_TEMPERATURE[llm_type]))
    return ChatOpenAI(
        model=model_name,
        base_url=merged.get("base_url") or DEFAULT_BASE_URL,
        api_key=api_key,
        temperature=temperature,
    )


def get_llm_by_type(llm_type: LLMType, model: Optional[str] = None) -> ChatOpenAI:
    """Return the chat model for the given role.

    Only the configured model is cached. A caller-supplied ``model`` builds an
    uncached instance so request input cannot grow the cache.
    """
    if model is None and llm_type in _llm_cache:
        return _llm_cache[llm_type]

    conf = load_yaml_config(_get_config_file_path())
    llm = _create_llm(llm_type, model, conf)
    if model is None:
        _llm_cache[llm_type] = llm
    logger.debug("Created %s LLM with model %s", llm_type, llm.model_name)
    return llm
