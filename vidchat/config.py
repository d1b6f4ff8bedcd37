"""
Config loader for vidchat.
Reads config.yaml once at startup. All other modules import from here.
${ENV_VAR} references anywhere in the file are resolved from the environment
(.env is loaded first), so API keys never have to live in the YAML.
"""

import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant. Give accurate, useful answers."

# Used when config.yaml is missing; every section the code reads is present.
DEFAULTS: dict = {
    "providers": {
        "primary": {
            "url": "https://dashscope.aliyuncs.com/compatible-mode/v1",
            "api_key": "${DASHSCOPE_API_KEY}",
            "model": "qwen-omni-turbo",
            "timeout": 120,
            "buffered": False,
        },
        "secondary": {
            "url": "https://ark.cn-beijing.volces.com/api/v3",
            "api_key": "${VOLCENGINE_API_KEY}",
            "model": "${VOLCENGINE_MODEL}",
            "timeout": 120,
            "buffered": False,
        },
    },
    "relay": {
        "enabled": False,
        "url": "http://localhost:8767/proxy",
        "host": "127.0.0.1",
        "port": 8767,
        "timeout": 120,
        "allowed_hosts": ["dashscope.aliyuncs.com", "ark.cn-beijing.volces.com"],
    },
    "conversation": {
        "stream": True,
        "auto_switch_by_round": True,
        "auto_failover": True,
        "secondary_failure_limit": 2,
        "turn_timeout": 0,
        "reasoning": True,
        "include_subtitles": True,
    },
    "prompts": {
        "active": "default",
        "templates": {"default": DEFAULT_SYSTEM_PROMPT},
    },
    "logging": {"level": "INFO", "file": ""},
    "wiretap": {"enabled": True, "path": "./data/wire.jsonl"},
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override onto base; override wins on leaves."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, layered over DEFAULTS."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    elif path is not None:
        raise FileNotFoundError(f"Config not found: {config_path}")
    else:
        logger.info("No config.yaml at %s, using built-in defaults", config_path)
        raw = {}

    _config = _walk_and_resolve(_merge(DEFAULTS, raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config (next get_config() re-reads the file)."""
    global _config
    _config = None


def resolve_system_prompt(cfg: dict) -> str:
    """
    The system prompt for a session: the active template from prompts.
    Variable substitution inside templates is the settings layer's job.
    """
    prompts = cfg.get("prompts", {})
    templates = prompts.get("templates", {}) or {}
    active = prompts.get("active", "default")
    prompt = templates.get(active)
    if prompt is None:
        if templates:
            logger.warning("Prompt template '%s' not found, using default", active)
        prompt = templates.get("default", DEFAULT_SYSTEM_PROMPT)
    return prompt.strip()
