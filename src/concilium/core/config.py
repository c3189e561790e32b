"""Layered configuration system for Concilium.

Loads and merges configuration from:
1. Default settings (built-in)
2. User config (~/.config/concilium/config.yaml, or an explicit file)
3. Environment variables
4. CLI parameters (override)
"""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Optional

import yaml

from ..models.agent import AgentConfig, AgentInstance, ProviderKind
from ..models.council import CouncilConfig
from .errors import ConfigError

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_COUNCIL_MODELS = [
    "openai/gpt-5.2",
    "google/gemini-3-pro-preview",
    "anthropic/claude-opus-4.6",
]
DEFAULT_CHAIRMAN_MODEL = "google/gemini-3-pro-preview"

DEFAULT_CONFIG: dict = {
    "council": {
        "api_key": "",
        "api_url": OPENROUTER_API_URL,
        "council_models": list(DEFAULT_COUNCIL_MODELS),
        "chairman_model": DEFAULT_CHAIRMAN_MODEL,
        "timeout_seconds": 120,
        "retry_attempts": 3,
        "retry_delay_seconds": 5,
    },
    "agents": [
        {"instance_id": "claude", "provider": "claude", "model": "", "enabled": True},
        {"instance_id": "codex", "provider": "codex", "model": "", "enabled": True},
        {"instance_id": "opencode", "provider": "opencode", "model": "", "enabled": True},
    ],
    "providers": {
        "claude": {"command": "claude", "env": {}},
        "codex": {"command": "codex", "env": {}},
        "opencode": {
            "command": "opencode",
            "server_url": "",
            "hostname": "127.0.0.1",
            "port": 0,
            "startup_timeout": 30,
            "inactivity_timeout": 120,
        },
    },
    "output": {
        "format": "markdown",
        "save": True,
    },
    "data_dir": "~/.local/share/concilium",
}


def default_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "concilium" / "config.yaml"


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Arrays are replaced, not merged."""
    result = {}
    for key in base:
        result[key] = base[key]
    for key, value in override.items():
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            result[key] = deep_merge(base_value, value)
        else:
            result[key] = value
    return result


def load_config_file(config_path: Optional[Path] = None) -> dict:
    """Load user configuration from YAML.

    A missing default file is not an error. An explicit path that does not
    exist, or any file that does not parse to a mapping, raises ConfigError.
    """
    explicit = config_path is not None
    path = config_path or default_config_path()
    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}", code="CONFIG_NOT_FOUND")
        return {}
    try:
        content = path.read_text(encoding="utf-8-sig")  # utf-8-sig strips BOM
        data = yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}", code="CONFIG_INVALID") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping", code="CONFIG_INVALID")
    return data


def split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def load_env_config(environ: Optional[dict] = None) -> dict:
    """Map the recognised environment variables onto config keys."""
    environ = os.environ if environ is None else environ
    council: dict = {}
    overrides: dict = {}

    if environ.get("OPENROUTER_API_KEY"):
        council["api_key"] = environ["OPENROUTER_API_KEY"]
    if environ.get("OPENROUTER_API_URL"):
        council["api_url"] = environ["OPENROUTER_API_URL"]
    models = split_csv(environ.get("COUNCIL_MODELS", ""))
    if models:
        council["council_models"] = models
    if environ.get("CHAIRMAN_MODEL"):
        council["chairman_model"] = environ["CHAIRMAN_MODEL"]
    if environ.get("CONCILIUM_DATA_DIR"):
        overrides["data_dir"] = environ["CONCILIUM_DATA_DIR"]

    if council:
        overrides["council"] = council
    return overrides


def get_effective_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict] = None,
    environ: Optional[dict] = None,
) -> dict:
    """Get the fully resolved configuration for a run."""
    config = copy.deepcopy(DEFAULT_CONFIG)

    file_config = load_config_file(config_path)
    if file_config:
        config = deep_merge(config, file_config)

    env_config = load_env_config(environ)
    if env_config:
        config = deep_merge(config, env_config)

    if cli_overrides:
        config = deep_merge(config, cli_overrides)

    if not config["council"].get("council_models"):
        config["council"]["council_models"] = list(DEFAULT_COUNCIL_MODELS)

    return config


def build_council_config(config: dict) -> CouncilConfig:
    council = config.get("council") or {}
    return CouncilConfig(
        api_key=council.get("api_key") or "",
        api_url=council.get("api_url") or OPENROUTER_API_URL,
        council_models=list(council.get("council_models") or DEFAULT_COUNCIL_MODELS),
        chairman_model=council.get("chairman_model") or DEFAULT_CHAIRMAN_MODEL,
    )


def parse_agent_specs(spec: str) -> list[AgentInstance]:
    """Parse ``claude:opus,codex,opencode:anthropic/claude-sonnet-4``.

    Repeated providers get numbered instance ids (``codex``, ``codex-2``).
    """
    instances: list[AgentInstance] = []
    counts: dict[str, int] = {}
    for item in split_csv(spec):
        provider, _, model = item.partition(":")
        provider = provider.strip().lower()
        try:
            kind = ProviderKind(provider)
        except ValueError:
            raise ConfigError(f"Unknown agent provider: {provider}", code="UNKNOWN_PROVIDER") from None
        counts[provider] = counts.get(provider, 0) + 1
        instance_id = provider if counts[provider] == 1 else f"{provider}-{counts[provider]}"
        instances.append(AgentInstance(instance_id=instance_id, provider=kind, model=model.strip()))
    return instances


def load_agent_instances(config: dict) -> list[AgentInstance]:
    instances: list[AgentInstance] = []
    for entry in config.get("agents") or []:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid agent entry: {entry!r}", code="CONFIG_INVALID")
        try:
            instances.append(AgentInstance(**entry))
        except ValueError as e:
            raise ConfigError(f"Invalid agent entry {entry!r}: {e}", code="CONFIG_INVALID") from e
    return instances


def short_model_name(model: str) -> str:
    """Drop the leading provider segment: ``anthropic/claude-x`` -> ``claude-x``."""
    parts = model.split("/")
    return "/".join(parts[1:]) if len(parts) > 1 else model


def build_agent_configs(
    instances: list[AgentInstance],
    cwd: str,
) -> list[AgentConfig]:
    """Turn enabled instances into per-run agent configs.

    Names are what judges and rankings see, so a repeated name gets the
    instance id appended (``codex``, ``codex (codex-2)``).
    """
    configs: list[AgentConfig] = []
    seen: set[str] = set()
    for instance in instances:
        if not instance.enabled:
            continue
        kind = instance.provider.value
        short = short_model_name(instance.model)
        name = f"{kind} · {short}" if short else kind
        if name in seen:
            name = f"{name} ({instance.instance_id})"
        seen.add(name)
        configs.append(
            AgentConfig(
                id=instance.provider,
                instance_id=instance.instance_id,
                name=name,
                model=instance.model or None,
                cwd=cwd,
            )
        )
    return configs
