from __future__ import annotations

from pathlib import Path
from typing import Any
import os

import yaml
from loguru import logger

from story_memory.config.schema import AppConfigRoot, resolve_paths

# Env var -> config path, applied after every file and CLI override.
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "STORY_MEMORY_DATA_DIR": ("app", "data_dir"),
    "STORY_MEMORY_LOG_LEVEL": ("app", "log_level"),
    "STORY_MEMORY_DB_PATH": ("storage", "sqlite_path"),
}
# Model name for whichever endpoint llm.routes.memory_chat points at.
MODEL_ENV = "STORY_MEMORY_MODEL"


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _load_dotenv(dotenv_path: Path) -> None:
    if not dotenv_path.exists():
        return
    for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip("\""))


def _set_path(config_data: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = config_data
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = node[key] = {}
        node = child
    node[path[-1]] = value


def _apply_model_env(config_data: dict[str, Any], model: str) -> str | None:
    llm = config_data.get("llm")
    if not isinstance(llm, dict):
        # No llm section in any layer: the built-in route applies.
        llm = config_data["llm"] = AppConfigRoot().llm.model_dump()
    endpoint_name = (llm.get("routes") or {}).get("memory_chat", "memory_default")
    endpoint = (llm.get("chat_endpoints") or {}).get(endpoint_name)
    if not isinstance(endpoint, dict):
        return None
    endpoint["model"] = model
    return endpoint_name


def _apply_env(config_data: dict[str, Any]) -> list[str]:
    applied: list[str] = []
    for env_name, path in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            _set_path(config_data, path, value)
            applied.append(env_name)

    model = os.getenv(MODEL_ENV)
    if model:
        endpoint_name = _apply_model_env(config_data, model)
        if endpoint_name is None:
            logger.warning("{} set but llm.routes.memory_chat has no endpoint; ignored", MODEL_ENV)
        else:
            applied.append(f"{MODEL_ENV}->{endpoint_name}")
    return applied


def load_config(
    config_path: Path | None = None,
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
    base_dir: Path | None = None,
) -> AppConfigRoot:
    """Merge default.yaml, the profile, ``config_path``, overrides, then env."""
    base_dir = base_dir or Path.cwd()
    _load_dotenv(base_dir / ".env")

    layers = ["default"]
    config_data = _read_yaml(base_dir / "configs" / "default.yaml")

    if profile:
        profile_path = base_dir / "configs" / "profiles" / f"{profile}.yaml"
        if not profile_path.exists():
            raise FileNotFoundError(f"Config profile not found: {profile_path}")
        config_data = _deep_merge(config_data, _read_yaml(profile_path))
        layers.append(f"profile:{profile}")

    if config_path:
        config_data = _deep_merge(config_data, _read_yaml(config_path))
        layers.append(f"file:{config_path}")

    if overrides:
        config_data = _deep_merge(config_data, overrides)
        layers.append("overrides")

    env_applied = _apply_env(config_data)

    config = AppConfigRoot.model_validate(config_data)
    config = resolve_paths(config, base_dir)

    logger.debug(
        "Loaded config base_dir={} layers={} env={}",
        base_dir,
        ",".join(layers),
        ",".join(env_applied) or "-",
    )
    return config


def masked_env_snapshot(config: AppConfigRoot | None = None) -> dict[str, str | None]:
    snapshot: dict[str, str | None] = {name: os.getenv(name) for name in [*ENV_OVERRIDES, MODEL_ENV]}

    if config is None:
        return snapshot

    endpoint_name, endpoint, provider = config.llm.resolve_chat_route()
    snapshot["llm.routes.memory_chat"] = f"{endpoint_name} ({endpoint.provider}/{endpoint.model})"
    snapshot[f"llm.providers.{endpoint.provider}.base_url"] = provider.base_url
    if provider.api_key_env:
        snapshot[provider.api_key_env] = "***" if os.getenv(provider.api_key_env) else None

    return snapshot
