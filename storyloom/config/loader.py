from __future__ import annotations

from pathlib import Path
from typing import Any
import os
import re

import yaml
from loguru import logger

from storyloom.config.schema import AppConfigRoot, resolve_paths

ENV_PREFIX = "STORYLOOM"


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


def _provider_base_url_override_var(provider_name: str) -> str:
    normalized = re.sub(r"[^A-Za-z0-9]", "_", provider_name).upper()
    return f"{ENV_PREFIX}_LLM_PROVIDER_{normalized}_BASE_URL"


def _env_flag(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env(config_data: dict[str, Any]) -> dict[str, Any]:
    llm = config_data.get("llm")
    if isinstance(llm, dict):
        for provider_name, provider_cfg in (llm.get("providers") or {}).items():
            if not isinstance(provider_cfg, dict):
                continue
            base_url_override = os.getenv(_provider_base_url_override_var(provider_name))
            if base_url_override:
                provider_cfg["base_url"] = base_url_override

    data_dir = os.getenv(f"{ENV_PREFIX}_DATA_DIR")
    if data_dir:
        config_data.setdefault("app", {})["data_dir"] = data_dir

    sqlite_path = os.getenv(f"{ENV_PREFIX}_SQLITE_PATH")
    if sqlite_path:
        config_data.setdefault("storage", {})["sqlite_path"] = sqlite_path

    log_level = os.getenv(f"{ENV_PREFIX}_LOG_LEVEL")
    if log_level:
        config_data.setdefault("app", {})["log_level"] = log_level

    for section in ("translation", "image", "suggestions"):
        flag = _env_flag(f"{ENV_PREFIX}_{section.upper()}_ENABLED")
        if flag is not None:
            config_data.setdefault(section, {})["enabled"] = flag
    return config_data


def load_config(
    config_path: Path | None = None,
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfigRoot:
    base_dir = Path.cwd()
    _load_dotenv(base_dir / ".env")

    config_data: dict[str, Any] = {}
    config_data = _deep_merge(config_data, _read_yaml(base_dir / "configs" / "default.yaml"))

    if profile:
        profile_path = base_dir / "configs" / "profiles" / f"{profile}.yaml"
        config_data = _deep_merge(config_data, _read_yaml(profile_path))

    if config_path:
        config_data = _deep_merge(config_data, _read_yaml(config_path))

    if overrides:
        config_data = _deep_merge(config_data, overrides)

    config_data = _apply_env(config_data)

    config = AppConfigRoot.model_validate(config_data)
    config = resolve_paths(config, base_dir)

    logger.debug("Loaded config from {}", base_dir)
    return config


def masked_env_snapshot(config: AppConfigRoot | None = None) -> dict[str, str | None]:
    snapshot: dict[str, str | None] = {}
    for name in ("DATA_DIR", "SQLITE_PATH", "LOG_LEVEL"):
        key = f"{ENV_PREFIX}_{name}"
        snapshot[key] = os.getenv(key)

    if config is None:
        return snapshot

    for provider_name, provider in config.llm.providers.items():
        override_var = _provider_base_url_override_var(provider_name)
        snapshot[override_var] = os.getenv(override_var)
        snapshot[f"llm.providers.{provider_name}.base_url"] = provider.base_url

        if provider.api_key_env:
            snapshot[provider.api_key_env] = "***" if os.getenv(provider.api_key_env) else None

    return snapshot
