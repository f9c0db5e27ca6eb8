from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError


@dataclass(frozen=True)
class RuntimeSecrets:
    openai_api_key: str
    mapbox_token: str | None = None


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {path} must be a mapping/object")
    return data


def _anchor_storage_paths(cfg: AppConfig, base_dir: Path) -> AppConfig:
    def _anchor(value: str) -> str:
        p = Path(value).expanduser()
        return str(p if p.is_absolute() else base_dir / p)

    storage = cfg.storage.model_copy(
        update={
            "db_path": _anchor(cfg.storage.db_path),
            "log_path": _anchor(cfg.storage.log_path),
        }
    )
    return cfg.model_copy(update={"storage": storage})


def load_config(path: str | Path) -> AppConfig:
    """
    Read and validate the YAML config.

    Relative storage paths are taken relative to the config file, so the same
    file works no matter where the CLI is started from.
    """
    p = Path(path)
    data = _read_yaml_mapping(p)
    try:
        cfg = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, p)) from e
    return _anchor_storage_paths(cfg, p.resolve().parent)


def _env_value(env: Mapping[str, str], name: str) -> str | None:
    return (env.get(name) or "").strip() or None


def resolve_runtime_secrets(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> RuntimeSecrets:
    """Look up API credentials in the environment variables the config names."""
    env = os.environ if environ is None else environ

    wanted = [config.openai.api_key_env]
    if config.geocoding.enabled:
        wanted.append(config.geocoding.access_token_env)

    found = {name: _env_value(env, name) for name in wanted}
    missing = [name for name, value in found.items() if value is None]
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

    return RuntimeSecrets(
        openai_api_key=found[config.openai.api_key_env] or "",
        mapbox_token=found.get(config.geocoding.access_token_env),
    )


def config_sha256(config: AppConfig) -> str:
    """Stable hash of the effective config, recorded with every command."""
    payload = json.dumps(
        config.model_dump(mode="json"), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _format_pydantic_errors(err: ValidationError, path: Path) -> str:
    lines = [f"Invalid configuration in {path}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        lines.append(f"- {loc}: {item.get('msg', 'invalid value')}")
    return "\n".join(lines)
