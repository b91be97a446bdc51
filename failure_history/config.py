"""Configuration for the CI server, scan window, storage and fan-out.

Sources, lowest to highest priority:
  1. Model defaults
  2. YAML file ($CONFIG_PATH, default config/failure-history.yml)
  3. CONFIG__{SECTION}__{KEY} environment variables, e.g. CONFIG__SCAN__MAX_BATCH=20
  4. JENKINS_URL / JENKINS_USERNAME / JENKINS_PASSWORD / DATABASE_URL,
     used only where the sources above leave the field empty
"""

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "config/failure-history.yml"
DEFAULT_DB_URL = "sqlite+aiosqlite:///data/failure_history.db"
ENV_PREFIX = "CONFIG"


class JenkinsConfig(BaseModel):
    base_url: str = ""  # job URL, e.g. https://jenkins.example.com/job/app/job/master
    username: str = ""  # from env: JENKINS_USERNAME
    password: str = ""  # from env: JENKINS_PASSWORD
    timeout_s: float = 30.0


class ScanConfig(BaseModel):
    window_days: int = Field(default=5, ge=1, description="Trailing window for scanned builds")
    max_batch: int = Field(default=10, ge=1, description="Max builds dispatched per scan")


class StorageConfig(BaseModel):
    backend: Literal["sql", "memory"] = "sql"
    database_url: str = DEFAULT_DB_URL
    echo: bool = False


class InvokerConfig(BaseModel):
    mode: Literal["local", "http"] = "local"
    collector_url: str = "http://localhost:8080"
    timeout_s: float = 300.0


class ServiceConfig(BaseModel):
    jenkins: JenkinsConfig = JenkinsConfig()
    scan: ScanConfig = ScanConfig()
    storage: StorageConfig = StorageConfig()
    invoker: InvokerConfig = InvokerConfig()


def normalize_database_url(url: str) -> str:
    """Heroku / Cloud SQL style postgres:// → postgresql+asyncpg://"""
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    return url


def _coerce(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if raw.isdigit():
        return int(raw)
    return raw


def _apply_env_overrides(values: dict, prefix: str = ENV_PREFIX) -> dict:
    """Merge CONFIG__SECTION__KEY=value variables into the nested dict."""
    marker = f"{prefix}__"
    for name, raw in os.environ.items():
        if not name.startswith(marker):
            continue
        *sections, field = name[len(marker):].lower().split("__")
        node = values
        for section in sections:
            node = node.setdefault(section, {})
        node[field] = _coerce(raw)
    return values


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        return {}
    with path.open() as f:
        return yaml.safe_load(f) or {}


def _fill_from_env(values: dict) -> dict:
    jenkins = values.setdefault("jenkins", {})
    for field, env_var in (
        ("base_url", "JENKINS_URL"),
        ("username", "JENKINS_USERNAME"),
        ("password", "JENKINS_PASSWORD"),
    ):
        if not jenkins.get(field):
            jenkins[field] = os.getenv(env_var, "")

    storage = values.setdefault("storage", {})
    if not storage.get("database_url") and os.getenv("DATABASE_URL"):
        storage["database_url"] = os.environ["DATABASE_URL"]
    if storage.get("database_url"):
        storage["database_url"] = normalize_database_url(storage["database_url"])
    return values


def load_config(config_path: Optional[str] = None) -> ServiceConfig:
    path = Path(config_path or os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH))
    values = _apply_env_overrides(_read_yaml(path))
    return ServiceConfig(**_fill_from_env(values))


# Process-wide instance; reload_config() replaces it
_config: Optional[ServiceConfig] = None


def get_config() -> ServiceConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> ServiceConfig:
    global _config
    _config = load_config(config_path)
    return _config
