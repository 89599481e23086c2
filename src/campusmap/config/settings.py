# src/campusmap/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/campusmap/config/defaults.yaml`, then optionally overridden by:
- an external YAML file via `CAMPUSMAP_CONFIG_PATH`
- a small whitelist of environment variables (log level, store path, secrets)

Design rule:
- Tuning knobs (scan caps, retry budgets, timeouts) live in YAML, not in service code.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from campusmap.core.env import load_dotenv_if_present
from campusmap.core.retry import RetryPolicy


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `campusmap.config`."""
    text = resources.files("campusmap.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "CampusMap"
    timezone: str = "Asia/Kolkata"
    log_level: str = "INFO"


class StorageSettings(BaseModel):
    backend: Literal["memory", "file"] = "memory"
    path: str = "data/campusmap.json"
    max_scan_size: int = Field(2000, ge=1)
    call_timeout_seconds: float = Field(5, ge=0)


class LocationSettings(BaseModel):
    default_search_limit: int = Field(50, ge=1)
    max_search_limit: int = Field(100, ge=1)
    default_nearby_radius_m: float = Field(1000, ge=0)


class RegistrationSettings(BaseModel):
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    default_capacity: int = Field(50, ge=1)
    recommended_limit: int = Field(5, ge=1)


class ToolkitSettings(BaseModel):
    base_url: str = "https://identitytoolkit.googleapis.com/v1"
    project_id: str | None = None
    access_token: str | None = None


class IdentitySettings(BaseModel):
    backend: Literal["local", "toolkit"] = "local"
    call_timeout_seconds: float = Field(5, ge=0)
    token_ttl_seconds: int = Field(3600, ge=1)
    token_secret: str = "campusmap-development-signing-secret-change-me"
    token_issuer: str = "campusmap"
    token_audience: str = "campusmap-api"
    # Local backend only; null keeps identities in memory unless the store is a file.
    local_path: str | None = None
    claims_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=4, base_delay_seconds=0.1, max_delay_seconds=2.0)
    )
    profile_write_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    toolkit: ToolkitSettings = Field(default_factory=ToolkitSettings)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    locations: LocationSettings = Field(default_factory=LocationSettings)
    registration: RegistrationSettings = Field(default_factory=RegistrationSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small to avoid exposing unsafe overrides.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("CAMPUSMAP_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    store_backend = os.getenv("CAMPUSMAP_STORE_BACKEND")
    if store_backend:
        data.setdefault("storage", {})["backend"] = store_backend

    store_path = os.getenv("CAMPUSMAP_STORE_PATH")
    if store_path:
        data.setdefault("storage", {})["path"] = store_path

    token_secret = os.getenv("CAMPUSMAP_TOKEN_SECRET")
    if token_secret:
        data.setdefault("identity", {})["token_secret"] = token_secret

    identity_path = os.getenv("CAMPUSMAP_IDENTITY_PATH")
    if identity_path:
        data.setdefault("identity", {})["local_path"] = identity_path

    access_token = os.getenv("CAMPUSMAP_IDENTITY_ACCESS_TOKEN")
    if access_token:
        data.setdefault("identity", {}).setdefault("toolkit", {})["access_token"] = access_token

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("CAMPUSMAP_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
