"""Pydantic settings for NetGuard configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from netguard.core.models import RouterConfig


def _load_yaml_config() -> dict[str, Any]:
    """Load config from ~/.netguard/config.yaml, falling back to project config.yaml."""
    user_cfg = Path.home() / ".netguard" / "config.yaml"
    if user_cfg.exists():
        with open(user_cfg) as f:
            return yaml.safe_load(f) or {}
    project_cfg = Path(__file__).parent.parent / "config.yaml"
    if project_cfg.exists():
        with open(project_cfg) as f:
            return yaml.safe_load(f) or {}
    return {}


class Settings(BaseSettings):
    """NetGuard application settings.

    Priority (highest → lowest): environment variables → config.yaml → defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="NETGUARD_",
        env_nested_delimiter="__",
    )

    # Account / discovery
    account_id: int = 1
    routers: list[RouterConfig] = Field(default_factory=list)
    subnet: str | None = None
    scan_interval: int = Field(default=300, ge=5)
    auto_block: bool = True
    enable_notifications: bool = True

    # Probe timeouts (seconds)
    ping_timeout: float = 3.0
    connect_timeout: float = 1.0
    router_timeout: float = 10.0
    dns_timeout: float = 5.0
    vendor_lookup_timeout: float = 10.0
    classifier_timeout: float = 15.0

    # Worker pools
    port_scan_workers: int = Field(default=100, ge=1)
    sweep_workers: int = Field(default=64, ge=1)
    ping_workers: int = Field(default=32, ge=1)

    # Overall deadlines (seconds)
    traceroute_max_hops: int = Field(default=30, ge=1, le=64)
    traceroute_hop_wait: float = 2.0
    traceroute_deadline: float = 60.0
    port_scan_deadline: float = 60.0

    # Collaborators
    notification_webhook: str | None = None
    classifier_url: str | None = None
    classifier_api_key: str | None = None
    classifier_model: str = "gpt-4o-mini"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8565

    # Logging
    log_level: str = "INFO"

    # Database
    db_path: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _merge_yaml(cls, values: dict[str, Any]) -> dict[str, Any]:
        yaml_values = _load_yaml_config()
        # YAML values are defaults; explicit env/init values take priority
        merged = {**yaml_values, **{k: v for k, v in values.items() if v is not None}}
        return merged

    @property
    def resolved_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path)
        return Path.home() / ".netguard" / "netguard.db"


def get_settings(**overrides: Any) -> Settings:
    """Create a Settings instance, optionally with overrides."""
    return Settings(**overrides)
