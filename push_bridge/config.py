"""
Configuration loading and validation.

Loads bridge configuration from a YAML file. VAPID keys are resolved from
environment variables named in the config and are never stored in the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from .protocol import DEFAULT_SUBSCRIPTION_ID


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000


class RelayConfig(BaseModel):
    subscription_id: str = DEFAULT_SUBSCRIPTION_ID
    connect_timeout_seconds: float = 10.0
    reconnect_delay_seconds: float = 5.0
    reconnect_max_seconds: float = 60.0
    reconnect_multiplier: float = 1.0

    @field_validator("connect_timeout_seconds", "reconnect_delay_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("reconnect_multiplier")
    @classmethod
    def _at_least_one(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("must be >= 1.0")
        return v


class PushConfig(BaseModel):
    vapid_public_key_env: str = "VAPID_PUBLIC_KEY"
    vapid_private_key_env: str = "VAPID_PRIVATE_KEY"
    vapid_subject: str = "mailto:admin@example.com"
    request_timeout_seconds: float = 10.0
    ttl_seconds: int = 86400

    @property
    def vapid_public_key(self) -> str | None:
        return os.environ.get(self.vapid_public_key_env)

    @property
    def vapid_private_key(self) -> str | None:
        return os.environ.get(self.vapid_private_key_env)


class DedupConfig(BaseModel):
    retention_seconds: float = 300.0
    sweep_interval_seconds: float = 300.0

    @field_validator("retention_seconds", "sweep_interval_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class MetricsConfig(BaseModel):
    enabled: bool = True
    health_interval_seconds: float = 30.0


class BridgeConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    relays: RelayConfig = Field(default_factory=RelayConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> BridgeConfig:
    """Load and validate bridge configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return BridgeConfig.model_validate(raw)
