"""
Configuration for the order event broker.

Every component takes its configuration explicitly in its constructor; there
are no module-level singletons. Configuration can be built in code or loaded
from a YAML file.

Design decisions:
- Pydantic models give validation and defaults in one place
- YAML file is optional; missing sections fall back to defaults
- Two environment variables cover the common deployment overrides:
  ORDER_BROKER_CONFIG (path to the YAML file) and ORDER_BROKER_DB (database path)
"""

import os
from pathlib import Path
from typing import Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field

from shared.models import DeliveryPolicy

CONFIG_ENV_VAR = "ORDER_BROKER_CONFIG"
DB_ENV_VAR = "ORDER_BROKER_DB"


class StoreConfig(BaseModel):
    """Event store and delivery table persistence settings."""
    db_path: Path = Field(default=Path("data/order_broker.db"))
    busy_timeout: int = Field(default=5000, ge=0, description="SQLite busy timeout (ms)")
    synchronous: Literal["OFF", "NORMAL", "FULL", "EXTRA"] = Field(
        default="FULL",
        description="SQLite synchronous pragma; FULL fsyncs every commit",
    )
    retention_hours: Optional[float] = Field(
        default=None,
        gt=0,
        description="Compact fully delivered events older than this; None keeps everything",
    )


class DispatcherConfig(BaseModel):
    """Delivery loop settings."""
    workers: int = Field(default=4, ge=1)
    batch_size: int = Field(default=32, ge=1)
    poll_interval: float = Field(default=1.0, gt=0)
    handler_timeout: float = Field(default=10.0, gt=0)
    stale_timeout: float = Field(default=300.0, gt=0)
    watchdog_interval: float = Field(default=30.0, gt=0)
    shutdown_grace: float = Field(default=10.0, ge=0)
    default_policy: DeliveryPolicy = Field(default_factory=DeliveryPolicy)


class IdempotencyConfig(BaseModel):
    """Dedup cache settings. The horizon defaults to the default policy's redelivery window."""
    max_entries: int = Field(default=100_000, ge=1)
    horizon_seconds: Optional[float] = Field(default=None, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[Path] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 3


class BrokerConfig(BaseModel):
    """Top-level configuration passed to OrderBroker."""
    store: StoreConfig = Field(default_factory=StoreConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def idempotency_horizon(self) -> float:
        if self.idempotency.horizon_seconds is not None:
            return self.idempotency.horizon_seconds
        return self.dispatcher.default_policy.redelivery_window


def load_config(path: Optional[Union[str, Path]] = None) -> BrokerConfig:
    """
    Load configuration from YAML.

    Args:
        path: YAML file to read. Defaults to $ORDER_BROKER_CONFIG; when neither
              is set, built-in defaults are used.

    Returns:
        A validated BrokerConfig, with $ORDER_BROKER_DB applied on top.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR)

    data: dict = {}
    if path:
        config_path = Path(path)
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")

    config = BrokerConfig.model_validate(data)

    db_override = os.environ.get(DB_ENV_VAR)
    if db_override:
        config.store.db_path = Path(db_override)
    return config
