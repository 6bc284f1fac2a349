# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
flowrunner configuration - single source of truth.
YAML is king. Env vars only for deployment overrides.
"""

import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from flowrunner.core.errors import ConfigurationError


STORE_BACKENDS = ("memory", "json")


# =============================================================================
# CONFIGURATION DATACLASS
# =============================================================================

@dataclass(frozen=True)
class Config:
    """
    Immutable engine configuration.
    All values from YAML. No hidden state.
    """

    # -- Engine --
    default_node_timeout: float = 30.0
    max_parallel_nodes: int = 10
    worker_pool_size: int = 16
    node_retry_attempts: int = 0
    node_retry_delay: float = 1.0
    node_retry_max_delay: float = 10.0

    # -- Record store --
    store_backend: str = "memory"
    store_retry_attempts: int = 3
    store_retry_delay: float = 0.1
    store_retry_max_delay: float = 2.0
    backoff_multiplier: float = 2.0

    # -- Paths --
    workflows_path: str = "/app/workflows"
    executions_path: str = "/app/volumes/executions"

    # -- History mirror (disabled when unset) --
    history_url: Optional[str] = None

    # -- Logging --
    log_level: str = "INFO"
    log_format: str = "json"

    def __post_init__(self):
        if self.max_parallel_nodes < 1:
            raise ConfigurationError("engine.max_parallel_nodes must be at least 1")
        if self.worker_pool_size < 1:
            raise ConfigurationError("engine.worker_pool_size must be at least 1")
        if self.default_node_timeout <= 0:
            raise ConfigurationError("engine.node_timeout must be positive")
        if self.node_retry_attempts < 0 or self.store_retry_attempts < 0:
            raise ConfigurationError("retry attempts cannot be negative")
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"Unknown store backend '{self.store_backend}', expected one of {STORE_BACKENDS}"
            )


# =============================================================================
# LOADER
# =============================================================================

def load_config(path: str = "/app/configs/flowrunner.yaml") -> Config:
    """
    Load configuration from YAML.
    Returns defaults if file doesn't exist.
    """
    if not Path(path).exists():
        return Config(log_level=os.getenv("LOG_LEVEL", "INFO"))

    with open(path) as f:
        try:
            y = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", config_file=path)

    # Helper to safely navigate nested dicts
    def get(d: dict, *keys, default=None):
        for k in keys:
            if not isinstance(d, dict):
                return default
            d = d.get(k, {})
        return d if d != {} and d is not None else default

    defaults = Config()
    return Config(
        # Engine
        default_node_timeout=float(get(y, "engine", "node_timeout", default=defaults.default_node_timeout)),
        max_parallel_nodes=int(get(y, "engine", "max_parallel_nodes", default=defaults.max_parallel_nodes)),
        worker_pool_size=int(get(y, "engine", "worker_pool_size", default=defaults.worker_pool_size)),
        node_retry_attempts=int(get(y, "engine", "retry", "attempts", default=defaults.node_retry_attempts)),
        node_retry_delay=float(get(y, "engine", "retry", "delay", default=defaults.node_retry_delay)),
        node_retry_max_delay=float(
            get(y, "engine", "retry", "max_delay", default=defaults.node_retry_max_delay)
        ),

        # Record store
        store_backend=get(y, "store", "backend", default=defaults.store_backend),
        store_retry_attempts=int(get(y, "store", "retry", "attempts", default=defaults.store_retry_attempts)),
        store_retry_delay=float(get(y, "store", "retry", "delay", default=defaults.store_retry_delay)),
        store_retry_max_delay=float(get(y, "store", "retry", "max_delay", default=defaults.store_retry_max_delay)),
        backoff_multiplier=float(
            get(y, "store", "retry", "backoff_multiplier", default=defaults.backoff_multiplier)
        ),

        # Paths
        workflows_path=get(y, "paths", "workflows", default=defaults.workflows_path),
        executions_path=get(y, "paths", "executions", default=defaults.executions_path),

        # History
        history_url=get(y, "history", "url"),

        # Logging
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=get(y, "logging", "format", default="json"),
    )


# =============================================================================
# GLOBAL INSTANCE
# =============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global config instance."""
    global _config
    if _config is None:
        config_path = os.getenv("FLOWRUNNER_CONFIG_PATH", "/app/configs/flowrunner.yaml")
        _config = load_config(config_path)
    return _config


def reload_config() -> Config:
    """Force reload configuration."""
    global _config
    _config = None
    return get_config()
