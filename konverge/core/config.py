"""Centralized configuration loading for Konverge.

This module provides utilities for loading and accessing configuration from config.json
with support for environment variable fallbacks and default values, plus the
ControllerConfig dataclass consumed by the reconciler.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_FINALIZER = "konverge.io/cleanup"
DEFAULT_CONFIG_FILE = "config.json"
# Environment variable naming an alternative configuration file
CONFIG_ENV_VAR = "KONVERGE_CONFIG"


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load the controller configuration file.

    The path defaults to ``$KONVERGE_CONFIG`` or ``config.json`` in the working
    directory. A missing file means "all defaults"; an unreadable or malformed
    one is logged and ignored.

    Args:
        config_path: Path to a JSON configuration file

    Returns:
        Configuration dictionary (empty when nothing usable was found)
    """
    path = Path(config_path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE)
    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            config = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring configuration file {path}: {e}")
        return {}
    if not isinstance(config, dict):
        logger.warning(f"Ignoring configuration file {path}: top level must be an object")
        return {}
    return config


def get_config_value(
    keys: List[str], default: Any = None, config: Optional[Dict[str, Any]] = None
) -> Any:
    """Get nested configuration value with fallback to environment variable.

    Supports nested keys like ["controller", "workers"] or ["backoff", "max_seconds"].
    Also checks environment variables as fallback (e.g., CONTROLLER_WORKERS for
    controller.workers).

    Args:
        keys: List of keys to traverse (e.g., ["controller", "workers"])
        default: Default value if key not found
        config: Optional config dict (uses load_config() if not provided)

    Returns:
        Configuration value, or default if not found
    """
    if config is None:
        config = load_config()

    value = config
    for key in keys:
        if isinstance(value, dict):
            value = value.get(key)
            if value is None:
                break
        else:
            return default

    if value is not None:
        return value

    env_key = "_".join(k.upper() for k in keys)
    env_value = os.environ.get(env_key)
    if env_value is not None:
        return env_value

    return default


@dataclass
class ControllerConfig:
    """Configuration for the reconciliation loop.

    Attributes:
        workers: Number of reconciler worker threads
        resync_seconds: Interval of the periodic full resync
        backoff_base_seconds: First retry delay after a failed reconciliation
        backoff_max_seconds: Cap on the retry delay
        backoff_jitter: Fraction of the delay randomly shaved off (0 disables jitter)
        max_failures: Consecutive failures before the Degraded condition is set
        rollout_step_seconds: Delay before the next batch of a multi-step plan
        cache_sync_timeout: How long a worker waits for its own writes to reach the cache
        finalizer: Finalizer attached to desired records so deletes can cascade
        kinds: Kinds watched by the controller (None means every known kind)
    """
    workers: int = 4
    resync_seconds: float = 30.0
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 60.0
    backoff_jitter: float = 0.1
    max_failures: int = 5
    rollout_step_seconds: float = 0.0
    cache_sync_timeout: float = 5.0
    finalizer: str = DEFAULT_FINALIZER
    kinds: Optional[Tuple[str, ...]] = field(default=None)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "ControllerConfig":
        """Build a ControllerConfig from config.json / environment values.

        Environment values arrive as strings, so every numeric field is coerced.
        """
        defaults = cls()
        return cls(
            workers=int(get_config_value(["controller", "workers"], defaults.workers, config)),
            resync_seconds=float(
                get_config_value(["controller", "resync_seconds"], defaults.resync_seconds, config)
            ),
            backoff_base_seconds=float(
                get_config_value(["backoff", "base_seconds"], defaults.backoff_base_seconds, config)
            ),
            backoff_max_seconds=float(
                get_config_value(["backoff", "max_seconds"], defaults.backoff_max_seconds, config)
            ),
            backoff_jitter=float(
                get_config_value(["backoff", "jitter"], defaults.backoff_jitter, config)
            ),
            max_failures=int(
                get_config_value(["controller", "max_failures"], defaults.max_failures, config)
            ),
            rollout_step_seconds=float(
                get_config_value(
                    ["controller", "rollout_step_seconds"], defaults.rollout_step_seconds, config
                )
            ),
            cache_sync_timeout=float(
                get_config_value(
                    ["controller", "cache_sync_timeout"], defaults.cache_sync_timeout, config
                )
            ),
            finalizer=str(get_config_value(["controller", "finalizer"], defaults.finalizer, config)),
        )
