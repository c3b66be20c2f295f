"""Simple configuration for Orchestry.

Values come from (lowest to highest precedence) the dataclass defaults, an
optional YAML file named by ``ORCHESTRY_CONFIG``, and ``ORCHESTRY_*``
environment variables (a local ``.env`` file is loaded first).
"""

import os
import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORCHESTRY_"


@dataclass
class SimpleConfig:
    """Runtime settings for the orchestration core."""

    database_path: str = "orchestry.db"
    claim_lease_seconds: int = 1800
    default_ticket_max_retries: int = 3
    max_steps_per_execution: int = 1000
    max_step_visits: int = 10
    max_loop_iterations: int = 100
    max_wait_ms: int = 300000
    default_tree_instance: str = "system-default"
    log_level: str = "INFO"

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "SimpleConfig":
        """Build a config from the YAML file and environment."""
        load_dotenv()
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}

        path = config_path or os.environ.get(f"{ENV_PREFIX}CONFIG")
        if path:
            if os.path.exists(path):
                with open(path, "r") as f:
                    data = yaml.safe_load(f) or {}
                for key, value in data.items():
                    if key in known:
                        values[key] = value
                    else:
                        logger.warning(f"[CONFIG] Ignoring unknown key '{key}' in {path}")
            else:
                logger.warning(f"[CONFIG] Config file {path} not found, using defaults")

        for name, field_def in known.items():
            raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = type(field_def.default)(raw)

        return cls(**values)


_config: Optional[SimpleConfig] = None


def get_config() -> SimpleConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = SimpleConfig.load()
    return _config


def reset_config() -> None:
    """Forget the cached configuration (tests change the environment between runs)."""
    global _config
    _config = None


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for processes embedding the core."""
    level_name = (level or get_config().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
