"""
Crosschain Settings

Loads runtime settings from a YAML file. Missing files or keys fall back to
defaults; values that are present but invalid raise ConfigError.

Example config.yaml:

    confirmation_threshold: 12
    confirmation_poll_interval: 3
    status_poll_interval: 15
    status_initial_delay: 5
    request_timeout: 30
    history_limit: 10
    route_weights:
      cost: 0.7
      time: 0.3
    database_path: crosschain_history.db
    catalog:
      chains: [...]
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger

from .errors import ConfigError


DEFAULT_CONFIG_PATH = "config/crosschain.yaml"


@dataclass
class CrosschainSettings:
    """Runtime settings for the orchestration core"""
    confirmation_threshold: int = 12
    confirmation_poll_interval: float = 3.0
    status_poll_interval: float = 15.0
    status_initial_delay: float = 5.0
    request_timeout: float = 30.0
    history_limit: int = 10
    route_weights: Dict[str, float] = field(default_factory=lambda: {'cost': 0.7, 'time': 0.3})
    database_path: str = "crosschain_history.db"

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigError for out-of-range values"""
        if int(self.confirmation_threshold) < 1:
            raise ConfigError(f"confirmation_threshold must be >= 1, got {self.confirmation_threshold}")
        for name in ('confirmation_poll_interval', 'status_poll_interval', 'request_timeout'):
            if float(getattr(self, name)) <= 0:
                raise ConfigError(f"{name} must be > 0, got {getattr(self, name)}")
        if float(self.status_initial_delay) < 0:
            raise ConfigError(f"status_initial_delay must be >= 0, got {self.status_initial_delay}")
        if int(self.history_limit) < 1:
            raise ConfigError(f"history_limit must be >= 1, got {self.history_limit}")

        weights = self.route_weights or {}
        unknown = set(weights) - {'cost', 'time'}
        if unknown:
            raise ConfigError(f"Unknown route weight keys: {sorted(unknown)}")
        if any(float(v) < 0 for v in weights.values()):
            raise ConfigError(f"route_weights must be non-negative, got {weights}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CrosschainSettings':
        """Build settings from a mapping, ignoring unknown sections like 'catalog'"""
        data = data or {}
        defaults = cls()
        kwargs = {}

        try:
            kwargs['confirmation_threshold'] = int(data.get('confirmation_threshold', defaults.confirmation_threshold))
            kwargs['confirmation_poll_interval'] = float(data.get('confirmation_poll_interval', defaults.confirmation_poll_interval))
            kwargs['status_poll_interval'] = float(data.get('status_poll_interval', defaults.status_poll_interval))
            kwargs['status_initial_delay'] = float(data.get('status_initial_delay', defaults.status_initial_delay))
            kwargs['request_timeout'] = float(data.get('request_timeout', defaults.request_timeout))
            kwargs['history_limit'] = int(data.get('history_limit', defaults.history_limit))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid setting value: {e}") from e

        weights = dict(defaults.route_weights)
        custom_weights = data.get('route_weights') or {}
        if not isinstance(custom_weights, dict):
            raise ConfigError(f"route_weights must be a mapping, got {type(custom_weights).__name__}")
        try:
            weights.update({k: float(v) for k, v in custom_weights.items()})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid route weight: {e}") from e
        kwargs['route_weights'] = weights

        kwargs['database_path'] = str(data.get('database_path', defaults.database_path))

        return cls(**kwargs)


def read_yaml(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """
    Read a YAML mapping

    Returns:
        Parsed mapping, or None when the file does not exist
    """
    config_file = Path(path)
    if not config_file.exists():
        return None

    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping at top level")
    return data


def load_settings(path: Union[str, Path] = DEFAULT_CONFIG_PATH) -> CrosschainSettings:
    """
    Load settings from YAML

    Args:
        path: Path to config file

    Returns:
        CrosschainSettings (defaults when the file is missing)
    """
    data = read_yaml(path)

    if data is None:
        logger.warning(f"Config file not found: {path}, using defaults")
        return CrosschainSettings()

    missing = [name for name in CrosschainSettings.__dataclass_fields__ if name not in data]
    if missing:
        logger.warning(f"Settings not in {path}, using defaults: {missing}")

    settings = CrosschainSettings.from_dict(data)
    logger.info(f"Loaded settings from {path}")
    return settings
