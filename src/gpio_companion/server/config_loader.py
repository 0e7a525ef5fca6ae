"""
Configuration Loader.

Responsible for reading the config.yaml file and filling in defaults for
any section the file leaves out.
"""
import copy
import yaml
import logging
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "mqtt": {
        "host": "iot.eclipse.org",
        "port": 1883,
        "client_id": "AndroidThingSubscribingClient",
        "qos": 2,
        "clean_session": True,
        "auto_reconnect": True,
        "keepalive": 60,
    },
    "reconnect": {
        "initial_delay": 0.5,
        "max_delay": 30.0,
        "jitter": 0.5,
    },
    "identity": {
        "path": "board.yaml",
        "key": "board_identifier",
    },
    "event_topic": "{board_id}_events",
    "status_topic": "{board_id}_status",
    "inbound_queue_size": 100,
    "outbound_queue_size": 100,
    "log_level": "INFO",
}


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file, layered over DEFAULT_CONFIG.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
    except Exception as e:
        logger.error(f"Failed to parse config file: {e}")
        raise

    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(config).__name__}")
    return _merge(DEFAULT_CONFIG, config)
