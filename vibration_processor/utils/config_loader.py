"""
Configuration Loader
Loads and validates the processor YAML configuration
"""

import logging
import os
from typing import Dict, Optional

import yaml

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join("config", "processor_config.yaml")

REQUIRED_TOPICS = ("input", "processed", "retry", "dead_letter")


class ConfigLoader:
    """Loads configuration files from the config directory"""

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize config loader

        Args:
            config_dir: Path to configuration directory (default: ./config)
        """
        if config_dir is None:
            config_dir = os.path.dirname(DEFAULT_CONFIG_PATH)

        self.config_dir = config_dir
        logger.debug(f"Config loader initialized. Config directory: {config_dir}")

    def load_yaml(self, filename: str) -> Dict:
        """
        Load a YAML configuration file

        Args:
            filename: File name relative to the config directory, or a path

        Returns:
            Dictionary containing configuration

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigurationError: If the file is not valid YAML or not a mapping
        """
        if not filename.endswith((".yaml", ".yml")):
            filename += ".yaml"

        filepath = filename
        if not os.path.exists(filepath):
            filepath = os.path.join(self.config_dir, filename)

        with open(filepath, "r") as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Error parsing YAML file {filepath}: {e}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {filepath}")

        validate_config(config)
        logger.info(f"Loaded configuration from {filepath}")
        return config


def validate_config(config: Dict) -> None:
    """Reject configuration values that would break the retry state machine"""
    retry_config = config.get("retry", {})
    if int(retry_config.get("max_retries", 5)) < 1:
        raise ConfigurationError("retry.max_retries must be at least 1")

    processing_config = config.get("processing", {})
    if int(processing_config.get("max_in_flight", 64)) < 1:
        raise ConfigurationError("processing.max_in_flight must be at least 1")
    if int(processing_config.get("num_workers", 4)) < 1:
        raise ConfigurationError("processing.num_workers must be at least 1")

    store_config = config.get("state_store", {})
    if float(store_config.get("failed_takeover_seconds", 120.0)) <= 0:
        raise ConfigurationError("state_store.failed_takeover_seconds must be positive")

    topics = config.get("kafka", {}).get("topics", {})
    names = [topics.get(name) for name in REQUIRED_TOPICS if topics.get(name)]
    if len(names) != len(set(names)):
        raise ConfigurationError(f"Kafka topics must be distinct: {topics}")


def topic_names(config: Dict) -> Dict[str, str]:
    """Resolve channel names with defaults"""
    topics = config.get("kafka", {}).get("topics", {})
    return {
        "input": topics.get("input", "vibration_raw"),
        "processed": topics.get("processed", "vibration_processed"),
        "retry": topics.get("retry", "vibration_retry"),
        "dead_letter": topics.get("dead_letter", "vibration_dead_letter"),
    }
