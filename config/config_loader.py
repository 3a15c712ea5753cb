"""
Configuration loading for the Shapefile feature store.

This module handles loading and validation of the store configuration JSON file.

Constants:
    PROJECT_ROOT: Root directory of the project
    CONFIG_DIR: Configuration files directory
    LOG_DIR: Log files directory
    DEFAULT_STORE_SETTINGS: Settings used when no configuration is supplied

Functions:
    load_config: Load and validate store configuration from JSON
    load_store_settings: Merge the store and buffer sections over the defaults
"""

import json
from pathlib import Path
from typing import Dict, Optional

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_DIR = PROJECT_ROOT / 'config'
LOG_DIR = PROJECT_ROOT / 'logs'

DEFAULT_STORE_SETTINGS = {
    'encoding': 'utf-8',
    'write_spatial_index': True,
    'segments_per_quarter_circle': 8,
    'default_crs': 'EPSG:4326',
    'text_field_length': 254,
    'field_map_suffix': '.fieldmap.json',
    'describe_sample_size': 5,
}


def load_config(config_path: Optional[Path] = None) -> Dict:
    """
    Load store configuration from JSON file.

    Reads store_config.json (or the given path) and validates basic structure.

    Parameters:
    -----------
    config_path : Optional[Path]
        Explicit configuration file. Defaults to CONFIG_DIR/store_config.json

    Returns:
    --------
    Dict
        Configuration dictionary with a 'store' key and an optional 'buffer' key

    Raises:
    -------
    FileNotFoundError
        If configuration file doesn't exist
    json.JSONDecodeError
        If configuration file contains invalid JSON
    KeyError
        If required configuration keys are missing
    """
    if config_path is None:
        config_path = CONFIG_DIR / 'store_config.json'
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = json.load(f)

    if 'store' not in config:
        raise KeyError("Configuration missing required 'store' key")

    return config


def load_store_settings(config: Optional[Dict] = None) -> Dict:
    """
    Load store settings from configuration.

    Args:
        config: Configuration dictionary (optional, will load if not provided)

    Returns:
        Dictionary with store settings

    Defaults:
        - encoding: 'utf-8'
        - write_spatial_index: True
        - segments_per_quarter_circle: 8
        - default_crs: 'EPSG:4326'
        - text_field_length: 254
        - field_map_suffix: '.fieldmap.json'
        - describe_sample_size: 5

    Note:
        The 'buffer' section is flattened into the same dictionary so callers
        only deal with one settings mapping.
    """
    if config is None:
        config = load_config()

    result = {**DEFAULT_STORE_SETTINGS, **config.get('store', {})}
    result.update(config.get('buffer', {}))

    return result


def resolve_settings(settings: Optional[Dict] = None) -> Dict:
    """Return settings merged over the defaults without touching the disk."""
    if settings is None:
        return dict(DEFAULT_STORE_SETTINGS)
    return {**DEFAULT_STORE_SETTINGS, **settings}
