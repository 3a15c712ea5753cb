"""
Configuration package for the Shapefile feature store.

This package contains configuration loading and defaults.

Modules:
    config_loader: Load store settings from JSON and merge defaults
"""

__version__ = '1.0.0'
