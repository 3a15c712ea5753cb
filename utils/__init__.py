"""
Utility modules for the Shapefile feature store.

This package contains helpers used throughout the application.

Modules:
    logger: Logging configuration and setup
    events: Structured event sinks injected into stores and transactions
"""

__version__ = '1.0.0'
