"""
Core modules for the Shapefile feature store.

This package layers a typed schema, attribute filters and transactional
writes on top of the binary codec.

Modules:
    errors: Structured error taxonomy
    schema: Schema, field and feature model
    feature_store: Open, create, count and scan datasets
    transaction: Write sessions, dataset locks and atomic commit
    filters: Parse, bind and evaluate attribute filters
"""

__version__ = '1.0.0'
