"""
Format bridge between GeoJSON and Shapefile datasets.

Modules:
    geojson: Schema inference, field-name reconciliation and conversion in
        both directions
"""

__version__ = '1.0.0'
