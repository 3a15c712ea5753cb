"""
Binary codec for Shapefile datasets.

Modules:
    shp: Geometry file and record index
    dbf: Attribute file and code page sidecar
    prj: CRS sidecar and the injectable CRS resolver
"""

__version__ = '1.0.0'
