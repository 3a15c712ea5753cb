"""
Geometry Operations Package

Ring normalization for the geometry file, the buffer engine and the batch
buffer pipeline.

Modules:
    rings: Ring closure, orientation, polygon assembly and axis swapping
    buffering: Buffer points, lines and polygons by a distance
    pipeline: Buffer a whole dataset into a new polygon dataset

Usage:
    from geometry_ops.buffering import buffer_geometry
    from geometry_ops.pipeline import buffer_dataset

    zone = buffer_geometry(Point(0, 0), 10)
    store = buffer_dataset('data/roads.shp', 'data/roads_buffer', distance=25)
"""
