"""
Geometry Buffering Module

Computes offset polygons around points, lines and polygons in the units of
the geometry's own coordinates.

Construction:
- Point: regular polygon with 4 * segments_per_quarter_circle vertices
- Line: one rectangular strip per segment, a pie wedge on the convex side of
  every joint and a half-disc cap at both ends, dissolved with unary_union.
  Interior rings of the result are dropped.
- Polygon: the same strip + wedge stroke is built along every ring. A positive
  distance dissolves the stroke into the polygon (outer ring grows, holes
  shrink and vanish when they close up); a negative distance subtracts it.
  Distance 0 returns the polygon with normalized ring orientation.
- Multi geometries: every part is buffered and the results dissolved.
"""

import math
from typing import List, Optional, Sequence, Tuple

from shapely import make_valid
from shapely.geometry import Polygon, MultiPolygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from core.errors import InvalidDistance
from geometry_ops.rings import orient_polygon
from utils.logger import get_logger

logger = get_logger(__name__)

Coordinate = Tuple[float, float]

DEFAULT_SEGMENTS_PER_QUARTER_CIRCLE = 8

# Empty-geometry sentinel returned when an erosion removes the whole polygon
EMPTY_POLYGON = Polygon()

# Turns flatter than this (radians) need no joint wedge
_STRAIGHT_TOLERANCE = 1e-12


def _arc_points(center: Coordinate, radius: float, start: float, sweep: float,
                segments_per_quarter_circle: int) -> List[Coordinate]:
    """Points along an arc, both ends included, at most a quarter circle / segments apart."""
    steps = max(1, int(math.ceil(abs(sweep) / (math.pi / 2) * segments_per_quarter_circle - 1e-9)))
    cx, cy = center
    return [
        (cx + radius * math.cos(start + sweep * i / steps),
         cy + radius * math.sin(start + sweep * i / steps))
        for i in range(steps + 1)
    ]


def circle_polygon(center: Coordinate, radius: float,
                   segments_per_quarter_circle: int = DEFAULT_SEGMENTS_PER_QUARTER_CIRCLE) -> Polygon:
    """Regular polygon with 4 * segments_per_quarter_circle vertices around center."""
    count = 4 * segments_per_quarter_circle
    cx, cy = center
    return Polygon([
        (cx + radius * math.cos(2 * math.pi * i / count),
         cy + radius * math.sin(2 * math.pi * i / count))
        for i in range(count)
    ])


def _heading(p: Coordinate, q: Coordinate) -> float:
    return math.atan2(q[1] - p[1], q[0] - p[0])


def _segment_strip(p: Coordinate, q: Coordinate, distance: float) -> Polygon:
    length = math.hypot(q[0] - p[0], q[1] - p[1])
    nx = -(q[1] - p[1]) / length * distance
    ny = (q[0] - p[0]) / length * distance
    return Polygon([
        (p[0] + nx, p[1] + ny),
        (q[0] + nx, q[1] + ny),
        (q[0] - nx, q[1] - ny),
        (p[0] - nx, p[1] - ny),
    ])


def _joint_wedge(previous: Coordinate, vertex: Coordinate, following: Coordinate,
                 distance: float, segments: int) -> Optional[Polygon]:
    """
    Pie wedge filling the gap between two strips on the outside of a turn.

    Returns None for a straight continuation.
    """
    heading_in = _heading(previous, vertex)
    turn = _heading(vertex, following) - heading_in
    turn = (turn + math.pi) % (2 * math.pi) - math.pi
    if abs(turn) < _STRAIGHT_TOLERANCE:
        return None
    # The gap opens on the right of a left turn and on the left of a right turn
    start = heading_in - math.copysign(math.pi / 2, turn)
    return Polygon([vertex] + _arc_points(vertex, distance, start, turn, segments))


def _end_cap(end: Coordinate, outward: float, distance: float, segments: int) -> Polygon:
    """Half disc at a line end, bulging towards the ``outward`` heading."""
    return Polygon([end] + _arc_points(end, distance, outward - math.pi / 2, math.pi, segments))


def _distinct_points(coords: Sequence) -> List[Coordinate]:
    points = []
    for coord in coords:
        point = (float(coord[0]), float(coord[1]))
        if not points or point != points[-1]:
            points.append(point)
    return points


def _stroke(points: List[Coordinate], distance: float, segments: int, closed: bool) -> List[Polygon]:
    """Strips and joint wedges along a path; a closed path also joins its last and first segment."""
    pieces = [_segment_strip(p, q, distance) for p, q in zip(points, points[1:])]

    joints = range(len(points)) if closed else range(1, len(points) - 1)
    for i in joints:
        previous = points[i - 1]
        following = points[(i + 1) % len(points)] if closed else points[i + 1]
        wedge = _joint_wedge(previous, points[i], following, distance, segments)
        if wedge is not None:
            pieces.append(wedge)
    return pieces


def _polygonal(geom: BaseGeometry) -> BaseGeometry:
    """Keep the polygon parts of a dissolve/difference result."""
    if geom.is_empty:
        return EMPTY_POLYGON
    if isinstance(geom, (Polygon, MultiPolygon)):
        return geom
    parts = [g for g in getattr(geom, 'geoms', []) if isinstance(g, (Polygon, MultiPolygon))]
    if not parts:
        return EMPTY_POLYGON
    return unary_union(parts)


def _without_holes(geom: BaseGeometry) -> BaseGeometry:
    if isinstance(geom, Polygon):
        return Polygon(geom.exterior) if not geom.is_empty else geom
    if isinstance(geom, MultiPolygon):
        return MultiPolygon([Polygon(part.exterior) for part in geom.geoms])
    return geom


def _buffer_point(coord: Coordinate, distance: float, segments: int) -> Polygon:
    return circle_polygon(coord, distance, segments)


def _buffer_line(coords: Sequence, distance: float, segments: int) -> BaseGeometry:
    points = _distinct_points(coords)
    if len(points) == 1:
        logger.debug("Line without a non-zero segment, buffering as a point")
        return _buffer_point(points[0], distance, segments)

    pieces = _stroke(points, distance, segments, closed=False)
    pieces.append(_end_cap(points[0], _heading(points[1], points[0]), distance, segments))
    pieces.append(_end_cap(points[-1], _heading(points[-2], points[-1]), distance, segments))
    return _without_holes(_polygonal(unary_union(pieces)))


def _ring_stroke(coords: Sequence, distance: float, segments: int) -> List[Polygon]:
    points = _distinct_points(coords)
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    if len(points) < 2:
        return []
    return _stroke(points, distance, segments, closed=True)


def _buffer_polygon(polygon: Polygon, distance: float, segments: int) -> BaseGeometry:
    if not polygon.is_valid:
        logger.debug("Repairing invalid polygon before buffering")
        polygon = _polygonal(make_valid(polygon))
        if polygon.is_empty:
            return EMPTY_POLYGON

    if distance == 0:
        return orient_polygon(polygon)

    parts = polygon.geoms if isinstance(polygon, MultiPolygon) else [polygon]
    pieces = []
    for part in parts:
        pieces.extend(_ring_stroke(part.exterior.coords, abs(distance), segments))
        for interior in part.interiors:
            pieces.extend(_ring_stroke(interior.coords, abs(distance), segments))
    stroke = unary_union(pieces)

    if distance > 0:
        result = unary_union([polygon, stroke])
    else:
        result = polygon.difference(stroke)

    result = _polygonal(result)
    if result.is_empty or result.area == 0:
        logger.debug(f"Polygon collapsed under distance {distance}")
        return EMPTY_POLYGON
    return result


def _require_positive(distance: float, kind: str) -> None:
    if distance <= 0:
        raise InvalidDistance(f"Buffer distance for a {kind} must be positive, got {distance}")


def buffer_geometry(geometry: BaseGeometry, distance: float,
                    segments_per_quarter_circle: int = DEFAULT_SEGMENTS_PER_QUARTER_CIRCLE) -> BaseGeometry:
    """
    Buffer a geometry by a distance in its own coordinate units.

    Args:
        geometry: Point, LineString, Polygon or their Multi variants
        distance: Offset distance; must be positive for points and lines,
            may be zero or negative (erosion) for polygons
        segments_per_quarter_circle: Arc resolution

    Returns:
        Polygon or MultiPolygon with outer rings clockwise and holes
        counter-clockwise, or EMPTY_POLYGON when an erosion removes
        everything

    Raises:
        InvalidDistance: For a non-positive distance on a point or line, a
            non-finite distance, or a resolution below 1

    Example:
        >>> circle = buffer_geometry(Point(0, 0), 10, 8)
        >>> len(circle.exterior.coords) - 1
        32
    """
    if isinstance(segments_per_quarter_circle, bool) or int(segments_per_quarter_circle) < 1:
        raise InvalidDistance(
            f"segments_per_quarter_circle must be at least 1, got {segments_per_quarter_circle}")
    segments = int(segments_per_quarter_circle)

    distance = float(distance)
    if not math.isfinite(distance):
        raise InvalidDistance(f"Buffer distance must be finite, got {distance}")

    if geometry is None or geometry.is_empty:
        return EMPTY_POLYGON

    kind = geometry.geom_type

    if kind == 'Point':
        _require_positive(distance, 'point')
        return orient_polygon(_buffer_point((geometry.x, geometry.y), distance, segments))

    if kind in ('LineString', 'LinearRing'):
        _require_positive(distance, 'line')
        return orient_polygon(_buffer_line(geometry.coords, distance, segments))

    if kind == 'Polygon':
        return orient_polygon(_buffer_polygon(geometry, distance, segments))

    if kind in ('MultiPoint', 'MultiLineString', 'MultiPolygon', 'GeometryCollection'):
        buffered = [
            buffer_geometry(part, distance, segments)
            for part in geometry.geoms
            if not part.is_empty
        ]
        buffered = [part for part in buffered if not part.is_empty]
        if not buffered:
            return EMPTY_POLYGON
        if len(buffered) == 1:
            return buffered[0]
        return orient_polygon(_polygonal(unary_union(buffered)))

    raise InvalidDistance(f"Cannot buffer geometry type {kind}")
