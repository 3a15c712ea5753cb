"""
Ring Normalization Module

Handles ring closure, ring orientation and polygon assembly for the geometry
file. Shapefile polygons are stored as a flat list of rings whose winding
order tells outer rings (clockwise) from holes (counter-clockwise), so rings
are validated and normalized on write and regrouped into polygons on read.
"""

from typing import List, Optional, Sequence, Tuple

from shapely.geometry import Point, Polygon, MultiPolygon
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient
from shapely.ops import transform

from core.errors import MalformedGeometry
from utils.logger import get_logger

logger = get_logger(__name__)

Coordinate = Tuple[float, float]

MIN_RING_COORDS = 4


def signed_area(ring: Sequence[Coordinate]) -> float:
    """
    Shoelace area of a ring.

    Positive for counter-clockwise rings, negative for clockwise rings.
    """
    total = 0.0
    for (x1, y1), (x2, y2) in zip(ring, ring[1:]):
        total += x1 * y2 - x2 * y1
    return total / 2.0


def is_clockwise(ring: Sequence[Coordinate]) -> bool:
    return signed_area(ring) < 0


def close_ring(ring: Sequence[Coordinate]) -> List[Coordinate]:
    """
    Return the ring with its first coordinate repeated at the end.

    Only x and y are kept; a Z (or M) ordinate is dropped.

    Raises:
        MalformedGeometry: If the closed ring has fewer than 4 coordinates
    """
    coords = [(float(c[0]), float(c[1])) for c in ring]
    if coords and coords[0] != coords[-1]:
        coords.append(coords[0])
    if len(coords) < MIN_RING_COORDS:
        raise MalformedGeometry(
            f"Polygon ring has {len(coords)} coordinates (minimum {MIN_RING_COORDS})")
    return coords


def orient_polygon(geom: BaseGeometry) -> BaseGeometry:
    """
    Orient outer rings clockwise and holes counter-clockwise.

    Works on Polygon and MultiPolygon; empty polygons are returned unchanged.
    """
    if geom.is_empty:
        return geom
    if isinstance(geom, Polygon):
        return orient(geom, sign=-1.0)
    if isinstance(geom, MultiPolygon):
        return MultiPolygon([orient(part, sign=-1.0) for part in geom.geoms])
    return geom


def polygon_rings(geom: BaseGeometry) -> List[List[Coordinate]]:
    """
    Flatten a (Multi)Polygon into shapefile ring order.

    Each polygon contributes its exterior followed by its holes, all oriented
    and closed.
    """
    if geom.is_empty:
        return []
    oriented = orient_polygon(geom)
    parts = oriented.geoms if isinstance(oriented, MultiPolygon) else [oriented]

    rings = []
    for part in parts:
        if part.is_empty:
            continue
        rings.append(close_ring(part.exterior.coords))
        for interior in part.interiors:
            rings.append(close_ring(interior.coords))
    return rings


def assemble_polygons(rings: Sequence[Sequence[Coordinate]]) -> BaseGeometry:
    """
    Group decoded rings into a Polygon or MultiPolygon.

    Clockwise rings are outer rings. Counter-clockwise rings are holes of the
    first outer ring that contains them; a hole without a container is
    promoted to an outer ring. A ring set with no clockwise ring at all is
    treated as outer rings only.

    Args:
        rings: Rings as decoded from the geometry file

    Returns:
        Polygon for a single outer ring, MultiPolygon otherwise, or an empty
        Polygon when no rings were given

    Raises:
        MalformedGeometry: If any ring has fewer than 4 coordinates
    """
    closed = [close_ring(ring) for ring in rings]
    if not closed:
        return Polygon()

    outers = [ring for ring in closed if is_clockwise(ring)]
    holes = [ring for ring in closed if not is_clockwise(ring)]

    if not outers:
        logger.debug("No clockwise ring found, treating every ring as an outer ring")
        outers, holes = holes, []

    shells = [Polygon(ring) for ring in outers]
    hole_lists: List[List[List[Coordinate]]] = [[] for _ in outers]

    for hole in holes:
        owner = _find_container(shells, hole)
        if owner is None:
            logger.debug("Hole ring has no containing outer ring, promoting it")
            outers.append(hole)
            shells.append(Polygon(hole))
            hole_lists.append([])
        else:
            hole_lists[owner].append(hole)

    polygons = [Polygon(shell, hole_set) for shell, hole_set in zip(outers, hole_lists)]
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def _find_container(shells: Sequence[Polygon], hole: Sequence[Coordinate]) -> Optional[int]:
    hole_polygon = Polygon(hole)
    probe = hole_polygon.representative_point() if hole_polygon.is_valid else Point(hole[0])
    for index, shell in enumerate(shells):
        if shell.covers(probe):
            return index
    return None


def swap_xy(geom: Optional[BaseGeometry]) -> Optional[BaseGeometry]:
    """Swap the two axes of every coordinate (latitude-first <-> longitude-first)."""
    if geom is None or geom.is_empty:
        return geom
    return transform(lambda x, y, z=None: (y, x), geom)
