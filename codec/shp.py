"""
Geometry file codec (.shp) and its record index (.shx).

File layout:
    100-byte header: file code 9994, file length in 16-bit words (both
    big-endian), version 1000, shape type and bounding box (little-endian).
    Records: 8-byte header (record number and content length in words, both
    big-endian) followed by little-endian content starting with the record's
    own shape type.

The index file repeats the header and lists, per record, its offset and
content length in words (big-endian). It is derived from the geometry file
and never read for correctness.

Functions:
    read_geometry_header: Parse the 100-byte header from a stream
    iter_geometry_records: Lazily decode records from a stream
    decode_geometry_file: Decode a complete geometry file
    encode_geometry_file: Encode geometries into geometry and index files
    decode_index_file: Decode the record index
"""

import io
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Tuple

from shapely.geometry import (
    Point, MultiPoint, LineString, MultiLineString,
    Polygon, MultiPolygon
)
from shapely.geometry.base import BaseGeometry

from core.errors import MalformedGeometry
from core.schema import (
    SHAPE_NULL, SHAPE_POINT, SHAPE_POLYLINE, SHAPE_POLYGON, SHAPE_MULTIPOINT
)
from geometry_ops.rings import assemble_polygons, polygon_rings
from utils.logger import get_logger

logger = get_logger(__name__)

HEADER_LENGTH = 100
RECORD_HEADER_LENGTH = 8
FILE_CODE = 9994
VERSION = 1000

SUPPORTED_SHAPE_TYPES = {SHAPE_POINT, SHAPE_POLYLINE, SHAPE_POLYGON, SHAPE_MULTIPOINT}

BBox = Tuple[float, float, float, float]
EMPTY_BBOX: BBox = (0.0, 0.0, 0.0, 0.0)


@dataclass(frozen=True)
class ShpHeader:
    shape_type: int
    file_length: int  # bytes
    bbox: BBox


# ---------------------------------------------------------------- header

def _pack_header(shape_type: int, file_length: int, bbox: BBox) -> bytes:
    return (
        struct.pack('>7i', FILE_CODE, 0, 0, 0, 0, 0, file_length // 2)
        + struct.pack('<2i', VERSION, shape_type)
        + struct.pack('<8d', bbox[0], bbox[1], bbox[2], bbox[3], 0.0, 0.0, 0.0, 0.0)
    )


def _parse_header(data: bytes) -> ShpHeader:
    if len(data) < HEADER_LENGTH:
        raise MalformedGeometry(
            f"Geometry file header truncated: {len(data)} of {HEADER_LENGTH} bytes")

    file_code = struct.unpack_from('>i', data, 0)[0]
    if file_code != FILE_CODE:
        raise MalformedGeometry(f"Bad file code {file_code} (expected {FILE_CODE})")

    file_words = struct.unpack_from('>i', data, 24)[0]
    version, shape_type = struct.unpack_from('<2i', data, 28)
    if version != VERSION:
        logger.debug(f"Unexpected geometry file version {version}")
    if shape_type != SHAPE_NULL and shape_type not in SUPPORTED_SHAPE_TYPES:
        raise MalformedGeometry(f"Unsupported shape type {shape_type}")

    file_length = file_words * 2
    if file_length < HEADER_LENGTH:
        raise MalformedGeometry(f"Declared file length {file_length} is shorter than the header")

    bbox = struct.unpack_from('<4d', data, 36)
    return ShpHeader(shape_type, file_length, tuple(bbox))


def read_geometry_header(stream: BinaryIO) -> ShpHeader:
    """Read and validate the 100-byte header at the current stream position."""
    return _parse_header(stream.read(HEADER_LENGTH))


# ---------------------------------------------------------------- decode

class _Content:
    """Bounds-checked little-endian reader over one record's content."""

    def __init__(self, data: bytes, record_number: int):
        self.data = data
        self.offset = 0
        self.record_number = record_number

    def take(self, fmt: str):
        size = struct.calcsize(fmt)
        if self.offset + size > len(self.data):
            raise MalformedGeometry(
                f"Record {self.record_number}: content ends inside the shape "
                f"(needs {self.offset + size} bytes, declared {len(self.data)})")
        values = struct.unpack_from(fmt, self.data, self.offset)
        self.offset += size
        return values

    def take_count(self, what: str) -> int:
        count = self.take('<i')[0]
        if count < 0:
            raise MalformedGeometry(f"Record {self.record_number}: negative {what} count {count}")
        return count

    def take_points(self, count: int) -> List[Tuple[float, float]]:
        flat = self.take(f'<{2 * count}d')
        return list(zip(flat[0::2], flat[1::2]))


def _split_parts(points, part_starts, record_number):
    bounds = list(part_starts) + [len(points)]
    if part_starts and part_starts[0] != 0:
        raise MalformedGeometry(f"Record {record_number}: first part does not start at 0")
    parts = []
    for start, end in zip(bounds, bounds[1:]):
        if end < start or end > len(points):
            raise MalformedGeometry(f"Record {record_number}: invalid part index {start}")
        parts.append(points[start:end])
    return parts


def decode_shape(content: bytes, file_shape_type: int, record_number: int) -> Optional[BaseGeometry]:
    """
    Decode one record's content into a shapely geometry.

    Returns None for the null shape.

    Raises:
        MalformedGeometry: On shape type mismatch, content shorter than the
            structure it declares, or leftover bytes after the shape
    """
    reader = _Content(content, record_number)
    shape_type = reader.take('<i')[0]

    if shape_type == SHAPE_NULL:
        geom = None
    elif shape_type != file_shape_type:
        raise MalformedGeometry(
            f"Record {record_number}: shape type {shape_type} does not match file type {file_shape_type}")
    elif shape_type == SHAPE_POINT:
        x, y = reader.take('<2d')
        geom = Point(x, y)
    elif shape_type == SHAPE_MULTIPOINT:
        reader.take('<4d')
        num_points = reader.take_count('point')
        geom = MultiPoint(reader.take_points(num_points))
    else:
        reader.take('<4d')
        num_parts = reader.take_count('part')
        num_points = reader.take_count('point')
        part_starts = list(reader.take(f'<{num_parts}i'))
        points = reader.take_points(num_points)
        parts = _split_parts(points, part_starts, record_number)

        if shape_type == SHAPE_POLYLINE:
            geom = _build_polyline(parts, record_number)
        else:
            try:
                geom = assemble_polygons(parts)
            except MalformedGeometry as e:
                raise MalformedGeometry(f"Record {record_number}: {e.message}")

    if reader.offset != len(content):
        raise MalformedGeometry(
            f"Record {record_number}: declared length {len(content)} bytes "
            f"but shape consumed {reader.offset}")
    return geom


def _build_polyline(parts, record_number: int) -> Optional[BaseGeometry]:
    if not parts:
        return None
    for part in parts:
        if len(part) < 2:
            raise MalformedGeometry(f"Record {record_number}: line part with {len(part)} point(s)")
    if len(parts) == 1:
        return LineString(parts[0])
    return MultiLineString(parts)


def iter_geometry_records(stream: BinaryIO,
                          header: Optional[ShpHeader] = None) -> Iterator[Tuple[int, Optional[BaseGeometry]]]:
    """
    Lazily decode (record_number, geometry) pairs from a geometry file stream.

    Reading stops at the declared file length. Bytes that end before a
    complete record header are treated as the end of the records; a record
    whose content is cut short raises MalformedGeometry.
    """
    if header is None:
        header = read_geometry_header(stream)

    position = HEADER_LENGTH
    while position < header.file_length:
        record_header = stream.read(RECORD_HEADER_LENGTH)
        if len(record_header) < RECORD_HEADER_LENGTH:
            if record_header:
                logger.debug(f"Ignoring {len(record_header)} trailing byte(s) at offset {position}")
            return

        record_number, content_words = struct.unpack('>2i', record_header)
        content_length = content_words * 2
        if content_length < 4:
            raise MalformedGeometry(
                f"Record {record_number}: content length {content_length} is too short")

        content = stream.read(content_length)
        if len(content) < content_length:
            raise MalformedGeometry(
                f"Record {record_number}: truncated inside record "
                f"({len(content)} of {content_length} bytes)")

        yield record_number, decode_shape(content, header.shape_type, record_number)
        position += RECORD_HEADER_LENGTH + content_length


def decode_geometry_file(data: bytes) -> List[Tuple[int, Optional[BaseGeometry]]]:
    """Decode a complete geometry file into (record_number, geometry) pairs."""
    return list(iter_geometry_records(io.BytesIO(data)))


# ---------------------------------------------------------------- encode

def _bbox_of(points: Sequence[Tuple[float, float]]) -> BBox:
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    return (min(xs), min(ys), max(xs), max(ys))


def _pack_points(points: Sequence[Tuple[float, float]]) -> bytes:
    flat = [value for point in points for value in point[:2]]
    return struct.pack(f'<{len(flat)}d', *flat)


def _pack_parts(shape_type: int, parts: List[List[Tuple[float, float]]]) -> bytes:
    points = [p for part in parts for p in part]
    bbox = _bbox_of(points) if points else EMPTY_BBOX
    starts = []
    index = 0
    for part in parts:
        starts.append(index)
        index += len(part)
    return (
        struct.pack('<i4d2i', shape_type, *bbox, len(parts), len(points))
        + struct.pack(f'<{len(starts)}i', *starts)
        + _pack_points(points)
    )


def encode_shape(geom: Optional[BaseGeometry], shape_type: int) -> bytes:
    """
    Encode one geometry as record content for a file of ``shape_type``.

    None and empty point/line geometries become the null shape. An empty
    polygon still produces a polygon record with zero rings.

    Raises:
        MalformedGeometry: If the geometry cannot be stored under the shape type
    """
    if geom is None:
        return struct.pack('<i', SHAPE_NULL)

    kind = geom.geom_type

    if shape_type == SHAPE_POLYGON and kind in ('Polygon', 'MultiPolygon'):
        rings = polygon_rings(geom)
        return _pack_parts(SHAPE_POLYGON, [list(ring) for ring in rings])

    if geom.is_empty:
        return struct.pack('<i', SHAPE_NULL)

    if shape_type == SHAPE_POINT and kind == 'Point':
        return struct.pack('<i2d', SHAPE_POINT, geom.x, geom.y)

    if shape_type == SHAPE_MULTIPOINT and kind in ('Point', 'MultiPoint'):
        members = [geom] if kind == 'Point' else list(geom.geoms)
        points = [(p.x, p.y) for p in members]
        return (
            struct.pack('<i4di', SHAPE_MULTIPOINT, *_bbox_of(points), len(points))
            + _pack_points(points)
        )

    if shape_type == SHAPE_POLYLINE and kind in ('LineString', 'MultiLineString'):
        lines = [geom] if kind == 'LineString' else list(geom.geoms)
        parts = [[tuple(c[:2]) for c in line.coords] for line in lines if not line.is_empty]
        return _pack_parts(SHAPE_POLYLINE, parts)

    raise MalformedGeometry(f"Cannot encode {kind} under shape type {shape_type}")


def _merge_bbox(geometries: Iterable[Optional[BaseGeometry]]) -> BBox:
    merged = None
    for geom in geometries:
        if geom is None or geom.is_empty:
            continue
        minx, miny, maxx, maxy = geom.bounds
        if merged is None:
            merged = [minx, miny, maxx, maxy]
        else:
            merged = [min(merged[0], minx), min(merged[1], miny),
                      max(merged[2], maxx), max(merged[3], maxy)]
    return tuple(merged) if merged else EMPTY_BBOX


def encode_geometry_file(geometries: Sequence[Optional[BaseGeometry]],
                         shape_type: int) -> Tuple[bytes, bytes]:
    """
    Encode geometries into geometry file and index file bytes.

    Args:
        geometries: One geometry (or None) per record, in record order
        shape_type: File-level shape type code

    Returns:
        Tuple of (shp_bytes, shx_bytes)
    """
    if shape_type not in SUPPORTED_SHAPE_TYPES:
        raise MalformedGeometry(f"Unsupported shape type {shape_type}")

    body = io.BytesIO()
    index = io.BytesIO()
    offset = HEADER_LENGTH

    for record_number, geom in enumerate(geometries, start=1):
        content = encode_shape(geom, shape_type)
        body.write(struct.pack('>2i', record_number, len(content) // 2))
        body.write(content)
        index.write(struct.pack('>2i', offset // 2, len(content) // 2))
        offset += RECORD_HEADER_LENGTH + len(content)

    bbox = _merge_bbox(geometries)
    shp = _pack_header(shape_type, offset, bbox) + body.getvalue()
    shx_length = HEADER_LENGTH + len(index.getvalue())
    shx = _pack_header(shape_type, shx_length, bbox) + index.getvalue()
    return shp, shx


def decode_index_file(data: bytes) -> List[Tuple[int, int]]:
    """
    Decode the record index into (offset, content_length) pairs in bytes.

    Trailing bytes shorter than one index entry are ignored.
    """
    header = _parse_header(data)
    end = min(len(data), header.file_length)
    entries = []
    for position in range(HEADER_LENGTH, end - RECORD_HEADER_LENGTH + 1, RECORD_HEADER_LENGTH):
        offset_words, length_words = struct.unpack_from('>2i', data, position)
        entries.append((offset_words * 2, length_words * 2))
    return entries
