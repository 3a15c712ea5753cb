"""
Schema and feature model.

A Schema binds one geometry type, an ordered list of typed columns and a
coordinate reference system to a dataset. Features are plain records checked
against that schema before they are handed to a writer.

Classes:
    GeometryType: The six geometry types a dataset may hold
    FieldType: Closed set of attribute value types
    FieldDef: One attribute column
    CoordinateReferenceSystem: Authority code plus axis order
    Schema: Type name, geometry type, fields and CRS
    Feature: Id, geometry and attribute mapping
"""

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from shapely.geometry.base import BaseGeometry

from core.errors import InvalidSchema, SchemaMismatch

# Shape type codes of the geometry file
SHAPE_NULL = 0
SHAPE_POINT = 1
SHAPE_POLYLINE = 3
SHAPE_POLYGON = 5
SHAPE_MULTIPOINT = 8

MAX_FIELD_NAME_BYTES = 10

DEFAULT_TEXT_LENGTH = 254
DEFAULT_INTEGER_LENGTH = 18
DEFAULT_DOUBLE_LENGTH = 33
DEFAULT_DOUBLE_DECIMALS = 15
DATE_LENGTH = 8


class GeometryType(str, Enum):
    POINT = 'Point'
    LINESTRING = 'LineString'
    POLYGON = 'Polygon'
    MULTIPOINT = 'MultiPoint'
    MULTILINESTRING = 'MultiLineString'
    MULTIPOLYGON = 'MultiPolygon'

    @property
    def shape_type(self) -> int:
        return _SHAPE_TYPE_BY_GEOMETRY[self]

    @classmethod
    def from_shape_type(cls, shape_type: int) -> 'GeometryType':
        """Widest geometry type stored under a shape type code."""
        try:
            return _GEOMETRY_BY_SHAPE_TYPE[shape_type]
        except KeyError:
            raise InvalidSchema(f"Unsupported shape type code: {shape_type}")


_SHAPE_TYPE_BY_GEOMETRY = {
    GeometryType.POINT: SHAPE_POINT,
    GeometryType.MULTIPOINT: SHAPE_MULTIPOINT,
    GeometryType.LINESTRING: SHAPE_POLYLINE,
    GeometryType.MULTILINESTRING: SHAPE_POLYLINE,
    GeometryType.POLYGON: SHAPE_POLYGON,
    GeometryType.MULTIPOLYGON: SHAPE_POLYGON,
}

_GEOMETRY_BY_SHAPE_TYPE = {
    SHAPE_POINT: GeometryType.POINT,
    SHAPE_MULTIPOINT: GeometryType.MULTIPOINT,
    SHAPE_POLYLINE: GeometryType.MULTILINESTRING,
    SHAPE_POLYGON: GeometryType.MULTIPOLYGON,
}

# Concrete shapely types each schema geometry type accepts
_ACCEPTED_GEOM_TYPES = {
    GeometryType.POINT: {'Point'},
    GeometryType.MULTIPOINT: {'Point', 'MultiPoint'},
    GeometryType.LINESTRING: {'LineString', 'MultiLineString'},
    GeometryType.MULTILINESTRING: {'LineString', 'MultiLineString'},
    GeometryType.POLYGON: {'Polygon', 'MultiPolygon'},
    GeometryType.MULTIPOLYGON: {'Polygon', 'MultiPolygon'},
}


class FieldType(str, Enum):
    TEXT = 'Text'
    INTEGER = 'Integer'
    DOUBLE = 'Double'
    DATE = 'Date'

    @property
    def is_numeric(self) -> bool:
        return self in (FieldType.INTEGER, FieldType.DOUBLE)


@dataclass(frozen=True)
class FieldDef:
    """
    One attribute column.

    ``length`` and ``decimals`` are the fixed-width storage of the column in
    the attribute file; they default per type when left as None.
    """
    name: str
    type: FieldType
    length: Optional[int] = None
    decimals: Optional[int] = None

    def __post_init__(self):
        field_type = FieldType(self.type)
        object.__setattr__(self, 'type', field_type)

        if self.length is None:
            object.__setattr__(self, 'length', {
                FieldType.TEXT: DEFAULT_TEXT_LENGTH,
                FieldType.INTEGER: DEFAULT_INTEGER_LENGTH,
                FieldType.DOUBLE: DEFAULT_DOUBLE_LENGTH,
                FieldType.DATE: DATE_LENGTH,
            }[field_type])
        if self.decimals is None:
            decimals = DEFAULT_DOUBLE_DECIMALS if field_type == FieldType.DOUBLE else 0
            object.__setattr__(self, 'decimals', decimals)

        if not 1 <= self.length <= 254:
            raise InvalidSchema(f"Field '{self.name}' length must be 1..254, got {self.length}")
        if field_type == FieldType.DATE and self.length != DATE_LENGTH:
            raise InvalidSchema(f"Date field '{self.name}' must have length {DATE_LENGTH}")
        if field_type == FieldType.INTEGER and self.decimals:
            raise InvalidSchema(f"Integer field '{self.name}' cannot have decimals")
        if field_type == FieldType.DOUBLE and self.decimals >= self.length:
            raise InvalidSchema(f"Double field '{self.name}' needs length > decimals")

    @classmethod
    def text(cls, name: str, max_length: int = DEFAULT_TEXT_LENGTH) -> 'FieldDef':
        return cls(name, FieldType.TEXT, max_length)

    @classmethod
    def integer(cls, name: str) -> 'FieldDef':
        return cls(name, FieldType.INTEGER)

    @classmethod
    def double(cls, name: str) -> 'FieldDef':
        return cls(name, FieldType.DOUBLE)

    @classmethod
    def date(cls, name: str) -> 'FieldDef':
        return cls(name, FieldType.DATE)

    def coerce(self, value: Any) -> Any:
        """
        Convert a Python value into this column's value type.

        Raises:
            SchemaMismatch: If the value cannot be stored in this column
        """
        if value is None:
            return None

        if self.type == FieldType.TEXT:
            if not isinstance(value, str):
                raise SchemaMismatch(
                    f"Field '{self.name}' expects Text, got {type(value).__name__}")
            return value

        if self.type == FieldType.INTEGER:
            if isinstance(value, bool) or not isinstance(value, int):
                raise SchemaMismatch(
                    f"Field '{self.name}' expects Integer, got {type(value).__name__}")
            if len(str(value)) > self.length:
                raise SchemaMismatch(
                    f"Value {value} does not fit Integer field '{self.name}' ({self.length} digits)")
            return value

        if self.type == FieldType.DOUBLE:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise SchemaMismatch(
                    f"Field '{self.name}' expects Double, got {type(value).__name__}")
            return float(value)

        # Date
        if isinstance(value, datetime.datetime):
            return value.date()
        if isinstance(value, datetime.date):
            return value
        raise SchemaMismatch(f"Field '{self.name}' expects Date, got {type(value).__name__}")


@dataclass(frozen=True)
class CoordinateReferenceSystem:
    """
    Authority code (e.g. 'EPSG:4326') plus axis order.

    ``code`` is None for an unknown CRS. ``wkt`` keeps the sidecar text a CRS
    was decoded from so an unknown definition can still be written back.
    """
    code: Optional[str]
    lon_first: bool = True
    wkt: Optional[str] = field(default=None, compare=False)

    @property
    def is_unknown(self) -> bool:
        return self.code is None

    def with_longitude_first(self) -> 'CoordinateReferenceSystem':
        return CoordinateReferenceSystem(self.code, True, self.wkt)

    def __str__(self):
        order = 'lon/lat' if self.lon_first else 'lat/lon'
        return f"{self.code or 'unknown'} ({order})"


UNKNOWN_CRS = CoordinateReferenceSystem(None, True)


def field_name_bytes(name: str) -> int:
    return len(name.encode('utf-8'))


@dataclass(frozen=True)
class Schema:
    """
    Dataset schema.

    The geometry column is implicit and never part of ``fields``.
    """
    type_name: str
    geometry_type: GeometryType
    fields: Tuple[FieldDef, ...] = ()
    crs: CoordinateReferenceSystem = UNKNOWN_CRS

    def __post_init__(self):
        object.__setattr__(self, 'geometry_type', GeometryType(self.geometry_type))
        object.__setattr__(self, 'fields', tuple(self.fields))

        seen = set()
        for field_def in self.fields:
            size = field_name_bytes(field_def.name)
            if size == 0 or size > MAX_FIELD_NAME_BYTES:
                raise InvalidSchema(
                    f"Field name '{field_def.name}' must be 1..{MAX_FIELD_NAME_BYTES} bytes")
            key = field_def.name.lower()
            if key in seen:
                raise InvalidSchema(f"Duplicate field name (case-insensitive): '{field_def.name}'")
            seen.add(key)

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def shape_type(self) -> int:
        return self.geometry_type.shape_type

    def field(self, name: str) -> Optional[FieldDef]:
        """Case-insensitive column lookup."""
        key = name.lower()
        for field_def in self.fields:
            if field_def.name.lower() == key:
                return field_def
        return None

    def with_crs(self, crs: CoordinateReferenceSystem) -> 'Schema':
        return Schema(self.type_name, self.geometry_type, self.fields, crs)

    def is_compatible(self, other: 'Schema') -> bool:
        """
        True when both schemas describe the same on-disk layout.

        Type names and CRS are not compared: the type name comes from the
        file stem and the CRS lives in its own sidecar.
        """
        if self.shape_type != other.shape_type:
            return False
        if len(self.fields) != len(other.fields):
            return False
        for mine, theirs in zip(self.fields, other.fields):
            if mine.name.lower() != theirs.name.lower() or mine.type != theirs.type:
                return False
            if mine.length != theirs.length or mine.decimals != theirs.decimals:
                return False
        return True

    def accepts_geometry(self, geom: Optional[BaseGeometry]) -> bool:
        if geom is None:
            return True
        return geom.geom_type in _ACCEPTED_GEOM_TYPES[self.geometry_type]

    def coerce_attributes(self, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return a new attribute mapping keyed and typed by this schema.

        Keys are matched case-insensitively; missing keys become None.

        Raises:
            SchemaMismatch: On unknown keys or values of the wrong type
        """
        by_lower = {}
        for key, value in attributes.items():
            field_def = self.field(key)
            if field_def is None:
                raise SchemaMismatch(f"Unknown attribute '{key}' for schema '{self.type_name}'")
            by_lower[field_def.name.lower()] = value

        return {
            f.name: f.coerce(by_lower.get(f.name.lower()))
            for f in self.fields
        }

    def describe(self) -> Dict[str, Any]:
        return {
            'type_name': self.type_name,
            'geometry_type': self.geometry_type.value,
            'crs': str(self.crs),
            'fields': [
                {'name': f.name, 'type': f.type.value, 'length': f.length, 'decimals': f.decimals}
                for f in self.fields
            ],
        }


@dataclass(frozen=True)
class Feature:
    """
    One record: store-local id, geometry and attribute values.

    Ids are not persisted; readers assign '<type_name>.<record_number>'.
    """
    id: Optional[str]
    geometry: Optional[BaseGeometry]
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.attributes:
            return self.attributes[name]
        key = name.lower()
        for attr_name, value in self.attributes.items():
            if attr_name.lower() == key:
                return value
        return default

