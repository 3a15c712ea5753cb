"""
GeoJSON bridge.

Reconciles GeoJSON's free-form features with the fixed layout of a dataset:
- Property names are cut to 10 bytes; a cut name that collides with one
  already assigned gets a numeric suffix ('descriptio', 'descripti1', ...)
- The original -> assigned name mapping is kept in a '<stem>.fieldmap.json'
  sidecar so the reverse conversion restores the original names. Without
  the sidecar the stored (cut) names are used as-is.
- Property types are inferred from the values; mixes that have no common
  column type fall back to Text
- Mixed geometry types are rejected (UnsupportedGeometryMix), as is
  GeometryCollection. The single and multi-part types of one family are not
  a mix: Point/MultiPoint, LineString/MultiLineString and
  Polygon/MultiPolygon widen to the Multi type, which holds both
- GeoJSON is longitude-first, so the CRS written with the dataset is pinned to
  longitude-first whatever the authority's native axis order

Functions:
    describe_geojson_features: Features -> GeoJsonSchema
    infer_shapefile_schema: GeoJsonSchema -> (Schema, FieldNameMap)
    geojson_to_feature: One GeoJSON feature -> Feature
    geojson_to_shapefile: Create or append to a dataset from GeoJSON features
    feature_to_geojson: Feature -> GeoJSON feature
    dataset_to_geojson: Dataset -> FeatureCollection
    dataset_to_geodataframe: Dataset -> GeoDataFrame
"""

import datetime
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

import geopandas as gpd
from shapely.errors import ShapelyError
from shapely.geometry import mapping, shape

from codec.dbf import truncate_encoded
from codec.prj import CrsResolver
from config.config_loader import resolve_settings
from core.errors import MalformedGeometry, SchemaMismatch, UnsupportedGeometryMix
from core.feature_store import FeatureStore, create_dataset, open_dataset, resolve_stem
from core.filters import BoundFilter
from core.schema import (
    CoordinateReferenceSystem, Feature, FieldDef, FieldType, GeometryType,
    MAX_FIELD_NAME_BYTES, Schema
)
from core.transaction import TransactionMode
from geometry_ops.rings import swap_xy
from utils.events import StoreEvent, default_sink
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_GEOJSON_CRS = 'EPSG:4326'

# Geometry families that narrow to their Multi type
_FAMILIES = {
    'Point': GeometryType.MULTIPOINT,
    'MultiPoint': GeometryType.MULTIPOINT,
    'LineString': GeometryType.MULTILINESTRING,
    'MultiLineString': GeometryType.MULTILINESTRING,
    'Polygon': GeometryType.MULTIPOLYGON,
    'MultiPolygon': GeometryType.MULTIPOLYGON,
}

_EPSG_URN = re.compile(r'^urn:ogc:def:crs:EPSG:[\d.]*:(\d+)$', re.IGNORECASE)
_CRS84_NAMES = {'urn:ogc:def:crs:ogc:1.3:crs84', 'urn:ogc:def:crs:ogc::crs84', 'crs84', 'ogc:crs84'}


@dataclass(frozen=True)
class GeoJsonSchema:
    """Geometry type and ordered property types inferred from GeoJSON features."""
    geometry_type: GeometryType
    properties: Dict[str, FieldType] = field(default_factory=dict)
    crs: Optional[str] = None


class FieldNameMap:
    """Original property name <-> stored field name."""

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self.original_to_field: Dict[str, str] = dict(mapping or {})

    @classmethod
    def identity(cls, names: Iterable[str]) -> 'FieldNameMap':
        return cls({name: name for name in names})

    def field_for(self, original: str) -> Optional[str]:
        return self.original_to_field.get(original)

    def original_for(self, field_name: str) -> str:
        key = field_name.lower()
        for original, assigned in self.original_to_field.items():
            if assigned.lower() == key:
                return original
        return field_name

    def renamed(self) -> Dict[str, str]:
        return {o: f for o, f in self.original_to_field.items() if o != f}

    def __len__(self):
        return len(self.original_to_field)

    def __eq__(self, other):
        return isinstance(other, FieldNameMap) and self.original_to_field == other.original_to_field

    def to_dict(self) -> Dict[str, Any]:
        return {'version': 1, 'fields': dict(self.original_to_field)}

    def save(self, path: Path) -> None:
        tmp_path = path.with_name(path.name + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)

    @classmethod
    def load(cls, path: Path) -> Optional['FieldNameMap']:
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return cls(data.get('fields', {}))


def field_map_path(stem: Path, suffix: str = '.fieldmap.json') -> Path:
    return stem.with_name(stem.name + suffix)


# ---------------------------------------------------------------- names & types

def truncate_field_name(name: str, taken: Set[str], encoding: str = 'utf-8') -> str:
    """
    Cut a property name to 10 bytes and make it unique within ``taken``.

    ``taken`` holds the lower-cased names already assigned. On a collision the
    cut name is shortened further to make room for a numeric suffix.

    Example:
        >>> taken = {'descriptio'}
        >>> truncate_field_name('description_b', taken)
        'descripti1'
    """
    base = truncate_encoded(name, MAX_FIELD_NAME_BYTES, encoding).decode(encoding) or 'field'
    if base.lower() not in taken:
        return base

    counter = 1
    while True:
        suffix = str(counter)
        stem = truncate_encoded(base, MAX_FIELD_NAME_BYTES - len(suffix), encoding).decode(encoding)
        candidate = stem + suffix
        if candidate.lower() not in taken:
            return candidate
        counter += 1


def _value_kind(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, int):
        return 'int'
    if isinstance(value, float):
        return 'float'
    if isinstance(value, str):
        return 'str'
    return 'nested'


def _field_type_for(kinds: Set[str]) -> FieldType:
    if kinds == {'int'} or kinds == {'bool'}:
        return FieldType.INTEGER
    if kinds and kinds <= {'int', 'float'}:
        return FieldType.DOUBLE
    return FieldType.TEXT


def _narrow_geometry_type(kinds: List[str]) -> GeometryType:
    distinct = set(kinds)
    if 'GeometryCollection' in distinct:
        raise UnsupportedGeometryMix("GeometryCollection cannot be stored in a Shapefile")
    unknown = distinct - set(_FAMILIES)
    if unknown:
        raise UnsupportedGeometryMix(f"Unsupported GeoJSON geometry type(s): {sorted(unknown)}")
    if not distinct:
        raise UnsupportedGeometryMix("No feature carries a geometry to infer the geometry type from")
    if len(distinct) == 1:
        return GeometryType(distinct.pop())

    families = {_FAMILIES[kind] for kind in distinct}
    if len(families) > 1:
        raise UnsupportedGeometryMix(
            f"Mixed geometry types {sorted(distinct)}; a Shapefile holds one geometry type")
    return families.pop()


def geojson_crs_code(obj: Dict[str, Any]) -> Optional[str]:
    """Authority code from a legacy GeoJSON 'crs' member, or None."""
    crs = obj.get('crs')
    if not isinstance(crs, dict):
        return None
    name = str(crs.get('properties', {}).get('name', '')).strip()
    if not name:
        return None
    if name.lower() in _CRS84_NAMES:
        return DEFAULT_GEOJSON_CRS
    match = _EPSG_URN.match(name)
    if match:
        return f"EPSG:{match.group(1)}"
    if name.upper().startswith('EPSG:'):
        return name.upper()
    logger.warning(f"Ignoring unrecognised GeoJSON crs member: {name}")
    return None


def pin_longitude_first(crs: Union[str, CoordinateReferenceSystem, None]) -> CoordinateReferenceSystem:
    """Return the CRS with longitude-first axis order (GeoJSON's order)."""
    if crs is None:
        crs = DEFAULT_GEOJSON_CRS
    if isinstance(crs, str):
        return CoordinateReferenceSystem(crs, True)
    return crs.with_longitude_first()


def _as_feature_list(features: Union[str, Dict[str, Any], Iterable[Dict[str, Any]]]
                     ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Normalize JSON text, a Feature, a FeatureCollection or a list of Features."""
    if isinstance(features, str):
        try:
            features = json.loads(features)
        except json.JSONDecodeError as e:
            raise SchemaMismatch(f"GeoJSON text could not be parsed: {e}") from e

    if isinstance(features, dict):
        kind = features.get('type')
        if kind == 'FeatureCollection':
            return list(features.get('features', [])), geojson_crs_code(features)
        if kind == 'Feature':
            return [features], geojson_crs_code(features)
        raise SchemaMismatch(f"Expected a GeoJSON Feature, got type {kind!r}")

    items = list(features)
    for item in items:
        if not isinstance(item, dict) or item.get('type') != 'Feature':
            raise SchemaMismatch("Expected a sequence of GeoJSON Feature objects")
    return items, None


def describe_geojson_features(features) -> GeoJsonSchema:
    """
    Infer the geometry type and property types of GeoJSON features.

    Args:
        features: One Feature, a FeatureCollection, a list of Features or
            their JSON text

    Returns:
        GeoJsonSchema with properties in first-seen order

    Raises:
        UnsupportedGeometryMix: On GeometryCollection or geometry types that do
            not narrow to one Shapefile type
    """
    items, crs_code = _as_feature_list(features)

    geometry_kinds = []
    property_kinds: Dict[str, Set[str]] = {}
    for item in items:
        geometry = item.get('geometry')
        if geometry:
            geometry_kinds.append(geometry.get('type'))
        for name, value in (item.get('properties') or {}).items():
            kinds = property_kinds.setdefault(name, set())
            kind = _value_kind(value)
            if kind is not None:
                kinds.add(kind)

    return GeoJsonSchema(
        geometry_type=_narrow_geometry_type(geometry_kinds),
        properties={name: _field_type_for(kinds) for name, kinds in property_kinds.items()},
        crs=crs_code,
    )


def infer_shapefile_schema(geojson_schema: GeoJsonSchema, type_name: str,
                           crs: Union[str, CoordinateReferenceSystem, None] = None,
                           text_length: int = 254, encoding: str = 'utf-8',
                           events=None) -> Tuple[Schema, FieldNameMap]:
    """
    Build a dataset schema for GeoJSON features.

    Returns:
        Tuple of (Schema, FieldNameMap). The schema CRS is longitude-first.
    """
    events = default_sink(events)
    taken: Set[str] = set()
    fields = []
    names = {}

    for original, field_type in geojson_schema.properties.items():
        assigned = truncate_field_name(original, taken, encoding)
        taken.add(assigned.lower())
        names[original] = assigned
        if assigned != original:
            events.emit(StoreEvent.FIELD_RENAMED, f"Property '{original}' stored as '{assigned}'",
                        original=original, field=assigned)

        if field_type == FieldType.TEXT:
            fields.append(FieldDef.text(assigned, text_length))
        else:
            fields.append(FieldDef(assigned, field_type))

    schema = Schema(type_name, geojson_schema.geometry_type, tuple(fields),
                    pin_longitude_first(crs or geojson_schema.crs))
    return schema, FieldNameMap(names)


# ---------------------------------------------------------------- GeoJSON -> Feature

def _property_value(field_def: FieldDef, value: Any) -> Any:
    if value is None:
        return None
    if field_def.type == FieldType.TEXT:
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)
    if field_def.type == FieldType.INTEGER:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float) and value.is_integer():
            return int(value)
    if field_def.type == FieldType.DATE and isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value[:10])
        except ValueError:
            raise SchemaMismatch(f"Property value {value!r} is not a date for '{field_def.name}'")
    return value


def geojson_to_feature(feature: Dict[str, Any], schema: Schema, field_map: FieldNameMap,
                       fid: Optional[str] = None) -> Feature:
    """
    Convert one GeoJSON feature into a Feature of ``schema``.

    Raises:
        UnsupportedGeometryMix: For a GeometryCollection geometry
        SchemaMismatch: For properties that have no column in the schema
        MalformedGeometry: For a geometry shapely cannot build
    """
    geometry_json = feature.get('geometry')
    geometry = None
    if geometry_json:
        if geometry_json.get('type') == 'GeometryCollection':
            raise UnsupportedGeometryMix("GeometryCollection cannot be stored in a Shapefile")
        try:
            geometry = shape(geometry_json)
        except (ShapelyError, ValueError, KeyError, TypeError) as e:
            raise MalformedGeometry(
                f"Invalid {geometry_json.get('type')} geometry in GeoJSON feature: {e}") from e

    attributes = {}
    for original, value in (feature.get('properties') or {}).items():
        field_name = field_map.field_for(original)
        field_def = schema.field(field_name) if field_name else None
        if field_def is None:
            raise SchemaMismatch(f"Property '{original}' has no column in '{schema.type_name}'")
        attributes[field_def.name] = _property_value(field_def, value)

    feature_id = fid if fid is not None else feature.get('id')
    return Feature(str(feature_id) if feature_id is not None else None, geometry, attributes)


def geojson_to_shapefile(features, dataset_path: Union[str, Path],
                         crs: Union[str, CoordinateReferenceSystem, None] = None,
                         settings: Optional[Dict] = None, events=None,
                         resolver: Optional[CrsResolver] = None) -> FeatureStore:
    """
    Write GeoJSON features to a dataset.

    A missing dataset is created from the inferred schema and its field map
    sidecar is written. An existing dataset is appended to, translating
    property names through its stored field map (or the field names
    themselves when there is no sidecar).

    Args:
        features: One Feature, a FeatureCollection, a list of Features or
            their JSON text
        dataset_path: Target dataset stem or member file
        crs: CRS of the coordinates; defaults to the legacy 'crs' member, then the
            'default_crs' setting
        settings: Store settings
        events: Event sink
        resolver: CRS resolver

    Returns:
        FeatureStore of the written dataset
    """
    settings = resolve_settings(settings)
    events = default_sink(events)
    items, crs_code = _as_feature_list(features)
    stem = resolve_stem(dataset_path)
    map_path = field_map_path(stem, settings['field_map_suffix'])

    if stem.with_name(stem.name + '.shp').exists():
        store = open_dataset(stem, settings, events, resolver)
        field_map = FieldNameMap.load(map_path) or FieldNameMap.identity(store.schema.field_names)
        converted = [geojson_to_feature(item, store.schema, field_map) for item in items]
        created = False
    else:
        geojson_schema = describe_geojson_features(items)
        schema, field_map = infer_shapefile_schema(
            geojson_schema, stem.name, crs or crs_code or settings['default_crs'],
            settings['text_field_length'], settings['encoding'], events)
        # A feature that fails to convert leaves no dataset behind
        converted = [geojson_to_feature(item, schema, field_map) for item in items]
        store = create_dataset(stem, schema, settings, events, resolver)
        created = True

    with store.begin_transaction(TransactionMode.APPEND) as transaction:
        transaction.add_all(converted)
        transaction.commit()

    if created:
        field_map.save(map_path)
        logger.debug(f"Field map written: {map_path}")

    events.emit(StoreEvent.GEOJSON_IMPORTED, f"Imported {len(converted)} GeoJSON feature(s)",
                dataset=stem.name, created=created, renamed=len(field_map.renamed()))
    return store


# ---------------------------------------------------------------- Feature -> GeoJSON

def _json_value(value: Any) -> Any:
    if isinstance(value, datetime.date):
        return value.isoformat()
    return value


def feature_to_geojson(feature: Feature, field_map: Optional[FieldNameMap] = None) -> Dict[str, Any]:
    """Convert a Feature into a GeoJSON feature, restoring original property names."""
    properties = {}
    for name, value in feature.attributes.items():
        key = field_map.original_for(name) if field_map is not None else name
        properties[key] = _json_value(value)

    return {
        'type': 'Feature',
        'id': feature.id,
        'geometry': mapping(feature.geometry) if feature.geometry is not None else None,
        'properties': properties,
    }


def _lon_first_features(store: FeatureStore,
                        filter: Union[str, BoundFilter, None]) -> Iterator[Feature]:
    swap = not store.schema.crs.lon_first
    with store.scan(filter) as features:
        for feature in features:
            if swap:
                feature = Feature(feature.id, swap_xy(feature.geometry), feature.attributes)
            yield feature


def _open_with_map(path, settings, events, resolver) -> Tuple[FeatureStore, Optional[FieldNameMap]]:
    if isinstance(path, FeatureStore):
        store = path
    else:
        store = open_dataset(path, settings, events, resolver)
    suffix = store.settings['field_map_suffix']
    return store, FieldNameMap.load(field_map_path(store.files.stem, suffix))


def dataset_to_geojson(path, filter: Union[str, BoundFilter, None] = None,
                       settings: Optional[Dict] = None, events=None,
                       resolver: Optional[CrsResolver] = None) -> Dict[str, Any]:
    """
    Read a dataset as a GeoJSON FeatureCollection.

    Original property names are restored when the field map sidecar exists.
    A CRS other than EPSG:4326 is reported through the legacy 'crs' member.
    """
    store, field_map = _open_with_map(path, settings, events, resolver)
    collection = {
        'type': 'FeatureCollection',
        'features': [feature_to_geojson(f, field_map) for f in _lon_first_features(store, filter)],
    }
    code = store.schema.crs.code
    if code is not None and code.upper() != DEFAULT_GEOJSON_CRS:
        collection['crs'] = {'type': 'name', 'properties': {'name': code}}
    return collection


def dataset_to_geodataframe(path, filter: Union[str, BoundFilter, None] = None,
                            settings: Optional[Dict] = None, events=None,
                            resolver: Optional[CrsResolver] = None) -> gpd.GeoDataFrame:
    """
    Read a dataset into a GeoDataFrame.

    Columns carry the original property names when the field map sidecar
    exists; Date values are ISO strings.
    """
    store, field_map = _open_with_map(path, settings, events, resolver)
    names = store.schema.field_names
    columns = [field_map.original_for(name) if field_map else name for name in names]

    rows = []
    for feature in _lon_first_features(store, filter):
        row = {column: _json_value(feature.attributes.get(name)) for column, name in zip(columns, names)}
        row['geometry'] = feature.geometry
        rows.append(row)

    crs = store.schema.crs.code
    gdf = gpd.GeoDataFrame(rows, columns=columns + ['geometry'], geometry='geometry', crs=crs)
    logger.debug(f"Loaded {len(gdf)} feature(s) from {store.files.stem.name} into a GeoDataFrame")
    return gdf
