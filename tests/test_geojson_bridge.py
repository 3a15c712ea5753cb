"""Tests for bridge.geojson: GeoJSON <-> dataset conversion."""

import datetime
import json

import pytest

from core.errors import MalformedGeometry, SchemaMismatch, UnsupportedGeometryMix
from core.feature_store import open_dataset
from core.schema import CoordinateReferenceSystem, Feature, FieldType, GeometryType
from bridge.geojson import (
    FieldNameMap, GeoJsonSchema, dataset_to_geodataframe, dataset_to_geojson,
    describe_geojson_features, feature_to_geojson, field_map_path, geojson_crs_code,
    geojson_to_shapefile, infer_shapefile_schema, pin_longitude_first, truncate_field_name
)


def _point(x, y, **properties):
    return {'type': 'Feature', 'geometry': {'type': 'Point', 'coordinates': [x, y]},
            'properties': properties}


def _collection(*features, crs=None):
    collection = {'type': 'FeatureCollection', 'features': list(features)}
    if crs:
        collection['crs'] = {'type': 'name', 'properties': {'name': crs}}
    return collection


LONG_NAMES = _collection(
    _point(0, 0, description_a='first', description_b='second', id_code=1),
    _point(1, 1, description_a='third', description_b=None, id_code=2),
)


class TestFieldNames:
    """Names are cut to 10 bytes and disambiguated with numeric suffixes."""

    @pytest.mark.unit
    def test_collision(self):
        taken = set()
        first = truncate_field_name('description_a', taken)
        taken.add(first.lower())
        second = truncate_field_name('description_b', taken)

        assert (first, second) == ('descriptio', 'descripti1')

    @pytest.mark.unit
    def test_suffix_grows(self):
        taken = {'descriptio', 'descripti1', 'descripti2', 'descripti3', 'descripti4',
                 'descripti5', 'descripti6', 'descripti7', 'descripti8', 'descripti9'}
        assert truncate_field_name('description_z', taken) == 'descript10'

    @pytest.mark.unit
    def test_short_names_unchanged(self):
        assert truncate_field_name('name', set()) == 'name'

    @pytest.mark.unit
    def test_collision_ignores_case(self):
        assert truncate_field_name('Name', {'name'}) == 'Name1'

    @pytest.mark.unit
    def test_map_lookups(self):
        field_map = FieldNameMap({'description_a': 'descriptio', 'description_b': 'descripti1'})

        assert field_map.field_for('description_b') == 'descripti1'
        assert field_map.original_for('DESCRIPTI1') == 'description_b'
        assert field_map.original_for('unmapped') == 'unmapped'
        assert len(field_map.renamed()) == 2

    @pytest.mark.unit
    def test_map_save_and_load(self, tmp_path):
        field_map = FieldNameMap({'population_2020': 'population'})
        path = field_map_path(tmp_path / 'towns')
        field_map.save(path)

        assert path.name == 'towns.fieldmap.json'
        assert json.loads(path.read_text(encoding='utf-8'))['version'] == 1
        assert FieldNameMap.load(path) == field_map
        assert FieldNameMap.load(tmp_path / 'missing.json') is None


class TestInference:
    """Geometry and property types from GeoJSON values."""

    @pytest.mark.unit
    def test_property_types(self):
        schema = describe_geojson_features(_collection(
            _point(0, 0, count=1, ratio=0.5, mixed=1, flag=True, label='x', tags=['a'], empty=None),
            _point(1, 1, count=2, ratio=2, mixed=1.5, flag=False, label='y', tags=['b'], empty=None),
        ))

        assert schema.geometry_type == GeometryType.POINT
        assert schema.properties == {
            'count': FieldType.INTEGER,
            'ratio': FieldType.DOUBLE,
            'mixed': FieldType.DOUBLE,
            'flag': FieldType.INTEGER,
            'label': FieldType.TEXT,
            'tags': FieldType.TEXT,
            'empty': FieldType.TEXT,
        }

    @pytest.mark.unit
    def test_text_and_number_mix_is_text(self):
        schema = describe_geojson_features([_point(0, 0, code='A1'), _point(1, 1, code=7)])
        assert schema.properties['code'] == FieldType.TEXT

    @pytest.mark.unit
    def test_families_narrow_to_multi(self):
        polygon = {'type': 'Polygon', 'coordinates': [[[0, 0], [1, 0], [1, 1], [0, 0]]]}
        multi = {'type': 'MultiPolygon', 'coordinates': [[[[5, 5], [6, 5], [6, 6], [5, 5]]]]}
        schema = describe_geojson_features([
            {'type': 'Feature', 'geometry': polygon, 'properties': {}},
            {'type': 'Feature', 'geometry': multi, 'properties': {}},
        ])
        assert schema.geometry_type == GeometryType.MULTIPOLYGON

    @pytest.mark.unit
    def test_mixed_families_rejected(self):
        line = {'type': 'Feature', 'properties': {},
                'geometry': {'type': 'LineString', 'coordinates': [[0, 0], [1, 1]]}}
        with pytest.raises(UnsupportedGeometryMix):
            describe_geojson_features([_point(0, 0), line])

    @pytest.mark.unit
    def test_geometry_collection_rejected(self):
        collection = {'type': 'Feature', 'properties': {},
                      'geometry': {'type': 'GeometryCollection', 'geometries': []}}
        with pytest.raises(UnsupportedGeometryMix):
            describe_geojson_features([collection])

    @pytest.mark.unit
    def test_no_geometry_at_all(self):
        with pytest.raises(UnsupportedGeometryMix):
            describe_geojson_features([{'type': 'Feature', 'geometry': None, 'properties': {}}])

    @pytest.mark.unit
    def test_not_a_feature(self):
        with pytest.raises(SchemaMismatch):
            describe_geojson_features({'type': 'Point', 'coordinates': [0, 0]})
        with pytest.raises(SchemaMismatch):
            describe_geojson_features([{'type': 'Point', 'coordinates': [0, 0]}])

    @pytest.mark.unit
    def test_infer_schema_renames(self, events):
        schema, field_map = infer_shapefile_schema(
            describe_geojson_features(LONG_NAMES), 'notes', events=events)

        assert schema.field_names == ['descriptio', 'descripti1', 'id_code']
        assert schema.field('descriptio').length == 254
        assert schema.field('id_code').type == FieldType.INTEGER
        assert field_map.field_for('description_b') == 'descripti1'
        assert events.names() == ['bridge.field_renamed', 'bridge.field_renamed']

    @pytest.mark.unit
    def test_infer_schema_text_length(self):
        geojson_schema = GeoJsonSchema(GeometryType.POINT, {'label': FieldType.TEXT})
        schema, _ = infer_shapefile_schema(geojson_schema, 'labels', text_length=40)
        assert schema.field('label').length == 40


class TestCrs:
    """GeoJSON coordinates are always longitude-first."""

    @pytest.mark.unit
    @pytest.mark.parametrize('name, expected', [
        ('urn:ogc:def:crs:OGC:1.3:CRS84', 'EPSG:4326'),
        ('urn:ogc:def:crs:EPSG::3857', 'EPSG:3857'),
        ('urn:ogc:def:crs:EPSG:6.3:2056', 'EPSG:2056'),
        ('EPSG:25832', 'EPSG:25832'),
        ('something else', None),
    ])
    def test_legacy_crs_member(self, name, expected):
        assert geojson_crs_code(_collection(crs=name)) == expected

    @pytest.mark.unit
    def test_pinning(self):
        assert pin_longitude_first(None) == CoordinateReferenceSystem('EPSG:4326', True)
        lat_first = CoordinateReferenceSystem('EPSG:4326', False)
        assert pin_longitude_first(lat_first).lon_first is True


class TestConversion:
    """Datasets written from GeoJSON and read back."""

    @pytest.mark.unit
    def test_round_trip_restores_names(self, tmp_path, resolver):
        geojson_to_shapefile(LONG_NAMES, tmp_path / 'notes', resolver=resolver)

        assert (tmp_path / 'notes.fieldmap.json').exists()
        collection = dataset_to_geojson(tmp_path / 'notes', resolver=resolver)

        assert 'crs' not in collection
        first, second = collection['features']
        assert first['properties'] == {'description_a': 'first', 'description_b': 'second', 'id_code': 1}
        assert second['properties']['description_b'] == ''
        assert first['geometry'] == {'type': 'Point', 'coordinates': (0.0, 0.0)}
        assert second['id'] == 'notes.2'

    @pytest.mark.unit
    def test_stored_layout(self, tmp_path, resolver):
        store = geojson_to_shapefile(LONG_NAMES, tmp_path / 'notes', resolver=resolver)

        reopened = open_dataset(store.path, resolver=resolver)
        assert reopened.schema.field_names == ['descriptio', 'descripti1', 'id_code']
        assert reopened.schema.crs.code == 'EPSG:4326'
        assert reopened.schema.crs.lon_first is True

    @pytest.mark.unit
    def test_append_uses_stored_map(self, tmp_path, resolver, events):
        geojson_to_shapefile(LONG_NAMES, tmp_path / 'notes', resolver=resolver)
        events.events.clear()

        store = geojson_to_shapefile(
            [_point(2, 2, description_b='appended', id_code=3)],
            tmp_path / 'notes', events=events, resolver=resolver)

        assert store.count() == 3
        last = list(store.scan('id_code = 3'))[0]
        assert last.get('descripti1') == 'appended'
        assert 'bridge.field_renamed' not in events.names()
        assert events.names()[-1] == 'bridge.geojson_imported'

    @pytest.mark.unit
    def test_append_unknown_property(self, tmp_path, resolver):
        geojson_to_shapefile(LONG_NAMES, tmp_path / 'notes', resolver=resolver)
        with pytest.raises(SchemaMismatch):
            geojson_to_shapefile([_point(2, 2, colour='red')], tmp_path / 'notes', resolver=resolver)

        assert open_dataset(tmp_path / 'notes', resolver=resolver).count() == 2

    @pytest.mark.unit
    def test_value_conversions(self, tmp_path, resolver):
        store = geojson_to_shapefile(_collection(
            _point(0, 0, flag=True, count=3.0, tags=['a', 'b']),
            _point(1, 1, flag=False, count=4, tags={'k': 1}),
        ), tmp_path / 'values', resolver=resolver)

        features = list(store.scan())
        assert [f.get('flag') for f in features] == [1, 0]
        assert store.schema.field('count').type == FieldType.DOUBLE
        assert [f.get('count') for f in features] == [3.0, 4.0]
        assert [f.get('tags') for f in features] == ['["a", "b"]', '{"k": 1}']

    @pytest.mark.unit
    def test_json_text_input(self, tmp_path, resolver):
        store = geojson_to_shapefile(json.dumps(_point(3, 4, name='solo')), tmp_path / 'solo',
                                     resolver=resolver)
        assert store.count() == 1

    @pytest.mark.unit
    def test_polygon_with_elevation(self, tmp_path, resolver):
        raised = {'type': 'Feature', 'properties': {'name': 'hill'},
                  'geometry': {'type': 'Polygon',
                               'coordinates': [[[0, 0, 5], [1, 0, 5], [1, 1, 5], [0, 0, 5]]]}}
        store = geojson_to_shapefile([raised], tmp_path / 'hills', resolver=resolver)

        feature = next(iter(store.scan()))
        assert feature.get('name') == 'hill'
        assert feature.geometry.area == pytest.approx(0.5)
        assert not feature.geometry.has_z

    @pytest.mark.unit
    def test_short_ring_is_malformed(self, tmp_path, resolver):
        broken = {'type': 'Feature', 'properties': {},
                  'geometry': {'type': 'Polygon', 'coordinates': [[[0, 0], [1, 1]]]}}
        with pytest.raises(MalformedGeometry):
            geojson_to_shapefile([broken], tmp_path / 'broken', resolver=resolver)

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.unit
    def test_unparsable_json_text(self, tmp_path, resolver):
        with pytest.raises(SchemaMismatch):
            geojson_to_shapefile('{"type": "Feature",', tmp_path / 'cut', resolver=resolver)

    @pytest.mark.unit
    def test_default_crs_has_no_member(self, tmp_path, resolver):
        store = geojson_to_shapefile(_collection(_point(0, 0, a=1)), tmp_path / 'plain',
                                     resolver=resolver)
        assert 'crs' not in dataset_to_geojson(store)

    @pytest.mark.unit
    def test_feature_to_geojson_dates(self):
        feature = Feature('t.1', None, {'day': datetime.date(2024, 3, 1)})
        assert feature_to_geojson(feature) == {
            'type': 'Feature', 'id': 't.1', 'geometry': None, 'properties': {'day': '2024-03-01'}}

    @pytest.mark.integration
    def test_projected_crs_member(self, tmp_path):
        store = geojson_to_shapefile(_collection(_point(2600000, 1200000, a=1), crs='EPSG:2056'),
                                     tmp_path / 'swiss')
        collection = dataset_to_geojson(store.path)
        assert collection['crs'] == {'type': 'name', 'properties': {'name': 'EPSG:2056'}}


class TestGeoDataFrame:
    """The geopandas view of a dataset."""

    @pytest.mark.integration
    def test_columns_and_crs(self, tmp_path, resolver):
        geojson_to_shapefile(LONG_NAMES, tmp_path / 'notes', resolver=resolver)
        gdf = dataset_to_geodataframe(tmp_path / 'notes', resolver=resolver)

        assert list(gdf.columns) == ['description_a', 'description_b', 'id_code', 'geometry']
        assert len(gdf) == 2
        assert gdf.crs.to_epsg() == 4326
        assert gdf.geometry.iloc[1].x == 1.0

    @pytest.mark.integration
    def test_filter(self, tmp_path, resolver):
        geojson_to_shapefile(LONG_NAMES, tmp_path / 'notes', resolver=resolver)
        gdf = dataset_to_geodataframe(tmp_path / 'notes', filter='id_code > 1', resolver=resolver)
        assert list(gdf['description_a']) == ['third']
