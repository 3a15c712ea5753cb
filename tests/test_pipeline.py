"""Tests for geometry_ops.pipeline: dataset-to-dataset buffering."""

import math

import pytest
from shapely.geometry import Point

from core.errors import InvalidDistance
from core.feature_store import create_dataset, open_dataset
from core.schema import CoordinateReferenceSystem, Feature, GeometryType
from geometry_ops.pipeline import buffer_dataset

# Area of a 32-gon of radius 0.5
HALF_UNIT_CIRCLE = 16 * 0.25 * math.sin(math.pi / 16)


class TestBufferDataset:
    """Source features are buffered into a MultiPolygon target."""

    @pytest.mark.unit
    def test_target_layout(self, points_dataset, resolver):
        target = buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0.5)

        reopened = open_dataset(target.path, resolver=resolver)
        assert reopened.schema.geometry_type == GeometryType.MULTIPOLYGON
        assert reopened.schema.field_names == ['name', 'number']
        assert reopened.schema.crs.code == 'EPSG:4326'

    @pytest.mark.unit
    def test_geometries(self, points_dataset):
        target = buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0.5)
        features = list(target.scan())

        assert [f.get('name') for f in features] == ['A', 'B']
        for feature, center in zip(features, [(0, 0), (1, 1)]):
            assert abs(feature.geometry.area - HALF_UNIT_CIRCLE) <= 1e-9
            assert feature.geometry.centroid.distance(Point(center)) <= 1e-9
            assert len(feature.geometry.exterior.coords) - 1 == 32

    @pytest.mark.unit
    def test_filter(self, points_dataset):
        target = buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0.5,
                                filter="name = 'B'")
        assert [f.get('number') for f in target.scan()] == [2]

    @pytest.mark.unit
    def test_segments(self, points_dataset):
        target = buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0.5,
                                segments_per_quarter_circle=2)
        first = next(iter(target.scan()))
        assert len(first.geometry.exterior.coords) - 1 == 8

    @pytest.mark.unit
    def test_invalid_distance_writes_nothing(self, points_dataset):
        with pytest.raises(InvalidDistance):
            buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0)

        assert not (points_dataset.path.parent / 'zones.shp').exists()

    @pytest.mark.unit
    def test_null_geometry_carried_over(self, points_dataset):
        with points_dataset.begin_transaction() as tx:
            tx.add(Feature(None, None, {'name': 'C', 'number': 3}))
            tx.commit()

        target = buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0.5)
        features = list(target.scan())
        assert len(features) == 3
        assert features[2].geometry is None

    @pytest.mark.unit
    def test_rerun_replaces_target(self, points_dataset):
        zones = points_dataset.path.parent / 'zones'
        buffer_dataset(points_dataset, zones, 0.5)
        target = buffer_dataset(points_dataset, zones, 0.25)

        assert target.count() == 2
        assert next(iter(target.scan())).geometry.area < HALF_UNIT_CIRCLE

    @pytest.mark.unit
    def test_event(self, points_dataset, events):
        buffer_dataset(points_dataset, points_dataset.path.parent / 'zones', 0.5, events=events)

        completed = [e for e in events.events if e.event.value == 'buffer.completed']
        assert len(completed) == 1
        assert completed[0].metadata == {'distance': 0.5, 'features': 2}

    @pytest.mark.unit
    def test_open_by_path(self, points_dataset, resolver):
        target = buffer_dataset(str(points_dataset.path) + '.shp', points_dataset.path.parent / 'zones',
                                0.5, resolver=resolver)
        assert target.count() == 2

    @pytest.mark.unit
    def test_latitude_first_source(self, tmp_path, resolver, point_schema):
        schema = point_schema.with_crs(CoordinateReferenceSystem('EPSG:4326', False))
        source = create_dataset(tmp_path / 'places', schema, resolver=resolver)
        with source.begin_transaction() as tx:
            tx.add(Feature(None, Point(10, 20), {'name': 'A', 'number': 1}))
            tx.commit()

        target = buffer_dataset(source, tmp_path / 'zones', 1)
        assert target.schema.crs.lon_first is True
        centroid = next(iter(target.scan())).geometry.centroid
        assert (round(centroid.x, 9), round(centroid.y, 9)) == (20, 10)
