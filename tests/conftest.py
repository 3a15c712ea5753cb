import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from shapely.geometry import Point

import core.transaction as transaction_mod
from core.feature_store import create_dataset
from core.schema import CoordinateReferenceSystem, Feature, FieldDef, GeometryType, Schema
from core.transaction import TransactionMode
from utils.events import RecordingEventSink

WGS84_ESRI_WKT = (
    'GEOGCS["GCS_WGS_1984",DATUM["D_WGS_1984",'
    'SPHEROID["WGS_1984",6378137.0,298.257223563]],'
    'PRIMEM["Greenwich",0.0],UNIT["Degree",0.0174532925199433]]'
)


class StaticCrsResolver:
    """Resolver that knows EPSG:4326 only, so store tests never touch the PROJ database."""

    def to_wkt(self, code):
        if code.upper() != 'EPSG:4326':
            raise ValueError(f"Unknown code {code}")
        return WGS84_ESRI_WKT

    def from_wkt(self, text):
        return 'EPSG:4326' if 'WGS_1984' in text else None

    def native_lon_first(self, code):
        return code.upper() != 'EPSG:4326'


@pytest.fixture(autouse=True)
def reset_dataset_locks():
    """Make sure a failing test cannot leave a dataset locked for the next one."""
    yield
    with transaction_mod._registry_guard:
        transaction_mod._locked_datasets.clear()


@pytest.fixture
def resolver():
    return StaticCrsResolver()


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def wgs84():
    return CoordinateReferenceSystem('EPSG:4326', True)


@pytest.fixture
def point_schema(wgs84):
    return Schema('places', GeometryType.POINT,
                  (FieldDef.text('name', 20), FieldDef.integer('number')), wgs84)


@pytest.fixture
def points_dataset(tmp_path, point_schema, resolver, events):
    """Dataset with {name: A, number: 1} at (0, 0) and {name: B, number: 2} at (1, 1)."""
    store = create_dataset(tmp_path / 'places', point_schema, events=events, resolver=resolver)
    with store.begin_transaction(TransactionMode.APPEND) as tx:
        tx.add(Feature(None, Point(0, 0), {'name': 'A', 'number': 1}))
        tx.add(Feature(None, Point(1, 1), {'name': 'B', 'number': 2}))
        tx.commit()
    return store


def read_members(stem: Path):
    """Bytes of every member file that exists, keyed by suffix."""
    members = {}
    for suffix in ('.shp', '.shx', '.dbf', '.prj', '.cpg'):
        path = stem.with_name(stem.name + suffix)
        if path.exists():
            members[suffix] = path.read_bytes()
    return members


@pytest.fixture
def member_bytes():
    return read_members
