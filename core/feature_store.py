"""
Feature store over a Shapefile dataset.

A dataset is the set of member files sharing one path stem:
    <stem>.shp  geometry records
    <stem>.shx  record index (optional, regenerated on every commit)
    <stem>.dbf  attribute rows
    <stem>.prj  CRS definition (optional)
    <stem>.cpg  attribute text encoding (optional)

Reads are lazy: scan() opens the geometry and attribute files at call time
and decodes one record pair per step, so a scan keeps seeing the files it
opened even if a commit replaces them while it runs.

Functions:
    resolve_stem: Dataset path (stem or any member file) -> absolute stem
    open_dataset: Open an existing dataset
    create_dataset: Create an empty dataset or reopen a compatible one

Classes:
    DatasetFiles: Member file paths of one dataset
    FeatureScan: Lazy, closeable sequence of features
    FeatureStore: Schema, count, scan, bounds, describe and transactions
"""

import datetime
import itertools
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from shapely.geometry.base import BaseGeometry

from codec.dbf import decode_code_page, iter_attribute_records, read_attribute_header
from codec.prj import CrsResolver, decode_crs_sidecar
from codec.shp import HEADER_LENGTH, iter_geometry_records, read_geometry_header
from config.config_loader import resolve_settings
from core.errors import (
    DatasetNotFound, InvalidSchema, MalformedAttributes, MalformedGeometry, SchemaConflict
)
from core.filters import BoundFilter, compile_filter
from core.schema import Feature, GeometryType, Schema
from core.transaction import Transaction, TransactionMode
from geometry_ops.rings import swap_xy
from utils.events import StoreEvent, default_sink
from utils.logger import get_logger

logger = get_logger(__name__)

MEMBER_SUFFIXES = ('.shp', '.shx', '.dbf', '.prj', '.cpg')

FilterArg = Union[str, BoundFilter, None]


@dataclass(frozen=True)
class DatasetFiles:
    stem: Path

    def member(self, suffix: str) -> Path:
        return self.stem.with_name(self.stem.name + suffix)

    @property
    def shp(self) -> Path:
        return self.member('.shp')

    @property
    def shx(self) -> Path:
        return self.member('.shx')

    @property
    def dbf(self) -> Path:
        return self.member('.dbf')

    @property
    def prj(self) -> Path:
        return self.member('.prj')

    @property
    def cpg(self) -> Path:
        return self.member('.cpg')

    def exists(self) -> bool:
        return self.shp.exists() and self.dbf.exists()


def resolve_stem(path: Union[str, Path]) -> Path:
    """Return the absolute dataset stem for a stem or member file path."""
    path = Path(path)
    if path.suffix.lower() in MEMBER_SUFFIXES:
        path = path.with_suffix('')
    return path.expanduser().resolve()


def _read_text(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding='utf-8', errors='replace')


class FeatureScan:
    """
    Lazy sequence of features from one scan() call.

    The member files are opened when the scan is created and released when the
    sequence is exhausted, when close() is called or when a ``with`` block
    exits. A scan is not restartable.
    """

    def __init__(self, store: 'FeatureStore', predicate: Optional[BoundFilter],
                 limit: Optional[int] = None):
        self.store = store
        self.predicate = predicate
        self.limit = limit
        self.closed = False
        self._stack = ExitStack()

        try:
            shp = self._stack.enter_context(open(store.files.shp, 'rb'))
            dbf = self._stack.enter_context(open(store.files.dbf, 'rb'))
            shp_header = read_geometry_header(shp)
            dbf_header = read_attribute_header(dbf, store.encoding)
        except FileNotFoundError as e:
            self._stack.close()
            raise DatasetNotFound(f"Dataset member missing: {e.filename}")
        except Exception:
            self._stack.close()
            raise

        self._features = self._generate(
            iter_geometry_records(shp, shp_header),
            iter_attribute_records(dbf, dbf_header, store.encoding),
        )
        store.events.emit(StoreEvent.SCAN_OPENED, f"Scan opened on {store.files.stem.name}",
                          filter=predicate.text if predicate else None, limit=limit)

    def _generate(self, geometries, rows) -> Iterator[Feature]:
        schema = self.store.schema
        names = schema.field_names
        swap = not schema.crs.lon_first
        produced = 0
        missing = object()

        if self.limit is not None and self.limit <= 0:
            return

        for record, row in itertools.zip_longest(geometries, rows, fillvalue=missing):
            if record is missing or row is missing:
                raise MalformedGeometry(
                    f"Record count mismatch between {self.store.files.shp.name} "
                    f"and {self.store.files.dbf.name}")

            _, geometry = record
            index, deleted, values = row
            if deleted:
                continue

            if swap:
                geometry = swap_xy(geometry)
            feature = Feature(f"{schema.type_name}.{index + 1}", geometry, dict(zip(names, values)))
            if self.predicate is not None and not self.predicate.evaluate(feature):
                continue

            yield feature
            produced += 1
            if self.limit is not None and produced >= self.limit:
                return

    def __iter__(self):
        return self

    def __next__(self) -> Feature:
        if self.closed:
            raise StopIteration
        try:
            return next(self._features)
        except Exception:
            # Exhaustion or a decode error both end the scan
            self.close()
            raise

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._features.close()
        self._stack.close()
        self.store.events.emit(StoreEvent.SCAN_CLOSED, f"Scan closed on {self.store.files.stem.name}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False


class FeatureStore:
    """
    Session over one dataset.

    Holds the schema read from (or written to) the member files. Reads go
    through scan(); writes go through begin_transaction().
    """

    def __init__(self, files: DatasetFiles, schema: Schema, encoding: str,
                 settings: Optional[Dict] = None, events=None,
                 resolver: Optional[CrsResolver] = None):
        self.files = files
        self._schema = schema
        self.encoding = encoding
        self.settings = resolve_settings(settings)
        self.events = default_sink(events)
        self.resolver = resolver

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def path(self) -> Path:
        return self.files.stem

    def scan(self, filter: FilterArg = None, limit: Optional[int] = None) -> FeatureScan:
        """
        Open a lazy sequence of features.

        Parameters:
        -----------
        filter : str, BoundFilter or None
            Attribute filter; text is parsed and bound before any file is opened
        limit : Optional[int]
            Maximum number of features to produce

        Returns:
        --------
        FeatureScan
            Iterator and context manager over the matching features

        Raises:
        -------
        InvalidFilterSyntax, TypeMismatch
            If the filter does not parse or bind against the schema
        """
        predicate = compile_filter(filter, self._schema)
        return FeatureScan(self, predicate, limit)

    def count(self, filter: FilterArg = None) -> int:
        predicate = compile_filter(filter, self._schema)
        with FeatureScan(self, predicate) as features:
            return sum(1 for _ in features)

    def bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """
        Bounding box (minx, miny, maxx, maxy) from the geometry file header.

        Returns None for a dataset without records. The box is reported in
        the session axis order.
        """
        with open(self.files.shp, 'rb') as f:
            header = read_geometry_header(f)
        if header.file_length <= HEADER_LENGTH:
            return None
        minx, miny, maxx, maxy = header.bbox
        if not self._schema.crs.lon_first:
            return (miny, minx, maxy, maxx)
        return (minx, miny, maxx, maxy)

    def read_raw_records(self) -> List[Tuple[Optional[BaseGeometry], List[Any]]]:
        """
        All live records as stored on disk: (geometry, attribute values).

        Geometries are longitude-first and deleted rows are left out.
        """
        records = []
        with FeatureScan(self, None) as features:
            swap = not self._schema.crs.lon_first
            for feature in features:
                geometry = swap_xy(feature.geometry) if swap else feature.geometry
                records.append((geometry, [feature.attributes[name] for name in self._schema.field_names]))
        return records

    def begin_transaction(self, mode: TransactionMode = TransactionMode.APPEND) -> Transaction:
        """
        Start a write transaction.

        Raises:
            DatasetLocked: If another transaction on the dataset is active
        """
        return Transaction(self, mode, self.events)

    def describe(self, sample: Optional[int] = None) -> Dict[str, Any]:
        """
        Dataset information report.

        Collects the type name, geometry type, CRS, field list, record count,
        bounds and the first ``sample`` features.
        """
        if sample is None:
            sample = self.settings.get('describe_sample_size', 5)

        with self.scan(limit=sample) as features:
            first = [_summarize_feature(feature) for feature in features]

        info = self._schema.describe()
        info.update({
            'path': str(self.files.stem),
            'encoding': self.encoding,
            'count': self.count(),
            'bounds': self.bounds(),
            'features': first,
        })
        return info

    def __repr__(self):
        return f"FeatureStore({str(self.files.stem)!r}, {self._schema.geometry_type.value})"


def _summarize_feature(feature: Feature) -> Dict[str, Any]:
    attributes = {
        name: value.isoformat() if isinstance(value, datetime.date) else value
        for name, value in feature.attributes.items()
    }
    return {
        'id': feature.id,
        'geometry': feature.geometry.wkt if feature.geometry is not None else None,
        'attributes': attributes,
    }


def _load_schema(files: DatasetFiles, encoding: str,
                 resolver: Optional[CrsResolver], events) -> Schema:
    with open(files.shp, 'rb') as f:
        shp_header = read_geometry_header(f)
    with open(files.dbf, 'rb') as f:
        dbf_header = read_attribute_header(f, encoding)

    try:
        geometry_type = GeometryType.from_shape_type(shp_header.shape_type)
    except InvalidSchema as e:
        raise MalformedGeometry(f"{files.shp.name}: {e.message}")

    crs = decode_crs_sidecar(_read_text(files.prj), resolver)
    if crs.is_unknown:
        events.emit(StoreEvent.CRS_UNKNOWN, f"No usable CRS for {files.stem.name}",
                    prj=files.prj.exists())

    try:
        return Schema(files.stem.name, geometry_type, dbf_header.fields, crs)
    except InvalidSchema as e:
        raise MalformedAttributes(f"{files.dbf.name}: {e.message}")


def open_dataset(path: Union[str, Path], settings: Optional[Dict] = None, events=None,
                 resolver: Optional[CrsResolver] = None) -> FeatureStore:
    """
    Open an existing dataset.

    Parameters:
    -----------
    path : str or Path
        Dataset stem or any member file ('roads', 'roads.shp', 'roads.dbf')
    settings : Optional[Dict]
        Store settings (see config.config_loader.DEFAULT_STORE_SETTINGS)
    events : Optional[EventSink]
        Event sink; defaults to logging
    resolver : Optional[CrsResolver]
        CRS authority lookup; defaults to the pyproj-backed resolver

    Returns:
    --------
    FeatureStore

    Raises:
    -------
    DatasetNotFound
        If the geometry or attribute file is missing
    MalformedGeometry, MalformedAttributes
        If a header cannot be decoded
    """
    settings = resolve_settings(settings)
    events = default_sink(events)
    files = DatasetFiles(resolve_stem(path))

    for member in (files.shp, files.dbf):
        if not member.exists():
            raise DatasetNotFound(f"Missing dataset file: {member}")

    encoding = settings['encoding']
    code_page = _read_text(files.cpg)
    if code_page is not None:
        encoding = decode_code_page(code_page) or encoding

    schema = _load_schema(files, encoding, resolver, events)
    store = FeatureStore(files, schema, encoding, settings, events, resolver)
    events.emit(StoreEvent.DATASET_OPENED, f"Opened {files.stem.name}",
                geometry_type=schema.geometry_type.value, fields=len(schema.fields),
                crs=str(schema.crs))
    return store


def create_dataset(path: Union[str, Path], schema: Schema, settings: Optional[Dict] = None,
                   events=None, resolver: Optional[CrsResolver] = None) -> FeatureStore:
    """
    Create an empty dataset, or open an existing one with a compatible schema.

    The empty dataset is written through the regular commit path, so every
    member file exists once this returns.

    Raises:
        SchemaConflict: If a dataset exists at the path with a different
            geometry type or field layout
    """
    settings = resolve_settings(settings)
    events = default_sink(events)
    files = DatasetFiles(resolve_stem(path))

    if files.shp.exists() or files.dbf.exists():
        if not files.exists():
            raise SchemaConflict(f"Incomplete dataset already present at {files.stem}")
        existing = open_dataset(files.stem, settings, events, resolver)
        if not existing.schema.is_compatible(schema):
            raise SchemaConflict(
                f"Dataset {files.stem} exists with schema {existing.schema.describe()['fields']} "
                f"({existing.schema.geometry_type.value})")
        logger.debug(f"Reusing compatible dataset at {files.stem}")
        return existing

    files.stem.parent.mkdir(parents=True, exist_ok=True)
    store = FeatureStore(files, schema, settings['encoding'], settings, events, resolver)
    with store.begin_transaction(TransactionMode.CREATE) as transaction:
        transaction.commit()

    events.emit(StoreEvent.DATASET_CREATED, f"Created {files.stem.name}",
                geometry_type=schema.geometry_type.value, fields=len(schema.fields),
                crs=str(schema.crs))
    return store
