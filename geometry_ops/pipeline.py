"""
Buffer Processing Pipeline

Orchestrates the batch buffer transform between two datasets:
1. Open the source dataset (or take an open store)
2. Scan it, optionally through an attribute filter
3. Buffer every geometry
4. Create (or reuse) the MultiPolygon target dataset with the source fields
5. Write all buffered features in one transaction

Every geometry is buffered before the target is touched, so an
InvalidDistance on any feature stops the whole run with no target written.
Features without geometry are carried over with a null geometry.
"""

from pathlib import Path
from typing import Dict, List, Optional, Union

from codec.prj import CrsResolver
from core.feature_store import FeatureStore, create_dataset, open_dataset, resolve_stem
from core.filters import BoundFilter
from core.schema import Feature, GeometryType, Schema
from core.transaction import TransactionMode
from geometry_ops.buffering import buffer_geometry
from geometry_ops.rings import swap_xy
from utils.events import StoreEvent, default_sink
from utils.logger import get_logger

logger = get_logger(__name__)


def _buffer_features(source: FeatureStore, distance: float,
                     filter: Union[str, BoundFilter, None],
                     segments: int) -> List[Feature]:
    swap = not source.schema.crs.lon_first
    buffered = []
    with source.scan(filter) as features:
        for feature in features:
            geometry = feature.geometry
            if geometry is not None:
                # Buffer in longitude-first order so the target can be stored as-is
                if swap:
                    geometry = swap_xy(geometry)
                geometry = buffer_geometry(geometry, distance, segments)
            buffered.append(Feature(None, geometry, dict(feature.attributes)))
    return buffered


def buffer_dataset(source: Union[str, Path, FeatureStore],
                   target: Union[str, Path],
                   distance: float,
                   filter: Union[str, BoundFilter, None] = None,
                   segments_per_quarter_circle: Optional[int] = None,
                   settings: Optional[Dict] = None,
                   events=None,
                   resolver: Optional[CrsResolver] = None) -> FeatureStore:
    """
    Buffer every (matching) feature of a dataset into a new polygon dataset.

    Args:
        source: Source dataset path or open FeatureStore
        target: Target dataset path; replaced when it already exists with the
            same layout
        distance: Buffer distance in source coordinate units
        filter: Optional attribute filter applied to the source
        segments_per_quarter_circle: Arc resolution (defaults to settings)
        settings: Store settings
        events: Event sink
        resolver: CRS resolver used when opening the source by path

    Returns:
        FeatureStore of the target dataset

    Raises:
        InvalidDistance: If any geometry cannot be buffered by ``distance``
        SchemaConflict: If the target exists with a different layout
        CommitFailed: If writing the target fails
    """
    events = default_sink(events)
    if not isinstance(source, FeatureStore):
        source = open_dataset(source, settings, events, resolver)
    settings = source.settings if settings is None else settings

    segments = segments_per_quarter_circle
    if segments is None:
        segments = source.settings.get('segments_per_quarter_circle', 8)

    logger.info(f"Buffering {source.files.stem.name} by {distance} "
                f"({segments} segments per quarter circle)")
    buffered = _buffer_features(source, distance, filter, segments)
    logger.info(f"  - Buffered {len(buffered)} feature(s)")

    target_stem = resolve_stem(target)
    target_schema = Schema(
        target_stem.name,
        GeometryType.MULTIPOLYGON,
        source.schema.fields,
        source.schema.crs.with_longitude_first(),
    )
    store = create_dataset(target_stem, target_schema, settings, events, source.resolver)

    with store.begin_transaction(TransactionMode.CREATE) as transaction:
        transaction.add_all(buffered)
        transaction.commit()

    events.emit(StoreEvent.BUFFER_COMPLETED,
                f"Buffered {source.files.stem.name} into {target_stem.name}",
                distance=distance, features=len(buffered))
    logger.info(f"✓ Buffer dataset written: {target_stem}")
    return store
