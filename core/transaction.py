"""
Write transactions over a dataset.

Commit protocol:
1. ENCODE: Build every member file (geometry, index, attributes, CRS, code
   page) in memory from the existing records (append mode) plus the pending
   features
2. STAGE: Write each payload to '<member>.tmp' beside its target
3. SWAP: Back up each current member, then os.replace the staged file over it
4. RESTORE: If any step fails, put every backup back and delete staged files

A failure at any point leaves the member files exactly as they were before the
commit started and raises CommitFailed.

Only one write transaction may be active per dataset in the process; the
registry is keyed by the dataset's resolved path stem.

Classes:
    TransactionMode: CREATE (replace contents) or APPEND
    TransactionState: ACTIVE, COMMITTED, ROLLED_BACK, CLOSED
    Transaction: Pending writes plus commit/rollback/close
"""

import os
import shutil
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from pyproj.exceptions import CRSError

from codec.dbf import encode_attribute_file, encode_code_page
from codec.prj import encode_crs_sidecar
from codec.shp import encode_geometry_file
from core.errors import (
    CommitFailed, DatasetLocked, SchemaMismatch, ShapefileError, TransactionInactive
)
from core.schema import Feature
from geometry_ops.rings import swap_xy
from utils.events import StoreEvent, default_sink
from utils.logger import get_logger

logger = get_logger(__name__)

STAGED_SUFFIX = '.tmp'
BACKUP_SUFFIX = '.bak'

# Process-wide registry of datasets with an active write transaction
_registry_guard = threading.Lock()
_locked_datasets = set()


def acquire_dataset_lock(stem: Path) -> None:
    """
    Register an active writer for a dataset.

    Raises:
        DatasetLocked: If another transaction already holds the dataset
    """
    key = str(stem)
    with _registry_guard:
        if key in _locked_datasets:
            raise DatasetLocked(f"Dataset '{stem}' already has an active write transaction")
        _locked_datasets.add(key)


def release_dataset_lock(stem: Path) -> None:
    with _registry_guard:
        _locked_datasets.discard(str(stem))


def is_dataset_locked(stem: Path) -> bool:
    with _registry_guard:
        return str(stem) in _locked_datasets


class TransactionMode(str, Enum):
    CREATE = 'create'
    APPEND = 'append'


class TransactionState(str, Enum):
    ACTIVE = 'active'
    COMMITTED = 'committed'
    ROLLED_BACK = 'rolled_back'
    CLOSED = 'closed'


# ---------------------------------------------------------------- staging

def _stage_file(target: Path, payload: bytes) -> Path:
    """Write payload to a staged file next to target and return its path."""
    staged = target.with_name(target.name + STAGED_SUFFIX)
    with open(staged, 'wb') as f:
        f.write(payload)
        f.flush()
        os.fsync(f.fileno())
    return staged


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


def _swap_into_place(plan: List[Tuple[Path, Optional[Path]]]) -> None:
    """
    Move staged files over their targets.

    ``plan`` holds (target, staged) pairs; a staged value of None removes the
    target. Every target that existed is backed up first and restored if any
    later step fails.
    """
    backups: Dict[Path, Path] = {}
    touched: List[Path] = []
    try:
        for target, _ in plan:
            if target.exists():
                backup = target.with_name(target.name + BACKUP_SUFFIX)
                shutil.copy2(target, backup)
                backups[target] = backup

        for target, staged in plan:
            touched.append(target)
            if staged is None:
                if target.exists():
                    target.unlink()
            else:
                os.replace(staged, target)
    except OSError:
        for target in touched:
            if target in backups:
                os.replace(backups.pop(target), target)
            else:
                _remove_quietly(target)
        raise
    finally:
        for backup in backups.values():
            _remove_quietly(backup)


class Transaction:
    """
    A write session over one dataset.

    Features added to the transaction are validated and coerced against the
    store schema immediately and written only on commit. Use it as a context
    manager; leaving the block rolls back anything uncommitted and closes it.

    Example:
        >>> with store.begin_transaction(TransactionMode.APPEND) as tx:
        ...     tx.add(Feature(None, Point(1, 2), {'name': 'A'}))
        ...     tx.commit()
    """

    def __init__(self, store, mode: TransactionMode = TransactionMode.APPEND, events=None):
        self.store = store
        self.mode = TransactionMode(mode)
        self.events = default_sink(events if events is not None else store.events)
        self._pending: List[Feature] = []

        acquire_dataset_lock(store.files.stem)
        self.state = TransactionState.ACTIVE
        self.events.emit(StoreEvent.TRANSACTION_BEGUN,
                         f"Write transaction on {store.files.stem.name}",
                         mode=self.mode.value)

    @property
    def pending(self) -> Tuple[Feature, ...]:
        return tuple(self._pending)

    @property
    def is_active(self) -> bool:
        return self.state == TransactionState.ACTIVE

    def add(self, feature: Feature) -> None:
        """
        Buffer one feature for the next commit.

        Raises:
            TransactionInactive: If the transaction is no longer active
            SchemaMismatch: If the geometry or attributes do not fit the schema
        """
        if not self.is_active:
            raise TransactionInactive(f"Cannot add to a {self.state.value} transaction")

        schema = self.store.schema
        if not schema.accepts_geometry(feature.geometry):
            raise SchemaMismatch(
                f"{feature.geometry.geom_type} geometry does not fit a "
                f"{schema.geometry_type.value} dataset")

        attributes = schema.coerce_attributes(feature.attributes)
        self._pending.append(Feature(feature.id, feature.geometry, attributes))

    def add_all(self, features: Iterable[Feature]) -> int:
        count = 0
        for feature in features:
            self.add(feature)
            count += 1
        return count

    def _encode(self) -> Dict[str, Optional[bytes]]:
        store = self.store
        schema = store.schema
        settings = store.settings

        geometries = []
        rows = []
        if self.mode == TransactionMode.APPEND:
            for geometry, values in store.read_raw_records():
                geometries.append(geometry)
                rows.append(values)

        swap = not schema.crs.lon_first
        for feature in self._pending:
            geometries.append(swap_xy(feature.geometry) if swap else feature.geometry)
            rows.append([feature.attributes.get(name) for name in schema.field_names])

        shp, shx = encode_geometry_file(geometries, schema.shape_type)
        dbf = encode_attribute_file(schema.fields, rows, store.encoding)
        prj = encode_crs_sidecar(schema.crs.with_longitude_first(), store.resolver)
        cpg = encode_code_page(store.encoding).encode('ascii')

        return {
            '.shp': shp,
            '.shx': shx if settings.get('write_spatial_index', True) else None,
            '.dbf': dbf,
            '.prj': prj.encode('utf-8') if prj is not None else None,
            '.cpg': cpg,
        }

    def commit(self) -> int:
        """
        Atomically write the pending features to the dataset.

        Returns:
            Number of pending features written (0 when the transaction was
            not active)

        Raises:
            CommitFailed: If encoding, staging or swapping fails; the dataset
                files are unchanged and the transaction stays active
        """
        if not self.is_active:
            logger.debug(f"commit() on {self.state.value} transaction ignored")
            return 0

        files = self.store.files
        staged: Dict[Path, Path] = {}
        try:
            payloads = self._encode()
            plan = []
            for suffix, payload in payloads.items():
                target = files.member(suffix)
                if payload is None:
                    plan.append((target, None))
                else:
                    staged[target] = _stage_file(target, payload)
                    plan.append((target, staged[target]))
            _swap_into_place(plan)
        except (ShapefileError, OSError, CRSError) as e:
            for staged_path in staged.values():
                _remove_quietly(staged_path)
            self.events.emit(StoreEvent.TRANSACTION_COMMIT_FAILED,
                             f"Commit on {files.stem.name} failed, dataset unchanged",
                             error=str(e))
            raise CommitFailed(f"Commit on '{files.stem}' failed: {e}") from e

        written = len(self._pending)
        self._pending.clear()
        self._finish(TransactionState.COMMITTED)
        self.events.emit(StoreEvent.TRANSACTION_COMMITTED,
                         f"Committed {written} feature(s) to {files.stem.name}",
                         mode=self.mode.value, written=written)
        return written

    def rollback(self) -> None:
        """Discard pending writes. No file is touched."""
        if not self.is_active:
            return
        discarded = len(self._pending)
        self._pending.clear()
        self._finish(TransactionState.ROLLED_BACK)
        self.events.emit(StoreEvent.TRANSACTION_ROLLED_BACK,
                         f"Rolled back {discarded} pending feature(s)")

    def close(self) -> None:
        if self.state == TransactionState.CLOSED:
            return
        if self.is_active:
            self.rollback()
        self.state = TransactionState.CLOSED
        self.events.emit(StoreEvent.TRANSACTION_CLOSED,
                         f"Transaction on {self.store.files.stem.name} closed")

    def _finish(self, state: TransactionState) -> None:
        self.state = state
        release_dataset_lock(self.store.files.stem)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    def __repr__(self):
        return (f"Transaction({self.store.files.stem.name!r}, mode={self.mode.value}, "
                f"state={self.state.value}, pending={len(self._pending)})")
